from typing import Optional


class DevPulseException(Exception):
    """Base exception for all DevPulse errors."""
    pass

class UpstreamUnavailableException(DevPulseException):
    """Raised when the GitHub API cannot be reached or keeps failing."""
    pass

class UpstreamRateLimitedException(DevPulseException):
    """Raised when the GitHub REST rate limit is hit."""
    def __init__(self, reset_at: Optional[str] = None, message: str = "GitHub API rate limit exceeded."):
        self.reset_at = reset_at
        super().__init__(f"{message} Resets at: {reset_at}")

class UpstreamNotFoundException(DevPulseException):
    """Raised when the subject does not exist on GitHub."""
    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"GitHub user {handle} not found.")

class PreconditionFailedException(DevPulseException):
    """Raised when a repositories/events sync runs before the profile was synced."""
    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"User {handle} not found in database. Sync profile first.")

class PersistenceException(DevPulseException):
    """Raised when a database operation fails."""
    pass

class NotCachedException(DevPulseException):
    """Raised when a subject has no cached data. Diagnostic only."""
    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"No cached data for {handle}.")

class ConfigurationException(DevPulseException):
    """Raised when the environment holds an invalid setting."""
    pass
