from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, ConfigDict


class ResourceKind(str, Enum):
    """Kinds of cached resource served per subject."""
    PROFILE = "profile"
    REPOSITORIES = "repos"
    EVENTS = "events"


class SyncKind(str, Enum):
    PROFILE = "profile"
    REPOS = "repos"
    EVENTS = "events"
    COMPLETE = "complete"


class SyncStatus(str, Enum):
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"


class CacheStatus(str, Enum):
    """Which path the cache-aside controller took to answer a request."""
    HIT = "HIT"
    MISS = "MISS"
    STALE_FALLBACK = "STALE_FALLBACK"


# Data-transfer objects built from GitHub responses

class ProfileDTO(BaseModel):
    """
    GitHub user profile as returned by the REST API.
    """
    model_config = ConfigDict(frozen=True)

    github_id: int = Field(..., description="The numeric GitHub user ID")
    handle: str = Field(..., min_length=1, description="GitHub login")
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    public_repos: int = Field(0, ge=0)
    followers: int = Field(0, ge=0)
    following: int = Field(0, ge=0)
    created_at: Optional[datetime] = Field(None, description="Account creation time on GitHub")
    updated_at: Optional[datetime] = None


class RepositoryDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    github_id: int = Field(..., description="The numeric GitHub repository ID")
    name: str
    full_name: str
    description: Optional[str] = None
    language: Optional[str] = None
    stargazers_count: int = Field(0, ge=0)
    forks_count: int = Field(0, ge=0)
    open_issues_count: int = Field(0, ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None


class EventDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    github_id: int = Field(..., description="The GitHub event ID, used for de-duplication")
    event_type: str
    repo_name: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class RateLimitDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int
    remaining: int
    reset_at: datetime


# Persisted records

class Subject(BaseModel):
    """
    A cached GitHub user. Each refresh timestamp only moves forward.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    github_id: int
    handle: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    public_repos: int = 0
    followers: int = 0
    following: int = 0
    github_created_at: Optional[datetime] = None
    created_at: Optional[datetime] = Field(None, description="When the subject was first cached")
    last_refreshed: Optional[datetime] = Field(None, description="Last successful profile sync")
    repos_refreshed_at: Optional[datetime] = None
    events_refreshed_at: Optional[datetime] = None

    def refreshed_at(self, kind: ResourceKind) -> Optional[datetime]:
        if kind is ResourceKind.REPOSITORIES:
            return self.repos_refreshed_at
        if kind is ResourceKind.EVENTS:
            return self.events_refreshed_at
        return self.last_refreshed


class RepositoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    github_id: int
    subject_id: int
    name: str
    full_name: str
    description: Optional[str] = None
    language: Optional[str] = None
    stargazers_count: int = 0
    forks_count: int = 0
    open_issues_count: int = 0
    github_created_at: Optional[datetime] = None
    github_updated_at: Optional[datetime] = None
    github_pushed_at: Optional[datetime] = None


class EventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    github_id: int
    subject_id: int
    repository_id: Optional[int] = None
    event_type: str
    repo_name: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    github_created_at: datetime


class SyncLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    subject_id: Optional[int] = None
    handle: str
    sync_type: SyncKind
    status: SyncStatus
    records_synced: int = 0
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


# Service results

class CachedResponse(BaseModel):
    """
    Answer of the cache-aside controller: the data plus which path produced it.
    STALE_FALLBACK responses always carry a warning.
    """
    model_config = ConfigDict(frozen=True)

    status: CacheStatus
    data: Union[Subject, List[RepositoryRecord], List[EventRecord]]
    warning: Optional[str] = None
    cache_age_minutes: Optional[int] = None


class CompleteSyncResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject: Subject
    repo_count: int
    event_count: int


class CacheInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    handle: str
    cached: bool
    cached_since: Optional[datetime] = None
    last_refreshed: Optional[datetime] = None
    cache_age_minutes: Optional[int] = None
    repositories: int = 0
    events: int = 0
    recent_syncs: List[SyncLogEntry] = Field(default_factory=list)


class CachedSubjectSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    handle: str
    name: Optional[str] = None
    last_refreshed: Optional[datetime] = None
    cache_age_minutes: Optional[int] = None


class DatabaseStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_subjects: int
    total_repositories: int
    total_events: int
