import aiohttp
import asyncio
import logging
import random
from typing import Any, Dict, List, Optional

from devpulse.domain.exceptions import (
    UpstreamNotFoundException,
    UpstreamRateLimitedException,
    UpstreamUnavailableException,
)
from devpulse.domain.models import EventDTO, ProfileDTO, RateLimitDTO, RepositoryDTO
from devpulse.infrastructure.acl import GitHubTranslator
from devpulse.infrastructure.metrics import MetricsCollector

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
DEFAULT_PER_PAGE = 30
MAX_PER_PAGE = 100
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=10, connect=5)
MAX_RETRIES = 3
# Secondary rate limits asking for a longer pause are surfaced instead of waited out
MAX_RETRY_AFTER_SECONDS = 10


class GitHubRestClient:
    """
    Client for the GitHub REST API.
    Handles authentication, retries, and translation of failures into domain exceptions.
    """

    def __init__(
            self,
            token: Optional[str] = None,
            metrics: Optional[MetricsCollector] = None,
            session: Optional[aiohttp.ClientSession] = None,
            api_url: str = GITHUB_API_BASE,
    ):
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "devpulse",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self.api_url = api_url.rstrip("/")
        self.metrics = metrics
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "GitHubRestClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers, timeout=REQUEST_TIMEOUT)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def _record(self, endpoint: str, status: str) -> None:
        if self.metrics:
            self.metrics.record_github_request(endpoint, status)

    @staticmethod
    def _retry_after_seconds(value: str) -> Optional[int]:
        """Retry-After in seconds, or None when GitHub sent something other than a delay (e.g. an HTTP-date)."""
        try:
            return int(value)
        except ValueError:
            return None

    def _track_quota(self, headers) -> None:
        remaining = headers.get("X-RateLimit-Remaining")
        if remaining is not None and remaining.isdigit() and self.metrics:
            self.metrics.set_rate_limit_remaining(int(remaining))

    async def _get(
        self,
        path: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        handle: Optional[str] = None,
    ) -> Any:
        """
        Performs a GET against the API, retrying server and transport errors.

        Raises:
            UpstreamNotFoundException: GitHub answered 404.
            UpstreamRateLimitedException: the quota is exhausted.
            UpstreamUnavailableException: any other failure, including exhausted retries.
        """
        session = self._get_session()
        url = f"{self.api_url}{path}"

        for attempt in range(MAX_RETRIES):
            try:
                async with session.get(url, params=params, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                    self._record(endpoint, str(response.status))
                    self._track_quota(response.headers)

                    if response.status == 404:
                        raise UpstreamNotFoundException(handle or path)

                    if response.status in {403, 429}:
                        if response.headers.get("X-RateLimit-Remaining") == "0" or response.status == 429:
                            raise UpstreamRateLimitedException(reset_at=response.headers.get("X-RateLimit-Reset"))

                        # Secondary rate limit (abuse detection)
                        retry_after = response.headers.get("Retry-After")
                        if retry_after is not None:
                            sleep_time = self._retry_after_seconds(retry_after)
                            if sleep_time is None or sleep_time > MAX_RETRY_AFTER_SECONDS:
                                raise UpstreamRateLimitedException(reset_at=None, message=f"Secondary rate limit, retry after {retry_after}.")
                            logger.warning(f"Secondary rate limit (403). Sleeping {sleep_time}s...")
                            await asyncio.sleep(sleep_time)
                            continue

                        raise UpstreamUnavailableException(f"GitHub API refused the request ({response.status}); check GITHUB_TOKEN.")

                    if response.status in {500, 502, 503, 504}:
                        if attempt == MAX_RETRIES - 1:
                            logger.warning(f"Server error ({response.status}) on {endpoint}, giving up.")
                            break
                        sleep_time = (2 ** attempt) * 0.5 + random.uniform(0, 0.5)
                        logger.warning(
                            f"Server error ({response.status}) on {endpoint}. "
                            f"Retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    if response.status >= 400:
                        raise UpstreamUnavailableException(f"GitHub API error: {response.status}")

                    try:
                        return await response.json()
                    except ValueError as e:
                        raise UpstreamUnavailableException(f"Unreadable {endpoint} response from GitHub: {e}") from e

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self._record(endpoint, "error")
                if attempt == MAX_RETRIES - 1:
                    logger.warning(f"Request to {endpoint} failed (attempt {attempt + 1}/{MAX_RETRIES}): {e!r}.")
                    break
                sleep_time = (2 ** attempt) * 0.5 + random.uniform(0, 0.5)
                logger.warning(
                    f"Request to {endpoint} failed (attempt {attempt + 1}/{MAX_RETRIES}): {e!r}. "
                    f"Retrying in {sleep_time:.1f}s..."
                )
                await asyncio.sleep(sleep_time)

        raise UpstreamUnavailableException(f"No usable response from GitHub API ({endpoint}) after {MAX_RETRIES} attempts.")

    @staticmethod
    def _per_page(limit: int) -> int:
        return max(1, min(limit, MAX_PER_PAGE))

    @staticmethod
    def _translate(translate, raw: Any, endpoint: str):
        # pydantic's ValidationError is a ValueError
        try:
            return translate(raw)
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            raise UpstreamUnavailableException(f"Malformed {endpoint} response from GitHub: {e}") from e

    async def fetch_profile(self, handle: str) -> ProfileDTO:
        raw_user = await self._get(f"/users/{handle}", "profile", handle=handle)
        return self._translate(GitHubTranslator.to_profile, raw_user, "profile")

    async def fetch_repositories(self, handle: str, limit: int = DEFAULT_PER_PAGE) -> List[RepositoryDTO]:
        """Most recently updated repositories owned by the user."""
        raw_repos = await self._get(
            f"/users/{handle}/repos",
            "repos",
            params={"per_page": self._per_page(limit), "sort": "updated", "direction": "desc"},
            handle=handle,
        )
        return [self._translate(GitHubTranslator.to_repository, repo, "repos") for repo in raw_repos if repo]

    async def fetch_events(self, handle: str, limit: int = DEFAULT_PER_PAGE) -> List[EventDTO]:
        raw_events = await self._get(
            f"/users/{handle}/events",
            "events",
            params={"per_page": self._per_page(limit)},
            handle=handle,
        )
        return [self._translate(GitHubTranslator.to_event, event, "events") for event in raw_events if event]

    async def fetch_rate_limit(self) -> RateLimitDTO:
        raw_body = await self._get("/rate_limit", "rate_limit")
        rate_limit = self._translate(GitHubTranslator.to_rate_limit, raw_body, "rate_limit")
        if self.metrics:
            self.metrics.set_rate_limit_remaining(rate_limit.remaining)
        return rate_limit
