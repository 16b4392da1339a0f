import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from devpulse.application.coalescer import RefreshCoalescer
from devpulse.application.sync_service import SyncService
from devpulse.domain.exceptions import (
    NotCachedException,
    UpstreamRateLimitedException,
    UpstreamUnavailableException,
)
from devpulse.domain.models import (
    CacheInfo, CacheStatus, CachedResponse, CachedSubjectSummary, CompleteSyncResult,
    DatabaseStatistics, EventRecord, RateLimitDTO, RepositoryRecord, ResourceKind, Subject,
)
from devpulse.domain.staleness import StalenessPolicy, age_minutes
from devpulse.infrastructure.database import PostgresRepository
from devpulse.infrastructure.metrics import MetricsCollector

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 30
MAX_LIMIT = 100
RECENT_SYNCS_IN_INFO = 5
STALE_WARNING = "Returned stale data due to API error"

# Upstream failures that may be answered from an existing cached copy.
# Not-found and persistence failures always reach the caller.
FALLBACK_ERRORS = (UpstreamUnavailableException, UpstreamRateLimitedException)


class CacheDecision(str, Enum):
    MISS = "miss"
    REFRESH = "refresh"
    HIT = "hit"


class CacheService:
    """
    Cache-aside front for a subject's profile, repositories and events.

    Every request is answered as one of:
      - HIT: cached and fresh, served without calling GitHub.
      - MISS: nothing cached, or stale/forced and the refresh succeeded.
      - STALE_FALLBACK: stale/forced, the refresh failed upstream, and the
        previous copy is served with a warning.

    All writes go through the SyncService.
    """

    def __init__(
            self,
            db_repository: PostgresRepository,
            sync_service: SyncService,
            policy: Optional[StalenessPolicy] = None,
            metrics: Optional[MetricsCollector] = None,
            coalescer: Optional[RefreshCoalescer] = None,
    ):
        self.db_repository = db_repository
        self.sync_service = sync_service
        self.policy = policy or StalenessPolicy()
        self.metrics = metrics
        self.coalescer = coalescer

    def _record(self, operation: str) -> None:
        if self.metrics:
            self.metrics.record_cache_operation(operation)

    @staticmethod
    def _check_limit(limit: int) -> None:
        if limit < 1 or limit > MAX_LIMIT:
            raise ValueError(f"Limit must be between 1 and {MAX_LIMIT}, got {limit}.")

    def decide(
        self,
        kind: ResourceKind,
        subject: Optional[Subject],
        force_refresh: bool,
        now: Optional[datetime] = None,
    ) -> CacheDecision:
        """Pure decision: what to do with the cached record for this request."""
        if subject is None or subject.refreshed_at(kind) is None:
            return CacheDecision.MISS
        if force_refresh or self.policy.is_stale(kind, subject.refreshed_at(kind), now=now):
            return CacheDecision.REFRESH
        return CacheDecision.HIT

    # Public API, one call per resource kind

    async def get_profile(self, handle: str, force_refresh: bool = False) -> CachedResponse:
        return await self._serve(ResourceKind.PROFILE, handle, force_refresh, DEFAULT_LIMIT)

    async def get_repositories(self, handle: str, force_refresh: bool = False, limit: int = DEFAULT_LIMIT) -> CachedResponse:
        self._check_limit(limit)
        return await self._serve(ResourceKind.REPOSITORIES, handle, force_refresh, limit)

    async def get_events(self, handle: str, force_refresh: bool = False, limit: int = DEFAULT_LIMIT) -> CachedResponse:
        self._check_limit(limit)
        return await self._serve(ResourceKind.EVENTS, handle, force_refresh, limit)

    async def _serve(self, kind: ResourceKind, handle: str, force_refresh: bool, limit: int) -> CachedResponse:
        subject = await self.db_repository.get_subject_by_handle(handle)
        decision = self.decide(kind, subject, force_refresh)

        if decision is CacheDecision.MISS:
            self._record("miss")
            logger.info(f"No cached {kind.value} for {handle}, syncing...")
            fresh = await self._refresh(kind, handle, subject)
            return CachedResponse(
                status=CacheStatus.MISS,
                data=await self._load(kind, fresh, limit),
                cache_age_minutes=0,
            )

        if decision is CacheDecision.REFRESH:
            logger.info(f"Refreshing {kind.value} for {handle} from GitHub...")
            try:
                fresh = await self._refresh(kind, handle, subject)
            except FALLBACK_ERRORS as e:
                self._record("stale")
                logger.warning(f"GitHub refresh of {kind.value} for {handle} failed ({e}), returning stale cache.")
                return CachedResponse(
                    status=CacheStatus.STALE_FALLBACK,
                    data=await self._load(kind, subject, limit),
                    warning=f"{STALE_WARNING}: {e}",
                    cache_age_minutes=age_minutes(subject.refreshed_at(kind)),
                )
            except Exception:
                self._record("miss")
                if self.metrics:
                    self.metrics.record_error("controller")
                raise

            self._record("miss")
            return CachedResponse(
                status=CacheStatus.MISS,
                data=await self._load(kind, fresh, limit),
                cache_age_minutes=0,
            )

        self._record("hit")
        logger.info(f"Serving {kind.value} for {handle} from cache.")
        return CachedResponse(
            status=CacheStatus.HIT,
            data=await self._load(kind, subject, limit),
            cache_age_minutes=age_minutes(subject.refreshed_at(kind)),
        )

    async def _refresh(self, kind: ResourceKind, handle: str, subject: Optional[Subject]) -> Subject:
        if self.coalescer is None:
            return await self._run_sync(kind, handle, subject)
        key = (handle.lower(), kind)
        return await self.coalescer.run(key, lambda: self._run_sync(kind, handle, subject))

    async def _run_sync(self, kind: ResourceKind, handle: str, subject: Optional[Subject]) -> Subject:
        if kind is ResourceKind.PROFILE:
            return await self.sync_service.sync_profile(handle)

        # Repositories and events need the profile stored first
        if subject is None:
            result = await self.sync_service.sync_complete(handle)
            return result.subject

        if kind is ResourceKind.REPOSITORIES:
            await self.sync_service.sync_repositories(subject.handle)
        else:
            await self.sync_service.sync_events(subject.handle)
        return subject

    async def _load(
        self, kind: ResourceKind, subject: Subject, limit: int,
    ) -> Union[Subject, List[RepositoryRecord], List[EventRecord]]:
        if kind is ResourceKind.PROFILE:
            return subject
        if kind is ResourceKind.REPOSITORIES:
            return await self.db_repository.get_repositories(subject.id, limit)
        return await self.db_repository.get_events(subject.id, limit)

    # Cache management

    async def _cached_subject(self, handle: str) -> Subject:
        subject = await self.db_repository.get_subject_by_handle(handle)
        if subject is None:
            raise NotCachedException(handle)
        return subject

    async def get_event_stats(self, handle: str) -> Dict[str, int]:
        """Event counts per type for a subject that is already cached."""
        subject = await self._cached_subject(handle)
        return await self.db_repository.event_stats(subject.id)

    async def check_rate_limit(self) -> RateLimitDTO:
        return await self.sync_service.github_client.fetch_rate_limit()

    async def cache_info(self, handle: str) -> CacheInfo:
        subject = await self.db_repository.get_subject_by_handle(handle)
        if subject is None:
            return CacheInfo(handle=handle, cached=False)

        return CacheInfo(
            handle=subject.handle,
            cached=True,
            cached_since=subject.created_at,
            last_refreshed=subject.last_refreshed,
            cache_age_minutes=age_minutes(subject.last_refreshed),
            repositories=await self.db_repository.count_repositories(subject.id),
            events=await self.db_repository.count_events(subject.id),
            recent_syncs=await self.sync_service.audit_log.recent(subject.id, RECENT_SYNCS_IN_INFO),
        )

    async def cached_subjects(self) -> List[CachedSubjectSummary]:
        subjects = await self.db_repository.list_subjects()
        if self.metrics:
            self.metrics.set_cached_subjects(len(subjects))

        now = datetime.now(timezone.utc)
        return [
            CachedSubjectSummary(
                handle=subject.handle,
                name=subject.name,
                last_refreshed=subject.last_refreshed,
                cache_age_minutes=age_minutes(subject.last_refreshed, now),
            ) for subject in subjects
        ]

    async def clear_subject(self, handle: str) -> None:
        await self.sync_service.clear_subject(handle)

    async def refresh_subject(self, handle: str) -> CompleteSyncResult:
        """Refreshes everything for the subject regardless of staleness."""
        return await self.sync_service.sync_complete(handle)

    async def database_statistics(self) -> DatabaseStatistics:
        return await self.db_repository.database_statistics()
