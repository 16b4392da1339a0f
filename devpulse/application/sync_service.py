import logging
import time
from typing import Optional

from devpulse.application.sync_audit_log import SyncAuditLog
from devpulse.domain.exceptions import NotCachedException, PreconditionFailedException
from devpulse.domain.models import CompleteSyncResult, Subject, SyncKind, SyncStatus
from devpulse.infrastructure.database import PostgresRepository
from devpulse.infrastructure.github_client import DEFAULT_PER_PAGE, GitHubRestClient
from devpulse.infrastructure.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class SyncService:
    """
    Service responsible for refreshing a subject's cached data from GitHub.

    Each sync fetches from the GitHub client, writes through the database
    repository in one transaction, and records its outcome in the sync audit
    log. This is the only component that mutates the store.
    """

    def __init__(
            self,
            github_client: GitHubRestClient,
            db_repository: PostgresRepository,
            audit_log: Optional[SyncAuditLog] = None,
            metrics: Optional[MetricsCollector] = None,
            fetch_limit: int = DEFAULT_PER_PAGE,
    ):
        self.github_client = github_client
        self.db_repository = db_repository
        self.audit_log = audit_log or SyncAuditLog(db_repository)
        self.metrics = metrics
        self.fetch_limit = fetch_limit

    def _record(self, kind: SyncKind, status: SyncStatus, started: float) -> None:
        if self.metrics:
            self.metrics.record_sync(kind.value, status.value, time.perf_counter() - started)
            if status is SyncStatus.FAILED:
                self.metrics.record_error("sync")

    async def _require_subject(self, handle: str) -> Subject:
        subject = await self.db_repository.get_subject_by_handle(handle)
        if subject is None:
            raise PreconditionFailedException(handle)
        return subject

    async def sync_profile(self, handle: str) -> Subject:
        """
        Fetches the profile and upserts it keyed by handle.

        Returns:
            Subject: The stored subject with a bumped last_refreshed.
        """
        started = time.perf_counter()
        try:
            existing = await self.db_repository.get_subject_by_handle(handle)
            async with self.audit_log.track(handle, SyncKind.PROFILE, subject_id=existing.id if existing else None) as log:
                logger.info(f"Fetching profile for {handle} from GitHub...")
                profile = await self.github_client.fetch_profile(handle)

                logger.info(f"Storing profile for {handle} in database...")
                subject = await self.db_repository.upsert_subject(profile)
                log.subject_id = subject.id
                log.records_affected = 1
        except Exception as e:
            self._record(SyncKind.PROFILE, SyncStatus.FAILED, started)
            logger.error(f"Error syncing profile for {handle}: {e}")
            raise

        self._record(SyncKind.PROFILE, SyncStatus.SUCCESS, started)
        logger.info(f"Profile synced for {handle}.")
        return subject

    async def sync_repositories(self, handle: str) -> int:
        """
        Fetches the subject's repositories and bulk upserts them.

        Raises:
            PreconditionFailedException: The profile was never synced.

        Returns:
            int: Number of repositories inserted or updated.
        """
        started = time.perf_counter()
        try:
            subject = await self._require_subject(handle)
            async with self.audit_log.track(subject.handle, SyncKind.REPOS, subject_id=subject.id) as log:
                logger.info(f"Fetching repositories for {subject.handle} from GitHub...")
                repos = await self.github_client.fetch_repositories(subject.handle, self.fetch_limit)

                logger.info(f"Storing {len(repos)} repositories in database...")
                log.records_affected = await self.db_repository.bulk_upsert_repositories(subject.id, repos)
        except Exception as e:
            self._record(SyncKind.REPOS, SyncStatus.FAILED, started)
            logger.error(f"Error syncing repositories for {handle}: {e}")
            raise

        self._record(SyncKind.REPOS, SyncStatus.SUCCESS, started)
        logger.info(f"Synced {log.records_affected} repositories for {handle}.")
        return log.records_affected

    async def sync_events(self, handle: str) -> int:
        """
        Fetches recent events and stores the ones not seen before.

        Returns:
            int: Number of newly inserted events. Known events are never re-counted.
        """
        started = time.perf_counter()
        try:
            subject = await self._require_subject(handle)
            async with self.audit_log.track(subject.handle, SyncKind.EVENTS, subject_id=subject.id) as log:
                logger.info(f"Fetching events for {subject.handle} from GitHub...")
                events = await self.github_client.fetch_events(subject.handle, self.fetch_limit)

                logger.info(f"Storing {len(events)} events in database...")
                log.records_affected = await self.db_repository.bulk_insert_events(subject.id, events)
        except Exception as e:
            self._record(SyncKind.EVENTS, SyncStatus.FAILED, started)
            logger.error(f"Error syncing events for {handle}: {e}")
            raise

        self._record(SyncKind.EVENTS, SyncStatus.SUCCESS, started)
        logger.info(f"Synced {log.records_affected} new events for {handle}.")
        return log.records_affected

    async def sync_complete(self, handle: str) -> CompleteSyncResult:
        """
        Syncs profile, repositories and events, strictly in that order.

        Not a transaction: each step commits and is logged on its own, and a
        failing step stops the remaining ones without undoing earlier steps.
        """
        started = time.perf_counter()
        logger.info(f"Starting complete sync for {handle}...")
        try:
            existing = await self.db_repository.get_subject_by_handle(handle)
            async with self.audit_log.track(handle, SyncKind.COMPLETE, subject_id=existing.id if existing else None) as log:
                subject = await self.sync_profile(handle)
                log.subject_id = subject.id

                repo_count = await self.sync_repositories(subject.handle)
                event_count = await self.sync_events(subject.handle)
                log.records_affected = 1 + repo_count + event_count
        except Exception as e:
            self._record(SyncKind.COMPLETE, SyncStatus.FAILED, started)
            logger.error(f"Complete sync failed for {handle}: {e}")
            raise

        self._record(SyncKind.COMPLETE, SyncStatus.SUCCESS, started)
        logger.info(f"Complete sync finished for {handle}.")
        return CompleteSyncResult(subject=subject, repo_count=repo_count, event_count=event_count)

    async def clear_subject(self, handle: str) -> None:
        """Drops everything cached for the subject, sync history included."""
        subject = await self.db_repository.get_subject_by_handle(handle)
        if subject is None or not await self.db_repository.delete_subject(subject.id):
            raise NotCachedException(handle)
        logger.info(f"Cache cleared for {handle}.")
