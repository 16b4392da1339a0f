import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from devpulse.domain.models import SyncKind, SyncLogEntry, SyncStatus
from devpulse.infrastructure.database import PostgresRepository

logger = logging.getLogger(__name__)


class LogHandle:
    """
    An open sync log entry. Completed exactly once.
    """

    def __init__(self, entry: SyncLogEntry):
        self.entry = entry
        self.log_id = entry.id
        self.handle = entry.handle
        self.kind = entry.sync_type
        # Set once the subject row is known (first-time profile syncs start without one)
        self.subject_id = entry.subject_id
        self.records_affected = 0
        self.completed = False


class SyncAuditLog:
    """
    Append-only record of sync attempts, backed by the sync_logs table.

    Entries start as `started` and are moved to `success` or `failed` exactly
    once. Use `track()` so that the completion write happens on every exit path.
    """

    def __init__(self, db_repository: PostgresRepository):
        self.db_repository = db_repository

    async def begin(self, handle: str, kind: SyncKind, subject_id: Optional[int] = None) -> LogHandle:
        entry = await self.db_repository.create_sync_log(
            handle=handle,
            sync_type=kind,
            status=SyncStatus.STARTED,
            subject_id=subject_id,
        )
        return LogHandle(entry)

    async def complete(
        self,
        log: LogHandle,
        status: SyncStatus,
        records_affected: int,
        error: Optional[str] = None,
    ) -> SyncLogEntry:
        if log.completed:
            raise ValueError(f"Sync log {log.log_id} was already completed.")
        if status is SyncStatus.STARTED:
            raise ValueError("A sync log can only be completed with a terminal status.")

        # Flip first so a failing write is never retried into a second completion
        log.completed = True
        entry = await self.db_repository.update_sync_log(
            log.log_id,
            status=status,
            records_synced=records_affected,
            error_message=error,
            subject_id=log.subject_id,
        )
        log.entry = entry
        return entry

    @asynccontextmanager
    async def track(self, handle: str, kind: SyncKind, subject_id: Optional[int] = None) -> AsyncIterator[LogHandle]:
        """
        Opens a log entry and guarantees it reaches a terminal status.

        The body sets `records_affected` (and `subject_id` when it learns it) on
        the yielded handle. A normal exit completes the entry as `success`; an
        exception completes it as `failed` with the error text and is re-raised.
        """
        log = await self.begin(handle, kind, subject_id=subject_id)
        try:
            yield log
        except BaseException as e:
            if not log.completed:
                try:
                    await self.complete(log, SyncStatus.FAILED, 0, error=str(e) or type(e).__name__)
                except Exception:
                    logger.exception(f"Could not mark sync log {log.log_id} ({kind.value} for {handle}) as failed.")
            raise
        else:
            if not log.completed:
                await self.complete(log, SyncStatus.SUCCESS, log.records_affected)

    async def recent(self, subject_id: int, limit: int = 10) -> List[SyncLogEntry]:
        """Most recent entries first; a fresh query on every call."""
        return await self.db_repository.recent_sync_logs(subject_id, limit)
