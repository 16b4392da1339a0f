import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.dialects.postgresql import insert, JSONB
from sqlalchemy import (
    BigInteger, Column, DateTime, ForeignKey, Index, Integer, MetaData, String, Table, Text,
    delete, func, select, text, update,
)

from devpulse.domain.exceptions import PersistenceException
from devpulse.domain.models import (
    DatabaseStatistics, EventDTO, EventRecord, ProfileDTO, RepositoryDTO, RepositoryRecord,
    Subject, SyncKind, SyncLogEntry, SyncStatus,
)

logger = logging.getLogger(__name__)

# SQLAlchemy core Table definitions
metadata = MetaData()
subjects_table = Table(
    'users', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('github_id', BigInteger, unique=True, nullable=False),
    Column('handle', String(255), unique=True, nullable=False),
    Column('name', String(255)),
    Column('avatar_url', Text),
    Column('bio', Text),
    Column('public_repos', Integer, nullable=False, server_default=text('0')),
    Column('followers', Integer, nullable=False, server_default=text('0')),
    Column('following', Integer, nullable=False, server_default=text('0')),
    Column('github_created_at', DateTime(timezone=True)),
    Column('created_at', DateTime(timezone=True), server_default=text('NOW()')),
    Column('last_refreshed', DateTime(timezone=True), nullable=False, server_default=text('NOW()')),
    Column('repos_refreshed_at', DateTime(timezone=True)),
    Column('events_refreshed_at', DateTime(timezone=True)),
)

repos_table = Table(
    'repositories', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('github_id', BigInteger, unique=True, nullable=False),
    Column('subject_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('name', String(255), nullable=False),
    Column('full_name', String(255), nullable=False),
    Column('description', Text),
    Column('language', String(100)),
    Column('stargazers_count', Integer, nullable=False, server_default=text('0')),
    Column('forks_count', Integer, nullable=False, server_default=text('0')),
    Column('open_issues_count', Integer, nullable=False, server_default=text('0')),
    Column('github_created_at', DateTime(timezone=True)),
    Column('github_updated_at', DateTime(timezone=True)),
    Column('github_pushed_at', DateTime(timezone=True)),
    Column('created_at', DateTime(timezone=True), server_default=text('NOW()')),
    Column('updated_at', DateTime(timezone=True), server_default=text('NOW()')),
    Index('idx_repositories_subject_id', 'subject_id'),
)

events_table = Table(
    'events', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('github_id', BigInteger, unique=True, nullable=False),
    Column('subject_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
    Column('repository_id', Integer, ForeignKey('repositories.id', ondelete='SET NULL')),
    Column('event_type', String(100), nullable=False),
    Column('repo_name', String(255)),
    Column('payload', JSONB, server_default=text("'{}'::jsonb")),
    Column('github_created_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=text('NOW()')),
    Index('idx_events_subject_id', 'subject_id'),
    Index('idx_events_repository_id', 'repository_id'),
    Index('idx_events_type', 'event_type'),
    Index('idx_events_created_at', 'github_created_at'),
)

sync_logs_table = Table(
    'sync_logs', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    # Null until the profile of a first-time subject has been stored
    Column('subject_id', Integer, ForeignKey('users.id', ondelete='CASCADE')),
    Column('handle', String(255), nullable=False),
    Column('sync_type', String(50), nullable=False),
    Column('status', String(20), nullable=False),
    Column('records_synced', Integer, nullable=False, server_default=text('0')),
    Column('error_message', Text),
    Column('started_at', DateTime(timezone=True), server_default=text('NOW()')),
    Column('completed_at', DateTime(timezone=True)),
    Index('idx_sync_logs_subject_id', 'subject_id'),
)


class PostgresRepository:
    """
    Repository class for interacting with the PostgreSQL database.
    Every public method runs in its own transaction: it either fully commits or
    raises PersistenceException with nothing written.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    @asynccontextmanager
    async def _transaction(self):
        try:
            async with self.engine.begin() as conn:
                yield conn
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Database operation failed: {e}")
            raise PersistenceException(str(e)) from e

    async def create_schema(self) -> None:
        async with self._transaction() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    # Subjects

    async def get_subject_by_handle(self, handle: str) -> Optional[Subject]:
        """GitHub logins are case-insensitive, so is the lookup."""
        async with self._transaction() as conn:
            result = await conn.execute(
                select(subjects_table).where(func.lower(subjects_table.c.handle) == handle.lower())
            )
            row = result.first()
        return Subject.model_validate(dict(row._mapping)) if row else None

    async def upsert_subject(self, profile: ProfileDTO) -> Subject:
        """
        Inserts the profile, or updates every mutable field of the existing row
        keyed by handle. last_refreshed never moves backwards.

        A row stored under an older login of the same GitHub account is renamed
        first, so a login change (including a change of case) updates that row.
        """
        rename_stmt = (
            update(subjects_table)
            .where(subjects_table.c.github_id == profile.github_id)
            .where(subjects_table.c.handle != profile.handle)
            .values(handle=profile.handle)
        )
        stmt = insert(subjects_table).values(
            github_id=profile.github_id,
            handle=profile.handle,
            name=profile.name,
            avatar_url=profile.avatar_url,
            bio=profile.bio,
            public_repos=profile.public_repos,
            followers=profile.followers,
            following=profile.following,
            github_created_at=profile.created_at,
            last_refreshed=func.now(),
        )
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['handle'],
            set_={
                'github_id': stmt.excluded.github_id,
                'name': stmt.excluded.name,
                'avatar_url': stmt.excluded.avatar_url,
                'bio': stmt.excluded.bio,
                'public_repos': stmt.excluded.public_repos,
                'followers': stmt.excluded.followers,
                'following': stmt.excluded.following,
                'github_created_at': stmt.excluded.github_created_at,
                'last_refreshed': func.greatest(subjects_table.c.last_refreshed, func.now()),
            },
        ).returning(*subjects_table.c)

        async with self._transaction() as conn:
            await conn.execute(rename_stmt)
            result = await conn.execute(upsert_stmt)
            row = result.first()
        return Subject.model_validate(dict(row._mapping))

    async def delete_subject(self, subject_id: int) -> bool:
        """Removes a subject; repositories, events and sync logs go with it."""
        async with self._transaction() as conn:
            result = await conn.execute(
                delete(subjects_table).where(subjects_table.c.id == subject_id).returning(subjects_table.c.id)
            )
            return result.first() is not None

    async def list_subjects(self) -> List[Subject]:
        async with self._transaction() as conn:
            result = await conn.execute(select(subjects_table).order_by(subjects_table.c.created_at.desc()))
            rows = result.fetchall()
        return [Subject.model_validate(dict(row._mapping)) for row in rows]

    # Repositories

    async def bulk_upsert_repositories(self, subject_id: int, repos: Sequence[RepositoryDTO]) -> int:
        """
        Inserts new repositories and updates mutable fields of known ones, keyed
        by GitHub ID, in a single statement. Marks the subject's repositories as
        refreshed in the same transaction.

        Returns:
            int: Number of rows inserted or updated.
        """
        affected = 0
        async with self._transaction() as conn:
            if repos:
                values = [
                    {   'github_id': repo.github_id,
                        'subject_id': subject_id,
                        'name': repo.name,
                        'full_name': repo.full_name,
                        'description': repo.description,
                        'language': repo.language,
                        'stargazers_count': repo.stargazers_count,
                        'forks_count': repo.forks_count,
                        'open_issues_count': repo.open_issues_count,
                        'github_created_at': repo.created_at,
                        'github_updated_at': repo.updated_at,
                        'github_pushed_at': repo.pushed_at,
                    } for repo in repos
                ]
                stmt = insert(repos_table).values(values)
                upsert_stmt = stmt.on_conflict_do_update(
                    index_elements=['github_id'],
                    set_={
                        'name': stmt.excluded.name,
                        'full_name': stmt.excluded.full_name,
                        'description': stmt.excluded.description,
                        'language': stmt.excluded.language,
                        'stargazers_count': stmt.excluded.stargazers_count,
                        'forks_count': stmt.excluded.forks_count,
                        'open_issues_count': stmt.excluded.open_issues_count,
                        'github_updated_at': stmt.excluded.github_updated_at,
                        'github_pushed_at': stmt.excluded.github_pushed_at,
                        'updated_at': text('NOW()'),
                    },
                ).returning(repos_table.c.id)
                result = await conn.execute(upsert_stmt)
                affected = len(result.fetchall())

            await conn.execute(
                update(subjects_table)
                .where(subjects_table.c.id == subject_id)
                .values(repos_refreshed_at=func.greatest(subjects_table.c.repos_refreshed_at, func.now()))
            )
        return affected

    async def get_repositories(self, subject_id: int, limit: int = 30) -> List[RepositoryRecord]:
        """Repositories ordered by most recently updated on GitHub."""
        stmt = (
            select(repos_table)
            .where(repos_table.c.subject_id == subject_id)
            .order_by(repos_table.c.github_updated_at.desc().nulls_last(), repos_table.c.id.desc())
            .limit(limit)
        )
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            rows = result.fetchall()
        return [RepositoryRecord.model_validate(dict(row._mapping)) for row in rows]

    async def count_repositories(self, subject_id: int) -> int:
        async with self._transaction() as conn:
            result = await conn.execute(
                select(func.count()).select_from(repos_table).where(repos_table.c.subject_id == subject_id)
            )
            return result.scalar_one()

    # Events

    async def bulk_insert_events(self, subject_id: int, events: Sequence[EventDTO]) -> int:
        """
        Inserts events, silently skipping GitHub IDs already stored. Events whose
        repository is a known repository of the subject are linked to it.

        Returns:
            int: Number of newly inserted events.
        """
        inserted = 0
        async with self._transaction() as conn:
            if events:
                repo_names = {event.repo_name for event in events if event.repo_name}
                repo_ids: Dict[str, int] = {}
                if repo_names:
                    result = await conn.execute(
                        select(repos_table.c.id, repos_table.c.full_name).where(
                            repos_table.c.subject_id == subject_id,
                            repos_table.c.full_name.in_(repo_names),
                        )
                    )
                    repo_ids = {row.full_name: row.id for row in result.fetchall()}

                values = [
                    {   'github_id': event.github_id,
                        'subject_id': subject_id,
                        'repository_id': repo_ids.get(event.repo_name),
                        'event_type': event.event_type,
                        'repo_name': event.repo_name,
                        'payload': event.payload,
                        'github_created_at': event.created_at,
                    } for event in events
                ]
                stmt = insert(events_table).values(values)
                insert_stmt = stmt.on_conflict_do_nothing(index_elements=['github_id']).returning(events_table.c.id)
                result = await conn.execute(insert_stmt)
                inserted = len(result.fetchall())

            await conn.execute(
                update(subjects_table)
                .where(subjects_table.c.id == subject_id)
                .values(events_refreshed_at=func.greatest(subjects_table.c.events_refreshed_at, func.now()))
            )
        return inserted

    async def get_events(self, subject_id: int, limit: int = 30) -> List[EventRecord]:
        stmt = (
            select(events_table)
            .where(events_table.c.subject_id == subject_id)
            .order_by(events_table.c.github_created_at.desc(), events_table.c.id.desc())
            .limit(limit)
        )
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            rows = result.fetchall()
        return [EventRecord.model_validate(dict(row._mapping)) for row in rows]

    async def count_events(self, subject_id: int) -> int:
        async with self._transaction() as conn:
            result = await conn.execute(
                select(func.count()).select_from(events_table).where(events_table.c.subject_id == subject_id)
            )
            return result.scalar_one()

    async def event_stats(self, subject_id: int) -> Dict[str, int]:
        """Event counts per type, most frequent first."""
        count = func.count().label('event_count')
        stmt = (
            select(events_table.c.event_type, count)
            .where(events_table.c.subject_id == subject_id)
            .group_by(events_table.c.event_type)
            .order_by(count.desc())
        )
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            rows = result.fetchall()
        return {row.event_type: int(row.event_count) for row in rows}

    # Sync logs

    async def create_sync_log(
        self,
        handle: str,
        sync_type: SyncKind,
        status: SyncStatus = SyncStatus.STARTED,
        subject_id: Optional[int] = None,
        records_synced: int = 0,
        error_message: Optional[str] = None,
    ) -> SyncLogEntry:
        stmt = insert(sync_logs_table).values(
            subject_id=subject_id,
            handle=handle,
            sync_type=sync_type.value,
            status=status.value,
            records_synced=records_synced,
            error_message=error_message,
        ).returning(*sync_logs_table.c)
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            row = result.first()
        return SyncLogEntry.model_validate(dict(row._mapping))

    async def update_sync_log(
        self,
        log_id: int,
        status: SyncStatus,
        records_synced: int,
        error_message: Optional[str] = None,
        subject_id: Optional[int] = None,
    ) -> SyncLogEntry:
        values = {
            'status': status.value,
            'records_synced': records_synced,
            'error_message': error_message,
            'completed_at': func.now(),
        }
        if subject_id is not None:
            values['subject_id'] = subject_id

        stmt = (
            update(sync_logs_table)
            .where(sync_logs_table.c.id == log_id)
            .values(**values)
            .returning(*sync_logs_table.c)
        )
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            row = result.first()
        if row is None:
            raise PersistenceException(f"Sync log {log_id} does not exist.")
        return SyncLogEntry.model_validate(dict(row._mapping))

    async def recent_sync_logs(self, subject_id: int, limit: int = 10) -> List[SyncLogEntry]:
        stmt = (
            select(sync_logs_table)
            .where(sync_logs_table.c.subject_id == subject_id)
            .order_by(sync_logs_table.c.started_at.desc(), sync_logs_table.c.id.desc())
            .limit(limit)
        )
        async with self._transaction() as conn:
            result = await conn.execute(stmt)
            rows = result.fetchall()
        return [SyncLogEntry.model_validate(dict(row._mapping)) for row in rows]

    async def database_statistics(self) -> DatabaseStatistics:
        async with self._transaction() as conn:
            users = await conn.execute(select(func.count()).select_from(subjects_table))
            repos = await conn.execute(select(func.count()).select_from(repos_table))
            events = await conn.execute(select(func.count()).select_from(events_table))
            return DatabaseStatistics(
                total_subjects=users.scalar_one(),
                total_repositories=repos.scalar_one(),
                total_events=events.scalar_one(),
            )
