import argparse
import asyncio
import logging
import sys
from typing import Any, List, Optional

from pydantic import TypeAdapter

from devpulse.application.cache_service import DEFAULT_LIMIT, CacheService
from devpulse.application.coalescer import RefreshCoalescer
from devpulse.application.sync_audit_log import SyncAuditLog
from devpulse.application.sync_service import SyncService
from devpulse.config import Settings, load_settings
from devpulse.domain.exceptions import DevPulseException
from devpulse.domain.staleness import StalenessPolicy
from devpulse.infrastructure.database import PostgresRepository
from devpulse.infrastructure.github_client import GitHubRestClient
from devpulse.infrastructure.metrics import MetricsCollector

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devpulse", description="Cache-aside GitHub activity aggregator.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create the database schema")
    commands.add_parser("users", help="List cached users")
    commands.add_parser("rate-limit", help="Show the GitHub API rate limit")
    commands.add_parser("db-stats", help="Show row counts")

    for name, help_text in (
        ("profile", "Get a user's profile"),
        ("repos", "Get a user's repositories"),
        ("events", "Get a user's recent events"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("handle")
        command.add_argument("--refresh", action="store_true", help="Bypass the cache")
        if name != "profile":
            command.add_argument("--limit", type=int, default=DEFAULT_LIMIT)

    for name, help_text in (
        ("stats", "Event counts per type for a cached user"),
        ("sync", "Refresh profile, repositories and events"),
        ("info", "Show cache information for a user"),
        ("clear", "Drop a user's cached data"),
    ):
        commands.add_parser(name, help=help_text).add_argument("handle")

    return parser


async def run(args: argparse.Namespace, settings: Settings, metrics: MetricsCollector) -> str:
    db_repository = PostgresRepository(db_url=settings.database_url)
    async with GitHubRestClient(token=settings.github_token, metrics=metrics) as github_client:
        sync_service = SyncService(
            github_client=github_client,
            db_repository=db_repository,
            audit_log=SyncAuditLog(db_repository),
            metrics=metrics,
            fetch_limit=settings.fetch_limit,
        )
        cache_service = CacheService(
            db_repository=db_repository,
            sync_service=sync_service,
            policy=StalenessPolicy(settings.cache_ttls()),
            metrics=metrics,
            coalescer=RefreshCoalescer() if settings.coalesce_refreshes else None,
        )

        try:
            if args.command == "init-db":
                await db_repository.create_schema()
                return '{"success": true}'
            if args.command == "profile":
                result = await cache_service.get_profile(args.handle, force_refresh=args.refresh)
            elif args.command == "repos":
                result = await cache_service.get_repositories(args.handle, force_refresh=args.refresh, limit=args.limit)
            elif args.command == "events":
                result = await cache_service.get_events(args.handle, force_refresh=args.refresh, limit=args.limit)
            elif args.command == "stats":
                result = await cache_service.get_event_stats(args.handle)
            elif args.command == "sync":
                result = await cache_service.refresh_subject(args.handle)
            elif args.command == "info":
                result = await cache_service.cache_info(args.handle)
            elif args.command == "clear":
                await cache_service.clear_subject(args.handle)
                return '{"success": true}'
            elif args.command == "users":
                result = await cache_service.cached_subjects()
            elif args.command == "rate-limit":
                result = await cache_service.check_rate_limit()
            else:
                result = await cache_service.database_statistics()
        finally:
            await db_repository.dispose()

    return TypeAdapter(Any).dump_json(result, indent=2).decode()


def _push_metrics(metrics: MetricsCollector, gateway: str) -> None:
    # Push failures never change the exit status
    try:
        metrics.push(gateway)
    except OSError as e:
        logger.warning(f"Could not push metrics to {gateway}: {e}")


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except DevPulseException as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(str(e))
        sys.exit(1)

    # Configure logging
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )

    metrics = MetricsCollector()

    try:
        output = asyncio.run(run(args, settings, metrics))
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Exiting gracefully.")
        sys.exit(130)
    except (DevPulseException, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    finally:
        if settings.metrics_pushgateway:
            _push_metrics(metrics, settings.metrics_pushgateway)

    print(output)


if __name__ == "__main__":
    main()
