"""
Command line entry point.

    statmigrate backfill
    statmigrate export {print,click,apply,account}
    statmigrate sync-bot-flags
    statmigrate verify [--target analytics --type click] [--days 7]

Settings are read from the environment (optionally from a dotenv file given
with ``--env``) and overridden by flags. Connections are always released
before exiting. Exit code 0 on success, 1 on a fatal error.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from elasticsearch import AsyncElasticsearch
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from statmigrate.annotator import StatusAnnotator
from statmigrate.config import CursorBackend, Settings
from statmigrate.cursor_store import create_cursor_store
from statmigrate.exceptions import StatMigrateError
from statmigrate.jobs import (
    STAT_EVENT_JOB,
    BotFlagSync,
    JobProgress,
    PartnerEventExport,
    StatEventBackfill,
    export_job_name,
)
from statmigrate.models import EventType
from statmigrate.reconciliation import (
    DEFAULT_SAMPLE_SIZE,
    DEFAULT_WINDOW_DAYS,
    ReconciliationReporter,
    ReconciliationTarget,
    default_window,
)
from statmigrate.references import DEFAULT_CLICK_LOOKBACK_DAYS, ReferenceResolver
from statmigrate.relational.schema import ANALYTICS_TABLES, stat_event
from statmigrate.sources import ElasticsearchSourceStore
from statmigrate.writer import IdempotentBatchWriter

logger = logging.getLogger("statmigrate")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="statmigrate",
        description="Migrate activity events from Elasticsearch to PostgreSQL and verify them.",
    )
    parser.add_argument("--env", help="dotenv file to load before reading the environment")
    parser.add_argument("--es", dest="es_endpoint", help="Elasticsearch URL (ES_ENDPOINT)")
    parser.add_argument("--index", dest="stats_index", help="event index (STATS_INDEX)")
    parser.add_argument(
        "--db", dest="database_url_core", help="core database URL (DATABASE_URL_CORE)"
    )
    parser.add_argument(
        "--analytics-db",
        dest="database_url_analytics",
        help="analytics database URL (DATABASE_URL_ANALYTICS)",
    )
    parser.add_argument(
        "--cursor-backend",
        choices=[backend.value for backend in CursorBackend],
        help="where job cursors are stored (CURSOR_BACKEND)",
    )
    parser.add_argument("--cursor-file", help="cursor file for the file backend (CURSOR_FILE)")
    parser.add_argument("--batch-size", type=int, help="events per batch")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="logging level (LOG_LEVEL)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("backfill", help="copy every event into stat_event")

    export = subparsers.add_parser("export", help="export one event type to its analytics table")
    export.add_argument("event_type", choices=[t.value for t in EventType])

    subparsers.add_parser(
        "sync-bot-flags", help="copy click bot/human flags onto the click table"
    )

    verify = subparsers.add_parser("verify", help="compare counts and spot-check ids")
    verify.add_argument(
        "--target",
        choices=[t.value for t in ReconciliationTarget],
        default=ReconciliationTarget.STAT_EVENT.value,
    )
    verify.add_argument("--type", dest="event_type", choices=[t.value for t in EventType])
    verify.add_argument("--job", help="cursor whose watermark ends the window")
    verify.add_argument("--days", type=int, default=DEFAULT_WINDOW_DAYS)
    verify.add_argument("--sample-size", type=int, default=DEFAULT_SAMPLE_SIZE)
    verify.add_argument("--ids", nargs="+", help="check these ids instead of sampling")
    verify.add_argument(
        "--strict", action="store_true", help="exit with 1 when a discrepancy is found"
    )
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    """Settings from the environment, overridden by command line flags."""
    settings = Settings.from_env(env_file=args.env)
    overrides = {
        "es_endpoint": args.es_endpoint,
        "stats_index": args.stats_index,
        "database_url_core": args.database_url_core,
        "database_url_analytics": args.database_url_analytics,
        "cursor_backend": args.cursor_backend,
        "cursor_file": args.cursor_file,
        "log_level": args.log_level,
    }
    if args.batch_size is not None:
        key = "backfill_batch_size" if args.command == "backfill" else "export_batch_size"
        overrides[key] = args.batch_size
    return settings.with_overrides(**overrides)


def _log_progress(progress: JobProgress) -> None:
    if progress.is_complete:
        return
    logger.info(
        "%s: %d/%s events (%.1f%%), %.0f events/s",
        progress.job_name,
        progress.processed,
        progress.events_total if progress.events_total is not None else "?",
        progress.progress_percent,
        progress.events_per_second,
    )


async def run_backfill(settings: Settings, core: AsyncEngine, es: AsyncElasticsearch) -> int:
    source = ElasticsearchSourceStore(
        es, settings.stats_index, enable_tracing=settings.enable_tracing
    )
    job = StatEventBackfill(
        source,
        create_cursor_store(settings, core),
        IdempotentBatchWriter(core, stat_event, "id", enable_tracing=settings.enable_tracing),
        batch_size=settings.backfill_batch_size,
        keep_alive=settings.scroll_keep_alive,
        enable_tracing=settings.enable_tracing,
    )
    final = await job.execute(_log_progress)
    logger.info("Backfill finished: %d created over %d batches", final.created, final.batches)
    return 0


async def run_export(
    settings: Settings,
    core: AsyncEngine,
    analytics: AsyncEngine,
    es: AsyncElasticsearch,
    event_type: EventType,
) -> int:
    source = ElasticsearchSourceStore(
        es, settings.stats_index, enable_tracing=settings.enable_tracing
    )
    resolver = ReferenceResolver(
        analytics,
        click_lookback_days=(
            DEFAULT_CLICK_LOOKBACK_DAYS
            if event_type in (EventType.APPLY, EventType.ACCOUNT)
            else None
        ),
        enable_tracing=settings.enable_tracing,
    )
    job = PartnerEventExport(
        source,
        create_cursor_store(settings, core),
        resolver,
        IdempotentBatchWriter(
            analytics,
            ANALYTICS_TABLES[event_type],
            "old_id",
            enable_tracing=settings.enable_tracing,
        ),
        StatusAnnotator(source, enable_tracing=settings.enable_tracing),
        event_type,
        batch_size=settings.export_batch_size,
        keep_alive=settings.scroll_keep_alive,
        enable_tracing=settings.enable_tracing,
    )
    final = await job.execute(_log_progress)
    logger.info(
        "Export of %s finished: %d created, %d failed",
        event_type.value,
        final.created,
        final.failed,
    )
    return 0


async def run_bot_flag_sync(
    settings: Settings,
    core: AsyncEngine,
    analytics: AsyncEngine,
    es: AsyncElasticsearch,
) -> int:
    source = ElasticsearchSourceStore(
        es, settings.stats_index, enable_tracing=settings.enable_tracing
    )
    job = BotFlagSync(
        source,
        create_cursor_store(settings, core),
        analytics,
        batch_size=settings.export_batch_size,
        keep_alive=settings.scroll_keep_alive,
        enable_tracing=settings.enable_tracing,
    )
    final = await job.execute(_log_progress)
    logger.info(
        "Bot flag sync finished: %d clicks updated, %d reset",
        final.created,
        job.reset_count,
    )
    return 0


async def run_verify(
    settings: Settings,
    args: argparse.Namespace,
    core: AsyncEngine,
    analytics: AsyncEngine,
    es: AsyncElasticsearch,
) -> int:
    target = ReconciliationTarget(args.target)
    event_type = EventType(args.event_type) if args.event_type else None
    source = ElasticsearchSourceStore(
        es, settings.stats_index, enable_tracing=settings.enable_tracing
    )
    reporter = ReconciliationReporter(
        source,
        core if target is ReconciliationTarget.STAT_EVENT else analytics,
        target=target,
        event_type=event_type,
        enable_tracing=settings.enable_tracing,
    )

    if args.ids:
        spot = await reporter.check_ids(args.ids)
        return 1 if args.strict and not spot.is_consistent else 0

    job_name = args.job
    if job_name is None:
        job_name = (
            export_job_name(event_type)
            if target is ReconciliationTarget.ANALYTICS and event_type is not None
            else STAT_EVENT_JOB
        )
    start, end = await default_window(create_cursor_store(settings, core), job_name, args.days)
    logger.info("Verifying from %s to %s", start.isoformat(), end.isoformat())

    counts = await reporter.compare_counts(start, end)
    spot = await reporter.spot_check(start, end, args.sample_size)
    consistent = counts.is_consistent and spot.is_consistent
    logger.info(
        "Verification %s: %d count discrepancies, %d of %d sampled ids missing",
        "passed" if consistent else "found discrepancies",
        len(counts.discrepancies),
        len(spot.missing_ids),
        len(spot.results),
    )
    return 1 if args.strict and not consistent else 0


async def dispatch(args: argparse.Namespace, settings: Settings) -> int:
    """Open connections, run the selected command, release connections."""
    core = create_async_engine(settings.database_url_core)
    analytics = (
        core
        if settings.analytics_url == settings.database_url_core
        else create_async_engine(settings.analytics_url)
    )
    es = AsyncElasticsearch(settings.es_endpoint)
    try:
        if args.command == "backfill":
            return await run_backfill(settings, core, es)
        if args.command == "export":
            return await run_export(settings, core, analytics, es, EventType(args.event_type))
        if args.command == "sync-bot-flags":
            return await run_bot_flag_sync(settings, core, analytics, es)
        return await run_verify(settings, args, core, analytics, es)
    finally:
        await es.close()
        if analytics is not core:
            await analytics.dispose()
        await core.dispose()


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except StatMigrateError as e:
        print(f"statmigrate: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    try:
        return asyncio.run(dispatch(args, settings))
    except StatMigrateError as e:
        logger.error(
            "Fatal: %s",
            e,
            extra={"error_type": type(e).__name__, "recoverability": e.recoverability.value},
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
