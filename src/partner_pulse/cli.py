"""Command-line entry points for schedulers and operators.

Usage:
    partner-pulse init-db [--migrate]
    partner-pulse map-channel C0123 <partner-uuid> --name acme-shared
    partner-pulse create-run --triggered-by cron
    partner-pulse process-chunk [--run-id <uuid>]
    partner-pulse sync-channel C0123
    partner-pulse cancel-run <uuid>
    partner-pulse status
    partner-pulse compute-range --from 2025-01-01 --to 2025-01-31 [--channel C0123]
    partner-pulse compute-daily
    partner-pulse reclassify U0123 <staff-uuid> [U0456 <staff-uuid> ...]
    partner-pulse unclassify U0123 <staff-uuid>
    partner-pulse summary [--from ... --to ... | --days 30]

Every command prints one JSON document on stdout; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import uuid
from datetime import date, timedelta
from typing import Any, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from partner_pulse.analytics.engine import AnalyticsEngine
from partner_pulse.analytics.summary import get_analytics_summary
from partner_pulse.config import configure_logging, settings
from partner_pulse.db.models import utcnow
from partner_pulse.db.session import close_db, init_db
from partner_pulse.db.store import (
    MessageStore,
    MetricStore,
    SyncRunConflictError,
    SyncRunNotFoundError,
    SyncStateStore,
)
from partner_pulse.observability.metrics import get_metrics
from partner_pulse.slack.client import SlackClient
from partner_pulse.slack.errors import SlackError
from partner_pulse.sync.coordinator import SyncCoordinator
from partner_pulse.sync.reclassify import (
    bulk_reclassify_staff_messages,
    unclassify_staff_messages,
)

logger = structlog.get_logger()

DEFAULT_SUMMARY_DAYS = 30


def _emit(payload: Any) -> None:
    print(json.dumps(payload, default=str, indent=2))


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value!r}")


def _parse_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a UUID: {value!r}")


def _pairs(values: Sequence[str]) -> list[tuple[str, uuid.UUID]]:
    if not values or len(values) % 2:
        raise argparse.ArgumentTypeError("expected SLACK_USER_ID STAFF_ID pairs")
    return [
        (values[i], _parse_uuid(values[i + 1]))
        for i in range(0, len(values), 2)
    ]


# ═══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

async def cmd_init_db(args: argparse.Namespace) -> int:
    if args.migrate:
        import alembic.command
        import alembic.config

        alembic_cfg = alembic.config.Config(args.alembic_config)
        # env.py drives its own event loop, so keep it off this one.
        await asyncio.to_thread(alembic.command.upgrade, alembic_cfg, "head")
        _emit({"ok": True, "mode": "migrate"})
    else:
        await init_db()
        _emit({"ok": True, "mode": "create_all"})
    return 0


async def cmd_map_channel(args: argparse.Namespace) -> int:
    state = await SyncStateStore().map_channel(
        args.channel_id, args.name or args.channel_id, args.partner_id
    )
    _emit(state.to_dict())
    return 0


async def cmd_create_run(args: argparse.Namespace) -> int:
    run = await SyncCoordinator().create_sync_run(args.triggered_by)
    _emit(run.to_dict())
    return 0


async def cmd_process_chunk(args: argparse.Namespace) -> int:
    coordinator = SyncCoordinator(SlackClient())
    if args.run_id is None:
        outcome = await coordinator.run_scheduled_chunk(args.triggered_by)
        _emit(outcome.to_dict())
    else:
        await coordinator.require_run(args.run_id)
        summary = await coordinator.process_chunk(args.run_id)
        _emit(summary.to_dict())
    return 0


async def cmd_sync_channel(args: argparse.Namespace) -> int:
    result = await SyncCoordinator(SlackClient()).sync_single_channel(args.channel_id)
    _emit(result.to_dict())
    return 0 if result.success else 1


async def cmd_cancel_run(args: argparse.Namespace) -> int:
    cancelled = await SyncCoordinator().cancel_sync_run(args.run_id)
    _emit({"run_id": args.run_id, "cancelled": cancelled})
    return 0 if cancelled else 1


async def cmd_status(args: argparse.Namespace) -> int:
    status = await SyncCoordinator().get_sync_status()
    _emit(status.to_dict())
    return 0


async def cmd_compute_range(args: argparse.Namespace) -> int:
    if args.date_to < args.date_from:
        logger.error("invalid_date_range", date_from=args.date_from, date_to=args.date_to)
        return 2
    result = await AnalyticsEngine().compute_all_channels(
        args.date_from, args.date_to, channel_id=args.channel
    )
    _emit(result.to_dict())
    return 0 if result.failed == 0 else 1


async def cmd_compute_daily(args: argparse.Namespace) -> int:
    result = await AnalyticsEngine().compute_daily_rolling_window()
    _emit(result.to_dict())
    return 0 if result.failed == 0 else 1


async def cmd_reclassify(args: argparse.Namespace) -> int:
    updated = await bulk_reclassify_staff_messages(MessageStore(), _pairs(args.pairs))
    _emit({"updated": updated})
    return 0


async def cmd_unclassify(args: argparse.Namespace) -> int:
    updated = await unclassify_staff_messages(MessageStore(), args.slack_user_id, args.staff_id)
    _emit({"updated": updated})
    return 0


async def cmd_summary(args: argparse.Namespace) -> int:
    date_to = args.date_to or utcnow().date() - timedelta(days=1)
    date_from = args.date_from or date_to - timedelta(days=args.days - 1)
    summary = await get_analytics_summary(MetricStore(), date_from, date_to)
    _emit(summary.to_dict())
    return 0


# ═══════════════════════════════════════════════════════════════════════════════
# PARSER
# ═══════════════════════════════════════════════════════════════════════════════

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="partner-pulse",
        description="Slack message-metadata sync and response-time analytics",
    )
    parser.add_argument("--log-level", default=None, help="Override PULSE_LOG_LEVEL")
    parser.add_argument(
        "--metrics", action="store_true",
        help="Print a metrics snapshot to stderr after the command",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create tables (dev) or run migrations")
    p.add_argument("--migrate", action="store_true", help="Run Alembic migrations")
    p.add_argument("--alembic-config", default="alembic.ini")
    p.set_defaults(handler=cmd_init_db)

    p = sub.add_parser("map-channel", help="Map a Slack channel to a partner")
    p.add_argument("channel_id")
    p.add_argument("partner_id", type=_parse_uuid)
    p.add_argument("--name", default=None, help="Channel name (defaults to the id)")
    p.set_defaults(handler=cmd_map_channel)

    p = sub.add_parser("create-run", help="Start a chunked sync run")
    p.add_argument("--triggered-by", default="manual")
    p.set_defaults(handler=cmd_create_run)

    p = sub.add_parser("process-chunk", help="Process one chunk of a sync run")
    p.add_argument("--run-id", type=_parse_uuid, default=None,
                   help="Defaults to the newest pending/running run")
    p.add_argument("--triggered-by", default="cron")
    p.set_defaults(handler=cmd_process_chunk)

    p = sub.add_parser("sync-channel", help="Sync one channel outside any run")
    p.add_argument("channel_id")
    p.set_defaults(handler=cmd_sync_channel)

    p = sub.add_parser("cancel-run", help="Cancel a pending or running sync run")
    p.add_argument("run_id", type=_parse_uuid)
    p.set_defaults(handler=cmd_cancel_run)

    p = sub.add_parser("status", help="Latest run and per-channel sync state")
    p.set_defaults(handler=cmd_status)

    p = sub.add_parser("compute-range", help="Compute response metrics for a date range")
    p.add_argument("--from", dest="date_from", type=_parse_date, required=True)
    p.add_argument("--to", dest="date_to", type=_parse_date, required=True)
    p.add_argument("--channel", default=None)
    p.set_defaults(handler=cmd_compute_range)

    p = sub.add_parser("compute-daily", help="Recompute the rolling lookahead window")
    p.set_defaults(handler=cmd_compute_daily)

    p = sub.add_parser("reclassify", help="Attribute a Slack user's messages to staff")
    p.add_argument("pairs", nargs="+", metavar="SLACK_USER_ID STAFF_ID")
    p.set_defaults(handler=cmd_reclassify)

    p = sub.add_parser("unclassify", help="Remove a staff attribution")
    p.add_argument("slack_user_id")
    p.add_argument("staff_id", type=_parse_uuid)
    p.set_defaults(handler=cmd_unclassify)

    p = sub.add_parser("summary", help="Dashboard KPIs and pod-leader leaderboard")
    p.add_argument("--from", dest="date_from", type=_parse_date, default=None)
    p.add_argument("--to", dest="date_to", type=_parse_date, default=None)
    p.add_argument("--days", type=int, default=DEFAULT_SUMMARY_DAYS)
    p.set_defaults(handler=cmd_summary)

    return parser


async def run_command(args: argparse.Namespace) -> int:
    try:
        return await args.handler(args)
    except SyncRunConflictError as e:
        logger.warning("sync_run_conflict", error=str(e))
        _emit({"error": str(e), "run_id": e.run_id, "status": e.status})
        return 1
    except SyncRunNotFoundError as e:
        logger.error("sync_run_not_found", error=str(e))
        return 1
    except argparse.ArgumentTypeError as e:
        logger.error("invalid_arguments", error=str(e))
        return 2
    except (SlackError, SQLAlchemyError) as e:
        logger.error("command_failed", command=args.command, error=str(e))
        return 1
    finally:
        if args.metrics:
            snapshot = await get_metrics().snapshot()
            print(json.dumps(snapshot, default=str), file=sys.stderr)
        await close_db()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    logger.debug("cli_start", command=args.command, env=settings.env)
    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(main())
