import argparse
import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dam.core.config import settings
from dam.core.logging_config import configure_logging
from dam.core.redis_client import close_redis
from dam.db.session import SessionLocal
from dam.services import operations

Command = Callable[[AsyncSession, argparse.Namespace], Awaitable[dict[str, Any]]]


def _parse_uuid(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID((raw or "").strip())
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid UUID: {raw}")


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise argparse.ArgumentTypeError("Value must be at least 1")
    return value


async def _watchdog(session: AsyncSession, args: argparse.Namespace) -> dict[str, Any]:
    return await operations.watchdog(session, limit=args.limit)


async def _auto_recover(session: AsyncSession, args: argparse.Namespace) -> dict[str, Any]:
    return await operations.auto_recover(session, limit=args.limit)


async def _repair_stuck(session: AsyncSession, args: argparse.Namespace) -> dict[str, Any]:
    return await operations.repair_stuck(session, limit=args.limit)


async def _reconcile(session: AsyncSession, args: argparse.Namespace) -> dict[str, Any]:
    return await operations.reconcile_batch(session, asset_id=args.asset_id, limit=args.limit or 500)


async def _thumbnail_timeouts(session: AsyncSession, args: argparse.Namespace) -> dict[str, Any]:
    return await operations.thumbnail_timeout_sweep(session)


async def _reliability_report(session: AsyncSession, args: argparse.Namespace) -> dict[str, Any]:
    return await operations.reliability_report(session, window_days=args.window_days)


async def _retry_due(session: AsyncSession, args: argparse.Namespace) -> dict[str, Any]:
    return await operations.retry_due(session, limit=args.limit or 50)


COMMANDS: dict[str, Command] = {
    "watchdog": _watchdog,
    "auto-recover": _auto_recover,
    "repair-stuck": _repair_stuck,
    "reconcile": _reconcile,
    "thumbnail-timeouts": _thumbnail_timeouts,
    "reliability-report": _reliability_report,
    "retry-due": _retry_due,
}


def _add_limit(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--limit", type=_positive_int, default=None, help="Maximum rows to process")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Asset pipeline operations")
    subparsers = parser.add_subparsers(dest="command")

    _add_limit(subparsers.add_parser("watchdog", help="Open incidents for stuck assets and dead-lettered jobs"))
    _add_limit(subparsers.add_parser("auto-recover", help="Repair open incidents and escalate to tickets"))
    _add_limit(subparsers.add_parser("repair-stuck", help="Reconcile stuck assets and re-dispatch their stage job"))

    reconcile = subparsers.add_parser("reconcile", help="Reconcile asset state from evidence")
    reconcile.add_argument("--asset-id", type=_parse_uuid, default=None, help="Reconcile a single asset")
    _add_limit(reconcile)

    subparsers.add_parser("thumbnail-timeouts", help="Fail thumbnails stuck in processing")

    report = subparsers.add_parser("reliability-report", help="Print reliability metrics")
    report.add_argument("--window-days", type=_positive_int, default=7, help="Reporting window in days")

    _add_limit(subparsers.add_parser("retry-due", help="Requeue failed and deferred jobs whose retry time has come"))
    return parser


async def _run(command: Command, args: argparse.Namespace) -> dict[str, Any]:
    try:
        async with SessionLocal() as session:
            return await command(session, args)
    finally:
        await close_redis()


def _run_cli_command(args: argparse.Namespace) -> bool:
    command = COMMANDS.get(args.command or "")
    if command is None:
        return False
    try:
        summary = asyncio.run(_run(command, args))
    except ValueError as exc:
        raise SystemExit(str(exc))
    print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    return True


def main():
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
