from __future__ import annotations

import argparse
import json
import uuid

import pytest

from dam import cli


class _SessionStub:
    async def __aenter__(self) -> "_SessionStub":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        return None


def _patch_runtime(monkeypatch: pytest.MonkeyPatch) -> dict[str, int]:
    calls = {"close_redis": 0}

    async def _close_redis() -> None:
        calls["close_redis"] += 1

    monkeypatch.setattr(cli, "SessionLocal", _SessionStub)
    monkeypatch.setattr(cli, "close_redis", _close_redis)
    return calls


def test_parser_accepts_every_command() -> None:
    parser = cli._build_parser()

    for command in cli.COMMANDS:
        args = parser.parse_args([command])
        assert args.command == command

    asset_id = uuid.uuid4()
    args = parser.parse_args(["reconcile", "--asset-id", str(asset_id), "--limit", "5"])
    assert args.asset_id == asset_id
    assert args.limit == 5

    args = parser.parse_args(["reliability-report"])
    assert args.window_days == 7


@pytest.mark.parametrize(
    "argv",
    [
        ["reconcile", "--asset-id", "nope"],
        ["watchdog", "--limit", "0"],
        ["reliability-report", "--window-days", "-3"],
    ],
)
def test_parser_rejects_bad_values(argv: list[str]) -> None:
    with pytest.raises(SystemExit):
        cli._build_parser().parse_args(argv)


def test_run_cli_command_prints_sorted_json_summary(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    calls = _patch_runtime(monkeypatch)
    seen: dict[str, object] = {}

    async def _fake_watchdog(session: object, args: argparse.Namespace) -> dict[str, object]:
        seen["session"] = session
        seen["limit"] = args.limit
        return {"stuck_assets": 2, "dead_letter_jobs": 0}

    monkeypatch.setitem(cli.COMMANDS, "watchdog", _fake_watchdog)

    assert cli._run_cli_command(argparse.Namespace(command="watchdog", limit=10)) is True

    assert isinstance(seen["session"], _SessionStub)
    assert seen["limit"] == 10
    assert calls["close_redis"] == 1
    out = capsys.readouterr().out
    assert json.loads(out) == {"dead_letter_jobs": 0, "stuck_assets": 2}
    assert out.index("dead_letter_jobs") < out.index("stuck_assets")


def test_run_cli_command_turns_value_error_into_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _patch_runtime(monkeypatch)

    async def _missing(_session: object, _args: argparse.Namespace) -> dict[str, object]:
        raise ValueError("Asset not found")

    monkeypatch.setitem(cli.COMMANDS, "reconcile", _missing)

    with pytest.raises(SystemExit, match="Asset not found"):
        cli._run_cli_command(argparse.Namespace(command="reconcile", asset_id=uuid.uuid4(), limit=None))
    assert calls["close_redis"] == 1


def test_run_cli_command_without_command_returns_false() -> None:
    assert cli._run_cli_command(argparse.Namespace(command=None)) is False
    assert cli._run_cli_command(argparse.Namespace(command="explode")) is False


def test_reconcile_command_defaults_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    async def _fake_reconcile_batch(_session: object, *, asset_id: uuid.UUID | None, limit: int) -> dict[str, object]:
        captured.update(asset_id=asset_id, limit=limit)
        return {"scanned": 0}

    monkeypatch.setattr(cli.operations, "reconcile_batch", _fake_reconcile_batch)
    _patch_runtime(monkeypatch)

    assert cli._run_cli_command(argparse.Namespace(command="reconcile", asset_id=None, limit=None)) is True
    assert captured == {"asset_id": None, "limit": 500}
