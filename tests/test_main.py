"""Command-line parsing and the session driver used by the CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from fakes import IDLE, ScriptedEngine

import splengine.main as cli
from splengine.config import EngineConfig, TimingPolicy
from splengine.engine import TransportError
from splengine.fanout import ConsoleSink


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch: pytest.MonkeyPatch) -> EngineConfig:
    cfg = EngineConfig()
    monkeypatch.setattr(cli, "config", cfg)
    for name in ("SSH_HOST", "SSH_USER", "SSH_PASSWORD", "SPLENGINE_IDLE_TIMEOUT", "SPLENGINE_DEBOUNCE"):
        monkeypatch.delenv(name, raising=False)
    return cfg


def test_plan_keeps_flag_order(tmp_path: Path) -> None:
    script = tmp_path / "plan.txt"
    script.write_bytes(b"status\nquit\n")
    args = cli.build_parser().parse_args(
        ["tcp", "127.0.0.1:23", "--send", "admin", "--hex", "0x1b5b41", "--script", str(script), "--send", "bye"]
    )
    assert cli.build_plan(args.payloads) == [b"admin\n", b"\x1b\x5b\x41", b"status\n", b"quit\n", b"bye\n"]


def test_no_payloads_is_an_empty_plan() -> None:
    args = cli.build_parser().parse_args(["tcp", "127.0.0.1:23"])
    assert cli.build_plan(args.payloads) == []


def test_bad_hex_is_rejected(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.build_parser().parse_args(["tcp", "h:1", "--hex", "xyz"])
    assert excinfo.value.code == 2
    assert "invalid hex payload" in capsys.readouterr().err


def test_missing_script_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["tcp", "h:1", "--script", str(tmp_path / "nope.txt")])


def test_apply_args_overrides_config(fresh_config: EngineConfig) -> None:
    args = cli.build_parser().parse_args(
        ["ssh", "/opt/app", "--host", "box", "--user", "ops", "--port", "2222",
         "--no-verify-host", "--idle-timeout", "0.2", "--debounce", "4", "--transcript", "t.jsonl"]
    )
    cli.apply_args(args)
    assert fresh_config.SSH_HOST == "box"
    assert fresh_config.SSH_USER == "ops"
    assert fresh_config.SSH_PORT == 2222
    assert fresh_config.SSH_VERIFY_HOST_KEY is False
    assert fresh_config.timing_for(TimingPolicy(0.05, 3)) == TimingPolicy(0.2, 4)
    assert fresh_config.TRANSCRIPT_PATH == "t.jsonl"


def test_ssh_requires_host() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["ssh", "/opt/app", "--user", "ops"])
    assert excinfo.value.code == 2


def test_tcp_requires_valid_address() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["tcp", "no-port-here"])
    assert excinfo.value.code == 2


def test_engine_failure_exits_with_status_one(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    async def refuse(args, plan) -> None:
        raise TransportError("connect to 127.0.0.1:9 failed: refused")

    monkeypatch.setattr(cli, "_run_tcp", refuse)
    assert cli.main(["tcp", "127.0.0.1:9", "--send", "x"]) == 1
    assert "session failed: connect to 127.0.0.1:9 failed" in capsys.readouterr().err


def test_broken_stdout_exits_with_status_one(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    engine = ScriptedEngine([b"login:", IDLE, IDLE])

    async def run_scripted(args, plan) -> None:
        await cli.drive(engine, plan)

    def broken_pipe(self, data: bytes) -> None:
        raise BrokenPipeError(32, "Broken pipe")

    monkeypatch.setattr(cli, "_run_tcp", run_scripted)
    monkeypatch.setattr(ConsoleSink, "_write_blocking", broken_pipe)
    assert cli.main(["tcp", "127.0.0.1:23", "--send", "admin"]) == 1
    assert "local output failed" in capsys.readouterr().err
    assert engine.closed
    assert engine.written == []


@pytest.mark.asyncio()
async def test_drive_echoes_to_stdout_and_closes(capsys: pytest.CaptureFixture[str]) -> None:
    engine = ScriptedEngine([b"login:", IDLE, IDLE, b"ok\n"])
    await cli.drive(engine, [b"admin"])
    assert engine.closed
    assert capsys.readouterr().out == "login:admin\nok\n"


@pytest.mark.asyncio()
async def test_drive_writes_lines_file(tmp_path: Path) -> None:
    lines_path = tmp_path / "lines.jsonl"
    engine = ScriptedEngine([b"a\nb", IDLE, IDLE, b"c"])
    await cli.drive(engine, [b"go"], str(lines_path))
    lines = [json.loads(line)["line"] for line in lines_path.read_text(encoding="utf-8").splitlines()]
    assert lines == ["a", "b", "c"]
    assert engine.closed


@pytest.mark.asyncio()
async def test_drive_closes_engine_on_failure() -> None:
    engine = ScriptedEngine([], eof=True)
    with pytest.raises(TransportError):
        await cli.drive(engine, [b"go"])
    assert engine.closed
