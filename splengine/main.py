import sys
import asyncio
import argparse
from typing import Any, List, Optional
from splengine.config import (
    MAX_DEBOUNCE_COUNT, MAX_IDLE_TIMEOUT, MIN_DEBOUNCE_COUNT, MIN_IDLE_TIMEOUT,
    SSH_TIMING, TCP_TIMING, config
)
from splengine.engine import Engine, EngineError
from splengine.fanout import LineReceiver
from splengine.utils import clamp, hex_to_bytes, iso_now, json_line, log_error


def text_payload(value: str) -> bytes:
    return value.encode("utf-8") + b"\n"

def hex_payload(value: str) -> bytes:
    try:
        return hex_to_bytes(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid hex payload {value!r}: {exc}")

def script_payloads(path: str) -> List[bytes]:
    try:
        with open(path, "rb") as handle:
            return [line + b"\n" for line in handle.read().splitlines()]
    except OSError as exc:
        raise argparse.ArgumentTypeError(f"cannot read script {path!r}: {exc}")

def build_plan(items: Optional[List[Any]]) -> List[bytes]:
    plan: List[bytes] = []
    for item in items or []:
        if isinstance(item, list):
            plan.extend(item)
        else:
            plan.append(item)
    return plan


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    plan = parser.add_argument_group("plan (payloads are sent in the order given)")
    plan.add_argument("--send", dest="payloads", action="append", type=text_payload, metavar="TEXT",
                      help="send TEXT followed by a newline")
    plan.add_argument("--hex", dest="payloads", action="append", type=hex_payload, metavar="HEX",
                      help="send raw bytes given as hex")
    plan.add_argument("--script", dest="payloads", action="append", type=script_payloads, metavar="FILE",
                      help="send each line of FILE as its own payload")
    parser.add_argument("--idle-timeout", type=float, help="seconds of silence that may end a chunk")
    parser.add_argument("--debounce", type=int, help="consecutive idle timeouts that end a chunk")
    parser.add_argument("--transcript", help="append a JSON-lines transcript to this file")
    parser.add_argument("--lines", help="append every received line as JSON to this file")
    parser.add_argument("--verbose", action="store_true", help="log diagnostics to stderr")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Script an interactive session against a TCP service or a remote process over SSH"
    )
    sub = parser.add_subparsers(dest="transport", required=True)

    tcp_parser = sub.add_parser("tcp", help="talk to a TCP service")
    tcp_parser.add_argument("address", help="HOST:PORT to connect to")
    _add_common_arguments(tcp_parser)

    ssh_parser = sub.add_parser("ssh", help="launch a remote executable over SSH and talk to it")
    ssh_parser.add_argument("executable", help="remote path of the program to launch")
    ssh_parser.add_argument("--host", help="SSH host (overrides SSH_HOST env)")
    ssh_parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    ssh_parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    ssh_parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    ssh_parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    ssh_parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    ssh_parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    ssh_parser.add_argument("--pause", action="store_true",
                            help="report the remote PID and wait for ENTER before starting")
    _add_common_arguments(ssh_parser)
    return parser


def apply_args(args: argparse.Namespace) -> None:
    if args.idle_timeout is not None:
        config.IDLE_TIMEOUT = clamp(args.idle_timeout, TCP_TIMING.idle_timeout, MIN_IDLE_TIMEOUT, MAX_IDLE_TIMEOUT)
    if args.debounce is not None:
        config.DEBOUNCE_COUNT = clamp(args.debounce, 1, MIN_DEBOUNCE_COUNT, MAX_DEBOUNCE_COUNT, kind=int)
    if args.transcript:
        config.TRANSCRIPT_PATH = args.transcript
    if args.verbose:
        config.VERBOSE = True

    if args.transport == "ssh":
        if args.host: config.SSH_HOST = args.host
        if args.user: config.SSH_USER = args.user
        if args.password: config.SSH_PASSWORD = args.password
        if args.key: config.SSH_KEY_PATH = args.key
        if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
        if args.port: config.SSH_PORT = args.port
        if args.no_verify_host:
            config.SSH_VERIFY_HOST_KEY = False


async def _collect_lines(receiver: LineReceiver, path: str) -> None:
    async for line in receiver:
        json_line(path, {"ts": iso_now(), "line": line})

async def drive(engine: Engine, plan: List[bytes], lines_path: Optional[str] = None) -> None:
    try:
        if not lines_path:
            await engine.run(plan)
            return
        receiver, transaction = engine.run_with_channel(plan)
        collector = asyncio.ensure_future(_collect_lines(receiver, lines_path))
        try:
            await transaction
        finally:
            await collector
    finally:
        await engine.close()

async def _run_tcp(args: argparse.Namespace, plan: List[bytes]) -> None:
    from splengine.tcp import tcp
    engine = await tcp(
        args.address,
        timing=config.timing_for(TCP_TIMING),
        transcript_path=config.TRANSCRIPT_PATH,
    )
    await drive(engine, plan, args.lines)

async def _run_ssh(args: argparse.Namespace, plan: List[bytes]) -> None:
    from splengine.ssh import SSHEngine, SSHSession
    session = SSHSession.from_config(config)
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, session.connect)
    try:
        spawn = SSHEngine.spawn_paused if args.pause else SSHEngine.spawn
        engine = await spawn(
            session,
            args.executable,
            timing=config.timing_for(SSH_TIMING),
            transcript_path=config.TRANSCRIPT_PATH,
        )
        await drive(engine, plan, args.lines)
    finally:
        session.close()


def main(argv: Optional[List[str]] = None) -> int:
    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args(argv)
    apply_args(args)

    if args.transport == "ssh":
        if not config.SSH_HOST:
            parser.error("SSH host is required (via --host or SSH_HOST env)")
        if not config.SSH_USER:
            parser.error("SSH user is required (via --user or SSH_USER env)")
    else:
        from splengine.tcp import parse_address
        try:
            parse_address(args.address)
        except ValueError as exc:
            parser.error(str(exc))

    plan = build_plan(args.payloads)
    runner = _run_ssh if args.transport == "ssh" else _run_tcp
    try:
        asyncio.run(runner(args, plan))
    except EngineError as exc:
        log_error(f"session failed: {exc}")
        return 1
    except OSError as exc:
        # Local echo target went away (closed pipe, full disk).
        log_error(f"local output failed: {exc}")
        return 1
    except KeyboardInterrupt:
        log_error("interrupted")
        return 130
    return 0

if __name__ == "__main__":
    sys.exit(main())
