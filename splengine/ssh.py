import asyncio
import shlex
import sys
import threading
from pathlib import PurePosixPath
from typing import Any, BinaryIO, Callable, Dict, List, Optional, TextIO
import paramiko

from splengine.config import (
    BUFFER_SIZE, CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, READER_JOIN_TIMEOUT,
    SSH_TIMING, EngineConfig, TimingPolicy, config
)
from splengine.engine import EndOfStream, Engine, TransportError
from splengine.utils import log_debug, log_error


class SSHSession:
    def __init__(
        self,
        host: str,
        user: str,
        password: Optional[str] = None,
        port: int = 22,
        key_path: Optional[str] = None,
        key_passphrase: Optional[str] = None,
        verify_host_key: bool = True,
    ):
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.key_path = key_path
        self.key_passphrase = key_passphrase
        self.verify_host_key = verify_host_key
        self.client: Optional[paramiko.SSHClient] = None

    @classmethod
    def from_config(cls, cfg: EngineConfig = config) -> "SSHSession":
        return cls(
            host=cfg.SSH_HOST,
            user=cfg.SSH_USER,
            password=cfg.SSH_PASSWORD,
            port=cfg.SSH_PORT,
            key_path=cfg.SSH_KEY_PATH,
            key_passphrase=cfg.SSH_KEY_PASSPHRASE,
            verify_host_key=cfg.SSH_VERIFY_HOST_KEY,
        )

    def connect(self) -> None:
        self.close()
        self.client = paramiko.SSHClient()
        if self.verify_host_key:
            # Unknown hosts are rejected by paramiko's default policy.
            self.client.load_system_host_keys()
        else:
            self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs: Dict[str, Any] = {
            "hostname": self.host,
            "port": self.port,
            "username": self.user,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if self.password:
            connect_kwargs["password"] = self.password
        if self.key_path:
            connect_kwargs["key_filename"] = self.key_path
            if self.key_passphrase:
                connect_kwargs["passphrase"] = self.key_passphrase

        try:
            self.client.connect(**connect_kwargs)
        except (paramiko.SSHException, OSError) as exc:
            self.close()
            raise TransportError(f"ssh connect to {self.user}@{self.host}:{self.port} failed: {exc}") from exc

        transport = self.client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        log_debug(f"ssh connected to {self.user}@{self.host}:{self.port}")

    def is_alive(self) -> bool:
        if not self.client:
            return False
        transport = self.client.get_transport()
        return bool(transport and transport.is_active())

    def _require_transport(self) -> paramiko.Transport:
        transport = self.client.get_transport() if self.client else None
        if not transport or not transport.is_active():
            raise TransportError(f"ssh session to {self.host} is not connected")
        return transport

    def open_process(self, command: str) -> paramiko.Channel:
        transport = self._require_transport()
        try:
            channel = transport.open_session()
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(f"failed to launch {command!r}: {exc}") from exc
        return channel

    def command_output(self, command: str) -> str:
        self._require_transport()
        try:
            _, stdout, _ = self.client.exec_command(command, timeout=CONNECT_TIMEOUT)
            return stdout.read().decode("utf-8", errors="replace")
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(f"remote command {command!r} failed: {exc}") from exc

    def close(self) -> None:
        if self.client:
            self.client.close()
        self.client = None


class SSHEngine(Engine):
    """A process launched over an SSH session, driven through its stdin/stdout.

    A daemon thread pumps the channel into an ``asyncio.StreamReader`` so
    byte reads can be raced against the idle timeout without losing data.
    A second one copies the remote stderr to the local ``stderr`` stream.
    """

    TIMING = SSH_TIMING
    name = "ssh"

    def __init__(
        self,
        session: SSHSession,
        channel: paramiko.Channel,
        path: str,
        timing: Optional[TimingPolicy] = None,
        transcript_path: Optional[str] = None,
        stderr: Optional[BinaryIO] = None,
    ):
        super().__init__(timing=timing, transcript_path=transcript_path)
        self.session = session
        self.channel = channel
        self.path = path
        self.process_name = PurePosixPath(path).name
        self.stderr = stderr if stderr is not None else sys.stderr.buffer
        self.reader = asyncio.StreamReader()
        self._loop = asyncio.get_running_loop()
        self._threads: List[threading.Thread] = []

    @classmethod
    async def spawn(
        cls,
        session: SSHSession,
        path: str,
        timing: Optional[TimingPolicy] = None,
        transcript_path: Optional[str] = None,
        stderr: Optional[BinaryIO] = None,
    ) -> "SSHEngine":
        loop = asyncio.get_running_loop()
        channel = await loop.run_in_executor(None, session.open_process, path)
        engine = cls(session, channel, path, timing=timing, transcript_path=transcript_path, stderr=stderr)
        engine.start()
        return engine

    @classmethod
    async def spawn_paused(
        cls,
        session: SSHSession,
        path: str,
        timing: Optional[TimingPolicy] = None,
        transcript_path: Optional[str] = None,
        stdin: Optional[TextIO] = None,
        stderr: Optional[BinaryIO] = None,
    ) -> "SSHEngine":
        """Like ``spawn``, then report the remote PID and wait for ENTER.

        Gives a chance to attach a debugger before the exchange starts.
        """
        engine = await cls.spawn(session, path, timing=timing, transcript_path=transcript_path, stderr=stderr)
        await engine.report_pid(stdin=stdin)
        return engine

    def start(self) -> None:
        for target, role in ((self._reader_loop, "reader"), (self._stderr_loop, "stderr")):
            thread = threading.Thread(target=target, name=f"ssh-{role}-{self.process_name}", daemon=True)
            self._threads.append(thread)
            thread.start()

    def _post(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop already closed; nobody is left to read.
            pass

    def _reader_loop(self) -> None:
        try:
            while True:
                data = self.channel.recv(BUFFER_SIZE)
                if not data:
                    break
                self._post(self.reader.feed_data, data)
        except (paramiko.SSHException, OSError) as exc:
            log_debug(f"reader for {self.process_name} stopped: {exc}")
            self._post(self.reader.set_exception, TransportError(f"ssh read failed: {exc}"))
            return
        self._post(self.reader.feed_eof)

    def _stderr_loop(self) -> None:
        # paramiko only reopens the window as stderr is consumed.
        try:
            while True:
                data = self.channel.recv_stderr(BUFFER_SIZE)
                if not data:
                    break
                self.stderr.write(data)
                self.stderr.flush()
        except (paramiko.SSHException, OSError) as exc:
            log_debug(f"stderr reader for {self.process_name} stopped: {exc}")

    async def read_byte(self) -> bytes:
        try:
            return await self.reader.readexactly(1)
        except asyncio.IncompleteReadError as exc:
            raise EndOfStream(f"{self.process_name} closed its output") from exc

    async def write_all(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.channel.sendall, data)
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(f"write to {self.process_name} failed: {exc}") from exc

    async def report_pid(self, stdin: Optional[TextIO] = None) -> Optional[str]:
        loop = asyncio.get_running_loop()
        output = await loop.run_in_executor(
            None, self.session.command_output, f"pgrep {shlex.quote(self.process_name)}"
        )
        pids = [line.strip() for line in output.split("\n") if line.strip()]
        if not pids:
            log_error(f"pgrep found no process named {self.process_name}")
            return None
        pid = pids[-1]
        print(f"PID is {pid}. Waiting . . .", flush=True)
        print("[Press ENTER to continue]", flush=True)
        await loop.run_in_executor(None, (stdin or sys.stdin).readline)
        return pid

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.channel.close)
        while self._threads:
            thread = self._threads.pop()
            await loop.run_in_executor(None, thread.join, READER_JOIN_TIMEOUT)
            if thread.is_alive():
                log_error(f"{thread.name} thread did not stop")
