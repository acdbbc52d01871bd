import asyncio
from typing import Optional, Tuple
from splengine.config import CONNECT_TIMEOUT, TCP_TIMING, TimingPolicy
from splengine.engine import EndOfStream, Engine, TransportError
from splengine.utils import log_debug


def parse_address(address: str) -> Tuple[str, int]:
    text = (address or "").strip()
    if text.startswith("["):
        host, sep, port_text = text[1:].partition("]:")
    else:
        host, sep, port_text = text.rpartition(":")
    if not sep or not host or not port_text:
        raise ValueError(f"address must look like host:port, got {address!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in address {address!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in address {address!r}")
    return host, port


class TcpEngine(Engine):
    TIMING = TCP_TIMING
    name = "tcp"

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        timing: Optional[TimingPolicy] = None,
        transcript_path: Optional[str] = None,
    ):
        super().__init__(timing=timing, transcript_path=transcript_path)
        self.reader = reader
        self.writer = writer
        self.peer = writer.get_extra_info("peername")

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        timing: Optional[TimingPolicy] = None,
        transcript_path: Optional[str] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
    ) -> "TcpEngine":
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), connect_timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            reason = str(exc) or "timed out"
            raise TransportError(f"connect to {host}:{port} failed: {reason}") from exc
        log_debug(f"connected to {host}:{port}")
        return cls(reader, writer, timing=timing, transcript_path=transcript_path)

    async def read_byte(self) -> bytes:
        try:
            return await self.reader.readexactly(1)
        except asyncio.IncompleteReadError as exc:
            raise EndOfStream(f"connection to {self.peer} closed by peer") from exc

    async def write_all(self, data: bytes) -> None:
        try:
            self.writer.write(data)
            await self.writer.drain()
        except OSError as exc:
            raise TransportError(f"write to {self.peer} failed: {exc}") from exc

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as exc:
            log_debug(f"close of {self.peer} reported: {exc}")


async def tcp(
    address: str,
    timing: Optional[TimingPolicy] = None,
    transcript_path: Optional[str] = None,
) -> TcpEngine:
    """Open a TCP connection to ``host:port`` and wrap it as an engine."""
    host, port = parse_address(address)
    return await TcpEngine.connect(host, port, timing=timing, transcript_path=transcript_path)
