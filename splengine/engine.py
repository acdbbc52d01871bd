import abc
import asyncio
import base64
import itertools
from typing import Any, Coroutine, Dict, Iterable, Optional, Tuple
from splengine.config import TimingPolicy
from splengine.fanout import ConsoleSink, FanoutSink, LineReceiver, open_channel
from splengine.utils import iso_now, json_line, log_debug

_transaction_ids = itertools.count(1)


class EngineError(Exception):
    pass


class ChunkDecodeError(EngineError):
    def __init__(self, data: bytes, reason: str = ""):
        super().__init__(f"chunk of {len(data)} bytes is not valid UTF-8: {reason}")
        self.data = data


class TransportError(EngineError):
    pass


class EndOfStream(TransportError):
    pass


def decode_chunk(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ChunkDecodeError(data, str(exc)) from exc


class Engine(abc.ABC):
    """A remote byte stream that takes scripted input.

    Subclasses provide byte-level ``read_byte``/``write_all`` and a
    ``TIMING`` policy; everything else (chunking, transactions, fan-out)
    lives here and is identical for every transport.
    """

    TIMING = TimingPolicy(idle_timeout=0.05, debounce_count=1)
    name = "engine"

    def __init__(self, timing: Optional[TimingPolicy] = None, transcript_path: Optional[str] = None):
        self.timing = timing if timing is not None else self.TIMING
        self.transcript_path = transcript_path
        self.in_transaction = False

    @abc.abstractmethod
    async def read_byte(self) -> bytes:
        """Return exactly one byte; raise EndOfStream once the remote is done."""

    @abc.abstractmethod
    async def write_all(self, data: bytes) -> None:
        ...

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _next_byte(self) -> bytes:
        # Timeouts raised by the transport itself are failures, not idle gaps.
        try:
            return await self.read_byte()
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{self.name} read failed: {exc}") from exc

    async def _drain_bytes(self) -> bytes:
        buf = bytearray()
        idle_hits = 0
        while True:
            try:
                byte = await asyncio.wait_for(self._next_byte(), self.timing.idle_timeout)
            except (asyncio.TimeoutError, EndOfStream):
                # One quiet period can be jitter; only a run of them ends the chunk.
                idle_hits += 1
                if idle_hits >= self.timing.debounce_count:
                    return bytes(buf)
                continue
            idle_hits = 0
            buf += byte

    async def read_drain(self) -> str:
        """Read until the stream has been idle for ``debounce_count`` timeouts in a row.

        The result may be empty. Invalid UTF-8 raises ChunkDecodeError; any
        transport failure other than an idle timeout or end of stream is
        raised immediately.
        """
        return decode_chunk(await self._drain_bytes())

    async def read_chunk(self) -> str:
        """Read one chunk of remote output.

        The first byte is awaited with no timeout at all, so a remote that
        stays silent blocks here indefinitely. Afterwards the chunk ends as
        in ``read_drain``. The result is never empty.
        """
        first = await self._next_byte()
        rest = await self._drain_bytes()
        return decode_chunk(first + rest)

    def run_with_channel(
        self,
        plan: Iterable[bytes],
        sink: Any = None,
    ) -> Tuple[LineReceiver, Coroutine[Any, Any, None]]:
        """Like ``run``, but also forward every received line over a channel.

        Nothing happens until the returned coroutine is awaited. The receiver
        is usable immediately and yields None once the transaction is over.
        """
        receiver, sender = open_channel()
        fanout = FanoutSink(sink if sink is not None else ConsoleSink(), sender)
        return receiver, self._transact(plan, fanout)

    async def run(self, plan: Iterable[bytes], sink: Any = None) -> None:
        """Execute a scripted exchange.

        1. Wait for a chunk from the remote stream and echo it.
        2. Write the next payload to the remote and echo it locally.
        3. Repeat until the plan is exhausted, then drain trailing output.
        """
        transaction = self.run_with_channel(plan, sink)[1]
        await transaction

    async def _transact(self, plan: Iterable[bytes], fanout: FanoutSink) -> None:
        if self.in_transaction:
            fanout.close()
            raise EngineError(f"{self.name} engine is already running a transaction")
        self.in_transaction = True
        txn_id = next(_transaction_ids)
        turns = 0
        self._log(txn_id, "SYS", {"event": "transaction_started", "timing": self._timing_info()})
        try:
            for payload in plan:
                payload = bytes(payload)
                chunk = await self.read_chunk()
                self._log(txn_id, "OUT", {"turn": turns, "chunk": chunk})
                await fanout.publish(chunk)

                results = await asyncio.gather(
                    self.write_all(payload),
                    fanout.echo_sent(payload),
                    return_exceptions=True,
                )
                for result in results:
                    if isinstance(result, BaseException):
                        raise result
                self._log(
                    txn_id,
                    "IN",
                    {"turn": turns, "payload_b64": base64.b64encode(payload).decode("ascii")},
                )
                turns += 1

            chunk = await self.read_drain()
            self._log(txn_id, "OUT", {"turn": turns, "chunk": chunk, "final": True})
            await fanout.publish(chunk)
        except Exception as exc:
            self._log(txn_id, "SYS", {"event": "transaction_failed", "turns": turns, "error": str(exc)})
            log_debug(f"{self.name} transaction {txn_id} failed after {turns} turn(s): {exc}")
            raise
        finally:
            fanout.close()
            self.in_transaction = False
        self._log(
            txn_id,
            "SYS",
            {
                "event": "transaction_finished",
                "turns": turns,
                "lines_forwarded": fanout.lines_forwarded,
                "lines_skipped": fanout.lines_skipped,
            },
        )

    def _timing_info(self) -> Dict[str, Any]:
        return {"idle_timeout": self.timing.idle_timeout, "debounce_count": self.timing.debounce_count}

    def _log(self, txn_id: int, direction: str, payload: Dict[str, Any]) -> None:
        if not self.transcript_path:
            return
        data = {"ts": iso_now(), "dir": direction, "engine": self.name, "txn_id": txn_id}
        data.update(payload)
        json_line(self.transcript_path, data)
