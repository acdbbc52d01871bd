import asyncio
import sys
import weakref
from typing import Any, BinaryIO, Optional, Tuple
from splengine.utils import log_debug, split_lines

_CLOSED = object()


class LineReceiver:
    """Consumer end of a line channel.

    Closing it, or simply dropping every reference to it, tells the producer
    to stop forwarding. Lines already queued stay readable until then.
    """

    def __init__(self):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._finished = False
        self.closed = False

    def _deliver(self, item: Any) -> None:
        self._queue.put_nowait(item)

    async def recv(self) -> Optional[str]:
        if self._finished:
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            return None
        return item

    def get_nowait(self) -> Optional[str]:
        """Return the next queued line, None once the producer is done.

        Raises ``asyncio.QueueEmpty`` if the producer is still running and
        nothing is waiting.
        """
        if self._finished:
            return None
        item = self._queue.get_nowait()
        if item is _CLOSED:
            self._finished = True
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # The sender stops delivering, so end the stream here; queued lines come first.
        self._deliver(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        line = await self.recv()
        if line is None:
            raise StopAsyncIteration
        return line


class LineSender:
    def __init__(self, receiver: LineReceiver):
        self._receiver = weakref.ref(receiver)
        self._done = False

    def is_closed(self) -> bool:
        receiver = self._receiver()
        return receiver is None or receiver.closed

    def send(self, line: str) -> bool:
        receiver = self._receiver()
        if receiver is None or receiver.closed or self._done:
            return False
        receiver._deliver(line)
        return True

    def close(self) -> None:
        if self._done:
            return
        self._done = True
        receiver = self._receiver()
        if receiver is not None and not receiver.closed:
            receiver._deliver(_CLOSED)


def open_channel() -> Tuple[LineReceiver, LineSender]:
    receiver = LineReceiver()
    return receiver, LineSender(receiver)


class ConsoleSink:
    """Local echo target; writes run in the loop's default executor."""

    def __init__(self, stream: Optional[BinaryIO] = None):
        self.stream = stream if stream is not None else sys.stdout.buffer

    async def write(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_blocking, data)

    def _write_blocking(self, data: bytes) -> None:
        self.stream.write(data)
        self.stream.flush()


class FanoutSink:
    def __init__(self, sink: Any, sender: Optional[LineSender] = None):
        self.sink = sink
        self.sender = sender
        self.lines_forwarded = 0
        self.lines_skipped = 0

    def forward(self, chunk: str) -> int:
        if self.sender is None:
            return 0
        lines = split_lines(chunk)
        delivered = 0
        for line in lines:
            if not self.sender.send(line):
                break
            delivered += 1
        skipped = len(lines) - delivered
        if skipped:
            log_debug(f"consumer gone, skipped {skipped} line(s)")
        self.lines_forwarded += delivered
        self.lines_skipped += skipped
        return delivered

    async def publish(self, chunk: str) -> None:
        self.forward(chunk)
        await self.sink.write(chunk.encode("utf-8"))

    async def echo_sent(self, payload: bytes) -> None:
        await self.sink.write(payload + b"\n")

    def close(self) -> None:
        if self.sender is not None:
            self.sender.close()
