# stream.py
# Event-stream encoder for agent progress.
#
# Each event becomes one `data: <json>\n\n` frame. The encoder writes to a
# sink (anything with write/close); the server uses FrameQueue so a worker
# thread can produce frames while the response generator drains them.

import queue
from threading import Lock
from typing import Any, Iterator, Protocol

from workflow_agent.models import StreamFrame

KEEPALIVE_TEXT = '{"init":true}'


class FrameSink(Protocol):
    def write(self, data: str) -> None: ...

    def close(self) -> None: ...


class FrameQueue:
    """Thread-safe sink whose iterator yields frames until close()."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: queue.Queue = queue.Queue()
        self.disconnected = False

    def write(self, data: str) -> None:
        if not self.disconnected:
            self._queue.put(data)

    def close(self) -> None:
        self._queue.put(self._CLOSED)

    def disconnect(self) -> None:
        """Called when the client goes away; later writes are discarded."""
        self.disconnected = True

    def __iter__(self) -> Iterator[str]:
        while True:
            item = self._queue.get()
            if item is self._CLOSED:
                return
            yield item


class StreamEncoder:
    """
    Serialize progress events onto a sink, in call order.

    Example:
        encoder = StreamEncoder(FrameQueue())
        encoder.send_keepalive()
        encoder.send_text("Creating fields...")
        encoder.send_done()
    """

    def __init__(self, sink: FrameSink) -> None:
        self.sink = sink
        self._lock = Lock()
        self.closed = False

    def send_frame(self, frame: StreamFrame) -> None:
        with self._lock:
            if self.closed:
                return
            self.sink.write(frame.encode())
            if frame.done:
                self.closed = True
                self.sink.close()

    def send_keepalive(self) -> None:
        self.send_frame(StreamFrame(text=KEEPALIVE_TEXT))

    def send_text(self, text: str) -> None:
        if text:
            self.send_frame(StreamFrame(text=text))

    def send_tool_result(self, tool_name: str, payload: Any, text: str | None = None) -> None:
        self.send_frame(StreamFrame(text=text, tool_result={"tool": tool_name, "result": payload}))

    def send_error(self, message: str, text: str | None = None) -> None:
        self.send_frame(StreamFrame(text=text, error=message))

    def send_done(self) -> None:
        self.send_frame(StreamFrame(done=True))
