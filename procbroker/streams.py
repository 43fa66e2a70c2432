import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .errors import StreamSubscriptionError

logger = logging.getLogger("uvicorn.error")

ChunkCallback = Callable[[str], Any]
TerminalCallback = Callable[[Any], Any]


class _Channel:
    def __init__(self) -> None:
        self.parts: List[str] = []
        self.on_chunk: Optional[ChunkCallback] = None
        self.on_terminal: Optional[TerminalCallback] = None


class StreamBroker:
    """Per-request output channel with at most one subscriber.

    Chunks are appended and delivered in publish order; the terminal event is
    delivered once and closes the channel, after which publishes are dropped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: Dict[str, _Channel] = {}

    @property
    def open_channels(self) -> int:
        with self._lock:
            return len(self._channels)

    def is_open(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._channels

    def open(self, request_id: str) -> None:
        with self._lock:
            if request_id in self._channels:
                raise StreamSubscriptionError(f"stream for {request_id} is already open")
            self._channels[request_id] = _Channel()

    def subscribe(
        self,
        request_id: str,
        on_chunk: ChunkCallback,
        on_terminal: Optional[TerminalCallback] = None,
    ) -> None:
        with self._lock:
            channel = self._channels.get(request_id)
            if channel is None:
                raise StreamSubscriptionError(f"no open stream for {request_id}")
            if channel.on_chunk is not None:
                raise StreamSubscriptionError(f"stream for {request_id} already has a subscriber")
            channel.on_chunk = on_chunk
            channel.on_terminal = on_terminal

    def publish(self, request_id: str, chunk: str) -> bool:
        with self._lock:
            channel = self._channels.get(request_id)
            if channel is None:
                return False
            channel.parts.append(chunk)
            callback = channel.on_chunk
        if callback is not None:
            try:
                callback(chunk)
            except Exception:
                logger.exception("Stream subscriber for %s failed on a chunk", request_id)
        return True

    def collected(self, request_id: str) -> str:
        with self._lock:
            channel = self._channels.get(request_id)
            return "".join(channel.parts) if channel else ""

    def terminate(self, request_id: str, result: Any) -> bool:
        with self._lock:
            channel = self._channels.pop(request_id, None)
        if channel is None:
            return False
        if channel.on_terminal is not None:
            try:
                channel.on_terminal(result)
            except Exception:
                logger.exception("Stream subscriber for %s failed on the terminal event", request_id)
        return True
