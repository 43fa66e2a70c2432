import asyncio
import time
import uuid
from typing import Callable, List, Optional

from .errors import ErrorKind, InvalidTransitionError
from .schemas import QueryOptions, QueryResult, RequestInfo, RequestMode, RequestState


_TRANSITIONS = {
    RequestState.QUEUED: {RequestState.RUNNING, RequestState.CANCELLED},
    RequestState.RUNNING: {
        RequestState.STREAMING,
        RequestState.COMPLETED,
        RequestState.FAILED,
        RequestState.TIMED_OUT,
        RequestState.CANCELLED,
    },
    RequestState.STREAMING: {
        RequestState.COMPLETED,
        RequestState.FAILED,
        RequestState.TIMED_OUT,
        RequestState.CANCELLED,
    },
}

_STATE_KINDS = {
    RequestState.CANCELLED: ErrorKind.CANCELLED,
    RequestState.TIMED_OUT: ErrorKind.TIMEOUT,
}


def new_request_id() -> str:
    return str(uuid.uuid4())


class BrokerRequest:
    """One unit of work and its state machine.

    ``finish`` records the terminal state as soon as it is decided; ``settle``
    runs once every resource held for the request has been released and is
    what ``wait`` resolves on.
    """

    def __init__(
        self,
        prompt: str,
        options: Optional[QueryOptions] = None,
        *,
        payload: Optional[bytes] = None,
        suffix: str = ".png",
        mode: RequestMode = "query",
        request_id: Optional[str] = None,
        default_timeout_s: float = 120.0,
    ) -> None:
        self.request_id = request_id or new_request_id()
        self.prompt = prompt
        self.options = options or QueryOptions()
        self.payload = payload
        self.suffix = suffix
        self.mode = mode
        self.timeout_s = float(self.options.timeout_s or default_timeout_s)
        self.state = RequestState.QUEUED
        self.submitted_at = time.time()
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.content: Optional[str] = None
        self.error: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None
        self.settled = False
        self._settle_callbacks: List[Callable[["BrokerRequest"], None]] = []
        self._done: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def _move(self, target: RequestState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if target not in allowed:
            raise InvalidTransitionError(f"{self.request_id}: {self.state.value} -> {target.value}")
        self.state = target

    def mark_running(self) -> None:
        self._move(RequestState.RUNNING)
        self.started_at = time.time()

    def mark_streaming(self) -> None:
        if self.state is RequestState.RUNNING:
            self._move(RequestState.STREAMING)

    def finish(
        self,
        state: RequestState,
        *,
        content: Optional[str] = None,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> bool:
        """Enter a terminal state. Returns False if the request was already terminal."""
        if not state.is_terminal:
            raise InvalidTransitionError(f"{state.value} is not a terminal state")
        if self.is_terminal:
            return False
        self._move(state)
        self.completed_at = time.time()
        self.content = content
        if state is not RequestState.COMPLETED:
            self.error = error or state.value
            self.error_kind = error_kind or _STATE_KINDS.get(state, ErrorKind.RUNTIME_FAILURE)
        return True

    def add_settle_callback(self, callback: Callable[["BrokerRequest"], None]) -> None:
        self._settle_callbacks.append(callback)

    def settle(self) -> None:
        if self.settled:
            return
        if not self.is_terminal:
            self.finish(
                RequestState.FAILED,
                error="request released without a result",
                error_kind=ErrorKind.RUNTIME_FAILURE,
            )
        self.settled = True
        callbacks, self._settle_callbacks = self._settle_callbacks, []
        for callback in callbacks:
            callback(self)
        if not self._done.done():
            self._done.set_result(self.result())

    def result(self) -> QueryResult:
        return QueryResult(
            success=self.state is RequestState.COMPLETED,
            content=self.content,
            error=self.error,
            error_kind=self.error_kind,
            request_id=self.request_id,
            state=self.state,
        )

    async def wait(self) -> QueryResult:
        return await asyncio.shield(self._done)

    def info(self) -> RequestInfo:
        return RequestInfo(
            request_id=self.request_id,
            state=self.state,
            mode=self.mode,
            submitted_at=self.submitted_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error=self.error,
            error_kind=self.error_kind,
            detail={"timeout_s": self.timeout_s, "has_payload": self.payload is not None},
        )
