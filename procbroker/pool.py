import asyncio
import logging
import threading
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from .errors import ErrorKind, PoolClosedError
from .lifecycle import BrokerRequest
from .process import ExternalProcessHandle, stop_process
from .schemas import RequestState

logger = logging.getLogger("uvicorn.error")


class ProcessSlot:
    def __init__(self, request: BrokerRequest) -> None:
        self.request = request
        self.request_id = request.request_id
        self.leased_at = time.monotonic()
        self.handle: Optional[ExternalProcessHandle] = None


Runner = Callable[[BrokerRequest, ProcessSlot], Awaitable[None]]


class ProcessSlotPool:
    """Fixed number of execution slots with a FIFO admission queue.

    Admission, release and promotion happen inside one lock with no awaits in
    between, so the capacity check can never be raced past.
    """

    def __init__(self, capacity: int = 3, *, grace_period_s: float = 2.0) -> None:
        self.capacity = max(1, int(capacity))
        self.grace_period_s = grace_period_s
        self.peak_active = 0
        self._lock = threading.Lock()
        self._slots: Dict[str, ProcessSlot] = {}
        self._queue: Deque[Tuple[BrokerRequest, Runner]] = deque()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stoppers: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._slots)

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def is_running(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._slots

    def is_queued(self, request_id: str) -> bool:
        with self._lock:
            return any(req.request_id == request_id for req, _ in self._queue)

    def _lease(self, request: BrokerRequest) -> ProcessSlot:
        slot = ProcessSlot(request)
        self._slots[request.request_id] = slot
        self.peak_active = max(self.peak_active, len(self._slots))
        return slot

    def submit(self, request: BrokerRequest, runner: Runner) -> BrokerRequest:
        with self._lock:
            if self._closed:
                raise PoolClosedError("process pool is shut down")
            if len(self._slots) < self.capacity:
                slot: Optional[ProcessSlot] = self._lease(request)
            else:
                slot = None
                self._queue.append((request, runner))
                logger.debug(
                    "Request %s queued (active=%s, queued=%s)", request.request_id, len(self._slots), len(self._queue)
                )
        if slot is not None:
            self._start(slot, runner)
        return request

    def _start(self, slot: ProcessSlot, runner: Runner) -> None:
        task = asyncio.get_running_loop().create_task(self._execute(slot, runner))
        with self._lock:
            self._tasks[slot.request_id] = task

    async def _execute(self, slot: ProcessSlot, runner: Runner) -> None:
        request = slot.request
        loop = asyncio.get_running_loop()
        deadline = loop.call_later(request.timeout_s, self._on_deadline, request.request_id)
        logger.info("Request %s admitted (timeout=%.1fs)", request.request_id, request.timeout_s)
        try:
            # Cancelled between admission and the task's first step.
            if not request.is_terminal:
                await runner(request, slot)
        except asyncio.CancelledError:
            # Raised when a terminated runner did not unwind within the grace window.
            request.finish(RequestState.CANCELLED, error="Request cancelled", error_kind=ErrorKind.CANCELLED)
        except Exception as exc:
            logger.exception("Runner for %s raised", request.request_id)
            request.finish(RequestState.FAILED, error=str(exc), error_kind=ErrorKind.RUNTIME_FAILURE)
        finally:
            deadline.cancel()
            self._release(slot)

    def _release(self, slot: ProcessSlot) -> None:
        promoted: Optional[Tuple[ProcessSlot, Runner]] = None
        with self._lock:
            self._slots.pop(slot.request_id, None)
            self._tasks.pop(slot.request_id, None)
            if self._queue and not self._closed and len(self._slots) < self.capacity:
                request, runner = self._queue.popleft()
                promoted = (self._lease(request), runner)
        request = slot.request
        held_s = time.monotonic() - slot.leased_at
        logger.info("Request %s finished: %s (slot held %.2fs)", request.request_id, request.state.value, held_s)
        request.settle()
        if promoted is not None:
            self._start(*promoted)

    def _on_deadline(self, request_id: str) -> None:
        with self._lock:
            slot = self._slots.get(request_id)
        if slot is None:
            return
        message = f"Request timed out after {slot.request.timeout_s:g}s"
        self._terminate(slot, RequestState.TIMED_OUT, message, ErrorKind.TIMEOUT)

    def cancel(self, request_id: str) -> bool:
        queued: Optional[BrokerRequest] = None
        with self._lock:
            for entry in self._queue:
                if entry[0].request_id == request_id:
                    queued = entry[0]
                    self._queue.remove(entry)
                    break
            slot = self._slots.get(request_id)
        if queued is not None:
            queued.finish(RequestState.CANCELLED, error="Request cancelled", error_kind=ErrorKind.CANCELLED)
            queued.settle()
            return True
        if slot is None:
            return False
        return self._terminate(slot, RequestState.CANCELLED, "Request cancelled", ErrorKind.CANCELLED)

    def _terminate(self, slot: ProcessSlot, state: RequestState, message: str, kind: ErrorKind) -> bool:
        if not slot.request.finish(state, error=message, error_kind=kind):
            return False
        stopper = asyncio.get_running_loop().create_task(self._stop_slot(slot))
        self._stoppers.add(stopper)
        stopper.add_done_callback(self._stoppers.discard)
        return True

    async def _stop_slot(self, slot: ProcessSlot) -> None:
        with self._lock:
            task = self._tasks.get(slot.request_id)
        if slot.handle is not None:
            await stop_process(slot.handle, self.grace_period_s)
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=self.grace_period_s if slot.handle else 0)
        if not done:
            logger.warning("Runner for %s did not exit; cancelling it", slot.request_id)
            task.cancel()

    async def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            queued = [req for req, _ in self._queue]
            self._queue.clear()
            running = list(self._slots.values())
        for request in queued:
            request.finish(RequestState.CANCELLED, error="Broker shut down", error_kind=ErrorKind.CANCELLED)
            request.settle()
        for slot in running:
            self._terminate(slot, RequestState.CANCELLED, "Broker shut down", ErrorKind.CANCELLED)
        pending: List[asyncio.Task] = []
        with self._lock:
            pending.extend(self._tasks.values())
        pending.extend(self._stoppers)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
