import asyncio
import codecs
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .artifacts import TempArtifactManager, decode_image_payload
from .availability import AvailabilityChecker
from .config import AppSettings
from .env import sanitize_environment
from .errors import BrokerError, ErrorKind, PoolClosedError
from .lifecycle import BrokerRequest
from .pool import ProcessSlot, ProcessSlotPool
from .process import ExternalProcessHandle, ProcessSpawner, spawn_process
from .schemas import (
    AuthStatus,
    BrokerStatus,
    InstalledStatus,
    QueryOptions,
    QueryResult,
    RequestMode,
    RequestState,
    StreamResult,
)
from .streams import StreamBroker

logger = logging.getLogger("uvicorn.error")


def _text_of(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [str(item.get("text")) for item in value if isinstance(item, dict) and item.get("text")]
        return "".join(parts) if parts else None
    if isinstance(value, dict):
        return _text_of(value.get("content")) or _text_of(value.get("text"))
    return None


def parse_cli_output(raw: str) -> str:
    """Extract the reply text from ``--output-format json`` output."""
    text = (raw or "").strip()
    if not text:
        raise BrokerError(ErrorKind.MALFORMED_OUTPUT, "Claude CLI produced no output")
    try:
        parsed = json.loads(text)
    except ValueError:
        # Older CLI builds ignore --output-format and print plain text.
        return text
    if isinstance(parsed, str):
        return parsed
    if not isinstance(parsed, dict):
        raise BrokerError(ErrorKind.MALFORMED_OUTPUT, f"unexpected CLI output type: {type(parsed).__name__}")
    if parsed.get("is_error"):
        detail = _text_of(parsed.get("result")) or _text_of(parsed.get("error")) or "Claude CLI reported an error"
        raise BrokerError(ErrorKind.RUNTIME_FAILURE, detail)
    for key in ("result", "content", "message"):
        extracted = _text_of(parsed.get(key))
        if extracted is not None:
            return extracted
    raise BrokerError(ErrorKind.MALFORMED_OUTPUT, "CLI output has no result text")


class CliQueryBroker:
    """Runs completions through a bounded pool of CLI subprocesses."""

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        *,
        spawner: Optional[ProcessSpawner] = None,
        checker: Optional[AvailabilityChecker] = None,
        artifacts: Optional[TempArtifactManager] = None,
        streams: Optional[StreamBroker] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.settings = settings or AppSettings()
        self.pool = ProcessSlotPool(self.settings.max_concurrent, grace_period_s=self.settings.grace_period_s)
        self.streams = streams or StreamBroker()
        self.artifacts = artifacts or TempArtifactManager(self.settings.artifact_dir)
        self.checker = checker or AvailabilityChecker(
            self.settings.cli_path,
            ttl_s=self.settings.status_ttl_s,
            command_timeout_s=self.settings.check_timeout_s,
            shadowed_env_vars=self.settings.shadowed_env_vars,
            environ=environ,
        )
        self._spawner: ProcessSpawner = spawner or spawn_process
        self._environ = environ
        self._requests: Dict[str, BrokerRequest] = {}

    async def start(self) -> BrokerStatus:
        status = await self.status(force=True)
        if status.installed and status.authenticated:
            logger.info("Claude CLI ready (%s, %s)", status.version, status.account or "unknown account")
        else:
            logger.warning("Claude CLI unavailable: %s", status.error)
        return status

    async def shutdown(self) -> None:
        await self.pool.shutdown()
        leftover = self.artifacts.release_all()
        if leftover:
            logger.warning("Removed %s leftover temp files on shutdown", leftover)

    async def __aenter__(self) -> "CliQueryBroker":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # Availability

    async def check_installed(self, force: bool = False) -> InstalledStatus:
        return await self.checker.check_installed(force=force)

    async def check_authenticated(self, force: bool = False) -> AuthStatus:
        return await self.checker.check_authenticated(force=force)

    async def status(self, force: bool = False) -> BrokerStatus:
        snapshot = await self.checker.snapshot(force=force)
        return BrokerStatus(
            **snapshot.model_dump(),
            active_slots=self.pool.active_count,
            capacity=self.pool.capacity,
            queued=self.pool.queued_count,
        )

    async def _precheck(self) -> Optional[QueryResult]:
        status = await self.checker.snapshot()
        if not status.installed:
            return QueryResult(
                success=False,
                error=status.error or "Claude CLI not available",
                error_kind=ErrorKind.NOT_INSTALLED,
            )
        if not status.authenticated:
            return QueryResult(
                success=False,
                error=status.error or "Claude CLI not authenticated",
                error_kind=ErrorKind.NOT_AUTHENTICATED,
            )
        return None

    # Requests

    def get(self, request_id: str) -> Optional[BrokerRequest]:
        return self._requests.get(request_id)

    def active_requests(self) -> List[BrokerRequest]:
        return list(self._requests.values())

    def submit(
        self,
        prompt: str,
        options: Optional[QueryOptions] = None,
        *,
        payload: Optional[bytes] = None,
        suffix: str = ".png",
        mode: RequestMode = "query",
        on_chunk: Optional[Callable[[str], Any]] = None,
        on_terminal: Optional[Callable[[QueryResult], Any]] = None,
        request_id: Optional[str] = None,
    ) -> BrokerRequest:
        if request_id and request_id in self._requests:
            raise ValueError(f"request {request_id} is already in flight")
        request = BrokerRequest(
            prompt,
            options,
            payload=payload,
            suffix=suffix,
            mode=mode,
            request_id=request_id,
            default_timeout_s=self.settings.default_timeout_s,
        )
        self.streams.open(request.request_id)
        if on_chunk is not None:
            self.streams.subscribe(request.request_id, on_chunk, on_terminal)
        request.add_settle_callback(self._on_settled)
        self._requests[request.request_id] = request
        try:
            self.pool.submit(request, self._run)
        except PoolClosedError:
            request.finish(RequestState.CANCELLED, error="Broker shut down", error_kind=ErrorKind.CANCELLED)
            request.settle()
            raise
        return request

    def _on_settled(self, request: BrokerRequest) -> None:
        self._requests.pop(request.request_id, None)
        self.streams.terminate(request.request_id, request.result())

    async def _await(self, request: BrokerRequest) -> QueryResult:
        try:
            return await request.wait()
        except asyncio.CancelledError:
            self.cancel(request.request_id)
            raise

    async def query(
        self,
        prompt: str,
        options: Optional[QueryOptions] = None,
        *,
        request_id: Optional[str] = None,
    ) -> QueryResult:
        blocked = await self._precheck()
        if blocked is not None:
            return blocked
        request = self.submit(prompt, options, request_id=request_id)
        return await self._await(request)

    async def query_with_image(
        self,
        prompt: str,
        image: Union[bytes, str],
        options: Optional[QueryOptions] = None,
        *,
        request_id: Optional[str] = None,
    ) -> QueryResult:
        blocked = await self._precheck()
        if blocked is not None:
            return blocked
        try:
            payload, suffix = decode_image_payload(image)
        except ValueError as exc:
            return QueryResult(success=False, error=str(exc), error_kind=ErrorKind.ARTIFACT_IO_FAILURE)
        request = self.submit(prompt, options, payload=payload, suffix=suffix, request_id=request_id)
        return await self._await(request)

    async def stream(
        self,
        prompt: str,
        options: Optional[QueryOptions],
        on_chunk: Callable[[str], Any],
        *,
        on_terminal: Optional[Callable[[QueryResult], Any]] = None,
        request_id: Optional[str] = None,
    ) -> StreamResult:
        if not callable(on_chunk):
            raise TypeError("on_chunk callback is required for streaming")
        blocked = await self._precheck()
        if blocked is not None:
            if on_terminal is not None:
                on_terminal(blocked)
            return StreamResult(success=False, error=blocked.error, error_kind=blocked.error_kind)
        request = self.submit(
            prompt,
            options,
            mode="stream",
            on_chunk=on_chunk,
            on_terminal=on_terminal,
            request_id=request_id,
        )
        result = await self._await(request)
        return StreamResult(
            success=result.success,
            error=result.error,
            error_kind=result.error_kind,
            request_id=result.request_id,
            state=result.state,
        )

    def cancel(self, request_id: str) -> bool:
        cancelled = self.pool.cancel(request_id)
        if cancelled:
            logger.info("Request %s cancelled", request_id)
        return cancelled

    # Execution

    def build_cli_args(self, request: BrokerRequest, artifact_path: Optional[Path]) -> List[str]:
        output_format = "text" if request.mode == "stream" else "json"
        args = [self.settings.cli_path, "-p", "--output-format", output_format]
        if request.options.model:
            args.extend(["--model", request.options.model])
        if request.options.max_tokens:
            args.extend(["--max-tokens", str(request.options.max_tokens)])
        if artifact_path is not None:
            args.extend(["--image", str(artifact_path)])
        return args

    def _spawn_env(self) -> Dict[str, str]:
        base = self._environ if self._environ is not None else os.environ
        return sanitize_environment(base, self.settings.shadowed_env_vars)

    def _emit(self, request: BrokerRequest, text: str) -> None:
        if not text or request.is_terminal:
            return
        if request.mode == "stream":
            request.mark_streaming()
        self.streams.publish(request.request_id, text)

    async def _pump_output(self, request: BrokerRequest, handle: ExternalProcessHandle) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for raw in handle.read_output():
            self._emit(request, decoder.decode(raw))
        self._emit(request, decoder.decode(b"", final=True))

    async def _spawn(self, argv: List[str]) -> ExternalProcessHandle:
        try:
            return await self._spawner(argv, self._spawn_env())
        except OSError as exc:
            raise BrokerError(ErrorKind.SPAWN_FAILURE, f"Failed to start {argv[0]}: {exc}") from exc

    async def _run(self, request: BrokerRequest, slot: ProcessSlot) -> None:
        request.mark_running()
        try:
            with self.artifacts.scoped(request.payload, request.request_id, suffix=request.suffix) as artifact_path:
                handle = await self._spawn(self.build_cli_args(request, artifact_path))
                slot.handle = handle
                if request.is_terminal:
                    handle.kill()
                    return
                stderr_task = asyncio.ensure_future(handle.read_error())
                writer = asyncio.ensure_future(handle.write_input(request.prompt.encode("utf-8")))
                try:
                    await self._pump_output(request, handle)
                    await writer
                    code = await handle.wait()
                    stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
                finally:
                    if handle.returncode is None:
                        handle.kill()
                    for task in (writer, stderr_task):
                        if not task.done():
                            task.cancel()
                if request.is_terminal:
                    return
                if code != 0:
                    raise BrokerError(
                        ErrorKind.RUNTIME_FAILURE,
                        f"Claude CLI exited with code {code}: {stderr or 'Unknown error'}",
                    )
                collected = self.streams.collected(request.request_id)
                content = collected if request.mode == "stream" else parse_cli_output(collected)
                request.finish(RequestState.COMPLETED, content=content)
        except BrokerError as exc:
            request.finish(RequestState.FAILED, error=exc.message, error_kind=exc.kind)
