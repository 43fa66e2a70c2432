import logging
from typing import Any, Callable, Optional, Tuple, Union

from .artifacts import decode_image_payload
from .broker import CliQueryBroker
from .errors import ErrorKind, FallbackExhaustedError, RemoteApiError
from .remote import AnthropicClient
from .schemas import FallbackResult, QueryOptions, QueryResult, StreamResult

logger = logging.getLogger("uvicorn.error")

MEDIA_TYPES = {".png": "image/png", ".jpg": "image/jpeg", ".gif": "image/gif", ".webp": "image/webp"}


def _cli_prompt(prompt: str, system: Optional[str]) -> str:
    # The CLI has no separate system slot, so the instructions lead the prompt.
    return f"{system}\n\n{prompt}" if system else prompt


class FallbackOrchestrator:
    """CLI first, Messages API second, and a flag saying which one answered.

    A streamed CLI reply that breaks off partway is thrown away and the whole
    request is replayed against the API; the two outputs are never spliced.
    """

    def __init__(self, broker: CliQueryBroker, remote: AnthropicClient, *, prefer_cli: bool = True) -> None:
        self.broker = broker
        self.remote = remote
        self.prefer_cli = prefer_cli

    async def _cli_usable(self) -> Tuple[bool, Optional[str], Optional[ErrorKind]]:
        if not self.prefer_cli:
            return False, "CLI path disabled", None
        status = await self.broker.status()
        if not status.installed:
            return False, status.error or "Claude CLI not available", ErrorKind.NOT_INSTALLED
        if not status.authenticated:
            return False, status.error or "Claude CLI not authenticated", ErrorKind.NOT_AUTHENTICATED
        return True, None, None

    def _remote_options(self, options: Optional[QueryOptions]) -> dict:
        opts = options or QueryOptions()
        return {"model": opts.model, "max_tokens": opts.max_tokens}

    def _cancelled(self, result: Union[QueryResult, StreamResult], content: str = "") -> FallbackResult:
        return FallbackResult(
            content=content,
            used_cli=True,
            cli_error=result.error,
            cli_error_kind=result.error_kind,
            request_id=result.request_id,
            cancelled=True,
        )

    async def _via_cli(self, call: Callable[[], Any]) -> Union[QueryResult, StreamResult]:
        try:
            return await call()
        except (RuntimeError, ValueError, OSError) as exc:
            logger.warning("CLI path raised, falling back: %s", exc)
            return QueryResult(success=False, error=str(exc), error_kind=ErrorKind.RUNTIME_FAILURE)

    async def complete(
        self,
        prompt: str,
        options: Optional[QueryOptions] = None,
        *,
        system: Optional[str] = None,
    ) -> FallbackResult:
        usable, cli_error, cli_kind = await self._cli_usable()
        request_id = None
        if usable:
            result = await self._via_cli(lambda: self.broker.query(_cli_prompt(prompt, system), options))
            if result.success:
                return FallbackResult(content=result.content or "", used_cli=True, request_id=result.request_id)
            if result.error_kind is ErrorKind.CANCELLED:
                return self._cancelled(result)
            cli_error, cli_kind, request_id = result.error, result.error_kind, result.request_id
        logger.info("Using API fallback: %s", cli_error)
        try:
            content = await self.remote.complete(prompt, system=system, **self._remote_options(options))
        except RemoteApiError as exc:
            raise FallbackExhaustedError(cli_error, str(exc)) from exc
        return FallbackResult(
            content=content, used_cli=False, cli_error=cli_error, cli_error_kind=cli_kind, request_id=request_id
        )

    async def complete_with_image(
        self,
        prompt: str,
        image: Union[bytes, str],
        options: Optional[QueryOptions] = None,
        *,
        media_type: Optional[str] = None,
    ) -> FallbackResult:
        payload, suffix = decode_image_payload(image)
        usable, cli_error, cli_kind = await self._cli_usable()
        request_id = None
        if usable:
            result = await self._via_cli(lambda: self.broker.query_with_image(prompt, payload, options))
            if result.success:
                return FallbackResult(content=result.content or "", used_cli=True, request_id=result.request_id)
            if result.error_kind is ErrorKind.CANCELLED:
                return self._cancelled(result)
            cli_error, cli_kind, request_id = result.error, result.error_kind, result.request_id
        logger.info("Using API fallback for image request: %s", cli_error)
        try:
            content = await self.remote.complete(
                prompt,
                image=payload,
                media_type=media_type or MEDIA_TYPES.get(suffix, "image/png"),
                **self._remote_options(options),
            )
        except RemoteApiError as exc:
            raise FallbackExhaustedError(cli_error, str(exc)) from exc
        return FallbackResult(
            content=content, used_cli=False, cli_error=cli_error, cli_error_kind=cli_kind, request_id=request_id
        )

    async def stream(
        self,
        prompt: str,
        options: Optional[QueryOptions],
        on_chunk: Callable[[str], Any],
        *,
        on_reset: Optional[Callable[[], Any]] = None,
        system: Optional[str] = None,
    ) -> FallbackResult:
        usable, cli_error, cli_kind = await self._cli_usable()
        request_id = None
        if usable:
            delivered = []

            def forward(chunk: str) -> None:
                delivered.append(chunk)
                on_chunk(chunk)

            result = await self._via_cli(lambda: self.broker.stream(_cli_prompt(prompt, system), options, forward))
            if result.success:
                return FallbackResult(content="".join(delivered), used_cli=True, request_id=result.request_id)
            if result.error_kind is ErrorKind.CANCELLED:
                return self._cancelled(result, "".join(delivered))
            cli_error, cli_kind, request_id = result.error, result.error_kind, result.request_id
            if delivered:
                logger.info("CLI stream failed after %s chunks; discarding partial output", len(delivered))
                if on_reset is not None:
                    on_reset()
        logger.info("Using API fallback for stream: %s", cli_error)
        parts = []
        try:
            async for text in self.remote.stream_text(prompt, system=system, **self._remote_options(options)):
                parts.append(text)
                on_chunk(text)
        except RemoteApiError as exc:
            raise FallbackExhaustedError(cli_error, str(exc)) from exc
        return FallbackResult(
            content="".join(parts), used_cli=False, cli_error=cli_error, cli_error_kind=cli_kind, request_id=request_id
        )
