import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .artifacts import decode_image_payload
from .broker import CliQueryBroker
from .callsites import ChainRunner, ChatSession, analyze_image, extract_text
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .errors import FallbackExhaustedError
from .fallback import FallbackOrchestrator
from .remote import AnthropicClient
from .schemas import (
    AuthStatus,
    BrokerStatus,
    CancelResponse,
    ChainRunRequest,
    ChainRunResult,
    ChatRequest,
    ExtractRequest,
    ExtractResult,
    FallbackResult,
    ImageQueryRequest,
    InstalledStatus,
    QueryRequest,
    QueryResult,
    RequestInfo,
)

logger = logging.getLogger("uvicorn.error")

router = APIRouter()

Emit = Callable[[Dict[str, Any]], None]


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_broker(request: Request) -> CliQueryBroker:
    return request.app.state.broker


def get_orchestrator(request: Request) -> FallbackOrchestrator:
    return request.app.state.orchestrator


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def event_stream(run: Callable[[Emit], Awaitable[Dict[str, Any]]]) -> StreamingResponse:
    """Relay events emitted by ``run`` as SSE, ending with one ``done`` event."""
    queue: asyncio.Queue = asyncio.Queue()

    async def produce() -> None:
        final: Dict[str, Any] = {"success": False, "error": "stream aborted"}
        try:
            final = await run(queue.put_nowait)
        except (RuntimeError, ValueError) as exc:
            logger.warning("Streaming request failed: %s", exc)
            final = {"success": False, "error": str(exc)}
        except Exception as exc:
            logger.exception("Streaming request crashed")
            final = {"success": False, "error": str(exc) or type(exc).__name__}
        finally:
            # The generator waits for this event; it must go out on every path.
            queue.put_nowait({"type": "done", **final})

    async def event_generator():
        task = asyncio.create_task(produce())
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
                if ev.get("type") == "done":
                    break
        finally:
            # Client went away: cancelling the producer cancels the underlying request.
            if not task.done():
                task.cancel()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


# Applied to the running broker only on restart; the pool and checker are built from them.
RESTART_FIELDS = (
    "cli_path",
    "max_concurrent",
    "default_timeout_s",
    "grace_period_s",
    "status_ttl_s",
    "check_timeout_s",
    "artifact_dir",
    "shadowed_env_vars",
    "host",
    "port",
)


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    orchestrator: FallbackOrchestrator = Depends(get_orchestrator),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be a JSON object.")
    # The masked key echoed back from GET /settings leaves the current key alone.
    if body.get("anthropic_api_key") == "********":
        body.pop("anthropic_api_key")
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **body})
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    remote = request.app.state.remote
    remote.api_key = new_settings.anthropic_api_key
    remote.base_url = new_settings.anthropic_base_url.rstrip("/")
    remote.model = new_settings.anthropic_model
    remote.max_tokens = new_settings.remote_max_tokens
    orchestrator.prefer_cli = new_settings.prefer_cli
    restart_required = [
        name for name in RESTART_FIELDS if getattr(new_settings, name) != getattr(settings, name)
    ]
    return {"ok": True, "restart_required": restart_required}


@router.get("/api/cli/check", response_model=InstalledStatus)
async def cli_check(broker: CliQueryBroker = Depends(get_broker)):
    return await broker.check_installed(force=True)


@router.get("/api/cli/auth", response_model=AuthStatus)
async def cli_auth(broker: CliQueryBroker = Depends(get_broker)):
    return await broker.check_authenticated(force=True)


@router.get("/api/cli/status", response_model=BrokerStatus)
async def cli_status(broker: CliQueryBroker = Depends(get_broker)):
    return await broker.status()


@router.post("/api/cli/query", response_model=QueryResult)
async def cli_query(body: QueryRequest, broker: CliQueryBroker = Depends(get_broker)):
    try:
        return await broker.query(body.prompt, body.options, request_id=body.request_id)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/api/cli/query-with-image", response_model=QueryResult)
async def cli_query_with_image(body: ImageQueryRequest, broker: CliQueryBroker = Depends(get_broker)):
    try:
        payload, _ = decode_image_payload(body.image_base64)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    try:
        return await broker.query_with_image(body.prompt, payload, body.options, request_id=body.request_id)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@router.post("/api/cli/stream")
async def cli_stream(body: QueryRequest, broker: CliQueryBroker = Depends(get_broker)):
    async def run(emit: Emit) -> Dict[str, Any]:
        result = await broker.stream(
            body.prompt,
            body.options,
            lambda chunk: emit({"type": "chunk", "text": chunk}),
            request_id=body.request_id,
        )
        return result.model_dump(mode="json")

    return event_stream(run)


@router.post("/api/cli/cancel/{request_id}", response_model=CancelResponse)
async def cli_cancel(request_id: str, broker: CliQueryBroker = Depends(get_broker)):
    return CancelResponse(request_id=request_id, cancelled=broker.cancel(request_id))


@router.get("/api/cli/requests", response_model=List[RequestInfo])
async def cli_requests(broker: CliQueryBroker = Depends(get_broker)):
    return [request.info() for request in broker.active_requests()]


@router.get("/api/cli/requests/{request_id}", response_model=RequestInfo)
async def cli_request_info(request_id: str, broker: CliQueryBroker = Depends(get_broker)):
    request = broker.get(request_id)
    if request is None:
        raise HTTPException(status_code=404, detail="Request not found or already finished.")
    return request.info()


@router.post("/api/chat")
async def chat(body: ChatRequest, orchestrator: FallbackOrchestrator = Depends(get_orchestrator)):
    session = ChatSession(orchestrator, system=body.system, history=body.history, options=body.options)

    async def run(emit: Emit) -> Dict[str, Any]:
        result = await session.reply(
            body.message,
            lambda chunk: emit({"type": "chunk", "text": chunk}),
            on_reset=lambda: emit({"type": "reset"}),
        )
        return {"success": not result.cancelled, **result.model_dump(mode="json")}

    return event_stream(run)


@router.post("/api/vision", response_model=FallbackResult)
async def vision(body: ImageQueryRequest, orchestrator: FallbackOrchestrator = Depends(get_orchestrator)):
    try:
        return await analyze_image(orchestrator, body.image_base64, body.prompt, body.options, body.media_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except FallbackExhaustedError as exc:
        raise HTTPException(status_code=502, detail=str(exc))


@router.post("/api/chain/run", response_model=ChainRunResult)
async def chain_run(body: ChainRunRequest, orchestrator: FallbackOrchestrator = Depends(get_orchestrator)):
    try:
        return await ChainRunner(orchestrator).run(body.prompt, body.agents)
    except FallbackExhaustedError as exc:
        raise HTTPException(status_code=502, detail=str(exc))


@router.post("/api/extract", response_model=ExtractResult)
async def extract(body: ExtractRequest, orchestrator: FallbackOrchestrator = Depends(get_orchestrator)):
    try:
        return await extract_text(orchestrator, body.text, body.instructions, body.options)
    except FallbackExhaustedError as exc:
        raise HTTPException(status_code=502, detail=str(exc))


def create_app(
    settings: AppSettings,
    *,
    broker: Optional[CliQueryBroker] = None,
    remote: Optional[AnthropicClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.broker.start()
        try:
            yield
        finally:
            await app.state.broker.shutdown()
            await app.state.remote.close()

    app = FastAPI(title="procbroker", lifespan=lifespan)
    app.state.settings = settings
    app.state.broker = broker or CliQueryBroker(settings)
    app.state.remote = remote or AnthropicClient(
        settings.anthropic_api_key,
        base_url=settings.anthropic_base_url,
        model=settings.anthropic_model,
        max_tokens=settings.remote_max_tokens,
    )
    app.state.orchestrator = FallbackOrchestrator(
        app.state.broker, app.state.remote, prefer_cli=settings.prefer_cli
    )
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("PROCBROKER_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "procbroker.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
