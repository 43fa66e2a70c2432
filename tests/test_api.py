import asyncio
import json

import pytest
import respx
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient, Response

from procbroker.remote import AnthropicClient
from tests.fakes import FakeChecker, FakeProcess, FakeRemote, FakeSpawner, wait_until


def parse_sse(body: str):
    return [json.loads(line[len("data:"):].strip()) for line in body.splitlines() if line.startswith("data:")]


@pytest.mark.asyncio
async def test_status_reports_capacity(client):
    res = await client.get("/api/cli/status")
    assert res.status_code == 200
    data = res.json()
    assert data["installed"] is True
    assert data["authenticated"] is True
    assert data["capacity"] == 3
    assert data["active_slots"] == 0


@pytest.mark.asyncio
async def test_check_and_auth_routes(client):
    check = (await client.get("/api/cli/check")).json()
    auth = (await client.get("/api/cli/auth")).json()
    assert check == {"installed": True, "version": "1.0.0 (Claude Code)", "error": None}
    assert auth["authenticated"] is True
    assert auth["account"] == "dev@example.com"


@pytest.mark.asyncio
async def test_query_route_runs_cli(client):
    res = await client.post("/api/cli/query", json={"prompt": "hi", "options": {"max_tokens": 64}})
    assert res.status_code == 200
    data = res.json()
    assert data["success"] is True
    assert data["content"] == "ok"
    assert data["state"] == "completed"
    argv, _ = client.spawner.calls[0]
    assert "--max-tokens" in argv


@pytest.mark.asyncio
async def test_query_route_validates_body(client):
    res = await client.post("/api/cli/query", json={"prompt": ""})
    assert res.status_code == 422
    res = await client.post("/api/cli/query", json={"prompt": "x", "options": {"timeout_s": -1}})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_query_with_image_rejects_bad_base64(client):
    res = await client.post("/api/cli/query-with-image", json={"prompt": "what", "image_base64": "%%%"})
    assert res.status_code == 400
    assert client.spawner.calls == []


@pytest.mark.asyncio
async def test_query_with_image_cleans_up(client):
    res = await client.post("/api/cli/query-with-image", json={"prompt": "what", "image_base64": "aW1n"})
    assert res.status_code == 200
    assert res.json()["success"] is True
    assert client.app.state.broker.artifacts.active == []


@pytest.mark.asyncio
async def test_stream_route_emits_chunks_then_done(app_factory):
    spawner = FakeSpawner(lambda argv: FakeProcess(["Hel", "lo ", "world"]))
    app, _, _ = app_factory(spawner=spawner)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/cli/stream", json={"prompt": "greet", "request_id": "s-1"})
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(res.text)
    assert [ev["text"] for ev in events if ev["type"] == "chunk"] == ["Hel", "lo ", "world"]
    assert events[-1]["type"] == "done"
    assert events[-1]["success"] is True
    assert events[-1]["request_id"] == "s-1"
    assert sum(1 for ev in events if ev["type"] == "done") == 1


@pytest.mark.asyncio
async def test_cancel_route(app_factory):
    spawner = FakeSpawner(lambda argv: FakeProcess(hang=True))
    app, _, _ = app_factory(spawner=spawner)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            pending = asyncio.create_task(
                client.post("/api/cli/query", json={"prompt": "slow", "request_id": "c-1"})
            )
            await wait_until(lambda: bool(spawner.processes))

            info = await client.get("/api/cli/requests/c-1")
            assert info.json()["state"] == "running"
            listing = await client.get("/api/cli/requests")
            assert [item["request_id"] for item in listing.json()] == ["c-1"]

            res = await client.post("/api/cli/cancel/c-1")
            assert res.json() == {"request_id": "c-1", "cancelled": True}
            result = (await pending).json()
            assert result["state"] == "cancelled"
            assert result["error_kind"] == "cancelled"

            again = await client.post("/api/cli/cancel/c-1")
            assert again.json()["cancelled"] is False
            missing = await client.get("/api/cli/requests/c-1")
            assert missing.status_code == 404


@pytest.mark.asyncio
async def test_chat_route_falls_back_to_api(app_factory):
    app, _, remote = app_factory(checker=FakeChecker(installed=False))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json={"message": "hello", "system": "be kind"})
    events = parse_sse(res.text)
    assert [ev["text"] for ev in events if ev["type"] == "chunk"] == ["api ", "reply"]
    done = events[-1]
    assert done["type"] == "done"
    assert done["used_cli"] is False
    assert done["cli_error_kind"] == "not_installed"
    assert remote.calls[0]["system"] == "be kind"


@pytest.mark.asyncio
async def test_chat_route_reports_exhausted_fallback(app_factory):
    app, _, _ = app_factory(checker=FakeChecker(installed=False), remote=FakeRemote(error="missing_api_key"))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json={"message": "hello"})
    done = parse_sse(res.text)[-1]
    assert done["type"] == "done"
    assert done["success"] is False
    assert "missing_api_key" in done["error"]


@pytest.mark.asyncio
async def test_vision_route_returns_502_when_everything_fails(app_factory):
    app, _, _ = app_factory(checker=FakeChecker(installed=False), remote=FakeRemote(error="HTTP 500: oops"))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/vision", json={"prompt": "what", "image_base64": "aW1n"})
            bad = await client.post("/api/vision", json={"prompt": "what", "image_base64": "%%%"})
    assert res.status_code == 502
    assert "HTTP 500: oops" in res.json()["detail"]
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_chain_route(client):
    res = await client.post(
        "/api/chain/run",
        json={"prompt": "start", "agents": [{"name": "one"}, {"name": "two", "task_spec": "Refine."}]},
    )
    assert res.status_code == 200
    data = res.json()
    assert [step["agent"] for step in data["steps"]] == ["one", "two"]
    assert data["output"] == "ok"


@pytest.mark.asyncio
async def test_extract_route(client):
    res = await client.post("/api/extract", json={"text": "Notes from the meeting."})
    assert res.status_code == 200
    data = res.json()
    assert data["content"] == "ok"
    assert data["items"] is None
    assert data["used_cli"] is True


@pytest.mark.asyncio
async def test_settings_masks_api_key(client):
    res = await client.get("/settings")
    assert res.status_code == 200
    assert res.json()["settings"]["anthropic_api_key"] == "********"


@pytest.mark.asyncio
async def test_lifespan_shutdown_closes_remote(app_factory):
    app, _, remote = app_factory()
    async with LifespanManager(app):
        assert remote.closed is False
    assert remote.closed is True
    assert app.state.broker.pool.closed is True


class CrashingRemote(FakeRemote):
    async def stream_text(self, prompt, *, system=None, model=None, max_tokens=None):
        yield "partial"
        raise KeyError("delta")


@pytest.mark.asyncio
async def test_chat_stream_always_ends_with_done(app_factory):
    app, _, _ = app_factory(checker=FakeChecker(installed=False), remote=CrashingRemote())
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await asyncio.wait_for(client.post("/api/chat", json={"message": "hello"}), timeout=3)
    events = parse_sse(res.text)
    assert events[0] == {"type": "chunk", "text": "partial"}
    done = events[-1]
    assert done["type"] == "done"
    assert done["success"] is False
    assert "delta" in done["error"]


@pytest.mark.asyncio
async def test_chat_stream_ignores_non_object_api_events(app_factory):
    remote = AnthropicClient("sk-test", base_url="http://api.test/v1")
    app, _, _ = app_factory(checker=FakeChecker(installed=False), remote=remote)
    body = (
        'data: "ping"\n\n'
        'data: {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "hi"}}\n\n'
        'data: {"type": "message_stop"}\n\n'
    )
    with respx.mock() as respx_mock:
        respx_mock.post("http://api.test/v1/messages").mock(
            return_value=Response(200, text=body, headers={"content-type": "text/event-stream"})
        )
        async with LifespanManager(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                res = await asyncio.wait_for(client.post("/api/chat", json={"message": "hello"}), timeout=3)
    events = parse_sse(res.text)
    assert [ev["text"] for ev in events if ev["type"] == "chunk"] == ["hi"]
    assert events[-1]["type"] == "done"
    assert events[-1]["success"] is True
    assert events[-1]["used_cli"] is False


@pytest.mark.asyncio
async def test_update_settings_persists_and_applies(app_factory, tmp_path):
    app, _, remote = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post(
                "/settings",
                json={
                    "anthropic_api_key": "********",
                    "anthropic_model": "claude-next",
                    "prefer_cli": False,
                    "max_concurrent": 5,
                },
            )
            current = (await client.get("/settings")).json()["settings"]
    assert res.status_code == 200
    assert res.json() == {"ok": True, "restart_required": ["max_concurrent"]}
    assert current["anthropic_model"] == "claude-next"
    assert current["anthropic_api_key"] == "********"
    assert app.state.settings.anthropic_api_key == "test-key"
    assert remote.api_key == "test-key"
    assert remote.model == "claude-next"
    assert app.state.orchestrator.prefer_cli is False
    assert app.state.broker.pool.capacity == 3
    saved = json.loads((tmp_path / "config.json").read_text())
    assert saved["anthropic_model"] == "claude-next"
    assert saved["max_concurrent"] == 5
    assert "anthropic_api_key" not in saved


@pytest.mark.asyncio
async def test_update_settings_rejects_invalid_values(client, tmp_path):
    res = await client.post("/settings", json={"max_concurrent": 0})
    assert res.status_code == 422
    not_object = await client.post("/settings", json=["x"])
    assert not_object.status_code == 400
    assert not (tmp_path / "config.json").exists()
