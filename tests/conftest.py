from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from procbroker.broker import CliQueryBroker
from procbroker.main import create_app
from tests.fakes import BASE_ENV, FakeChecker, FakeRemote, FakeSpawner, make_broker, make_settings


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
async def broker(tmp_path: Path, spawner: FakeSpawner):
    instance = make_broker(tmp_path, spawner)
    try:
        yield instance
    finally:
        await instance.shutdown()


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        spawner: FakeSpawner | None = None,
        checker: FakeChecker | None = None,
        remote: FakeRemote | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake_spawner = spawner or FakeSpawner()
        fake_remote = remote or FakeRemote()
        broker = CliQueryBroker(
            settings, spawner=fake_spawner, checker=checker or FakeChecker(), environ=BASE_ENV
        )
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, broker=broker, remote=fake_remote, config_path=cfg_path)
        return app, fake_spawner, fake_remote

    return _factory


@pytest.fixture
async def client(app_factory):
    app, spawner, remote = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.spawner = spawner  # type: ignore[attr-defined]
            http_client.remote = remote  # type: ignore[attr-defined]
            yield http_client
