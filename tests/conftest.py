from pathlib import Path

import pytest

from procura.adapters.storage.async_entity_repository import AsyncEntityRepository
from procura.application.webhook_processor import WebhookProcessor
from procura.exceptions import ModelTimeoutError
from procura.orchestration.engine import OrchestrationEngine
from procura.orchestration.watchdog import WatchdogRegistry
from procura.services.memory_store import MemoryStore
from procura.settings import EngineSettings
from procura.streaming.bus import StreamBus
from tests.fakes import FakeGateway, FakeMailer, FakeProvider


@pytest.fixture(autouse=True)
def _isolated_workspace(tmp_path, monkeypatch):
    monkeypatch.setenv("PROCURA_WORKSPACE", str(tmp_path / "workspace"))


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "procura_test.db"


@pytest.fixture
def repository(db_path) -> AsyncEntityRepository:
    return AsyncEntityRepository(db_path)


@pytest.fixture
def memory(tmp_path) -> MemoryStore:
    return MemoryStore(tmp_path / "memory_test.db")


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(
        db_path=tmp_path / "procura_test.db",
        memory_db_path=tmp_path / "memory_test.db",
        workspace=tmp_path / "workspace",
        batch_pause_seconds=0.0,
        watchdog_timeout_seconds=30.0,
        lookup_retry_delay_seconds=0.0,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
async def engine(repository, memory, gateway, mailer, settings):
    engine = OrchestrationEngine(
        repository,
        gateway,
        settings=settings,
        memory=memory,
        mailer=mailer,
        bus=StreamBus(),
        watchdog=WatchdogRegistry(settings.watchdog_timeout_seconds),
        workspace=settings.workspace,
    )
    yield engine
    await engine.close()


@pytest.fixture
def timeout_provider() -> FakeProvider:
    return FakeProvider(error=ModelTimeoutError("reasoning timed out"))


@pytest.fixture
def processor(repository, engine, settings):
    return WebhookProcessor(
        repository,
        engine,
        lookup_retry_delay_seconds=settings.lookup_retry_delay_seconds,
        workspace=settings.workspace,
    )
