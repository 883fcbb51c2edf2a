from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from procura.adapters.llm.reasoning_provider import ReasoningProvider
from procura.adapters.mail.confirmation_mailer import ConfirmationMailer
from procura.adapters.storage.async_entity_repository import AsyncEntityRepository
from procura.adapters.voice.call_gateway import CallGateway
from procura.application.webhook_processor import WebhookProcessor
from procura.logging import setup_logging
from procura.orchestration.engine import OrchestrationEngine
from procura.orchestration.watchdog import WatchdogRegistry
from procura.services.memory_store import MemoryStore
from procura.services.offer_extractor import OfferExtractor
from procura.services.strategy_generator import StrategyGenerator
from procura.settings import EngineSettings, load_engine_settings
from procura.streaming.activity import ActivityTracker
from procura.streaming.bus import StreamBus


@dataclass
class ProcuraRuntime:
    settings: EngineSettings
    engine: OrchestrationEngine
    processor: WebhookProcessor

    async def close(self) -> None:
        await self.engine.close()


def create_gateway(settings: EngineSettings) -> CallGateway:
    return CallGateway(
        api_key=settings.voice_api_key,
        base_url=settings.voice_api_base_url,
        phone_number_id=settings.voice_phone_number_id,
        agent_ids=settings.voice_agent_ids,
        phone_override=settings.voice_test_phone_override,
    )


def create_mailer(settings: EngineSettings) -> ConfirmationMailer:
    return ConfirmationMailer(
        api_key=settings.mail_api_key,
        base_url=settings.mail_api_base_url,
        inbox_id=settings.mail_inbox_id,
        recipient_override=settings.mail_recipient_override,
    )


def create_runtime(
    settings: Optional[EngineSettings] = None,
    *,
    gateway: Any = None,
    mailer: Any = None,
    provider: Optional[ReasoningProvider] = None,
) -> ProcuraRuntime:
    """Wire every collaborator from settings. Explicit arguments replace the configured adapters."""
    settings = settings or load_engine_settings()
    setup_logging(settings.workspace)

    repository = AsyncEntityRepository(settings.db_path)
    memory = MemoryStore(settings.memory_db_path)
    bus = StreamBus()
    activity = ActivityTracker(bus)
    if provider is None and settings.reasoning_model:
        provider = ReasoningProvider(
            settings.reasoning_model,
            host=settings.reasoning_host or None,
            timeout=settings.reasoning_timeout_seconds,
        )

    engine = OrchestrationEngine(
        repository,
        gateway or create_gateway(settings),
        settings=settings,
        memory=memory,
        strategist=StrategyGenerator(provider, activity=activity, target_price_ratio=settings.target_price_ratio),
        mailer=mailer or create_mailer(settings),
        bus=bus,
        activity=activity,
        watchdog=WatchdogRegistry(settings.watchdog_timeout_seconds),
        workspace=settings.workspace,
    )
    processor = WebhookProcessor(
        repository,
        engine,
        OfferExtractor(provider, activity=activity),
        lookup_retry_delay_seconds=settings.lookup_retry_delay_seconds,
        workspace=settings.workspace,
    )
    return ProcuraRuntime(settings=settings, engine=engine, processor=processor)
