import asyncio

import aiosqlite
import pytest

from procura.adapters.mail.confirmation_mailer import MailReply
from procura.application.webhook_processor import SignalResult, WebhookProcessor
from procura.core.types import AgentProfile, CallStatus, RunStatus, offer_source_for_round
from procura.exceptions import InfrastructureError
from procura.orchestration.engine import OrchestrationEngine
from procura.orchestration.watchdog import WatchdogRegistry
from procura.streaming.bus import StreamBus
from procura.streaming.contracts import RunEventType
from tests.fakes import RFQ, CounterpartyBuilder, FakeGateway, SlowExtractor, call_for, completion, wait_for_status


async def _campaign(engine, *vendors):
    run = await engine.create_run("500 custom printed mugs in 3 weeks", RFQ)
    await engine.register_counterparties(run.id, list(vendors))
    return run


async def _complete(processor, repository, run_id, name, round_number, price=None):
    call = await call_for(repository, run_id, name, round_number)
    return await processor.process_signal(completion(call.handle, price))


THREE_VENDORS = (
    CounterpartyBuilder("Acme").with_phone("+15550001").with_email("Sales@Acme.test").with_notes("family owned").build(),
    CounterpartyBuilder("Beta").with_phone("+15550002").build(),
    CounterpartyBuilder("Gamma").with_phone("+15550003").build(),
)


@pytest.mark.asyncio
async def test_full_campaign_negotiates_confirms_and_waits_for_invoice(engine, processor, repository, gateway, mailer):
    run = await _campaign(engine, *THREE_VENDORS)
    assert await engine.start_run(run.id)
    assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_1
    assert sorted(gateway.vendor_names(AgentProfile.QUOTE)) == ["Acme", "Beta", "Gamma"]

    assert await _complete(processor, repository, run.id, "Acme", 1, "4.50") == SignalResult.APPLIED
    await _complete(processor, repository, run.id, "Beta", 1, "4.20")
    assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_1
    await _complete(processor, repository, run.id, "Gamma", 1, "4.80")

    # Beta holds the benchmark, so only Acme and Gamma are called back.
    assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_2
    negotiations = [item for item in gateway.submissions if item["profile"] == AgentProfile.NEGOTIATE]
    assert sorted(item["variables"]["vendor_name"] for item in negotiations) == ["Acme", "Gamma"]
    for item in negotiations:
        assert item["variables"]["best_price"] == "$4.20"
        assert item["variables"]["best_supplier"] == "Beta"
        assert item["variables"]["target_price"] == "$3.65"
        assert "TARGET PRICE: $3.65" in item["variables"]["negotiation_plan"]

    await _complete(processor, repository, run.id, "Acme", 2, "4.10")
    await _complete(processor, repository, run.id, "Gamma", 2)

    assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_3
    confirm = [item for item in gateway.submissions if item["profile"] == AgentProfile.CONFIRM]
    assert len(confirm) == 1
    assert confirm[0]["variables"]["vendor_name"] == "Acme"
    assert confirm[0]["variables"]["agreed_price"] == "$4.10"
    assert confirm[0]["variables"]["original_price"] == "$4.50"
    assert confirm[0]["variables"]["was_negotiated"] == "yes"
    assert confirm[0]["variables"]["vendor_email"] == "sales@acme.test"

    await _complete(processor, repository, run.id, "Acme", 3)
    assert (await repository.require_run(run.id)).status == RunStatus.AWAITING_INVOICE
    assert engine.bus.has_run_state(run.id)
    recipient, terms = mailer.sent[0]
    assert recipient == "sales@acme.test"
    assert terms.unit_price == 4.10
    assert terms.savings_percent == 8.9

    reply = MailReply.model_validate(
        {"from": "Acme Billing <SALES@acme.test>", "subject": "Invoice INV-88", "attachments": [{"filename": "inv-88.pdf"}]}
    )
    assert await engine.handle_mail_reply(reply)
    assert not engine.bus.has_run_state(run.id)
    assert not await engine.handle_mail_reply(reply)

    transitions = [item.to_status for item in await repository.list_transitions(run.id)]
    assert transitions == [
        "pending",
        "running",
        "calling_round_1",
        "negotiating",
        "calling_round_2",
        "summarizing",
        "calling_round_3",
        "sending_confirmation",
        "awaiting_invoice",
        "invoice_received",
    ]


@pytest.mark.asyncio
async def test_negotiation_is_skipped_with_a_single_priced_quote(engine, processor, repository, gateway):
    run = await _campaign(engine, *THREE_VENDORS[:2])
    queue = await engine.bus.subscribe(run.id)
    await engine.start_run(run.id)

    await _complete(processor, repository, run.id, "Acme", 1, "4.50")
    await _complete(processor, repository, run.id, "Beta", 1)

    assert gateway.vendor_names(AgentProfile.NEGOTIATE) == []
    assert gateway.vendor_names(AgentProfile.CONFIRM) == ["Acme"]
    assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_3
    events = [queue.get_nowait() for _ in range(queue.qsize())]
    titles = [event.payload.get("title") for event in events if event.event_type == RunEventType.ACTIVITY]
    assert "Negotiation skipped" in titles
    summary = next(event for event in events if event.event_type == RunEventType.SUMMARY)
    assert summary.payload["best_supplier"] == "Acme"


@pytest.mark.asyncio
async def test_run_without_callable_vendors_completes_without_winner(engine, repository, gateway):
    run = await _campaign(engine, CounterpartyBuilder("Web Only Mugs").with_email("hi@web.test").build())
    await engine.start_run(run.id)

    assert gateway.submissions == []
    assert (await repository.require_run(run.id)).status == RunStatus.COMPLETE
    assert not engine.bus.has_run_state(run.id)


@pytest.mark.asyncio
async def test_failed_submissions_do_not_stall_the_round(repository, settings, memory, mailer):
    gateway = FakeGateway(reject=("+15550002",), fail=("+15550003",))
    engine = OrchestrationEngine(repository, gateway, settings=settings, memory=memory, mailer=mailer)
    try:
        run = await _campaign(engine, *THREE_VENDORS)
        await engine.start_run(run.id)
        calls = {call.counterparty_id: call for call in await repository.list_calls(run.id, 1)}
        failed = [call for call in calls.values() if call.status == CallStatus.FAILED]
        assert sorted(call.failure_reason.split(":")[0] for call in failed) == ["rejected", "submit_error"]
        assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_1
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_concurrent_completion_checks_fire_one_negotiation_round(engine, repository, gateway):
    run = await _campaign(engine, *THREE_VENDORS)
    await engine.start_run(run.id)
    # Close every round-1 call directly so only the completion checks race.
    for name, price in (("Acme", 4.50), ("Beta", 4.20), ("Gamma", 4.80)):
        call = await call_for(repository, run.id, name, 1)
        offer = repository.build_offer(call.counterparty_id, source=offer_source_for_round(1), call_id=call.id, unit_price=price)
        assert await repository.finish_call_by_handle(call.handle, CallStatus.COMPLETED, offer=offer)

    results = await asyncio.gather(*[engine.check_round_completion(run.id, 1) for _ in range(5)])

    assert results.count(True) == 1
    assert sorted(gateway.vendor_names(AgentProfile.NEGOTIATE)) == ["Acme", "Gamma"]
    assert len(await repository.list_calls(run.id, 2)) == 2
    transitions = [item.to_status for item in await repository.list_transitions(run.id)]
    assert transitions.count("negotiating") == 1
    assert transitions.count("calling_round_2") == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_signals_apply_once(engine, processor, repository, gateway):
    run = await _campaign(engine, *THREE_VENDORS)
    await engine.start_run(run.id)
    await _complete(processor, repository, run.id, "Acme", 1, "4.50")
    await _complete(processor, repository, run.id, "Beta", 1, "4.20")
    gamma = await call_for(repository, run.id, "Gamma", 1)

    signal = completion(gamma.handle, "4.80")
    results = await asyncio.gather(*[processor.process_signal(signal) for _ in range(3)])

    assert results.count(SignalResult.APPLIED) == 1
    assert results.count(SignalResult.DUPLICATE) == 2
    offers = await repository.list_offers(run.id)
    assert [offer.unit_price for offer in offers if offer.call_id == gamma.id] == [4.80]
    assert sorted(gateway.vendor_names(AgentProfile.NEGOTIATE)) == ["Acme", "Gamma"]


@pytest.mark.asyncio
async def test_slow_extraction_keeps_the_round_open_until_its_offer_is_stored(engine, repository, gateway, settings):
    processor = WebhookProcessor(
        repository,
        engine,
        SlowExtractor({"Acme": 0.2}),
        lookup_retry_delay_seconds=settings.lookup_retry_delay_seconds,
        workspace=settings.workspace,
    )
    run = await _campaign(engine, *THREE_VENDORS[:2])
    await engine.start_run(run.id)
    acme = await call_for(repository, run.id, "Acme", 1)
    beta = await call_for(repository, run.id, "Beta", 1)

    results = await asyncio.gather(
        processor.process_signal(completion(acme.handle, "4.00")),
        processor.process_signal(completion(beta.handle, "4.50")),
    )

    assert results == [SignalResult.APPLIED, SignalResult.APPLIED]
    assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_2
    assert gateway.vendor_names(AgentProfile.NEGOTIATE) == ["Beta"]
    assert gateway.vendor_names(AgentProfile.CONFIRM) == []
    negotiation = next(item for item in gateway.submissions if item["profile"] == AgentProfile.NEGOTIATE)
    assert negotiation["variables"]["best_supplier"] == "Acme"
    assert negotiation["variables"]["best_price"] == "$4.00"


async def _age_call(db_path, call_id):
    async with aiosqlite.connect(db_path) as conn:
        await conn.execute("UPDATE calls SET submitted_at = ? WHERE id = ?", ("2020-01-01T00:00:00+00:00", call_id))
        await conn.commit()


class _InterleavingBus(StreamBus):
    """Runs a hook right after the first stale-call update is published."""

    def __init__(self):
        super().__init__()
        self.on_stale = None

    async def publish(self, **kwargs):
        event = await super().publish(**kwargs)
        payload = kwargs.get("payload") or {}
        if self.on_stale is not None and payload.get("reason") == "stale":
            hook, self.on_stale = self.on_stale, None
            await hook()
        return event


@pytest.mark.asyncio
async def test_signal_during_stale_reconciliation_does_not_close_the_round(repository, memory, settings, db_path):
    bus = _InterleavingBus()
    gateway = FakeGateway()
    engine = OrchestrationEngine(repository, gateway, settings=settings, memory=memory, bus=bus, workspace=settings.workspace)
    processor = WebhookProcessor(repository, engine, lookup_retry_delay_seconds=0.0, workspace=settings.workspace)
    try:
        run = await _campaign(engine, *THREE_VENDORS[:2])
        await engine.start_run(run.id)
        acme = await call_for(repository, run.id, "Acme", 1)
        beta = await call_for(repository, run.id, "Beta", 1)
        await _age_call(db_path, acme.id)

        async def _beta_reports_back():
            assert await processor.process_signal(completion(beta.handle, "4.50")) == SignalResult.APPLIED

        bus.on_stale = _beta_reports_back
        await engine.handle_watchdog_fire(run.id, 1)

        assert bus.on_stale is None
        assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_1
        calls = await repository.list_calls(run.id, 1)
        assert sorted((call.attempt, call.status.value) for call in calls) == [
            (1, "completed"),
            (1, "failed"),
            (2, "in-progress"),
        ]

        await _complete(processor, repository, run.id, "Acme", 1, "4.00")
        assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_2
        assert gateway.vendor_names(AgentProfile.NEGOTIATE) == ["Beta"]
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_vendor_stale_twice_is_dropped_while_the_rest_negotiate(engine, processor, repository, gateway, db_path):
    vendors = (*THREE_VENDORS, CounterpartyBuilder("Delta").with_phone("+15550004").build())
    run = await _campaign(engine, *vendors)
    await engine.start_run(run.id)
    gamma = await call_for(repository, run.id, "Gamma", 1)

    await _age_call(db_path, gamma.id)
    await engine.handle_watchdog_fire(run.id, 1)
    retry = await call_for(repository, run.id, "Gamma", 1)
    assert retry.attempt == 2
    await _age_call(db_path, retry.id)
    await engine.handle_watchdog_fire(run.id, 1)

    assert gateway.vendor_names(AgentProfile.QUOTE).count("Gamma") == 2
    assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_1

    await _complete(processor, repository, run.id, "Acme", 1, "4.50")
    await _complete(processor, repository, run.id, "Beta", 1, "4.20")
    await _complete(processor, repository, run.id, "Delta", 1, "4.80")

    assert (await repository.require_run(run.id)).status == RunStatus.CALLING_ROUND_2
    assert sorted(gateway.vendor_names(AgentProfile.NEGOTIATE)) == ["Acme", "Delta"]

    await _complete(processor, repository, run.id, "Acme", 2, "4.10")
    await _complete(processor, repository, run.id, "Delta", 2)
    assert gateway.vendor_names(AgentProfile.CONFIRM) == ["Acme"]
    await _complete(processor, repository, run.id, "Acme", 3)

    assert (await repository.require_run(run.id)).status == RunStatus.AWAITING_INVOICE
    assert "Gamma" not in {name for name in gateway.vendor_names(AgentProfile.NEGOTIATE) + gateway.vendor_names(AgentProfile.CONFIRM)}
    assert not engine.watchdog.was_retried(run.id, 1, gamma.counterparty_id)
    assert engine.bus.has_run_state(run.id)


@pytest.mark.asyncio
async def test_stale_call_is_retried_once_then_given_up(repository, memory, settings):
    fast = settings.model_copy(update={"watchdog_timeout_seconds": 0.05})
    gateway = FakeGateway()
    engine = OrchestrationEngine(
        repository,
        gateway,
        settings=fast,
        memory=memory,
        watchdog=WatchdogRegistry(fast.watchdog_timeout_seconds),
        workspace=fast.workspace,
    )
    try:
        run = await _campaign(engine, THREE_VENDORS[0])
        await engine.start_run(run.id)
        final = await wait_for_status(repository, run.id, RunStatus.COMPLETE, timeout=5.0)

        assert final.status == RunStatus.COMPLETE
        assert gateway.vendor_names(AgentProfile.QUOTE) == ["Acme", "Acme"]
        calls = await repository.list_calls(run.id, 1)
        assert sorted(call.attempt for call in calls) == [1, 2]
        assert all(call.status == CallStatus.FAILED and call.failure_reason == "stale" for call in calls)
    finally:
        await engine.close()


class _BrokenGateway:
    async def submit(self, *args, **kwargs):
        raise InfrastructureError("event store unavailable")


@pytest.mark.asyncio
async def test_infrastructure_fault_fails_the_run(repository, settings):
    bus = StreamBus()
    engine = OrchestrationEngine(repository, _BrokenGateway(), settings=settings, bus=bus)
    try:
        run = await _campaign(engine, THREE_VENDORS[0])
        queue = await bus.subscribe(run.id)

        assert await engine.start_run(run.id) is False
        assert (await repository.require_run(run.id)).status == RunStatus.FAILED
        assert not engine.watchdog.is_armed(run.id, 1)

        events = [queue.get_nowait() for _ in range(queue.qsize())]
        last_stage = [event for event in events if event.event_type == RunEventType.STAGE_CHANGE][-1]
        assert last_stage.payload == {"stage": "complete", "status": "failed"}
        assert not bus.has_run_state(run.id)
    finally:
        await engine.close()
