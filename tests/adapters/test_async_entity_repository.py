import asyncio

import pytest

from procura.core.types import CallStatus, RunStatus, offer_source_for_round
from procura.core.domain.state_machine import StateMachineError
from procura.exceptions import RunNotFound
from tests.fakes import RFQ


@pytest.fixture
async def run(repository):
    return await repository.create_run("mugs", RFQ)


@pytest.mark.asyncio
async def test_create_and_read_run_with_lead_time_alias(repository):
    run = await repository.create_run("mugs", {"item": "mugs", "quantity": 500, "leadTime": "2 weeks"})
    stored = await repository.get_run(run.id)
    assert stored is not None
    assert stored.status == RunStatus.PENDING
    assert stored.parsed_spec.quantity == "500"
    assert stored.parsed_spec.deadline == "2 weeks"

    with pytest.raises(RunNotFound):
        await repository.require_run("missing")


@pytest.mark.asyncio
async def test_compare_and_set_succeeds_exactly_once_under_contention(repository, run):
    results = await asyncio.gather(
        *[
            repository.compare_and_set_run_status(run.id, RunStatus.PENDING, RunStatus.RUNNING, reason="race")
            for _ in range(6)
        ]
    )
    assert results.count(True) == 1
    transitions = await repository.list_transitions(run.id)
    assert [item.to_status for item in transitions] == ["pending", "running"]


@pytest.mark.asyncio
async def test_compare_and_set_validates_order_before_writing(repository, run):
    with pytest.raises(StateMachineError):
        await repository.compare_and_set_run_status(run.id, RunStatus.NEGOTIATING, RunStatus.RUNNING)
    assert (await repository.require_run(run.id)).status == RunStatus.PENDING


@pytest.mark.asyncio
async def test_advance_run_status_stops_at_terminal(repository, run):
    assert await repository.advance_run_status(run.id, RunStatus.FAILED, reason="boom")
    assert not await repository.advance_run_status(run.id, RunStatus.COMPLETE)
    assert (await repository.require_run(run.id)).status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_finish_call_applies_first_terminal_update_only(repository, run):
    vendor = await repository.create_counterparty(run.id, "Acme", phone="+15550001")
    call = await repository.create_call(run.id, vendor.id, 1)
    assert await repository.count_open_calls(run.id, 1) == 1

    assert await repository.mark_call_submitted(call.id, "conv-1")
    first = await repository.finish_call_by_handle("conv-1", CallStatus.COMPLETED, transcript="Agent: hi", duration=42)
    second = await repository.finish_call_by_handle("conv-1", CallStatus.FAILED, failure_reason="late")

    assert first is True
    assert second is False
    stored = await repository.get_call(call.id)
    assert stored.status == CallStatus.COMPLETED
    assert stored.duration == 42
    assert stored.failure_reason is None
    assert await repository.count_open_calls(run.id, 1) == 0
    assert not await repository.mark_call_failed(call.id, "stale")


@pytest.mark.asyncio
async def test_offer_lands_with_the_terminal_update_only(repository, run):
    vendor = await repository.create_counterparty(run.id, "Acme", phone="+15550001")
    call = await repository.create_call(run.id, vendor.id, 1)
    await repository.mark_call_submitted(call.id, "conv-1")
    source = offer_source_for_round(1)

    first = repository.build_offer(vendor.id, source=source, call_id=call.id, unit_price=4.5)
    late = repository.build_offer(vendor.id, source=source, call_id=call.id, unit_price=3.9)
    assert await repository.finish_call_by_handle("conv-1", CallStatus.COMPLETED, offer=first)
    assert not await repository.finish_call_by_handle("conv-1", CallStatus.COMPLETED, offer=late)

    offers = await repository.list_offers(run.id)
    assert [offer.unit_price for offer in offers] == [4.5]


@pytest.mark.asyncio
async def test_replace_stale_call_keeps_the_round_open(repository, run):
    vendor = await repository.create_counterparty(run.id, "Acme", phone="+15550001")
    call = await repository.create_call(run.id, vendor.id, 1)

    failed, replacement = await repository.replace_stale_call(call, "stale", retry=True)
    assert failed
    assert replacement.attempt == 2
    assert replacement.status == CallStatus.PENDING
    assert await repository.count_open_calls(run.id, 1) == 1

    assert await repository.replace_stale_call(call, "stale", retry=True) == (False, None)

    failed, replacement = await repository.replace_stale_call(replacement, "stale", retry=False)
    assert failed and replacement is None
    assert await repository.count_open_calls(run.id, 1) == 0
    assert sorted(item.attempt for item in await repository.list_calls(run.id, 1)) == [1, 2]


@pytest.mark.asyncio
async def test_finish_call_rejects_non_terminal_status(repository):
    with pytest.raises(ValueError):
        await repository.finish_call_by_handle("conv-1", CallStatus.IN_PROGRESS)


@pytest.mark.asyncio
async def test_offer_per_call_is_inserted_once(repository, run):
    vendor = await repository.create_counterparty(run.id, "Acme", phone="+15550001")
    call = await repository.create_call(run.id, vendor.id, 1)
    first = await repository.create_offer(vendor.id, source=offer_source_for_round(1), call_id=call.id, unit_price=4.5)
    again = await repository.create_offer(vendor.id, source=offer_source_for_round(1), call_id=call.id, unit_price=3.0)

    assert first is not None
    assert again is None
    offers = await repository.list_offers(run.id)
    assert [offer.unit_price for offer in offers] == [4.5]
    assert offers[0].counterparty_name == "Acme"
    assert offers[0].round == 1
    stored = await repository.get_offer_for_call(call.id)
    assert stored.id == first.id
    assert await repository.get_offer_for_call("missing") is None


@pytest.mark.asyncio
async def test_list_offers_orders_by_price_and_filters(repository, run):
    cheap = await repository.create_counterparty(run.id, "Cheap Co", phone="+1")
    dear = await repository.create_counterparty(run.id, "Dear Co", phone="+2")
    vague = await repository.create_counterparty(run.id, "Vague Co", phone="+3")
    await repository.create_offer(dear.id, source=offer_source_for_round(1), unit_price=5.0)
    await repository.create_offer(vague.id, source=offer_source_for_round(1))
    await repository.create_offer(cheap.id, source=offer_source_for_round(1), unit_price=4.0)
    await repository.create_offer(cheap.id, source=offer_source_for_round(2), unit_price=3.8)

    by_price = await repository.list_offers(run.id, source=offer_source_for_round(1))
    assert [offer.counterparty_name for offer in by_price] == ["Cheap Co", "Dear Co", "Vague Co"]

    competing = await repository.list_offers(run.id, exclude_counterparty_id=cheap.id)
    assert {offer.counterparty_id for offer in competing} == {dear.id, vague.id}


@pytest.mark.asyncio
async def test_awaiting_notification_lookup_matches_case_insensitively(repository, run):
    vendor = await repository.create_counterparty(run.id, "Acme", email="Sales@Acme.test")
    await repository.record_notification(run.id, vendor.id, "Sales@Acme.test", message_id="m1")

    assert await repository.find_awaiting_notification("sales@acme.test") is None

    for status in (RunStatus.RUNNING, RunStatus.SENDING_CONFIRMATION, RunStatus.AWAITING_INVOICE):
        await repository.advance_run_status(run.id, status)
    match = await repository.find_awaiting_notification("SALES@acme.test")
    assert match is not None
    assert match.run_id == run.id
    assert match.counterparty_id == vendor.id
