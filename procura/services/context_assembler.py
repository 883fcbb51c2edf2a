"""
Outreach context assembly.

Every outbound call is preceded by one `assemble` pass that merges the
Entity Store view of the run (request spec, counterparty record, competing
offers) with Memory Store snippets about the counterparty and the run.
Memory failures degrade the context; they never block the call.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from procura.adapters.storage.async_entity_repository import AsyncEntityRepository
from procura.core.types import offer_source_for_round
from procura.domain.records import OfferRecord
from procura.logging import log_event
from procura.services.memory_store import MemorySnippet, MemoryStore
from procura.streaming.activity import ActivityTracker, Service

NO_COMPETING_OFFERS = "No competing quotes yet"
NO_HISTORY = "No prior interactions with this vendor"


def money(value: Optional[float]) -> str:
    if value is None:
        return ""
    return f"${value:.2f}"


@dataclass(frozen=True)
class Benchmark:
    """Lowest priced round-1 offer; round-2 calls are negotiated against it."""

    price: float
    counterparty_id: str
    counterparty_name: str

    def target(self, ratio: float) -> float:
        return round(self.price * ratio, 2)


class OutreachContext(BaseModel):
    run_id: str
    counterparty_id: str
    round: int = 1

    vendor_name: str = ""
    vendor_phone: str = ""
    vendor_url: str = ""
    vendor_notes: str = ""

    item: str = ""
    quantity: str = ""
    deadline: str = ""
    quality: str = ""

    indicative_pricing: str = ""
    competing_offers: str = NO_COMPETING_OFFERS
    past_history: str = NO_HISTORY
    run_discovery: str = ""

    best_price: str = ""
    best_supplier: str = ""
    target_price: str = ""
    negotiation_plan: str = ""

    benchmark_price: Optional[float] = None
    target_price_value: Optional[float] = None
    own_offer: Optional[OfferRecord] = None
    history: List[MemorySnippet] = Field(default_factory=list)


def to_dynamic_variables(context: OutreachContext) -> Dict[str, str]:
    """Flatten the context into the string-only variables the voice agent prompt references."""
    return {
        "run_id": context.run_id,
        "vendor_id": context.counterparty_id,
        "round": str(context.round),
        "vendor_name": context.vendor_name,
        "vendor_phone": context.vendor_phone,
        "vendor_url": context.vendor_url,
        "vendor_notes": context.vendor_notes,
        "item": context.item,
        "quantity": context.quantity,
        "deadline": context.deadline,
        "quality": context.quality,
        "indicative_pricing": context.indicative_pricing,
        "competing_offers": context.competing_offers,
        "past_history": context.past_history,
        "best_price": context.best_price,
        "best_supplier": context.best_supplier,
        "target_price": context.target_price,
        "negotiation_plan": context.negotiation_plan,
    }


def describe_offers(offers: List[OfferRecord]) -> str:
    if not offers:
        return NO_COMPETING_OFFERS
    parts = []
    for offer in offers:
        name = offer.counterparty_name or "Unknown"
        price = money(offer.unit_price) if offer.unit_price is not None else "price TBD"
        lead = f", {offer.lead_time_days}d lead" if offer.lead_time_days is not None else ""
        parts.append(f"{name} quoted {price}{lead}")
    return "; ".join(parts)


class ContextAssembler:
    def __init__(
        self,
        repository: AsyncEntityRepository,
        memory: Optional[MemoryStore],
        *,
        activity: Optional[ActivityTracker] = None,
        target_price_ratio: float = 0.87,
        top_k: int = 5,
    ):
        self.repository = repository
        self.memory = memory
        self.activity = activity
        self.target_price_ratio = target_price_ratio
        self.top_k = top_k

    async def assemble(
        self,
        run_id: str,
        counterparty_id: str,
        round_number: int = 1,
        benchmark: Optional[Benchmark] = None,
    ) -> OutreachContext:
        run, counterparty, competing, own_r1 = await asyncio.gather(
            self.repository.require_run(run_id),
            self.repository.require_counterparty(counterparty_id),
            self.repository.list_offers(run_id, exclude_counterparty_id=counterparty_id, order="price"),
            self.repository.list_offers(run_id, source=offer_source_for_round(1), order="recent"),
        )
        spec = run.parsed_spec
        meta = counterparty.metadata or {}
        own_offer = next((offer for offer in own_r1 if offer.counterparty_id == counterparty_id), None)

        history, discovery = await self._retrieve_memory(run_id, counterparty_id, spec.item)

        context = OutreachContext(
            run_id=run_id,
            counterparty_id=counterparty_id,
            round=int(round_number),
            vendor_name=counterparty.name,
            vendor_phone=counterparty.phone or "",
            vendor_url=counterparty.url or "",
            vendor_notes=str(meta.get("notes") or meta.get("match") or ""),
            item=spec.item,
            quantity=spec.quantity,
            deadline=spec.deadline,
            quality=spec.quality,
            indicative_pricing=str(meta.get("pricing") or ""),
            competing_offers=describe_offers(competing),
            past_history=" | ".join(snippet.text for snippet in history if snippet.text) or NO_HISTORY,
            run_discovery=" | ".join(snippet.text for snippet in discovery if snippet.text),
            own_offer=own_offer,
            history=history,
        )

        if int(round_number) >= 2:
            if benchmark is None:
                cheapest = next((offer for offer in competing if offer.unit_price is not None), None)
                if cheapest is not None:
                    benchmark = Benchmark(
                        price=float(cheapest.unit_price),
                        counterparty_id=cheapest.counterparty_id,
                        counterparty_name=cheapest.counterparty_name or "Unknown",
                    )
            if benchmark is not None:
                target = benchmark.target(self.target_price_ratio)
                context.benchmark_price = benchmark.price
                context.target_price_value = target
                context.best_price = money(benchmark.price)
                context.best_supplier = benchmark.counterparty_name
                context.target_price = money(target)

        log_event(
            "outreach_context_assembled",
            {
                "run_id": run_id,
                "counterparty_id": counterparty_id,
                "round": int(round_number),
                "competing_offers": len(competing),
                "history_snippets": len(history),
                "best_price": context.best_price,
            },
        )
        return context

    async def _retrieve_memory(
        self, run_id: str, counterparty_id: str, query: str
    ) -> tuple[List[MemorySnippet], List[MemorySnippet]]:
        if self.memory is None:
            return [], []

        async def _both():
            return await asyncio.gather(
                self.memory.retrieve(query, counterparty_id=counterparty_id, limit=self.top_k),
                self.memory.retrieve(query, run_id=run_id, limit=self.top_k),
                return_exceptions=True,
            )

        if self.activity is not None:
            async with self.activity.active(run_id, Service.MEMORY):
                vendor_hits, run_hits = await _both()
        else:
            vendor_hits, run_hits = await _both()

        results = []
        for label, hits in (("counterparty", vendor_hits), ("run", run_hits)):
            if isinstance(hits, asyncio.CancelledError):
                raise hits
            if isinstance(hits, BaseException):
                log_event(
                    "memory_retrieve_failed",
                    {"run_id": run_id, "counterparty_id": counterparty_id, "scope": label, "error": str(hits), "level": "warning"},
                )
                results.append([])
            else:
                results.append(list(hits))
        return results[0], results[1]
