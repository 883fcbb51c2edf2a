"""Completion-signal entrypoint: turns provider call reports into Call, Offer and memory updates."""
from __future__ import annotations

import asyncio
import math
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from procura.adapters.storage.async_entity_repository import AsyncEntityRepository
from procura.core.types import (
    TERMINAL_CALL_STATUSES,
    CallRound,
    CallStatus,
    MemoryChannel,
    SignalOutcome,
    offer_source_for_round,
)
from procura.domain.records import CallRecord, CounterpartyRecord, OfferRecord
from procura.exceptions import InfrastructureError
from procura.logging import log_event
from procura.orchestration.engine import OrchestrationEngine
from procura.services.offer_extractor import OfferExtractor
from procura.streaming.activity import Service
from procura.streaming.contracts import RunEventType


class TranscriptTurn(BaseModel):
    speaker: str = "agent"
    text: str = ""


class CompletionSignal(BaseModel):
    handle: str
    outcome: SignalOutcome
    transcript: List[TranscriptTurn] = Field(default_factory=list)
    structured_fields: Dict[str, Any] = Field(default_factory=dict)
    duration_seconds: Optional[int] = None
    summary: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def transcript_text(self) -> str:
        lines = []
        for turn in self.transcript:
            if not turn.text:
                continue
            label = "Agent" if turn.speaker == "agent" else "Vendor"
            lines.append(f"{label}: {turn.text}")
        return "\n".join(lines)

    @classmethod
    def from_provider_payload(cls, body: Dict[str, Any]) -> Optional["CompletionSignal"]:
        """
        Normalise a voice provider webhook envelope.
        Returns None for envelopes that carry no completion (audio, unknown types, no handle).
        """
        event_type = body.get("type")
        data = body.get("data") or {}
        if not isinstance(data, dict):
            return None
        handle = data.get("conversation_id")
        if not handle or not isinstance(handle, (str, int)):
            return None

        if event_type == "call_initiation_failure":
            return cls(
                handle=str(handle),
                outcome=SignalOutcome.FAILED,
                failure_reason=str(data.get("failure_reason") or "initiation_failure"),
            )
        if event_type != "post_call_transcription":
            return None

        transcript = [
            TranscriptTurn(speaker=str(turn.get("role") or "agent"), text=str(turn.get("message") or ""))
            for turn in _as_list(data.get("transcript"))
            if isinstance(turn, dict)
        ]
        analysis = _as_dict(data.get("analysis"))
        structured: Dict[str, Any] = {}
        for key, value in _as_dict(analysis.get("data_collection_results")).items():
            structured[str(key)] = value.get("value") if isinstance(value, dict) else value
        metadata = _as_dict(data.get("metadata"))
        duration = metadata.get("call_duration_secs")
        status = data.get("status")
        summary = analysis.get("transcript_summary")
        return cls(
            handle=str(handle),
            outcome=SignalOutcome.DONE if status == "done" else SignalOutcome.FAILED,
            transcript=transcript,
            structured_fields=structured,
            duration_seconds=_whole_seconds(duration),
            summary=str(summary) if summary else None,
            failure_reason=None if status == "done" else f"provider_status:{status}",
        )


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _whole_seconds(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(value)


class SignalResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"


class WebhookProcessor:
    """
    Applies completion signals. Every signal for a handle after the first is
    acknowledged without side effects.
    """

    def __init__(
        self,
        repository: AsyncEntityRepository,
        engine: OrchestrationEngine,
        extractor: Optional[OfferExtractor] = None,
        *,
        lookup_retry_delay_seconds: float = 1.0,
        workspace: Optional[Path] = None,
    ):
        self.repository = repository
        self.engine = engine
        self.extractor = extractor or OfferExtractor(None, activity=engine.activity)
        self.lookup_retry_delay_seconds = lookup_retry_delay_seconds
        self.workspace = workspace

    @property
    def bus(self):
        return self.engine.bus

    @property
    def feed(self):
        return self.engine.feed

    async def _find_call(self, handle: str) -> Optional[CallRecord]:
        call = await self.repository.get_call_by_handle(handle)
        if call is not None:
            return call
        # The submitting task may not have stored the handle yet.
        await asyncio.sleep(self.lookup_retry_delay_seconds)
        return await self.repository.get_call_by_handle(handle)

    async def process_signal(self, signal: CompletionSignal) -> SignalResult:
        call = await self._find_call(signal.handle)
        if call is None:
            log_event("signal_dropped", {"handle": signal.handle, "reason": "unknown_handle", "level": "warning"}, self.workspace)
            return SignalResult.DROPPED

        result = await self.engine.guard(call.run_id, "process_signal", lambda: self._apply(call, signal))
        return result if isinstance(result, SignalResult) else SignalResult.DROPPED

    async def _apply(self, call: CallRecord, signal: CompletionSignal) -> SignalResult:
        if call.status in TERMINAL_CALL_STATUSES:
            return self._duplicate(call, signal)

        transcript = signal.transcript_text
        done = signal.outcome == SignalOutcome.DONE
        counterparty = await self.repository.get_counterparty(call.counterparty_id)
        name = counterparty.name if counterparty else "Unknown Vendor"

        # The offer is extracted while the call is still open and lands in the
        # same write that makes the call terminal.
        draft: Optional[OfferRecord] = None
        activity_id: Optional[str] = None
        if done and call.round in (CallRound.QUOTE, CallRound.NEGOTIATION):
            draft, activity_id = await self._extract_offer(call, name, signal)

        applied = await self.repository.finish_call_by_handle(
            signal.handle,
            CallStatus.COMPLETED if done else CallStatus.FAILED,
            transcript=transcript or None,
            duration=signal.duration_seconds,
            failure_reason=None if done else (signal.failure_reason or "provider_failure"),
            offer=draft,
        )
        if not applied:
            if activity_id is not None:
                await self.feed.update(call.run_id, activity_id, status="done", description="Quote already recorded.")
            return self._duplicate(call, signal)

        log_event(
            "signal_applied",
            {"run_id": call.run_id, "call_id": call.id, "round": call.round, "outcome": signal.outcome.value},
            self.workspace,
        )

        offer: Optional[OfferRecord] = None
        if draft is not None:
            offer = await self.repository.get_offer_for_call(call.id)
        if activity_id is not None:
            await self._announce_offer(call, name, offer, activity_id)
        if done:
            await self._remember_call(call, counterparty, signal, offer)

        await self._publish(call, name, signal, offer)
        await self.engine.check_round_completion(call.run_id, call.round)
        return SignalResult.APPLIED

    def _duplicate(self, call: CallRecord, signal: CompletionSignal) -> SignalResult:
        log_event(
            "signal_duplicate",
            {"run_id": call.run_id, "call_id": call.id, "handle": signal.handle},
            self.workspace,
        )
        return SignalResult.DUPLICATE

    async def _extract_offer(
        self,
        call: CallRecord,
        name: str,
        signal: CompletionSignal,
    ) -> Tuple[Optional[OfferRecord], str]:
        activity_id = await self.feed.start(
            call.run_id,
            kind="analysis",
            title=f"Extracting quote from {name}",
            description="Analyzing call transcript...",
            tool="reasoning",
        )
        extracted = await self.extractor.extract(
            signal.transcript_text,
            name,
            signal.structured_fields,
            signal.summary,
            run_id=call.run_id,
        )
        if extracted is None:
            return None, activity_id
        draft = self.repository.build_offer(
            call.counterparty_id,
            source=offer_source_for_round(call.round),
            call_id=call.id,
            unit_price=extracted.unit_price,
            moq=extracted.moq,
            lead_time_days=extracted.lead_time_days,
            shipping=extracted.shipping,
            terms=extracted.terms,
            confidence=extracted.confidence,
            raw_evidence=signal.transcript_text,
        )
        return draft, activity_id

    async def _announce_offer(self, call: CallRecord, name: str, offer: Optional[OfferRecord], activity_id: str) -> None:
        if offer is None:
            await self.feed.update(call.run_id, activity_id, status="done", description=f"No pricing captured from {name}.")
            return

        price = f"${offer.unit_price:.2f}/unit" if offer.unit_price is not None else "no firm price"
        await self.feed.update(call.run_id, activity_id, status="done", description=f"{name}: {price}")
        offer.counterparty_name = name
        await self.bus.publish(
            run_id=call.run_id,
            event_type=RunEventType.QUOTE,
            payload={
                "supplier": name,
                "counterparty_id": call.counterparty_id,
                "call_id": call.id,
                "round": call.round,
                "unit_price": offer.unit_price,
                "moq": offer.moq,
                "lead_time_days": offer.lead_time_days,
                "shipping": offer.shipping,
                "terms": offer.terms,
                "confidence": offer.confidence,
                "source": offer.source,
            },
        )

    async def _remember_call(
        self,
        call: CallRecord,
        counterparty: Optional[CounterpartyRecord],
        signal: CompletionSignal,
        offer: Optional[OfferRecord],
    ) -> None:
        memory = self.engine.memory
        if memory is None:
            return
        name = counterparty.name if counterparty else "Unknown Vendor"
        parts = [f"Round {call.round} call with {name}."]
        if signal.summary:
            parts.append(signal.summary)
        if offer is not None and offer.unit_price is not None:
            parts.append(f"Quoted ${offer.unit_price:.2f}/unit.")
        if offer is not None and offer.lead_time_days is not None:
            parts.append(f"Lead time {offer.lead_time_days} days.")
        try:
            async with self.engine.activity.active(call.run_id, Service.MEMORY):
                await memory.write(" ".join(parts), run_id=call.run_id, counterparty_id=call.counterparty_id, channel=MemoryChannel.CALL)
        except InfrastructureError as exc:
            log_event(
                "memory_write_failed",
                {"run_id": call.run_id, "call_id": call.id, "error": str(exc), "level": "warning"},
                self.workspace,
            )

    async def _publish(
        self,
        call: CallRecord,
        name: str,
        signal: CompletionSignal,
        offer: Optional[OfferRecord],
    ) -> None:
        done = signal.outcome == SignalOutcome.DONE
        if done:
            detail = f"Call completed ({signal.duration_seconds or 0}s)."
            if signal.summary:
                detail = f"{detail} {signal.summary[:200]}"
        else:
            detail = f"Call failed: {signal.failure_reason or 'provider_failure'}"
        await self.feed.start(
            call.run_id,
            kind="call",
            title=f"Call with {name} {'completed' if done else 'failed'}",
            description=detail,
            status="done" if done else "error",
            tool="voice",
        )
        await self.bus.publish(
            run_id=call.run_id,
            event_type=RunEventType.CALL_UPDATE,
            payload={
                "call_id": call.id,
                "counterparty_id": call.counterparty_id,
                "supplier": name,
                "round": call.round,
                "status": (CallStatus.COMPLETED if done else CallStatus.FAILED).value,
                "duration": signal.duration_seconds or 0,
                "has_offer": offer is not None,
            },
        )
        await self.engine.publish_calls_change(call.run_id)
