from __future__ import annotations

import re
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel

from procura.adapters.llm.reasoning_provider import ReasoningProvider
from procura.exceptions import ModelProviderError
from procura.logging import log_event
from procura.streaming.activity import ActivityTracker, Service

MIN_TRANSCRIPT_CHARS = 30
EXTRACTOR_SYSTEM_PROMPT = "You are a procurement data extraction system. Return only valid JSON."
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


class ExtractedOffer(BaseModel):
    unit_price: Optional[float] = None
    moq: Optional[str] = None
    lead_time_days: Optional[int] = None
    shipping: Optional[str] = None
    terms: Optional[str] = None
    confidence: int = 50
    origin: Literal["reasoning", "structured_fields"] = "reasoning"


def _first_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMBER.search(str(value).replace(",", ""))
    return float(match.group()) if match else None


def _text_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _clamp_confidence(value: Any, default: int = 50) -> int:
    number = _first_number(value)
    if number is None:
        return default
    return max(1, min(100, int(round(number))))


def offer_from_structured_fields(fields: Dict[str, Any]) -> Optional[ExtractedOffer]:
    """Build an offer from the provider's own data-collection results."""
    if not fields:
        return None
    price = _first_number(fields.get("unit_price", fields.get("price")))
    lead = _first_number(fields.get("lead_time_days", fields.get("lead_time")))
    offer = ExtractedOffer(
        unit_price=price if price else None,
        moq=_text_or_none(fields.get("moq", fields.get("minimum_order"))),
        lead_time_days=int(lead) if lead else None,
        shipping=_text_or_none(fields.get("shipping")),
        terms=_text_or_none(fields.get("payment_terms")),
        confidence=50,
        origin="structured_fields",
    )
    if all(value is None for value in (offer.unit_price, offer.moq, offer.lead_time_days, offer.shipping, offer.terms)):
        return None
    return offer


class OfferExtractor:
    """Turns a call transcript into structured offer terms."""

    def __init__(self, provider: Optional[ReasoningProvider] = None, *, activity: Optional[ActivityTracker] = None):
        self.provider = provider
        self.activity = activity

    async def extract(
        self,
        transcript: str,
        counterparty_name: str,
        structured_fields: Optional[Dict[str, Any]] = None,
        summary: Optional[str] = None,
        *,
        run_id: Optional[str] = None,
    ) -> Optional[ExtractedOffer]:
        transcript = transcript or ""
        structured_fields = dict(structured_fields or {})
        if len(transcript) < MIN_TRANSCRIPT_CHARS:
            log_event("offer_extraction_skipped", {"run_id": run_id, "reason": "short_transcript", "chars": len(transcript)})
            return None

        if self.provider is None or not self.provider.configured:
            return offer_from_structured_fields(structured_fields)

        prompt = build_extraction_prompt(transcript, counterparty_name, summary)
        try:
            if self.activity is not None and run_id:
                async with self.activity.active(run_id, Service.REASONING):
                    payload = await self.provider.complete_json(EXTRACTOR_SYSTEM_PROMPT, prompt)
            else:
                payload = await self.provider.complete_json(EXTRACTOR_SYSTEM_PROMPT, prompt)
        except ModelProviderError as exc:
            log_event(
                "offer_extraction_fallback",
                {"run_id": run_id, "counterparty": counterparty_name, "error": str(exc), "level": "warning"},
            )
            return offer_from_structured_fields(structured_fields)

        unit_price = _first_number(payload.get("unit_price"))
        if unit_price is None:
            # A quoted total is kept as the price; quantity is not known here.
            unit_price = _first_number(payload.get("total_price"))
        lead = _first_number(payload.get("lead_time_days"))
        terms = ". ".join(
            text for text in (_text_or_none(payload.get("payment_terms")), _text_or_none(payload.get("notes"))) if text
        )
        return ExtractedOffer(
            unit_price=unit_price,
            moq=_text_or_none(payload.get("moq")),
            lead_time_days=int(lead) if lead is not None else None,
            shipping=_text_or_none(payload.get("shipping")),
            terms=terms or None,
            confidence=_clamp_confidence(payload.get("confidence")),
            origin="reasoning",
        )


def build_extraction_prompt(transcript: str, counterparty_name: str, summary: Optional[str]) -> str:
    summary_block = f"CALL SUMMARY: {summary}\n" if summary else ""
    return f"""Analyze this phone call transcript between our procurement agent and {counterparty_name}. Extract any pricing or offer information discussed.

TRANSCRIPT:
{transcript[:3000]}

{summary_block}
Extract the following fields. If a field was not discussed or is unclear, set it to null.

{{
  "unit_price": <number or null, per-unit price in USD>,
  "total_price": <number or null, if they quoted a total rather than per-unit>,
  "moq": <string or null, minimum order quantity>,
  "lead_time_days": <integer or null, delivery lead time in business days>,
  "shipping": <string or null>,
  "payment_terms": <string or null>,
  "confidence": <integer 1-100, how actionable the quote is>,
  "notes": <string or null>
}}"""
