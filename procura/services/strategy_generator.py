from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from procura.adapters.llm.reasoning_provider import ReasoningProvider
from procura.exceptions import ModelProviderError
from procura.logging import log_event
from procura.services.context_assembler import OutreachContext, money
from procura.services.memory_store import MemorySnippet
from procura.streaming.activity import ActivityTracker, Service

STRATEGIST_SYSTEM_PROMPT = "You are a procurement negotiation strategist. Output valid JSON."


class NegotiationPlan(BaseModel):
    opening_approach: str
    leverage_points: List[str] = Field(min_length=1)
    target_price: str = Field(min_length=1)
    fallback_position: str
    talking_points: str
    risk_notes: str
    origin: Literal["reasoning", "fallback"] = "fallback"


def format_for_agent(plan: NegotiationPlan) -> str:
    return "\n".join(
        [
            f"APPROACH: {plan.opening_approach}",
            f"TARGET PRICE: {plan.target_price}",
            f"LEVERAGE: {'; '.join(plan.leverage_points)}",
            f"TALKING POINTS: {plan.talking_points}",
            f"FALLBACK: {plan.fallback_position}",
            f"CAUTION: {plan.risk_notes}",
        ]
    )


class StrategyGenerator:
    """
    Builds a per-counterparty negotiation plan.
    The reasoning service is asked first; any failure yields the rule-based plan.
    """

    def __init__(
        self,
        provider: Optional[ReasoningProvider] = None,
        *,
        activity: Optional[ActivityTracker] = None,
        target_price_ratio: float = 0.87,
    ):
        self.provider = provider
        self.activity = activity
        self.target_price_ratio = target_price_ratio

    async def generate(self, context: OutreachContext, history: Optional[List[MemorySnippet]] = None) -> NegotiationPlan:
        history = list(history if history is not None else context.history)
        fallback = self.fallback_plan(context)
        if self.provider is None or not self.provider.configured:
            log_event(
                "strategy_fallback",
                {"run_id": context.run_id, "counterparty_id": context.counterparty_id, "reason": "unconfigured"},
            )
            return fallback

        try:
            if self.activity is not None:
                async with self.activity.active(context.run_id, Service.REASONING):
                    payload = await self.provider.complete_json(STRATEGIST_SYSTEM_PROMPT, build_strategy_prompt(context, history))
            else:
                payload = await self.provider.complete_json(STRATEGIST_SYSTEM_PROMPT, build_strategy_prompt(context, history))
            plan = self._plan_from_payload(payload, fallback)
        except (ModelProviderError, ValueError, TypeError) as exc:
            log_event(
                "strategy_fallback",
                {
                    "run_id": context.run_id,
                    "counterparty_id": context.counterparty_id,
                    "reason": type(exc).__name__,
                    "error": str(exc),
                    "level": "warning",
                },
            )
            return fallback

        log_event(
            "strategy_generated",
            {"run_id": context.run_id, "counterparty_id": context.counterparty_id, "target_price": plan.target_price},
        )
        return plan

    def fallback_plan(self, context: OutreachContext) -> NegotiationPlan:
        best_price = context.best_price or (money(context.benchmark_price) if context.benchmark_price else "")
        if context.benchmark_price is not None:
            target = money(round(context.benchmark_price * self.target_price_ratio, 2))
        elif context.own_offer is not None and context.own_offer.unit_price is not None:
            target = money(round(context.own_offer.unit_price * self.target_price_ratio, 2))
        else:
            target = best_price or "the best available price"
        benchmark_text = best_price or "a lower price"
        supplier = context.best_supplier or "another supplier"

        return NegotiationPlan(
            opening_approach=(
                f"Reference our previous conversation about {context.item} and mention we've received competitive quotes."
            ),
            leverage_points=[
                f"We have a competing offer at {benchmark_text}/unit from another supplier",
                "We are ready to place the order immediately if the price is right",
                "Volume commitment for repeat orders if terms are favorable",
            ],
            target_price=target,
            fallback_position=(
                "Accept if terms improve: better payment terms (net-60), faster lead time, or free shipping."
            ),
            talking_points=(
                f"We spoke earlier about {context.item}. Since then, we received a quote at {benchmark_text}/unit "
                f"from {supplier}. We prefer working with you but need the price to be competitive. "
                f"Can you match {target}/unit? We're ready to commit to the full order of {context.quantity} today."
            ),
            risk_notes=(
                "Avoid being overly aggressive. If they seem firm on price, pivot to negotiating other terms "
                "like lead time or payment conditions."
            ),
            origin="fallback",
        )

    @staticmethod
    def _plan_from_payload(payload: Dict[str, Any], fallback: NegotiationPlan) -> NegotiationPlan:
        leverage = payload.get("key_leverage_points", payload.get("leverage_points"))
        target = payload.get("target_price")
        if not isinstance(leverage, list) or not [item for item in leverage if str(item).strip()]:
            raise ValueError("reasoning reply is missing leverage points")
        if target is None or not str(target).strip():
            raise ValueError("reasoning reply is missing a target price")

        def _text(key: str, default: str) -> str:
            value = payload.get(key)
            return str(value).strip() if value is not None and str(value).strip() else default

        return NegotiationPlan(
            opening_approach=_text("opening_approach", fallback.opening_approach),
            leverage_points=[str(item).strip() for item in leverage if str(item).strip()],
            target_price=str(target).strip(),
            fallback_position=_text("fallback_position", fallback.fallback_position),
            talking_points=_text("talking_points", fallback.talking_points),
            risk_notes=_text("risk_notes", fallback.risk_notes),
            origin="reasoning",
        )


def build_strategy_prompt(context: OutreachContext, history: List[MemorySnippet]) -> str:
    own = context.own_offer
    background = " | ".join(snippet.text for snippet in history if snippet.tags.get("channel") == "search")
    calls = " | ".join(snippet.text for snippet in history if snippet.tags.get("channel") == "call")
    return f"""Given the following data about a vendor and the competitive landscape, create a specific negotiation plan for a follow-up phone call.

VENDOR: {context.vendor_name}
ITEM WE'RE BUYING: {context.item} (quantity: {context.quantity})

THEIR ROUND 1 QUOTE:
- Unit price: {money(own.unit_price) if own and own.unit_price is not None else 'Not quoted'}
- MOQ: {(own.moq if own else None) or 'Not specified'}
- Lead time: {f'{own.lead_time_days} days' if own and own.lead_time_days is not None else 'Not specified'}
- Payment terms: {(own.terms if own else None) or 'Not specified'}

VENDOR BACKGROUND:
{background or 'No background data available.'}

ROUND 1 CALL SUMMARY:
{calls or 'No transcript available.'}

COMPETING OFFERS FROM OTHER VENDORS:
{context.competing_offers}

BEST COMPETING PRICE: {context.best_price or 'N/A'}/unit from {context.best_supplier or 'N/A'}
OUR TARGET: {context.target_price or 'N/A'}/unit

Output ONLY valid JSON with this structure:
{{
  "opening_approach": "1-2 natural sentences to open the call",
  "key_leverage_points": ["point1", "point2", "point3"],
  "target_price": "$X.XX",
  "fallback_position": "What to accept if they can't hit the target",
  "talking_points": "2-3 sentences of concrete guidance for the phone agent",
  "risk_notes": "Things to avoid during this call"
}}"""
