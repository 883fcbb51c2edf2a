from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from procura.core.types import offer_source_for_round
from procura.domain.records import CounterpartyRecord, OfferRecord

R1_SOURCE = offer_source_for_round(1)
R2_SOURCE = offer_source_for_round(2)


@dataclass
class ResolvedOffer:
    counterparty_id: str
    counterparty_name: str
    final_offer: OfferRecord
    final_price: float
    original_price: Optional[float] = None
    was_negotiated: bool = False
    savings_percent: Optional[float] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class Resolution:
    winner: Optional[ResolvedOffer]
    ranked: List[ResolvedOffer] = field(default_factory=list)
    offer_count: int = 0
    counterparty_count: int = 0
    savings_text: str = ""

    def summary(self) -> Dict[str, Any]:
        winner = self.winner
        if winner is None:
            recommendation = (
                f"{self.counterparty_count} vendors contacted but no firm quotes extracted. Review call transcripts."
            )
        else:
            recommendation = (
                f"Best price: ${winner.final_price:.2f}/unit from {winner.counterparty_name}.{self.savings_text} "
                "Ready to proceed with purchase."
            )
        return {
            "counterparty_count": self.counterparty_count,
            "offer_count": self.offer_count,
            "best_price": f"${winner.final_price:.2f}" if winner else "N/A",
            "best_supplier": winner.counterparty_name if winner else "N/A",
            "savings_text": self.savings_text.strip(),
            "recommendation": recommendation,
        }


def _most_recent_priced(offers: Iterable[OfferRecord], source: str) -> Optional[OfferRecord]:
    priced = [offer for offer in offers if offer.source == source and offer.unit_price is not None]
    if not priced:
        return None
    return max(priced, key=lambda offer: offer.created_at or "")


def savings_percent(original: Optional[float], final: Optional[float]) -> Optional[float]:
    if original is None or final is None or original <= 0 or final >= original:
        return None
    return round((original - final) / original * 100, 1)


def resolve_winner(
    offers: Iterable[OfferRecord],
    counterparties: Iterable[CounterpartyRecord] = (),
) -> Resolution:
    """
    Fold every offer of a run into one ranked decision.
    A counterparty's negotiated (round-2) price supersedes its round-1 quote;
    counterparties without any priced offer are left out.
    """
    offers = list(offers)
    directory = {counterparty.id: counterparty for counterparty in counterparties}

    by_counterparty: Dict[str, List[OfferRecord]] = {}
    for offer in offers:
        by_counterparty.setdefault(offer.counterparty_id, []).append(offer)

    ranked: List[ResolvedOffer] = []
    for counterparty_id, own_offers in by_counterparty.items():
        r1 = _most_recent_priced(own_offers, R1_SOURCE)
        r2 = _most_recent_priced(own_offers, R2_SOURCE)
        final = r2 or r1
        if final is None:
            continue
        counterparty = directory.get(counterparty_id)
        name = (counterparty.name if counterparty else None) or final.counterparty_name or "Unknown Vendor"
        original_price = r1.unit_price if r1 else None
        ranked.append(
            ResolvedOffer(
                counterparty_id=counterparty_id,
                counterparty_name=name,
                final_offer=final,
                final_price=float(final.unit_price),
                original_price=original_price,
                was_negotiated=r2 is not None,
                savings_percent=savings_percent(original_price, r2.unit_price) if r2 else None,
                email=counterparty.email if counterparty else None,
                phone=counterparty.phone if counterparty else None,
            )
        )

    ranked.sort(key=lambda item: (item.final_price, item.counterparty_name.lower(), item.counterparty_id))
    winner = ranked[0] if ranked else None

    savings_text = ""
    if winner is not None and winner.savings_percent is not None and winner.original_price is not None:
        savings_text = (
            f" Negotiation saved {winner.savings_percent}% "
            f"(${winner.original_price:.2f} to ${winner.final_price:.2f})."
        )
    else:
        negotiated = next((item for item in ranked if item.savings_percent), None)
        if negotiated is not None:
            savings_text = (
                f" Negotiation reduced {negotiated.counterparty_name} from ${negotiated.original_price:.2f} "
                f"to ${negotiated.final_price:.2f} ({negotiated.savings_percent}% savings)."
            )

    return Resolution(
        winner=winner,
        ranked=ranked,
        offer_count=len(offers),
        counterparty_count=len(by_counterparty),
        savings_text=savings_text,
    )
