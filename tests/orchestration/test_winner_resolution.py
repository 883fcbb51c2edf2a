from procura.core.types import offer_source_for_round
from procura.domain.records import CounterpartyRecord, OfferRecord
from procura.orchestration.winner import resolve_winner, savings_percent


def _offer(counterparty_id, round_number, price, created_at, name=None):
    return OfferRecord(
        id=f"{counterparty_id}-{round_number}-{created_at}",
        counterparty_id=counterparty_id,
        unit_price=price,
        source=offer_source_for_round(round_number),
        created_at=created_at,
        counterparty_name=name,
    )


VENDORS = [
    CounterpartyRecord(id="a", run_id="r1", name="Acme", email="sales@acme.test", phone="+1"),
    CounterpartyRecord(id="b", run_id="r1", name="Beta", phone="+2"),
    CounterpartyRecord(id="c", run_id="r1", name="Gamma", phone="+3"),
]


def test_negotiated_price_beats_round_one_benchmark():
    offers = [
        _offer("a", 1, 4.50, "2026-01-01T10:00:00"),
        _offer("b", 1, 4.20, "2026-01-01T10:01:00"),
        _offer("c", 1, 4.80, "2026-01-01T10:02:00"),
        _offer("a", 2, 4.10, "2026-01-01T11:00:00"),
    ]
    resolution = resolve_winner(offers, VENDORS)

    winner = resolution.winner
    assert winner.counterparty_name == "Acme"
    assert winner.final_price == 4.10
    assert winner.original_price == 4.50
    assert winner.was_negotiated
    assert winner.savings_percent == 8.9
    assert winner.email == "sales@acme.test"
    assert [item.counterparty_name for item in resolution.ranked] == ["Acme", "Beta", "Gamma"]

    summary = resolution.summary()
    assert summary["best_price"] == "$4.10"
    assert summary["savings_text"] == "Negotiation saved 8.9% ($4.50 to $4.10)."
    assert summary["offer_count"] == 4


def test_latest_priced_offer_per_round_is_used():
    offers = [
        _offer("a", 1, 4.90, "2026-01-01T10:00:00"),
        _offer("a", 1, 4.40, "2026-01-01T10:05:00"),
        _offer("a", 1, None, "2026-01-01T10:06:00"),
    ]
    winner = resolve_winner(offers, VENDORS).winner
    assert winner.final_price == 4.40
    assert not winner.was_negotiated
    assert winner.savings_percent is None


def test_higher_negotiated_quote_still_supersedes_without_savings():
    offers = [
        _offer("a", 1, 4.00, "2026-01-01T10:00:00"),
        _offer("a", 2, 4.30, "2026-01-01T11:00:00"),
        _offer("b", 1, 4.20, "2026-01-01T10:01:00"),
    ]
    resolution = resolve_winner(offers, VENDORS)
    assert resolution.winner.counterparty_name == "Beta"
    acme = next(item for item in resolution.ranked if item.counterparty_id == "a")
    assert acme.final_price == 4.30
    assert acme.savings_percent is None


def test_price_ties_break_on_name():
    offers = [
        _offer("x", 1, 4.20, "2026-01-01T10:00:00", name="beta supply"),
        _offer("y", 1, 4.20, "2026-01-01T10:01:00", name="Alpha Ceramics"),
    ]
    assert resolve_winner(offers).winner.counterparty_name == "Alpha Ceramics"


def test_no_priced_offers_has_no_winner():
    offers = [_offer("a", 1, None, "2026-01-01T10:00:00"), _offer("b", 1, None, "2026-01-01T10:01:00")]
    resolution = resolve_winner(offers, VENDORS)
    assert resolution.winner is None
    assert resolution.summary()["best_price"] == "N/A"
    assert resolution.summary()["recommendation"].startswith("2 vendors contacted")


def test_savings_percent_only_for_reductions():
    assert savings_percent(4.50, 4.10) == 8.9
    assert savings_percent(4.50, 4.50) is None
    assert savings_percent(None, 4.10) is None
    assert savings_percent(0, 1.0) is None
