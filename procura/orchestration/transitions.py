from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from procura.core.types import CallRound, RunStatus


@dataclass(frozen=True)
class RoundTransition:
    """What happens once every call of a round is terminal."""

    round: CallRound
    from_status: RunStatus
    to_status: RunStatus
    action: str


ROUND_TRANSITIONS: Dict[CallRound, RoundTransition] = {
    CallRound.QUOTE: RoundTransition(
        round=CallRound.QUOTE,
        from_status=RunStatus.CALLING_ROUND_1,
        to_status=RunStatus.NEGOTIATING,
        action="start_negotiation_round",
    ),
    CallRound.NEGOTIATION: RoundTransition(
        round=CallRound.NEGOTIATION,
        from_status=RunStatus.CALLING_ROUND_2,
        to_status=RunStatus.SUMMARIZING,
        action="finalize_run",
    ),
    CallRound.CONFIRMATION: RoundTransition(
        round=CallRound.CONFIRMATION,
        from_status=RunStatus.CALLING_ROUND_3,
        to_status=RunStatus.SENDING_CONFIRMATION,
        action="send_confirmation",
    ),
}

ROUND_CALLING_STATUS: Dict[CallRound, RunStatus] = {
    round_number: transition.from_status for round_number, transition in ROUND_TRANSITIONS.items()
}


def transition_for_round(round_number: int) -> Optional[RoundTransition]:
    try:
        return ROUND_TRANSITIONS.get(CallRound(int(round_number)))
    except ValueError:
        return None
