from typing import Dict, List, Set

from procura.core.types import RunStatus, TERMINAL_RUN_STATUSES


class StateMachineError(Exception):
    """Raised when an invalid run state transition is attempted."""


class RunStateMachine:
    """
    Mechanical enforcer for Run status transitions.
    Statuses only move forward along the campaign order; skipping ahead is
    allowed, moving back is not. FAILED is reachable from any non-terminal status.
    """

    ORDER: List[RunStatus] = [
        RunStatus.PENDING,
        RunStatus.RUNNING,
        RunStatus.CALLING_ROUND_1,
        RunStatus.NEGOTIATING,
        RunStatus.CALLING_ROUND_2,
        RunStatus.SUMMARIZING,
        RunStatus.CALLING_ROUND_3,
        RunStatus.SENDING_CONFIRMATION,
        RunStatus.AWAITING_INVOICE,
        RunStatus.INVOICE_RECEIVED,
        RunStatus.COMPLETE,
    ]

    _RANK: Dict[RunStatus, int] = {status: index for index, status in enumerate(ORDER)}

    @classmethod
    def allowed_next(cls, current: RunStatus) -> Set[RunStatus]:
        current = RunStatus(current)
        if current in TERMINAL_RUN_STATUSES:
            return set()
        rank = cls._RANK[current]
        return {status for status in cls.ORDER if cls._RANK[status] > rank} | {RunStatus.FAILED}

    @classmethod
    def validate_transition(cls, current: RunStatus, requested: RunStatus) -> bool:
        current = RunStatus(current)
        requested = RunStatus(requested)
        if requested not in cls.allowed_next(current):
            raise StateMachineError(f"Invalid run transition: {current.value} -> {requested.value}")
        return True

    @classmethod
    def is_terminal(cls, status: RunStatus) -> bool:
        return RunStatus(status) in TERMINAL_RUN_STATUSES
