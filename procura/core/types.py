from enum import Enum

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    CALLING_ROUND_1 = "calling_round_1"
    NEGOTIATING = "negotiating"             # Transient: computing round 2 targets
    CALLING_ROUND_2 = "calling_round_2"
    SUMMARIZING = "summarizing"             # Transient: resolving the winner
    CALLING_ROUND_3 = "calling_round_3"
    SENDING_CONFIRMATION = "sending_confirmation"
    AWAITING_INVOICE = "awaiting_invoice"
    INVOICE_RECEIVED = "invoice_received"
    COMPLETE = "complete"
    FAILED = "failed"

class CallStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

class CallRound(int, Enum):
    QUOTE = 1
    NEGOTIATION = 2
    CONFIRMATION = 3

class AgentProfile(str, Enum):
    QUOTE = "quote"
    NEGOTIATE = "negotiate"
    CONFIRM = "confirm"

class MemoryChannel(str, Enum):
    SEARCH = "search"   # Discovery snippets
    CALL = "call"       # Call transcripts and extracted facts
    NOTE = "note"

class SignalOutcome(str, Enum):
    DONE = "done"
    FAILED = "failed"


TERMINAL_CALL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.FAILED})
TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETE, RunStatus.FAILED})

ROUND_AGENT_PROFILES = {
    CallRound.QUOTE: AgentProfile.QUOTE,
    CallRound.NEGOTIATION: AgentProfile.NEGOTIATE,
    CallRound.CONFIRMATION: AgentProfile.CONFIRM,
}


def offer_source_for_round(round_number: int) -> str:
    return f"voice-call-r{int(round_number)}"
