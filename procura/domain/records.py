from __future__ import annotations
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, AliasChoices, field_validator
from procura.core.types import RunStatus, CallStatus


class ParsedSpec(BaseModel):
    """Structured sourcing request. `deadline` also accepts the intake form's `leadTime` key."""
    item: str = ""
    quantity: str = ""
    deadline: str = Field(default="", validation_alias=AliasChoices("deadline", "leadTime", "lead_time"))
    quality: str = ""
    location: str = ""

    @field_validator("item", "quantity", "deadline", "quality", "location", mode="before")
    @classmethod
    def coerce_text(cls, v):
        if v is None:
            return ""
        return str(v)


class RunRecord(BaseModel):
    """
    A lightweight, type-safe representation of a Run in the database.
    Used to prevent domain shape leakage from repositories.
    """
    id: str
    raw_query: str = ""
    parsed_spec: ParsedSpec = Field(default_factory=ParsedSpec)
    status: RunStatus = RunStatus.PENDING
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CounterpartyRecord(BaseModel):
    id: str
    run_id: str
    name: str = "Unknown Vendor"
    url: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    source: str = "discovery"
    source_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None

    @property
    def callable(self) -> bool:
        return bool((self.phone or "").strip())


class CounterpartyCandidate(BaseModel):
    """A contact handed over by discovery, before it is persisted."""
    name: str = "Unknown Vendor"
    url: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    source: str = "discovery"
    source_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def discovery_snippet(self) -> str:
        parts = [f"Discovered vendor {self.name}."]
        if self.url:
            parts.append(f"Website: {self.url}.")
        for key in ("notes", "match", "pricing"):
            value = self.metadata.get(key)
            if value:
                parts.append(f"{key.capitalize()}: {value}.")
        return " ".join(parts)


class OfferRecord(BaseModel):
    id: str
    counterparty_id: str
    call_id: Optional[str] = None
    unit_price: Optional[float] = None
    moq: Optional[str] = None
    lead_time_days: Optional[int] = None
    shipping: Optional[str] = None
    terms: Optional[str] = None
    confidence: Optional[int] = None
    source: str
    raw_evidence: Optional[str] = None
    created_at: Optional[str] = None
    # Joined from counterparties for display; never persisted on the offer row.
    counterparty_name: Optional[str] = None

    @property
    def round(self) -> Optional[int]:
        if self.source.startswith("voice-call-r"):
            try:
                return int(self.source.rsplit("r", 1)[-1])
            except ValueError:
                return None
        return None


class CallRecord(BaseModel):
    id: str
    counterparty_id: str
    run_id: str
    round: int = 1
    handle: Optional[str] = None
    transcript: Optional[str] = None
    status: CallStatus = CallStatus.PENDING
    duration: Optional[int] = None
    attempt: int = 1
    failure_reason: Optional[str] = None
    created_at: Optional[str] = None
    submitted_at: Optional[str] = None
    updated_at: Optional[str] = None


class NotificationRecord(BaseModel):
    id: str
    run_id: str
    counterparty_id: str
    recipient: str
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    created_at: Optional[str] = None


class RunTransitionRecord(BaseModel):
    run_id: str
    from_status: Optional[str] = None
    to_status: str
    reason: Optional[str] = None
    created_at: Optional[str] = None


class RunSnapshot(BaseModel):
    """Read model returned by the HTTP surface."""
    run: RunRecord
    counterparties: List[CounterpartyRecord] = Field(default_factory=list)
    calls: List[CallRecord] = Field(default_factory=list)
    offers: List[OfferRecord] = Field(default_factory=list)
