import asyncio
import itertools
from typing import Any, Dict, List, Optional

from procura.adapters.mail.confirmation_mailer import ConfirmationTerms, SentMessage
from procura.adapters.storage.async_entity_repository import AsyncEntityRepository
from procura.adapters.voice.call_gateway import SubmitResult
from procura.adapters.voice.gateway_errors import CallGatewayNetworkError
from procura.application.webhook_processor import CompletionSignal, TranscriptTurn
from procura.core.types import AgentProfile, SignalOutcome
from procura.exceptions import MailDeliveryError
from procura.services.offer_extractor import OfferExtractor


class FakeGateway:
    """Accepts every submission with a fresh handle unless told otherwise."""

    def __init__(self, *, reject: tuple = (), fail: tuple = ()):
        self.submissions: List[Dict[str, Any]] = []
        self.reject = set(reject)
        self.fail = set(fail)
        self._handles = itertools.count(1)

    async def submit(self, agent_profile, destination, context_variables=None, *, index=0):
        self.submissions.append(
            {
                "profile": AgentProfile(agent_profile),
                "destination": destination,
                "variables": dict(context_variables or {}),
                "index": index,
            }
        )
        if destination in self.fail:
            raise CallGatewayNetworkError(f"network down for {destination}")
        if destination in self.reject:
            return SubmitResult(handle=None, destination=destination, overridden=False, message="rejected")
        return SubmitResult(handle=f"conv-{next(self._handles)}", destination=destination, overridden=False, message="ok")

    def vendor_names(self, profile: AgentProfile) -> List[str]:
        return [item["variables"].get("vendor_name") for item in self.submissions if item["profile"] == profile]


class FakeMailer:
    def __init__(self, *, configured: bool = True, fail: bool = False):
        self._configured = configured
        self.fail = fail
        self.sent: List[tuple[str, ConfirmationTerms]] = []

    @property
    def configured(self) -> bool:
        return self._configured

    def resolve_recipient(self, recipient: Optional[str]) -> str:
        return (recipient or "").strip().lower()

    async def send(self, recipient: str, terms: ConfirmationTerms) -> SentMessage:
        if self.fail:
            raise MailDeliveryError("mail provider unavailable")
        self.sent.append((recipient, terms))
        return SentMessage(message_id=f"msg-{len(self.sent)}", thread_id=f"thr-{len(self.sent)}", recipient=recipient)


class FakeProvider:
    """Reasoning service stand-in: returns canned JSON or raises."""

    def __init__(self, payload: Optional[Dict[str, Any]] = None, *, error: Optional[Exception] = None, configured: bool = True):
        self.payload = payload or {}
        self.error = error
        self._configured = configured
        self.prompts: List[str] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def complete_json(self, system: str, user: str) -> Dict[str, Any]:
        self.prompts.append(user)
        if self.error is not None:
            raise self.error
        return dict(self.payload)


class SlowExtractor(OfferExtractor):
    """Structured-field extractor that stalls for the named counterparties."""

    def __init__(self, delays: Dict[str, float]):
        super().__init__(None)
        self.delays = dict(delays)

    async def extract(self, transcript, counterparty_name, structured_fields=None, summary=None, *, run_id=None):
        await asyncio.sleep(self.delays.get(counterparty_name, 0.0))
        return await super().extract(transcript, counterparty_name, structured_fields, summary, run_id=run_id)


class CounterpartyBuilder:
    def __init__(self, name: str):
        self.data: Dict[str, Any] = {"name": name, "metadata": {}}

    def with_phone(self, phone: str):
        self.data["phone"] = phone
        return self

    def with_email(self, email: str):
        self.data["email"] = email
        return self

    def with_notes(self, notes: str):
        self.data["metadata"]["notes"] = notes
        return self

    def build(self) -> Dict[str, Any]:
        return dict(self.data)


RFQ = {
    "item": "custom printed mugs",
    "quantity": "500 units",
    "deadline": "3 weeks",
    "quality": "dishwasher safe",
    "location": "Austin, TX",
}


async def wait_for_status(repository: AsyncEntityRepository, run_id: str, status, timeout: float = 3.0):
    """Poll until the run reaches `status`; returns the final run record."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    run = await repository.require_run(run_id)
    while run.status != status and loop.time() < deadline:
        await asyncio.sleep(0.02)
        run = await repository.require_run(run_id)
    return run


TRANSCRIPT = [
    ("agent", "Hi, this is the purchasing desk calling about custom printed mugs."),
    ("user", "Sure, happy to quote that order for you today."),
]


async def call_for(repository: AsyncEntityRepository, run_id: str, name: str, round_number: int):
    """The open, submitted call of `name` in the given round."""
    counterparties = {item.id: item.name for item in await repository.list_counterparties(run_id)}
    for call in await repository.list_calls(run_id, round_number):
        if counterparties.get(call.counterparty_id) == name and call.handle and call.status.value == "in-progress":
            return call
    raise AssertionError(f"no open round {round_number} call for {name}")


def completion(handle: str, unit_price: Optional[str] = None, **extra) -> CompletionSignal:
    fields = {"unit_price": unit_price} if unit_price is not None else {}
    return CompletionSignal(
        handle=handle,
        outcome=extra.pop("outcome", SignalOutcome.DONE),
        transcript=[TranscriptTurn(speaker=speaker, text=text) for speaker, text in TRANSCRIPT],
        structured_fields=fields,
        duration_seconds=extra.pop("duration_seconds", 60),
        **extra,
    )
