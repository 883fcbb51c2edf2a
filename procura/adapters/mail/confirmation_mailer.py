from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from procura.exceptions import MailDeliveryError

logger = logging.getLogger("procura.confirmation_mailer")

INVOICE_KEYWORDS = (
    "invoice",
    "inv-",
    "inv #",
    "bill",
    "payment due",
    "amount due",
    "total due",
    "purchase order",
    "po #",
    "po-",
    "remittance",
    "proforma",
    "pro forma",
    "commercial invoice",
)
INVOICE_EXTENSIONS = (".pdf", ".xlsx", ".xls", ".docx", ".doc")


class ConfirmationTerms(BaseModel):
    counterparty_name: str
    item: str = ""
    quantity: str = ""
    unit_price: float
    original_price: Optional[float] = None
    was_negotiated: bool = False
    savings_percent: Optional[float] = None
    lead_time_days: Optional[int] = None
    shipping: Optional[str] = None
    terms: Optional[str] = None
    moq: Optional[str] = None


class SentMessage(BaseModel):
    message_id: str
    thread_id: Optional[str] = None
    recipient: str


class MailReply(BaseModel):
    """Inbound `message.received` payload from the mail provider."""

    model_config = ConfigDict(populate_by_name=True)

    from_address: str = Field(default="", alias="from")
    subject: str = ""
    text: str = ""
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    inbox_id: Optional[str] = None

    @property
    def sender(self) -> str:
        # Providers send either a bare address or "Name <addr>".
        raw = (self.from_address or "").strip()
        if "<" in raw and raw.endswith(">"):
            raw = raw[raw.rfind("<") + 1:-1]
        return raw.strip().lower()


def looks_like_invoice(subject: str, text: str, attachments: List[Dict[str, Any]]) -> bool:
    combined = f"{subject or ''} {text or ''}".lower()
    if any(keyword in combined for keyword in INVOICE_KEYWORDS):
        return True
    for attachment in attachments or []:
        filename = str(attachment.get("filename") or attachment.get("name") or "").lower()
        if filename.endswith(INVOICE_EXTENSIONS):
            return True
    return False


def format_confirmation_email(terms: ConfirmationTerms) -> tuple[str, str]:
    price = f"${terms.unit_price:.2f}/unit"
    lead_time = f"{terms.lead_time_days} days" if terms.lead_time_days is not None else "TBD"
    negotiation_line = ""
    if terms.was_negotiated and terms.original_price is not None and terms.savings_percent is not None:
        negotiation_line = (
            f"\nNote: This reflects our agreed price of {price}, negotiated down from "
            f"${terms.original_price:.2f}/unit ({terms.savings_percent}% reduction).\n"
        )

    subject = f"Purchase Order Confirmation: {terms.item} ({terms.quantity} units)"
    text = (
        f"Dear {terms.counterparty_name},\n\n"
        f"Thank you for your time during our recent call{'s' if terms.was_negotiated else ''}. "
        "We are pleased to confirm the following order details as discussed:\n\n"
        "ORDER SUMMARY\n"
        f"Item:            {terms.item}\n"
        f"Quantity:        {terms.quantity} units\n"
        f"Unit Price:      {price}\n"
        f"MOQ:             {terms.moq or 'N/A'}\n"
        f"Lead Time:       {lead_time}\n"
        f"Shipping:        {terms.shipping or 'TBD'}\n"
        f"Payment Terms:   {terms.terms or 'Standard terms'}\n"
        f"{negotiation_line}\n"
        "We would like to proceed with this order. Please reply to this email with a formal "
        "invoice at your earliest convenience so we can arrange payment.\n\n"
        "Best regards,\nProcurement Agent"
    )
    return subject, text


class ConfirmationMailer:
    """Sends the deal confirmation email through the mail provider's HTTP API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        inbox_id: str,
        recipient_override: str = "",
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.inbox_id = inbox_id
        self.recipient_override = recipient_override.strip()
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.inbox_id)

    def resolve_recipient(self, recipient: Optional[str]) -> str:
        return (self.recipient_override or recipient or "").strip().lower()

    async def send(self, recipient: str, terms: ConfirmationTerms) -> SentMessage:
        if not self.configured:
            raise MailDeliveryError("Mail provider is not configured")
        to_address = self.resolve_recipient(recipient)
        if not to_address:
            raise MailDeliveryError("No recipient address")

        subject, text = format_confirmation_email(terms)
        url = f"{self.base_url}/inboxes/{self.inbox_id}/messages/send"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {"to": [to_address], "subject": subject, "text": text}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, headers=headers, json=payload)
                response.raise_for_status()
                data = response.json() if response.text.strip() else {}
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            self.log_failure("http_status", status_code=status_code, error=str(exc))
            raise MailDeliveryError(str(exc)) from exc
        except httpx.HTTPError as exc:
            self.log_failure("network", error=str(exc))
            raise MailDeliveryError(str(exc)) from exc
        except ValueError as exc:
            raise MailDeliveryError(f"Mail provider returned malformed JSON: {exc}") from exc

        message_id = str((data or {}).get("message_id") or (data or {}).get("messageId") or "")
        if not message_id:
            raise MailDeliveryError("Mail provider response carried no message id")
        thread_id = (data or {}).get("thread_id") or (data or {}).get("threadId")
        return SentMessage(message_id=message_id, thread_id=thread_id, recipient=to_address)

    @staticmethod
    def log_failure(failure_class: str, **fields: Any) -> None:
        record = {
            "event": "confirmation_mailer_failure",
            "backend": "mail",
            "failure_class": failure_class,
            **fields,
        }
        logger.warning(json.dumps(record, ensure_ascii=False, default=str))
