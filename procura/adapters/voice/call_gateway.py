from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import httpx

from procura.core.types import AgentProfile

from .gateway_errors import (
    CallGatewayAuthError,
    CallGatewayConfigError,
    CallGatewayError,
    CallGatewayNetworkError,
    CallGatewayRateLimitError,
    CallGatewayTimeoutError,
)

logger = logging.getLogger("procura.call_gateway")

OUTBOUND_CALL_PATH = "/v1/convai/twilio/outbound-call"


@dataclass
class SubmitResult:
    handle: Optional[str]
    destination: str
    overridden: bool = False
    message: str = ""

    @property
    def accepted(self) -> bool:
        return bool(self.handle)


def parse_phone_pool(raw: str) -> List[str]:
    return [phone.strip() for phone in str(raw or "").split(",") if phone.strip()]


class CallGateway:
    """
    Thin client for the voice provider's outbound-call endpoint.
    `submit` either returns a provider handle or a result with `handle=None`
    (immediate rejection); completion arrives later through the webhook.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        phone_number_id: str,
        agent_ids: Mapping[str, str],
        phone_override: str = "",
        timeout_seconds: float = 15.0,
        max_retries: int = 2,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 4.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.phone_number_id = phone_number_id
        self.agent_ids = {str(key): str(value) for key, value in dict(agent_ids or {}).items() if value}
        self.phone_pool = parse_phone_pool(phone_override)
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._transport = transport

    @property
    def headers(self) -> Dict[str, str]:
        return {"xi-api-key": self.api_key, "Content-Type": "application/json"}

    def agent_id_for(self, profile: AgentProfile | str) -> str:
        profile = AgentProfile(profile)
        agent_id = self.agent_ids.get(profile.value, "")
        if not agent_id:
            raise CallGatewayConfigError(f"No voice agent configured for profile '{profile.value}'")
        return agent_id

    def resolve_destination(self, phone: str, index: int = 0) -> tuple[str, bool]:
        """Round-robin across the test phone pool when one is configured."""
        if self.phone_pool:
            picked = self.phone_pool[int(index) % len(self.phone_pool)]
            return picked, True
        return phone, False

    async def submit(
        self,
        agent_profile: AgentProfile | str,
        destination: str,
        context_variables: Optional[Mapping[str, Any]] = None,
        *,
        index: int = 0,
    ) -> SubmitResult:
        if not self.api_key or not self.phone_number_id:
            raise CallGatewayConfigError("Voice provider credentials are not configured")
        agent_id = self.agent_id_for(agent_profile)
        dial, overridden = self.resolve_destination(destination, index)
        if not dial:
            return SubmitResult(handle=None, destination="", overridden=overridden, message="no destination")

        body: Dict[str, Any] = {
            "agent_id": agent_id,
            "agent_phone_number_id": self.phone_number_id,
            "to_number": dial,
        }
        variables = {str(key): "" if value is None else str(value) for key, value in dict(context_variables or {}).items()}
        if variables:
            body["conversation_initiation_client_data"] = {"dynamic_variables": variables}

        data = await self._request_json_with_retry("POST", OUTBOUND_CALL_PATH, payload=body)
        data = data if isinstance(data, dict) else {}
        handle = data.get("conversation_id") or None
        message = str(data.get("message") or "")
        if handle is None:
            self.log_failure("rejected", operation="submit", profile=str(AgentProfile(agent_profile).value), message=message)
        return SubmitResult(handle=handle, destination=dial, overridden=overridden, message=message)

    async def _request_json(self, method: str, path: str, *, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.request(method, url, headers=self.headers, json=payload)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            self.log_failure("timeout", operation=f"{method} {path}", error=str(exc))
            raise CallGatewayTimeoutError(str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            self.log_failure("http_status", operation=f"{method} {path}", status_code=status_code, error=str(exc))
            raise self.classify_http_error(status_code=status_code, exc=exc) from exc
        except httpx.RequestError as exc:
            self.log_failure("network", operation=f"{method} {path}", error=str(exc))
            raise CallGatewayNetworkError(str(exc)) from exc
        if not response.text.strip():
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise CallGatewayError(f"Voice provider returned malformed JSON: {exc}") from exc

    async def _request_json_with_retry(self, method: str, path: str, *, payload: Optional[Dict[str, Any]] = None) -> Any:
        # Timeouts are not retried: the provider may already be dialing.
        attempts = 0
        while True:
            try:
                return await self._request_json(method, path, payload=payload)
            except (CallGatewayNetworkError, CallGatewayRateLimitError):
                if attempts >= self.max_retries:
                    raise
                delay = min(self.backoff_max_seconds, self.backoff_base_seconds * (2**attempts))
                await asyncio.sleep(delay)
                attempts += 1

    @staticmethod
    def classify_http_error(*, status_code: Optional[int], exc: Exception) -> CallGatewayError:
        if status_code == 429:
            return CallGatewayRateLimitError(str(exc))
        if status_code in {401, 403}:
            return CallGatewayAuthError(str(exc))
        return CallGatewayError(str(exc))

    @staticmethod
    def log_failure(failure_class: str, **fields: Any) -> None:
        record = {
            "event": "call_gateway_failure",
            "backend": "voice",
            "failure_class": failure_class,
            **fields,
        }
        logger.warning(json.dumps(record, ensure_ascii=False, default=str))
