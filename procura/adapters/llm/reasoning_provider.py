from dataclasses import dataclass
from typing import Any, Dict, Optional, List
import asyncio
import json
import re
import time

import ollama

from procura.exceptions import ModelTimeoutError, ModelConnectionError, ModelProviderError
from procura.logging import log_event

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


@dataclass
class ModelResponse:
    content: str
    raw: Dict[str, Any]


def parse_json_object(content: str) -> Dict[str, Any]:
    """Parse a JSON object out of a model reply, tolerating code fences and chatter."""
    text = _FENCE.sub("", (content or "").strip()).strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start < 0 or end <= start:
            raise ModelProviderError("Model reply did not contain a JSON object")
        try:
            payload = json.loads(text[start:end + 1])
        except json.JSONDecodeError as exc:
            raise ModelProviderError(f"Model reply was not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ModelProviderError("Model reply JSON was not an object")
    return payload


class ReasoningProvider:
    """
    Asynchronous reasoning service client using the `ollama` library.
    Every request is bounded by `timeout` seconds; callers own the fallback.
    """

    def __init__(
        self,
        model: str,
        host: Optional[str] = None,
        temperature: float = 0.3,
        timeout: float = 20.0,
        max_retries: int = 2,
        client: Any = None,
    ):
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.client = client if client is not None else ollama.AsyncClient(host=host or None)

    @property
    def configured(self) -> bool:
        return bool(self.model)

    async def complete(self, messages: List[Dict[str, str]], *, json_mode: bool = False) -> ModelResponse:
        if not self.configured:
            raise ModelConnectionError("Reasoning model is not configured")

        options = {"temperature": self.temperature}
        kwargs: Dict[str, Any] = {"model": self.model, "messages": messages, "options": options}
        if json_mode:
            kwargs["format"] = "json"

        retry_delay = 0.5
        for attempt in range(self.max_retries):
            try:
                started_at = time.perf_counter()
                response = await asyncio.wait_for(self.client.chat(**kwargs), timeout=self.timeout)
                content = response.get("message", {}).get("content", "") or ""
                raw = {
                    "provider": "ollama-async",
                    "model": self.model,
                    "retries": attempt,
                    "latency_ms": int((time.perf_counter() - started_at) * 1000),
                    "response_chars": len(content),
                }
                return ModelResponse(content=content, raw=raw)

            except (asyncio.TimeoutError, ModelTimeoutError):
                if attempt == self.max_retries - 1:
                    raise ModelTimeoutError(f"Model {self.model} timed out after {self.max_retries} attempts.")
                log_event(
                    "reasoning_timeout_retry",
                    {"model": self.model, "attempt": attempt + 1, "retry_delay_sec": retry_delay, "level": "warning"},
                )
            except (ConnectionError, ollama.ResponseError, ModelConnectionError) as e:
                if attempt == self.max_retries - 1:
                    raise ModelConnectionError(f"Ollama connection failed after {self.max_retries} attempts: {str(e)}")
                log_event(
                    "reasoning_connection_retry",
                    {
                        "model": self.model,
                        "attempt": attempt + 1,
                        "retry_delay_sec": retry_delay,
                        "error": str(e),
                        "level": "warning",
                    },
                )
            except asyncio.CancelledError:
                raise
            except (RuntimeError, ValueError, TypeError, KeyError, AttributeError, OSError) as e:
                raise ModelProviderError(f"Unexpected error invoking model {self.model}: {str(e)}")

            await asyncio.sleep(retry_delay)
            retry_delay *= 2

        raise ModelProviderError(f"Model {self.model} produced no response")

    async def complete_json(self, system: str, user: str) -> Dict[str, Any]:
        response = await self.complete(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            json_mode=True,
        )
        return parse_json_object(response.content)
