import asyncio

import pytest

from procura.adapters.llm.reasoning_provider import ReasoningProvider, parse_json_object
from procura.exceptions import ModelConnectionError, ModelProviderError, ModelTimeoutError


class _ChatClient:
    def __init__(self, content="", delay=0.0):
        self.content = content
        self.delay = delay
        self.calls = []

    async def chat(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        return {"message": {"role": "assistant", "content": self.content}}


def test_parse_json_object_tolerates_fences_and_chatter():
    assert parse_json_object('```json\n{"target_price": "$3.65"}\n```') == {"target_price": "$3.65"}
    assert parse_json_object('Sure! Here you go: {"a": 1} Hope that helps.') == {"a": 1}
    with pytest.raises(ModelProviderError):
        parse_json_object("no json here")
    with pytest.raises(ModelProviderError):
        parse_json_object("[1, 2]")


@pytest.mark.asyncio
async def test_complete_json_requests_json_format():
    client = _ChatClient('{"unit_price": 4.5}')
    provider = ReasoningProvider("llama3.1", temperature=0.1, client=client)

    assert await provider.complete_json("system prompt", "user prompt") == {"unit_price": 4.5}
    request = client.calls[0]
    assert request["model"] == "llama3.1"
    assert request["format"] == "json"
    assert request["options"] == {"temperature": 0.1}
    assert [message["role"] for message in request["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_slow_model_raises_timeout():
    provider = ReasoningProvider("llama3.1", timeout=0.01, max_retries=1, client=_ChatClient("{}", delay=1.0))
    with pytest.raises(ModelTimeoutError):
        await provider.complete_json("system", "user")


@pytest.mark.asyncio
async def test_unconfigured_model_is_rejected_before_any_request():
    client = _ChatClient("{}")
    provider = ReasoningProvider("", client=client)
    assert not provider.configured
    with pytest.raises(ModelConnectionError):
        await provider.complete_json("system", "user")
    assert client.calls == []
