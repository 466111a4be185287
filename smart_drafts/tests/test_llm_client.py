"""Tests for the chat-completions tie-breaker."""
from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from pairing_lib.config import PairingConfig
from pairing_lib.llm_client import LLMTieBreaker, parse_verdict
from pairing_lib.tiebreak import RUBRIC, TieBreakError, TieBreakRequest

REQUEST = TieBreakRequest(
    front={"imageKey": "front.jpg", "brand": "Acme"},
    candidates=({"backKey": "b1.jpg", "preScore": 6.2}, {"backKey": "b2.jpg", "preScore": 6.2}),
)


def _completion(content: str) -> dict:
    return {
        "model": "test-model",
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5},
    }


def _decide(handler):
    async def scenario():
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://llm.test/v1")
        tiebreaker = LLMTieBreaker("http://llm.test/v1", "test-model", client=client)
        try:
            return await tiebreaker.decide(REQUEST)
        finally:
            await client.aclose()

    return asyncio.run(scenario())


def test_posts_rubric_and_candidates():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion('{"backKey": "b2.jpg", "rationale": "same jar"}'))

    verdict = _decide(handler)
    assert verdict.back_key == "b2.jpg"
    assert verdict.rationale == "same jar"
    assert seen["path"] == "/v1/chat/completions"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["messages"][0] == {"role": "system", "content": RUBRIC}
    user = json.loads(seen["body"]["messages"][1]["content"])
    assert [c["backKey"] for c in user["candidates"]] == ["b1.jpg", "b2.jpg"]


def test_code_fenced_reply():
    def handler(request):
        return httpx.Response(200, json=_completion('```json\n{"backKey": null}\n```'))

    assert _decide(handler).back_key is None


def test_http_error_raises_tiebreak_error():
    def handler(request):
        return httpx.Response(500, text="overloaded")

    with pytest.raises(TieBreakError, match="HTTP 500"):
        _decide(handler)


def test_transport_error_raises_tiebreak_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TieBreakError, match="Request error"):
        _decide(handler)


def test_unexpected_shape_raises_tiebreak_error():
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    with pytest.raises(TieBreakError):
        _decide(handler)


def test_parse_verdict_rejects_prose():
    with pytest.raises(TieBreakError):
        parse_verdict("I think it is the second one")
    with pytest.raises(TieBreakError):
        parse_verdict("{backKey: b1}")


def test_parse_verdict_reads_the_first_of_several_objects():
    reply = 'Answer: {"backKey": "b1.jpg", "rationale": "jar"} and debug {"note": "ignored"}'
    assert parse_verdict(reply).back_key == "b1.jpg"


def test_parse_verdict_empty_content():
    with pytest.raises(TieBreakError, match="No JSON object"):
        parse_verdict(None)


def test_null_message_content_raises_tiebreak_error():
    def handler(request):
        body = _completion("")
        body["choices"][0]["message"]["content"] = None
        return httpx.Response(200, json=body)

    with pytest.raises(TieBreakError):
        _decide(handler)


def test_from_config_requires_model():
    with pytest.raises(ValueError):
        LLMTieBreaker.from_config(PairingConfig(llm_model=""))
