"""Tie-breaker backed by an OpenAI-compatible chat-completions endpoint."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import PairingConfig
from .tiebreak import TieBreakError, TieBreakRequest, TieBreakVerdict

logger = logging.getLogger(__name__)

_DECODER = json.JSONDecoder()


def build_messages(request: TieBreakRequest) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": request.rubric},
        {"role": "user", "content": json.dumps(request.to_dict(), ensure_ascii=False)},
    ]


def parse_verdict(content: Optional[str]) -> TieBreakVerdict:
    """Read the JSON verdict out of a model reply, tolerating code fences around it."""
    text = content if isinstance(content, str) else ""
    start = text.find("{")
    if start < 0:
        raise TieBreakError(f"No JSON object in model reply: {text[:120]!r}")
    try:
        payload, _ = _DECODER.raw_decode(text, start)
    except ValueError as exc:
        raise TieBreakError(f"Invalid JSON in model reply: {exc}") from exc
    return TieBreakVerdict.from_dict(payload)


class LLMTieBreaker:
    """Async HTTP client that asks a chat model to pick one back."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        *,
        temperature: float = 0.0,
        max_tokens: int = 300,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if not model:
            raise ValueError("model is required")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(60.0, connect=10.0),
            headers=headers,
        )

    @classmethod
    def from_config(cls, cfg: PairingConfig, client: Optional[httpx.AsyncClient] = None) -> "LLMTieBreaker":
        return cls(cfg.llm_base_url, cfg.llm_model, cfg.llm_api_key, client=client)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "LLMTieBreaker":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def decide(self, request: TieBreakRequest) -> TieBreakVerdict:
        """
        Send one front and its candidates to the model.

        Raises:
            TieBreakError: On HTTP errors, transport errors or an unusable reply
        """
        payload = {
            "model": self.model,
            "messages": build_messages(request),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise TieBreakError(f"HTTP {exc.response.status_code}: {exc.response.text[:200]}") from exc
        except httpx.RequestError as exc:
            raise TieBreakError(f"Request error: {exc}") from exc
        except ValueError as exc:
            raise TieBreakError(f"Response is not JSON: {exc}") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise TieBreakError(f"Unexpected response shape: {data!r}"[:300]) from exc
        verdict = parse_verdict(content)
        logger.debug("Model verdict for %s: %s", request.front_key, verdict.back_key)
        return verdict
