"""Stable digests used as cache keys."""
from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(payload: Any) -> str:
    """Serialise with sorted keys and no whitespace so equal payloads hash equal."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_for_payload(payload: Any) -> str:
    digest = hashlib.sha256()
    digest.update(canonical_json(payload).encode("utf-8"))
    return digest.hexdigest()


def cache_key(namespace: str, payload: Any, length: int = 32) -> str:
    return f"{namespace}:{sha256_for_payload(payload)[:length]}"
