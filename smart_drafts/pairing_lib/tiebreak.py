"""Escalate ambiguous fronts to an external tie-breaker.

The tie-breaker (usually a language model, see ``llm_client``) only ever sees
a bounded, pre-scored candidate list for one front. Calls run concurrently;
their verdicts are reconciled afterwards in a single pass so two fronts can
never claim the same back.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from . import hashing
from .autopair import make_pair
from .candidates import CandidateMap
from .config import PairingConfig
from .features import FeatureSet, cosine_similarity
from .models import SOURCE_MODEL, Candidate, Pair, Singleton
from .stores.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

MODEL_PAIR_CONFIDENCE = 0.90
CACHE_NAMESPACE = "tiebreak"

REASON_NO_CANDIDATES = "no candidates"
REASON_DECLINED = "declined despite candidates"
REASON_TIMEOUT = "tiebreak timeout"
REASON_DISABLED = "tiebreak disabled"

RUBRIC = """\
You match the FRONT photo of a product to the BACK photo of the same product.
You are given one front and a short list of candidate backs that were already
scored by a deterministic pre-scorer (preScore, higher is better, with a
breakdown of the signals that contributed).

Rules:
- Choose at most one back from the candidate list, or none.
- Visual signals come first: identical packaging type and the same dominant
  colour are strong evidence, especially when the brand text is empty or
  ambiguous on either side.
- Text signals (brand, product name, variant, size, barcode) confirm a match;
  a clear brand disagreement between two known brands rules a candidate out.
- Photos taken next to each other (captureIndex) usually belong together.
- If no candidate is clearly the same physical product, answer null.

Answer with strict JSON only:
{"backKey": "<imageKey of the chosen back>" | null, "rationale": "<one sentence>"}
"""


class TieBreakError(RuntimeError):
    """Raised by a tie-breaker when it cannot produce a usable verdict."""


@dataclass(frozen=True)
class TieBreakRequest:
    front: Dict[str, Any]
    candidates: Tuple[Dict[str, Any], ...]
    rubric: str = RUBRIC

    @property
    def front_key(self) -> str:
        return str(self.front.get("imageKey", ""))

    def candidate_keys(self) -> List[str]:
        return [str(item.get("backKey", "")) for item in self.candidates]

    def to_dict(self) -> Dict[str, Any]:
        return {"front": self.front, "candidates": list(self.candidates)}

    def digest(self) -> str:
        return hashing.cache_key(CACHE_NAMESPACE, {"rubric": self.rubric, **self.to_dict()})


@dataclass(frozen=True)
class TieBreakVerdict:
    back_key: Optional[str]
    rationale: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TieBreakVerdict":
        if not isinstance(payload, Mapping):
            raise TieBreakError(f"Verdict must be a JSON object, got {type(payload).__name__}")
        back_key = payload.get("backKey", payload.get("back_key"))
        if back_key is not None and not isinstance(back_key, str):
            raise TieBreakError(f"backKey must be a string or null, got {back_key!r}")
        return cls(back_key=back_key or None, rationale=str(payload.get("rationale") or ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"backKey": self.back_key, "rationale": self.rationale}


class TieBreaker(Protocol):
    async def decide(self, request: TieBreakRequest) -> TieBreakVerdict:
        ...


@dataclass
class TieBreakOutcome:
    pairs: List[Pair] = field(default_factory=list)
    singletons: List[Singleton] = field(default_factory=list)
    consumed: Set[str] = field(default_factory=set)
    cache_hits: int = 0


def build_request(
    front_key: str,
    candidates: List[Candidate],
    features: FeatureSet,
) -> TieBreakRequest:
    front = features.features[front_key]
    packed = []
    for candidate in candidates:
        back = features.features[candidate.back_key]
        similarity = cosine_similarity(front.image_vector, back.image_vector)
        if similarity is None:
            similarity = cosine_similarity(front.text_vector, back.text_vector)
        entry = candidate.to_dict()
        entry["back"] = back.summary()
        if similarity is not None:
            entry["embeddingSimilarity"] = round(similarity, 4)
        packed.append(entry)
    return TieBreakRequest(front=front.summary(), candidates=tuple(packed))


def _available(candidates: CandidateMap, front_key: str, consumed: Set[str]) -> List[Candidate]:
    return [c for c in candidates.get(front_key, []) if c.back_key not in consumed]


async def _decide_one(
    tiebreaker: TieBreaker,
    request: TieBreakRequest,
    semaphore: asyncio.Semaphore,
    timeout: float,
    cache: Optional[KeyValueStore],
    cache_ttl: int,
) -> Tuple[Optional[TieBreakVerdict], Optional[str], bool]:
    """Return (verdict, failure reason, cache hit) for one front; never raises.

    Cache read and write failures are logged and treated as a miss.
    """
    key = ""
    if cache is not None:
        try:
            key = request.digest()
            cached = cache.get(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tie-break cache read failed for %s: %s", request.front_key, exc)
            cached = None
        if cached is not None:
            try:
                return TieBreakVerdict.from_dict(cached), None, True
            except TieBreakError as exc:
                logger.warning("Ignoring bad cached verdict for %s: %s", request.front_key, exc)
    async with semaphore:
        try:
            verdict = await asyncio.wait_for(tiebreaker.decide(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Tie-break timed out after %.1fs for %s", timeout, request.front_key)
            return None, REASON_TIMEOUT, False
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tie-break failed for %s: %s", request.front_key, exc)
            return None, f"tiebreak error: {exc}", False
    if not isinstance(verdict, TieBreakVerdict):
        logger.warning("Tie-break for %s returned %r instead of a verdict", request.front_key, verdict)
        return None, f"tiebreak error: unexpected verdict type {type(verdict).__name__}", False
    if key:
        try:
            cache.set(key, verdict.to_dict(), ttl=cache_ttl)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tie-break cache write failed for %s: %s", request.front_key, exc)
    return verdict, None, False


def _reject_reason(
    verdict: TieBreakVerdict,
    offered: Dict[str, Candidate],
    consumed: Set[str],
    cfg: PairingConfig,
) -> Optional[str]:
    back_key = verdict.back_key
    candidate = offered.get(back_key or "")
    if candidate is None:
        return f"model verdict rejected: {back_key} not among candidates"
    if back_key in consumed:
        return f"model verdict rejected: {back_key} already paired"
    if candidate.pre_score < cfg.min_pre_score:
        return f"model verdict rejected: preScore {candidate.pre_score:.2f} below floor"
    return None


async def escalate(
    unresolved: List[str],
    features: FeatureSet,
    candidates: CandidateMap,
    consumed: Set[str],
    cfg: PairingConfig,
    tiebreaker: Optional[TieBreaker] = None,
    cache: Optional[KeyValueStore] = None,
) -> TieBreakOutcome:
    """Ask the tie-breaker about each unresolved front and reconcile the answers.

    Only the reconciliation loop at the end touches the consumed set, in the
    same stable order the fronts were given, so concurrent verdicts for the
    same back resolve in favour of the earlier front.
    """
    outcome = TieBreakOutcome(consumed=set(consumed))
    requests: Dict[str, TieBreakRequest] = {}
    for front_key in unresolved:
        available = _available(candidates, front_key, outcome.consumed)
        if not available:
            outcome.singletons.append(Singleton(front_key, REASON_NO_CANDIDATES))
            continue
        requests[front_key] = build_request(front_key, available, features)

    if not requests:
        return outcome

    if cfg.disable_tiebreak or tiebreaker is None:
        logger.info("Tie-break disabled; %d fronts left for review", len(requests))
        outcome.singletons.extend(Singleton(key, REASON_DISABLED) for key in requests)
        return outcome

    semaphore = asyncio.Semaphore(cfg.tiebreak_concurrency)
    keys = list(requests)
    results = await asyncio.gather(
        *(
            _decide_one(tiebreaker, requests[key], semaphore, cfg.tiebreak_timeout, cache, cfg.tiebreak_cache_ttl)
            for key in keys
        )
    )

    for front_key, (verdict, failure, cache_hit) in zip(keys, results):
        if cache_hit:
            outcome.cache_hits += 1
        if verdict is None:
            outcome.singletons.append(Singleton(front_key, failure or REASON_DECLINED))
            continue
        if verdict.back_key is None:
            logger.debug("Tie-breaker declined %s: %s", front_key, verdict.rationale)
            outcome.singletons.append(Singleton(front_key, REASON_DECLINED))
            continue
        asked = set(requests[front_key].candidate_keys())
        offered = {c.back_key: c for c in candidates.get(front_key, []) if c.back_key in asked}
        reason = _reject_reason(verdict, offered, outcome.consumed, cfg)
        if reason:
            logger.warning("Front %s: %s", front_key, reason)
            outcome.singletons.append(Singleton(front_key, reason))
            continue
        candidate = offered[verdict.back_key]
        evidence = [f"MODEL-PAIRED: preScore={candidate.pre_score:.2f}", candidate.breakdown()]
        if verdict.rationale:
            evidence.append(verdict.rationale)
        outcome.pairs.append(
            make_pair(features, candidate, source=SOURCE_MODEL, confidence=MODEL_PAIR_CONFIDENCE, evidence=evidence)
        )
        outcome.consumed.update({front_key, candidate.back_key})

    logger.info(
        "Tie-break finished | asked=%d paired=%d singletons=%d cache_hits=%d",
        len(requests),
        len(outcome.pairs),
        len(outcome.singletons),
        outcome.cache_hits,
    )
    return outcome
