"""Tests for tie-break escalation and verdict reconciliation."""
from __future__ import annotations

import asyncio

import pytest

from pairing_lib.candidates import build_candidates
from pairing_lib.config import PairingConfig
from pairing_lib.features import build_features
from pairing_lib.models import validate_result
from pairing_lib.pipeline import run_pairing
from pairing_lib.stores import InMemoryKVStore
from pairing_lib.tiebreak import (
    RUBRIC,
    TieBreakError,
    TieBreakRequest,
    TieBreakVerdict,
    build_request,
    escalate,
)


def _insight(key, role, **extra):
    payload = {"imageKey": key, "role": role, "brand": "Acme", "packagingType": "jar"}
    payload.update(extra)
    return payload


class FixedTieBreaker:
    """Answers from a front -> back table and records every request."""

    def __init__(self, answers):
        self.answers = answers
        self.requests = []

    async def decide(self, request):
        self.requests.append(request)
        return TieBreakVerdict(self.answers.get(request.front_key), "fixed answer")


class TopCandidateTieBreaker:
    async def decide(self, request):
        return TieBreakVerdict(request.candidate_keys()[0], "highest preScore")


class SlowTieBreaker:
    async def decide(self, request):
        await asyncio.sleep(5)
        return TieBreakVerdict(None)


class BrokenTieBreaker:
    async def decide(self, request):
        raise TieBreakError("boom")


def _ambiguous_batch():
    features = build_features(
        [
            _insight("f1.jpg", "front", captureIndex=1),
            _insight("f2.jpg", "front", captureIndex=2),
            _insight("b1.jpg", "back"),
            _insight("b2.jpg", "back"),
        ]
    )
    return features


def _escalate(tiebreaker, cfg=None, cache=None, unresolved=("f1.jpg", "f2.jpg")):
    cfg = cfg or PairingConfig()
    features = _ambiguous_batch()
    candidates = build_candidates(features, cfg)
    return asyncio.run(
        escalate(list(unresolved), features, candidates, set(), cfg, tiebreaker=tiebreaker, cache=cache)
    )


def test_accepts_valid_verdicts_as_model_pairs():
    outcome = _escalate(FixedTieBreaker({"f1.jpg": "b2.jpg", "f2.jpg": "b1.jpg"}))
    assert [(p.front, p.back, p.source) for p in outcome.pairs] == [
        ("f1.jpg", "b2.jpg", "model"),
        ("f2.jpg", "b1.jpg", "model"),
    ]
    assert outcome.pairs[0].confidence == pytest.approx(0.9)
    assert "fixed answer" in outcome.pairs[0].evidence
    assert outcome.singletons == []


def test_two_fronts_claiming_one_back_first_wins():
    outcome = _escalate(FixedTieBreaker({"f1.jpg": "b1.jpg", "f2.jpg": "b1.jpg"}))
    assert [(p.front, p.back) for p in outcome.pairs] == [("f1.jpg", "b1.jpg")]
    assert len(outcome.singletons) == 1
    single = outcome.singletons[0]
    assert single.image_path == "f2.jpg"
    assert single.needs_review is True
    assert "already paired" in single.reason


def test_verdict_outside_candidate_list_is_rejected():
    outcome = _escalate(FixedTieBreaker({"f1.jpg": "made-up.jpg"}), unresolved=("f1.jpg",))
    assert outcome.pairs == []
    assert outcome.singletons[0].reason.startswith("model verdict rejected")


def test_decline_becomes_singleton():
    outcome = _escalate(FixedTieBreaker({}))
    assert [s.reason for s in outcome.singletons] == ["declined despite candidates"] * 2


def test_timeout_becomes_singleton():
    outcome = _escalate(SlowTieBreaker(), cfg=PairingConfig(tiebreak_timeout=0.05))
    assert outcome.pairs == []
    assert [s.reason for s in outcome.singletons] == ["tiebreak timeout", "tiebreak timeout"]


def test_error_becomes_singleton():
    outcome = _escalate(BrokenTieBreaker())
    assert [s.reason for s in outcome.singletons] == ["tiebreak error: boom"] * 2


def test_disabled_tiebreak():
    outcome = _escalate(TopCandidateTieBreaker(), cfg=PairingConfig(disable_tiebreak=True))
    assert outcome.pairs == []
    assert {s.reason for s in outcome.singletons} == {"tiebreak disabled"}


def test_missing_tiebreaker_counts_as_disabled():
    outcome = _escalate(None)
    assert {s.reason for s in outcome.singletons} == {"tiebreak disabled"}


def test_front_without_candidates():
    cfg = PairingConfig()
    features = build_features([_insight("lonely.jpg", "front")])
    outcome = asyncio.run(escalate(["lonely.jpg"], features, {}, set(), cfg, tiebreaker=TopCandidateTieBreaker()))
    assert [(s.image_path, s.reason) for s in outcome.singletons] == [("lonely.jpg", "no candidates")]


def test_consumed_backs_are_not_offered():
    cfg = PairingConfig()
    features = _ambiguous_batch()
    candidates = build_candidates(features, cfg)
    tiebreaker = FixedTieBreaker({})
    asyncio.run(escalate(["f1.jpg"], features, candidates, {"b1.jpg"}, cfg, tiebreaker=tiebreaker))
    assert tiebreaker.requests[0].candidate_keys() == ["b2.jpg"]


def test_cached_verdicts_skip_the_model():
    cache = InMemoryKVStore()
    first = FixedTieBreaker({"f1.jpg": "b1.jpg", "f2.jpg": "b2.jpg"})
    _escalate(first, cache=cache)
    assert len(first.requests) == 2
    assert len(cache) == 2

    second = FixedTieBreaker({})
    outcome = _escalate(second, cache=cache)
    assert second.requests == []
    assert outcome.cache_hits == 2
    assert len(outcome.pairs) == 2


class FailingCache:
    """Store whose reads and/or writes raise like a full or unreadable disk."""

    def __init__(self, fail_get=False, fail_set=True):
        self.fail_get = fail_get
        self.fail_set = fail_set

    def get(self, key):
        if self.fail_get:
            raise OSError("unreadable")
        return None

    def set(self, key, value, ttl=None):
        if self.fail_set:
            raise OSError("disk full")

    def expire(self, key, ttl):
        return False


@pytest.mark.parametrize("fail_get, fail_set", [(False, True), (True, False), (True, True)])
def test_cache_failures_do_not_abort_escalation(fail_get, fail_set, caplog):
    cache = FailingCache(fail_get=fail_get, fail_set=fail_set)
    outcome = _escalate(FixedTieBreaker({"f1.jpg": "b1.jpg", "f2.jpg": "b2.jpg"}), cache=cache)
    assert [(p.front, p.back) for p in outcome.pairs] == [("f1.jpg", "b1.jpg"), ("f2.jpg", "b2.jpg")]
    assert outcome.cache_hits == 0
    assert "cache" in caplog.text


def test_pipeline_survives_a_failing_cache():
    records = [
        _insight("f1.jpg", "front", captureIndex=1),
        _insight("f2.jpg", "front", captureIndex=2),
        _insight("b1.jpg", "back"),
        _insight("b2.jpg", "back"),
    ]
    result = run_pairing("disk-full", records, tiebreaker=TopCandidateTieBreaker(), cache=FailingCache())
    validate_result(result)
    assert result.metrics.failed_step is None
    assert result.metrics.model_pairs >= 1
    placed = {p.front for p in result.pairs} | {s.image_path for s in result.singletons}
    assert {"f1.jpg", "f2.jpg"} <= placed


class NonVerdictTieBreaker:
    async def decide(self, request):
        return {"backKey": request.candidate_keys()[0]}


def test_non_verdict_reply_becomes_singleton():
    outcome = _escalate(NonVerdictTieBreaker(), cache=InMemoryKVStore())
    assert outcome.pairs == []
    assert [s.reason for s in outcome.singletons] == ["tiebreak error: unexpected verdict type dict"] * 2


def test_request_carries_rubric_and_breakdown():
    cfg = PairingConfig()
    features = _ambiguous_batch()
    candidates = build_candidates(features, cfg)["f1.jpg"]
    request = build_request("f1.jpg", candidates, features)
    assert request.rubric == RUBRIC
    assert request.front["imageKey"] == "f1.jpg"
    assert request.candidates[0]["back"]["imageKey"] == request.candidate_keys()[0]
    assert "preScore" in request.candidates[0]
    assert request.digest() == build_request("f1.jpg", candidates, features).digest()


def test_verdict_parsing():
    assert TieBreakVerdict.from_dict({"backKey": "b.jpg", "rationale": "same jar"}).back_key == "b.jpg"
    assert TieBreakVerdict.from_dict({"backKey": None}).back_key is None
    with pytest.raises(TieBreakError):
        TieBreakVerdict.from_dict({"backKey": 3})
    with pytest.raises(TieBreakError):
        TieBreakVerdict.from_dict(["b.jpg"])


def test_request_to_dict_shape():
    request = TieBreakRequest(front={"imageKey": "f"}, candidates=({"backKey": "b"},))
    assert request.to_dict() == {"front": {"imageKey": "f"}, "candidates": [{"backKey": "b"}]}
