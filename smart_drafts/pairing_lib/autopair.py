"""Greedy auto-pairing of fronts whose best back is clearly ahead."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Set

from .candidates import CandidateMap
from .config import PairingConfig
from .features import FeatureSet
from .models import BRAND_EQUAL, BRAND_UNKNOWN, SOURCE_AUTO, Candidate, Feature, Pair

logger = logging.getLogger(__name__)

AUTO_PAIR_CONFIDENCE = 0.95
HAIR_AUTO_PAIR_CONFIDENCE = 0.90
HAIR_COSMETIC_BUCKETS = ("hair", "cosmetic")
HAIR_COSMETIC_PACKAGING = ("bottle",)


@dataclass
class AutoPairResult:
    pairs: List[Pair] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    consumed: Set[str] = field(default_factory=set)


def margin(candidates: List[Candidate]) -> float:
    """Lead of the best candidate over the runner-up; a lone candidate leads by infinity."""
    if not candidates:
        return 0.0
    if len(candidates) == 1:
        return math.inf
    return candidates[0].pre_score - candidates[1].pre_score


def auto_pair_evidence(candidate: Candidate, gap: float) -> List[str]:
    gap_text = "inf" if math.isinf(gap) else f"{gap:.2f}"
    return [
        f"AUTO-PAIRED: preScore={candidate.pre_score:.2f} gap={gap_text}",
        candidate.breakdown(),
    ]


def make_pair(
    features: FeatureSet,
    candidate: Candidate,
    *,
    source: str,
    confidence: float,
    evidence: List[str],
) -> Pair:
    front = features.features[candidate.front_key]
    back = features.features[candidate.back_key]
    return Pair(
        front=candidate.front_key,
        back=candidate.back_key,
        confidence=confidence,
        brand=front.insight.brand or back.insight.brand,
        product=front.insight.product_name or back.insight.product_name,
        evidence=evidence,
        source=source,
        match_score=candidate.pre_score,
    )


def hair_cosmetic_eligible(front: Feature, best: Candidate, lead: float, cfg: PairingConfig) -> bool:
    """Relaxed auto-pair rule for hair and skin products.

    Accepts a lower score floor and gap when the front is a bottle, the back
    carries INCI or cosmetic usage cues and the brands do not disagree.
    """
    return (
        front.category_bucket in HAIR_COSMETIC_BUCKETS
        and front.packaging in HAIR_COSMETIC_PACKAGING
        and best.packaging_match
        and best.cosmetic_back_cue
        and best.brand_flag in (BRAND_EQUAL, BRAND_UNKNOWN)
        and best.pre_score >= cfg.hair_auto_pair_score
        and lead >= cfg.hair_auto_pair_gap
    )


def _hair_cosmetic_pass(
    features: FeatureSet,
    candidates: CandidateMap,
    cfg: PairingConfig,
    result: AutoPairResult,
) -> None:
    still_unresolved: List[str] = []
    for front_key in result.unresolved:
        available = [c for c in candidates.get(front_key, []) if c.back_key not in result.consumed]
        if available:
            best = available[0]
            lead = margin(available)
            if hair_cosmetic_eligible(features.features[front_key], best, lead, cfg):
                gap_text = "inf" if math.isinf(lead) else f"{lead:.2f}"
                result.pairs.append(
                    make_pair(
                        features,
                        best,
                        source=SOURCE_AUTO,
                        confidence=HAIR_AUTO_PAIR_CONFIDENCE,
                        evidence=[
                            f"AUTO-PAIRED[hair]: preScore={best.pre_score:.2f} gap={gap_text}",
                            best.breakdown(),
                        ],
                    )
                )
                result.consumed.update({front_key, best.back_key})
                logger.debug("Auto-paired %s -> %s on cosmetic cues", front_key, best.back_key)
                continue
        still_unresolved.append(front_key)
    result.unresolved = still_unresolved


def auto_pair(
    features: FeatureSet,
    candidates: CandidateMap,
    cfg: PairingConfig,
    consumed: Optional[Set[str]] = None,
) -> AutoPairResult:
    """Commit fronts whose top unconsumed back clears both the score floor and the gap.

    Fronts go in stable (capture index, key) order and a committed back is
    removed from every later front's list straight away. Fronts still
    unresolved afterwards get one pass under the hair/cosmetic rule.
    """
    result = AutoPairResult(consumed=set(consumed or ()))
    for front in features.fronts():
        if front.key in result.consumed:
            continue
        available = [c for c in candidates.get(front.key, []) if c.back_key not in result.consumed]
        if not available:
            result.unresolved.append(front.key)
            continue
        best = available[0]
        lead = margin(available)
        if best.pre_score >= cfg.auto_pair_score and lead >= cfg.auto_pair_gap:
            pair = make_pair(
                features,
                best,
                source=SOURCE_AUTO,
                confidence=AUTO_PAIR_CONFIDENCE,
                evidence=auto_pair_evidence(best, lead),
            )
            result.pairs.append(pair)
            result.consumed.update({front.key, best.back_key})
            logger.debug("Auto-paired %s -> %s (%s)", front.key, best.back_key, best.breakdown())
        else:
            result.unresolved.append(front.key)
    _hair_cosmetic_pass(features, candidates, cfg, result)
    logger.info("Auto-paired %d fronts | unresolved=%d", len(result.pairs), len(result.unresolved))
    return result
