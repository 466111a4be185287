"""Score every front against every back-eligible image and keep the top K.

The score is additive so each signal contributes on its own and a missing
signal simply adds nothing. Default weights:

    +3    brand equal (normalised)       -2  both brands present but different
    -0.5  either side has no brand
    +2 x  product token Jaccard          +1 x variant token Jaccard
    +1.5  canonical sizes equal
    +3    same packaging type
    +2.5  exact dominant colour          +2  close colour
    +1.5  same category bucket           +0.2w either bucket "other"
    -2w   incompatible buckets           +0.4w food vs supplement
    +1    adjacent capture index, decaying to 0 past the window
    +2    same barcode on both sides
    +1.5  distributor rescue: brands differ but product tokens (Jaccard >= 0.5),
          packaging and size or category bucket agree
    +0.5  back labelled "back" whose text carries cosmetic or INCI cues
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from . import text_utils
from .config import PairingConfig
from .features import FeatureSet
from .models import (
    BRAND_DISTRIBUTOR,
    BRAND_EQUAL,
    BRAND_MISMATCH,
    BRAND_UNKNOWN,
    COLOR_CLOSE,
    COLOR_EXACT,
    Candidate,
    Feature,
)

logger = logging.getLogger(__name__)

CandidateMap = Dict[str, List[Candidate]]

# contract-manufactured products print the distributor brand on the back
DISTRIBUTOR_MIN_PRODUCT_JACCARD = 0.5


def proximity_boost(front: Feature, back: Feature, cfg: PairingConfig) -> float:
    if front.capture_index is None or back.capture_index is None:
        return 0.0
    distance = abs(front.capture_index - back.capture_index)
    if distance < 1 or distance > cfg.proximity_window:
        return 0.0
    return cfg.proximity_weight * (cfg.proximity_window - distance + 1) / cfg.proximity_window


def category_score(front: Feature, back: Feature, cfg: PairingConfig) -> float:
    compat = text_utils.bucket_compat(front.category_bucket, back.category_bucket)
    if compat >= 1.0:
        return cfg.category_same_bucket
    if compat < 0:
        return 2.0 * compat * cfg.category_weight
    return compat * cfg.category_weight


def score_pair(front: Feature, back: Feature, cfg: PairingConfig) -> Candidate:
    """Pure scoring of one front/back hypothesis."""
    score = 0.0

    if front.brand_norm and back.brand_norm:
        if front.brand_norm == back.brand_norm:
            brand_flag = BRAND_EQUAL
            score += cfg.brand_match_weight
        else:
            brand_flag = BRAND_MISMATCH
            score += cfg.brand_mismatch_penalty
    else:
        brand_flag = BRAND_UNKNOWN
        score += cfg.empty_brand_penalty

    product_jaccard = text_utils.jaccard(front.product_tokens, back.product_tokens)
    variant_jaccard = text_utils.jaccard(front.variant_tokens, back.variant_tokens)
    score += cfg.product_weight * product_jaccard
    score += cfg.variant_weight * variant_jaccard

    size_equal = bool(front.size_canonical and front.size_canonical == back.size_canonical)
    if size_equal:
        score += cfg.size_weight

    packaging_match = front.packaging != "unknown" and front.packaging == back.packaging
    if packaging_match:
        score += cfg.packaging_weight

    color = text_utils.color_tier(front.dominant_color, back.dominant_color)
    if color == COLOR_EXACT:
        score += cfg.color_exact_weight
    elif color == COLOR_CLOSE:
        score += cfg.color_close_weight

    category = category_score(front, back, cfg)
    score += category

    proximity = proximity_boost(front, back, cfg)
    score += proximity

    barcode = cfg.barcode_weight if front.barcode and front.barcode == back.barcode else 0.0
    score += barcode

    if brand_flag == BRAND_MISMATCH and product_jaccard >= DISTRIBUTOR_MIN_PRODUCT_JACCARD and packaging_match:
        same_bucket = front.category_bucket == back.category_bucket != text_utils.BUCKET_OTHER
        if size_equal or same_bucket:
            brand_flag = BRAND_DISTRIBUTOR
            score += cfg.distributor_rescue_weight

    cosmetic_cue = back.is_back and text_utils.has_cosmetic_back_cue(back.insight.ocr_text)
    if cosmetic_cue:
        score += cfg.cosmetic_cue_weight

    return Candidate(
        front_key=front.key,
        back_key=back.key,
        pre_score=score,
        brand_flag=brand_flag,
        product_jaccard=product_jaccard,
        variant_jaccard=variant_jaccard,
        size_equal=size_equal,
        packaging_match=packaging_match,
        color_tier=color,
        category_score=category,
        proximity_boost=proximity,
        barcode_boost=barcode,
        cosmetic_back_cue=cosmetic_cue,
    )


def _rank_key(candidate: Candidate):
    return (
        -candidate.pre_score,
        -candidate.product_jaccard,
        0 if candidate.brand_flag == BRAND_EQUAL else 1,
        0 if candidate.packaging_match else 1,
        candidate.back_key,
    )


def rank_candidates(candidates: List[Candidate], top_k: Optional[int] = None) -> List[Candidate]:
    ranked = sorted(candidates, key=_rank_key)
    return ranked[:top_k] if top_k is not None else ranked


def candidates_for_front(front: Feature, features: FeatureSet, cfg: PairingConfig) -> List[Candidate]:
    """All back-eligible scores for one front, best first, before the top-K cut."""
    if not front.is_front:
        return []
    scored = [
        score_pair(front, back, cfg)
        for back in features.backs()
        if back.key != front.key
    ]
    return rank_candidates([c for c in scored if c.pre_score >= cfg.min_pre_score])


def build_candidates(features: FeatureSet, cfg: PairingConfig) -> CandidateMap:
    result: CandidateMap = {}
    fronts = features.fronts()
    if not fronts:
        logger.info("No fronts in batch; candidate map is empty")
        return result
    for front in fronts:
        top = candidates_for_front(front, features, cfg)[: cfg.top_k]
        if top:
            result[front.key] = top
        else:
            logger.debug("No candidates for front %s", front.key)
    _warn_crowded_backs(result, cfg)
    logger.info(
        "Candidates built | fronts=%d with_candidates=%d total=%d",
        len(fronts),
        len(result),
        sum(len(items) for items in result.values()),
    )
    return result


def _warn_crowded_backs(candidates: CandidateMap, cfg: PairingConfig) -> None:
    fronts_by_back: Dict[str, List[str]] = {}
    for front_key, items in candidates.items():
        for candidate in items:
            fronts_by_back.setdefault(candidate.back_key, []).append(front_key)
    for back_key, front_keys in fronts_by_back.items():
        if len(front_keys) >= cfg.max_back_front_ratio and len(front_keys) > 1:
            logger.warning("Back %s appears under %d fronts", back_key, len(front_keys))
