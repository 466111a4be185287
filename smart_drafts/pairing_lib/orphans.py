"""Reattach orphaned images to existing product groups.

An orphan is an image that has an insight but never ended up in a pair or a
group, usually because its record was dropped during feature building or it
was uploaded after the batch ran. Matching uses three cheap signals against
every member of a group:

    text      max OCR/description Jaccard, adds sim * 0.5 when sim > 0.3
    visual    max visual-description Jaccard, adds sim * 0.3 when sim > 0.2
    colour    share of members with the same dominant colour, at most 0.2

The total is capped at 1.0.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from . import text_utils
from .models import ImageInsight, OrphanMatch, ProductGroup

logger = logging.getLogger(__name__)

TEXT_FLOOR = 0.3
TEXT_WEIGHT = 0.5
VISUAL_FLOOR = 0.2
VISUAL_WEIGHT = 0.3
COLOR_CAP = 0.2
LOW_CONFIDENCE = 0.3
MIN_TOKEN_LENGTH = 3

OrphanInput = Union[str, ImageInsight, Mapping[str, Any]]
GroupInput = Union[ProductGroup, Mapping[str, Any]]


def text_similarity(text_a: str, text_b: str) -> float:
    return text_utils.jaccard(
        text_utils.tokenize(text_a, min_length=MIN_TOKEN_LENGTH),
        text_utils.tokenize(text_b, min_length=MIN_TOKEN_LENGTH),
    )


def _ocr_blob(insight: ImageInsight) -> str:
    return text_utils.text_blob([insight.ocr_text, insight.visual_description])


def _as_insight(value: Any, key: Optional[str] = None) -> Optional[ImageInsight]:
    if isinstance(value, ImageInsight):
        return value
    if isinstance(value, Mapping):
        return ImageInsight.from_dict(value, key=key)
    return None


def _as_group(value: GroupInput) -> ProductGroup:
    return value if isinstance(value, ProductGroup) else ProductGroup.from_dict(value)


def _insight_index(insights: Union[Mapping[str, Any], Iterable[Any]]) -> Dict[str, ImageInsight]:
    index: Dict[str, ImageInsight] = {}
    items = insights.items() if isinstance(insights, Mapping) else ((None, item) for item in insights)
    for key, value in items:
        insight = _as_insight(value, key=key)
        if insight is not None and insight.image_key:
            index.setdefault(insight.image_key, insight)
    return index


def match_orphan_to_group(
    orphan: Union[ImageInsight, Mapping[str, Any]],
    group: GroupInput,
    insights: Mapping[str, Any],
) -> Tuple[float, List[str]]:
    """Confidence in [0, 1] that ``orphan`` belongs to ``group``, with reasons."""
    orphan = _as_insight(orphan) or ImageInsight(image_key="", role="")
    if not all(isinstance(value, ImageInsight) for value in insights.values()):
        insights = _insight_index(insights)
    group = _as_group(group)
    members = group.images
    if not members:
        return 0.0, ["Empty group"]

    orphan_text = _ocr_blob(orphan)
    orphan_visual = orphan.visual_description
    orphan_color = text_utils.normalize_color(orphan.dominant_color)

    max_text = 0.0
    max_visual = 0.0
    color_matches = 0
    for key in members:
        insight = insights.get(key)
        if insight is None:
            continue
        member_text = _ocr_blob(insight)
        if orphan_text and member_text:
            max_text = max(max_text, text_similarity(orphan_text, member_text))
        if orphan_visual and insight.visual_description:
            max_visual = max(max_visual, text_similarity(orphan_visual, insight.visual_description))
        if orphan_color and orphan_color == text_utils.normalize_color(insight.dominant_color):
            color_matches += 1

    confidence = 0.0
    reasons: List[str] = []
    if max_text > TEXT_FLOOR:
        confidence += max_text * TEXT_WEIGHT
        reasons.append(f"Text similarity: {max_text * 100:.0f}%")
    if max_visual > VISUAL_FLOOR:
        confidence += max_visual * VISUAL_WEIGHT
        reasons.append(f"Visual similarity: {max_visual * 100:.0f}%")
    if color_matches:
        confidence += min(color_matches / len(members), COLOR_CAP)
        reasons.append(f"Color matches: {color_matches}/{len(members)}")

    confidence = min(confidence, 1.0)
    if confidence < LOW_CONFIDENCE:
        reasons.append("Confidence too low for reassignment")
    return confidence, reasons


def reassign_orphans(
    orphans: Iterable[OrphanInput],
    groups: Iterable[GroupInput],
    insights: Union[Mapping[str, Any], Iterable[Any]],
    threshold: float = 0.5,
) -> List[OrphanMatch]:
    """Match each orphan to its best group at or above ``threshold``.

    Orphans may be given as keys (looked up in ``insights``), insight records
    or raw dicts. Groups are scanned in order and a later group has to beat
    the current best strictly, so an exact tie keeps the earlier group.
    """
    if not 0.0 <= threshold <= 1.0:
        raise ValueError("threshold must be between 0 and 1")
    index = _insight_index(insights)
    group_list = [_as_group(group) for group in groups]
    matches: List[OrphanMatch] = []
    for raw in orphans:
        if isinstance(raw, str):
            orphan = index.get(raw)
            if orphan is None:
                logger.warning("Orphan %s has no insight; skipping", raw)
                continue
        else:
            orphan = _as_insight(raw)
        if orphan is None or not orphan.image_key:
            logger.warning("Skipping orphan without a key")
            continue

        best: Optional[OrphanMatch] = None
        for group in group_list:
            if orphan.image_key in group.images:
                continue
            confidence, reasons = match_orphan_to_group(orphan, group, index)
            if confidence < threshold:
                continue
            if best is None or confidence > best.confidence:
                best = OrphanMatch(orphan.image_key, group.group_id, confidence, "; ".join(reasons))
        if best is not None:
            logger.info(
                "Reassigned orphan %s -> %s (confidence %.2f)",
                best.orphan_key,
                best.matched_group_id,
                best.confidence,
            )
            matches.append(best)
        else:
            logger.debug("No group for orphan %s", orphan.image_key)
    return matches


def apply_matches(groups: List[ProductGroup], matches: Iterable[OrphanMatch]) -> List[ProductGroup]:
    """Return copies of ``groups`` with matched orphans appended as extras."""
    by_group: Dict[str, List[str]] = {}
    for match in matches:
        by_group.setdefault(match.matched_group_id, []).append(match.orphan_key)
    updated: List[ProductGroup] = []
    for group in groups:
        extras = list(group.extras)
        for key in by_group.get(group.group_id, []):
            if key not in group.images and key not in extras:
                extras.append(key)
        updated.append(
            ProductGroup(
                group_id=group.group_id,
                front=group.front,
                back=group.back,
                extras=extras,
                brand=group.brand,
                product=group.product,
            )
        )
    return updated
