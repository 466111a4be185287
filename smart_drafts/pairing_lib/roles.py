"""Role confidence scoring and per-group role reconciliation.

Nothing here mutates a run: the reconciler returns a list of corrections and
the caller decides whether to feed corrected insights into the next run via
``apply_corrections``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .features import resolve_role
from .models import ROLE_BACK, ROLE_FRONT, ROLE_OTHER, ImageInsight, ProductGroup, RoleCorrection

logger = logging.getLogger(__name__)

BRANDING_TRIGGERS = ("brand logo", "hero text", "large centered")
BACK_TRIGGERS = ("supplement facts", "nutrition facts", "barcode", "directions", "ingredients")
PLAIN_BACKGROUNDS = {"white", "black"}

FLAG_BACK_ON_FRONT = "back_indicators_on_front_label"
FLAG_FRONT_ON_BACK = "front_indicators_on_back_label"
FLAG_LOW_CONFIDENCE = "low_confidence"
CONTRADICTION_LIMIT = 0.5


@dataclass
class RoleConfidence:
    role: str
    confidence: float
    flags: List[str] = field(default_factory=list)
    adjusted_role: Optional[str] = None

    @property
    def contradicted(self) -> bool:
        return self.adjusted_role is not None


def _has_trigger(triggers: Iterable[str], needles: Iterable[str]) -> bool:
    lowered = [trigger.lower() for trigger in triggers]
    return any(needle in trigger for trigger in lowered for needle in needles)


def compute_role_confidence(insight: ImageInsight) -> RoleConfidence:
    """Adjust the classifier's |role_score| with cheap text and layout cues.

    Fronts gain from moderate text, branding triggers, plain backgrounds and
    centred framing; backs gain from dense text and panel triggers such as
    "supplement facts". A label whose triggers point the other way loses 0.3
    and, when it ends under 0.5, gets an adjusted role.
    """
    role = resolve_role(insight.role, insight.role_score)
    confidence = abs(insight.role_score)
    flags: List[str] = []

    text_length = len(insight.ocr_text)
    if role == ROLE_FRONT:
        if 20 < text_length < 200:
            confidence += 0.1
        if text_length > 400:
            confidence -= 0.15
            flags.append("excessive_text_for_front")
    elif role == ROLE_BACK:
        if text_length > 200:
            confidence += 0.15
        if text_length < 30:
            confidence -= 0.1
            flags.append("low_text_for_back")

    branding = _has_trigger(insight.evidence_triggers, BRANDING_TRIGGERS)
    back_panel = _has_trigger(insight.evidence_triggers, BACK_TRIGGERS)
    if role == ROLE_FRONT and branding:
        confidence += 0.15
    if role == ROLE_BACK and back_panel:
        confidence += 0.2
    if role == ROLE_BACK and branding and not back_panel:
        flags.append(FLAG_FRONT_ON_BACK)
        confidence -= 0.3
    if role == ROLE_FRONT and back_panel and not branding:
        flags.append(FLAG_BACK_ON_FRONT)
        confidence -= 0.3

    if role == ROLE_FRONT and insight.dominant_color.lower() in PLAIN_BACKGROUNDS:
        confidence += 0.05

    description = insight.visual_description.lower()
    if "full-wrap" in description or "360" in description:
        flags.append("full_wrap_label_detected")
    if role == ROLE_FRONT and ("centered" in description or "symmetrical" in description):
        confidence += 0.1
    if role == ROLE_FRONT and ("rotated" in description or "angled" in description):
        confidence -= 0.15
        flags.append("rotated_image_marked_as_front")

    confidence = max(0.0, min(1.0, confidence))
    if confidence < 0.4:
        flags.append(FLAG_LOW_CONFIDENCE)

    adjusted: Optional[str] = None
    if FLAG_BACK_ON_FRONT in flags and confidence < CONTRADICTION_LIMIT:
        adjusted = ROLE_BACK
    elif FLAG_FRONT_ON_BACK in flags and confidence < CONTRADICTION_LIMIT:
        adjusted = ROLE_FRONT
    return RoleConfidence(role=role, confidence=confidence, flags=flags, adjusted_role=adjusted)


def _best(keys: List[str], scores: Mapping[str, RoleConfidence]) -> List[str]:
    return sorted(keys, key=lambda key: (-scores[key].confidence, key))


def reconcile_group(
    group: ProductGroup,
    insights: Mapping[str, ImageInsight],
) -> List[RoleCorrection]:
    """Corrections for one group; the group and insights are left untouched."""
    members = [key for key in group.images if key in insights]
    scores = {key: compute_role_confidence(insights[key]) for key in members}
    original = {key: scores[key].role for key in members}
    roles = dict(original)
    # one entry per relabelled image, in first-touch order
    reasons: Dict[str, List[str]] = {}

    def relabel(key: str, new_role: str, reason: str) -> None:
        reasons.setdefault(key, []).append(reason)
        roles[key] = new_role

    def with_role(role: str) -> List[str]:
        return _best([key for key in members if roles[key] == role], scores)

    fronts = with_role(ROLE_FRONT)
    if len(fronts) > 1:
        keep = fronts[0]
        for key in fronts[1:]:
            relabel(
                key,
                ROLE_OTHER,
                f"Multiple fronts detected, keeping highest confidence "
                f"({scores[keep].confidence:.2f} vs {scores[key].confidence:.2f})",
            )

    # A contradicted front/back is only swapped when the other side of the
    # swap is contradicted too, so the group never loses its only front or back.
    flipped_fronts = [k for k in with_role(ROLE_FRONT) if scores[k].adjusted_role == ROLE_BACK]
    flipped_backs = [k for k in with_role(ROLE_BACK) if scores[k].adjusted_role == ROLE_FRONT]
    for front_key, back_key in zip(flipped_fronts, flipped_backs):
        relabel(front_key, ROLE_BACK, "Back-panel evidence on a front label")
        relabel(back_key, ROLE_FRONT, "Front branding evidence on a back label")

    others = with_role(ROLE_OTHER)
    if not with_role(ROLE_FRONT) and others:
        best = others.pop(0)
        relabel(
            best,
            ROLE_FRONT,
            f"No front detected in group, promoting best candidate (confidence: {scores[best].confidence:.2f})",
        )

    if len(with_role(ROLE_FRONT)) == 1 and not with_role(ROLE_BACK) and len(others) == 1:
        relabel(others[0], ROLE_BACK, "Lone front with a single other image, promoting it to back")

    return [
        RoleCorrection(key, original[key], roles[key], "; ".join(steps), group.group_id)
        for key, steps in reasons.items()
        if roles[key] != original[key]
    ]


def reconcile_groups(
    groups: Iterable[Union[ProductGroup, Mapping[str, Any]]],
    insights: Mapping[str, ImageInsight],
) -> List[RoleCorrection]:
    corrections: List[RoleCorrection] = []
    for group in groups:
        if not isinstance(group, ProductGroup):
            group = ProductGroup.from_dict(group)
        found = reconcile_group(group, insights)
        for item in found:
            logger.info(
                "Role correction in %s: %s %s -> %s (%s)",
                item.group_id,
                item.image_key,
                item.original_role,
                item.corrected_role,
                item.reason,
            )
        corrections.extend(found)
    return corrections


def apply_corrections(
    insights: Mapping[str, ImageInsight],
    corrections: Iterable[RoleCorrection],
) -> Dict[str, ImageInsight]:
    """New insight map with corrected roles; the input map is not modified."""
    updated = dict(insights)
    for correction in corrections:
        insight = updated.get(correction.image_key)
        if insight is None:
            logger.warning("Correction for unknown image %s ignored", correction.image_key)
            continue
        updated[correction.image_key] = replace(insight, role=correction.corrected_role)
    return updated
