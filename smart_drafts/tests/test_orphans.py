"""Tests for orphan reassignment."""
from __future__ import annotations

import pytest

from pairing_lib.models import ImageInsight, ProductGroup
from pairing_lib.orphans import apply_matches, match_orphan_to_group, reassign_orphans


def _insight(key, text="", description="", color="", role="other"):
    return ImageInsight(
        image_key=key,
        role=role,
        ocr_text=text,
        visual_description=description,
        color_signature=(color,) if color else (),
    )


SERUM_FRONT = _insight("serum-front.jpg", "Vitamin C Serum", "Vitamin C Serum", "orange", role="front")
SERUM_BACK = _insight("serum-back.jpg", "Directions apply daily", "white dropper bottle", "white", role="back")
SHAMPOO_FRONT = _insight("shampoo-front.jpg", "Argan Oil Shampoo", "tall green bottle", "green", role="front")

INSIGHTS = {item.image_key: item for item in [SERUM_FRONT, SERUM_BACK, SHAMPOO_FRONT]}
SERUM_GROUP = ProductGroup(group_id="serum", front="serum-front.jpg", back="serum-back.jpg")
SHAMPOO_GROUP = ProductGroup(group_id="shampoo", front="shampoo-front.jpg")


def test_empty_group_scores_zero():
    orphan = _insight("o.jpg", "Vitamin C Serum")
    confidence, reasons = match_orphan_to_group(orphan, ProductGroup(group_id="empty", front=""), INSIGHTS)
    assert confidence == 0.0
    assert reasons == ["Empty group"]


def test_identical_text_description_and_colour():
    orphan = _insight("o.jpg", "Vitamin C Serum", "Vitamin C Serum", "orange")
    group = ProductGroup(group_id="serum-only", front="serum-front.jpg")
    confidence, reasons = match_orphan_to_group(orphan, group, INSIGHTS)
    assert 0.9 <= confidence <= 1.0
    assert any(reason.startswith("Text similarity") for reason in reasons)
    assert any(reason.startswith("Color matches") for reason in reasons)


def test_colour_share_is_capped():
    orphan = _insight("o.jpg", color="orange")
    group = ProductGroup(group_id="serum-only", front="serum-front.jpg")
    confidence, reasons = match_orphan_to_group(orphan, group, INSIGHTS)
    assert confidence == pytest.approx(0.2)
    assert "Confidence too low for reassignment" in reasons


def test_members_without_insight_are_ignored():
    orphan = _insight("o.jpg", "Vitamin C Serum", color="orange")
    group = ProductGroup(group_id="ghost", front="missing.jpg")
    confidence, _ = match_orphan_to_group(orphan, group, INSIGHTS)
    assert confidence == 0.0


def test_reassign_picks_best_group():
    orphan = _insight("o.jpg", "Vitamin C Serum 30ml", "Vitamin C Serum", "orange")
    matches = reassign_orphans([orphan], [SHAMPOO_GROUP, SERUM_GROUP], INSIGHTS)
    assert len(matches) == 1
    assert matches[0].orphan_key == "o.jpg"
    assert matches[0].matched_group_id == "serum"
    assert matches[0].confidence >= 0.5


def test_reassign_accepts_keys_and_dict_groups():
    insights = dict(INSIGHTS)
    insights["o.jpg"] = _insight("o.jpg", "Argan Oil Shampoo", "tall green bottle", "green")
    matches = reassign_orphans(
        ["o.jpg", "unknown.jpg"],
        [{"groupId": "shampoo", "images": ["shampoo-front.jpg"]}],
        insights,
    )
    assert [(m.orphan_key, m.matched_group_id) for m in matches] == [("o.jpg", "shampoo")]


def test_below_threshold_is_not_reassigned():
    orphan = _insight("o.jpg", "Completely unrelated words here")
    assert reassign_orphans([orphan], [SERUM_GROUP, SHAMPOO_GROUP], INSIGHTS) == []


def test_exact_tie_keeps_first_group():
    twin = ProductGroup(group_id="serum-copy", front="serum-front.jpg")
    first = ProductGroup(group_id="serum-first", front="serum-front.jpg")
    orphan = _insight("o.jpg", "Vitamin C Serum", "Vitamin C Serum", "orange")
    matches = reassign_orphans([orphan], [first, twin], INSIGHTS)
    assert matches[0].matched_group_id == "serum-first"


def test_invalid_threshold():
    with pytest.raises(ValueError):
        reassign_orphans([], [], {}, threshold=1.5)


def test_apply_matches_adds_extras_without_mutating():
    orphan = _insight("o.jpg", "Vitamin C Serum", "Vitamin C Serum", "orange")
    matches = reassign_orphans([orphan], [SERUM_GROUP], INSIGHTS)
    updated = apply_matches([SERUM_GROUP], matches)
    assert updated[0].extras == ["o.jpg"]
    assert SERUM_GROUP.extras == []
