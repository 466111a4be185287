"""Tests for candidate scoring."""
from __future__ import annotations

import pytest

from pairing_lib.candidates import build_candidates, proximity_boost, score_pair
from pairing_lib.config import PairingConfig
from pairing_lib.features import build_features


def _insight(key, role, **extra):
    payload = {"imageKey": key, "role": role}
    payload.update(extra)
    return payload


FRONT = _insight(
    "front.jpg",
    "front",
    brand="Acme",
    productName="Hydrating Vitamin Serum",
    variant="Original",
    size="1 fl oz",
    packagingType="bottle",
    colorSignature=["blue"],
    categoryPath="Beauty > Serum",
)


def _visual_only_batch():
    strong_text = _insight(
        "back-brand.jpg",
        "back",
        brand="Acme",
        productName="Vitamin Serum",
        variant="Original",
        size="30 ml",
        packagingType="box",
        colorSignature=["white"],
        categoryPath="Skin Care",
    )
    visual_only = _insight(
        "back-visual.jpg",
        "back",
        packagingType="bottle",
        colorSignature=["blue"],
    )
    decoys = [
        _insight(f"decoy-{index}.jpg", "back", packagingType="jar", colorSignature=["navy"])
        for index in range(1, 8)
    ]
    return build_features([FRONT, strong_text, visual_only, *decoys])


def test_visual_only_back_survives_top_k():
    cfg = PairingConfig()
    features = _visual_only_batch()
    candidates = build_candidates(features, cfg)["front.jpg"]

    assert len(candidates) == cfg.top_k
    assert [c.back_key for c in candidates[:2]] == ["back-brand.jpg", "back-visual.jpg"]
    assert candidates[0].pre_score == pytest.approx(8.33, abs=0.05)
    assert candidates[1].pre_score == pytest.approx(5.2, abs=0.05)
    # equal decoy scores fall back to back key order, so the last decoy is cut
    assert "decoy-7.jpg" not in {c.back_key for c in candidates}


def test_score_breakdown_for_visual_match():
    features = _visual_only_batch()
    candidate = score_pair(features.get("front.jpg"), features.get("back-visual.jpg"), PairingConfig())
    assert candidate.brand_flag == "unknown"
    assert candidate.packaging_match is True
    assert candidate.color_tier == "exact"
    assert candidate.category_score == pytest.approx(0.2)


def test_scoring_is_pure():
    cfg = PairingConfig()
    features = _visual_only_batch()
    front = features.get("front.jpg")
    back = features.get("back-brand.jpg")
    first = score_pair(front, back, cfg)
    build_candidates(features, cfg)
    assert score_pair(front, back, cfg) == first

    smaller = build_features([FRONT, back.insight])
    assert score_pair(smaller.get("front.jpg"), smaller.get("back-brand.jpg"), cfg) == first


def test_fronts_are_never_candidate_backs():
    features = build_features(
        [
            FRONT,
            _insight("front-2.jpg", "front", brand="Acme", productName="Hydrating Vitamin Serum"),
            _insight("back.jpg", "back", brand="Acme", productName="Hydrating Vitamin Serum"),
        ]
    )
    candidates = build_candidates(features, PairingConfig())
    for items in candidates.values():
        assert {c.back_key for c in items} == {"back.jpg"}


def test_other_role_is_back_eligible():
    features = build_features([FRONT, _insight("side.jpg", "other", brand="Acme")])
    candidates = build_candidates(features, PairingConfig())
    assert [c.back_key for c in candidates["front.jpg"]] == ["side.jpg"]


def test_negative_candidates_are_discarded():
    features = build_features(
        [
            FRONT,
            _insight("wrong.jpg", "back", brand="Other Co", categoryPath="Grocery > Snacks", packagingType="pouch"),
        ]
    )
    assert build_candidates(features, PairingConfig()) == {}


def test_brand_mismatch_and_category_penalties():
    features = build_features(
        [
            _insight("hair.jpg", "front", brand="Silky", categoryPath="Hair Care > Shampoo"),
            _insight("pill.jpg", "back", brand="Vita", categoryPath="Vitamin Supplements"),
        ]
    )
    candidate = score_pair(features.get("hair.jpg"), features.get("pill.jpg"), PairingConfig())
    assert candidate.brand_flag == "mismatch"
    assert candidate.category_score == pytest.approx(-2.0)
    assert candidate.pre_score == pytest.approx(-4.0)


def test_barcode_boost():
    features = build_features(
        [
            _insight("f.jpg", "front", barcode="012345678905"),
            _insight("b.jpg", "back", ocrText="UPC 0 12345 67890 5"),
        ]
    )
    candidate = score_pair(features.get("f.jpg"), features.get("b.jpg"), PairingConfig())
    assert candidate.barcode_boost == 2.0


def test_no_fronts_gives_empty_map():
    features = build_features([_insight("b.jpg", "back")])
    assert build_candidates(features, PairingConfig()) == {}


@pytest.mark.parametrize("front_index, back_index, expected", [(4, 5, 1.0), (4, 6, 2 / 3), (4, 7, 1 / 3), (4, 8, 0.0), (4, 4, 0.0)])
def test_proximity_decays_linearly(front_index, back_index, expected):
    features = build_features(
        [
            _insight("f.jpg", "front", captureIndex=front_index),
            _insight("b.jpg", "back", captureIndex=back_index),
        ]
    )
    assert proximity_boost(features.get("f.jpg"), features.get("b.jpg"), PairingConfig()) == pytest.approx(expected)


def test_top_k_is_configurable():
    features = _visual_only_batch()
    candidates = build_candidates(features, PairingConfig(top_k=2))
    assert len(candidates["front.jpg"]) == 2


def _contract_pair(**back_extra):
    back = {
        "brand": "Vitaminne",
        "productName": "Magnesium Glycinate",
        "packagingType": "jar",
        "size": "60 capsules",
    }
    back.update(back_extra)
    return build_features(
        [
            _insight("f.jpg", "front", brand="RKMD", productName="Magnesium Glycinate", packagingType="jar", size="60 capsules"),
            _insight("b.jpg", "back", **back),
        ]
    )


def test_distributor_rescue_offsets_brand_mismatch():
    features = _contract_pair()
    front, back = features.get("f.jpg"), features.get("b.jpg")
    rescued = score_pair(front, back, PairingConfig())
    plain = score_pair(front, back, PairingConfig(distributor_rescue_weight=0.0))
    assert rescued.brand_flag == "distributorRescue"
    assert rescued.pre_score - plain.pre_score == pytest.approx(1.5)


def test_distributor_rescue_needs_packaging_and_size_or_category():
    features = _contract_pair(packagingType="pouch")
    candidate = score_pair(features.get("f.jpg"), features.get("b.jpg"), PairingConfig())
    assert candidate.brand_flag == "mismatch"

    features = _contract_pair(size="120 capsules")
    candidate = score_pair(features.get("f.jpg"), features.get("b.jpg"), PairingConfig())
    assert candidate.brand_flag == "mismatch"


@pytest.mark.parametrize("role, expected", [("back", True), ("other", False)])
def test_cosmetic_back_cue_nudge(role, expected):
    features = build_features(
        [
            FRONT,
            _insight("inci.jpg", role, packagingType="bottle", ocrText="Ingredients: Aqua, Glycerin. Avoid contact with eyes."),
        ]
    )
    front, back = features.get("front.jpg"), features.get("inci.jpg")
    nudged = score_pair(front, back, PairingConfig())
    plain = score_pair(front, back, PairingConfig(cosmetic_cue_weight=0.0))
    assert nudged.cosmetic_back_cue is expected
    assert nudged.pre_score - plain.pre_score == pytest.approx(0.5 if expected else 0.0)
