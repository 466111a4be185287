"""Tests for feature building and role resolution."""
from __future__ import annotations

import logging

import numpy as np
import pytest

from pairing_lib.features import build_features, cosine_similarity, normalize_embedding, resolve_role
from pairing_lib.models import ImageInsight


def _insight(key, role="front", **extra):
    payload = {"imageKey": key, "role": role, "brand": "Acme", "productName": "Daily Multivitamin"}
    payload.update(extra)
    return payload


@pytest.mark.parametrize(
    "role, score, expected",
    [
        ("front", 0.9, "front"),
        ("back", -0.9, "back"),
        ("other", 0.0, "other"),
        ("side", 0.8, "other"),
        ("unclear", 0.5, "back"),
        ("unclear", -0.5, "front"),
        ("unclear", 0.1, "other"),
    ],
)
def test_resolve_role(role, score, expected):
    assert resolve_role(role, score) == expected


def test_build_features_counts_roles():
    features = build_features(
        [
            _insight("f1.jpg"),
            _insight("b1.jpg", role="back"),
            _insight("o1.jpg", role="other"),
            _insight("u1.jpg", role="Unclear", roleScore=0.6),
        ]
    )
    assert features.counts() == {"fronts": 1, "backs": 2, "others": 1}
    assert [f.key for f in features.backs()] == ["b1.jpg", "o1.jpg", "u1.jpg"]
    assert [f.key for f in features.fronts()] == ["f1.jpg"]


def test_build_features_accepts_mapping_keyed_by_path():
    features = build_features({"a.jpg": {"role": "front"}, "b.jpg": {"role": "back"}})
    assert "a.jpg" in features
    assert features.get("b.jpg").is_back


def test_records_without_role_are_dropped_but_kept_as_insights(caplog):
    with caplog.at_level(logging.WARNING):
        features = build_features([_insight("f1.jpg"), _insight("x.jpg", role="")])
    assert features.dropped == ["x.jpg"]
    assert "x.jpg" not in features
    assert "x.jpg" in features.insights
    assert "missing role" in caplog.text


def test_records_without_key_are_skipped():
    features = build_features([{"role": "front"}, _insight("f1.jpg")])
    assert len(features) == 1
    assert features.dropped == []


def test_duplicate_keys_keep_first_record():
    features = build_features([_insight("f1.jpg", brand="First"), _insight("f1.jpg", brand="Second")])
    assert features.get("f1.jpg").insight.brand == "First"


def test_feature_normalisation():
    features = build_features(
        [
            _insight(
                "f1.jpg",
                brand="Acme Nutrition",
                productName="Vitamin D3 Gummies",
                size="2 fl oz",
                colorSignature=["Dark Green", "white"],
                visualDescription="Tall amber dropper bottle",
                ocrText="Barcode 0 12345 67890 5",
                categoryPath="Health > Vitamins",
            )
        ]
    )
    feature = features.get("f1.jpg")
    assert feature.brand_norm == "acme"
    assert feature.product_tokens == ("vitamin", "gummies")
    assert feature.size_canonical == "59ml"
    assert feature.dominant_color == "dark-green"
    assert feature.packaging == "bottle"
    assert feature.barcode == "012345678905"
    assert feature.category_bucket == "supplement"


def test_dominant_color_fallback_field():
    insight = ImageInsight.from_dict({"imageKey": "a", "role": "back", "dominantColor": "teal"})
    assert insight.dominant_color == "teal"


def test_empty_batch():
    features = build_features([])
    assert len(features) == 0
    assert features.fronts() == []


def test_embeddings_are_unit_vectors():
    vector = normalize_embedding([3.0, 4.0])
    assert np.linalg.norm(vector) == pytest.approx(1.0)
    assert normalize_embedding([0.0, 0.0]) is None
    assert normalize_embedding(None) is None
    assert cosine_similarity(vector, vector) == pytest.approx(1.0)
    assert cosine_similarity(vector, None) is None
