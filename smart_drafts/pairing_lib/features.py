"""Build normalised pairing features from vision-step insights."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np

from . import text_utils
from .models import (
    ROLE_BACK,
    ROLE_FRONT,
    ROLE_OTHER,
    ROLE_UNCLEAR,
    Feature,
    ImageInsight,
)

logger = logging.getLogger(__name__)

# |role_score| needed before an "unclear" label leans front or back
UNCLEAR_ROLE_THRESHOLD = 0.2

InsightInput = Union[Mapping[str, Any], ImageInsight]


@dataclass
class FeatureSet:
    features: Dict[str, Feature] = field(default_factory=dict)
    dropped: List[str] = field(default_factory=list)
    insights: Dict[str, ImageInsight] = field(default_factory=dict)

    def fronts(self) -> List[Feature]:
        return sorted((f for f in self.features.values() if f.is_front), key=Feature.sort_key)

    def backs(self) -> List[Feature]:
        return sorted((f for f in self.features.values() if f.back_eligible), key=Feature.sort_key)

    def counts(self) -> Dict[str, int]:
        values = self.features.values()
        return {
            "fronts": sum(1 for f in values if f.is_front),
            "backs": sum(1 for f in values if f.is_back),
            "others": sum(1 for f in values if f.is_other),
        }

    def __len__(self) -> int:
        return len(self.features)

    def __contains__(self, key: object) -> bool:
        return key in self.features

    def get(self, key: str) -> Optional[Feature]:
        return self.features.get(key)


def normalize_embedding(values: Optional[Sequence[float]]) -> Optional[np.ndarray]:
    if not values:
        return None
    vector = np.asarray(values, dtype=np.float32)
    norm = float(np.linalg.norm(vector))
    if not norm or math.isclose(norm, 0.0) or not math.isfinite(norm):
        return None
    return vector / norm


def cosine_similarity(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> Optional[float]:
    if a is None or b is None or a.shape != b.shape:
        return None
    return float(np.dot(a, b))


def resolve_role(role: str, role_score: float) -> str:
    """Collapse the classifier label onto front/back/other.

    "unclear" falls back to the signed backness score: positive leans back,
    negative leans front, anything near zero stays "other".
    """
    if role == ROLE_FRONT:
        return ROLE_FRONT
    if role == ROLE_BACK:
        return ROLE_BACK
    if role == ROLE_UNCLEAR:
        if role_score >= UNCLEAR_ROLE_THRESHOLD:
            return ROLE_BACK
        if role_score <= -UNCLEAR_ROLE_THRESHOLD:
            return ROLE_FRONT
    return ROLE_OTHER


def build_feature(insight: ImageInsight) -> Feature:
    resolved = resolve_role(insight.role, insight.role_score)
    barcode = text_utils.extract_barcode(insight.barcode) or text_utils.extract_barcode(
        insight.ocr_text, " ".join(insight.key_text)
    )
    return Feature(
        insight=insight,
        is_front=resolved == ROLE_FRONT,
        is_back=resolved == ROLE_BACK,
        is_other=resolved == ROLE_OTHER,
        brand_norm=text_utils.normalize_brand(insight.brand),
        product_tokens=tuple(text_utils.significant_tokens(insight.product_name)),
        variant_tokens=tuple(text_utils.significant_tokens(insight.variant)),
        size_canonical=text_utils.canonicalize_size(insight.size),
        packaging=text_utils.infer_packaging(insight.packaging_type, insight.visual_description),
        dominant_color=text_utils.normalize_color(insight.dominant_color),
        barcode=barcode,
        category_bucket=text_utils.category_bucket(insight.category_path),
        text_vector=normalize_embedding(insight.text_embedding),
        image_vector=normalize_embedding(insight.image_embedding),
    )


def parse_insights(raw: Union[Mapping[str, InsightInput], Iterable[InsightInput]]) -> List[ImageInsight]:
    """Accept either a key->record mapping or a flat list of records."""
    parsed: List[ImageInsight] = []
    if isinstance(raw, Mapping):
        for key, payload in raw.items():
            if isinstance(payload, ImageInsight):
                parsed.append(payload)
            elif isinstance(payload, Mapping):
                parsed.append(ImageInsight.from_dict(payload, key=str(key)))
            else:
                logger.warning("Skipping insight %s: unsupported payload type %s", key, type(payload).__name__)
        return parsed
    for payload in raw:
        if isinstance(payload, ImageInsight):
            parsed.append(payload)
        elif isinstance(payload, Mapping):
            parsed.append(ImageInsight.from_dict(payload))
        else:
            logger.warning("Skipping insight: unsupported payload type %s", type(payload).__name__)
    return parsed


def build_features(raw: Union[Mapping[str, InsightInput], Iterable[InsightInput]]) -> FeatureSet:
    """Normalise a batch of insights, dropping records that lack a key or role."""
    result = FeatureSet()
    for insight in parse_insights(raw):
        key = insight.image_key
        if not key:
            logger.warning("Dropping insight without image key (role=%s)", insight.role or "n/a")
            continue
        if key in result.features or key in result.insights:
            logger.warning("Duplicate insight for %s; keeping the first record", key)
            continue
        result.insights[key] = insight
        if not insight.role:
            logger.warning("Dropping insight %s: missing role", key)
            result.dropped.append(key)
            continue
        result.features[key] = build_feature(insight)
    counts = result.counts()
    logger.info(
        "Built %d features | fronts=%d backs=%d others=%d dropped=%d",
        len(result.features),
        counts["fronts"],
        counts["backs"],
        counts["others"],
        len(result.dropped),
    )
    return result
