"""Record types shared by the pairing stages.

Inputs arrive as JSON produced by the vision step (camelCase keys); everything
handed back to callers goes through ``to_dict`` so the wire format stays camelCase
while the Python side uses snake_case attributes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

ROLE_FRONT = "front"
ROLE_BACK = "back"
ROLE_OTHER = "other"
ROLE_UNCLEAR = "unclear"
ROLES = {ROLE_FRONT, ROLE_BACK, ROLE_OTHER, ROLE_UNCLEAR}

PACKAGING_TYPES = {"bottle", "jar", "tub", "pouch", "box", "sachet", "unknown"}

SOURCE_AUTO = "auto"
SOURCE_MODEL = "model"

BRAND_EQUAL = "equal"
BRAND_MISMATCH = "mismatch"
BRAND_UNKNOWN = "unknown"
# different brands, but product, packaging and size or category all agree
BRAND_DISTRIBUTOR = "distributorRescue"

COLOR_EXACT = "exact"
COLOR_CLOSE = "close"
COLOR_NONE = "none"

_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "image_key": ("imageKey", "image_key", "key", "url"),
    "role": ("role",),
    "role_score": ("roleScore", "role_score"),
    "brand": ("brand",),
    "product_name": ("productName", "product_name", "product"),
    "variant": ("variant",),
    "size": ("size",),
    "packaging_type": ("packagingType", "packaging_type"),
    "color_signature": ("colorSignature", "color_signature"),
    "key_text": ("keyText", "key_text"),
    "ocr_text": ("ocrText", "ocr_text", "textExtracted"),
    "visual_description": ("visualDescription", "visual_description"),
    "evidence_triggers": ("evidenceTriggers", "evidence_triggers"),
    "text_embedding": ("textEmbedding", "text_embedding"),
    "image_embedding": ("imageEmbedding", "image_embedding"),
    "capture_index": ("captureIndex", "capture_index"),
    "category_path": ("categoryPath", "category_path"),
    "barcode": ("barcode", "upc"),
    "group_hint": ("groupHint", "group_hint"),
}


def _pick(payload: Mapping[str, Any], name: str) -> Any:
    for alias in _FIELD_ALIASES[name]:
        if alias in payload and payload[alias] is not None:
            return payload[alias]
    return None


def _str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _str_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(item).strip() for item in value if isinstance(item, str) and str(item).strip())


def _float_list(value: Any) -> Optional[Tuple[float, ...]]:
    if not isinstance(value, (list, tuple)) or not value:
        return None
    try:
        return tuple(float(item) for item in value)
    except (TypeError, ValueError):
        return None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _float(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class ImageInsight:
    image_key: str
    role: str
    role_score: float = 0.0
    brand: str = ""
    product_name: str = ""
    variant: str = ""
    size: str = ""
    packaging_type: str = ""
    color_signature: Tuple[str, ...] = ()
    key_text: Tuple[str, ...] = ()
    ocr_text: str = ""
    visual_description: str = ""
    evidence_triggers: Tuple[str, ...] = ()
    text_embedding: Optional[Tuple[float, ...]] = None
    image_embedding: Optional[Tuple[float, ...]] = None
    capture_index: Optional[int] = None
    category_path: str = ""
    barcode: str = ""
    group_hint: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, key: Optional[str] = None) -> "ImageInsight":
        """Parse a vision-step record; missing fields fall back to empty values."""
        colors = _pick(payload, "color_signature")
        if colors is None and payload.get("dominantColor"):
            colors = [payload["dominantColor"]]
        return cls(
            image_key=_str(key if key is not None else _pick(payload, "image_key")),
            role=_str(_pick(payload, "role")).lower(),
            role_score=_float(_pick(payload, "role_score")),
            brand=_str(_pick(payload, "brand")),
            product_name=_str(_pick(payload, "product_name")),
            variant=_str(_pick(payload, "variant")),
            size=_str(_pick(payload, "size")),
            packaging_type=_str(_pick(payload, "packaging_type")).lower(),
            color_signature=_str_list(colors),
            key_text=_str_list(_pick(payload, "key_text")),
            ocr_text=_str(_pick(payload, "ocr_text")),
            visual_description=_str(_pick(payload, "visual_description")),
            evidence_triggers=_str_list(_pick(payload, "evidence_triggers")),
            text_embedding=_float_list(_pick(payload, "text_embedding")),
            image_embedding=_float_list(_pick(payload, "image_embedding")),
            capture_index=_optional_int(_pick(payload, "capture_index")),
            category_path=_str(_pick(payload, "category_path")),
            barcode=_str(_pick(payload, "barcode")),
            group_hint=_str(_pick(payload, "group_hint")),
        )

    @property
    def dominant_color(self) -> str:
        return self.color_signature[0] if self.color_signature else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imageKey": self.image_key,
            "role": self.role,
            "roleScore": self.role_score,
            "brand": self.brand,
            "productName": self.product_name,
            "variant": self.variant,
            "size": self.size,
            "packagingType": self.packaging_type,
            "colorSignature": list(self.color_signature),
            "keyText": list(self.key_text),
            "ocrText": self.ocr_text,
            "visualDescription": self.visual_description,
            "evidenceTriggers": list(self.evidence_triggers),
            "captureIndex": self.capture_index,
            "categoryPath": self.category_path,
            "barcode": self.barcode,
            "groupHint": self.group_hint,
        }


@dataclass(frozen=True, eq=False)
class Feature:
    insight: ImageInsight
    is_front: bool
    is_back: bool
    is_other: bool
    brand_norm: str
    product_tokens: Tuple[str, ...]
    variant_tokens: Tuple[str, ...]
    size_canonical: Optional[str]
    packaging: str
    dominant_color: str
    barcode: str
    category_bucket: str
    text_vector: Optional[np.ndarray] = None
    image_vector: Optional[np.ndarray] = None

    @property
    def key(self) -> str:
        return self.insight.image_key

    @property
    def role(self) -> str:
        if self.is_front:
            return ROLE_FRONT
        if self.is_back:
            return ROLE_BACK
        return ROLE_OTHER

    @property
    def back_eligible(self) -> bool:
        return self.is_back or self.is_other

    @property
    def capture_index(self) -> Optional[int]:
        return self.insight.capture_index

    @property
    def group_hint(self) -> str:
        return self.insight.group_hint

    def sort_key(self) -> Tuple[int, int, str]:
        index = self.insight.capture_index
        return (0 if index is not None else 1, index if index is not None else 0, self.key)

    def summary(self) -> Dict[str, Any]:
        """Compact description used in tie-break requests and logs."""
        return {
            "imageKey": self.key,
            "role": self.role,
            "brand": self.insight.brand,
            "brandNorm": self.brand_norm,
            "product": self.insight.product_name,
            "variant": self.insight.variant,
            "size": self.size_canonical or self.insight.size,
            "packaging": self.packaging,
            "color": self.dominant_color,
            "category": self.insight.category_path,
            "captureIndex": self.insight.capture_index,
            "evidence": list(self.insight.evidence_triggers),
            "ocrSummary": self.insight.ocr_text[:200],
        }


@dataclass(frozen=True)
class Candidate:
    front_key: str
    back_key: str
    pre_score: float
    brand_flag: str
    product_jaccard: float
    variant_jaccard: float
    size_equal: bool
    packaging_match: bool
    color_tier: str
    category_score: float
    proximity_boost: float
    barcode_boost: float
    cosmetic_back_cue: bool = False

    def breakdown(self) -> str:
        return (
            f"preScore={self.pre_score:.2f} brand={self.brand_flag} "
            f"prodJac={self.product_jaccard:.2f} varJac={self.variant_jaccard:.2f} "
            f"sizeEq={self.size_equal} pkg={self.packaging_match} color={self.color_tier} "
            f"cat={self.category_score:+.2f} prox={self.proximity_boost:.2f} "
            f"barcode={self.barcode_boost:.1f} inci={self.cosmetic_back_cue}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frontKey": self.front_key,
            "backKey": self.back_key,
            "preScore": round(self.pre_score, 4),
            "brandFlag": self.brand_flag,
            "productJaccard": round(self.product_jaccard, 4),
            "variantJaccard": round(self.variant_jaccard, 4),
            "sizeEqual": self.size_equal,
            "packagingMatch": self.packaging_match,
            "colorTier": self.color_tier,
            "categoryScore": round(self.category_score, 4),
            "proximityBoost": round(self.proximity_boost, 4),
            "barcodeBoost": self.barcode_boost,
            "cosmeticBackCue": self.cosmetic_back_cue,
        }


@dataclass
class Pair:
    front: str
    back: str
    confidence: float
    brand: str
    product: str
    evidence: List[str]
    source: str
    match_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "front": self.front,
            "back": self.back,
            "confidence": self.confidence,
            "brand": self.brand,
            "product": self.product,
            "evidence": list(self.evidence),
            "source": self.source,
            "matchScore": round(self.match_score, 2),
        }


@dataclass
class Singleton:
    image_path: str
    reason: str
    needs_review: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"imagePath": self.image_path, "reason": self.reason, "needsReview": self.needs_review}


@dataclass
class OrphanMatch:
    orphan_key: str
    matched_group_id: str
    confidence: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orphanKey": self.orphan_key,
            "matchedGroupId": self.matched_group_id,
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
        }


@dataclass
class ProductGroup:
    group_id: str
    front: str
    back: str = ""
    extras: List[str] = field(default_factory=list)
    brand: str = ""
    product: str = ""

    @property
    def images(self) -> List[str]:
        members = [self.front]
        if self.back:
            members.append(self.back)
        members.extend(self.extras)
        return [key for key in members if key]

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ProductGroup":
        images = [str(item) for item in payload.get("images") or [] if item]
        front = str(payload.get("front") or payload.get("frontUrl") or (images[0] if images else ""))
        back = str(payload.get("back") or payload.get("backUrl") or "")
        extras = [str(item) for item in payload.get("extras") or [] if item]
        for key in images:
            if key not in {front, back} and key not in extras:
                extras.append(key)
        return cls(
            group_id=str(payload.get("groupId") or payload.get("group_id") or payload.get("name") or "unknown"),
            front=front,
            back=back,
            extras=extras,
            brand=str(payload.get("brand") or ""),
            product=str(payload.get("product") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupId": self.group_id,
            "front": self.front,
            "back": self.back,
            "extras": list(self.extras),
            "images": self.images,
            "brand": self.brand,
            "product": self.product,
        }


@dataclass(frozen=True)
class RoleCorrection:
    image_key: str
    original_role: str
    corrected_role: str
    reason: str
    group_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imageKey": self.image_key,
            "originalRole": self.original_role,
            "correctedRole": self.corrected_role,
            "reason": self.reason,
            "groupId": self.group_id,
        }


@dataclass
class PairingMetrics:
    images: int = 0
    fronts: int = 0
    backs: int = 0
    candidates: int = 0
    auto_pairs: int = 0
    model_pairs: int = 0
    singletons: int = 0
    dropped: int = 0
    orphans_reassigned: int = 0
    role_corrections: int = 0
    by_brand: Dict[str, Dict[str, float]] = field(default_factory=dict)
    reasons: Dict[str, int] = field(default_factory=dict)
    thresholds: Dict[str, float] = field(default_factory=dict)
    duration_ms: int = 0
    timestamp: str = ""
    failed_step: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "images": self.images,
            "fronts": self.fronts,
            "backs": self.backs,
            "candidates": self.candidates,
            "autoPairs": self.auto_pairs,
            "modelPairs": self.model_pairs,
            "singletons": self.singletons,
            "dropped": self.dropped,
            "orphansReassigned": self.orphans_reassigned,
            "roleCorrections": self.role_corrections,
            "byBrand": self.by_brand,
            "reasons": self.reasons,
            "thresholds": self.thresholds,
            "durationMs": self.duration_ms,
            "timestamp": self.timestamp,
            "failedStep": self.failed_step,
        }


@dataclass
class PairingResult:
    batch_id: str
    pairs: List[Pair] = field(default_factory=list)
    singletons: List[Singleton] = field(default_factory=list)
    groups: List[ProductGroup] = field(default_factory=list)
    orphan_matches: List[OrphanMatch] = field(default_factory=list)
    role_corrections: List[RoleCorrection] = field(default_factory=list)
    metrics: PairingMetrics = field(default_factory=PairingMetrics)

    @property
    def auto_pairs(self) -> List[Pair]:
        return [pair for pair in self.pairs if pair.source == SOURCE_AUTO]

    @property
    def model_pairs(self) -> List[Pair]:
        return [pair for pair in self.pairs if pair.source == SOURCE_MODEL]

    def claimed_keys(self) -> List[str]:
        keys: List[str] = []
        for pair in self.pairs:
            keys.extend([pair.front, pair.back])
        keys.extend(single.image_path for single in self.singletons)
        return keys

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "pairs": [pair.to_dict() for pair in self.pairs],
            "singletons": [single.to_dict() for single in self.singletons],
            "groups": [group.to_dict() for group in self.groups],
            "orphanMatches": [match.to_dict() for match in self.orphan_matches],
            "roleCorrections": [item.to_dict() for item in self.role_corrections],
            "metrics": self.metrics.to_dict(),
        }


class PairingInvariantError(RuntimeError):
    """Raised when a result claims the same image twice."""


def validate_result(result: PairingResult) -> None:
    seen: Dict[str, int] = {}
    for key in result.claimed_keys():
        seen[key] = seen.get(key, 0) + 1
    duplicates: Sequence[str] = sorted(key for key, count in seen.items() if count > 1)
    if duplicates:
        raise PairingInvariantError(f"Images claimed more than once: {', '.join(duplicates)}")
