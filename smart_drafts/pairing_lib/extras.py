"""Attach leftover side/other panels to the product groups built from pairs."""
from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from .config import PairingConfig
from .features import FeatureSet
from .models import Feature, Pair, ProductGroup, Singleton
from .text_utils import BUCKET_OTHER

logger = logging.getLogger(__name__)

REASON_UNPAIRED_BACK = "unpaired back"
MIN_EXTRA_SCORE = 2


@dataclass
class ExtrasResult:
    groups: List[ProductGroup] = field(default_factory=list)
    singletons: List[Singleton] = field(default_factory=list)


def _folder(key: str) -> str:
    return posixpath.dirname(key.replace("\\", "/"))


def _near(a: Feature, b: Feature, window: int) -> bool:
    if a.capture_index is None or b.capture_index is None:
        return False
    return abs(a.capture_index - b.capture_index) <= window


def score_extra(
    front: Feature,
    back: Feature,
    extra: Feature,
    cfg: PairingConfig,
) -> Optional[Tuple[int, List[str]]]:
    """Points for attaching ``extra`` to the front/back product, or None to reject.

    Two known brands that disagree reject outright; otherwise brand +3,
    packaging +2, category bucket +1 and capture or folder proximity +1.
    """
    reasons: List[str] = []
    score = 0
    brands = {front.brand_norm, back.brand_norm} - {""}
    if extra.brand_norm and extra.brand_norm in brands:
        reasons.append("brandMatch")
        score += 3
    elif extra.brand_norm and front.brand_norm and back.brand_norm:
        return None

    packagings = {front.packaging, back.packaging} - {"unknown"}
    if extra.packaging in packagings:
        reasons.append("packagingMatch")
        score += 2

    buckets = {front.category_bucket, back.category_bucket} - {BUCKET_OTHER}
    if extra.category_bucket in buckets:
        reasons.append("categoryMatch")
        score += 1

    window = cfg.proximity_window
    folder = _folder(extra.key)
    same_folder = bool(folder) and folder in {_folder(front.key), _folder(back.key)}
    if _near(front, extra, window) or _near(back, extra, window) or same_folder:
        reasons.append("proximity")
        score += 1

    if score < MIN_EXTRA_SCORE:
        return None
    return score, reasons


def _group_id(index: int) -> str:
    return f"group-{index:03d}"


def group_extras(
    pairs: List[Pair],
    features: FeatureSet,
    cfg: PairingConfig,
    claimed: Set[str],
) -> ExtrasResult:
    """Build one group per pair and hand out unclaimed back-eligible images.

    Leftovers that no group accepts become "unpaired back" singletons.
    """
    result = ExtrasResult()
    leftovers = [f for f in features.backs() if f.key not in claimed]
    used: Set[str] = set()
    for index, pair in enumerate(pairs, start=1):
        group = ProductGroup(
            group_id=_group_id(index),
            front=pair.front,
            back=pair.back,
            brand=pair.brand,
            product=pair.product,
        )
        front = features.features[pair.front]
        back = features.features[pair.back]
        scored = []
        for extra in leftovers:
            if extra.key in used or not extra.is_other:
                continue
            verdict = score_extra(front, back, extra, cfg)
            if verdict is not None:
                scored.append((verdict[0], extra.sort_key(), extra.key, verdict[1]))
        scored.sort(key=lambda item: (-item[0], item[1]))
        for _, _, key, reasons in scored[: cfg.max_extras_per_group]:
            group.extras.append(key)
            used.add(key)
            logger.debug("Attached %s to %s (%s)", key, group.group_id, ",".join(reasons))
        result.groups.append(group)

    for extra in leftovers:
        if extra.key not in used:
            result.singletons.append(Singleton(extra.key, REASON_UNPAIRED_BACK))
    logger.info(
        "Grouped %d products | extras=%d unpaired=%d",
        len(result.groups),
        len(used),
        len(result.singletons),
    )
    return result
