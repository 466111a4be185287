"""Run metrics and the one-line summary logged after every batch."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .candidates import CandidateMap
from .config import PairingConfig
from .features import FeatureSet
from .models import SOURCE_AUTO, SOURCE_MODEL, Pair, PairingMetrics, Singleton

UNKNOWN_BRAND = "Unknown"


def reason_key(reason: str) -> str:
    """Bucket a singleton reason for the histogram.

    Examples:
        >>> reason_key('tiebreak error: boom')
        'tiebreak_error'
        >>> reason_key('no candidates')
        'no_candidates'
    """
    head = reason.split(":", 1)[0].strip().lower()
    return re.sub(r"[^a-z0-9]+", "_", head).strip("_") or "other"


def by_brand(features: FeatureSet, pairs: Iterable[Pair]) -> Dict[str, Dict[str, float]]:
    paired_fronts = {pair.front for pair in pairs}
    stats: Dict[str, Dict[str, float]] = {}
    for front in features.fronts():
        entry = stats.setdefault(front.brand_norm or UNKNOWN_BRAND, {"fronts": 0, "paired": 0, "pairRate": 0.0})
        entry["fronts"] += 1
        if front.key in paired_fronts:
            entry["paired"] += 1
    for entry in stats.values():
        entry["pairRate"] = round(entry["paired"] / entry["fronts"], 2) if entry["fronts"] else 0.0
    return stats


def build_metrics(
    cfg: PairingConfig,
    *,
    images: int,
    features: Optional[FeatureSet] = None,
    candidates: Optional[CandidateMap] = None,
    pairs: Optional[List[Pair]] = None,
    singletons: Optional[List[Singleton]] = None,
    orphans_reassigned: int = 0,
    role_corrections: int = 0,
    duration_ms: int = 0,
    failed_step: Optional[str] = None,
) -> PairingMetrics:
    """Assemble metrics from whatever stages finished; missing stages count as zero."""
    pairs = pairs or []
    singletons = singletons or []
    metrics = PairingMetrics(
        images=images,
        candidates=sum(len(items) for items in (candidates or {}).values()),
        auto_pairs=sum(1 for pair in pairs if pair.source == SOURCE_AUTO),
        model_pairs=sum(1 for pair in pairs if pair.source == SOURCE_MODEL),
        singletons=len(singletons),
        orphans_reassigned=orphans_reassigned,
        role_corrections=role_corrections,
        thresholds=cfg.thresholds(),
        duration_ms=duration_ms,
        timestamp=datetime.now(timezone.utc).isoformat(),
        failed_step=failed_step,
    )
    if features is not None:
        counts = features.counts()
        metrics.fronts = counts["fronts"]
        metrics.backs = counts["backs"] + counts["others"]
        metrics.dropped = len(features.dropped)
        metrics.by_brand = by_brand(features, pairs)
    for single in singletons:
        key = reason_key(single.reason)
        metrics.reasons[key] = metrics.reasons.get(key, 0) + 1
    return metrics


def format_metrics_log(batch_id: str, metrics: PairingMetrics) -> str:
    line = (
        f"METRICS batch={batch_id} images={metrics.images} fronts={metrics.fronts} "
        f"backs={metrics.backs} candidates={metrics.candidates} autoPairs={metrics.auto_pairs} "
        f"modelPairs={metrics.model_pairs} singletons={metrics.singletons} "
        f"orphans={metrics.orphans_reassigned} corrections={metrics.role_corrections} "
        f"durationMs={metrics.duration_ms}"
    )
    if metrics.failed_step:
        line += f" failedStep={metrics.failed_step}"
    return line
