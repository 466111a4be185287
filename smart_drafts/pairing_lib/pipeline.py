"""Pipeline orchestration for features → candidates → auto-pair → tie-break → groups."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from . import metrics as metrics_mod
from .autopair import auto_pair
from .candidates import CandidateMap, build_candidates
from .config import PairingConfig
from .extras import group_extras
from .features import FeatureSet, build_features
from .models import PairingResult, ProductGroup, Singleton
from .orphans import apply_matches, reassign_orphans
from .roles import reconcile_groups
from .stores.kv_store import KeyValueStore
from .tiebreak import TieBreaker, escalate

REASON_ORPHAN = "orphan"

STEPS = [
    "features",
    "candidates",
    "auto_pair",
    "tiebreak",
    "extras",
    "orphans",
    "roles",
]

InsightBatch = Union[Mapping[str, Any], Iterable[Any]]


class PairingRunner:
    def __init__(
        self,
        cfg: Optional[PairingConfig] = None,
        *,
        tiebreaker: Optional[TieBreaker] = None,
        cache: Optional[KeyValueStore] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cfg = cfg or PairingConfig()
        self.tiebreaker = tiebreaker
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)
        self.last_result: Optional[PairingResult] = None
        self._timings: Dict[str, float] = {}

    @property
    def timings(self) -> Dict[str, float]:
        return dict(self._timings)

    def plan_description(self) -> str:
        lines = ["Pairing plan:"]
        lines.append(f"  Steps: {', '.join(STEPS)}")
        lines.append(f"  Top K: {self.cfg.top_k}")
        lines.append(
            f"  Auto-pair: score>={self.cfg.auto_pair_score} gap>={self.cfg.auto_pair_gap}"
        )
        if self.cfg.disable_tiebreak or self.tiebreaker is None:
            lines.append("  Tie-break: disabled")
        else:
            lines.append(
                f"  Tie-break: {type(self.tiebreaker).__name__} "
                f"(timeout={self.cfg.tiebreak_timeout}s, concurrency={self.cfg.tiebreak_concurrency}, "
                f"cache={'on' if self.cache is not None else 'off'})"
            )
        lines.append(f"  Orphan threshold: {self.cfg.orphan_threshold}")
        return "\n".join(lines)

    async def run(
        self,
        batch_id: str,
        insights: InsightBatch,
        paths: Optional[Sequence[str]] = None,
    ) -> PairingResult:
        """Pair one batch.

        ``paths`` lists every image uploaded for the batch; keys there without
        a usable insight are treated as orphans. The metrics block is built
        and logged even when a step raises, and the exception propagates.
        """
        self._timings = {}
        result = PairingResult(batch_id=batch_id)
        self.last_result = result
        features: Optional[FeatureSet] = None
        candidates: Optional[CandidateMap] = None
        step = "features"
        start = perf_counter()
        failed: Optional[str] = None
        try:
            features = self._time_step("features", lambda: build_features(insights))
            batch_keys = self._batch_keys(features, paths)

            step = "candidates"
            candidates = self._time_step("candidates", lambda: build_candidates(features, self.cfg))

            step = "auto_pair"
            auto = self._time_step("auto_pair", lambda: auto_pair(features, candidates, self.cfg))
            result.pairs.extend(auto.pairs)

            step = "tiebreak"
            outcome = await self._time_async(
                "tiebreak",
                escalate(
                    auto.unresolved,
                    features,
                    candidates,
                    auto.consumed,
                    self.cfg,
                    tiebreaker=self.tiebreaker,
                    cache=self.cache,
                ),
            )
            result.pairs.extend(outcome.pairs)
            self._add_singletons(result, outcome.singletons)

            step = "extras"
            grouped = self._time_step(
                "extras", lambda: group_extras(result.pairs, features, self.cfg, outcome.consumed)
            )
            self._add_singletons(result, grouped.singletons)

            step = "orphans"
            orphan_keys = [key for key in batch_keys if key not in features.features]
            result.groups = self._time_step(
                "orphans", lambda: self._reassign(result, grouped.groups, orphan_keys, features)
            )

            step = "roles"
            result.role_corrections = self._time_step(
                "roles", lambda: reconcile_groups(result.groups, features.insights)
            )
            step = ""
            return result
        except Exception:
            failed = step or None
            self.logger.exception("Pairing batch %s failed during %s", batch_id, step)
            raise
        finally:
            result.metrics = metrics_mod.build_metrics(
                self.cfg,
                images=len(self._batch_keys(features, paths)) if features is not None else len(paths or []),
                features=features,
                candidates=candidates,
                pairs=result.pairs,
                singletons=result.singletons,
                orphans_reassigned=len(result.orphan_matches),
                role_corrections=len(result.role_corrections),
                duration_ms=int((perf_counter() - start) * 1000),
                failed_step=failed,
            )
            self.logger.info(metrics_mod.format_metrics_log(batch_id, result.metrics))

    def summary(self, result: PairingResult) -> Dict[str, object]:
        return {
            "run_at": datetime.now(timezone.utc).isoformat(),
            "batch_id": result.batch_id,
            "steps": STEPS,
            "timings": self.timings,
            "metrics": result.metrics.to_dict(),
        }

    def _batch_keys(self, features: FeatureSet, paths: Optional[Sequence[str]]) -> List[str]:
        keys: List[str] = []
        seen: Set[str] = set()
        for key in list(paths or []) + list(features.insights):
            if key and key not in seen:
                seen.add(key)
                keys.append(key)
        return keys

    def _add_singletons(self, result: PairingResult, singletons: Iterable[Singleton]) -> None:
        claimed = set(result.claimed_keys())
        for single in singletons:
            if single.image_path in claimed:
                self.logger.warning("Ignoring second claim on %s (%s)", single.image_path, single.reason)
                continue
            claimed.add(single.image_path)
            result.singletons.append(single)

    def _reassign(
        self,
        result: PairingResult,
        groups: List[ProductGroup],
        orphan_keys: List[str],
        features: FeatureSet,
    ) -> List[ProductGroup]:
        if not orphan_keys:
            return groups
        with_insight = [key for key in orphan_keys if key in features.insights]
        matches = reassign_orphans(with_insight, groups, features.insights, threshold=self.cfg.orphan_threshold)
        result.orphan_matches = matches
        matched = {match.orphan_key for match in matches}
        self._add_singletons(
            result, (Singleton(key, REASON_ORPHAN) for key in orphan_keys if key not in matched)
        )
        self.logger.info("Orphans: %d found, %d reassigned", len(orphan_keys), len(matched))
        return apply_matches(groups, matches)

    def _time_step(self, name: str, func):
        start = perf_counter()
        result = func()
        self._timings[name] = self._timings.get(name, 0.0) + (perf_counter() - start)
        return result

    async def _time_async(self, name: str, awaitable):
        start = perf_counter()
        result = await awaitable
        self._timings[name] = self._timings.get(name, 0.0) + (perf_counter() - start)
        return result


def run_pairing(
    batch_id: str,
    insights: InsightBatch,
    paths: Optional[Sequence[str]] = None,
    *,
    cfg: Optional[PairingConfig] = None,
    tiebreaker: Optional[TieBreaker] = None,
    cache: Optional[KeyValueStore] = None,
) -> PairingResult:
    """Blocking wrapper around ``PairingRunner.run`` for scripts and the CLI."""
    runner = PairingRunner(cfg, tiebreaker=tiebreaker, cache=cache)
    return asyncio.run(runner.run(batch_id, insights, paths))
