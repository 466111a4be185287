"""Configuration helpers for the pairing engine tunables."""
from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

ENV_PREFIX = "PAIRING_"


@dataclass(frozen=True)
class PairingConfig:
    # candidate scoring
    top_k: int = 8
    min_pre_score: float = 0.0
    brand_match_weight: float = 3.0
    brand_mismatch_penalty: float = -2.0
    empty_brand_penalty: float = -0.5
    product_weight: float = 2.0
    variant_weight: float = 1.0
    size_weight: float = 1.5
    packaging_weight: float = 3.0
    color_exact_weight: float = 2.5
    color_close_weight: float = 2.0
    category_same_bucket: float = 1.5
    category_weight: float = 1.0
    proximity_weight: float = 1.0
    proximity_window: int = 3
    barcode_weight: float = 2.0
    distributor_rescue_weight: float = 1.5
    cosmetic_cue_weight: float = 0.5
    max_back_front_ratio: int = 4
    # auto-pairing
    auto_pair_score: float = 1.5
    auto_pair_gap: float = 1.0
    hair_auto_pair_score: float = 2.1
    hair_auto_pair_gap: float = 0.5
    # tie-break
    disable_tiebreak: bool = False
    tiebreak_timeout: float = 20.0
    tiebreak_concurrency: int = 4
    tiebreak_cache_ttl: int = 7 * 24 * 3600
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_api_key: str = ""
    # orphans / extras
    orphan_threshold: float = 0.5
    max_extras_per_group: int = 4

    def __post_init__(self) -> None:
        if self.top_k < 1:
            raise ValueError("top_k must be at least 1")
        if self.auto_pair_gap < 0:
            raise ValueError("auto_pair_gap must be non-negative")
        if self.hair_auto_pair_gap < 0:
            raise ValueError("hair_auto_pair_gap must be non-negative")
        if self.proximity_window < 1:
            raise ValueError("proximity_window must be at least 1")
        if self.tiebreak_timeout <= 0:
            raise ValueError("tiebreak_timeout must be positive")
        if self.tiebreak_concurrency < 1:
            raise ValueError("tiebreak_concurrency must be at least 1")
        if not 0.0 <= self.orphan_threshold <= 1.0:
            raise ValueError("orphan_threshold must be between 0 and 1")

    def thresholds(self) -> Dict[str, float]:
        """Snapshot of the acceptance thresholds reported alongside metrics."""
        return {
            "topK": self.top_k,
            "minPreScore": self.min_pre_score,
            "autoPairScore": self.auto_pair_score,
            "autoPairGap": self.auto_pair_gap,
            "autoPairHairScore": self.hair_auto_pair_score,
            "autoPairHairGap": self.hair_auto_pair_gap,
            "orphanThreshold": self.orphan_threshold,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("llm_api_key", None)
        return data


def _coerce(raw: str, template: Any) -> Any:
    if isinstance(template, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(template, int):
        return int(raw)
    if isinstance(template, float):
        return float(raw)
    return raw


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect PAIRING_* environment variables that name a config field."""
    environ = os.environ if environ is None else environ
    defaults = PairingConfig()
    overrides: Dict[str, Any] = {}
    for field in fields(PairingConfig):
        raw = environ.get(f"{ENV_PREFIX}{field.name.upper()}")
        if raw is None or raw == "":
            continue
        try:
            overrides[field.name] = _coerce(raw, getattr(defaults, field.name))
        except ValueError as exc:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{field.name.upper()}: {raw}") from exc
    return overrides


def load_config(
    path: Optional[Path] = None,
    *,
    environ: Optional[Dict[str, str]] = None,
    **overrides: Any,
) -> PairingConfig:
    """Build a config from defaults, an optional JSON file, env vars, then kwargs."""
    values: Dict[str, Any] = {}
    known = {field.name for field in fields(PairingConfig)}
    if path is not None:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        values.update(payload)
    values.update(env_overrides(environ))
    values.update({key: value for key, value in overrides.items() if value is not None})
    return replace(PairingConfig(), **values)
