"""Front/back pairing engine for product photo batches."""

from . import config, log, models, features, candidates, pipeline  # noqa: F401

__all__ = [
    "config",
    "log",
    "models",
    "features",
    "candidates",
    "pipeline",
]
