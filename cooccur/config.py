"""
Configuration for a statistics session.

Environment variables (all optional):
    PAIR_DB_URL         store URL, ``memory://`` or ``duckdb://<path>``
    MAX_DISTANCE        cap for distance-limited clique pairs
    KEEP_DISTANCES      keep per-distance sub-counts (true/false)
    MERGE_FRAC          default merge fraction
    MERGE_NOISE         default merge noise floor
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Mapping, Optional
import os

from .core.constants import (
    DEFAULT_FETCH_BATCH,
    DEFAULT_MAX_DISTANCE,
    DEFAULT_MERGE_FRAC,
    DEFAULT_MERGE_NOISE,
    ZERO_TOLERANCE,
)


@dataclass(frozen=True)
class StatsConfig:
    """
    Configuration for observation, statistics and merging.
    """
    db_url: str = "memory://"
    max_distance: int = DEFAULT_MAX_DISTANCE   # clique-dist cap (words apart)
    keep_distances: bool = True                # per-distance sub-counts
    merge_frac: float = DEFAULT_MERGE_FRAC     # fraction moved per merge
    merge_noise: float = DEFAULT_MERGE_NOISE   # counts ≤ noise move entirely
    tolerance: float = ZERO_TOLERANCE          # true-zero threshold
    fetch_batch: int = DEFAULT_FETCH_BATCH     # rows per prefetch batch
    seed: Optional[int] = None                 # random planar parse seed

    def __post_init__(self):
        """Validate configuration."""
        if self.max_distance < 1:
            raise ValueError(f"max_distance must be >= 1, got {self.max_distance}")
        if not (0.0 <= self.merge_frac <= 1.0):
            raise ValueError(f"merge_frac must satisfy 0 ≤ frac ≤ 1, got {self.merge_frac}")
        if self.merge_noise < 0.0:
            raise ValueError(f"merge_noise must be >= 0, got {self.merge_noise}")
        if self.tolerance < 0.0:
            raise ValueError(f"tolerance must be >= 0, got {self.tolerance}")
        if self.fetch_batch < 1:
            raise ValueError(f"fetch_batch must be >= 1, got {self.fetch_batch}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'StatsConfig':
        """Build a config from environment variables, defaults elsewhere."""
        env = os.environ if environ is None else environ
        kwargs = {}
        if "PAIR_DB_URL" in env:
            kwargs["db_url"] = env["PAIR_DB_URL"]
        if "MAX_DISTANCE" in env:
            kwargs["max_distance"] = int(env["MAX_DISTANCE"])
        if "KEEP_DISTANCES" in env:
            kwargs["keep_distances"] = env["KEEP_DISTANCES"].lower() in ("1", "true", "yes")
        if "MERGE_FRAC" in env:
            kwargs["merge_frac"] = float(env["MERGE_FRAC"])
        if "MERGE_NOISE" in env:
            kwargs["merge_noise"] = float(env["MERGE_NOISE"])
        return cls(**kwargs)
