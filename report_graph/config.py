# report_graph/config.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np

HubRule = Literal["first-difference", "distinct-clusters"]
ModularityFunctionName = Literal["standard", "alternative"]
AlgorithmName = Literal["louvain", "louvain_mlv", "slm"]


@dataclass
class BuildConfig:
    max_space_dist: int = 100          # meters
    max_day_dist: int = 30             # days
    n_jobs: int = -1                   # -1 = all cores

    def validate(self):
        if self.max_space_dist < 0:
            raise ValueError(f"max_space_dist must be >= 0, got {self.max_space_dist}")
        if self.max_day_dist < 0:
            raise ValueError(f"max_day_dist must be >= 0, got {self.max_day_dist}")
        if self.n_jobs != -1 and self.n_jobs < 1:
            raise ValueError(f"n_jobs must be -1 or a positive integer, got {self.n_jobs}")
        return self


@dataclass
class FilterConfig:
    space_dist: float
    day_dist: int
    must_share_category: bool = False

    def validate(self, max_space_dist, max_day_dist):
        if self.space_dist < 0 or self.space_dist > max_space_dist:
            raise ValueError(f"Invalid space distance {self.space_dist}: "
                             f"must be between 0 and {max_space_dist}")
        if self.day_dist < 0 or self.day_dist > max_day_dist:
            raise ValueError(f"Invalid day distance {self.day_dist}: "
                             f"must be between 0 and {max_day_dist}")
        return self


@dataclass
class ScanConfig:
    epsilon: float = 0.7
    mu: int = 2
    start_from: int = 1
    hub_rule: HubRule = "first-difference"

    def validate(self):
        if self.epsilon < 0 or self.epsilon > 1:
            raise ValueError(f"Invalid value for epsilon: {self.epsilon}, must be in the range [0,1]")
        if self.mu < 2:
            raise ValueError(f"Invalid value for mu: {self.mu}, should be at least 2")
        if self.hub_rule not in ("first-difference", "distinct-clusters"):
            raise ValueError(f"Unknown hub rule: {self.hub_rule}")
        return self


@dataclass
class ModularityConfig:
    modularity_function: ModularityFunctionName = "standard"
    resolution: float = 1.0
    algorithm: AlgorithmName = "slm"
    random_starts: int = 10
    iterations: int = 10
    random_seed: Optional[int] = None  # None = draw a fresh seed
    truncate_isolated_tail: bool = True

    def validate(self):
        if self.modularity_function not in ("standard", "alternative"):
            raise ValueError(f"Invalid modularity function: {self.modularity_function}. "
                             f"Must be one of [standard|alternative]")
        if self.algorithm not in ("louvain", "louvain_mlv", "slm"):
            raise ValueError(f"Invalid algorithm name: {self.algorithm}. "
                             f"Must be one of (louvain | louvain_mlv | slm)")
        if self.random_starts < 1:
            raise ValueError(f"random_starts must be >= 1, got {self.random_starts}")
        if self.iterations < 1:
            raise ValueError(f"iterations must be >= 1, got {self.iterations}")
        if not np.isfinite(self.resolution):
            raise ValueError(f"resolution must be finite, got {self.resolution}")
        return self

    def resolved_seed(self):
        if self.random_seed is not None:
            return int(self.random_seed)
        return int(np.random.default_rng().integers(0, 2**63 - 1))


def validate_ratio(ratio):
    if ratio < 0 or ratio > 1:
        raise ValueError(f"Invalid ratio: {ratio}, should be a value between 0 and 1.")
    return ratio
