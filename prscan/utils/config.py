"""
Run configuration for the PRS threshold scan.

Each concern gets its own small dataclass; all of them validate their values
on construction and raise ValueError for anything the scan cannot honour.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

SCORE_METHODS = ('avg', 'sum', 'std', 'con_std')
MISSING_SCORE_MODES = ('mean_impute', 'set_zero', 'center')


@dataclass
class ThresholdConfig:
    """P-value threshold scan settings.

    Either a regular grid ``lower, lower + inter, ... upper`` or, with
    ``fastscore``, only the explicit ``bar_levels``. ``include_full`` adds the
    p = 1 model that contains every variant.
    """

    lower: float = 5e-8
    upper: float = 0.5
    inter: float = 5e-5
    bar_levels: Optional[Sequence[float]] = None
    fastscore: bool = False
    include_full: bool = True

    def __post_init__(self):
        if self.fastscore:
            if not self.bar_levels:
                raise ValueError("fastscore requires at least one bar level")
            levels = sorted(float(b) for b in self.bar_levels)
            if levels[0] < 0 or levels[-1] > 1:
                raise ValueError("Bar levels must lie within [0, 1]")
            self.bar_levels = levels
            return
        if self.inter <= 0:
            raise ValueError(f"Threshold interval must be positive, got {self.inter}")
        if self.lower < 0 or self.upper > 1:
            raise ValueError("Threshold bounds must lie within [0, 1]")
        if self.lower > self.upper:
            raise ValueError(
                f"Lower threshold ({self.lower}) must not exceed upper threshold ({self.upper})"
            )


@dataclass
class ClumpConfig:
    clump: bool = True
    clump_kb: float = 250.0
    clump_r2: float = 0.1
    clump_p: float = 1.0
    use_proxy: bool = False
    proxy: float = 0.8

    def __post_init__(self):
        if self.clump_kb <= 0:
            raise ValueError("Clumping window must be positive")
        if not 0 <= self.clump_r2 <= 1:
            raise ValueError("Clumping r2 must lie within [0, 1]")
        if not 0 < self.clump_p <= 1:
            raise ValueError("Clumping p-value must lie within (0, 1]")
        if self.use_proxy and not 0 <= self.proxy <= 1:
            raise ValueError("Proxy threshold must lie within [0, 1]")

    @property
    def window_bp(self) -> int:
        return int(self.clump_kb * 1000)


@dataclass
class ScoreConfig:
    """How per-sample scores are built from dosages."""

    score_method: str = 'avg'
    missing_score: str = 'mean_impute'
    ploidy: int = 2
    thread: int = 1
    all_scores: bool = False

    def __post_init__(self):
        self.score_method = self.score_method.lower()
        self.missing_score = self.missing_score.lower()
        if self.score_method not in SCORE_METHODS:
            raise ValueError(f"Unknown score method '{self.score_method}'. Choose from {SCORE_METHODS}")
        if self.missing_score not in MISSING_SCORE_MODES:
            raise ValueError(
                f"Unknown missing score handling '{self.missing_score}'. Choose from {MISSING_SCORE_MODES}"
            )
        if self.thread < 1:
            raise ValueError("Thread count must be at least 1")


@dataclass
class PermutationConfig:
    """Label and competitive permutation settings.

    A missing seed is drawn once from numpy's entropy source so every
    threshold and every worker sees the same stream.
    """

    num_permutation: int = 0
    run_perm: bool = False
    run_set_perm: bool = False
    logit_perm: bool = False
    seed: Optional[int] = None

    def __post_init__(self):
        if self.num_permutation < 0:
            raise ValueError("Number of permutations cannot be negative")
        if (self.run_perm or self.run_set_perm) and self.num_permutation == 0:
            raise ValueError("Permutation requested but num_permutation is 0")
        if self.seed is None:
            self.seed = int(np.random.SeedSequence().entropy % (2 ** 32))


@dataclass
class PhenotypeConfig:
    pheno_cols: List[str] = field(default_factory=list)
    binary: List[bool] = field(default_factory=list)
    prevalence: List[Optional[float]] = field(default_factory=list)
    ignore_fid: bool = False
    include_nonfounders: bool = False
    cov_cols: List[str] = field(default_factory=list)
    factor_cols: List[str] = field(default_factory=list)

    def __post_init__(self):
        n_pheno = max(len(self.pheno_cols), 1)
        if not self.binary:
            self.binary = [True] * n_pheno
        if len(self.binary) != n_pheno:
            raise ValueError(
                f"Number of binary flags ({len(self.binary)}) does not match number of phenotypes ({n_pheno})"
            )
        if not self.prevalence:
            self.prevalence = [None] * n_pheno
        if len(self.prevalence) != n_pheno:
            raise ValueError(
                f"Number of prevalences ({len(self.prevalence)}) does not match number of phenotypes ({n_pheno})"
            )
        for is_binary, prevalence in zip(self.binary, self.prevalence):
            if prevalence is None:
                continue
            if not is_binary:
                raise ValueError("Prevalence can only be provided for binary phenotypes")
            if not 0 < prevalence < 1:
                raise ValueError(f"Prevalence must lie within (0, 1), got {prevalence}")
        missing_factor = [c for c in self.factor_cols if c not in self.cov_cols]
        if missing_factor:
            raise ValueError(f"Factor covariates must also be listed as covariates: {missing_factor}")
