"""
Competitive (background resampling) test for gene sets.

A set's best score is compared with scores built from random background
variants of the same size. Sets are grouped by size so every permutation
builds each null score once, extending the smaller null score to the next
size instead of starting over.

For speed the null regression is reversed to PRS ~ phenotype + covariates:
the phenotype-and-covariate design is factorized once and only the response
changes. With ``logit_perm`` on a binary trait the logistic model
phenotype ~ PRS + covariates is refitted instead.
"""

import threading
import warnings
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numba
import numpy as np

from ..data.genotype import Genotype
from ..utils.channel import run_producer_consumers
from ..utils.errors import PermutationMemoryError, RegressionConvergenceError
from .regression import SCORE_COLUMN, PrefactorizedDesign, fit_logistic


@numba.jit(nopython=True, cache=True)
def _partial_shuffle(background, offsets):
    """Fisher-Yates over the first ``len(offsets)`` slots of ``background``."""
    for i in range(offsets.shape[0]):
        j = offsets[i]
        tmp = background[i]
        background[i] = background[j]
        background[j] = tmp


def build_set_groups(set_sizes: Sequence[int]) -> "OrderedDict[int, List[int]]":
    """Map each set size to the positions of the sets with that size.

    Sizes are in ascending order; sets sharing a size keep their input order.
    """
    groups: Dict[int, List[int]] = {}
    for idx, size in enumerate(set_sizes):
        groups.setdefault(int(size), []).append(idx)
    return OrderedDict(sorted(groups.items()))


def check_permutation_memory(n_regress_sample: int, n_column: int, n_thread: int,
                             logit_perm: bool) -> int:
    """Largest thread count whose working buffers can be allocated.

    Raises:
        PermutationMemoryError: Not even one worker fits in memory.
    """
    if logit_perm:
        per_thread = 4 * n_regress_sample + 2 * n_column + 1 + n_regress_sample * n_column
    else:
        per_thread = n_regress_sample
    for threads in range(n_thread, 0, -1):
        try:
            buffer = np.empty(per_thread * threads, dtype=np.float64)
        except MemoryError:
            continue
        del buffer
        return threads
    required_mb = per_thread * 8 / 1048576
    raise PermutationMemoryError(
        f"Not enough memory left for permutation. Minimum required memory = {required_mb:.1f} Mb"
    )


def null_scores(genotype: Genotype, background: np.ndarray, set_groups: "OrderedDict[int, List[int]]",
                num_permutation: int, seed: int,
                matrix_index: np.ndarray) -> Iterator[Tuple[int, np.ndarray]]:
    """Yield ``(set_size, scores)`` for every permutation and set size.

    The background is shuffled in place from one random stream seeded once,
    so the sequence depends only on ``seed``.
    """
    rng = np.random.default_rng(seed)
    background = np.array(background, dtype=np.int64, copy=True)
    n_background = len(background)
    max_size = next(reversed(set_groups))
    for _ in range(num_permutation):
        offsets = rng.integers(np.arange(max_size), n_background).astype(np.int64)
        _partial_shuffle(background, offsets)
        prev_size = 0
        first = True
        for size in set_groups:
            genotype.score_for_background_set(size, prev_size, background, first)
            first = False
            prev_size = size
            yield size, genotype.sample_scores(matrix_index)


class _CompetitiveStatistic:
    """|t| of the score-phenotype association for one null score."""

    def __init__(self, y: np.ndarray, X: np.ndarray, use_logistic: bool):
        self.y = y
        self.X = X
        self.use_logistic = use_logistic
        if not use_logistic:
            y_cov = np.array(X, dtype=np.float64, copy=True)
            y_cov[:, SCORE_COLUMN] = y
            self.design = PrefactorizedDesign(y_cov)

    def __call__(self, prs: np.ndarray) -> float:
        if not self.use_logistic:
            return self.design.t_value(prs)
        X = self.X.copy()
        X[:, SCORE_COLUMN] = prs
        try:
            return fit_logistic(self.y, X).t_value
        except RegressionConvergenceError:
            return 0.0


def PRSCAN_Competitive(genotype: Genotype, y: np.ndarray, X: np.ndarray,
                       matrix_index: np.ndarray, background: np.ndarray,
                       observed_t: Sequence[float], set_sizes: Sequence[int],
                       num_permutation: int, seed: int, n_thread: int = 1,
                       is_binary: bool = False, logit_perm: bool = False,
                       verbose: bool = True) -> Optional[np.ndarray]:
    """Count, per set, the null scores that beat the observed association.

    Args:
        genotype: Genotype store used to build the null scores
        y: Phenotype of the regression samples
        X: Design matrix (score column is replaced)
        matrix_index: Genotype sample index of every regression row
        background: Variant columns eligible for the null sets
        observed_t: Observed |t| of each set's best threshold
        set_sizes: Number of variants in each set's best threshold
        num_permutation: Null scores per set size
        seed: Random seed
        n_thread: Requested threads; lowered when memory is short
        is_binary: Whether the trait is binary
        logit_perm: Refit logistic regression for binary traits
        verbose: Print progress messages

    Returns:
        Exceedance counts per set, or None when the background is smaller
        than the largest set and the test was skipped.

    Raises:
        PermutationMemoryError: Not enough memory for a single worker.
    """
    observed_t = np.asarray(observed_t, dtype=np.float64)
    counts = np.zeros(len(observed_t), dtype=np.int64)
    if len(observed_t) == 0:
        return counts
    set_groups = build_set_groups(set_sizes)
    max_size = next(reversed(set_groups))
    if max_size > len(background):
        print("Insufficient background variants for competitive analysis "
              f"({len(background):,} background vs. {max_size:,} in the largest set). "
              "Please ensure you have used the correct background. "
              "Skipping the competitive analysis")
        return None

    use_logistic = is_binary and logit_perm
    if use_logistic:
        warnings.warn("Using logistic regression in competitive permutation will be very slow",
                      RuntimeWarning)
    n_thread = check_permutation_memory(len(y), X.shape[1], n_thread, use_logistic)
    if verbose:
        print(f"   Running competitive permutation with {n_thread} thread(s)")
    statistic = _CompetitiveStatistic(np.asarray(y, dtype=np.float64),
                                      np.asarray(X, dtype=np.float64), use_logistic)

    def produce():
        return null_scores(genotype, background, set_groups, num_permutation, seed, matrix_index)

    if n_thread <= 1:
        for size, prs in produce():
            t = statistic(prs)
            for set_idx in set_groups[size]:
                if observed_t[set_idx] < t:
                    counts[set_idx] += 1
        return counts

    merge_lock = threading.Lock()

    def new_worker():
        local = np.zeros_like(counts)

        def handle(item) -> None:
            size, prs = item
            t = statistic(prs)
            for set_idx in set_groups[size]:
                if observed_t[set_idx] < t:
                    local[set_idx] += 1

        def finish() -> None:
            with merge_lock:
                counts[:] += local

        return handle, finish

    run_producer_consumers(produce, new_worker, n_consumer=n_thread - 1)
    return counts
