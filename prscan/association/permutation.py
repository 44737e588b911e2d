"""
Label permutation for the empirical p-value of the best threshold.

For every threshold the phenotype is shuffled ``num_permutation`` times and
the score regression refitted; each permutation slot keeps the largest |t|
seen over all thresholds. The random stream is restarted from the same seed
at each threshold, so slot ``i`` always sees the same shuffled phenotype and
the maximum is taken over a consistent null.

With one thread everything runs in the calling thread. With more, a single
producer shuffles phenotypes onto a bounded channel and the remaining
threads fit them, keeping their maxima locally and merging once at the end.
"""

import threading
import warnings
from typing import Iterator, Tuple

import numpy as np

from ..utils.channel import run_producer_consumers
from ..utils.errors import RegressionConvergenceError
from .regression import PrefactorizedDesign, fit_logistic

PERMUTATION_BLOCK = 64

_logit_warning_shown = False


def _warn_logit_once() -> None:
    global _logit_warning_shown
    if _logit_warning_shown:
        return
    warnings.warn(
        "Using logistic regression for permutation. This can be extremely slow; "
        "linear regression on the 0/1 phenotype gives a valid approximation",
        RuntimeWarning,
        stacklevel=3,
    )
    _logit_warning_shown = True


def permuted_phenotypes(y: np.ndarray, num_permutation: int, seed: int,
                        block_size: int = PERMUTATION_BLOCK) -> Iterator[Tuple[int, np.ndarray]]:
    """Yield ``(start_index, Y)`` blocks of shuffled phenotypes.

    ``Y`` has one permuted phenotype per column; permutation ``start_index + j``
    is column ``j``. The stream depends only on ``seed``.
    """
    rng = np.random.default_rng(seed)
    start = 0
    while start < num_permutation:
        size = min(block_size, num_permutation - start)
        block = np.empty((len(y), size))
        for j in range(size):
            block[:, j] = rng.permutation(y)
        yield start, block
        start += size


class _NullStatistic:
    """|t| of the score column for a block of permuted phenotypes."""

    def __init__(self, X: np.ndarray, use_logistic: bool):
        self.X = X
        self.use_logistic = use_logistic
        self.design = None if use_logistic else PrefactorizedDesign(X)

    def __call__(self, Y: np.ndarray) -> np.ndarray:
        if not self.use_logistic:
            return self.design.t_values(Y)
        t = np.zeros(Y.shape[1])
        for j in range(Y.shape[1]):
            try:
                t[j] = fit_logistic(Y[:, j], self.X).t_value
            except RegressionConvergenceError:
                # Failed null fits count as t = 0
                t[j] = 0.0
        return t


def _run_single_thread(statistic: _NullStatistic, y: np.ndarray, perm_results: np.ndarray,
                       seed: int) -> None:
    for start, block in permuted_phenotypes(y, len(perm_results), seed):
        t = statistic(block)
        end = start + len(t)
        np.maximum(perm_results[start:end], t, out=perm_results[start:end])


def _run_threaded(statistic: _NullStatistic, y: np.ndarray, perm_results: np.ndarray,
                  seed: int, n_thread: int) -> None:
    merge_lock = threading.Lock()

    def new_worker():
        local = np.zeros_like(perm_results)

        def handle(item) -> None:
            start, block = item
            t = statistic(block)
            local[start:start + len(t)] = t

        def finish() -> None:
            with merge_lock:
                np.maximum(perm_results, local, out=perm_results)

        return handle, finish

    run_producer_consumers(
        lambda: permuted_phenotypes(y, len(perm_results), seed),
        new_worker,
        n_consumer=n_thread - 1,
    )


def PRSCAN_Permutation(y: np.ndarray, X: np.ndarray, perm_results: np.ndarray,
                       seed: int, n_thread: int = 1, is_binary: bool = False,
                       logit_perm: bool = False) -> np.ndarray:
    """Update the running null maxima with one threshold's permutations.

    Args:
        y: Observed phenotype (n,)
        X: Design matrix with the current threshold's score in column 1
        perm_results: Running maxima (num_permutation,), updated in place
        seed: Seed shared by all thresholds
        n_thread: Worker threads; 1 runs in the calling thread
        is_binary: Whether the trait is binary
        logit_perm: Refit logistic regression for binary traits instead of
            the linear approximation

    Returns:
        ``perm_results``
    """
    if len(perm_results) == 0:
        return perm_results
    use_logistic = is_binary and logit_perm
    if use_logistic:
        _warn_logit_once()
    statistic = _NullStatistic(np.asarray(X, dtype=np.float64), use_logistic)
    if n_thread <= 1:
        _run_single_thread(statistic, y, perm_results, seed)
    else:
        _run_threaded(statistic, y, perm_results, seed, n_thread)
    return perm_results
