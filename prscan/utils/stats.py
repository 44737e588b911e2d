"""
Statistical utilities for PRS analysis
"""

import numpy as np
from typing import Dict, Iterable, Tuple
from scipy import stats


def liability_adjustment(prevalence: float, case_ratio: float) -> Tuple[float, float]:
    """Terms for converting an observed-scale R2 to the liability scale

    Follows Lee et al. (2012), accounting for case/control ascertainment.
    The adjusted value is ``top * r2 / (1 + bottom * r2)``.

    Args:
        prevalence: Population prevalence K of the trait
        case_ratio: Proportion P of cases among the regression samples

    Returns:
        Tuple of (top, bottom)
    """
    K = prevalence
    P = case_ratio
    x = stats.norm.ppf(1 - K)
    z = stats.norm.pdf(x)
    i2 = z / K
    cc = K * (1 - K) * K * (1 - K) / (z * z * P * (1 - P))
    theta = i2 * ((P - K) / (1 - K)) * (i2 * ((P - K) / (1 - K)) - x)
    e = 1 - np.power(P, 2 * P) * np.power(1 - P, 2 * (1 - P))
    top = cc * e
    bottom = cc * e * theta
    return float(top), float(bottom)


def adjust_r2(r2: float, top: float, bottom: float) -> float:
    return top * r2 / (1 + bottom * r2)


def empirical_pvalue(best_t: float, null_t: np.ndarray) -> float:
    """Fraction of null statistics beating the observed one, with +1 correction.

    Args:
        best_t: Observed |t| of the best threshold
        null_t: Maximum |t| across thresholds of each permutation

    Returns:
        (#(null_t > best_t) + 1) / (N + 1)
    """
    null_t = np.asarray(null_t)
    exceed = int(np.sum(null_t > best_t))
    return (exceed + 1.0) / (null_t.size + 1.0)


def competitive_pvalue(count: int, num_permutation: int) -> float:
    return (count + 1.0) / (num_permutation + 1.0)


def significance_buckets(pvalues: Iterable[float]) -> Dict[str, int]:
    """Count p-values in the (> 0.1), (1e-5, 0.1] and (<= 1e-5) bands"""
    buckets = {'not_significant': 0, 'modest': 0, 'significant': 0}
    for p in pvalues:
        if p > 0.1:
            buckets['not_significant'] += 1
        elif p > 1e-5:
            buckets['modest'] += 1
        else:
            buckets['significant'] += 1
    return buckets
