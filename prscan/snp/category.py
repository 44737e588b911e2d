"""
P-value threshold categories.

Variants are visited in ascending p-value order and each receives a dense
category index: every non-empty threshold interval gets the next index, so
scoring can add whole categories at a time.
"""

import bisect
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from ..utils.data_types import Variant
from ..utils.errors import CategoryOverflowError, NoThresholdError


@dataclass
class CategoryCursor:
    """Running state of the category walk"""

    p_start: float
    upper: float
    inter: float
    category: int = 0

    @classmethod
    def from_bounds(cls, lower: float, upper: float, inter: float) -> "CategoryCursor":
        # First interval is (-inf, lower]
        return cls(p_start=lower - inter, upper=upper, inter=inter)


def sort_by_p(variants: Sequence[Variant]) -> List[Variant]:
    return sorted(variants, key=lambda v: v.p_value)


def assign_categories(variants: Sequence[Variant], lower: float, upper: float,
                      inter: float, include_full: bool = True) -> List[Variant]:
    """Assign threshold categories on a regular p-value grid.

    Args:
        variants: Variants in any order
        lower: First threshold
        upper: Last threshold of the grid
        inter: Grid step
        include_full: Keep variants above ``upper`` in a final p = 1 category

    Returns:
        Variants sorted by p-value with ``category`` and ``p_threshold`` set.

    Raises:
        CategoryOverflowError: A variant is too far from its interval to bin.
        NoThresholdError: No variant survives.
    """
    ordered = sort_by_p(variants)
    if not include_full:
        ordered = [v for v in ordered if v.p_value <= upper]
    if not ordered:
        raise NoThresholdError("No variant falls within the p-value thresholds")

    cursor = CategoryCursor.from_bounds(lower, upper, inter)
    overflow = False
    for variant in ordered:
        overflow |= variant.set_category(cursor)
    if overflow:
        raise CategoryOverflowError(
            "Number of threshold categories exceeds what can be counted; "
            "use a larger interval or a higher lower bound"
        )
    return ordered


def assign_bar_categories(variants: Sequence[Variant], bar_levels: Sequence[float],
                          include_full: bool = True) -> List[Variant]:
    """Assign categories from an explicit list of thresholds (fastscore).

    A variant falls into the first bar level not below its p-value. Variants
    above every level go to an extra p = 1 category when ``include_full``,
    otherwise they are dropped.
    """
    levels = sorted(float(b) for b in bar_levels)
    if include_full and levels[-1] < 1.0:
        levels.append(1.0)
    ordered = [v for v in sort_by_p(variants) if v.p_value <= levels[-1]]
    if not ordered:
        raise NoThresholdError("No variant falls within the bar levels")
    for variant in ordered:
        idx = bisect.bisect_left(levels, variant.p_value)
        variant.category = idx
        variant.p_threshold = levels[idx]
    return ordered


def thresholds_from_variants(variants: Sequence[Variant]) -> np.ndarray:
    """Sorted distinct thresholds present among ``variants``."""
    return np.unique(np.array([v.p_threshold for v in variants], dtype=np.float64))
