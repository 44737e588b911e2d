"""
LD clumping with gene-set aware membership.

Variants are processed per chromosome from the most significant upwards.
Every unprocessed variant becomes an index and strips the set memberships it
represents from correlated neighbours inside the window; a neighbour is only
removed once it has no membership left, so a variant can survive for the sets
its index does not cover.
"""

import time
from typing import Callable, Dict, List, Sequence, Tuple

import numpy as np

from ..utils.config import ClumpConfig
from ..utils.data_types import Variant

R2Oracle = Callable[[int, np.ndarray], np.ndarray]


def _window_lookup(variants: Sequence[Variant]) -> Dict[str, Tuple[np.ndarray, np.ndarray]]:
    """Per chromosome: variant indices and their positions, sorted by position."""
    chroms = np.array([v.chrom for v in variants])
    positions = np.array([v.pos for v in variants], dtype=np.int64)
    lookup = {}
    for chrom in np.unique(chroms):
        idx = np.flatnonzero(chroms == chrom)
        idx = idx[np.argsort(positions[idx], kind='stable')]
        lookup[chrom] = (idx, positions[idx])
    return lookup


def clump_variants(variants: Sequence[Variant], r2_oracle: R2Oracle,
                   config: ClumpConfig, verbose: bool = True) -> List[Variant]:
    """Clump ``variants`` and return the ones that stay in the score.

    Args:
        variants: Variants with their set flags initialised
        r2_oracle: ``r2_oracle(i, candidates)`` returns the r2 between
            variant ``i`` and each candidate index
        config: Window, r2 and p-value limits and proxy settings
        verbose: Print a short report

    Returns:
        Retained variants, in the order they were given.
    """
    start_time = time.time()
    n_variant = len(variants)
    lookup = _window_lookup(variants)
    window = config.window_bp
    order = sorted(range(n_variant),
                   key=lambda i: (variants[i].chrom, variants[i].p_value, variants[i].pos))
    retained = np.zeros(n_variant, dtype=bool)

    for i in order:
        index = variants[i]
        if index.clumped or index.p_value > config.clump_p:
            continue
        retained[i] = True
        members, member_pos = lookup[index.chrom]
        lo = np.searchsorted(member_pos, index.pos - window, side='left')
        hi = np.searchsorted(member_pos, index.pos + window, side='right')
        candidates = np.array(
            [j for j in members[lo:hi] if j != i and not variants[j].clumped],
            dtype=np.int64,
        )
        if candidates.size:
            r2 = np.nan_to_num(np.asarray(r2_oracle(i, candidates), dtype=np.float64))
            for j, r in zip(candidates, r2):
                if r >= config.clump_r2:
                    index.clump(variants[j], float(r), config.use_proxy, config.proxy)
        index.set_clumped()

    # Variants above the clumping p-value never act as index but stay
    # when nothing removed them
    for i, variant in enumerate(variants):
        if not retained[i] and not variant.clumped:
            retained[i] = True

    kept = [variants[i] for i in range(n_variant) if retained[i]]
    if verbose:
        elapsed = time.time() - start_time
        print(f"   Clumping retained {len(kept):,} of {n_variant:,} variants "
              f"({elapsed:.2f} seconds)")
    return kept
