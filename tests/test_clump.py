"""Tests for LD clumping and set membership flags"""

import numpy as np
import pytest

from prscan.snp.clump import clump_variants
from prscan.utils.config import ClumpConfig
from prscan.utils.data_types import SetFlags, Variant


def _build_variants():
    # rs0 and rs1 are in strong LD, rs2 sits outside the window
    specs = [("rs0", 1000, 1e-5), ("rs1", 2000, 1e-3), ("rs2", 500000, 0.01), ("rs3", 3000, 0.02)]
    return [Variant(rs, "1", pos, "A", "G", 0.2, p) for rs, pos, p in specs]


def _oracle_from(r2_matrix, variants, names):
    index = {name: i for i, name in enumerate(names)}

    def oracle(i, candidates):
        row = index[variants[i].rs]
        return np.array([r2_matrix[row, index[variants[j].rs]] for j in candidates])
    return oracle


NAMES = ["rs0", "rs1", "rs2", "rs3"]
R2 = np.array([
    [1.0, 0.9, 0.0, 0.05],
    [0.9, 1.0, 0.0, 0.5],
    [0.0, 0.0, 1.0, 0.0],
    [0.05, 0.5, 0.0, 1.0],
])


def test_clumping_removes_correlated_neighbour() -> None:
    variants = _build_variants()

    kept = clump_variants(variants, _oracle_from(R2, variants, NAMES), ClumpConfig(), verbose=False)

    assert [v.rs for v in kept] == ["rs0", "rs2", "rs3"]
    assert all(v.clumped for v in variants)


def test_clumping_only_shrinks_and_is_idempotent() -> None:
    variants = _build_variants()
    kept = clump_variants(variants, _oracle_from(R2, variants, NAMES), ClumpConfig(), verbose=False)
    assert set(v.rs for v in kept) <= set(NAMES)

    for v in kept:
        v.set_flags(SetFlags(1, [0]))
    again = clump_variants(kept, _oracle_from(R2, kept, NAMES), ClumpConfig(), verbose=False)

    assert [v.rs for v in again] == [v.rs for v in kept]


def test_window_limits_clumping() -> None:
    variants = _build_variants()
    r2 = np.ones((4, 4))

    kept = clump_variants(variants, _oracle_from(r2, variants, NAMES),
                          ClumpConfig(clump_kb=250), verbose=False)

    # rs2 is 498 kb away from the others and survives
    assert [v.rs for v in kept] == ["rs0", "rs2"]


def test_variants_above_clump_p_are_kept_unless_clumped() -> None:
    variants = _build_variants()

    kept = clump_variants(variants, _oracle_from(R2, variants, NAMES),
                          ClumpConfig(clump_p=1e-4), verbose=False)

    # rs0 is the only index; rs1 is removed by it, rs2 and rs3 stay untouched
    assert [v.rs for v in kept] == ["rs0", "rs2", "rs3"]
    assert not variants[2].clumped


def test_partial_set_overlap_keeps_target_for_other_sets() -> None:
    index = Variant("rs0", "1", 100, "A", "G", 0.1, 1e-6)
    target = Variant("rs1", "1", 200, "A", "G", 0.1, 1e-3)
    index.set_flags(SetFlags(4, [0, 2]))
    target.set_flags(SetFlags(4, [0, 3]))

    index.clump(target, 0.9, use_proxy=False)

    assert not target.clumped
    assert target.set_indices() == [3]
    assert index.clumped


def test_proxy_clumping_absorbs_target_sets() -> None:
    index = Variant("rs0", "1", 100, "A", "G", 0.1, 1e-6)
    target = Variant("rs1", "1", 200, "A", "G", 0.1, 1e-3)
    index.set_flags(SetFlags(4, [0, 2]))
    target.set_flags(SetFlags(4, [0, 3]))

    index.clump(target, 0.9, use_proxy=True, proxy_threshold=0.8)

    assert target.clumped
    assert index.set_indices() == [0, 2, 3]


def test_set_flags_bits_ascending_and_bounds() -> None:
    flags = SetFlags(130, [129, 3, 64, 0])

    assert list(flags.iter_set_bits()) == [0, 3, 64, 129]
    assert 64 in flags
    assert not flags.is_set(5)
    with pytest.raises(IndexError):
        flags.is_set(200)
    with pytest.raises(IndexError):
        flags.set(-1)


def test_set_flags_and_not_clears_shared_bits() -> None:
    a = SetFlags(70, [0, 1, 65])
    b = SetFlags(70, [1, 65])

    a.and_not(b)

    assert list(a.iter_set_bits()) == [0]
    assert not a.is_zero()
    assert a.and_not(SetFlags(70, [0])).is_zero()
