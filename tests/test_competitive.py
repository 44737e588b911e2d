"""Tests for the competitive gene-set permutation"""

from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from prscan.association.competitive import (
    PRSCAN_Competitive,
    build_set_groups,
    check_permutation_memory,
    null_scores,
)
from prscan.data.genotype import DosageGenotype
from prscan.utils.data_types import Variant
from prscan.utils.errors import PermutationMemoryError
from prscan.utils.stats import competitive_pvalue


def _genotype(n_sample: int = 50, n_variant: int = 120, seed: int = 0) -> DosageGenotype:
    rng = np.random.default_rng(seed)
    samples = pd.DataFrame({'FID': [f"F{i}" for i in range(n_sample)],
                            'IID': [f"I{i}" for i in range(n_sample)]})
    dosages = rng.integers(0, 3, size=(n_sample, n_variant)).astype(float)
    variants = [Variant(f"rs{j}", "1", 1000 * j, "A", "G", rng.normal(), rng.uniform())
                for j in range(n_variant)]
    return DosageGenotype(samples, dosages, variants)


def _phenotype(n_sample: int = 50, seed: int = 1):
    rng = np.random.default_rng(seed)
    y = rng.normal(size=n_sample)
    X = np.column_stack([np.ones(n_sample), np.ones(n_sample), rng.normal(size=n_sample)])
    return y, X


def test_build_set_groups_orders_sizes_and_keeps_ties() -> None:
    groups = build_set_groups([20, 10, 20, 5])

    assert list(groups.keys()) == [5, 10, 20]
    assert groups[20] == [0, 2]


def test_single_and_multi_thread_counts_match() -> None:
    genotype = _genotype()
    y, X = _phenotype()
    kwargs = dict(matrix_index=np.arange(50), background=np.arange(100),
                  observed_t=[1.0, 2.0, 0.5], set_sizes=[10, 20, 10],
                  num_permutation=30, seed=8, verbose=False)

    single = PRSCAN_Competitive(genotype, y, X, n_thread=1, **kwargs)
    threaded = PRSCAN_Competitive(genotype, y, X, n_thread=3, **kwargs)

    np.testing.assert_array_equal(single, threaded)
    assert np.all((single >= 0) & (single <= 30))
    # Same size and a lower observed statistic can only be beaten more often
    assert single[2] >= single[0]


def test_null_scores_extend_smaller_sets() -> None:
    genotype = _genotype()
    groups = build_set_groups([3, 7])
    background = np.arange(100)

    scores = list(null_scores(genotype, background, groups, 2, seed=4, matrix_index=np.arange(50)))

    assert [size for size, _ in scores] == [3, 7, 3, 7]
    # Replaying the same draws directly gives the same size-7 score
    rng = np.random.default_rng(4)
    shuffled = background.copy()
    for i, j in enumerate(rng.integers(np.arange(7), 100)):
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    genotype.score_for_background_set(7, 0, shuffled, first=True)
    np.testing.assert_allclose(scores[1][1], genotype.sample_scores(np.arange(50)))


def test_insufficient_background_skips(capsys) -> None:
    genotype = _genotype()
    y, X = _phenotype()

    counts = PRSCAN_Competitive(genotype, y, X, np.arange(50), background=np.arange(50),
                                observed_t=[1.0], set_sizes=[60], num_permutation=10, seed=1)

    assert counts is None
    assert "Skipping the competitive analysis" in capsys.readouterr().out


def test_memory_check_reduces_threads() -> None:
    assert check_permutation_memory(100, 3, 4, logit_perm=False) == 4

    def limited(size, *args, **kwargs):
        if size > 200:
            raise MemoryError
        return np.zeros(size)

    with patch('prscan.association.competitive.np.empty', side_effect=limited):
        assert check_permutation_memory(100, 3, 4, logit_perm=False) == 2


def test_memory_check_raises_when_nothing_fits() -> None:
    with patch('prscan.association.competitive.np.empty', side_effect=MemoryError):
        with pytest.raises(PermutationMemoryError):
            check_permutation_memory(100, 3, 2, logit_perm=True)


def test_competitive_pvalue_formula() -> None:
    assert competitive_pvalue(4, 99) == pytest.approx(0.05)


@pytest.mark.filterwarnings("ignore")
def test_logistic_competitive_counts_are_thread_count_independent() -> None:
    n = 14
    genotype = _genotype(n_sample=n)
    rng = np.random.default_rng(3)
    X = np.column_stack([np.ones(n), np.ones(n), rng.normal(size=n)])
    y = np.zeros(n)
    y[rng.choice(n, size=3, replace=False)] = 1.0
    kwargs = dict(matrix_index=np.arange(n), background=np.arange(100),
                  observed_t=[0.5, 1.0], set_sizes=[2, 10], num_permutation=60,
                  seed=5, is_binary=True, logit_perm=True, verbose=False)

    single = PRSCAN_Competitive(genotype, y, X, n_thread=1, **kwargs)
    threaded = PRSCAN_Competitive(genotype, y, X, n_thread=4, **kwargs)

    np.testing.assert_array_equal(single, threaded)
