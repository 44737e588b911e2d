"""Tests for incremental score construction"""

import numpy as np
import pandas as pd
import pytest

from prscan.data.genotype import DosageGenotype
from prscan.utils.config import ClumpConfig, ScoreConfig, ThresholdConfig
from prscan.utils.data_types import Variant


def _samples(n: int) -> pd.DataFrame:
    return pd.DataFrame({'FID': [f"F{i}" for i in range(n)], 'IID': [f"I{i}" for i in range(n)]})


def _small_genotype(score_method: str = 'sum', missing: str = 'mean_impute',
                    flipped=(False, False)) -> DosageGenotype:
    variants = [Variant("rs1", "1", 100, "A", "G", 0.5, 0.01),
                Variant("rs2", "1", 200, "C", "T", -1.0, 0.02)]
    for v, flip in zip(variants, flipped):
        v.flipped = flip
    dosages = np.array([[0, 1], [2, 1], [1, 0]], dtype=float)
    return DosageGenotype(_samples(3), dosages, variants,
                          ScoreConfig(score_method=score_method, missing_score=missing))


def test_sum_and_average_scores() -> None:
    genotype = _small_genotype('sum')
    genotype.score_for_background_set(2, 0, np.arange(2), first=True)
    np.testing.assert_allclose(genotype.sample_scores(), [-1.0, 0.0, 0.5])

    genotype.score_config = ScoreConfig(score_method='avg')
    # Average over ploidy * number of variants
    np.testing.assert_allclose(genotype.sample_scores(), np.array([-1.0, 0.0, 0.5]) / 4)
    assert genotype.score_for_sample(2) == pytest.approx(0.125)
    assert genotype.num_snp_for_sample(0) == 2


def test_standardised_scores() -> None:
    genotype = _small_genotype('std')
    genotype.score_for_background_set(2, 0, np.arange(2), first=True)

    scores = genotype.sample_scores()

    raw = np.array([-1.0, 0.0, 0.5]) / 4
    np.testing.assert_allclose(scores, (raw - raw.mean()) / raw.std(ddof=1))


def test_flipped_variant_counts_other_allele() -> None:
    genotype = _small_genotype('sum', flipped=(True, False))
    genotype.score_for_background_set(2, 0, np.arange(2), first=True)

    # rs1 dosage becomes 2 - dosage
    np.testing.assert_allclose(genotype.sample_scores(), [1.0 - 1.0, 0.0 - 1.0, 0.5 - 0.0])


@pytest.mark.parametrize("mode, expected, counts", [
    ('mean_impute', [0.0, 1.0, 0.5], [2, 2, 2]),
    ('set_zero', [0.0, 1.0, 0.0], [2, 2, 0]),
    ('center', [-0.5, 0.5, 0.0], [2, 2, 2]),
])
def test_missing_genotype_handling(mode, expected, counts) -> None:
    variants = [Variant("rs1", "1", 100, "A", "G", 0.5, 0.01)]
    dosages = np.array([[0.0], [2.0], [-9.0]])
    genotype = DosageGenotype(_samples(3), dosages, variants,
                              ScoreConfig(score_method='sum', missing_score=mode))

    genotype.score_for_background_set(1, 0, np.arange(1), first=True)

    np.testing.assert_allclose(genotype.sample_scores(), expected)
    np.testing.assert_allclose(genotype._num_snp, counts)


def _scan_genotype(seed: int = 0):
    rng = np.random.default_rng(seed)
    n_sample, n_variant = 30, 40
    pvalues = rng.uniform(0, 1, n_variant)
    variants = [Variant(f"rs{j}", "1", 1000 * j, "A", "G", rng.normal(), p)
                for j, p in enumerate(pvalues)]
    dosages = rng.integers(0, 3, size=(n_sample, n_variant)).astype(float)
    genotype = DosageGenotype(_samples(n_sample), dosages, variants, ScoreConfig(score_method='sum'))
    return genotype, dosages, variants


def test_threshold_scan_is_incremental() -> None:
    genotype, dosages, variants = _scan_genotype()
    genotype.prepare(ThresholdConfig(lower=0.05, upper=0.5, inter=0.05),
                     ClumpConfig(clump=False), verbose=False)
    stats = np.array([v.stat for v in variants])
    pvalues = np.array([v.p_value for v in variants])

    cursor = genotype.new_cursor(0)
    previous = -1.0
    n_steps = 0
    while genotype.score_for_threshold(cursor):
        n_steps += 1
        assert cursor.threshold > previous
        previous = cursor.threshold
        included = pvalues <= cursor.threshold + 1e-12
        assert cursor.num_snp == included.sum()
        np.testing.assert_allclose(genotype.sample_scores(), dosages[:, included] @ stats[included])

    assert cursor.num_snp == len(variants)
    assert n_steps == len(genotype.region_thresholds(0))
    assert not genotype.score_for_threshold(cursor)


def test_gene_sets_build_regions() -> None:
    genotype, _, variants = _scan_genotype()
    gene_sets = {'SetA': [f"rs{j}" for j in range(10)], 'SetB': [f"rs{j}" for j in range(5, 25)]}

    genotype.prepare(ThresholdConfig(lower=0.05, upper=0.5, inter=0.05), ClumpConfig(clump=False),
                     gene_sets=gene_sets, background=[f"rs{j}" for j in range(30)], verbose=False)

    assert genotype.region_names == ['Base', 'Background', 'SetA', 'SetB']
    assert len(genotype.region_membership(0)) == 40
    assert len(genotype.region_membership(1)) == 30
    assert sorted(genotype.variants[j].rs for j in genotype.region_membership(2)) == \
        sorted(gene_sets['SetA'])
    assert len(genotype.region_membership(3)) == 20


def test_clumping_during_prepare_removes_duplicated_columns() -> None:
    rng = np.random.default_rng(1)
    base = rng.integers(0, 3, size=(40, 1)).astype(float)
    dosages = np.hstack([base, base, rng.integers(0, 3, size=(40, 1)).astype(float)])
    variants = [Variant("rs0", "1", 100, "A", "G", 0.2, 1e-6),
                Variant("rs1", "1", 200, "A", "G", 0.2, 1e-3),
                Variant("rs2", "2", 100, "A", "G", 0.2, 1e-2)]
    genotype = DosageGenotype(_samples(40), dosages, variants)

    genotype.prepare(ThresholdConfig(lower=1e-4, upper=0.5, inter=1e-3),
                     ClumpConfig(clump_r2=0.5), verbose=False)

    kept = sorted(genotype.variants[j].rs for j in genotype.region_membership(0))
    assert kept == ['rs0', 'rs2']


def test_genotype_class_counts_are_cached() -> None:
    genotype = _small_genotype()

    freq = genotype.effect_allele_frequency(np.array([0, 1]))

    np.testing.assert_allclose(freq, [0.5, 1 / 3])
    assert genotype.variants[0].has_counts()
    counts = genotype.variants[1].get_counts()
    assert (counts.homcom, counts.het, counts.homrar) == (1, 2, 0)
