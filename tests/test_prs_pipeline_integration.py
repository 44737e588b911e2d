"""End-to-end tests of the PRS threshold scan"""

import numpy as np
import pandas as pd
import pytest

from prscan import PRSPipeline
from prscan.data.genotype import DosageGenotype, Genotype
from prscan.data.phenotype import PhenotypeMatrix, prepare_phenotype
from prscan.utils.config import (
    ClumpConfig,
    PermutationConfig,
    PhenotypeConfig,
    ScoreConfig,
    ThresholdConfig,
)
from prscan.utils.data_types import PRSSummary, ResultRow, Variant


class ScriptedGenotype(Genotype):
    """Genotype whose threshold steps are given directly as (threshold, num_snp, scores)."""

    def __init__(self, samples, steps):
        super().__init__(samples, [], ScoreConfig(score_method='sum'))
        self.steps = steps

    def _contribution(self, columns):
        raise NotImplementedError

    def region_thresholds(self, region_index):
        return np.array([threshold for threshold, _, _ in self.steps])

    def score_for_threshold(self, cursor):
        if cursor.position >= len(self.steps):
            return False
        threshold, num_snp, scores = self.steps[cursor.position]
        self._prs = np.array(scores, dtype=np.float64)
        cursor.threshold = threshold
        cursor.num_snp = num_snp
        cursor.position += 1
        cursor.first = False
        return True


def _samples(n: int) -> pd.DataFrame:
    return pd.DataFrame({'FID': [f"F{i}" for i in range(n)], 'IID': [f"I{i}" for i in range(n)]})


def _pheno_table(y, extra=None) -> pd.DataFrame:
    table = pd.DataFrame({'FID': [f"F{i}" for i in range(len(y))],
                          'IID': [f"I{i}" for i in range(len(y))],
                          'Trait': [str(v) for v in y]})
    for name, values in (extra or {}).items():
        table[name] = [str(v) for v in values]
    return table


def test_unchanged_thresholds_are_skipped_and_ties_keep_first(tmp_path) -> None:
    rng = np.random.default_rng(0)
    n = 40
    y = rng.normal(size=n)
    weak = rng.normal(size=n)
    strong = y + 0.3 * rng.normal(size=n)
    steps = [(0.001, 10, weak), (0.01, 25, strong), (0.05, 25, weak), (0.1, 30, strong.copy())]
    genotype = ScriptedGenotype(_samples(n), steps)
    pipeline = PRSPipeline(genotype, output_prefix=tmp_path / "scan",
                           phenotype_config=PhenotypeConfig(pheno_cols=['Trait'], binary=[False]),
                           verbose=False)
    matrix = prepare_phenotype(genotype, 'Trait', _pheno_table(y), binary=False, verbose=False)
    session = pipeline.new_session('-', 0)

    results = pipeline.run_prsice(matrix, session, tmp_path / "scan")

    assert [row.recorded for row in results.rows] == [True, True, False, True]
    assert session.best_index == 1
    np.testing.assert_allclose(session.best_sample_score, strong)
    assert results.rows[3].r2 == pytest.approx(results.rows[1].r2)
    assert session.last_recorded_num_snp == 30


def test_failed_logistic_fit_is_flagged_and_dumped(tmp_path) -> None:
    n = 40
    score = np.linspace(-2, 2, n)
    y = (score > 0).astype(float)
    X = np.column_stack([np.ones(n), score])
    genotype = ScriptedGenotype(_samples(n), [])
    pipeline = PRSPipeline(genotype, output_prefix=tmp_path / "scan", verbose=False)
    matrix = PhenotypeMatrix(name='Trait', is_binary=True, y=y, X=X.copy(),
                             matrix_index=np.arange(n), num_case=20, num_control=20)

    row = pipeline.regress_score(matrix, X, 0.05, 12, tmp_path / "scan")

    assert row.recorded
    assert not row.valid
    assert row.num_snp == 12
    assert (tmp_path / "scan.DEBUG").exists()
    assert (tmp_path / "scan.DEBUG.y").exists()


def _dosage_data(n_sample: int = 80, n_variant: int = 60, seed: int = 3):
    rng = np.random.default_rng(seed)
    dosages = rng.integers(0, 3, size=(n_sample, n_variant)).astype(float)
    stats = rng.normal(size=n_variant)
    pvalues = rng.uniform(0, 1, n_variant)
    pvalues[:10] = rng.uniform(0, 0.005, 10)
    variants = [Variant(f"rs{j}", "1", 1000 * j, "A", "G", stats[j], pvalues[j])
                for j in range(n_variant)]
    y = dosages[:, :10] @ stats[:10] + rng.normal(size=n_sample)
    return dosages, variants, y


def _pipeline(tmp_path, genotype, permutation_config=None, pheno_cols=('Trait',),
              score_config=None) -> PRSPipeline:
    return PRSPipeline(
        genotype,
        output_prefix=tmp_path / "out" / "PRScan",
        threshold_config=ThresholdConfig(lower=0.01, upper=0.5, inter=0.05),
        clump_config=ClumpConfig(clump=False),
        score_config=score_config,
        permutation_config=permutation_config,
        phenotype_config=PhenotypeConfig(pheno_cols=list(pheno_cols),
                                         binary=[False] * len(pheno_cols)),
        verbose=False,
    )


def test_full_scan_writes_result_files(tmp_path) -> None:
    dosages, variants, y = _dosage_data()
    genotype = DosageGenotype(_samples(len(y)), dosages, variants)
    pipeline = _pipeline(tmp_path, genotype, score_config=ScoreConfig(all_scores=True))

    summaries = pipeline.run(pheno_table=_pheno_table(y))

    prefix = tmp_path / "out" / "PRScan"
    prsice = pd.read_csv(f"{prefix}.prsice", sep='\t')
    best = pd.read_csv(f"{prefix}.best", sep='\t')
    summary = pd.read_csv(f"{prefix}.summary", sep='\t')
    all_score = pd.read_csv(f"{prefix}.all_score", sep='\t')

    assert list(prsice.columns) == ['Set', 'Threshold', 'R2', 'P', 'Coefficient',
                                    'Standard.Error', 'Num_SNP']
    assert prsice['Threshold'].is_monotonic_increasing
    assert prsice['Num_SNP'].iloc[-1] == len(variants)
    assert list(best.columns) == ['FID', 'IID', 'In_Regression', 'PRS']
    assert (best['In_Regression'] == 'Yes').all()
    assert len(summaries) == 1
    assert summary['Phenotype'].tolist() == ['-']
    assert summary['Set'].tolist() == ['Base']
    assert summary['P'].iloc[0] < 1e-3
    assert summary['PRS.R2'].iloc[0] == pytest.approx(prsice['R2'].max())
    assert 'Empirical-P' not in summary.columns
    assert all_score.columns[0:2].tolist() == ['FID', 'IID']
    assert all(col.startswith('Pt_') for col in all_score.columns[2:])


def test_permutation_adds_empirical_pvalue(tmp_path) -> None:
    dosages, variants, y = _dosage_data()
    genotype = DosageGenotype(_samples(len(y)), dosages, variants)
    perm = PermutationConfig(num_permutation=20, run_perm=True, seed=7)
    pipeline = _pipeline(tmp_path, genotype, permutation_config=perm)

    summaries = pipeline.run(pheno_table=_pheno_table(y))

    summary = pd.read_csv(tmp_path / "out" / "PRScan.summary", sep='\t')
    emp_p = summary['Empirical-P'].iloc[0]
    assert 1 / 21 <= emp_p <= 1
    assert summaries[0].result.emp_p == pytest.approx(emp_p)


def test_gene_sets_get_competitive_pvalues(tmp_path) -> None:
    dosages, variants, y = _dosage_data()
    genotype = DosageGenotype(_samples(len(y)), dosages, variants)
    perm = PermutationConfig(num_permutation=10, run_set_perm=True, seed=5)
    pipeline = _pipeline(tmp_path, genotype, permutation_config=perm)
    gene_sets = {'SetA': [f"rs{j}" for j in range(20)],
                 'SetB': [f"rs{j}" for j in range(20, 45)]}

    pipeline.prepare_variants(gene_sets=gene_sets)
    pipeline.run(pheno_table=_pheno_table(y))

    prefix = tmp_path / "out" / "PRScan"
    summary = pd.read_csv(f"{prefix}.summary", sep='\t')
    best = pd.read_csv(f"{prefix}.best", sep='\t')
    prsice = pd.read_csv(f"{prefix}.prsice", sep='\t')

    assert summary['Set'].tolist() == ['Base', 'SetA', 'SetB']
    assert np.isnan(summary['Competitive.P'].iloc[0])
    assert ((summary['Competitive.P'].iloc[1:] > 0) & (summary['Competitive.P'].iloc[1:] <= 1)).all()
    assert list(best.columns) == ['FID', 'IID', 'In_Regression', 'Base', 'SetA', 'SetB']
    assert set(prsice['Set']) == {'Base', 'SetA', 'SetB'}


def test_unusable_phenotype_is_skipped(tmp_path) -> None:
    dosages, variants, y = _dosage_data()
    genotype = DosageGenotype(_samples(len(y)), dosages, variants)
    pipeline = _pipeline(tmp_path, genotype, pheno_cols=('Trait', 'Flat'))

    pipeline.run(pheno_table=_pheno_table(y, extra={'Flat': [1.0] * len(y)}))

    prefix = tmp_path / "out" / "PRScan"
    summary = pd.read_csv(f"{prefix}.summary", sep='\t')
    assert (tmp_path / "out" / "PRScan.Trait.prsice").exists()
    assert not (tmp_path / "out" / "PRScan.Flat.prsice").exists()
    assert summary['Phenotype'].tolist() == ['Trait']


def test_summarize_reports_significance_bands(tmp_path) -> None:
    genotype = ScriptedGenotype(_samples(4), [])
    pipeline = PRSPipeline(genotype, output_prefix=tmp_path / "scan", verbose=False)
    pipeline.summaries = [
        PRSSummary('-', 'Base', ResultRow(threshold=0.1, p=0.5)),
        PRSSummary('-', 'SetA', ResultRow(threshold=0.1, p=1e-8)),
    ]

    message = pipeline.summarize()

    assert "1 region(s)/phenotype(s) with p-value > 0.1" in message
    assert "1 region(s) with p-value less than 1e-5" in message
    assert "overfitting" in message
