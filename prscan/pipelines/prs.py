"""
PRS Pipeline Module

Runs the p-value threshold scan: for every phenotype and every region the
polygenic score is grown one threshold category at a time, regressed on the
phenotype, and the best-fitting threshold is reported. Optional label
permutation gives an empirical p-value for the best threshold, and with gene
sets a competitive test compares every set against random background sets.
"""

import time
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import numpy as np
import pandas as pd
from tqdm import tqdm

from ..association.competitive import PRSCAN_Competitive
from ..association.permutation import PRSCAN_Permutation
from ..association.regression import SCORE_COLUMN, PRSCAN_Regress, null_model_r2
from ..data.genotype import BACKGROUND_REGION, Genotype
from ..data.phenotype import PhenotypeMatrix, flag_regression_samples, prepare_phenotype
from ..utils.config import (
    ClumpConfig,
    PermutationConfig,
    PhenotypeConfig,
    ScoreConfig,
    ThresholdConfig,
)
from ..utils.data_types import PRSResults, PRSSummary, ResultRow
from ..utils.errors import NoValidPRSError, PhenotypeError, RegressionConvergenceError
from ..utils.stats import (
    competitive_pvalue,
    empirical_pvalue,
    liability_adjustment,
    significance_buckets,
)
from .output import (
    all_score_column,
    output_prefix,
    write_all_scores,
    write_best,
    write_prsice,
    write_summary,
)


@dataclass
class ScanSession:
    """State of one phenotype x region threshold scan."""

    pheno: str
    region_index: int
    region_name: str
    results: PRSResults
    perm_results: np.ndarray
    best_sample_score: Optional[np.ndarray] = None
    num_snp_included: int = 0
    last_recorded_num_snp: int = 0

    @property
    def best_index(self) -> int:
        return self.results.best_index


class PRSPipeline:
    """
    Polygenic score threshold scan over a prepared genotype store.

    Example:
        >>> pipeline = PRSPipeline(genotype, output_prefix='out/PRScan')
        >>> pipeline.prepare_variants()
        >>> summaries = pipeline.run(pheno_table=pheno_df)
    """

    def __init__(self, genotype: Genotype,
                 output_prefix: Union[str, Path] = "PRScan",
                 threshold_config: Optional[ThresholdConfig] = None,
                 clump_config: Optional[ClumpConfig] = None,
                 score_config: Optional[ScoreConfig] = None,
                 permutation_config: Optional[PermutationConfig] = None,
                 phenotype_config: Optional[PhenotypeConfig] = None,
                 verbose: bool = True):
        self.genotype = genotype
        self.output_prefix = Path(output_prefix)
        self.output_prefix.parent.mkdir(parents=True, exist_ok=True)
        self.threshold_config = threshold_config or ThresholdConfig()
        self.clump_config = clump_config or ClumpConfig()
        if score_config is not None:
            self.genotype.score_config = score_config
        self.score_config = self.genotype.score_config
        self.permutation_config = permutation_config or PermutationConfig()
        self.phenotype_config = phenotype_config or PhenotypeConfig()
        self.verbose = verbose

        # Analysis state
        self.results: Dict[str, List[PRSResults]] = {}
        self.summaries: List[PRSSummary] = []
        self._prepared = False
        self._all_scores_written = False

    def log(self, message: str):
        """Internal logger"""
        if self.verbose:
            print(message)

    def log_step(self, step_name: str, start_time: Optional[float] = None):
        """Log a pipeline step with optional timing"""
        if start_time is not None:
            elapsed = time.time() - start_time
            self.log(f"{step_name} completed in {elapsed:.2f} seconds")
        else:
            self.log(f"{step_name}...")

    @property
    def gene_set_mode(self) -> bool:
        return self.genotype.num_region > 1

    @property
    def n_pheno(self) -> int:
        return max(len(self.phenotype_config.pheno_cols), 1)

    def prepare_variants(self, gene_sets: Optional[Dict[str, Iterable[str]]] = None,
                         background: Optional[Iterable[str]] = None,
                         ld_reference: Optional[Genotype] = None):
        """Assign threshold categories, clump, and build region membership.

        Args:
            gene_sets: Optional mapping of set name to member variant IDs
            background: Variant IDs for the competitive background (all
                variants when omitted)
            ld_reference: Genotypes to compute LD from instead of the target
        """
        step_start = time.time()
        self.log_step("Step 1: Preparing variants")
        self.genotype.prepare(
            threshold_config=self.threshold_config,
            clump_config=self.clump_config,
            gene_sets=gene_sets,
            background=background,
            ld_reference=ld_reference,
            verbose=self.verbose,
        )
        self._prepared = True
        self.log_step("Step 1: Variant preparation", step_start)

    def run(self, pheno_table: Optional[pd.DataFrame] = None,
            cov_table: Optional[pd.DataFrame] = None) -> List[PRSSummary]:
        """
        Scan thresholds for every phenotype and write the result files.

        Args:
            pheno_table: Phenotype table (FID/IID plus trait columns). None
                uses the phenotype stored with the genotype samples.
            cov_table: Optional covariate table

        Returns:
            Best-threshold summaries of every phenotype and region

        Note:
            A phenotype that cannot be used (no samples, constant values, no
            cases) is reported and skipped; the other phenotypes still run.
        """
        if not self._prepared:
            self.prepare_variants()

        step_start = time.time()
        self.log_step("Step 2: Running the PRS threshold scan")
        perm = self.permutation_config
        if perm.run_perm or perm.run_set_perm:
            self.log(f"   Random seed: {perm.seed}")

        pheno_cols = self.phenotype_config.pheno_cols or ['Phenotype']
        for pheno_index, pheno_col in enumerate(pheno_cols):
            binary = self.phenotype_config.binary[pheno_index]
            prevalence = self.phenotype_config.prevalence[pheno_index]
            self.log(f"\nProcessing phenotype: {pheno_col}")
            try:
                matrix = prepare_phenotype(
                    self.genotype, pheno_col, pheno_table, binary=binary,
                    cov_table=cov_table, cov_cols=self.phenotype_config.cov_cols,
                    factor_cols=self.phenotype_config.factor_cols,
                    ignore_fid=self.phenotype_config.ignore_fid,
                    include_nonfounders=self.phenotype_config.include_nonfounders,
                    verbose=self.verbose,
                )
            except PhenotypeError as exc:
                self.log(f"   Error: {exc}. Skipping phenotype {pheno_col}")
                continue
            self.run_phenotype(matrix, prevalence)

        if not self.summaries:
            self.log("\nNo valid PRS obtained for any phenotype")
            return self.summaries

        summary_path = write_summary(
            f"{self.output_prefix}.summary", self.summaries,
            include_competitive=perm.run_set_perm and self.gene_set_mode,
            include_empirical=perm.run_perm,
        )
        self.log(f"\nSaved summary to {summary_path}")
        self.summarize()
        self.log_step("Step 2: PRS analysis", step_start)
        return self.summaries

    def run_phenotype(self, matrix: PhenotypeMatrix,
                      prevalence: Optional[float] = None) -> List[PRSSummary]:
        """Scan every region for one phenotype and write its result files."""
        flag_regression_samples(self.genotype, matrix)
        try:
            r2_null = null_model_r2(matrix.y, matrix.X, matrix.is_binary)
        except RegressionConvergenceError as exc:
            warnings.warn(f"Null model for {matrix.name} did not converge ({exc}); using null R2 = 0")
            r2_null = 0.0
        top = bottom = 1.0
        if prevalence is not None and matrix.is_binary:
            top, bottom = liability_adjustment(prevalence, matrix.case_ratio)
        else:
            prevalence = None

        prefix = output_prefix(self.output_prefix, matrix.name, self.n_pheno)
        pheno_label = matrix.name if self.n_pheno > 1 else '-'
        all_scores: Optional[Dict[str, np.ndarray]] = None
        if self.score_config.all_scores and not self._all_scores_written:
            all_scores = {}

        pheno_results: List[PRSResults] = []
        best_scores: Dict[str, np.ndarray] = {}
        pheno_summaries: List[PRSSummary] = []
        for region_index, region_name in enumerate(self.genotype.region_names):
            if self.gene_set_mode and region_index == BACKGROUND_REGION:
                continue
            session = self.new_session(pheno_label, region_index)
            try:
                self.run_prsice(matrix, session, prefix, all_scores)
            except NoValidPRSError as exc:
                self.log(f"   Error: {exc}")
                continue
            pheno_results.append(session.results)
            best_scores[region_name] = session.best_sample_score
            pheno_summaries.append(PRSSummary(
                pheno=pheno_label,
                set_name=region_name,
                result=session.results.best,
                r2_null=r2_null,
                top=top,
                bottom=bottom,
                prevalence=prevalence,
                # Base is not tested against the background
                has_competitive=region_name == 'Base',
            ))

        self.results[matrix.name] = pheno_results
        if pheno_results:
            has_prevalence = any(p is not None for p in self.phenotype_config.prevalence)
            write_prsice(f"{prefix}.prsice", pheno_results, r2_null, top, bottom,
                         include_adjusted=has_prevalence, adjusted_valid=prevalence is not None)
            write_best(f"{prefix}.best", self.genotype, best_scores)
        if all_scores is not None:
            write_all_scores(f"{self.output_prefix}.all_score", self.genotype, all_scores)
            self._all_scores_written = True

        if self.permutation_config.run_set_perm and self.gene_set_mode:
            self.run_competitive(matrix, pheno_summaries)
        self.summaries.extend(pheno_summaries)
        return pheno_summaries

    def new_session(self, pheno_label: str, region_index: int) -> ScanSession:
        region_name = self.genotype.region_names[region_index]
        n_perm = self.permutation_config.num_permutation if self.permutation_config.run_perm else 0
        return ScanSession(
            pheno=pheno_label,
            region_index=region_index,
            region_name=region_name,
            results=PRSResults(pheno=pheno_label, set_name=region_name),
            perm_results=np.zeros(n_perm),
        )

    def run_prsice(self, matrix: PhenotypeMatrix, session: ScanSession,
                   debug_prefix: Union[str, Path],
                   all_scores: Optional[Dict[str, np.ndarray]] = None) -> PRSResults:
        """
        Scan every threshold of one region.

        Each threshold adds its category to the running score. A threshold
        that adds no variant over the last recorded one is left unrecorded
        and not regressed. The best threshold is the valid row with the
        largest R2, the earliest one on ties.

        Raises:
            NoValidPRSError: No regression sample, no recorded threshold, or
                no threshold with a usable regression.
        """
        if matrix.n_sample == 0:
            raise NoValidPRSError(f"No sample left in the regression of {session.region_name}")
        perm = self.permutation_config
        genotype = self.genotype
        X = np.array(matrix.X, dtype=np.float64, copy=True)
        cursor = genotype.new_cursor(session.region_index)
        results = session.results
        n_threshold = len(genotype.region_thresholds(session.region_index))

        with tqdm(total=n_threshold, desc=f"{matrix.name} {session.region_name}",
                  disable=not self.verbose, leave=False) as progress:
            while genotype.score_for_threshold(cursor):
                progress.update(1)
                session.num_snp_included = cursor.num_snp
                if all_scores is not None:
                    column = all_score_column(session.region_name, cursor.threshold, self.gene_set_mode)
                    all_scores[column] = genotype.sample_scores()
                row_index = len(results.rows)
                results.rows.append(ResultRow())
                if cursor.num_snp == 0 or cursor.num_snp == session.last_recorded_num_snp:
                    continue

                X[:, SCORE_COLUMN] = genotype.sample_scores(matrix.matrix_index)
                row = self.regress_score(matrix, X, cursor.threshold, cursor.num_snp, debug_prefix)
                results.rows[row_index] = row
                session.last_recorded_num_snp = cursor.num_snp
                best = results.best
                if row.valid and (best is None or best.r2 < row.r2):
                    results.best_index = row_index
                    session.best_sample_score = genotype.sample_scores()
                if perm.run_perm:
                    PRSCAN_Permutation(matrix.y, X, session.perm_results, perm.seed,
                                       n_thread=self.score_config.thread,
                                       is_binary=matrix.is_binary,
                                       logit_perm=perm.logit_perm)

        if not results.recorded_rows():
            raise NoValidPRSError(f"No valid PRS for {session.region_name}: no threshold contains any variant")
        if results.best is None:
            raise NoValidPRSError(f"No valid PRS for {session.region_name}: every regression failed")
        if perm.run_perm:
            results.best.emp_p = empirical_pvalue(results.best.t_value, session.perm_results)
        return results

    def regress_score(self, matrix: PhenotypeMatrix, X: np.ndarray, threshold: float,
                      num_snp: int, debug_prefix: Union[str, Path]) -> ResultRow:
        """Regress the phenotype on the current score; failures give p = -1."""
        try:
            result = PRSCAN_Regress(matrix.y, X, matrix.is_binary)
        except RegressionConvergenceError as exc:
            self.log("   Error: GLM model did not converge! This is usually caused by small "
                     "sample size or a problem in the input files. The design matrix and "
                     f"phenotype were written to {debug_prefix}.DEBUG and {debug_prefix}.DEBUG.y")
            self.log(f"   Error: {exc}")
            np.savetxt(f"{debug_prefix}.DEBUG", X)
            np.savetxt(f"{debug_prefix}.DEBUG.y", matrix.y)
            return ResultRow(threshold=threshold, p=-1.0, num_snp=num_snp)
        p_value = result.p_value if np.isfinite(result.p_value) else -1.0
        return ResultRow(
            threshold=threshold,
            r2=result.r2,
            r2_adj=result.r2_adjusted,
            coefficient=result.coefficient,
            se=result.standard_error,
            p=p_value,
            num_snp=num_snp,
        )

    def run_competitive(self, matrix: PhenotypeMatrix, summaries: List[PRSSummary]):
        """Competitive p-values for the gene sets of one phenotype."""
        pending = [s for s in summaries if not s.has_competitive]
        if not pending:
            return
        step_start = time.time()
        self.log_step(f"   Competitive permutation for {matrix.name}")
        perm = self.permutation_config
        flag_regression_samples(self.genotype, matrix)
        counts = PRSCAN_Competitive(
            self.genotype, matrix.y, matrix.X, matrix.matrix_index,
            background=self.genotype.region_membership(BACKGROUND_REGION),
            observed_t=[s.result.t_value for s in pending],
            set_sizes=[s.result.num_snp for s in pending],
            num_permutation=perm.num_permutation,
            seed=perm.seed,
            n_thread=self.score_config.thread,
            is_binary=matrix.is_binary,
            logit_perm=perm.logit_perm,
            verbose=self.verbose,
        )
        if counts is not None:
            for summary, count in zip(pending, counts):
                summary.result.competitive_p = competitive_pvalue(int(count), perm.num_permutation)
        for summary in pending:
            summary.has_competitive = True
        self.log_step("   Competitive permutation", step_start)

    def summarize(self) -> str:
        """Log how many phenotype/region results fall in each significance band."""
        buckets = significance_buckets(s.result.p for s in self.summaries)
        parts = []
        if buckets['not_significant']:
            parts.append(f"{buckets['not_significant']} region(s)/phenotype(s) with p-value > 0.1 "
                         "(not significant);")
        if buckets['modest']:
            parts.append(f"{buckets['modest']} region(s) with p-value between 0.1 and 1e-5 "
                         "(may not be significant);")
        if buckets['significant']:
            parts.append(f"{buckets['significant']} region(s) with p-value less than 1e-5.")
        message = "There are " + " and ".join(parts)
        if buckets['significant'] and not self.permutation_config.run_perm:
            message += (" Please note that these results are inflated due to the overfitting "
                        "inherent in finding the best-fit PRS (but it's still best to find the "
                        "best-fit PRS!). You can use permutation to calculate an empirical P-value.")
        self.log(message)
        return message
