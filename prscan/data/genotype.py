"""
Genotype stores that build polygenic scores incrementally.

``Genotype`` holds the running per-sample score and turns it into the
reported value (average, sum or standardised). Subclasses only supply the
contribution of a block of variants. ``DosageGenotype`` keeps an in-memory
samples x variants dosage matrix, which covers hard calls (0/1/2) and
imputed dosages alike.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numba
import numpy as np
import pandas as pd

from ..snp.category import assign_bar_categories, assign_categories, thresholds_from_variants
from ..snp.clump import clump_variants
from ..utils.config import ClumpConfig, ScoreConfig, ThresholdConfig
from ..utils.data_types import SetFlags, Variant

MISSING_CODE = -9
BASE_REGION = 0
BACKGROUND_REGION = 1


@numba.jit(nopython=True, cache=True)
def _genotype_class_counts(dosages):
    """Count hard-called 0/1/2 genotypes and missing entries per column."""
    n_samples, n_variants = dosages.shape
    counts = np.zeros((n_variants, 4), dtype=np.int64)
    for j in range(n_variants):
        for i in range(n_samples):
            d = dosages[i, j]
            if np.isnan(d):
                counts[j, 3] += 1
            else:
                call = int(d + 0.5)
                if call <= 0:
                    counts[j, 0] += 1
                elif call == 1:
                    counts[j, 1] += 1
                else:
                    counts[j, 2] += 1
    return counts


@dataclass
class ScoreCursor:
    """Position of a threshold scan inside one region's membership list.

    ``score_for_threshold`` advances ``position`` past one category and
    reports the category's threshold and the cumulative variant count.
    """

    membership: np.ndarray
    position: int = 0
    threshold: float = -1.0
    num_snp: int = 0
    first: bool = True

    @property
    def exhausted(self) -> bool:
        return self.position >= len(self.membership)


class Genotype(ABC):
    """Per-sample score accumulation shared by all genotype back ends."""

    def __init__(self, samples: pd.DataFrame, variants: Sequence[Variant],
                 score_config: Optional[ScoreConfig] = None):
        self.samples = self._normalise_samples(samples)
        self.variants: List[Variant] = list(variants)
        self.score_config = score_config or ScoreConfig()
        n_sample = len(self.samples)
        self._prs = np.zeros(n_sample)
        self._num_snp = np.zeros(n_sample)
        self.in_regression = np.zeros(n_sample, dtype=bool)
        self.exclude_std = np.zeros(n_sample, dtype=bool)
        self._categories = np.array([v.category for v in self.variants], dtype=np.int64)
        self._thresholds = np.array([v.p_threshold for v in self.variants], dtype=np.float64)
        self.region_names: List[str] = ['Base']
        self._membership: List[np.ndarray] = [np.arange(len(self.variants))]

    @staticmethod
    def _normalise_samples(samples: pd.DataFrame) -> pd.DataFrame:
        samples = samples.copy().reset_index(drop=True)
        if 'IID' not in samples.columns:
            raise ValueError("Sample table must contain an 'IID' column")
        if 'FID' not in samples.columns:
            samples['FID'] = samples['IID']
        samples['FID'] = samples['FID'].astype(str)
        samples['IID'] = samples['IID'].astype(str)
        if 'Founder' not in samples.columns:
            if {'PAT', 'MAT'}.issubset(samples.columns):
                samples['Founder'] = ((samples['PAT'].astype(str) == '0')
                                      & (samples['MAT'].astype(str) == '0'))
            else:
                samples['Founder'] = True
        samples['Founder'] = samples['Founder'].astype(bool)
        return samples

    # Sample information

    def sample_count(self) -> int:
        return len(self.samples)

    def sample_identity(self, i: int) -> Tuple[str, str]:
        row = self.samples.iloc[i]
        return row['FID'], row['IID']

    def sample_id(self, i: int, ignore_fid: bool = False, delim: str = ' ') -> str:
        fid, iid = self.sample_identity(i)
        return iid if ignore_fid else f"{fid}{delim}{iid}"

    def is_founder(self, i: int) -> bool:
        return bool(self.samples['Founder'].iat[i])

    # Regions

    @property
    def num_region(self) -> int:
        return len(self.region_names)

    def region_membership(self, region_index: int) -> np.ndarray:
        return self._membership[region_index]

    def region_thresholds(self, region_index: int) -> np.ndarray:
        return thresholds_from_variants([self.variants[j] for j in self._membership[region_index]])

    def new_cursor(self, region_index: int) -> ScoreCursor:
        return ScoreCursor(membership=self._membership[region_index])

    # Scoring

    @abstractmethod
    def _contribution(self, columns: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Score and allele-count increments from the given variant columns."""

    def _add_to_score(self, columns: np.ndarray, reset: bool) -> None:
        if reset:
            self._prs.fill(0.0)
            self._num_snp.fill(0.0)
        if len(columns) == 0:
            return
        score, count = self._contribution(np.asarray(columns, dtype=np.int64))
        self._prs += score
        self._num_snp += count

    def score_for_threshold(self, cursor: ScoreCursor) -> bool:
        """Add the next threshold category of the cursor's region.

        Returns:
            False once the region has no categories left; the cursor is
            unchanged in that case.
        """
        if cursor.exhausted:
            return False
        members = cursor.membership
        category = self._categories[members[cursor.position]]
        end = cursor.position + int(np.searchsorted(
            self._categories[members[cursor.position:]], category, side='right'))
        block = members[cursor.position:end]
        self._add_to_score(block, reset=cursor.first)
        cursor.threshold = float(self._thresholds[block[0]])
        cursor.num_snp += len(block)
        cursor.position = end
        cursor.first = False
        return True

    def score_for_background_set(self, cardinality: int, prev_cardinality: int,
                                 background: np.ndarray, first: bool) -> None:
        """Extend a null score with ``background[prev_cardinality:cardinality]``."""
        start = 0 if first else prev_cardinality
        self._add_to_score(background[start:cardinality], reset=first)

    def sample_scores(self, indices: Optional[np.ndarray] = None) -> np.ndarray:
        """Reported score of every sample (or of ``indices``)."""
        method = self.score_config.score_method
        if method == 'sum':
            scores = self._prs.copy()
        else:
            # _num_snp counts alleles, so this is the per-allele average
            denom = self._num_snp
            with np.errstate(divide='ignore', invalid='ignore'):
                scores = np.where(denom > 0, self._prs / np.where(denom > 0, denom, 1.0), 0.0)
            if method in ('std', 'con_std'):
                reference = scores[~self.exclude_std] if method == 'con_std' else scores
                mean = reference.mean() if reference.size else 0.0
                sd = reference.std(ddof=1) if reference.size > 1 else 0.0
                scores = (scores - mean) / sd if sd > 0 else scores - mean
        if indices is not None:
            return scores[indices]
        return scores

    def score_for_sample(self, i: int) -> float:
        return float(self.sample_scores()[i])

    def num_snp_for_sample(self, i: int) -> int:
        return int(self._num_snp[i] // max(self.score_config.ploidy, 1))


class DosageGenotype(Genotype):
    """In-memory genotype dosages aligned to base variants.

    Args:
        samples: DataFrame with 'IID' and optionally 'FID', 'Founder' or
            'PAT'/'MAT' columns
        dosages: Array (n_samples x n_variants) of effect-allele dosages in
            the genotype file's coding; NaN or -9 marks a missing call
        variants: One Variant per dosage column, already matched to the base
            (``flipped`` set when the base effect allele is the other allele)
        score_config: Scoring method and missing-genotype handling
    """

    def __init__(self, samples: pd.DataFrame, dosages: np.ndarray,
                 variants: Sequence[Variant], score_config: Optional[ScoreConfig] = None):
        dosages = np.array(dosages, dtype=np.float64)
        if dosages.ndim != 2:
            raise ValueError(f"Dosage matrix must be 2-D, got shape {dosages.shape}")
        if dosages.shape[0] != len(samples):
            raise ValueError(
                f"Dosage rows ({dosages.shape[0]}) != number of samples ({len(samples)})"
            )
        if dosages.shape[1] != len(variants):
            raise ValueError(
                f"Dosage columns ({dosages.shape[1]}) != number of variants ({len(variants)})"
            )
        dosages[dosages == MISSING_CODE] = np.nan
        self.dosages = dosages
        super().__init__(samples, variants, score_config)
        self._column_of: Dict[str, int] = {v.rs: j for j, v in enumerate(self.variants)}
        self.stats = np.array([v.stat for v in self.variants], dtype=np.float64)
        self.flipped = np.array([v.flipped for v in self.variants], dtype=bool)

    def column_of(self, rs: str) -> Optional[int]:
        return self._column_of.get(rs)

    def _ensure_counts(self, columns: np.ndarray, use_ref: bool = False) -> None:
        pending = [j for j in columns if not self.variants[j].has_counts(use_ref)]
        if not pending:
            return
        pending = np.asarray(pending, dtype=np.int64)
        counts = _genotype_class_counts(np.ascontiguousarray(self.dosages[:, pending]))
        for j, (homcom, het, homrar, missing) in zip(pending, counts):
            self.variants[j].set_counts(int(homcom), int(het), int(homrar), int(missing),
                                        is_ref=use_ref)

    def effect_allele_frequency(self, columns: np.ndarray) -> np.ndarray:
        self._ensure_counts(columns)
        ploidy = self.score_config.ploidy
        freq = np.array([self.variants[j].maf(ploidy=ploidy) for j in columns])
        return np.where(self.flipped[columns], 1.0 - freq, freq)

    def _contribution(self, columns: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        ploidy = self.score_config.ploidy
        mode = self.score_config.missing_score
        g = self.dosages[:, columns]
        flipped = self.flipped[columns]
        if flipped.any():
            g = g.copy()
            g[:, flipped] = ploidy - g[:, flipped]
        missing = np.isnan(g)
        expected = ploidy * self.effect_allele_frequency(columns)
        if mode == 'mean_impute':
            g = np.where(missing, expected[np.newaxis, :], g)
            count = np.full(g.shape[0], ploidy * len(columns), dtype=np.float64)
        elif mode == 'center':
            g = np.where(missing, 0.0, g - expected[np.newaxis, :])
            count = np.full(g.shape[0], ploidy * len(columns), dtype=np.float64)
        else:
            g = np.where(missing, 0.0, g)
            count = ploidy * (~missing).sum(axis=1).astype(np.float64)
        return g @ self.stats[columns], count

    def imputed_block(self, columns: np.ndarray) -> np.ndarray:
        """Dosage columns with missing calls replaced by the column mean."""
        block = self.dosages[:, columns]
        if np.isnan(block).any():
            with np.errstate(invalid='ignore'):
                means = np.nanmean(block, axis=0)
            means = np.nan_to_num(means)
            block = np.where(np.isnan(block), means[np.newaxis, :], block)
        return block

    def ld_r2(self, column: int, candidates: np.ndarray) -> np.ndarray:
        """Squared genotype correlation between one column and candidates."""
        block = self.imputed_block(np.concatenate([[column], candidates]).astype(np.int64))
        with np.errstate(divide='ignore', invalid='ignore'):
            r = np.corrcoef(block, rowvar=False)
        r2 = np.atleast_2d(r)[0, 1:] ** 2
        return np.nan_to_num(r2)

    def _set_flags(self, gene_sets: Optional[Dict[str, Iterable[str]]],
                   background: Optional[Iterable[str]]) -> None:
        if not gene_sets:
            self.region_names = ['Base']
            for v in self.variants:
                v.set_flags(SetFlags(1, [BASE_REGION]))
            return
        self.region_names = ['Base', 'Background'] + list(gene_sets.keys())
        num_sets = len(self.region_names)
        set_members = [set(members) for members in gene_sets.values()]
        background_members = set(background) if background is not None else None
        for v in self.variants:
            flags = SetFlags(num_sets, [BASE_REGION])
            if background_members is None or v.rs in background_members:
                flags.set(BACKGROUND_REGION)
            for offset, members in enumerate(set_members):
                if v.rs in members:
                    flags.set(offset + 2)
            v.set_flags(flags)

    def prepare(self, threshold_config: Optional[ThresholdConfig] = None,
                clump_config: Optional[ClumpConfig] = None,
                gene_sets: Optional[Dict[str, Iterable[str]]] = None,
                background: Optional[Iterable[str]] = None,
                ld_reference: Optional["DosageGenotype"] = None,
                verbose: bool = True) -> None:
        """Bin, clump and group the variants ready for scoring.

        Args:
            threshold_config: P-value thresholds
            clump_config: LD clumping settings (None or ``clump=False`` skips)
            gene_sets: Optional mapping of set name to member variant IDs
            background: Variant IDs of the competitive background; all
                variants when omitted
            ld_reference: Genotypes to compute LD from instead of this store
            verbose: Print progress
        """
        threshold_config = threshold_config or ThresholdConfig()
        start_time = time.time()
        self._set_flags(gene_sets, background)

        if threshold_config.fastscore:
            ordered = assign_bar_categories(self.variants, threshold_config.bar_levels,
                                            threshold_config.include_full)
        else:
            ordered = assign_categories(self.variants, threshold_config.lower,
                                        threshold_config.upper, threshold_config.inter,
                                        threshold_config.include_full)
        if verbose:
            print(f"   {len(ordered):,} variants assigned to threshold categories")

        if clump_config is not None and clump_config.clump:
            ordered = clump_variants(ordered, self._r2_oracle(ordered, ld_reference),
                                     clump_config, verbose=verbose)

        self._categories = np.array([v.category for v in self.variants], dtype=np.int64)
        self._thresholds = np.array([v.p_threshold for v in self.variants], dtype=np.float64)
        columns = np.array([self._column_of[v.rs] for v in ordered], dtype=np.int64)
        columns = columns[np.argsort(self._categories[columns], kind='stable')]
        self._membership = []
        for region in range(self.num_region):
            keep = [j for j in columns if self.variants[j].in_set(region)]
            self._membership.append(np.asarray(keep, dtype=np.int64))
        if verbose:
            for name, members in zip(self.region_names, self._membership):
                if name == 'Background':
                    continue
                print(f"   Region {name}: {len(members):,} variants")
            print(f"Variant preparation completed in {time.time() - start_time:.2f} seconds")

    def _r2_oracle(self, ordered: Sequence[Variant], ld_reference: Optional["DosageGenotype"]):
        own_columns = np.array([self._column_of[v.rs] for v in ordered], dtype=np.int64)
        if ld_reference is None:
            def oracle(i, candidates):
                return self.ld_r2(own_columns[i], own_columns[candidates])
            return oracle

        ref_columns = np.array([ld_reference.column_of(v.rs) if ld_reference.column_of(v.rs) is not None
                                else -1 for v in ordered], dtype=np.int64)

        def reference_oracle(i, candidates):
            r2 = np.zeros(len(candidates))
            if ref_columns[i] < 0:
                return r2
            present = ref_columns[candidates] >= 0
            if present.any():
                r2[present] = ld_reference.ld_r2(ref_columns[i], ref_columns[candidates][present])
            return r2
        return reference_oracle
