"""
Core data structures for the PRS threshold scan
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .stats import adjust_r2

# Largest category index an unsigned 64-bit counter can hold
MAX_CATEGORY = 2 ** 64 - 1
WORD_BITS = 64
_WORD_MASK = (1 << WORD_BITS) - 1

_COMPLEMENT = str.maketrans('ACGT', 'TGCA')


def logically_equal(a: float, b: float, tol: float = 1e-12) -> bool:
    """Relative float comparison used for interval boundaries."""
    return abs(a - b) <= tol * max(1.0, abs(a), abs(b))


def complement(allele: str) -> str:
    """Strand complement of an allele (A<->T, C<->G)."""
    return allele.upper().translate(_COMPLEMENT)


class SetFlags:
    """Fixed-width bit vector of gene-set memberships.

    Bit ``i`` is set when the variant belongs to set ``i``. The width is fixed
    at construction from the number of sets; asking about a set beyond the
    allocated words is a programming error and raises IndexError.
    """

    def __init__(self, num_sets: int, members: Optional[List[int]] = None):
        if num_sets < 1:
            raise ValueError("SetFlags needs room for at least one set")
        self.num_words = (num_sets + WORD_BITS - 1) // WORD_BITS
        self.words = [0] * self.num_words
        for idx in members or []:
            self.set(idx)

    def _locate(self, idx: int) -> Tuple[int, int]:
        word = idx // WORD_BITS
        if idx < 0 or word >= self.num_words:
            raise IndexError(
                f"Set index {idx} is out of range for {self.num_words} flag word(s)"
            )
        return word, idx % WORD_BITS

    def set(self, idx: int) -> None:
        word, bit = self._locate(idx)
        self.words[word] |= 1 << bit

    def is_set(self, idx: int) -> bool:
        word, bit = self._locate(idx)
        return bool((self.words[word] >> bit) & 1)

    __contains__ = is_set

    def and_not(self, other: "SetFlags") -> "SetFlags":
        """Clear every bit that is set in ``other`` (in place)."""
        for i in range(self.num_words):
            self.words[i] &= ~other.words[i] & _WORD_MASK
        return self

    def or_(self, other: "SetFlags") -> "SetFlags":
        """Set every bit that is set in ``other`` (in place)."""
        for i in range(self.num_words):
            self.words[i] |= other.words[i]
        return self

    def is_zero(self) -> bool:
        return not any(self.words)

    def iter_set_bits(self) -> Iterator[int]:
        """Yield the indices of set bits in ascending order."""
        for i, word in enumerate(self.words):
            while word:
                lowest = word & -word
                yield i * WORD_BITS + lowest.bit_length() - 1
                word ^= lowest

    def copy(self) -> "SetFlags":
        new = SetFlags.__new__(SetFlags)
        new.num_words = self.num_words
        new.words = list(self.words)
        return new

    def __eq__(self, other) -> bool:
        if not isinstance(other, SetFlags):
            return NotImplemented
        return self.words == other.words

    def __repr__(self) -> str:
        return f"SetFlags({list(self.iter_set_bits())})"


@dataclass
class GenotypeCounts:
    homcom: int = 0
    het: int = 0
    homrar: int = 0
    missing: int = 0
    has_count: bool = False


class Variant:
    """A base summary-statistic variant and its analysis state.

    Holds the identity (rs, chrom, pos, alleles), the association statistic
    and p-value from the base GWAS, the threshold category, the gene-set
    membership bits used by clumping, and lazily filled genotype counts for
    the target and the LD reference panel.
    """

    def __init__(self, rs: str, chrom: Union[str, int], pos: int, ref: str, alt: str,
                 stat: float, p_value: float, num_sets: int = 1):
        self.rs = rs
        self.chrom = str(chrom)
        self.pos = int(pos)
        self.ref = ref.upper()
        self.alt = alt.upper() if alt else ''
        self.stat = float(stat)
        self.p_value = float(p_value)
        self.category = 0
        self.p_threshold = 0.0
        self.flipped = False
        self.ref_flipped = False
        self.flags = SetFlags(num_sets, [0])
        self._clumped = False
        self._target_counts = GenotypeCounts()
        self._ref_counts = GenotypeCounts()

    def __repr__(self) -> str:
        return (f"Variant({self.rs!r}, chr={self.chrom}, pos={self.pos}, "
                f"p={self.p_value:g}, category={self.category})")

    def matching(self, chrom: Optional[str], pos: Optional[int], ref: str,
                 alt: str) -> Tuple[bool, bool]:
        """Check whether another record describes the same variant.

        Unknown chromosome or position (None) and an empty alt allele act as
        wildcards. Alleles are compared directly and on the opposite strand.

        Returns:
            (matched, flipped) where flipped means ref and alt are swapped.
        """
        if chrom is not None and str(chrom) != self.chrom:
            return False, False
        if pos is not None and int(pos) != self.pos:
            return False, False
        ref = ref.upper()
        alt = alt.upper() if alt else ''
        if self.ref == ref:
            if self.alt and alt:
                return self.alt == alt, False
            return True, False
        if complement(self.ref) == ref:
            if self.alt and alt:
                return complement(self.alt) == alt, False
            return True, False
        if self.alt and alt:
            if self.ref == alt and self.alt == ref:
                return True, True
            if complement(self.ref) == alt and complement(self.alt) == ref:
                return True, True
        return False, False

    def set_category(self, cursor) -> bool:
        """Place this variant in the threshold category tracked by ``cursor``.

        The cursor holds the running category, the start of the current
        interval, the upper bound and the interval width. Variants must be
        visited in ascending p-value order.

        Returns:
            True when the distance to the interval start is too large to be
            counted in intervals.
        """
        p = self.p_value
        overflow = False
        if p > cursor.p_start + cursor.inter:
            if p > cursor.upper:
                if not logically_equal(cursor.p_start, cursor.upper):
                    cursor.p_start = cursor.upper
                    cursor.category += 1
            else:
                cursor.category += 1
                if (p - cursor.p_start) / cursor.inter > MAX_CATEGORY:
                    overflow = True
                log_inter = math.log(cursor.inter)
                n_interval = max(1, math.floor(math.exp(math.log(p - cursor.p_start) - log_inter)))
                advance = math.exp(math.log(n_interval) + log_inter)
                if n_interval > 1 and logically_equal(cursor.p_start + advance, p):
                    n_interval -= 1
                    advance = math.exp(math.log(n_interval) + log_inter)
                cursor.p_start += advance
        self.category = cursor.category
        # Full-model category: opened at p_start = upper by a variant above upper
        if p > cursor.upper and logically_equal(cursor.p_start, cursor.upper):
            self.p_threshold = 1.0
        else:
            self.p_threshold = min(cursor.p_start + cursor.inter, cursor.upper)
        return overflow

    def set_flags(self, flags: SetFlags) -> None:
        self.flags = flags
        self._clumped = False

    def in_set(self, idx: int) -> bool:
        return self.flags.is_set(idx)

    def set_indices(self) -> List[int]:
        return list(self.flags.iter_set_bits())

    @property
    def clumped(self) -> bool:
        return self._clumped

    def set_clumped(self) -> None:
        self._clumped = True

    def clump(self, target: "Variant", r2: float, use_proxy: bool,
              proxy_threshold: float = 2.0) -> None:
        """Clump ``target`` against this index variant.

        With proxy clumping and r2 above the proxy threshold the index takes
        over every set membership of the target. Otherwise the target loses
        the memberships the index already represents and is only removed once
        it has none left. The index itself is always marked as processed.
        """
        if target.clumped:
            return
        if use_proxy and r2 > proxy_threshold:
            self.flags.or_(target.flags)
            target.set_clumped()
        else:
            target.flags.and_not(self.flags)
            if target.flags.is_zero():
                target.set_clumped()
        self.set_clumped()

    def has_counts(self, use_ref: bool = False) -> bool:
        counts = self._ref_counts if use_ref else self._target_counts
        return counts.has_count

    def get_counts(self, use_ref: bool = False) -> GenotypeCounts:
        return self._ref_counts if use_ref else self._target_counts

    def set_counts(self, homcom: int, het: int, homrar: int, missing: int,
                   is_ref: bool = False) -> None:
        if is_ref:
            if self.ref_flipped:
                homcom, homrar = homrar, homcom
            self._ref_counts = GenotypeCounts(homcom, het, homrar, missing, True)
        else:
            self._target_counts = GenotypeCounts(homcom, het, homrar, missing, True)

    def maf(self, use_ref: bool = False, ploidy: int = 2) -> float:
        """Effect-allele frequency from cached counts (0 when none observed)."""
        counts = self.get_counts(use_ref)
        n_called = counts.homcom + counts.het + counts.homrar
        if n_called == 0:
            return 0.0
        return (counts.het + ploidy * counts.homrar) / (ploidy * n_called)


@dataclass
class ResultRow:
    """Regression result for one p-value threshold.

    ``threshold < 0`` marks a slot that was never recorded and ``p < 0`` a
    regression that failed to converge. ``emp_p`` and ``competitive_p`` stay
    at -1 until permutation fills them in.
    """

    threshold: float = -1.0
    r2: float = 0.0
    r2_adj: float = 0.0
    coefficient: float = 0.0
    se: float = 0.0
    p: float = -1.0
    emp_p: float = -1.0
    competitive_p: float = -1.0
    num_snp: int = 0

    @property
    def recorded(self) -> bool:
        return self.threshold >= 0

    @property
    def valid(self) -> bool:
        return self.recorded and self.p >= 0

    @property
    def t_value(self) -> float:
        if self.se == 0 or not np.isfinite(self.se):
            return 0.0
        return abs(self.coefficient / self.se)


@dataclass
class PRSSummary:
    """Best threshold of one phenotype and region, plus model context."""

    pheno: str
    set_name: str
    result: ResultRow
    r2_null: float = 0.0
    top: float = 1.0
    bottom: float = 1.0
    prevalence: Optional[float] = None
    has_competitive: bool = False

    @property
    def prs_r2(self) -> float:
        return self.result.r2 - self.r2_null

    @property
    def adjusted_r2(self) -> float:
        """Liability-scale R2 of the score (full minus null, both adjusted)"""
        return (adjust_r2(self.result.r2, self.top, self.bottom)
                - adjust_r2(self.r2_null, self.top, self.bottom))

    def to_row(self, include_adjusted: bool, include_competitive: bool,
               include_empirical: bool) -> Dict[str, Union[str, float, int]]:
        row: Dict[str, Union[str, float, int]] = {
            'Phenotype': self.pheno,
            'Set': self.set_name,
            'Threshold': self.result.threshold,
            'PRS.R2': self.prs_r2,
        }
        if include_adjusted:
            if self.prevalence is None:
                row['PRS.R2.adj'] = np.nan
            else:
                row['PRS.R2.adj'] = self.adjusted_r2
        row.update({
            'Full.R2': self.result.r2,
            'Null.R2': self.r2_null,
            'Prevalence': np.nan if self.prevalence is None else self.prevalence,
            'Coefficient': self.result.coefficient,
            'Standard.Error': self.result.se,
            'P': self.result.p,
            'Num_SNP': self.result.num_snp,
        })
        if include_competitive:
            row['Competitive.P'] = (
                self.result.competitive_p if self.result.competitive_p >= 0 else np.nan
            )
        if include_empirical:
            row['Empirical-P'] = self.result.emp_p if self.result.emp_p >= 0 else np.nan
        return row


@dataclass
class PRSResults:
    """All recorded thresholds of one phenotype and region."""

    pheno: str
    set_name: str
    rows: List[ResultRow] = field(default_factory=list)
    best_index: int = -1

    @property
    def best(self) -> Optional[ResultRow]:
        if self.best_index < 0:
            return None
        return self.rows[self.best_index]

    def recorded_rows(self) -> List[ResultRow]:
        return [row for row in self.rows if row.recorded]

    def to_dataframe(self, r2_null: float = 0.0, top: float = 1.0, bottom: float = 1.0,
                     include_adjusted: bool = False) -> pd.DataFrame:
        """Convert recorded rows to the per-threshold output table"""
        records = []
        for row in self.recorded_rows():
            r2 = row.r2 - r2_null
            record = {'Set': self.set_name, 'Threshold': row.threshold, 'R2': r2}
            if include_adjusted:
                record['R2.adj'] = adjust_r2(row.r2, top, bottom) - adjust_r2(r2_null, top, bottom)
            record.update({
                'P': row.p if row.p >= 0 else np.nan,
                'Coefficient': row.coefficient,
                'Standard.Error': row.se,
                'Num_SNP': row.num_snp,
            })
            records.append(record)
        columns = ['Set', 'Threshold', 'R2'] + (['R2.adj'] if include_adjusted else [])
        columns += ['P', 'Coefficient', 'Standard.Error', 'Num_SNP']
        return pd.DataFrame(records, columns=columns)
