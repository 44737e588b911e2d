"""
Data loading utilities for base summary statistics, target genotypes,
phenotypes, covariates and variant sets
"""

import warnings
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..utils.config import ScoreConfig
from ..utils.data_types import Variant
from ..utils.errors import NoThresholdError
from .genotype import DosageGenotype

# Values stay text; missing tokens are interpreted per sample downstream
TEXT_READ_KWARGS = dict(sep=r'\s+', dtype=str, keep_default_na=False)


def _read_table(filepath: Union[str, Path], **kwargs) -> pd.DataFrame:
    filepath = Path(filepath)
    if filepath.suffix.lower() == '.csv':
        kwargs.pop('sep', None)
    return pd.read_csv(filepath, **kwargs)


def load_base_file(filepath: Union[str, Path],
                   snp_col: str = 'SNP', chr_col: Optional[str] = 'CHR',
                   bp_col: Optional[str] = 'BP', a1_col: str = 'A1',
                   a2_col: Optional[str] = 'A2', stat_col: str = 'BETA',
                   p_col: str = 'P', is_beta: Optional[bool] = None,
                   verbose: bool = True) -> pd.DataFrame:
    """Load GWAS summary statistics.

    Args:
        filepath: Whitespace (or .csv comma) separated summary statistics
        snp_col, chr_col, bp_col, a1_col, a2_col, stat_col, p_col: Column
            names; chromosome, position and A2 are optional
        is_beta: Whether the statistic is a beta (True) or odds ratio
            (False); guessed from the column name when None
        verbose: Print a short report

    Returns:
        DataFrame with columns SNP, CHR, BP, A1, A2, STAT, P where STAT is on
        the additive (log) scale. Rows with unusable p-values or statistics
        and duplicated SNP IDs are removed.
    """
    df = _read_table(filepath, sep=r'\s+')
    required = [snp_col, a1_col, stat_col, p_col]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Base file '{filepath}' is missing required column(s): {missing}")
    if is_beta is None:
        is_beta = stat_col.upper() != 'OR'

    base = pd.DataFrame({
        'SNP': df[snp_col].astype(str),
        'CHR': df[chr_col].astype(str) if chr_col and chr_col in df.columns else None,
        'BP': pd.to_numeric(df[bp_col], errors='coerce') if bp_col and bp_col in df.columns else np.nan,
        'A1': df[a1_col].astype(str).str.upper(),
        'A2': df[a2_col].astype(str).str.upper() if a2_col and a2_col in df.columns else '',
        'STAT': pd.to_numeric(df[stat_col], errors='coerce'),
        'P': pd.to_numeric(df[p_col], errors='coerce'),
    })
    n_total = len(base)

    invalid_p = base['P'].isna() | (base['P'] < 0) | (base['P'] > 1)
    invalid_stat = base['STAT'].isna()
    if not is_beta:
        invalid_stat |= base['STAT'] <= 0
    base = base[~(invalid_p | invalid_stat)].copy()
    if not is_beta:
        base['STAT'] = np.log(base['STAT'])

    duplicated = base['SNP'].duplicated(keep=False)
    n_dup = int(base.loc[duplicated, 'SNP'].nunique())
    if n_dup:
        warnings.warn(f"{n_dup} duplicated SNP ID(s) in base file were removed")
        base = base[~duplicated]
    base = base.reset_index(drop=True)

    if verbose:
        print(f"   Base file: {n_total:,} variants read, {len(base):,} retained "
              f"({int(invalid_p.sum()):,} invalid p-value(s), {int(invalid_stat.sum()):,} invalid statistic(s))")
    return base


def match_base_to_target(base: pd.DataFrame, target_map: pd.DataFrame,
                         verbose: bool = True) -> Tuple[List[Variant], np.ndarray]:
    """Pair base variants with target genotype columns by ID and alleles.

    The target map needs SNP, CHROM, POS, REF and ALT columns, with ALT the
    allele counted by the dosages. A variant is ``flipped`` when the base
    effect allele is the target REF allele.

    Returns:
        Tuple of (variants, target column index of each variant)

    Raises:
        NoThresholdError: No base variant matches the target.
    """
    column_of = {snp: j for j, snp in enumerate(target_map['SNP'].astype(str))}
    variants: List[Variant] = []
    columns: List[int] = []
    not_found = mismatch = 0
    for row in base.itertuples(index=False):
        j = column_of.get(row.SNP)
        if j is None:
            not_found += 1
            continue
        target = target_map.iloc[j]
        chrom = row.CHR if row.CHR not in (None, 'nan') else str(target['CHROM'])
        pos = int(row.BP) if pd.notna(row.BP) else int(target['POS'])
        variant = Variant(row.SNP, chrom, pos, row.A1, row.A2, row.STAT, row.P)
        matched, flipped = variant.matching(str(target['CHROM']), int(target['POS']),
                                            str(target['ALT']), str(target['REF']))
        if not matched:
            mismatch += 1
            continue
        variant.flipped = flipped
        variants.append(variant)
        columns.append(j)

    if verbose:
        print(f"   {len(variants):,} variants matched the target "
              f"({not_found:,} not found, {mismatch:,} allele mismatch)")
    if not variants:
        raise NoThresholdError("No base variant matches the target genotypes")
    return variants, np.asarray(columns, dtype=np.int64)


def load_target_genotype(dosage_file: Union[str, Path], map_file: Union[str, Path],
                         base: pd.DataFrame, sample_file: Optional[Union[str, Path]] = None,
                         score_config: Optional[ScoreConfig] = None,
                         verbose: bool = True) -> DosageGenotype:
    """Load a numeric dosage table and align it to the base variants.

    Args:
        dosage_file: CSV with an 'ID' column followed by one column per
            variant holding ALT dosages (missing as NA or -9)
        map_file: CSV with SNP, CHROM, POS, REF, ALT per dosage column
        base: Output of ``load_base_file``
        sample_file: Optional FID/IID/PAT/MAT/SEX/Phenotype table (fam layout)
        score_config: Scoring options

    Returns:
        DosageGenotype restricted to the matched variants
    """
    dosage_df = pd.read_csv(dosage_file)
    id_col = dosage_df.columns[0]
    target_map = pd.read_csv(map_file)
    required = ['SNP', 'CHROM', 'POS', 'REF', 'ALT']
    missing = [c for c in required if c not in target_map.columns]
    if missing:
        raise ValueError(f"Map file '{map_file}' is missing required column(s): {missing}")
    markers = dosage_df.columns[1:]
    if len(markers) != len(target_map):
        raise ValueError(
            f"Map marker count ({len(target_map)}) != genotype marker count ({len(markers)})"
        )
    target_map = target_map.copy()
    target_map['SNP'] = target_map['SNP'].astype(str)

    variants, columns = match_base_to_target(base, target_map, verbose=verbose)
    dosages = dosage_df[markers].apply(pd.to_numeric, errors='coerce').to_numpy(dtype=np.float64)

    if sample_file is not None:
        samples = pd.read_csv(sample_file, sep=r'\s+', header=None, dtype=str,
                              names=['FID', 'IID', 'PAT', 'MAT', 'SEX', 'Phenotype'])
        order = {iid: i for i, iid in enumerate(dosage_df[id_col].astype(str))}
        missing_ids = [iid for iid in samples['IID'] if iid not in order]
        if missing_ids:
            raise ValueError(f"{len(missing_ids)} sample(s) in '{sample_file}' have no genotypes")
        dosages = dosages[[order[iid] for iid in samples['IID']]]
    else:
        samples = pd.DataFrame({'FID': dosage_df[id_col].astype(str),
                                'IID': dosage_df[id_col].astype(str)})
    return DosageGenotype(samples, dosages[:, columns], variants, score_config)


def load_phenotype_table(filepath: Union[str, Path]) -> pd.DataFrame:
    """Phenotype table with FID/IID (or a single ID column) kept as text"""
    return _read_table(filepath, **TEXT_READ_KWARGS)


def load_covariate_table(filepath: Union[str, Path]) -> pd.DataFrame:
    """Covariate table with FID/IID (or a single ID column) kept as text"""
    return _read_table(filepath, **TEXT_READ_KWARGS)


def load_snp_sets(filepath: Union[str, Path]) -> Dict[str, List[str]]:
    """Read variant sets.

    Either one set per line (name followed by member IDs) or, when every
    line holds a single ID, one set named after the file.
    """
    filepath = Path(filepath)
    lines = [line.split() for line in filepath.read_text().splitlines() if line.strip()]
    if not lines:
        raise ValueError(f"Set file '{filepath}' is empty")
    if all(len(tokens) == 1 for tokens in lines):
        return {filepath.stem: [tokens[0] for tokens in lines]}
    sets: Dict[str, List[str]] = {}
    for tokens in lines:
        name, members = tokens[0], tokens[1:]
        if name in sets:
            raise ValueError(f"Duplicated set name '{name}' in '{filepath}'")
        sets[name] = members
    return sets
