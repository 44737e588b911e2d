"""
Phenotype vector and design matrix construction.

Rows follow the genotype sample order. The design matrix has the intercept
in column 0, a placeholder for the polygenic score in column 1 and the
covariates after that, with factor covariates expanded into indicator
columns (the first level seen in the covariate table is the reference).
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..utils.errors import PhenotypeError
from .genotype import Genotype

MISSING_TOKEN = 'NA'
_MISSING_TOKENS = (MISSING_TOKEN, 'NAN', '')
COVARIATE_LOSS_WARNING = 0.05


@dataclass
class PhenotypeMatrix:
    """Regression inputs of one phenotype.

    Attributes:
        name: Phenotype name used in output files
        is_binary: Whether the trait is case/control coded 0/1
        y: Phenotype values (n,)
        X: Design matrix (n x p)
        matrix_index: Genotype sample index of every row
        covariate_names: Names of the columns after the score column
    """

    name: str
    is_binary: bool
    y: np.ndarray
    X: np.ndarray
    matrix_index: np.ndarray
    covariate_names: List[str] = field(default_factory=list)
    num_case: int = 0
    num_control: int = 0

    @property
    def n_sample(self) -> int:
        return len(self.y)

    @property
    def case_ratio(self) -> float:
        total = self.num_case + self.num_control
        return self.num_case / total if total else 0.0

    @property
    def has_covariates(self) -> bool:
        return self.X.shape[1] > 2


def _sample_key(fid: str, iid: str, ignore_fid: bool, delim: str) -> str:
    return iid if ignore_fid else f"{fid}{delim}{iid}"


def _table_keys(table: pd.DataFrame, ignore_fid: bool, delim: str) -> List[str]:
    if ignore_fid:
        id_col = 'IID' if 'IID' in table.columns else table.columns[0]
        return table[id_col].astype(str).tolist()
    if 'FID' not in table.columns or 'IID' not in table.columns:
        raise PhenotypeError("Table needs 'FID' and 'IID' columns unless ignore_fid is set")
    return [_sample_key(f, i, False, delim)
            for f, i in zip(table['FID'].astype(str), table['IID'].astype(str))]


def _parse_binary(token: str) -> int:
    value = float(token)
    if value not in (0.0, 1.0, 2.0):
        raise ValueError(f"Invalid binary phenotype: {token}")
    return int(value)


def build_phenotype_vector(genotype: Genotype, pheno_col: str,
                           pheno_table: Optional[pd.DataFrame] = None,
                           binary: bool = True, ignore_fid: bool = False,
                           include_nonfounders: bool = False, delim: str = ' ',
                           verbose: bool = True) -> Tuple[List[str], np.ndarray, np.ndarray, int, int]:
    """Collect valid phenotype values in genotype sample order.

    Samples without a value, with 'NA', or (unless ``include_nonfounders``)
    non-founders are skipped. Binary traits accept 0/1 or 1/2 coding.

    Args:
        genotype: Genotype store providing sample order and founder status
        pheno_col: Column holding the trait
        pheno_table: Phenotype table; None uses the 'Phenotype' column of the
            genotype sample table
        binary: Whether the trait is binary
        ignore_fid: Match samples on IID only
        include_nonfounders: Keep samples with parents in the data
        delim: Separator between FID and IID in sample keys
        verbose: Print the phenotype report

    Returns:
        Tuple of (sample keys, values, genotype sample indices, cases, controls)

    Raises:
        PhenotypeError: No usable sample, a single continuous value, mixed
            binary coding, no cases or no controls, duplicated IDs.
    """
    sample_ct = genotype.sample_count()
    if pheno_table is None:
        if 'Phenotype' not in genotype.samples.columns:
            raise PhenotypeError("No phenotype table given and samples carry no phenotype")
        source = dict(zip(
            [genotype.sample_id(i, ignore_fid, delim) for i in range(sample_ct)],
            genotype.samples['Phenotype'].astype(str),
        ))
    else:
        if pheno_col not in pheno_table.columns:
            raise PhenotypeError(f"Phenotype column '{pheno_col}' not found")
        keys = _table_keys(pheno_table, ignore_fid, delim)
        duplicated = pd.Series(keys).duplicated()
        if duplicated.any():
            raise PhenotypeError(
                f"Duplicated sample ID in phenotype table: {keys[int(np.argmax(duplicated.values))]}"
            )
        source = dict(zip(keys, pheno_table[pheno_col].astype(str).str.strip()))

    values: List[float] = []
    sample_keys: List[str] = []
    sample_index: List[int] = []
    num_not_found = 0
    invalid = 0
    for i in range(sample_ct):
        key = genotype.sample_id(i, ignore_fid, delim)
        token = source.get(key)
        founder_ok = include_nonfounders or genotype.is_founder(i)
        if token is None or token.upper() in _MISSING_TOKENS or not founder_ok:
            num_not_found += 1
            continue
        try:
            values.append(_parse_binary(token) if binary else float(token))
        except ValueError:
            invalid += 1
            continue
        sample_keys.append(key)
        sample_index.append(i)

    message = [f"{pheno_col} is a {'binary' if binary else 'continuous'} phenotype"]
    if num_not_found:
        message.append(f"{num_not_found} sample(s) without phenotype")
    if invalid:
        message.append(f"{invalid} sample(s) with invalid phenotype")

    if num_not_found == sample_ct:
        hint = ("Maybe the first column of your phenotype table is the FID?" if ignore_fid
                else "Maybe your phenotype table does not contain the FID? Consider ignore_fid")
        raise PhenotypeError(f"No sample left: none of the target samples have a phenotype. {hint}")
    if invalid == sample_ct:
        raise PhenotypeError("No sample left: all samples have invalid phenotypes")
    if not values:
        raise PhenotypeError("No phenotype presented")

    y = np.asarray(values, dtype=np.float64)
    num_case = num_control = 0
    if binary:
        if y.max() > 1:
            y = y - 1
            if (y < 0).any():
                raise PhenotypeError("Mixed encoding! Both 0/1 and 1/2 encoding found")
        num_case = int(np.sum(y == 1))
        num_control = int(np.sum(y == 0))
        message.append(f"{num_control} control(s)")
        message.append(f"{num_case} case(s)")
        if num_control == 0:
            raise PhenotypeError("There are no control samples")
        if num_case == 0:
            raise PhenotypeError("There are no cases")
    else:
        if np.allclose(y, y[0], rtol=0, atol=np.finfo(np.float64).eps * max(1.0, abs(y[0]))):
            note = " and they are all -9" if y[0] == -9 else ""
            raise PhenotypeError(f"Not enough valid phenotype: only one phenotype value detected{note}")
        message.append(f"{len(y)} sample(s) with valid phenotype")

    if verbose:
        print("   " + "\n   ".join(message))
    return sample_keys, y, np.asarray(sample_index, dtype=np.int64), num_case, num_control


def _validate_covariate(token: str, is_factor: bool) -> bool:
    if token.upper() in _MISSING_TOKENS:
        return False
    if is_factor:
        return True
    try:
        float(token)
    except ValueError:
        return False
    return True


def build_covariate_matrix(sample_keys: List[str], cov_table: pd.DataFrame,
                           cov_cols: List[str], factor_cols: Optional[List[str]] = None,
                           ignore_fid: bool = False, delim: str = ' ',
                           verbose: bool = True) -> Tuple[np.ndarray, np.ndarray, List[str]]:
    """Covariate columns for the samples that have a phenotype.

    Samples with a missing ('NA') or non-numeric covariate are removed.

    Args:
        sample_keys: Keys of samples with a valid phenotype, in matrix order
        cov_table: Covariate table (values kept as strings)
        cov_cols: Covariates to include
        factor_cols: Covariates to treat as categorical
        ignore_fid: Match samples on IID only
        delim: Separator between FID and IID in sample keys
        verbose: Print the covariate report

    Returns:
        Tuple of (kept row positions into ``sample_keys``, covariate block,
        column names)

    Raises:
        PhenotypeError: Duplicated IDs, or every sample removed.
    """
    factor_cols = list(factor_cols or [])
    missing_cols = [c for c in cov_cols if c not in cov_table.columns]
    if missing_cols:
        raise PhenotypeError(f"Covariate columns not found: {missing_cols}")

    row_of: Dict[str, int] = {key: i for i, key in enumerate(sample_keys)}
    keys = _table_keys(cov_table, ignore_fid, delim)
    tokens = cov_table[cov_cols].astype(str).apply(lambda s: s.str.strip())
    missing_count = {c: 0 for c in cov_cols}
    factor_levels: Dict[str, Dict[str, int]] = {c: {} for c in factor_cols}
    valid_rows: List[Tuple[int, int]] = []
    seen = set()
    dup_count = 0

    for table_pos, key in enumerate(keys):
        if key not in row_of:
            continue
        row_tokens = tokens.iloc[table_pos]
        valid = True
        for col in cov_cols:
            if not _validate_covariate(row_tokens[col], col in factor_levels):
                missing_count[col] += 1
                valid = False
        if not valid:
            continue
        if key in seen:
            dup_count += 1
            continue
        seen.add(key)
        valid_rows.append((row_of[key], table_pos))
        for col in factor_cols:
            levels = factor_levels[col]
            level = row_tokens[col].upper()
            if level not in levels:
                levels[level] = len(levels)

    if dup_count:
        raise PhenotypeError(f"{dup_count} duplicated IDs in covariate table")

    report = ["Include Covariates:", "Name\tMissing\tNumber of levels"]
    for col in cov_cols:
        n_level = str(len(factor_levels[col])) if col in factor_levels else '-'
        report.append(f"{col}\t{missing_count[col]}\t{n_level}")
    if verbose:
        print("   " + "\n   ".join(report))

    num_sample = len(sample_keys)
    removed = num_sample - len(valid_rows)
    if not valid_rows:
        culprits = [c for c in cov_cols if missing_count[c] == num_sample]
        detail = f" Invalid covariate(s): {culprits}" if culprits else ""
        raise PhenotypeError(f"All samples removed due to missingness in covariates.{detail}")
    if removed and verbose:
        print(f"   {removed} sample(s) with invalid covariate")
    if num_sample and removed / num_sample > COVARIATE_LOSS_WARNING:
        warnings.warn(
            f"More than {100 * removed / num_sample:.2f}% of your samples were removed! "
            "You should check if your covariate table is correct"
        )

    # Matrix rows keep the phenotype (genotype) order
    valid_rows.sort()
    names: List[str] = []
    for col in cov_cols:
        if col in factor_levels:
            ordered = sorted(factor_levels[col].items(), key=lambda kv: kv[1])
            names.extend(f"{col}_{level}" for level, _ in ordered[1:])
        else:
            names.append(col)
    block = np.zeros((len(valid_rows), len(names)))
    for out_row, (_, table_pos) in enumerate(valid_rows):
        row_tokens = tokens.iloc[table_pos]
        col_idx = 0
        for col in cov_cols:
            if col in factor_levels:
                n_level = len(factor_levels[col])
                level = factor_levels[col][row_tokens[col].upper()]
                if level > 0:
                    block[out_row, col_idx + level - 1] = 1.0
                col_idx += n_level - 1
            else:
                block[out_row, col_idx] = float(row_tokens[col])
                col_idx += 1
    kept = np.array([row for row, _ in valid_rows], dtype=np.int64)
    return kept, block, names


def prepare_phenotype(genotype: Genotype, pheno_col: str,
                      pheno_table: Optional[pd.DataFrame] = None,
                      binary: bool = True, cov_table: Optional[pd.DataFrame] = None,
                      cov_cols: Optional[List[str]] = None,
                      factor_cols: Optional[List[str]] = None,
                      ignore_fid: bool = False, include_nonfounders: bool = False,
                      delim: str = ' ', verbose: bool = True) -> PhenotypeMatrix:
    """Build the phenotype vector and design matrix for one trait."""
    sample_keys, y, sample_index, num_case, num_control = build_phenotype_vector(
        genotype, pheno_col, pheno_table, binary=binary, ignore_fid=ignore_fid,
        include_nonfounders=include_nonfounders, delim=delim, verbose=verbose,
    )
    covariate_names: List[str] = []
    if cov_table is not None and cov_cols:
        kept, block, covariate_names = build_covariate_matrix(
            sample_keys, cov_table, list(cov_cols), factor_cols,
            ignore_fid=ignore_fid, delim=delim, verbose=verbose,
        )
        y = y[kept]
        sample_index = sample_index[kept]
        X = np.column_stack([np.ones(len(kept)), np.ones(len(kept)), block])
        if binary:
            num_case = int(np.sum(y == 1))
            num_control = int(np.sum(y == 0))
            if num_control == 0:
                raise PhenotypeError("There are no control samples")
            if num_case == 0:
                raise PhenotypeError("There are no cases")
        if verbose:
            print(f"   After reading the covariates, {len(y)} sample(s) included in the analysis")
    else:
        X = np.ones((len(y), 2))
    return PhenotypeMatrix(
        name=pheno_col,
        is_binary=binary,
        y=y,
        X=X,
        matrix_index=sample_index,
        covariate_names=covariate_names,
        num_case=num_case,
        num_control=num_control,
    )


def flag_regression_samples(genotype: Genotype, matrix: PhenotypeMatrix) -> None:
    """Mark regression samples and the reference group for standardisation.

    With control standardisation on a binary trait only the controls in the
    regression define the mean and standard deviation.
    """
    genotype.in_regression[:] = False
    genotype.in_regression[matrix.matrix_index] = True
    genotype.exclude_std[:] = False
    if matrix.is_binary and genotype.score_config.score_method == 'con_std':
        genotype.exclude_std[:] = True
        genotype.exclude_std[matrix.matrix_index[matrix.y == 0]] = False
