"""
Result file writers.

All tables are tab separated and written with pandas; missing values
(sentinel -1 p-values, absent competitive or empirical p-values) appear as NA.
"""

from pathlib import Path
from typing import Dict, List, Sequence, Union

import numpy as np
import pandas as pd

from ..data.genotype import Genotype
from ..utils.data_types import PRSResults, PRSSummary

TABLE_KWARGS = dict(sep='\t', index=False, na_rep='NA')


def output_prefix(prefix: Union[str, Path], pheno_name: str, n_pheno: int) -> str:
    """File prefix of one phenotype; the name is only added with several phenotypes"""
    prefix = str(prefix)
    return f"{prefix}.{pheno_name}" if n_pheno > 1 else prefix


def write_prsice(path: Union[str, Path], results: Sequence[PRSResults], r2_null: float,
                 top: float = 1.0, bottom: float = 1.0,
                 include_adjusted: bool = False, adjusted_valid: bool = True) -> Path:
    """Write every valid threshold of every region of one phenotype.

    Args:
        path: Output file
        results: Per-region scan results
        r2_null: R2 of the covariate-only model
        top, bottom: Liability adjustment terms
        include_adjusted: Add the R2.adj column
        adjusted_valid: False for continuous phenotypes, whose R2.adj is NA
    """
    frames = []
    for result in results:
        df = result.to_dataframe(r2_null, top, bottom, include_adjusted)
        df = df[df['P'].notna()].copy()
        if include_adjusted and not adjusted_valid:
            df['R2.adj'] = np.nan
        frames.append(df)
    table = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
    path = Path(path)
    table.to_csv(path, **TABLE_KWARGS)
    return path


def write_best(path: Union[str, Path], genotype: Genotype,
               best_scores: Dict[str, np.ndarray]) -> Path:
    """Write the best-threshold score of every sample.

    With a single region the score column is called PRS, otherwise one column
    per region named after it. Regions without a best score are NA.
    """
    n_sample = genotype.sample_count()
    table = pd.DataFrame({
        'FID': genotype.samples['FID'].values,
        'IID': genotype.samples['IID'].values,
        'In_Regression': np.where(genotype.in_regression, 'Yes', 'No'),
    })
    region_names = [name for name in genotype.region_names if name != 'Background']
    if len(region_names) == 1:
        scores = best_scores.get(region_names[0])
        table['PRS'] = scores if scores is not None else np.full(n_sample, np.nan)
    else:
        for name in region_names:
            scores = best_scores.get(name)
            table[name] = scores if scores is not None else np.full(n_sample, np.nan)
    path = Path(path)
    table.to_csv(path, **TABLE_KWARGS)
    return path


def write_all_scores(path: Union[str, Path], genotype: Genotype,
                     columns: Dict[str, np.ndarray]) -> Path:
    """Write the score of every sample at every recorded threshold."""
    table = pd.DataFrame({
        'FID': genotype.samples['FID'].values,
        'IID': genotype.samples['IID'].values,
    })
    if columns:
        table = pd.concat([table, pd.DataFrame(columns)], axis=1)
    path = Path(path)
    table.to_csv(path, **TABLE_KWARGS)
    return path


def all_score_column(region_name: str, threshold: float, gene_set_mode: bool) -> str:
    return f"{region_name}_{threshold:g}" if gene_set_mode else f"Pt_{threshold:g}"


def write_summary(path: Union[str, Path], summaries: List[PRSSummary],
                  include_competitive: bool, include_empirical: bool) -> Path:
    """Write the best threshold of every phenotype and region."""
    include_adjusted = any(s.prevalence is not None for s in summaries)
    rows = [s.to_row(include_adjusted, include_competitive, include_empirical) for s in summaries]
    table = pd.DataFrame(rows)
    if 'P' in table.columns:
        table['P'] = table['P'].where(table['P'] >= 0)
    path = Path(path)
    table.to_csv(path, **TABLE_KWARGS)
    return path
