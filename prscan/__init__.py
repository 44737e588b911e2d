"""
PRScan: Polygenic Risk Score threshold scanning

Builds polygenic scores from GWAS summary statistics at a series of p-value
thresholds, finds the best-fitting threshold by regression on the target
phenotype, and assesses it with label and competitive gene-set permutation.
"""

__version__ = "0.1.0"
__author__ = "PRScan Development Team"

from .association.regression import PRSCAN_Regress
from .association.permutation import PRSCAN_Permutation
from .association.competitive import PRSCAN_Competitive
from .data.genotype import DosageGenotype
from .data.loaders import load_base_file, load_target_genotype
from .pipelines.prs import PRSPipeline

__all__ = [
    'PRSCAN_Regress',
    'PRSCAN_Permutation',
    'PRSCAN_Competitive',
    'DosageGenotype',
    'load_base_file',
    'load_target_genotype',
    'PRSPipeline',
]
