"""
Association testing for polygenic scores
"""

from .regression import PRSCAN_Regress
from .permutation import PRSCAN_Permutation
from .competitive import PRSCAN_Competitive

__all__ = ['PRSCAN_Regress', 'PRSCAN_Permutation', 'PRSCAN_Competitive']
