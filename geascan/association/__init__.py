"""
Gene-environment association engines
"""

from .base import GEAMethod
from .lfmm import GEA_LFMM, LFMM, LFMMFit, LFMMMethod
from .gradient_forest import GEA_GF, GFOptions, GradientForestMethod, empirical_pvalue, fit_per_locus
from .rda import GEA_RDA, RDA, RDAFit, RDAMethod, score_outliers

__all__ = [
    'GEAMethod',
    'GEA_LFMM', 'LFMM', 'LFMMFit', 'LFMMMethod',
    'GEA_GF', 'GFOptions', 'GradientForestMethod', 'empirical_pvalue', 'fit_per_locus',
    'GEA_RDA', 'RDA', 'RDAFit', 'RDAMethod', 'score_outliers',
]
