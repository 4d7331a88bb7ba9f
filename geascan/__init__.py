"""
geascan: multi-method gene-environment association (GEA) scans

Identifies candidate loci associated with environmental covariates using
a latent factor mixed model (LFMM), gradient-forest style random forests
ranked against an empirical neutral null (GF), and redundancy analysis with
and without population-structure conditioning (RDA / pRDA), then combines
the per-method candidate sets into a consensus.
"""

__version__ = "0.1.0"

from .utils.config import AnalysisConfig
from .utils.data_types import AssociationResults, CandidateSet, GenotypeMatrix
from .data.alignment import AlignedData, CovariateScaler, align_inputs
from .data.structure import StructureAssignment
from .association.lfmm import GEA_LFMM, LFMMMethod
from .association.gradient_forest import GEA_GF, GradientForestMethod
from .association.rda import GEA_RDA, RDAMethod
from .core.thresholds import build_candidate_sets
from .core.consensus import combine, combine_groups
from .pipelines.gea import GEAPipeline

__all__ = [
    'AnalysisConfig',
    'AssociationResults',
    'CandidateSet',
    'GenotypeMatrix',
    'AlignedData',
    'CovariateScaler',
    'align_inputs',
    'StructureAssignment',
    'GEA_LFMM',
    'LFMMMethod',
    'GEA_GF',
    'GradientForestMethod',
    'GEA_RDA',
    'RDAMethod',
    'build_candidate_sets',
    'combine',
    'combine_groups',
    'GEAPipeline',
]
