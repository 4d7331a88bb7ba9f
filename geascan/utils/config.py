"""
Immutable per-run analysis configuration
"""

from dataclasses import dataclass, fields, replace as _dc_replace
from typing import Any, Dict, Mapping, Optional, Tuple

CALIBRATION_MODES = ('gif', 'none')


@dataclass(frozen=True)
class AnalysisConfig:
    """Parameters shared by every engine of one analysis run.

    Passed explicitly to each engine so that runs are reproducible and
    safe to execute in parallel.

    Attributes:
        seed: Base random seed (forests, robust covariance, down-sampling)
        n_jobs: Worker count for per-locus fits (<= 0 uses all cores)
        fdr_level: FDR level used for q-value significance flags
        k_factors: Latent factors for LFMM. None means "use the number of
            upstream structure groups"; this is an expert-supplied value and
            is never estimated from the data.
        lfmm_lambda: Ridge penalty of the latent factor model
        calibration: 'gif' (genomic inflation factor) or 'none'
        full_test: LFMM combined test across covariates (True) or
            per-covariate tests (False)
        n_trees: Trees per random forest in the empirical-null engine
        min_polymorphic_groups: Minimum number of groups in which a locus must
            be variable to be fitted by the empirical-null engine
        n_loci_sample: Optional down-sampling count for the empirical-null engine
        rda_axes: Number of ordination axes used for outlier detection
        n_structure_pcs: Genomic PCs used as conditioning matrix in partial RDA
        pvalue_cutoff: Optional absolute p-value threshold rule
        top_fractions: Fractions of lowest p-values kept by the rank rule
        bonferroni_alpha: Family-wise alpha for the Bonferroni rule
        calibration_bins: Histogram bins used by the calibration check
        calibration_alpha: Goodness-of-fit level below which a histogram is
            reported as not flat
        verbose: Print progress information
    """

    seed: int = 42
    n_jobs: int = 1
    fdr_level: float = 0.05
    k_factors: Optional[int] = None
    lfmm_lambda: float = 1e-5
    calibration: str = 'gif'
    full_test: bool = True
    n_trees: int = 500
    min_polymorphic_groups: int = 6
    n_loci_sample: Optional[int] = None
    rda_axes: int = 2
    n_structure_pcs: int = 2
    pvalue_cutoff: Optional[float] = None
    top_fractions: Tuple[float, ...] = (0.002, 0.005)
    bonferroni_alpha: float = 0.05
    calibration_bins: int = 10
    calibration_alpha: float = 0.001
    verbose: bool = True

    def __post_init__(self):
        if not 0.0 < self.fdr_level < 1.0:
            raise ValueError(f"fdr_level must be in (0, 1), got {self.fdr_level}")
        if self.calibration not in CALIBRATION_MODES:
            raise ValueError(f"calibration must be one of {CALIBRATION_MODES}, got '{self.calibration}'")
        if self.k_factors is not None and self.k_factors <= 0:
            raise ValueError("k_factors must be a positive integer")
        if self.lfmm_lambda <= 0:
            raise ValueError("lfmm_lambda must be positive")
        if self.n_trees <= 0:
            raise ValueError("n_trees must be positive")
        if self.min_polymorphic_groups < 0:
            raise ValueError("min_polymorphic_groups must be non-negative")
        if self.n_loci_sample is not None and self.n_loci_sample <= 0:
            raise ValueError("n_loci_sample must be positive when given")
        if self.rda_axes <= 0:
            raise ValueError("rda_axes must be positive")
        if self.n_structure_pcs < 0:
            raise ValueError("n_structure_pcs must be non-negative")
        if self.pvalue_cutoff is not None and not 0.0 < self.pvalue_cutoff <= 1.0:
            raise ValueError("pvalue_cutoff must be in (0, 1]")
        # Lists from JSON/argparse are frozen into a tuple
        object.__setattr__(self, 'top_fractions', tuple(float(f) for f in self.top_fractions))
        for fraction in self.top_fractions:
            if not 0.0 < fraction <= 1.0:
                raise ValueError(f"top fraction must be in (0, 1], got {fraction}")
        if not 0.0 < self.bonferroni_alpha < 1.0:
            raise ValueError("bonferroni_alpha must be in (0, 1)")
        if self.calibration_bins < 2:
            raise ValueError("calibration_bins must be at least 2")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "AnalysisConfig":
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        return cls(**dict(values))

    def replace(self, **changes: Any) -> "AnalysisConfig":
        """Return a copy with the given fields changed."""
        return _dc_replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
