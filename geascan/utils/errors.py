"""
Exceptions and warnings raised by the GEA engines
"""


class GEAError(ValueError):
    """Base class for structural problems that abort a method run."""


class AlignmentError(GEAError):
    """Genomic and environmental inputs cannot be matched or are incomplete."""


class ConfoundingRankError(GEAError):
    """Number of latent factors is invalid for the sample size."""


class ThresholdPreconditionError(GEAError):
    """q-values requested on p-values that were never calibration-checked."""


class LocusFitError(RuntimeError):
    """A per-locus model fit raised; the whole method run is aborted."""

    def __init__(self, locus_id: str, message: str):
        super().__init__(f"Model fit failed for locus '{locus_id}': {message}")
        self.locus_id = locus_id
        self.message = message

    def __reduce__(self):
        # raised inside worker processes; must survive pickling
        return (type(self), (self.locus_id, self.message))


class CalibrationWarning(UserWarning):
    """p-value histogram deviates from uniform under the null."""


class DegenerateFitWarning(UserWarning):
    """One or more loci produced a zero-variance / degenerate fit."""


class MinorAlleleWarning(UserWarning):
    """Nominal minor allele has mean population frequency above 0.5."""
