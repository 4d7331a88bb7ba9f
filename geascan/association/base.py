"""
Common capability interface of the GEA engines

Every engine consumes the same AlignedData and exposes the same
fit → statistics → results sequence, so thresholding and consensus can treat
them polymorphically.
"""

from abc import ABC, abstractmethod
from typing import Optional

import pandas as pd

from ..data.alignment import AlignedData
from ..utils.config import AnalysisConfig
from ..utils.data_types import AssociationResults


class GEAMethod(ABC):
    """One GEA strategy bound to an immutable AnalysisConfig.

    Attributes:
        name: Method label used for candidate-set names and output files
        structure_corrected: Whether the method controls for population
            structure (drives the with/without-correction consensus groupings)
        level: Sample level the method expects ('individual' or 'population')
    """

    name: str = ''
    structure_corrected: bool = False
    level: str = 'individual'

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()
        self._results: Optional[AssociationResults] = None

    @abstractmethod
    def _run(self, data: AlignedData) -> AssociationResults:
        """Fit the model on `data` and return per-locus results."""

    def fit(self, data: AlignedData) -> "GEAMethod":
        if data.level != self.level:
            raise ValueError(
                f"{self.name} expects {self.level}-level data, got {data.level}-level"
            )
        self._results = self._run(data)
        return self

    @property
    def is_fitted(self) -> bool:
        return self._results is not None

    def results(self) -> AssociationResults:
        if self._results is None:
            raise RuntimeError(f"{self.name} has not been fit")
        return self._results

    def statistics(self) -> pd.Series:
        """Per-locus statistic keyed by locus identifier."""
        return self.results().to_series('statistic')

    def pvalues(self, calibrated: bool = True) -> pd.Series:
        return self.results().to_series('calibrated_pvalue' if calibrated else 'pvalue')

    def __repr__(self) -> str:
        state = 'fitted' if self.is_fitted else 'unfitted'
        return f"{type(self).__name__}(name={self.name!r}, {state})"
