"""
Core data structures for geascan package
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

MISSING_GENOTYPE = -9

RESULT_COLUMNS = ['SNP', 'statistic', 'pvalue', 'calibrated_pvalue',
                  'qvalue', 'significant', 'degenerate']


class GenotypeMatrix:
    """Allele-count matrix (samples × loci)

    Values are minor-allele dosages in {0, 1, 2}; missing calls are stored as
    -9. Model fits require a complete matrix (see `is_complete`); imputation
    happens upstream.
    """

    def __init__(self, data: Union[np.ndarray, pd.DataFrame],
                 missing_value: int = MISSING_GENOTYPE):
        if isinstance(data, pd.DataFrame):
            data = data.to_numpy()
        if not isinstance(data, np.ndarray):
            raise ValueError("Data must be a numpy array or DataFrame")
        if data.ndim != 2:
            raise ValueError("Genotype matrix must be 2D (samples × loci)")

        self._missing_value = missing_value
        if np.issubdtype(data.dtype, np.floating):
            data = np.where(np.isnan(data), missing_value, data)
        self._data = np.asarray(data)

    @property
    def shape(self) -> Tuple[int, int]:
        """Matrix shape (n_samples, n_loci)"""
        return self._data.shape

    @property
    def n_individuals(self) -> int:
        """Number of samples"""
        return self.shape[0]

    @property
    def n_markers(self) -> int:
        """Number of loci"""
        return self.shape[1]

    @property
    def missing_mask(self) -> np.ndarray:
        return self._data == self._missing_value

    @property
    def is_complete(self) -> bool:
        """True when no genotype call is missing."""
        return not bool(self.missing_mask.any())

    def __getitem__(self, key):
        """Support array indexing"""
        return self._data[key]


class AssociationResults:
    """Per-locus GEA results for one method run

    Standard columns: SNP, statistic, pvalue, calibrated_pvalue, qvalue,
    significant, degenerate. Method-specific columns (per-covariate
    statistics, importances, loadings) are kept alongside.

    Instances are immutable: the table is copied on the way in and out, and
    derived results (q-values) are returned as new objects.
    """

    def __init__(self, table: pd.DataFrame,
                 method: str,
                 calibration: Optional[Any] = None,
                 metadata: Optional[Dict[str, Any]] = None):
        missing = [c for c in ('SNP', 'statistic', 'pvalue') if c not in table.columns]
        if missing:
            raise ValueError(f"Association table missing required columns: {missing}")
        snp = table['SNP'].astype(str)
        if snp.duplicated().any():
            dups = snp[snp.duplicated()].unique()[:5].tolist()
            raise ValueError(f"Duplicate locus identifiers in results: {dups}")

        data = table.copy()
        data['SNP'] = snp
        if 'calibrated_pvalue' not in data.columns:
            data['calibrated_pvalue'] = data['pvalue']
        if 'qvalue' not in data.columns:
            data['qvalue'] = np.nan
        if 'significant' not in data.columns:
            data['significant'] = False
        if 'degenerate' not in data.columns:
            data['degenerate'] = False
        extra = [c for c in data.columns if c not in RESULT_COLUMNS]
        self._table = data[RESULT_COLUMNS + extra].reset_index(drop=True)
        self.method = method
        self.calibration = calibration
        self.metadata: Dict[str, Any] = dict(metadata or {})

    @property
    def n_markers(self) -> int:
        return len(self._table)

    @property
    def snp_ids(self) -> List[str]:
        return self._table['SNP'].tolist()

    @property
    def statistics(self) -> np.ndarray:
        return self._table['statistic'].to_numpy(dtype=np.float64)

    @property
    def pvalues(self) -> np.ndarray:
        return self._table['pvalue'].to_numpy(dtype=np.float64)

    @property
    def calibrated_pvalues(self) -> np.ndarray:
        return self._table['calibrated_pvalue'].to_numpy(dtype=np.float64)

    @property
    def qvalues(self) -> np.ndarray:
        return self._table['qvalue'].to_numpy(dtype=np.float64)

    @property
    def significant(self) -> np.ndarray:
        return self._table['significant'].to_numpy(dtype=bool)

    @property
    def degenerate(self) -> np.ndarray:
        return self._table['degenerate'].to_numpy(dtype=bool)

    @property
    def calibration_checked(self) -> bool:
        return self.calibration is not None

    def with_qvalues(self, qvalues: np.ndarray, significant: np.ndarray,
                     **metadata: Any) -> "AssociationResults":
        """Return a copy carrying q-values and significance flags."""
        table = self._table.copy()
        table['qvalue'] = np.asarray(qvalues, dtype=np.float64)
        table['significant'] = np.asarray(significant, dtype=bool)
        merged = dict(self.metadata)
        merged.update(metadata)
        return AssociationResults(table, self.method, calibration=self.calibration, metadata=merged)

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to pandas DataFrame"""
        return self._table.copy()

    def to_series(self, column: str = 'calibrated_pvalue') -> pd.Series:
        """One column keyed by locus identifier."""
        return pd.Series(self._table[column].to_numpy(), index=self._table['SNP'].to_numpy(), name=column)


@dataclass(frozen=True)
class CandidateSet:
    """Named set of loci flagged by one method under one threshold rule."""

    name: str
    method: str
    rule: str
    loci: FrozenSet[str]
    threshold: float = float('nan')
    structure_corrected: bool = False
    info: str = ""

    def __post_init__(self):
        object.__setattr__(self, 'loci', frozenset(str(l) for l in self.loci))

    @property
    def size(self) -> int:
        return len(self.loci)

    def sorted_loci(self) -> List[str]:
        return sorted(self.loci)

    def __contains__(self, locus_id: object) -> bool:
        return locus_id in self.loci

    def __len__(self) -> int:
        return len(self.loci)
