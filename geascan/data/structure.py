"""
Upstream population-structure assignments

Admixture / clustering is estimated outside geascan. Its output is consumed
as an opaque oracle mapping each individual to its dominant ancestry group.
"""

from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Union

import numpy as np
import pandas as pd

from .loaders import _read_table, _resolve_id_column
from ..utils.errors import AlignmentError


class StructureAssignment:
    """Individual → dominant structure group lookup."""

    def __init__(self, assignments: Mapping[str, str]):
        self._assignments: Dict[str, str] = {str(k): str(v) for k, v in assignments.items()}

    def assign_group(self, individual_id: str) -> str:
        try:
            return self._assignments[str(individual_id)]
        except KeyError:
            raise AlignmentError(
                f"Individual '{individual_id}' has no structure group assignment"
            ) from None

    def assign_groups(self, individual_ids: Iterable[str]) -> List[str]:
        return [self.assign_group(ind) for ind in individual_ids]

    @property
    def groups(self) -> List[str]:
        return sorted(set(self._assignments.values()))

    @property
    def n_groups(self) -> int:
        return len(self.groups)

    def __len__(self) -> int:
        return len(self._assignments)

    @classmethod
    def from_proportions(cls, proportions: pd.DataFrame) -> "StructureAssignment":
        """Dominant group = column with the largest ancestry proportion.

        Args:
            proportions: DataFrame indexed by individual, one numeric column
                per ancestry group (e.g. an ADMIXTURE Q matrix)
        """
        values = proportions.to_numpy(dtype=np.float64)
        if np.isnan(values).any():
            raise AlignmentError("Ancestry proportions contain missing values")
        labels = np.asarray(proportions.columns.astype(str))[np.argmax(values, axis=1)]
        return cls(dict(zip(proportions.index.astype(str), labels)))

    @classmethod
    def from_file(cls, filepath: Union[str, Path], id_column: str = 'ID') -> "StructureAssignment":
        """Load either a two-column label table or an ancestry-proportion table."""
        df = _read_table(filepath)
        df = _resolve_id_column(df, id_column, ['ID', 'id', 'IID', 'sample', 'Sample', 'individual'])
        df['ID'] = df['ID'].astype(str)
        others = [c for c in df.columns if c != 'ID']
        if not others:
            raise ValueError(f"Structure file '{filepath}' has no group column")

        if len(others) == 1 and not pd.api.types.is_float_dtype(df[others[0]]):
            labels = df[others[0]]
            if labels.isna().any():
                raise AlignmentError(f"Structure file '{filepath}' has individuals without a group")
            return cls(dict(zip(df['ID'], labels.astype(str))))

        return cls.from_proportions(df.set_index('ID')[others].apply(pd.to_numeric, errors='coerce'))
