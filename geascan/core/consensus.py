"""
Consensus engine: set algebra over named candidate sets

Pure, deterministic set operations; no statistics happen here. Inputs are
treated as sets, so duplicates and ordering never affect the outcome.
"""

from dataclasses import dataclass
from itertools import combinations
from numbers import Number
from pathlib import Path
from typing import Any, Dict, FrozenSet, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from ..data.loaders import load_locus_list
from ..utils.data_types import CandidateSet

WITH_STRUCTURE = 'with_structure_correction'
WITHOUT_STRUCTURE = 'without_structure_correction'

SetsInput = Union[Mapping[str, Union[CandidateSet, Iterable[Hashable]]], Sequence[CandidateSet]]


def _sort_key(item: Hashable) -> Tuple[int, Any]:
    if isinstance(item, Number):
        return (0, item)
    return (1, str(item))


def sorted_members(items: Iterable[Hashable]) -> List[Hashable]:
    return sorted(set(items), key=_sort_key)


@dataclass(frozen=True)
class ConsensusReport:
    """Sizes, pairwise and full intersections and union of named sets."""

    names: Tuple[str, ...]
    sets: Mapping[str, FrozenSet[Hashable]]
    pairwise: Mapping[Tuple[str, str], FrozenSet[Hashable]]
    intersection: FrozenSet[Hashable]
    union: FrozenSet[Hashable]

    @property
    def sizes(self) -> Dict[str, int]:
        return {name: len(self.sets[name]) for name in self.names}

    @property
    def intersection_count(self) -> int:
        return len(self.intersection)

    @property
    def union_count(self) -> int:
        return len(self.union)

    def pair(self, first: str, second: str) -> FrozenSet[Hashable]:
        """Intersection of two named sets (argument order irrelevant)."""
        key = tuple(sorted((first, second)))
        if key not in self.pairwise:
            raise KeyError(f"No pairwise intersection for {first!r} and {second!r}")
        return self.pairwise[key]

    def members(self, names: Optional[Sequence[str]] = None) -> List[Hashable]:
        """Sorted members shared by `names` (all sets by default)."""
        if names is None:
            return sorted_members(self.intersection)
        missing = [n for n in names if n not in self.sets]
        if missing:
            raise KeyError(f"Unknown candidate sets: {missing}")
        shared = frozenset.intersection(*(self.sets[n] for n in names)) if names else frozenset()
        return sorted_members(shared)

    def to_dataframe(self) -> pd.DataFrame:
        """One row per set, pairwise intersection, full intersection and union."""
        rows = []
        for name in self.names:
            rows.append(_row(name, [name], self.sets[name]))
        for (a, b), shared in self.pairwise.items():
            rows.append(_row(f"{a} & {b}", [a, b], shared))
        if len(self.names) > 2:
            rows.append(_row('intersection', self.names, self.intersection))
        rows.append(_row('union', self.names, self.union))
        return pd.DataFrame(rows, columns=['Set', 'Methods', 'Size', 'Members'])


def _row(label: str, names: Sequence[str], members: Iterable[Hashable]) -> Dict[str, Any]:
    ordered = sorted_members(members)
    return {
        'Set': label,
        'Methods': ';'.join(names),
        'Size': len(ordered),
        'Members': ';'.join(str(m) for m in ordered),
    }


def _normalize(named_candidate_sets: SetsInput) -> Dict[str, FrozenSet[Hashable]]:
    if isinstance(named_candidate_sets, Mapping):
        items = named_candidate_sets.items()
    else:
        items = [(cs.name, cs) for cs in named_candidate_sets]
    normalized: Dict[str, FrozenSet[Hashable]] = {}
    for name, value in items:
        name = str(name)
        if name in normalized:
            raise ValueError(f"Duplicate candidate set name: {name!r}")
        normalized[name] = value.loci if isinstance(value, CandidateSet) else frozenset(value)
    return normalized


def combine(named_candidate_sets: SetsInput,
            methods: Optional[Sequence[str]] = None) -> ConsensusReport:
    """Pairwise and full intersections of named candidate sets

    Args:
        named_candidate_sets: Mapping name → locus identifiers (or
            CandidateSet), or a sequence of CandidateSet keyed by their name
        methods: Optional subset of set names to combine

    Returns:
        ConsensusReport
    """
    available = _normalize(named_candidate_sets)
    if methods is None:
        names = sorted(available)
    else:
        missing = [m for m in methods if m not in available]
        if missing:
            raise KeyError(f"Unknown candidate sets: {missing}")
        names = sorted(set(methods))
    if not names:
        raise ValueError("At least one candidate set is required")

    sets = {name: available[name] for name in names}
    pairwise = {(a, b): sets[a] & sets[b] for a, b in combinations(names, 2)}
    return ConsensusReport(
        names=tuple(names),
        sets=sets,
        pairwise=pairwise,
        intersection=frozenset.intersection(*sets.values()),
        union=frozenset().union(*sets.values()),
    )


def structure_groups(candidate_sets: Sequence[CandidateSet]) -> Dict[str, List[str]]:
    """Split set names by whether their method controls for population structure."""
    groups: Dict[str, List[str]] = {WITH_STRUCTURE: [], WITHOUT_STRUCTURE: []}
    for cs in candidate_sets:
        key = WITH_STRUCTURE if cs.structure_corrected else WITHOUT_STRUCTURE
        groups[key].append(cs.name)
    return {k: sorted(v) for k, v in groups.items()}


def combine_groups(named_candidate_sets: SetsInput,
                   groups: Optional[Mapping[str, Sequence[str]]] = None) -> Dict[str, ConsensusReport]:
    """Separate consensus reports for named groupings of sets

    Without `groups`, CandidateSet inputs are split into the
    with / without structure-correction groupings. Empty groups are skipped.
    """
    if groups is None:
        if isinstance(named_candidate_sets, Mapping):
            sets = [v for v in named_candidate_sets.values() if isinstance(v, CandidateSet)]
        else:
            sets = list(named_candidate_sets)
        groups = structure_groups(sets)
    return {
        label: combine(named_candidate_sets, methods=list(names))
        for label, names in groups.items()
        if names
    }


def write_candidate_set(candidate_set: CandidateSet, filepath: Union[str, Path]) -> Path:
    """Write sorted locus identifiers, one per line."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, 'w') as handle:
        for locus in candidate_set.sorted_loci():
            handle.write(f"{locus}\n")
    return filepath


def read_candidate_set(filepath: Union[str, Path], name: Optional[str] = None,
                       method: str = '', rule: str = '',
                       structure_corrected: bool = False) -> CandidateSet:
    """Read a candidate-set file written by `write_candidate_set`."""
    filepath = Path(filepath)
    return CandidateSet(
        name=name or filepath.stem,
        method=method,
        rule=rule,
        loci=frozenset(load_locus_list(filepath)),
        structure_corrected=structure_corrected,
    )
