"""
Data alignment layer

Matches the allele-count matrix, the individual → population mapping and the
environmental covariate table into ordered matrices that every GEA engine
consumes. Population codes must be joined and sorted identically before any
joint model is fit; a silent ordering mismatch corrupts every downstream
statistic, so every mismatch here raises AlignmentError.
"""

import re
import warnings
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.preprocessing import StandardScaler

from ..utils.data_types import GenotypeMatrix
from ..utils.errors import AlignmentError, MinorAlleleWarning
from .structure import StructureAssignment

LEVELS = ('individual', 'population')
POPULATION_PREFIX_PATTERN = r'^[A-Za-z]+'

PopulationMap = Union[Mapping[str, str], Callable[[str], str]]


def derive_population_code(individual_id: str,
                           overrides: Optional[Mapping[str, str]] = None,
                           pattern: str = POPULATION_PREFIX_PATTERN) -> str:
    """Population code of an individual from its identifier prefix

    The code is the leading match of `pattern` (letters by default, so
    'ALT12' → 'ALT'). `overrides` documents exceptions for renamed or split
    populations; it is checked first with the full individual identifier and
    then with the derived prefix.
    """
    individual_id = str(individual_id)
    overrides = overrides or {}
    if individual_id in overrides:
        return str(overrides[individual_id])

    match = re.match(pattern, individual_id)
    if not match or not match.group(0):
        raise AlignmentError(f"Cannot derive a population code from individual '{individual_id}'")
    prefix = match.group(0)
    return str(overrides.get(prefix, prefix))


def build_population_map(individual_ids: Sequence[str],
                         overrides: Optional[Mapping[str, str]] = None,
                         pattern: str = POPULATION_PREFIX_PATTERN) -> Dict[str, str]:
    """Derive the population code of every individual."""
    return {str(ind): derive_population_code(ind, overrides, pattern) for ind in individual_ids}


@dataclass(frozen=True)
class AlignedData:
    """Ordered, matched inputs shared read-only by every engine.

    Attributes:
        genotypes: samples × loci dosages (individual level) or allele
            frequencies (population level)
        covariates: samples × covariates, same row order
        sample_ids: Row identifiers (individuals or population codes)
        population_codes: Population of each row
        locus_ids: Column identifiers of `genotypes`
        covariate_names: Column names of `covariates`
        level: 'individual' or 'population'
        groups: Dominant structure group per row (individual level only)
        individual_genotypes: Sorted individual dosages backing a
            population-level view
        individual_populations: Population of each row of `individual_genotypes`
    """

    genotypes: np.ndarray
    covariates: np.ndarray
    sample_ids: Tuple[str, ...]
    population_codes: Tuple[str, ...]
    locus_ids: Tuple[str, ...]
    covariate_names: Tuple[str, ...]
    level: str = 'individual'
    groups: Optional[Tuple[str, ...]] = None
    individual_genotypes: Optional[np.ndarray] = None
    individual_populations: Optional[Tuple[str, ...]] = None

    @property
    def n_samples(self) -> int:
        return self.genotypes.shape[0]

    @property
    def n_loci(self) -> int:
        return self.genotypes.shape[1]

    @property
    def n_covariates(self) -> int:
        return self.covariates.shape[1]

    def subset_loci(self, locus_ids: Sequence[str]) -> "AlignedData":
        """Restrict to `locus_ids`, keeping their given order."""
        position = {lid: i for i, lid in enumerate(self.locus_ids)}
        missing = [lid for lid in locus_ids if lid not in position]
        if missing:
            raise AlignmentError(f"Unknown loci requested: {missing[:5]}")
        idx = np.array([position[lid] for lid in locus_ids], dtype=int)
        individual = None
        if self.individual_genotypes is not None:
            individual = _readonly(self.individual_genotypes[:, idx])
        return AlignedData(
            genotypes=_readonly(self.genotypes[:, idx]),
            covariates=self.covariates,
            sample_ids=self.sample_ids,
            population_codes=self.population_codes,
            locus_ids=tuple(str(l) for l in locus_ids),
            covariate_names=self.covariate_names,
            level=self.level,
            groups=self.groups,
            individual_genotypes=individual,
            individual_populations=self.individual_populations,
        )

    def with_covariates(self, covariates: np.ndarray,
                        covariate_names: Optional[Sequence[str]] = None) -> "AlignedData":
        covariates = np.asarray(covariates, dtype=np.float64)
        if covariates.ndim != 2 or covariates.shape[0] != self.n_samples:
            raise AlignmentError(
                f"Covariate matrix has {covariates.shape[0]} rows, expected {self.n_samples}"
            )
        names = tuple(covariate_names) if covariate_names is not None else self.covariate_names
        return AlignedData(
            genotypes=self.genotypes,
            covariates=_readonly(covariates),
            sample_ids=self.sample_ids,
            population_codes=self.population_codes,
            locus_ids=self.locus_ids,
            covariate_names=names,
            level=self.level,
            groups=self.groups,
            individual_genotypes=self.individual_genotypes,
            individual_populations=self.individual_populations,
        )


def _readonly(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float64, copy=True)
    array.setflags(write=False)
    return array


def _resolve_population(individual_id: str, population_map: Optional[PopulationMap],
                        overrides: Optional[Mapping[str, str]]) -> str:
    if population_map is None:
        return derive_population_code(individual_id, overrides)
    if callable(population_map):
        return str(population_map(individual_id))
    if individual_id not in population_map:
        raise AlignmentError(f"Individual '{individual_id}' is missing from the population map")
    return str(population_map[individual_id])


def _covariate_table(covariate_df: pd.DataFrame) -> pd.DataFrame:
    """Covariate table indexed by population code (string), numeric columns only."""
    table = covariate_df.copy()
    if 'ID' in table.columns:
        table = table.set_index('ID')
    table.index = table.index.astype(str)
    if table.index.duplicated().any():
        dups = table.index[table.index.duplicated()].unique()[:5].tolist()
        raise AlignmentError(f"Covariate table has duplicated population codes: {dups}")
    non_numeric = [c for c in table.columns if not pd.api.types.is_numeric_dtype(table[c])]
    if non_numeric:
        raise AlignmentError(f"Covariate columns are not numeric: {non_numeric}")
    if table.shape[1] == 0:
        raise AlignmentError("Covariate table has no covariate columns")
    return table


def population_allele_frequencies(genotypes: np.ndarray,
                                  population_codes: Sequence[str],
                                  max_dosage: float = 2.0) -> Tuple[np.ndarray, List[str]]:
    """Mean dosage / max_dosage per population, populations sorted by code.

    Args:
        genotypes: Complete samples × loci dosages
        population_codes: Population of each row

    Returns:
        Tuple of (populations × loci frequency matrix, sorted population codes)
    """
    genotypes = np.asarray(genotypes, dtype=np.float64)
    codes = np.asarray([str(c) for c in population_codes])
    if codes.size != genotypes.shape[0]:
        raise AlignmentError(
            f"{codes.size} population codes for {genotypes.shape[0]} genotype rows"
        )
    populations = sorted(set(codes.tolist()))
    freqs = np.vstack([genotypes[codes == pop].mean(axis=0) for pop in populations]) / max_dosage
    return freqs, populations


def align_inputs(genotype: Union[GenotypeMatrix, np.ndarray],
                 individual_ids: Sequence[str],
                 locus_ids: Sequence[str],
                 covariate_df: pd.DataFrame,
                 population_map: Optional[PopulationMap] = None,
                 level: str = 'individual',
                 structure: Optional[StructureAssignment] = None,
                 overrides: Optional[Mapping[str, str]] = None,
                 verbose: bool = False) -> AlignedData:
    """Join genotypes with the population covariate table

    Individuals are sorted by (population code, individual id) and each row
    receives its population's covariate vector. At population level the
    genotype rows are replaced by population allele frequencies and rows are
    the sorted population codes.

    Args:
        genotype: samples × loci dosages (must be complete)
        individual_ids: Identifier of each genotype row
        locus_ids: Identifier of each genotype column
        covariate_df: Covariate table with an 'ID' column (or index) of
            population codes
        population_map: individual → population mapping or callable; derived
            from identifier prefixes when None
        level: 'individual' or 'population'
        structure: Optional upstream structure oracle (individual level)
        overrides: Prefix-derivation exceptions (used when population_map is None)
        verbose: Print progress information

    Returns:
        AlignedData

    Raises:
        AlignmentError: unmatched population keys, missing covariate or
            genotype values, or row-count disagreement
    """
    if level not in LEVELS:
        raise ValueError(f"level must be one of {LEVELS}, got '{level}'")

    if isinstance(genotype, GenotypeMatrix):
        if not genotype.is_complete:
            n_missing = int(genotype.missing_mask.sum())
            raise AlignmentError(
                f"Genotype matrix has {n_missing} missing calls; impute or drop incomplete loci before fitting"
            )
        values = genotype[:, :].astype(np.float64)
    else:
        values = np.asarray(genotype, dtype=np.float64)
        if np.isnan(values).any() or (values == -9).any():
            raise AlignmentError("Genotype matrix contains missing values")

    individual_ids = [str(i) for i in individual_ids]
    locus_ids = [str(l) for l in locus_ids]
    if values.ndim != 2 or values.shape[0] != len(individual_ids):
        raise AlignmentError(
            f"Genotype matrix has {values.shape[0]} rows but {len(individual_ids)} individual ids"
        )
    if values.shape[1] != len(locus_ids):
        raise AlignmentError(
            f"Genotype matrix has {values.shape[1]} columns but {len(locus_ids)} locus ids"
        )
    if len(set(locus_ids)) != len(locus_ids):
        raise AlignmentError("Locus identifiers are not unique")
    if len(set(individual_ids)) != len(individual_ids):
        raise AlignmentError("Individual identifiers are not unique")

    populations = [_resolve_population(ind, population_map, overrides) for ind in individual_ids]

    table = _covariate_table(covariate_df)
    genomic_pops = sorted(set(populations))
    unmatched = [pop for pop in genomic_pops if pop not in table.index]
    if unmatched:
        preview = ', '.join(unmatched[:5]) + (', ...' if len(unmatched) > 5 else '')
        raise AlignmentError(
            f"{len(unmatched)} populations in the genomic data have no covariate row: {preview}"
        )
    unused = sorted(set(table.index) - set(genomic_pops))
    if unused:
        warnings.warn(
            f"Ignoring {len(unused)} covariate populations without genotyped individuals: {unused[:5]}"
        )
    table = table.loc[genomic_pops]
    if table.isna().to_numpy().any():
        bad = table.index[table.isna().any(axis=1)].tolist()
        raise AlignmentError(f"Covariate table has missing values for populations: {bad[:5]}")

    order = sorted(range(len(individual_ids)), key=lambda i: (populations[i], individual_ids[i]))
    sorted_ids = [individual_ids[i] for i in order]
    sorted_pops = [populations[i] for i in order]
    sorted_values = values[order, :]

    if level == 'individual':
        rows = sorted_values
        row_ids = sorted_ids
        row_pops = sorted_pops
        groups = tuple(structure.assign_groups(sorted_ids)) if structure is not None else None
        individual_genotypes = None
        individual_populations = None
    else:
        rows, row_pops = population_allele_frequencies(sorted_values, sorted_pops)
        row_ids = list(row_pops)
        groups = None
        individual_genotypes = _readonly(sorted_values)
        individual_populations = tuple(sorted_pops)

    covariates = table.loc[row_pops].to_numpy(dtype=np.float64)
    if covariates.shape[0] != rows.shape[0]:
        raise AlignmentError(
            f"Sample counts disagree after alignment: {rows.shape[0]} genotype rows vs {covariates.shape[0]} covariate rows"
        )
    if not np.isfinite(covariates).all():
        raise AlignmentError("Covariate matrix contains non-finite values")

    if verbose:
        print(f"   Aligned {rows.shape[0]} {level} rows across {len(genomic_pops)} populations, "
              f"{rows.shape[1]} loci, {covariates.shape[1]} covariates")

    return AlignedData(
        genotypes=_readonly(rows),
        covariates=_readonly(covariates),
        sample_ids=tuple(row_ids),
        population_codes=tuple(row_pops),
        locus_ids=tuple(locus_ids),
        covariate_names=tuple(str(c) for c in table.columns),
        level=level,
        groups=groups,
        individual_genotypes=individual_genotypes,
        individual_populations=individual_populations,
    )


class CovariateScaler:
    """Centre/scale covariates with parameters fit on a reference table

    Any other table (e.g. future climate) is transformed with the same
    mean and standard deviation, never refit, so past and future covariate
    spaces stay comparable.
    """

    def __init__(self):
        self._scaler: Optional[StandardScaler] = None
        self.columns: List[str] = []

    @property
    def is_fitted(self) -> bool:
        return self._scaler is not None

    @property
    def mean_(self) -> np.ndarray:
        self._check_fitted()
        return self._scaler.mean_.copy()

    @property
    def scale_(self) -> np.ndarray:
        self._check_fitted()
        return self._scaler.scale_.copy()

    def fit(self, reference: pd.DataFrame) -> "CovariateScaler":
        table = _covariate_table(reference)
        values = table.to_numpy(dtype=np.float64)
        if not np.isfinite(values).all():
            raise AlignmentError("Reference covariate table contains missing values")
        sd = values.std(axis=0)
        constant = [c for c, s in zip(table.columns, sd) if s == 0]
        if constant:
            raise AlignmentError(f"Reference covariates have zero variance: {constant}")
        self._scaler = StandardScaler().fit(values)
        self.columns = [str(c) for c in table.columns]
        return self

    def transform(self, table: pd.DataFrame) -> pd.DataFrame:
        self._check_fitted()
        target = _covariate_table(table)
        target.columns = [str(c) for c in target.columns]
        missing = [c for c in self.columns if c not in target.columns]
        if missing:
            raise AlignmentError(f"Covariate table lacks reference columns: {missing}")
        values = target[self.columns].to_numpy(dtype=np.float64)
        if not np.isfinite(values).all():
            raise AlignmentError("Covariate table to scale contains missing values")
        scaled = self._scaler.transform(values)
        out = pd.DataFrame(scaled, index=target.index, columns=self.columns)
        out.index.name = 'ID'
        return out.reset_index()

    def fit_transform(self, reference: pd.DataFrame) -> pd.DataFrame:
        return self.fit(reference).transform(reference)

    def _check_fitted(self):
        if self._scaler is None:
            raise ValueError("CovariateScaler has not been fit on a reference table")


def scale_covariates(reference: pd.DataFrame,
                     *others: pd.DataFrame) -> Tuple[pd.DataFrame, ...]:
    """Scale `reference` and every table in `others` with the reference parameters."""
    scaler = CovariateScaler().fit(reference)
    return (scaler.transform(reference),) + tuple(scaler.transform(t) for t in others)


def minor_allele_diagnostic(frequencies: np.ndarray,
                            locus_ids: Sequence[str],
                            warn: bool = True) -> List[str]:
    """Loci whose nominal minor allele has mean population frequency > 0.5

    Unequal population sizes can make the allele that is minor across
    individuals the majority allele across population means. These loci are
    reported, never re-coded.

    Args:
        frequencies: populations × loci allele frequencies
        locus_ids: Locus identifiers

    Returns:
        Sorted locus identifiers with mean population frequency above 0.5
    """
    frequencies = np.asarray(frequencies, dtype=np.float64)
    if frequencies.shape[1] != len(locus_ids):
        raise AlignmentError("Frequency matrix and locus ids disagree")
    mean_freq = frequencies.mean(axis=0)
    flagged = sorted(str(l) for l, f in zip(locus_ids, mean_freq) if f > 0.5)
    if flagged and warn:
        warnings.warn(
            f"{len(flagged)} loci have a mean population frequency of the nominal minor allele above 0.5 "
            f"(e.g. {flagged[:5]}); allele labels are left unchanged.",
            MinorAlleleWarning,
        )
    return flagged
