"""
Data loading utilities for allele-count matrices and environmental tables
"""

import warnings
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..utils.data_types import GenotypeMatrix, MISSING_GENOTYPE

NA_VALUES = [
    '', 'NA', 'NaN', 'nan', 'NAN', 'na', 'N/A', 'n/a', 'Null', 'NULL',
    '.', '-', '--'
]

ORIENTATIONS = ('loci_by_samples', 'samples_by_loci')

POPULATION_ID_COLUMNS = [
    'Population', 'population', 'pop', 'Pop', 'POP',
    'code', 'Code', 'pop_code', 'ID', 'id',
]


def detect_file_format(filepath: Union[str, Path]) -> str:
    """Detect table format based on extension and content

    Args:
        filepath: Path to file

    Returns:
        Detected format: 'csv', 'tsv' or 'unknown'
    """
    filepath = Path(filepath)

    suffix = filepath.suffix.lower()
    if filepath.name.lower().endswith('.gz'):
        suffix = Path(filepath.stem).suffix.lower()
    if suffix in ['.tsv', '.txt']:
        return 'tsv'
    elif suffix == '.csv':
        return 'csv'

    try:
        with open(filepath, 'r') as f:
            first_line = f.readline().strip()
        if '\t' in first_line and ',' not in first_line:
            return 'tsv'
        elif ',' in first_line:
            return 'csv'
        else:
            return 'unknown'
    except (OSError, UnicodeDecodeError):
        return 'unknown'


def _read_table(filepath: Union[str, Path], **kwargs) -> pd.DataFrame:
    """Read a CSV/TSV table with robust NA handling."""
    filepath = Path(filepath)
    file_format = detect_file_format(filepath)
    read_kwargs = dict(na_values=NA_VALUES, keep_default_na=True)
    read_kwargs.update(kwargs)

    if file_format == 'csv':
        return pd.read_csv(filepath, **read_kwargs)
    elif file_format == 'tsv':
        return pd.read_csv(filepath, sep='\t', **read_kwargs)
    # whitespace-delimited fallback (e.g. LFMM-style .lfmm/.env files)
    return pd.read_csv(filepath, sep=r'\s+', **read_kwargs)


def _resolve_id_column(df: pd.DataFrame, id_column: str,
                       candidates: List[str]) -> pd.DataFrame:
    """Rename the identifier column to 'ID' (leftmost known name, else first column)."""
    if id_column in df.columns:
        if id_column != 'ID':
            df = df.rename(columns={id_column: 'ID'})
        return df

    present_candidates = [c for c in df.columns if c in candidates]
    if present_candidates:
        if len(present_candidates) > 1:
            warnings.warn(
                "Multiple potential ID columns found: {}. Selecting leftmost '{}' as ID.".format(
                    present_candidates, present_candidates[0]
                )
            )
        return df.rename(columns={present_candidates[0]: 'ID'})

    first_col = df.columns[0]
    warnings.warn(
        "No recognized ID column found; using first column '{}' as ID.".format(first_col)
    )
    return df.rename(columns={first_col: 'ID'})


def _require_unique(ids: List[str], kind: str, filepath: Union[str, Path]):
    seen = set()
    dups = []
    for value in ids:
        if value in seen and value not in dups:
            dups.append(value)
        seen.add(value)
    if dups:
        raise ValueError(f"File '{filepath}' contains duplicated {kind} identifiers: {dups[:5]}")


def load_genotype_file(filepath: Union[str, Path],
                       orientation: str = 'loci_by_samples',
                       drop_incomplete_loci: bool = False,
                       verbose: bool = False) -> Tuple[GenotypeMatrix, List[str], List[str]]:
    """Load an allele-count matrix

    The file holds one identifier column followed by integer dosages in
    {0, 1, 2}; any missing token (NA, '.', empty, 9, -9) becomes the -9
    sentinel. The matrix is always returned as samples × loci.

    Args:
        filepath: CSV/TSV file
        orientation: 'loci_by_samples' (rows are loci, columns individuals)
            or 'samples_by_loci'
        drop_incomplete_loci: Remove loci with any missing call (no
            imputation is performed)
        verbose: Print progress information

    Returns:
        Tuple of (GenotypeMatrix, individual_ids, locus_ids)
    """
    if orientation not in ORIENTATIONS:
        raise ValueError(f"orientation must be one of {ORIENTATIONS}, got '{orientation}'")

    df = _read_table(filepath, low_memory=False)
    if df.shape[1] < 2:
        raise ValueError(f"Genotype file '{filepath}' must have an identifier column and at least one data column")

    row_ids = df.iloc[:, 0].astype(str).tolist()
    col_ids = [str(c) for c in df.columns[1:]]
    data_df = df.iloc[:, 1:].apply(pd.to_numeric, errors='coerce')

    values = data_df.to_numpy(dtype=np.float64)
    invalid = np.isfinite(values) & ~np.isin(values, [0, 1, 2, 9, MISSING_GENOTYPE])
    if invalid.any():
        bad = np.unique(values[invalid])[:5]
        raise ValueError(f"Genotype file '{filepath}' contains dosages outside {{0, 1, 2}}: {bad.tolist()}")
    # LFMM-format files code missing calls as 9
    values[~np.isfinite(values) | (values == 9)] = MISSING_GENOTYPE
    geno_np = values.astype(np.int8)

    if orientation == 'loci_by_samples':
        locus_ids, individual_ids = row_ids, col_ids
        geno_np = np.ascontiguousarray(geno_np.T)
    else:
        individual_ids, locus_ids = row_ids, col_ids

    _require_unique(locus_ids, "locus", filepath)
    _require_unique(individual_ids, "individual", filepath)

    if drop_incomplete_loci:
        complete = ~(geno_np == MISSING_GENOTYPE).any(axis=0)
        n_dropped = int((~complete).sum())
        if n_dropped:
            warnings.warn(f"Dropping {n_dropped} loci with missing genotype calls.")
            geno_np = geno_np[:, complete]
            locus_ids = [lid for lid, keep in zip(locus_ids, complete) if keep]

    if verbose:
        print(f"   Loaded {len(individual_ids)} individuals x {len(locus_ids)} loci")

    return GenotypeMatrix(geno_np), individual_ids, locus_ids


def load_covariate_file(filepath: Union[str, Path],
                        covariate_columns: Optional[List[str]] = None,
                        id_column: str = 'Population') -> pd.DataFrame:
    """Load environmental covariate table keyed by population code.

    One row per population; repeated identical rows are collapsed, while
    conflicting rows for the same population raise. Missing values are kept
    as NaN; the alignment layer rejects them.

    Returns:
        DataFrame with an 'ID' column followed by the numeric covariates
    """
    filepath = Path(filepath)
    table = _resolve_id_column(_read_table(filepath), id_column, POPULATION_ID_COLUMNS)
    table['ID'] = table['ID'].astype(str)

    if covariate_columns is None:
        columns = [c for c in table.columns if c != 'ID']
    else:
        columns = [c for c in covariate_columns if c not in ('ID', id_column)]
        absent = [c for c in columns if c not in table.columns]
        if absent:
            raise ValueError(f"Requested covariate columns missing from file '{filepath}': {absent}")
    if not columns:
        raise ValueError(f"No covariate columns found in file '{filepath}'")

    covariates = table[['ID']].copy()
    empty = []
    for column in columns:
        raw = table[column]
        numeric = pd.to_numeric(raw, errors='coerce')
        bad = raw.notna() & numeric.isna()
        if bad.any():
            examples = sorted(raw[bad].astype(str).unique()[:5])
            raise ValueError(f"Covariate column '{column}' contains non-numeric values (e.g. {', '.join(examples)})")
        if numeric.isna().all():
            empty.append(column)
            continue
        covariates[column] = numeric
    if empty:
        warnings.warn(f"Ignoring covariate columns without any value: {empty}")
    if covariates.shape[1] == 1:
        raise ValueError(f"No usable covariate columns in file '{filepath}'")

    covariates = covariates.drop_duplicates().reset_index(drop=True)
    conflicting = covariates.loc[covariates['ID'].duplicated(), 'ID'].unique().tolist()
    if conflicting:
        raise ValueError(f"Populations with conflicting covariate rows in '{filepath}': {conflicting[:5]}")
    return covariates


def load_population_map(filepath: Union[str, Path],
                        id_column: str = 'ID',
                        population_column: str = 'Population') -> Dict[str, str]:
    """Load an individual → population-code table."""
    df = _read_table(filepath, dtype=str)
    df = _resolve_id_column(df, id_column, ['ID', 'id', 'IID', 'sample', 'Sample', 'individual', 'Individual'])
    if population_column not in df.columns:
        others = [c for c in df.columns if c != 'ID']
        if not others:
            raise ValueError(f"Population map '{filepath}' needs an individual and a population column")
        population_column = others[0]

    mapping: Dict[str, str] = {}
    for ind_id, pop in zip(df['ID'].astype(str), df[population_column]):
        if pd.isna(pop):
            raise ValueError(f"Individual '{ind_id}' has no population code in '{filepath}'")
        pop = str(pop)
        if mapping.get(ind_id, pop) != pop:
            raise ValueError(f"Individual '{ind_id}' maps to more than one population in '{filepath}'")
        mapping[ind_id] = pop
    return mapping


def load_locus_list(filepath: Union[str, Path]) -> List[str]:
    """Load locus identifiers, one per line (blank lines and '#' comments skipped)."""
    loci: List[str] = []
    seen = set()
    with open(filepath, 'r') as handle:
        for line in handle:
            locus = line.strip()
            if not locus or locus.startswith('#'):
                continue
            # accept the first field of delimited files
            locus = locus.replace('\t', ',').split(',')[0].strip()
            if not loci and locus in ('SNP', 'snp', 'locus', 'Locus'):
                continue
            if locus not in seen:
                seen.add(locus)
                loci.append(locus)
    return loci
