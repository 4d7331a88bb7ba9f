"""
Empirical-null ranking engine (gradient-forest style)

For each retained locus a random-forest regression predicts the allele
frequency (or dosage) from the covariate vector. The locus statistic is the
out-of-bag variance explained (R^2, clipped at 0), split across covariates in
proportion to their impurity importance. Loci are then ranked against the
statistics of a neutral reference set to obtain empirical p-values.

Per-locus fits are independent: each receives a seed derived from its
identifier, runs in a bounded joblib pool and results are merged by locus id.
Any exception inside a fit aborts the run with LocusFitError.
"""

import warnings
import zlib
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple, Union

import numba
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.ensemble import RandomForestRegressor
from tqdm import tqdm

from ..data.alignment import AlignedData
from ..utils.config import AnalysisConfig
from ..utils.data_types import AssociationResults
from ..utils.errors import AlignmentError, DegenerateFitWarning, LocusFitError
from ..utils.stats import check_calibration
from .base import GEAMethod

FIT_BATCH_SIZE = 256
VARIANCE_TOL = 1e-12

STATUS_FITTED = 'fitted'
STATUS_FILTERED = 'filtered'
STATUS_NOT_SAMPLED = 'not_sampled'


@numba.jit(nopython=True, cache=True)
def count_polymorphic_groups(values, group_codes, n_groups, max_value):
    """Number of groups in which each locus is polymorphic.

    A locus is polymorphic in a group when the group's mean value lies
    strictly between 0 and `max_value` (2 for dosages, 1 for frequencies).
    """
    n_rows, n_loci = values.shape
    counts = np.zeros(n_loci, dtype=np.int64)
    eps = 1e-9
    for j in range(n_loci):
        sums = np.zeros(n_groups)
        sizes = np.zeros(n_groups)
        for i in range(n_rows):
            g = group_codes[i]
            sums[g] += values[i, j]
            sizes[g] += 1.0
        c = 0
        for g in range(n_groups):
            if sizes[g] > 0 and sums[g] > eps and sums[g] < max_value * sizes[g] - eps:
                c += 1
        counts[j] = c
    return counts


@dataclass(frozen=True)
class GFOptions:
    """Options of the per-locus importance fits.

    Attributes:
        n_trees: Trees per forest
        min_polymorphic_groups: Reject loci polymorphic in fewer groups
        n_loci_sample: Optional number of loci to fit (seeded down-sampling)
        seed: Base seed; per-locus seeds derive from it and the locus id
        n_jobs: Worker count (<= 0 uses all cores)
        verbose: Show a progress bar
    """

    n_trees: int = 500
    min_polymorphic_groups: int = 6
    n_loci_sample: Optional[int] = None
    seed: int = 42
    n_jobs: int = 1
    verbose: bool = False

    @classmethod
    def from_config(cls, config: AnalysisConfig) -> "GFOptions":
        return cls(
            n_trees=config.n_trees,
            min_polymorphic_groups=config.min_polymorphic_groups,
            n_loci_sample=config.n_loci_sample,
            seed=config.seed,
            n_jobs=config.n_jobs,
            verbose=config.verbose,
        )


def locus_seed(locus_id: str, seed: int) -> int:
    """Deterministic per-locus seed, independent of processing order."""
    state = np.random.SeedSequence([int(seed), zlib.crc32(str(locus_id).encode('utf-8'))])
    return int(state.generate_state(1)[0])


def _fit_locus(locus_id: str, response: np.ndarray, covariates: np.ndarray,
               n_trees: int, seed: int) -> Tuple[str, float, np.ndarray, bool]:
    """Random-forest fit of one locus; returns (id, R^2, importances, degenerate)."""
    n_covariates = covariates.shape[1]
    if np.var(response) < VARIANCE_TOL:
        return locus_id, 0.0, np.zeros(n_covariates), True
    try:
        forest = RandomForestRegressor(
            n_estimators=n_trees,
            oob_score=True,
            bootstrap=True,
            random_state=seed,
            n_jobs=1,
        )
        with warnings.catch_warnings():
            # small samples leave a few rows without out-of-bag predictions
            warnings.filterwarnings('ignore', message='Some inputs do not have OOB scores')
            forest.fit(covariates, response)
        r2 = float(forest.oob_score_)
        shares = np.asarray(forest.feature_importances_, dtype=np.float64)
    except Exception as exc:
        raise LocusFitError(locus_id, f"{type(exc).__name__}: {exc}") from exc

    if not np.isfinite(r2) or r2 <= 0.0 or shares.sum() <= 0.0:
        return locus_id, 0.0, np.zeros(n_covariates), True
    return locus_id, r2, r2 * shares / shares.sum(), False


def _resolve_jobs(n_jobs: int) -> int:
    return -1 if n_jobs <= 0 else n_jobs


def fit_per_locus(genotypes: np.ndarray,
                  covariates: np.ndarray,
                  options: Optional[GFOptions] = None,
                  locus_ids: Optional[Sequence[str]] = None,
                  groups: Optional[Sequence[str]] = None,
                  group_values: Optional[np.ndarray] = None,
                  always_fit: Optional[Sequence[str]] = None,
                  covariate_names: Optional[Sequence[str]] = None,
                  max_value: Optional[float] = None) -> pd.DataFrame:
    """Fit one importance model per locus

    Args:
        genotypes: samples × loci response (population frequencies or dosages)
        covariates: samples × covariates, same row order
        options: GFOptions (defaults when None)
        locus_ids: Locus identifiers (default L0, L1, ...)
        groups: Group label of each row of `group_values` used by the
            polymorphism filter (default: every row is its own group)
        group_values: Matrix the filter is computed on (default `genotypes`);
            pass individual dosages with their population labels to count
            polymorphic populations
        always_fit: Loci exempt from down-sampling (e.g. the neutral set)
        covariate_names: Names used for importance columns
        max_value: Upper bound of the filter values (2 for dosages, 1 for
            frequencies); inferred from the data when None

    Returns:
        DataFrame indexed by locus id with columns statistic, degenerate,
        status, n_polymorphic_groups and importance_<covariate>. Filtered and
        not-sampled loci are kept as rows with a NaN statistic.
    """
    options = options or GFOptions()
    Y = np.asarray(genotypes, dtype=np.float64)
    X = np.asarray(covariates, dtype=np.float64)
    if Y.ndim != 2:
        raise ValueError("Genotype matrix must be 2D (samples × loci)")
    if X.ndim == 1:
        X = X[:, np.newaxis]
    if X.shape[0] != Y.shape[0]:
        raise AlignmentError(f"Covariate matrix has {X.shape[0]} rows, genotype matrix has {Y.shape[0]}")
    if not np.isfinite(Y).all() or not np.isfinite(X).all():
        raise AlignmentError("Importance fits require complete genotype and covariate matrices")

    n_loci = Y.shape[1]
    locus_ids = [str(l) for l in locus_ids] if locus_ids is not None else [f"L{i}" for i in range(n_loci)]
    if len(locus_ids) != n_loci:
        raise AlignmentError(f"{len(locus_ids)} locus ids for {n_loci} genotype columns")
    covariate_names = ([str(c) for c in covariate_names] if covariate_names is not None
                       else [f"X{j}" for j in range(X.shape[1])])

    # polymorphism filter
    filter_values = Y if group_values is None else np.asarray(group_values, dtype=np.float64)
    if groups is None:
        codes = np.arange(filter_values.shape[0], dtype=np.int64)
        n_groups = filter_values.shape[0]
    else:
        if len(groups) != filter_values.shape[0]:
            raise AlignmentError(f"{len(groups)} group labels for {filter_values.shape[0]} rows")
        labels, codes = np.unique(np.asarray([str(g) for g in groups]), return_inverse=True)
        codes = codes.astype(np.int64)
        n_groups = len(labels)
    if max_value is None:
        max_value = 2.0 if group_values is not None or filter_values.max(initial=0.0) > 1.0 else 1.0
    n_poly = count_polymorphic_groups(np.ascontiguousarray(filter_values), codes, n_groups, max_value)
    keep = n_poly >= options.min_polymorphic_groups

    status = np.where(keep, STATUS_FITTED, STATUS_FILTERED).astype(object)
    exempt = set(always_fit or [])
    candidates = np.flatnonzero(keep & ~np.isin(locus_ids, list(exempt)))
    if options.n_loci_sample is not None and options.n_loci_sample < candidates.size:
        rng = np.random.default_rng(options.seed)
        chosen = np.sort(rng.choice(candidates, size=options.n_loci_sample, replace=False))
        status[np.setdiff1d(candidates, chosen)] = STATUS_NOT_SAMPLED

    to_fit = np.flatnonzero(status == STATUS_FITTED)
    if options.verbose:
        n_filtered = int((~keep).sum())
        print(f"Importance fits: {to_fit.size} loci ({n_filtered} polymorphic in fewer than "
              f"{options.min_polymorphic_groups} groups)")

    statistic = np.full(n_loci, np.nan)
    degenerate = np.zeros(n_loci, dtype=bool)
    importances = np.full((n_loci, X.shape[1]), np.nan)
    position = {lid: i for i, lid in enumerate(locus_ids)}

    batches = [to_fit[i:i + FIT_BATCH_SIZE] for i in range(0, to_fit.size, FIT_BATCH_SIZE)]
    with Parallel(n_jobs=_resolve_jobs(options.n_jobs), backend='loky') as parallel:
        progress = tqdm(total=to_fit.size, desc='Fitting loci', unit='locus', disable=not options.verbose)
        try:
            for batch in batches:
                fitted = parallel(
                    delayed(_fit_locus)(
                        locus_ids[j], Y[:, j], X, options.n_trees, locus_seed(locus_ids[j], options.seed)
                    )
                    for j in batch
                )
                for lid, r2, imp, is_degenerate in fitted:
                    j = position[lid]
                    statistic[j] = r2
                    importances[j] = imp
                    degenerate[j] = is_degenerate
                progress.update(len(batch))
        finally:
            progress.close()

    n_degenerate = int(degenerate.sum())
    if n_degenerate:
        warnings.warn(
            f"{n_degenerate} loci explained no variance out of bag; recorded with statistic 0",
            DegenerateFitWarning,
        )

    table = pd.DataFrame({
        'statistic': statistic,
        'degenerate': degenerate,
        'status': status,
        'n_polymorphic_groups': n_poly,
    }, index=pd.Index(locus_ids, name='SNP'))
    for k, name in enumerate(covariate_names):
        table[f'importance_{name}'] = importances[:, k]
    return table


def empirical_pvalue(statistic_by_locus: Union[Mapping[str, float], pd.Series],
                     neutral_locus_ids: Sequence[str],
                     neutral_statistics: Optional[Union[Mapping[str, float], pd.Series]] = None) -> pd.Series:
    """Empirical p-value of each locus against a neutral reference set

    p_l = 1 - rank_l / n, where rank_l is the rank of the locus statistic in
    the pool {neutral statistics} + {locus}, ranks ascending with ties
    receiving the minimum rank (rank = 1 + number of pooled values strictly
    below). A locus that belongs to the neutral set is pooled against the
    remaining neutral loci plus itself, so n equals the neutral set size; any
    other locus gives n = neutral set size + 1.

    The largest value of its pool therefore gets p = 0, and a value below
    every neutral statistic gets p = 1 - 1/n.

    Args:
        statistic_by_locus: Statistic per locus id (NaN gives a NaN p-value)
        neutral_locus_ids: Identifiers of the neutral reference loci
        neutral_statistics: Statistics of the neutral loci when they are not
            part of `statistic_by_locus` (e.g. fitted on a separate matrix)

    Returns:
        Series of empirical p-values indexed like `statistic_by_locus`
    """
    observed = pd.Series(statistic_by_locus, dtype=np.float64)
    source = observed if neutral_statistics is None else pd.Series(neutral_statistics, dtype=np.float64)
    neutral_ids = list(dict.fromkeys(str(l) for l in neutral_locus_ids))
    source.index = source.index.astype(str)
    missing = [l for l in neutral_ids if l not in source.index]
    if missing:
        raise ValueError(f"{len(missing)} neutral loci have no statistic: {missing[:5]}")

    null = source.loc[neutral_ids].dropna()
    if null.empty:
        raise ValueError("Neutral reference set has no finite statistics")
    null_sorted = np.sort(null.to_numpy())
    n_null = null_sorted.size

    values = observed.to_numpy()
    below = np.searchsorted(null_sorted, values, side='left').astype(np.float64)
    pool_size = np.full(values.shape, n_null + 1, dtype=np.float64)

    in_null = observed.index.astype(str).isin(null.index)
    if in_null.any():
        own = null.reindex(observed.index.astype(str)[in_null]).to_numpy()
        below[in_null] -= (own < values[in_null]).astype(np.float64)
        pool_size[in_null] = n_null

    pvalues = 1.0 - (below + 1.0) / pool_size
    pvalues[~np.isfinite(values)] = np.nan
    return pd.Series(pvalues, index=observed.index, name='empirical_pvalue')


def GEA_GF(genotypes: np.ndarray,
           covariates: np.ndarray,
           locus_ids: Sequence[str],
           neutral_locus_ids: Optional[Sequence[str]] = None,
           neutral_genotypes: Optional[np.ndarray] = None,
           neutral_ids: Optional[Sequence[str]] = None,
           options: Optional[GFOptions] = None,
           groups: Optional[Sequence[str]] = None,
           group_values: Optional[np.ndarray] = None,
           neutral_group_values: Optional[np.ndarray] = None,
           covariate_names: Optional[Sequence[str]] = None,
           calibration_bins: int = 10,
           calibration_alpha: float = 0.001) -> AssociationResults:
    """Importance scan with empirical p-values against a neutral set

    The neutral reference set is, in order of precedence: a separate matrix
    (`neutral_genotypes` with `neutral_ids`), the `neutral_locus_ids` subset
    of `locus_ids`, or every fitted locus when neither is given.

    Returns:
        AssociationResults with statistic = out-of-bag R^2 and pvalue =
        empirical p-value (filtered / not-sampled loci carry NaN)
    """
    options = options or GFOptions()
    locus_ids = [str(l) for l in locus_ids]
    known = set(locus_ids)
    exempt = [str(l) for l in (neutral_locus_ids or []) if str(l) in known]
    table = fit_per_locus(genotypes, covariates, options, locus_ids=locus_ids, groups=groups,
                          group_values=group_values, always_fit=exempt, covariate_names=covariate_names)

    neutral_source = None
    if neutral_genotypes is not None:
        if neutral_ids is None:
            raise ValueError("neutral_ids are required with neutral_genotypes")
        neutral_table = fit_per_locus(neutral_genotypes, covariates, options, locus_ids=neutral_ids,
                                      groups=groups, group_values=neutral_group_values,
                                      covariate_names=covariate_names)
        neutral_source = neutral_table['statistic']
        reference = list(neutral_table.index)
    elif neutral_locus_ids is not None:
        reference = [str(l) for l in neutral_locus_ids]
    else:
        reference = table.index[table['status'] == STATUS_FITTED].tolist()

    pvalues = empirical_pvalue(table['statistic'], reference, neutral_statistics=neutral_source)

    frame = table.reset_index()
    frame.insert(2, 'pvalue', pvalues.to_numpy())
    fitted = frame['status'] == STATUS_FITTED
    report = check_calibration(frame.loc[fitted, 'pvalue'].to_numpy(), bins=calibration_bins,
                               alpha=calibration_alpha, label='GF empirical p-values')
    metadata = {
        'n_fitted': int(fitted.sum()),
        'n_filtered': int((frame['status'] == STATUS_FILTERED).sum()),
        'n_neutral': int(len(reference)),
        'n_trees': options.n_trees,
    }
    if options.verbose:
        print(f"GF complete: {metadata['n_fitted']} loci fitted, {metadata['n_neutral']} neutral reference loci")
    return AssociationResults(frame, method='GF', calibration=report, metadata=metadata)


class GradientForestMethod(GEAMethod):
    """Empirical-null engine behind the common GEA interface (population level)."""

    name = 'GF'
    structure_corrected = False
    level = 'population'

    def __init__(self, config: Optional[AnalysisConfig] = None,
                 neutral_locus_ids: Optional[Sequence[str]] = None,
                 neutral_data: Optional[AlignedData] = None):
        super().__init__(config)
        self.neutral_locus_ids = list(neutral_locus_ids) if neutral_locus_ids is not None else None
        self.neutral_data = neutral_data

    def _run(self, data: AlignedData) -> AssociationResults:
        groups, group_values = _filter_inputs(data)
        kwargs = {}
        if self.neutral_data is not None:
            _, neutral_values = _filter_inputs(self.neutral_data)
            kwargs = dict(neutral_genotypes=self.neutral_data.genotypes,
                          neutral_ids=self.neutral_data.locus_ids,
                          neutral_group_values=neutral_values)
        return GEA_GF(
            data.genotypes,
            data.covariates,
            data.locus_ids,
            neutral_locus_ids=self.neutral_locus_ids,
            options=GFOptions.from_config(self.config),
            groups=groups,
            group_values=group_values,
            covariate_names=data.covariate_names,
            calibration_bins=self.config.calibration_bins,
            calibration_alpha=self.config.calibration_alpha,
            **kwargs,
        )


def _filter_inputs(data: AlignedData) -> Tuple[Optional[List[str]], Optional[np.ndarray]]:
    """Individual dosages and their populations, when the view keeps them."""
    if data.individual_genotypes is None:
        return None, None
    return list(data.individual_populations), data.individual_genotypes
