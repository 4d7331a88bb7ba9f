import pickle
import warnings

import numpy as np
import pandas as pd
import pytest
from sklearn.ensemble import RandomForestRegressor

from geascan.association.gradient_forest import (
    GEA_GF,
    GFOptions,
    GradientForestMethod,
    count_polymorphic_groups,
    empirical_pvalue,
    fit_per_locus,
    locus_seed,
)
from geascan.data.alignment import align_inputs
from geascan.utils.config import AnalysisConfig
from geascan.utils.errors import DegenerateFitWarning, LocusFitError

from conftest import simulate_gea

FAST = GFOptions(n_trees=50, seed=3)


def test_count_polymorphic_groups() -> None:
    # third locus: every individual heterozygous, both alleles present
    values = np.array([[0, 2, 1], [1, 2, 1], [0, 0, 1], [0, 2, 1]], dtype=np.float64)
    codes = np.array([0, 0, 1, 1], dtype=np.int64)

    counts = count_polymorphic_groups(values, codes, 2, 2.0)

    np.testing.assert_array_equal(counts, [1, 1, 2])


def test_empirical_pvalue_neutral_members_pool_against_rest_plus_self() -> None:
    stat = pd.Series({'a': 1.0, 'b': 2.0, 'c': 3.0})

    p = empirical_pvalue(stat, ['a', 'b', 'c'])

    assert p['c'] == pytest.approx(0.0)
    assert p['b'] == pytest.approx(1 / 3)
    assert p['a'] == pytest.approx(2 / 3)


def test_empirical_pvalue_outsiders_ties_and_nan() -> None:
    stat = pd.Series({'a': 1.0, 'b': 2.0, 'c': 3.0, 'x': 5.0, 'y': 0.0, 'z': 2.0, 'w': np.nan})

    p = empirical_pvalue(stat, ['a', 'b', 'c'])

    assert p['x'] == pytest.approx(0.0)
    assert p['y'] == pytest.approx(0.75)
    # ties take the minimum rank
    assert p['z'] == pytest.approx(0.5)
    assert np.isnan(p['w'])
    assert p.name == 'empirical_pvalue'


def test_empirical_pvalue_with_separate_neutral_statistics() -> None:
    observed = {'L1': 0.9, 'L2': 0.0}
    neutral = {'N1': 0.1, 'N2': 0.2, 'N3': 0.3}

    p = empirical_pvalue(observed, ['N1', 'N2', 'N3'], neutral_statistics=neutral)

    assert p['L1'] == pytest.approx(0.0)
    assert p['L2'] == pytest.approx(0.75)


def test_empirical_pvalue_rejects_unknown_or_empty_neutral_set() -> None:
    stat = pd.Series({'a': 1.0, 'b': np.nan})

    with pytest.raises(ValueError, match="no statistic"):
        empirical_pvalue(stat, ['zzz'])
    with pytest.raises(ValueError, match="no finite statistics"):
        empirical_pvalue(stat, ['b'])


def test_locus_seed_is_deterministic_and_locus_specific() -> None:
    assert locus_seed('L1', 42) == locus_seed('L1', 42)
    assert locus_seed('L1', 42) != locus_seed('L2', 42)
    assert locus_seed('L1', 42) != locus_seed('L1', 43)


def test_fit_per_locus_ranks_signal_and_reports_importances(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data

    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        table = fit_per_locus(freqs, env, FAST, locus_ids=locus_ids, covariate_names=['temp', 'rain'])

    assert list(table.index) == locus_ids
    assert table.index.name == 'SNP'
    assert (table['status'] == 'fitted').all()
    assert table['statistic'].idxmax() == 'L00'
    assert table.loc['L00', 'statistic'] > 0.3
    assert table.loc['L00', 'importance_temp'] > table.loc['L00', 'importance_rain']
    shares = table.loc['L00', ['importance_temp', 'importance_rain']].sum()
    assert shares == pytest.approx(table.loc['L00', 'statistic'])
    assert (table['statistic'] >= 0).all()


def test_fit_per_locus_is_reproducible(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data

    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        first = fit_per_locus(freqs[:, :6], env, FAST, locus_ids=locus_ids[:6])
        # processing order must not change per-locus results
        reversed_table = fit_per_locus(freqs[:, 5::-1], env, FAST, locus_ids=locus_ids[5::-1])

    pd.testing.assert_series_equal(first['statistic'], reversed_table['statistic'].loc[first.index])


def test_fit_per_locus_filters_and_downsamples(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data
    freqs = freqs.copy()
    freqs[:, 1] = 0.0
    freqs[:3, 1] = 0.5

    options = GFOptions(n_trees=20, n_loci_sample=10, seed=1)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        table = fit_per_locus(freqs, env, options, locus_ids=locus_ids, always_fit=['L05'])

    assert table.loc['L01', 'status'] == 'filtered'
    assert table.loc['L01', 'n_polymorphic_groups'] == 3
    assert np.isnan(table.loc['L01', 'statistic'])
    assert table.loc['L05', 'status'] == 'fitted'
    assert (table['status'] == 'fitted').sum() == 11
    assert (table['status'] == 'not_sampled').sum() == len(locus_ids) - 12
    assert table.loc[table['status'] == 'not_sampled', 'statistic'].isna().all()


def test_fit_per_locus_counts_polymorphic_populations_from_individuals() -> None:
    genotypes = np.array([[0, 1], [1, 1], [0, 1], [0, 1]], dtype=float)
    freqs = np.array([[0.25, 0.5], [0.0, 0.5]])
    env = np.array([[0.0], [1.0]])

    options = GFOptions(n_trees=5, min_polymorphic_groups=2)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        table = fit_per_locus(freqs, env, options, locus_ids=['A', 'B'],
                              groups=['p1', 'p1', 'p2', 'p2'], group_values=genotypes)

    assert table['n_polymorphic_groups'].tolist() == [1, 2]
    assert table.loc['A', 'status'] == 'filtered'


def test_gea_gf_with_neutral_subset(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data

    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        res = GEA_GF(freqs, env, locus_ids, neutral_locus_ids=locus_ids[20:], options=FAST)

    frame = res.to_dataframe().set_index('SNP')
    assert res.method == 'GF'
    assert list(res.to_dataframe().columns[:3]) == ['SNP', 'statistic', 'pvalue']
    assert frame.loc['L00', 'pvalue'] == pytest.approx(0.0)
    assert frame['pvalue'].between(0, 1).all()
    assert res.metadata['n_neutral'] == 20
    assert res.metadata['n_fitted'] == 40
    assert res.calibration is not None


def test_gea_gf_with_separate_neutral_matrix(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data
    rng = np.random.default_rng(5)
    neutral = rng.uniform(0.2, 0.8, size=(freqs.shape[0], 15))
    neutral_ids = [f"N{i}" for i in range(15)]

    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        res = GEA_GF(freqs[:, :5], env, locus_ids[:5], neutral_genotypes=neutral,
                     neutral_ids=neutral_ids, options=FAST)

    assert res.n_markers == 5
    assert res.metadata['n_neutral'] == 15
    assert res.to_series('pvalue')['L00'] == pytest.approx(0.0)

    with pytest.raises(ValueError, match="neutral_ids"):
        GEA_GF(freqs[:, :5], env, locus_ids[:5], neutral_genotypes=neutral, options=FAST)


def test_gradient_forest_method_on_population_view() -> None:
    sim = simulate_gea(seed=8)
    population = align_inputs(sim['genotypes'], sim['individual_ids'], sim['locus_ids'],
                              sim['covariates'], level='population')
    config = AnalysisConfig(n_trees=50, min_polymorphic_groups=4, verbose=False)

    method = GradientForestMethod(config)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        method.fit(population)
    results = method.results()

    top = results.to_dataframe().sort_values(['pvalue', 'statistic'], ascending=[True, False])
    assert len(set(top['SNP'].head(5)) & set(sim['signal_ids'])) >= 4
    assert not method.structure_corrected

    individual = align_inputs(sim['genotypes'], sim['individual_ids'], sim['locus_ids'], sim['covariates'])
    with pytest.raises(ValueError, match="population-level"):
        GradientForestMethod(config).fit(individual)


def test_locus_fit_error_survives_pickling() -> None:
    error = LocusFitError('L7', 'ValueError: boom')

    restored = pickle.loads(pickle.dumps(error))

    assert restored.locus_id == 'L7'
    assert 'boom' in str(restored)


def test_fit_per_locus_aborts_when_a_locus_fit_raises(small_population_data, monkeypatch) -> None:
    freqs, env, locus_ids = small_population_data

    def broken_fit(self, X, y, sample_weight=None):
        raise RuntimeError("solver exploded")

    monkeypatch.setattr(RandomForestRegressor, 'fit', broken_fit)
    with pytest.raises(LocusFitError, match="solver exploded") as excinfo:
        fit_per_locus(freqs[:, :3], env, FAST, locus_ids=locus_ids[:3])

    assert excinfo.value.locus_id in locus_ids[:3]


def test_flat_locus_is_kept_with_zero_statistic(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data
    freqs = freqs[:, :10].copy()
    # polymorphic in every population but constant across them
    freqs[:, 3] = 0.5

    with pytest.warns(DegenerateFitWarning, match="statistic 0"):
        res = GEA_GF(freqs, env, locus_ids[:10], options=FAST)

    frame = res.to_dataframe().set_index('SNP')
    assert frame.loc['L03', 'status'] == 'fitted'
    assert frame.loc['L03', 'statistic'] == 0.0
    assert frame.loc['L03', 'degenerate']
    assert np.isfinite(frame.loc['L03', 'pvalue'])
    assert 0.0 <= frame.loc['L03', 'pvalue'] <= 1.0
