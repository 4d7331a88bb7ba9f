import warnings

import numpy as np
import pytest

from geascan.association.rda import GEA_RDA, RDA, RDAMethod, score_outliers
from geascan.data.alignment import align_inputs
from geascan.utils.config import AnalysisConfig
from geascan.utils.errors import AlignmentError, DegenerateFitWarning

from conftest import simulate_gea


def test_rda_fit_axes_and_inertia(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data

    fit = RDA().fit(freqs, env, n_axes=2, locus_ids=locus_ids, covariate_names=['temp', 'rain'])

    assert fit.loadings.shape == (40, 2)
    assert list(fit.loadings.columns) == ['RDA1', 'RDA2']
    assert fit.n_axes == 2
    assert fit.eigenvalues[0] >= fit.eigenvalues[1] > 0
    assert 0.0 < fit.constrained_proportion <= 1.0
    assert fit.conditional_proportion == 0.0
    assert not fit.partial
    assert fit.site_scores.shape == (30, 2)
    assert list(fit.biplot.index) == ['temp', 'rain']
    assert fit.explained_by_axis.sum() == pytest.approx(1.0)
    # unit-norm loadings
    np.testing.assert_allclose((fit.loadings.to_numpy() ** 2).sum(axis=0), [1.0, 1.0])


def test_rda_orientation_is_deterministic(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data

    first = RDA().fit(freqs, env)
    second = RDA().fit(freqs, -env)

    np.testing.assert_allclose(first.loadings.to_numpy(), second.loadings.to_numpy(), atol=1e-10)
    for column in first.loadings.columns:
        values = first.loadings[column].to_numpy()
        assert values[np.argmax(np.abs(values))] > 0


def test_rda_rejects_bad_requests(small_population_data) -> None:
    freqs, env, _ = small_population_data

    with pytest.raises(ValueError, match="rank"):
        RDA().fit(freqs, env, n_axes=3)
    with pytest.raises(ValueError):
        RDA().fit(freqs, env, n_axes=0)
    with pytest.raises(ValueError, match="more samples"):
        RDA().fit(freqs[:3], env[:3])
    constant = env.copy()
    constant[:, 1] = 1.0
    with pytest.raises(AlignmentError, match="constant"):
        RDA().fit(freqs, constant)
    with pytest.raises(AlignmentError):
        RDA().fit(freqs, env[:10])


def test_partial_rda_removes_conditioning_variance(small_population_data) -> None:
    freqs, env, _ = small_population_data
    structure = freqs[:, 5:7] - freqs[:, 5:7].mean(axis=0)

    fit = RDA().fit(freqs, env, structure_correction=structure)

    assert fit.partial
    assert 0.0 < fit.conditional_proportion < 1.0


def test_score_outliers_flags_extreme_loadings() -> None:
    rng = np.random.default_rng(0)
    loadings = rng.normal(size=(300, 2))
    loadings[:3] = [[8.0, 8.0], [-9.0, 7.0], [10.0, -6.0]]

    scores = score_outliers(loadings, k_axes=2, seed=1)

    assert set(np.argsort(scores.calibrated_pvalues)[:3]) == {0, 1, 2}
    assert scores.lambda_gc == pytest.approx(1.0, abs=0.3)
    assert scores.qvalues.shape == (300,)
    assert np.all(scores.qvalues[:3] < 0.05)
    assert scores.k_axes == 2

    raw = score_outliers(loadings, k_axes=2, calibrate=False, seed=1)
    assert raw.lambda_gc == 1.0
    np.testing.assert_allclose(raw.calibrated_pvalues, raw.pvalues)


def test_score_outliers_validation() -> None:
    with pytest.raises(ValueError):
        score_outliers(np.zeros((10, 1)), k_axes=2)
    with pytest.raises(ValueError):
        score_outliers(np.zeros((2, 2)), k_axes=2)


def test_gea_rda_finds_signal_and_adds_qvalues(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data

    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        res = GEA_RDA(freqs, env, locus_ids=locus_ids, verbose=False)

    frame = res.to_dataframe()
    assert res.method == 'RDA'
    assert frame.sort_values('calibrated_pvalue')['SNP'].iloc[0] == 'L00'
    assert {'loading_RDA1', 'loading_RDA2'} <= set(frame.columns)
    assert np.isfinite(res.qvalues).all()
    assert res.metadata['fdr_level'] == 0.05
    assert res.calibration is not None


def test_gea_rda_degenerate_locus_gets_pvalue_one(small_population_data) -> None:
    freqs, env, locus_ids = small_population_data
    freqs = freqs.copy()
    freqs[:, 7] = 0.4

    with pytest.warns(DegenerateFitWarning):
        res = GEA_RDA(freqs, env, locus_ids=locus_ids, verbose=False)

    row = res.to_dataframe().set_index('SNP').loc['L07']
    assert bool(row['degenerate'])
    assert row['calibrated_pvalue'] == 1.0


def test_rda_method_partial_uses_structure_pcs() -> None:
    sim = simulate_gea(seed=9)
    population = align_inputs(sim['genotypes'], sim['individual_ids'], sim['locus_ids'],
                              sim['covariates'], level='population')
    config = AnalysisConfig(verbose=False)

    plain = RDAMethod(config)
    partial = RDAMethod(config, partial=True)
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        plain.fit(population)
        partial.fit(population)

    assert plain.name == 'RDA' and not plain.structure_corrected
    assert partial.name == 'pRDA' and partial.structure_corrected
    assert partial.results().method == 'pRDA'
    assert partial.results().metadata['conditional_proportion'] > 0.0
    assert RDAMethod(config, structure_correction=np.ones((20, 1))).name == 'pRDA'
