import numpy as np
import pandas as pd
import pytest

from geascan.data.alignment import (
    CovariateScaler,
    align_inputs,
    build_population_map,
    derive_population_code,
    minor_allele_diagnostic,
    population_allele_frequencies,
    scale_covariates,
)
from geascan.data.structure import StructureAssignment
from geascan.utils.data_types import GenotypeMatrix
from geascan.utils.errors import AlignmentError, MinorAlleleWarning


def _toy():
    genotypes = np.array([
        [0, 2, 1],   # BER02
        [1, 2, 0],   # ALT01
        [2, 0, 1],   # BER01
        [1, 1, 1],   # ALT02
    ])
    individuals = ['BER02', 'ALT01', 'BER01', 'ALT02']
    loci = ['L1', 'L2', 'L3']
    covariates = pd.DataFrame({'ID': ['BER', 'ALT'], 'bio1': [10.0, 2.0], 'bio12': [300.0, 100.0]})
    return genotypes, individuals, loci, covariates


def test_derive_population_code_prefix_and_overrides() -> None:
    assert derive_population_code('ALT12') == 'ALT'
    assert derive_population_code('ALT12', overrides={'ALT': 'ALT_N'}) == 'ALT_N'
    assert derive_population_code('ALT12', overrides={'ALT12': 'BER'}) == 'BER'
    with pytest.raises(AlignmentError):
        derive_population_code('123')

    assert build_population_map(['ALT1', 'BER2']) == {'ALT1': 'ALT', 'BER2': 'BER'}


def test_align_individual_level_sorts_by_population_then_id() -> None:
    genotypes, individuals, loci, covariates = _toy()

    data = align_inputs(genotypes, individuals, loci, covariates)

    assert data.level == 'individual'
    assert data.sample_ids == ('ALT01', 'ALT02', 'BER01', 'BER02')
    assert data.population_codes == ('ALT', 'ALT', 'BER', 'BER')
    np.testing.assert_array_equal(data.genotypes[0], [1, 2, 0])
    np.testing.assert_array_equal(data.genotypes[3], [0, 2, 1])
    np.testing.assert_array_equal(data.covariates[:, 0], [2.0, 2.0, 10.0, 10.0])
    assert data.covariate_names == ('bio1', 'bio12')
    assert data.n_samples == 4 and data.n_loci == 3 and data.n_covariates == 2


def test_aligned_arrays_are_read_only() -> None:
    genotypes, individuals, loci, covariates = _toy()

    data = align_inputs(genotypes, individuals, loci, covariates)

    with pytest.raises(ValueError):
        data.genotypes[0, 0] = 5.0
    with pytest.raises(ValueError):
        data.covariates[0, 0] = 5.0


def test_align_population_level_uses_allele_frequencies() -> None:
    genotypes, individuals, loci, covariates = _toy()

    data = align_inputs(genotypes, individuals, loci, covariates, level='population')

    assert data.sample_ids == ('ALT', 'BER')
    np.testing.assert_allclose(data.genotypes[0], [0.5, 0.75, 0.25])
    np.testing.assert_allclose(data.genotypes[1], [0.5, 0.5, 0.5])
    np.testing.assert_array_equal(data.covariates[:, 1], [100.0, 300.0])
    assert data.individual_genotypes.shape == (4, 3)
    assert data.individual_populations == ('ALT', 'ALT', 'BER', 'BER')


def test_align_attaches_structure_groups() -> None:
    genotypes, individuals, loci, covariates = _toy()
    structure = StructureAssignment({'ALT01': 'K1', 'ALT02': 'K1', 'BER01': 'K2', 'BER02': 'K1'})

    data = align_inputs(genotypes, individuals, loci, covariates, structure=structure)

    assert data.groups == ('K1', 'K1', 'K2', 'K1')


def test_align_rejects_unmatched_population() -> None:
    genotypes, individuals, loci, covariates = _toy()

    with pytest.raises(AlignmentError, match="no covariate row"):
        align_inputs(genotypes, individuals, loci, covariates[covariates['ID'] == 'ALT'])


def test_align_rejects_missing_covariate_and_genotype_values() -> None:
    genotypes, individuals, loci, covariates = _toy()
    with_nan = covariates.copy()
    with_nan.loc[0, 'bio1'] = np.nan
    with pytest.raises(AlignmentError, match="missing values"):
        align_inputs(genotypes, individuals, loci, with_nan)

    incomplete = genotypes.copy()
    incomplete[0, 0] = -9
    with pytest.raises(AlignmentError, match="missing calls"):
        align_inputs(GenotypeMatrix(incomplete), individuals, loci, covariates)


def test_align_rejects_count_mismatches_and_duplicates() -> None:
    genotypes, individuals, loci, covariates = _toy()

    with pytest.raises(AlignmentError, match="individual ids"):
        align_inputs(genotypes, individuals[:3], loci, covariates)
    with pytest.raises(AlignmentError, match="locus ids"):
        align_inputs(genotypes, individuals, loci[:2], covariates)
    with pytest.raises(AlignmentError, match="not unique"):
        align_inputs(genotypes, ['ALT01'] * 4, loci, covariates)


def test_align_warns_and_ignores_unused_covariate_populations() -> None:
    genotypes, individuals, loci, covariates = _toy()
    extra = pd.concat([covariates, pd.DataFrame({'ID': ['ZZZ'], 'bio1': [0.0], 'bio12': [0.0]})])

    with pytest.warns(UserWarning, match="Ignoring 1 covariate populations"):
        data = align_inputs(genotypes, individuals, loci, extra)

    assert set(data.population_codes) == {'ALT', 'BER'}


def test_align_with_explicit_population_map() -> None:
    genotypes, individuals, loci, covariates = _toy()
    mapping = {'BER02': 'ALT', 'ALT01': 'ALT', 'BER01': 'BER', 'ALT02': 'BER'}

    data = align_inputs(genotypes, individuals, loci, covariates, population_map=mapping)

    assert data.sample_ids == ('ALT01', 'BER02', 'ALT02', 'BER01')

    with pytest.raises(AlignmentError, match="missing from the population map"):
        align_inputs(genotypes, individuals, loci, covariates, population_map={'ALT01': 'ALT'})


def test_subset_loci_and_with_covariates() -> None:
    genotypes, individuals, loci, covariates = _toy()
    data = align_inputs(genotypes, individuals, loci, covariates, level='population')

    subset = data.subset_loci(['L3', 'L1'])
    assert subset.locus_ids == ('L3', 'L1')
    np.testing.assert_allclose(subset.genotypes[:, 1], data.genotypes[:, 0])
    assert subset.individual_genotypes.shape == (4, 2)
    with pytest.raises(AlignmentError):
        data.subset_loci(['nope'])

    replaced = data.with_covariates(np.ones((2, 1)), ['flat'])
    assert replaced.covariate_names == ('flat',)
    with pytest.raises(AlignmentError):
        data.with_covariates(np.ones((3, 1)))


def test_population_allele_frequencies_sorted() -> None:
    freqs, pops = population_allele_frequencies(np.array([[2, 0], [0, 0], [1, 2]]), ['B', 'A', 'B'])

    assert pops == ['A', 'B']
    np.testing.assert_allclose(freqs, [[0.0, 0.0], [0.75, 0.5]])


def test_covariate_scaler_reuses_reference_parameters() -> None:
    reference = pd.DataFrame({'ID': ['A', 'B', 'C'], 'bio1': [1.0, 2.0, 3.0]})
    future = pd.DataFrame({'ID': ['A', 'B', 'C'], 'bio1': [2.0, 3.0, 4.0]})

    scaler = CovariateScaler().fit(reference)
    scaled_future = scaler.transform(future)

    assert scaler.mean_[0] == pytest.approx(2.0)
    np.testing.assert_allclose(scaled_future['bio1'], (future['bio1'] - 2.0) / np.std([1.0, 2.0, 3.0]))
    assert scaled_future['ID'].tolist() == ['A', 'B', 'C']

    scaled_ref, scaled_fut = scale_covariates(reference, future)
    assert scaled_ref['bio1'].mean() == pytest.approx(0.0)
    np.testing.assert_allclose(scaled_fut['bio1'], scaled_future['bio1'])


def test_covariate_scaler_errors() -> None:
    with pytest.raises(ValueError):
        CovariateScaler().transform(pd.DataFrame({'ID': ['A'], 'x': [1.0]}))
    with pytest.raises(AlignmentError, match="zero variance"):
        CovariateScaler().fit(pd.DataFrame({'ID': ['A', 'B'], 'x': [1.0, 1.0]}))

    scaler = CovariateScaler().fit(pd.DataFrame({'ID': ['A', 'B'], 'x': [1.0, 2.0]}))
    with pytest.raises(AlignmentError, match="lacks reference columns"):
        scaler.transform(pd.DataFrame({'ID': ['A'], 'y': [1.0]}))


def test_minor_allele_diagnostic_flags_without_recoding() -> None:
    freqs = np.array([[0.9, 0.1], [0.7, 0.2]])
    original = freqs.copy()

    with pytest.warns(MinorAlleleWarning):
        flagged = minor_allele_diagnostic(freqs, ['L1', 'L2'])

    assert flagged == ['L1']
    np.testing.assert_array_equal(freqs, original)
    assert minor_allele_diagnostic(freqs[:, 1:], ['L2']) == []
