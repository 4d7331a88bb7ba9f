import numpy as np
import pytest

from geascan.matrix.pca import compute_structure_pcs
from geascan.utils.data_types import GenotypeMatrix


def _two_clusters(seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    p1 = rng.uniform(0.05, 0.3, size=200)
    p2 = rng.uniform(0.7, 0.95, size=200)
    return np.vstack([rng.binomial(2, p1, size=(15, 200)), rng.binomial(2, p2, size=(15, 200))])


def test_structure_pcs_separate_clusters() -> None:
    genotypes = _two_clusters()

    pcs, explained = compute_structure_pcs(genotypes, pcs_keep=2, verbose=False)

    assert pcs.shape == (30, 2)
    assert explained.shape == (2,)
    assert explained[0] > explained[1]
    assert explained.sum() <= 1.0 + 1e-12
    assert np.all(np.sign(pcs[:15, 0]) == np.sign(pcs[0, 0]))
    assert np.all(np.sign(pcs[15:, 0]) == -np.sign(pcs[0, 0]))


def test_structure_pcs_batching_and_sign_are_deterministic() -> None:
    genotypes = _two_clusters(1)

    full, _ = compute_structure_pcs(genotypes, pcs_keep=3, verbose=False)
    batched, _ = compute_structure_pcs(genotypes, pcs_keep=3, maxLine=17, verbose=False)

    np.testing.assert_allclose(full, batched, atol=1e-8)
    for j in range(3):
        assert full[np.argmax(np.abs(full[:, j])), j] > 0


def test_structure_pcs_warns_when_rank_is_short() -> None:
    genotypes = np.array([[0, 1, 2], [2, 1, 0], [1, 1, 1]], dtype=float)

    with pytest.warns(UserWarning, match="positive variance"):
        pcs, _ = compute_structure_pcs(genotypes, pcs_keep=3, verbose=False)

    assert pcs.shape[1] == 1


def test_structure_pcs_input_validation() -> None:
    with pytest.raises(ValueError):
        compute_structure_pcs(np.zeros((3, 3)), pcs_keep=0, verbose=False)
    with pytest.raises(ValueError, match="complete"):
        compute_structure_pcs(GenotypeMatrix(np.array([[0, -9], [1, 2]])), verbose=False)
    with pytest.raises(ValueError):
        compute_structure_pcs([[0, 1], [1, 0]], verbose=False)
