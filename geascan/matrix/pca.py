"""
Principal Component Analysis of genomic variation

Leading PCs of an unconstrained genomic PCA summarise population structure;
they are the conditioning matrix of the partial ordination.
"""

import warnings
from typing import Tuple, Union

import numpy as np

from ..utils.data_types import GenotypeMatrix

PCA_MARKER_SAMPLE_THRESHOLD = 500_000
PCA_MARKER_SAMPLE_SIZE = 200_000
PCA_MARKER_SAMPLE_SEED = 0


def compute_structure_pcs(M: Union[GenotypeMatrix, np.ndarray],
                          pcs_keep: int = 2,
                          maxLine: int = 20000,
                          verbose: bool = True) -> Tuple[np.ndarray, np.ndarray]:
    """PCA on the genotype / allele-frequency matrix via covariance decomposition

    Computes the eigen-decomposition of G×G'/m where G is the column-centred
    matrix and m the number of loci. Loci are processed in batches; above
    PCA_MARKER_SAMPLE_THRESHOLD loci a seeded random subset is used.

    Args:
        M: samples × loci matrix (dosages or population frequencies), complete
        pcs_keep: Number of principal components to return
        maxLine: Batch size for processing loci
        verbose: Print progress information

    Returns:
        Tuple of (PC scores n_samples × pcs_keep, explained variance ratio)
    """
    if isinstance(M, GenotypeMatrix):
        if not M.is_complete:
            raise ValueError("Structure PCA requires a complete genotype matrix")
        genotype = M[:, :]
    elif isinstance(M, np.ndarray):
        genotype = M
    else:
        raise ValueError("M must be GenotypeMatrix or numpy array")
    if pcs_keep <= 0:
        raise ValueError("pcs_keep must be positive")

    n_samples, n_markers = genotype.shape

    sample_indices = None
    markers_used = n_markers
    if n_markers > PCA_MARKER_SAMPLE_THRESHOLD:
        markers_used = PCA_MARKER_SAMPLE_SIZE
        rng = np.random.default_rng(PCA_MARKER_SAMPLE_SEED)
        sample_indices = np.sort(rng.choice(n_markers, size=markers_used, replace=False))
        if verbose:
            print(f"Sampling {markers_used} of {n_markers} loci for PCA (seed={PCA_MARKER_SAMPLE_SEED})")

    if verbose:
        print(f"Performing structure PCA on matrix ({n_samples}×{markers_used})")

    covariance = np.zeros((n_samples, n_samples), dtype=np.float64)
    for start in range(0, markers_used, maxLine):
        end = min(start + maxLine, markers_used)
        if sample_indices is None:
            G_batch = np.asarray(genotype[:, start:end], dtype=np.float64)
        else:
            G_batch = np.asarray(genotype[:, sample_indices[start:end]], dtype=np.float64)
        G_batch = G_batch - G_batch.mean(axis=0)[np.newaxis, :]
        covariance += G_batch @ G_batch.T
    covariance /= max(markers_used, 1)

    try:
        eigenvals, eigenvecs = np.linalg.eigh(covariance)
    except np.linalg.LinAlgError as e:
        raise ValueError(f"Failed to compute eigendecomposition: {e}")

    order = np.argsort(eigenvals)[::-1]
    eigenvals = eigenvals[order]
    eigenvecs = eigenvecs[:, order]
    positive = eigenvals > 1e-10
    eigenvals = eigenvals[positive]
    eigenvecs = eigenvecs[:, positive]

    if pcs_keep > len(eigenvals):
        warnings.warn(
            f"Requested {pcs_keep} structure PCs but only {len(eigenvals)} have positive variance"
        )
    pcs_keep = min(pcs_keep, len(eigenvals))
    total = eigenvals.sum() if len(eigenvals) else 1.0
    explained = eigenvals[:pcs_keep] / total

    # deterministic sign: largest-magnitude entry of each PC is positive
    pcs = eigenvecs[:, :pcs_keep].copy()
    for j in range(pcs_keep):
        if pcs[np.argmax(np.abs(pcs[:, j])), j] < 0:
            pcs[:, j] = -pcs[:, j]

    if verbose:
        print(f"Keeping top {pcs_keep} principal components")
        print(f"Explained variance: {np.round(explained * 100, 2)}")

    return pcs, explained
