"""
Redundancy analysis (RDA) outlier detection

RDA regresses the centred genotype matrix on the scaled covariates and
ordinates the fitted values (SVD). Loci with extreme loadings on the first K
constrained axes are outliers: the scaled loadings are scored with a robust
squared Mahalanobis distance (Minimum Covariance Determinant), divided by the
inflation factor median(d2) / median(chi2_K) and referred to chi2 with K
degrees of freedom.

Partial RDA conditions on a structure matrix (e.g. leading genomic PCs):
response and covariates are residualized on it before the constrained fit.

The robust estimate of centre and scatter keeps the outlying loci from
inflating the spread they are measured against.
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.covariance import MinCovDet

from ..data.alignment import AlignedData
from ..matrix.pca import compute_structure_pcs
from ..utils.config import AnalysisConfig
from ..utils.data_types import AssociationResults, GenotypeMatrix
from ..utils.errors import AlignmentError, DegenerateFitWarning
from ..utils.stats import check_calibration, to_qvalues
from .base import GEAMethod

RANK_TOL = 1e-10


@dataclass
class RDAFit:
    """Constrained ordination of loci on covariates.

    Attributes:
        loadings: loci × K locus scores on the constrained axes
        eigenvalues: Variance of every constrained axis
        site_scores: samples × K sample scores (fitted values space)
        biplot: covariates × K correlations of covariates with site scores
        constrained_proportion: Share of the response inertia explained by
            the covariates
        conditional_proportion: Share removed by the structure matrix (0 for
            plain RDA)
        degenerate: Loci with no variance after centring / conditioning
    """

    loadings: pd.DataFrame
    eigenvalues: np.ndarray
    site_scores: np.ndarray
    biplot: pd.DataFrame
    constrained_proportion: float
    conditional_proportion: float
    degenerate: np.ndarray
    partial: bool = False

    @property
    def n_axes(self) -> int:
        return self.loadings.shape[1]

    @property
    def explained_by_axis(self) -> np.ndarray:
        return self.eigenvalues / self.eigenvalues.sum()


@dataclass(frozen=True)
class OutlierScores:
    """Robust distances and their p-values / q-values."""

    distances: np.ndarray
    pvalues: np.ndarray
    calibrated_pvalues: np.ndarray
    qvalues: np.ndarray
    lambda_gc: float
    k_axes: int


def _residualize(matrix: np.ndarray, basis: np.ndarray) -> np.ndarray:
    Q, _ = np.linalg.qr(basis, mode='reduced')
    return matrix - Q @ (Q.T @ matrix)


class RDA:
    """Redundancy analysis with optional conditioning matrix."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def fit(self, genotypes: Union[GenotypeMatrix, np.ndarray],
            covariates: np.ndarray,
            structure_correction: Optional[np.ndarray] = None,
            n_axes: int = 2,
            locus_ids: Optional[Sequence[str]] = None,
            covariate_names: Optional[Sequence[str]] = None) -> RDAFit:
        """Fit RDA (or partial RDA when `structure_correction` is given)

        Args:
            genotypes: samples × loci frequencies or dosages, complete
            covariates: samples × covariates
            structure_correction: Optional samples × c conditioning matrix
            n_axes: Number of constrained axes to keep
            locus_ids: Locus identifiers
            covariate_names: Covariate names

        Returns:
            RDAFit
        """
        if isinstance(genotypes, GenotypeMatrix):
            if not genotypes.is_complete:
                raise AlignmentError("RDA requires a complete genotype matrix")
            Y = genotypes[:, :].astype(np.float64)
        else:
            Y = np.asarray(genotypes, dtype=np.float64)
        X = np.asarray(covariates, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, np.newaxis]
        n, p = Y.shape
        d = X.shape[1]
        if X.shape[0] != n:
            raise AlignmentError(f"Covariate matrix has {X.shape[0]} rows, genotype matrix has {n}")
        if not np.isfinite(Y).all() or not np.isfinite(X).all():
            raise AlignmentError("RDA requires complete genotype and covariate matrices")
        if n_axes <= 0:
            raise ValueError("n_axes must be positive")
        locus_ids = [str(l) for l in locus_ids] if locus_ids is not None else [f"L{i}" for i in range(p)]
        covariate_names = ([str(c) for c in covariate_names] if covariate_names is not None
                           else [f"X{j}" for j in range(d)])

        Yc = Y - Y.mean(axis=0)
        sd = X.std(axis=0, ddof=1)
        if np.any(sd == 0):
            raise AlignmentError("RDA covariates must not be constant")
        Xs = (X - X.mean(axis=0)) / sd
        total_inertia = float((Yc ** 2).sum())

        conditional = 0.0
        partial = structure_correction is not None
        if partial:
            W = np.asarray(structure_correction, dtype=np.float64)
            if W.ndim == 1:
                W = W[:, np.newaxis]
            if W.shape[0] != n:
                raise AlignmentError(f"Structure matrix has {W.shape[0]} rows, genotype matrix has {n}")
            basis = np.column_stack([np.ones(n), W])
            Yc = _residualize(Yc, basis)
            Xs = _residualize(Xs, basis)
            conditional = 1.0 - float((Yc ** 2).sum()) / total_inertia if total_inertia > 0 else 0.0

        if n - 1 - (W.shape[1] if partial else 0) <= d:
            raise ValueError(f"RDA needs more samples than covariates (+ conditioning terms); got n={n}, d={d}")

        Qx, Rx = np.linalg.qr(Xs, mode='reduced')
        rank = int(np.sum(np.abs(np.diag(Rx)) > RANK_TOL * max(1.0, np.abs(Rx).max())))
        fitted = Qx @ (Qx.T @ Yc)
        U, S, Vt = np.linalg.svd(fitted, full_matrices=False)
        rank = min(rank, int(np.sum(S > RANK_TOL * max(1.0, S.max(initial=0.0)))))
        if n_axes > rank:
            raise ValueError(f"Requested {n_axes} axes but the constrained ordination has rank {rank}")

        eigenvalues = S[:rank] ** 2 / (n - 1)
        # deterministic axis orientation
        for k in range(rank):
            if Vt[k, np.argmax(np.abs(Vt[k]))] < 0:
                Vt[k] = -Vt[k]
                U[:, k] = -U[:, k]

        loadings = pd.DataFrame(Vt[:n_axes].T, index=pd.Index(locus_ids, name='SNP'),
                                columns=[f"RDA{k + 1}" for k in range(n_axes)])
        site_scores = U[:, :n_axes] * S[:n_axes]
        with np.errstate(invalid='ignore', divide='ignore'):
            biplot = np.array([[np.corrcoef(Xs[:, j], site_scores[:, k])[0, 1] for k in range(n_axes)]
                               for j in range(d)])
        biplot = pd.DataFrame(biplot, index=covariate_names, columns=loadings.columns)

        constrained = float(S[:rank] @ S[:rank]) / total_inertia if total_inertia > 0 else 0.0
        degenerate = (Yc ** 2).sum(axis=0) < RANK_TOL

        if self.verbose:
            label = 'partial RDA' if partial else 'RDA'
            print(f"{label}: {n} samples, {p} loci, {d} covariates, {rank} constrained axes")
            print(f"   Constrained inertia: {constrained * 100:.2f}%"
                  + (f", conditioned out: {conditional * 100:.2f}%" if partial else ""))

        return RDAFit(
            loadings=loadings,
            eigenvalues=eigenvalues,
            site_scores=site_scores,
            biplot=biplot,
            constrained_proportion=constrained,
            conditional_proportion=conditional,
            degenerate=degenerate,
            partial=partial,
        )


def score_outliers(loadings: Union[pd.DataFrame, np.ndarray],
                   k_axes: int = 2,
                   calibrate: bool = True,
                   fdr_level: float = 0.05,
                   seed: Optional[int] = 42) -> OutlierScores:
    """Robust Mahalanobis outlier scores of locus loadings

    Args:
        loadings: loci × axes loadings
        k_axes: Number of leading axes used (chi-squared degrees of freedom)
        calibrate: Divide distances by the inflation factor
            median(d2) / median(chi2_k)
        fdr_level: Level used for the q-value significance flag
        seed: Random state of the MCD estimator

    Returns:
        OutlierScores
    """
    L = np.asarray(loadings, dtype=np.float64)
    if L.ndim != 2 or L.shape[1] < k_axes:
        raise ValueError(f"Need at least {k_axes} loading columns, got {L.shape}")
    if k_axes <= 0:
        raise ValueError("k_axes must be positive")
    if L.shape[0] <= k_axes:
        raise ValueError("Outlier scoring needs more loci than axes")
    L = L[:, :k_axes]
    sd = L.std(axis=0, ddof=1)
    sd[sd == 0] = 1.0
    Lz = (L - L.mean(axis=0)) / sd

    mcd = MinCovDet(random_state=seed).fit(Lz)
    distances = mcd.mahalanobis(Lz)

    lambda_gc = float(np.median(distances) / stats.chi2.ppf(0.5, df=k_axes))
    if not np.isfinite(lambda_gc) or lambda_gc <= 0:
        lambda_gc = 1.0
    raw = stats.chi2.sf(distances, df=k_axes)
    calibrated = stats.chi2.sf(distances / lambda_gc, df=k_axes) if calibrate else raw
    qvalues, _ = to_qvalues(calibrated, fdr_level=fdr_level)
    return OutlierScores(
        distances=distances,
        pvalues=raw,
        calibrated_pvalues=calibrated,
        qvalues=qvalues,
        lambda_gc=lambda_gc if calibrate else 1.0,
        k_axes=k_axes,
    )


def GEA_RDA(genotypes: Union[GenotypeMatrix, np.ndarray],
            covariates: np.ndarray,
            structure_correction: Optional[np.ndarray] = None,
            n_axes: int = 2,
            locus_ids: Optional[Sequence[str]] = None,
            covariate_names: Optional[Sequence[str]] = None,
            calibrate: bool = True,
            fdr_level: float = 0.05,
            seed: Optional[int] = 42,
            calibration_bins: int = 10,
            calibration_alpha: float = 0.001,
            verbose: bool = True) -> AssociationResults:
    """RDA (or partial RDA) outlier scan.

    Returns:
        AssociationResults with statistic = robust squared distance, q-values
        and significance flags at `fdr_level`, loadings as extra columns
    """
    method = 'pRDA' if structure_correction is not None else 'RDA'
    fit = RDA(verbose=verbose).fit(genotypes, covariates, structure_correction=structure_correction,
                                   n_axes=n_axes, locus_ids=locus_ids, covariate_names=covariate_names)
    scores = score_outliers(fit.loadings, k_axes=n_axes, calibrate=calibrate,
                            fdr_level=fdr_level, seed=seed)

    degenerate = fit.degenerate
    calibrated = np.where(degenerate, 1.0, scores.calibrated_pvalues)
    if degenerate.any():
        warnings.warn(
            f"{method}: {int(degenerate.sum())} loci without variance recorded with p-value 1",
            DegenerateFitWarning,
        )

    frame = pd.DataFrame({
        'SNP': fit.loadings.index.to_numpy(),
        'statistic': scores.distances,
        'pvalue': np.where(degenerate, 1.0, scores.pvalues),
        'calibrated_pvalue': calibrated,
        'degenerate': degenerate,
    })
    for column in fit.loadings.columns:
        frame[f'loading_{column}'] = fit.loadings[column].to_numpy()

    report = check_calibration(calibrated[~degenerate], bins=calibration_bins, alpha=calibration_alpha,
                               df=n_axes, label=f"{method} ({'calibrated' if calibrate else 'raw'})")
    metadata = {
        'n_axes': n_axes,
        'lambda_gc': scores.lambda_gc,
        'eigenvalues': fit.eigenvalues.tolist(),
        'constrained_proportion': fit.constrained_proportion,
        'conditional_proportion': fit.conditional_proportion,
        'biplot': fit.biplot,
    }
    if verbose:
        print(f"{method} outlier scan: inflation factor {scores.lambda_gc:.3f}; {report.summary()}")

    results = AssociationResults(frame, method=method, calibration=report, metadata=metadata)
    qvalues, significant = to_qvalues(results.calibrated_pvalues, fdr_level=fdr_level)
    return results.with_qvalues(qvalues, significant, fdr_level=fdr_level)


class RDAMethod(GEAMethod):
    """RDA / partial RDA behind the common GEA interface (population level).

    With `partial=True` the structure matrix is, unless given, the leading
    `config.n_structure_pcs` PCs of the aligned genotype matrix.
    """

    level = 'population'

    def __init__(self, config: Optional[AnalysisConfig] = None, partial: bool = False,
                 structure_correction: Optional[np.ndarray] = None):
        super().__init__(config)
        self.partial = partial or structure_correction is not None
        self.structure_correction = structure_correction
        self.name = 'pRDA' if self.partial else 'RDA'
        self.structure_corrected = self.partial

    def _run(self, data: AlignedData) -> AssociationResults:
        cfg = self.config
        conditioning = None
        if self.partial:
            conditioning = self.structure_correction
            if conditioning is None:
                conditioning, _ = compute_structure_pcs(data.genotypes, pcs_keep=cfg.n_structure_pcs,
                                                        verbose=cfg.verbose)
        return GEA_RDA(
            data.genotypes,
            data.covariates,
            structure_correction=conditioning,
            n_axes=cfg.rda_axes,
            locus_ids=data.locus_ids,
            covariate_names=data.covariate_names,
            calibrate=cfg.calibration == 'gif',
            fdr_level=cfg.fdr_level,
            seed=cfg.seed,
            calibration_bins=cfg.calibration_bins,
            calibration_alpha=cfg.calibration_alpha,
            verbose=cfg.verbose,
        )
