"""
Statistical utilities for GEA analysis: calibration, FDR and thresholds
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from .errors import CalibrationWarning

PI0_LAMBDAS = np.arange(0.05, 0.96, 0.05)


def bonferroni_correction(pvalues: np.ndarray, alpha: float = 0.05) -> Tuple[np.ndarray, float]:
    """Bonferroni adjustment over every tested locus

    The family size is the full length of `pvalues`, loci without a finite
    p-value included.
    Non-finite p-values stay NaN after adjustment.

    Returns:
        Tuple of (adjusted_pvalues, per-locus cutoff alpha / m)
    """
    if not 0.0 < alpha <= 1.0:
        raise ValueError("alpha must be in (0, 1]")
    pvalues = np.asarray(pvalues, dtype=np.float64)
    n_tests = max(pvalues.size, 1)
    adjusted = np.full(pvalues.shape, np.nan)
    finite = np.isfinite(pvalues)
    adjusted[finite] = np.minimum(pvalues[finite] * n_tests, 1.0)
    return adjusted, alpha / n_tests


def estimate_pi0(pvalues: np.ndarray,
                 lambdas: Optional[Sequence[float]] = None) -> float:
    """Estimate the proportion of true null hypotheses (Storey 2002)

    pi0(lambda) = #{p > lambda} / (m * (1 - lambda)) is evaluated on a grid of
    lambdas and smoothed with a quadratic least-squares fit (three degrees of
    freedom); the smoothed value at the largest lambda is the estimate.
    A single lambda returns the raw estimate at that lambda.

    If the smoothed estimate is not in (0, 1], the raw estimate at
    lambda = 0.5 is used, and if that is zero the estimate falls back to 1
    (Benjamini-Hochberg behaviour).

    Args:
        pvalues: Finite p-values in [0, 1]
        lambdas: Tuning grid (default 0.05, 0.10, ..., 0.95)

    Returns:
        pi0 estimate in (0, 1]
    """
    p = np.asarray(pvalues, dtype=np.float64)
    p = p[np.isfinite(p)]
    m = p.size
    if m == 0:
        return 1.0

    grid = PI0_LAMBDAS if lambdas is None else np.asarray(lambdas, dtype=np.float64)
    if grid.size == 0 or np.any((grid < 0) | (grid >= 1)):
        raise ValueError("lambdas must lie in [0, 1)")

    pi0_raw = np.array([np.mean(p > lam) / (1.0 - lam) for lam in grid])
    if grid.size == 1:
        pi0 = float(pi0_raw[0])
    else:
        smoother = np.polynomial.Polynomial.fit(grid, pi0_raw, deg=min(2, grid.size - 1))
        pi0 = float(smoother(grid[-1]))

    if not 0.0 < pi0 <= 1.0:
        if pi0 > 1.0:
            return 1.0
        pi0 = float(np.mean(p > 0.5) / 0.5)
        if pi0 <= 0.0:
            return 1.0
    return min(pi0, 1.0)


def to_qvalues(pvalues: np.ndarray,
               fdr_level: float = 0.05,
               pi0: Optional[float] = None) -> Tuple[np.ndarray, np.ndarray]:
    """Convert p-values to Storey q-values

    The p-values are assumed to be approximately uniform under the null. This
    is NOT checked here: callers must run `check_calibration` first (see
    `geascan.core.thresholds.apply_fdr`). Non-finite p-values get a NaN
    q-value and are never significant.

    Args:
        pvalues: Raw or calibrated p-values
        fdr_level: FDR level for the significance flag
        pi0: Optional fixed null proportion (estimated when None)

    Returns:
        Tuple of (qvalues, significant) aligned with the input order
    """
    p = np.asarray(pvalues, dtype=np.float64)
    qvalues = np.full(p.shape, np.nan)
    finite = np.isfinite(p)
    if np.any(finite & ((p < 0) | (p > 1))):
        raise ValueError("p-values must lie in [0, 1]")

    valid = p[finite]
    m = valid.size
    if m > 0:
        if pi0 is None:
            pi0 = estimate_pi0(valid)
        order = np.argsort(valid, kind='mergesort')[::-1]
        ranks = np.arange(m, 0, -1)
        scaled = np.minimum.accumulate(valid[order] * m / ranks)
        q_sorted = pi0 * np.minimum(scaled, 1.0)
        q_valid = np.empty(m)
        q_valid[order] = q_sorted
        qvalues[finite] = q_valid

    significant = np.zeros(p.shape, dtype=bool)
    significant[finite] = qvalues[finite] <= fdr_level
    return qvalues, significant


def genomic_inflation_factor(pvalues: np.ndarray, df: int = 1) -> float:
    """Calculate genomic inflation factor (lambda)

    Args:
        pvalues: Array of p-values
        df: Degrees of freedom of the chi-squared reference

    Returns:
        Genomic inflation factor (lambda)
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_pvals = pvalues[np.isfinite(pvalues) & (pvalues > 0)]
    if len(valid_pvals) == 0:
        return 1.0

    chi2_values = stats.chi2.isf(valid_pvals, df=df)
    median_chi2 = np.median(chi2_values)
    expected_median = stats.chi2.ppf(0.5, df=df)

    lambda_gc = median_chi2 / expected_median
    return float(lambda_gc)


def genomic_control(chi2_stats: np.ndarray, df: int = 1) -> Tuple[np.ndarray, float]:
    """Rescale chi-squared statistics by their genomic inflation factor

    lambda = median(chi2) / median of chi2(df). Under the assumption that most
    loci are not associated, the rescaled statistics give approximately
    uniform p-values.

    Args:
        chi2_stats: Chi-squared distributed statistics (non-finite entries are
            ignored for lambda and propagated as NaN)
        df: Degrees of freedom

    Returns:
        Tuple of (calibrated_pvalues, lambda)
    """
    chi2_stats = np.asarray(chi2_stats, dtype=np.float64)
    finite = np.isfinite(chi2_stats)
    pvalues = np.full(chi2_stats.shape, np.nan)
    if not finite.any():
        return pvalues, 1.0

    lambda_gc = float(np.median(chi2_stats[finite]) / stats.chi2.ppf(0.5, df=df))
    if not np.isfinite(lambda_gc) or lambda_gc <= 0:
        lambda_gc = 1.0
    pvalues[finite] = stats.chi2.sf(chi2_stats[finite] / lambda_gc, df=df)
    return pvalues, lambda_gc


def recalibrate_pvalues(pvalues: np.ndarray, df: int = 1) -> Tuple[np.ndarray, float]:
    """Apply genomic control to a p-value vector.

    Re-applying it to already calibrated p-values gives lambda == 1 and
    leaves the values unchanged.
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    chi2_stats = np.full(pvalues.shape, np.nan)
    finite = np.isfinite(pvalues)
    chi2_stats[finite] = stats.chi2.isf(np.clip(pvalues[finite], 0.0, 1.0), df=df)
    return genomic_control(chi2_stats, df=df)


@dataclass(frozen=True)
class CalibrationReport:
    """Outcome of a p-value histogram flatness check."""

    lambda_gc: float
    bin_counts: Tuple[int, ...]
    gof_pvalue: float
    is_flat: bool
    n_tests: int

    def summary(self) -> str:
        state = "flat" if self.is_flat else "NOT flat"
        return (f"histogram {state} (GOF p={self.gof_pvalue:.3g}, "
                f"lambda={self.lambda_gc:.3f}, n={self.n_tests})")


def check_calibration(pvalues: np.ndarray,
                      bins: int = 10,
                      alpha: float = 0.001,
                      df: int = 1,
                      label: str = "p-values",
                      warn: bool = True) -> CalibrationReport:
    """Check that a p-value histogram is approximately uniform

    The first bin is excluded from the goodness-of-fit test because true
    associations accumulate there; the remaining bins must be flat. A
    `CalibrationWarning` is emitted when they are not, so a human can decide
    to discard the run.

    Args:
        pvalues: p-values to check
        bins: Number of histogram bins on [0, 1]
        alpha: Chi-squared goodness-of-fit level for declaring non-flatness
        df: Degrees of freedom used for the reported inflation factor
        label: Name used in the warning message
        warn: Emit a CalibrationWarning when the histogram is not flat

    Returns:
        CalibrationReport
    """
    p = np.asarray(pvalues, dtype=np.float64)
    p = p[np.isfinite(p)]
    counts, _ = np.histogram(p, bins=bins, range=(0.0, 1.0))
    tail = counts[1:]
    if tail.sum() > 0:
        gof_pvalue = float(stats.chisquare(tail).pvalue)
    else:
        gof_pvalue = 1.0
    if not np.isfinite(gof_pvalue):
        gof_pvalue = 1.0

    report = CalibrationReport(
        lambda_gc=genomic_inflation_factor(p, df=df),
        bin_counts=tuple(int(c) for c in counts),
        gof_pvalue=gof_pvalue,
        is_flat=gof_pvalue >= alpha,
        n_tests=int(p.size),
    )
    if warn and not report.is_flat:
        warnings.warn(f"Calibration check for {label}: {report.summary()}", CalibrationWarning)
    return report
