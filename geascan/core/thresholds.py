"""
Threshold rules turning per-locus p-values into named candidate sets
"""

import math
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from ..utils.config import AnalysisConfig
from ..utils.data_types import AssociationResults, CandidateSet
from ..utils.errors import ThresholdPreconditionError
from ..utils.stats import bonferroni_correction, to_qvalues

RULES = ('fdr', 'pvalue', 'top', 'bonferroni')


def _format_level(value: float) -> str:
    return f"{value:g}"


def _pvalues(results: AssociationResults, calibrated: bool = True) -> np.ndarray:
    return results.calibrated_pvalues if calibrated else results.pvalues


def _candidate(results: AssociationResults, rule: str, mask: np.ndarray,
               threshold: float, info: str, structure_corrected: bool) -> CandidateSet:
    ids = np.asarray(results.snp_ids, dtype=object)
    return CandidateSet(
        name=f"{results.method}_{rule}",
        method=results.method,
        rule=rule,
        loci=frozenset(ids[mask].tolist()),
        threshold=float(threshold),
        structure_corrected=structure_corrected,
        info=info,
    )


def apply_fdr(results: AssociationResults,
              fdr_level: float = 0.05,
              acknowledge_uncalibrated: bool = False) -> AssociationResults:
    """Attach Storey q-values and significance flags

    q-values are only meaningful for p-values that are approximately uniform
    under the null. Results must therefore carry a calibration report (set
    by the engines' histogram check) unless the caller explicitly
    acknowledges running on unchecked p-values.

    Raises:
        ThresholdPreconditionError: no calibration check and no acknowledgment
    """
    if not results.calibration_checked and not acknowledge_uncalibrated:
        raise ThresholdPreconditionError(
            f"{results.method} p-values were never calibration-checked; run check_calibration "
            "or pass acknowledge_uncalibrated=True"
        )
    qvalues, significant = to_qvalues(results.calibrated_pvalues, fdr_level=fdr_level)
    return results.with_qvalues(qvalues, significant, fdr_level=fdr_level)


def fdr_rule(results: AssociationResults, fdr_level: float = 0.05,
             acknowledge_uncalibrated: bool = False,
             structure_corrected: bool = False) -> CandidateSet:
    """Loci with q-value <= fdr_level."""
    flagged = apply_fdr(results, fdr_level, acknowledge_uncalibrated)
    q = flagged.qvalues
    mask = np.isfinite(q) & (q <= fdr_level)
    return _candidate(results, f"fdr{_format_level(fdr_level)}", mask, fdr_level,
                      f"q-value <= {fdr_level:g}", structure_corrected)


def pvalue_rule(results: AssociationResults, cutoff: float,
                calibrated: bool = True, structure_corrected: bool = False) -> CandidateSet:
    """Loci with p-value <= cutoff."""
    if not 0.0 < cutoff <= 1.0:
        raise ValueError("cutoff must be in (0, 1]")
    p = _pvalues(results, calibrated)
    mask = np.isfinite(p) & (p <= cutoff)
    return _candidate(results, f"p{_format_level(cutoff)}", mask, cutoff,
                      f"p-value <= {cutoff:g}", structure_corrected)


def top_rank_rule(results: AssociationResults, fraction: Optional[float] = None,
                  count: Optional[int] = None, calibrated: bool = True,
                  structure_corrected: bool = False) -> CandidateSet:
    """Loci with the lowest p-values

    Keeps `count` loci, or ceil(fraction × tested loci). Loci are ordered by
    p-value, then by decreasing statistic, then by their position in the
    results table, so ties are resolved deterministically. Loci without a
    finite p-value are never selected.
    """
    if (fraction is None) == (count is None):
        raise ValueError("Provide exactly one of fraction or count")
    p = _pvalues(results, calibrated)
    tested = np.flatnonzero(np.isfinite(p))
    if fraction is not None:
        if not 0.0 < fraction <= 1.0:
            raise ValueError("fraction must be in (0, 1]")
        n_keep = int(math.ceil(fraction * tested.size - 1e-9))
        rule = f"top{_format_level(fraction * 100)}pct"
    else:
        if count < 0:
            raise ValueError("count must be non-negative")
        n_keep = int(count)
        rule = f"top{n_keep}"
    n_keep = min(n_keep, tested.size)

    statistic = np.nan_to_num(results.statistics[tested], nan=-np.inf)
    order = np.lexsort((tested, -statistic, p[tested]))
    mask = np.zeros(p.shape, dtype=bool)
    mask[tested[order[:n_keep]]] = True
    threshold = float(p[tested[order[n_keep - 1]]]) if n_keep else float('nan')
    return _candidate(results, rule, mask, threshold,
                      f"lowest {n_keep} of {tested.size} p-values", structure_corrected)


def bonferroni_rule(results: AssociationResults, alpha: float = 0.05,
                    calibrated: bool = True, structure_corrected: bool = False) -> CandidateSet:
    """Loci with p-value <= alpha / total number of loci."""
    adjusted, cutoff = bonferroni_correction(_pvalues(results, calibrated), alpha=alpha)
    mask = np.isfinite(adjusted) & (adjusted <= alpha)
    return _candidate(results, f"bonferroni{_format_level(alpha)}", mask, cutoff,
                      f"p-value <= {alpha:g} / {results.n_markers}", structure_corrected)


def build_candidate_sets(results: AssociationResults,
                         config: Optional[AnalysisConfig] = None,
                         rules: Sequence[str] = RULES,
                         structure_corrected: bool = False,
                         acknowledge_uncalibrated: bool = False) -> List[CandidateSet]:
    """Apply every requested rule configured in `config`

    Rules: 'fdr' (config.fdr_level), 'pvalue' (config.pvalue_cutoff, skipped
    when unset), 'top' (one set per config.top_fractions entry) and
    'bonferroni' (config.bonferroni_alpha).
    """
    config = config or AnalysisConfig()
    unknown = [r for r in rules if r not in RULES]
    if unknown:
        raise ValueError(f"Unknown threshold rules: {unknown}; choose from {RULES}")

    sets: List[CandidateSet] = []
    for rule in rules:
        if rule == 'fdr':
            sets.append(fdr_rule(results, config.fdr_level, acknowledge_uncalibrated,
                                 structure_corrected=structure_corrected))
        elif rule == 'pvalue' and config.pvalue_cutoff is not None:
            sets.append(pvalue_rule(results, config.pvalue_cutoff, structure_corrected=structure_corrected))
        elif rule == 'top':
            for fraction in config.top_fractions:
                sets.append(top_rank_rule(results, fraction=fraction,
                                          structure_corrected=structure_corrected))
        elif rule == 'bonferroni':
            sets.append(bonferroni_rule(results, config.bonferroni_alpha,
                                        structure_corrected=structure_corrected))
    return sets


def candidate_summary(sets: Sequence[CandidateSet]) -> List[Dict[str, Any]]:
    """One row per candidate set (method, rule, threshold, size)."""
    return [
        {
            'Set': s.name,
            'Method': s.method,
            'Rule': s.rule,
            'Threshold': s.threshold,
            'StructureCorrected': s.structure_corrected,
            'Size': s.size,
            'Info': s.info,
        }
        for s in sets
    ]
