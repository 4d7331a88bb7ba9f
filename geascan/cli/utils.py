import argparse
import json
from typing import List, Optional, Sequence

from ..core.thresholds import RULES
from ..pipelines.gea import METHOD_CHOICES, GEAPipeline
from ..utils.config import AnalysisConfig


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    parts = [v.strip() for v in str(value).split(',') if v.strip()]
    return parts or None


def normalize_methods(methods: Optional[str]) -> List[str]:
    """Comma-separated method names → canonical, deduplicated list"""
    if not methods:
        return list(METHOD_CHOICES)
    canonical = {m.upper(): m for m in METHOD_CHOICES}
    normalized = []
    for part in _split(methods) or []:
        key = part.upper().replace('-', '').replace('_', '')
        if key not in canonical:
            raise ValueError(f"Invalid method: {part} (choose from {', '.join(METHOD_CHOICES)})")
        if canonical[key] not in normalized:
            normalized.append(canonical[key])
    return normalized if normalized else list(METHOD_CHOICES)


def normalize_rules(rules: Optional[Sequence[str]]) -> List[str]:
    """Threshold rule selections with comma splitting and deduplication"""
    if not rules:
        return list(RULES)
    normalized = []
    for item in rules:
        for part in str(item).split(','):
            part = part.strip().lower()
            if not part:
                continue
            if part not in RULES:
                raise ValueError(f"Invalid threshold rule: {part}")
            if part not in normalized:
                normalized.append(part)
    return normalized if normalized else list(RULES)


def parse_population_overrides(value: Optional[str]) -> Optional[dict]:
    """'ID=POP,PREFIX=POP' pairs → mapping"""
    if not value:
        return None
    overrides = {}
    for pair in value.split(','):
        if not pair.strip():
            continue
        if '=' not in pair:
            raise ValueError(f"Population override '{pair}' must look like KEY=POP")
        key, pop = pair.split('=', 1)
        overrides[key.strip()] = pop.strip()
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Gene-environment association scan (LFMM, GF, RDA, pRDA) with cross-method consensus",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # Required arguments
    parser.add_argument("--genotype", "-g", required=True,
                       help="Allele-count matrix (CSV/TSV, identifier column plus 0/1/2 dosages)")
    parser.add_argument("--covariates", "-c", required=True,
                       help="Environmental covariates keyed by population code")

    # Optional inputs
    parser.add_argument("--orientation", default='loci_by_samples',
                       choices=['loci_by_samples', 'samples_by_loci'],
                       help="Layout of the genotype file")
    parser.add_argument("--covariate-columns", default=None,
                       help="Comma-separated list of covariate column names")
    parser.add_argument("--covariate-id-column", default='Population',
                       help="Column name for population codes in covariate files")
    parser.add_argument("--population-map", default=None,
                       help="individual → population table (codes are derived from ID prefixes otherwise)")
    parser.add_argument("--population-overrides", default=None,
                       help="Comma-separated KEY=POP exceptions for prefix-derived population codes")
    parser.add_argument("--structure", default=None,
                       help="Upstream structure assignments (group labels or ancestry Q matrix)")
    parser.add_argument("--neutral-loci", default=None,
                       help="Neutral reference locus list for the GF empirical null")
    parser.add_argument("--future-covariates", default=None,
                       help="Projected covariates to scale with the reference parameters")
    parser.add_argument("--drop-incomplete-loci", action='store_true',
                       help="Drop loci with missing genotype calls instead of failing")
    parser.add_argument("--outputdir", "-o", default="./GEA_results",
                       help="Output directory")
    parser.add_argument("--config", default=None,
                       help="JSON file with AnalysisConfig fields (command line flags take precedence)")

    # Methods
    parser.add_argument("--methods", default=",".join(METHOD_CHOICES),
                       help="Methods to run (comma-separated)")
    parser.add_argument("--parallel", action='store_true',
                       help="Run methods in separate processes")
    parser.add_argument("--k-factors", type=int, default=None,
                       help="LFMM latent factors (default: number of structure groups)")
    parser.add_argument("--lfmm-lambda", type=float, default=None,
                       help="LFMM ridge penalty")
    parser.add_argument("--per-covariate", action='store_true',
                       help="LFMM per-covariate tests instead of the combined test")
    parser.add_argument("--calibration", default=None, choices=['gif', 'none'],
                       help="p-value calibration")
    parser.add_argument("--n-trees", type=int, default=None,
                       help="Trees per GF random forest")
    parser.add_argument("--min-polymorphic-groups", type=int, default=None,
                       help="Minimum polymorphic populations for a GF fit")
    parser.add_argument("--n-loci-sample", type=int, default=None,
                       help="Down-sample GF to this many loci")
    parser.add_argument("--rda-axes", type=int, default=None,
                       help="RDA axes used for outlier detection")
    parser.add_argument("--n-pcs", type=int, default=None,
                       help="Structure PCs conditioned on in pRDA")
    parser.add_argument("--n-jobs", type=int, default=None,
                       help="Workers for per-locus fits (<= 0 uses all cores)")
    parser.add_argument("--seed", type=int, default=None,
                       help="Random seed")

    # Thresholds
    parser.add_argument("--rules", nargs='+', default=list(RULES),
                       help=f"Threshold rules ({', '.join(RULES)})")
    parser.add_argument("--fdr", type=float, default=None,
                       help="FDR level for q-value rules")
    parser.add_argument("--significance", type=float, default=None,
                       help="Fixed p-value threshold")
    parser.add_argument("--top-fractions", default=None,
                       help="Comma-separated fractions of lowest p-values kept by the rank rule")
    parser.add_argument("--alpha", type=float, default=None,
                       help="Bonferroni alpha")
    parser.add_argument("--quiet", action='store_true',
                       help="Suppress progress output")

    return parser


def parse_args(argv: Optional[Sequence[str]] = None):
    """Parse command line arguments for GEA pipeline"""
    return build_parser().parse_args(argv)


def config_from_args(args) -> AnalysisConfig:
    """Map parsed flags onto an AnalysisConfig (unset flags keep config/default values)."""
    values = {}
    if args.config:
        with open(args.config, 'r') as handle:
            values.update(json.load(handle))

    flag_map = {
        'k_factors': args.k_factors,
        'lfmm_lambda': args.lfmm_lambda,
        'calibration': args.calibration,
        'n_trees': args.n_trees,
        'min_polymorphic_groups': args.min_polymorphic_groups,
        'n_loci_sample': args.n_loci_sample,
        'rda_axes': args.rda_axes,
        'n_structure_pcs': args.n_pcs,
        'n_jobs': args.n_jobs,
        'seed': args.seed,
        'fdr_level': args.fdr,
        'pvalue_cutoff': args.significance,
        'bonferroni_alpha': args.alpha,
    }
    values.update({k: v for k, v in flag_map.items() if v is not None})
    if args.per_covariate:
        values['full_test'] = False
    if args.top_fractions:
        values['top_fractions'] = tuple(float(f) for f in _split(args.top_fractions))
    if args.quiet:
        values['verbose'] = False
    return AnalysisConfig.from_dict(values)


def main(argv: Optional[Sequence[str]] = None):
    args = parse_args(argv)
    config = config_from_args(args)
    pipeline = GEAPipeline(output_dir=args.outputdir, config=config)

    # 1. Load Data
    pipeline.load_data(
        genotype_file=args.genotype,
        covariate_file=args.covariates,
        population_map_file=args.population_map,
        structure_file=args.structure,
        neutral_loci_file=args.neutral_loci,
        future_covariate_file=args.future_covariates,
        orientation=args.orientation,
        covariate_columns=_split(args.covariate_columns),
        covariate_id_column=args.covariate_id_column,
        population_overrides=parse_population_overrides(args.population_overrides),
        drop_incomplete_loci=args.drop_incomplete_loci,
    )

    # 2. Align
    pipeline.align_samples()
    if pipeline.future_covariate_df is not None:
        pipeline.scale_future_covariates()

    # 3. Structure
    pipeline.compute_population_structure()

    # 4. Run Analysis
    results = pipeline.run_analysis(
        methods=normalize_methods(args.methods),
        rules=normalize_rules(args.rules),
        parallel=args.parallel,
    )

    # 5. Consensus
    if results:
        pipeline.run_consensus()
    pipeline.log("\nGEA Analysis Completed Successfully.")
    return pipeline
