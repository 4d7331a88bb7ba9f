"""
GEA Pipeline Module

Object-oriented workflow for gene-environment association scans: data
loading, alignment of genotypes with population covariates, population
structure, the independent GEA methods, per-method thresholding and the
cross-method consensus.
"""

import concurrent.futures
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..association.base import GEAMethod
from ..association.gradient_forest import GradientForestMethod
from ..association.lfmm import LFMMMethod
from ..association.rda import RDAMethod
from ..core.consensus import ConsensusReport, combine, combine_groups, write_candidate_set
from ..core.thresholds import RULES, build_candidate_sets, candidate_summary
from ..data.alignment import (
    AlignedData, CovariateScaler, _covariate_table, align_inputs, build_population_map,
    minor_allele_diagnostic,
)
from ..data.loaders import (
    load_covariate_file, load_genotype_file, load_locus_list, load_population_map,
)
from ..data.structure import StructureAssignment
from ..matrix.pca import compute_structure_pcs
from ..utils.config import AnalysisConfig
from ..utils.data_types import AssociationResults, CandidateSet, GenotypeMatrix
from ..utils.errors import AlignmentError

METHOD_CHOICES: Tuple[str, ...] = ('LFMM', 'GF', 'RDA', 'pRDA')


def _run_single_method(method: GEAMethod, data: AlignedData) -> Tuple[str, Optional[AssociationResults], Optional[str]]:
    """Worker function to run a single GEA method in a separate process."""
    try:
        method.fit(data)
        return (method.name, method.results(), None)
    except Exception as e:
        return (method.name, None, f"{type(e).__name__}: {e}")


class GEAPipeline:
    """
    High-level pipeline for gene-environment association (GEA) scans.

    Typical workflow:
        1. Initialize pipeline with output directory and AnalysisConfig
        2. Load genotypes, population covariates, and optional structure /
           neutral-locus / future-covariate inputs
        3. Align samples (sort by population, scale covariates)
        4. Compute population structure (structure PCs, latent factor count)
        5. Run the GEA methods and their threshold rules
        6. Combine candidate sets across methods

    Attributes:
        config (AnalysisConfig): Immutable run parameters
        individual_data (AlignedData): Individual-level view (LFMM)
        population_data (AlignedData): Population-level view (GF, RDA, pRDA)
        structure_pcs (ndarray): Leading genomic PCs of the population view
        k_factors (int): Latent factors used by LFMM
        results (dict): {method: AssociationResults}
        candidate_sets (dict): {method: [CandidateSet, ...]}
        output_dir (Path): Output directory for results

    Example:
        >>> from geascan.pipelines.gea import GEAPipeline
        >>> pipeline = GEAPipeline(output_dir='./my_gea', config=AnalysisConfig(seed=1))
        >>> pipeline.load_data(genotype_file='genotypes.csv', covariate_file='climate.csv',
        ...                    structure_file='admixture_Q.csv')
        >>> pipeline.align_samples()
        >>> pipeline.compute_population_structure()
        >>> pipeline.run_analysis(methods=['LFMM', 'GF', 'RDA', 'pRDA'])
        >>> pipeline.run_consensus()
    """

    def __init__(self, output_dir: str = "./GEA_results", config: Optional[AnalysisConfig] = None):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.config = config or AnalysisConfig()

        # Raw inputs
        self.genotype_matrix: Optional[GenotypeMatrix] = None
        self.individual_ids: List[str] = []
        self.locus_ids: List[str] = []
        self.covariate_df: Optional[pd.DataFrame] = None
        self.population_map: Optional[Dict[str, str]] = None
        self.population_overrides: Optional[Dict[str, str]] = None
        self.structure: Optional[StructureAssignment] = None
        self.neutral_locus_ids: Optional[List[str]] = None
        self.future_covariate_df: Optional[pd.DataFrame] = None

        # Aligned views
        self.covariate_scaler: Optional[CovariateScaler] = None
        self.individual_data: Optional[AlignedData] = None
        self.population_data: Optional[AlignedData] = None
        self.minor_allele_flags: List[str] = []

        # Population structure
        self.structure_pcs: Optional[np.ndarray] = None
        self.k_factors: Optional[int] = self.config.k_factors

        # Analysis state
        self.results: Dict[str, AssociationResults] = {}
        self.candidate_sets: Dict[str, List[CandidateSet]] = {}
        self.failures: Dict[str, str] = {}
        self.consensus: Dict[str, ConsensusReport] = {}

    def log(self, message: str):
        """Internal logger"""
        if self.config.verbose:
            print(message)

    def log_step(self, step_name: str, start_time: Optional[float] = None):
        """Log a pipeline step with optional timing"""
        if start_time is not None:
            elapsed = time.time() - start_time
            self.log(f"{step_name} completed in {elapsed:.2f} seconds")
        else:
            self.log(f"{step_name}...")

    def load_data(self,
                  genotype_file: str,
                  covariate_file: str,
                  population_map_file: Optional[str] = None,
                  structure_file: Optional[str] = None,
                  neutral_loci_file: Optional[str] = None,
                  future_covariate_file: Optional[str] = None,
                  orientation: str = 'loci_by_samples',
                  covariate_columns: Optional[List[str]] = None,
                  covariate_id_column: str = 'Population',
                  population_overrides: Optional[Dict[str, str]] = None,
                  drop_incomplete_loci: bool = False):
        """
        Load genotype, covariate and optional metadata files.

        Args:
            genotype_file: Allele-count matrix (loci × individuals by default)
            covariate_file: Environmental covariates keyed by population code
            population_map_file: individual → population table; population
                codes are derived from identifier prefixes when omitted
            structure_file: Upstream structure assignments (labels or Q matrix)
            neutral_loci_file: Neutral reference locus ids for the GF engine
            future_covariate_file: Projected covariates scaled with the
                reference parameters
            orientation: 'loci_by_samples' or 'samples_by_loci'
            covariate_columns: Which covariates to use (default all numeric)
            covariate_id_column: Population column of the covariate tables
            population_overrides: Exceptions for prefix-derived codes
            drop_incomplete_loci: Drop loci with missing calls

        Raises:
            ValueError: If files cannot be loaded or validated
        """
        step_start = time.time()
        self.log_step("Step 1: Loading and validating input data")

        try:
            genotype, individual_ids, locus_ids = load_genotype_file(
                genotype_file, orientation=orientation, drop_incomplete_loci=drop_incomplete_loci
            )
            self.log(f"   Loaded {genotype.n_individuals} individuals x {genotype.n_markers} loci")
        except Exception as e:
            raise ValueError(f"Error loading genotype file: {e}")

        try:
            covariate_df = load_covariate_file(covariate_file, covariate_columns=covariate_columns,
                                               id_column=covariate_id_column)
            self.log(f"   Loaded {len(covariate_df)} populations with {covariate_df.shape[1] - 1} covariates")
        except Exception as e:
            raise ValueError(f"Error loading covariate file: {e}")

        population_map = None
        if population_map_file:
            try:
                population_map = load_population_map(population_map_file)
                self.log(f"   Loaded population codes for {len(population_map)} individuals")
            except Exception as e:
                raise ValueError(f"Error loading population map: {e}")

        structure = None
        if structure_file:
            try:
                structure = StructureAssignment.from_file(structure_file)
                self.log(f"   Loaded structure assignments: {structure.n_groups} groups")
            except Exception as e:
                raise ValueError(f"Error loading structure file: {e}")

        neutral = None
        if neutral_loci_file:
            neutral = load_locus_list(neutral_loci_file)
            self.log(f"   Loaded {len(neutral)} neutral reference loci")

        future_df = None
        if future_covariate_file:
            try:
                future_df = load_covariate_file(future_covariate_file, covariate_columns=covariate_columns,
                                                id_column=covariate_id_column)
                self.log(f"   Loaded future covariates for {len(future_df)} populations")
            except Exception as e:
                raise ValueError(f"Error loading future covariate file: {e}")

        self.set_data(genotype, individual_ids, locus_ids, covariate_df,
                      population_map=population_map, structure=structure,
                      neutral_locus_ids=neutral, future_covariate_df=future_df,
                      population_overrides=population_overrides)
        self.log_step("Data loading", step_start)

    def set_data(self,
                 genotype: Union[GenotypeMatrix, np.ndarray],
                 individual_ids: Sequence[str],
                 locus_ids: Sequence[str],
                 covariate_df: pd.DataFrame,
                 population_map: Optional[Mapping[str, str]] = None,
                 structure: Optional[StructureAssignment] = None,
                 neutral_locus_ids: Optional[Sequence[str]] = None,
                 future_covariate_df: Optional[pd.DataFrame] = None,
                 population_overrides: Optional[Mapping[str, str]] = None):
        """Provide in-memory inputs (the loaders end up here)."""
        if not isinstance(genotype, GenotypeMatrix):
            genotype = GenotypeMatrix(np.asarray(genotype))
        self.genotype_matrix = genotype
        self.individual_ids = [str(i) for i in individual_ids]
        self.locus_ids = [str(l) for l in locus_ids]
        self.covariate_df = covariate_df.copy()
        self.population_map = dict(population_map) if population_map is not None else None
        self.population_overrides = dict(population_overrides) if population_overrides else None
        self.structure = structure
        self.neutral_locus_ids = [str(l) for l in neutral_locus_ids] if neutral_locus_ids is not None else None
        self.future_covariate_df = future_covariate_df.copy() if future_covariate_df is not None else None

    def align_samples(self):
        """
        Match individuals to population covariates and build the aligned views.

        Covariates are scaled with parameters fit on the populations present
        in the genomic data. Rows are sorted by (population, individual).

        Raises:
            ValueError: If data was not loaded
            AlignmentError: If genomic and covariate inputs cannot be matched
        """
        if self.genotype_matrix is None or self.covariate_df is None:
            raise ValueError("Data not loaded. Call load_data() first.")

        step_start = time.time()
        self.log_step("Step 2: Aligning genotypes with population covariates")

        population_map = self.population_map
        if population_map is None:
            population_map = build_population_map(self.individual_ids, self.population_overrides)
        missing = [i for i in self.individual_ids if i not in population_map]
        if missing:
            raise AlignmentError(f"{len(missing)} individuals have no population code: {missing[:5]}")
        genomic_pops = sorted({population_map[i] for i in self.individual_ids})

        complete = _covariate_table(self.covariate_df).dropna()
        unmatched = [pop for pop in genomic_pops if pop not in complete.index]
        if unmatched:
            raise AlignmentError(
                f"{len(unmatched)} populations in the genomic data have no complete covariate row: {unmatched[:5]}"
            )
        reference = complete[complete.index.isin(genomic_pops)]
        self.covariate_scaler = CovariateScaler().fit(reference)
        scaled = self.covariate_scaler.transform(complete)

        common = dict(
            genotype=self.genotype_matrix,
            individual_ids=self.individual_ids,
            locus_ids=self.locus_ids,
            covariate_df=scaled,
            population_map=population_map,
            verbose=self.config.verbose,
        )
        self.individual_data = align_inputs(level='individual', structure=self.structure, **common)
        self.population_data = align_inputs(level='population', **common)

        self.log(f"   Individuals: {self.individual_data.n_samples}; populations: {self.population_data.n_samples}")
        self.log(f"   Covariates (scaled): {list(self.population_data.covariate_names)}")
        self.minor_allele_flags = minor_allele_diagnostic(self.population_data.genotypes,
                                                          self.population_data.locus_ids)
        if self.minor_allele_flags:
            self.log(f"   Note: {len(self.minor_allele_flags)} loci have a nominal minor allele with mean "
                     "population frequency above 0.5 (labels unchanged)")
        self.log_step("Sample alignment", step_start)

    def compute_population_structure(self, n_pcs: Optional[int] = None):
        """
        Structure PCs of the population view and the LFMM latent factor count.

        The latent factor count comes from the configuration when set,
        otherwise from the number of upstream structure groups. It is an
        expert-supplied value and is never estimated from the genotypes.
        """
        if self.population_data is None:
            raise ValueError("Samples not aligned. Call align_samples() first.")

        step_start = time.time()
        self.log_step("Step 3: Calculating population structure")

        n_pcs = self.config.n_structure_pcs if n_pcs is None else n_pcs
        if n_pcs > 0:
            try:
                self.structure_pcs, explained = compute_structure_pcs(
                    self.population_data.genotypes, pcs_keep=n_pcs, verbose=False
                )
                self.log(f"   Structure PCs: {self.structure_pcs.shape[1]} "
                         f"(explained variance {np.round(explained * 100, 2).tolist()}%)")
            except Exception as e:
                raise ValueError(f"Error calculating structure PCs: {e}")
        else:
            self.structure_pcs = None
            self.log("   Skipping structure PCs (n_pcs=0)")

        if self.config.k_factors is not None:
            self.k_factors = self.config.k_factors
            self.log(f"   LFMM latent factors: K={self.k_factors} (configured)")
        elif self.structure is not None:
            groups = sorted(set(self.individual_data.groups)) if self.individual_data.groups else self.structure.groups
            self.k_factors = len(groups)
            self.log(f"   LFMM latent factors: K={self.k_factors} (number of upstream structure groups)")
        else:
            self.k_factors = None
            self.log("   LFMM latent factors not set: supply k_factors or a structure assignment")

        self.log_step("Population structure", step_start)

    def scale_future_covariates(self, future_df: Optional[pd.DataFrame] = None,
                                save: bool = True) -> pd.DataFrame:
        """Scale projected covariates with the reference mean / SD (never refit)."""
        if self.covariate_scaler is None:
            raise ValueError("Samples not aligned. Call align_samples() first.")
        table = future_df if future_df is not None else self.future_covariate_df
        if table is None:
            raise ValueError("No future covariate table provided")
        scaled = self.covariate_scaler.transform(table)
        if save:
            path = self.output_dir / "covariates_future_scaled.csv"
            scaled.to_csv(path, index=False)
            self.log(f"   Saved scaled future covariates to {path}")
        return scaled

    def _build_method(self, name: str) -> GEAMethod:
        if name == 'LFMM':
            return LFMMMethod(self.config, k_factors=self.k_factors)
        if name == 'GF':
            neutral = None
            if self.neutral_locus_ids is not None:
                known = set(self.locus_ids)
                neutral = [l for l in self.neutral_locus_ids if l in known]
                if len(neutral) < len(self.neutral_locus_ids):
                    self.log(f"   Note: {len(self.neutral_locus_ids) - len(neutral)} neutral loci are not in the genotype matrix")
            return GradientForestMethod(self.config, neutral_locus_ids=neutral)
        if name == 'RDA':
            return RDAMethod(self.config)
        if name == 'pRDA':
            return RDAMethod(self.config, partial=True, structure_correction=self.structure_pcs)
        raise ValueError(f"Unknown method {name}; choose from {METHOD_CHOICES}")

    def _data_for(self, method: GEAMethod) -> AlignedData:
        return self.individual_data if method.level == 'individual' else self.population_data

    def run_analysis(self,
                     methods: Sequence[str] = METHOD_CHOICES,
                     rules: Sequence[str] = RULES,
                     parallel: bool = False) -> Dict[str, AssociationResults]:
        """
        Run the GEA methods, apply threshold rules and save per-method outputs.

        A failing method is logged and skipped; the other methods continue.

        Args:
            methods: Subset of METHOD_CHOICES
            rules: Threshold rules (see geascan.core.thresholds.RULES)
            parallel: Run methods in separate processes

        Returns:
            {method: AssociationResults} of the methods that succeeded
        """
        if self.individual_data is None or self.population_data is None:
            raise ValueError("Samples not aligned. Call align_samples() first.")
        unknown = [m for m in methods if m not in METHOD_CHOICES]
        if unknown:
            raise ValueError(f"Unknown methods {unknown}; choose from {METHOD_CHOICES}")

        step_start = time.time()
        self.log_step("Step 4: Running GEA methods")

        built: List[GEAMethod] = []
        for name in methods:
            try:
                built.append(self._build_method(name))
            except Exception as e:
                self.failures[name] = str(e)
                self.log(f"   {name} Failed: {e}")

        outcomes: List[Tuple[str, Optional[AssociationResults], Optional[str]]] = []
        if parallel and len(built) > 1:
            self.log(f"   Running parallel analysis for: {[m.name for m in built]}")
            with concurrent.futures.ProcessPoolExecutor(max_workers=min(4, len(built))) as executor:
                future_to_method = {
                    executor.submit(_run_single_method, method, self._data_for(method)): method.name
                    for method in built
                }
                for future in concurrent.futures.as_completed(future_to_method):
                    m_name = future_to_method[future]
                    try:
                        outcomes.append(future.result())
                    except Exception as exc:
                        outcomes.append((m_name, None, f"{type(exc).__name__}: {exc}"))
        else:
            for method in built:
                self.log(f"   Running {method.name}...")
                outcomes.append(_run_single_method(method, self._data_for(method)))

        structure_flags = {m.name: m.structure_corrected for m in built}
        summary_rows: List[Dict[str, Any]] = []
        order = {name: i for i, name in enumerate(METHOD_CHOICES)}
        for name, res, error in sorted(outcomes, key=lambda o: order.get(o[0], len(order))):
            if error:
                self.failures[name] = error
                self.log(f"   {name} Failed: {error}")
                continue
            try:
                sets = build_candidate_sets(res, self.config, rules=rules,
                                            structure_corrected=structure_flags[name])
            except Exception as e:
                self.failures[name] = str(e)
                self.log(f"   {name} Failed: {e}")
                continue

            self.results[name] = res
            self.candidate_sets[name] = sets
            self.failures.pop(name, None)
            if res.calibration is not None:
                self.log(f"   {name} calibration: {res.calibration.summary()}")
            summary_rows.extend(self._save_method_results(name, res, sets))

        if summary_rows:
            summary_df = pd.DataFrame(summary_rows)
            sum_path = self.output_dir / "GEA_summary_by_methods.csv"
            summary_df.to_csv(sum_path, index=False)
            self.log(f"\nSaved method summary to {sum_path}")

        self.log_step("GEA analysis", step_start)
        return dict(self.results)

    def _save_method_results(self, name: str, res: AssociationResults,
                             sets: List[CandidateSet]) -> List[Dict[str, Any]]:
        """Write the results table and candidate files of one method."""
        res_path = self.output_dir / f"GEA_{name}_results.csv"
        res.to_dataframe().to_csv(res_path, index=False)
        rows = candidate_summary(sets)
        for cs, row in zip(sets, rows):
            write_candidate_set(cs, self.output_dir / f"GEA_{name}_{cs.rule}_candidates.txt")
            self.log(f"   {cs.name}: {cs.size} candidate loci ({cs.info})")
            row['Calibrated'] = bool(res.calibration.is_flat) if res.calibration is not None else None
            row['Lambda'] = res.calibration.lambda_gc if res.calibration is not None else float('nan')
        return rows

    def primary_sets(self, rule_by_method: Optional[Mapping[str, str]] = None) -> List[CandidateSet]:
        """One candidate set per method: FDR for model-based methods, rank for GF."""
        defaults = {'LFMM': 'fdr', 'RDA': 'fdr', 'pRDA': 'fdr', 'GF': 'top'}
        chosen: List[CandidateSet] = []
        for method, sets in self.candidate_sets.items():
            prefix = (rule_by_method or {}).get(method, defaults.get(method, 'fdr'))
            match = [s for s in sets if s.rule.startswith(prefix)]
            if match:
                chosen.append(match[0])
            elif sets:
                chosen.append(sets[0])
        return chosen

    def run_consensus(self, rule_by_method: Optional[Mapping[str, str]] = None,
                      candidate_sets: Optional[Sequence[CandidateSet]] = None) -> Dict[str, ConsensusReport]:
        """
        Intersect candidate sets across methods.

        Reports are produced for all methods together and separately for the
        methods with and without population-structure correction.

        Returns:
            {grouping: ConsensusReport}
        """
        sets = list(candidate_sets) if candidate_sets is not None else self.primary_sets(rule_by_method)
        if not sets:
            raise ValueError("No candidate sets available. Call run_analysis() first.")

        step_start = time.time()
        self.log_step("Step 5: Cross-method consensus")

        reports = {'all_methods': combine(sets)}
        reports.update(combine_groups(sets))
        self.consensus = reports

        frames = []
        for grouping, report in reports.items():
            frame = report.to_dataframe()
            frame.insert(0, 'Grouping', grouping)
            frames.append(frame)
            self.log(f"   {grouping}: {report.intersection_count} loci shared by {list(report.names)}")
        out_path = self.output_dir / "GEA_consensus.csv"
        pd.concat(frames, ignore_index=True).to_csv(out_path, index=False)
        self.log(f"   Saved consensus report to {out_path}")

        self.log_step("Consensus", step_start)
        return reports
