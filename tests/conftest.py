"""Shared synthetic GEA datasets."""

import string
from pathlib import Path
from typing import Dict

import numpy as np
import pandas as pd
import pytest


def simulate_gea(n_pops: int = 20,
                 n_per_pop: int = 10,
                 n_loci: int = 50,
                 n_signal: int = 5,
                 slope: float = 2.5,
                 n_neutral: int = 0,
                 seed: int = 0) -> Dict[str, object]:
    """Individuals in populations along an environmental gradient.

    Signal loci (the first `n_signal`) have population frequency
    logistic(slope * env1); the remaining loci draw each population's
    frequency from U(0.2, 0.8). `n_neutral` extra null loci are returned as a
    separate matrix.
    """
    rng = np.random.default_rng(seed)
    pops = [f"Pop{string.ascii_uppercase[i]}" for i in range(n_pops)]
    env1 = np.linspace(-2.0, 2.0, n_pops)
    env2 = rng.normal(size=n_pops)

    def draw(freqs: np.ndarray) -> np.ndarray:
        rows = [rng.binomial(2, freqs[k], size=(n_per_pop, freqs.shape[1])) for k in range(n_pops)]
        return np.vstack(rows).astype(np.int8)

    freqs = rng.uniform(0.2, 0.8, size=(n_pops, n_loci))
    freqs[:, :n_signal] = (1.0 / (1.0 + np.exp(-slope * env1)))[:, np.newaxis]
    genotypes = draw(freqs)

    individual_ids = [f"{pop}{j:02d}" for pop in pops for j in range(n_per_pop)]
    locus_ids = [f"SNP{i:03d}" for i in range(n_loci)]
    covariates = pd.DataFrame({'ID': pops, 'env1': env1, 'env2': env2})
    # two structure groups that are not confounded with env1
    structure = {ind: ('G1' if pops.index(ind[:4]) % 2 == 0 else 'G2') for ind in individual_ids}

    data = {
        'genotypes': genotypes,
        'individual_ids': individual_ids,
        'locus_ids': locus_ids,
        'covariates': covariates,
        'populations': pops,
        'signal_ids': locus_ids[:n_signal],
        'structure': structure,
    }
    if n_neutral:
        neutral_freqs = rng.uniform(0.2, 0.8, size=(n_pops, n_neutral))
        data['neutral_genotypes'] = draw(neutral_freqs)
        data['neutral_ids'] = [f"NEU{i:03d}" for i in range(n_neutral)]
    return data


@pytest.fixture
def gea_data() -> Dict[str, object]:
    return simulate_gea()


@pytest.fixture
def small_population_data():
    """Population-level frequencies with one strong signal locus."""
    rng = np.random.default_rng(11)
    n_pops, n_loci = 30, 40
    env = np.column_stack([np.linspace(-1.5, 1.5, n_pops), rng.normal(size=n_pops)])
    freqs = rng.uniform(0.2, 0.8, size=(n_pops, n_loci))
    freqs[:, 0] = 1.0 / (1.0 + np.exp(-3.0 * env[:, 0]))
    locus_ids = [f"L{i:02d}" for i in range(n_loci)]
    return freqs, env, locus_ids


@pytest.fixture
def gea_files(tmp_path: Path, gea_data):
    """Genotype (loci × individuals), covariate and structure files."""
    geno = pd.DataFrame(gea_data['genotypes'].T, columns=gea_data['individual_ids'])
    geno.insert(0, 'SNP', gea_data['locus_ids'])
    geno_file = tmp_path / "genotypes.csv"
    geno.to_csv(geno_file, index=False)

    cov = gea_data['covariates'].rename(columns={'ID': 'Population'})
    cov_file = tmp_path / "climate.csv"
    cov.to_csv(cov_file, index=False)

    structure_file = tmp_path / "structure.csv"
    pd.DataFrame({'ID': list(gea_data['structure']),
                  'Group': list(gea_data['structure'].values())}).to_csv(structure_file, index=False)

    future = cov.copy()
    future['env1'] = future['env1'] + 1.0
    future_file = tmp_path / "climate_future.csv"
    future.to_csv(future_file, index=False)

    return {
        'genotype_file': geno_file,
        'covariate_file': cov_file,
        'structure_file': structure_file,
        'future_file': future_file,
    }
