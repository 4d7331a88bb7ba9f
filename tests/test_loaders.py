from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from geascan.data.loaders import (
    detect_file_format,
    load_covariate_file,
    load_genotype_file,
    load_locus_list,
    load_population_map,
)
from geascan.data.structure import StructureAssignment
from geascan.utils.data_types import MISSING_GENOTYPE
from geascan.utils.errors import AlignmentError


def _write(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


def test_detect_file_format(tmp_path: Path) -> None:
    assert detect_file_format(tmp_path / "a.csv") == 'csv'
    assert detect_file_format(tmp_path / "a.tsv") == 'tsv'
    assert detect_file_format(tmp_path / "a.csv.gz") == 'csv'
    sniffed = _write(tmp_path / "a.lfmm", "x\ty\n1\t2\n")
    assert detect_file_format(sniffed) == 'tsv'


def test_load_genotype_loci_by_samples_transposes_and_codes_missing(tmp_path: Path) -> None:
    path = _write(tmp_path / "geno.csv", "SNP,A01,A02,B01\nL1,0,1,2\nL2,NA,9,1\n")

    geno, individuals, loci = load_genotype_file(path)

    assert individuals == ['A01', 'A02', 'B01']
    assert loci == ['L1', 'L2']
    assert geno.shape == (3, 2)
    np.testing.assert_array_equal(geno[:, 0], [0, 1, 2])
    assert geno[0, 1] == MISSING_GENOTYPE and geno[1, 1] == MISSING_GENOTYPE
    assert not geno.is_complete


def test_load_genotype_samples_by_loci(tmp_path: Path) -> None:
    path = _write(tmp_path / "geno.tsv", "ID\tL1\tL2\nA01\t0\t2\nA02\t1\t1\n")

    geno, individuals, loci = load_genotype_file(path, orientation='samples_by_loci')

    assert individuals == ['A01', 'A02'] and loci == ['L1', 'L2']
    np.testing.assert_array_equal(geno[:, :], [[0, 2], [1, 1]])


def test_load_genotype_drop_incomplete_loci_warns(tmp_path: Path) -> None:
    path = _write(tmp_path / "geno.csv", "SNP,A01,A02\nL1,0,1\nL2,.,1\n")

    with pytest.warns(UserWarning, match="Dropping 1 loci"):
        geno, _, loci = load_genotype_file(path, drop_incomplete_loci=True)

    assert loci == ['L1']
    assert geno.is_complete


def test_load_genotype_rejects_invalid_dosages_and_duplicates(tmp_path: Path) -> None:
    bad = _write(tmp_path / "bad.csv", "SNP,A01,A02\nL1,0,3\n")
    with pytest.raises(ValueError, match="outside"):
        load_genotype_file(bad)

    dup = _write(tmp_path / "dup.csv", "SNP,A01,A02\nL1,0,1\nL1,1,1\n")
    with pytest.raises(ValueError, match="duplicated locus"):
        load_genotype_file(dup)

    with pytest.raises(ValueError, match="orientation"):
        load_genotype_file(dup, orientation='sideways')

    twice = _write(tmp_path / "twice.csv", "ID,L1,L2\nA01,0,1\nA01,1,1\n")
    with pytest.raises(ValueError, match="duplicated individual"):
        load_genotype_file(twice, orientation='samples_by_loci')


def test_load_covariate_file_resolves_population_column(tmp_path: Path) -> None:
    path = _write(tmp_path / "env.csv", "Population,bio1,bio12\nALT,1.5,200\nBER,2.5,300\n")

    cov = load_covariate_file(path)

    assert list(cov.columns) == ['ID', 'bio1', 'bio12']
    assert cov['ID'].tolist() == ['ALT', 'BER']


def test_load_covariate_file_selects_columns_and_validates(tmp_path: Path) -> None:
    path = _write(tmp_path / "env.csv", "pop,bio1,bio12,label\nALT,1.5,200,x\nBER,2.5,300,y\n")

    cov = load_covariate_file(path, covariate_columns=['bio12'], id_column='pop')
    assert list(cov.columns) == ['ID', 'bio12']

    with pytest.raises(ValueError, match="non-numeric"):
        load_covariate_file(path, id_column='pop')
    with pytest.raises(ValueError, match="missing from file"):
        load_covariate_file(path, covariate_columns=['bio5'], id_column='pop')


def test_load_covariate_file_duplicated_populations(tmp_path: Path) -> None:
    repeated = _write(tmp_path / "env.csv", "Population,bio1\nALT,1.0\nALT,1.0\nBER,5.0\n")
    cov = load_covariate_file(repeated)
    assert cov['ID'].tolist() == ['ALT', 'BER']

    conflict = _write(tmp_path / "conflict.csv", "Population,bio1\nALT,1.0\nALT,3.0\nBER,5.0\n")
    with pytest.raises(ValueError, match="conflicting"):
        load_covariate_file(conflict)


def test_load_covariate_file_ignores_empty_columns(tmp_path: Path) -> None:
    path = _write(tmp_path / "env.csv", "Population,bio1,bio2\nALT,1.0,NA\nBER,5.0,NA\n")

    with pytest.warns(UserWarning, match="without any value"):
        cov = load_covariate_file(path)

    assert list(cov.columns) == ['ID', 'bio1']


def test_load_population_map_and_conflicts(tmp_path: Path) -> None:
    path = _write(tmp_path / "map.csv", "ID,Population\nA01,ALT\nX7,BER\n")
    assert load_population_map(path) == {'A01': 'ALT', 'X7': 'BER'}

    conflict = _write(tmp_path / "conflict.csv", "ID,Population\nA01,ALT\nA01,BER\n")
    with pytest.raises(ValueError, match="more than one population"):
        load_population_map(conflict)


def test_load_locus_list_skips_header_comments_and_duplicates(tmp_path: Path) -> None:
    path = _write(tmp_path / "neutral.txt", "SNP\n# reference set\nL1\n\nL2,extra\nL1\n")

    assert load_locus_list(path) == ['L1', 'L2']


def test_structure_assignment_from_labels_and_proportions(tmp_path: Path) -> None:
    labels = _write(tmp_path / "groups.csv", "ID,Group\nA01,1\nA02,2\nB01,1\n")
    structure = StructureAssignment.from_file(labels)
    assert structure.n_groups == 2
    assert structure.assign_groups(['A02', 'B01']) == ['2', '1']

    q = _write(tmp_path / "q.csv", "ID,K1,K2,K3\nA01,0.7,0.2,0.1\nA02,0.1,0.3,0.6\n")
    structure = StructureAssignment.from_file(q)
    assert structure.assign_group('A01') == 'K1'
    assert structure.assign_group('A02') == 'K3'

    with pytest.raises(AlignmentError, match="no structure group"):
        structure.assign_group('ZZZ')


def test_structure_from_proportions_rejects_missing() -> None:
    q = pd.DataFrame({'K1': [0.5, np.nan], 'K2': [0.5, 0.4]}, index=['a', 'b'])

    with pytest.raises(AlignmentError):
        StructureAssignment.from_proportions(q)
