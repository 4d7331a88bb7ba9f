import dataclasses

import pytest

from geascan.utils.config import AnalysisConfig


def test_defaults_are_valid_and_frozen() -> None:
    config = AnalysisConfig()

    assert config.seed == 42
    assert config.fdr_level == 0.05
    assert config.k_factors is None
    assert config.top_fractions == (0.002, 0.005)
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.seed = 1


def test_replace_returns_modified_copy() -> None:
    config = AnalysisConfig()

    changed = config.replace(n_trees=50, k_factors=3)

    assert changed.n_trees == 50 and changed.k_factors == 3
    assert config.n_trees == 500 and config.k_factors is None


def test_from_dict_freezes_lists_and_rejects_unknown_keys() -> None:
    config = AnalysisConfig.from_dict({'top_fractions': [0.1, 0.2], 'seed': 7})

    assert config.top_fractions == (0.1, 0.2)
    assert config.to_dict()['seed'] == 7
    with pytest.raises(ValueError, match="Unknown configuration keys"):
        AnalysisConfig.from_dict({'n_tree': 10})


@pytest.mark.parametrize(
    "changes",
    [
        {'fdr_level': 0.0},
        {'fdr_level': 1.0},
        {'calibration': 'bogus'},
        {'k_factors': 0},
        {'lfmm_lambda': 0.0},
        {'n_trees': 0},
        {'n_loci_sample': 0},
        {'rda_axes': 0},
        {'pvalue_cutoff': 2.0},
        {'top_fractions': (0.0,)},
        {'bonferroni_alpha': 1.5},
        {'calibration_bins': 1},
    ],
)
def test_invalid_values_raise(changes) -> None:
    with pytest.raises(ValueError):
        AnalysisConfig(**changes)
