"""
Tests for configuration loading, validation and CLI override merging.
"""

import argparse
import json
import subprocess
import sys
from pathlib import Path

import pytest
import yaml

from hostde.cli import config as cli_config
from hostde.cli.config import load_config, merge_config_with_args
from hostde.config import AnalysisConfig, config_from_dict, validate_config


@pytest.fixture
def config_dict():
    return {
        'counts': 'quant/counts.tsv',
        'lengths': 'quant/lengths.tsv',
        'metadata': 'samples.tsv',
        'n_workers': 2,
        'model': {'condition_col': 'status', 'block_col': 'donor'},
        'contrast': {'baseline': 'control', 'treatment': 'infected'},
        'correlation': {'covariate_cols': ['qpcr', 'reads'], 'subset_values': ['infected']},
        'enrichment': {'references': [{'name': 'lung', 'path': 'refs/lung.csv'}]},
    }


class TestLoadConfig:

    def test_yaml(self, tmp_path, config_dict):
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump(config_dict))
        assert load_config(path) == config_dict

    def test_json(self, tmp_path, config_dict):
        path = tmp_path / "analysis.json"
        path.write_text(json.dumps(config_dict))
        assert load_config(path)['contrast']['treatment'] == 'infected'

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(path) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "analysis.toml"
        path.write_text("x = 1")
        with pytest.raises(ValueError, match="Unsupported config format"):
            load_config(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)


class TestConfigFromDict:

    def test_builds_dataclasses(self, config_dict):
        config = config_from_dict(config_dict)
        assert isinstance(config, AnalysisConfig)
        assert config.counts == Path('quant/counts.tsv')
        assert config.n_workers == 2
        assert config.model.block_col == 'donor'
        assert config.filter.min_count == 10.0
        assert config.enrichment.references[0].path == Path('refs/lung.csv')
        assert config.enrichment.references[0].effect_col == 'log2FoldChange'

    def test_defaults(self):
        config = config_from_dict({})
        assert config.classification.fdr_threshold == 0.05
        assert config.highlight.fdr_threshold == 0.01
        assert config.correlation.threshold == 0.6
        assert config.correlation.missing_policy == 'fail'

    def test_to_dict_round_trips_paths_as_strings(self, config_dict):
        as_dict = config_from_dict(config_dict).to_dict()
        assert as_dict['counts'] == 'quant/counts.tsv'
        assert as_dict['enrichment']['references'][0]['path'] == 'refs/lung.csv'
        json.dumps(as_dict)

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown key"):
            config_from_dict({'model': {'blok_col': 'donor'}})

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown top-level"):
            config_from_dict({'workers': 3})

    def test_cli_module_shares_library_dataclasses(self):
        assert cli_config.AnalysisConfig is AnalysisConfig
        assert cli_config.config_from_dict is config_from_dict

    def test_pipeline_does_not_import_cli(self):
        code = (
            "import sys, hostde.pipeline; "
            "sys.exit(any(name.startswith('hostde.cli') for name in sys.modules))"
        )
        assert subprocess.run([sys.executable, "-c", code]).returncode == 0


class TestValidateConfig:

    @pytest.mark.parametrize("config,match", [
        ({'normalization': {'method': 'quantile'}}, "normalization method"),
        ({'correlation': {'missing_policy': 'zero'}}, "missing covariate policy"),
        ({'correlation': {'covariate_cols': ['a', 'b', 'c']}}, "At most two"),
        ({'correlation': {'threshold': 1.2}}, "Correlation threshold"),
        ({'classification': {'fdr_threshold': 0}}, "fdr_threshold"),
        ({'highlight': {'lfc_threshold': -1}}, "lfc_threshold"),
        ({'model': {'span': 2}}, "span"),
        ({'contrast': {'baseline': 'a', 'treatment': 'a'}}, "must differ"),
        ({'enrichment': {'references': [{'name': 'x'}]}}, "'name' and 'path'"),
        ({'model': 'donor'}, "must be a mapping"),
    ])
    def test_invalid(self, config, match):
        with pytest.raises(ValueError, match=match):
            validate_config(config)


class TestMergeConfigWithArgs:

    def _args(self, **overrides):
        values = dict(
            counts=None, lengths=None, metadata=None, covariates=None, tx2gene=None,
            annotation=None, output=None, sample_col=None, workers=None, min_count=None,
            min_total_count=None, norm_method=None, condition_col=None, block_col=None,
            refinement_passes=None, baseline=None, treatment=None, lfc_threshold=None,
            fdr_threshold=None, covariate_cols=None, subset_values=None,
            correlation_threshold=None, missing_covariates=None,
        )
        values.update(overrides)
        return argparse.Namespace(**values)

    def test_explicit_cli_wins(self, config_dict):
        args = self._args(workers=8, baseline='mock')
        merged = merge_config_with_args(config_dict, args, ['--workers', '8', '--baseline', 'mock'])
        assert merged['n_workers'] == 8
        assert merged['contrast']['baseline'] == 'mock'
        assert merged['contrast']['treatment'] == 'infected'

    def test_config_value_kept_when_not_explicit(self, config_dict):
        args = self._args(workers=1)
        merged = merge_config_with_args(config_dict, args, [])
        assert merged['n_workers'] == 2

    def test_short_flags_are_explicit(self, config_dict):
        args = self._args(workers=4, output=Path('out'))
        merged = merge_config_with_args(config_dict, args, ['-j', '4', '-o', 'out'])
        assert merged['n_workers'] == 4
        assert merged['output'] == 'out'

    def test_sections_created(self):
        args = self._args(norm_method='RLE', correlation_threshold=0.7, missing_covariates='exclude')
        merged = merge_config_with_args({}, args)
        assert merged['normalization'] == {'method': 'RLE'}
        assert merged['correlation'] == {'threshold': 0.7, 'missing_policy': 'exclude'}

    def test_input_not_mutated(self, config_dict):
        args = self._args(baseline='mock')
        merge_config_with_args(config_dict, args, ['--baseline', 'mock'])
        assert config_dict['contrast']['baseline'] == 'control'

    def test_merged_result_is_valid(self, config_dict):
        args = self._args(fdr_threshold=0.1, lfc_threshold=0.5)
        config = config_from_dict(merge_config_with_args(config_dict, args))
        assert config.classification.fdr_threshold == 0.1
        assert config.classification.lfc_threshold == 0.5
