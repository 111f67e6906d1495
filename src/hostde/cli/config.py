"""
Configuration file support for the hostde CLI.

Supports YAML and JSON config files with CLI argument override. A config
file mirrors the AnalysisConfig dataclasses (hostde.config) section by
section:

    counts: quant/counts.tsv
    lengths: quant/lengths.tsv
    metadata: samples.tsv
    filter:
      min_count: 10
    model:
      condition_col: condition
      block_col: subject
    contrast:
      baseline: control
      treatment: infected
    correlation:
      covariate_cols: [viral_load_qpcr, viral_load_reads]
      subset_values: [infected]
"""

from __future__ import annotations

import json
from argparse import Namespace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from hostde.config import (
    AnalysisConfig,
    ClassificationConfig,
    ContrastConfig,
    CorrelationConfig,
    EnrichmentConfig,
    FilterConfig,
    HighlightConfig,
    ModelConfig,
    NormalizationConfig,
    ReferenceTableConfig,
    config_from_dict,
    validate_config,
)

__all__ = [
    'FilterConfig',
    'NormalizationConfig',
    'ModelConfig',
    'ContrastConfig',
    'ClassificationConfig',
    'HighlightConfig',
    'CorrelationConfig',
    'ReferenceTableConfig',
    'EnrichmentConfig',
    'AnalysisConfig',
    'load_config',
    'config_from_dict',
    'merge_config_with_args',
    'validate_config',
]


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> print(config['contrast']['treatment'])
        infected
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config


# CLI destination -> (section, key); section None for top-level keys
_ARG_MAP = {
    'counts': (None, 'counts'),
    'lengths': (None, 'lengths'),
    'metadata': (None, 'metadata'),
    'covariates': (None, 'covariates'),
    'tx2gene': (None, 'tx2gene'),
    'annotation': (None, 'annotation'),
    'output': (None, 'output'),
    'sample_col': (None, 'sample_col'),
    'workers': (None, 'n_workers'),
    'min_count': ('filter', 'min_count'),
    'min_total_count': ('filter', 'min_total_count'),
    'norm_method': ('normalization', 'method'),
    'condition_col': ('model', 'condition_col'),
    'block_col': ('model', 'block_col'),
    'refinement_passes': ('model', 'refinement_passes'),
    'baseline': ('contrast', 'baseline'),
    'treatment': ('contrast', 'treatment'),
    'lfc_threshold': ('classification', 'lfc_threshold'),
    'fdr_threshold': ('classification', 'fdr_threshold'),
    'covariate_cols': ('correlation', 'covariate_cols'),
    'subset_values': ('correlation', 'subset_values'),
    'correlation_threshold': ('correlation', 'threshold'),
    'missing_covariates': ('correlation', 'missing_policy'),
}


def _explicit_args(cli_args: Optional[List[str]]) -> set:
    explicit = set()
    short_to_long = {'o': 'output', 'c': 'counts', 'm': 'metadata', 'j': 'workers'}
    for arg in cli_args or []:
        if arg.startswith('--'):
            explicit.add(arg[2:].split('=', 1)[0].replace('-', '_'))
        elif arg.startswith('-') and len(arg) == 2 and arg[1] in short_to_long:
            explicit.add(short_to_long[arg[1]])
    return explicit


def merge_config_with_args(
    config: Dict[str, Any],
    args: Namespace,
    cli_args: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Overlay CLI arguments on a configuration dictionary.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. CLI argument defaults

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments (argparse.Namespace)
        cli_args: Raw CLI arguments list (for detecting explicit values).
                  If None, every non-None argument counts as explicit.

    Returns:
        New configuration dictionary
    """
    explicit = _explicit_args(cli_args)
    merged = {k: (dict(v) if isinstance(v, dict) else v) for k, v in config.items()}

    for dest, (section, key) in _ARG_MAP.items():
        if not hasattr(args, dest):
            continue
        value = getattr(args, dest)
        target = merged if section is None else merged.setdefault(section, {})
        was_explicit = dest in explicit if cli_args is not None else value is not None
        if was_explicit or (key not in target and value is not None):
            target[key] = str(value) if isinstance(value, Path) else value

    return merged
