"""
Analysis configuration.

Dataclasses for every stage of a run, built from a plain dictionary (as
parsed from a YAML or JSON config file) and validated before use. The
pipeline takes an AnalysisConfig directly; file loading and command-line
overrides live in hostde.cli.config.

Examples:
    >>> config = config_from_dict({
    ...     'contrast': {'baseline': 'control', 'treatment': 'infected'},
    ...     'model': {'block_col': 'subject'},
    ... })
    >>> config.classification.fdr_threshold
    0.05
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from hostde.stats.normalization import NormalizationMethod

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
    'config_from_dict',
    'validate_config',
]


MISSING_COVARIATE_POLICIES = ('fail', 'exclude')


@dataclass
class FilterConfig:
    """Expression filter configuration."""
    min_count: float = 10.0
    min_total_count: float = 15.0
    large_n: int = 10
    min_prop: float = 0.7


@dataclass
class NormalizationConfig:
    """Count normalization configuration."""
    method: str = "TMM"
    prior_count: float = 0.5


@dataclass
class ModelConfig:
    """Blocked linear model configuration."""
    condition_col: str = "condition"
    block_col: Optional[str] = "subject"
    levels: Optional[List[str]] = None
    span: float = 0.5
    refinement_passes: int = 1
    trim: float = 0.15


@dataclass
class ContrastConfig:
    """Comparison of interest: treatment level minus baseline level."""
    baseline: Optional[str] = None
    treatment: Optional[str] = None


@dataclass
class ClassificationConfig:
    """UP/DOWN/NO call thresholds."""
    lfc_threshold: float = 1.0
    fdr_threshold: float = 0.05


@dataclass
class HighlightConfig:
    """Presentation-only highlight thresholds."""
    lfc_threshold: float = 2.0
    fdr_threshold: float = 0.01
    top_n: Optional[int] = None


@dataclass
class CorrelationConfig:
    """
    Covariate correlation screening.

    covariate_cols names one or two covariate columns. With two, genes are
    flagged only when both correlations pass the threshold with the same sign.
    Screening uses the samples whose subset_col (default: the condition
    column) is in subset_values, or all samples when subset_values is empty.
    Covariate values are only required for those samples.
    """
    covariate_cols: List[str] = field(default_factory=list)
    subset_col: Optional[str] = None
    subset_values: List[str] = field(default_factory=list)
    threshold: float = 0.6
    join_key: str = "sample_id"
    missing_policy: str = "fail"


@dataclass
class ReferenceTableConfig:
    """A curated differential expression table used as reference sets."""
    name: str
    path: Path
    gene_col: str = "gene_id"
    effect_col: str = "log2FoldChange"
    significance_col: str = "padj"


@dataclass
class EnrichmentConfig:
    """Enrichment matrix configuration."""
    fdr_threshold: float = 0.05
    confidence_level: float = 0.95
    lfc_threshold: float = 1.0
    significance_threshold: float = 0.05
    references: List[ReferenceTableConfig] = field(default_factory=list)


@dataclass
class AnalysisConfig:
    """
    Complete configuration for a differential expression run.

    Mirrors the CLI argument structure for consistency.
    """
    counts: Optional[Path] = None
    lengths: Optional[Path] = None
    metadata: Optional[Path] = None
    covariates: Optional[Path] = None
    tx2gene: Optional[Path] = None
    annotation: Optional[Path] = None
    output: Optional[Path] = None
    sample_col: str = "sample_id"
    n_workers: int = 1
    filter: FilterConfig = field(default_factory=FilterConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    contrast: ContrastConfig = field(default_factory=ContrastConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    highlight: HighlightConfig = field(default_factory=HighlightConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly dictionary (paths as strings)."""
        def convert(value):
            if isinstance(value, Path):
                return str(value)
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            if isinstance(value, list):
                return [convert(v) for v in value]
            return value
        return convert(asdict(self))


_SECTIONS = {
    'filter': FilterConfig,
    'normalization': NormalizationConfig,
    'model': ModelConfig,
    'contrast': ContrastConfig,
    'classification': ClassificationConfig,
    'highlight': HighlightConfig,
    'correlation': CorrelationConfig,
    'enrichment': EnrichmentConfig,
}

_PATH_KEYS = ('counts', 'lengths', 'metadata', 'covariates', 'tx2gene', 'annotation', 'output')


def _section(cls, values: Optional[Dict[str, Any]], name: str):
    values = dict(values or {})
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown key(s) in '{name}' section: {', '.join(sorted(unknown))}")
    return cls(**values)


def config_from_dict(config: Dict[str, Any]) -> AnalysisConfig:
    """
    Build an AnalysisConfig from a (validated) configuration dictionary.

    Raises:
        ValueError: On unknown keys or invalid values.
    """
    validate_config(config)

    top = {k: v for k, v in config.items() if k not in _SECTIONS}
    known = {f.name for f in fields(AnalysisConfig)} - set(_SECTIONS)
    unknown = set(top) - known
    if unknown:
        raise ValueError(f"Unknown top-level config key(s): {', '.join(sorted(unknown))}")

    for key in _PATH_KEYS:
        if top.get(key) is not None:
            top[key] = Path(top[key])

    sections = {}
    for name, cls in _SECTIONS.items():
        values = dict(config.get(name) or {})
        if name == 'enrichment' and 'references' in values:
            values['references'] = [
                _section(ReferenceTableConfig, {**ref, 'path': Path(ref['path'])}, 'enrichment.references')
                for ref in values['references']
            ]
        sections[name] = _section(cls, values, name)

    return AnalysisConfig(**top, **sections)


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Raises:
        ValueError: If configuration is invalid
    """
    for name in _SECTIONS:
        if name in config and config[name] is not None and not isinstance(config[name], dict):
            raise ValueError(f"Config section '{name}' must be a mapping")

    normalization = config.get('normalization') or {}
    if 'method' in normalization:
        valid_methods = [m.value for m in NormalizationMethod]
        if normalization['method'] not in valid_methods:
            raise ValueError(
                f"Invalid normalization method '{normalization['method']}'. "
                f"Choose from: {', '.join(valid_methods)}"
            )

    correlation = config.get('correlation') or {}
    policy = correlation.get('missing_policy')
    if policy is not None and policy not in MISSING_COVARIATE_POLICIES:
        raise ValueError(
            f"Invalid missing covariate policy '{policy}'. "
            f"Choose from: {', '.join(MISSING_COVARIATE_POLICIES)}"
        )
    covariate_cols = correlation.get('covariate_cols') or []
    if len(covariate_cols) > 2:
        raise ValueError(f"At most two covariate columns are supported, got {len(covariate_cols)}")
    threshold = correlation.get('threshold')
    if threshold is not None and not (isinstance(threshold, (int, float)) and 0 <= threshold < 1):
        raise ValueError(f"Correlation threshold must be in [0, 1), got: {threshold}")

    for section in ('classification', 'highlight', 'enrichment'):
        fdr = (config.get(section) or {}).get('fdr_threshold')
        if fdr is not None and not (isinstance(fdr, (int, float)) and 0 < fdr <= 1):
            raise ValueError(f"{section}.fdr_threshold must be in (0, 1], got: {fdr}")

    for section in ('classification', 'highlight'):
        lfc = (config.get(section) or {}).get('lfc_threshold')
        if lfc is not None and not (isinstance(lfc, (int, float)) and lfc >= 0):
            raise ValueError(f"{section}.lfc_threshold must be non-negative, got: {lfc}")

    filter_cfg = config.get('filter') or {}
    min_prop = filter_cfg.get('min_prop')
    if min_prop is not None and not (isinstance(min_prop, (int, float)) and 0 < min_prop <= 1):
        raise ValueError(f"filter.min_prop must be in (0, 1], got: {min_prop}")

    model = config.get('model') or {}
    span = model.get('span')
    if span is not None and not (isinstance(span, (int, float)) and 0 < span <= 1):
        raise ValueError(f"model.span must be in (0, 1], got: {span}")

    contrast = config.get('contrast') or {}
    if contrast.get('baseline') is not None and contrast.get('baseline') == contrast.get('treatment'):
        raise ValueError("contrast.baseline and contrast.treatment must differ")

    for ref in (config.get('enrichment') or {}).get('references') or []:
        if not isinstance(ref, dict) or 'name' not in ref or 'path' not in ref:
            raise ValueError("Each enrichment reference needs 'name' and 'path'")
