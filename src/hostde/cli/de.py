"""
CLI for blocked differential expression with covariate screening.

Runs filter -> normalization -> blocked linear model -> empirical Bayes
contrast -> BH FDR -> classification, plus optional correlation of every
gene with one or two viral-load covariates over a sample subset.

Usage:
    hostde de \\
        --counts quant/gene_counts.tsv \\
        --lengths quant/gene_lengths.tsv \\
        --metadata samples.tsv \\
        --baseline control --treatment infected \\
        --block-col subject \\
        --covariates viral_load.tsv \\
        --covariate-cols load_qpcr load_reads \\
        --subset-values infected \\
        --output results/de

All options can also come from --config (YAML or JSON); explicitly given
command-line options win over the config file.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from hostde.cli._validators import (
    _non_negative_float,
    _non_negative_int,
    _positive_int,
    _probability,
)
from hostde.errors import HostDEError

logger = logging.getLogger(__name__)


def setup_parser(subparsers: argparse._SubParsersAction) -> None:
    """Add the de subcommand to the parser."""
    parser = subparsers.add_parser(
        "de",
        help="Differential expression with subject blocking",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--config", type=Path, default=None,
                        help="YAML or JSON analysis config")

    # Inputs
    parser.add_argument("--counts", "-c", type=Path, default=None,
                        help="Count matrix (features × samples)")
    parser.add_argument("--lengths", type=Path, default=None,
                        help="Effective length matrix, same shape as counts")
    parser.add_argument("--metadata", "-m", type=Path, default=None,
                        help="Sample metadata table")
    parser.add_argument("--sample-col", default=None,
                        help="Sample id column in metadata (default: sample_id)")
    parser.add_argument("--tx2gene", type=Path, default=None,
                        help="Transcript -> gene mapping; counts/lengths are then transcript level")
    parser.add_argument("--annotation", type=Path, default=None,
                        help="Gene annotation table with gene_id and symbol columns")
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output directory")

    # Filter / normalization
    parser.add_argument("--min-count", type=_non_negative_float, default=None,
                        help="Reads-equivalent a gene needs per typical sample (default: 10)")
    parser.add_argument("--min-total-count", type=_non_negative_float, default=None,
                        help="Minimum total reads per gene (default: 15)")
    parser.add_argument("--norm-method", choices=["TMM", "RLE", "upperquartile", "none"], default=None,
                        help="Composition normalization (default: TMM)")

    # Model
    parser.add_argument("--condition-col", default=None,
                        help="Metadata column with condition labels (default: condition)")
    parser.add_argument("--block-col", default=None,
                        help="Metadata column with subject/block ids (default: subject)")
    parser.add_argument("--baseline", default=None, help="Baseline condition level")
    parser.add_argument("--treatment", default=None, help="Treatment condition level")
    parser.add_argument("--refinement-passes", type=_non_negative_int, default=None,
                        help="Extra trend/correlation passes (default: 1)")

    # Classification
    parser.add_argument("--lfc-threshold", type=_non_negative_float, default=None,
                        help="|log2 fold change| for UP/DOWN calls (default: 1.0)")
    parser.add_argument("--fdr-threshold", type=_probability, default=None,
                        help="FDR for UP/DOWN calls (default: 0.05)")

    # Correlation screening
    parser.add_argument("--covariates", type=Path, default=None,
                        help="Covariate (viral load) table joined to samples")
    parser.add_argument("--covariate-cols", nargs="+", default=None,
                        help="One or two covariate columns to correlate with expression")
    parser.add_argument("--subset-values", nargs="+", default=None,
                        help="Condition levels whose samples enter correlation screening")
    parser.add_argument("--correlation-threshold", type=_probability, default=None,
                        help="|r| threshold for correlation flags (default: 0.6)")
    parser.add_argument("--missing-covariates", choices=["fail", "exclude"], default=None,
                        help="Samples without covariate records: fail the run (default) "
                             "or exclude them from correlation screening only")

    parser.add_argument("--workers", "-j", type=_positive_int, default=None,
                        help="Worker threads for per-gene work (default: 1)")
    parser.add_argument("--prefix", default="hostde", help="Output file prefix")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    parser.set_defaults(func=run_de)


def run_de(args: argparse.Namespace) -> int:
    """Execute the differential expression analysis."""
    from hostde.cli.config import load_config, merge_config_with_args
    from hostde.config import config_from_dict
    from hostde.io import (
        annotate_symbols,
        load_expression_set,
        load_table,
        write_failures,
        write_result_table,
        write_run_summary,
    )
    from hostde.pipeline import run_differential_expression

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        raw = load_config(args.config) if args.config else {}
        config = config_from_dict(merge_config_with_args(raw, args, getattr(args, '_cli_args', None)))
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    for name in ('counts', 'lengths', 'metadata', 'output'):
        if getattr(config, name) is None:
            logger.error(f"--{name} is required (on the command line or in the config)")
            return 1

    try:
        es = load_expression_set(
            config.counts, config.lengths, config.metadata,
            sample_col=config.sample_col, tx2gene_path=config.tx2gene,
        )
        logger.info(f"Loaded {es}")

        symbols = None
        if config.annotation is not None:
            symbols = annotate_symbols(es.gene_ids, load_table(config.annotation))
        covariates = load_table(config.covariates) if config.covariates is not None else None

        result = run_differential_expression(es, config, covariates=covariates, symbols=symbols)
    except (HostDEError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1

    out = config.output
    out.mkdir(parents=True, exist_ok=True)
    write_result_table(result.table, out / f"{args.prefix}.results.csv")
    write_failures(result.failures, out / f"{args.prefix}.failures.csv")
    write_run_summary(
        {'config': config.to_dict(), 'results': result.summary()},
        out / f"{args.prefix}.summary.json",
    )

    summary = result.summary()
    print(f"\n{summary['n_genes_tested']} genes tested: {summary['n_up']} UP, {summary['n_down']} DOWN "
          f"(consensus correlation {summary['model']['correlation']:.3f}, prior df {summary['prior_df']:.2f})")
    if result.failures:
        print(f"{len(result.failures)} unit failures written to {out / f'{args.prefix}.failures.csv'}")
    return 0

