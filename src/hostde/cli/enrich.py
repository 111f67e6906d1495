"""
CLI for enrichment matrices between curated reference sets and DE results.

Reference tables are curated differential expression tables (gene id, log2
fold change, adjusted p-value). Each is split into <name>_UP and <name>_DOWN
sets. Test sets come from a `hostde de` result table: UP, DOWN and, when the
run included correlation screening, the covariate-correlated genes.

Each reference table has its own background universe: the genes tested in
the result table that the reference table also measured. All cells are
BH-adjusted as one family.

Usage:
    hostde enrich \\
        --results results/de/hostde.results.csv \\
        --reference covid_lung=refs/lung.csv \\
        --reference covid_blood=refs/blood.tsv \\
        --output results/enrichment
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from hostde.cli._validators import _non_negative_float, _positive_int, _probability
from hostde.errors import HostDEError

logger = logging.getLogger(__name__)


def _reference_spec(value: str) -> tuple[str, Path]:
    """argparse type for NAME=PATH reference arguments."""
    name, sep, path = value.partition("=")
    if not sep or not name or not path:
        raise argparse.ArgumentTypeError(f"{value} is not of the form NAME=PATH")
    return name, Path(path)


def setup_parser(subparsers: argparse._SubParsersAction) -> None:
    """Add the enrich subcommand to the parser."""
    parser = subparsers.add_parser(
        "enrich",
        help="Enrichment matrices against curated reference gene sets",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--config", type=Path, default=None,
                        help="YAML or JSON config; its enrichment section is used")
    parser.add_argument("--results", "-r", type=Path, required=True,
                        help="Result table written by `hostde de`")
    parser.add_argument("--reference", type=_reference_spec, action="append", default=None,
                        metavar="NAME=PATH", help="Curated reference table (repeatable)")
    parser.add_argument("--gene-col", default="gene_id",
                        help="Gene id column in reference tables (default: gene_id)")
    parser.add_argument("--effect-col", default="log2FoldChange",
                        help="Effect column in reference tables (default: log2FoldChange)")
    parser.add_argument("--significance-col", default="padj",
                        help="Adjusted p-value column in reference tables (default: padj)")
    parser.add_argument("--lfc-threshold", type=_non_negative_float, default=None,
                        help="|log2 fold change| for reference UP/DOWN sets (default: 1.0)")
    parser.add_argument("--significance-threshold", type=_probability, default=None,
                        help="Adjusted p-value for reference UP/DOWN sets (default: 0.05)")
    parser.add_argument("--fdr-threshold", type=_probability, default=None,
                        help="FDR for the display mask (default: 0.05)")
    parser.add_argument("--correlation-score-col", default=None,
                        help="Result column whose sign splits correlated genes into POS/NEG")
    parser.add_argument("--output", "-o", type=Path, required=True, help="Output directory")
    parser.add_argument("--workers", "-j", type=_positive_int, default=1,
                        help="Worker threads for matrix cells (default: 1)")
    parser.add_argument("--prefix", default="hostde", help="Output file prefix")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    parser.set_defaults(func=run_enrich)


def run_enrich(args: argparse.Namespace) -> int:
    """Build and write the enrichment matrices."""
    from hostde.cli.config import load_config
    from hostde.config import ReferenceTableConfig, config_from_dict
    from hostde.io import load_table, write_enrichment, write_failures
    from hostde.stats.enrichment import (
        EnrichmentMatrixBuilder,
        reference_sets_from_table,
        result_gene_sets,
    )

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        config = config_from_dict(load_config(args.config) if args.config else {}).enrichment
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    for attr in ('lfc_threshold', 'significance_threshold', 'fdr_threshold'):
        if getattr(args, attr) is not None:
            setattr(config, attr, getattr(args, attr))

    references = list(config.references)
    for name, path in args.reference or []:
        references.append(ReferenceTableConfig(
            name=name, path=path, gene_col=args.gene_col,
            effect_col=args.effect_col, significance_col=args.significance_col,
        ))
    if not references:
        logger.error("At least one reference table is required (--reference or enrichment.references)")
        return 1

    try:
        results = load_table(args.results)
        gene_col = results.columns[0]
        results = results.set_index(gene_col)
        test_sets = result_gene_sets(results, correlation_score_col=args.correlation_score_col)
        tested = set(results.index.astype(str))

        strata = []
        for ref in references:
            sets, measured = reference_sets_from_table(
                load_table(ref.path), ref.name,
                gene_col=ref.gene_col,
                effect_col=ref.effect_col,
                significance_col=ref.significance_col,
                lfc_threshold=config.lfc_threshold,
                significance_threshold=config.significance_threshold,
            )
            background = tested & measured
            logger.info(f"Background for '{ref.name}': {len(background)} genes tested here "
                        f"and measured in the reference table")
            strata.append((sets, background))

        builder = EnrichmentMatrixBuilder(
            fdr_threshold=config.fdr_threshold,
            confidence_level=config.confidence_level,
            n_workers=args.workers,
        )
        matrices = builder.build_stratified(strata, test_sets)
    except (HostDEError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1

    write_enrichment(matrices, args.output, args.prefix)
    write_failures(matrices.failures, args.output / f"{args.prefix}.enrichment_failures.csv")

    sizes = matrices.background_size
    print(f"\n{matrices.odds_ratio.shape[0]} reference × {matrices.odds_ratio.shape[1]} test sets "
          f"over {sizes.min()}-{sizes.max()} background genes: "
          f"{int(matrices.mask.to_numpy().sum())} cells at FDR <= {matrices.fdr_threshold}")
    return 0
