"""
hostde CLI - host transcriptional response analysis.

Commands:
    hostde de      - Blocked differential expression with covariate screening
    hostde enrich  - Enrichment matrices against curated reference gene sets
"""

import argparse
import sys
from typing import Optional, List


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for hostde."""
    parser = argparse.ArgumentParser(
        prog="hostde",
        description="Host transcriptional response to infection from RNA-seq quantifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  de        Differential expression with subject blocking and viral-load correlation
  enrich    Enrichment matrices against curated reference gene sets

Examples:
  hostde de --config analysis.yaml --workers 4
  hostde de -c counts.tsv --lengths lengths.tsv -m samples.tsv --baseline control --treatment infected -o results/de
  hostde enrich --results results/de/hostde.results.csv --reference lung=refs/lung.csv -o results/enrich
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version="%(prog)s 0.1.0"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Import and register subcommands
    from hostde.cli import de, enrich
    de.setup_parser(subparsers)
    enrich.setup_parser(subparsers)

    raw_args = list(args) if args is not None else sys.argv[1:]
    parsed_args = parser.parse_args(raw_args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    # Explicit flags override config file values
    parsed_args._cli_args = raw_args

    # Dispatch to subcommand
    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
