"""
meshrink CLI - Command-line interface for measurement error model fits.

Commands:
    meshrink fit     - Fit the model, shrink variances and Wald-test coefficients
    meshrink design  - Show the design matrix columns a formula produces
"""

import argparse
import sys
from typing import List, Optional


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for meshrink."""
    parser = argparse.ArgumentParser(
        prog="meshrink",
        description="Measurement error models with bootstrap technical variance and variance shrinkage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  fit     Fit the model, shrink variances and Wald-test coefficients
  design  Show the design matrix columns a formula produces

Examples:
  meshrink design --covariates samples.csv --formula "~ condition"
  meshrink fit --abundance norm.tsv --bootstraps boot.tsv --covariates samples.csv \\
      --formula "~ condition" --test conditiontreated --output results/
  meshrink fit --config run.yaml --workers 4
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version="%(prog)s 0.1.0"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from meshrink.cli import fit
    fit.setup_parser(subparsers)
    fit.setup_design_parser(subparsers)

    argv = list(args) if args is not None else sys.argv[1:]
    parsed_args = parser.parse_args(argv)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    # Raw arguments let config merging tell explicit flags from defaults
    parsed_args.argv = argv[1:]
    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
