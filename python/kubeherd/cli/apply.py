#!/usr/bin/env python3
"""
kubeherd/cli/apply.py

Apply a Clusterfile. The first apply of a cluster creates it; later applies
reconcile the hosts against the last applied Clusterfile.

    python -m kubeherd.cli.apply -f Clusterfile
    python -m kubeherd.cli.apply -f Clusterfile --force   # allow node cleanup failures
    python -m kubeherd.cli.apply -f Clusterfile --delete --force
"""

import argparse

from kubeherd.cli.common import add_common_arguments, run_cli
from kubeherd.deployment.applier import Applier


async def _apply(args: argparse.Namespace) -> None:
    applier = await Applier.from_file(args.clusterfile, force_delete=args.force)
    if args.delete:
        await applier.delete()
    else:
        await applier.apply()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="kubeherd.cli.apply",
        description="Apply a Kubernetes cluster via the specified Clusterfile.",
    )
    parser.add_argument(
        "-f",
        "--clusterfile",
        default="Clusterfile",
        help="Clusterfile path (default: ./Clusterfile).",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        default=False,
        help="Force deletion: deregister nodes even if their cleanup failed.",
    )
    parser.add_argument(
        "--delete",
        action="store_true",
        default=False,
        help="Reset every host of the cluster and forget it (requires --force).",
    )
    add_common_arguments(parser)

    args = parser.parse_args()
    run_cli("Apply CLI", _apply, args)


if __name__ == "__main__":
    main()
