#!/usr/bin/env python3
"""
kubeherd/cli/alpha.py

Operator utilities for applied clusters.
Example usage:

    python -m kubeherd.cli.alpha cert --alt-names 39.105.169.253,kubeherd.example.com
    python -m kubeherd.cli.alpha exec -c my-cluster -r master "cat /etc/hosts"
    python -m kubeherd.cli.alpha prune

`cert` regenerates the API server certificate on every master; the API
servers have to be restarted by hand afterwards.
"""

import argparse
from typing import List, Optional

from kubeherd.cli.common import add_common_arguments, run_cli
from kubeherd.deployment.alpha import exec_on_hosts, prune, update_certs
from kubeherd.errors import ConfigurationError
from kubeherd.models.cluster import Cluster
from kubeherd.models.settings import KubeherdSettings
from kubeherd.utils.clusterfile import ClusterFileStore
from kubeherd.utils.ssh import SSHExecutor


def _split(value: Optional[str]) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


async def _load_cluster(store: ClusterFileStore, name: Optional[str]) -> Cluster:
    name = name or store.default_cluster_name()
    loaded = await store.load(name)
    if loaded is None:
        raise ConfigurationError(f"cluster {name!r} has not been applied")
    return loaded[0]


async def _run_cert(args: argparse.Namespace) -> None:
    settings = KubeherdSettings()
    cluster = await _load_cluster(ClusterFileStore(settings.home_dir), args.cluster_name)
    executor = SSHExecutor(cluster, settings=settings)
    await update_certs(cluster, executor, _split(args.alt_names))
    print("Certificates updated; restart the API servers to pick them up.")


async def _run_exec(args: argparse.Namespace) -> None:
    settings = KubeherdSettings()
    cluster = await _load_cluster(ClusterFileStore(settings.home_dir), args.cluster_name)
    executor = SSHExecutor(cluster, settings=settings)
    outputs = await exec_on_hosts(cluster, executor, args.cmd, _split(args.roles))
    for host, out in outputs.items():
        print(f"[{host}]\n{out}")


async def _run_prune(args: argparse.Namespace) -> None:
    settings = KubeherdSettings()
    deleted = prune(ClusterFileStore(settings.home_dir), settings.image_dir)
    for path in deleted:
        print(f"{path} deleted")
    if not deleted:
        print("Nothing to prune.")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="kubeherd.cli.alpha",
        description="Operator utilities for clusters applied with kubeherd.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    cert_parser = subparsers.add_parser(
        "cert", help="Add IPs or DNS names to the API server certificate."
    )
    cert_parser.add_argument(
        "--alt-names",
        required=True,
        help="Comma-separated IPs / DNS names to add as SANs.",
    )
    cert_parser.add_argument("-c", "--cluster-name", default=None)
    add_common_arguments(cert_parser)
    cert_parser.set_defaults(func=_run_cert)

    exec_parser = subparsers.add_parser(
        "exec", help="Run a shell command on the hosts of a cluster."
    )
    exec_parser.add_argument("-c", "--cluster-name", default=None)
    exec_parser.add_argument(
        "-r",
        "--roles",
        default=None,
        help="Comma-separated roles to filter hosts (default: every host).",
    )
    exec_parser.add_argument("cmd", help="Shell command to run.")
    add_common_arguments(exec_parser)
    exec_parser.set_defaults(func=_run_exec)

    prune_parser = subparsers.add_parser(
        "prune", help="Delete local data no applied cluster uses."
    )
    add_common_arguments(prune_parser)
    prune_parser.set_defaults(func=_run_prune)

    args = parser.parse_args()
    run_cli("Alpha CLI", args.func, args)


if __name__ == "__main__":
    main()
