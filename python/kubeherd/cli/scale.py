"""
kubeherd/cli/scale.py

Shared implementation of `join` and `delete`:

    python -m kubeherd.cli.join -m 192.168.0.3 -n 192.168.0.10-192.168.0.12
    python -m kubeherd.cli.delete -n 192.168.0.11 --force

Without -f the Clusterfile of the last apply is used (named by -c, or the
only applied cluster).
"""

import argparse
from typing import Optional

from kubeherd.cli.common import add_common_arguments, run_cli
from kubeherd.deployment.applier import Applier
from kubeherd.deployment.scale import ScaleAction, scale_cluster_from_request
from kubeherd.models.scale import ScaleRequest
from kubeherd.models.settings import KubeherdSettings
from kubeherd.models.ssh import SSHCredentials
from kubeherd.utils.clusterfile import ClusterFileStore


def _ssh_override(args: argparse.Namespace) -> Optional[SSHCredentials]:
    if not any([args.user, args.passwd, args.pk, args.pk_passwd, args.port]):
        return None
    fields = {
        "user": args.user,
        "passwd": args.passwd,
        "pk": args.pk,
        "pk_passwd": args.pk_passwd,
        "port": args.port,
    }
    return SSHCredentials(**{k: v for k, v in fields.items() if v})


def _clusterfile(args: argparse.Namespace, settings: KubeherdSettings) -> str:
    if args.clusterfile:
        return args.clusterfile
    store = ClusterFileStore(settings.home_dir)
    name = args.cluster_name or store.default_cluster_name()
    return store.clusterfile_path(name)


def build_parser(action: ScaleAction) -> argparse.ArgumentParser:
    verb = "Join" if action == "join" else "Delete"
    parser = argparse.ArgumentParser(
        prog=f"kubeherd.cli.{action}",
        description=f"{verb} masters and/or nodes of an applied cluster.",
    )
    parser.add_argument("-f", "--clusterfile", default=None, help="Clusterfile path.")
    parser.add_argument(
        "-c", "--cluster-name", default=None, help="Applied cluster to scale."
    )
    parser.add_argument(
        "-m",
        "--masters",
        default="",
        help="Master IPs: comma list or range, e.g. 10.0.0.2-10.0.0.4.",
    )
    parser.add_argument(
        "-n",
        "--nodes",
        default="",
        help="Node IPs: comma list or range, e.g. 10.0.0.10,10.0.0.11.",
    )
    parser.add_argument(
        "-e",
        "--env",
        action="append",
        default=[],
        help="KEY=VALUE exported before remote scripts (repeatable).",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        default=False,
        help="Deregister nodes even when their cleanup failed.",
    )
    if action == "join":
        ssh = parser.add_argument_group("ssh credentials of the new hosts")
        ssh.add_argument("-u", "--user", default=None)
        ssh.add_argument("-p", "--passwd", default=None)
        ssh.add_argument("--port", type=int, default=None)
        ssh.add_argument("--pk", default=None, help="Private key path.")
        ssh.add_argument("--pk-passwd", default=None)
    add_common_arguments(parser)
    return parser


async def _scale(args: argparse.Namespace) -> None:
    settings = KubeherdSettings()
    request = ScaleRequest(
        masters=args.masters,
        nodes=args.nodes,
        ssh=_ssh_override(args) if args.action == "join" else None,
        custom_env=args.env,
    )
    cluster, plugins = await scale_cluster_from_request(
        _clusterfile(args, settings), request, args.action
    )
    applier = Applier(cluster, plugins, settings=settings, force_delete=args.force)
    await applier.apply()


def run(action: ScaleAction) -> None:
    args = build_parser(action).parse_args()
    args.action = action
    run_cli(f"{action.capitalize()} CLI", _scale, args)
