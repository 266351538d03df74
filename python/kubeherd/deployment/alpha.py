"""
kubeherd/deployment/alpha.py

Operator helpers behind `kubeherdctl alpha`:
  - update_certs: add SANs to the API server certificate on every master
  - exec_on_hosts: run a shell command on role-filtered hosts
  - prune_targets / prune: stale local data (abandoned work dirs, unused images)
"""

from __future__ import annotations

import logging
import os
import shutil
from typing import Dict, List, Sequence

from kubeherd.deployment import kube_commands as kc
from kubeherd.errors import ConfigurationError
from kubeherd.models.cluster import Cluster
from kubeherd.services.image import image_dir_name
from kubeherd.utils.clusterfile import (
    CLUSTERFILE_NAME,
    ClusterFileStore,
    parse_clusterfile,
)
from kubeherd.utils.fanout import SyncMap, fan_out, run_sequential
from kubeherd.utils.ssh import RemoteExecutor

logger = logging.getLogger(__name__)


async def update_certs(
    cluster: Cluster, executor: RemoteExecutor, alt_names: Sequence[str]
) -> None:
    """
    Regenerate the API server certificate with `alt_names` added. Masters are
    handled one at a time. The API servers still need a manual restart.
    """
    names = [n.strip() for n in alt_names if n.strip()]
    if not names:
        raise ConfigurationError(
            "IP address or DNS domain needed for cert Subject Alternative Names"
        )
    command = kc.cert_update_command(names)

    async def _update(host: str) -> None:
        await executor.run_many(host, command)

    await run_sequential(cluster.master_ips(), _update, label="cert update")


def hosts_by_roles(cluster: Cluster, roles: Sequence[str]) -> List[str]:
    """All hosts when `roles` is empty, otherwise the union in role order."""
    if not roles:
        return cluster.all_ips()
    hosts = list(dict.fromkeys(ip for role in roles for ip in cluster.ips_by_role(role)))
    if not hosts:
        raise ConfigurationError(f"no host found for role(s) {', '.join(roles)}")
    return hosts


async def exec_on_hosts(
    cluster: Cluster,
    executor: RemoteExecutor,
    command: str,
    roles: Sequence[str] = (),
) -> Dict[str, str]:
    """
    Run `command` on every selected host in parallel.

    Returns:
        Host => stdout, for the hosts that succeeded. Failures raise
        FanOutError after every host has been attempted.
    """
    outputs: SyncMap[str, str] = SyncMap()

    async def _exec(host: str) -> None:
        await outputs.set(host, await executor.run(host, command))

    await fan_out(hosts_by_roles(cluster, roles), _exec, label="exec")
    return await outputs.snapshot()


def prune_targets(store: ClusterFileStore, image_dir: str) -> List[str]:
    """
    Paths that no applied cluster needs:
      - directories under the home dir without a Clusterfile
      - leftover `Clusterfile.tmp` files from interrupted saves
      - image directories not referenced by any applied cluster
    """
    targets: List[str] = []
    home = store.home_dir
    if os.path.isdir(home):
        for entry in sorted(os.listdir(home)):
            path = os.path.join(home, entry)
            if not os.path.isdir(path):
                continue
            if not os.path.isfile(os.path.join(path, CLUSTERFILE_NAME)):
                targets.append(path)
                continue
            tmp = os.path.join(path, CLUSTERFILE_NAME + ".tmp")
            if os.path.exists(tmp):
                targets.append(tmp)

    image_dir = os.path.expanduser(image_dir)
    if os.path.isdir(image_dir):
        used = set()
        for name in store.list_clusters():
            with open(store.clusterfile_path(name), "r", encoding="utf-8") as f:
                cluster, _ = parse_clusterfile(f.read())
            used.add(image_dir_name(cluster.spec.image))
        for entry in sorted(os.listdir(image_dir)):
            if entry not in used:
                targets.append(os.path.join(image_dir, entry))
    return targets


def prune(store: ClusterFileStore, image_dir: str) -> List[str]:
    """Delete every prune target. Returns the deleted paths."""
    deleted = []
    for path in prune_targets(store, image_dir):
        if os.path.isdir(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
        logger.info("%s deleted", path)
        deleted.append(path)
    return deleted
