"""
kubeherd/deployment/scale.py

Host-set reconciliation for `join` and `delete`. Pure and synchronous: the
functions here only edit an in-memory Cluster; remote work happens later in
the runtime.

Both operations check every requested IP before touching the cluster, so a
rejected request leaves the host groups exactly as they were.
"""

from __future__ import annotations

from typing import List, Literal, Optional, Tuple

from kubeherd.errors import (
    ConfigurationError,
    DuplicateIPConflict,
    ProtectedMasterRemoval,
)
from kubeherd.models.cluster import MASTER, NODE, Cluster, Host
from kubeherd.models.plugin import Plugin
from kubeherd.models.scale import ScaleRequest
from kubeherd.models.ssh import SSHCredentials
from kubeherd.utils.clusterfile import load_clusterfile
from kubeherd.utils.net import filter_ips, parse_targets, remove_duplicate

ScaleAction = Literal["join", "delete"]


def _parse_request(request: ScaleRequest) -> Tuple[List[str], List[str]]:
    if not request.masters.strip() and not request.nodes.strip():
        raise ConfigurationError("master and node cannot both be empty")
    return parse_targets(request.masters), parse_targets(request.nodes)


def _check_not_present(cluster: Cluster, role: str, ips: List[str]) -> None:
    current = set(cluster.ips_by_role(role))
    for ip in ips:
        if ip in current:
            raise DuplicateIPConflict(ip, role)


def _ssh_override(cluster: Cluster, request: ScaleRequest) -> Optional[SSHCredentials]:
    if request.ssh is None or request.ssh == cluster.spec.ssh:
        return None
    return request.ssh.model_copy()


def join(cluster: Cluster, request: ScaleRequest) -> None:
    """
    Append new master/node groups for the requested targets.

    Raises:
        ConfigurationError: both target sets empty.
        InvalidAddressFormat: unparsable target text.
        DuplicateIPConflict: a target already holds that role.
    """
    masters, nodes = _parse_request(request)
    masters, nodes = remove_duplicate(masters), remove_duplicate(nodes)

    _check_not_present(cluster, MASTER, masters)
    _check_not_present(cluster, NODE, nodes)

    ssh = _ssh_override(cluster, request)
    if masters:
        cluster.spec.hosts.append(Host(ips=masters, roles=[MASTER], ssh=ssh))
    if nodes:
        cluster.spec.hosts.append(Host(ips=nodes, roles=[NODE], ssh=ssh))
    cluster.spec.env.extend(request.custom_env)


def delete(cluster: Cluster, request: ScaleRequest) -> None:
    """
    Remove the requested IPs from the groups of the matching role. Emptied
    groups stay in place; unknown IPs are ignored.

    Raises:
        ConfigurationError: both target sets empty.
        InvalidAddressFormat: unparsable target text.
        ProtectedMasterRemoval: master-0 is among the master targets.
    """
    masters, nodes = _parse_request(request)

    if masters:
        master0 = cluster.master0_ip()
        if master0 in masters:
            raise ProtectedMasterRemoval(master0)

    for host in cluster.spec.hosts:
        if masters and MASTER in host.roles:
            host.ips = filter_ips(host.ips, masters)
        if nodes and NODE in host.roles:
            host.ips = filter_ips(host.ips, nodes)
    # custom env lets user clean scripts see extra variables
    cluster.spec.env.extend(request.custom_env)


async def scale_cluster_from_request(
    clusterfile: str, request: ScaleRequest, action: ScaleAction
) -> Tuple[Cluster, List[Plugin]]:
    """
    Load a Clusterfile and apply a join or delete to it.

    Returns:
        The reconciled Cluster and the file's plugins, ready for an Applier.
    """
    cluster, plugins = await load_clusterfile(clusterfile)
    cluster.ensure_named()
    if action == "join":
        join(cluster, request)
    else:
        delete(cluster, request)
    return cluster, plugins
