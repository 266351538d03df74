"""
kubeherd/services/plugin.py

Runs SHELL plugins declared in the Clusterfile at a lifecycle phase.

`on` selects hosts either by role ("master", "node", "master,node") or by IP
target text ("10.0.0.2,10.0.0.3", "10.0.0.2-10.0.0.9"). Hosts outside the
current operation are skipped. Every phase except Originally runs from
inside the remote rootfs directory. A plugin runs on its hosts concurrently.
During PreClean a selector that cannot be resolved is logged and the plugin
skipped.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

from kubeherd.errors import ConfigurationError, KubeherdError
from kubeherd.models.cluster import MASTER, NODE, Cluster
from kubeherd.models.plugin import SHELL_PLUGIN, Phase, Plugin
from kubeherd.models.runtime import RuntimeConfig
from kubeherd.utils.fanout import fan_out
from kubeherd.utils.net import parse_targets
from kubeherd.utils.ssh import RemoteExecutor

logger = logging.getLogger(__name__)

_ROLES = {MASTER, NODE}


def plugin_hosts(cluster: Cluster, on: str) -> List[str]:
    """Resolve the `on` selector against the cluster topology."""
    if not on.strip():
        return cluster.all_ips()
    tokens = [t.strip() for t in on.split(",") if t.strip()]
    if all(t in _ROLES for t in tokens):
        ips = list(
            dict.fromkeys(ip for role in tokens for ip in cluster.ips_by_role(role))
        )
        if not ips:
            raise ConfigurationError(f"plugin selector {on!r} matches no host")
        return ips
    return parse_targets(on)


class ShellPluginRunner:
    def __init__(self, executor: RemoteExecutor, config: RuntimeConfig) -> None:
        self.executor = executor
        self.config = config

    async def run(
        self,
        cluster: Cluster,
        plugins: Sequence[Plugin],
        phase: Phase,
        hosts: Sequence[str],
    ) -> None:
        """
        Run every SHELL plugin registered for `phase` on its selected hosts.

        Args:
            cluster: Cluster the plugins belong to.
            plugins: Plugins from the Clusterfile.
            phase: Lifecycle phase being executed.
            hosts: Hosts taking part in the current operation.
        """
        for plugin in plugins:
            if plugin.spec.type != SHELL_PLUGIN or phase.value not in plugin.spec.phases():
                continue
            await self._run_one(cluster, plugin, phase, hosts)

    async def _run_one(
        self, cluster: Cluster, plugin: Plugin, phase: Phase, hosts: Sequence[str]
    ) -> None:
        cmd = plugin.spec.data
        if phase != Phase.ORIGINALLY:
            cmd = f"cd {self.config.remote_rootfs(cluster.name)} && {cmd}"
        cmd = cluster.wrap_shell(cmd)

        try:
            targets = plugin_hosts(cluster, plugin.spec.on)
        except KubeherdError as exc:
            if phase != Phase.PRE_CLEAN:
                raise
            logger.error(
                "Failed to resolve hosts of plugin %r in %s phase: %s",
                plugin.name,
                phase.value,
                exc,
            )
            return
        selected = [ip for ip in targets if ip in hosts]

        async def _exec(host: str) -> None:
            await self.executor.run_many(host, cmd)

        await fan_out(
            selected,
            _exec,
            max_concurrency=self.config.max_concurrency,
            label=f"plugin {plugin.name}",
        )
        logger.info(
            "%s phase shell plugin %r executed on: %s", phase.value, plugin.name, selected
        )
