"""
kubeherd/deployment/kubernetes.py

KubernetesRuntime: kubeadm-based implementation of the Runtime interface.

Usage example:
  1) init: bootstrap master-0 => join the other masters one by one =>
     join every node in parallel
  2) join_nodes: shared prerequisites (kubeadm overrides, SSH readiness,
     registry cert, fresh join token) => per node in parallel: VIP route,
     join config, `kubeadm join`, lvscare static pod
  3) delete_nodes: per node in parallel: cleanup + VIP route removal =>
     deregistration on master-0, one node at a time
  4) reset: nodes in parallel, masters sequential, then the registry

Worker nodes reach the API servers through a VIP served by node-local IPVS
rules; the lvscare static pod keeps those rules in sync with the masters.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import aiofiles
import aiofiles.os
import yaml

from kubeherd.deployment import kube_commands as kc
from kubeherd.deployment.runtime import Runtime
from kubeherd.errors import ConfigurationError, ProtectedMasterRemoval
from kubeherd.models.cluster import Cluster
from kubeherd.models.runtime import (
    ClusterImageMetadata,
    JoinToken,
    RegistryConfig,
    RuntimeConfig,
    RuntimeState,
)
from kubeherd.services.interfaces import CertService
from kubeherd.utils.async_retry import async_retry
from kubeherd.utils.clusterfile import ClusterFileStore
from kubeherd.utils.fanout import (
    FanOutError,
    HostOperation,
    SyncMap,
    fan_out,
    run_sequential,
)
from kubeherd.utils.ssh import RemoteExecutor, SSHNotReady

logger = logging.getLogger(__name__)

METADATA_FILE = "Metadata"
REGISTRY_CONFIG_FILE = "registry.yml"


async def load_registry_config(rootfs: str, master0: str) -> RegistryConfig:
    """
    Registry settings from `<rootfs>/etc/registry.yml`, if the image ships
    one. The registry always runs on master-0.
    """
    path = os.path.join(rootfs, "etc", REGISTRY_CONFIG_FILE)
    if not await aiofiles.os.path.exists(path):
        return RegistryConfig(ip=master0)
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(await f.read()) or {}
    data["ip"] = master0
    return RegistryConfig.model_validate(data)


class KubernetesRuntime(Runtime):
    """
    Args:
        cluster: Desired cluster, already reconciled. Treated as read-only.
        config: Explicit runtime knobs (force delete, VIP, retry budget...).
        executor: Remote executor covering every host touched.
        cert_service: Ships the registry certificate to joining hosts.
        store: Local work directory (rootfs, kubeconfig).
        registry: Registry location; defaults to master-0.
        state: Starting state; Bootstrapped for an already applied cluster.
    """

    def __init__(
        self,
        cluster: Cluster,
        config: RuntimeConfig,
        executor: RemoteExecutor,
        cert_service: CertService,
        store: ClusterFileStore,
        *,
        registry: Optional[RegistryConfig] = None,
        state: RuntimeState = RuntimeState.UNINITIALIZED,
    ) -> None:
        super().__init__(state)
        self.cluster = cluster
        self.config = config
        self.executor = executor
        self.cert_service = cert_service
        self.store = store
        self.registry = registry or RegistryConfig(ip=cluster.master0_ip())
        self.vip = config.vip
        self.api_server_domain = config.api_server_domain
        self.join_token: Optional[JoinToken] = None
        self._overrides: Optional[Dict[str, Dict[str, Any]]] = None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @property
    def master0(self) -> str:
        return self.cluster.master0_ip()

    def _remote_kubeadm_config(self) -> str:
        return kc.kubeadm_config_path(self.config.remote_rootfs(self.cluster.name))

    def _lvscare_image(self) -> str:
        return kc.LVSCARE_IMAGE.format(repo=self.registry.repo())

    async def _fan_out(
        self, hosts: Sequence[str], operation: HostOperation, label: str
    ) -> None:
        await fan_out(
            hosts, operation, max_concurrency=self.config.max_concurrency, label=label
        )

    async def _wait_ssh_ready(self, hosts: Sequence[str]) -> None:
        retries = self.config.ssh_ready_retries
        ping = async_retry(retries=retries, delay=self.config.ssh_ready_delay)(
            self.executor.ping
        )

        async def _wait(host: str) -> None:
            try:
                await ping(host)
            except Exception as exc:
                raise SSHNotReady(host, retries) from exc

        await self._fan_out(hosts, _wait, "wait ssh ready")

    async def _merge_kubeadm_config(self) -> Dict[str, Dict[str, Any]]:
        """User kubeadm documents shipped at <rootfs>/etc/kubeadm.yml, keyed by kind."""
        if self._overrides is not None:
            return self._overrides
        path = kc.kubeadm_config_path(self.store.rootfs_dir(self.cluster.name))
        overrides: Dict[str, Dict[str, Any]] = {}
        if await aiofiles.os.path.exists(path):
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                text = await f.read()
            for doc in yaml.safe_load_all(text):
                if isinstance(doc, dict) and doc.get("kind"):
                    overrides[doc["kind"]] = doc
        self._overrides = overrides
        return overrides

    async def _cgroup_driver(self, host: str, cache: SyncMap[str, str]) -> str:
        cached = await cache.get(host)
        if cached:
            return cached
        out = (await self.executor.run(host, kc.CGROUP_DRIVER)).strip()
        driver = out or kc.DEFAULT_CGROUP_DRIVER
        await cache.set(host, driver)
        return driver

    async def _fetch_join_token(self, certificate_key: bool = False) -> JoinToken:
        vlog = self.config.vlog
        out = await self.executor.run(
            self.master0, kc.KUBEADM_TOKEN_CREATE.format(vlog=vlog)
        )
        token, ca_hash = kc.parse_join_command(out)
        key = None
        if certificate_key:
            key = kc.parse_certificate_key(
                await self.executor.run(
                    self.master0, kc.KUBEADM_UPLOAD_CERTS.format(vlog=vlog)
                )
            )
        self.join_token = JoinToken(token=token, ca_cert_hash=ca_hash, certificate_key=key)
        return self.join_token

    async def _node_names(self) -> Dict[str, str]:
        out = await self.executor.run(self.master0, kc.KUBE_NODE_ADDRESSES)
        return kc.parse_node_addresses(out)

    async def _ensure_vip_route(self, host: str) -> None:
        out = await self.executor.run(host, kc.REMOTE_CHECK_ROUTE.format(host=host))
        if out.strip() == kc.ROUTE_OK:
            return
        await self.executor.run(
            host, kc.REMOTE_ADD_ROUTE.format(host=self.vip, gateway=host)
        )

    async def _delete_vip_route(self, host: str) -> None:
        await self.executor.run(
            host, kc.REMOTE_DEL_ROUTE.format(host=self.vip, gateway=host)
        )

    async def _clean_host(self, host: str) -> None:
        await self.executor.run_many(
            host,
            *kc.clean_commands(
                self.config.vlog, self.api_server_domain, self.registry.domain
            ),
        )

    async def _deregister(self, ips: Sequence[str], names: Dict[str, str]) -> None:
        """Delete the Node objects through master-0, one at a time."""

        async def _delete(host: str) -> None:
            name = names.get(host)
            if not name:
                logger.warning("%s is not registered in the cluster, skipping", host)
                return
            await self.executor.run(self.master0, kc.KUBE_DELETE_NODE.format(name=name))

        await run_sequential(
            ips, _delete, label="deregister node", stop_on_error=False
        )

    async def _refresh_lvscare(self, nodes: Sequence[str]) -> None:
        """Rewrite the lvscare manifest so nodes balance over the current masters."""
        manifest = kc.lvscare_static_pod(
            self.vip, self.cluster.master_ips(), self._lvscare_image()
        )

        async def _refresh(host: str) -> None:
            await self.executor.run_many(
                host,
                kc.REMOTE_STATIC_POD_MKDIR,
                kc.write_file(manifest, kc.LVSCARE_STATIC_POD_PATH),
            )

        await self._fan_out(nodes, _refresh, "refresh lvscare")

    # ------------------------------------------------------------------
    # init
    # ------------------------------------------------------------------

    async def init(self) -> None:
        self._check(RuntimeState.BOOTSTRAPPED)
        hosts = self.cluster.all_ips()
        await self._wait_ssh_ready(hosts)
        await self._merge_kubeadm_config()
        await self.cert_service.send(hosts)
        await self._bootstrap_master0()
        self._move(RuntimeState.BOOTSTRAPPED)

        masters = self.cluster.master_ips()
        await self.join_masters([m for m in masters if m != self.master0])
        await self.join_nodes(self.cluster.node_ips())

    async def _bootstrap_master0(self) -> None:
        master0 = self.master0
        logger.info("Start to bootstrap master0 %s", master0)
        metadata = await self.get_cluster_metadata()
        overrides = await self._merge_kubeadm_config()
        cgroup = await self._cgroup_driver(master0, SyncMap())
        docs = kc.apply_overrides(
            kc.init_documents(
                master0=master0,
                masters=self.cluster.master_ips(),
                vip=self.vip,
                api_server_domain=self.api_server_domain,
                kube_version=metadata.kubernetes_version(),
                registry=self.registry,
                cgroup_driver=cgroup,
            ),
            overrides,
        )
        config_path = self._remote_kubeadm_config()
        await self.executor.run_many(
            master0,
            *kc.registry_hosts_commands(self.registry),
            kc.write_file(kc.dump_documents(docs), config_path),
            kc.add_etc_hosts(master0, self.api_server_domain),
            kc.KUBEADM_INIT.format(config=config_path, vlog=self.config.vlog),
            kc.COPY_KUBECONFIG,
        )
        await self.executor.fetch(
            master0, kc.ADMIN_KUBECONFIG, self.store.kubeconfig_path(self.cluster.name)
        )
        logger.info("Succeeded in bootstrapping master0 %s", master0)

    # ------------------------------------------------------------------
    # join
    # ------------------------------------------------------------------

    async def join_masters(
        self, ips: Sequence[str], refresh_nodes: Sequence[str] = ()
    ) -> None:
        if not ips:
            return
        with self._operation(RuntimeState.JOINING):
            overrides = await self._merge_kubeadm_config()
            await self._wait_ssh_ready(ips)
            await self.cert_service.send(ips)
            join = await self._fetch_join_token(certificate_key=True)
            cgroups: SyncMap[str, str] = SyncMap()
            endpoint = kc.api_server_endpoint(self.master0)
            config_path = self._remote_kubeadm_config()

            async def _join_master(host: str) -> None:
                logger.info("Start to join %s as master", host)
                cgroup = await self._cgroup_driver(host, cgroups)
                docs = kc.apply_overrides(
                    kc.join_documents(
                        api_server_endpoint=endpoint,
                        join=join,
                        node_ip=host,
                        cgroup_driver=cgroup,
                        control_plane=True,
                    ),
                    overrides,
                )
                await self.executor.run_many(
                    host,
                    *kc.registry_hosts_commands(self.registry),
                    kc.write_file(kc.dump_documents(docs), config_path),
                    kc.add_etc_hosts(self.master0, self.api_server_domain),
                    kc.KUBEADM_JOIN.format(config=config_path, vlog=self.config.vlog),
                    kc.COPY_KUBECONFIG,
                    # once joined, a master talks to its own API server
                    kc.remove_etc_hosts(self.api_server_domain),
                    kc.add_etc_hosts(host, self.api_server_domain),
                )
                logger.info("Succeeded in joining %s as master", host)

            await run_sequential(ips, _join_master, label="join master")
            # workers that join later get the full master list from join_nodes
            await self._refresh_lvscare(refresh_nodes)

    async def join_nodes(self, ips: Sequence[str]) -> None:
        if not ips:
            return
        with self._operation(RuntimeState.JOINING):
            overrides = await self._merge_kubeadm_config()
            await self._wait_ssh_ready(ips)
            await self.cert_service.send(ips)
            join = await self._fetch_join_token()

            masters = self.cluster.master_ips()
            endpoint = kc.api_server_endpoint(self.vip)
            ipvs = kc.ipvs_command(self.vip, masters)
            lvscare = kc.lvscare_static_pod(self.vip, masters, self._lvscare_image())
            config_path = self._remote_kubeadm_config()
            cgroups: SyncMap[str, str] = SyncMap()

            async def _join_node(host: str) -> None:
                logger.info("Start to join %s as worker", host)
                await self._ensure_vip_route(host)
                cgroup = await self._cgroup_driver(host, cgroups)
                docs = kc.apply_overrides(
                    kc.join_documents(
                        api_server_endpoint=endpoint,
                        join=join,
                        node_ip=host,
                        cgroup_driver=cgroup,
                    ),
                    overrides,
                )
                await self.executor.run_many(
                    host,
                    *kc.registry_hosts_commands(self.registry),
                    kc.write_file(kc.dump_documents(docs), config_path),
                    kc.add_etc_hosts(self.vip, self.api_server_domain),
                    ipvs,
                    kc.KUBEADM_JOIN.format(config=config_path, vlog=self.config.vlog),
                    kc.REMOTE_STATIC_POD_MKDIR,
                    kc.write_file(lvscare, kc.LVSCARE_STATIC_POD_PATH),
                )
                logger.info("Succeeded in joining %s as worker", host)

            await self._fan_out(ips, _join_node, "join node")

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    async def delete_nodes(self, ips: Sequence[str]) -> None:
        if not ips:
            return
        with self._operation(RuntimeState.DELETING):
            names = await self._node_names()

            async def _delete_node(host: str) -> None:
                logger.info("Start to delete worker %s", host)
                await self._clean_host(host)
                await self._delete_vip_route(host)
                logger.info("Succeeded in deleting worker %s", host)

            try:
                await self._fan_out(ips, _delete_node, "delete node")
            except FanOutError as exc:
                if not self.config.force_delete:
                    raise
                logger.warning(
                    "Cleanup failed on %s; deregistering anyway (force delete)",
                    ", ".join(exc.failures),
                )
            await self._deregister(ips, names)

    async def delete_masters(self, ips: Sequence[str]) -> None:
        if not ips:
            return
        if self.master0 in ips:
            raise ProtectedMasterRemoval(self.master0)
        with self._operation(RuntimeState.DELETING):
            names = await self._node_names()

            async def _delete_master(host: str) -> None:
                logger.info("Start to delete master %s", host)
                try:
                    await self._clean_host(host)
                except Exception as exc:
                    if not self.config.force_delete:
                        raise
                    logger.warning("Cleanup of master %s failed: %s", host, exc)
                await self._deregister([host], names)
                logger.info("Succeeded in deleting master %s", host)

            await run_sequential(ips, _delete_master, label="delete master")
            await self._refresh_lvscare(self.cluster.node_ips())

    # ------------------------------------------------------------------
    # reset / upgrade
    # ------------------------------------------------------------------

    async def reset(self) -> None:
        with self._operation(RuntimeState.RESETTING, done=RuntimeState.RESET):
            nodes = self.cluster.node_ips()
            masters = self.cluster.master_ips()
            try:
                await self._fan_out(nodes, self._clean_host, "reset node")
            except FanOutError as exc:
                logger.error("Reset of %d node(s) failed: %s", len(exc.failures), exc)
            try:
                await run_sequential(
                    masters, self._clean_host, label="reset master", stop_on_error=False
                )
            except FanOutError as exc:
                logger.error("Reset of %d master(s) failed: %s", len(exc.failures), exc)

            await self._fan_out(nodes, self._delete_vip_route, "delete vip route")
            await self.executor.run(self.master0, kc.DELETE_REGISTRY)

    async def upgrade(self) -> None:
        if self.state is not RuntimeState.BOOTSTRAPPED:
            raise ConfigurationError(
                f"cannot upgrade a cluster in state {self.state.value}"
            )
        metadata = await self.get_cluster_metadata()
        version = metadata.kubernetes_version()
        vlog = self.config.vlog
        logger.info("Upgrading cluster %s to %s", self.cluster.name, version)

        async def _upgrade_node(host: str) -> None:
            await self.executor.run_many(host, kc.KUBEADM_UPGRADE_NODE.format(vlog=vlog))

        await self.executor.run_many(
            self.master0,
            kc.KUBEADM_UPGRADE_APPLY.format(version=version, vlog=vlog),
        )
        others: List[str] = [m for m in self.cluster.master_ips() if m != self.master0]
        await run_sequential(others, _upgrade_node, label="upgrade master")
        await self._fan_out(self.cluster.node_ips(), _upgrade_node, "upgrade node")

    async def get_cluster_metadata(self) -> ClusterImageMetadata:
        """
        Raises:
            ConfigurationError: if the mounted image has no Metadata file.
        """
        path = os.path.join(self.store.rootfs_dir(self.cluster.name), METADATA_FILE)
        if not await aiofiles.os.path.exists(path):
            raise ConfigurationError(f"cluster image metadata not found at {path}")
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            data = json.loads(await f.read())
        return ClusterImageMetadata.model_validate(data)
