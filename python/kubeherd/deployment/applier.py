"""
kubeherd/deployment/applier.py

Top-level `apply` / `delete` of a Clusterfile, and the generation pipeline.

Apply flow:
  1) Load the last applied Clusterfile from the ClusterFileStore
  2) None => first-time creation: plugins(PreInit) => pull + mount image =>
     mount rootfs (init.sh) => registry => runtime.init => plugins(PostInstall)
  3) Otherwise => diff the host sets => mount rootfs on new hosts =>
     join masters => join nodes => delete nodes => delete masters =>
     unmount rootfs on removed hosts
  4) Persist the desired cluster so the next apply diffs against it

Nothing is rolled back when a step fails; the persisted Clusterfile is only
replaced after a successful apply.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from kubeherd.deployment import kube_commands as kc
from kubeherd.deployment.kubernetes import load_registry_config
from kubeherd.deployment.runtime import Runtime
from kubeherd.deployment.runtimes import DEFAULT_RUNTIME, new_runtime
from kubeherd.errors import ConfigurationError, ProtectedMasterRemoval
from kubeherd.models.cluster import CLUSTERFILE_ANNOTATION, Cluster
from kubeherd.models.plugin import Phase, Plugin
from kubeherd.models.runtime import RegistryConfig, RuntimeConfig, RuntimeState
from kubeherd.models.settings import KubeherdSettings
from kubeherd.services.certs import RegistryCertService
from kubeherd.services.filesystem import OverlayFilesystem
from kubeherd.services.image import LocalImageService
from kubeherd.services.interfaces import ClusterImageMounter, ImageService, Platform
from kubeherd.services.plugin import ShellPluginRunner
from kubeherd.utils.clusterfile import ClusterFileStore, load_clusterfile
from kubeherd.utils.ssh import RemoteExecutor, SSHExecutor

logger = logging.getLogger(__name__)

Stage = Callable[[Cluster], Awaitable[None]]


class HostDiff:
    """Host-set difference between the applied and the desired cluster."""

    def __init__(self, previous: Cluster, desired: Cluster) -> None:
        prev_masters, prev_nodes = previous.master_ips(), previous.node_ips()
        masters, nodes = desired.master_ips(), desired.node_ips()
        self.join_masters = [ip for ip in masters if ip not in prev_masters]
        self.join_nodes = [ip for ip in nodes if ip not in prev_nodes]
        self.delete_masters = [ip for ip in prev_masters if ip not in masters]
        self.delete_nodes = [ip for ip in prev_nodes if ip not in nodes]
        desired_all = set(desired.all_ips())
        previous_all = set(previous.all_ips())
        self.new_hosts = [ip for ip in desired.all_ips() if ip not in previous_all]
        self.removed_hosts = [ip for ip in previous.all_ips() if ip not in desired_all]

    def empty(self) -> bool:
        return not (
            self.join_masters or self.join_nodes or self.delete_masters or self.delete_nodes
        )


async def apply_registry(
    cluster: Cluster,
    executor: RemoteExecutor,
    cert_service: RegistryCertService,
    config: RuntimeConfig,
) -> None:
    """Generate the registry cert, ship it everywhere, start the registry on master-0."""
    registry = cert_service.registry
    await cert_service.ensure()
    await cert_service.send(cluster.all_ips())
    await executor.run(
        registry.ip,
        kc.APPLY_REGISTRY.format(
            rootfs=config.remote_rootfs(cluster.name),
            port=registry.port,
            domain=registry.domain,
        ),
    )


async def run_pipeline(stages: Sequence[Stage], cluster: Cluster) -> None:
    """Run `stages` in order; the first failure stops the pipeline and propagates."""
    for stage in stages:
        name = getattr(stage, "__name__", repr(stage))
        logger.info("Running stage %s for cluster %s", name, cluster.name)
        try:
            await stage(cluster)
        except Exception as exc:
            logger.error("Stage %s failed: %s", name, exc)
            raise


class Applier:
    """
    Drives one Clusterfile to convergence.

    Collaborators default to the SSH / overlay / local-image implementations
    and may be injected (tests use fakes).
    """

    def __init__(
        self,
        cluster: Cluster,
        plugins: Sequence[Plugin] = (),
        *,
        settings: Optional[KubeherdSettings] = None,
        force_delete: bool = False,
        store: Optional[ClusterFileStore] = None,
        executor: Optional[RemoteExecutor] = None,
        image_service: Optional[ImageService] = None,
        mounter: Optional[ClusterImageMounter] = None,
        cert_service: Optional[RegistryCertService] = None,
        runtime_kind: str = DEFAULT_RUNTIME,
        platform: Optional[Platform] = None,
    ) -> None:
        cluster.ensure_named()
        self.cluster = cluster
        self.plugins = list(plugins)
        self.settings = settings or KubeherdSettings()
        self.config = RuntimeConfig.from_settings(self.settings, force_delete=force_delete)
        self.store = store or ClusterFileStore(self.settings.home_dir)
        self.platform = platform or Platform()
        self.runtime_kind = runtime_kind
        self._executor = executor
        self._image_service = image_service
        self._mounter = mounter
        self._cert_service = cert_service

    @classmethod
    async def from_file(cls, path: str, **kwargs: Any) -> Applier:
        """Load a Clusterfile and remember where it came from."""
        path = os.path.abspath(path)
        cluster, plugins = await load_clusterfile(path)
        cluster.ensure_named()
        if not cluster.get_annotation(CLUSTERFILE_ANNOTATION):
            cluster.set_annotation(CLUSTERFILE_ANNOTATION, path)
        return cls(cluster, plugins, **kwargs)

    # ------------------------------------------------------------------
    # collaborators
    # ------------------------------------------------------------------

    def executor_for(self, *clusters: Cluster) -> RemoteExecutor:
        if self._executor is None:
            self._executor = SSHExecutor(*clusters, settings=self.settings)
        return self._executor

    @property
    def image_service(self) -> ImageService:
        if self._image_service is None:
            self._image_service = LocalImageService(self.settings.image_dir)
        return self._image_service

    def mounter(self, executor: RemoteExecutor) -> ClusterImageMounter:
        if self._mounter is None:
            self._mounter = OverlayFilesystem(
                executor,
                self.store,
                self.config,
                LocalImageService(self.settings.image_dir),
                self.platform,
            )
        return self._mounter

    async def registry_config(self, cluster: Cluster) -> RegistryConfig:
        return await load_registry_config(
            self.store.rootfs_dir(cluster.name), cluster.master0_ip()
        )

    def cert_service(
        self, registry: RegistryConfig, executor: RemoteExecutor
    ) -> RegistryCertService:
        if self._cert_service is None:
            self._cert_service = RegistryCertService(
                registry,
                self.store.cert_dir(self.cluster.name),
                executor,
                max_concurrency=self.config.max_concurrency,
            )
        return self._cert_service

    def _runtime(
        self,
        cluster: Cluster,
        executor: RemoteExecutor,
        registry: RegistryConfig,
        state: RuntimeState,
    ) -> Runtime:
        return new_runtime(
            self.runtime_kind,
            cluster,
            self.config,
            executor,
            self.cert_service(registry, executor),
            self.store,
            registry=registry,
            state=state,
        )

    # ------------------------------------------------------------------
    # apply
    # ------------------------------------------------------------------

    async def apply(self) -> None:
        previous = await self.store.load(self.cluster.name)
        if previous is None:
            logger.info("Cluster %s not applied before, creating it", self.cluster.name)
            await self._create()
        else:
            await self._scale(previous[0])
        path = await self.store.save(self.cluster, self.plugins)
        logger.info("Saved cluster %s to %s", self.cluster.name, path)

    async def _run_plugins(
        self, executor: RemoteExecutor, phase: Phase, hosts: Sequence[str]
    ) -> None:
        await ShellPluginRunner(executor, self.config).run(
            self.cluster, self.plugins, phase, hosts
        )

    async def _create(self) -> None:
        cluster = self.cluster
        hosts = cluster.all_ips()
        executor = self.executor_for(cluster)
        mounter = self.mounter(executor)

        await self._run_plugins(executor, Phase.ORIGINALLY, hosts)
        await self._run_plugins(executor, Phase.PRE_INIT, hosts)
        await self.image_service.pull_if_not_exist(cluster.spec.image, [self.platform])
        await mounter.mount_image(cluster)
        await mounter.mount_rootfs(cluster, hosts, True)

        registry = await self.registry_config(cluster)
        await apply_registry(
            cluster, executor, self.cert_service(registry, executor), self.config
        )
        runtime = self._runtime(cluster, executor, registry, RuntimeState.UNINITIALIZED)
        await runtime.init()
        await self._run_plugins(executor, Phase.POST_INSTALL, hosts)

    async def _scale(self, previous: Cluster) -> None:
        cluster = self.cluster
        if previous.master0_ip() != cluster.master0_ip():
            raise ProtectedMasterRemoval(previous.master0_ip())

        diff = HostDiff(previous, cluster)
        if diff.empty():
            logger.info("Cluster %s has no host changes", cluster.name)
            return

        for label, ips in (
            ("join masters", diff.join_masters),
            ("join nodes", diff.join_nodes),
            ("delete nodes", diff.delete_nodes),
            ("delete masters", diff.delete_masters),
        ):
            if ips:
                logger.info("%s %s: %s", cluster.name, label, ", ".join(ips))

        executor = self.executor_for(cluster, previous)
        mounter = self.mounter(executor)
        if diff.new_hosts:
            await mounter.mount_image(cluster)
            await mounter.mount_rootfs(cluster, diff.new_hosts, True)

        registry = await self.registry_config(cluster)
        runtime = self._runtime(cluster, executor, registry, RuntimeState.BOOTSTRAPPED)
        await runtime.join_masters(
            diff.join_masters,
            refresh_nodes=[ip for ip in previous.node_ips() if ip not in diff.delete_nodes],
        )
        await runtime.join_nodes(diff.join_nodes)
        await runtime.delete_nodes(diff.delete_nodes)
        await runtime.delete_masters(diff.delete_masters)

        if diff.removed_hosts:
            await mounter.unmount_rootfs(previous, diff.removed_hosts)

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    async def delete(self) -> None:
        """
        Reset every host and forget the cluster.

        Raises:
            ConfigurationError: unless the applier was built with force_delete.
        """
        if not self.config.force_delete:
            raise ConfigurationError(
                f"deleting cluster {self.cluster.name!r} requires force delete"
            )
        previous = await self.store.load(self.cluster.name)
        cluster = previous[0] if previous else self.cluster
        hosts = cluster.all_ips()
        executor = self.executor_for(cluster)
        mounter = self.mounter(executor)

        await self._run_plugins(executor, Phase.PRE_CLEAN, hosts)
        registry = await self.registry_config(cluster)
        runtime = self._runtime(cluster, executor, registry, RuntimeState.BOOTSTRAPPED)
        await runtime.reset()
        await self._run_plugins(executor, Phase.POST_CLEAN, hosts)
        await mounter.unmount_rootfs(cluster, hosts)
        await mounter.unmount_image(cluster)
        self.store.remove(cluster.name)
        logger.info("Deleted cluster %s", cluster.name)


class GeneratePipeline:
    """
    Brings the image, rootfs and registry of an already running cluster under
    kubeherd management, without touching Kubernetes itself.
    """

    def __init__(self, applier: Applier) -> None:
        self.applier = applier
        self.executor = applier.executor_for(applier.cluster)
        self.mounter = applier.mounter(self.executor)

    def stages(self) -> List[Stage]:
        return [
            self.init,
            self.mount_image,
            self.mount_rootfs,
            self.apply_registry,
            self.unmount_image,
        ]

    async def init(self, cluster: Cluster) -> None:
        await self.applier.store.save(cluster, self.applier.plugins)

    async def mount_image(self, cluster: Cluster) -> None:
        await self.applier.image_service.pull_if_not_exist(
            cluster.spec.image, [self.applier.platform]
        )
        await self.mounter.mount_image(cluster)

    async def mount_rootfs(self, cluster: Cluster) -> None:
        hosts = cluster.all_ips()
        registry = await self.applier.registry_config(cluster)
        if registry.ip not in hosts:
            hosts.append(registry.ip)
        await self.mounter.mount_rootfs(cluster, hosts, False)

    async def apply_registry(self, cluster: Cluster) -> None:
        registry = await self.applier.registry_config(cluster)
        await apply_registry(
            cluster,
            self.executor,
            self.applier.cert_service(registry, self.executor),
            self.applier.config,
        )

    async def unmount_image(self, cluster: Cluster) -> None:
        await self.mounter.unmount_image(cluster)

    async def run(self) -> None:
        await run_pipeline(self.stages(), self.applier.cluster)
