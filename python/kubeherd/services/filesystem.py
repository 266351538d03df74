"""
kubeherd/services/filesystem.py

OverlayFilesystem: the ClusterImageMounter used by the applier.

Locally the cluster image directory is overlay-mounted as
`<home>/<cluster>/rootfs`; that rootfs is then copied to every host under
`<remote_rootfs_base>/<cluster>/rootfs`, where `scripts/init.sh` prepares the
container runtime. Hosts may differ in architecture: each host is asked for `uname -m` and
receives the rootfs mounted for its own platform. The registry host
additionally receives the `registry` directory of every mounted source.
"""

from __future__ import annotations

import logging
import os
import shutil
from typing import Dict, Optional, Sequence, Tuple

import aiofiles.os

from kubeherd.deployment.kubernetes import load_registry_config
from kubeherd.errors import ConfigurationError
from kubeherd.models.cluster import Cluster
from kubeherd.models.runtime import RuntimeConfig
from kubeherd.services.image import LocalImageService
from kubeherd.services.interfaces import ClusterImageMounter, Platform
from kubeherd.utils.async_command_runner import run_command
from kubeherd.utils.clusterfile import ClusterFileStore
from kubeherd.utils.fanout import SyncMap, fan_out
from kubeherd.utils.ssh import RemoteExecutor

logger = logging.getLogger(__name__)

REMOTE_INIT = "cd {rootfs} && chmod +x scripts/* && cd scripts && bash init.sh /var/lib/docker {domain} {port}"
REMOTE_CLEAN = (
    'if [ -f "{clean}" ]; then chmod +x {clean} && /bin/bash -c {clean}; fi && '
    "(! mountpoint -q {rootfs} || umount -lf {rootfs}) && rm -rf {rootfs}"
)


REMOTE_ARCH = "uname -m"
ARCHITECTURES: Dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def platform_tag(platform: Platform) -> str:
    return str(platform).replace("/", "_")


class OverlayFilesystem(ClusterImageMounter):
    def __init__(
        self,
        executor: RemoteExecutor,
        store: ClusterFileStore,
        config: RuntimeConfig,
        image_service: LocalImageService,
        platform: Optional[Platform] = None,
    ) -> None:
        self.executor = executor
        self.store = store
        self.config = config
        self.image_service = image_service
        self.platform = platform or Platform()

    def rootfs_for(self, cluster: Cluster, platform: Platform) -> str:
        """The local mount point of `cluster`'s image for `platform`."""
        rootfs = self.store.rootfs_dir(cluster.name)
        if str(platform) == str(self.platform):
            return rootfs
        return f"{rootfs}-{platform_tag(platform)}"

    def _overlay_base(self, cluster: Cluster) -> str:
        return os.path.join(self.store.cluster_dir(cluster.name), "overlay")

    def _overlay_dirs(self, cluster: Cluster, platform: Platform) -> Tuple[str, str]:
        base = os.path.join(self._overlay_base(cluster), platform_tag(platform))
        return os.path.join(base, "upper"), os.path.join(base, "work")

    async def _mount_platform(self, cluster: Cluster, platform: Platform) -> str:
        rootfs = self.rootfs_for(cluster, platform)
        if os.path.ismount(rootfs):
            logger.debug("%s already mounted", rootfs)
            return rootfs
        lower = self.image_service.path_for(cluster.spec.image, platform)
        upper, work = self._overlay_dirs(cluster, platform)
        for d in (rootfs, upper, work):
            await aiofiles.os.makedirs(d, exist_ok=True)
        await run_command(
            [
                "mount",
                "-t",
                "overlay",
                "overlay",
                "-o",
                f"lowerdir={lower},upperdir={upper},workdir={work}",
                rootfs,
            ]
        )
        logger.info("Mounted image %s (%s) at %s", cluster.spec.image, platform, rootfs)
        return rootfs

    async def mount_image(self, cluster: Cluster) -> None:
        await self._mount_platform(cluster, self.platform)

    async def unmount_image(self, cluster: Cluster) -> None:
        rootfs = self.store.rootfs_dir(cluster.name)
        parent = os.path.dirname(rootfs)
        mounts = [rootfs]
        if os.path.isdir(parent):
            prefix = os.path.basename(rootfs) + "-"
            mounts += [
                os.path.join(parent, entry)
                for entry in sorted(os.listdir(parent))
                if entry.startswith(prefix)
            ]
        for mount in mounts:
            if os.path.ismount(mount):
                await run_command(["umount", "-lf", mount])
            if mount != rootfs:
                shutil.rmtree(mount, ignore_errors=True)
        shutil.rmtree(self._overlay_base(cluster), ignore_errors=True)

    async def host_platforms(self, hosts: Sequence[str]) -> Dict[str, Platform]:
        """Ask every host for its machine architecture."""
        found: SyncMap[str, str] = SyncMap()

        async def _arch(host: str) -> None:
            machine = (await self.executor.run(host, REMOTE_ARCH)).strip()
            arch = ARCHITECTURES.get(machine)
            if arch is None:
                raise ConfigurationError(
                    f"host {host} reports unsupported architecture {machine!r}"
                )
            await found.set(host, arch)

        await fan_out(
            hosts,
            _arch,
            max_concurrency=self.config.max_concurrency,
            label="detect platform",
        )
        arches = await found.snapshot()
        return {
            host: Platform(os=self.platform.os, architecture=arches[host])
            for host in hosts
        }

    async def mount_rootfs(
        self, cluster: Cluster, hosts: Sequence[str], init_flag: bool
    ) -> None:
        if not hosts:
            return
        target = self.config.remote_rootfs(cluster.name)
        registry = await load_registry_config(
            self.store.rootfs_dir(cluster.name), cluster.master0_ip()
        )
        init_cmd = cluster.wrap_shell(
            REMOTE_INIT.format(rootfs=target, domain=registry.domain, port=registry.port)
        )

        platforms = await self.host_platforms(hosts)
        sources: Dict[str, str] = {}
        for platform in platforms.values():
            key = str(platform)
            if key in sources:
                continue
            if key == str(self.platform):
                sources[key] = self.rootfs_for(cluster, platform)
                continue
            await self.image_service.pull_if_not_exist(cluster.spec.image, [platform])
            sources[key] = await self._mount_platform(cluster, platform)

        async def _mount(host: str) -> None:
            await self.executor.copy(host, sources[str(platforms[host])], target)
            if init_flag:
                await self.executor.run_many(host, init_cmd)

        await fan_out(
            hosts,
            _mount,
            max_concurrency=self.config.max_concurrency,
            label="mount rootfs",
        )

        # scaling up nodes only does not touch the registry host
        if registry.ip not in hosts:
            return
        for source in sources.values():
            await self.executor.copy(
                registry.ip, os.path.join(source, "registry"), f"{target}/registry"
            )

    async def unmount_rootfs(self, cluster: Cluster, hosts: Sequence[str]) -> None:
        target = self.config.remote_rootfs(cluster.name)
        cmd = cluster.wrap_shell(
            REMOTE_CLEAN.format(clean=f"{target}/scripts/clean.sh", rootfs=target)
        )

        async def _unmount(host: str) -> None:
            await self.executor.run_many(host, cmd)

        await fan_out(
            hosts,
            _unmount,
            max_concurrency=self.config.max_concurrency,
            label="unmount rootfs",
        )
