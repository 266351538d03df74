"""
kubeherd/utils/clusterfile.py

Reading and writing Clusterfiles, and the per-cluster work directory:

    <home>/<cluster-name>/Clusterfile   last applied cluster (+ plugins)
    <home>/<cluster-name>/rootfs        mounted cluster image
    <home>/<cluster-name>/certs         registry certificate material
    <home>/<cluster-name>/admin.conf    kubeconfig fetched from master-0

A Clusterfile is a multi-document YAML stream: one `kind: Cluster` document
and any number of `kind: Plugin` documents. A missing Clusterfile in the work
directory means the cluster was never applied.
"""

from __future__ import annotations

import os
import shutil
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiofiles
import aiofiles.os
import yaml

from kubeherd.errors import ConfigurationError
from kubeherd.models.cluster import CLUSTER_KIND, Cluster
from kubeherd.models.plugin import PLUGIN_KIND, Plugin

CLUSTERFILE_NAME = "Clusterfile"


def parse_clusterfile(text: str) -> Tuple[Cluster, List[Plugin]]:
    """
    Split a Clusterfile stream into its cluster and plugin documents.

    Raises:
        ConfigurationError: if there is not exactly one Cluster document.
    """
    docs: List[Dict[str, Any]] = [d for d in yaml.safe_load_all(text) if d]
    clusters = [d for d in docs if d.get("kind", CLUSTER_KIND) == CLUSTER_KIND]
    if len(clusters) != 1:
        raise ConfigurationError(
            f"expected exactly one Cluster document, found {len(clusters)}"
        )
    plugins = [Plugin.model_validate(d) for d in docs if d.get("kind") == PLUGIN_KIND]
    return Cluster.model_validate(clusters[0]), plugins


def render_clusterfile(cluster: Cluster, plugins: Sequence[Plugin] = ()) -> str:
    docs = [cluster.model_dump(exclude_none=True)] + [
        p.model_dump(exclude_none=True) for p in plugins
    ]
    return yaml.safe_dump_all(docs, sort_keys=False)


async def load_clusterfile(path: str) -> Tuple[Cluster, List[Plugin]]:
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        text = await f.read()
    return parse_clusterfile(text)


class ClusterFileStore:
    """Durable state of applied clusters under a home directory."""

    def __init__(self, home_dir: str) -> None:
        self.home_dir = os.path.expanduser(home_dir)

    def cluster_dir(self, name: str) -> str:
        if not name or "/" in name or name in (".", ".."):
            raise ConfigurationError(f"invalid cluster name: {name!r}")
        return os.path.join(self.home_dir, name)

    def clusterfile_path(self, name: str) -> str:
        return os.path.join(self.cluster_dir(name), CLUSTERFILE_NAME)

    def rootfs_dir(self, name: str) -> str:
        return os.path.join(self.cluster_dir(name), "rootfs")

    def cert_dir(self, name: str) -> str:
        return os.path.join(self.cluster_dir(name), "certs")

    def kubeconfig_path(self, name: str) -> str:
        return os.path.join(self.cluster_dir(name), "admin.conf")

    async def exists(self, name: str) -> bool:
        return await aiofiles.os.path.exists(self.clusterfile_path(name))

    async def load(self, name: str) -> Optional[Tuple[Cluster, List[Plugin]]]:
        """Return the last applied cluster and plugins, or None if never applied."""
        path = self.clusterfile_path(name)
        if not await aiofiles.os.path.exists(path):
            return None
        return await load_clusterfile(path)

    async def save(self, cluster: Cluster, plugins: Sequence[Plugin] = ()) -> str:
        """Write the cluster atomically (tmp file + rename). Returns the path."""
        cluster.ensure_named()
        path = self.clusterfile_path(cluster.name)
        await aiofiles.os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = path + ".tmp"
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(render_clusterfile(cluster, plugins))
        await aiofiles.os.replace(tmp, path)
        return path

    def remove(self, name: str) -> None:
        shutil.rmtree(self.cluster_dir(name), ignore_errors=True)

    def list_clusters(self) -> List[str]:
        if not os.path.isdir(self.home_dir):
            return []
        return sorted(
            entry
            for entry in os.listdir(self.home_dir)
            if os.path.isfile(os.path.join(self.home_dir, entry, CLUSTERFILE_NAME))
        )

    def default_cluster_name(self) -> str:
        """
        The only applied cluster.

        Raises:
            ConfigurationError: if there are none, or several to choose from.
        """
        names = self.list_clusters()
        if len(names) != 1:
            raise ConfigurationError(
                f"cannot pick a default cluster among {names or 'no clusters'}; "
                "pass the cluster name explicitly"
            )
        return names[0]
