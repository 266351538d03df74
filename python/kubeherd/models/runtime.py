"""
kubeherd/models/runtime.py

Defines Pydantic models used by the runtime state machine:
 - RuntimeConfig: explicit knobs handed to the runtime constructor
 - RegistryConfig: where the in-cluster image registry lives
 - JoinToken: credential material fetched from master-0
 - ClusterImageMetadata: contents of the rootfs Metadata file
 - RuntimeState: lifecycle states
"""

from __future__ import annotations

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from kubeherd.models.settings import KubeherdSettings

DEFAULT_VIP = "10.103.97.2"
DEFAULT_API_SERVER_DOMAIN = "apiserver.cluster.local"
DEFAULT_REGISTRY_DOMAIN = "registry.cluster.local"
DEFAULT_REGISTRY_PORT = 5000


class RuntimeState(str, Enum):
    UNINITIALIZED = "Uninitialized"
    BOOTSTRAPPED = "Bootstrapped"
    JOINING = "Joining"
    DELETING = "Deleting"
    RESETTING = "Resetting"
    RESET = "Reset"


class RuntimeConfig(BaseModel):
    """
    Everything the runtime needs to know that is not in the Clusterfile.

    Attributes:
        force_delete: Deregister nodes even when their cleanup failed, and
            allow a full reset.
        vlog: kubeadm verbosity (-v).
        vip: Virtual IP fronting the API servers on worker nodes.
        api_server_domain: Name the API server certificate is issued for.
        ssh_ready_retries: Attempts of the SSH readiness check.
        ssh_ready_delay: Seconds between readiness attempts.
        max_concurrency: Optional cap on tasks per fan-out (None = uncapped).
        remote_rootfs_base: Parent dir of the per-cluster rootfs on hosts.
    """

    force_delete: bool = False
    vlog: int = Field(default=0, ge=0)
    vip: str = DEFAULT_VIP
    api_server_domain: str = DEFAULT_API_SERVER_DOMAIN
    ssh_ready_retries: int = Field(default=6, ge=1)
    ssh_ready_delay: float = Field(default=5.0, ge=0.0)
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    remote_rootfs_base: str = "/var/lib/kubeherd/data"

    @classmethod
    def from_settings(
        cls, settings: KubeherdSettings, *, force_delete: bool = False
    ) -> RuntimeConfig:
        return cls(
            force_delete=force_delete,
            vlog=settings.vlog,
            ssh_ready_retries=settings.ssh_ready_retries,
            ssh_ready_delay=settings.ssh_ready_delay,
            max_concurrency=settings.max_concurrency,
            remote_rootfs_base=settings.remote_rootfs_base,
        )

    def remote_rootfs(self, cluster_name: str) -> str:
        return f"{self.remote_rootfs_base}/{cluster_name}/rootfs"


class RegistryConfig(BaseModel):
    domain: str = DEFAULT_REGISTRY_DOMAIN
    ip: str
    port: int = DEFAULT_REGISTRY_PORT
    username: Optional[str] = None
    password: Optional[str] = None

    def endpoint(self) -> str:
        return f"{self.domain}:{self.port}"

    def repo(self) -> str:
        return self.endpoint()


class JoinToken(BaseModel):
    token: str
    ca_cert_hash: str
    certificate_key: Optional[str] = None


class ClusterImageMetadata(BaseModel):
    """Install info shipped in the cluster image rootfs (JSON `Metadata`)."""

    model_config = ConfigDict(populate_by_name=True)

    version: str
    arch: str = "amd64"
    variant: str = ""
    kube_version: Optional[str] = Field(default=None, alias="kubeVersion")

    def kubernetes_version(self) -> str:
        return self.kube_version or self.version
