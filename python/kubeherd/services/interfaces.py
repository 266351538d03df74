"""
kubeherd/services/interfaces.py

Contracts of the collaborators the orchestrator drives but does not own:
 - ImageService: make a cluster image available locally
 - ClusterImageMounter: mount/unmount the image and the per-host rootfs
 - CertService: generate certificate material and ship it to hosts
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence, Tuple

from pydantic import BaseModel, Field

from kubeherd.models.cluster import Cluster


class Platform(BaseModel):
    os: str = "linux"
    architecture: str = "amd64"
    variant: str = ""

    def __str__(self) -> str:
        base = f"{self.os}/{self.architecture}"
        return f"{base}/{self.variant}" if self.variant else base


class CertificateDescriptor(BaseModel):
    common_name: str
    dns_names: List[str] = Field(default_factory=list)
    ip_addresses: List[str] = Field(default_factory=list)
    organization: List[str] = Field(default_factory=list)
    years: int = Field(default=100, ge=1)


class ImageService(ABC):
    @abstractmethod
    async def pull_if_not_exist(self, image: str, platforms: Sequence[Platform]) -> None:
        """Ensure `image` is present locally for every platform."""


class ClusterImageMounter(ABC):
    @abstractmethod
    async def mount_image(self, cluster: Cluster) -> None:
        """Expose the cluster image as the local rootfs directory."""

    @abstractmethod
    async def unmount_image(self, cluster: Cluster) -> None:
        """Undo mount_image."""

    @abstractmethod
    async def mount_rootfs(
        self, cluster: Cluster, hosts: Sequence[str], init_flag: bool
    ) -> None:
        """Copy the rootfs to `hosts`, running init.sh when `init_flag` is set."""

    @abstractmethod
    async def unmount_rootfs(self, cluster: Cluster, hosts: Sequence[str]) -> None:
        """Run clean.sh and remove the rootfs on `hosts`."""


class CertService(ABC):
    @abstractmethod
    async def generate(self, descriptor: CertificateDescriptor) -> Tuple[bytes, bytes]:
        """Return (certificate PEM, private key PEM)."""

    @abstractmethod
    async def send(self, hosts: Sequence[str]) -> None:
        """Install the generated certificate on `hosts`."""
