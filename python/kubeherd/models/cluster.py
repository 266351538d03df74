"""
kubeherd/models/cluster.py

Pydantic models for the declarative cluster description (the Clusterfile):
 - Host
 - ClusterMetadata
 - ClusterSpec
 - Cluster

IPs are kept as validated strings so a YAML round trip reproduces the value
exactly. master-0 is the first IP of the first master group.
"""

from __future__ import annotations

import ipaddress
import shlex
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from kubeherd.errors import ConfigurationError
from kubeherd.models.ssh import SSHCredentials

MASTER = "master"
NODE = "node"

API_VERSION = "kubeherd.io/v1"
CLUSTER_KIND = "Cluster"

# Remembers which file a cluster was loaded from.
CLUSTERFILE_ANNOTATION = "kubeherd.io/clusterfile"


class Host(BaseModel):
    """
    A group of machines sharing roles and (optionally) SSH credentials.

    Attributes:
        ips: Ordered IP list of the group.
        roles: Role labels, usually exactly one of "master" / "node".
        ssh: Credential override; None falls back to the cluster default.
    """

    ips: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    ssh: Optional[SSHCredentials] = None

    @field_validator("ips")
    @classmethod
    def validate_ips(cls, val: List[str]) -> List[str]:
        return [str(ipaddress.ip_address(ip.strip())) for ip in val]


class ClusterMetadata(BaseModel):
    name: str = ""
    annotations: Dict[str, str] = Field(default_factory=dict)


class ClusterSpec(BaseModel):
    """
    Attributes:
        image: Cluster image reference, e.g. "kubernetes:v1.22.8".
        ssh: Default SSH credentials.
        hosts: Ordered host groups.
        env: "KEY=VALUE" overrides exported before remote scripts run.
        cmd_args: Free-form arguments handed to the image entrypoint.
    """

    image: str = ""
    ssh: SSHCredentials = Field(default_factory=SSHCredentials)
    hosts: List[Host] = Field(default_factory=list)
    env: List[str] = Field(default_factory=list)
    cmd_args: List[str] = Field(default_factory=list)


class Cluster(BaseModel):
    api_version: str = API_VERSION
    kind: str = CLUSTER_KIND
    metadata: ClusterMetadata = Field(default_factory=ClusterMetadata)
    spec: ClusterSpec = Field(default_factory=ClusterSpec)

    # ------------------------------------------------------------------
    # identity
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.metadata.name

    def ensure_named(self) -> None:
        """Raise ConfigurationError unless the cluster has a non-empty name."""
        if not self.metadata.name.strip():
            raise ConfigurationError("cluster name cannot be empty")

    def get_annotation(self, key: str) -> str:
        return self.metadata.annotations.get(key, "")

    def set_annotation(self, key: str, value: str) -> None:
        self.metadata.annotations[key] = value

    # ------------------------------------------------------------------
    # topology queries
    # ------------------------------------------------------------------

    def ips_by_role(self, role: str) -> List[str]:
        """All IPs carrying `role`, in host-group order, without repeats."""
        return list(
            dict.fromkeys(
                ip for host in self.spec.hosts if role in host.roles for ip in host.ips
            )
        )

    def master_ips(self) -> List[str]:
        return self.ips_by_role(MASTER)

    def node_ips(self) -> List[str]:
        return self.ips_by_role(NODE)

    def all_ips(self) -> List[str]:
        return list(dict.fromkeys(ip for host in self.spec.hosts for ip in host.ips))

    def master0_ip(self) -> str:
        """
        First IP of the first master group.

        Raises:
            ConfigurationError: if the cluster has no master.
        """
        for host in self.spec.hosts:
            if MASTER in host.roles and host.ips:
                return host.ips[0]
        raise ConfigurationError(f"cluster {self.name!r} has no master host")

    def ssh_for(self, ip: str) -> SSHCredentials:
        """Credentials of the group holding `ip`, or the cluster default."""
        for host in self.spec.hosts:
            if ip in host.ips and host.ssh is not None:
                return host.ssh
        return self.spec.ssh

    def env_map(self) -> Dict[str, str]:
        """Later entries win over earlier ones; malformed entries are skipped."""
        return {
            key: value
            for key, sep, value in (item.partition("=") for item in self.spec.env)
            if sep and key
        }

    def wrap_shell(self, command: str) -> str:
        """Prefix `command` with exports of the cluster env list."""
        env = self.env_map()
        if not env:
            return command
        exports = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())
        return f"export {exports} && {command}"

    # ------------------------------------------------------------------
    # serialization
    # ------------------------------------------------------------------

    def to_yaml(self, *, sort_keys: bool = False) -> str:
        return yaml.safe_dump(
            self.model_dump(exclude_none=True), sort_keys=sort_keys
        )

    @classmethod
    def from_yaml(cls, yaml_str: str) -> Cluster:
        data = yaml.safe_load(yaml_str)
        return cls.model_validate(data or {})
