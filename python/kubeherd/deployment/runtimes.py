"""
kubeherd/deployment/runtimes.py

The closed set of runtime variants, selected by name.
"""

from __future__ import annotations

from typing import Dict, Optional, Type

from kubeherd.deployment.kubernetes import KubernetesRuntime
from kubeherd.deployment.runtime import Runtime
from kubeherd.errors import ConfigurationError
from kubeherd.models.cluster import Cluster
from kubeherd.models.runtime import RegistryConfig, RuntimeConfig, RuntimeState
from kubeherd.services.interfaces import CertService
from kubeherd.utils.clusterfile import ClusterFileStore
from kubeherd.utils.ssh import RemoteExecutor

DEFAULT_RUNTIME = "kubernetes"

RUNTIMES: Dict[str, Type[KubernetesRuntime]] = {
    "kubernetes": KubernetesRuntime,
}


def new_runtime(
    kind: str,
    cluster: Cluster,
    config: RuntimeConfig,
    executor: RemoteExecutor,
    cert_service: CertService,
    store: ClusterFileStore,
    *,
    registry: Optional[RegistryConfig] = None,
    state: RuntimeState = RuntimeState.UNINITIALIZED,
) -> Runtime:
    """
    Build the runtime registered under `kind`.

    Raises:
        ConfigurationError: for an unknown runtime kind.
    """
    try:
        runtime_cls = RUNTIMES[kind]
    except KeyError:
        raise ConfigurationError(
            f"unknown runtime {kind!r}, expected one of {sorted(RUNTIMES)}"
        ) from None
    return runtime_cls(
        cluster, config, executor, cert_service, store, registry=registry, state=state
    )
