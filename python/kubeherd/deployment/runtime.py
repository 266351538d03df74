"""
kubeherd/deployment/runtime.py

The capability interface every cluster runtime implements, plus the
lifecycle state machine they share:

    Uninitialized -> Bootstrapped -> {Joining, Deleting, Resetting} -> Bootstrapped
                                                          Resetting -> Reset (terminal)

A failed operation drops back to Bootstrapped so it can be retried; nothing
is rolled back on the hosts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, FrozenSet, Iterator, Sequence

from kubeherd.errors import ConfigurationError
from kubeherd.models.runtime import ClusterImageMetadata, RuntimeState

_TRANSITIONS: Dict[RuntimeState, FrozenSet[RuntimeState]] = {
    RuntimeState.UNINITIALIZED: frozenset({RuntimeState.BOOTSTRAPPED}),
    RuntimeState.BOOTSTRAPPED: frozenset(
        {RuntimeState.JOINING, RuntimeState.DELETING, RuntimeState.RESETTING}
    ),
    RuntimeState.JOINING: frozenset({RuntimeState.BOOTSTRAPPED}),
    RuntimeState.DELETING: frozenset({RuntimeState.BOOTSTRAPPED}),
    RuntimeState.RESETTING: frozenset({RuntimeState.BOOTSTRAPPED, RuntimeState.RESET}),
    RuntimeState.RESET: frozenset(),
}


class Runtime(ABC):
    """
    Bootstraps, scales and tears down one cluster.

    Operations touching several masters run one master at a time; operations
    touching only workers fan out across them.
    """

    def __init__(self, state: RuntimeState = RuntimeState.UNINITIALIZED) -> None:
        self._state = state

    @property
    def state(self) -> RuntimeState:
        return self._state

    def _check(self, target: RuntimeState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise ConfigurationError(
                f"illegal runtime transition {self._state.value} -> {target.value}"
            )

    def _move(self, target: RuntimeState) -> None:
        self._check(target)
        self._state = target

    @contextmanager
    def _operation(
        self, during: RuntimeState, done: RuntimeState = RuntimeState.BOOTSTRAPPED
    ) -> Iterator[None]:
        self._move(during)
        try:
            yield
        except BaseException:
            self._state = RuntimeState.BOOTSTRAPPED
            raise
        self._move(done)

    @abstractmethod
    async def init(self) -> None:
        """Bootstrap master-0, then join the other masters and every node."""

    @abstractmethod
    async def upgrade(self) -> None:
        """Upgrade the control plane and the nodes to the image's version."""

    @abstractmethod
    async def reset(self) -> None:
        """Tear the whole cluster down. Terminal."""

    @abstractmethod
    async def join_masters(
        self, ips: Sequence[str], refresh_nodes: Sequence[str] = ()
    ) -> None:
        """
        Join `ips` as control-plane members, one at a time. `refresh_nodes`
        are already joined workers whose API server load balancer must learn
        the new master list.
        """

    @abstractmethod
    async def join_nodes(self, ips: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def delete_masters(self, ips: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def delete_nodes(self, ips: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def get_cluster_metadata(self) -> ClusterImageMetadata:
        """Read the install info shipped in the mounted image."""
