"""
kubeherd/errors.py

Error taxonomy shared by the reconciler, the runtime and the applier.
Remote failures live next to the executor (kubeherd.utils.ssh) because they
extend the command runner's CommandError.
"""

from __future__ import annotations

from typing import Optional


class KubeherdError(Exception):
    """Base class for orchestrator errors that are not command failures."""


class ConfigurationError(KubeherdError):
    """Missing cluster name, empty join target, illegal state transition..."""


class InvalidAddressFormat(KubeherdError):
    """Target text is neither a comma-separated IP list nor a single IP range."""

    def __init__(self, text: str, reason: Optional[str] = None) -> None:
        msg = f"invalid address format: {text!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)
        self.text = text


class DuplicateIPConflict(KubeherdError):
    """A join target is already present in the requested role."""

    def __init__(self, ip: str, role: str) -> None:
        super().__init__(f"failed to scale {role} for duplicated ip: {ip}")
        self.ip = ip
        self.role = role


class ProtectedMasterRemoval(KubeherdError):
    """master-0 anchors the cluster and cannot be deleted."""

    def __init__(self, ip: str) -> None:
        super().__init__(f"master0 machine({ip}) cannot be deleted")
        self.ip = ip
