"""
kubeherd/utils/ssh.py

Remote execution over the OpenSSH client binaries. This includes:
  - RemoteExecutor: the capability every other component depends on
    (run, run_many, copy, fetch, ping).
  - SSHExecutor: the implementation, shelling out to `ssh`/`scp` through
    kubeherd.utils.async_command_runner, with `sshpass -e` when the host
    is configured with a password (or a passphrase-protected key).
  - RemoteExecutionFailed / SSHNotReady.

Nothing here retries. A non-zero remote exit code and a failed connection
both surface as RemoteExecutionFailed carrying the host and the command.
Hosts that are not part of one of the executor's clusters are refused before
anything is sent.
"""

from __future__ import annotations

import logging
import os
import posixpath
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import aiofiles.os

from kubeherd.errors import KubeherdError
from kubeherd.models.cluster import Cluster
from kubeherd.models.settings import KubeherdSettings
from kubeherd.models.ssh import SSHCredentials
from kubeherd.utils.async_command_runner import CommandError, run_command

logger = logging.getLogger(__name__)


class RemoteExecutionFailed(CommandError):
    """A remote command, copy or fetch failed on `host`.

    Attributes:
        host (str): Target host IP.
        command (str): The remote command (or a "scp ..." description).
    """

    def __init__(
        self,
        host: str,
        command: str,
        message: str,
        return_code: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(f"[{host}] {message}", return_code, stderr)
        self.host = host
        self.command = command


class SSHNotReady(KubeherdError):
    """The host did not answer SSH within the readiness budget."""

    def __init__(self, host: str, attempts: int) -> None:
        super().__init__(f"ssh on {host} not ready after {attempts} attempts")
        self.host = host
        self.attempts = attempts


class RemoteExecutor(ABC):
    """Run commands on, and move files to/from, one remote host at a time."""

    @abstractmethod
    async def run(self, host: str, command: str) -> str:
        """Run one shell command and return its stdout."""

    async def run_many(self, host: str, *commands: str) -> None:
        """
        Run `commands` in order on `host`, stopping at the first failure.
        Output is logged, not returned.
        """
        for command in commands:
            out = await self.run(host, command)
            if out:
                logger.debug("[%s] %s", host, out)

    @abstractmethod
    async def copy(self, host: str, local_path: str, remote_path: str) -> None:
        """Copy a local file or directory to `remote_path` on `host`."""

    @abstractmethod
    async def fetch(self, host: str, remote_path: str, local_path: str) -> None:
        """Copy `remote_path` from `host` to `local_path`."""

    async def ping(self, host: str) -> None:
        await self.run(host, "true")


class SSHExecutor(RemoteExecutor):
    """
    RemoteExecutor for the hosts of one or more clusters.

    Several clusters may be given when an apply touches both the desired
    and the previously persisted topology (deleted hosts only exist in the
    latter). Credentials come from the first cluster that lists the host.
    """

    def __init__(
        self, *clusters: Cluster, settings: Optional[KubeherdSettings] = None
    ) -> None:
        if not clusters:
            raise ValueError("SSHExecutor needs at least one cluster")
        self.clusters = clusters
        self.settings = settings or KubeherdSettings()

    def _credentials(self, host: str) -> SSHCredentials:
        for cluster in self.clusters:
            if host in cluster.all_ips():
                return cluster.ssh_for(host)
        raise RemoteExecutionFailed(
            host, "", f"host is not managed by cluster {self.clusters[0].name!r}"
        )

    def _ssh_options(self, cred: SSHCredentials) -> List[str]:
        opts = [
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=ERROR",
            "-o",
            f"ConnectTimeout={self.settings.ssh_connect_timeout}",
            # run_many reuses one multiplexed connection per host
            "-o",
            "ControlMaster=auto",
            "-o",
            "ControlPath=/tmp/kubeherd-ssh-%C",
            "-o",
            "ControlPersist=60s",
        ]
        if not cred.passwd and not cred.pk_passwd:
            opts += ["-o", "BatchMode=yes"]
        if cred.pk:
            opts += ["-i", os.path.expanduser(cred.pk)]
        return opts

    def _wrap(
        self, cred: SSHCredentials, argv: List[str]
    ) -> Tuple[List[str], Optional[Dict[str, str]]]:
        """Prefix `argv` with sshpass when a secret has to be typed in."""
        if cred.passwd:
            return ["sshpass", "-e"] + argv, {"SSHPASS": cred.passwd}
        if cred.pk_passwd:
            return ["sshpass", "-e", "-P", "passphrase"] + argv, {
                "SSHPASS": cred.pk_passwd
            }
        return argv, None

    @staticmethod
    def _target(cred: SSHCredentials, host: str) -> str:
        return f"{cred.user}@{host}"

    @staticmethod
    def _scp_target(cred: SSHCredentials, host: str, path: str) -> str:
        addr = f"[{host}]" if ":" in host else host
        return f"{cred.user}@{addr}:{path}"

    async def _exec(
        self, host: str, argv: List[str], env: Optional[Dict[str, str]], what: str
    ) -> str:
        try:
            return await run_command(
                argv,
                env=env,
                sensitive=True,
                timeout=self.settings.command_timeout,
            )
        except CommandError as exc:
            detail = f": {exc.stderr}" if exc.stderr else ""
            raise RemoteExecutionFailed(
                host, what, f"{what!r} failed ({exc}){detail}", exc.return_code, exc.stderr
            ) from exc

    async def run(self, host: str, command: str) -> str:
        cred = self._credentials(host)
        argv = [
            "ssh",
            *self._ssh_options(cred),
            "-p",
            str(cred.port),
            self._target(cred, host),
            command,
        ]
        argv, env = self._wrap(cred, argv)
        logger.debug("[%s] run: %s", host, command)
        return await self._exec(host, argv, env, command)

    async def copy(self, host: str, local_path: str, remote_path: str) -> None:
        cred = self._credentials(host)
        await self.run(host, f"mkdir -p {posixpath.dirname(remote_path) or '/'}")
        argv = [
            "scp",
            "-r",
            *self._ssh_options(cred),
            "-P",
            str(cred.port),
            local_path,
            self._scp_target(cred, host, remote_path),
        ]
        argv, env = self._wrap(cred, argv)
        await self._exec(host, argv, env, f"scp {local_path} -> {remote_path}")

    async def fetch(self, host: str, remote_path: str, local_path: str) -> None:
        cred = self._credentials(host)
        parent = os.path.dirname(os.path.abspath(local_path))
        await aiofiles.os.makedirs(parent, exist_ok=True)
        argv = [
            "scp",
            "-r",
            *self._ssh_options(cred),
            "-P",
            str(cred.port),
            self._scp_target(cred, host, remote_path),
            local_path,
        ]
        argv, env = self._wrap(cred, argv)
        await self._exec(host, argv, env, f"scp {remote_path} -> {local_path}")
