"""
kubeherd/utils/async_command_runner.py

Runs a local command (usually `ssh`, `scp` or `sshpass`) in a subprocess and
returns its stdout. Every remote operation in kubeherd bottoms out here.

Unlike a general purpose runner, the default is a single attempt: remote
steps are not idempotent in general (`kubeadm join`, appending to
/etc/hosts), so callers that really want to poll use
`kubeherd.utils.async_retry` around a readiness check instead.

Usage example:
    from kubeherd.utils.async_command_runner import run_command, CommandError

    try:
        out = await run_command(["ssh", "root@10.0.0.2", "hostname"])
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import asyncio
import os
from typing import Dict, List, Optional

from kubeherd.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        stderr (str): Captured standard error, empty when unknown.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, stderr: str = ""
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.stderr = stderr


async def run_command(
    command: List[str],
    *,
    sensitive: bool = False,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 1,
    retry_delay: float = 1.0,
    timeout: Optional[float] = None,
) -> str:
    """
    Execute a command asynchronously and return its stripped stdout.

    Args:
        command: The command and arguments to execute.
        sensitive: If True, the command line and its output are left out of
            the raised error (passwords travel through env, but a remote
            command may still embed registry credentials).
        env: Extra environment variables layered over os.environ.
        cwd: Working directory for the command.
        input_data: If provided, written to stdin.
        successful_return_codes: Return codes treated as success. Defaults to [0].
        retries: Total attempts. Defaults to 1 (no retry).
        retry_delay: Seconds between attempts.
        timeout: Seconds to wait for the process. None waits forever.

    Returns:
        str: The captured stdout.

    Raises:
        CommandError: If the return code is not accepted, the binary is
            missing, or the timeout expires.
    """
    ok_codes = successful_return_codes or [0]

    @async_retry(retries=retries, delay=retry_delay, retry_on=(CommandError,))
    async def _inner_run_command() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"Executable not found: {command[0]}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(input=input_data.encode() if input_data else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CommandError(f"Command timed out after {timeout}s") from exc

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in ok_codes:
            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )
            raise CommandError(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
                stderr_str,
            )

        return stdout_str

    return await _inner_run_command()
