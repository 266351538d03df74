"""
kubeherd/utils/fanout.py

The concurrency primitive shared by every multi-host operation:
  - fan_out: run a per-host coroutine concurrently across hosts
  - run_sequential: the same contract, one host at a time (masters)
  - FanOutError: first failure (completion order) plus every failure seen
  - SyncMap: lock + dict owned by a single operation

Semantics of fan_out:
  * one task per host, every host attempted exactly once;
  * a failing host never cancels its siblings;
  * all tasks are awaited before returning;
  * the error raised names the first host to *complete* with a failure,
    which is not necessarily the first host in the list;
  * no timeout: a hung host keeps the whole call waiting.
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

HostOperation = Callable[[str], Awaitable[Any]]


class FanOutError(Exception):
    """
    Raised by fan_out / run_sequential when at least one host failed.

    Attributes:
        host: Host whose failure was observed first.
        cause: That host's exception (also chained as __cause__).
        failures: Every failed host mapped to its exception, in the order
            failures were observed.
    """

    def __init__(
        self, label: str, host: str, cause: BaseException, failures: Dict[str, BaseException]
    ) -> None:
        others = len(failures) - 1
        suffix = f" ({others} other host(s) also failed)" if others > 0 else ""
        super().__init__(f"{label} failed on {host}: {cause}{suffix}")
        self.host = host
        self.cause = cause
        self.failures = failures


async def fan_out(
    hosts: Sequence[str],
    operation: HostOperation,
    *,
    max_concurrency: Optional[int] = None,
    label: str = "operation",
) -> None:
    """
    Run `operation(host)` for every host concurrently and wait for all.

    Args:
        hosts: Target hosts; an empty list is a no-op.
        operation: Coroutine function taking the host.
        max_concurrency: Optional cap on simultaneously running tasks.
            None (the default) starts every task at once.
        label: Used in log lines and in the raised error.

    Raises:
        FanOutError: if any task failed, naming the first failure observed.
    """
    if not hosts:
        return

    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def _guarded(host: str) -> Tuple[str, Optional[Exception]]:
        try:
            if semaphore is None:
                await operation(host)
            else:
                async with semaphore:
                    await operation(host)
        except Exception as exc:
            return host, exc
        return host, None

    failures: Dict[str, BaseException] = {}
    tasks = [asyncio.ensure_future(_guarded(host)) for host in hosts]
    for finished in asyncio.as_completed(tasks):
        host, exc = await finished
        if exc is not None:
            logger.error("%s failed on %s: %s", label, host, exc)
            failures[host] = exc

    _raise_first(label, failures)


async def run_sequential(
    hosts: Sequence[str],
    operation: HostOperation,
    *,
    label: str = "operation",
    stop_on_error: bool = True,
) -> None:
    """
    Run `operation(host)` one host after another, in list order.

    With stop_on_error=False every host is attempted and the first failure is
    raised at the end, mirroring fan_out.
    """
    failures: Dict[str, BaseException] = {}
    for host in hosts:
        try:
            await operation(host)
        except Exception as exc:
            logger.error("%s failed on %s: %s", label, host, exc)
            failures[host] = exc
            if stop_on_error:
                break

    _raise_first(label, failures)


def _raise_first(label: str, failures: Dict[str, BaseException]) -> None:
    if not failures:
        return
    host, cause = next(iter(failures.items()))
    raise FanOutError(label, host, cause, failures) from cause


class SyncMap(Generic[K, V]):
    """
    A dict guarded by an asyncio.Lock, created by one operation for its own
    per-host bookkeeping and dropped when that operation returns.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._data: Dict[K, V] = {}

    async def set(self, key: K, value: V) -> None:
        async with self._lock:
            self._data[key] = value

    async def set_if_absent(self, key: K, value: V) -> bool:
        """Store `value` unless `key` is present. Returns True if stored."""
        async with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    async def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        async with self._lock:
            return self._data.get(key, default)

    async def snapshot(self) -> Dict[K, V]:
        async with self._lock:
            return dict(self._data)

    async def keys(self) -> List[K]:
        async with self._lock:
            return list(self._data)
