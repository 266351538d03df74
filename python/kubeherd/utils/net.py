"""
kubeherd/utils/net.py

IP helpers for scale targets:
  - parse_targets: "ip1,ip2,ip3" or "ipA-ipB" => list of IP strings
  - remove_duplicate: order-preserving dedupe
  - filter_ips: set difference that keeps the original order

Reversed ranges ("10.0.0.5-10.0.0.1") are rejected rather than silently
flipped, so a typo never expands into an unexpected host set.
"""

from __future__ import annotations

import ipaddress
from typing import Iterable, List, Union

from kubeherd.errors import InvalidAddressFormat

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_ip(text: str) -> IPAddress:
    """Parse one address, raising InvalidAddressFormat instead of ValueError."""
    try:
        return ipaddress.ip_address(text.strip())
    except ValueError as exc:
        raise InvalidAddressFormat(text, "not an IP address") from exc


def is_ip(text: str) -> bool:
    try:
        ipaddress.ip_address(text.strip())
    except ValueError:
        return False
    return True


def ip_range(start: str, end: str) -> List[str]:
    """
    Expand an inclusive range. Both endpoints must share the IP version and
    `start` must not be greater than `end`.
    """
    first, last = parse_ip(start), parse_ip(end)
    if first.version != last.version:
        raise InvalidAddressFormat(f"{start}-{end}", "mixed IP versions")
    if int(first) > int(last):
        raise InvalidAddressFormat(f"{start}-{end}", "range start is after range end")
    return [
        str(ipaddress.ip_address(value)) for value in range(int(first), int(last) + 1)
    ]


def parse_targets(text: str) -> List[str]:
    """
    Turn scale target text into a list of IP strings.

    Accepts a comma-joined list ("10.0.0.1,10.0.0.2") or exactly one
    hyphenated range ("10.0.0.1-10.0.0.5"). Empty text yields [].

    Raises:
        InvalidAddressFormat: if the text is neither form.
    """
    stripped = text.strip()
    if not stripped:
        return []

    if "-" in stripped:
        bounds = stripped.split("-")
        if len(bounds) != 2 or "," in stripped:
            raise InvalidAddressFormat(text, "expected a single range a.b.c.d-a.b.c.e")
        return ip_range(bounds[0], bounds[1])

    items = [part.strip() for part in stripped.split(",")]
    if any(not part for part in items):
        raise InvalidAddressFormat(text, "empty element in IP list")
    return [str(parse_ip(part)) for part in items]


def remove_duplicate(ips: Iterable[str]) -> List[str]:
    """Drop repeats and empty strings, keeping the first occurrence order."""
    return list(dict.fromkeys(ip for ip in ips if ip))


def filter_ips(ips: Iterable[str], to_remove: Iterable[str]) -> List[str]:
    """Return `ips` without any member of `to_remove`, order preserved."""
    removed = set(to_remove)
    return [ip for ip in ips if ip not in removed]
