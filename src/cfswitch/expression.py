"""Hostname normalization and Cloudflare match-expression building.

All functions here are pure. Equivalent hostname sets must always produce a
byte-identical expression, since drift detection compares the desired
expression against the remote one by plain string equality.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

# Expression that never matches; keeps the rule valid and inert with no hosts.
MATCH_NOTHING_EXPRESSION = "false"

HOST_FIELD = "http.host"

MAX_HOSTNAME_LENGTH = 253

# Quotes, spaces and braces would break out of the quoted set literal
_VALID_HOSTNAME = re.compile(r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?$")


def parse_hostnames(value: str) -> list[str]:
    """Parse a comma-separated hostname list.

    Segments are trimmed and lowercased, empty segments are dropped and
    duplicates removed. The result is sorted ascending.

    Args:
        value: Comma-separated hostnames (e.g. "B.com, a.com,,a.com").

    Returns:
        Normalized hostnames (e.g. ["a.com", "b.com"]).
    """
    if not value:
        return []

    seen: set[str] = set()
    for segment in value.split(","):
        hostname = segment.strip().lower()
        if hostname:
            seen.add(hostname)

    return sorted(seen)


def normalize_hostnames(hostnames: Iterable[str]) -> list[str]:
    """Normalize a list of hostname entries.

    Each entry may itself hold several comma-separated hostnames.
    """
    return parse_hostnames(",".join(hostnames))


def build_expression(hostnames: Sequence[str]) -> str:
    """Build the Cloudflare rule expression matching the given hosts.

    Hostnames are quoted and emitted in the order given; ordering is the
    caller's job (see normalize_hostnames).

    Returns:
        "false" for no hosts, otherwise e.g. http.host in {"a.com" "b.com"}.
    """
    if not hostnames:
        return MATCH_NOTHING_EXPRESSION

    quoted = " ".join(f'"{hostname}"' for hostname in hostnames)
    return f"{HOST_FIELD} in {{{quoted}}}"


def invalid_hostnames(hostnames: Iterable[str]) -> list[str]:
    """Return the normalized hostnames that cannot be used in an expression."""
    return [
        hostname
        for hostname in hostnames
        if len(hostname) > MAX_HOSTNAME_LENGTH or not _VALID_HOSTNAME.match(hostname)
    ]
