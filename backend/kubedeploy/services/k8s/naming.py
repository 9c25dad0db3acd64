"""
Kubernetes-safe resource names.

Kubernetes names must match ``[a-z]([-a-z0-9]*[a-z0-9])?``. Free-form
identity parts are normalised into that shape; two different inputs may
normalise to the same name and are not disambiguated.
"""

import re
from typing import Iterable, Optional

JOIN_SEPARATOR = "-"
REPLACEMENT_TOKEN = "-0-"
NAME_PREFIX = "r"
NAME_SUFFIX = "9"

_INVALID_RUN = re.compile(r"[^a-z0-9\-]+")
DNS_LABEL = re.compile(r"^[a-z](?:[-a-z0-9]*[a-z0-9])?$")
DNS_LABEL_MAX_LENGTH = 63


def derive_name(parts: Iterable[str]) -> str:
    """
    Build a Kubernetes-safe name from identity parts.

    Args:
        parts: ordered identity parts, e.g. ``["owner", "0", "repo"]``

    Returns:
        the joined, lower-cased name with invalid character runs replaced,
        prefixed with ``r`` and suffixed with ``9``
    """
    joined = JOIN_SEPARATOR.join(parts).lower()
    return NAME_PREFIX + _INVALID_RUN.sub(REPLACEMENT_TOKEN, joined) + NAME_SUFFIX


def is_dns_label(name: str) -> bool:
    return len(name) <= DNS_LABEL_MAX_LENGTH and bool(DNS_LABEL.match(name))


def resource_name(name: str) -> str:
    """Use ``name`` as-is when it is already a valid label, otherwise derive one."""
    if is_dns_label(name):
        return name
    return derive_name([name])


def namespace_for(team_id: str, environment: str) -> str:
    """Namespace holding a team's applications for one environment."""
    return derive_name([team_id, "0", environment])


def endpoint_url(host: Optional[str], path: str, protocol: str = "http") -> Optional[str]:
    """Public URL of an application routed through the ingress, None without a host."""
    if not host:
        return None
    return f"{protocol}://{host}{path.rstrip('/')}/"
