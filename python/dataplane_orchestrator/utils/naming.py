"""
dataplane_orchestrator/utils/naming.py

Name helpers shared by the controllers: RFC 1123 checks, host name splitting,
bounded record names and per-service condition types.
"""

from __future__ import annotations

import hashlib
import re
from typing import List

DNS1123_LABEL_MAX_LENGTH = 63
DNS1123_SUBDOMAIN_MAX_LENGTH = 253

_DNS1123_LABEL = r"[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS1123_SUBDOMAIN_RE = re.compile(rf"^{_DNS1123_LABEL}(\.{_DNS1123_LABEL})*$")
_CAMEL_SPLIT_RE = re.compile(r"[^A-Za-z0-9]+")


def is_dns1123_subdomain(value: str) -> bool:
    """Return True if `value` is a valid lowercase RFC 1123 subdomain."""
    return (
        0 < len(value) <= DNS1123_SUBDOMAIN_MAX_LENGTH
        and _DNS1123_SUBDOMAIN_RE.match(value) is not None
    )


def dns1123_errors(value: str) -> List[str]:
    """
    Describe why `value` is not an RFC 1123 subdomain.

    Args:
        value (str): Candidate record name.

    Returns:
        List[str]: Human readable problems, empty if the name is valid.
    """
    problems: List[str] = []
    if len(value) > DNS1123_SUBDOMAIN_MAX_LENGTH:
        problems.append(
            f"must be no more than {DNS1123_SUBDOMAIN_MAX_LENGTH} characters"
        )
    if not _DNS1123_SUBDOMAIN_RE.match(value):
        problems.append(
            "a lowercase RFC 1123 subdomain must consist of lower case alphanumeric "
            "characters, '-' or '.', and must start and end with an alphanumeric character"
        )
    return problems


def short_hostname(host_name: str) -> str:
    """Return the first DNS label of a host name."""
    return host_name.split(".")[0]


def is_fqdn(host_name: str) -> bool:
    """Return True if the host name carries a domain part."""
    return len(host_name.split(".")) > 1


def truncate_label(value: str) -> str:
    """Clamp a name to one DNS label, dropping any trailing '-' or '.'."""
    if len(value) > DNS1123_LABEL_MAX_LENGTH:
        return value[:DNS1123_LABEL_MAX_LENGTH].rstrip("-.")
    return value


def hashed_volume_name(name: str, prefix: str) -> str:
    """
    Keep a volume name within one DNS label.

    Names that already fit are returned unchanged; longer ones are replaced by
    `<prefix>-<sha224 hex>` which is 61 characters for the short prefixes used here.

    Args:
        name (str): Preferred volume name.
        prefix (str): Short kind marker such as "cm", "sec", "cert" or "cacert".

    Returns:
        str: A name no longer than 63 characters.
    """
    if len(name) <= DNS1123_LABEL_MAX_LENGTH:
        return name
    digest = hashlib.sha224(name.encode("utf-8")).hexdigest()
    return truncate_label(f"{prefix}-{digest}")


def to_camel(value: str) -> str:
    """Convert 'configure-network' style names to 'ConfigureNetwork'."""
    parts = [p for p in _CAMEL_SPLIT_RE.split(value) if p]
    return "".join(p[0].upper() + p[1:] for p in parts)


def service_condition_type(service_name: str) -> str:
    """Condition type tracking one service's run within a NodeSet."""
    return f"Service{to_camel(service_name)}DeploymentReady"
