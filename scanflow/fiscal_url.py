"""Validation of decoded QR payloads against the fiscal portal allow-list.

Scanned codes are untrusted input. Only ``https`` links whose hostname is an
exact (case-insensitive) match of an allow-listed fiscal portal host are
passed on to the backend.
"""
from typing import Any, Optional
from urllib.parse import urlsplit


FISCAL_PORTAL_HOSTS = frozenset({"suf.purs.gov.rs"})


def normalize_fiscal_url(raw: Any) -> Optional[str]:
    """Return the trimmed URL if it points at the fiscal portal, else None."""
    if not isinstance(raw, str):
        return None
    candidate = raw.strip()
    if not candidate:
        return None
    try:
        parts = urlsplit(candidate)
        hostname = parts.hostname
        # Accessing .port validates it; a malformed port raises ValueError.
        parts.port
    except ValueError:
        return None
    if parts.scheme != "https" or not parts.netloc or not hostname:
        return None
    if hostname.lower() not in FISCAL_PORTAL_HOSTS:
        return None
    return candidate


def is_fiscal_url(raw: Any) -> bool:
    return normalize_fiscal_url(raw) is not None
