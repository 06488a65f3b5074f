"""
Small shared utilities.
"""
from __future__ import annotations

import hashlib


def sha256_hex(text: str) -> str:
    """Upper-case hex SHA-256 of *text* (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest().upper()
