"""Hub identity generator.

Short, URL-safe identifiers drawn from the OS CSPRNG. Ten characters over a
62-symbol alphabet give ~59 bits of entropy; uniqueness is still verified by
the metadata store's set-if-not-exists on creation.
"""
from __future__ import annotations

import secrets
import string

ALPHABET = string.ascii_letters + string.digits
DEFAULT_ID_LENGTH = 10


def new_id(length: int = DEFAULT_ID_LENGTH) -> str:
    if length < 1:
        raise ValueError("id length must be positive")
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def is_valid_id(value: str, length: int | None = None) -> bool:
    """Cheap shape check so malformed IDs never reach the store."""
    if not value or (length is not None and len(value) != length):
        return False
    return all(ch in ALPHABET for ch in value)
