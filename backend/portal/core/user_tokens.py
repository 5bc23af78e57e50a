"""Per-user API token hashing for local auth mode."""

from __future__ import annotations

import hashlib


def hash_user_token(token: str) -> str:
    """Hash a user token for storage and lookup."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
