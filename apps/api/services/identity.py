"""Caller identity helpers for anonymous visitors."""

from __future__ import annotations

import hashlib
import secrets
from typing import Any


ANON_ID_NAMESPACE = "ria-hunter-anon"


def generate_stable_anon_id(identifier: Any) -> str:
    """Derive the ledger user id for an anonymous cookie value."""
    token = str(identifier or "").strip()
    if not token:
        raise ValueError("Anonymous identifier is required")
    return hashlib.sha256(f"{ANON_ID_NAMESPACE}-{token}".encode("utf-8")).hexdigest()


def new_anon_cookie_value() -> str:
    return f"anon-{secrets.token_urlsafe(18)}"
