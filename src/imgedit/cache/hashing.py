from __future__ import annotations

import hashlib


def compute_key(canonical: str) -> str:
    """SHA-256 hex digest of *canonical*.

    No normalization happens here: ``"crop:u:50"`` and ``"crop:u:50.0"`` are
    different keys. Callers build the canonical string.
    """
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
