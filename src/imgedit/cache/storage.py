"""Local-disk artifact store.

Keys are slash-delimited paths relative to ``base_dir``; the same key appended
to ``base_url`` is where the HTTP surface serves the object. Writes are
last-writer-wins with no locking: every writer of a given key computes the same
logical artifact.
"""
from __future__ import annotations

import logging
from pathlib import Path

from ..tools.errors import StorageError, ValidationError

log = logging.getLogger("imgedit.cache.storage")

_MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "image/svg+xml": "svg",
    "image/avif": "avif",
}

_DOUBLED_SCHEMES = (
    ("http://http://", "http://"),
    ("https://https://", "https://"),
    ("http://https://", "https://"),
    ("https://http://", "http://"),
)


def extension_for_mime(mime_type: str) -> str:
    return _MIME_EXTENSIONS.get(mime_type.strip().lower(), "bin")


def collapse_scheme(url: str) -> str:
    """Collapse doubled scheme prefixes until none remain. Idempotent."""
    changed = True
    while changed:
        changed = False
        for doubled, single in _DOUBLED_SCHEMES:
            if url.startswith(doubled):
                url = single + url[len(doubled):]
                changed = True
    return url


class LocalFileStorage:
    def __init__(self, base_dir: str | Path, base_url: str) -> None:
        self.base_dir = Path(base_dir)
        self.base_url = base_url

    # ------------------------------------------------------------------
    # Key layout
    # ------------------------------------------------------------------

    @staticmethod
    def image_prefix(hash_hex: str) -> str:
        return f"images/{hash_hex}"

    @staticmethod
    def meta_key(prefix: str) -> str:
        return f"{prefix}/meta.json"

    @staticmethod
    def original_key(prefix: str, ext: str) -> str:
        return f"{prefix}/original.{ext}"

    @staticmethod
    def result_key(prefix: str, ext: str) -> str:
        return f"{prefix}/result.{ext}"

    # ------------------------------------------------------------------
    # Byte access
    # ------------------------------------------------------------------

    def resolve_path(self, key: str) -> Path:
        normalized = key.lstrip("/")
        if any(part == ".." for part in normalized.split("/")):
            raise ValidationError(f"invalid storage key: {key!r}")
        return self.base_dir / normalized

    def get(self, key: str) -> bytes | None:
        """Return the bytes at *key*, or ``None`` on a cache miss."""
        path = self.resolve_path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"read {key} failed: {exc}") from exc

    def put(self, key: str, data: bytes) -> None:
        path = self.resolve_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"write {key} failed: {exc}") from exc
        log.debug("stored %s (%d bytes)", key, len(data))

    def exists(self, key: str) -> bool:
        return self.resolve_path(key).exists()

    def public_url(self, key: str) -> str:
        base = self.base_url.rstrip("/")
        return collapse_scheme(f"{base}/{key.lstrip('/')}")
