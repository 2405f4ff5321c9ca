"""Binary object storage on the local filesystem.

Objects are addressed by slash separated keys and exposed through the
``/media`` route. A key is written once; callers mint unique keys with
:func:`mint_key` so repeated uploads never overwrite each other.
"""
from __future__ import annotations

import time
from pathlib import Path, PurePosixPath
from typing import Optional


class ObjectStoreError(RuntimeError):
    """Raised when an object cannot be stored."""


def mint_key(prefix: str, name: str, extension: str = "png") -> str:
    """Return ``<prefix>/<name>-<millis>.<extension>``."""

    stamp = int(time.time() * 1000)
    clean_prefix = prefix.strip("/")
    return f"{clean_prefix}/{name}-{stamp}.{extension.lstrip('.')}"


class LocalObjectStore:
    def __init__(self, root: str | Path, url_prefix: str = "/media") -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def path_for(self, key: str) -> Path:
        parts = PurePosixPath(key.strip("/")).parts
        if not parts or any(part in ("..", ".") for part in parts):
            raise ObjectStoreError(f"Invalid object key: {key!r}")
        return self.root.joinpath(*parts)

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix}/{key.strip('/')}"

    def put(self, key: str, data: bytes, *, content_type: Optional[str] = None) -> str:
        """Store ``data`` under ``key`` and return its public URL."""

        if not isinstance(data, (bytes, bytearray)):
            raise ObjectStoreError("Object payload must be bytes.")
        path = self.path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(bytes(data))
        except OSError as exc:  # pragma: no cover - IO failure
            raise ObjectStoreError(f"Unable to store object '{key}': {exc}") from exc
        return self.url_for(key)


__all__ = ["LocalObjectStore", "ObjectStoreError", "mint_key"]
