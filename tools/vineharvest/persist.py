"""Idempotent persistence of harvested entities.

Layout under the output root::

    profiles/<userId>.json
    posts/<userId>/<postId>.json
    media/<url path>

A file at its final key is the only completion marker.  Writers check
:meth:`JsonPersister.exists` first and skip work that is already done.
"""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlsplit

from .errors import StorageError
from .storage import Storage


def profile_key(user_id: str) -> str:
    return f"profiles/{user_id}.json"


def post_key(user_id: str, post_id: str) -> str:
    return f"posts/{user_id}/{post_id}.json"


def media_key(url: str) -> str:
    path = urlsplit(url).path.lstrip("/")
    if not path:
        raise StorageError(f"media URL has no path: {url}")
    if ".." in path.split("/"):
        raise StorageError(f"media URL path leaves media/: {url}")
    return f"media/{path}"


def encode_json(value: Any) -> bytes:
    return (json.dumps(value, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


class JsonPersister:
    """Write-once JSON and media documents on top of a storage backend."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def exists(self, key: str) -> bool:
        return self.storage.exists(key)

    def save_json(self, key: str, value: Any) -> None:
        self.storage.write(key, encode_json(value))

    def save_bytes(self, key: str, data: bytes) -> None:
        self.storage.write(key, data)

    def load_json(self, key: str) -> Any:
        raw = self.storage.read(key)
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise StorageError(f"corrupt JSON at {key}: {exc}") from exc
