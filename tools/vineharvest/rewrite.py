"""Rewrite dead Vine CDN links to the mirror host."""

from __future__ import annotations

from typing import Iterable

from .config import RewriteConfig
from .errors import ConfigError
from .jsonvalue import JSONScalar, JSONValue, iter_strings, transform

MEDIA_EXTENSIONS: tuple[str, ...] = (".mp4", ".jpg", ".jpeg", ".png", ".gif")


class URLRewriter:
    """Replace legacy host substrings inside any JSON-shaped value."""

    def __init__(self, cfg: RewriteConfig | None = None) -> None:
        self.cfg = cfg or RewriteConfig()
        self.mirror_host = self.cfg.mirror_host.rstrip("/")
        self.legacy_hosts = tuple(h for h in self.cfg.legacy_hosts if h)
        for host in self.legacy_hosts:
            # a mirror containing a legacy host would be rewritten again on every pass
            if host in self.mirror_host:
                raise ConfigError(f"mirror host {self.mirror_host!r} contains legacy host {host!r}")

    def rewrite_string(self, s: str) -> str:
        for host in self.legacy_hosts:
            if host in s:
                s = s.replace(host, self.mirror_host)
        return s

    def _leaf(self, value: JSONScalar) -> JSONScalar:
        if isinstance(value, str):
            return self.rewrite_string(value)
        return value

    def rewrite(self, value: JSONValue) -> JSONValue:
        """Return a rewritten copy of *value*; structure and key order are kept."""
        return transform(value, self._leaf)

    def media_urls(self, value: JSONValue, extensions: Iterable[str] = MEDIA_EXTENSIONS) -> list[str]:
        """Mirror-hosted media URLs referenced anywhere in *value* (first seen, unique)."""
        exts = tuple(extensions)
        seen: set[str] = set()
        out: list[str] = []
        for s in iter_strings(value):
            if self.mirror_host not in s or s in seen:
                continue
            if any(ext in s for ext in exts):
                seen.add(s)
                out.append(s)
        return out
