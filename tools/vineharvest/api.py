"""Vine archive client – rate-limited, single-shot HTTP fetcher."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from .config import ArchiveConfig
from .errors import DecodeFailure, Forbidden, HTTPFailure, NotFound, TransportFailure
from .ratelimit import RateGate

logger = logging.getLogger("vineharvest.api")


class ArchiveAPI:
    """Thin wrapper around the archive.vine.co static JSON endpoints.

    Every request first waits on the shared :class:`RateGate`.  There are
    no retries here; failures are raised as :class:`~.errors.FetchError`
    subclasses and the caller decides what to do with the job.
    """

    def __init__(
        self,
        cfg: ArchiveConfig | None = None,
        *,
        gate: RateGate | None = None,
        max_connections: int = 100,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.cfg = cfg or ArchiveConfig()
        self.gate = gate or RateGate(self.cfg.rate_limit)
        self._client = httpx.Client(
            timeout=self.cfg.timeout,
            headers={
                "User-Agent": self.cfg.user_agent,
                "Accept": "application/json",
                "Referer": self.cfg.referer,
            },
            follow_redirects=True,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
            ),
            transport=transport,
        )

    @staticmethod
    def entity_url(base: str, ident: str) -> str:
        return f"{base.rstrip('/')}/{quote(ident, safe='')}.json"

    # ── request core ─────────────────────────────────────────────
    def _get(self, url: str, accept: str | None = None) -> httpx.Response:
        self.gate.wait()
        headers = {"Accept": accept} if accept else None
        try:
            # non-streaming: the body is read in full before returning,
            # so the connection goes back to the pool even on error status
            resp = self._client.get(url, headers=headers)
        except httpx.TransportError as exc:
            raise TransportFailure(url, f"{type(exc).__name__} for {url}: {exc}") from exc
        if resp.status_code == 200:
            return resp
        if resp.status_code == 404:
            raise NotFound(url)
        if resp.status_code == 403:
            raise Forbidden(url, f"HTTP 403 Forbidden for {url}")
        raise HTTPFailure(url, resp.status_code)

    def get_json(self, base: str, ident: str) -> Any:
        """Fetch and decode ``{base}/{ident}.json``."""
        url = self.entity_url(base, ident)
        resp = self._get(url)
        try:
            return resp.json()
        except ValueError as exc:
            raise DecodeFailure(url, f"invalid JSON from {url}: {exc}") from exc

    # ── public API ───────────────────────────────────────────────

    def get_post(self, ident: str) -> Any:
        """Fetch a post by numeric id or video slug."""
        return self.get_json(self.cfg.post_base, ident)

    def get_profile(self, user_id: str) -> Any:
        """Fetch a user profile."""
        return self.get_json(self.cfg.profile_base, user_id)

    def download(self, url: str) -> bytes:
        """Download a media file from the mirror host."""
        return self._get(url, accept="*/*").content

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ArchiveAPI:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
