"""Exception hierarchy for the harvester."""

from __future__ import annotations


class HarvestError(Exception):
    """Base exception for the harvester."""


class ConfigError(HarvestError):
    """Invalid configuration."""


class StorageError(HarvestError):
    """Storage backend failure (listing, reading or writing)."""


class HarvestAbort(HarvestError):
    """A condition that makes forward progress impossible for the whole run."""


class FetchError(HarvestError):
    """A single archive request failed.  Always scoped to one entity."""

    kind = "error"

    def __init__(self, url: str, message: str = "") -> None:
        self.url = url
        super().__init__(message or f"{self.kind} for {url}")


class NotFound(FetchError):
    kind = "not found"


class Forbidden(FetchError):
    kind = "forbidden"


class HTTPFailure(FetchError):
    kind = "http error"

    def __init__(self, url: str, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(url, f"HTTP {status_code} for {url}")


class TransportFailure(FetchError):
    kind = "transport error"


class DecodeFailure(FetchError):
    kind = "invalid json"
