"""Configuration and environment settings for the harvester."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

LEGACY_HOSTS: tuple[str, ...] = (
    "http://v.cdn.vine.co",
    "https://v.cdn.vine.co",
    "http://mtc.cdn.vine.co",
    "https://mtc.cdn.vine.co",
)
MIRROR_HOST = "https://vines.s3.amazonaws.com"


@dataclass(frozen=True)
class S3Config:
    """S3-compatible endpoint.  Region may be a placeholder (e.g. R2 uses "auto")."""
    endpoint: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    region: str = "auto"

    @classmethod
    def from_env(cls) -> S3Config:
        return cls(
            endpoint=os.getenv("S3_ENDPOINT") or None,
            access_key=os.getenv("AWS_ACCESS_KEY_ID") or None,
            secret_key=os.getenv("AWS_SECRET_ACCESS_KEY") or None,
            region=os.getenv("AWS_REGION", "auto"),
        )


@dataclass(frozen=True)
class ArchiveConfig:
    """archive.vine.co endpoints.  rate_limit is a global ceiling in requests/second."""
    profile_base: str = "https://archive.vine.co/profiles"
    post_base: str = "https://archive.vine.co/posts"
    rate_limit: float = 10.0
    timeout: float = 15.0
    user_agent: str = "vine-harvester/1.0"
    referer: str = "https://archive.vine.co/"


@dataclass(frozen=True)
class RewriteConfig:
    legacy_hosts: tuple[str, ...] = LEGACY_HOSTS
    mirror_host: str = MIRROR_HOST


@dataclass
class HarvesterConfig:
    input: str = "vine_tweets"
    output: str = "vine_archive_harvest"
    s3: S3Config = field(default_factory=S3Config.from_env)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    rewrite: RewriteConfig = field(default_factory=RewriteConfig)
    workers: int = 32
    download_media: bool = False
    poll_interval: float = 0.0  # seconds; 0 = single run
    limit: int = 0  # max slugs / users per run, 0 = all
    input_suffix: str = ".txt"
    show_progress: bool = False
