"""Storage layer – uniform list/read/write over local disk or S3/R2."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, BinaryIO, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import S3Config
from .errors import StorageError

logger = logging.getLogger("vineharvest.storage")

S3_SCHEME = "s3://"
TMP_SUFFIX = ".tmp"


@dataclass(frozen=True)
class Location:
    """A parsed input/output location: ``s3://bucket/prefix`` or a local path."""
    path: str = ""
    bucket: str = ""
    prefix: str = ""

    @property
    def is_s3(self) -> bool:
        return bool(self.bucket)

    def __str__(self) -> str:
        return f"{S3_SCHEME}{self.bucket}/{self.prefix}" if self.is_s3 else self.path


def parse_location(uri: str) -> Location:
    if not uri.startswith(S3_SCHEME):
        return Location(path=uri)
    bucket, _, prefix = uri[len(S3_SCHEME):].partition("/")
    if not bucket:
        raise StorageError(f"missing bucket in {uri!r}")
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    return Location(bucket=bucket, prefix=prefix)


def _matches(key: str, suffix: str) -> bool:
    return not suffix or key.lower().endswith(suffix.lower())


class DiskStorage:
    """Keys are ``/``-separated paths relative to a root directory."""

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def __str__(self) -> str:
        return self.root

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, *key.split("/")))
        if path != self.root and not path.startswith(self.root + os.sep):
            raise StorageError(f"key {key!r} escapes storage root {self.root}")
        return path

    def ensure_root(self) -> None:
        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create {self.root}: {exc}") from exc

    def list(self, prefix: str = "", suffix: str = "") -> list[str]:
        base = self._path(prefix) if prefix else self.root
        if not os.path.isdir(base):
            raise StorageError(f"{base} is not a directory")
        keys: list[str] = []

        def _onerror(exc: OSError) -> None:
            logger.warning("Skipping unreadable directory %s: %s", exc.filename, exc)

        for dirpath, _dirs, files in os.walk(base, onerror=_onerror):
            for name in files:
                if name.endswith(TMP_SUFFIX):
                    continue  # in-flight write
                rel = os.path.relpath(os.path.join(dirpath, name), self.root)
                key = rel.replace(os.sep, "/")
                if _matches(key, suffix):
                    keys.append(key)
        return sorted(keys)

    def open(self, key: str) -> BinaryIO:
        try:
            return open(self._path(key), "rb")
        except OSError as exc:
            raise StorageError(f"cannot open {key}: {exc}") from exc

    def read(self, key: str) -> bytes:
        with self.open(key) as fh:
            return fh.read()

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def write(self, key: str, data: bytes) -> None:
        """Write atomically: ``<dest>.tmp`` beside the destination, then rename."""
        path = self._path(key)
        tmp = path + TMP_SUFFIX
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(tmp, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)
        except OSError as exc:
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise StorageError(f"cannot write {key}: {exc}") from exc


class S3Storage:
    """Keys are relative to ``bucket/prefix`` on an S3-compatible store."""

    def __init__(self, bucket: str, prefix: str = "", cfg: S3Config | None = None, *, client: Any = None) -> None:
        self.cfg = cfg or S3Config.from_env()
        self.bucket = bucket
        self.prefix = prefix
        self._s3 = client or self._make_client(self.cfg)

    @staticmethod
    def _make_client(cfg: S3Config) -> Any:
        if not (cfg.endpoint and cfg.access_key and cfg.secret_key):
            raise StorageError(
                "AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY and S3_ENDPOINT must be set for S3 access"
            )
        try:
            return boto3.client(
                "s3",
                endpoint_url=cfg.endpoint,
                aws_access_key_id=cfg.access_key,
                aws_secret_access_key=cfg.secret_key,
                region_name=cfg.region,
                config=BotoConfig(s3={"addressing_style": "path"}),
            )
        except (BotoCoreError, ValueError) as exc:
            raise StorageError(f"cannot create S3 client: {exc}") from exc

    def __str__(self) -> str:
        return f"{S3_SCHEME}{self.bucket}/{self.prefix}"

    def _key(self, key: str) -> str:
        return self.prefix + key

    def ensure_root(self) -> None:
        try:
            self._s3.head_bucket(Bucket=self.bucket)
            return
        except ClientError:
            pass
        except BotoCoreError as exc:
            raise StorageError(f"bucket {self.bucket} unreachable: {exc}") from exc
        try:
            self._s3.create_bucket(Bucket=self.bucket)
            logger.info("Created bucket: %s", self.bucket)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"bucket {self.bucket} unavailable: {exc}") from exc

    def list(self, prefix: str = "", suffix: str = "") -> list[str]:
        full_prefix = self._key(prefix)
        logger.info("Listing objects in bucket=%s prefix=%s", self.bucket, full_prefix)
        keys: list[str] = []
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"Bucket": self.bucket, "Prefix": full_prefix}
            if token:
                kwargs["ContinuationToken"] = token
            try:
                resp = self._s3.list_objects_v2(**kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise StorageError(f"listing {self}: {exc}") from exc
            for obj in resp.get("Contents", []):
                key = obj["Key"][len(self.prefix):]
                if key and _matches(key, suffix):
                    keys.append(key)
            token = resp.get("NextContinuationToken")
            if not resp.get("IsTruncated") or not token:
                break
        return sorted(keys)

    def open(self, key: str) -> BinaryIO:
        try:
            resp = self._s3.get_object(Bucket=self.bucket, Key=self._key(key))
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"GetObject {key}: {exc}") from exc
        return resp["Body"]

    def read(self, key: str) -> bytes:
        body = self.open(key)
        try:
            return body.read()
        finally:
            body.close()

    def exists(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"HeadObject {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"HeadObject {key}: {exc}") from exc
        return True

    def write(self, key: str, data: bytes) -> None:
        """One PUT; object stores never expose a partially written object."""
        try:
            self._s3.put_object(Bucket=self.bucket, Key=self._key(key), Body=data)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"PutObject {key}: {exc}") from exc


Storage = Union[DiskStorage, S3Storage]


def open_storage(uri: str, s3_cfg: S3Config | None = None) -> Storage:
    """Pick a backend by scheme.  The S3 client is only built for ``s3://`` locations."""
    loc = parse_location(uri)
    if loc.is_s3:
        return S3Storage(loc.bucket, loc.prefix, s3_cfg)
    return DiskStorage(loc.path)
