"""Corpus scanning – pull vine.co/v/<slug> references out of text sources."""

from __future__ import annotations

import logging
import re
import threading
from typing import BinaryIO, Iterator

from botocore.exceptions import BotoCoreError

from .errors import StorageError
from .pool import WorkerPool
from .state import DedupSet
from .storage import Storage

logger = logging.getLogger("vineharvest.scanner")

VINE_SLUG_RE = re.compile(r"vine\.co/v/([A-Za-z0-9]+)")

CHUNK_SIZE = 64 * 1024
MAX_LINE = 1024 * 1024


def extract_slugs(text: str) -> list[str]:
    return VINE_SLUG_RE.findall(text)


def iter_lines(
    stream: BinaryIO,
    *,
    max_line: int = MAX_LINE,
    chunk_size: int = CHUNK_SIZE,
    name: str = "<stream>",
) -> Iterator[str]:
    """Yield decoded lines from a binary stream.

    The line buffer grows with the line but never past *max_line* bytes.
    Anything beyond that, up to the next newline, is dropped and the kept
    prefix is still yielded.
    """
    buf = bytearray()
    overflow = False
    lineno = 1

    def take(piece: bytes) -> None:
        nonlocal overflow
        if overflow:
            return
        room = max_line - len(buf)
        if len(piece) > room:
            buf.extend(piece[:room])
            overflow = True
        else:
            buf.extend(piece)

    def emit() -> str:
        nonlocal overflow
        if overflow:
            logger.warning("%s: line %d longer than %d bytes, truncated", name, lineno, max_line)
        line = buf.decode("utf-8", errors="replace").rstrip("\r")
        buf.clear()
        overflow = False
        return line

    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        start = 0
        while True:
            nl = chunk.find(b"\n", start)
            if nl == -1:
                take(chunk[start:])
                break
            take(chunk[start:nl])
            yield emit()
            lineno += 1
            start = nl + 1
    if buf or overflow:
        yield emit()


class SlugScanner:
    """Collect the unique slugs referenced anywhere in a corpus."""

    def __init__(
        self,
        storage: Storage,
        *,
        suffix: str = ".txt",
        workers: int = 1,
        max_line: int = MAX_LINE,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.storage = storage
        self.suffix = suffix
        self.workers = workers
        self.max_line = max_line
        self.stop_event = stop_event

    def scan_source(self, key: str, slugs: DedupSet) -> int:
        """Scan one source into *slugs*; returns the number of matches seen."""
        found = 0
        stream = self.storage.open(key)
        try:
            for line in iter_lines(stream, max_line=self.max_line, name=key):
                for slug in extract_slugs(line):
                    slugs.add(slug)
                    found += 1
        finally:
            stream.close()
        return found

    def _scan_job(self, key: str, slugs: DedupSet) -> None:
        try:
            found = self.scan_source(key, slugs)
        except (StorageError, OSError, BotoCoreError) as exc:
            logger.warning("Skipping %s: %s", key, exc)
            return
        logger.debug("%s: %d slug references", key, found)

    def scan(self, prefix: str = "", slugs: DedupSet | None = None) -> set[str]:
        """Scan every matching source.  Listing failures propagate; per-source ones do not."""
        slugs = slugs if slugs is not None else DedupSet()
        keys = self.storage.list(prefix, self.suffix)
        logger.info("Scanning %d sources in %s", len(keys), self.storage)
        pool: WorkerPool[str] = WorkerPool(
            "scan",
            lambda key: self._scan_job(key, slugs),
            self.workers,
            stop_event=self.stop_event,
        )
        with pool:
            for key in keys:
                if not pool.submit(key):
                    break
        logger.info("Collected %d unique Vine slugs", len(slugs))
        return slugs.snapshot()
