"""Core harvesting logic – orchestrates Scan → Resolve → Harvest."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterable

from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from .api import ArchiveAPI
from .config import HarvesterConfig
from .errors import FetchError, Forbidden, HarvestAbort, NotFound, StorageError
from .ids import post_id, post_ids_from_profile, user_id
from .persist import JsonPersister, media_key, post_key, profile_key
from .pool import WorkerPool
from .rewrite import URLRewriter
from .scanner import SlugScanner
from .state import HarvestState
from .storage import Storage, open_storage

logger = logging.getLogger("vineharvest.core")

USER_LIST_KEY = "profiles.json"
SLUG_LIST_KEY = "vine_slugs.txt"


class Harvester:
    """Orchestrates the full corpus → archive → storage pipeline.

    Dedup sets live on :attr:`state`, which is replaced at the start of
    every run; workers only ever see the state of the run they belong to.
    """

    def __init__(
        self,
        cfg: HarvesterConfig | None = None,
        *,
        api: ArchiveAPI | None = None,
        source: Storage | None = None,
        sink: Storage | None = None,
    ) -> None:
        self.cfg = cfg or HarvesterConfig()
        self.stop_event = threading.Event()
        self._source = source
        self.sink = sink or open_storage(self.cfg.output, self.cfg.s3)
        self.sink.ensure_root()
        self.persister = JsonPersister(self.sink)
        self.rewriter = URLRewriter(self.cfg.rewrite)
        self.api = api or ArchiveAPI(self.cfg.archive, max_connections=max(self.cfg.workers, 1))
        self.state = HarvestState()

    @property
    def source(self) -> Storage:
        if self._source is None:
            self._source = open_storage(self.cfg.input, self.cfg.s3)
        return self._source

    # ── fan-out ──────────────────────────────────────────────────

    def _fan_out(self, name: str, handler: Callable[[str], None], items: Iterable[str]) -> None:
        items = list(items)
        if not self.cfg.show_progress:
            self._drain(name, handler, items)
            return
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
        ) as progress:
            task = progress.add_task(name, total=len(items))

            def tracked(item: str) -> None:
                try:
                    handler(item)
                finally:
                    progress.advance(task)

            self._drain(name, tracked, items)

    def _drain(self, name: str, handler: Callable[[str], None], items: list[str]) -> None:
        pool: WorkerPool[str] = WorkerPool(name, handler, self.cfg.workers, stop_event=self.stop_event)
        with pool:
            for item in items:
                if not pool.submit(item):
                    break
        if pool.failed:
            logger.error("%s: %d jobs failed unexpectedly", name, pool.failed)
            self.state.stats.incr("errors", pool.failed)

    def _limited(self, items: list[str]) -> list[str]:
        if self.cfg.limit > 0 and len(items) > self.cfg.limit:
            logger.info("Limiting to first %d of %d", self.cfg.limit, len(items))
            return items[: self.cfg.limit]
        return items

    # ── error accounting ─────────────────────────────────────────

    def _fetch_failed(self, stage: str, ident: str, exc: FetchError) -> None:
        stats = self.state.stats
        if isinstance(exc, NotFound):
            logger.debug("[%s] %s: not found", stage, ident)
            stats.incr("not_found")
        elif isinstance(exc, Forbidden):
            logger.warning("[%s] %s: 403 Forbidden (possible upstream block): %s", stage, ident, exc.url)
            stats.incr("forbidden")
        else:
            logger.warning("[%s] %s: %s", stage, ident, exc)
            stats.incr("errors")

    def _store_failed(self, stage: str, key: str, exc: StorageError) -> None:
        logger.error("[%s] %s: %s", stage, key, exc)
        self.state.stats.incr("errors")

    # ── persistence ──────────────────────────────────────────────

    def _store_post(self, stage: str, uid: str, pid: str, record: Any) -> None:
        key = post_key(uid, pid)
        try:
            if self.persister.exists(key):
                self.state.stats.incr("skipped")
                return
            post = self.rewriter.rewrite(record)
            self.persister.save_json(key, post)
        except StorageError as exc:
            self._store_failed(stage, key, exc)
            return
        self.state.stats.incr("posts")
        if self.cfg.download_media:
            for url in self.rewriter.media_urls(post):
                self.fetch_media(url)

    def fetch_media(self, url: str) -> None:
        """Download one media file, at most once per run."""
        if not self.state.media.add(url):
            return
        try:
            key = media_key(url)
            if self.persister.exists(key):
                self.state.stats.incr("skipped")
                return
        except StorageError as exc:
            self._store_failed("media", url, exc)
            return
        try:
            data = self.api.download(url)
        except FetchError as exc:
            self._fetch_failed("media", url, exc)
            return
        try:
            self.persister.save_bytes(key, data)
        except StorageError as exc:
            self._store_failed("media", key, exc)
            return
        self.state.stats.incr("media")

    # ── stage 1: scan ────────────────────────────────────────────

    def scan(self) -> list[str]:
        """Collect slugs from the input corpus.  No slugs aborts the run."""
        logger.info("=== Scanning %s for Vine video URLs ===", self.cfg.input)
        scanner = SlugScanner(
            self.source,
            suffix=self.cfg.input_suffix,
            workers=self.cfg.workers,
            stop_event=self.stop_event,
        )
        try:
            slugs = sorted(scanner.scan())
        except StorageError as exc:
            raise HarvestAbort(f"cannot scan {self.cfg.input}: {exc}") from exc
        if not slugs:
            raise HarvestAbort(f"No Vine video URLs found in {self.cfg.input}")
        self.state.stats.incr("slugs", len(slugs))
        return self._limited(slugs)

    def write_slugs(self, slugs: Iterable[str]) -> None:
        data = "".join(f"{s}\n" for s in sorted(slugs)).encode("utf-8")
        self.persister.save_bytes(SLUG_LIST_KEY, data)
        logger.info("Wrote slugs to %s/%s", self.sink, SLUG_LIST_KEY)

    # ── stage 2: resolve ─────────────────────────────────────────

    def resolve_slug(self, slug: str) -> None:
        """Fetch the post behind *slug*, record its author and cache the post."""
        if not self.state.slugs.add(slug):
            return
        try:
            record = self.api.get_post(slug)
        except FetchError as exc:
            self._fetch_failed("resolve", slug, exc)
            return
        uid = user_id(record)
        if not uid:
            logger.debug("[resolve] %s: no user id in post", slug)
            self.state.stats.incr("skipped")
            return
        if self.state.users.add(uid):
            self.state.stats.incr("users")
        self._store_post("resolve", uid, post_id(record, slug), record)

    def resolve(self, slugs: Iterable[str]) -> list[str]:
        """Discover users from slugs.  No users aborts the run."""
        logger.info("=== Seeding posts and discovering users from slugs ===")
        self._fan_out("resolve", self.resolve_slug, slugs)
        user_ids = self.state.users.sorted()
        if not user_ids:
            raise HarvestAbort("No user IDs discovered from slugs")
        logger.info("Discovered %d unique user IDs", len(user_ids))
        try:
            self.persister.save_json(USER_LIST_KEY, user_ids)
        except StorageError as exc:
            logger.warning("Failed to write %s: %s", USER_LIST_KEY, exc)
        return user_ids

    # ── stage 3: harvest ─────────────────────────────────────────

    def _load_profile(self, uid: str) -> Any | None:
        key = profile_key(uid)
        try:
            if self.persister.exists(key):
                return self.persister.load_json(key)
        except StorageError as exc:
            self._store_failed("harvest", key, exc)
            return None
        try:
            profile = self.rewriter.rewrite(self.api.get_profile(uid))
        except FetchError as exc:
            self._fetch_failed("profile", uid, exc)
            return None
        try:
            self.persister.save_json(key, profile)
            self.state.stats.incr("profiles")
        except StorageError as exc:
            # posts can still be harvested from the in-memory copy
            self._store_failed("profile", key, exc)
        return profile

    def harvest_post(self, uid: str, pid: str) -> None:
        if self.persister.exists(post_key(uid, pid)):
            self.state.stats.incr("skipped")
            return
        try:
            record = self.api.get_post(pid)
        except FetchError as exc:
            self._fetch_failed("post", f"{uid}/{pid}", exc)
            return
        self._store_post("harvest", uid, post_id(record, pid), record)

    def harvest_user(self, uid: str) -> None:
        """Profile plus every post it lists, skipping whatever is already stored."""
        profile = self._load_profile(uid)
        if profile is None:
            return
        post_ids = post_ids_from_profile(profile)
        if not post_ids:
            logger.info("[harvest] user %s: no post IDs in profile", uid)
            return
        for pid in post_ids:
            if self.stop_event.is_set():
                return
            try:
                self.harvest_post(uid, pid)
            except StorageError as exc:
                self._store_failed("post", post_key(uid, pid), exc)

    def harvest_users(self, user_ids: Iterable[str]) -> None:
        logger.info("=== Harvesting profiles + posts per user ===")
        unique = sorted(set(user_ids))
        for uid in unique:
            if self.state.users.add(uid):
                self.state.stats.incr("users")
        self._fan_out("harvest", self.harvest_user, self._limited(unique))

    # ── runs ─────────────────────────────────────────────────────

    def run_once(self) -> HarvestState:
        """One full Scan → Resolve → Harvest pass with fresh dedup state."""
        self.state = HarvestState()
        start = time.monotonic()
        slugs = self.scan()
        user_ids = self.resolve(slugs)
        self.harvest_users(user_ids)
        logger.info("Run finished in %.1fs: %s", time.monotonic() - start, self.state.stats.as_dict())
        return self.state

    def run_forever(self, interval: float) -> None:
        """Repeat :meth:`run_once` every *interval* seconds until :meth:`stop`."""
        while not self.stop_event.is_set():
            try:
                self.run_once()
            except (HarvestAbort, StorageError) as exc:
                logger.error("Run failed: %s", exc)
            if self.stop_event.is_set():
                break
            logger.info("Sleeping for %ss before next run...", interval)
            if self.stop_event.wait(interval):
                break

    def run(self) -> HarvestState:
        if self.cfg.poll_interval > 0:
            self.run_forever(self.cfg.poll_interval)
        else:
            self.run_once()
        return self.state

    def stop(self) -> None:
        """Abort the current run: queued jobs are skipped and loops exit."""
        self.stop_event.set()

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self.api.close()

    def __enter__(self) -> Harvester:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
