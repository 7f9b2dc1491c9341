import json
import os
import tempfile
import threading
import unittest
from unittest import mock

from vineharvest.config import HarvesterConfig, S3Config
from vineharvest.errors import HarvestAbort, StorageError
from vineharvest.harvester import Harvester
from vineharvest.storage import DiskStorage, S3Storage

from tests.fakes import FakeArchive, FakeS3Client

MIRROR = "https://vines.s3.amazonaws.com"


def snapshot(root: str) -> dict:
    """Every file under *root* mapped to its bytes."""
    files: dict = {}
    for dirpath, _dirs, names in os.walk(root):
        for name in names:
            path = os.path.join(dirpath, name)
            with open(path, "rb") as fh:
                files[os.path.relpath(path, root).replace(os.sep, "/")] = fh.read()
    return files


class HarvesterTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.corpus: str = os.path.join(self._tmp.name, "corpus")
        self.out: str = os.path.join(self._tmp.name, "out")
        os.makedirs(self.corpus)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def write_corpus(self, name: str, text: str) -> None:
        with open(os.path.join(self.corpus, name), "w", encoding="utf-8") as fh:
            fh.write(text)

    def read_json(self, key: str):
        with open(os.path.join(self.out, *key.split("/")), encoding="utf-8") as fh:
            return json.load(fh)

    def exists(self, key: str) -> bool:
        return os.path.isfile(os.path.join(self.out, *key.split("/")))

    def make(self, archive: FakeArchive, **overrides) -> Harvester:
        cfg = HarvesterConfig(input=self.corpus, output=self.out, s3=S3Config(), workers=4)
        for key, value in overrides.items():
            setattr(cfg, key, value)
        return Harvester(cfg, api=archive.api())


class TestEndToEnd(HarvesterTestCase):
    """
    The slug → post → user → posts scenario.
    """

    def setUp(self) -> None:
        super().setUp()
        self.write_corpus("tweets.txt", "lol ... http://vine.co/v/abc123 ... so good\n")
        self.archive = FakeArchive(
            posts={
                "abc123": {"postIdStr": "555", "userIdStr": "777", "videoUrl": "http://v.cdn.vine.co/r/555.mp4"},
                "555": {"postIdStr": "555", "userIdStr": "777"},
                "556": {"postId": 556, "userIdStr": "777", "videoUrl": "http://v.cdn.vine.co/a/b.mp4"},
            },
            profiles={"777": {"username": "someone", "avatarUrl": "https://mtc.cdn.vine.co/avatar.jpg", "posts": [555, 556]}},
        )

    def test_scenario(self) -> None:
        with self.make(self.archive) as h:
            state = h.run_once()

        self.assertEqual(state.slugs.snapshot(), {"abc123"})
        self.assertEqual(state.users.snapshot(), {"777"})

        # 555 was cached while resolving the slug and never fetched by id
        self.assertTrue(self.exists("posts/777/555.json"))
        self.assertEqual(self.archive.post_calls("555"), 0)
        self.assertEqual(self.archive.post_calls("abc123"), 1)
        self.assertEqual(self.archive.post_calls("556"), 1)
        self.assertEqual(self.archive.profile_calls("777"), 1)

        self.assertEqual(self.read_json("posts/777/555.json")["videoUrl"], f"{MIRROR}/r/555.mp4")
        self.assertEqual(
            self.read_json("posts/777/556.json"),
            {"postId": 556, "userIdStr": "777", "videoUrl": f"{MIRROR}/a/b.mp4"},
        )
        self.assertEqual(self.read_json("profiles/777.json")["avatarUrl"], f"{MIRROR}/avatar.jpg")
        self.assertEqual(self.read_json("profiles.json"), ["777"])
        self.assertFalse(os.path.isdir(os.path.join(self.out, "media")))

        stats = state.stats.as_dict()
        self.assertEqual(stats["posts"], 2)
        self.assertEqual(stats["profiles"], 1)
        self.assertEqual(stats["users"], 1)

    def test_idempotent_rerun(self) -> None:
        with self.make(self.archive) as h:
            h.run_once()
        first = snapshot(self.out)
        calls_after_first = self.archive.total_calls()

        with self.make(self.archive) as h:
            state = h.run_once()
        self.assertEqual(snapshot(self.out), first)
        # only the slug needs resolving again; profile and posts come from disk
        self.assertEqual(self.archive.total_calls() - calls_after_first, 1)
        self.assertEqual(state.stats["posts"], 0)

    def test_skip_on_exists_issues_no_fetch(self) -> None:
        storage = DiskStorage(self.out)
        storage.write("posts/777/556.json", b'{"postIdStr":"556"}\n')
        storage.write("profiles/777.json", b'{"posts":[555,556]}\n')
        with self.make(self.archive) as h:
            h.harvest_user("777")
        self.assertEqual(self.archive.profile_calls("777"), 0)
        self.assertEqual(self.archive.post_calls("556"), 0)
        self.assertEqual(self.archive.post_calls("555"), 1)
        self.assertEqual(self.read_json("posts/777/556.json"), {"postIdStr": "556"})

    def test_media_download(self) -> None:
        self.archive.media[f"{MIRROR}/a/b.mp4"] = b"video-b"
        self.archive.media[f"{MIRROR}/r/555.mp4"] = b"video-555"
        with self.make(self.archive, download_media=True) as h:
            state = h.run_once()
        with open(os.path.join(self.out, "media", "a", "b.mp4"), "rb") as fh:
            self.assertEqual(fh.read(), b"video-b")
        self.assertTrue(self.exists("media/r/555.mp4"))
        self.assertEqual(state.stats["media"], 2)

        self.out = os.path.join(self._tmp.name, "fresh")
        with self.make(self.archive, download_media=True) as h:
            h.fetch_media(f"{MIRROR}/a/b.mp4")
            h.fetch_media(f"{MIRROR}/a/b.mp4")
        self.assertEqual(self.archive.calls[f"{MIRROR}/a/b.mp4"], 2)

    def test_order_independent(self) -> None:
        self.write_corpus("more.txt", "vine.co/v/s1 vine.co/v/s2\nvine.co/v/s3 vine.co/v/nope\n")
        for slug, uid in (("s1", "1"), ("s2", "1"), ("s3", "2")):
            self.archive.posts[slug] = {"postIdStr": f"p{slug}", "userIdStr": uid}
        self.archive.profiles["1"] = {"posts": ["ps1", "x1"]}
        self.archive.profiles["2"] = {"timeline": {"records": [{"postId": 9}, {"postIdStr": "ps3"}]}}
        self.archive.posts["x1"] = {"postIdStr": "x1", "description": "https://v.cdn.vine.co/x.jpg"}
        self.archive.posts["9"] = {"postId": 9.0}

        results: list = []
        for workers in (1, 8):
            self.out = os.path.join(self._tmp.name, f"out{workers}")
            with self.make(self.archive, workers=workers) as h:
                h.run_once()
            results.append(snapshot(self.out))
        self.assertEqual(results[0], results[1])
        self.assertIn("posts/2/9.json", results[0])
        self.assertIn("posts/1/x1.json", results[0])


class TestFailures(HarvesterTestCase):
    """
    Fatal aborts and per-job isolation.
    """

    def test_zero_slugs_aborts(self) -> None:
        self.write_corpus("empty.txt", "nothing to see\n")
        archive = FakeArchive()
        with self.make(archive) as h:
            with self.assertRaises(HarvestAbort):
                h.run_once()
        self.assertEqual(archive.total_calls(), 0)

    def test_zero_users_aborts(self) -> None:
        self.write_corpus("a.txt", "vine.co/v/gone vine.co/v/anon\n")
        archive = FakeArchive(posts={"gone": 404, "anon": {"postIdStr": "1"}})
        with self.make(archive) as h:
            with self.assertRaises(HarvestAbort):
                h.run_once()
            self.assertEqual(h.state.stats["not_found"], 1)

    def test_missing_input_aborts(self) -> None:
        self.corpus = os.path.join(self._tmp.name, "nowhere")
        with self.make(FakeArchive()) as h:
            with self.assertRaises(HarvestAbort):
                h.run_once()

    def test_unusable_output_is_fatal(self) -> None:
        blocker = os.path.join(self._tmp.name, "file")
        with open(blocker, "w") as fh:
            fh.write("x")
        self.out = os.path.join(blocker, "out")
        with self.assertRaises(StorageError):
            self.make(FakeArchive())

    def test_job_failures_do_not_stop_siblings(self) -> None:
        self.write_corpus("a.txt", "vine.co/v/ok vine.co/v/forbidden vine.co/v/flaky vine.co/v/bad\n")
        archive = FakeArchive(
            posts={
                "ok": {"postIdStr": "1", "userIdStr": "10"},
                "forbidden": 403,
                "flaky": 500,
                "bad": b"{",
                "2": 404,
            },
            profiles={"10": {"posts": ["1", "2"]}},
        )
        with self.make(archive) as h:
            with self.assertLogs("vineharvest.core", level="WARNING") as logs:
                state = h.run_once()
        self.assertTrue(self.exists("posts/10/1.json"))
        self.assertTrue(self.exists("profiles/10.json"))
        self.assertEqual(state.stats["forbidden"], 1)
        self.assertEqual(state.stats["errors"], 2)
        self.assertEqual(state.stats["not_found"], 1)
        self.assertTrue(any("possible upstream block" in line for line in logs.output))

    def test_persistence_failure_is_isolated(self) -> None:
        self.write_corpus("a.txt", "vine.co/v/s\n")
        archive = FakeArchive(
            posts={"s": {"postIdStr": "1", "userIdStr": "10"}, "2": {"postIdStr": "2"}},
            profiles={"10": {"posts": ["1", "2"]}},
        )
        with self.make(archive) as h:
            real_write = h.sink.write

            def failing_write(key: str, data: bytes) -> None:
                if key == "posts/10/2.json":
                    raise StorageError("disk full")
                real_write(key, data)

            with mock.patch.object(h.sink, "write", side_effect=failing_write):
                state = h.run_once()
        self.assertTrue(self.exists("posts/10/1.json"))
        self.assertFalse(self.exists("posts/10/2.json"))
        self.assertEqual(state.stats["errors"], 1)


class TestModes(HarvesterTestCase):
    """
    Limits, user lists and polling.
    """

    def test_limit_caps_slugs(self) -> None:
        self.write_corpus("a.txt", "vine.co/v/a vine.co/v/b vine.co/v/c\n")
        archive = FakeArchive(posts={s: {"postIdStr": s, "userIdStr": "1"} for s in "abc"}, profiles={"1": {"posts": []}})
        with self.make(archive, limit=2) as h:
            h.run_once()
        self.assertEqual(archive.post_calls("c"), 0)
        self.assertEqual(sorted(os.listdir(os.path.join(self.out, "posts", "1"))), ["a.json", "b.json"])

    def test_harvest_users_without_corpus(self) -> None:
        archive = FakeArchive(posts={"5": {"postIdStr": "5"}}, profiles={"1": {"posts": ["5"]}, "2": 404})
        with self.make(archive) as h:
            h.harvest_users(["2", "1", "1"])
            self.assertEqual(h.state.users.snapshot(), {"1", "2"})
        self.assertTrue(self.exists("posts/1/5.json"))
        self.assertEqual(archive.profile_calls("1"), 1)

    def test_write_slugs(self) -> None:
        self.write_corpus("a.txt", "vine.co/v/b vine.co/v/a\n")
        with self.make(FakeArchive()) as h:
            h.write_slugs(h.scan())
        with open(os.path.join(self.out, "vine_slugs.txt"), encoding="utf-8") as fh:
            self.assertEqual(fh.read(), "a\nb\n")

    def test_run_forever_stops(self) -> None:
        self.write_corpus("a.txt", "vine.co/v/s\n")
        archive = FakeArchive(posts={"s": {"postIdStr": "1", "userIdStr": "10"}}, profiles={"10": {"posts": ["1"]}})
        h = self.make(archive, poll_interval=0.05)
        runs: list = []
        real_run_once = h.run_once

        def counted() -> object:
            runs.append(1)
            if len(runs) == 3:
                h.stop()
            return real_run_once()

        with mock.patch.object(h, "run_once", side_effect=counted):
            t = threading.Thread(target=h.run)
            t.start()
            t.join(5)
        h.close()
        self.assertFalse(t.is_alive())
        self.assertEqual(len(runs), 3)
        # later iterations found everything on disk
        self.assertEqual(archive.profile_calls("10"), 1)

    def test_run_forever_survives_abort(self) -> None:
        self.write_corpus("a.txt", "no links yet\n")
        h = self.make(FakeArchive(), poll_interval=0.01)
        runs: list = []
        real_run_once = h.run_once

        def counted() -> object:
            runs.append(1)
            if len(runs) == 2:
                h.stop()
            return real_run_once()

        with mock.patch.object(h, "run_once", side_effect=counted):
            with self.assertLogs("vineharvest.core", level="ERROR"):
                h.run()
        h.close()
        self.assertEqual(len(runs), 2)


class TestS3Backends(HarvesterTestCase):
    """
    Mixed local and S3 locations, on an in-memory S3 client.
    """

    def setUp(self) -> None:
        super().setUp()
        self.s3 = FakeS3Client()
        self.archive = FakeArchive(
            posts={
                "abc123": {"postIdStr": "555", "userIdStr": "777"},
                "556": {"postIdStr": "556", "userIdStr": "777", "videoUrl": "http://v.cdn.vine.co/a/b.mp4"},
            },
            profiles={"777": {"posts": ["555", "556"]}},
        )

    def s3_sink(self) -> S3Storage:
        return S3Storage("archive", "out/", S3Config(), client=self.s3)

    def test_local_corpus_to_s3(self) -> None:
        self.write_corpus("tweets.txt", "see http://vine.co/v/abc123\n")
        cfg = HarvesterConfig(input=self.corpus, output="s3://archive/out", s3=S3Config(), workers=4)
        with Harvester(cfg, api=self.archive.api(), sink=self.s3_sink()) as h:
            h.run_once()

        self.assertIn("archive", self.s3.buckets)
        self.assertEqual(
            self.s3.keys("archive"),
            ["out/posts/777/555.json", "out/posts/777/556.json", "out/profiles.json", "out/profiles/777.json"],
        )
        post = json.loads(self.s3.objects[("archive", "out/posts/777/556.json")])
        self.assertEqual(post["videoUrl"], f"{MIRROR}/a/b.mp4")
        self.assertEqual(self.archive.post_calls("555"), 0)

        # a second run only refreshes the user list
        del self.s3.puts[:]
        with Harvester(cfg, api=self.archive.api(), sink=self.s3_sink()) as h:
            h.run_once()
        self.assertEqual(self.s3.puts, ["out/profiles.json"])

    def test_s3_corpus_to_disk(self) -> None:
        self.s3.objects.update({
            ("corpus", "tweets/a.txt"): b"vine.co/v/abc123\n",
            ("corpus", "tweets/b.txt"): b"again vine.co/v/abc123\n",
            ("corpus", "tweets/c.TXT"): b"nothing\n",
            ("corpus", "tweets/d.json"): b'{"x": "vine.co/v/ignored"}',
        })
        source = S3Storage("corpus", "tweets/", S3Config(), client=self.s3)
        cfg = HarvesterConfig(input="s3://corpus/tweets", output=self.out, s3=S3Config(), workers=4)
        with Harvester(cfg, api=self.archive.api(), source=source) as h:
            state = h.run_once()
        self.assertEqual(state.slugs.snapshot(), {"abc123"})
        self.assertTrue(self.exists("posts/777/556.json"))
        self.assertEqual(self.archive.post_calls("ignored"), 0)

    def test_unreachable_head_only_skips_that_post(self) -> None:
        self.write_corpus("tweets.txt", "vine.co/v/abc123\n")
        self.archive.profiles["777"] = {"posts": ["555", "556", "557"]}
        self.archive.posts["557"] = {"postIdStr": "557"}
        self.s3.unreachable.add("out/posts/777/556.json")
        cfg = HarvesterConfig(input=self.corpus, output="s3://archive/out", s3=S3Config(), workers=1)
        with Harvester(cfg, api=self.archive.api(), sink=self.s3_sink()) as h:
            with self.assertLogs("vineharvest.core", level="ERROR"):
                state = h.run_once()
        keys = self.s3.keys("archive")
        self.assertIn("out/posts/777/557.json", keys)
        self.assertNotIn("out/posts/777/556.json", keys)
        self.assertEqual(self.archive.post_calls("556"), 0)
        self.assertEqual(state.stats["errors"], 1)


if __name__ == '__main__':
    unittest.main()
