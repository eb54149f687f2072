import io
import os
import random
import tempfile
import threading
import time
import unittest
from collections import Counter
from contextlib import redirect_stdout
from unittest.mock import patch

from spaudit import folder_stats
from spaudit.errors import ConfigError, NotFoundError, ResolutionError
from spaudit.folder_stats import (
    FolderStatsSettings,
    aggregate,
    main,
    make_folder_task,
    run_folder_stats,
    select_top_folders,
)
from spaudit.models import Library, Site, TreeEntry
from spaudit.report_writer import FOLDER_STATS_HEADER, CsvReportWriter
from spaudit.workers import run_pool

ROOT = TreeEntry("root", "root", True)


def folder(entry_id, name, parent="root"):
    return TreeEntry(entry_id, name, True, 0, parent)


def file(entry_id, name, size, parent):
    return TreeEntry(entry_id, name, False, size, parent)


class FakeTree:
    """In-memory drive keyed by container id."""

    def __init__(self, entries=()) -> None:
        self.children = {}
        self.fetch_calls = []
        self.failing = set()
        self._lock = threading.Lock()
        for entry in entries:
            self.add(entry)

    def add(self, entry: TreeEntry) -> TreeEntry:
        self.children.setdefault(entry.parent_id, []).append(entry)
        return entry

    def fetch_children(self, drive_id, container_id):
        with self._lock:
            self.fetch_calls.append(container_id)
        if container_id in self.failing:
            raise NotFoundError(f"Failed to list children of {container_id}: 404",
                                details={"status_code": 404})
        for entry in self.children.get(container_id, []):
            yield entry


class FakeSession:
    """Stands in for GraphSession: context manager plus the resolution calls."""

    def __init__(self, tree: FakeTree, token: str) -> None:
        self.tree = tree
        self.token = token
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True

    def resolve_site(self, site_url):
        return Site("site-1", "Finance", site_url)

    def resolve_library(self, site_id, name):
        if name != "Documents":
            raise ResolutionError("Library", name, ["Documents"])
        return Library("drive-1", "Documents")

    def get_root(self, drive_id):
        return ROOT

    def fetch_children(self, drive_id, container_id):
        return self.tree.fetch_children(drive_id, container_id)


def reports_tree() -> FakeTree:
    tree = FakeTree()
    reports = tree.add(folder("r", "Reports"))
    tree.add(file("r1", "a.pdf", 100, reports.id))
    tree.add(file("r2", "b.pdf", 200, reports.id))
    tree.add(file("r3", "c.pdf", 300, reports.id))
    archive = tree.add(folder("ar", "Archive", reports.id))
    tree.add(file("ar1", "old1.pdf", 50, archive.id))
    tree.add(file("ar2", "old2.pdf", 50, archive.id))
    return tree


def random_tree(seed: int, top_folders: int = 4):
    """Build a random drive; return the tree and expected totals per top folder."""
    rng = random.Random(seed)
    tree = FakeTree()
    expected = {}
    counter = [0]

    def next_id():
        counter[0] += 1
        return f"n{counter[0]}"

    def populate(parent_id, depth, totals):
        for _ in range(rng.randint(0, 5)):
            if depth < 5 and rng.random() < 0.35:
                child = tree.add(folder(next_id(), f"dir{counter[0]}", parent_id))
                totals["folders"] += 1
                populate(child.id, depth + 1, totals)
            else:
                size = rng.randint(0, 10_000_000)
                tree.add(file(next_id(), f"file{counter[0]}", size, parent_id))
                totals["files"] += 1
                totals["bytes"] += size

    for n in range(top_folders):
        top = tree.add(folder(next_id(), f"Top{n}"))
        totals = {"files": 0, "folders": 0, "bytes": 0}
        populate(top.id, 1, totals)
        expected[top.name] = totals
    return tree, expected


class TestAggregate(unittest.TestCase):
    def test_reports_scenario(self) -> None:
        tree = reports_tree()
        top = tree.children["root"][0]

        result = aggregate(tree, "drive", top)

        self.assertEqual(result.name, "Reports")
        self.assertEqual(result.path, "Reports")
        self.assertEqual(result.file_count, 5)
        self.assertEqual(result.subfolder_count, 1)
        self.assertEqual(result.size_bytes, 700)
        self.assertEqual(result.as_row()[5:], ["0.00", "0.0000"])

    def test_empty_folder(self) -> None:
        tree = FakeTree([folder("e", "Empty")])
        result = aggregate(tree, "drive", tree.children["root"][0])
        self.assertEqual((result.file_count, result.subfolder_count, result.size_bytes), (0, 0, 0))

    def test_files_only(self) -> None:
        tree = FakeTree([folder("f", "Flat")] + [file(f"x{i}", "x", 10, "f") for i in range(7)])
        result = aggregate(tree, "drive", tree.children["root"][0])
        self.assertEqual(result.file_count, 7)
        self.assertEqual(result.subfolder_count, 0)
        self.assertEqual(result.size_bytes, 70)

    def test_each_folder_listed_once(self) -> None:
        tree = reports_tree()
        aggregate(tree, "drive", tree.children["root"][0])
        self.assertEqual(sorted(tree.fetch_calls), ["ar", "r"])

    def test_random_trees_match_expected_totals(self) -> None:
        for seed in range(25):
            tree, expected = random_tree(seed)
            for top in tree.children["root"]:
                with self.subTest(seed=seed, folder=top.name):
                    result = aggregate(tree, "drive", top)
                    totals = expected[top.name]
                    self.assertEqual(result.file_count, totals["files"])
                    self.assertEqual(result.subfolder_count, totals["folders"])
                    self.assertEqual(result.size_bytes, totals["bytes"])

    def test_repeat_runs_are_identical(self) -> None:
        tree, _ = random_tree(99)
        top = tree.children["root"][0]
        self.assertEqual(aggregate(tree, "drive", top), aggregate(tree, "drive", top))

    def test_deep_tree_does_not_recurse(self) -> None:
        tree = FakeTree([folder("d0", "Deep")])
        for depth in range(1, 3000):
            tree.add(folder(f"d{depth}", f"level{depth}", f"d{depth - 1}"))
        tree.add(file("leaf", "leaf.txt", 42, "d2999"))

        result = aggregate(tree, "drive", tree.children["root"][0])

        self.assertEqual(result.subfolder_count, 2999)
        self.assertEqual(result.file_count, 1)
        self.assertEqual(result.size_bytes, 42)

    def test_fetch_error_propagates(self) -> None:
        tree = reports_tree()
        tree.failing.add("ar")
        with self.assertRaises(NotFoundError):
            aggregate(tree, "drive", tree.children["root"][0])


class TestSelectTopFolders(unittest.TestCase):
    def setUp(self) -> None:
        self.entries = [
            folder("1", "Reports"),
            folder("2", "Reports 2023"),
            folder("3", "Invoices"),
            folder("4", "Forms"),
            folder("5", "_catalogs"),
            file("6", "readme.txt", 5, "root"),
        ]

    def test_all_folders_without_filter(self) -> None:
        names = [e.name for e in select_top_folders(self.entries)]
        self.assertEqual(names, ["Reports", "Reports 2023", "Invoices"])

    def test_include_system(self) -> None:
        names = [e.name for e in select_top_folders(self.entries, include_system=True)]
        self.assertIn("Forms", names)
        self.assertIn("_catalogs", names)
        self.assertNotIn("readme.txt", names)

    def test_exact_match_wins(self) -> None:
        names = [e.name for e in select_top_folders(self.entries, "reports")]
        self.assertEqual(names, ["Reports"])

    def test_wildcard_substring(self) -> None:
        names = [e.name for e in select_top_folders(self.entries, "2023")]
        self.assertEqual(names, ["Reports 2023"])

    def test_explicit_wildcard(self) -> None:
        names = [e.name for e in select_top_folders(self.entries, "Rep*")]
        self.assertEqual(names, ["Reports", "Reports 2023"])

    def test_no_match_lists_available(self) -> None:
        with self.assertRaises(ResolutionError) as ctx:
            select_top_folders(self.entries, "Contracts")
        self.assertEqual(ctx.exception.available, ["Forms", "Invoices", "Reports", "Reports 2023", "_catalogs"])

    def test_exact_name_selects_system_folder(self) -> None:
        entries = [folder("a", "_Archive"), folder("r", "Reports")]
        names = [e.name for e in select_top_folders(entries, "_Archive")]
        self.assertEqual(names, ["_Archive"])

    def test_exact_name_selects_forms(self) -> None:
        names = [e.name for e in select_top_folders(self.entries, "forms")]
        self.assertEqual(names, ["Forms"])

    def test_wildcard_still_skips_system_folders(self) -> None:
        names = [e.name for e in select_top_folders(self.entries, "*s")]
        self.assertEqual(names, ["Reports", "Invoices"])

    def test_wildcard_with_include_system(self) -> None:
        names = [e.name for e in select_top_folders(self.entries, "*s", include_system=True)]
        self.assertEqual(names, ["Reports", "Invoices", "Forms", "_catalogs"])

    def test_no_folders(self) -> None:
        self.assertEqual(select_top_folders([file("x", "x", 1, "root")]), [])


class TestWorkerPool(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "stats.csv")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _rows(self):
        with open(self.path, encoding="utf-8") as fh:
            return fh.read().splitlines()

    def _run(self, tree, workers):
        sessions = []

        def factory(token):
            session = FakeSession(tree, token)
            sessions.append(session)
            return session

        with CsvReportWriter(self.path, FOLDER_STATS_HEADER) as writer:
            task = make_folder_task(lambda: "tok", "drive-1", writer, factory)
            results, failures = run_pool(tree.children["root"], task, workers)
        return results, failures, sessions

    def test_one_and_eight_workers_give_same_rows(self) -> None:
        tree, _ = random_tree(7, top_folders=12)

        self._run(tree, 1)
        single = Counter(self._rows()[1:])
        self._run(tree, 8)
        parallel = Counter(self._rows()[1:])

        self.assertEqual(len(single), 12)
        self.assertEqual(single, parallel)

    def test_each_worker_opens_and_closes_its_own_session(self) -> None:
        tree, _ = random_tree(3, top_folders=5)
        _, _, sessions = self._run(tree, 3)
        self.assertEqual(len(sessions), 5)
        self.assertTrue(all(s.closed for s in sessions))

    def test_failure_is_isolated_and_named(self) -> None:
        tree = reports_tree()
        invoices = tree.add(folder("inv", "Invoices"))
        tree.add(file("inv1", "i.pdf", 10, invoices.id))
        broken = tree.add(folder("bad", "Broken"))
        tree.add(folder("bad-child", "child", broken.id))
        tree.failing.add("bad-child")

        results, failures, _ = self._run(tree, 4)

        self.assertEqual(sorted(r.name for r in results), ["Invoices", "Reports"])
        self.assertEqual([f.name for f in failures], ["Broken"])
        self.assertIsInstance(failures[0].error, NotFoundError)
        rows = self._rows()
        self.assertEqual(len(rows), 3)
        self.assertFalse(any("Broken" in row for row in rows))

    def test_empty_folder_list(self) -> None:
        results, failures = run_pool([], lambda f: f, 4)
        self.assertEqual((results, failures), ([], []))

    def test_throttle_below_one_is_clamped(self) -> None:
        tree = reports_tree()
        results, failures, _ = self._run(tree, 0)
        self.assertEqual(len(results), 1)
        self.assertEqual(failures, [])

    def _pool_threads(self):
        return [t for t in threading.enumerate() if t.name.startswith("spaudit")]

    def test_interrupt_cancels_pending_tasks(self) -> None:
        items = [folder(f"t{n}", f"Top{n}") for n in range(10)]
        started = []

        def task(item):
            started.append(item.name)
            if item.name == "Top0":
                raise KeyboardInterrupt
            time.sleep(0.05)
            return item.name

        with self.assertRaises(KeyboardInterrupt):
            run_pool(items, task, 1)

        self.assertEqual(started[0], "Top0")
        # at most the task the worker had already picked up runs after the interrupt
        self.assertLessEqual(len(started), 2)
        self.assertEqual(self._pool_threads(), [])

    def test_raising_callback_waits_for_running_workers(self) -> None:
        slow_started = threading.Event()
        events = []

        def task(item):
            if item.name == "Fast":
                slow_started.wait(timeout=5)
                return item.name
            slow_started.set()
            time.sleep(0.1)
            events.append("slow finished")
            return item.name

        def on_done(item, result):
            raise RuntimeError(f"cannot report {item.name}")

        with self.assertRaises(RuntimeError):
            run_pool([folder("f", "Fast"), folder("s", "Slow")], task, 2, on_done=on_done)

        self.assertEqual(events, ["slow finished"])
        self.assertEqual(self._pool_threads(), [])


class TestRunFolderStats(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "stats.csv")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _settings(self, **kwargs):
        return FolderStatsSettings(
            site_url="https://contoso.sharepoint.com/sites/Finance",
            output=self.path,
            **kwargs,
        )

    def _run(self, tree, settings):
        return run_folder_stats(settings, lambda: "tok", lambda token: FakeSession(tree, token))

    def test_end_to_end(self) -> None:
        tree = reports_tree()
        tree.add(folder("forms", "Forms"))
        tree.add(file("loose", "loose.txt", 1, "root"))

        results, failures = self._run(tree, self._settings(throttle=2))

        self.assertEqual(failures, [])
        self.assertEqual([r.name for r in results], ["Reports"])
        with open(self.path, encoding="utf-8") as fh:
            lines = fh.read().splitlines()
        self.assertEqual(lines[0], '"' + '","'.join(FOLDER_STATS_HEADER) + '"')
        self.assertEqual(lines[1], '"Reports","Reports","5","1","700","0.00","0.0000"')

    def test_no_top_level_folders_gives_header_only(self) -> None:
        tree = FakeTree([file("loose", "loose.txt", 1, "root")])
        results, failures = self._run(tree, self._settings())
        self.assertEqual((results, failures), ([], []))
        with open(self.path, encoding="utf-8") as fh:
            self.assertEqual(len(fh.read().splitlines()), 1)

    def test_unknown_library_fails_before_output(self) -> None:
        with self.assertRaises(ResolutionError):
            self._run(reports_tree(), self._settings(library="Nope"))
        self.assertFalse(os.path.exists(self.path))

    def test_unknown_folder_fails_before_output(self) -> None:
        with self.assertRaises(ResolutionError):
            self._run(reports_tree(), self._settings(folder="Contracts"))
        self.assertFalse(os.path.exists(self.path))

    def test_folder_filter(self) -> None:
        tree = reports_tree()
        tree.add(folder("inv", "Invoices"))
        results, _ = self._run(tree, self._settings(folder="Invoices"))
        self.assertEqual([r.name for r in results], ["Invoices"])

    def test_default_output_path(self) -> None:
        settings = FolderStatsSettings(site_url="x", library="Shared Documents")
        path = settings.output_path()
        self.assertTrue(path.startswith("folder_stats_Shared_Documents_"))
        self.assertTrue(path.endswith(".csv"))

    def test_exact_filter_reports_system_folder(self) -> None:
        tree = reports_tree()
        archive = tree.add(folder("arc", "_Archive"))
        tree.add(file("arc1", "old.zip", 900, archive.id))

        results, failures = self._run(tree, self._settings(folder="_Archive"))

        self.assertEqual(failures, [])
        self.assertEqual([(r.name, r.size_bytes) for r in results], [("_Archive", 900)])


class TestMain(unittest.TestCase):
    SITE_URL = "https://contoso.sharepoint.com/sites/Finance"

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "stats.csv")
        self.tree = reports_tree()
        self.credentials = patch.object(folder_stats, "token_provider_from_args", return_value=lambda: "tok")
        self.credentials.start()

    def tearDown(self) -> None:
        patch.stopall()
        self.tmpdir.cleanup()

    def _main(self, *extra):
        real_run = folder_stats.run_folder_stats

        def run_with_fake_session(settings, token_provider):
            return real_run(settings, token_provider, lambda token: FakeSession(self.tree, token))

        out = io.StringIO()
        with patch.object(folder_stats, "run_folder_stats", side_effect=run_with_fake_session), \
                redirect_stdout(out):
            code = main(["--site-url", self.SITE_URL, *extra])
        return code, out.getvalue()

    def test_clean_run_exits_zero(self) -> None:
        code, output = self._main("--output", self.path)
        self.assertEqual(code, 0)
        self.assertIn("=== Folder Statistics Summary ===", output)
        self.assertTrue(os.path.exists(self.path))

    def test_failed_folder_exits_one(self) -> None:
        self.tree.failing.add("ar")
        code, output = self._main("--output", self.path)
        self.assertEqual(code, 1)
        self.assertIn("Failed to scan 1 folder(s)", output)

    def test_unknown_folder_exits_one(self) -> None:
        code, output = self._main("--output", self.path, "--folder", "Contracts")
        self.assertEqual(code, 1)
        self.assertIn("Folder 'Contracts' not found", output)
        self.assertFalse(os.path.exists(self.path))

    def test_unknown_library_exits_one(self) -> None:
        code, _ = self._main("--output", self.path, "--library", "Nope")
        self.assertEqual(code, 1)

    def test_config_error_exits_one(self) -> None:
        self.credentials.stop()
        error = ConfigError("No OneDrive/SharePoint remotes found in rclone configuration.")
        with patch.object(folder_stats, "token_provider_from_args", side_effect=error):
            code, output = self._main("--output", self.path)
        self.assertEqual(code, 1)
        self.assertIn("No OneDrive/SharePoint remotes found", output)

    def test_interrupt_exits_130(self) -> None:
        out = io.StringIO()
        with patch.object(folder_stats, "run_folder_stats", side_effect=KeyboardInterrupt), \
                redirect_stdout(out):
            code = main(["--site-url", self.SITE_URL, "--output", self.path])
        self.assertEqual(code, 130)
        self.assertIn("Operation cancelled", out.getvalue())

    def test_unwritable_output_exits_one(self) -> None:
        path = os.path.join(self.tmpdir.name, "missing", "stats.csv")
        code, output = self._main("--output", path)
        self.assertEqual(code, 1)
        self.assertIn("Could not write report", output)
