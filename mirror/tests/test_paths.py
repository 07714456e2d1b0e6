"""Tests for path handling and batch accumulation."""

import os

from django.test import SimpleTestCase

from mirror.providers.base import Change
from mirror.sync.batch import DeltaBatch
from mirror.sync.paths import normalize_path, path_matches, to_local_path
from mirror.sync.registry import InstanceCache, instance_key
from mirror.tests.fakes import page


class NormalizePathTests(SimpleTestCase):
    def test_empty_means_root(self):
        self.assertEqual(normalize_path(None), "/")
        self.assertEqual(normalize_path(""), "/")

    def test_adds_leading_slash(self):
        self.assertEqual(normalize_path("docs"), "/docs")

    def test_lower_cases(self):
        self.assertEqual(normalize_path("/Docs/Reports"), "/docs/reports")

    def test_is_idempotent(self):
        self.assertEqual(normalize_path(normalize_path("Docs")), "/docs")


class PathMatchesTests(SimpleTestCase):
    def test_root_matches_everything(self):
        self.assertTrue(path_matches("/", "/anything/at/all.txt"))

    def test_descendant_matches(self):
        self.assertTrue(path_matches("/docs", "/docs/a.txt"))
        self.assertTrue(path_matches("/docs", "/docs"))

    def test_comparison_ignores_case_of_entry(self):
        self.assertTrue(path_matches("/docs", "/DOCS/A.txt"))

    def test_unrelated_path_does_not_match(self):
        self.assertFalse(path_matches("/docs", "/photos/a.jpg"))

    def test_match_is_a_plain_string_prefix(self):
        self.assertTrue(path_matches("/docs", "/docs-archive/a.txt"))


class ToLocalPathTests(SimpleTestCase):
    def test_joins_below_root(self):
        self.assertEqual(to_local_path("/srv/m", "/docs/a.txt"), os.path.join("/srv/m", "docs/a.txt"))

    def test_root_maps_to_root(self):
        self.assertEqual(to_local_path("/srv/m", "/"), "/srv/m")

    def test_preserves_entry_case(self):
        self.assertEqual(to_local_path("/srv/m", "/Docs"), os.path.join("/srv/m", "Docs"))


class DeltaBatchTests(SimpleTestCase):
    def test_extend_keeps_order_across_pages(self):
        batch = DeltaBatch()

        batch.extend(page("c1", [Change.file("/a"), Change.file("/b")], should_pull_again=True))
        self.assertFalse(batch.is_complete)
        batch.extend(page("c2", [Change.removed("/a")]))

        self.assertTrue(batch.is_complete)
        self.assertEqual([c.path for c in batch.changes], ["/a", "/b", "/a"])
        self.assertTrue(batch.changes[2].was_removed)

    def test_blank_slate_from_any_page_sticks(self):
        batch = DeltaBatch()

        batch.extend(page("c1", blank_slate=True, should_pull_again=True))
        batch.extend(page("c2"))

        self.assertTrue(batch.blank_slate)

    def test_for_path_filters_and_copies_flags(self):
        batch = DeltaBatch(
            [Change.file("/docs/a"), Change.folder("/photos"), Change.removed("/docs/b")],
            blank_slate=True,
        )

        scoped = batch.for_path("/docs")

        self.assertEqual([c.path for c in scoped.changes], ["/docs/a", "/docs/b"])
        self.assertTrue(scoped.blank_slate)
        self.assertEqual(len(batch.changes), 3)

    def test_empty_batch_is_complete(self):
        self.assertTrue(DeltaBatch().is_complete)


class ChangeTests(SimpleTestCase):
    def test_constructors(self):
        self.assertTrue(Change.removed("/a").was_removed)
        self.assertTrue(Change.file("/a", size=3, revision="r1").stat.is_file)
        self.assertEqual(Change.file("/a", size=3).stat.size, 3)
        self.assertTrue(Change.folder("/a").stat.is_folder)
        self.assertIsNone(Change(path="/a").stat)


class InstanceCacheTests(SimpleTestCase):
    def test_instance_key_uses_absolute_root(self):
        self.assertEqual(instance_key("u1", "/srv/mirror/"), "u1:/srv/mirror")

    def test_get_or_create_calls_factory_once(self):
        cache = InstanceCache()
        made = []

        def factory():
            made.append(object())
            return made[-1]

        first = cache.get_or_create("k", factory)
        second = cache.get_or_create("k", factory)

        self.assertIs(first, second)
        self.assertEqual(len(made), 1)

    def test_evict_ignores_stale_instance(self):
        cache = InstanceCache()
        current = cache.get_or_create("k", object)

        cache.evict("k", object())
        self.assertIs(cache.get_or_create("k", object), current)

        cache.evict("k", current)
        self.assertNotIn("k", cache)
