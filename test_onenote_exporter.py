#!/usr/bin/env python3
"""
Unit tests for the OneNote exporter.

Tests cover:
- DurableId reuse across runs (unchanged tree, renames, duplicate names)
- Parent page resolution, hierarchy gaps and backtracking
- Locked sections, failed pages and unreadable notebooks
- Artifact layout and empty-page placeholders
"""

import json
import tempfile
import unittest
from pathlib import Path
from typing import Dict, List

from notebook_manifest import MANIFEST_FILENAME, NodeKind, read_manifest
from onenote_exporter import OneNoteExporter, PageParentTracker
from onenote_source import (
    AccessDeniedError,
    HierarchySource,
    RenderedPage,
    SourceError,
    SourceNode,
    SourceUnavailableError,
    TransientSourceError,
    html_to_text,
)


class FakeSource(HierarchySource):
    """In-memory OneNote hierarchy."""

    def __init__(self):
        self.roots: List[SourceNode] = []
        self.children: Dict[str, List[SourceNode]] = {}
        self.content: Dict[str, str] = {}
        self.denied: Dict[str, int] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.dialog_polls = 0
        self._next = 0

    def _node(self, kind, name, source_id=None, level=0, order=0):
        self._next += 1
        return SourceNode(kind=kind, source_id=source_id or f"{kind.name.lower()}-{self._next}",
                          name=name, level=level, order=order,
                          created_at='2024-01-01T00:00:00Z')

    def notebook(self, name):
        node = self._node(NodeKind.NOTEBOOK, name)
        self.roots.append(node)
        self.children[node.source_id] = []
        return node

    def _add(self, parent, kind, name, source_id=None, level=0):
        siblings = self.children[parent.source_id]
        node = self._node(kind, name, source_id, level, order=len(siblings))
        siblings.append(node)
        if kind != NodeKind.PAGE:
            self.children[node.source_id] = []
        return node

    def group(self, parent, name):
        return self._add(parent, NodeKind.SECTION_GROUP, name)

    def section(self, parent, name):
        return self._add(parent, NodeKind.SECTION, name)

    def page(self, section, name, source_id, level=1, content=None):
        node = self._add(section, NodeKind.PAGE, name, source_id, level)
        self.content[source_id] = f"<p>{name} body</p>" if content is None else content
        return node

    def deny(self, node, times=99):
        self.denied[node.source_id] = times

    def fail(self, page, *errors):
        self.failures[page.source_id] = list(errors)

    def get_roots(self):
        if 'roots' in self.failures:
            raise self.failures['roots'][0]
        return list(self.roots)

    def get_children(self, container):
        remaining = self.denied.get(container.source_id, 0)
        if remaining:
            self.denied[container.source_id] = remaining - 1
            raise AccessDeniedError(f"{container.name} is locked")
        return list(self.children.get(container.source_id, []))

    def render(self, page):
        pending = self.failures.get(page.source_id)
        if pending:
            raise pending.pop(0)
        content = self.content[page.source_id]
        return RenderedPage(content.encode('utf-8'), html_to_text(content), created_at=page.created_at)

    def dismiss_blocking_dialogs(self):
        self.dialog_polls += 1
        return 0


def _by_name(records):
    return {r.name: r for r in records}


class ExporterTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.output = Path(self.tmp.name)
        self.source = FakeSource()

    def tearDown(self):
        self.tmp.cleanup()

    def export(self, **kwargs):
        kwargs.setdefault('transient_delay', 0)
        kwargs.setdefault('watchdog_interval', 0.01)
        exporter = OneNoteExporter(self.source, self.output, **kwargs)
        exporter.export_all()
        return exporter

    def manifest(self, notebook='Work'):
        return read_manifest(self.output / notebook / MANIFEST_FILENAME)


class TestPageParentTracker(unittest.TestCase):

    def test_chain(self):
        tracker = PageParentTracker()
        self.assertEqual(tracker.resolve_parent(1), ('', False))
        tracker.record(1, 'd1')
        self.assertEqual(tracker.resolve_parent(2), ('d1', False))
        tracker.record(2, 'd2')
        self.assertEqual(tracker.resolve_parent(3), ('d2', False))

    def test_gap_searches_upward(self):
        tracker = PageParentTracker()
        tracker.record(1, 'd1')
        self.assertEqual(tracker.resolve_parent(3), ('d1', True))
        self.assertEqual(tracker.gaps, 1)

    def test_gap_without_any_ancestor(self):
        tracker = PageParentTracker()
        self.assertEqual(tracker.resolve_parent(2), ('', True))

    def test_failed_page_clears_its_level(self):
        tracker = PageParentTracker()
        tracker.record(1, 'd1')
        tracker.record(2, 'd2')
        tracker.record(2, None)
        self.assertEqual(tracker.resolve_parent(3), ('d1', True))

    def test_backtracking_drops_deeper_levels(self):
        tracker = PageParentTracker()
        tracker.record(1, 'd1')
        tracker.record(2, 'd2')
        tracker.record(3, 'd3')
        tracker.record(1, 'd4')
        self.assertEqual(tracker.resolve_parent(2), ('d4', False))
        self.assertEqual(tracker.resolve_parent(4), ('d4', True))


class TestIdentityAcrossRuns(ExporterTestCase):

    def setUp(self):
        super().setUp()
        nb = self.source.notebook('Work')
        self.inbox = self.source.section(nb, 'Inbox')
        self.source.page(self.inbox, 'Todo', 'P0')
        projects = self.source.group(nb, 'Projects')
        archive = self.source.group(projects, 'Archive')
        self.alpha = self.source.section(archive, 'Alpha')
        self.notes = self.source.page(self.alpha, 'Notes', 'P1')
        self.source.page(self.alpha, 'SubA', 'P2', level=2)
        self.source.page(self.alpha, 'SubB', 'P3', level=3)

    def test_unchanged_tree_keeps_every_id(self):
        self.export()
        first = self.manifest()
        self.export()
        second = self.manifest()

        self.assertEqual(first.root_id, second.root_id)
        self.assertEqual([g.durable_id for g in first.section_groups],
                         [g.durable_id for g in second.section_groups])
        self.assertEqual([s.durable_id for s in first.sections],
                         [s.durable_id for s in second.sections])
        self.assertEqual([(p.durable_id, p.parent_page_id) for p in first.pages],
                         [(p.durable_id, p.parent_page_id) for p in second.pages])

    def test_second_run_mints_nothing(self):
        self.export()
        exporter = self.export()
        self.assertEqual(exporter.stats.minted, 0)
        self.assertEqual(exporter.stats.reused, 1 + 2 + 2 + 4)

    def test_page_rename_keeps_id(self):
        self.export()
        before = _by_name(self.manifest().pages)['Notes'].durable_id
        self.notes.name = 'Meeting notes'
        self.export()
        pages = _by_name(self.manifest().pages)
        self.assertEqual(pages['Meeting notes'].durable_id, before)
        self.assertEqual(pages['SubA'].parent_page_id, before)

    def test_section_rename_mints_new_id(self):
        self.export()
        before = _by_name(self.manifest().sections)['Alpha'].durable_id
        self.alpha.name = 'Beta'
        self.export()
        after = _by_name(self.manifest().sections)['Beta']
        self.assertNotEqual(after.durable_id, before)
        self.assertEqual({p.section_id for p in self.manifest().pages if p.source_id != 'P0'},
                         {after.durable_id})

    def test_nested_group_records(self):
        self.export()
        manifest = self.manifest()
        groups = _by_name(manifest.section_groups)
        self.assertEqual(groups['Archive'].path, 'Projects/Archive')
        self.assertEqual(groups['Archive'].parent_section_group_id, groups['Projects'].durable_id)
        alpha = _by_name(manifest.sections)['Alpha']
        self.assertEqual(alpha.parent_section_group_id, groups['Archive'].durable_id)
        self.assertEqual(alpha.section_group_path, 'Projects/Archive')

    def test_chain_and_artifact_layout(self):
        self.export()
        pages = _by_name(self.manifest().pages)
        self.assertEqual(pages['Notes'].parent_page_id, '')
        self.assertEqual(pages['SubA'].parent_page_id, pages['Notes'].durable_id)
        self.assertEqual(pages['SubB'].parent_page_id, pages['SubA'].durable_id)
        self.assertEqual(pages['SubB'].artifact_paths,
                         ['Projects/Archive/Alpha/Notes/SubA/3 - SubB.html',
                          'Projects/Archive/Alpha/Notes/SubA/3 - SubB.txt'])
        text = (self.output / 'Work' / pages['SubB'].artifact_paths[1]).read_text(encoding='utf-8')
        self.assertEqual(text, 'SubB body')

    def test_watchdog_ran_and_summary_written(self):
        exporter = self.export()
        summary = json.loads((self.output / 'export_summary.json').read_text(encoding='utf-8'))
        self.assertEqual(summary['stats']['failed'], 0)
        self.assertEqual(summary['notebooks'][0]['pages'], 4)
        self.assertEqual(exporter.stats.by_kind['Page'], 4)


class TestDuplicateNames(ExporterTestCase):

    def test_same_named_sections_keep_distinct_ids(self):
        nb = self.source.notebook('Work')
        first = self.source.section(nb, 'Notes')
        second = self.source.section(nb, 'Notes')
        self.source.page(first, 'A', 'PA')
        self.source.page(second, 'B', 'PB')

        self.export()
        ids_first = [s.durable_id for s in self.manifest().sections]
        self.export()
        ids_second = [s.durable_id for s in self.manifest().sections]

        self.assertEqual(len(set(ids_first)), 2)
        self.assertEqual(ids_first, ids_second)


class TestHierarchyGaps(ExporterTestCase):

    def setUp(self):
        super().setUp()
        nb = self.source.notebook('Work')
        self.section = self.source.section(nb, 'Alpha')

    def test_missing_level_links_to_ancestor(self):
        self.source.page(self.section, 'Top', 'P1', level=1)
        self.source.page(self.section, 'Deep', 'P3', level=3)

        exporter = self.export()
        pages = _by_name(self.manifest().pages)

        self.assertEqual(pages['Deep'].parent_page_id, pages['Top'].durable_id)
        self.assertEqual(exporter.stats.gaps, 1)

    def test_failed_intermediate_page(self):
        self.source.page(self.section, 'Top', 'P1', level=1)
        middle = self.source.page(self.section, 'Middle', 'P2', level=2)
        self.source.page(self.section, 'Leaf', 'P3', level=3)
        self.source.fail(middle, SourceError("render failed"))

        exporter = self.export()
        pages = _by_name(self.manifest().pages)

        self.assertNotIn('Middle', pages)
        self.assertEqual(pages['Leaf'].parent_page_id, pages['Top'].durable_id)
        # The failed page still names the folder of its children
        self.assertTrue(pages['Leaf'].artifact_paths[0].startswith('Alpha/Top/Middle/'))
        self.assertEqual(exporter.stats.failed, 1)
        self.assertEqual(exporter.stats.failures[0].location, 'Work/Alpha/Middle')

    def test_backtracking_to_shallower_branch(self):
        self.source.page(self.section, 'A', 'PA', level=1)
        self.source.page(self.section, 'A1', 'PA1', level=2)
        self.source.page(self.section, 'B', 'PB', level=1)
        self.source.page(self.section, 'B1', 'PB1', level=2)

        self.export()
        pages = _by_name(self.manifest().pages)

        self.assertEqual(pages['B1'].parent_page_id, pages['B'].durable_id)

    def test_exclude_subpages(self):
        self.source.page(self.section, 'Top', 'P1', level=1)
        self.source.page(self.section, 'Child', 'P2', level=2)

        self.export(include_subpages=False)

        self.assertEqual([p.name for p in self.manifest().pages], ['Top'])


class TestNodeFailures(ExporterTestCase):

    def setUp(self):
        super().setUp()
        self.nb = self.source.notebook('Work')
        self.locked = self.source.section(self.nb, 'Private')
        self.source.page(self.locked, 'Secret', 'PS')
        self.open = self.source.section(self.nb, 'Public')
        self.page = self.source.page(self.open, 'Hello', 'PH')

    def test_locked_section_retried_once(self):
        self.source.deny(self.locked, times=1)

        self.export()

        self.assertEqual(sorted(p.name for p in self.manifest().pages), ['Hello', 'Secret'])

    def test_locked_section_keeps_previous_pages(self):
        self.export()
        before = _by_name(self.manifest().pages)['Secret'].durable_id
        self.source.deny(self.locked)

        exporter = self.export()

        pages = _by_name(self.manifest().pages)
        self.assertEqual(pages['Secret'].durable_id, before)
        self.assertEqual(exporter.stats.skipped, 1)

    def test_locked_section_without_retry(self):
        self.source.deny(self.locked, times=1)
        self.export(retry_locked=False)
        self.assertEqual([p.name for p in self.manifest().pages], ['Hello'])

    def test_failed_page_keeps_previous_record(self):
        self.export()
        before = _by_name(self.manifest().pages)['Hello']
        self.source.fail(self.page, SourceError("render failed"))

        exporter = self.export()

        self.assertEqual(_by_name(self.manifest().pages)['Hello'].durable_id, before.durable_id)
        self.assertEqual(exporter.stats.failed, 1)

    def test_transient_errors_are_retried(self):
        self.source.fail(self.page, TransientSourceError("busy"), TransientSourceError("busy"))

        exporter = self.export(transient_retries=3)

        self.assertIn('Hello', _by_name(self.manifest().pages))
        self.assertEqual(exporter.stats.failed, 0)

    def test_empty_page_gets_placeholder(self):
        self.source.content['PH'] = ''

        self.export()

        record = _by_name(self.manifest().pages)['Hello']
        html = (self.output / 'Work' / record.artifact_paths[0]).read_text(encoding='utf-8')
        self.assertIn('no content', html)

    def test_unreadable_notebook_leaves_manifest_unchanged(self):
        self.export()
        path = self.output / 'Work' / MANIFEST_FILENAME
        before = path.read_text(encoding='utf-8')
        self.source.deny(self.nb)

        self.export()

        self.assertEqual(path.read_text(encoding='utf-8'), before)

    def test_unreachable_source(self):
        self.source.failures['roots'] = [SourceUnavailableError("OneNote not running")]
        with self.assertRaises(SourceUnavailableError):
            self.export()


if __name__ == '__main__':
    unittest.main()
