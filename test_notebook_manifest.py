#!/usr/bin/env python3
"""
Unit tests for the notebook manifest model and its JSON persistence.
"""

import json
import tempfile
import unittest
from pathlib import Path

from notebook_manifest import (
    FORMAT_VERSION,
    MANIFEST_FILENAME,
    ManifestError,
    NodeKind,
    NotebookManifest,
    PageRecord,
    SectionGroupRecord,
    SectionRecord,
    find_manifests,
    load_previous_manifest,
    read_manifest,
)


def _sample():
    return NotebookManifest(
        root_name='Work',
        display_name='Work',
        root_id='nb-id',
        export_date='2024-05-01T10:00:00',
        section_groups=[SectionGroupRecord('Projects', 'g1', 'Projects')],
        sections=[SectionRecord('Alpha', 's1', 'g1', 'Projects')],
        pages=[
            PageRecord('Notes', 'p1', 'src-1', 's1', level=1, order=0,
                       created_at='2024-01-01T00:00:00Z',
                       artifact_paths=['Projects/Alpha/1 - Notes.html']),
            PageRecord('SubA', 'p2', 'src-2', 's1', level=2, parent_page_id='p1', order=1),
        ],
    )


class TestManifestRecords(unittest.TestCase):

    def test_kinds_are_tagged(self):
        manifest = _sample()
        self.assertEqual(manifest.section_groups[0].kind, NodeKind.SECTION_GROUP)
        self.assertEqual(manifest.sections[0].kind, NodeKind.SECTION)
        self.assertEqual(manifest.pages[0].kind, NodeKind.PAGE)

    def test_to_dict_uses_pascal_case(self):
        data = _sample().to_dict()
        self.assertEqual(data['FormatVersion'], FORMAT_VERSION)
        self.assertEqual(data['RootId'], 'nb-id')
        self.assertEqual(data['TotalPages'], 2)
        self.assertEqual(data['Pages'][1]['ParentPageId'], 'p1')
        self.assertEqual(data['Sections'][0]['SectionGroupPath'], 'Projects')

    def test_legacy_parent_path_is_ignored(self):
        data = {
            'RootName': 'Old',
            'Pages': [{'Name': 'Child', 'DurableId': 'p2', 'SectionId': 's1', 'Level': 2,
                       'ParentPagePath': 'Parent/Child'}],
        }
        manifest = NotebookManifest.from_dict(data)
        self.assertEqual(manifest.pages[0].parent_page_id, '')
        self.assertEqual(manifest.root_id, '')

    def test_missing_required_field(self):
        with self.assertRaises(ManifestError):
            NotebookManifest.from_dict({'RootName': 'Work', 'Sections': [{'Name': 'Alpha'}]})

    def test_non_numeric_level(self):
        data = {'RootName': 'Work',
                'Pages': [{'Name': 'x', 'DurableId': 'p', 'SectionId': 's', 'Level': 'deep'}]}
        with self.assertRaises(ManifestError):
            NotebookManifest.from_dict(data)

    def test_dangling_parent_refs(self):
        manifest = _sample()
        manifest.pages.append(PageRecord('Orphan', 'p3', 'src-3', 's1', level=2, parent_page_id='gone'))
        self.assertEqual([p.name for p in manifest.dangling_parent_refs()], ['Orphan'])

    def test_section_group_path(self):
        self.assertEqual(_sample().section_group_path('g1'), 'Projects')
        self.assertEqual(_sample().section_group_path('missing'), '')


class TestManifestFiles(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_save_and_read(self):
        path = self.root / 'Work' / MANIFEST_FILENAME
        _sample().save(path)

        loaded = read_manifest(path)

        self.assertEqual(loaded.path, path)
        self.assertEqual(loaded.base_dir, path.parent)
        self.assertEqual(loaded.pages[1].parent_page_id, 'p1')
        self.assertEqual(loaded.pages[0].artifact_paths, ['Projects/Alpha/1 - Notes.html'])
        self.assertFalse(path.with_suffix('.json.tmp').exists())

    def test_save_overwrites_everything(self):
        path = self.root / MANIFEST_FILENAME
        _sample().save(path)
        NotebookManifest(root_name='Work').save(path)
        with open(path, encoding='utf-8') as f:
            self.assertEqual(json.load(f)['Pages'], [])

    def test_corrupt_previous_manifest_is_moved_aside(self):
        path = self.root / MANIFEST_FILENAME
        path.write_text('{not json', encoding='utf-8')

        self.assertIsNone(load_previous_manifest(path))
        self.assertFalse(path.exists())
        self.assertTrue((self.root / (MANIFEST_FILENAME + '.corrupt')).exists())

    def test_missing_previous_manifest(self):
        self.assertIsNone(load_previous_manifest(self.root / MANIFEST_FILENAME))

    def test_find_manifests(self):
        _sample().save(self.root / 'Work' / MANIFEST_FILENAME)
        _sample().save(self.root / 'Home' / MANIFEST_FILENAME)

        found = find_manifests(self.root)

        self.assertEqual(len(found), 2)
        self.assertEqual(find_manifests(found[0]), [found[0]])
        self.assertEqual(find_manifests(self.root / 'nothing'), [])


if __name__ == '__main__':
    unittest.main()
