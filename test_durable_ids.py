#!/usr/bin/env python3
"""
Unit tests for durable identifiers and the lookup tables rebuilt from a
previous manifest.
"""

import unittest
import uuid

from durable_ids import (
    IdentifierLookupTable,
    LookupTables,
    mint_durable_id,
    notebook_key,
    section_group_key,
    section_key,
)
from notebook_manifest import (
    NodeKind,
    NotebookManifest,
    PageRecord,
    SectionGroupRecord,
    SectionRecord,
)


class TestMint(unittest.TestCase):

    def test_mint_is_uuid4(self):
        value = mint_durable_id()
        self.assertEqual(uuid.UUID(value).version, 4)

    def test_mint_is_unique(self):
        self.assertEqual(len({mint_durable_id() for _ in range(100)}), 100)

    def test_section_key_without_group(self):
        self.assertEqual(section_key('Work', None, 'Alpha'), ('Work', '', 'Alpha'))


class TestIdentifierLookupTable(unittest.TestCase):

    def test_miss_mints(self):
        table = IdentifierLookupTable(NodeKind.SECTION)
        durable_id, reused = table.assign(('Work', '', 'Alpha'))
        self.assertFalse(reused)
        self.assertEqual(table.minted, 1)
        self.assertTrue(table.is_issued(durable_id))

    def test_hit_reuses(self):
        table = IdentifierLookupTable(NodeKind.SECTION)
        table.add(('Work', '', 'Alpha'), 'id-1')
        self.assertEqual(table.assign(('Work', '', 'Alpha')), ('id-1', True))
        self.assertEqual(table.reused, 1)

    def test_same_key_ids_issued_in_order_never_twice(self):
        table = IdentifierLookupTable(NodeKind.SECTION)
        table.add(('Work', '', 'Notes'), 'id-1')
        table.add(('Work', '', 'Notes'), 'id-2')

        first, _ = table.assign(('Work', '', 'Notes'))
        second, _ = table.assign(('Work', '', 'Notes'))
        third, reused = table.assign(('Work', '', 'Notes'))

        self.assertEqual((first, second), ('id-1', 'id-2'))
        self.assertFalse(reused)
        self.assertNotIn(third, ('id-1', 'id-2'))

    def test_claimed_id_is_not_handed_out(self):
        table = IdentifierLookupTable(NodeKind.PAGE)
        table.add('P1', 'id-1')
        table.claim('id-1')
        self.assertNotIn('P1', table)
        durable_id, reused = table.assign('P1')
        self.assertFalse(reused)
        self.assertNotEqual(durable_id, 'id-1')

    def test_empty_id_ignored(self):
        table = IdentifierLookupTable(NodeKind.PAGE)
        table.add('P1', '')
        self.assertEqual(len(table), 0)


class TestLookupTablesFromManifest(unittest.TestCase):

    def _manifest(self):
        return NotebookManifest(
            root_name='Work',
            root_id='nb-id',
            section_groups=[
                SectionGroupRecord('Projects', 'g1', 'Projects'),
                SectionGroupRecord('2024', 'g2', 'Projects/2024', 'g1'),
            ],
            sections=[
                SectionRecord('Alpha', 's1', 'g2', 'Projects/2024'),
                # Older manifests carry only the parent group id
                SectionRecord('Beta', 's2', 'g1'),
                SectionRecord('Inbox', 's3'),
            ],
            pages=[
                PageRecord('Kickoff', 'p1', 'src-1', 's1'),
                PageRecord('No source', 'p2', '', 's1'),
            ],
        )

    def test_no_manifest_gives_empty_tables(self):
        tables = LookupTables.from_manifest('Work', None)
        self.assertEqual(len(tables.pages), 0)
        self.assertNotIn(notebook_key('Work'), tables.notebook)

    def test_keys(self):
        tables = LookupTables.from_manifest('Work', self._manifest())

        self.assertEqual(tables.notebook.lookup(notebook_key('Work')), 'nb-id')
        self.assertEqual(tables.section_groups.lookup(section_group_key('Work', 'Projects/2024')), 'g2')
        self.assertEqual(tables.sections.lookup(section_key('Work', 'Projects/2024', 'Alpha')), 's1')
        self.assertEqual(tables.sections.lookup(section_key('Work', 'Projects', 'Beta')), 's2')
        self.assertEqual(tables.sections.lookup(section_key('Work', '', 'Inbox')), 's3')
        self.assertEqual(tables.pages.lookup('src-1'), 'p1')

    def test_pages_without_source_id_are_not_matchable(self):
        tables = LookupTables.from_manifest('Work', self._manifest())
        self.assertEqual(len(tables.pages), 1)

    def test_nested_groups_with_same_name_do_not_collide(self):
        manifest = NotebookManifest(
            root_name='Work',
            section_groups=[
                SectionGroupRecord('Archive', 'g1', 'A/Archive'),
                SectionGroupRecord('Archive', 'g2', 'B/Archive'),
            ],
        )
        tables = LookupTables.from_manifest('Work', manifest)
        self.assertEqual(tables.section_groups.lookup(section_group_key('Work', 'B/Archive')), 'g2')

    def test_minted_and_reused_totals(self):
        tables = LookupTables.from_manifest('Work', self._manifest())
        tables.pages.assign('src-1')
        tables.pages.assign('src-new')
        tables.notebook.assign(notebook_key('Work'))
        self.assertEqual((tables.minted, tables.reused), (1, 2))


if __name__ == '__main__':
    unittest.main()
