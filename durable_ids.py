#!/usr/bin/env python3
"""
Durable identifiers and the lookup tables that carry them across exports.

OneNote only gives pages an identifier that survives renames, so containers
are recognised by name within their scope:

    Notebook      (root,)
    Section group (root, group path)           e.g. ("Work", "Projects/2024")
    Section       (root, group path or "", section name)
    Page          source page id

Renaming a container therefore gives it a new DurableId. A page keeps its
DurableId for as long as OneNote keeps its page id.
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Optional, Tuple

from notebook_manifest import NodeKind, NotebookManifest
from run_log import logger


def mint_durable_id() -> str:
    """New random 128-bit identifier."""
    return str(uuid.uuid4())


def notebook_key(root_name: str) -> Tuple[str]:
    return (root_name,)


def section_group_key(root_name: str, group_path: str) -> Tuple[str, str]:
    return (root_name, group_path)


def section_key(root_name: str, group_path: str, section_name: str) -> Tuple[str, str, str]:
    return (root_name, group_path or '', section_name)


def page_key(source_id: str) -> str:
    return source_id


class IdentifierLookupTable:
    """
    Stability key -> previously minted DurableId for one node kind.

    A key may map to several ids when an earlier export saw siblings with
    the same name; they are handed out in manifest order and never twice in
    one run, so two distinct nodes cannot end up sharing an id.
    """

    def __init__(self, kind: NodeKind):
        self.kind = kind
        self._entries: Dict[Hashable, List[str]] = OrderedDict()
        self._issued: set = set()
        self.minted = 0
        self.reused = 0

    def add(self, key: Hashable, durable_id: str):
        if not durable_id:
            return
        self._entries.setdefault(key, []).append(durable_id)

    def __len__(self) -> int:
        return sum(len(ids) for ids in self._entries.values())

    def __contains__(self, key: Hashable) -> bool:
        return self.lookup(key) is not None

    def lookup(self, key: Hashable) -> Optional[str]:
        """Next unissued id recorded for ``key``, without issuing it."""
        for durable_id in self._entries.get(key, ()):
            if durable_id not in self._issued:
                return durable_id
        return None

    def claim(self, durable_id: str):
        """Mark an id as taken without looking it up (records kept verbatim)."""
        self._issued.add(durable_id)

    def is_issued(self, durable_id: str) -> bool:
        return durable_id in self._issued

    def assign(self, key: Hashable) -> Tuple[str, bool]:
        """Return ``(durable_id, reused)`` for ``key``, minting on a miss."""
        durable_id = self.lookup(key)
        reused = durable_id is not None
        if reused:
            self.reused += 1
        else:
            durable_id = mint_durable_id()
            self.minted += 1
        self._issued.add(durable_id)
        logger.debug(f"{'reused' if reused else 'minted'} {self.kind.value} id {durable_id} for {key!r}")
        return durable_id, reused


@dataclass
class LookupTables:
    """The per-kind tables for one notebook, owned by one export run."""
    root_name: str
    notebook: IdentifierLookupTable = field(
        default_factory=lambda: IdentifierLookupTable(NodeKind.NOTEBOOK))
    section_groups: IdentifierLookupTable = field(
        default_factory=lambda: IdentifierLookupTable(NodeKind.SECTION_GROUP))
    sections: IdentifierLookupTable = field(
        default_factory=lambda: IdentifierLookupTable(NodeKind.SECTION))
    pages: IdentifierLookupTable = field(
        default_factory=lambda: IdentifierLookupTable(NodeKind.PAGE))

    @property
    def minted(self) -> int:
        return sum(t.minted for t in self._tables())

    @property
    def reused(self) -> int:
        return sum(t.reused for t in self._tables())

    def _tables(self) -> List[IdentifierLookupTable]:
        return [self.notebook, self.section_groups, self.sections, self.pages]

    @classmethod
    def from_manifest(cls, root_name: str,
                      manifest: Optional[NotebookManifest]) -> 'LookupTables':
        """Build tables from the previous manifest (empty when there is none)."""
        tables = cls(root_name)
        if manifest is None:
            return tables

        if manifest.root_id:
            tables.notebook.add(notebook_key(root_name), manifest.root_id)

        for group in manifest.section_groups:
            tables.section_groups.add(section_group_key(root_name, group.path), group.durable_id)

        for section in manifest.sections:
            group_path = section.section_group_path
            if not group_path and section.parent_section_group_id:
                group_path = manifest.section_group_path(section.parent_section_group_id)
            tables.sections.add(section_key(root_name, group_path, section.name), section.durable_id)

        skipped = 0
        for page in manifest.pages:
            if not page.source_id:
                skipped += 1
                continue
            tables.pages.add(page_key(page.source_id), page.durable_id)
        if skipped:
            logger.debug(f"{skipped} page(s) in previous manifest have no SourceId and cannot be matched")

        logger.debug(
            f"Lookup tables for '{root_name}': {len(tables.section_groups)} groups, "
            f"{len(tables.sections)} sections, {len(tables.pages)} pages"
        )
        return tables
