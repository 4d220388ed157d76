#!/usr/bin/env python3
"""
Notebook manifest: the persisted description of one notebook's structure
and durable identifiers.

One manifest is written per notebook on every export run and read back by
both the next export (to reuse identifiers) and the importer. Records are
tagged by kind, each with an explicit field set; JSON keys are PascalCase.

Example (abridged):

    {
      "FormatVersion": 2,
      "RootName": "Work",
      "DisplayName": "Work",
      "RootId": "6f1c...",
      "ExportDate": "2024-05-01T10:00:00",
      "TotalPages": 1,
      "SectionGroups": [{"Name": "Projects", "DurableId": "...",
                         "Path": "Projects", "ParentSectionGroupId": ""}],
      "Sections": [{"Name": "Alpha", "DurableId": "...",
                    "ParentSectionGroupId": "...",
                    "SectionGroupPath": "Projects"}],
      "Pages": [{"Name": "Kickoff", "DurableId": "...", "SourceId": "0-abc",
                 "SectionId": "...", "ParentPageId": "", "Level": 1, ...}]
    }
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from run_log import logger
from sync_settings import save_json


MANIFEST_FILENAME = 'notebook_manifest.json'
FORMAT_VERSION = 2

# Older manifests linked pages by a hierarchical title path; never used now
LEGACY_PARENT_FIELD = 'ParentPagePath'


class ManifestError(ValueError):
    """Raised when a manifest document cannot be interpreted."""


class NodeKind(str, Enum):
    NOTEBOOK = 'Notebook'
    SECTION_GROUP = 'Section Group'
    SECTION = 'Section'
    PAGE = 'Page'


def _require(data: Dict[str, Any], key: str, record: str) -> Any:
    value = data.get(key)
    if value in (None, ''):
        raise ManifestError(f"{record} record is missing '{key}'")
    return value


@dataclass
class SectionGroupRecord:
    name: str
    durable_id: str
    path: str
    parent_section_group_id: str = ''
    kind: NodeKind = field(default=NodeKind.SECTION_GROUP, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'Name': self.name,
            'DurableId': self.durable_id,
            'Path': self.path,
            'ParentSectionGroupId': self.parent_section_group_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SectionGroupRecord':
        name = _require(data, 'Name', 'SectionGroup')
        return cls(
            name=name,
            durable_id=_require(data, 'DurableId', 'SectionGroup'),
            path=data.get('Path') or name,
            parent_section_group_id=data.get('ParentSectionGroupId') or '',
        )


@dataclass
class SectionRecord:
    name: str
    durable_id: str
    parent_section_group_id: str = ''
    section_group_path: str = ''
    kind: NodeKind = field(default=NodeKind.SECTION, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'Name': self.name,
            'DurableId': self.durable_id,
            'ParentSectionGroupId': self.parent_section_group_id,
            'SectionGroupPath': self.section_group_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SectionRecord':
        return cls(
            name=_require(data, 'Name', 'Section'),
            durable_id=_require(data, 'DurableId', 'Section'),
            parent_section_group_id=data.get('ParentSectionGroupId') or '',
            section_group_path=data.get('SectionGroupPath') or '',
        )


@dataclass
class PageRecord:
    name: str
    durable_id: str
    source_id: str
    section_id: str
    level: int = 1
    parent_page_id: str = ''
    order: int = 0
    created_at: Optional[str] = None
    modified_at: Optional[str] = None
    artifact_paths: List[str] = field(default_factory=list)
    kind: NodeKind = field(default=NodeKind.PAGE, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'Name': self.name,
            'DurableId': self.durable_id,
            'SourceId': self.source_id,
            'SectionId': self.section_id,
            'ParentPageId': self.parent_page_id,
            'Level': self.level,
            'Order': self.order,
            'CreatedAt': self.created_at,
            'ModifiedAt': self.modified_at,
            'ArtifactPaths': list(self.artifact_paths),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PageRecord':
        if LEGACY_PARENT_FIELD in data:
            logger.debug(f"Ignoring legacy {LEGACY_PARENT_FIELD} on page '{data.get('Name')}'")
        try:
            level = int(data.get('Level') or 1)
            order = int(data.get('Order') or 0)
        except (TypeError, ValueError) as e:
            raise ManifestError(f"Page '{data.get('Name')}' has a non-numeric level/order: {e}")
        return cls(
            name=data.get('Name') or 'Untitled',
            durable_id=_require(data, 'DurableId', 'Page'),
            source_id=data.get('SourceId') or '',
            section_id=_require(data, 'SectionId', 'Page'),
            level=max(level, 1),
            parent_page_id=data.get('ParentPageId') or '',
            order=order,
            created_at=data.get('CreatedAt'),
            modified_at=data.get('ModifiedAt'),
            artifact_paths=list(data.get('ArtifactPaths') or []),
        )


@dataclass
class NotebookManifest:
    """Everything exported for one notebook (the root of one hierarchy)."""
    root_name: str
    display_name: str = ''
    root_id: str = ''
    export_date: str = ''
    section_groups: List[SectionGroupRecord] = field(default_factory=list)
    sections: List[SectionRecord] = field(default_factory=list)
    pages: List[PageRecord] = field(default_factory=list)
    # Where the manifest was read from; artifact paths are relative to it
    path: Optional[Path] = None

    @property
    def total_pages(self) -> int:
        return len(self.pages)

    @property
    def base_dir(self) -> Optional[Path]:
        return self.path.parent if self.path else None

    def section_group_path(self, durable_id: str) -> str:
        for group in self.section_groups:
            if group.durable_id == durable_id:
                return group.path
        return ''

    def dangling_parent_refs(self) -> List[PageRecord]:
        """Pages whose ParentPageId names no page in this manifest."""
        page_ids = {p.durable_id for p in self.pages}
        return [p for p in self.pages
                if p.parent_page_id and p.parent_page_id not in page_ids]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'FormatVersion': FORMAT_VERSION,
            'RootName': self.root_name,
            'DisplayName': self.display_name or self.root_name,
            'RootId': self.root_id,
            'ExportDate': self.export_date or datetime.now().isoformat(),
            'TotalPages': self.total_pages,
            'SectionGroups': [g.to_dict() for g in self.section_groups],
            'Sections': [s.to_dict() for s in self.sections],
            'Pages': [p.to_dict() for p in self.pages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Optional[Path] = None) -> 'NotebookManifest':
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a JSON object")
        root_name = data.get('RootName') or data.get('DisplayName')
        if not root_name:
            raise ManifestError("Manifest has no RootName")
        try:
            return cls(
                root_name=root_name,
                display_name=data.get('DisplayName') or root_name,
                root_id=data.get('RootId') or '',
                export_date=data.get('ExportDate') or '',
                section_groups=[SectionGroupRecord.from_dict(g) for g in data.get('SectionGroups') or []],
                sections=[SectionRecord.from_dict(s) for s in data.get('Sections') or []],
                pages=[PageRecord.from_dict(p) for p in data.get('Pages') or []],
                path=path,
            )
        except (AttributeError, TypeError) as e:
            raise ManifestError(f"Malformed manifest record: {e}")

    def save(self, path: Path) -> Path:
        """Overwrite the manifest at ``path`` with the full current content."""
        path.parent.mkdir(parents=True, exist_ok=True)
        save_json(path, self.to_dict())
        self.path = path
        return path


def read_manifest(path: Path) -> NotebookManifest:
    """Read a manifest, raising ManifestError if it is unusable."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except ValueError as e:
        raise ManifestError(f"{path}: invalid JSON ({e})")
    return NotebookManifest.from_dict(data, path=path)


def load_previous_manifest(path: Path) -> Optional[NotebookManifest]:
    """
    Load the manifest left by an earlier export, if any.

    A corrupt file is moved aside (``.corrupt``) and treated as absent so the
    run can continue; every identifier is then minted fresh.
    """
    if not path.exists():
        return None
    try:
        manifest = read_manifest(path)
    except ManifestError as e:
        backup = path.with_suffix(path.suffix + '.corrupt')
        logger.warning(f"Previous manifest unusable, moved to {backup.name}: {e}")
        path.replace(backup)
        return None
    logger.debug(f"Loaded previous manifest {path} ({manifest.total_pages} pages)")
    return manifest


def find_manifests(source: Path) -> List[Path]:
    """Return the manifest file itself, or every manifest below a directory."""
    if source.is_file():
        return [source]
    if not source.is_dir():
        return []
    return sorted(source.rglob(MANIFEST_FILENAME))
