#!/usr/bin/env python3
"""
Notion Importer - load exported notebook manifests into a Notion database.

Every node becomes one database page whose Sync Key holds its DurableId. The
importer asks Notion for that key before creating anything, so re-running
an import (or importing a re-export) never creates a second record for the
same node. Existing records are never modified.

Order matters: notebook, section groups (outer first), sections, then pages
by ascending level, so a node's parent record always exists and is cached
before the node itself is processed.
"""

import os
import sys
import getpass
import argparse
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

from notebook_manifest import (
    ManifestError,
    NodeKind,
    NotebookManifest,
    PageRecord,
    SectionGroupRecord,
    SectionRecord,
    find_manifests,
    read_manifest,
)
from notion_client import (
    MAX_UPLOAD_BYTES,
    NotionAPIError,
    NotionClient,
    NotionRecord,
    SchemaValidationError,
    UncertainWriteError,
    paragraph_blocks,
    rich_text,
    validate_schema,
)
from run_log import logger
from step_results import Failed, NodeResult, Ok, RunStats, Skipped
from sync_settings import DEFAULT_PROPERTY_NAMES, load_settings, save_json

VERSION = "1.0.0"

SUMMARY_FILENAME = 'import_summary.json'
LOG_FILENAME = 'import_run.log'
CREATE_ATTEMPTS = 3

ManifestNode = Union[NotebookManifest, SectionGroupRecord, SectionRecord, PageRecord]


class SetupError(Exception):
    """Precondition failure; nothing has been written to Notion."""


# ============================================================================
# Bounded import planning
# ============================================================================
def plan_bounded_import(pages: List[PageRecord],
                        max_per_level: Optional[int]) -> Tuple[List[PageRecord], Set[str]]:
    """
    Choose which pages to import, in import order.

    Without a cap every page is returned, sorted by ascending level (stable
    within a level). With a cap the first ``max_per_level`` pages of each
    level are in scope, plus every ancestor an in-scope page points at. Those
    required parents are returned in the second value; they do not use up
    their level's cap.
    """
    ordered = sorted(pages, key=lambda p: p.level)
    if not max_per_level or max_per_level < 1:
        return ordered, set()

    counts: Dict[int, int] = {}
    in_cap: Set[str] = set()
    for page in ordered:
        if counts.get(page.level, 0) < max_per_level:
            counts[page.level] = counts.get(page.level, 0) + 1
            in_cap.add(page.durable_id)

    by_id = {p.durable_id: p for p in pages}
    required: Set[str] = set()
    for durable_id in in_cap:
        parent = by_id.get(by_id[durable_id].parent_page_id)
        while parent is not None and parent.durable_id not in in_cap and parent.durable_id not in required:
            required.add(parent.durable_id)
            parent = by_id.get(parent.parent_page_id)

    selected = [p for p in ordered if p.durable_id in in_cap or p.durable_id in required]
    return selected, required


# ============================================================================
# Destination record properties
# ============================================================================
def _select_option(text: str) -> str:
    # Notion select options cannot contain commas
    return text.replace(',', ' ').strip()[:100] or 'Untitled'


@dataclass
class RecordProperties:
    """Property values for one destination record, independent of Notion names."""
    kind: NodeKind
    title: str
    sync_key: str
    labels: List[str] = field(default_factory=list)
    notebook_record_id: Optional[str] = None
    parent_record_id: Optional[str] = None
    created_at: Optional[str] = None
    attachment_id: Optional[str] = None
    attachment_name: Optional[str] = None

    def to_notion(self, names: Dict[str, str]) -> Dict[str, dict]:
        props = {
            names['title']: {"title": rich_text(self.title or 'Untitled')[:1]},
            names['type']: {"select": {"name": self.kind.value}},
            names['sync_key']: {"rich_text": rich_text(self.sync_key)},
            names['labels']: {"multi_select": [{"name": _select_option(label)} for label in self.labels if label]},
        }
        if self.notebook_record_id:
            props[names['notebook']] = {"relation": [{"id": self.notebook_record_id}]}
        if self.parent_record_id:
            props[names['parent']] = {"relation": [{"id": self.parent_record_id}]}
        if self.created_at:
            props[names['date']] = {"date": {"start": self.created_at}}
        if self.attachment_id:
            props[names['attachment']] = {"files": [{
                "type": "file_upload",
                "file_upload": {"id": self.attachment_id},
                "name": self.attachment_name or 'page',
            }]}
        return props


def node_identity(node: ManifestNode) -> Tuple[NodeKind, str, str]:
    """``(kind, name, durable_id)`` of any manifest node."""
    if isinstance(node, NotebookManifest):
        return NodeKind.NOTEBOOK, node.display_name or node.root_name, node.root_id
    return node.kind, node.name, node.durable_id


# ============================================================================
# Import context (one per run)
# ============================================================================
@dataclass
class ImportContext:
    """DurableId -> Notion page id for everything seen this run."""
    records: Dict[str, str] = field(default_factory=dict)
    # DurableIds in the order their records were created this run
    created: List[str] = field(default_factory=list)

    def record_for(self, durable_id: str) -> Optional[str]:
        if not durable_id:
            return None
        return self.records.get(durable_id)

    def remember(self, durable_id: str, page_id: str, created: bool):
        self.records[durable_id] = page_id
        if created:
            self.created.append(durable_id)


# ============================================================================
# Importer
# ============================================================================
class NotionImporter:
    def __init__(self, client: NotionClient, database_id: str,
                 property_names: Optional[Dict[str, str]] = None,
                 max_per_level: Optional[int] = None,
                 max_upload_bytes: int = MAX_UPLOAD_BYTES,
                 create_attempts: int = CREATE_ATTEMPTS):
        self.client = client
        self.database_id = database_id
        self.property_names = dict(DEFAULT_PROPERTY_NAMES)
        self.property_names.update(property_names or {})
        self.max_per_level = max_per_level
        self.max_upload_bytes = max_upload_bytes
        self.create_attempts = max(1, create_attempts)
        self.context = ImportContext()
        self.stats = RunStats()
        self.manifests: List[NotebookManifest] = []

    # ========================================================================
    # Setup
    # ========================================================================

    def validate_schema(self):
        """Raise SchemaValidationError listing every problem with the database."""
        database = self.client.get_database(self.database_id)
        problems = validate_schema(database, self.property_names)
        if problems:
            raise SchemaValidationError(problems)
        logger.info("✓ Notion database schema OK")

    def load_manifests(self, paths: List[Path]) -> List[NotebookManifest]:
        manifests = []
        for path in paths:
            try:
                manifest = read_manifest(path)
            except (OSError, ManifestError) as e:
                self.stats.record(Failed(str(e)), 'Manifest', str(path))
                logger.error(f"Cannot read manifest {path}: {e}")
                continue
            dangling = manifest.dangling_parent_refs()
            if dangling:
                logger.warning(f"{manifest.root_name}: {len(dangling)} page(s) reference a parent "
                               f"missing from the manifest; they will link to their section")
            manifests.append(manifest)
        if not manifests:
            raise SetupError("No readable manifests found")
        return manifests

    # ========================================================================
    # Duplicate detection
    # ========================================================================

    def find_existing(self, durable_id: str) -> Optional[NotionRecord]:
        """The record whose Sync Key equals ``durable_id``, if Notion has one."""
        results = self.client.query_by_sync_key(
            self.database_id, self.property_names['sync_key'], durable_id)
        if not results:
            return None
        if len(results) > 1:
            logger.warning(f"{len(results)} Notion records share sync key {durable_id}; using the first")
        return NotionRecord.from_page(results[0], self.property_names['sync_key'],
                                      self.property_names['title'])

    def create_or_reuse(self, node: ManifestNode, durable_id: str,
                        parent_record_id: Optional[str],
                        notebook_record_id: Optional[str] = None,
                        manifest: Optional[NotebookManifest] = None) -> Tuple[NotionRecord, bool]:
        """
        Return ``(record, created)``. An existing record is returned untouched;
        otherwise a new one is created with ``Sync Key = durable_id``.
        """
        existing = self.find_existing(durable_id)
        if existing is not None:
            return existing, False

        kind, name, _ = node_identity(node)
        props = RecordProperties(
            kind=kind,
            title=name,
            sync_key=durable_id,
            labels=self._labels(node, manifest),
            notebook_record_id=notebook_record_id,
            parent_record_id=parent_record_id,
            created_at=getattr(node, 'created_at', None),
        )
        children = []
        if isinstance(node, PageRecord) and manifest is not None:
            children = self._page_content(node, manifest, props)

        properties = props.to_notion(self.property_names)
        for attempt in range(1, self.create_attempts + 1):
            try:
                page = self.client.create_page(self.database_id, properties, children)
                break
            except UncertainWriteError as e:
                # The create may have landed; only repeat it if the key is still absent
                logger.warning(f"Create of {kind.value} '{name}' may have been applied "
                               f"(attempt {attempt}/{self.create_attempts}): {e}")
                existing = self.find_existing(durable_id)
                if existing is not None:
                    return existing, True
                if attempt == self.create_attempts:
                    raise

        if page.get('content_incomplete'):
            logger.warning(f"{kind.value} '{name}' was created without all of its content")
        return NotionRecord(page_id=page['id'], sync_key=durable_id, title=name), True

    @staticmethod
    def _labels(node: ManifestNode, manifest: Optional[NotebookManifest]) -> List[str]:
        labels = ['OneNote']
        if manifest is not None and not isinstance(node, NotebookManifest):
            labels.append(manifest.display_name or manifest.root_name)
        return labels

    def _page_content(self, page: PageRecord, manifest: NotebookManifest,
                      props: RecordProperties) -> List[dict]:
        """Text blocks from the .txt artifact; the first other artifact is attached."""
        base = manifest.base_dir or Path('.')
        blocks: List[dict] = []
        for rel in page.artifact_paths:
            path = base / rel
            try:
                if path.suffix.lower() == '.txt':
                    blocks = paragraph_blocks(path.read_text(encoding='utf-8'))
                elif props.attachment_id is None:
                    self._attach(path, props)
            except OSError as e:
                logger.warning(f"Cannot read artifact {path}: {e}")
        return blocks

    def _attach(self, path: Path, props: RecordProperties):
        size = path.stat().st_size
        if size > self.max_upload_bytes:
            logger.warning(f"Skipping attachment {path.name}: {size / 1024 / 1024:.1f} MB exceeds "
                           f"{self.max_upload_bytes / 1024 / 1024:.0f} MB upload limit")
            return
        try:
            props.attachment_id = self.client.upload_attachment(path.read_bytes(), path.name)
            props.attachment_name = path.name
        except NotionAPIError as e:
            logger.warning(f"Upload of {path.name} failed, creating record without it: {e}")

    # ========================================================================
    # Traversal
    # ========================================================================

    def _import_node(self, node: ManifestNode, parent_record_id: Optional[str],
                     notebook_record_id: Optional[str], manifest: NotebookManifest,
                     location: str) -> NodeResult:
        kind, name, durable_id = node_identity(node)
        cached = self.context.record_for(durable_id)
        if cached:
            result = Skipped("already imported this run", value=cached, duplicate=True)
            return self.stats.record(result, kind.value, location)

        try:
            record, created = self.create_or_reuse(node, durable_id, parent_record_id,
                                                   notebook_record_id, manifest)
        except NotionAPIError as e:
            logger.error(f"Failed to import {kind.value} '{location}': {e}")
            return self.stats.record(Failed(str(e)), kind.value, location)

        self.context.remember(durable_id, record.page_id, created)
        if created:
            logger.debug(f"Created {kind.value} '{location}' -> {record.page_id}")
            result = Ok(record.page_id)
        else:
            logger.debug(f"Exists {kind.value} '{location}' -> {record.page_id}")
            result = Skipped("record with this sync key exists", value=record.page_id, duplicate=True)
        return self.stats.record(result, kind.value, location)

    def import_all(self, manifests: List[NotebookManifest]) -> RunStats:
        for manifest in manifests:
            self.import_manifest(manifest)
            self.manifests.append(manifest)
        return self.stats

    def import_manifest(self, manifest: NotebookManifest):
        root = manifest.display_name or manifest.root_name
        logger.info(f"\n📓 {root}: {len(manifest.section_groups)} groups, "
                    f"{len(manifest.sections)} sections, {manifest.total_pages} pages")

        notebook_record_id = None
        if manifest.root_id:
            self._import_node(manifest, None, None, manifest, root)
            notebook_record_id = self.context.record_for(manifest.root_id)
        else:
            logger.warning(f"{root}: manifest has no RootId; records will not be linked to a notebook")

        group_paths = {g.durable_id: g.path for g in manifest.section_groups}
        for group in sorted(manifest.section_groups, key=lambda g: g.path.count('/')):
            parent = self.context.record_for(group.parent_section_group_id) or notebook_record_id
            self._import_node(group, parent, notebook_record_id, manifest, f"{root}/{group.path}")

        section_paths = {}
        for section in manifest.sections:
            group_path = section.section_group_path or group_paths.get(section.parent_section_group_id, '')
            location = '/'.join(p for p in (root, group_path, section.name) if p)
            section_paths[section.durable_id] = location
            parent = self.context.record_for(section.parent_section_group_id) or notebook_record_id
            self._import_node(section, parent, notebook_record_id, manifest, location)

        self._import_pages(manifest, notebook_record_id, section_paths, root)

    def _import_pages(self, manifest: NotebookManifest, notebook_record_id: Optional[str],
                      section_paths: Dict[str, str], root: str):
        selected, required = plan_bounded_import(manifest.pages, self.max_per_level)
        if self.max_per_level:
            selected_ids = {p.durable_id for p in selected}
            for page in manifest.pages:
                if page.durable_id not in selected_ids:
                    location = f"{section_paths.get(page.section_id, root)}/{page.name}"
                    self.stats.record(Skipped(f"over max_per_level={self.max_per_level}"),
                                      NodeKind.PAGE.value, location)
            if required:
                logger.info(f"   {len(required)} parent page(s) imported beyond the per-level cap")

        for page in selected:
            location = f"{section_paths.get(page.section_id, root)}/{page.name}"
            parent = self._resolve_page_parent(page, notebook_record_id, location)
            self._import_node(page, parent, notebook_record_id, manifest, location)

    def _resolve_page_parent(self, page: PageRecord, notebook_record_id: Optional[str],
                             location: str) -> Optional[str]:
        section_record = self.context.record_for(page.section_id)
        if page.level > 1:
            parent = self.context.record_for(page.parent_page_id)
            if parent:
                return parent
            self.stats.fallbacks += 1
            reason = "has no parent page id" if not page.parent_page_id else "parent page was not imported"
            logger.warning(f"'{location}' {reason}; linking to its section")
        if section_record:
            return section_record
        logger.warning(f"Section of '{location}' was not imported; linking to the notebook")
        return notebook_record_id

    # ========================================================================
    # Reporting
    # ========================================================================

    def save_summary(self, path: Path, started: datetime):
        summary = {
            'version': VERSION,
            'started': started.isoformat(),
            'finished': datetime.now().isoformat(),
            'database_id': self.database_id,
            'max_per_level': self.max_per_level,
            'notebooks': [
                {'name': m.root_name, 'manifest': str(m.path), 'pages': m.total_pages}
                for m in self.manifests
            ],
            'created': len(self.context.created),
            'stats': self.stats.to_dict(),
        }
        save_json(path, summary)

    def print_final_summary(self):
        print()
        for line in self.stats.summary_lines("IMPORT COMPLETE - FINAL SUMMARY"):
            print(line)
        print(f"🆕 Records created this run: {len(self.context.created)}")


# ============================================================================
# Main Entry Point
# ============================================================================
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f'Notion Importer v{VERSION}')
    parser.add_argument('--source', type=str, required=True,
                        help='Export directory or a single notebook_manifest.json')
    parser.add_argument('--api-key', type=str,
                        help='Notion integration token (default: $NOTION_TOKEN)')
    parser.add_argument('--database', type=str,
                        help='Target Notion database id')
    parser.add_argument('--max-per-level', type=int,
                        help='Import at most N pages per level (required parents excepted)')
    parser.add_argument('--settings', type=str,
                        help='Settings file path')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    started = datetime.now()

    print("=" * 70)
    print(f"Notion Importer v{VERSION}")
    print("Sync keys • Parent relations • Re-runnable")
    print("=" * 70)

    settings = load_settings(Path(args.settings) if args.settings else None)
    import_settings = settings['import']

    source = Path(args.source)
    manifest_paths = find_manifests(source)
    if not manifest_paths:
        logger.error(f"No manifests found at {source}")
        return 1
    summary_dir = source if source.is_dir() else source.parent
    logger.set_log_file(summary_dir / LOG_FILENAME)
    logger.info(f"Found {len(manifest_paths)} manifest(s) under {source}")

    database_id = args.database or import_settings.get('database_id')
    if not database_id:
        logger.error("No database id given (--database or import.database_id in settings.json)")
        return 1

    token = args.api_key or os.environ.get('NOTION_TOKEN')
    if token:
        logger.info("✓ Notion token loaded")
    else:
        print("\n🔐 Notion integration token required (never stored on disk)")
        token = getpass.getpass("Enter Notion token (hidden): ")
    if not token:
        logger.error("Notion token is required")
        return 1

    max_per_level = args.max_per_level if args.max_per_level is not None else import_settings.get('max_per_level')
    if max_per_level is not None and max_per_level < 1:
        logger.error(f"max_per_level must be at least 1 (got {max_per_level}); omit it to import everything")
        return 1
    client = NotionClient(token, request_delay=import_settings.get('request_delay', 0.35))
    importer = NotionImporter(
        client,
        database_id,
        property_names=import_settings.get('properties'),
        max_per_level=max_per_level,
        max_upload_bytes=int(import_settings.get('max_upload_mb', 20) * 1024 * 1024),
    )

    try:
        manifests = importer.load_manifests(manifest_paths)
        importer.validate_schema()
    except SetupError as e:
        logger.error(str(e))
        return 1
    except SchemaValidationError as e:
        logger.error(str(e))
        return 1
    except NotionAPIError as e:
        logger.error(f"Cannot read Notion database {database_id}: {e}")
        return 1

    try:
        importer.import_all(manifests)
    except KeyboardInterrupt:
        logger.warning("Import interrupted - re-run to continue; existing records are skipped")
        return 1
    finally:
        importer.save_summary(summary_dir / SUMMARY_FILENAME, started)
        logger.debug(f"Notion requests: {client.request_count}")

    importer.print_final_summary()
    logger.close_log_file()
    return 0


if __name__ == "__main__":
    sys.exit(main())
