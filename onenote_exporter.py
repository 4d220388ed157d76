#!/usr/bin/env python3
"""
OneNote Exporter
Exports OneNote notebooks to a local artifact tree plus one manifest per
notebook, assigning every notebook, section group, section and page a
durable identifier that survives re-runs.

Features:
- Durable ids reused from the previous manifest (pages by OneNote page id,
  containers by name within their notebook / group)
- Page hierarchy from OneNote page levels, with ancestor search across gaps
- Per-node failures never stop the run; locked sections retried once
- Placeholder artifacts for empty pages
- File logging (run.log) and export_summary.json
"""

import os
import html
import sys
import time
import getpass
import argparse
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse, parse_qs

from dialog_watchdog import DialogWatchdog
from durable_ids import (
    LookupTables,
    notebook_key,
    page_key,
    section_group_key,
    section_key,
)
from graph_client import GraphClient
from notebook_manifest import (
    MANIFEST_FILENAME,
    NodeKind,
    NotebookManifest,
    PageRecord,
    SectionGroupRecord,
    SectionRecord,
    load_previous_manifest,
)
from onenote_source import (
    AccessDeniedError,
    GraphOneNoteSource,
    HierarchySource,
    NodeNotFoundError,
    RenderedPage,
    SourceError,
    SourceNode,
    SourceUnavailableError,
    TransientSourceError,
)
from path_planner import PageNameStack, page_artifact_base, path_to_posix, sanitize_path_name
from run_log import logger
from step_results import Failed, NodeResult, Ok, RunStats, Skipped
from sync_settings import load_settings, save_json

VERSION = "1.0.0"

EMPTY_PAGE_PLACEHOLDER = (
    "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\"><title>{title}</title></head>"
    "<body><p><em>This page had no content when it was exported.</em></p></body></html>\n"
)


# ============================================================================
# Page parent tracking
# ============================================================================
class PageParentTracker:
    """
    Level -> DurableId of the most recent successfully exported page.

    A page at level L is a child of the id recorded at L-1. When that level
    is empty (the page there failed), the nearest shallower recorded level
    is used instead and the gap is counted.
    """

    def __init__(self):
        self._ids: Dict[int, str] = {}
        self.gaps = 0

    def resolve_parent(self, level: int) -> Tuple[str, bool]:
        """Return ``(parent_durable_id or '', gap_detected)`` for a page at ``level``."""
        if level <= 1:
            return '', False
        if level - 1 in self._ids:
            return self._ids[level - 1], False

        self.gaps += 1
        for lvl in range(level - 2, 0, -1):
            if lvl in self._ids:
                return self._ids[lvl], True
        return '', True

    def record(self, level: int, durable_id: Optional[str]):
        """Record the page just visited; ``None`` when it failed to export."""
        if durable_id:
            self._ids[level] = durable_id
        else:
            self._ids.pop(level, None)
        for deeper in [lvl for lvl in self._ids if lvl > level]:
            del self._ids[deeper]


# ============================================================================
# Per-notebook run state
# ============================================================================
@dataclass
class ExportContext:
    """Everything one notebook export owns; discarded when the notebook is done."""
    root: SourceNode
    notebook_dir: Path
    tables: LookupTables
    manifest: NotebookManifest
    previous: Optional[NotebookManifest] = None
    deferred_sections: List[Tuple[SourceNode, SectionRecord, Path, str]] = field(default_factory=list)

    def previous_pages_for(self, section_id: str) -> List[PageRecord]:
        if not self.previous:
            return []
        return [p for p in self.previous.pages if p.section_id == section_id]

    def previous_page(self, source_id: str) -> Optional[PageRecord]:
        if not self.previous:
            return None
        for page in self.previous.pages:
            if page.source_id == source_id:
                return page
        return None


# ============================================================================
# OneNote Exporter
# ============================================================================
class OneNoteExporter:
    """Walks the source hierarchy and writes artifacts and manifests."""

    def __init__(self, source: HierarchySource, output_root: Path,
                 include_subpages: bool = True, show_progress: bool = False,
                 transient_retries: int = 3, transient_delay: float = 2.0,
                 retry_locked: bool = True, watchdog_interval: float = 0.5):
        self.source = source
        self.output_root = Path(output_root)
        self.include_subpages = include_subpages
        self.show_progress = show_progress
        self.transient_retries = max(0, transient_retries)
        self.transient_delay = transient_delay
        self.retry_locked = retry_locked
        self.watchdog_interval = watchdog_interval
        self.stats = RunStats()
        self.manifests: List[NotebookManifest] = []

    @classmethod
    def from_settings(cls, source: HierarchySource, output_root: Path,
                      settings: Dict[str, Any], **overrides) -> 'OneNoteExporter':
        export_settings = dict(settings.get('export', {}))
        export_settings.update({k: v for k, v in overrides.items() if v is not None})
        return cls(
            source,
            output_root,
            include_subpages=export_settings.get('include_subpages', True),
            show_progress=export_settings.get('show_progress', False),
            transient_retries=export_settings.get('transient_retries', 3),
            transient_delay=export_settings.get('transient_delay', 2.0),
            retry_locked=export_settings.get('retry_locked', True),
            watchdog_interval=export_settings.get('watchdog_interval', 0.5),
        )

    # =========================================================================
    # Entry points
    # =========================================================================

    def export_all(self, notebook_filter: Optional[str] = None) -> RunStats:
        """
        Export every notebook (or only the one named ``notebook_filter``).

        Raises SourceUnavailableError when the notebooks cannot be listed.
        """
        self.output_root.mkdir(parents=True, exist_ok=True)
        started = datetime.now()

        with DialogWatchdog(self.source.dismiss_blocking_dialogs, self.watchdog_interval):
            roots = self._call_with_retry(self.source.get_roots, context="list notebooks")
            if notebook_filter:
                roots = [r for r in roots if r.name == notebook_filter]
                if not roots:
                    logger.warning(f"No notebook named '{notebook_filter}'")

            for nb_idx, root in enumerate(roots, 1):
                logger.info(f"\n[{nb_idx}/{len(roots)}] 📓 {root.name}")
                self.export_notebook(root)

        self._save_export_summary(started)
        return self.stats

    def export_notebook(self, root: SourceNode) -> NotebookManifest:
        """Export one notebook and overwrite its manifest."""
        notebook_dir = self.output_root / sanitize_path_name(root.name)
        notebook_dir.mkdir(parents=True, exist_ok=True)
        manifest_path = notebook_dir / MANIFEST_FILENAME

        previous = load_previous_manifest(manifest_path)
        tables = LookupTables.from_manifest(root.name, previous)
        root_id, _ = tables.notebook.assign(notebook_key(root.name))

        ctx = ExportContext(
            root=root,
            notebook_dir=notebook_dir,
            tables=tables,
            manifest=NotebookManifest(
                root_name=root.name,
                display_name=root.name,
                root_id=root_id,
                export_date=datetime.now().isoformat(),
            ),
            previous=previous,
        )
        readable = self._export_container_children(root, ctx, notebook_dir, group_path='',
                                                   group_id='', location=root.name,
                                                   durable_id=root_id)
        if not readable:
            # Keep the previous manifest rather than replace it with an empty one
            logger.warning(f"Notebook '{root.name}' could not be read; manifest left unchanged")
            return previous or ctx.manifest

        if ctx.deferred_sections and self.retry_locked:
            self._retry_deferred_sections(ctx)

        ctx.manifest.save(manifest_path)
        self.stats.minted += tables.minted
        self.stats.reused += tables.reused
        self.manifests.append(ctx.manifest)

        logger.info(
            f"   ✓ {ctx.manifest.total_pages} pages, ids: {tables.minted} new / "
            f"{tables.reused} reused → {manifest_path}"
        )
        return ctx.manifest

    # =========================================================================
    # Containers
    # =========================================================================

    def _list_children(self, container: SourceNode,
                       location: str) -> Tuple[Optional[List[SourceNode]], NodeResult]:
        try:
            children = self._call_with_retry(self.source.get_children, container, context=location)
        except AccessDeniedError as e:
            return None, Skipped(f"access denied: {e}")
        except NodeNotFoundError as e:
            return None, Skipped(f"no longer exists: {e}")
        except SourceError as e:
            return None, Failed(str(e))
        return children, Ok()

    def _export_container_children(self, container: SourceNode, ctx: ExportContext,
                                   folder: Path, group_path: str, group_id: str,
                                   location: str, durable_id: str) -> bool:
        """Export the sections and groups below a container; False if it was unreadable."""
        children, result = self._list_children(container, location)
        if children is None:
            self.stats.record(result, container.kind.value, location)
            logger.warning(f"Cannot read {location}: {result.reason}")
            return False
        self.stats.record(Ok(durable_id), container.kind.value, location)

        for child in children:
            child_location = f"{location}/{child.name}"
            if child.kind == NodeKind.SECTION:
                self._export_section(child, ctx, folder, group_path, group_id, child_location)
            elif child.kind == NodeKind.SECTION_GROUP:
                self._export_section_group(child, ctx, folder, group_path, group_id, child_location)
        return True

    def _export_section_group(self, group: SourceNode, ctx: ExportContext, parent_folder: Path,
                              parent_path: str, parent_group_id: str, location: str):
        path = f"{parent_path}/{group.name}" if parent_path else group.name
        durable_id, _ = ctx.tables.section_groups.assign(section_group_key(ctx.root.name, path))
        ctx.manifest.section_groups.append(SectionGroupRecord(
            name=group.name,
            durable_id=durable_id,
            path=path,
            parent_section_group_id=parent_group_id,
        ))
        logger.info(f"   📁 {path}")

        folder = parent_folder / sanitize_path_name(group.name)
        folder.mkdir(parents=True, exist_ok=True)
        if not self._export_container_children(group, ctx, folder, path, durable_id, location, durable_id):
            self._carry_forward_group(ctx, path)

    def _export_section(self, section: SourceNode, ctx: ExportContext, parent_folder: Path,
                        group_path: str, group_id: str, location: str):
        durable_id, _ = ctx.tables.sections.assign(section_key(ctx.root.name, group_path, section.name))
        record = SectionRecord(
            name=section.name,
            durable_id=durable_id,
            parent_section_group_id=group_id,
            section_group_path=group_path,
        )
        # The section keeps its id even when its pages cannot be read
        ctx.manifest.sections.append(record)

        folder = parent_folder / sanitize_path_name(section.name)
        pages, result = self._list_children(section, location)
        if pages is None:
            self.stats.record(result, NodeKind.SECTION.value, location)
            logger.warning(f"Section '{location}' skipped: {result.reason}")
            locked = isinstance(result, Skipped) and result.reason.startswith('access denied')
            if locked and self.retry_locked:
                ctx.deferred_sections.append((section, record, folder, location))
            else:
                self._carry_forward_pages(ctx, record, location)
            return

        self.stats.record(Ok(durable_id), NodeKind.SECTION.value, location)
        self._export_pages(pages, ctx, record, folder, location)

    def _retry_deferred_sections(self, ctx: ExportContext):
        """Second attempt at sections that were locked earlier in this run."""
        deferred, ctx.deferred_sections = ctx.deferred_sections, []
        logger.info(f"   🔁 Retrying {len(deferred)} locked section(s)...")
        for section, record, folder, location in deferred:
            pages, result = self._list_children(section, location)
            if pages is None:
                logger.warning(f"Section '{location}' still unavailable: {result.reason}")
                self._carry_forward_pages(ctx, record, location)
                continue
            logger.info(f"      ✓ {location} is readable now")
            self._export_pages(pages, ctx, record, folder, location)

    def _carry_forward_pages(self, ctx: ExportContext, record: SectionRecord, location: str):
        """Keep the previous run's page records for a section that could not be read."""
        carried = [p for p in ctx.previous_pages_for(record.durable_id)
                   if self._keep_record(ctx, p)]
        if carried:
            logger.info(f"      ↳ kept {len(carried)} page record(s) from the previous export of {location}")

    def _carry_forward_group(self, ctx: ExportContext, path: str):
        """Keep everything the previous run saw below an unreadable section group."""
        if not ctx.previous:
            return
        prefix = f"{path}/"
        for group in ctx.previous.section_groups:
            if group.path.startswith(prefix) and not ctx.tables.section_groups.is_issued(group.durable_id):
                ctx.tables.section_groups.claim(group.durable_id)
                ctx.manifest.section_groups.append(group)
        for section in ctx.previous.sections:
            inside = section.section_group_path == path or section.section_group_path.startswith(prefix)
            if inside and not ctx.tables.sections.is_issued(section.durable_id):
                ctx.tables.sections.claim(section.durable_id)
                ctx.manifest.sections.append(section)
                self._carry_forward_pages(ctx, section, f"{ctx.root.name}/{path}/{section.name}")

    @staticmethod
    def _keep_record(ctx: ExportContext, page: PageRecord) -> bool:
        """Append a previous page record verbatim unless its id is already taken."""
        if ctx.tables.pages.is_issued(page.durable_id):
            return False
        ctx.tables.pages.claim(page.durable_id)
        ctx.manifest.pages.append(page)
        return True

    # =========================================================================
    # Pages
    # =========================================================================

    def _export_pages(self, pages: List[SourceNode], ctx: ExportContext,
                      section: SectionRecord, folder: Path, location: str):
        if not self.include_subpages:
            pages = [p for p in pages if p.level <= 1]

        total = len(pages)
        child_count = sum(1 for p in pages if p.level > 1)
        child_info = f" ({child_count} child)" if child_count else ""
        logger.info(f"      📑 {section.name} ({total} pages{child_info})")

        tracker = PageParentTracker()
        names = PageNameStack()

        for idx, page in enumerate(pages, 1):
            page_location = f"{location}/{page.name}"
            if self.show_progress:
                indent = "  " * (page.level - 1)
                sys.stdout.write(f"\r         [{idx}/{total}] {indent}{page.name[:35]:<35}")
                sys.stdout.flush()

            parent_id, gap = tracker.resolve_parent(page.level)
            if gap:
                self.stats.gaps += 1
                target = f"ancestor {parent_id}" if parent_id else "the section"
                logger.warning(f"Hierarchy gap at '{page_location}' (level {page.level}); linking to {target}")

            artifact_base = page_artifact_base(folder, names.ancestors(page.level), idx, total, page.name)
            result = self._export_page(page, ctx, section, parent_id, artifact_base)
            self.stats.record(result, NodeKind.PAGE.value, page_location)

            names.record(page.level, page.name)
            tracker.record(page.level, result.value if isinstance(result, Ok) else None)

            if isinstance(result, Failed):
                logger.debug(f"Page '{page_location}' failed: {result.reason}")
                self._keep_previous_record(ctx, page)
            elif isinstance(result, Skipped):
                logger.debug(f"Page '{page_location}' skipped: {result.reason}")

        if self.show_progress and total:
            sys.stdout.write("\r" + " " * 80 + "\r")
            sys.stdout.flush()

    def _keep_previous_record(self, ctx: ExportContext, page: SourceNode):
        """A page that failed this run keeps its earlier record (and id) in the manifest."""
        previous = ctx.previous_page(page.source_id)
        if previous and self._keep_record(ctx, previous):
            logger.debug(f"Kept previous record for failed page '{page.name}'")

    def _export_page(self, page: SourceNode, ctx: ExportContext, section: SectionRecord,
                     parent_id: str, artifact_base: Path) -> NodeResult:
        """Render and write one page. Ok carries the page's DurableId."""
        try:
            rendered = self._call_with_retry(self.source.render, page, context=page.name)
        except NodeNotFoundError as e:
            return Skipped(f"no longer exists: {e}")
        except SourceError as e:
            return Failed(str(e))

        try:
            artifact_paths = self._write_artifacts(page, rendered, artifact_base, ctx.notebook_dir)
        except OSError as e:
            return Failed(f"could not write artifacts: {e}")

        durable_id, _ = ctx.tables.pages.assign(page_key(page.source_id))
        ctx.manifest.pages.append(PageRecord(
            name=page.name,
            durable_id=durable_id,
            source_id=page.source_id,
            section_id=section.durable_id,
            level=page.level,
            parent_page_id=parent_id,
            order=page.order,
            created_at=rendered.created_at or page.created_at,
            modified_at=rendered.modified_at or page.modified_at,
            artifact_paths=artifact_paths,
        ))
        return Ok(durable_id)

    def _write_artifacts(self, page: SourceNode, rendered: RenderedPage,
                         artifact_base: Path, notebook_dir: Path) -> List[str]:
        artifact_base.parent.mkdir(parents=True, exist_ok=True)
        primary = artifact_base.with_name(f"{artifact_base.name}.{rendered.extension}")
        text_path = artifact_base.with_name(f"{artifact_base.name}.txt")

        if rendered.is_empty:
            logger.debug(f"Page '{page.name}' is empty, writing placeholder")
            content = EMPTY_PAGE_PLACEHOLDER.format(title=html.escape(page.name)).encode('utf-8')
        else:
            content = rendered.content

        primary.write_bytes(content)
        text_path.write_text(rendered.text or '', encoding='utf-8')
        return [path_to_posix(primary, notebook_dir), path_to_posix(text_path, notebook_dir)]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _call_with_retry(self, fn: Callable, *args, context: str = ""):
        """Retry TransientSourceError a bounded number of times with a fixed delay."""
        for attempt in range(self.transient_retries + 1):
            try:
                return fn(*args)
            except TransientSourceError as e:
                if attempt == self.transient_retries:
                    raise
                logger.warning(f"Transient error, retry {attempt + 1}/{self.transient_retries} "
                               f"in {self.transient_delay}s [{context}]: {e}")
                time.sleep(self.transient_delay)

    def _save_export_summary(self, started: datetime):
        summary = {
            'version': VERSION,
            'started': started.isoformat(),
            'finished': datetime.now().isoformat(),
            'export_path': str(self.output_root),
            'include_subpages': self.include_subpages,
            'notebooks': [
                {
                    'name': m.root_name,
                    'root_id': m.root_id,
                    'manifest': str(m.path),
                    'pages': m.total_pages,
                }
                for m in self.manifests
            ],
            'stats': self.stats.to_dict(),
        }
        save_json(self.output_root / 'export_summary.json', summary)

    def print_final_summary(self):
        print()
        for line in self.stats.summary_lines("EXPORT COMPLETE - FINAL SUMMARY"):
            print(line)
        print(f"📂 Export location: {self.output_root}")
        print(f"📄 Files: {MANIFEST_FILENAME} per notebook, export_summary.json, run.log")


# ============================================================================
# Authentication
# ============================================================================
def authenticate(graph: GraphClient) -> bool:
    """Interactive authorization-code flow against Microsoft identity."""
    if not graph.client_id:
        print("\n📋 You need a Microsoft App Registration to use this tool.")
        print("1. Go to: https://entra.microsoft.com/")
        print("2. App registrations → New registration")
        print("3. Redirect URI: Web → http://localhost:8080")
        print("4. Add API permissions: Notes.Read, Notes.Read.All, User.Read")
        graph.client_id = input("Enter Application (client) ID: ").strip()
        if not graph.client_id:
            logger.error("Client ID is required")
            return False

    # Client secret - check env var first, then prompt
    graph.client_secret = os.environ.get('ONENOTE_CLIENT_SECRET')
    if graph.client_secret:
        logger.info("✓ Client secret loaded from ONENOTE_CLIENT_SECRET env var")
    else:
        print("\n🔐 Client secret required (never stored on disk)")
        graph.client_secret = getpass.getpass("Enter Client Secret (hidden): ")
    if not graph.client_secret:
        logger.error("Client secret is required")
        return False

    logger.info("\n🔐 Starting authentication...")
    print("Opening browser for authentication...")
    webbrowser.open(graph.get_auth_url())
    print("\nAfter signing in, copy the full URL from your browser.")
    print("(It will show an error page, but that's normal)")
    redirect_response = input("\nPaste the redirect URL here: ").strip()

    try:
        code = parse_qs(urlparse(redirect_response).query)['code'][0]
    except (KeyError, IndexError):
        logger.error("Could not extract authorization code from URL")
        return False

    if not graph.exchange_code_for_token(code):
        return False

    user = graph.get_user_info() or {}
    if user:
        logger.info(f"   Signed in as: {user.get('displayName', 'Unknown')}")
    return True


# ============================================================================
# Main Entry Point
# ============================================================================
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f'OneNote Exporter v{VERSION}')
    parser.add_argument('--output', type=str,
                        help='Output directory (re-use the same one to keep ids stable)')
    parser.add_argument('--include-subpages', action=argparse.BooleanOptionalAction, default=None,
                        help='Export subpages (default: on)')
    parser.add_argument('--show-progress', action='store_true', default=None,
                        help='Show a per-page progress line')
    parser.add_argument('--notebook', type=str,
                        help='Export only the notebook with this name')
    parser.add_argument('--settings', type=str,
                        help='Settings file path')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    print("=" * 70)
    print(f"OneNote Exporter v{VERSION}")
    print("Durable ids • Page hierarchy • Re-runnable")
    print("=" * 70)

    settings = load_settings(Path(args.settings) if args.settings else None)
    output = args.output or settings['export'].get('output_root')
    if not output:
        logger.error("No output directory given (--output or export.output_root in settings.json)")
        return 1
    output_root = Path(output)
    output_root.mkdir(parents=True, exist_ok=True)
    logger.set_log_file(output_root / 'run.log')
    logger.info(f"Export started at {datetime.now().isoformat()}")
    logger.info(f"Export destination: {output_root}")

    graph = GraphClient(max_retries=settings['export'].get('max_retries', 10))
    graph.client_id = settings['auth'].get('client_id') or os.environ.get('ONENOTE_CLIENT_ID')
    graph.tenant_id = settings['auth'].get('tenant') or 'consumers'

    if not authenticate(graph):
        logger.error("Authentication failed")
        return 1

    exporter = OneNoteExporter.from_settings(
        GraphOneNoteSource(graph),
        output_root,
        settings,
        include_subpages=args.include_subpages,
        show_progress=args.show_progress,
    )

    try:
        exporter.export_all(notebook_filter=args.notebook)
    except SourceUnavailableError as e:
        logger.error(f"OneNote is not reachable: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Export interrupted - re-run with the same --output to continue")
        return 1
    finally:
        logger.debug(f"API requests: {graph.request_count}, API errors: {graph.error_count}")

    exporter.print_final_summary()
    logger.close_log_file()
    return 0


if __name__ == "__main__":
    sys.exit(main())
