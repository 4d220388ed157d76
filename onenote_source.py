#!/usr/bin/env python3
"""
Source hierarchy reader: notebooks, section groups, sections and pages.

HierarchySource is what the exporter walks. GraphOneNoteSource implements it
on top of the Microsoft Graph OneNote API; tests substitute in-memory
sources.
"""

import re
import html
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from graph_client import GraphClient
from notebook_manifest import NodeKind
from run_log import logger


# ============================================================================
# Errors
# ============================================================================
class SourceError(Exception):
    """A node could not be read from the source."""


class AccessDeniedError(SourceError):
    """Locked or password-protected container."""


class NodeNotFoundError(SourceError):
    """The node was deleted between enumeration and reading."""


class TransientSourceError(SourceError):
    """Lock contention, throttling or temporary unavailability."""


class SourceUnavailableError(SourceError):
    """The source cannot be reached at all (setup failure)."""


# ============================================================================
# Data Classes
# ============================================================================
@dataclass
class SourceNode:
    """One element of the source hierarchy."""
    kind: NodeKind
    source_id: str
    name: str
    level: int = 0  # 1-based for pages, 0 for containers
    order: int = 0
    created_at: Optional[str] = None
    modified_at: Optional[str] = None


@dataclass
class RenderedPage:
    """Output of rendering one page."""
    content: bytes
    text: str
    created_at: Optional[str] = None
    modified_at: Optional[str] = None
    extension: str = 'html'

    @property
    def is_empty(self) -> bool:
        return not self.content.strip()


# ============================================================================
# Source interface
# ============================================================================
class HierarchySource(ABC):
    """Ordered tree of notebooks → section groups → sections → pages."""

    @abstractmethod
    def get_roots(self) -> List[SourceNode]:
        """Return all notebooks."""

    @abstractmethod
    def get_children(self, container: SourceNode) -> List[SourceNode]:
        """
        Return the ordered children of a container.

        Notebooks and section groups yield sections first, then section
        groups. Sections yield their pages in document order with 1-based
        levels.
        """

    @abstractmethod
    def render(self, page: SourceNode) -> RenderedPage:
        """Render one page."""

    def dismiss_blocking_dialogs(self) -> int:
        """Close modal dialogs raised by the source application; returns count closed."""
        return 0


# ============================================================================
# Text extraction
# ============================================================================
def html_to_text(html_content: str) -> str:
    """Convert OneNote page HTML to plain text, one block per paragraph."""
    text = html_content

    # Drop head/script/style entirely
    text = re.sub(r'<(head|script|style)[^>]*>.*?</\1>', '', text, flags=re.DOTALL | re.IGNORECASE)

    # Images become their alt text
    def replace_img(match):
        alt_match = re.search(r'alt="([^"]*)"', match.group(0))
        return f"[{alt_match.group(1)}]" if alt_match and alt_match.group(1) else ''

    text = re.sub(r'<img[^>]*/?>', replace_img, text, flags=re.IGNORECASE)

    # Block boundaries
    text = re.sub(r'<br\s*/?>', '\n', text, flags=re.IGNORECASE)
    text = re.sub(r'<li[^>]*>', '\n- ', text, flags=re.IGNORECASE)
    text = re.sub(r'</(p|div|h[1-6]|li|tr|table|pre|blockquote)>', '\n\n', text, flags=re.IGNORECASE)
    text = re.sub(r'</t[dh]>', '\t', text, flags=re.IGNORECASE)

    # Strip remaining HTML tags (must be last)
    text = re.sub(r'<[^>]+>', '', text)
    text = html.unescape(text)

    # Clean up whitespace
    text = re.sub(r'[ \t]+\n', '\n', text)
    text = re.sub(r'\n\s*\n\s*\n+', '\n\n', text)
    return text.strip()


# ============================================================================
# Microsoft Graph implementation
# ============================================================================
class GraphOneNoteSource(HierarchySource):
    """HierarchySource backed by the Microsoft Graph OneNote API."""

    def __init__(self, graph: GraphClient):
        self.graph = graph

    @staticmethod
    def _raise_for_errors(errors: List[Dict], context: str):
        if not errors:
            return
        error = errors[0]
        status = error.get('status')
        message = f"{context}: {error.get('error', 'Unknown error')}"
        if status in (401, 403):
            raise AccessDeniedError(f"Access denied ({status}) - {message}")
        if status == 404:
            raise NodeNotFoundError(f"Not found - {message}")
        if status is None or status == 429 or status >= 500:
            raise TransientSourceError(message)
        raise SourceError(f"HTTP {status} - {message}")

    @staticmethod
    def _container(kind: NodeKind, item: Dict, order: int) -> SourceNode:
        return SourceNode(
            kind=kind,
            source_id=item['id'],
            name=item.get('displayName') or 'Untitled',
            order=order,
            created_at=item.get('createdDateTime'),
            modified_at=item.get('lastModifiedDateTime'),
        )

    def get_roots(self) -> List[SourceNode]:
        notebooks, errors = self.graph.get_notebooks()
        if errors and not notebooks:
            raise SourceUnavailableError(f"Cannot list notebooks: {errors[0].get('error')}")
        return [self._container(NodeKind.NOTEBOOK, nb, i) for i, nb in enumerate(notebooks)]

    def get_children(self, container: SourceNode) -> List[SourceNode]:
        if container.kind == NodeKind.SECTION:
            return self._get_pages(container)

        if container.kind == NodeKind.NOTEBOOK:
            sections, errors = self.graph.get_sections(container.source_id)
            self._raise_for_errors(errors, f"sections of {container.name}")
            groups, errors = self.graph.get_section_groups(container.source_id)
            self._raise_for_errors(errors, f"section groups of {container.name}")
        elif container.kind == NodeKind.SECTION_GROUP:
            sections, errors = self.graph.get_sections_in_group(container.source_id)
            self._raise_for_errors(errors, f"sections of {container.name}")
            groups, errors = self.graph.get_nested_section_groups(container.source_id)
            self._raise_for_errors(errors, f"section groups of {container.name}")
        else:
            return []

        children = [self._container(NodeKind.SECTION, s, i) for i, s in enumerate(sections)]
        children.extend(self._container(NodeKind.SECTION_GROUP, g, i) for i, g in enumerate(groups))
        return children

    def _get_pages(self, section: SourceNode) -> List[SourceNode]:
        pages, errors = self.graph.get_pages(section.source_id)
        self._raise_for_errors(errors, f"pages of {section.name}")

        result = []
        for idx, p in enumerate(pages):
            # Graph levels are 0-based
            try:
                level = int(p.get('level') or 0) + 1
            except (TypeError, ValueError):
                level = 1
            result.append(SourceNode(
                kind=NodeKind.PAGE,
                source_id=p['id'],
                name=p.get('title') or 'Untitled',
                level=level,
                order=p.get('order', idx) if isinstance(p.get('order'), int) else idx,
                created_at=p.get('createdDateTime'),
                modified_at=p.get('lastModifiedDateTime'),
            ))
        # Pages come back ordered, but keep order stable when 'order' is present
        result.sort(key=lambda n: n.order)
        logger.debug(f"Levels for '{section.name}': {[n.level for n in result[:5]]}")
        return result

    def render(self, page: SourceNode) -> RenderedPage:
        response = self.graph.get_page_content(page.source_id, context=page.name)
        if response is None:
            raise TransientSourceError(f"No response for page content '{page.name}'")
        if response.status_code != 200:
            self._raise_for_errors(
                [{'status': response.status_code, 'error': (response.text or '')[:200]}],
                f"content of {page.name}"
            )
        content = response.text or ''
        text = html_to_text(content)
        if not text and '<img' not in content.lower():
            # Title-only page: nothing worth keeping beyond the placeholder
            content = ''
        return RenderedPage(
            content=content.encode('utf-8'),
            text=text,
            created_at=page.created_at,
            modified_at=page.modified_at,
        )
