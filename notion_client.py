#!/usr/bin/env python3
"""
Notion API client for the importer.

Covers exactly what the import needs: reading the target database schema,
querying it by sync key, creating pages (records) with content blocks, and
single-part file uploads. Every HTTP call is followed by a fixed pacing
delay to stay under Notion's rate limit.
"""

import time
import random
import mimetypes
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from run_log import logger

# ============================================================================
# Constants
# ============================================================================
NOTION_API = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

DEFAULT_MAX_RETRIES = 5
INITIAL_BACKOFF_SEC = 1.0
BACKOFF_MULTIPLIER = 2.0
MAX_BACKOFF_SEC = 120.0
NOTION_DELAY_SEC = 0.35
DEFAULT_TIMEOUT = 60

# Notion limits
BLOCKS_PER_REQUEST = 100
RICH_TEXT_MAX_CHARS = 2000
MAX_UPLOAD_BYTES = 20 * 1024 * 1024

# Logical property -> Notion property type the importer writes
REQUIRED_PROPERTY_TYPES = {
    'title': 'title',
    'labels': 'multi_select',
    'type': 'select',
    'notebook': 'relation',
    'parent': 'relation',
    'date': 'date',
    'sync_key': 'rich_text',
    'attachment': 'files',
    'last_edited': 'last_edited_time',
}


class NotionAPIError(Exception):
    """Non-retryable Notion response, or retries exhausted."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class UncertainWriteError(NotionAPIError):
    """A write failed in a way that may still have been applied; check before repeating it."""


class SchemaValidationError(Exception):
    """The target database lacks properties the importer writes."""

    def __init__(self, problems: List[str]):
        super().__init__("Notion database schema is invalid:\n  - " + "\n  - ".join(problems))
        self.problems = problems


@dataclass
class NotionRecord:
    """A page in the target database, as far as the importer cares."""
    page_id: str
    sync_key: str
    title: str = ''

    @classmethod
    def from_page(cls, page: Dict[str, Any], sync_property: str,
                  title_property: str) -> 'NotionRecord':
        props = page.get('properties', {})
        return cls(
            page_id=page['id'],
            sync_key=_plain_text(props.get(sync_property, {}).get('rich_text', [])),
            title=_plain_text(props.get(title_property, {}).get('title', [])),
        )


def _plain_text(rich_text: List[Dict[str, Any]]) -> str:
    return ''.join(rt.get('plain_text') or rt.get('text', {}).get('content', '') for rt in rich_text)


def chunk_text(text: str, size: int = RICH_TEXT_MAX_CHARS) -> List[str]:
    """Split text into pieces Notion accepts in one rich-text item."""
    return [text[i:i + size] for i in range(0, len(text), size)] or ['']


def rich_text(content: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": {"content": piece}} for piece in chunk_text(content)]


def paragraph_blocks(text: str) -> List[Dict[str, Any]]:
    """One paragraph block per non-empty paragraph of ``text``."""
    blocks = []
    for para in text.split('\n\n'):
        para = para.strip()
        if not para:
            continue
        for piece in chunk_text(para):
            blocks.append({
                "object": "block",
                "type": "paragraph",
                "paragraph": {"rich_text": [{"type": "text", "text": {"content": piece}}]},
            })
    return blocks


def validate_schema(database: Dict[str, Any], property_names: Dict[str, str]) -> List[str]:
    """Return every missing or mismatched property (empty when valid)."""
    properties = database.get('properties', {})
    problems = []
    for logical, expected_type in REQUIRED_PROPERTY_TYPES.items():
        name = property_names.get(logical)
        if not name:
            problems.append(f"no property name configured for '{logical}'")
            continue
        prop = properties.get(name)
        if prop is None:
            problems.append(f"missing property '{name}' (expected type {expected_type})")
        elif prop.get('type') != expected_type:
            problems.append(f"property '{name}' has type {prop.get('type')}, expected {expected_type}")

    database_id = database.get('id', '').replace('-', '')
    for logical in ('notebook', 'parent'):
        prop = properties.get(property_names.get(logical, ''), {})
        if prop.get('type') != 'relation':
            continue
        target = (prop.get('relation') or {}).get('database_id', '').replace('-', '')
        if database_id and target and target != database_id:
            problems.append(f"relation '{property_names[logical]}' must point at this database")
    return problems


# ============================================================================
# Notion API client
# ============================================================================
class NotionClient:
    def __init__(self, token: str, request_delay: float = NOTION_DELAY_SEC,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 session: Optional[requests.Session] = None):
        self.token = token
        self.request_delay = request_delay
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.request_count = 0
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }

    def _pace(self):
        if self.request_delay:
            time.sleep(self.request_delay)

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        """One HTTP call followed by the fixed pacing delay."""
        self.request_count += 1
        try:
            return self.session.request(method, url, timeout=kwargs.pop('timeout', DEFAULT_TIMEOUT), **kwargs)
        finally:
            self._pace()

    def _request(self, method: str, path: str, payload: Optional[dict] = None,
                 headers: Optional[dict] = None, files: Optional[dict] = None,
                 idempotent: bool = True) -> dict:
        """
        Send one API call, retrying 429s always and network errors or 5xx only
        when ``idempotent``. A non-idempotent call that hits one of those raises
        UncertainWriteError after a single attempt.
        """
        url = path if path.startswith('http') else f"{NOTION_API}{path}"
        backoff = INITIAL_BACKOFF_SEC
        for attempt in range(1, self.max_retries + 1):
            try:
                if files is not None:
                    r = self._send(method, url, headers=headers, files=files, timeout=120)
                else:
                    r = self._send(method, url, headers=headers or self.headers, json=payload)
            except (requests.ConnectionError, requests.Timeout) as e:
                if not idempotent:
                    raise UncertainWriteError(f"Notion network error on {method} {url}: {e}") from e
                logger.warning(f"Notion network error attempt {attempt}/{self.max_retries}: {e}")
                time.sleep(min(backoff, MAX_BACKOFF_SEC))
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SEC)
                continue

            if r.status_code in (200, 201):
                return r.json()

            if r.status_code >= 500 and not idempotent:
                logger.api_error(method, url, r.status_code, 'notion', attempt, r.text[:200] if r.text else None)
                raise UncertainWriteError(f"HTTP {r.status_code} on {method} {url}", status=r.status_code)

            if r.status_code == 429 or r.status_code >= 500:
                retry_after = r.headers.get("Retry-After")
                try:
                    wait = float(retry_after) if retry_after else backoff
                except ValueError:
                    wait = backoff
                wait = min(wait, MAX_BACKOFF_SEC) * (0.5 + random.random())
                logger.warning(f"Notion {r.status_code} attempt {attempt}/{self.max_retries}, retry in {wait:.1f}s")
                logger.api_error(method, url, r.status_code, 'notion', attempt, r.text[:200] if r.text else None)
                time.sleep(wait)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SEC)
                continue

            code = None
            try:
                body = r.json()
                message = body.get("message", r.text[:500])
                code = body.get("code")
            except ValueError:
                message = r.text[:500]
            logger.api_error(method, url, r.status_code, 'notion', attempt, message)
            raise NotionAPIError(f"HTTP {r.status_code}: {message}", status=r.status_code, code=code)

        raise NotionAPIError(f"Notion failed after {self.max_retries} attempts: {method} {url}")

    # ========================================================================
    # Database / pages
    # ========================================================================

    def get_database(self, database_id: str) -> dict:
        return self._request("GET", f"/databases/{database_id}")

    def query_database(self, database_id: str, filter_: Optional[dict] = None,
                       page_size: int = 100) -> List[dict]:
        """All pages matching ``filter_``, following ``next_cursor``."""
        results = []
        payload: Dict[str, Any] = {"page_size": page_size}
        if filter_:
            payload["filter"] = filter_
        while True:
            data = self._request("POST", f"/databases/{database_id}/query", payload)
            results.extend(data.get("results", []))
            if not data.get("has_more") or not data.get("next_cursor"):
                return results
            payload["start_cursor"] = data["next_cursor"]

    def query_by_sync_key(self, database_id: str, sync_property: str, value: str) -> List[dict]:
        return self.query_database(database_id, {
            "property": sync_property,
            "rich_text": {"equals": value},
        })

    def create_page(self, database_id: str, properties: dict,
                    children: Optional[List[dict]] = None) -> dict:
        """
        Create a database page; children beyond the first request are appended.

        The create itself is never repeated (see UncertainWriteError). Once it
        succeeds the page is returned even if appending fails; such a page has
        ``content_incomplete`` set.
        """
        children = children or []
        payload = {
            "parent": {"database_id": database_id},
            "properties": properties,
        }
        if children:
            payload["children"] = children[:BLOCKS_PER_REQUEST]
        page = self._request("POST", "/pages", payload, idempotent=False)
        if len(children) > BLOCKS_PER_REQUEST:
            try:
                self.append_children(page["id"], children[BLOCKS_PER_REQUEST:])
            except NotionAPIError as e:
                logger.warning(f"Page {page['id']} created but its content is incomplete: {e}")
                page["content_incomplete"] = True
        return page

    def append_children(self, block_id: str, children: List[dict]):
        for i in range(0, len(children), BLOCKS_PER_REQUEST):
            self._request("PATCH", f"/blocks/{block_id}/children",
                          {"children": children[i:i + BLOCKS_PER_REQUEST]}, idempotent=False)

    # ========================================================================
    # File uploads (single part only)
    # ========================================================================

    def create_file_upload(self, filename: str, content_type: str) -> dict:
        return self._request("POST", "/file_uploads", {
            "mode": "single_part", "filename": filename, "content_type": content_type,
        })

    def send_file_upload(self, file_upload_id: str, filename: str, data: bytes,
                         content_type: str) -> dict:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Notion-Version": NOTION_VERSION,
            "Accept": "application/json",
        }
        return self._request("POST", f"/file_uploads/{file_upload_id}/send",
                             headers=headers, files={"file": (filename, data, content_type)})

    def upload_attachment(self, data: bytes, filename: str) -> str:
        """Upload bytes and return the file upload id to attach to a files property."""
        if len(data) > MAX_UPLOAD_BYTES:
            raise NotionAPIError(f"{filename} is {len(data)} bytes; single-part uploads are limited to "
                                 f"{MAX_UPLOAD_BYTES} bytes")
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        upload = self.create_file_upload(filename, content_type)
        self.send_file_upload(upload["id"], filename, data, content_type)
        return upload["id"]
