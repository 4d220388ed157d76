#!/usr/bin/env python3
"""
Filesystem layout for exported artifacts.

Layout rules:
- Notebooks: <export_root>/<notebook_name>/
- Section groups: <notebook>/<group>/<nested group>/
- Sections: <section_group_or_notebook>/<section_name>/
- Pages: <section>/<ancestor page>/.../<NNN - Title>.html (+ .txt)

Ancestor folders use the ancestor's display name, also when the ancestor
itself failed to export, so a subpage always lands under the same folder.
"""

import re
from pathlib import Path
from typing import Dict, List


def sanitize_path_name(text: str, max_length: int = 200) -> str:
    """Convert text to a filesystem-safe name."""
    if not text:
        return "untitled"

    # Windows forbidden: < > : " / \ | ? * and control characters
    text = re.sub(r'[<>:"/\\|?*\x00-\x1F]', '_', text)

    # Strip leading/trailing dots and spaces
    text = text.strip('. ')

    if len(text) > max_length:
        text = text[:max_length].rstrip('. ')

    return text if text else "untitled"


def format_order_prefix(index: int, total: int) -> str:
    """Generate zero-padded order prefix based on total count (e.g., '01', '001')."""
    width = max(len(str(total)), 1)
    return f"{index:0{width}d}"


def path_to_posix(path: Path, base_path: Path) -> str:
    """Relative path with forward slashes (absolute when outside base_path)."""
    try:
        relative = path.relative_to(base_path)
    except ValueError:
        relative = path
    return str(relative).replace('\\', '/')


class PageNameStack:
    """
    Level -> folder name of the most recent page seen at that level.

    Names are kept for every visited page (exported or not) so children can
    build their folder path.
    """

    def __init__(self):
        self._names: Dict[int, str] = {}

    def ancestors(self, level: int) -> List[str]:
        """Folder names of the recorded pages above ``level``, outermost first."""
        return [self._names[lvl] for lvl in sorted(self._names) if lvl < level]

    def record(self, level: int, name: str):
        self._names[level] = sanitize_path_name(name)
        for deeper in [lvl for lvl in self._names if lvl > level]:
            del self._names[deeper]


def page_artifact_base(section_dir: Path, ancestors: List[str],
                       index: int, total: int, title: str) -> Path:
    """Path (without extension) of a page's artifacts."""
    folder = section_dir.joinpath(*ancestors) if ancestors else section_dir
    stem = f"{format_order_prefix(index, total)} - {sanitize_path_name(title, max_length=120)}"
    return folder / stem
