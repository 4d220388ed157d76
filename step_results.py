#!/usr/bin/env python3
"""
Per-node step results and run statistics.

Each export/import step returns Ok, Skipped or Failed instead of raising, so
the traversal decides what to do with a node without catching exceptions for
control flow.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union


@dataclass(frozen=True)
class Ok:
    value: Any = None


@dataclass(frozen=True)
class Skipped:
    """Node intentionally not processed. ``duplicate`` marks an existing match."""
    reason: str
    value: Any = None
    duplicate: bool = False


@dataclass(frozen=True)
class Failed:
    reason: str


NodeResult = Union[Ok, Skipped, Failed]


@dataclass
class FailureRecord:
    kind: str
    location: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {'kind': self.kind, 'location': self.location, 'reason': self.reason}


@dataclass
class RunStats:
    """Counters shown at the end of every export or import run."""
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    duplicates: int = 0
    failed: int = 0
    minted: int = 0
    reused: int = 0
    gaps: int = 0
    fallbacks: int = 0
    by_kind: Dict[str, int] = field(default_factory=dict)
    failures: List[FailureRecord] = field(default_factory=list)
    skipped_items: List[FailureRecord] = field(default_factory=list)

    def record(self, result: NodeResult, kind: str, location: str) -> NodeResult:
        """Count a step result and return it unchanged."""
        self.processed += 1
        if isinstance(result, Ok):
            self.succeeded += 1
            self.by_kind[kind] = self.by_kind.get(kind, 0) + 1
        elif isinstance(result, Skipped):
            if result.duplicate:
                self.duplicates += 1
            else:
                self.skipped += 1
                self.skipped_items.append(FailureRecord(kind, location, result.reason))
        else:
            self.failed += 1
            self.failures.append(FailureRecord(kind, location, result.reason))
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed': self.processed,
            'succeeded': self.succeeded,
            'skipped': self.skipped,
            'skipped_as_duplicate': self.duplicates,
            'failed': self.failed,
            'minted': self.minted,
            'reused': self.reused,
            'hierarchy_gaps': self.gaps,
            'parent_fallbacks': self.fallbacks,
            'by_kind': dict(self.by_kind),
            'failures': [f.to_dict() for f in self.failures],
            'skipped_items': [s.to_dict() for s in self.skipped_items],
        }

    def summary_lines(self, title: str, limit: int = 50) -> List[str]:
        lines = [
            "=" * 70,
            f"📊 {title}",
            "=" * 70,
            f"{'Processed':<25} {self.processed}",
            f"{'Succeeded':<25} {self.succeeded}",
            f"{'Skipped (duplicate)':<25} {self.duplicates}",
            f"{'Skipped (other)':<25} {self.skipped}",
            f"{'Failed':<25} {self.failed}",
        ]
        if self.minted or self.reused:
            lines.append(f"{'Ids minted / reused':<25} {self.minted} / {self.reused}")
        if self.gaps:
            lines.append(f"{'Hierarchy gaps':<25} {self.gaps}")
        if self.fallbacks:
            lines.append(f"{'Section fallbacks':<25} {self.fallbacks}")
        if self.failures:
            lines.append("")
            lines.append(f"❌ FAILED ({len(self.failures)}):")
            for failure in self.failures[:limit]:
                lines.append(f"   • [{failure.kind}] {failure.location}: {failure.reason}")
            if len(self.failures) > limit:
                lines.append(f"   ... and {len(self.failures) - limit} more")
        lines.append("=" * 70)
        return lines

