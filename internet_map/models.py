from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ProbeResult:
    offset: int
    reachable: bool


@dataclass
class BlockResult:
    """Reachability of every address in one block."""

    block_id: int
    results: List[ProbeResult]
    started_at: str = field(default_factory=utcnow_iso)
    finished_at: Optional[str] = None

    @property
    def reachable_count(self) -> int:
        return sum(1 for r in self.results if r.reachable)

    def rows(self) -> List[Tuple[int, int, int]]:
        return [(self.block_id, r.offset, 1 if r.reachable else 0) for r in self.results]

    def validate(self, block_size: int) -> None:
        """Raise ValueError unless there is exactly one result per offset."""
        seen = set()
        for r in self.results:
            if not 0 <= r.offset < block_size:
                raise ValueError(f"block {self.block_id}: offset {r.offset} outside 0..{block_size - 1}")
            if r.offset in seen:
                raise ValueError(f"block {self.block_id}: duplicate result for offset {r.offset}")
            seen.add(r.offset)
        if len(seen) != block_size:
            raise ValueError(f"block {self.block_id}: {block_size - len(seen)} offset(s) missing from result set")


@dataclass
class RunSummary:
    committed: int = 0
    skipped: int = 0
    gaps_requeued: int = 0
    rescans: int = 0
    abandoned: List[int] = field(default_factory=list)
    reachable: int = 0
    exhausted: bool = False
    stopped: bool = False
    cursor: Optional[int] = None
    high_water_mark: Optional[int] = None

    def to_doc(self) -> dict:
        return {
            "committed": self.committed,
            "skipped": self.skipped,
            "gaps_requeued": self.gaps_requeued,
            "rescans": self.rescans,
            "abandoned": list(self.abandoned),
            "reachable": self.reachable,
            "exhausted": self.exhausted,
            "stopped": self.stopped,
            "cursor": self.cursor,
            "high_water_mark": self.high_water_mark,
        }
