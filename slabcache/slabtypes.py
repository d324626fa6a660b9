"""Types shared between the slab allocator, rebalancer and automover."""

from __future__ import annotations

import enum
from dataclasses import dataclass

SLABS_ALLOC_NO_NEWPAGE = 1


@dataclass
class SlabStatsAutomove:
    """Per-class slab counters sampled by the automover."""

    chunks_per_page: int = 0
    chunk_size: int = 0
    free_chunks: int = 0
    total_pages: int = 0


class ReassignError(Exception):
    """A slab page reassignment was refused."""

    def __init__(self, result: "ReassignResult") -> None:
        super().__init__(f"slab reassign failed: {result.name}")
        self.result = result


class ReassignResult(enum.IntEnum):
    """Outcome of asking for a slab page to be moved."""

    OK = 0
    RUNNING = 1
    BADCLASS = 2
    NOSPARE = 3
    SRC_DST_SAME = 4

    def check(self) -> "ReassignResult":
        """Return self if OK, otherwise raise ReassignError."""
        if self is not ReassignResult.OK:
            raise ReassignError(self)
        return self