"""Default slab page automover: balances slab classes by item age."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

MIN_PAGES_FOR_SOURCE = 2
MIN_PAGES_FOR_RECLAIM = 2.5
_MAX_U64 = (1 << 64) - 1


@dataclass
class ItemStatsAutomove:
    """Per-class item counters the automover samples."""

    evicted: int = 0
    outofmemory: int = 0
    age: int = 0


@dataclass
class _WindowData:
    age: int = 0
    dirty: int = 0
    evicted: int = 0


class SlabAutomove:
    """Decides which slab page to move between classes on each run.

    ``item_stats`` and ``slab_stats`` are callables returning one snapshot
    entry per slab class. Slab stats entries need ``chunks_per_page``,
    ``free_chunks`` and ``total_pages`` attributes.
    """

    def __init__(
        self,
        window_size: int,
        max_age_ratio: float,
        item_stats: Callable[[], Sequence[ItemStatsAutomove]],
        slab_stats: Callable[[], Sequence[Any]],
        num_classes: int = 64,
        smallest: int = 1,
    ) -> None:
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        self.window_size = window_size
        self.max_age_ratio = max_age_ratio
        self.num_classes = num_classes
        self.smallest = smallest
        self.window_cur = 0
        self._item_stats = item_stats
        self._slab_stats = slab_stats
        self._windows = [
            [_WindowData() for _ in range(window_size)] for _ in range(num_classes)
        ]
        self._iam_before = list(item_stats())
        self._sam_before = list(slab_stats())

    def run(self) -> Optional[tuple[int, int]]:
        """Sample stats and return ``(src, dst)`` for a page move, or None."""
        src = dst = -1
        oldest = -1
        oldest_age = 0
        youngest = -1
        youngest_age = _MAX_U64
        youngest_evicting = False

        iam_after = list(self._item_stats())
        sam_after = list(self._slab_stats())
        self.window_cur += 1

        for n in range(self.smallest, self.num_classes):
            window = self._windows[n]
            wd = _WindowData()
            window[self.window_cur % self.window_size] = wd
            sum_age = sum(d.age for d in window)
            sum_dirty = sum(d.dirty for d in window)
            sum_evicted = sum(d.evicted for d in window)

            before_i, after_i = self._iam_before[n], iam_after[n]
            before_s, after_s = self._sam_before[n], sam_after[n]

            if (
                after_i.evicted > before_i.evicted
                or after_i.outofmemory > before_i.outofmemory
            ):
                wd.evicted = 1
                wd.dirty = 1
            if after_s.total_pages > before_s.total_pages:
                wd.dirty = 1

            wd.age = after_i.age
            age = sum_age // self.window_size

            if after_s.free_chunks > after_s.chunks_per_page * MIN_PAGES_FOR_RECLAIM:
                if sum_dirty == 0:
                    src, dst = n, 0
                    break

            if age > oldest_age and after_s.total_pages > MIN_PAGES_FOR_SOURCE:
                oldest = n
                oldest_age = age

            if age < youngest_age and sum_evicted > self.window_size // 2:
                youngest = n
                youngest_age = age
                youngest_evicting = bool(wd.evicted)

        self._iam_before = iam_after
        self._sam_before = sam_after

        if youngest != -1 and oldest != -1 and self.window_cur > self.window_size:
            if youngest_age < oldest_age * self.max_age_ratio and youngest_evicting:
                src, dst = oldest, youngest

        if src == -1:
            return None
        return src, dst