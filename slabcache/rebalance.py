"""Slab page rebalancing: moves one page from a slab class to another."""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from slabcache.allocator import (
    ITEM_CHUNK,
    ITEM_CHUNKED,
    ITEM_FETCHED,
    ITEM_LINKED,
    ITEM_SLABBED,
    POWER_SMALLEST,
    SLAB_GLOBAL_PAGE_POOL,
    Chunk,
    SlabAllocator,
    SlabClass,
)
from slabcache.slabtypes import ReassignResult

log = logging.getLogger(__name__)

DEFAULT_SLAB_BULK_CHECK = 1
SLAB_MOVE_MAX_LOOPS = 1000
_CLEARED = ITEM_SLABBED | ITEM_FETCHED
_IDLE, _REQUESTED, _RUNNING = 0, 1, 2


class _Status(enum.Enum):
    PASS = 0
    FROM_SLAB = 1
    FROM_LRU = 2
    BUSY = 3
    LOCKED = 4


@dataclass
class RebalanceCounters:
    """Totals over all finished page moves."""

    slabs_moved: int = 0
    rescues: int = 0
    evictions_nomem: int = 0
    inline_reclaim: int = 0
    chunk_rescues: int = 0
    busy_deletes: int = 0
    busy_items: int = 0


@dataclass
class _Move:
    src: int
    dst: int
    page: Optional[list] = None
    pos: int = 0
    done: int = 0
    busy_items: int = 0
    busy_loops: int = 0
    rescues: int = 0
    evictions_nomem: int = 0
    inline_reclaim: int = 0
    chunk_rescues: int = 0
    busy_deletes: int = 0


def _default_replace(old: Chunk, new: Chunk) -> None:
    old.flags &= ~ITEM_LINKED
    new.flags |= ITEM_LINKED
    new.refcount += 1


def _default_unlink(chunk: Chunk) -> None:
    chunk.flags &= ~ITEM_LINKED
    chunk.refcount -= 1


class SlabRebalancer:
    """Empties the first page of a source class and hands it to a destination.

    Live items on the page are copied to free chunks elsewhere in the same
    class, or evicted when none are left. Item-level operations are hooks
    that can be replaced: ``try_lock(chunk) -> bool``, ``unlock(chunk)``,
    ``is_expired(chunk) -> bool``, ``replace(old, new)`` and ``unlink(chunk)``.
    """

    def __init__(self, allocator: SlabAllocator, bulk_check: Optional[int] = None) -> None:
        if bulk_check is None:
            try:
                bulk_check = int(os.environ.get("MEMCACHED_SLAB_BULK_CHECK", "0"))
            except ValueError:
                bulk_check = 0
        if bulk_check < 0:
            raise ValueError("bulk_check must not be negative")
        self.allocator = allocator
        self.bulk_check = bulk_check or DEFAULT_SLAB_BULK_CHECK
        self.counters = RebalanceCounters()
        self.last_busy = 0
        self.try_lock: Callable[[Chunk], bool] = lambda chunk: True
        self.unlock: Callable[[Chunk], None] = lambda chunk: None
        self.is_expired: Callable[[Chunk], bool] = lambda chunk: False
        self.replace: Callable[[Chunk, Chunk], None] = _default_replace
        self.unlink: Callable[[Chunk], None] = _default_unlink
        self._signal = _IDLE
        self._move: Optional[_Move] = None
        self._pick_cur = POWER_SMALLEST - 1
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)

    @property
    def running(self) -> bool:
        """Whether a page move is requested or in progress."""
        return self._signal != _IDLE

    @contextlib.contextmanager
    def paused(self) -> Iterator[None]:
        """Hold off any page move while the block runs."""
        with self._lock:
            yield

    def reassign(self, src: int, dst: int) -> ReassignResult:
        """Request moving a page from ``src`` (-1: any class) to ``dst``.

        Raises ReassignError when the request is refused.
        """
        if not self._lock.acquire(blocking=False):
            return ReassignResult.RUNNING.check()
        try:
            result = self._reassign(src, dst)
            if result is ReassignResult.OK:
                self._cond.notify()
            return result.check()
        finally:
            self._lock.release()

    def _reassign(self, src: int, dst: int) -> ReassignResult:
        a = self.allocator
        if self._signal != _IDLE:
            return ReassignResult.RUNNING
        if src == dst:
            return ReassignResult.SRC_DST_SAME
        if src == -1:
            src = self._pick_any(dst)
        largest = a.power_largest
        if not (SLAB_GLOBAL_PAGE_POOL <= src <= largest and SLAB_GLOBAL_PAGE_POOL <= dst <= largest):
            return ReassignResult.BADCLASS
        with a.lock:
            if a.classes[src].slabs < 2:
                return ReassignResult.NOSPARE
        self._move = _Move(src, dst)
        self._signal = _REQUESTED
        return ReassignResult.OK

    def _pick_any(self, dst: int) -> int:
        a = self.allocator
        for _ in range(a.power_largest - POWER_SMALLEST + 1):
            self._pick_cur += 1
            if self._pick_cur > a.power_largest:
                self._pick_cur = POWER_SMALLEST
            if self._pick_cur == dst:
                continue
            if a.classes[self._pick_cur].slabs > 1:
                return self._pick_cur
        return -1

    def step(self) -> bool:
        """Do one unit of rebalancing work; return whether a move is pending."""
        with self._lock:
            return self._step_locked()

    def _step_locked(self) -> bool:
        was_busy = 0
        if self._signal == _REQUESTED:
            if not self._start():
                self._signal = _IDLE
                self._move = None
        elif self._signal and self._move is not None and self._move.page is not None:
            was_busy = self._move_step()
        if self._move is not None and self._move.done:
            self._finish()
        self.last_busy = was_busy
        return self._signal != _IDLE

    def run_until_idle(self, max_steps: int = 100000) -> int:
        """Step until no move is pending; return the number of steps taken.

        Raises TimeoutError if the move is still pending after ``max_steps``.
        """
        for steps in range(1, max_steps + 1):
            if not self.step():
                return steps
        raise TimeoutError(f"slab rebalance still running after {max_steps} steps")

    def run(self, stop: threading.Event) -> None:
        """Serve reassign requests until ``stop`` is set."""
        with self._cond:
            while not stop.is_set():
                self._step_locked()
                if self._signal == _IDLE:
                    self._cond.wait(0.1)
                elif self.last_busy:
                    self._cond.wait(0.001)

    def _start(self) -> bool:
        a = self.allocator
        m = self._move
        assert m is not None
        with a.lock:
            largest = a.power_largest
            if (
                not SLAB_GLOBAL_PAGE_POOL <= m.src <= largest
                or not SLAB_GLOBAL_PAGE_POOL <= m.dst <= largest
                or m.src == m.dst
            ):
                log.debug("slab rebalance refused: bad classes %d -> %d", m.src, m.dst)
                return False
            s_cls = a.classes[m.src]
            if s_cls.slabs < 2:
                log.debug("slab rebalance refused: class %d has no spare page", m.src)
                return False
            m.page = s_cls.slab_list[0]
            m.pos = 0
            m.done = 0
            if m.src == SLAB_GLOBAL_PAGE_POOL or not m.page:
                m.done = 1
            self._signal = _RUNNING
        log.debug("started a slab rebalance")
        return True

    def _find_head(self, link: Chunk) -> Optional[Chunk]:
        for cls in self.allocator.classes:
            for page in cls.slab_list:
                for chunk in page:
                    if chunk.flags & ITEM_CHUNKED and any(c is link for c in chunk.chain):
                        return chunk
        return None

    def _classify(self, chunk: Chunk) -> tuple[_Status, Chunk, Optional[Chunk]]:
        m = self._move
        it, ch = chunk, None
        if it.flags & ITEM_CHUNK:
            ch = it
            head = self._find_head(ch)
            if head is None:
                return _Status.BUSY, it, ch
            it = head
        if it.flags == _CLEARED:
            return _Status.PASS, it, ch
        if it.flags & ITEM_SLABBED:
            if ch is not None:
                return _Status.BUSY, it, ch
            self.allocator.unlink_free(m.src, it)
            return _Status.FROM_SLAB, it, ch
        if not it.flags & ITEM_LINKED:
            return _Status.BUSY, it, ch
        if not self.try_lock(it):
            return _Status.LOCKED, it, ch
        it.refcount += 1
        is_linked = bool(it.flags & ITEM_LINKED)
        status = _Status.BUSY
        if it.refcount == 2:
            if is_linked:
                status = _Status.FROM_LRU
        elif it.refcount > 2 and is_linked:
            if m.busy_loops > SLAB_MOVE_MAX_LOOPS:
                m.busy_deletes += 1
                self.unlink(it)
        else:
            log.debug("slab reassign hit a busy item: refcount %d", it.refcount)
        if status is _Status.BUSY:
            it.refcount -= 1
            self.unlock(it)
        return status, it, ch

    def _rebalance_alloc(self, s_cls: SlabClass, size: int) -> Optional[Chunk]:
        m = self._move
        for _ in range(s_cls.perslab):
            new = self.allocator.alloc(size, m.src, no_newpage=True)
            if new is None:
                return None
            if new.page is not m.page:
                return new
            s_cls.requested -= size
            new.refcount = 0
            new.flags = _CLEARED
            m.inline_reclaim += 1
        return None

    def _move_live(self, s_cls: SlabClass, it: Chunk, ch: Optional[Chunk]) -> bool:
        m = self._move
        ntotal = it.requested
        if ch is None and it.flags & ITEM_CHUNKED:
            ntotal = s_cls.size
        new: Optional[Chunk] = None
        try:
            if not self.is_expired(it):
                new = self._rebalance_alloc(s_cls, ntotal if ch is None else s_cls.size)
                if new is None:
                    m.evictions_nomem += 1
            if new is None:
                self.unlink(it)
                self.allocator.free(it, it.requested, m.src)
                return False
            if ch is None:
                new.payload = it.payload
                new.flags = it.flags & ~ITEM_LINKED
                new.refcount = 0
                new.requested = it.requested
                new.orig_clsid = it.orig_clsid
                new.chain, it.chain = it.chain, []
                self.replace(it, new)
                it.refcount = 0
                it.flags = _CLEARED
                m.rescues += 1
                adjust = ntotal
            else:
                idx = next(i for i, c in enumerate(it.chain) if c is ch)
                it.chain[idx] = new
                new.flags = ch.flags
                new.payload = ch.payload
                new.requested = ch.requested
                new.refcount = ch.refcount
                new.clsid = ch.clsid
                new.orig_clsid = ch.orig_clsid
                ch.refcount = 0
                ch.flags = _CLEARED
                m.chunk_rescues += 1
                it.refcount -= 1
                adjust = s_cls.size
            s_cls.requested -= adjust
            return True
        finally:
            self.unlock(it)

    def _move_step(self) -> int:
        a = self.allocator
        m = self._move
        was_busy = 0
        with a.lock:
            s_cls = a.classes[m.src]
            page = m.page
            for _ in range(self.bulk_check):
                if m.pos >= len(page):
                    break
                status, it, ch = self._classify(page[m.pos])
                if status is _Status.FROM_LRU:
                    if not self._move_live(s_cls, it, ch):
                        m.busy_items += 1
                        was_busy += 1
                elif status is _Status.FROM_SLAB:
                    it.refcount = 0
                    it.flags = _CLEARED
                elif status in (_Status.BUSY, _Status.LOCKED):
                    m.busy_items += 1
                    was_busy += 1
                m.pos += 1
            if m.pos >= len(page):
                if m.busy_items:
                    m.pos = 0
                    self.counters.busy_items += m.busy_items
                    m.busy_items = 0
                    m.busy_loops += 1
                else:
                    m.done += 1
        return was_busy

    def _finish(self) -> None:
        a = self.allocator
        m = self._move
        with a.lock:
            s_cls = a.classes[m.src]
            d_cls = a.classes[m.dst]
            idx = next(i for i, p in enumerate(s_cls.slab_list) if p is m.page)
            del s_cls.slab_list[idx]
            d_cls.slab_list.append(m.page)
            if m.dst > SLAB_GLOBAL_PAGE_POOL:
                a.split_page(m.page, m.dst)
            else:
                a.mem_limit_reached = False
                a.release_memory()
            self._signal = _IDLE
            self._move = None
        c = self.counters
        c.slabs_moved += 1
        c.rescues += m.rescues
        c.evictions_nomem += m.evictions_nomem
        c.inline_reclaim += m.inline_reclaim
        c.chunk_rescues += m.chunk_rescues
        c.busy_deletes += m.busy_deletes
        log.debug("finished a slab move")