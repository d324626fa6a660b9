"""Slab memory allocator: fixed-size chunk classes carved out of pages."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional, Sequence

from slabcache.slabtypes import SlabStatsAutomove

log = logging.getLogger(__name__)

SLAB_GLOBAL_PAGE_POOL = 0
POWER_SMALLEST = 1

ITEM_LINKED = 1
ITEM_CAS = 2
ITEM_SLABBED = 4
ITEM_FETCHED = 8
ITEM_ACTIVE = 16
ITEM_CHUNKED = 32
ITEM_CHUNK = 64
ITEM_HDR = 128


@dataclass
class SlabSettings:
    """Sizing knobs for the allocator."""

    item_size_max: int = 1024 * 1024
    slab_page_size: int = 1024 * 1024
    slab_chunk_size_max: int = 512 * 1024
    chunk_size: int = 48
    item_header_size: int = 48
    chunk_align_bytes: int = 8
    slab_reassign: bool = True
    max_classes: int = 64
    initial_malloced: int = 0
    maxbytes: int = 64 * 1024 * 1024


@dataclass(eq=False)
class Chunk:
    """One fixed-size slot inside a slab page."""

    size: int
    page: list = field(repr=False)
    index: int = 0
    flags: int = 0
    clsid: int = 0
    orig_clsid: int = 0
    refcount: int = 0
    requested: int = 0
    chain: list = field(default_factory=list, repr=False)
    payload: Any = field(default=None, repr=False)


@dataclass
class SlabClass:
    """A chunk size, its pages and its free list."""

    size: int = 0
    perslab: int = 0
    slots: list = field(default_factory=list, repr=False)
    slab_list: list = field(default_factory=list, repr=False)
    requested: int = 0

    @property
    def sl_curr(self) -> int:
        """Number of free chunks."""
        return len(self.slots)

    @property
    def slabs(self) -> int:
        """Number of pages owned by the class."""
        return len(self.slab_list)


class ChunkAvailability(NamedTuple):
    """Free-space hints for one slab class."""

    free_chunks: int
    mem_limit_reached: bool
    requested: int
    chunks_per_page: int


def _align(size: int, align: int) -> int:
    rem = size % align
    return size + (align - rem) if rem else size


class SlabAllocator:
    """Allocates chunks from size classes grown by a constant factor.

    Pages are lists of Chunk objects. Class 0 is the global pool of
    unassigned pages. ``lock`` is reentrant and guards all state.
    """

    def __init__(
        self,
        settings: Optional[SlabSettings] = None,
        limit: int = 0,
        factor: float = 1.25,
        prealloc: bool = False,
        slab_sizes: Optional[Sequence[int]] = None,
    ) -> None:
        s = settings if settings is not None else SlabSettings()
        self.settings = s
        self.lock = threading.RLock()
        self.mem_limit = limit
        self.mem_malloced = s.initial_malloced
        self.mem_limit_reached = False
        self.prealloc = bool(prealloc)
        self._mem_avail = limit if self.prealloc else 0
        self.classes = [SlabClass() for _ in range(s.max_classes)]

        sizes = list(slab_sizes) if slab_sizes is not None else None
        size = s.item_header_size + s.chunk_size
        i = POWER_SMALLEST
        while i < s.max_classes - 1:
            if sizes is not None:
                if i - 1 >= len(sizes) or sizes[i - 1] == 0:
                    break
                size = sizes[i - 1]
            elif size >= s.slab_chunk_size_max / factor:
                break
            size = _align(size, s.chunk_align_bytes)
            cls = self.classes[i]
            cls.size = size
            cls.perslab = s.slab_page_size // size
            if sizes is None:
                size = int(size * factor)
            log.debug("slab class %3d: chunk size %9u perslab %7u", i, cls.size, cls.perslab)
            i += 1

        self.power_largest = i
        last = self.classes[i]
        last.size = s.slab_chunk_size_max
        last.perslab = s.slab_page_size // s.slab_chunk_size_max
        log.debug("slab class %3d: chunk size %9u perslab %7u", i, last.size, last.perslab)

        if self.prealloc:
            self._preallocate(self.power_largest)

    def _preallocate(self, maxslabs: int) -> None:
        count = 0
        for clsid in range(POWER_SMALLEST, self.settings.max_classes):
            count += 1
            if count > maxslabs:
                return
            if not self._newslab(clsid):
                raise MemoryError(
                    "error while preallocating slab memory; max memory must be at "
                    f"least {self.power_largest} megabytes"
                )

    def _page_len(self, cls: SlabClass) -> int:
        s = self.settings
        if s.slab_reassign or s.slab_chunk_size_max != s.slab_page_size:
            return s.slab_page_size
        return cls.size * cls.perslab

    def _memory_allocate(self, size: int) -> Optional[list]:
        if self.prealloc:
            if size > self._mem_avail:
                return None
            size = _align(size, self.settings.chunk_align_bytes)
            self._mem_avail = self._mem_avail - size if size < self._mem_avail else 0
        self.mem_malloced += size
        return []

    def _page_from_global_pool(self) -> Optional[list]:
        pool = self.classes[SLAB_GLOBAL_PAGE_POOL].slab_list
        return pool.pop() if pool else None

    def _newslab(self, clsid: int) -> bool:
        p = self.classes[clsid]
        g = self.classes[SLAB_GLOBAL_PAGE_POOL]
        length = self._page_len(p)
        if (
            self.mem_limit
            and self.mem_malloced + length > self.mem_limit
            and p.slabs > 0
            and g.slabs == 0
        ):
            self.mem_limit_reached = True
            return False
        page = self._page_from_global_pool()
        if page is None:
            page = self._memory_allocate(length)
            if page is None:
                return False
        self.split_page(page, clsid)
        p.slab_list.append(page)
        return True

    def split_page(self, page: list, clsid: int) -> None:
        """Carve ``page`` into fresh chunks of class ``clsid`` and free them."""
        with self.lock:
            p = self.classes[clsid]
            page[:] = [Chunk(size=p.size, page=page, index=x) for x in range(p.perslab)]
            for chunk in page:
                self._free(chunk, 0, clsid)

    def unlink_free(self, clsid: int, chunk: Chunk) -> None:
        """Remove a specific chunk from a class's free list."""
        with self.lock:
            self.classes[clsid].slots.remove(chunk)

    def release_memory(self) -> None:
        """Give pooled pages back while more memory is held than allowed."""
        with self.lock:
            if self.prealloc or not self.settings.slab_reassign:
                return
            while self.mem_malloced > self.mem_limit:
                if self._page_from_global_pool() is None:
                    break
                self.mem_malloced -= self.settings.slab_page_size

    def _check_class(self, clsid: int) -> None:
        if not POWER_SMALLEST <= clsid <= self.power_largest:
            raise ValueError(f"invalid slab class {clsid}")

    def clsid(self, size: int) -> int:
        """Return the smallest class whose chunks hold ``size`` bytes."""
        if size <= 0 or size > self.settings.item_size_max:
            raise ValueError(f"no slab class can hold {size} bytes")
        res = POWER_SMALLEST
        while size > self.classes[res].size:
            if res == self.power_largest:
                return self.power_largest
            res += 1
        return res

    def alloc(self, size: int, clsid: int, no_newpage: bool = False) -> Optional[Chunk]:
        """Take a chunk from class ``clsid``; None if the class is out of memory."""
        with self.lock:
            if not POWER_SMALLEST <= clsid <= self.power_largest:
                return None
            p = self.classes[clsid]
            if size > p.size:
                raise ValueError(f"{size} bytes do not fit class {clsid} ({p.size})")
            if not p.slots and not no_newpage:
                self._newslab(clsid)
            if not p.slots:
                return None
            chunk = p.slots.pop()
            chunk.flags &= ~ITEM_SLABBED
            chunk.refcount = 1
            chunk.clsid = clsid
            chunk.orig_clsid = clsid
            chunk.requested = size
            p.requested += size
            return chunk

    def free(self, chunk: Chunk, size: int, clsid: int) -> None:
        """Return a chunk (and any chunks chained to it) to the free lists."""
        with self.lock:
            self._check_class(clsid)
            self._free(chunk, size, clsid)

    def _free(self, chunk: Chunk, size: int, clsid: int) -> None:
        if chunk.flags & ITEM_CHUNKED:
            self._free_chunked(chunk)
            return
        p = self.classes[clsid]
        chunk.flags = ITEM_SLABBED
        chunk.clsid = 0
        p.slots.append(chunk)
        p.requested -= size

    def _free_chunked(self, head: Chunk) -> None:
        p = self.classes[head.orig_clsid]
        head.flags = ITEM_SLABBED
        head.clsid = 0
        p.slots.append(head)
        p.requested -= head.requested
        for link in head.chain:
            lp = self.classes[link.clsid]
            link.flags = ITEM_SLABBED
            link.clsid = 0
            lp.slots.append(link)
            lp.requested -= link.requested
        head.chain = []

    def prefill_global(self) -> None:
        """Fill the global page pool up to the memory limit."""
        with self.lock:
            pool = self.classes[SLAB_GLOBAL_PAGE_POOL].slab_list
            while self.mem_malloced < self.mem_limit:
                page = self._memory_allocate(self.settings.slab_page_size)
                if page is None:
                    break
                pool.append(page)
            self.mem_limit_reached = True

    def adjust_mem_limit(self, new_limit: int) -> None:
        """Change the memory limit, releasing pooled pages above it."""
        with self.lock:
            if self.prealloc:
                raise RuntimeError("cannot adjust memory limit when preallocated")
            self.settings.maxbytes = new_limit
            self.mem_limit = new_limit
            self.mem_limit_reached = False
            self.release_memory()

    def adjust_mem_requested(self, clsid: int, old: int, ntotal: int) -> None:
        """Account for an item in ``clsid`` changing size from old to ntotal."""
        with self.lock:
            self._check_class(clsid)
            p = self.classes[clsid]
            p.requested = p.requested - old + ntotal

    def available_chunks(self, clsid: int) -> ChunkAvailability:
        """Return free-space hints for a class."""
        if not 0 <= clsid < self.settings.max_classes:
            raise ValueError(f"invalid slab class {clsid}")
        with self.lock:
            p = self.classes[clsid]
            return ChunkAvailability(
                p.sl_curr, self.mem_malloced >= self.mem_limit, p.requested, p.perslab
            )

    def global_page_pool_size(self) -> tuple[int, bool]:
        """Return (pages in the global pool, whether the limit is reached)."""
        with self.lock:
            return (
                self.classes[SLAB_GLOBAL_PAGE_POOL].slabs,
                self.mem_malloced >= self.mem_limit,
            )

    def automove_stats(self) -> list[SlabStatsAutomove]:
        """Snapshot every class for the automover."""
        with self.lock:
            return [
                SlabStatsAutomove(
                    chunks_per_page=p.perslab,
                    chunk_size=p.size,
                    free_chunks=p.sl_curr,
                    total_pages=p.slabs,
                )
                for p in self.classes
            ]

    def stats(self) -> dict[str, int]:
        """Per-class and overall statistics, keyed as in the stats protocol."""
        result: dict[str, int] = {}
        with self.lock:
            active = 0
            for i in range(POWER_SMALLEST, self.power_largest + 1):
                p = self.classes[i]
                if not p.slabs:
                    continue
                total = p.slabs * p.perslab
                result[f"{i}:chunk_size"] = p.size
                result[f"{i}:chunks_per_page"] = p.perslab
                result[f"{i}:total_pages"] = p.slabs
                result[f"{i}:total_chunks"] = total
                result[f"{i}:used_chunks"] = total - p.sl_curr
                result[f"{i}:free_chunks"] = p.sl_curr
                result[f"{i}:free_chunks_end"] = 0
                result[f"{i}:mem_requested"] = p.requested
                active += 1
            result["active_slabs"] = active
            result["total_malloced"] = self.mem_malloced
        return result