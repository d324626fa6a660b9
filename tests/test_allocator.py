import dataclasses

import pytest
from hypothesis import given, settings as hsettings, strategies as st

from slabcache.allocator import (
    ITEM_CHUNK,
    ITEM_CHUNKED,
    ITEM_SLABBED,
    SlabAllocator,
    SlabSettings,
)

PAGE = 1024


def small_settings(**kw):
    return SlabSettings(
        item_size_max=PAGE,
        slab_page_size=PAGE,
        slab_chunk_size_max=PAGE // 2,
        chunk_size=16,
        item_header_size=16,
        **kw,
    )


def make(limit=0, prealloc=False, sizes=(128, 256)):
    return SlabAllocator(
        small_settings(), limit, 1.25, prealloc, list(sizes) if sizes is not None else None
    )


def test_explicit_sizes_define_classes():
    a = make()
    assert a.power_largest == 3
    assert [a.classes[i].size for i in (1, 2, 3)] == [128, 256, PAGE // 2]
    for i in (1, 2, 3):
        cls = a.classes[i]
        assert cls.perslab * cls.size <= PAGE < (cls.perslab + 1) * cls.size


def test_unaligned_size_is_rounded_up():
    a = make(sizes=(100,))
    size = a.classes[1].size
    assert size % 8 == 0 and 100 <= size < 108


def test_factor_growth_invariants():
    a = make(sizes=None)
    sizes = [a.classes[i].size for i in range(1, a.power_largest + 1)]
    assert sizes[0] == 32
    assert sizes == sorted(set(sizes))
    assert all(s % 8 == 0 for s in sizes)
    assert sizes[-1] == PAGE // 2


def test_clsid_lookup():
    a = make()
    assert a.clsid(1) == 1
    assert a.clsid(128) == 1
    assert a.clsid(129) == 2
    assert a.clsid(PAGE) == a.power_largest
    with pytest.raises(ValueError):
        a.clsid(0)
    with pytest.raises(ValueError):
        a.clsid(PAGE + 1)


def test_alloc_takes_a_page():
    a = make()
    chunk = a.alloc(100, 1)
    avail = a.available_chunks(1)
    assert avail.free_chunks == a.classes[1].perslab - 1
    assert avail.requested == 100
    assert avail.chunks_per_page == a.classes[1].perslab
    assert a.mem_malloced == PAGE
    assert chunk.refcount == 1
    assert chunk.clsid == 1
    assert not chunk.flags & ITEM_SLABBED


def test_free_round_trip():
    a = make()
    chunk = a.alloc(100, 1)
    a.free(chunk, 100, 1)
    avail = a.available_chunks(1)
    assert avail.free_chunks == a.classes[1].perslab
    assert avail.requested == 0
    assert chunk.flags == ITEM_SLABBED
    assert a.alloc(50, 1) is chunk


def test_alloc_bad_class_returns_none():
    a = make()
    assert a.alloc(10, 0) is None
    assert a.alloc(10, a.power_largest + 1) is None


def test_alloc_too_large_for_class():
    with pytest.raises(ValueError):
        make().alloc(129, 1)


def test_free_bad_class():
    a = make()
    chunk = a.alloc(10, 1)
    with pytest.raises(ValueError):
        a.free(chunk, 10, 0)


def test_no_newpage_does_not_grow():
    a = make()
    assert a.alloc(10, 1, no_newpage=True) is None
    assert a.classes[1].slabs == 0
    assert a.mem_malloced == 0


def test_memory_limit_stops_growth():
    a = make(limit=PAGE)
    perslab = a.classes[1].perslab
    chunks = [a.alloc(10, 1) for _ in range(perslab)]
    assert all(c is not None for c in chunks)
    assert a.alloc(10, 1) is None
    assert a.mem_limit_reached
    # every class may still take its first page
    assert a.alloc(10, 2) is not None
    assert a.mem_malloced == 2 * PAGE


def test_prefill_global_and_pool_use():
    a = make(limit=4 * PAGE)
    a.prefill_global()
    assert a.global_page_pool_size() == (4, True)
    assert a.mem_limit_reached
    a.alloc(10, 1)
    assert a.global_page_pool_size() == (3, True)
    assert a.mem_malloced == 4 * PAGE


def test_adjust_mem_limit_releases_pool():
    a = make(limit=4 * PAGE)
    a.prefill_global()
    a.adjust_mem_limit(2 * PAGE)
    assert a.global_page_pool_size()[0] == 2
    assert a.mem_malloced == 2 * PAGE
    assert a.mem_limit == 2 * PAGE
    assert a.settings.maxbytes == 2 * PAGE
    assert not a.mem_limit_reached


def test_adjust_mem_limit_refused_when_preallocated():
    a = make(limit=3 * PAGE, prealloc=True)
    with pytest.raises(RuntimeError):
        a.adjust_mem_limit(PAGE)


def test_prealloc_gives_each_class_a_page():
    a = make(limit=3 * PAGE, prealloc=True)
    assert [a.classes[i].slabs for i in (1, 2, 3)] == [1, 1, 1]
    assert a.mem_malloced == 3 * PAGE


def test_prealloc_too_small():
    with pytest.raises(MemoryError):
        make(limit=2 * PAGE, prealloc=True)


def test_initial_malloced_setting():
    s = dataclasses.replace(small_settings(), initial_malloced=500)
    a = SlabAllocator(s, 0, 1.25, False, [128])
    assert a.mem_malloced == 500


def test_chunked_free_returns_every_chunk():
    a = make()
    head = a.alloc(400, 3)
    link = a.alloc(120, 1)
    head.flags |= ITEM_CHUNKED
    link.flags = ITEM_CHUNK
    head.chain.append(link)
    a.free(head, 400, 3)
    assert a.available_chunks(3).free_chunks == a.classes[3].perslab
    assert a.available_chunks(1).free_chunks == a.classes[1].perslab
    assert a.available_chunks(3).requested == 0
    assert a.available_chunks(1).requested == 0
    assert link.flags == ITEM_SLABBED and head.chain == []


def test_adjust_mem_requested():
    a = make()
    a.alloc(100, 1)
    a.adjust_mem_requested(1, 100, 120)
    assert a.available_chunks(1).requested == 120
    with pytest.raises(ValueError):
        a.adjust_mem_requested(0, 1, 2)


def test_stats_report_active_classes():
    a = make()
    a.alloc(10, 1)
    stats = a.stats()
    assert stats["1:total_pages"] == 1
    assert stats["1:used_chunks"] == 1
    assert stats["1:free_chunks"] == a.classes[1].perslab - 1
    assert stats["active_slabs"] == 1
    assert stats["total_malloced"] == PAGE
    assert "2:chunk_size" not in stats


def test_automove_stats_match_classes():
    a = make()
    a.alloc(10, 2)
    snap = a.automove_stats()
    assert len(snap) == a.settings.max_classes
    assert snap[2].free_chunks == a.available_chunks(2).free_chunks
    assert snap[2].total_pages == 1
    assert snap[2].chunk_size == 256


def test_unlink_free_and_split_page():
    a = make()
    chunk = a.alloc(10, 1)
    a.free(chunk, 10, 1)
    before = a.classes[1].sl_curr
    a.unlink_free(1, chunk)
    assert a.classes[1].sl_curr == before - 1
    page = chunk.page
    a.split_page(page, 2)
    assert len(page) == a.classes[2].perslab
    assert all(c.page is page and c.size == 256 for c in page)


@hsettings(max_examples=50, deadline=None)
@given(
    st.lists(
        st.tuples(st.sampled_from([1, 2, 3]), st.booleans(), st.integers(1, 128)),
        max_size=60,
    )
)
def test_accounting_invariants(ops):
    a = make()
    live = {1: [], 2: [], 3: []}
    for clsid, do_alloc, size in ops:
        if do_alloc or not live[clsid]:
            chunk = a.alloc(size, clsid)
            assert chunk is not None
            live[clsid].append(chunk)
        else:
            chunk = live[clsid].pop()
            a.free(chunk, chunk.requested, clsid)
    for clsid, chunks in live.items():
        cls = a.classes[clsid]
        assert cls.sl_curr + len(chunks) == cls.slabs * cls.perslab
        assert cls.requested == sum(c.requested for c in chunks)
    assert a.mem_malloced == PAGE * sum(a.classes[i].slabs for i in (1, 2, 3))