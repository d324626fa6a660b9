from dataclasses import dataclass

import pytest

from slabcache.automove import ItemStatsAutomove, SlabAutomove

NUM_CLASSES = 4


@dataclass
class _SlabStat:
    chunks_per_page: int = 10
    chunk_size: int = 96
    free_chunks: int = 0
    total_pages: int = 1


class _Source:
    def __init__(self):
        self.items = [ItemStatsAutomove() for _ in range(NUM_CLASSES)]
        self.slabs = [_SlabStat() for _ in range(NUM_CLASSES)]

    def item_stats(self):
        return [ItemStatsAutomove(i.evicted, i.outofmemory, i.age) for i in self.items]

    def slab_stats(self):
        return [
            _SlabStat(s.chunks_per_page, s.chunk_size, s.free_chunks, s.total_pages)
            for s in self.slabs
        ]


def _make(source, window_size=4, ratio=0.8):
    return SlabAutomove(
        window_size, ratio, source.item_stats, source.slab_stats, NUM_CLASSES, 1
    )


def test_zero_window_rejected():
    source = _Source()
    with pytest.raises(ValueError):
        SlabAutomove(0, 0.8, source.item_stats, source.slab_stats, NUM_CLASSES, 1)


def test_idle_classes_make_no_move():
    source = _Source()
    mover = _make(source)
    assert [mover.run() for _ in range(6)] == [None] * 6


def test_too_many_free_chunks_reclaims_to_global_pool():
    source = _Source()
    source.slabs[1].free_chunks = 30
    mover = _make(source)
    assert mover.run() == (1, 0)


def test_dirty_window_blocks_reclaim_on_following_run():
    source = _Source()
    mover = _make(source)
    source.slabs[1].free_chunks = 30
    source.slabs[1].total_pages = 2
    assert mover.run() == (1, 0)
    assert mover.run() is None


def _age_scenario(source):
    source.items[1].age = 1000
    source.slabs[1].total_pages = 3
    source.items[2].age = 10
    source.slabs[2].total_pages = 1


def test_young_evicting_class_takes_page_from_old_class():
    source = _Source()
    _age_scenario(source)
    mover = _make(source, window_size=3, ratio=0.8)
    results = []
    for _ in range(4):
        source.items[2].evicted += 1
        results.append(mover.run())
    assert results == [None, None, None, (1, 2)]


def test_no_move_when_young_class_stopped_evicting():
    source = _Source()
    _age_scenario(source)
    mover = _make(source, window_size=3, ratio=0.8)
    for _ in range(3):
        source.items[2].evicted += 1
        assert mover.run() is None
    assert mover.run() is None


def test_window_counter_advances_each_run():
    source = _Source()
    mover = _make(source)
    for _ in range(5):
        mover.run()
    assert mover.window_cur == 5