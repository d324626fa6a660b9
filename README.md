# slabcache

The memory-management and bookkeeping core of an in-memory key/value cache
server, as a plain Python library with no third-party dependencies.

## What is in it

| Module | What it provides |
| --- | --- |
| `slabcache.jenkins` | `jenkins_hash(key)`: Bob Jenkins' lookup3 hash (little-endian, seed 0) of a bytes-like key, as a 32-bit unsigned int. |
| `slabcache.murmur3` | `murmur3_32(key)`: MurmurHash3 x86 32-bit (seed 0) of a bytes-like key. |
| `slabcache.allocator` | `SlabAllocator`, `SlabSettings`, `SlabClass`, `Chunk`: pages carved into fixed-size chunks over size classes that grow by a factor, with a global page pool (class 0) and a memory limit. |
| `slabcache.rebalance` | `SlabRebalancer`, `RebalanceCounters`: moves one page from a source class to a destination class (or the global pool), rescuing live items into free chunks of the same class. |
| `slabcache.slabtypes` | `SlabStatsAutomove`, `ReassignResult`, `ReassignError`. |
| `slabcache.automove` | `SlabAutomove`, `ItemStatsAutomove`: proposes page moves from age and eviction figures over a sliding window. |
| `slabcache.prefix_stats` | `PrefixStatsTable`, `PrefixStats`: get/hit/set/delete counters by key prefix and their text report. |
| `slabcache.logentries` | `LogFlag`, `EntryType`, `EntrySubtype`, `LogEntry`, `encode_key`, `format_entry`: log event kinds and their line format. |
| `slabcache.logger` | `LoggerHub`, `Logger`, `Watcher`, `LogBufferFull`, `TooManyWatchers`: per-worker log buffers fanned out to watchers. |
| `slabcache.sasl_pwdb` | `check_password`, `should_log`, `find_config_path`, `SaslLogLevel`: helpers for password-file authentication and SASL log filtering. |

## Installing

```
pip install slabcache
```

To run the test suite:

```
pip install "slabcache[test]"
pytest
```

## Examples

### Hashing keys

```python
from slabcache.jenkins import jenkins_hash
from slabcache.murmur3 import murmur3_32

bucket = jenkins_hash(b"user:42") % 256
other = murmur3_32(b"user:42")
```

Both functions are pure: the same key always gives the same value. The empty
key hashes to `0xdeadbeef` under `jenkins_hash` and to `0` under `murmur3_32`.

### Allocating chunks

```python
from slabcache.allocator import SlabAllocator, SlabSettings

allocator = SlabAllocator(SlabSettings(), 64 * 1024 * 1024, 1.25, False, None)

clsid = allocator.clsid(100)           # smallest class whose chunks hold 100 bytes
chunk = allocator.alloc(100, clsid, False)
allocator.free(chunk, 100, clsid)

print(allocator.stats()["active_slabs"])
print(allocator.available_chunks(clsid).free_chunks)
```

- `clsid(size)` raises `ValueError` for a size of 0 or above
  `SlabSettings.item_size_max`; sizes above the largest class get the largest
  class.
- `alloc` returns `None` when the class has no free chunk and no new page can
  be had (the memory limit is hit and the global pool is empty), or when
  `no_newpage` is true and the free list is empty. It raises `ValueError` if
  `size` is larger than the class's chunk size.
- `prefill_global()` fills the global page pool up to the memory limit.
- `adjust_mem_limit(new_limit)` changes the limit and gives pooled pages back
  while above it; with `prealloc=True` it raises `RuntimeError`.
- `automove_stats()` and `global_page_pool_size()` give the snapshots the
  automover uses.

Pages are Python lists of `Chunk` objects; there is no raw memory behind them.
`Chunk.payload` is free for the caller to hold the stored item.

### Rebalancing a page

```python
from slabcache.rebalance import SlabRebalancer
from slabcache.slabtypes import ReassignError

rebalancer = SlabRebalancer(allocator, 1)
try:
    rebalancer.reassign(clsid, 0)       # src -1 picks any class with a spare page
    rebalancer.run_until_idle(100000)
except ReassignError as exc:
    print("refused:", exc.result.name)  # RUNNING, BADCLASS, NOSPARE, SRC_DST_SAME
print(rebalancer.counters.slabs_moved)
```

`reassign` raises `ReassignError` when the request is refused. The move is
driven with `step()` (one unit of work, up to `bulk_check` chunks) or
`run_until_idle(max_steps)`, which raises `TimeoutError` if the move is still
pending. `run(stop)` serves requests in a thread until the `threading.Event`
is set, and `paused()` is a context manager that holds moves off.

Item-level actions are replaceable attributes: `try_lock(chunk)`,
`unlock(chunk)`, `is_expired(chunk)`, `replace(old, new)` and `unlink(chunk)`.
When `bulk_check` is `None` it is read from the `MEMCACHED_SLAB_BULK_CHECK`
environment variable, defaulting to 1.

### Automatic page moves

```python
from slabcache.automove import ItemStatsAutomove, SlabAutomove

def item_stats():
    return [ItemStatsAutomove() for _ in range(64)]

mover = SlabAutomove(30, 0.8, item_stats, allocator.automove_stats, 64, 1)
decision = mover.run()                  # (src, dst) or None
if decision is not None:
    rebalancer.reassign(*decision)
```

A class with more than 2.5 pages' worth of free chunks and a clean window is
offered back to the global pool (`dst` 0). Otherwise, once the window has
filled, a page moves from the oldest class to the youngest evicting one when
the youngest's age is below `max_age_ratio` times the oldest's.

### Prefix statistics

```python
from slabcache.jenkins import jenkins_hash
from slabcache.prefix_stats import PrefixStatsTable

table = PrefixStatsTable(":", jenkins_hash)
table.record_set("abc:123")
table.record_get("abc:123", True)
table.record_delete("def:9")

print(table.dump())
```

The prefix is everything before the first delimiter; keys without it are not
counted. The report has one `PREFIX <name> get <n> hit <n> set <n> del <n>\r\n`
line per prefix, in hash-bucket order, followed by `END\r\n`.

### Logging to watchers

```python
from slabcache.logentries import EntryType, LogFlag
from slabcache.logger import LoggerHub

received = []

def sink(data):
    received.append(data)
    return len(data)

hub = LoggerHub(64 * 1024, 256 * 1024)
worker_log = hub.create_logger()
hub.add_watcher(sink, LogFlag.FETCHERS)

if worker_log.wants(LogFlag.FETCHERS):
    worker_log.log(EntryType.ITEM_GET, 1, b"user:42", 3)
hub.run_once()
# received holds b"OK\r\n" followed by a line such as
# b"ts=... gid=1 type=item_get key=user%3A42 status=found clsid=3\n"
```

- A sink takes bytes and returns how many it took (`None` meaning all).
  Returning 0 or raising `OSError` closes the watcher; `BlockingIOError`
  keeps the data for the next try. A `None` sink writes to standard error.
- `Logger.log` raises `LogBufferFull` when the worker's buffer has no room;
  `LoggerHub.add_watcher` raises `TooManyWatchers` once twenty watchers are
  attached.
- Watchers whose buffer stays full skip lines and later receive a
  `skipped=<n>` line.
- `LoggerHub.run(stop)` calls `run_once` in a loop with an idle back-off until
  the `threading.Event` is set; totals are in `LoggerHub.stats`.

### Password file and SASL helpers

```python
from slabcache.sasl_pwdb import SaslLogLevel, check_password, find_config_path, should_log

password = "password"
ok = check_password("users.db", "alice", password)

config = find_config_path()             # SASL_CONF_PATH, else the first existing default
show = should_log(SaslLogLevel.WARN, 1)
```

Each line of the password file is `user:password`, optionally followed by
further `:`-separated fields. The first line for the user decides the result;
a missing file or an over-long entry fails the check.

## What this package does not do

It is a library of parts, not a cache server. There is no network listener,
protocol parser, command-line program, item hash table or LRU: the allocator
hands out chunks, and the rebalancer reaches items only through its hooks.
There is no external storage tier, no SASL mechanism negotiation (only the
password check, log filter and config lookup above), and nothing that drops
process privileges.