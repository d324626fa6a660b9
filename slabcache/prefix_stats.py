"""Per-key-prefix request counters, grouped by a delimiter in the key."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional, Union

from slabcache.jenkins import jenkins_hash

PREFIX_HASH_SIZE = 256
_LINE_FORMAT = "PREFIX {} get {} hit {} set {} del {}\r\n"
_END = "END\r\n"

Key = Union[str, bytes]


@dataclass
class PrefixStats:
    """Counters for one key prefix."""

    prefix: str
    num_gets: int = 0
    num_sets: int = 0
    num_deletes: int = 0
    num_hits: int = 0


class PrefixStatsTable:
    """A fixed-size hash of prefix counters.

    A key's prefix is everything before the first ``delimiter``; keys
    without a delimiter (before any NUL character) are not counted.
    """

    def __init__(
        self,
        delimiter: str = ":",
        hash_func: Callable[[bytes], int] = jenkins_hash,
    ) -> None:
        if len(delimiter) != 1:
            raise ValueError("delimiter must be a single character")
        self.delimiter = delimiter
        self._hash = hash_func
        self._buckets: list[list[PrefixStats]] = [[] for _ in range(PREFIX_HASH_SIZE)]
        self._lock = threading.Lock()
        self.total_prefix_size = 0

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets)

    def _prefix_of(self, key: Key) -> Optional[str]:
        if isinstance(key, (bytes, bytearray)):
            key = bytes(key).decode("utf-8", "surrogateescape")
        for pos, ch in enumerate(key):
            if ch == "\0":
                return None
            if ch == self.delimiter:
                return key[:pos]
        return None

    def _find(self, key: Key) -> Optional[PrefixStats]:
        prefix = self._prefix_of(key)
        if prefix is None:
            return None
        raw = prefix.encode("utf-8", "surrogateescape")
        bucket = self._buckets[self._hash(raw) % PREFIX_HASH_SIZE]
        for pfs in bucket:
            if pfs.prefix == prefix:
                return pfs
        pfs = PrefixStats(prefix)
        bucket.insert(0, pfs)
        self.total_prefix_size += len(raw)
        return pfs

    def find(self, key: Key) -> Optional[PrefixStats]:
        """Return the counters for the key's prefix, creating them if needed."""
        with self._lock:
            return self._find(key)

    def record_get(self, key: Key, is_hit: bool) -> None:
        """Count a get of ``key``, and a hit if ``is_hit``."""
        with self._lock:
            pfs = self._find(key)
            if pfs is not None:
                pfs.num_gets += 1
                if is_hit:
                    pfs.num_hits += 1

    def record_delete(self, key: Key) -> None:
        """Count a delete of ``key``."""
        with self._lock:
            pfs = self._find(key)
            if pfs is not None:
                pfs.num_deletes += 1

    def record_set(self, key: Key) -> None:
        """Count a set of ``key``."""
        with self._lock:
            pfs = self._find(key)
            if pfs is not None:
                pfs.num_sets += 1

    def clear(self) -> None:
        """Forget every prefix."""
        with self._lock:
            for bucket in self._buckets:
                bucket.clear()
            self.total_prefix_size = 0

    def dump(self) -> str:
        """Render all counters as protocol text, terminated by ``END``."""
        with self._lock:
            lines = [
                _LINE_FORMAT.format(
                    pfs.prefix, pfs.num_gets, pfs.num_hits, pfs.num_sets, pfs.num_deletes
                )
                for bucket in self._buckets
                for pfs in bucket
            ]
        return "".join(lines) + _END