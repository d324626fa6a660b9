"""Per-worker event loggers and the watchers that receive their output."""

from __future__ import annotations

import itertools
import logging
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from slabcache.logentries import (
    DEFAULT_ENTRIES,
    LOGGER_BUF_SIZE,
    LOGGER_WATCHER_BUF_SIZE,
    EntrySubtype,
    EntryType,
    LogEntry,
    LogFlag,
    render_text,
)

log = logging.getLogger(__name__)

WATCHER_LIMIT = 20
MIN_LOGGER_SLEEP = 1000
MAX_LOGGER_SLEEP = 1000000
_SKIP_RESERVE = 128
# Bytes an entry takes in a worker buffer before its payload.
_ENTRY_OVERHEAD = LogEntry(EntrySubtype.TEXT, LogFlag.NONE, 0).size - 1

Sink = Callable[[bytes], Optional[int]]


class LogBufferFull(Exception):
    """A worker's log buffer has no room for another entry."""


class TooManyWatchers(Exception):
    """The watcher limit has been reached."""


def _stderr_sink(data: bytes) -> int:
    sys.stderr.write(data.decode("utf-8", "replace"))
    sys.stderr.flush()
    return len(data)


@dataclass
class LoggerStats:
    """Counters gathered by the logger hub."""

    worker_dropped: int = 0
    worker_written: int = 0
    watcher_skipped: int = 0
    watcher_sent: int = 0


@dataclass(eq=False)
class Watcher:
    """A consumer of rendered log lines with its own bounded output buffer.

    ``sink`` receives pending bytes and returns how many it took (None
    meaning all). Returning 0 or raising OSError closes the watcher;
    BlockingIOError leaves the data for a later try.
    """

    id: int
    flags: LogFlag
    sink: Sink
    capacity: int
    skipped: int = 0
    failed_flush: bool = False
    closed: bool = False
    _pending: bytearray = field(default_factory=bytearray, repr=False)

    @property
    def pending(self) -> bytes:
        """Bytes waiting to be written to the sink."""
        return bytes(self._pending)

    def _fits(self, size: int) -> bool:
        return len(self._pending) + size <= self.capacity

    def _offer(self, data: bytes) -> bool:
        if not self._fits(len(data)):
            return False
        self._pending += data
        return True


class Logger:
    """A worker's bounded buffer of log entries, drained by its hub."""

    def __init__(self, hub: "LoggerHub", buf_size: int) -> None:
        self._hub = hub
        self.buf_size = buf_size
        self.eflags = LogFlag.NONE
        self.written = 0
        self.dropped = 0
        self._entries: deque[LogEntry] = deque()
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        """Bytes currently held in the buffer."""
        return self._used

    def wants(self, flag: LogFlag) -> bool:
        """Return whether any watcher is interested in ``flag``."""
        return bool(self.eflags & flag)

    def log(self, event, *args) -> LogEntry:
        """Record one event and return the stored entry.

        Text events take their format arguments. EVICTION takes an item,
        EXTSTORE_WRITE an item and a bucket; items need ``key``,
        ``exptime``, ``time``, ``fetched`` and ``clsid``. ITEM_GET takes
        ``(was_found, key, clsid)`` and ITEM_STORE
        ``(status, cmd, key, ttl, clsid)``.
        """
        event = EntryType(event)
        details = DEFAULT_ENTRIES[event]
        with self._lock:
            if self._used + _ENTRY_OVERHEAD + details.reqlen > self.buf_size:
                self.dropped += 1
                raise LogBufferFull(f"no room for a {event.name} entry")
            entry = self._build(event, args)
            self._entries.append(entry)
            self._used += entry.size
            self.written += 1
        return entry

    def _build(self, event: EntryType, args: tuple) -> LogEntry:
        details = DEFAULT_ENTRIES[event]
        hub = self._hub
        now = hub.wallclock()
        ts_sec = int(now)
        ts_usec = int((now - ts_sec) * 1_000_000)
        base = dict(
            subtype=details.subtype,
            eflags=details.eflags,
            gid=hub._next_gid(),
            ts_sec=ts_sec,
            ts_usec=ts_usec,
        )
        subtype = details.subtype
        if subtype == EntrySubtype.TEXT:
            return LogEntry(**base, text=render_text(event, *args))
        if subtype in (EntrySubtype.EVICTION, EntrySubtype.EXT_WRITE):
            if subtype == EntrySubtype.EVICTION:
                (item,) = args
                bucket = 0
            else:
                item, bucket = args
            current = hub.current_time()
            exptime = item.exptime - current if item.exptime > 0 else -1
            return LogEntry(
                **base,
                key=item.key,
                exptime=exptime,
                latime=current - item.time,
                fetched=bool(item.fetched),
                clsid=item.clsid,
                bucket=bucket,
            )
        if subtype == EntrySubtype.ITEM_GET:
            was_found, key, clsid = args
            return LogEntry(**base, was_found=was_found, key=key, clsid=clsid)
        status, cmd, key, ttl, clsid = args
        rel_ttl = ttl - hub.current_time() if ttl != 0 else 0
        return LogEntry(
            **base, status=int(status), cmd=cmd, key=key, ttl=rel_ttl, clsid=clsid
        )


class LoggerHub:
    """Owns all worker loggers and watchers, and moves lines between them."""

    def __init__(
        self,
        buf_size: int = LOGGER_BUF_SIZE,
        watcher_buf_size: int = LOGGER_WATCHER_BUF_SIZE,
    ) -> None:
        self.buf_size = buf_size
        self.watcher_buf_size = watcher_buf_size
        self.stats = LoggerStats()
        self.current_time: Callable[[], int] = lambda: int(time.time())
        self.wallclock: Callable[[], float] = time.time
        self._loggers: list[Logger] = []
        self._slots: list[Optional[Watcher]] = [None] * WATCHER_LIMIT
        self._lock = threading.RLock()
        self._gid = itertools.count(1)
        self._gid_lock = threading.Lock()

    def _next_gid(self) -> int:
        with self._gid_lock:
            return next(self._gid)

    @property
    def watchers(self) -> list[Watcher]:
        """Currently open watchers, by slot."""
        return [w for w in self._slots if w is not None]

    def _flags(self) -> LogFlag:
        flags = LogFlag.NONE
        for w in self.watchers:
            flags |= w.flags
        return flags

    def _set_flags(self) -> None:
        flags = self._flags()
        for lg in self._loggers:
            with lg._lock:
                lg.eflags = flags

    def create_logger(self) -> Logger:
        """Create a worker logger and register it with the hub."""
        lg = Logger(self, self.buf_size)
        with self._lock:
            self._loggers.insert(0, lg)
            lg.eflags = self._flags()
        return lg

    def add_watcher(self, sink: Optional[Sink], flags) -> Watcher:
        """Attach a watcher for ``flags``; a None sink writes to stderr."""
        with self._lock:
            if len(self.watchers) >= WATCHER_LIMIT:
                raise TooManyWatchers(f"at most {WATCHER_LIMIT} watchers")
            slot = self._slots.index(None)
            watcher = Watcher(
                id=slot,
                flags=LogFlag(flags),
                sink=_stderr_sink if sink is None else sink,
                capacity=self.watcher_buf_size,
            )
            watcher._offer(b"OK\r\n")
            self._slots[slot] = watcher
            self._set_flags()
        return watcher

    def _close_watcher(self, watcher: Watcher) -> None:
        self._slots[watcher.id] = None
        watcher.closed = True
        self._set_flags()

    def _poll_watchers(self, target: Optional[int] = None) -> int:
        flushed = 0
        for w in self.watchers:
            if target is not None and w.id != target:
                continue
            w.failed_flush = False
            if not w._pending:
                continue
            data = bytes(w._pending)
            try:
                written = w.sink(data)
            except BlockingIOError:
                continue
            except OSError as exc:
                log.debug("watcher %d failed: %s", w.id, exc)
                self._close_watcher(w)
                continue
            if written is None:
                written = len(data)
            if written <= 0:
                self._close_watcher(w)
                continue
            del w._pending[:written]
            flushed += written
        return flushed

    def _write_entry(self, entry: LogEntry, line: bytes, ls: LoggerStats) -> None:
        for w in self.watchers:
            if not entry.eflags & w.flags:
                continue
            while not w.failed_flush and not w._fits(len(line) + _SKIP_RESERVE):
                if self._poll_watchers(w.id) <= 0:
                    w.failed_flush = True
            if w.closed:
                continue
            if w.failed_flush:
                w.skipped += 1
                ls.watcher_skipped += 1
                continue
            if w.skipped:
                w._pending += f"skipped={w.skipped}\n".encode("ascii")
                w.skipped = 0
            w._pending += line
            ls.watcher_sent += 1

    def _read(self, lg: Logger, ls: LoggerStats) -> int:
        with lg._lock:
            entries = list(lg._entries)
            size = lg._used
        if not entries:
            return 0
        for entry in entries:
            if not self.watchers:
                break
            try:
                line = format_line(entry)
            except ValueError as exc:
                log.error("failed to parse log entry: %s", exc)
                continue
            self._write_entry(entry, line, ls)
        with lg._lock:
            for _ in entries:
                lg._entries.popleft()
            lg._used -= size
            ls.worker_written += lg.written
            ls.worker_dropped += lg.dropped
            lg.written = 0
            lg.dropped = 0
        return size

    def run_once(self) -> int:
        """Drain every logger into the watchers; return bytes of entries read."""
        ls = LoggerStats()
        found = 0
        with self._lock:
            for lg in list(self._loggers):
                found += self._read(lg, ls)
            self._poll_watchers()
            self.stats.worker_dropped += ls.worker_dropped
            self.stats.worker_written += ls.worker_written
            self.stats.watcher_skipped += ls.watcher_skipped
            self.stats.watcher_sent += ls.watcher_sent
        return found

    def run(self, stop: threading.Event) -> None:
        """Call run_once repeatedly, backing off while idle, until ``stop``."""
        to_sleep = MIN_LOGGER_SLEEP
        while not stop.is_set():
            if to_sleep > MIN_LOGGER_SLEEP:
                stop.wait(to_sleep / 1_000_000)
            if self.run_once():
                to_sleep = max(to_sleep // 2, MIN_LOGGER_SLEEP)
            else:
                to_sleep = min(to_sleep + to_sleep // 8, MAX_LOGGER_SLEEP)


def format_line(entry: LogEntry) -> bytes:
    """Render an entry as the bytes sent to watchers."""
    from slabcache.logentries import format_entry

    return format_entry(entry).encode("utf-8")