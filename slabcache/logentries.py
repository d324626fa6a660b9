"""Log entry kinds, event flags and the text rendering of log lines."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import NamedTuple, Optional, Union
from urllib.parse import quote

LOGGER_BUF_SIZE = 1024 * 64
LOGGER_WATCHER_BUF_SIZE = 1024 * 256
LOGGER_ENTRY_MAX_SIZE = 2048
LOGGER_PARSE_SCRATCH = 4096

# Approximate in-buffer footprint of an entry header and of each payload.
_HEADER_SIZE = 40
_PAYLOAD_SIZES = {
    "eviction": 16,
    "ext_write": 24,
    "item_get": 3,
    "item_store": 16,
}


class LogFlag(enum.IntFlag):
    """Event classes a watcher can subscribe to."""

    NONE = 0
    SYSEVENTS = 1 << 1
    FETCHERS = 1 << 2
    MUTATIONS = 1 << 3
    SYSERRORS = 1 << 4
    CONNEVENTS = 1 << 5
    EVICTIONS = 1 << 6
    STRICT = 1 << 7
    RAWCMDS = 1 << 9


class EntryType(enum.IntEnum):
    """Events a worker can log."""

    ASCII_CMD = 0
    EVICTION = 1
    ITEM_GET = 2
    ITEM_STORE = 3
    CRAWLER_STATUS = 4
    SLAB_MOVE = 5
    EXTSTORE_WRITE = 6
    COMPACT_START = 7
    COMPACT_ABORT = 8
    COMPACT_READ_START = 9
    COMPACT_READ_END = 10
    COMPACT_END = 11
    COMPACT_FRAGINFO = 12


class EntrySubtype(enum.IntEnum):
    """How an entry's payload is stored and rendered."""

    TEXT = 0
    EVICTION = 1
    ITEM_GET = 2
    ITEM_STORE = 3
    EXT_WRITE = 4


class EntryDetails(NamedTuple):
    """Static description of one event type."""

    subtype: EntrySubtype
    reqlen: int
    eflags: LogFlag
    format: Optional[str]


DEFAULT_ENTRIES: dict[EntryType, EntryDetails] = {
    EntryType.ASCII_CMD: EntryDetails(EntrySubtype.TEXT, 512, LogFlag.RAWCMDS, "<%d %s"),
    EntryType.EVICTION: EntryDetails(EntrySubtype.EVICTION, 512, LogFlag.EVICTIONS, None),
    EntryType.ITEM_GET: EntryDetails(EntrySubtype.ITEM_GET, 512, LogFlag.FETCHERS, None),
    EntryType.ITEM_STORE: EntryDetails(EntrySubtype.ITEM_STORE, 512, LogFlag.MUTATIONS, None),
    EntryType.CRAWLER_STATUS: EntryDetails(
        EntrySubtype.TEXT,
        512,
        LogFlag.SYSEVENTS,
        "type=lru_crawler crawler=%d lru=%s low_mark=%d next_reclaims=%d since_run=%d"
        " next_run=%d elapsed=%d examined=%d reclaimed=%d",
    ),
    EntryType.SLAB_MOVE: EntryDetails(
        EntrySubtype.TEXT, 512, LogFlag.SYSEVENTS, "type=slab_move src=%d dst=%d"
    ),
    EntryType.EXTSTORE_WRITE: EntryDetails(
        EntrySubtype.EXT_WRITE, 512, LogFlag.EVICTIONS, None
    ),
    EntryType.COMPACT_START: EntryDetails(
        EntrySubtype.TEXT, 512, LogFlag.SYSEVENTS, "type=compact_start id=%d version=%d"
    ),
    EntryType.COMPACT_ABORT: EntryDetails(
        EntrySubtype.TEXT, 512, LogFlag.SYSEVENTS, "type=compact_abort id=%d"
    ),
    EntryType.COMPACT_READ_START: EntryDetails(
        EntrySubtype.TEXT, 512, LogFlag.SYSEVENTS, "type=compact_read_start id=%d offset=%d"
    ),
    EntryType.COMPACT_READ_END: EntryDetails(
        EntrySubtype.TEXT,
        512,
        LogFlag.SYSEVENTS,
        "type=compact_read_end id=%d offset=%d rescues=%d lost=%d skipped=%d",
    ),
    EntryType.COMPACT_END: EntryDetails(
        EntrySubtype.TEXT, 512, LogFlag.SYSEVENTS, "type=compact_end id=%d"
    ),
    EntryType.COMPACT_FRAGINFO: EntryDetails(
        EntrySubtype.TEXT, 512, LogFlag.SYSEVENTS, "type=compact_fraginfo ratio=%.2f bytes=%d"
    ),
}

_STORE_STATUS = ("not_stored", "stored", "exists", "not_found", "too_large", "no_memory")
_STORE_CMDS = ("null", "add", "set", "replace", "append", "prepend", "cas")
_GET_STATUS = ("not_found", "found", "flushed", "expired")


def _signed32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def encode_key(key: Union[str, bytes]) -> str:
    """Percent-encode every byte of ``key`` outside the URI unreserved set."""
    if isinstance(key, str):
        key = key.encode("utf-8")
    return quote(bytes(key), safe="")


def render_text(event: EntryType, *args) -> str:
    """Render the text body of a text-type event from its arguments."""
    details = DEFAULT_ENTRIES[EntryType(event)]
    if details.subtype != EntrySubtype.TEXT or details.format is None:
        raise ValueError(f"{EntryType(event).name} is not a text entry")
    text = details.format % args
    size = len(text.encode("utf-8"))
    if size == 0 or size >= details.reqlen:
        raise ValueError(f"text entry of {size} bytes does not fit in {details.reqlen}")
    return text


@dataclass
class LogEntry:
    """One logged event, as held in a worker's buffer before rendering."""

    subtype: EntrySubtype
    eflags: LogFlag
    gid: int
    ts_sec: int = 0
    ts_usec: int = 0
    text: str = ""
    key: bytes = b""
    clsid: int = 0
    exptime: int = 0
    latime: int = 0
    fetched: bool = False
    bucket: int = 0
    was_found: int = 0
    status: int = 0
    cmd: int = 0
    ttl: int = 0

    def __post_init__(self) -> None:
        self.subtype = EntrySubtype(self.subtype)
        if isinstance(self.key, str):
            self.key = self.key.encode("utf-8")
        else:
            self.key = bytes(self.key)
        if len(self.key) > 255:
            raise ValueError("key longer than 255 bytes")

    @property
    def size(self) -> int:
        """Bytes this entry occupies in a log buffer."""
        if self.subtype == EntrySubtype.TEXT:
            return _HEADER_SIZE + len(self.text.encode("utf-8")) + 1
        name = {
            EntrySubtype.EVICTION: "eviction",
            EntrySubtype.EXT_WRITE: "ext_write",
            EntrySubtype.ITEM_GET: "item_get",
            EntrySubtype.ITEM_STORE: "item_store",
        }[self.subtype]
        return _HEADER_SIZE + _PAYLOAD_SIZES[name] + len(self.key)


def format_entry(entry: LogEntry) -> str:
    """Render a log entry as one newline-terminated line.

    Raises ValueError if the entry cannot be rendered or the line would
    not fit in the parse scratch space.
    """
    head = f"ts={_signed32(entry.ts_sec)}.{_signed32(entry.ts_usec)} gid={entry.gid}"
    subtype = entry.subtype
    if subtype == EntrySubtype.TEXT:
        line = f"{head} {entry.text}\n"
    elif subtype in (EntrySubtype.EVICTION, EntrySubtype.EXT_WRITE):
        kind = "eviction" if subtype == EntrySubtype.EVICTION else "extwrite"
        line = (
            f"{head} type={kind} key={encode_key(entry.key)} "
            f"fetch={'yes' if entry.fetched else 'no'} ttl={entry.exptime} "
            f"la={_signed32(entry.latime)} clsid={entry.clsid}"
        )
        if subtype == EntrySubtype.EXT_WRITE:
            line += f" bucket={entry.bucket}"
        line += "\n"
    elif subtype == EntrySubtype.ITEM_GET:
        if not 0 <= entry.was_found < len(_GET_STATUS):
            raise ValueError(f"unknown get status {entry.was_found}")
        line = (
            f"{head} type=item_get key={encode_key(entry.key)} "
            f"status={_GET_STATUS[entry.was_found]} clsid={entry.clsid}\n"
        )
    elif subtype == EntrySubtype.ITEM_STORE:
        if not 0 <= entry.status < len(_STORE_STATUS):
            raise ValueError(f"unknown store status {entry.status}")
        cmd = _STORE_CMDS[entry.cmd] if 0 <= entry.cmd <= 5 else "na"
        line = (
            f"{head} type=item_store key={encode_key(entry.key)} "
            f"status={_STORE_STATUS[entry.status]} cmd={cmd} "
            f"ttl={entry.ttl & 0xFFFFFFFF} clsid={entry.clsid}\n"
        )
    else:
        raise ValueError(f"unknown entry subtype {subtype}")

    if len(line.encode("utf-8")) >= LOGGER_PARSE_SCRATCH:
        raise ValueError("log line too long to flatten")
    return line