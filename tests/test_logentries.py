from urllib.parse import unquote_to_bytes

import pytest
from hypothesis import given, strategies as st

from slabcache.logentries import (
    DEFAULT_ENTRIES,
    EntrySubtype,
    EntryType,
    LogEntry,
    LogFlag,
    encode_key,
    format_entry,
    render_text,
)

_SAFE = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~%")


def test_encode_key_leaves_plain_key():
    assert encode_key(b"abc-1.2_x~") == "abc-1.2_x~"


def test_encode_key_escapes_space():
    assert encode_key("a b") == "a%20b"


@given(st.binary(max_size=250))
def test_encode_key_round_trip(key):
    encoded = encode_key(key)
    assert unquote_to_bytes(encoded) == key
    assert set(encoded) <= _SAFE


def test_render_slab_move():
    assert render_text(EntryType.SLAB_MOVE, 3, 0) == "type=slab_move src=3 dst=0"


def test_render_rejects_non_text():
    with pytest.raises(ValueError):
        render_text(EntryType.ITEM_GET, 1)


def test_render_rejects_overlong_text():
    with pytest.raises(ValueError):
        render_text(EntryType.ASCII_CMD, 5, "x" * 600)


def test_text_entry_format():
    entry = LogEntry(EntrySubtype.TEXT, LogFlag.SYSEVENTS, gid=7, ts_sec=10, ts_usec=5, text="hello")
    line = format_entry(entry)
    assert line.startswith("ts=10.5 gid=7 ")
    assert line.endswith(" hello\n")


def test_item_get_entry():
    entry = LogEntry(
        EntrySubtype.ITEM_GET, LogFlag.FETCHERS, gid=1, key=b"foo", was_found=1, clsid=4
    )
    line = format_entry(entry)
    assert "type=item_get key=foo status=found clsid=4" in line
    assert line.endswith("\n")


def test_item_get_bad_status():
    entry = LogEntry(EntrySubtype.ITEM_GET, LogFlag.FETCHERS, gid=1, key=b"k", was_found=9)
    with pytest.raises(ValueError):
        format_entry(entry)


def test_item_store_cmd_mapping():
    stored = LogEntry(
        EntrySubtype.ITEM_STORE, LogFlag.MUTATIONS, gid=2, key=b"k", status=1, cmd=2
    )
    line = format_entry(stored)
    assert "status=stored" in line
    assert "cmd=set" in line
    cas = LogEntry(
        EntrySubtype.ITEM_STORE, LogFlag.MUTATIONS, gid=2, key=b"k", status=2, cmd=6
    )
    assert "cmd=na" in format_entry(cas)


def test_item_store_ttl_is_unsigned():
    entry = LogEntry(
        EntrySubtype.ITEM_STORE, LogFlag.MUTATIONS, gid=2, key=b"k", status=0, ttl=-1
    )
    assert f"ttl={2**32 - 1}" in format_entry(entry)


def test_eviction_and_extwrite():
    ev = LogEntry(
        EntrySubtype.EVICTION, LogFlag.EVICTIONS, gid=3, key=b"a b", fetched=True,
        exptime=-1, latime=12, clsid=5,
    )
    line = format_entry(ev)
    assert "type=eviction key=a%20b fetch=yes ttl=-1 la=12 clsid=5" in line
    ew = LogEntry(
        EntrySubtype.EXT_WRITE, LogFlag.EVICTIONS, gid=3, key=b"k", bucket=2, clsid=1
    )
    ew_line = format_entry(ew)
    assert "type=extwrite" in ew_line
    assert "fetch=no" in ew_line
    assert ew_line.endswith("bucket=2\n")


def test_text_entry_size_grows_with_text():
    short = LogEntry(EntrySubtype.TEXT, LogFlag.SYSEVENTS, gid=1, text="a")
    longer = LogEntry(EntrySubtype.TEXT, LogFlag.SYSEVENTS, gid=1, text="abcd")
    assert longer.size - short.size == 3


def test_key_size_counts():
    a = LogEntry(EntrySubtype.ITEM_GET, LogFlag.FETCHERS, gid=1, key=b"a")
    b = LogEntry(EntrySubtype.ITEM_GET, LogFlag.FETCHERS, gid=1, key="abc")
    assert b.size - a.size == 2
    assert b.key == b"abc"


def test_key_too_long():
    with pytest.raises(ValueError):
        LogEntry(EntrySubtype.ITEM_GET, LogFlag.FETCHERS, gid=1, key=b"x" * 300)


def test_text_entries_have_formats():
    for event, details in DEFAULT_ENTRIES.items():
        assert (details.format is not None) == (details.subtype == EntrySubtype.TEXT)
        assert details.reqlen == 512
        assert details.eflags & (
            LogFlag.SYSEVENTS | LogFlag.FETCHERS | LogFlag.MUTATIONS
            | LogFlag.EVICTIONS | LogFlag.RAWCMDS
        )


@given(st.integers(min_value=0, max_value=2**63), st.text(max_size=100))
def test_text_lines_end_in_newline(gid, text):
    entry = LogEntry(EntrySubtype.TEXT, LogFlag.SYSEVENTS, gid=gid, text=text)
    line = format_entry(entry)
    assert line.endswith(text + "\n")
    assert f"gid={gid} " in line