"""SASL support helpers: password file checks, log filtering, config lookup."""

from __future__ import annotations

import enum
import logging
import os
from pathlib import Path
from typing import Iterator, Mapping, Optional, Sequence, Union

log = logging.getLogger(__name__)

MAX_ENTRY_LEN = 256
DEFAULT_CONFIG_LOCATIONS = (
    "/etc/sasl/memcached.conf",
    "/etc/sasl2/memcached.conf",
)

Text = Union[str, bytes]


class SaslLogLevel(enum.IntEnum):
    """SASL log severities."""

    NONE = 0
    ERR = 1
    FAIL = 2
    WARN = 3
    NOTE = 4
    DEBUG = 5
    TRACE = 6
    PASS = 7


def _as_bytes(value: Text) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def _entries(handle) -> Iterator[bytes]:
    """Yield lines the way a fixed-size line reader would see them."""
    limit = MAX_ENTRY_LEN - 1
    for line in handle:
        while len(line) > limit:
            yield line[:limit]
            line = line[limit:]
        yield line


def check_password(path: Union[str, os.PathLike], user: Text, password: Text) -> bool:
    """Check ``user``/``password`` against a ``user:password[:...]`` file.

    Only the first line for the user counts. A missing file or an over-long
    entry is a failed check.
    """
    user_b = _as_bytes(user)
    pass_b = _as_bytes(password)
    if len(user_b) + len(pass_b) > MAX_ENTRY_LEN - 4:
        log.warning(
            "Failed to authenticate <%s> due to too long password (%d)",
            user_b.decode("utf-8", "replace"),
            len(pass_b),
        )
        return False

    try:
        handle = open(path, "rb")
    except OSError as exc:
        log.info("Failed to open sasl database <%s>: %s", path, exc)
        return False

    ok = False
    head = user_b + b":"
    with handle:
        for entry in _entries(handle):
            if not entry.startswith(head):
                continue
            rest = entry[len(head):]
            if rest.startswith(pass_b):
                after = rest[len(pass_b):len(pass_b) + 1]
                ok = after == b"" or after in (b":", b"\n", b"\r", b"\0")
            break

    if not ok:
        log.info("User <%s> failed to authenticate", user_b.decode("utf-8", "replace"))
    return ok


def should_log(level: int, verbose: int) -> bool:
    """Return whether a SASL message of ``level`` is shown at ``verbose``."""
    if level == SaslLogLevel.NONE:
        return False
    if level in (SaslLogLevel.PASS, SaslLogLevel.TRACE, SaslLogLevel.DEBUG, SaslLogLevel.NOTE):
        return verbose >= 2
    if level in (SaslLogLevel.WARN, SaslLogLevel.FAIL):
        return verbose >= 1
    return True


def find_config_path(
    environ: Optional[Mapping[str, str]] = None,
    locations: Sequence[Union[str, os.PathLike]] = DEFAULT_CONFIG_LOCATIONS,
) -> Optional[str]:
    """Return ``SASL_CONF_PATH`` if set, else the first existing location."""
    env = os.environ if environ is None else environ
    path = env.get("SASL_CONF_PATH")
    if path is not None:
        return path
    for candidate in locations:
        if Path(candidate).exists():
            return os.fspath(candidate)
    return None