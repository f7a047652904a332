"""Utility helpers for mountalls3."""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

_GROUP_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_MAX_GROUP_NAME = 50

# Characters that break virtual-hosted-style addressing (bucket.s3.amazonaws.com).
_PATH_STYLE_CHARS = (".", "_")


def parse_iso_timestamp(iso_str: Optional[str]) -> float:
    """Parse an ISO-8601 datetime string to a UNIX epoch float.

    Naive timestamps are taken as UTC.  Raises ``ValueError`` when the
    string is empty or unparseable; an expiry we cannot read must never
    be mistaken for one in the past or the future.
    """
    if not iso_str:
        raise ValueError("empty timestamp")
    # Python 3.11+ handles trailing Z; for earlier versions strip it.
    cleaned = iso_str.strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(cleaned)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def format_timestamp(epoch: float) -> str:
    """Format a UNIX epoch as ``YYYY-MM-DD HH:MM:SS`` local time."""
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


def expand_path(path: Union[str, Path]) -> Path:
    """Expand ``~`` and environment variables; does not touch the filesystem."""
    return Path(os.path.expandvars(os.path.expanduser(str(path))))


def needs_path_style(bucket: str) -> bool:
    """True when *bucket* cannot be addressed as a virtual-hosted subdomain."""
    return any(ch in bucket for ch in _PATH_STYLE_CHARS)


def validate_group_name(name: str) -> None:
    """Raise ``ValueError`` unless *name* is a usable group name."""
    if not name:
        raise ValueError("group name cannot be empty")
    if not _GROUP_NAME_RE.match(name):
        raise ValueError(
            "group name can only contain letters, numbers, underscores, and dashes"
        )
    if len(name) > _MAX_GROUP_NAME:
        raise ValueError(f"group name too long (max {_MAX_GROUP_NAME} characters)")


def is_within(child: Path, parent: Path) -> bool:
    """True if *child* resolves to a direct entry of *parent*."""
    try:
        return child.resolve().parent == parent.resolve()
    except OSError:
        return False
