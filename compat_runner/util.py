"""Shared utilities for the compatibility runner."""

from __future__ import annotations

import hashlib
import platform
import sys
import time
import uuid
from datetime import datetime, timezone


def new_ref() -> str:
    """Return a new run reference id (UUID4)."""
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat()


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode()).hexdigest()


def platform_label() -> str:
    """``<os>-<arch>`` as used in release artifact names, e.g. ``linux-x64``."""
    os_name = "windows" if sys.platform == "win32" else sys.platform
    machine = platform.machine().lower()
    arch = "arm64" if machine in ("arm64", "aarch64") else "x64"
    return f"{os_name}-{arch}"
