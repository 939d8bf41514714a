"""Persistent sync state.

Tracks the incremental sync cursor (the time of the last completed sync) and a
short record of the most recent run. State is stored as JSON and written
atomically to prevent corruption if the process is interrupted mid-write.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from notehelper import config

log = logging.getLogger(__name__)

STATE_PATH = config.CONFIG_DIR / "state.json"
LOCK_PATH = STATE_PATH.with_suffix(".lock")

_DEFAULT_STATE = {
    "sync_at": "",
    "last_run": None,
}


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 without fractional seconds, e.g. 2024-05-01T08:00:00Z."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (with Z or offset). Returns None when unparseable."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _load_raw() -> Dict[str, Any]:
    if not STATE_PATH.exists():
        return dict(_DEFAULT_STATE)
    try:
        data = json.loads(STATE_PATH.read_text())
    except json.JSONDecodeError:
        log.warning("State file %s is corrupt, starting fresh", STATE_PATH)
        return dict(_DEFAULT_STATE)
    return {**_DEFAULT_STATE, **data}


def _save_raw(data: Dict[str, Any]) -> None:
    """Write state atomically: write to temp file, then rename."""
    fd, tmp = tempfile.mkstemp(
        dir=STATE_PATH.parent, prefix=".state_", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp, STATE_PATH)
    except BaseException:
        os.unlink(tmp)
        raise


class State:
    """Interface for reading and writing persistent sync state."""

    def __init__(self) -> None:
        self._data = _load_raw()

    def save(self) -> None:
        _save_raw(self._data)

    # -- Sync cursor --

    @property
    def sync_at(self) -> str:
        return self._data["sync_at"] or ""

    def advance_sync_at(self, timestamp: str) -> bool:
        """Move the cursor forward to *timestamp*. Never moves it backward.

        Returns True if the cursor changed.
        """
        new = parse_iso(timestamp)
        if new is None:
            raise ValueError(f"Invalid timestamp: {timestamp!r}")
        current = parse_iso(self.sync_at)
        if current is not None and new <= current:
            log.debug("Cursor %s not after %s, keeping it", timestamp, self.sync_at)
            return False
        self._data["sync_at"] = timestamp
        return True

    def set_sync_at(self, timestamp: str) -> None:
        """Set the cursor explicitly, in either direction (user override)."""
        if parse_iso(timestamp) is None:
            raise ValueError(f"Invalid timestamp: {timestamp!r}")
        self._data["sync_at"] = timestamp

    def reset_sync_at(self) -> None:
        """Clear the cursor so the next sync runs over the whole source."""
        self._data["sync_at"] = ""

    # -- Last run --

    @property
    def last_run(self) -> Optional[Dict[str, Any]]:
        return self._data["last_run"]

    def record_run(self, success: bool, count: int, skipped: int, errors: int) -> None:
        self._data["last_run"] = {
            "finished_at": utc_now_iso(),
            "success": success,
            "count": count,
            "skipped": skipped,
            "errors": errors,
        }


def _try_create_lock() -> bool:
    """Attempt to create the lock file. Returns True if successful."""
    try:
        fd = os.open(LOCK_PATH, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        os.write(fd, str(os.getpid()).encode())
        os.close(fd)
        return True
    except FileExistsError:
        return False


def acquire_lock() -> bool:
    """Try to acquire the process lock. Returns True if acquired.

    A lock left behind by a dead process is removed and re-acquired.
    """
    if _try_create_lock():
        return True

    try:
        pid = int(LOCK_PATH.read_text().strip())
        os.kill(pid, 0)  # signal 0: check existence only
    except (ValueError, OSError):
        log.warning("Removing stale lock (previous process died)")
        try:
            LOCK_PATH.unlink()
        except FileNotFoundError:
            pass
        return _try_create_lock()

    return False


def release_lock() -> None:
    try:
        LOCK_PATH.unlink()
    except FileNotFoundError:
        pass
