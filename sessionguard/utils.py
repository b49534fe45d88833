"""
SessionGuard Shared Utilities — file primitives for the audit and session stores.

  - Advisory file locking (fcntl)
  - Append-only JSONL I/O for the audit trail
  - Atomic JSON state files for the session registry

All writers take an exclusive advisory lock so concurrent workers sharing
the same data directory cannot interleave partial records.
"""
from __future__ import annotations

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Callable, Iterator


# ── File Locking ──────────────────────────────────────────────────────

@contextmanager
def file_lock(filepath: str, exclusive: bool = True) -> Iterator[None]:
    """Advisory file lock on `<filepath>.lock`."""
    lock_path = filepath + ".lock"
    fd = None
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o600)
        fcntl.flock(fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
        yield
    finally:
        if fd is not None:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)


# ── JSONL I/O ─────────────────────────────────────────────────────────

def jsonl_append(filepath: str, record: dict) -> None:
    """Append one JSON record as a line, under an exclusive flock.

    Raises OSError on failure; callers decide whether that is fatal.
    """
    line = json.dumps(record, separators=(",", ":"), ensure_ascii=False) + "\n"
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o640)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        os.write(fd, line.encode("utf-8"))
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def jsonl_scan(filepath: str, predicate: Callable[[dict], bool] | None = None) -> list[dict]:
    """Read every parseable record in file order, optionally filtered.

    Corrupt lines are skipped rather than failing the whole read.
    """
    if not os.path.isfile(filepath):
        return []
    out: list[dict] = []
    with open(filepath, "r", encoding="utf-8") as f:
        fcntl.flock(f, fcntl.LOCK_SH)
        try:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if predicate is None or predicate(record):
                    out.append(record)
        finally:
            fcntl.flock(f, fcntl.LOCK_UN)
    return out


# ── Atomic JSON State ─────────────────────────────────────────────────

def atomic_json_save(filepath: str, data: dict) -> None:
    """Atomically write a JSON file using mkstemp + fsync + os.replace."""
    dir_name = os.path.dirname(filepath) or "."
    fd, tmp_path = tempfile.mkstemp(dir=dir_name, suffix=".tmp", prefix=".sg_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, separators=(",", ":"))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, filepath)
        try:
            os.chmod(filepath, 0o600)
        except OSError:
            pass
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def json_load_safe(filepath: str, default: Any = None) -> Any:
    """Load a JSON file, returning `default` when missing or unreadable."""
    try:
        with open(filepath, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError):
        return default if default is not None else {}
