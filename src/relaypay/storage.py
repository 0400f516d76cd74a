"""Local storage hardening helpers."""

from __future__ import annotations

import fcntl
import os
import re
from contextlib import contextmanager
from pathlib import Path


DEFAULT_HOME = Path.home() / ".relaypay"

_SAFE_ID_RE = re.compile(r"[^a-zA-Z0-9._-]")


def relaypay_home() -> Path:
    """Base directory for local state (``RELAYPAY_HOME`` overrides)."""
    override = os.getenv("RELAYPAY_HOME")
    return Path(override) if override else DEFAULT_HOME


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def sanitize_identifier(value: str) -> str:
    """Return a filesystem-safe identifier."""
    return _SAFE_ID_RE.sub("_", value)


def safe_child_path(base_dir: Path, identifier: str, suffix: str) -> Path:
    """Build a canonical child path under base_dir and reject traversal."""
    safe_name = sanitize_identifier(identifier)
    path = (base_dir / f"{safe_name}{suffix}").resolve()
    base = base_dir.resolve()
    if path.parent != base:
        raise ValueError(f"Unsafe path for identifier: {identifier}")
    return path


@contextmanager
def file_lock(lock_path: Path):
    """Exclusive advisory lock shared across threads and processes."""
    ensure_private_file(lock_path)
    with open(lock_path, "r+") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)


def atomic_write_bytes(path: Path, payload: bytes) -> None:
    tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    with open(tmp_path, "wb") as f:
        f.write(payload)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    ensure_private_file(path)
