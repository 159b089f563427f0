"""
Per-base-path issuance lock.

route.json is a single record per base path, so only one order may publish
and validate challenges at a time.  The lock combines a threading.Lock (for
concurrent labels within one process) with an fcntl.flock on
``<base>/.issue.lock`` (for separate processes sharing the base path).
"""
from __future__ import annotations

import fcntl
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from acmeproto.errors import PersistenceError

logger = logging.getLogger(__name__)

LOCK_FILE = ".issue.lock"

_process_locks: dict[str, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def _process_lock(base_path: Path) -> threading.Lock:
    key = str(base_path.resolve())
    with _process_locks_guard:
        return _process_locks.setdefault(key, threading.Lock())


@contextmanager
def base_path_lock(base_path: Path) -> Iterator[None]:
    """Hold the exclusive issuance lock for *base_path* for the duration of the block."""
    with _process_lock(base_path):
        try:
            fh = open(base_path / LOCK_FILE, "a")
        except OSError as exc:
            raise PersistenceError(f"Cannot open lock file in {base_path}: {exc}") from exc
        with fh:
            logger.debug("Waiting for issuance lock on %s", base_path)
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
