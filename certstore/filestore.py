"""
Filesystem-backed key/value store for account, route and certificate data.

Layout under the base path:
  <base>/account.json        — account key pair + account URL + agreement
  <base>/route.json          — {"fingerprint", "tokens"} hand-off to the responder
  <base>/<label>/cert.json   — certificate record (authoritative)
  <base>/<label>/cert.key    — domain private key PEM (mode 0o600)
  <base>/<label>/cert.pem    — full certificate chain
  <base>/<label>/cert.crt    — leaf certificate   (two-certificate chains only)
  <base>/<label>/cert.ca     — issuer certificate (two-certificate chains only)

All writes are atomic: temp file + fsync + rename in the target directory.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from acmeproto.errors import ConfigurationError, PersistenceError

logger = logging.getLogger(__name__)

FORMATS = ("text", "json")


class FileStore:
    """
    A base path plus an optional per-label sub-scope.

    ``FileStore(base)`` addresses the base path itself; ``store.scope(label)``
    returns a store addressing ``<base>/<label>`` (created unless ``create=False``).
    """

    def __init__(self, base_path: str | os.PathLike, label: Optional[str] = None) -> None:
        if not base_path:
            raise ConfigurationError("ACME base path not defined")
        base = Path(base_path)
        if not base.is_dir():
            raise ConfigurationError(f"ACME base path does not exist: {base}")
        self.base_path = base
        self.label = label or None

    def scope(self, label: Optional[str], create: bool = True) -> "FileStore":
        """
        Select the per-label sub-directory, or the base path when *label* is empty.

        With ``create=False`` the directory is only addressed, not made.
        """
        if not label:
            return FileStore(self.base_path)
        if label in (".", "..") or "/" in label or "\\" in label:
            raise ConfigurationError(f"Invalid certificate label: {label!r}")
        directory = self.base_path / label
        if not create:
            return FileStore(self.base_path, label)
        try:
            directory.mkdir(exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot create {directory}: {exc}") from exc
        return FileStore(self.base_path, label)

    def path(self, name: Optional[str] = None) -> Path:
        root = self.base_path / self.label if self.label else self.base_path
        return root if name is None else root / name

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def read(self, name: str) -> bytes:
        try:
            return self.path(name).read_bytes()
        except OSError as exc:
            raise PersistenceError(f"Cannot read {self.path(name)}: {exc}") from exc

    def read_text(self, name: str) -> str:
        return self.read(name).decode("utf-8")

    def read_json(self, name: str) -> Any:
        try:
            return json.loads(self.read(name))
        except ValueError as exc:
            raise PersistenceError(f"{self.path(name)} is not valid JSON: {exc}") from exc

    def write(
        self,
        name: str,
        data: Any,
        format: str = "text",
        mode: Optional[int] = None,
    ) -> Path:
        """
        Write *data* under *name* as ``text`` (str or bytes) or ``json``.

        *mode* optionally sets file permissions (e.g. 0o600 for private keys).
        """
        return self.write_many([(name, data, format, mode)])[0]

    def write_many(self, entries: list[tuple[str, Any, str, Optional[int]]]) -> list[Path]:
        """
        Write several ``(name, data, format, mode)`` entries as one unit.

        Every entry is staged to a synced temp file first; targets are replaced
        in order only once all of them are staged.  A staging failure removes
        the temp files and leaves every existing target untouched.
        """
        encoded = [(self.path(name), _encode(data, format), mode) for name, data, format, mode in entries]

        staged: list[tuple[str, Path]] = []
        try:
            for target, content, mode in encoded:
                staged.append((_stage(target, content, mode), target))
            for temp_path, target in staged:
                os.replace(temp_path, target)
        except OSError as exc:
            for temp_path, _ in staged:
                _discard(temp_path)
            raise PersistenceError(f"Cannot write {self.path()}: {exc}") from exc

        for target, content, _ in encoded:
            logger.debug("Wrote %s (%d bytes)", target, len(content))
        return [target for target, _, _ in encoded]


def _encode(data: Any, format: Optional[str]) -> bytes:
    fmt = "text" if format is None else str(format).lower()
    if fmt == "json":
        return json.dumps(data).encode("utf-8")
    if fmt == "text":
        return data if isinstance(data, bytes) else str(data).encode("utf-8")
    raise ConfigurationError(f"Invalid data format <{format}>")


def _stage(path: Path, content: bytes, mode: Optional[int]) -> str:
    """Write *content* to a synced temp file next to *path* and return its name."""
    # Temp file must live in the same directory for the rename to be atomic
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        # mkstemp creates 0o600 files
        os.chmod(temp_path, 0o644 if mode is None else mode)
    except BaseException:
        _discard(temp_path)
        raise
    return temp_path


def _discard(temp_path: str) -> None:
    try:
        os.unlink(temp_path)
    except FileNotFoundError:
        pass
