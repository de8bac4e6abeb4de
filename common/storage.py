"""Path-addressed storage for recordings and their sidecar files.

Paths are relative, ``/``-separated keys under a single root directory, e.g.
``lectures/2024-03-01.wav``. Sidecars live next to the recording they belong
to (``<recording>.transcript.json``, ``<recording>.summary.md``).
"""

from __future__ import annotations

import logging
from pathlib import Path

from common.errors import ConfigurationError, ResourceNotFoundError

logger = logging.getLogger(__name__)


class LocalStorage:
    """Filesystem-backed key/value store rooted at ``root``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ConfigurationError(f"Path escapes storage root: {path}", path=path)
        return target

    def normalize(self, path: str) -> str:
        """Canonical root-relative form, so ``./a/b.wav`` and ``a/b.wav`` compare equal."""
        return self.resolve(path).relative_to(self.root).as_posix()

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def read_binary(self, path: str) -> bytes:
        target = self.resolve(path)
        if not target.is_file():
            raise ResourceNotFoundError(f"File does not exist: {path}", path=path)
        return target.read_bytes()

    def read_text(self, path: str) -> str:
        target = self.resolve(path)
        if not target.is_file():
            raise ResourceNotFoundError(f"File does not exist: {path}", path=path)
        return target.read_text(encoding="utf-8")

    def write_text(self, path: str, content: str) -> str:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.debug("Wrote %d chars to %s", len(content), path)
        return path

    def list_files(self, extensions: set[str] | None = None) -> list[str]:
        if not self.root.is_dir():
            return []
        files = []
        for entry in self.root.rglob("*"):
            if not entry.is_file():
                continue
            if extensions is not None and entry.suffix.lower().lstrip(".") not in extensions:
                continue
            files.append(entry.relative_to(self.root).as_posix())
        return sorted(files)

    def modified_at(self, path: str) -> float:
        return self.resolve(path).stat().st_mtime

    def size(self, path: str) -> int:
        return self.resolve(path).stat().st_size
