from __future__ import annotations

import os
import tempfile
from pathlib import Path

from ralph.errors import DocumentError


class DocumentStore:
    """Plain-text protocol documents addressed by paths relative to a root."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def path(self, relative: str | Path) -> Path:
        candidate = (self.root / relative).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise DocumentError(f"Path escapes the workspace: {relative}", path=str(relative))
        return candidate

    def exists(self, relative: str | Path) -> bool:
        try:
            return self.path(relative).is_file()
        except DocumentError:
            return False

    def read(self, relative: str | Path) -> str:
        target = self.path(relative)
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise DocumentError(f"Cannot read {relative}: {exc}", path=str(relative)) from exc

    def read_or(self, relative: str | Path, default: str) -> str:
        try:
            return self.read(relative)
        except DocumentError:
            return default

    def write(self, relative: str | Path, content: str) -> None:
        target = self.path(relative)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, target)
        except OSError as exc:
            raise DocumentError(f"Cannot write {relative}: {exc}", path=str(relative)) from exc

    def append(self, relative: str | Path, content: str) -> None:
        target = self.path(relative)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("a", encoding="utf-8") as handle:
                handle.write(content)
        except OSError as exc:
            raise DocumentError(f"Cannot append to {relative}: {exc}", path=str(relative)) from exc

    def ensure(self, relative: str | Path, default_content: str) -> bool:
        """Write ``default_content`` if the document is absent. Returns True if written."""
        if self.exists(relative):
            return False
        self.write(relative, default_content)
        return True
