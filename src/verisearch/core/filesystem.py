"""
Verisearch Filesystem Capability

The verifier and the candidate scanner only touch disk through this
interface, so tests and embedders can substitute their own.  Paths that
are missing with exact case are looked up again component by component,
case-insensitively, before being declared absent.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from verisearch.core.config import VerisearchConfig

logger = logging.getLogger(__name__)


class Filesystem:
    """Abstract filesystem capability."""

    def resolve(self, path: str) -> Optional[str]:
        """Return the on-disk spelling of *path*, or ``None`` if it does not exist."""
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        return self.resolve(path) is not None

    def read_text(self, path: str) -> str:
        raise NotImplementedError

    def list_dir(self, path: str) -> List[str]:
        raise NotImplementedError

    def mtime(self, path: str) -> Optional[float]:
        raise NotImplementedError


class LocalFilesystem(Filesystem):
    """Filesystem capability backed by the local disk.

    Args:
        root: Base directory for relative paths (defaults to the cwd).
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else Path.cwd()

    def _absolute(self, path: str) -> Path:
        p = Path(path).expanduser()
        return p if p.is_absolute() else self.root / p

    def resolve(self, path: str) -> Optional[str]:
        target = self._absolute(path)
        try:
            if target.exists():
                return str(target)
        except OSError as e:
            logger.debug(f"Cannot stat {target}: {e}")
            return None
        return self._resolve_case_insensitive(target)

    @staticmethod
    def _resolve_case_insensitive(target: Path) -> Optional[str]:
        parts = target.parts
        if not parts:
            return None
        current = Path(parts[0])
        for component in parts[1:]:
            try:
                entries = os.listdir(current)
            except OSError:
                return None
            if component in entries:
                current = current / component
                continue
            wanted = component.lower()
            match = next((e for e in sorted(entries) if e.lower() == wanted), None)
            if match is None:
                return None
            current = current / match
        logger.debug(f"Resolved {target} case-insensitively to {current}")
        return str(current)

    def read_text(self, path: str) -> str:
        """Read a file as UTF-8 (undecodable bytes replaced).

        Raises:
            OSError: If the file cannot be found or read.
        """
        resolved = self.resolve(path)
        if resolved is None:
            raise FileNotFoundError(path)
        return Path(resolved).read_text(encoding="utf-8", errors="replace")

    def list_dir(self, path: str) -> List[str]:
        resolved = self.resolve(path)
        if resolved is None or not Path(resolved).is_dir():
            return []
        try:
            return sorted(os.listdir(resolved))
        except OSError as e:
            logger.debug(f"Cannot list {resolved}: {e}")
            return []

    def mtime(self, path: str) -> Optional[float]:
        resolved = self.resolve(path)
        if resolved is None:
            return None
        try:
            return os.path.getmtime(resolved)
        except OSError:
            return None

    def find_similar_paths(self, path: str) -> List[str]:
        """
        Existing paths resembling a missing *path*.

        Looks in the parent directory for entries whose name contains the
        target's base name (same extension, when it has one).  When the
        parent itself is missing, looks for similarly named siblings of
        the parent and searches those instead.
        """
        target = self._absolute(path)
        base = target.name.lower()
        ext = target.suffix.lower()
        parent = target.parent

        def _matches(directory: Path) -> List[str]:
            try:
                entries = sorted(os.listdir(directory))
            except OSError:
                return []
            return [
                str(directory / e) for e in entries
                if base in e.lower() and (not ext or Path(e).suffix.lower() == ext)
            ]

        if parent.is_dir():
            return _matches(parent)

        grandparent = parent.parent
        if not grandparent.is_dir():
            return []
        parent_name = parent.name.lower()
        results: List[str] = []
        for entry in sorted(os.listdir(grandparent)):
            candidate = grandparent / entry
            if candidate.is_dir() and parent_name in entry.lower():
                results.extend(_matches(candidate))
        return results


def scan_source_files(root_path: Path, config: VerisearchConfig | None = None) -> List[Path]:
    """
    Recursively collect source files with a target extension under *root_path*.

    Excluded directories are pruned in place so :func:`os.walk` never
    descends into them.  Files above ``max_file_size_mb`` are skipped.
    """
    cfg = config or VerisearchConfig()
    exclude = cfg.exclude_dirs
    extensions = cfg.target_extensions
    max_bytes = cfg.max_file_size_mb * 1024 * 1024
    found: List[Path] = []

    for dirpath, dirnames, filenames in os.walk(root_path):
        dirnames[:] = [d for d in dirnames if d not in exclude]
        for fname in filenames:
            _, ext = os.path.splitext(fname)
            if ext.lower() not in extensions:
                continue
            full = os.path.join(dirpath, fname)
            try:
                size = os.path.getsize(full)
            except OSError:
                continue
            if size <= max_bytes:
                found.append(Path(full))
            else:
                logger.warning(f"Skipping large file: {full} ({size / (1024 * 1024):.1f}MB)")

    found.sort()
    return found
