"""
Verisearch Model Tools

Codebase tools a model tier may call while answering: the local search
pipeline, grep, glob, file reads, and directory listings, all confined to
one search root.  Every tool returns plain text; failures come back as an
``Error: ...`` string so the model can recover instead of the call dying.

:class:`SearchToolbox` builds the tools for a root and hands out named
subsets (see ``fast_tier_tools`` / ``thorough_tier_tools`` in the config).
"""

import fnmatch
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from verisearch.core.config import VerisearchConfig
from verisearch.core.extractor import EntityExtractor
from verisearch.core.filesystem import Filesystem, LocalFilesystem, scan_source_files
from verisearch.core.models import SearchRequest
from verisearch.core.pipeline import SearchPipeline

logger = logging.getLogger(__name__)


@dataclass
class Tool:
    """One callable tool: a name, a description, and a JSON-schema for its arguments."""
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: Callable[..., str] = field(repr=False)

    def run(self, arguments: Optional[Dict[str, Any]] = None) -> str:
        try:
            return self.handler(**(arguments or {}))
        except TypeError as e:
            return f"Error: invalid arguments for {self.name}: {e}"
        except Exception as e:
            logger.warning(f"Tool {self.name} failed: {e}")
            return f"Error: {e}"

    def to_dict(self) -> dict:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


def run_tool(tools: Sequence[Tool], name: str, arguments: Optional[Dict[str, Any]]) -> str:
    """Dispatch a model's tool call by name."""
    for tool in tools:
        if tool.name == name:
            logger.debug(f"Tool call: {name}({arguments})")
            return tool.run(arguments)
    return f"Error: unknown tool '{name}'"


def _schema(properties: Dict[str, Dict[str, str]], required: Sequence[str] = ()) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": list(required)}


class SearchToolbox:
    """
    The codebase tools for one search root.

    Args:
        root: Directory every tool is confined to.
        config: Configuration (defaults to ``VerisearchConfig()``).
        filesystem: Capability used for reads and listings.
        extractor: Parser chain handed to the search pipeline.
    """

    MAX_MATCHES = 50
    MAX_READ_LINES = 400

    def __init__(
        self,
        root: str | Path = ".",
        config: VerisearchConfig | None = None,
        filesystem: Filesystem | None = None,
        extractor: EntityExtractor | None = None,
    ):
        self.root = Path(root).expanduser().resolve()
        self.config = config or VerisearchConfig()
        self.filesystem = filesystem or LocalFilesystem(self.root)
        self.extractor = extractor
        self._tools = {t.name: t for t in self._build()}

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def tools(self, names: Sequence[str] | None = None) -> List[Tool]:
        """The tools called *names*, in that order (all tools when omitted).

        Raises:
            KeyError: If a name is not a known tool.
        """
        if names is None:
            return list(self._tools.values())
        return [self._tools[n] for n in names]

    def _build(self) -> List[Tool]:
        return [
            Tool(
                name="search_code",
                description=(
                    "Ranked, verified search of the codebase for a natural-language request. "
                    "Returns the matching files with their relevant code sections."
                ),
                parameters=_schema({
                    "query": {"type": "string", "description": "What to look for"},
                    "file_type": {"type": "string", "description": "Extension filter, e.g. tsx"},
                    "directory": {"type": "string", "description": "Directory filter, e.g. components"},
                }, required=["query"]),
                handler=self.search_code,
            ),
            Tool(
                name="grep",
                description=(
                    "Search source files for a regular expression (case-insensitive). "
                    "Returns matching lines as path:line  text."
                ),
                parameters=_schema({
                    "pattern": {"type": "string", "description": "Regular expression"},
                    "path": {"type": "string", "description": "Directory under the root, default ."},
                }, required=["pattern"]),
                handler=self.grep,
            ),
            Tool(
                name="glob",
                description="List files under the root whose relative path matches a glob, e.g. **/*Form*.tsx.",
                parameters=_schema({
                    "pattern": {"type": "string", "description": "Glob pattern"},
                }, required=["pattern"]),
                handler=self.glob,
            ),
            Tool(
                name="read_file",
                description="Read a file with line numbers.",
                parameters=_schema({
                    "path": {"type": "string", "description": "File path relative to the root"},
                    "start_line": {"type": "integer", "description": "First line to show, default 1"},
                }, required=["path"]),
                handler=self.read_file,
            ),
            Tool(
                name="list_dir",
                description="List the entries of a directory (directories end with /).",
                parameters=_schema({
                    "path": {"type": "string", "description": "Directory relative to the root, default ."},
                }),
                handler=self.list_dir,
            ),
        ]

    # ── Path confinement ──────────────────────────────────────────

    def _inside(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"{path} is outside the search root")
        return target

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    # ── Tool handlers ─────────────────────────────────────────────

    def search_code(self, query: str, file_type: str | None = None,
                    directory: str | None = None) -> str:
        pipeline = SearchPipeline(self.root, config=self.config,
                                  filesystem=self.filesystem, extractor=self.extractor)
        report = pipeline.run(SearchRequest(text=query, file_type=file_type, directory=directory))
        return report.text

    def grep(self, pattern: str, path: str = ".") -> str:
        base = self._inside(path)
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error:
            regex = re.compile(re.escape(pattern), re.IGNORECASE)

        matches: List[str] = []
        for file_path in scan_source_files(base, self.config):
            try:
                text = file_path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            for line_no, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    matches.append(f"{self._relative(file_path)}:{line_no}  {line.strip()}")
                    if len(matches) >= self.MAX_MATCHES:
                        break
            if len(matches) >= self.MAX_MATCHES:
                break

        if not matches:
            return f"No matches for '{pattern}'"
        return f"Found {len(matches)} match(es) for '{pattern}':\n" + "\n".join(matches)

    def glob(self, pattern: str) -> str:
        found: List[str] = []
        for file_path in self.root.rglob("*"):
            if not file_path.is_file():
                continue
            rel = self._relative(file_path)
            if any(part in self.config.exclude_dirs for part in Path(rel).parts[:-1]):
                continue
            if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(file_path.name, pattern):
                found.append(rel)
        found.sort()
        if not found:
            return f"No files match '{pattern}'"
        shown = found[:self.MAX_MATCHES]
        lines = [f"{len(found)} file(s) match '{pattern}':", *shown]
        if len(found) > len(shown):
            lines.append(f"... ({len(found) - len(shown)} more)")
        return "\n".join(lines)

    def read_file(self, path: str, start_line: int = 1) -> str:
        target = self._inside(path)
        text = self.filesystem.read_text(str(target))
        lines = text.splitlines()
        start = max(1, int(start_line))
        window = lines[start - 1:start - 1 + self.MAX_READ_LINES]
        numbered = [f"{i:4d} | {line}" for i, line in enumerate(window, start)]
        if start - 1 + len(window) < len(lines):
            numbered.append(f"... ({len(lines) - (start - 1 + len(window))} more lines)")
        return f"── {self._relative(target)} ──\n" + "\n".join(numbered)

    def list_dir(self, path: str = ".") -> str:
        target = self._inside(path)
        entries = [
            f"{name}/" if (target / name).is_dir() else name
            for name in self.filesystem.list_dir(str(target))
            if name not in self.config.exclude_dirs
        ]
        if not entries:
            return f"Directory '{path}' is empty or does not exist."
        return "\n".join(entries)
