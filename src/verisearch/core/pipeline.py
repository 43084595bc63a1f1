"""
Verisearch Search Pipeline

Runs one information request end to end over a directory tree:

  1. discover candidate files (name / term / filter matching)
  2. extract and chunk every candidate on a bounded worker pool
  3. link relationships across the candidate set
  4. rank chunks per file, then rank and assess whole-file results
  5. verify results against the filesystem (parallel) and filter

Nothing is persisted between requests; every call re-reads the files.
"""

import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from verisearch.core.chunker import build_chunks, connect_relationships, link_file_relationships
from verisearch.core.config import VerisearchConfig
from verisearch.core.extractor import EntityExtractor
from verisearch.core.filesystem import Filesystem, LocalFilesystem, scan_source_files
from verisearch.core.formatter import ReportFormatter
from verisearch.core.models import (
    CodeChunk,
    DependencyInfo,
    FormattedReport,
    SearchRequest,
    SearchResult,
)
from verisearch.core.ranker import (
    assess_results,
    extract_potential_file_names,
    extract_search_terms,
    rank,
    rank_results,
)
from verisearch.core.verifier import Verifier, filter_results
from verisearch.exceptions import SearchError

logger = logging.getLogger(__name__)

_PATH_REFERENCE = re.compile(r"(?<![\w@])((?:[\w.-]+/)*[\w.-]+\.(?:tsx|ts|jsx|js|mjs|cjs|mts|cts))\b")


def referenced_paths(text: str) -> List[str]:
    """File paths written out literally in a request, e.g. ``src/Widget.tsx``."""
    return list(dict.fromkeys(_PATH_REFERENCE.findall(text)))


class SearchPipeline:
    """
    Retrieval-and-verification over one root directory.

    Args:
        root: Directory to search.
        config: Configuration (defaults to ``VerisearchConfig()``).
        filesystem: Capability used by the verifier.
        extractor: Parser chain override.
        show_progress: Show a tqdm bar while chunking.
    """

    def __init__(
        self,
        root: str | Path = ".",
        config: VerisearchConfig | None = None,
        filesystem: Filesystem | None = None,
        extractor: EntityExtractor | None = None,
        show_progress: bool = False,
    ):
        self.root = Path(root).expanduser().resolve()
        self.config = config or VerisearchConfig()
        self.filesystem = filesystem or LocalFilesystem(self.root)
        self.extractor = extractor
        self.show_progress = show_progress
        self.verifier = Verifier(self.filesystem, self.config)
        self.stats: Dict[str, int] = {}

    def _reset_stats(self) -> None:
        self.stats = {
            "files_scanned": 0,
            "candidates": 0,
            "files_chunked": 0,
            "chunks": 0,
            "errors": 0,
            "results_ranked": 0,
            "verified": 0,
            "mismatched": 0,
            "not_found": 0,
            "dropped": 0,
        }

    def _display(self, path: Path | str) -> str:
        try:
            return Path(path).relative_to(self.root).as_posix()
        except ValueError:
            return str(path)

    # ── Step 1: candidate discovery ───────────────────────────────

    def discover_candidates(self, request: SearchRequest, search_terms: Sequence[str],
                            names: Sequence[str]) -> Tuple[List[Path], List[str]]:
        """
        Candidate files for a request, plus referenced paths that do not exist.

        Files whose base name contains a candidate name, or whose path
        contains a search term, come first (exact base-name matches
        ahead of partial ones).  Without any such match every scanned
        file is a candidate.  Files under the common source directories
        are preferred, and the list is capped at ``max_candidate_files``.
        """
        scanned = scan_source_files(self.root, self.config)
        self.stats["files_scanned"] = len(scanned)
        files = list(scanned)

        if request.file_type:
            wanted = "." + request.file_type.lstrip(".").lower()
            files = [f for f in files if f.suffix.lower() == wanted]
        if request.directory:
            directory = request.directory.strip("/\\").replace("\\", "/").lower()
            files = [
                f for f in files
                if f"/{directory}/" in f"/{self._display(f).lower()}"
            ]

        lowered_names = [n.lower() for n in names if len(n) > 2]
        lowered_terms = [t.lower() for t in search_terms]

        def _match_rank(path: Path) -> Optional[int]:
            stem = path.stem.lower()
            if stem in lowered_names:
                return 0
            if any(n in stem for n in lowered_names):
                return 1
            rel = self._display(path).lower()
            if any(t in rel for t in lowered_terms):
                return 2
            return None

        ranked = [(r, f) for f in files if (r := _match_rank(f)) is not None]
        if ranked:
            candidates = [f for _, f in sorted(ranked, key=lambda item: (item[0], str(item[1])))]
        else:
            candidates = list(files)

        common = tuple(d.lower().strip("/") + "/" for d in self.config.common_source_dirs)

        def _common_key(path: Path) -> int:
            rel = self._display(path).lower()
            return 0 if rel.startswith(common) else 1

        candidates.sort(key=_common_key)

        missing: List[str] = []
        for ref in referenced_paths(request.text):
            suffix = "/" + ref.lstrip("./").lower()
            path = next(
                (f for f in scanned if ("/" + self._display(f).lower()).endswith(suffix)), None
            )
            if path is None:
                resolved = self.filesystem.resolve(str(self.root / ref))
                if resolved is None:
                    missing.append(str(self.root / ref))
                    continue
                path = Path(resolved)
            if path in candidates:
                candidates.remove(path)
            candidates.insert(0, path)

        return candidates[: self.config.max_candidate_files], missing

    # ── Step 2: chunking ──────────────────────────────────────────

    def _process_file(self, path: Path) -> Tuple[str, str, List[CodeChunk], DependencyInfo]:
        text = path.read_text(encoding="utf-8", errors="replace")
        chunks, _, deps = build_chunks(
            str(path), text,
            context_lines=self.config.context_lines,
            extractor=self.extractor,
        )
        return str(path), text, chunks, deps

    def chunk_files(self, files: Sequence[Path]) -> Tuple[Dict[str, str], Dict[str, List[CodeChunk]],
                                                           Dict[str, DependencyInfo]]:
        texts: Dict[str, str] = {}
        chunks_by_file: Dict[str, List[CodeChunk]] = {}
        deps_by_file: Dict[str, DependencyInfo] = {}
        if not files:
            return texts, chunks_by_file, deps_by_file

        workers = max(1, min(self.config.max_workers, len(files)))
        with tqdm(total=len(files), desc="Chunking files", unit="file",
                  disable=not self.show_progress) as pbar:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {executor.submit(self._process_file, f): f for f in files}
                for future in as_completed(futures):
                    file_path = futures[future]
                    try:
                        path, text, chunks, deps = future.result()
                        texts[path] = text
                        chunks_by_file[path] = chunks
                        deps_by_file[path] = deps
                        self.stats["files_chunked"] += 1
                        self.stats["chunks"] += len(chunks)
                    except Exception as e:
                        logger.error(f"Error processing {file_path}: {e}")
                        self.stats["errors"] += 1
                    finally:
                        pbar.update(1)

        # as_completed order is arbitrary; keep the discovery order.
        order = {str(f): i for i, f in enumerate(files)}
        ordered = sorted(chunks_by_file, key=lambda p: order.get(p, len(order)))
        return texts, {p: chunks_by_file[p] for p in ordered}, deps_by_file

    # ── Step 4: ranking ───────────────────────────────────────────

    def build_results(self, query: str, texts: Dict[str, str],
                      chunks_by_file: Dict[str, List[CodeChunk]]) -> List[SearchResult]:
        results: List[SearchResult] = []
        for path, chunks in chunks_by_file.items():
            selected = rank(chunks, query, self.config.max_chunks_per_file, self.config)
            if not selected:
                continue
            results.append(SearchResult(
                file_path=path,
                content=texts[path],
                chunks=selected,
                display_path=self._display(path),
            ))
        return results

    # ── Step 5: verification ──────────────────────────────────────

    def verify(self, results: Sequence[SearchResult]) -> List[SearchResult]:
        if not results:
            return []
        workers = max(1, min(self.config.max_workers, len(results)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(self.verifier.verify, results))

    # ── Orchestration ─────────────────────────────────────────────

    def run(self, request: SearchRequest) -> FormattedReport:
        """
        Execute the pipeline for one request.

        Raises:
            SearchError: If the request text is empty or the root does not exist.
        """
        if not request.text or not request.text.strip():
            raise SearchError("Information request must not be empty")
        if not self.root.is_dir():
            raise SearchError(f"Search root does not exist: {self.root}")

        self._reset_stats()
        cfg = self.config
        max_results = request.max_results or cfg.max_search_results
        include_deps = (
            cfg.include_dependencies if request.include_dependencies is None
            else request.include_dependencies
        )
        filters = request.filters()

        logger.info("─" * 60)
        logger.info("  VERISEARCH — Search")
        logger.info("─" * 60)
        logger.info(f"  Root   : {self.root}")
        logger.info(f"  Query  : {request.text}")
        if filters:
            logger.info(f"  Filters: {', '.join(filters)}")
        logger.info("─" * 60)

        search_terms = extract_search_terms(request.text)
        names = extract_potential_file_names(request.text)
        logger.debug(f"Search terms: {search_terms}; candidate names: {names}")

        logger.info("[1/5] Discovering candidate files...")
        candidates, missing = self.discover_candidates(request, search_terms, names)
        self.stats["candidates"] = len(candidates)
        logger.info(f"  {len(candidates):,} candidates out of {self.stats['files_scanned']:,} files")

        logger.info(f"[2/5] Extracting entities ({cfg.max_workers} workers)...")
        texts, chunks_by_file, deps_by_file = self.chunk_files(candidates)

        logger.info("[3/5] Linking relationships...")
        all_chunks = [c for chunks in chunks_by_file.values() for c in chunks]
        connect_relationships(all_chunks, deps_by_file if include_deps else None)
        if include_deps:
            link_file_relationships(chunks_by_file, deps_by_file)

        logger.info("[4/5] Ranking results...")
        results = self.build_results(request.text, texts, chunks_by_file)
        # Files with no path or chunk evidence are dropped unless the request names them.
        referenced = ["/" + ref.lstrip("./").lower() for ref in referenced_paths(request.text)]
        results = [
            r for r in rank_results(results, search_terms, names, cfg)
            if r.relevance_score > 0
            or ("/" + (r.display_path or "").lower()).endswith(tuple(referenced))
        ][:max_results]
        results += [
            SearchResult(file_path=path, content="", display_path=self._display(path))
            for path in missing
        ]
        results = assess_results(results, names, cfg)
        self.stats["results_ranked"] = len(results)

        logger.info("[5/5] Verifying results...")
        verified = self.verify(results)
        kept, counts = filter_results(verified, cfg)
        self.stats.update(counts)
        logger.info(
            f"  {counts['verified']} verified, {counts['mismatched']} mismatched, "
            f"{counts['not_found']} not found, {counts['dropped']} dropped"
        )

        if kept:
            text = ReportFormatter.render(kept, request.text, filters, counts)
        else:
            directories = [
                d for d in cfg.common_source_dirs if os.path.isdir(self.root / d)
            ]
            text = ReportFormatter.render_no_results(
                request.text, search_terms, names, filters, directories,
            )

        return FormattedReport(
            text=text,
            results=kept,
            search_terms=search_terms,
            file_name_candidates=names,
            filters=filters,
            stats=dict(self.stats),
        )
