"""
Verisearch Verifier / Hallucination Filter

Cross-checks file-level results against the live filesystem:

1. the file exists (case-insensitive fallback through the filesystem
   capability);
2. the live text hashes to the same value as the content the result
   carries;
3. every type contract and every function, class, or component chunk
   still has a declaration of its name in the live file, and interface
   properties still appear in the live declaration body.

Confidence is recomputed from the result's pre-verification
``base_confidence`` each time, so verifying twice gives the same answer.
Filesystem errors become discrepancies; nothing is raised to the caller.
"""

import dataclasses
import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from verisearch.core.config import VerisearchConfig
from verisearch.core.extractor import mask_source, parse_members
from verisearch.core.filesystem import Filesystem, LocalFilesystem
from verisearch.core.models import (
    ChunkMetadata,
    CodeChunk,
    EntityKind,
    RelationshipContext,
    SearchResult,
    Verification,
)

logger = logging.getLogger(__name__)

_CONTRACT_KEYWORDS = r"(?:interface|type|enum)"
_COMPONENT_KEYWORDS = r"(?:function\s*\*?|class|const|let|var)"


def content_hash(text: str) -> int:
    """32-bit rolling hash (``h * 31 + c``), cheap enough to run per result."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


def declaration_patterns(name: str, kind: str) -> List[re.Pattern]:
    """
    Textual patterns that declare *name* in a live file.

    Bare declaration, exported declaration (``export``, ``export
    default``, ``declare``, ``abstract``, ``async`` prefixes), and
    membership in an ``export { ... }`` group.
    """
    escaped = re.escape(name)
    keywords = _CONTRACT_KEYWORDS if kind in EntityKind.TYPE_CONTRACTS else _COMPONENT_KEYWORDS
    return [
        re.compile(rf"(?m)^[ \t]*(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?{keywords}\s+{escaped}\b"),
        re.compile(
            rf"\bexport\s+(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?"
            rf"{keywords}\s+{escaped}\b"
        ),
        re.compile(rf"\bexport\s+(?:type\s+)?\{{[^}}]*\b{escaped}\b[^}}]*\}}"),
    ]


def find_declaration(name: str, kind: str, code: str) -> Optional[re.Match]:
    """First declaration of *name* in (masked) *code*, or ``None``."""
    for pattern in declaration_patterns(name, kind):
        m = pattern.search(code)
        if m:
            return m
    return None


class Verifier:
    """
    Verify file-level results against the filesystem.

    Args:
        filesystem: Filesystem capability (defaults to the local disk).
        config: Supplies the confidence adjustments and thresholds.
    """

    def __init__(self, filesystem: Filesystem | None = None,
                 config: VerisearchConfig | None = None):
        self.filesystem = filesystem or LocalFilesystem()
        self.config = config or VerisearchConfig()

    # ── Public ────────────────────────────────────────────────────

    def verify(self, result: SearchResult) -> SearchResult:
        """Return a verified copy of *result*; *result* itself is not modified."""
        verification = self._check(result)
        confidence = self._confidence(result, verification)
        return dataclasses.replace(
            result,
            verification=verification,
            confidence_score=confidence,
            match_type=self.config.classify_confidence(confidence),
        )

    def verify_all(self, results: Iterable[SearchResult]) -> List[SearchResult]:
        return [self.verify(r) for r in results]

    # ── Checks ────────────────────────────────────────────────────

    def _check(self, result: SearchResult) -> Verification:
        path = result.file_path
        resolved = self.filesystem.resolve(path)
        if resolved is None:
            notes = [f"File not found: {result.display_path or path}"]
            similar = self._similar_paths(path)
            if similar:
                notes.append(f"Similar existing paths: {', '.join(similar[:3])}")
            logger.debug(f"Verification: {path} does not exist")
            return Verification(file_exists=False, discrepancies=notes)

        try:
            live = self.filesystem.read_text(resolved)
        except OSError as e:
            logger.debug(f"Verification: cannot read {resolved}: {e}")
            return Verification(
                file_exists=False,
                discrepancies=[f"File could not be read: {type(e).__name__}: {e}"],
            )

        verification = Verification(
            file_exists=True,
            last_modified=self.filesystem.mtime(resolved),
        )
        verification.content_matches = content_hash(live) == content_hash(result.content)
        if not verification.content_matches:
            verification.discrepancies.append("Live file content differs from the retrieved content")

        code = mask_source(live)
        for chunk in result.chunks:
            if chunk.kind in EntityKind.TYPE_CONTRACTS:
                if not self._check_contract(chunk, code, live, verification):
                    verification.types_verified = False
            elif chunk.kind in EntityKind.COMPONENT_LIKE:
                if find_declaration(chunk.name, chunk.kind, code) is None:
                    verification.components_verified = False
                    verification.discrepancies.append(
                        f"{chunk.kind} {chunk.name} is not declared in the live file"
                    )

        verification.entities_verified = (
            verification.types_verified and verification.components_verified
        )
        return verification

    def _check_contract(self, chunk: CodeChunk, code: str, live: str,
                        verification: Verification) -> bool:
        match = find_declaration(chunk.name, chunk.kind, code)
        if match is None:
            verification.discrepancies.append(
                f"{chunk.kind} {chunk.name} is not declared in the live file"
            )
            return False

        type_def = chunk.metadata.type_definition
        claimed = [p.name for p in type_def.properties] if type_def else []
        if not claimed:
            return True

        first_line = live.count("\n", 0, match.start()) + 1
        live_members = {m.name for m in parse_members(live[match.start():], first_line)}
        present = sum(1 for name in claimed if name in live_members)
        ratio = present / len(claimed)
        if ratio >= self.config.property_match_ratio:
            return True
        note = f"{chunk.kind} {chunk.name} has different properties (match ratio: {ratio:.2f})"
        verification.discrepancies.append(note)
        if ratio > self.config.property_soft_ratio:
            return True
        return False

    def _similar_paths(self, path: str) -> List[str]:
        finder = getattr(self.filesystem, "find_similar_paths", None)
        if finder is None:
            return []
        try:
            return finder(path)
        except OSError:
            return []

    # ── Scoring ───────────────────────────────────────────────────

    def _confidence(self, result: SearchResult, verification: Verification) -> float:
        adjust = self.config.confidence_adjustments
        base = result.base_confidence
        if not verification.file_exists:
            if result.prior_match_type == "synthetic":
                return adjust["synthetic_missing"]
            ceiling = adjust["missing_file_ceiling"]
            return min(max(base - adjust["missing_file_penalty"], ceiling), ceiling)

        score = base + adjust["exists"]
        score += adjust["content_match"] if verification.content_matches else adjust["content_mismatch"]
        if not verification.types_verified:
            score += adjust["entity_failure"]
        if not verification.components_verified:
            score += adjust["entity_failure"]
        return round(min(max(score, adjust["existing_floor"]), 1.0), 4)


# =============================================================================
# Filtering
# =============================================================================

def _prune(values: Sequence[str], allowed: Set[str]) -> List[str]:
    return [v for v in values if v in allowed]


def _pruned_chunk(chunk: CodeChunk, names: Set[str], paths: Set[str]) -> CodeChunk:
    rel = chunk.relationships
    pruned = RelationshipContext(
        imports=list(rel.imports),
        exports=list(rel.exports),
        imported_by=_prune(rel.imported_by, paths),
        exports_to=_prune(rel.exports_to, paths),
        related_entities=_prune(rel.related_entities, names),
        used_by_entities=_prune(rel.used_by_entities, names),
        extends_from=_prune(rel.extends_from, names),
        extended_by=_prune(rel.extended_by, names),
        inferred=[e for e in rel.inferred if e.target in names],
    )
    metadata: ChunkMetadata = dataclasses.replace(chunk.metadata, relationship_context=pruned)
    return dataclasses.replace(chunk, metadata=metadata)


def prune_relationships(results: Sequence[SearchResult]) -> List[SearchResult]:
    """
    Drop relationship edges whose target is not in the result set.

    Name edges must name a chunk of some result; ``imported_by`` and
    ``exports_to`` must name a result's file.
    """
    names = {c.name for r in results for c in r.chunks}
    paths = {r.file_path for r in results}
    return [
        dataclasses.replace(r, chunks=[_pruned_chunk(c, names, paths) for c in r.chunks])
        for r in results
    ]


def filter_results(results: Sequence[SearchResult],
                   config: VerisearchConfig | None = None) -> Tuple[List[SearchResult], Dict[str, int]]:
    """
    Drop results that both failed to exist and sit at or below the drop
    floor; everything else is kept (with caveats) and sorted by
    confidence, then relevance.

    Returns:
        ``(kept, counts)`` where counts has ``verified``, ``mismatched``,
        ``not_found`` and ``dropped``.
    """
    cfg = config or VerisearchConfig()
    floor = cfg.confidence_thresholds["drop_floor"]
    counts = {"verified": 0, "mismatched": 0, "not_found": 0, "dropped": 0}
    kept: List[SearchResult] = []
    for result in results:
        v = result.verification
        exists = bool(v and v.file_exists)
        if not exists:
            counts["not_found"] += 1
            if result.confidence_score <= floor:
                counts["dropped"] += 1
                logger.info(f"Dropped unverifiable result: {result.display_path or result.file_path}")
                continue
        elif result.is_verified:
            counts["verified"] += 1
        else:
            counts["mismatched"] += 1
        kept.append(result)

    kept.sort(key=lambda r: (r.confidence_score, r.relevance_score), reverse=True)
    return prune_relationships(kept), counts
