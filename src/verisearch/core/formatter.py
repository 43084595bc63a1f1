"""
Verisearch Report Formatter

Renders verified results as the text report handed to users and to the
model tiers, plus JSON and compact one-line-per-result variants.
"""

import json
import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from verisearch.core.models import CodeChunk, EntityKind, FormattedReport, SearchResult

SEPARATOR = "-" * 40

_FENCE_LANGUAGE = {
    "typescript": "typescript",
    "tsx": "tsx",
    "javascript": "javascript",
    "jsx": "jsx",
}


class ReportFormatter:
    """Format search results for different output modes."""

    # ── Helpers ───────────────────────────────────────────────────

    @staticmethod
    def _fence(chunk: CodeChunk) -> str:
        return _FENCE_LANGUAGE.get(chunk.metadata.language, "")

    @staticmethod
    def _short(path: str) -> str:
        return os.path.basename(path) or path

    @staticmethod
    def _is_component(chunk: CodeChunk) -> bool:
        return chunk.kind == EntityKind.UI_COMPONENT or (
            chunk.kind in (EntityKind.FUNCTION, EntityKind.CLASS) and chunk.name[:1].isupper()
        )

    @staticmethod
    def _caveats(result: SearchResult) -> List[str]:
        out: List[str] = []
        if result.match_type == "synthetic":
            out.append(
                "Note: This is a low-confidence result. It may not represent the actual implementation."
            )
        elif result.match_type == "inferred":
            out.append("Note: This result was inferred from related code and may be incomplete.")
        v = result.verification
        if v is None:
            return out
        if not v.file_exists:
            out.append("WARNING: This file could not be verified to exist in the codebase.")
        elif not v.entities_verified:
            out.append("WARNING: Some declarations could not be found in the live file.")
        for note in v.discrepancies:
            out.append(f"  - {note}")
        return out

    @staticmethod
    def _analysis(chunk: CodeChunk) -> List[str]:
        rel = chunk.relationships
        lines: List[str] = []
        if chunk.kind in EntityKind.TYPE_CONTRACTS and rel.used_by_entities:
            lines.append(f"- **Used by Components**: {', '.join(rel.used_by_entities)}")
        if ReportFormatter._is_component(chunk) and rel.related_entities:
            contracts = [
                n for n in rel.related_entities
                if "Props" in n or "Interface" in n or "Type" in n or n.endswith("Data")
            ]
            if contracts:
                lines.append(f"- **Props Interface**: {', '.join(contracts)}")
            others = [n for n in rel.related_entities if n not in contracts]
            if others:
                lines.append(f"- **Related Entities**: {', '.join(others)}")
        elif rel.related_entities:
            lines.append(f"- **Related Entities**: {', '.join(rel.related_entities)}")
        if rel.used_by_entities and chunk.kind not in EntityKind.TYPE_CONTRACTS:
            lines.append(f"- **Used By**: {', '.join(rel.used_by_entities)}")
        if rel.extends_from:
            lines.append(f"- **Extends**: {', '.join(rel.extends_from)}")
        if rel.extended_by:
            lines.append(f"- **Extended By**: {', '.join(rel.extended_by)}")
        if rel.imports:
            lines.append(f"- **Imports**: {', '.join(rel.imports)}")
        if rel.exports:
            lines.append(f"- **Exports**: {', '.join(rel.exports)}")
        if rel.imported_by:
            lines.append(f"- **Imported By**: {', '.join(ReportFormatter._short(p) for p in rel.imported_by)}")
        if rel.exports_to:
            lines.append(f"- **Exports To**: {', '.join(ReportFormatter._short(p) for p in rel.exports_to)}")
        for edge in rel.inferred:
            label = "Possibly used by" if edge.relation == "used_by" else "Possibly related to"
            lines.append(f"- {label} (inferred, not verified): {edge.target} ({edge.reason})")
        return lines

    @staticmethod
    def _render_chunk(chunk: CodeChunk) -> List[str]:
        out: List[str] = []
        fence = ReportFormatter._fence(chunk)
        type_def = chunk.metadata.type_definition
        span = f"{chunk.name} (lines {chunk.start_line}-{chunk.end_line})"
        if chunk.kind in EntityKind.TYPE_CONTRACTS:
            out.append(f"{chunk.kind.upper()}: {span}")
            if type_def is not None and type_def.properties:
                keyword = "interface" if chunk.kind == EntityKind.INTERFACE else "type"
                out.append(f"```{fence}")
                out.append(f"{keyword} {chunk.name} {{")
                for prop in type_def.properties:
                    optional = "?" if prop.optional else ""
                    out.append(f"  {prop.name}{optional}: {prop.type};")
                out.append("}")
                out.append("```")
                out.append("")
                out.append("Original Definition:")
        else:
            out.append(f"{chunk.kind}: {span}")
        out.append(f"```{fence}")
        out.append(chunk.content)
        out.append("```")

        analysis = ReportFormatter._analysis(chunk)
        if analysis:
            out.append("")
            out.append("Analysis:")
            out.extend(analysis)
        return out

    # ── Sections ──────────────────────────────────────────────────

    @staticmethod
    def diagnostics(results: Sequence[SearchResult]) -> List[str]:
        verified = [r for r in results if r.verification and r.verification.file_exists]
        scores = [r.confidence_score for r in results]
        average = sum(scores) / max(len(scores), 1)
        out = [
            "## Search Diagnostics",
            "",
            f"- Total results found: {len(results)}",
            f"- Verified results: {len(verified)}",
            f"- Average confidence score: {average:.2f}",
        ]
        if results and average < 0.5:
            out.append(
                "- Note: Some results have lower confidence scores. "
                "They may still be useful but verify details."
            )
        dirs = list(dict.fromkeys(
            str(Path(r.display_path or r.file_path).parent) for r in results
        ))
        if dirs:
            more = "..." if len(dirs) > 3 else ""
            out.append(f"- Search paths: {', '.join(dirs[:3])}{more}")
        return out

    @staticmethod
    def relationships(results: Sequence[SearchResult]) -> List[str]:
        """Cross-file pairs: props↔component, data↔form, file imports."""
        contracts = [c for r in results for c in r.chunks if c.kind in EntityKind.TYPE_CONTRACTS]
        components = {c.name: c for r in results for c in r.chunks if ReportFormatter._is_component(c)}
        out: List[str] = []

        props_pairs = [
            (c.name, c.name[: -len("Props")]) for c in contracts
            if c.name.endswith("Props") and c.name[: -len("Props")] in components
        ]
        if props_pairs:
            out.append("**Props Interfaces and Components:**")
            out.append("")
            out.extend(f"- `{p}` defines the props for `{comp}` component" for p, comp in props_pairs)
            out.append("")

        data_pairs = []
        for c in contracts:
            if not c.name.endswith("Data"):
                continue
            base = c.name[: -len("Data")]
            form = base if base in components else f"{base}Form" if f"{base}Form" in components else None
            if form:
                data_pairs.append((c.name, form))
        if data_pairs:
            out.append("**Data Interfaces and Form Components:**")
            out.append("")
            out.extend(f"- `{d}` defines the data structure for `{f}` form" for d, f in data_pairs)
            out.append("")

        display = {r.file_path: r.display_path or r.file_path for r in results}
        edges = []
        for r in results:
            for c in r.chunks:
                for target in c.relationships.exports_to:
                    if target in display:
                        edges.append((display[r.file_path], display[target]))
        edges = list(dict.fromkeys(edges))
        if edges:
            out.append("**File Import/Export Relationships:**")
            out.append("")
            out.extend(
                f"- `{ReportFormatter._short(a)}` imports from `{ReportFormatter._short(b)}`"
                for a, b in edges
            )
            out.append("")

        if not out:
            return []
        return ["## Cross-Component Relationships", ""] + out

    # ── Text report ───────────────────────────────────────────────

    @staticmethod
    def render(results: Sequence[SearchResult], query: str,
               filters: Sequence[str] = (),
               counts: Optional[Dict[str, int]] = None) -> str:
        """The full text report for a non-empty result list."""
        n = len(results)
        out: List[str] = [f"Found {n} result{'s' if n != 1 else ''} for: \"{query}\""]
        if filters:
            out.append(f"Search filters applied: {', '.join(filters)}")
        out.append("")

        exact = [r for r in results if r.match_type in ("exact", "partial")]
        if not exact:
            out.append("Could not find an exact match for your query.")
            out.append("However, these related files may contain similar information:")
            out.append("")

        for index, result in enumerate(results):
            out.append(f"Path: {result.display_path or result.file_path}")
            out.append(f"Confidence: {result.confidence_score:.2f} ({result.match_type})")
            out.extend(ReportFormatter._caveats(result))
            if result.chunks:
                for chunk in result.chunks:
                    out.append("")
                    out.extend(ReportFormatter._render_chunk(chunk))
            else:
                out.append("```")
                out.append(result.content)
                out.append("```")
            out.append("")
            if index < n - 1:
                out.append(SEPARATOR)
                out.append("")

        out.extend(ReportFormatter.diagnostics(results))
        out.append("")
        relationships = ReportFormatter.relationships(results) if n > 1 else []
        if relationships:
            out.extend(relationships)

        c = counts or {}
        verified = c.get("verified", sum(1 for r in results if r.is_verified))
        mismatched = c.get("mismatched", sum(
            1 for r in results if r.verification and r.verification.file_exists and not r.is_verified
        ))
        not_found = c.get("not_found", sum(
            1 for r in results if r.verification and not r.verification.file_exists
        ))
        out.append(
            f"Verification summary: {verified} fully verified, "
            f"{mismatched} structurally mismatched, {not_found} not found"
        )
        return "\n".join(out)

    @staticmethod
    def render_no_results(query: str, search_terms: Sequence[str],
                          file_name_candidates: Sequence[str],
                          filters: Sequence[str] = (),
                          directories: Sequence[str] = ()) -> str:
        """Report used when nothing survived verification."""
        out = [
            f"No relevant information found for: \"{query}\"",
            "",
            "I couldn't find any code matching your query. This could be due to:",
            "",
            "1. The files might exist with different names than expected",
            "2. The code might be in different directories than searched",
            "3. The naming conventions might differ from what was expected",
            "",
        ]
        if search_terms:
            out.append(f"Search terms tried: {', '.join(search_terms)}")
        if file_name_candidates:
            out.append(f"Potential names extracted: {', '.join(file_name_candidates)}")
        if filters:
            out.append("Search filters applied:")
            out.extend(f"- {f}" for f in filters)
        out.append("")
        out.append("Try one of these approaches:")
        out.append("- Use broader search terms")
        if file_name_candidates:
            out.append(f"- Search for the base entity name (e.g. \"{file_name_candidates[0]}\")")
        else:
            out.append("- Search for the base entity name instead of a suffixed one")
        out.append("- Provide a more specific file path if you know it")
        dirs = ", ".join(f"\"{d}/\"" for d in directories) if directories else "\"components/\" or \"src/\""
        out.append(f"- Check directories such as {dirs}")
        out.append("- Change the file type filter")
        return "\n".join(out)

    # ── JSON ──────────────────────────────────────────────────────

    @staticmethod
    def _sanitize_for_json(s: str) -> str:
        """Drop control characters and normalise path separators."""
        if not s:
            return s
        s = s.replace("\\", "/")
        return "".join(c for c in s if (ord(c) >= 32 and ord(c) != 127) or c in "\n\r\t")

    @staticmethod
    def format_json(report: FormattedReport) -> str:
        def _chunk(c: CodeChunk) -> dict:
            rel = c.relationships
            return {
                "kind": c.kind,
                "name": c.name,
                "start_line": c.start_line,
                "end_line": c.end_line,
                "content": ReportFormatter._sanitize_for_json(c.content),
                "is_exported": c.metadata.is_exported,
                "relationships": {
                    "imports": rel.imports,
                    "exports": rel.exports,
                    "imported_by": [ReportFormatter._sanitize_for_json(p) for p in rel.imported_by],
                    "exports_to": [ReportFormatter._sanitize_for_json(p) for p in rel.exports_to],
                    "related_entities": rel.related_entities,
                    "used_by_entities": rel.used_by_entities,
                    "extends_from": rel.extends_from,
                    "extended_by": rel.extended_by,
                    "inferred": [
                        {"relation": e.relation, "target": e.target, "reason": e.reason}
                        for e in rel.inferred
                    ],
                },
            }

        def _result(r: SearchResult) -> dict:
            v = r.verification
            return {
                "file_path": ReportFormatter._sanitize_for_json(r.display_path or r.file_path),
                "relevance_score": round(r.relevance_score, 2),
                "confidence_score": round(r.confidence_score, 4),
                "match_type": r.match_type,
                "verification": None if v is None else {
                    "file_exists": v.file_exists,
                    "content_matches": v.content_matches,
                    "entities_verified": v.entities_verified,
                    "last_modified": v.last_modified,
                    "discrepancies": v.discrepancies,
                },
                "chunks": [_chunk(c) for c in r.chunks],
            }

        payload = {
            "search_terms": report.search_terms,
            "file_name_candidates": report.file_name_candidates,
            "filters": report.filters,
            "stats": report.stats,
            "results": [_result(r) for r in report.results],
        }
        return json.dumps(payload, indent=2, allow_nan=False)

    # ── Compact ───────────────────────────────────────────────────

    @staticmethod
    def format_compact(report: FormattedReport) -> str:
        """One line per chunk: ``path:line  kind name  [match confidence]``."""
        if not report.results:
            return "No results found."
        lines: List[str] = []
        for r in report.results:
            path = r.display_path or r.file_path
            tag = f"[{r.match_type} {r.confidence_score:.2f}]"
            if not r.chunks:
                lines.append(f"{path}:1  file  {tag}")
            for c in r.chunks:
                lines.append(f"{path}:{c.start_line}  {c.kind} {c.name}  {tag}")
        return "\n".join(lines)
