"""
Verisearch Chunker

Groups extracted entities into renderable :class:`CodeChunk` records and
links them with relationship metadata.

- :func:`build_chunks` — one chunk per entity (optionally padded with
  context lines), one ``imports`` chunk for the leading import block, or
  a single opaque ``file`` chunk when nothing was recognized.
- :func:`connect_relationships` — cross-chunk edges: props contracts to
  the components that use them, ``importedBy`` from literal import
  statements, ``extendedBy`` back-edges, and referenced-entity links.
- :func:`link_file_relationships` — resolves relative import specifiers
  between candidate files into ``exportsTo`` edges.

Every edge written to a :class:`RelationshipContext` list is backed by a
literal name match.  Naming-convention guesses go to
:attr:`RelationshipContext.inferred` instead.
"""

import difflib
import logging
import os
import re
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from verisearch.core.extractor import EntityExtractor, extract, language_for_path
from verisearch.core.models import (
    ChunkMetadata,
    CodeChunk,
    DependencyInfo,
    EntityKind,
    RelationshipContext,
    SourceEntity,
    TypeDefinition,
)

logger = logging.getLogger(__name__)

PROPS_SUFFIX = "Props"

# Suffixes peeled off a props base name to reach the component it types,
# e.g. AssetFieldsProps -> Asset, TradeFormProps -> Trade.
_PEELABLE_SUFFIXES = ("Fields", "Field", "Form")
# Suffixes a component may carry on top of the props base name,
# e.g. WidgetProps -> WidgetView.
_COMPONENT_SUFFIXES = ("Form", "Fields", "View", "Component", "Page", "Container")

_LINKABLE_KINDS = frozenset({
    EntityKind.FUNCTION, EntityKind.CLASS, EntityKind.UI_COMPONENT, EntityKind.VARIABLE,
})
_UNADDRESSABLE_KINDS = frozenset({EntityKind.IMPORTS, EntityKind.FILE})


# =============================================================================
# Chunk Construction
# =============================================================================

def _import_block(deps: DependencyInfo, lines: List[str],
                  first_entity_line: Optional[int]) -> Optional[Tuple[int, int]]:
    """Line span of the contiguous import statements at the top of the file."""
    records = sorted(deps.imports, key=lambda r: r.line)
    if not records:
        return None
    start = records[0].line
    if first_entity_line is not None and start >= first_entity_line:
        return None
    end = start + records[0].text.count("\n")
    for record in records[1:]:
        gap = lines[end:record.line - 1]
        if any(g.strip() and not g.strip().startswith(("//", "/*", "*")) for g in gap):
            break
        end = max(end, record.line + record.text.count("\n"))
    return start, min(end, len(lines))


def _is_contract(entity: SourceEntity, content: str) -> bool:
    return entity.name.endswith(PROPS_SUFFIX) or "React." in content


def _entity_chunk(file_path: str, entity: SourceEntity, deps: DependencyInfo,
                  lines: List[str], language: str, context_lines: int) -> CodeChunk:
    start = max(1, entity.start_line - context_lines)
    end = min(len(lines), entity.end_line + context_lines) or entity.end_line
    content = "\n".join(lines[start - 1:end])

    rel = RelationshipContext(imports=deps.import_sources())
    if entity.is_exported:
        rel.exports.append(entity.name)
    inherits = entity.kind in (EntityKind.CLASS, EntityKind.INTERFACE) or (
        entity.kind == EntityKind.UI_COMPONENT
        and re.search(rf"\bclass\s+{re.escape(entity.name)}\b", content)
    )
    if inherits:
        rel.extends_from.extend(entity.dependencies)

    type_definition = None
    if entity.kind in EntityKind.TYPE_CONTRACTS:
        type_definition = TypeDefinition(
            properties=[c for c in entity.child_entities if c.kind == "property"],
            methods=[c for c in entity.child_entities if c.kind == "method"],
            is_contract=_is_contract(entity, content),
        )

    return CodeChunk(
        content=content,
        start_line=start,
        end_line=max(end, start),
        kind=entity.kind,
        name=entity.name,
        file_path=file_path,
        metadata=ChunkMetadata(
            language=language,
            parent_name=entity.parent_name,
            documentation=entity.documentation,
            is_exported=entity.is_exported,
            dependencies=list(entity.dependencies),
            relationship_context=rel,
            type_definition=type_definition,
        ),
    )


def build_chunks(
    file_path: str,
    text: str,
    *,
    context_lines: int = 0,
    extractor: Optional[EntityExtractor] = None,
) -> Tuple[List[CodeChunk], List[SourceEntity], DependencyInfo]:
    """
    Convert one file into chunks.

    Args:
        file_path: Path recorded on every chunk.
        text: Current file content.
        context_lines: Lines of surrounding source added on each side
            of an entity chunk.
        extractor: Parser chain override (defaults to the shared chain).

    Returns:
        ``(chunks, entities, deps)``.
    """
    entities, deps = extractor.extract(file_path, text) if extractor else extract(file_path, text)
    language = language_for_path(file_path)
    lines = text.splitlines()
    chunks: List[CodeChunk] = []

    first_entity = min((e.start_line for e in entities), default=None)
    block = _import_block(deps, lines, first_entity)
    if block is not None:
        start, end = block
        chunks.append(CodeChunk(
            content="\n".join(lines[start - 1:end]),
            start_line=start,
            end_line=end,
            kind=EntityKind.IMPORTS,
            name="imports",
            file_path=file_path,
            metadata=ChunkMetadata(
                language=language,
                relationship_context=RelationshipContext(imports=deps.import_sources()),
            ),
        ))

    if not entities:
        chunks = [CodeChunk(
            content=text,
            start_line=1,
            end_line=max(len(lines), 1),
            kind=EntityKind.FILE,
            name=Path(file_path).stem,
            file_path=file_path,
            metadata=ChunkMetadata(
                language=language,
                relationship_context=RelationshipContext(
                    imports=deps.import_sources(), exports=deps.exported_names(),
                ),
            ),
        )]
        return chunks, entities, deps

    for entity in entities:
        chunks.append(_entity_chunk(file_path, entity, deps, lines, language, context_lines))

    logger.debug(f"Built {len(chunks)} chunks from {file_path}")
    return chunks, entities, deps


# =============================================================================
# Relationship Linking
# =============================================================================

def _index_by_name(chunks: Iterable[CodeChunk]) -> Dict[str, List[CodeChunk]]:
    index: Dict[str, List[CodeChunk]] = defaultdict(list)
    for chunk in chunks:
        if chunk.kind not in _UNADDRESSABLE_KINDS:
            index[chunk.name].append(chunk)
    return index


def _linkable(index: Dict[str, List[CodeChunk]], name: str) -> List[CodeChunk]:
    return [c for c in index.get(name, ()) if c.kind in _LINKABLE_KINDS]


def _closest(base: str, names: Sequence[str]) -> Optional[str]:
    """The candidate closest to *base*: highest similarity, then shortest, then alphabetical."""
    if not names:
        return None
    return min(
        names,
        key=lambda n: (-difflib.SequenceMatcher(None, base, n).ratio(), len(n), n),
    )


def naming_variants(props_name: str) -> List[str]:
    """Component names a props contract may belong to, besides the literal base."""
    base = props_name[: -len(PROPS_SUFFIX)] if props_name.endswith(PROPS_SUFFIX) else props_name
    variants: List[str] = []
    for suffix in _PEELABLE_SUFFIXES:
        if base.endswith(suffix) and len(base) > len(suffix):
            variants.append(base[: -len(suffix)])
    for suffix in _COMPONENT_SUFFIXES:
        if not base.endswith(suffix):
            variants.append(base + suffix)
    return [v for v in dict.fromkeys(variants) if v != base]


def _link_props(index: Dict[str, List[CodeChunk]], chunks: List[CodeChunk]) -> None:
    for contract in chunks:
        if contract.kind not in EntityKind.TYPE_CONTRACTS or not contract.name.endswith(PROPS_SUFFIX):
            continue
        base = contract.name[: -len(PROPS_SUFFIX)]
        type_def = contract.metadata.type_definition

        literal = _linkable(index, base)
        if literal:
            for component in literal:
                contract.relationships.add("used_by_entities", component.name)
                component.relationships.add("related_entities", contract.name)
            if type_def is not None:
                type_def.is_contract = True
                type_def.contract_for = base
            continue

        matches = [v for v in naming_variants(contract.name) if _linkable(index, v)]
        best = _closest(base, matches)
        if best is None:
            continue
        reason = f"naming convention: {contract.name} -> {best}"
        contract.relationships.add_inferred("used_by", best, reason)
        for component in _linkable(index, best):
            component.relationships.add_inferred("related", contract.name, reason)
        if type_def is not None:
            type_def.is_contract = True


def _link_data_contracts(index: Dict[str, List[CodeChunk]], chunks: List[CodeChunk]) -> None:
    """Guess ``<Name>Data`` / ``<Base>FormData`` contracts for components and forms."""
    for component in chunks:
        if component.kind not in (EntityKind.UI_COMPONENT, EntityKind.CLASS):
            continue
        guesses = [f"{component.name}Data"]
        if component.name.endswith("Form"):
            guesses.append(f"{component.name[:-4]}FormData")
        for guess in dict.fromkeys(guesses):
            targets = [c for c in index.get(guess, ()) if c.kind in EntityKind.TYPE_CONTRACTS]
            if not targets:
                continue
            reason = f"naming convention: {component.name} -> {guess}"
            component.relationships.add_inferred("related", guess, reason)
            for target in targets:
                target.relationships.add_inferred("used_by", component.name, reason)


def _link_references(index: Dict[str, List[CodeChunk]], chunks: List[CodeChunk]) -> None:
    for chunk in chunks:
        if chunk.kind in _UNADDRESSABLE_KINDS:
            continue
        for dependency in chunk.metadata.dependencies:
            if dependency == chunk.name or dependency not in index:
                continue
            chunk.relationships.add("related_entities", dependency)
            for target in index[dependency]:
                if target.kind in EntityKind.TYPE_CONTRACTS and chunk.kind in _LINKABLE_KINDS:
                    target.relationships.add("used_by_entities", chunk.name)
                    type_def = target.metadata.type_definition
                    if type_def is not None and chunk.name not in type_def.referenced_by:
                        type_def.referenced_by.append(chunk.name)


def _link_extensions(index: Dict[str, List[CodeChunk]], chunks: List[CodeChunk]) -> None:
    for chunk in chunks:
        for base in chunk.relationships.extends_from:
            for target in index.get(base, ()):
                if target is not chunk:
                    target.relationships.add("extended_by", chunk.name)


def _source_may_reference(source: str, importer: str, target_path: str) -> bool:
    """Whether an import specifier written in *importer* can point at *target_path*."""
    if source.startswith("."):
        return resolve_import(source, importer, [target_path]) == target_path
    # Path aliases: "@/x/Y", "~/x/Y", "src/x/Y", "@alias/x/Y"
    stem = "/" + os.path.splitext(target_path)[0].replace(os.sep, "/").lstrip("/")
    tail = re.sub(r"^(?:[@~]?/)+", "", source).rstrip("/")
    tails = [tail]
    if tail.startswith(("@", "~")) and "/" in tail:
        tails.append(tail.split("/", 1)[1])
    return any(stem.endswith("/" + t) or stem.endswith("/" + t + "/index") for t in tails if t)


def _link_imported_by(chunks: List[CodeChunk], deps_by_file: Dict[str, DependencyInfo]) -> None:
    for chunk in chunks:
        if not chunk.metadata.is_exported or chunk.kind in _UNADDRESSABLE_KINDS:
            continue
        for other_path, other_deps in deps_by_file.items():
            if other_path == chunk.file_path:
                continue
            if any(
                chunk.name in record.imported_names
                and chunk.name in record.text
                and _source_may_reference(record.source, other_path, chunk.file_path)
                for record in other_deps.imports
            ):
                chunk.relationships.add("imported_by", other_path)


def connect_relationships(
    chunks: List[CodeChunk],
    deps_by_file: Optional[Dict[str, DependencyInfo]] = None,
) -> List[CodeChunk]:
    """
    Link chunks across the whole candidate set.  Mutates and returns *chunks*.

    1. Index every addressable chunk by name (import blocks excluded).
    2. Props contracts: a literal ``<Name>Props`` -> ``<Name>`` match is
       a verified ``usedByEntities`` edge; naming variants are recorded
       as inferred edges, closest variant first.
    3. ``importedBy``: other files whose import statements literally
       import an exported chunk's name.
    4. ``extendedBy`` back-edges from ``extends`` dependencies.
    """
    index = _index_by_name(chunks)
    _link_props(index, chunks)
    _link_data_contracts(index, chunks)
    _link_references(index, chunks)
    if deps_by_file:
        _link_imported_by(chunks, deps_by_file)
    _link_extensions(index, chunks)
    return chunks


# =============================================================================
# File-Level Import Resolution
# =============================================================================

def resolve_import(source: str, importer: str, known_paths: Iterable[str],
                   extensions: Sequence[str] = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")
                   ) -> Optional[str]:
    """
    Resolve a relative import specifier against the candidate file set.

    Tries the path as written, then each extension, then ``index.*``
    inside a directory of that name.
    """
    if not source.startswith("."):
        return None
    known = {os.path.normpath(p): p for p in known_paths}
    base = os.path.normpath(os.path.join(os.path.dirname(importer), source))
    attempts = [base]
    attempts.extend(base + ext for ext in extensions)
    attempts.extend(os.path.join(base, "index" + ext) for ext in extensions)
    for attempt in attempts:
        if attempt in known:
            return known[attempt]
    return None


def link_file_relationships(
    chunks_by_file: Dict[str, List[CodeChunk]],
    deps_by_file: Dict[str, DependencyInfo],
) -> None:
    """
    Record ``exportsTo`` edges for resolved relative imports and link
    each imported name to the exporting file's chunk of that name.
    """
    paths = list(chunks_by_file)
    for importer, deps in deps_by_file.items():
        importer_chunks = chunks_by_file.get(importer, [])
        if not importer_chunks:
            continue
        anchor = next((c for c in importer_chunks if c.kind == EntityKind.IMPORTS), importer_chunks[0])
        for record in deps.imports:
            target = resolve_import(record.source, importer, paths)
            if target is None or target == importer:
                continue
            anchor.relationships.add("exports_to", target)
            for chunk in chunks_by_file[target]:
                if chunk.name in record.imported_names and chunk.metadata.is_exported:
                    anchor.relationships.add("related_entities", chunk.name)
                    chunk.relationships.add("imported_by", importer)
