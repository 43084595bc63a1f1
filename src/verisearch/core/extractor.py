"""
Verisearch Entity Extractor

Turns one file's text into :class:`SourceEntity` records plus a
:class:`DependencyInfo` import/export table.

Two :class:`StructuralParser` implementations sit behind a single
:func:`extract` entry point:

- :class:`TreeSitterParser` — accurate, built on the tree-sitter
  TypeScript / JavaScript grammars (loaded lazily per language).
- :class:`RegexStructuralParser` — keyword-prefixed regular expressions
  plus brace-depth tracking to approximate entity boundaries.

``extract`` tries them in order and never raises: a grammar that is not
installed, a parse exception, or a tree with syntax errors all degrade
to the regex scanner, which always yields a best-effort entity list.
"""

import dataclasses
import importlib
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from verisearch.core.models import (
    ChildEntity,
    DependencyInfo,
    EntityKind,
    ExportRecord,
    ImportRecord,
    SourceEntity,
)
from verisearch.exceptions import StructuralParseError

logger = logging.getLogger(__name__)


# =============================================================================
# Language Detection
# =============================================================================

LANGUAGE_BY_EXTENSION: Dict[str, str] = {
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "jsx",
    ".py": "python",
    ".css": "css",
    ".scss": "scss",
    ".json": "json",
    ".md": "markdown",
    ".html": "html",
}


def language_for_path(file_path: str) -> str:
    """Return the language label for *file_path* (``text`` when unknown)."""
    return LANGUAGE_BY_EXTENSION.get(Path(file_path).suffix.lower(), "text")


# =============================================================================
# Shared Text Helpers
# =============================================================================

_IDENTIFIER = r"[A-Za-z_$][\w$]*"
_TYPE_REFERENCE = re.compile(r"\b[A-Z][A-Za-z0-9_]*\b")

# Capitalized names that are language or framework vocabulary, never
# project entities worth linking to.
_BUILTIN_TYPES = frozenset({
    "Array", "ReadonlyArray", "Promise", "Record", "Partial", "Required",
    "Readonly", "Pick", "Omit", "Exclude", "Extract", "NonNullable",
    "ReturnType", "Parameters", "InstanceType", "Awaited", "Map", "Set",
    "WeakMap", "WeakSet", "String", "Number", "Boolean", "Date", "Error",
    "Function", "Object", "Symbol", "RegExp", "BigInt", "JSON", "Math",
    "React", "JSX", "FC", "SFC", "VFC", "ReactNode", "ReactElement",
    "Element", "HTMLElement", "HTMLInputElement", "HTMLDivElement", "Event",
    "MouseEvent", "ChangeEvent", "FormEvent", "KeyboardEvent",
    "PropsWithChildren", "ComponentProps", "ComponentType", "CSSProperties",
    "Dispatch", "SetStateAction", "Ref", "RefObject", "MutableRefObject",
    "Component", "PureComponent", "Fragment",
    "T", "K", "V", "U", "P", "S", "E", "R",
})

_JSX_RETURN = re.compile(r"(?:\breturn|=>)\s*\(?\s*<(?:[A-Za-z]|>|/)")
_UI_BASE_CLASSES = frozenset({"Component", "PureComponent"})


def type_references(text: str, exclude: Sequence[str] = ()) -> Tuple[str, ...]:
    """Capitalized identifiers referenced in *text*, minus builtins, in order."""
    seen: List[str] = []
    for name in _TYPE_REFERENCE.findall(text):
        if name in _BUILTIN_TYPES or name in exclude or name in seen:
            continue
        seen.append(name)
    return tuple(seen)


def _strip_generics(text: str) -> str:
    return re.sub(r"<.*", "", text, flags=re.S).strip()


def clean_comment(text: str) -> Optional[str]:
    """Strip comment markers from a leading comment block."""
    lines: List[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        line = re.sub(r"^/\*\*?|\*/$", "", line).strip()
        line = re.sub(r"^(?://+|\*)\s?", "", line).rstrip()
        if line:
            lines.append(line)
    return "\n".join(lines) or None


def mask_source(text: str, strings: bool = True) -> str:
    """
    Blank out comments (and, when *strings* is True, string-literal
    contents) while preserving every newline and column offset, so brace
    counting and declaration regexes only see code.
    """
    out: List[str] = []
    state: Optional[str] = None
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < n else ""
        if state is None:
            if ch == "/" and nxt == "/":
                state = "line"
                out.append("  ")
                i += 2
                continue
            if ch == "/" and nxt == "*":
                state = "block"
                out.append("  ")
                i += 2
                continue
            if strings and ch in "'\"`":
                state = ch
            out.append(ch)
        elif state == "line":
            if ch == "\n":
                state = None
                out.append(ch)
            else:
                out.append(" ")
        elif state == "block":
            if ch == "*" and nxt == "/":
                state = None
                out.append("  ")
                i += 2
                continue
            out.append("\n" if ch == "\n" else " ")
        else:
            if ch == "\\" and nxt and nxt != "\n":
                out.append("  ")
                i += 2
                continue
            if ch == state:
                state = None
                out.append(ch)
            elif ch == "\n":
                out.append(ch)
                if state != "`":
                    state = None
            else:
                out.append(" ")
        i += 1
    return "".join(out)


# -- Interface / object-type members ------------------------------------------

_MEMBER_PROPERTY = re.compile(
    r"^(?:readonly\s+)?(?P<name>[A-Za-z_$][\w$]*|'[^']+'|\"[^\"]+\")(?P<opt>\?)?\s*:(?P<type>.*)$",
    re.S,
)
_MEMBER_METHOD = re.compile(
    r"^(?:readonly\s+)?(?P<name>[A-Za-z_$][\w$]*)(?P<opt>\?)?\s*(?:<[^>(]*>)?\s*\((?P<rest>.*)$",
    re.S,
)
_CONTINUATION_ENDINGS = (":", "|", "&", "=>", ",", "(")
_CONTINUATION_START = re.compile(r"[ \t]*(?:\||&)")


def _member_from_segment(segment: str, line: int) -> Optional[ChildEntity]:
    text = segment.strip().rstrip(";,").strip()
    if not text or text.startswith("["):
        return None
    m = _MEMBER_PROPERTY.match(text)
    if m:
        annotation = " ".join(m.group("type").split())
        return ChildEntity(
            name=m.group("name").strip("'\""),
            kind="property",
            type=annotation or "unknown",
            optional=bool(m.group("opt")),
            line=line,
        )
    m = _MEMBER_METHOD.match(text)
    if m:
        return ChildEntity(
            name=m.group("name"),
            kind="method",
            type="(" + " ".join(m.group("rest").split()),
            optional=bool(m.group("opt")),
            line=line,
        )
    return None


def parse_members(block: str, first_line: int) -> Tuple[ChildEntity, ...]:
    """
    Read the members of a ``{ ... }`` type body.

    Line-oriented: each member's annotation is the text after its colon
    up to the end of the member.  A member whose annotation cannot be
    read gets ``type="unknown"`` instead of failing the entity.
    """
    block = mask_source(block, strings=False)
    members: List[ChildEntity] = []
    depth = 0
    paren = 0
    segment: List[str] = []
    segment_line = line = first_line

    def flush():
        nonlocal segment
        member = _member_from_segment("".join(segment), segment_line)
        if member is not None:
            members.append(member)
        segment = []

    for i, ch in enumerate(block):
        if ch == "\n":
            line += 1
        if ch == "{":
            depth += 1
            if depth == 1:
                segment_line = line
                continue
        elif ch == "}":
            depth -= 1
            if depth == 0:
                flush()
                break
        if depth < 1:
            continue
        if ch in "([":
            paren += 1
        elif ch in ")]":
            paren = max(paren - 1, 0)
        if depth == 1 and paren == 0 and ch in ";\n":
            pending = "".join(segment).strip()
            if ch == "\n" and (pending.endswith(_CONTINUATION_ENDINGS)
                              or _CONTINUATION_START.match(block, i + 1)):
                segment.append(" ")
                continue
            flush()
            segment_line = line
            continue
        if not segment and ch.isspace():
            segment_line = line
            continue
        segment.append(ch)
    return tuple(members)


# =============================================================================
# Structural Parser Capability
# =============================================================================

class StructuralParser:
    """
    Capability interface: parse one file into entities and an
    import/export table.

    Implementations raise :class:`StructuralParseError` when they cannot
    handle the input; :func:`extract` catches it and moves on to the next
    parser in the chain.
    """

    name = "structural"

    def supports(self, file_path: str) -> bool:
        """Return True if this parser can handle *file_path*."""
        raise NotImplementedError

    def parse(self, file_path: str, text: str) -> Tuple[List[SourceEntity], DependencyInfo]:
        raise NotImplementedError


# =============================================================================
# Tree-sitter Parser (Primary)
# =============================================================================

_FUNCTION_VALUES = frozenset({
    "arrow_function", "function_expression", "function", "generator_function",
})
_JSX_NODES = frozenset({"jsx_element", "jsx_self_closing_element", "jsx_fragment"})
_METHOD_NODES = frozenset({"method_definition", "method_signature", "abstract_method_signature"})


class TreeSitterParser(StructuralParser):
    """Accurate parser built on the tree-sitter TypeScript / JavaScript grammars.

    Grammar packages are imported on first use of each language.  A
    missing package is logged once and reported as a parse failure so
    the regex scanner takes over.
    """

    name = "tree-sitter"

    # language label -> (grammar module, language() accessor)
    _GRAMMAR_MODULES: Dict[str, Tuple[str, str]] = {
        "typescript": ("tree_sitter_typescript", "language_typescript"),
        "tsx": ("tree_sitter_typescript", "language_tsx"),
        "javascript": ("tree_sitter_javascript", "language"),
        "jsx": ("tree_sitter_javascript", "language"),
    }

    def __init__(self):
        self._languages: Dict[str, Any] = {}
        self._unavailable: set = set()
        self._lock = threading.Lock()

    def supports(self, file_path: str) -> bool:
        return language_for_path(file_path) in self._GRAMMAR_MODULES

    def _load_language(self, language: str) -> Any:
        """Return the tree-sitter ``Language`` for *language*, or None."""
        with self._lock:
            if language in self._languages:
                return self._languages[language]
            if language in self._unavailable:
                return None
            mod_name, accessor = self._GRAMMAR_MODULES[language]
            try:
                from tree_sitter import Language  # Lazy import
                mod = importlib.import_module(mod_name)
                ts_lang = Language(getattr(mod, accessor)())
            except ImportError:
                logger.warning(
                    f"Grammar package '{mod_name}' not installed for {language}; "
                    f"using the regex scanner. Install with: pip install tree-sitter {mod_name.replace('_', '-')}"
                )
                self._unavailable.add(language)
                return None
            self._languages[language] = ts_lang
            logger.debug(f"Loaded tree-sitter grammar for {language}")
            return ts_lang

    def parse(self, file_path: str, text: str) -> Tuple[List[SourceEntity], DependencyInfo]:
        language = language_for_path(file_path)
        if language not in self._GRAMMAR_MODULES:
            raise StructuralParseError(f"No tree-sitter grammar for '{language}' files")
        ts_lang = self._load_language(language)
        if ts_lang is None:
            raise StructuralParseError(f"Tree-sitter grammar for {language} is unavailable")

        from tree_sitter import Parser as TSParser

        source = text.encode("utf-8")
        try:
            # Parser objects are cheap and not shared across worker threads.
            tree = TSParser(ts_lang).parse(source)
        except Exception as exc:
            raise StructuralParseError(f"tree-sitter failed on {file_path}: {exc}") from exc
        if tree.root_node.has_error:
            raise StructuralParseError(f"Syntax errors in {file_path}")

        return _TreeWalker().walk(tree.root_node)


def _text(node: Any) -> str:
    return node.text.decode("utf-8", errors="replace") if node is not None else ""


def _start(node: Any) -> int:
    return node.start_point[0] + 1


def _end(node: Any) -> int:
    return node.end_point[0] + 1


def _field(node: Any, *names: str) -> Any:
    """First non-None child among the named fields."""
    for name in names:
        child = node.child_by_field_name(name)
        if child is not None:
            return child
    return None


def _contains_jsx(node: Any) -> bool:
    stack = [node]
    while stack:
        current = stack.pop()
        if current.type in _JSX_NODES:
            return True
        stack.extend(current.named_children)
    return False


class _TreeWalker:
    """Collects entities, imports, and exports from one syntax tree."""

    def __init__(self):
        self.entities: List[SourceEntity] = []
        self.imports: List[ImportRecord] = []
        self.exports: List[ExportRecord] = []

    def walk(self, root: Any) -> Tuple[List[SourceEntity], DependencyInfo]:
        previous_comment = None
        for node in root.named_children:
            if node.type == "comment":
                previous_comment = node
                continue
            doc = self._doc_for(node, previous_comment)
            previous_comment = None
            self._visit(node, doc, exported=False)

        exported = {e.exported_name for e in self.exports}
        entities = [
            dataclasses.replace(e, is_exported=True)
            if not e.is_exported and e.parent_name is None and e.name in exported else e
            for e in self.entities
        ]
        return entities, DependencyInfo(tuple(self.imports), tuple(self.exports))

    @staticmethod
    def _doc_for(node: Any, comment: Any) -> Optional[str]:
        if comment is None or comment.end_point[0] < node.start_point[0] - 1:
            return None
        return clean_comment(_text(comment))

    # ── Dispatch ─────────────────────────────────────────────────

    def _visit(self, node: Any, doc: Optional[str], exported: bool,
               span: Any = None) -> List[str]:
        """Record *node* and return the names it declares."""
        kind = node.type
        if span is None:
            span = node
        if kind == "import_statement":
            self._record_import(node)
            return []
        if kind == "export_statement":
            return self._record_export(node, doc)
        if kind == "ambient_declaration" and node.named_children:
            return self._visit(node.named_children[0], doc, exported, span)
        if kind in ("function_declaration", "generator_function_declaration",
                    "function_signature"):
            name = _text(node.child_by_field_name("name"))
            self._add_function(node, name, doc, exported, span)
            return [name]
        if kind in ("class_declaration", "abstract_class_declaration", "class"):
            name_node = node.child_by_field_name("name")
            if name_node is None:
                return []
            self._add_class(node, _text(name_node), doc, exported, span)
            return [_text(name_node)]
        if kind == "interface_declaration":
            return [self._add_interface(node, doc, exported, span)]
        if kind == "type_alias_declaration":
            return [self._add_type_alias(node, doc, exported, span)]
        if kind == "enum_declaration":
            name = _text(node.child_by_field_name("name"))
            self.entities.append(SourceEntity(
                kind=EntityKind.TYPE_ALIAS, name=name,
                start_line=_start(span), end_line=_end(span),
                documentation=doc, is_exported=exported,
            ))
            return [name]
        if kind in ("lexical_declaration", "variable_declaration"):
            return self._add_variables(node, doc, exported, span)
        return []

    # ── Imports & exports ────────────────────────────────────────

    def _record_import(self, node: Any) -> None:
        source = _text(node.child_by_field_name("source")).strip("'\"`")
        names: List[str] = []
        is_default = False
        for clause in node.named_children:
            if clause.type != "import_clause":
                continue
            for part in clause.named_children:
                if part.type == "identifier":
                    names.insert(0, _text(part))
                    is_default = True
                elif part.type == "named_imports":
                    for spec in part.named_children:
                        if spec.type == "import_specifier":
                            names.append(_text(spec.child_by_field_name("name")))
                elif part.type == "namespace_import":
                    names.extend(_text(c) for c in part.named_children if c.type == "identifier")
        self.imports.append(ImportRecord(
            source=source, imported_names=tuple(names), is_default=is_default,
            line=_start(node), text=_text(node),
        ))

    def _record_export(self, node: Any, doc: Optional[str]) -> List[str]:
        is_default = any(child.type == "default" for child in node.children)
        line = _start(node)
        declaration = node.child_by_field_name("declaration")
        source_node = node.child_by_field_name("source")

        if declaration is not None:
            names = self._visit(declaration, doc, exported=True, span=node)
            for name in names:
                self.exports.append(ExportRecord(name, is_default, line))
            return names

        clause = next((c for c in node.named_children if c.type == "export_clause"), None)
        if clause is not None:
            names: List[str] = []
            for spec in clause.named_children:
                if spec.type != "export_specifier":
                    continue
                original = _text(spec.child_by_field_name("name"))
                alias = spec.child_by_field_name("alias")
                self.exports.append(ExportRecord(_text(alias) if alias else original, False, line))
                names.append(original)
            if source_node is not None:
                self.imports.append(ImportRecord(
                    source=_text(source_node).strip("'\"`"), imported_names=tuple(names),
                    line=line, text=_text(node),
                ))
            return []

        if source_node is not None:
            # export * from './module'
            self.imports.append(ImportRecord(
                source=_text(source_node).strip("'\"`"), line=line, text=_text(node),
            ))
            return []

        value = node.child_by_field_name("value")
        if value is not None and value.type == "identifier":
            self.exports.append(ExportRecord(_text(value), True, line))
        elif value is not None:
            name_node = value.child_by_field_name("name")
            if name_node is not None and value.type in _FUNCTION_VALUES:
                self._add_function(value, _text(name_node), doc, True, node)
                self.exports.append(ExportRecord(_text(name_node), True, line))
            else:
                self.exports.append(ExportRecord("default", True, line))
        return []

    # ── Declarations ─────────────────────────────────────────────

    def _signature_dependencies(self, node: Any, name: str, extra: str = "") -> Tuple[str, ...]:
        params = node.child_by_field_name("parameters")
        return_type = node.child_by_field_name("return_type")
        return type_references(
            " ".join((extra, _text(params), _text(return_type))), exclude=(name,)
        )

    def _add_function(self, node: Any, name: str, doc: Optional[str], exported: bool,
                      span: Any, annotation: str = "") -> None:
        body = _field(node, "body")
        if body is None:
            body = node
        is_component = bool(name) and name[0].isupper() and _contains_jsx(body)
        self.entities.append(SourceEntity(
            kind=EntityKind.UI_COMPONENT if is_component else EntityKind.FUNCTION,
            name=name,
            start_line=_start(span),
            end_line=_end(span),
            dependencies=self._signature_dependencies(node, name, annotation),
            documentation=doc,
            is_exported=exported,
        ))

    def _add_class(self, node: Any, name: str, doc: Optional[str], exported: bool,
                   span: Any) -> None:
        bases: List[str] = []
        implements: List[str] = []
        for child in node.children:
            if child.type != "class_heritage":
                continue
            for part in child.named_children:
                if part.type == "extends_clause":
                    value = _field(part, "value")
                    if value is None and part.named_children:
                        value = part.named_children[0]
                    if value is not None:
                        bases.append(_strip_generics(_text(value)))
                elif part.type == "implements_clause":
                    implements.extend(_strip_generics(_text(t)) for t in part.named_children)
                else:
                    bases.append(_strip_generics(_text(part)))

        is_component = any(b.split(".")[-1] in _UI_BASE_CLASSES for b in bases)
        members: List[ChildEntity] = []
        methods: List[SourceEntity] = []
        body = node.child_by_field_name("body")
        previous_comment = None
        for member in (body.named_children if body is not None else []):
            if member.type == "comment":
                previous_comment = member
                continue
            member_doc = self._doc_for(member, previous_comment)
            previous_comment = None
            name_node = _field(member, "name", "property")
            if name_node is None:
                continue
            member_name = _text(name_node)
            value = member.child_by_field_name("value")
            is_method = member.type in _METHOD_NODES
            if is_method or (value is not None and value.type in _FUNCTION_VALUES):
                target = member if is_method else value
                members.append(ChildEntity(member_name, "method", line=_start(member)))
                methods.append(SourceEntity(
                    kind=EntityKind.METHOD,
                    name=member_name,
                    start_line=_start(member),
                    end_line=_end(member),
                    parent_name=name,
                    dependencies=self._signature_dependencies(target, member_name),
                    documentation=member_doc,
                ))
            else:
                annotation = member.child_by_field_name("type")
                members.append(ChildEntity(
                    member_name, "property",
                    type=_text(annotation).lstrip(":").strip() or "unknown",
                    line=_start(member),
                ))

        self.entities.append(SourceEntity(
            kind=EntityKind.UI_COMPONENT if is_component else EntityKind.CLASS,
            name=name,
            start_line=_start(span),
            end_line=_end(span),
            dependencies=tuple(dict.fromkeys(bases + implements)),
            documentation=doc,
            is_exported=exported,
            child_entities=tuple(members),
        ))
        self.entities.extend(methods)

    def _add_interface(self, node: Any, doc: Optional[str], exported: bool, span: Any) -> str:
        name = _text(node.child_by_field_name("name"))
        dependencies: List[str] = []
        for child in node.named_children:
            if child.type in ("extends_type_clause", "extends_clause"):
                dependencies.extend(_strip_generics(_text(t)) for t in child.named_children)
        body = node.child_by_field_name("body")
        members = parse_members(_text(body), _start(body)) if body is not None else ()
        self.entities.append(SourceEntity(
            kind=EntityKind.INTERFACE,
            name=name,
            start_line=_start(span),
            end_line=_end(span),
            dependencies=tuple(d for d in dependencies if d),
            documentation=doc,
            is_exported=exported,
            child_entities=members,
        ))
        return name

    def _add_type_alias(self, node: Any, doc: Optional[str], exported: bool, span: Any) -> str:
        name = _text(node.child_by_field_name("name"))
        value = node.child_by_field_name("value")
        members: Tuple[ChildEntity, ...] = ()
        if value is not None and value.type == "object_type":
            members = parse_members(_text(value), _start(value))
        self.entities.append(SourceEntity(
            kind=EntityKind.TYPE_ALIAS,
            name=name,
            start_line=_start(span),
            end_line=_end(span),
            dependencies=type_references(_text(value), exclude=(name,)),
            documentation=doc,
            is_exported=exported,
            child_entities=members,
        ))
        return name

    def _add_variables(self, node: Any, doc: Optional[str], exported: bool,
                       span: Any) -> List[str]:
        names: List[str] = []
        for declarator in node.named_children:
            if declarator.type != "variable_declarator":
                continue
            name_node = declarator.child_by_field_name("name")
            if name_node is None or name_node.type != "identifier":
                continue
            name = _text(name_node)
            value = declarator.child_by_field_name("value")
            annotation = _text(declarator.child_by_field_name("type"))
            names.append(name)
            if value is not None and value.type in _FUNCTION_VALUES:
                self._add_function(value, name, doc, exported, span, annotation)
            elif value is not None and value.type == "class":
                self._add_class(value, name, doc, exported, span)
            elif (value is not None and value.type == "call_expression"
                    and name[0].isupper() and _contains_jsx(value)):
                # React.memo(...) / forwardRef(...) wrappers
                self._add_function(value, name, doc, exported, span, annotation)
            else:
                self.entities.append(SourceEntity(
                    kind=EntityKind.VARIABLE,
                    name=name,
                    start_line=_start(span),
                    end_line=_end(span),
                    dependencies=type_references(annotation, exclude=(name,)),
                    documentation=doc,
                    is_exported=exported,
                ))
        return names


# =============================================================================
# Regex Structural Parser (Fallback)
# =============================================================================

_TOP_LEVEL_DECLARATIONS: List[Tuple[str, "re.Pattern"]] = [
    (EntityKind.CLASS, re.compile(
        rf"^\s*(?P<export>export\s+)?(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?"
        rf"class\s+(?P<name>{_IDENTIFIER})")),
    (EntityKind.INTERFACE, re.compile(
        rf"^\s*(?P<export>export\s+)?(?:declare\s+)?interface\s+(?P<name>{_IDENTIFIER})")),
    (EntityKind.TYPE_ALIAS, re.compile(
        rf"^\s*(?P<export>export\s+)?(?:declare\s+)?type\s+(?P<name>{_IDENTIFIER})\s*(?:<[^=]*>)?\s*=")),
    (EntityKind.TYPE_ALIAS, re.compile(
        rf"^\s*(?P<export>export\s+)?(?:declare\s+)?(?:const\s+)?enum\s+(?P<name>{_IDENTIFIER})")),
    (EntityKind.FUNCTION, re.compile(
        rf"^\s*(?P<export>export\s+)?(?:default\s+)?(?:declare\s+)?(?:async\s+)?"
        rf"function\s*\*?\s*(?P<name>{_IDENTIFIER})")),
    (EntityKind.VARIABLE, re.compile(
        rf"^\s*(?P<export>export\s+)?(?:declare\s+)?(?:const|let|var)\s+(?P<name>{_IDENTIFIER})\s*(?::[^=]+)?=(?!=)")),
]

_CLASS_MEMBER = re.compile(
    rf"^\s*(?:@\w+(?:\([^)]*\))?\s*)?"
    rf"(?:(?:public|private|protected|static|async|override|abstract|readonly|get|set)\s+)*"
    rf"(?P<name>#?{_IDENTIFIER})\s*(?:<[^>(]*>)?\s*"
    rf"(?:\(|=\s*(?:async\s*)?(?:\([^)]*\)|{_IDENTIFIER})\s*(?::[^=]+)?=>)"
)
_NOT_METHODS = frozenset({
    "if", "for", "while", "switch", "catch", "return", "function", "new",
    "super", "await", "typeof", "else", "do", "try",
})

_FUNCTION_VALUE = re.compile(
    rf"^\s*(?:async\s*)?(?:<[^>]*>\s*)?(?:\([^)]*\)|{_IDENTIFIER})\s*(?::\s*[^=]+?)?\s*=>"
    rf"|^\s*(?:async\s+)?function\b"
    rf"|^\s*(?:React\.)?(?:memo|forwardRef)\s*\(",
    re.S,
)
_CLASS_VALUE = re.compile(r"^\s*class\b")
_SIGNATURE = re.compile(r"(?:.*?\))\s*(?::\s*[^{=]+?)?\s*(?:=>|\{)", re.S)
_EXTENDS = re.compile(rf"\bextends\s+(?P<base>{_IDENTIFIER}(?:\.{_IDENTIFIER})*)")
_IMPLEMENTS = re.compile(r"\bimplements\s+(?P<names>[^{]+)")
_INTERFACE_EXTENDS = re.compile(r"\bextends\s+(?P<names>[^{]+)")
_ENUM_HEADER = re.compile(r"\benum\s+")


@dataclasses.dataclass
class _OpenEntity:
    """An entity whose end line is not known yet."""
    kind: str
    name: str
    start: int
    open_depth: int
    exported: bool
    parent: Optional[str] = None
    seen_brace: bool = False
    open_parens: int = 0
    seen_paren: bool = False


class RegexStructuralParser(StructuralParser):
    """
    Best-effort scanner for curly-brace sources.

    Recognizes class, interface, type, enum, function, and variable
    declarations by keyword-prefixed regular expressions at the top
    level, and methods at class-body depth.  Entity boundaries follow
    brace depth; a declaration that never opens a body ends at its
    terminating ``;`` / ``}`` / ``)`` line once its parentheses are
    balanced again (so a parenthesised JSX value spans to its closing
    ``);``), or where the next top-level declaration begins.
    """

    name = "regex"

    def supports(self, file_path: str) -> bool:
        return True

    def parse(self, file_path: str, text: str) -> Tuple[List[SourceEntity], DependencyInfo]:
        deps = scan_dependencies(text)
        exported_names = set(deps.exported_names())
        raw_lines = text.splitlines()
        masked_lines = mask_source(text).splitlines()

        finished: List[Tuple[_OpenEntity, int]] = []
        stack: List[_OpenEntity] = []
        depth = 0
        parens = 0

        def close(entity: _OpenEntity, end: int) -> None:
            finished.append((entity, max(end, entity.start)))

        def previous_code_line(line_no: int) -> int:
            while line_no > 1 and not masked_lines[line_no - 1].strip():
                line_no -= 1
            return line_no

        for idx, code in enumerate(masked_lines):
            line_no = idx + 1
            stripped = code.strip()

            if not stack or (stack[-1].kind != EntityKind.CLASS or depth != stack[-1].open_depth + 1):
                match = self._match_top_level(code) if stripped else None
                # A body-less declaration ends where the next one starts.
                if (match and stack and not stack[-1].seen_brace and depth == stack[-1].open_depth
                        and parens <= stack[-1].open_parens):
                    close(stack.pop(), previous_code_line(line_no - 1))
                if match and not stack:
                    kind, m = match
                    stack.append(_OpenEntity(
                        kind=kind, name=m.group("name"), start=line_no, open_depth=depth,
                        exported=bool(m.group("export")), open_parens=parens,
                    ))
            else:
                m = _CLASS_MEMBER.match(code)
                if m and m.group("name") not in _NOT_METHODS:
                    stack.append(_OpenEntity(
                        kind=EntityKind.METHOD, name=m.group("name").lstrip("#"),
                        start=line_no, open_depth=depth, exported=False,
                        parent=stack[-1].name, open_parens=parens,
                    ))

            depth += code.count("{") - code.count("}")
            parens += code.count("(") - code.count(")")
            if stack and depth > stack[-1].open_depth:
                stack[-1].seen_brace = True
            if stack and parens > stack[-1].open_parens:
                stack[-1].seen_paren = True

            while stack:
                top = stack[-1]
                if top.seen_brace and depth <= top.open_depth:
                    close(stack.pop(), line_no)
                elif not top.seen_brace and depth < top.open_depth:
                    close(stack.pop(), previous_code_line(line_no - 1))
                elif (not top.seen_brace and depth == top.open_depth and line_no >= top.start
                        and parens <= top.open_parens
                        and (stripped.endswith((";", "}")) or stripped in (")", "))")
                             or (top.seen_paren and stripped.endswith(")")))):
                    close(stack.pop(), line_no)
                else:
                    break

        last_line = previous_code_line(len(masked_lines)) if masked_lines else 1
        while stack:
            close(stack.pop(), last_line)

        finished.sort(key=lambda item: (item[0].start, item[0].parent is not None))
        entities = [
            self._build_entity(entity, end, raw_lines, masked_lines, exported_names)
            for entity, end in finished
        ]
        return entities, deps

    @staticmethod
    def _match_top_level(code: str) -> Optional[Tuple[str, "re.Match"]]:
        for kind, pattern in _TOP_LEVEL_DECLARATIONS:
            m = pattern.match(code)
            if m:
                return kind, m
        return None

    @staticmethod
    def _leading_comment(raw_lines: List[str], start: int) -> Optional[str]:
        collected: List[str] = []
        idx = start - 2
        while idx >= 0:
            line = raw_lines[idx].strip()
            if not line.startswith(("//", "/*", "*")):
                break
            collected.insert(0, line)
            idx -= 1
        return clean_comment("\n".join(collected)) if collected else None

    def _build_entity(self, entity: _OpenEntity, end: int, raw_lines: List[str],
                      masked_lines: List[str], exported_names: set) -> SourceEntity:
        body = "\n".join(masked_lines[entity.start - 1:end])
        header = body.split("{", 1)[0]
        kind = entity.kind
        dependencies: Tuple[str, ...] = ()
        members: Tuple[ChildEntity, ...] = ()

        if kind == EntityKind.VARIABLE:
            value = re.split(r"(?<![=!<>])=(?![=>])", body, maxsplit=1)[-1]
            if _FUNCTION_VALUE.match(value):
                kind = EntityKind.FUNCTION
            elif _CLASS_VALUE.match(value):
                kind = EntityKind.CLASS

        if kind in (EntityKind.FUNCTION, EntityKind.METHOD):
            signature = _SIGNATURE.match(body)
            dependencies = type_references(
                signature.group(0) if signature else header, exclude=(entity.name,)
            )
            if (kind == EntityKind.FUNCTION and entity.name[:1].isupper()
                    and _JSX_RETURN.search(body)):
                kind = EntityKind.UI_COMPONENT
        elif kind == EntityKind.CLASS:
            bases = [m.group("base") for m in _EXTENDS.finditer(header)][:1]
            implements = _IMPLEMENTS.search(header)
            if implements:
                bases.extend(_strip_generics(n) for n in implements.group("names").split(","))
            dependencies = tuple(dict.fromkeys(b for b in bases if b))
            if any(b.split(".")[-1] in _UI_BASE_CLASSES for b in dependencies):
                kind = EntityKind.UI_COMPONENT
        elif kind == EntityKind.INTERFACE:
            extends = _INTERFACE_EXTENDS.search(header)
            if extends:
                dependencies = tuple(
                    n for n in (_strip_generics(p) for p in extends.group("names").split(",")) if n
                )
            members = self._members(entity, end, raw_lines)
        elif kind == EntityKind.TYPE_ALIAS and _ENUM_HEADER.search(header):
            # Enum members are values, not type references.
            pass
        elif kind == EntityKind.TYPE_ALIAS:
            value = body.split("=", 1)[-1]
            dependencies = type_references(value, exclude=(entity.name,))
            if value.strip().startswith("{"):
                members = self._members(entity, end, raw_lines)
        elif kind == EntityKind.VARIABLE:
            annotation = re.match(rf"[^:=]*:\s*([^=]+)=", body)
            if annotation:
                dependencies = type_references(annotation.group(1), exclude=(entity.name,))

        return SourceEntity(
            kind=kind,
            name=entity.name,
            start_line=entity.start,
            end_line=end,
            parent_name=entity.parent,
            dependencies=dependencies,
            documentation=self._leading_comment(raw_lines, entity.start),
            is_exported=entity.parent is None and (entity.exported or entity.name in exported_names),
            child_entities=members,
        )

    @staticmethod
    def _members(entity: _OpenEntity, end: int, raw_lines: List[str]) -> Tuple[ChildEntity, ...]:
        text = "\n".join(raw_lines[entity.start - 1:end])
        brace = text.find("{")
        if brace < 0:
            return ()
        first_line = entity.start + text.count("\n", 0, brace)
        return parse_members(text[brace:], first_line)


# -- Import / export table ----------------------------------------------------

_IMPORT_FROM = re.compile(
    r"^[ \t]*import\s+(?:type\s+)?(?P<clause>[^;'\"`]*?)\s*\bfrom\s*(?P<q>['\"])(?P<source>[^'\"]+)(?P=q)[ \t]*;?",
    re.M,
)
_IMPORT_BARE = re.compile(r"^[ \t]*import\s*(?P<q>['\"])(?P<source>[^'\"]+)(?P=q)[ \t]*;?", re.M)
_REQUIRE = re.compile(
    rf"^[ \t]*(?:const|let|var)\s+(?P<clause>\{{[^}}]*\}}|{_IDENTIFIER})\s*=\s*"
    rf"require\(\s*(?P<q>['\"])(?P<source>[^'\"]+)(?P=q)\s*\)[ \t]*;?",
    re.M,
)
_EXPORT_DECLARATION = re.compile(
    rf"^[ \t]*export\s+(?P<default>default\s+)?(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?"
    rf"(?:const|let|var|function\s*\*?|class|interface|type|enum)\s+(?P<name>{_IDENTIFIER})",
    re.M,
)
_EXPORT_DEFAULT_NAME = re.compile(rf"^[ \t]*export\s+default\s+(?P<name>{_IDENTIFIER})\s*;?[ \t]*$", re.M)
_EXPORT_DEFAULT_ANONYMOUS = re.compile(
    r"^[ \t]*export\s+default\s+(?:async\s+)?(?:function\s*\*?\s*\(|class\s*\{|\(|\{|\[)", re.M,
)
_EXPORT_LIST = re.compile(
    r"^[ \t]*export\s+(?:type\s+)?\{(?P<names>[^}]*)\}(?:\s*from\s*(?P<q>['\"])(?P<source>[^'\"]+)(?P=q))?",
    re.M,
)
_EXPORT_ALL = re.compile(
    rf"^[ \t]*export\s+\*\s+(?:as\s+(?P<alias>{_IDENTIFIER})\s+)?from\s*(?P<q>['\"])(?P<source>[^'\"]+)(?P=q)",
    re.M,
)
_MODULE_EXPORTS = re.compile(rf"^[ \t]*module\.exports\s*=\s*(?P<name>{_IDENTIFIER})", re.M)
_DECLARATION_KEYWORDS = frozenset({"function", "class", "async", "const", "let", "var", "interface", "type", "enum"})


def _parse_import_clause(clause: str) -> Tuple[Tuple[str, ...], bool]:
    names: List[str] = []
    namespace = re.search(rf"\*\s+as\s+({_IDENTIFIER})", clause)
    braces = re.search(r"\{([^}]*)\}", clause)
    head = re.sub(rf"\{{[^}}]*\}}|\*\s+as\s+{_IDENTIFIER}", "", clause).strip().strip(",").strip()
    is_default = bool(re.fullmatch(_IDENTIFIER, head))
    if is_default:
        names.append(head)
    if namespace:
        names.append(namespace.group(1))
    if braces:
        for part in braces.group(1).split(","):
            part = re.sub(r"^\s*type\s+", "", part).strip()
            name = re.split(r"\s+as\s+", part)[0].strip() if part else ""
            if name:
                names.append(name)
    return tuple(names), is_default


def _line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1


def scan_dependencies(text: str) -> DependencyInfo:
    """Build the import/export table of *text* with regular expressions."""
    code = mask_source(text, strings=False)
    imports: List[ImportRecord] = []
    exports: List[ExportRecord] = []

    for m in _IMPORT_FROM.finditer(code):
        names, is_default = _parse_import_clause(m.group("clause"))
        imports.append(ImportRecord(
            source=m.group("source"), imported_names=names, is_default=is_default,
            line=_line_of(code, m.start()), text=m.group(0).strip(),
        ))
    for m in _IMPORT_BARE.finditer(code):
        imports.append(ImportRecord(
            source=m.group("source"), line=_line_of(code, m.start()), text=m.group(0).strip(),
        ))
    for m in _REQUIRE.finditer(code):
        names, is_default = _parse_import_clause(m.group("clause"))
        imports.append(ImportRecord(
            source=m.group("source"), imported_names=names, is_default=is_default,
            line=_line_of(code, m.start()), text=m.group(0).strip(),
        ))

    for m in _EXPORT_DECLARATION.finditer(code):
        exports.append(ExportRecord(m.group("name"), bool(m.group("default")), _line_of(code, m.start())))
    for m in _EXPORT_DEFAULT_NAME.finditer(code):
        if m.group("name") not in _DECLARATION_KEYWORDS:
            exports.append(ExportRecord(m.group("name"), True, _line_of(code, m.start())))
    for m in _EXPORT_DEFAULT_ANONYMOUS.finditer(code):
        exports.append(ExportRecord("default", True, _line_of(code, m.start())))
    for m in _EXPORT_LIST.finditer(code):
        line = _line_of(code, m.start())
        originals: List[str] = []
        for part in m.group("names").split(","):
            part = re.sub(r"^\s*type\s+", "", part).strip()
            if not part:
                continue
            pieces = re.split(r"\s+as\s+", part)
            originals.append(pieces[0].strip())
            exported = pieces[-1].strip()
            exports.append(ExportRecord(exported, exported == "default", line))
        if m.group("source"):
            imports.append(ImportRecord(
                source=m.group("source"), imported_names=tuple(originals),
                line=line, text=m.group(0).strip(),
            ))
    for m in _EXPORT_ALL.finditer(code):
        line = _line_of(code, m.start())
        imports.append(ImportRecord(source=m.group("source"), line=line, text=m.group(0).strip()))
        if m.group("alias"):
            exports.append(ExportRecord(m.group("alias"), False, line))
    for m in _MODULE_EXPORTS.finditer(code):
        exports.append(ExportRecord(m.group("name"), True, _line_of(code, m.start())))

    imports.sort(key=lambda r: r.line)
    unique_exports: Dict[str, ExportRecord] = {}
    for record in sorted(exports, key=lambda r: r.line):
        unique_exports.setdefault(record.exported_name, record)
    return DependencyInfo(tuple(imports), tuple(unique_exports.values()))


# =============================================================================
# Extract Entry Point
# =============================================================================

class EntityExtractor:
    """
    Runs a chain of structural parsers, falling back on failure.

    Args:
        parsers: Parsers to try in order.  Defaults to tree-sitter
            followed by the regex scanner.
    """

    def __init__(self, parsers: Optional[Sequence[StructuralParser]] = None):
        self.parsers: List[StructuralParser] = list(
            parsers if parsers is not None else (TreeSitterParser(), RegexStructuralParser())
        )

    def extract(self, file_path: str, text: str) -> Tuple[List[SourceEntity], DependencyInfo]:
        """
        Return ``(entities, deps)`` for one file.  Never raises.

        A file with no recognizable entities yields an empty list; the
        chunker then treats the whole file as one opaque chunk.
        """
        for parser in self.parsers:
            if not parser.supports(file_path):
                continue
            try:
                entities, deps = parser.parse(file_path, text)
            except StructuralParseError as exc:
                logger.warning(f"{parser.name} parser gave up on {file_path}: {exc}; falling back")
                continue
            except Exception as exc:
                logger.warning(
                    f"{parser.name} parser crashed on {file_path} ({type(exc).__name__}: {exc}); "
                    "falling back"
                )
                continue
            logger.debug(f"{parser.name} extracted {len(entities)} entities from {file_path}")
            return _resolve_parents(entities), deps

        logger.warning(f"No parser could read {file_path}; treating it as an opaque file")
        return [], DependencyInfo()


def _resolve_parents(entities: List[SourceEntity]) -> List[SourceEntity]:
    """Drop ``parent_name`` values that do not name another entity of the file."""
    names = {e.name for e in entities}
    return [
        dataclasses.replace(e, parent_name=None)
        if e.parent_name is not None and (e.parent_name not in names or e.parent_name == e.name)
        else e
        for e in entities
    ]


_default_extractor: Optional[EntityExtractor] = None
_default_lock = threading.Lock()


def extract(file_path: str, text: str) -> Tuple[List[SourceEntity], DependencyInfo]:
    """Extract entities with the shared default parser chain."""
    global _default_extractor
    with _default_lock:
        if _default_extractor is None:
            _default_extractor = EntityExtractor()
    return _default_extractor.extract(file_path, text)
