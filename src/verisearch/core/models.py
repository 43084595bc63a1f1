"""
Verisearch Data Models

Plain dataclasses shared by every pipeline stage: extracted entities and
import/export tables, renderable chunks with relationship metadata,
file-level search results with their verification record, and the
request/response/feedback records of the escalation controller.

Extraction records (:class:`SourceEntity`, :class:`DependencyInfo` and
their parts) are frozen.  Chunks and results are built up stage by stage
and stay mutable until the verifier hands out fresh copies.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple


# =============================================================================
# Entity Kinds
# =============================================================================

class EntityKind:
    """String constants for entity and chunk kinds."""

    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    INTERFACE = "interface"
    TYPE_ALIAS = "type-alias"
    VARIABLE = "variable"
    UI_COMPONENT = "ui-component"
    # Chunk-only kinds
    IMPORTS = "imports"
    FILE = "file"

    TYPE_CONTRACTS = frozenset({INTERFACE, TYPE_ALIAS})
    COMPONENT_LIKE = frozenset({FUNCTION, CLASS, UI_COMPONENT})

    # Final ordering of ranked chunks inside one file.
    ORDER = {
        UI_COMPONENT: 1,
        CLASS: 2,
        INTERFACE: 3,
        TYPE_ALIAS: 4,
        FUNCTION: 5,
        VARIABLE: 6,
        METHOD: 7,
        IMPORTS: 8,
    }

    @classmethod
    def order_of(cls, kind: str) -> int:
        return cls.ORDER.get(kind, 9)


# =============================================================================
# Extraction Records
# =============================================================================

@dataclass(frozen=True)
class ChildEntity:
    """A member of an interface, object type, or class."""
    name: str
    kind: str = "property"
    """``property`` or ``method``."""
    type: str = "unknown"
    """Textual type annotation; ``unknown`` when it could not be read."""
    optional: bool = False
    line: int = 0


@dataclass(frozen=True)
class SourceEntity:
    """One structural unit found in a file."""
    kind: str
    name: str
    start_line: int
    end_line: int
    parent_name: Optional[str] = None
    """Owning class, when the entity is a method."""
    dependencies: Tuple[str, ...] = ()
    """Names this entity references: superclass, extended interfaces, referenced types."""
    documentation: Optional[str] = None
    is_exported: bool = False
    child_entities: Tuple[ChildEntity, ...] = ()

    def __post_init__(self):
        if self.start_line > self.end_line:
            raise ValueError(
                f"Entity '{self.name}' ends (line {self.end_line}) "
                f"before it starts (line {self.start_line})"
            )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ImportRecord:
    """One import statement."""
    source: str
    imported_names: Tuple[str, ...] = ()
    is_default: bool = False
    line: int = 0
    text: str = ""
    """Raw statement text, kept so relationship edges can be checked against it."""


@dataclass(frozen=True)
class ExportRecord:
    """One exported binding."""
    exported_name: str
    is_default: bool = False
    line: int = 0


@dataclass(frozen=True)
class DependencyInfo:
    """Per-file import/export table, in source order."""
    imports: Tuple[ImportRecord, ...] = ()
    exports: Tuple[ExportRecord, ...] = ()

    def import_sources(self) -> List[str]:
        return [imp.source for imp in self.imports]

    def exported_names(self) -> List[str]:
        return [exp.exported_name for exp in self.exports]

    def imported_names(self) -> List[str]:
        names: List[str] = []
        for imp in self.imports:
            names.extend(imp.imported_names)
        return names

    def imports_name(self, name: str) -> bool:
        """True when *name* is literally imported by one of this file's statements."""
        return any(
            name in imp.imported_names and name in imp.text
            for imp in self.imports
        )

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# Chunks & Relationship Metadata
# =============================================================================

@dataclass(frozen=True)
class InferredEdge:
    """A relationship guessed from naming convention, never asserted as fact."""
    relation: str
    """``used_by`` or ``related``."""
    target: str
    reason: str


@dataclass
class RelationshipContext:
    """Verified relationship edges of one chunk, plus flagged guesses.

    Every list except :attr:`inferred` holds only names (or, for
    ``imported_by`` / ``exports_to``, file paths) backed by literal text.
    """
    imports: List[str] = field(default_factory=list)
    exports: List[str] = field(default_factory=list)
    imported_by: List[str] = field(default_factory=list)
    exports_to: List[str] = field(default_factory=list)
    related_entities: List[str] = field(default_factory=list)
    used_by_entities: List[str] = field(default_factory=list)
    extends_from: List[str] = field(default_factory=list)
    extended_by: List[str] = field(default_factory=list)
    inferred: List[InferredEdge] = field(default_factory=list)

    def add(self, edge: str, value: str) -> None:
        """Append *value* to the named edge list unless already present."""
        values = getattr(self, edge)
        if value not in values:
            values.append(value)

    def add_inferred(self, relation: str, target: str, reason: str) -> None:
        if not any(e.relation == relation and e.target == target for e in self.inferred):
            self.inferred.append(InferredEdge(relation, target, reason))

    def has_verified_edges(self) -> bool:
        return bool(
            self.imported_by or self.exports_to or self.related_entities
            or self.used_by_entities or self.extends_from or self.extended_by
        )


@dataclass
class TypeDefinition:
    """Members of a type contract and whether it is a props contract."""
    properties: List[ChildEntity] = field(default_factory=list)
    methods: List[ChildEntity] = field(default_factory=list)
    is_contract: bool = False
    """True when the type is a props contract for some UI component."""
    contract_for: Optional[str] = None
    referenced_by: List[str] = field(default_factory=list)


@dataclass
class ChunkMetadata:
    language: str = "text"
    parent_name: Optional[str] = None
    documentation: Optional[str] = None
    is_exported: bool = False
    dependencies: List[str] = field(default_factory=list)
    relationship_context: RelationshipContext = field(default_factory=RelationshipContext)
    type_definition: Optional[TypeDefinition] = None


@dataclass
class CodeChunk:
    """A renderable unit of context: one entity, the import block, or a whole file."""
    content: str
    start_line: int
    end_line: int
    kind: str
    name: str
    file_path: str
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    @property
    def key(self) -> str:
        """Stable identity of the chunk within one request."""
        return f"{self.file_path}:{self.name}:{self.start_line}"

    @property
    def relationships(self) -> RelationshipContext:
        return self.metadata.relationship_context

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# File-Level Results
# =============================================================================

@dataclass
class Verification:
    """Outcome of checking one result against the live file."""
    file_exists: bool = False
    content_matches: bool = False
    entities_verified: bool = False
    types_verified: bool = True
    components_verified: bool = True
    last_modified: Optional[float] = None
    discrepancies: List[str] = field(default_factory=list)


@dataclass
class SearchResult:
    """File-level aggregate of ranked chunks."""
    file_path: str
    content: str
    chunks: List[CodeChunk] = field(default_factory=list)
    relevance_score: float = 0.0
    """Unbounded additive heuristic score."""
    confidence_score: float = 0.0
    """0–1 estimate that the result reflects the real file."""
    match_type: str = "partial"
    verification: Optional[Verification] = None
    display_path: str = ""
    base_confidence: float = 0.0
    """Confidence assessed before verification; the verifier always starts from it."""
    prior_match_type: str = "partial"
    """Classification assessed before verification."""

    def __lt__(self, other):
        return self.confidence_score < other.confidence_score

    @property
    def is_verified(self) -> bool:
        v = self.verification
        return bool(v and v.file_exists and v.content_matches and v.entities_verified)

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# Requests, Responses & Feedback
# =============================================================================

@dataclass
class SearchRequest:
    """An information request plus its optional filters."""
    text: str
    file_type: Optional[str] = None
    directory: Optional[str] = None
    include_dependencies: Optional[bool] = None
    max_results: Optional[int] = None
    tier_hint: Optional[str] = None
    """``fast`` or ``thorough``; ``None`` lets the controller decide."""

    def filters(self) -> List[str]:
        """Filters in ``key:value`` form, as shown in reports and prompts."""
        out: List[str] = []
        if self.file_type:
            out.append(f"file_type:{self.file_type}")
        if self.directory:
            out.append(f"directory:{self.directory}")
        if self.include_dependencies is not None:
            out.append(f"include_dependencies:{str(self.include_dependencies).lower()}")
        if self.max_results:
            out.append(f"max_results:{self.max_results}")
        return out


@dataclass
class AssistantResponse:
    """What a model tier returned; only type, text blocks, and usage are inspected."""
    type: str = "assistant"
    content: List[Dict[str, Any]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""

    @property
    def text(self) -> str:
        return "\n".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )

    @classmethod
    def from_text(cls, text: str, **kwargs) -> "AssistantResponse":
        return cls(content=[{"type": "text", "text": text}], **kwargs)


@dataclass
class QueryFeedback:
    """One escalation attempt, appended to the feedback log."""
    query_id: str
    query_text: str
    fast_model: str = ""
    thorough_model: str = ""
    fast_tier_success: bool = False
    escalated: bool = False
    thorough_tier_success: Optional[bool] = None
    reformulated: bool = False
    duration_fast_ms: int = 0
    duration_thorough_ms: int = 0
    tokens_fast: Dict[str, int] = field(default_factory=lambda: {"input": 0, "output": 0})
    tokens_thorough: Dict[str, int] = field(default_factory=lambda: {"input": 0, "output": 0})
    signals: List[str] = field(default_factory=list)
    timestamp: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class QueryResult:
    """Final outcome of one escalation run."""
    successful: bool
    escalated: bool
    response: str
    model_used: str
    """``fast`` or ``thorough``."""
    model_name: str = ""
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    query_id: str = ""
    reformulated: bool = False
    signals: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FormattedReport:
    """Text report plus the structured data it was rendered from."""
    text: str
    results: List[SearchResult] = field(default_factory=list)
    search_terms: List[str] = field(default_factory=list)
    file_name_candidates: List[str] = field(default_factory=list)
    filters: List[str] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)

    @property
    def has_results(self) -> bool:
        return bool(self.results)

    def __str__(self) -> str:
        return self.text
