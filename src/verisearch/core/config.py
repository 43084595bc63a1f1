"""
Verisearch Configuration Module

Centralized configuration for the retrieval-and-verification pipeline:
model tiers, file discovery, ranking weights, confidence policy, response
quality heuristics, and the feedback log.

The numeric thresholds (0.05 / 0.3 / 0.5 / 0.8) and phrase lists were
tuned by trial against a single sample codebase.  They are the default
policy, not fixed truths, so every one of them is overridable per
instance.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


# =============================================================================
# Instance-Based Configuration
# =============================================================================

@dataclass
class VerisearchConfig:
    """
    Instance-based configuration for Verisearch.

    Each ``VerisearchConfig`` instance is self-contained and is passed
    through the call stack, so two clients with different settings can
    live in the same process.

    Create from environment variables::

        config = VerisearchConfig.from_env()

    Or with explicit values::

        config = VerisearchConfig(llm_provider="openai", openai_api_key="sk-...")
    """

    # ── Model Tiers ───────────────────────────────────────────────
    llm_provider: str = "anthropic"
    anthropic_api_key: Optional[str] = None
    anthropic_fast_model: str = "claude-haiku-4-5"
    anthropic_thorough_model: str = "claude-sonnet-4-5"
    openai_api_key: Optional[str] = None
    openai_fast_model: str = "gpt-4o-mini"
    openai_thorough_model: str = "gpt-4o"
    gemini_api_key: Optional[str] = None
    gemini_fast_model: str = "gemini-2.0-flash"
    gemini_thorough_model: str = "gemini-2.5-pro"
    llm_max_tokens: int = 4096
    llm_temperature: float = 0.0
    model_timeout_seconds: float = 120.0
    cancel_poll_interval: float = 0.1
    """Seconds between checks of the caller's cancellation event while a tier runs."""
    fast_tier_tools: tuple = ("search_code", "grep", "glob")
    thorough_tier_tools: tuple = ("search_code", "grep", "glob", "read_file", "list_dir")
    max_tool_rounds: int = 4
    """Tool-call round trips a tier may make before it must answer in text."""

    # ── File Processing ───────────────────────────────────────────
    target_extensions: frozenset = frozenset((
        ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts",
    ))
    exclude_dirs: frozenset = frozenset((
        "node_modules", ".git", "dist", "build", "coverage", ".next",
        ".turbo", ".cache", "out", ".verisearch", "__pycache__",
    ))
    max_file_size_mb: int = 2
    max_workers: int = 8
    context_lines: int = 0
    """Lines of surrounding source added on each side of an entity chunk (0 = none)."""
    max_candidate_files: int = 50
    common_source_dirs: tuple = (
        "src/components", "src/views", "src/pages", "components", "src",
    )

    # ── Search ────────────────────────────────────────────────────
    max_search_results: int = 10
    max_chunks_per_file: int = 5
    include_dependencies: bool = True
    ranking_weights: dict = field(default_factory=lambda: {
        "exact_name": 100.0,
        "name_contains_query": 50.0,
        "name_contains_term": 20.0,
        "entity_name": 40.0,
        "content_contains_query": 30.0,
        "exact_term": 3.0,
        "partial_term": 1.0,
        "identifier_mention": 6.0,
        "exported": 10.0,
        "documented": 5.0,
        "documentation_term": 3.0,
        "domain_match": 20.0,
        "relationship": 15.0,
        "context_relevance": 25.0,
        "interface_boost": 35.0,
        "props_interface": 40.0,
        "type_definition": 30.0,
        "cross_file": 20.0,
        "moderate_size": 3.0,
        "oversize_penalty": -2.0,
        "imports_penalty": -5.0,
    })
    file_ranking_weights: dict = field(default_factory=lambda: {
        "basename_exact": 50.0,
        "basename_case_insensitive": 40.0,
        "basename_partial": 30.0,
        "directory_match": 20.0,
        "term_in_path": 15.0,
        "component_file": 15.0,
        "chunk_match_scale": 5.0,
        "chunk_match_cap": 50.0,
    })

    # ── Confidence Policy ─────────────────────────────────────────
    confidence_thresholds: dict = field(default_factory=lambda: {
        "exact": 0.8,
        "partial": 0.5,
        "inferred": 0.3,
        "drop_floor": 0.05,
    })
    confidence_adjustments: dict = field(default_factory=lambda: {
        "exists": 0.1,
        "content_match": 0.2,
        "content_mismatch": -0.3,
        "entity_failure": -0.4,
        "missing_file_penalty": 0.7,
        "missing_file_ceiling": 0.05,
        "synthetic_missing": 0.01,
        "existing_floor": 0.1,
        "exact_name_bonus": 0.3,
        "relationship_bonus": 0.2,
    })
    property_match_ratio: float = 0.5
    property_soft_ratio: float = 0.2

    # ── Response Quality ──────────────────────────────────────────
    min_response_length: int = 300
    uncertainty_threshold: int = 3
    recent_modification_hours: float = 24.0

    # ── Feedback ──────────────────────────────────────────────────
    feedback_enabled: bool = True
    feedback_log_path: Path = field(
        default_factory=lambda: Path.home() / ".verisearch" / "query_feedback.json"
    )

    # ── Logging ───────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # ── Factory ───────────────────────────────────────────────────

    @classmethod
    def from_env(cls) -> "VerisearchConfig":
        """Build a config snapshot from current environment variables.

        Tier model names can be overridden per provider, e.g.
        :envvar:`ANTHROPIC_FAST_MODEL` / :envvar:`ANTHROPIC_THOROUGH_MODEL`.
        Setting :envvar:`VERISEARCH_FEEDBACK` to 0/false/no disables the log.
        """
        defaults = cls()
        feedback_raw = os.getenv("VERISEARCH_FEEDBACK", "1").lower()
        feedback_path = os.getenv("VERISEARCH_FEEDBACK_LOG")
        return cls(
            llm_provider=os.getenv("VERISEARCH_LLM_PROVIDER", "anthropic").lower(),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            anthropic_fast_model=os.getenv("ANTHROPIC_FAST_MODEL", defaults.anthropic_fast_model),
            anthropic_thorough_model=os.getenv("ANTHROPIC_THOROUGH_MODEL", defaults.anthropic_thorough_model),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_fast_model=os.getenv("OPENAI_FAST_MODEL", defaults.openai_fast_model),
            openai_thorough_model=os.getenv("OPENAI_THOROUGH_MODEL", defaults.openai_thorough_model),
            gemini_api_key=os.getenv("GEMINI_API_KEY"),
            gemini_fast_model=os.getenv("GEMINI_FAST_MODEL", defaults.gemini_fast_model),
            gemini_thorough_model=os.getenv("GEMINI_THOROUGH_MODEL", defaults.gemini_thorough_model),
            llm_max_tokens=int(os.getenv("VERISEARCH_MAX_TOKENS", str(defaults.llm_max_tokens))),
            max_tool_rounds=int(os.getenv("VERISEARCH_MAX_TOOL_ROUNDS", str(defaults.max_tool_rounds))),
            model_timeout_seconds=float(
                os.getenv("VERISEARCH_MODEL_TIMEOUT", str(defaults.model_timeout_seconds))
            ),
            max_workers=int(os.getenv("VERISEARCH_MAX_WORKERS", str(defaults.max_workers))),
            context_lines=int(os.getenv("VERISEARCH_CONTEXT_LINES", str(defaults.context_lines))),
            max_search_results=int(
                os.getenv("VERISEARCH_MAX_RESULTS", str(defaults.max_search_results))
            ),
            feedback_enabled=feedback_raw not in ("0", "false", "no", "off"),
            feedback_log_path=Path(feedback_path).expanduser() if feedback_path
            else defaults.feedback_log_path,
            log_level=os.getenv("VERISEARCH_LOG_LEVEL", "INFO"),
        )

    # ── Validation & Accessors ────────────────────────────────────

    def validate_tiers(self) -> bool:
        """
        Check that both model tiers are named for the active provider.

        Raises :class:`~verisearch.exceptions.ConfigError` before any
        extraction work begins when either name is empty.
        """
        from verisearch.exceptions import ConfigError

        if self.llm_provider not in _KEY_ENV_NAMES:
            raise ConfigError(
                f"Unknown LLM provider '{self.llm_provider}'. "
                f"Supported: {', '.join(_KEY_ENV_NAMES)}.\n"
                "  Set via: export VERISEARCH_LLM_PROVIDER=anthropic"
            )

        fast, thorough = self.get_tier_models()
        if not fast or not thorough:
            prefix = self.llm_provider.upper()
            raise ConfigError(
                "Both fast and thorough model names must be configured "
                f"(provider '{self.llm_provider}': fast={fast!r}, thorough={thorough!r}).\n"
                f"  Linux/Mac: export {prefix}_FAST_MODEL='...' {prefix}_THOROUGH_MODEL='...'"
            )
        return True

    def validate(self) -> bool:
        """
        Validate tier names and that the active provider has an API key set.

        Raises :class:`~verisearch.exceptions.ConfigError` on failure.
        """
        from verisearch.exceptions import ConfigError

        self.validate_tiers()
        env_name = _KEY_ENV_NAMES[self.llm_provider]
        if not self.get_api_key():
            raise ConfigError(
                f"{env_name} not found (required by provider '{self.llm_provider}').\n"
                f"  Windows (PowerShell): $env:{env_name}='your-key-here'\n"
                f"  Linux/Mac: export {env_name}='your-key-here'"
            )
        return True

    def get_api_key(self) -> Optional[str]:
        """Return the API key for the currently active provider."""
        return {
            "anthropic": self.anthropic_api_key,
            "openai":    self.openai_api_key,
            "gemini":    self.gemini_api_key,
        }[self.llm_provider]

    def get_tier_models(self) -> tuple:
        """Return ``(fast_model, thorough_model)`` for the active provider."""
        return {
            "anthropic": (self.anthropic_fast_model, self.anthropic_thorough_model),
            "openai":    (self.openai_fast_model, self.openai_thorough_model),
            "gemini":    (self.gemini_fast_model, self.gemini_thorough_model),
        }[self.llm_provider]

    def classify_confidence(self, confidence: float) -> str:
        """Map a 0–1 confidence to ``exact`` / ``partial`` / ``inferred`` / ``synthetic``."""
        thresholds = self.confidence_thresholds
        if confidence >= thresholds["exact"]:
            return "exact"
        if confidence >= thresholds["partial"]:
            return "partial"
        if confidence >= thresholds["inferred"]:
            return "inferred"
        return "synthetic"


_KEY_ENV_NAMES = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


# =============================================================================
# Query Domain Vocabulary
# =============================================================================

class DomainTerms:
    """Curated term lists used to classify a query into domain categories.

    A query may belong to several categories at once; membership is a
    plain keyword test against the lowercased query terms.
    """

    UI = frozenset({
        "component", "style", "render", "form", "view", "layout", "jsx", "tsx",
        "css", "button", "input", "select", "display", "ui", "visual", "element",
        "container", "dialog", "modal", "panel", "card", "grid", "flex",
        "responsive", "theme",
    })
    DATA = frozenset({
        "data", "state", "store", "reducer", "context", "provider", "hook", "fetch",
        "request", "model", "schema", "entity", "json", "api", "service", "client",
        "server", "backend", "database", "storage", "cache", "prop", "property",
        "attribute", "field", "record",
    })
    RELATIONSHIP = frozenset({
        "import", "export", "use", "dependency", "relation", "connect", "provider",
        "consumer", "inherit", "extend", "implement", "interface", "compose",
        "mixin", "hoc", "wrapper", "parent", "child", "ancestor", "descendant",
        "reference", "inject", "module",
    })
    UTILITY = frozenset({
        "util", "helper", "format", "convert", "transform", "parse", "validate",
        "check", "calculate", "compute", "generate", "create", "build", "make",
        "factory", "construct", "function", "method", "tool", "routine",
        "procedure", "operation", "task",
    })
    EVENT = frozenset({
        "event", "handler", "listener", "callback", "trigger", "emit", "dispatch",
        "fire", "subscribe", "publish", "observe", "notify", "on", "handle",
        "click", "change", "submit", "input", "keydown", "keyup", "mousedown",
        "mouseup", "drag",
    })
    TESTING = frozenset({
        "test", "spec", "mock", "stub", "spy", "fixture", "assert", "expect",
        "should", "describe", "it", "suite", "case", "unit", "integration",
        "e2e", "end-to-end",
    })
    LIFECYCLE = frozenset({
        "lifecycle", "mount", "unmount", "effect", "useeffect", "componentdidmount",
        "update", "render",
    })
    API = frozenset({"api", "fetch", "http", "request", "endpoint", "axios"})

    CATEGORIES = {
        "ui": UI,
        "data": DATA,
        "relationship": RELATIONSHIP,
        "utility": UTILITY,
        "event": EVENT,
        "testing": TESTING,
    }

    STOP_WORDS = frozenset({
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if", "in",
        "into", "is", "it", "no", "not", "of", "on", "or", "such", "that", "the",
        "their", "then", "there", "these", "they", "this", "to", "was", "will",
        "with", "about", "above", "across", "after", "against", "among", "around",
        "before", "behind", "below", "beneath", "beside", "between", "beyond",
        "during", "except", "from", "inside", "outside", "through", "toward",
        "under", "upon", "within", "without",
    })

    # Words too generic to anchor a reformulated query.
    REFORMULATION_NOISE = frozenset({
        "find", "show", "where", "what", "which", "implement", "implementation",
    })


# =============================================================================
# Response Quality Phrases
# =============================================================================

class QualityPhrases:
    """Phrase lists the response-quality classifier matches (lowercased)."""

    NO_RESULTS = (
        "couldn't find", "could not find", "no results found", "no files found",
        "unable to locate", "no matching files", "no relevant files",
        "cannot locate", "no content found", "no relevant content",
        "no exact match", "no code sections found",
        "no code found matching the query criteria",
    )
    UNCERTAINTY = (
        "probably", "presumably", "might be", "not entirely clear", "appears to be",
        "inferring", "i think", "i believe", "cannot determine", "unable to verify",
        "could not verify", "could not confirm",
    )
    EXPLICIT_UNCERTAINTY = ("low confidence", "unable to verify", "cannot determine")
    LOW_CONFIDENCE = ("low confidence", "not confident", "uncertain", "limited confidence")
    MISSING_IMPLEMENTATION = (
        "implementation details are not available",
        "implementation could not be found",
        "could not find the full implementation",
        "implementation is not shown here",
    )
    MISSING_DETAILS = (
        "no specific implementation details",
        "couldn't find specifics",
        "specific implementation was not found",
        "details of the implementation are not available",
    )
    STRUCTURE_MARKERS = ("path:", "analysis:")


# =============================================================================
# System Prompts for the Model Tiers
# =============================================================================

class Prompts:
    """Standardized prompts for consistent model behavior across tiers."""

    _SHARED_RULES = """Your job is strictly to find and report code that actually exists in the files you are given. Report only what you directly observe. Never present assumptions or theories as facts.

1. Read the request precisely: pick out exact file, class, interface, component and function names. Prefer literal names over abstract concepts.
2. Search by evidence: match exact names first, then case-insensitive variants, then base names without suffixes such as Props, Data, Form or Fields.
3. Never report a file, entity or relationship that is not present in the provided codebase content.
4. Only claim an import, export or props relationship when the import statement or usage is visible.

Format every result as:

Path: <file path>

```<language>
<exact code>
```

Analysis (VERIFIED FACTS ONLY):
- what the code visibly does
- relationships with direct evidence (imports, exports, props)

If nothing matches, reply exactly: No code found matching the query criteria."""

    FAST_TIER_SYSTEM = (
        "You are a fast codebase search tool. Answer from the supplied codebase "
        "content only, concisely, with exact code.\n\n" + _SHARED_RULES
    )

    THOROUGH_TIER_SYSTEM = (
        "You are a thorough codebase search tool. Examine every supplied file, "
        "trace imports and props relationships across files, and include complete "
        "definitions of every interface and component you report.\n\n" + _SHARED_RULES
    )

    TOOL_USE = (
        "\n\nYou can call the provided tools to search and read the codebase. Use them "
        "when the supplied content does not settle the request, and report only code "
        "that a tool result or the supplied content shows."
    )

    USER_MESSAGE = """<user_query>
{query}
</user_query>

<codebase_content>
{codebase}
</codebase_content>"""

    FILTERS_BLOCK = """

<search_filters>
{filters}
</search_filters>

IMPORTANT: Apply the above filters to narrow the search."""
