"""
Verisearch — verified code search for TypeScript and JavaScript projects.

The ``verisearch`` package finds the code that answers a natural-language
information request, ranks it, and checks every result against the live
filesystem before reporting it.  An escalation controller answers
requests with a fast model tier first and a thorough tier when needed.

Quick start (programmatic API)::

    from verisearch import Verisearch

    client = Verisearch()                                    # reads env vars
    report = client.search("find the Widget component", root="./web")
    answer = client.ask("how is UserForm validated?", root="./web")

Quick start (CLI)::

    verisearch search "find the Widget component" --root ./web
    verisearch ask "how is UserForm validated?" --root ./web

Configuration override::

    from verisearch import Verisearch, VerisearchConfig

    config = VerisearchConfig(llm_provider="openai", openai_api_key="sk-...")
    client = Verisearch(config=config)
"""

__version__ = "1.0.0"

# Primary public API: the Verisearch facade
from verisearch.client import Verisearch

# Configuration
from verisearch.core.config import VerisearchConfig

# Core data types that callers interact with
from verisearch.core.models import (
    CodeChunk,
    DependencyInfo,
    FormattedReport,
    QueryResult,
    SearchRequest,
    SearchResult,
    SourceEntity,
)

# Exception hierarchy
from verisearch.exceptions import (
    ConfigError,
    ProviderError,
    QueryCancelledError,
    SearchError,
    StructuralParseError,
    VerisearchError,
)


def health(config: VerisearchConfig | None = None) -> dict:
    """
    Return a small status dict for agents or REST health checks (no network).

    When *config* is None, uses :meth:`VerisearchConfig.from_env()` for the snapshot.
    An unknown provider reports ``None`` for both model names.
    """
    cfg = config or VerisearchConfig.from_env()
    try:
        fast, thorough = cfg.get_tier_models()
    except KeyError:
        fast = thorough = None
    return {
        "version": __version__,
        "llm_provider": cfg.llm_provider,
        "fast_model": fast,
        "thorough_model": thorough,
        "feedback_enabled": cfg.feedback_enabled,
    }


__all__ = [
    "__version__",
    # Facade
    "Verisearch",
    # Config
    "VerisearchConfig",
    # Data types
    "CodeChunk",
    "DependencyInfo",
    "FormattedReport",
    "QueryResult",
    "SearchRequest",
    "SearchResult",
    "SourceEntity",
    # Exceptions
    "VerisearchError",
    "ConfigError",
    "ProviderError",
    "QueryCancelledError",
    "SearchError",
    "StructuralParseError",
    # Status
    "health",
]
