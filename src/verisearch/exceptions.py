"""
Verisearch Exception Hierarchy

Structured exceptions for clear error handling across CLI and API
consumers.  Each exception type maps to a specific failure mode so that
callers can handle errors precisely without parsing message strings.

Usage::

    from verisearch.exceptions import VerisearchError, QueryCancelledError

    try:
        result = client.ask("where is the Widget component?", cancel_event=stop)
    except QueryCancelledError:
        print("Query cancelled.")
    except VerisearchError as exc:
        print(f"Verisearch error: {exc}")
"""


class VerisearchError(Exception):
    """Base exception for all Verisearch errors."""


class ConfigError(VerisearchError, ValueError):
    """Configuration is invalid or incomplete (e.g. missing API key or tier model name).

    Inherits from ``ValueError`` so callers that validate configuration
    with a plain ``except ValueError`` keep working.
    """


class ProviderError(VerisearchError):
    """Model provider failure — API error, timeout, or non-assistant response."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class QueryCancelledError(VerisearchError):
    """The caller's cancellation signal fired while a model tier was in flight."""


class SearchError(VerisearchError):
    """The search request cannot be executed (empty request, missing root)."""


class StructuralParseError(VerisearchError):
    """The structural parser could not produce a usable syntax tree.

    Always recovered inside :func:`verisearch.core.extractor.extract`,
    which falls back to the regex scanner.
    """
