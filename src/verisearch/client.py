"""
Verisearch Client Facade

Single entry point for programmatic use of Verisearch.  Wraps local
search, escalated answering, and entity extraction behind an
instance-based API with async variants.

Usage::

    from verisearch import Verisearch

    # From environment variables
    client = Verisearch()

    # With explicit configuration
    from verisearch.core.config import VerisearchConfig
    client = Verisearch(config=VerisearchConfig(
        llm_provider="openai",
        openai_api_key="sk-...",
    ))

    # Verified local search
    report = client.search("find the Widget component", root="./web")
    print(report)

    # Fast tier first, thorough tier when the answer looks weak
    answer = client.ask("where is the user form validated?", root="./web")
    print(answer.response)

    # Async variants (for FastAPI / Django async views)
    report = await client.asearch("find the Widget component", root="./web")
"""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Dict, List, Tuple

from verisearch.core.config import VerisearchConfig
from verisearch.core.escalation import (
    EscalationController,
    FeedbackSink,
    JsonFileFeedbackSink,
    ModelQuery,
    create_model_query,
)
from verisearch.core.extractor import EntityExtractor
from verisearch.core.filesystem import Filesystem
from verisearch.core.models import (
    DependencyInfo,
    FormattedReport,
    QueryResult,
    SearchRequest,
    SourceEntity,
)
from verisearch.core.pipeline import SearchPipeline
from verisearch.core.tools import SearchToolbox
from verisearch.exceptions import SearchError

logger = logging.getLogger(__name__)


class Verisearch:
    """
    High-level Verisearch client.

    Each instance carries its own :class:`VerisearchConfig` and never
    touches global state, so several clients with different providers
    can live in one process.

    Args:
        config: Explicit configuration object.  When *None*, a config
            is built from environment variables or keyword overrides.
        validate_on_init: If True, call :meth:`VerisearchConfig.validate`
            in __init__ so a missing API key surfaces immediately instead
            of on first :meth:`ask`.  Local :meth:`search` never needs a key.
        filesystem: Filesystem capability for verification (defaults to
            the local filesystem under each search root).
        feedback_sink: Where escalation feedback goes.  Defaults to the
            JSON log at ``feedback_log_path`` when ``feedback_enabled``.
        model_query: Model-call capability for :meth:`ask`; built from
            the config on first use when omitted.
        **kwargs: Forwarded to :class:`VerisearchConfig` when *config* is
            ``None`` (e.g. ``llm_provider="openai"``).
    """

    def __init__(
        self,
        config: VerisearchConfig | None = None,
        *,
        validate_on_init: bool = False,
        filesystem: Filesystem | None = None,
        feedback_sink: FeedbackSink | None = None,
        model_query: ModelQuery | None = None,
        **kwargs,
    ):
        if config is not None:
            self._config = config
        elif kwargs:
            base = VerisearchConfig.from_env()
            merged = {
                f.name: kwargs.get(f.name, getattr(base, f.name))
                for f in base.__dataclass_fields__.values()
            }
            self._config = VerisearchConfig(**merged)
        else:
            self._config = VerisearchConfig.from_env()

        if validate_on_init:
            self._config.validate()

        self._filesystem = filesystem
        if feedback_sink is None and self._config.feedback_enabled:
            feedback_sink = JsonFileFeedbackSink(self._config.feedback_log_path)
        self._feedback_sink = feedback_sink
        self._model_query = model_query
        self._extractor = EntityExtractor()

    # ── Configuration ─────────────────────────────────────────────

    @property
    def config(self) -> VerisearchConfig:
        """The active configuration for this client."""
        return self._config

    @property
    def feedback_sink(self) -> FeedbackSink | None:
        return self._feedback_sink

    # ── Search ────────────────────────────────────────────────────

    def search(
        self,
        text: str,
        *,
        root: str | Path = ".",
        file_type: str | None = None,
        directory: str | None = None,
        include_dependencies: bool | None = None,
        max_results: int | None = None,
        show_progress: bool = False,
    ) -> FormattedReport:
        """
        Find, rank, and verify code under *root* for an information request.

        Every returned result has been checked against the live file;
        results whose file does not exist are dropped.

        Args:
            text: Natural-language information request.
            root: Directory to search.
            file_type: Restrict to one extension (``tsx``, ``.ts``, ...).
            directory: Restrict to paths containing this directory.
            include_dependencies: Link file import edges (default from config).
            max_results: Maximum file-level results.
            show_progress: Show a tqdm bar while chunking.

        Returns:
            :class:`FormattedReport`; ``str(report)`` is the text document.

        Raises:
            SearchError: If *text* is empty or *root* does not exist.
        """
        request = SearchRequest(
            text=text,
            file_type=file_type,
            directory=directory,
            include_dependencies=include_dependencies,
            max_results=max_results,
        )
        pipeline = SearchPipeline(
            root,
            config=self._config,
            filesystem=self._filesystem,
            extractor=self._extractor,
            show_progress=show_progress,
        )
        return pipeline.run(request)

    # ── Escalated answering ───────────────────────────────────────

    def ask(
        self,
        text: str,
        *,
        root: str | Path = ".",
        file_type: str | None = None,
        directory: str | None = None,
        include_dependencies: bool | None = None,
        max_results: int | None = None,
        tier_hint: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> QueryResult:
        """
        Answer an information request with the fast tier, escalating to
        the thorough tier (and then a reformulated query) when the fast
        answer looks insufficient.

        The local search report for *root* is passed to both tiers as
        codebase context, and each tier may call the codebase tools its
        config tool set names (``fast_tier_tools`` / ``thorough_tier_tools``).

        Raises:
            ConfigError: If the provider, key, or tier model names are invalid.
            QueryCancelledError: If *cancel_event* fires during a tier.
            SearchError: If *text* is empty or *root* does not exist.
        """
        self._config.validate_tiers()
        model_query = self._get_model_query()
        report = self.search(
            text,
            root=root,
            file_type=file_type,
            directory=directory,
            include_dependencies=include_dependencies,
            max_results=max_results,
        )
        toolbox = SearchToolbox(
            root,
            config=self._config,
            filesystem=self._filesystem,
            extractor=self._extractor,
        )
        controller = EscalationController(
            model_query,
            config=self._config,
            feedback_sink=self._feedback_sink,
            toolbox=toolbox,
        )
        return controller.run(
            text,
            codebase=report.text,
            filters=report.filters,
            cancel_event=cancel_event,
            tier_hint=tier_hint,
        )

    # ── Extraction ────────────────────────────────────────────────

    def extract(self, path: str | Path) -> Tuple[List[SourceEntity], DependencyInfo]:
        """
        Entities and the import/export table of one source file.

        Raises:
            SearchError: If *path* is not a readable file.
        """
        file_path = Path(path)
        try:
            text = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise SearchError(f"Cannot read {file_path}: {e}") from e
        return self._extractor.extract(str(file_path), text)

    # ── Async variants ────────────────────────────────────────────
    # These use asyncio.to_thread() to run sync operations off the
    # event loop and raise the same exceptions as the sync methods.

    async def asearch(self, text: str, **kwargs) -> FormattedReport:
        """Async variant of :meth:`search`. Raises same exceptions as sync."""
        return await asyncio.to_thread(self.search, text, **kwargs)

    async def aask(self, text: str, **kwargs) -> QueryResult:
        """Async variant of :meth:`ask`. Raises same exceptions as sync."""
        return await asyncio.to_thread(self.ask, text, **kwargs)

    async def aextract(self, path: str | Path) -> Tuple[List[SourceEntity], DependencyInfo]:
        """Async variant of :meth:`extract`. Raises same exceptions as sync."""
        return await asyncio.to_thread(self.extract, path)

    # ── Health (for agents / status endpoints) ─────────────────────

    def health(self) -> Dict[str, object]:
        """
        Return a small status dict for agents or REST health checks.

        Does not require network access.  An unknown provider reports
        ``None`` for both model names.
        """
        from verisearch import __version__

        try:
            fast, thorough = self._config.get_tier_models()
        except KeyError:
            fast = thorough = None
        return {
            "version": __version__,
            "llm_provider": self._config.llm_provider,
            "fast_model": fast,
            "thorough_model": thorough,
            "feedback_enabled": self._feedback_sink is not None,
        }

    # ── Internal helpers ──────────────────────────────────────────

    def _get_model_query(self) -> ModelQuery:
        if self._model_query is None:
            self._config.validate()
            self._model_query = create_model_query(self._config)
        return self._model_query
