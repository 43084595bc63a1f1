"""
Tests for the Verisearch client API (verisearch.client.Verisearch).

Covers the public facade: search(), ask(), extract(), health(), async
variants, and config construction.  ask() always runs against an
injected mock model capability, so nothing reaches a provider.
"""

import threading
from unittest.mock import MagicMock

import pytest

from verisearch import ConfigError, QueryCancelledError, SearchError, Verisearch, VerisearchConfig
from verisearch import __version__
from verisearch import health as package_health
from verisearch.core.escalation import InMemoryFeedbackSink, JsonFileFeedbackSink, ModelQuery
from verisearch.core.models import AssistantResponse, EntityKind


ANSWER = """Path: src/components/Widget.tsx

```tsx
export const Widget = ({ title, count }: WidgetProps) => {
  return <div className="widget">{title}</div>;
};
```

Analysis (VERIFIED FACTS ONLY):
- Widget renders the card title inside a div with the widget class.
- Its props are typed by interface WidgetProps { title: string; count?: number }, declared in the same file.
- The module exports Widget by name and as the default export.
"""


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config(tmp_path):
    """VerisearchConfig with test defaults (feedback goes to a temp file)."""
    return VerisearchConfig(
        llm_provider="anthropic",
        anthropic_api_key="test-key",
        feedback_log_path=tmp_path / "feedback.json",
    )


@pytest.fixture
def model_query():
    model = MagicMock(spec=ModelQuery)
    model.query.return_value = AssistantResponse.from_text(ANSWER, input_tokens=5, output_tokens=7)
    return model


@pytest.fixture
def sink():
    return InMemoryFeedbackSink()


@pytest.fixture
def client(config, model_query, sink):
    return Verisearch(config=config, model_query=model_query, feedback_sink=sink)


# =============================================================================
# Construction
# =============================================================================


class TestVerisearchConstruction:
    """Client construction from config and from env."""

    def test_construct_with_explicit_config(self, config):
        client = Verisearch(config=config)
        assert client.config is config
        assert isinstance(client.feedback_sink, JsonFileFeedbackSink)
        assert client.feedback_sink.path == config.feedback_log_path

    def test_construct_from_kwargs_overrides_env(self, monkeypatch):
        monkeypatch.setenv("VERISEARCH_MAX_RESULTS", "7")
        client = Verisearch(llm_provider="openai", feedback_enabled=False)
        assert client.config.llm_provider == "openai"
        assert client.config.max_search_results == 7
        assert client.feedback_sink is None

    def test_validate_on_init_surfaces_missing_key(self):
        config = VerisearchConfig(llm_provider="openai", openai_api_key=None)
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            Verisearch(config=config, validate_on_init=True)

    def test_search_needs_no_key(self, tmp_project):
        config = VerisearchConfig(anthropic_api_key=None, feedback_enabled=False)
        report = Verisearch(config=config).search("find the Widget component", root=tmp_project)
        assert report.has_results


# =============================================================================
# search()
# =============================================================================


class TestSearch:

    def test_search_finds_and_verifies(self, client, tmp_project):
        report = client.search("find the Widget component", root=tmp_project)
        top = report.results[0]
        assert top.display_path == "src/components/Widget.tsx"
        assert top.verification.file_exists
        assert top.match_type == "exact"
        assert "Widget" in [c.name for c in top.chunks]
        assert str(report).startswith("Found ")

    def test_search_filters_are_reported(self, client, tmp_project):
        report = client.search("find the Widget component", root=tmp_project, file_type="tsx")
        assert report.filters == ["file_type:tsx"]
        assert all(r.display_path.endswith(".tsx") for r in report.results)

    def test_search_rejects_empty_text(self, client, tmp_project):
        with pytest.raises(SearchError):
            client.search("  ", root=tmp_project)

    def test_search_rejects_missing_root(self, client, tmp_path):
        with pytest.raises(SearchError):
            client.search("Widget", root=tmp_path / "missing")


# =============================================================================
# ask()
# =============================================================================


class TestAsk:

    def test_fast_tier_answer_with_local_context(self, client, model_query, sink, tmp_project):
        result = client.ask("find the Widget component", root=tmp_project)
        assert result.successful
        assert not result.escalated
        assert result.model_used == "fast"
        assert result.response.startswith("Query processed using claude-haiku-4-5\n\n")

        messages, system, model = model_query.query.call_args[0]
        assert model == "claude-haiku-4-5"
        assert "Path: src/components/Widget.tsx" in messages[0]["content"]
        assert "fast" in system

        [record] = sink.records()
        assert record["fast_tier_success"] is True
        assert record["query_text"] == "find the Widget component"

    def test_filters_reach_the_prompt(self, client, model_query, tmp_project):
        client.ask("find the Widget component", root=tmp_project, directory="components")
        messages = model_query.query.call_args[0][0]
        assert "<search_filters>\ndirectory:components\n</search_filters>" in messages[0]["content"]

    def test_tiers_receive_codebase_tools(self, client, model_query, tmp_project):
        client.ask("find the Widget component", root=tmp_project)
        tools = model_query.query.call_args.kwargs["tools"]
        assert [t.name for t in tools] == ["search_code", "grep", "glob"]
        listing = tools[2].run({"pattern": "*.tsx"})
        assert "src/components/Widget.tsx" in listing

    def test_tier_hint_goes_straight_to_thorough(self, client, model_query, tmp_project):
        result = client.ask("find the Widget component", root=tmp_project, tier_hint="thorough")
        assert result.escalated
        assert result.model_name == "claude-sonnet-4-5"
        assert model_query.query.call_count == 1

    def test_cancelled_before_first_call(self, client, model_query, tmp_project):
        stop = threading.Event()
        stop.set()
        with pytest.raises(QueryCancelledError):
            client.ask("find the Widget component", root=tmp_project, cancel_event=stop)
        model_query.query.assert_not_called()

    def test_empty_tier_name_fails_before_search(self, model_query, tmp_path):
        config = VerisearchConfig(anthropic_api_key="k", anthropic_thorough_model="",
                                  feedback_enabled=False)
        client = Verisearch(config=config, model_query=model_query)
        with pytest.raises(ConfigError):
            client.ask("Widget", root=tmp_path / "missing")
        model_query.query.assert_not_called()

    def test_model_query_built_lazily_from_config(self, monkeypatch, tmp_project):
        built = MagicMock(spec=ModelQuery)
        built.query.return_value = AssistantResponse.from_text(ANSWER)
        factory = MagicMock(return_value=built)
        monkeypatch.setattr("verisearch.client.create_model_query", factory)
        config = VerisearchConfig(anthropic_api_key="k", feedback_enabled=False)
        client = Verisearch(config=config)
        client.ask("find the Widget component", root=tmp_project)
        client.ask("find the Widget component", root=tmp_project)
        factory.assert_called_once_with(config)


# =============================================================================
# extract()
# =============================================================================


class TestExtract:

    def test_extract_entities_and_dependencies(self, client, tmp_project):
        entities, deps = client.extract(tmp_project / "src" / "components" / "Widget.tsx")
        by_name = {e.name: e for e in entities}
        assert by_name["WidgetProps"].kind == EntityKind.INTERFACE
        assert "Widget" in by_name
        assert "./format" in deps.import_sources()

    def test_extract_missing_file(self, client, tmp_path):
        with pytest.raises(SearchError, match="Cannot read"):
            client.extract(tmp_path / "nope.ts")


# =============================================================================
# Async variants
# =============================================================================


class TestAsyncApi:
    """Async methods: asearch, aask, aextract."""

    @pytest.mark.asyncio
    async def test_asearch_returns_same_as_search(self, client, tmp_project):
        sync_report = client.search("find the Widget component", root=tmp_project)
        async_report = await client.asearch("find the Widget component", root=tmp_project)
        assert async_report.text == sync_report.text

    @pytest.mark.asyncio
    async def test_asearch_raises_same_errors(self, client, tmp_path):
        with pytest.raises(SearchError):
            await client.asearch("Widget", root=tmp_path / "missing")

    @pytest.mark.asyncio
    async def test_aask(self, client, tmp_project):
        result = await client.aask("find the Widget component", root=tmp_project)
        assert result.successful and result.model_used == "fast"

    @pytest.mark.asyncio
    async def test_aextract(self, client, tmp_project):
        entities, _ = await client.aextract(tmp_project / "src" / "components" / "format.ts")
        assert "formatCount" in [e.name for e in entities]


# =============================================================================
# health()
# =============================================================================


class TestHealth:

    def test_client_health(self, client):
        status = client.health()
        assert status["llm_provider"] == "anthropic"
        assert status["fast_model"] == "claude-haiku-4-5"
        assert status["thorough_model"] == "claude-sonnet-4-5"
        assert status["feedback_enabled"] is True

    def test_package_health(self, config):
        status = package_health(config)
        assert status["version"] == __version__
        assert status["feedback_enabled"] is True

    def test_unknown_provider_reports_no_models(self):
        config = VerisearchConfig(llm_provider="nonexistent", feedback_enabled=False)
        status = Verisearch(config=config).health()
        assert status["llm_provider"] == "nonexistent"
        assert status["fast_model"] is None
        assert status["thorough_model"] is None

    def test_package_health_unknown_provider(self):
        status = package_health(VerisearchConfig(llm_provider="nonexistent"))
        assert status["fast_model"] is None and status["thorough_model"] is None
