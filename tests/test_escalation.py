"""
Tests for the escalation controller (verisearch.core.escalation).

Model calls go through a MagicMock standing in for the ModelQuery
capability, so no network or SDK is touched (except the adapter tests,
which replace the SDK client with a mock).
"""

import json
import multiprocessing
import threading
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from verisearch.core.config import VerisearchConfig
from verisearch.core.escalation import (
    AnthropicModelQuery,
    EscalationController,
    FeedbackSink,
    InMemoryFeedbackSink,
    JsonFileFeedbackSink,
    ModelQuery,
    OpenAIModelQuery,
    ResponseQualityClassifier,
    create_model_query,
    failure_message,
    reformulate_query,
    summarize_feedback,
)
from verisearch.core.models import AssistantResponse, QueryFeedback
from verisearch.core.tools import SearchToolbox, Tool
from verisearch.exceptions import ConfigError, ProviderError, QueryCancelledError


GOOD_ANSWER = """Path: src/components/Widget.tsx

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

NOT_FOUND_ANSWER = "I couldn't find the Widget component in the provided files."

FAST = "claude-haiku-4-5"
THOROUGH = "claude-sonnet-4-5"


def _reply(text, **kwargs):
    return AssistantResponse.from_text(text, input_tokens=10, output_tokens=20, **kwargs)


def _model(*outcomes):
    """A mock ModelQuery whose successive calls return (or raise) *outcomes*."""
    model = MagicMock(spec=ModelQuery)
    model.query.side_effect = list(outcomes)
    return model


def _controller(model, sink=None, **config_overrides):
    config = VerisearchConfig(**config_overrides)
    return EscalationController(model, config, feedback_sink=sink)


def _record_many(path, worker, count):
    sink = JsonFileFeedbackSink(path)
    for i in range(count):
        sink.record(QueryFeedback(query_id=f"{worker}-{i}", query_text="q"))


# =============================================================================
# Response quality classification
# =============================================================================

class TestResponseQualityClassifier:

    def test_structured_answer_is_sufficient(self):
        verdict = ResponseQualityClassifier().classify(GOOD_ANSWER)
        assert verdict.sufficient
        assert verdict.signals == []

    def test_no_results_phrase(self):
        verdict = ResponseQualityClassifier().classify(NOT_FOUND_ANSWER)
        assert not verdict.sufficient
        assert verdict.has_no_results
        assert "incomplete_structure" in verdict.signals

    def test_canonical_no_match_reply(self):
        verdict = ResponseQualityClassifier().classify("No code found matching the query criteria.")
        assert verdict.has_no_results
        assert not verdict.sufficient

    def test_short_answer_is_incomplete(self):
        verdict = ResponseQualityClassifier().classify("Path: a.ts\nAnalysis: ok")
        assert verdict.signals == ["incomplete_structure"]

    def test_interface_without_definition(self):
        text = GOOD_ANSWER.replace("interface WidgetProps {", "the props interface {")
        assert "interface_without_definition" in ResponseQualityClassifier().classify(text).signals

    def test_uncertainty_phrases_flag_hallucination(self):
        text = GOOD_ANSWER + "\nThis is probably the file. It might be used elsewhere; I think so."
        assert "hallucination" in ResponseQualityClassifier().classify(text).signals

    def test_missing_implementation_with_one_hedge(self):
        text = GOOD_ANSWER + "\nThe implementation could not be found, it is presumably generated."
        signals = ResponseQualityClassifier().classify(text).signals
        assert "missing_implementation" in signals
        assert "hallucination" in signals

    def test_low_confidence(self):
        text = GOOD_ANSWER + "\nI have low confidence in this result."
        assert "low_confidence" in ResponseQualityClassifier().classify(text).signals

    def test_recent_modification(self):
        now = 1_700_000_000.0
        fs = MagicMock()
        fs.mtime.return_value = now - 60
        classifier = ResponseQualityClassifier(filesystem=fs, clock=lambda: now)
        assert classifier.referenced_paths(GOOD_ANSWER) == ["src/components/Widget.tsx"]
        verdict = classifier.classify(GOOD_ANSWER)
        assert verdict.signals == ["recent_modification"]
        fs.mtime.assert_called_with("src/components/Widget.tsx")

    def test_old_modification_is_ignored(self):
        now = 1_700_000_000.0
        fs = MagicMock()
        fs.mtime.return_value = now - 3 * 24 * 3600
        classifier = ResponseQualityClassifier(filesystem=fs, clock=lambda: now)
        assert classifier.classify(GOOD_ANSWER).sufficient


# =============================================================================
# Controller state machine
# =============================================================================

class TestEscalationController:

    def test_fast_answer_accepted(self):
        model = _model(_reply(GOOD_ANSWER))
        result = _controller(model).run("find the Widget component", codebase="...")
        assert result.successful
        assert not result.escalated
        assert result.model_used == "fast"
        assert result.model_name == FAST
        assert result.response.startswith(f"Query processed using {FAST}\n\n")
        assert result.input_tokens == 10 and result.output_tokens == 20
        assert model.query.call_count == 1
        _, system, model_name = model.query.call_args.args
        assert model_name == FAST
        assert "fast codebase search tool" in system

    def test_no_results_escalates_to_thorough(self):
        model = _model(_reply(NOT_FOUND_ANSWER), _reply(GOOD_ANSWER))
        sink = InMemoryFeedbackSink()
        result = _controller(model, sink).run("find the Widget component")
        assert result.successful
        assert result.escalated
        assert result.model_used == "thorough"
        assert result.response.startswith(f"Query escalated from {FAST} to {THOROUGH}")
        assert "no_results" in result.signals
        assert [c.args[2] for c in model.query.call_args_list] == [FAST, THOROUGH]

        [record] = sink.records()
        assert record["escalated"] is True
        assert record["fast_tier_success"] is False
        assert record["thorough_tier_success"] is True
        assert record["tokens_thorough"] == {"input": 10, "output": 20}
        assert record["timestamp"]

    def test_thorough_answer_is_trusted(self):
        model = _model(_reply(NOT_FOUND_ANSWER), _reply(NOT_FOUND_ANSWER))
        result = _controller(model).run("find the Widget component")
        assert result.successful
        assert result.model_used == "thorough"
        assert model.query.call_count == 2

    def test_fast_provider_error_escalates(self):
        model = _model(ProviderError("rate limited", provider="anthropic"), _reply(GOOD_ANSWER))
        sink = InMemoryFeedbackSink()
        result = _controller(model, sink).run("find the Widget component")
        assert result.successful and result.escalated
        assert sink.records()[0]["signals"] == ["provider_error"]

    def test_non_assistant_response_escalates(self):
        bad = AssistantResponse(type="error")
        model = _model(bad, _reply(GOOD_ANSWER))
        result = _controller(model).run("find the Widget component")
        assert result.model_used == "thorough"

    def test_thorough_failure_reformulates(self):
        model = _model(
            _reply(NOT_FOUND_ANSWER),
            ProviderError("overloaded"),
            _reply(GOOD_ANSWER),
        )
        sink = InMemoryFeedbackSink()
        result = _controller(model, sink).run("find the Widget component")
        assert result.successful
        assert result.reformulated
        assert result.response.startswith("Note: The original query did not return results")
        assert 'Reformulated query: "Find all files in the codebase related to Widget."' in result.response
        third_messages = model.query.call_args_list[2].args[0]
        assert "Find all files in the codebase related to Widget." in third_messages[0]["content"]
        assert model.query.call_args_list[2].args[2] == THOROUGH
        assert sink.records()[0]["reformulated"] is True

    def test_everything_fails(self):
        model = _model(ProviderError("down"), ProviderError("down"), ProviderError("down"))
        sink = InMemoryFeedbackSink()
        result = _controller(model, sink).run("find the Widget component")
        assert not result.successful
        assert result.escalated and result.reformulated
        assert result.response == failure_message("find the Widget component")
        record = sink.records()[0]
        assert record["thorough_tier_success"] is False

    def test_reformulated_no_results_is_a_failure(self):
        model = _model(ProviderError("down"), ProviderError("down"), _reply(NOT_FOUND_ANSWER))
        result = _controller(model).run("find the Widget component")
        assert not result.successful

    def test_thorough_hint_skips_fast_tier(self):
        model = _model(_reply(GOOD_ANSWER))
        sink = InMemoryFeedbackSink()
        result = _controller(model, sink).run("find the Widget component", tier_hint="thorough")
        assert result.model_used == "thorough"
        assert model.query.call_count == 1
        assert model.query.call_args.args[2] == THOROUGH
        record = sink.records()[0]
        assert record["signals"] == ["tier_hint"]
        assert record["duration_fast_ms"] == 0

    def test_filters_reach_the_prompt(self):
        model = _model(_reply(GOOD_ANSWER))
        _controller(model).run("find Widget", codebase="CODE", filters=["file_type:tsx"])
        content = model.query.call_args.args[0][0]["content"]
        assert "<user_query>\nfind Widget\n</user_query>" in content
        assert "<codebase_content>\nCODE\n</codebase_content>" in content
        assert "<search_filters>\nfile_type:tsx\n</search_filters>" in content

    def test_cancelled_before_call(self):
        model = _model(_reply(GOOD_ANSWER))
        sink = InMemoryFeedbackSink()
        stop = threading.Event()
        stop.set()
        with pytest.raises(QueryCancelledError):
            _controller(model, sink).run("find Widget", cancel_event=stop)
        model.query.assert_not_called()
        assert sink.records() == []

    def test_cancelled_while_waiting(self):
        stop = threading.Event()

        def slow_query(messages, system, model_name, tools=()):
            stop.set()
            time.sleep(0.5)
            return _reply(GOOD_ANSWER)

        model = MagicMock(spec=ModelQuery)
        model.query.side_effect = slow_query
        with pytest.raises(QueryCancelledError):
            _controller(model, cancel_poll_interval=0.02).run("find Widget", cancel_event=stop)

    def test_timeout_is_a_provider_error(self):
        def query(messages, system, model_name, tools=()):
            if model_name == FAST:
                time.sleep(0.5)
            return _reply(GOOD_ANSWER)

        model = MagicMock(spec=ModelQuery)
        model.query.side_effect = query
        sink = InMemoryFeedbackSink()
        result = _controller(model, sink, model_timeout_seconds=0.1,
                             cancel_poll_interval=0.02).run("find Widget")
        assert result.model_used == "thorough"
        assert "provider_error" in sink.records()[0]["signals"]

    def test_sink_failure_does_not_fail_the_query(self):
        sink = MagicMock(spec=FeedbackSink)
        sink.record.side_effect = RuntimeError("disk full")
        result = _controller(_model(_reply(GOOD_ANSWER)), sink).run("find Widget")
        assert result.successful

    def test_empty_tier_name_is_rejected(self):
        with pytest.raises(ConfigError):
            EscalationController(MagicMock(spec=ModelQuery),
                                 VerisearchConfig(anthropic_thorough_model=""))


# =============================================================================
# Tier tool sets
# =============================================================================

SEARCH_TOOLS = ["search_code", "grep", "glob"]
ALL_TOOLS = ["search_code", "grep", "glob", "read_file", "list_dir"]


class TestTierTools:

    @pytest.fixture
    def toolbox(self, tmp_project):
        return SearchToolbox(tmp_project)

    @staticmethod
    def _tool_names(call):
        return [t.name for t in call.kwargs["tools"]]

    def test_fast_tier_gets_search_tools(self, toolbox):
        model = _model(_reply(GOOD_ANSWER))
        EscalationController(model, VerisearchConfig(), toolbox=toolbox).run("find Widget")
        assert self._tool_names(model.query.call_args) == SEARCH_TOOLS
        assert "call the provided tools" in model.query.call_args.args[1]

    def test_thorough_and_reformulated_tiers_get_full_set(self, toolbox):
        model = _model(_reply(NOT_FOUND_ANSWER), ProviderError("overloaded"), _reply(GOOD_ANSWER))
        controller = EscalationController(model, VerisearchConfig(), toolbox=toolbox)
        result = controller.run("find the Widget component")
        assert result.reformulated
        assert [self._tool_names(c) for c in model.query.call_args_list] == [
            SEARCH_TOOLS, ALL_TOOLS, ALL_TOOLS,
        ]

    def test_tool_sets_follow_config(self, toolbox):
        config = VerisearchConfig(fast_tier_tools=(), thorough_tier_tools=("read_file",))
        model = _model(_reply(NOT_FOUND_ANSWER), _reply(GOOD_ANSWER))
        EscalationController(model, config, toolbox=toolbox).run("find Widget")
        first, second = model.query.call_args_list
        assert first.kwargs["tools"] == []
        assert "call the provided tools" not in first.args[1]
        assert self._tool_names(second) == ["read_file"]

    def test_no_toolbox_means_no_tools(self):
        model = _model(_reply(GOOD_ANSWER))
        _controller(model).run("find Widget")
        assert model.query.call_args.kwargs["tools"] == []

    def test_unknown_tool_name_is_a_config_error(self, toolbox):
        with pytest.raises(ConfigError, match="shell"):
            EscalationController(MagicMock(spec=ModelQuery),
                                 VerisearchConfig(fast_tier_tools=("shell",)), toolbox=toolbox)


# =============================================================================
# Reformulation
# =============================================================================

class TestReformulation:

    @pytest.mark.parametrize("text,expected", [
        ("find UserService usage", "Find all files in the codebase related to UserService."),
        ("where is the thing implemented",
         "Find all files containing these terms: thing, implemented."),
        ("find it", "Find all files in the codebase related to find it."),
    ])
    def test_reformulate_query(self, text, expected):
        assert reformulate_query(text) == expected

    def test_failure_message_names_the_query(self):
        message = failure_message("find TradeFormData")
        assert message.startswith('I couldn\'t find relevant information in the codebase for your query: "find TradeFormData"')
        assert "Suggested Approaches:" in message


# =============================================================================
# Feedback sinks
# =============================================================================

class TestFeedbackSinks:

    def test_json_file_sink_appends(self, tmp_path):
        path = tmp_path / "feedback" / "log.json"
        sink = JsonFileFeedbackSink(path)
        sink.record(QueryFeedback(query_id="a", query_text="one"))
        sink.record(QueryFeedback(query_id="b", query_text="two"))
        data = json.loads(path.read_text(encoding="utf-8"))
        assert [r["query_id"] for r in data] == ["a", "b"]
        assert sink.records() == data

    def test_corrupt_log_is_replaced(self, tmp_path):
        path = tmp_path / "log.json"
        path.write_text("{not json", encoding="utf-8")
        sink = JsonFileFeedbackSink(path)
        assert sink.records() == []
        sink.record(QueryFeedback(query_id="a", query_text="one"))
        assert len(sink.records()) == 1

    def test_concurrent_appends_are_not_lost(self, tmp_path):
        path = tmp_path / "log.json"
        sinks = [JsonFileFeedbackSink(path) for _ in range(4)]
        threads = [
            threading.Thread(target=sinks[i % 4].record,
                             args=(QueryFeedback(query_id=str(i), query_text="q"),))
            for i in range(16)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(JsonFileFeedbackSink(path).records()) == 16

    def test_appends_from_several_processes(self, tmp_path):
        path = tmp_path / "log.json"
        ctx = multiprocessing.get_context("spawn")
        workers = [ctx.Process(target=_record_many, args=(str(path), w, 100)) for w in range(4)]
        for p in workers:
            p.start()
        for p in workers:
            p.join(timeout=120)
        assert [p.exitcode for p in workers] == [0, 0, 0, 0]
        records = JsonFileFeedbackSink(path).records()
        assert len(records) == 400
        assert len({r["query_id"] for r in records}) == 400
        assert not list(tmp_path.glob("*.tmp"))

    def test_failed_write_keeps_the_previous_log(self, tmp_path, monkeypatch):
        path = tmp_path / "log.json"
        sink = JsonFileFeedbackSink(path)
        sink.record(QueryFeedback(query_id="a", query_text="one"))

        def failing_dump(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("verisearch.core.escalation.json.dump", failing_dump)
        sink.record(QueryFeedback(query_id="b", query_text="two"))
        monkeypatch.undo()
        assert [r["query_id"] for r in sink.records()] == ["a"]
        assert not list(tmp_path.glob("*.tmp"))

    def test_summarize_feedback(self):
        records = [
            {"fast_tier_success": True, "escalated": False, "duration_fast_ms": 100},
            {"fast_tier_success": False, "escalated": True, "thorough_tier_success": True,
             "duration_fast_ms": 300, "duration_thorough_ms": 900, "reformulated": False},
        ]
        assert summarize_feedback(records) == {
            "records": 2,
            "fast_tier_success_rate": 0.5,
            "escalation_rate": 0.5,
            "thorough_tier_success_rate": 1.0,
            "reformulations": 0,
            "avg_fast_duration_ms": 200.0,
            "avg_thorough_duration_ms": 900.0,
        }

    def test_summarize_empty(self):
        assert summarize_feedback([]) == {"records": 0}


# =============================================================================
# Model adapters
# =============================================================================

class TestModelAdapters:

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_model_query(VerisearchConfig(llm_provider="nope"))

    def test_anthropic_adapter_maps_response(self):
        pytest.importorskip("anthropic")
        adapter = AnthropicModelQuery(api_key="test-key-not-real")
        adapter.client = MagicMock()
        adapter.client.messages.create.return_value = SimpleNamespace(
            role="assistant",
            content=[SimpleNamespace(type="text", text="hello")],
            usage=SimpleNamespace(input_tokens=3, output_tokens=4),
        )
        response = adapter.query([{"role": "user", "content": "hi"}], "sys", FAST)
        assert response.text == "hello"
        assert (response.input_tokens, response.output_tokens) == (3, 4)
        kwargs = adapter.client.messages.create.call_args.kwargs
        assert kwargs["model"] == FAST and kwargs["system"] == "sys"

    def test_anthropic_adapter_wraps_errors(self):
        pytest.importorskip("anthropic")
        adapter = AnthropicModelQuery(api_key="test-key-not-real")
        adapter.client = MagicMock()
        adapter.client.messages.create.side_effect = RuntimeError("boom")
        with pytest.raises(ProviderError) as excinfo:
            adapter.query([], "sys", FAST)
        assert excinfo.value.provider == "anthropic"

    @staticmethod
    def _read_tool(seen):
        def handler(path):
            seen.append(path)
            return f"contents of {path}"

        return Tool(
            name="read_file",
            description="Read a file",
            parameters={"type": "object", "properties": {"path": {"type": "string"}},
                        "required": ["path"]},
            handler=handler,
        )

    def test_anthropic_adapter_runs_tool_calls(self):
        pytest.importorskip("anthropic")
        seen = []
        adapter = AnthropicModelQuery(api_key="test-key-not-real")
        adapter.client = MagicMock()
        adapter.client.messages.create.side_effect = [
            SimpleNamespace(
                role="assistant", stop_reason="tool_use",
                content=[SimpleNamespace(type="tool_use", id="tu_1", name="read_file",
                                         input={"path": "src/a.ts"})],
                usage=SimpleNamespace(input_tokens=3, output_tokens=4),
            ),
            SimpleNamespace(
                role="assistant", stop_reason="end_turn",
                content=[SimpleNamespace(type="text", text="done")],
                usage=SimpleNamespace(input_tokens=5, output_tokens=6),
            ),
        ]
        response = adapter.query([{"role": "user", "content": "hi"}], "sys", THOROUGH,
                                 tools=[self._read_tool(seen)])
        assert response.text == "done"
        assert (response.input_tokens, response.output_tokens) == (8, 10)
        assert seen == ["src/a.ts"]
        first, second = adapter.client.messages.create.call_args_list
        assert first.kwargs["tools"][0]["name"] == "read_file"
        assert first.kwargs["tools"][0]["input_schema"]["required"] == ["path"]
        assert second.kwargs["messages"][-1]["content"] == [
            {"type": "tool_result", "tool_use_id": "tu_1", "content": "contents of src/a.ts"},
        ]

    def test_anthropic_adapter_stops_offering_tools_after_the_round_limit(self):
        pytest.importorskip("anthropic")
        adapter = AnthropicModelQuery(api_key="test-key-not-real", max_tool_rounds=1)
        adapter.client = MagicMock()
        adapter.client.messages.create.return_value = SimpleNamespace(
            role="assistant", stop_reason="tool_use",
            content=[SimpleNamespace(type="tool_use", id="tu_1", name="read_file",
                                     input={"path": "a.ts"})],
            usage=SimpleNamespace(input_tokens=1, output_tokens=1),
        )
        adapter.query([{"role": "user", "content": "hi"}], "sys", FAST, tools=[self._read_tool([])])
        first, second = adapter.client.messages.create.call_args_list
        assert "tool_choice" not in first.kwargs
        assert second.kwargs["tool_choice"] == {"type": "none"}

    def test_anthropic_adapter_without_tools_sends_none(self):
        pytest.importorskip("anthropic")
        adapter = AnthropicModelQuery(api_key="test-key-not-real")
        adapter.client = MagicMock()
        adapter.client.messages.create.return_value = SimpleNamespace(
            role="assistant", content=[SimpleNamespace(type="text", text="ok")], usage=None,
        )
        adapter.query([{"role": "user", "content": "hi"}], "sys", FAST)
        assert "tools" not in adapter.client.messages.create.call_args.kwargs

    def test_openai_adapter_runs_tool_calls(self):
        pytest.importorskip("openai")
        seen = []
        adapter = OpenAIModelQuery(api_key="test-key-not-real")
        adapter.client = MagicMock()
        call = SimpleNamespace(id="call_1", function=SimpleNamespace(
            name="read_file", arguments='{"path": "src/a.ts"}'))
        adapter.client.chat.completions.create.side_effect = [
            SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content=None, tool_calls=[call]))],
                usage=SimpleNamespace(prompt_tokens=1, completion_tokens=2),
            ),
            SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content="done", tool_calls=None))],
                usage=SimpleNamespace(prompt_tokens=3, completion_tokens=4),
            ),
        ]
        response = adapter.query([{"role": "user", "content": "hi"}], "sys", FAST,
                                 tools=[self._read_tool(seen)])
        assert response.text == "done"
        assert (response.input_tokens, response.output_tokens) == (4, 6)
        assert seen == ["src/a.ts"]
        first, second = adapter.client.chat.completions.create.call_args_list
        assert first.kwargs["tools"][0]["function"]["name"] == "read_file"
        messages = second.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "sys"}
        assert messages[-1] == {"role": "tool", "tool_call_id": "call_1",
                                "content": "contents of src/a.ts"}
