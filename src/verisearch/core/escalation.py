"""
Verisearch Escalation Controller

Two-tier query protocol on top of the local retrieval pipeline:

    FAST ─▶ EVALUATE ─┬─▶ DONE
                      └─▶ THOROUGH ─┬─▶ DONE
                                    └─▶ REFORMULATE ─▶ DONE

- The fast tier's answer is judged by a pluggable
  :class:`ResponseQualityClassifier`.  An insufficient answer, or any
  :class:`~verisearch.exceptions.ProviderError`, escalates.
- The thorough tier is trusted whenever it returns.  Only a transport
  failure there leads to one reformulated, broadened thorough attempt.
- Escalation never goes back to the fast tier within a request.
- Every run ends with one :class:`QueryFeedback` record handed to the
  configured :class:`FeedbackSink`.  Sink failures are logged, never
  raised.

Model calls go through a :class:`ModelQuery` adapter so the rest of the
package never imports a vendor SDK directly.
"""

import concurrent.futures
import json
import logging
import os
import re
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from filelock import FileLock, Timeout

from verisearch.core.config import DomainTerms, Prompts, QualityPhrases, VerisearchConfig
from verisearch.core.filesystem import Filesystem
from verisearch.core.models import AssistantResponse, QueryFeedback, QueryResult
from verisearch.core.tools import SearchToolbox, Tool, run_tool
from verisearch.exceptions import ConfigError, ProviderError, QueryCancelledError

logger = logging.getLogger(__name__)


# =============================================================================
# Response Quality Classification
# =============================================================================

@dataclass
class QualityVerdict:
    """Outcome of judging one model response."""
    sufficient: bool
    signals: List[str] = field(default_factory=list)

    @property
    def has_no_results(self) -> bool:
        return "no_results" in self.signals


_PATH_LINE = re.compile(r"^\s*Path:\s*(?P<path>[^\n]+)", re.M | re.I)
_INTERFACE_DEFINITIONS = (
    re.compile(r"interface [A-Za-z0-9_]+ \{"),
    re.compile(r"type [A-Za-z0-9_]+ ="),
)
_COMPONENT_DEFINITIONS = (
    re.compile(r"const [A-Za-z0-9_]+ = (?:\([^)]*\))? ?=>"),
    re.compile(r"function [A-Za-z0-9_]+\("),
    re.compile(r"class [A-Za-z0-9_]+ extends"),
)


class ResponseQualityClassifier:
    """
    String-matching heuristics that decide whether a fast-tier answer
    is good enough to return.

    Signals (any one makes the answer insufficient):

    - ``no_results``: explicit "couldn't find" style phrasing.
    - ``incomplete_structure``: no ``Path:`` / ``Analysis:`` section, or
      shorter than ``min_response_length``.
    - ``interface_without_definition`` / ``component_without_definition``:
      the answer talks about an interface or component but shows no
      declaration of one.
    - ``hallucination``: enough uncertainty phrases (see :meth:`classify`).
    - ``low_confidence``, ``missing_details``, ``missing_implementation``.
    - ``recent_modification``: a referenced file changed within
      ``recent_modification_hours`` (needs a filesystem).

    Args:
        config: Thresholds.
        filesystem: Used for the recent-modification check; omitted
            means that check is skipped.
        clock: Returns the current epoch time (for tests).
    """

    def __init__(self, config: VerisearchConfig | None = None,
                 filesystem: Filesystem | None = None,
                 clock=time.time):
        self.config = config or VerisearchConfig()
        self.filesystem = filesystem
        self.clock = clock

    @staticmethod
    def _count(lowered: str, phrases: Sequence[str]) -> int:
        return sum(1 for phrase in phrases if phrase in lowered)

    @staticmethod
    def _has_marker(lowered: str, marker: str) -> bool:
        name = re.escape(marker.rstrip(":"))
        return re.search(rf"\b{name}\b[^\n:]*:", lowered) is not None

    def referenced_paths(self, text: str) -> List[str]:
        return [m.group("path").strip().strip("`") for m in _PATH_LINE.finditer(text)]

    def _recently_modified(self, text: str) -> bool:
        if self.filesystem is None:
            return False
        window = self.config.recent_modification_hours * 3600
        now = self.clock()
        for path in self.referenced_paths(text):
            modified = self.filesystem.mtime(path)
            if modified and now - modified < window:
                logger.debug(f"Referenced file {path} was modified recently")
                return True
        return False

    def classify(self, text: str) -> QualityVerdict:
        lowered = text.lower()
        signals: List[str] = []

        if self._count(lowered, QualityPhrases.NO_RESULTS):
            signals.append("no_results")

        structured = all(self._has_marker(lowered, m) for m in QualityPhrases.STRUCTURE_MARKERS)
        if not structured or len(text) < self.config.min_response_length:
            signals.append("incomplete_structure")
        if "interface" in lowered and not any(p.search(text) for p in _INTERFACE_DEFINITIONS):
            signals.append("interface_without_definition")
        if ("component" in lowered or "function" in lowered) and not any(
            p.search(text) for p in _COMPONENT_DEFINITIONS
        ):
            signals.append("component_without_definition")

        uncertainty = self._count(lowered, QualityPhrases.UNCERTAINTY)
        explicit = self._count(lowered, QualityPhrases.EXPLICIT_UNCERTAINTY) > 0
        missing_impl = self._count(lowered, QualityPhrases.MISSING_IMPLEMENTATION) > 0
        threshold = self.config.uncertainty_threshold
        if (uncertainty >= threshold
                or (explicit and uncertainty >= threshold - 1)
                or (missing_impl and uncertainty >= 1)):
            signals.append("hallucination")
        if "confidence" in lowered and self._count(lowered, QualityPhrases.LOW_CONFIDENCE):
            signals.append("low_confidence")
        if self._count(lowered, QualityPhrases.MISSING_DETAILS):
            signals.append("missing_details")
        if missing_impl:
            signals.append("missing_implementation")

        if self._recently_modified(text):
            signals.append("recent_modification")

        return QualityVerdict(sufficient=not signals, signals=signals)


# =============================================================================
# Feedback Sinks
# =============================================================================

class FeedbackSink:
    """Destination for :class:`QueryFeedback` records."""

    def record(self, feedback: QueryFeedback) -> None:
        raise NotImplementedError

    def records(self) -> List[Dict[str, Any]]:
        raise NotImplementedError


class InMemoryFeedbackSink(FeedbackSink):
    """Keeps records in a list.  Used by tests and embedders."""

    def __init__(self):
        self._records: List[QueryFeedback] = []
        self._lock = threading.Lock()

    def record(self, feedback: QueryFeedback) -> None:
        with self._lock:
            self._records.append(feedback)

    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [r.to_dict() for r in self._records]


class JsonFileFeedbackSink(FeedbackSink):
    """
    Append-only JSON array file.

    Each append reads the whole array and writes it back.  The
    read-modify-write runs under a lock file (``<path>.lock``) so writers
    in other processes serialize too, and the new array lands through a
    temp file plus :func:`os.replace`, so readers never see a partial
    file.  Sinks in one process sharing a path also share a thread lock.
    """

    _locks: Dict[str, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, path: str | Path, lock_timeout: float = 30.0):
        self.path = Path(path).expanduser()
        key = str(self.path.resolve())
        with JsonFileFeedbackSink._locks_guard:
            self._lock = JsonFileFeedbackSink._locks.setdefault(key, threading.Lock())
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout

    def _file_lock(self) -> FileLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.lock_path), timeout=self.lock_timeout)

    def _load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Feedback log {self.path} is unreadable, starting a new one: {e}")
            return []
        return data if isinstance(data, list) else []

    def _write(self, records: List[Dict[str, Any]]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp",
                                        dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(records, handle, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def record(self, feedback: QueryFeedback) -> None:
        with self._lock:
            try:
                with self._file_lock():
                    existing = self._load()
                    existing.append(feedback.to_dict())
                    self._write(existing)
            except Timeout:
                logger.warning(f"Timed out waiting for {self.lock_path}, feedback not written")
            except OSError as e:
                logger.warning(f"Could not write feedback record to {self.path}: {e}")

    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            if not self.path.exists():
                return []
            with self._file_lock():
                return self._load()


def summarize_feedback(records: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Aggregate routing-quality numbers over feedback records."""
    total = len(records)
    if not total:
        return {"records": 0}
    fast_ok = sum(1 for r in records if r.get("fast_tier_success"))
    escalated = [r for r in records if r.get("escalated")]
    thorough_ok = sum(1 for r in escalated if r.get("thorough_tier_success"))
    reformulated = sum(1 for r in records if r.get("reformulated"))

    def _avg(key: str, rows: Sequence[Dict[str, Any]]) -> float:
        values = [r.get(key, 0) or 0 for r in rows]
        return round(sum(values) / len(values), 1) if values else 0.0

    return {
        "records": total,
        "fast_tier_success_rate": round(fast_ok / total, 3),
        "escalation_rate": round(len(escalated) / total, 3),
        "thorough_tier_success_rate": round(thorough_ok / len(escalated), 3) if escalated else 0.0,
        "reformulations": reformulated,
        "avg_fast_duration_ms": _avg("duration_fast_ms", records),
        "avg_thorough_duration_ms": _avg("duration_thorough_ms", escalated),
    }


# =============================================================================
# Model Query Adapters
# =============================================================================

class ModelQuery:
    """
    Abstract model-call capability.

    ``query(messages, system, model, tools)`` performs one blocking
    exchange and returns the final :class:`AssistantResponse`.  When
    *tools* are given, the adapter runs each tool the model calls and
    sends the results back, at most ``max_tool_rounds`` times, after
    which the model must answer in text.  Token usage is summed over the
    whole exchange.  Implementations raise :class:`ProviderError` for
    every failure.
    """

    provider = "abstract"
    max_tool_rounds = 4

    def query(self, messages: List[Dict[str, str]], system: str, model: str,
              tools: Sequence[Tool] = ()) -> AssistantResponse:
        raise NotImplementedError


def _json_arguments(raw: str | None) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(raw or "{}")
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


class AnthropicModelQuery(ModelQuery):
    """Anthropic (Claude) adapter, uses the ``anthropic`` SDK."""

    provider = "anthropic"

    def __init__(self, api_key: str, max_tokens: int = 4096, temperature: float = 0.0,
                 timeout: float = 120.0, max_tool_rounds: int = 4):
        try:
            import anthropic  # Lazy import
        except (ImportError, ModuleNotFoundError) as exc:
            raise ImportError(
                "The 'anthropic' SDK is not installed or broken in this Python environment.\n"
                "  Install:  pip install verisearch\n"
                "  Or switch provider:  export VERISEARCH_LLM_PROVIDER=openai"
            ) from exc
        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout)
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_tool_rounds = max_tool_rounds

    def query(self, messages, system, model, tools=()):
        conversation = list(messages)
        request: Dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system,
        }
        if tools:
            request["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]
        input_tokens = output_tokens = 0

        for round_no in range(self.max_tool_rounds + 1):
            if tools and round_no == self.max_tool_rounds:
                request["tool_choice"] = {"type": "none"}
            try:
                response = self.client.messages.create(messages=list(conversation), **request)
            except Exception as exc:
                raise ProviderError(f"Anthropic call failed: {exc}", provider=self.provider) from exc
            if getattr(response, "role", "assistant") != "assistant":
                raise ProviderError(f"Unexpected response role: {response.role}", provider=self.provider)
            usage = getattr(response, "usage", None)
            input_tokens += getattr(usage, "input_tokens", 0) or 0
            output_tokens += getattr(usage, "output_tokens", 0) or 0

            calls = [block for block in response.content if block.type == "tool_use"]
            if not calls or getattr(response, "stop_reason", None) != "tool_use":
                break
            conversation.append({"role": "assistant", "content": response.content})
            conversation.append({"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": call.id,
                 "content": run_tool(tools, call.name, call.input)}
                for call in calls
            ]})

        blocks = [
            {"type": block.type, "text": getattr(block, "text", "")}
            for block in response.content
        ]
        return AssistantResponse(
            content=blocks,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
        )


class OpenAIModelQuery(ModelQuery):
    """OpenAI (GPT) adapter, uses the ``openai`` SDK."""

    provider = "openai"

    def __init__(self, api_key: str, max_tokens: int = 4096, temperature: float = 0.0,
                 timeout: float = 120.0, max_tool_rounds: int = 4):
        try:
            import openai  # Lazy import
        except (ImportError, ModuleNotFoundError) as exc:
            raise ImportError(
                "The 'openai' SDK is not installed.\n"
                "  Install:  pip install 'verisearch[openai]'\n"
                "  Or switch provider:  export VERISEARCH_LLM_PROVIDER=anthropic"
            ) from exc
        self.client = openai.OpenAI(api_key=api_key, timeout=timeout)
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_tool_rounds = max_tool_rounds

    def query(self, messages, system, model, tools=()):
        conversation: List[Dict[str, Any]] = [{"role": "system", "content": system}, *messages]
        request: Dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if tools:
            request["tools"] = [
                {"type": "function", "function": {
                    "name": t.name, "description": t.description, "parameters": t.parameters,
                }}
                for t in tools
            ]
        input_tokens = output_tokens = 0

        for round_no in range(self.max_tool_rounds + 1):
            if tools and round_no == self.max_tool_rounds:
                request["tool_choice"] = "none"
            try:
                response = self.client.chat.completions.create(messages=list(conversation), **request)
            except Exception as exc:
                raise ProviderError(f"OpenAI call failed: {exc}", provider=self.provider) from exc
            if not response.choices:
                raise ProviderError("OpenAI returned no choices", provider=self.provider)
            usage = getattr(response, "usage", None)
            input_tokens += getattr(usage, "prompt_tokens", 0) or 0
            output_tokens += getattr(usage, "completion_tokens", 0) or 0

            message = response.choices[0].message
            calls = getattr(message, "tool_calls", None) or []
            if not calls:
                break
            conversation.append({
                "role": "assistant",
                "content": message.content,
                "tool_calls": [
                    {"id": c.id, "type": "function",
                     "function": {"name": c.function.name, "arguments": c.function.arguments}}
                    for c in calls
                ],
            })
            for call in calls:
                conversation.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": run_tool(tools, call.function.name,
                                        _json_arguments(call.function.arguments)),
                })

        return AssistantResponse.from_text(
            message.content or "",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
        )


class GeminiModelQuery(ModelQuery):
    """Google Gemini adapter, uses the ``google-genai`` SDK."""

    provider = "gemini"

    def __init__(self, api_key: str, max_tokens: int = 4096, temperature: float = 0.0,
                 timeout: float = 120.0, max_tool_rounds: int = 4):
        try:
            from google import genai  # Lazy import
        except (ImportError, ModuleNotFoundError) as exc:
            raise ImportError(
                "The 'google-genai' SDK is not installed.\n"
                "  Install:  pip install 'verisearch[gemini]'\n"
                "  Or switch provider:  export VERISEARCH_LLM_PROVIDER=anthropic"
            ) from exc
        self.client = genai.Client(api_key=api_key)
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_tool_rounds = max_tool_rounds

    def query(self, messages, system, model, tools=()):
        from google.genai import types

        contents = [types.Content(role="user", parts=[
            types.Part.from_text(text="\n\n".join(m["content"] for m in messages)),
        ])]
        settings: Dict[str, Any] = {
            "system_instruction": system,
            "max_output_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if tools:
            settings["tools"] = [types.Tool(function_declarations=[
                types.FunctionDeclaration(name=t.name, description=t.description,
                                          parameters=t.parameters)
                for t in tools
            ])]
        input_tokens = output_tokens = 0

        for round_no in range(self.max_tool_rounds + 1):
            if tools and round_no == self.max_tool_rounds:
                settings["tool_config"] = types.ToolConfig(
                    function_calling_config=types.FunctionCallingConfig(mode="NONE"),
                )
            try:
                response = self.client.models.generate_content(
                    model=model,
                    contents=list(contents),
                    config=types.GenerateContentConfig(**settings),
                )
            except Exception as exc:
                raise ProviderError(f"Gemini call failed: {exc}", provider=self.provider) from exc
            usage = getattr(response, "usage_metadata", None)
            input_tokens += getattr(usage, "prompt_token_count", 0) or 0
            output_tokens += getattr(usage, "candidates_token_count", 0) or 0

            calls = getattr(response, "function_calls", None) or []
            if not calls:
                break
            contents.append(response.candidates[0].content)
            contents.append(types.Content(role="user", parts=[
                types.Part.from_function_response(
                    name=call.name,
                    response={"result": run_tool(tools, call.name, call.args)},
                )
                for call in calls
            ]))

        return AssistantResponse.from_text(
            response.text or "",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
        )


# Adapter registry: config name → class
_MODEL_QUERY_REGISTRY: Dict[str, type] = {
    "anthropic": AnthropicModelQuery,
    "openai": OpenAIModelQuery,
    "gemini": GeminiModelQuery,
}


def create_model_query(config: VerisearchConfig) -> ModelQuery:
    """Instantiate the :class:`ModelQuery` adapter for ``config.llm_provider``."""
    provider = config.llm_provider.lower()
    if provider not in _MODEL_QUERY_REGISTRY:
        raise ValueError(
            f"Unknown LLM provider '{provider}'. "
            f"Supported: {', '.join(_MODEL_QUERY_REGISTRY)}"
        )
    return _MODEL_QUERY_REGISTRY[provider](
        api_key=config.get_api_key(),
        max_tokens=config.llm_max_tokens,
        temperature=config.llm_temperature,
        timeout=config.model_timeout_seconds,
        max_tool_rounds=config.max_tool_rounds,
    )


# =============================================================================
# Reformulation
# =============================================================================

_REFORMULATION_ENTITY = re.compile(
    r"\b([A-Z][a-zA-Z0-9]*(?:Component|Service|Props|Data|Interface|Form|Fields|Client|API|"
    r"Helper|Utils|Context|Provider)?)\b"
)


def reformulate_query(request_text: str) -> str:
    """
    Broaden a request for the last-resort attempt: name its probable
    entities, or failing that its salient terms.
    """
    entities = list(dict.fromkeys(_REFORMULATION_ENTITY.findall(request_text)))
    if entities:
        return f"Find all files in the codebase related to {', '.join(entities)}."
    terms = [
        t for t in request_text.split()
        if len(t) > 3 and t.lower() not in DomainTerms.REFORMULATION_NOISE
    ]
    if terms:
        return f"Find all files containing these terms: {', '.join(terms)}."
    return f"Find all files in the codebase related to {request_text.strip()}."


def failure_message(request_text: str) -> str:
    """Diagnostic answer returned when every tier failed."""
    return (
        f"I couldn't find relevant information in the codebase for your query: \"{request_text}\"\n\n"
        "Diagnostic Information:\n"
        "- Attempted a broader reformulated query but still found no results\n"
        "- The query may contain entity names that don't match the actual codebase\n"
        "- If you're looking for an interface like \"SomeProps\", try searching for the component file instead\n"
        "- If searching for a specific functionality, try broader terms or focus on directories\n\n"
        "Suggested Approaches:\n"
        "- Try a more general search term like the base name (e.g., \"Trade\" instead of \"TradeFormData\")\n"
        "- Check specific directories like \"components/\", \"types/\", or \"interfaces/\"\n"
        "- Use a keyword search with common patterns (e.g., \"interface *Props\" or \"type *Data\")\n"
        "- Provide a partial file path if you have an idea where the code might be located"
    )


# =============================================================================
# Controller
# =============================================================================

class EscalationState:
    FAST = "fast"
    EVALUATE = "evaluate"
    THOROUGH = "thorough"
    REFORMULATE = "reformulate"
    DONE = "done"


class EscalationController:
    """
    Drive the fast → thorough → reformulate protocol for one request.

    Args:
        model_query: The model-call capability.
        config: Supplies tier model names, tier tool sets, timeouts, and
            thresholds.  :meth:`VerisearchConfig.validate_tiers` runs
            before any call.
        classifier: Judges fast-tier answers.
        feedback_sink: Receives one record per run (``None`` disables).
        toolbox: Codebase tools offered to the tiers.  The fast tier gets
            ``fast_tier_tools``; the thorough tier and the reformulated
            attempt get ``thorough_tier_tools``.  ``None`` means the tiers
            answer from the supplied codebase content alone.
    """

    def __init__(
        self,
        model_query: ModelQuery,
        config: VerisearchConfig | None = None,
        classifier: ResponseQualityClassifier | None = None,
        feedback_sink: FeedbackSink | None = None,
        toolbox: SearchToolbox | None = None,
    ):
        self.config = config or VerisearchConfig()
        self.config.validate_tiers()
        self.model_query = model_query
        self.classifier = classifier or ResponseQualityClassifier(self.config)
        self.feedback_sink = feedback_sink
        self.fast_model, self.thorough_model = self.config.get_tier_models()
        self.fast_tools: List[Tool] = []
        self.thorough_tools: List[Tool] = []
        if toolbox is not None:
            try:
                self.fast_tools = toolbox.tools(self.config.fast_tier_tools)
                self.thorough_tools = toolbox.tools(self.config.thorough_tier_tools)
            except KeyError as e:
                raise ConfigError(
                    f"Unknown tool {e} in the tier tool sets. "
                    f"Available: {', '.join(toolbox.names)}"
                ) from e

    # ── Prompt assembly ───────────────────────────────────────────

    @staticmethod
    def build_messages(request_text: str, codebase: str = "",
                       filters: Sequence[str] = ()) -> List[Dict[str, str]]:
        content = Prompts.USER_MESSAGE.format(query=request_text, codebase=codebase)
        if filters:
            content += Prompts.FILTERS_BLOCK.format(filters="\n".join(filters))
        return [{"role": "user", "content": content}]

    # ── Tier call with cancellation ───────────────────────────────

    def _call(self, messages: List[Dict[str, str]], system: str, model: str,
              tools: Sequence[Tool], cancel_event: threading.Event | None) -> AssistantResponse:
        """
        One blocking tier call (including any tool rounds) on a worker thread.

        The caller's *cancel_event* is polled every
        ``cancel_poll_interval`` seconds; once set, the call is abandoned
        and :class:`QueryCancelledError` raised.  Exceeding
        ``model_timeout_seconds`` raises :class:`ProviderError`.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise QueryCancelledError(f"Query cancelled before calling {model}")

        if tools:
            system += Prompts.TOOL_USE
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="tier")
        try:
            future = executor.submit(self.model_query.query, messages, system, model,
                                     tools=list(tools))
            deadline = time.monotonic() + self.config.model_timeout_seconds
            while True:
                try:
                    response = future.result(timeout=self.config.cancel_poll_interval)
                    break
                except concurrent.futures.TimeoutError:
                    if cancel_event is not None and cancel_event.is_set():
                        future.cancel()
                        raise QueryCancelledError(f"Query cancelled while waiting on {model}")
                    if time.monotonic() > deadline:
                        future.cancel()
                        raise ProviderError(
                            f"{model} did not answer within {self.config.model_timeout_seconds}s"
                        )
        except ProviderError:
            raise
        except QueryCancelledError:
            raise
        except Exception as exc:
            raise ProviderError(f"{model} call failed: {type(exc).__name__}: {exc}") from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if cancel_event is not None and cancel_event.is_set():
            raise QueryCancelledError(f"Query cancelled after {model} answered")
        if response.type != "assistant":
            raise ProviderError(f"Invalid response type from {model}: {response.type}")
        return response

    # ── State machine ─────────────────────────────────────────────

    def run(
        self,
        request_text: str,
        codebase: str = "",
        filters: Sequence[str] = (),
        cancel_event: threading.Event | None = None,
        tier_hint: str | None = None,
    ) -> QueryResult:
        """
        Answer *request_text* with tier escalation.

        A *tier_hint* of ``"thorough"`` skips the fast tier.

        Raises:
            QueryCancelledError: If *cancel_event* fires during a tier.
        """
        query_id = uuid.uuid4().hex[:12]
        feedback = QueryFeedback(
            query_id=query_id,
            query_text=request_text,
            fast_model=self.fast_model,
            thorough_model=self.thorough_model,
        )
        messages = self.build_messages(request_text, codebase, filters)
        if tier_hint == EscalationState.THOROUGH:
            feedback.signals.append("tier_hint")
            state = EscalationState.THOROUGH
        else:
            state = EscalationState.FAST
        fast_response: Optional[AssistantResponse] = None
        result: Optional[QueryResult] = None

        while state != EscalationState.DONE:
            if state == EscalationState.FAST:
                logger.info(f"[{query_id}] Fast tier: {self.fast_model}")
                t0 = time.perf_counter()
                try:
                    fast_response = self._call(messages, Prompts.FAST_TIER_SYSTEM,
                                               self.fast_model, self.fast_tools,
                                               cancel_event)
                except ProviderError as e:
                    logger.warning(f"[{query_id}] Fast tier failed, escalating: {e}")
                    feedback.signals.append("provider_error")
                    fast_response = None
                feedback.duration_fast_ms = int((time.perf_counter() - t0) * 1000)
                if fast_response is not None:
                    feedback.tokens_fast = {
                        "input": fast_response.input_tokens,
                        "output": fast_response.output_tokens,
                    }
                state = EscalationState.EVALUATE

            elif state == EscalationState.EVALUATE:
                if fast_response is None:
                    state = EscalationState.THOROUGH
                    continue
                verdict = self.classifier.classify(fast_response.text)
                feedback.signals.extend(verdict.signals)
                if verdict.sufficient:
                    logger.info(f"[{query_id}] Fast tier answer accepted")
                    feedback.fast_tier_success = True
                    result = QueryResult(
                        successful=True,
                        escalated=False,
                        response=f"Query processed using {self.fast_model}\n\n{fast_response.text}",
                        model_used="fast",
                        model_name=self.fast_model,
                        duration_ms=feedback.duration_fast_ms,
                        input_tokens=fast_response.input_tokens,
                        output_tokens=fast_response.output_tokens,
                        query_id=query_id,
                        signals=list(verdict.signals),
                    )
                    state = EscalationState.DONE
                else:
                    logger.info(f"[{query_id}] Escalating: {', '.join(verdict.signals)}")
                    state = EscalationState.THOROUGH

            elif state == EscalationState.THOROUGH:
                feedback.escalated = True
                logger.info(f"[{query_id}] Thorough tier: {self.thorough_model}")
                t0 = time.perf_counter()
                try:
                    response = self._call(messages, Prompts.THOROUGH_TIER_SYSTEM,
                                          self.thorough_model, self.thorough_tools,
                                          cancel_event)
                except ProviderError as e:
                    feedback.duration_thorough_ms = int((time.perf_counter() - t0) * 1000)
                    logger.warning(f"[{query_id}] Thorough tier failed, reformulating: {e}")
                    state = EscalationState.REFORMULATE
                    continue
                feedback.duration_thorough_ms = int((time.perf_counter() - t0) * 1000)
                feedback.tokens_thorough = {
                    "input": response.input_tokens,
                    "output": response.output_tokens,
                }
                feedback.thorough_tier_success = True
                result = QueryResult(
                    successful=True,
                    escalated=True,
                    response=(
                        f"Query escalated from {self.fast_model} to {self.thorough_model} "
                        f"for better results\n\n{response.text}"
                    ),
                    model_used="thorough",
                    model_name=self.thorough_model,
                    duration_ms=feedback.duration_thorough_ms,
                    input_tokens=response.input_tokens,
                    output_tokens=response.output_tokens,
                    query_id=query_id,
                    signals=list(feedback.signals),
                )
                state = EscalationState.DONE

            elif state == EscalationState.REFORMULATE:
                result = self._reformulate(request_text, codebase, filters, cancel_event,
                                           query_id, feedback)
                state = EscalationState.DONE

        self._save_feedback(feedback)
        return result

    def _reformulate(self, request_text: str, codebase: str, filters: Sequence[str],
                     cancel_event: threading.Event | None, query_id: str,
                     feedback: QueryFeedback) -> QueryResult:
        feedback.reformulated = True
        broadened = reformulate_query(request_text)
        logger.info(f"[{query_id}] Reformulated query: {broadened}")
        t0 = time.perf_counter()
        try:
            response = self._call(self.build_messages(broadened, codebase, filters),
                                  Prompts.THOROUGH_TIER_SYSTEM, self.thorough_model,
                                  self.thorough_tools, cancel_event)
        except ProviderError as e:
            logger.warning(f"[{query_id}] Reformulation attempt failed: {e}")
            response = None
        duration_ms = int((time.perf_counter() - t0) * 1000)

        if response is not None:
            text = response.text
            verdict = self.classifier.classify(text)
            if "path:" in text.lower() and not verdict.has_no_results:
                feedback.thorough_tier_success = True
                feedback.tokens_thorough = {
                    "input": response.input_tokens,
                    "output": response.output_tokens,
                }
                return QueryResult(
                    successful=True,
                    escalated=True,
                    response=(
                        "Note: The original query did not return results, so I performed a "
                        "broader search for related files.\n\n"
                        f"Reformulated query: \"{broadened}\"\n\n{text}"
                    ),
                    model_used="thorough",
                    model_name=self.thorough_model,
                    duration_ms=duration_ms,
                    input_tokens=response.input_tokens,
                    output_tokens=response.output_tokens,
                    query_id=query_id,
                    reformulated=True,
                    signals=list(feedback.signals),
                )

        feedback.thorough_tier_success = False
        return QueryResult(
            successful=False,
            escalated=True,
            response=failure_message(request_text),
            model_used="thorough",
            model_name=self.thorough_model,
            duration_ms=duration_ms,
            query_id=query_id,
            reformulated=True,
            signals=list(feedback.signals),
        )

    def _save_feedback(self, feedback: QueryFeedback) -> None:
        if self.feedback_sink is None:
            return
        feedback.timestamp = datetime.now(timezone.utc).isoformat()
        try:
            self.feedback_sink.record(feedback)
        except Exception as e:
            logger.warning(f"Feedback record {feedback.query_id} was not saved: {e}")
