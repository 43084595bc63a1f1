"""
Verisearch Relevance Ranker

Deterministic, additive heuristics that order chunks and file-level
results against an information request.

Chunk scoring, strongest signal first: exact name match, name contains
the full query, name contains a query term, content contains the full
query, per-term frequency (word-boundary hits weighted above substring
hits), domain-category bonuses, export/documentation bonuses, and a
moderate-size bonus.  All weights live in
``VerisearchConfig.ranking_weights``.
"""

import dataclasses
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Sequence, Set

from verisearch.core.config import DomainTerms, VerisearchConfig
from verisearch.core.models import CodeChunk, EntityKind, SearchResult

logger = logging.getLogger(__name__)

# Per-term occurrence counts above this stop adding score, so one long
# chunk that repeats a word cannot outrank a name match.
_MAX_TERM_HITS = 10
_MAX_IDENTIFIER_HITS = 5

_IDENTIFIER_IN_QUERY = re.compile(
    r"\b([A-Z][a-z0-9]+[A-Za-z0-9]*|[a-z][a-z0-9]*[A-Z][A-Za-z0-9]*)\b"
)
_QUERY_PUNCTUATION = re.compile(r"[.,;:!?'\"()\[\]{}]")


# =============================================================================
# Query Analysis
# =============================================================================

def extract_search_terms(query: str) -> List[str]:
    """
    Meaningful terms of *query*: words and code identifiers minus stop
    words and very short tokens, plus derived domain terms
    (``component``/``render`` for UI wording, ``data``/``state`` for
    data wording, ``form``/``input`` for form wording).  Order-preserving.
    """
    cleaned = " ".join(_QUERY_PUNCTUATION.sub(" ", query).split())
    words = cleaned.split(" ") if cleaned else []
    identifiers = _IDENTIFIER_IN_QUERY.findall(query)
    terms = [
        t for t in words + identifiers
        if len(t) > 2 and t.lower() not in DomainTerms.STOP_WORDS
    ]

    lowered = {t.lower() for t in terms}
    enhanced = list(terms)
    if lowered & {"component", "jsx", "tsx", "render", "view", "ui"}:
        enhanced += ["component", "render"]
    if lowered & {"state", "store", "data", "model", "schema"}:
        enhanced += ["data", "state"]
    if lowered & {"form", "input", "validate", "submit"}:
        enhanced += ["form", "input"]
    return list(dict.fromkeys(enhanced))


_SUFFIXED_NAME = re.compile(
    r"\b([A-Z][a-zA-Z0-9]*(?:Props|Context|Provider|State|Data|Config|Utils|Service|Client|API|"
    r"Hook|Factory|Builder|Manager|Controller|Model|Schema|Validator|Formatter|Parser|Renderer))\b"
)
_COMPOUND_NAME = re.compile(
    r"\b([A-Z][a-z0-9]+(?:[A-Z][a-z0-9]+)+(?:Data|Props|Config|Options|Settings|State|Model|"
    r"Schema|Type|Interface)?)\b"
)


def _kebab(name: str) -> str:
    return re.sub(r"(?<!^)([A-Z])", r"-\1", name).lower()


def extract_potential_file_names(query: str) -> List[str]:
    """
    Entity and file names the request probably refers to.

    Collects PascalCase and camelCase identifiers, suffix patterns
    (``...Props``, ``...Service``), ``...Component`` names, quoted
    names, ``X Form`` / ``X Fields`` phrases, compound-name parts, and
    variants: kebab-case, and the name without ``Interface``/``Props`` or
    ``View``/``Component``/``Page``/``Form`` suffixes.
    """
    names: List[str] = []
    names += re.findall(r"\b[A-Z][a-zA-Z0-9]*\b", query)
    names += re.findall(r"\b[a-z][a-z0-9]*[A-Z][A-Za-z0-9]*\b", query)
    names += _SUFFIXED_NAME.findall(query)
    names += re.findall(r"\b[A-Za-z0-9]*Component\b", query)
    for single, double in re.findall(r"'([^']+)'|\"([^\"]+)\"", query):
        names.append(single or double)

    lowered = query.lower()
    if "form" in lowered:
        names += [f"{m}Form" for m in re.findall(r"\b([A-Za-z0-9]+)[\s-]?Form\b", query, re.I)]
    if "fields" in lowered:
        names += [f"{m}Fields" for m in re.findall(r"\b([A-Za-z0-9]+)[\s-]?Fields\b", query, re.I)]

    names += re.findall(r"\b([A-Z][a-zA-Z0-9]*Props)\b", query)
    compounds = _COMPOUND_NAME.findall(query)
    names += compounds
    for compound in compounds:
        parts = [p for p in re.split(r"(?=[A-Z])", compound) if len(p) > 1]
        if len(parts) < 2:
            continue
        names += parts
        names += [parts[i] + parts[i + 1] for i in range(len(parts) - 1)]
        if "Fields" in compound:
            base = re.sub(r"Fields(Props)?$", "", compound)
            if base:
                names += [base, base + "Props"]
        if "Form" in compound:
            base = re.sub(r"Form(Data|Props)?$", "", compound)
            if base:
                names += [base, base + "Props", base + "Data"]

    variations: List[str] = []
    for name in names:
        if re.fullmatch(r"[A-Z][a-z]+(?:[A-Z][a-z]+)+", name):
            variations.append(_kebab(name))
        if name.endswith(("Interface", "Props")):
            variations.append(re.sub(r"(Interface|Props)$", "", name))
        if re.search(r"(?:View|Component|Page|Form)$", name):
            variations.append(re.sub(r"(?:View|Component|Page|Form)$", "", name))
    names += variations
    return [n for n in dict.fromkeys(names) if n]


def classify_query(terms: Sequence[str]) -> FrozenSet[str]:
    """Domain categories (ui, data, relationship, ...) the query belongs to."""
    lowered = {t.lower() for t in terms}
    return frozenset(
        category for category, vocabulary in DomainTerms.CATEGORIES.items()
        if lowered & vocabulary
    )


@dataclass(frozen=True)
class QueryProfile:
    """Pre-digested view of a request used by chunk scoring."""
    text: str
    lowered: str
    terms: tuple
    entity_names: tuple
    categories: FrozenSet[str]

    def has(self, category: str) -> bool:
        return category in self.categories

    def mentions(self, *words: str) -> bool:
        return any(w in self.terms for w in words)


def build_query_profile(query: str) -> QueryProfile:
    lowered = query.lower().strip()
    terms = tuple(dict.fromkeys(t for t in lowered.split() if len(t) > 1))
    entity_names = tuple(dict.fromkeys(n.lower() for n in _IDENTIFIER_IN_QUERY.findall(query)))
    return QueryProfile(
        text=query,
        lowered=lowered,
        terms=terms,
        entity_names=entity_names,
        categories=classify_query(terms),
    )


# =============================================================================
# Chunk Scoring
# =============================================================================

def _name_score(chunk: CodeChunk, profile: QueryProfile, weights: Dict[str, float],
                add) -> None:
    name = chunk.name.lower()
    if name == profile.lowered:
        add("exact_name", weights["exact_name"])
        return
    if profile.lowered and profile.lowered in name:
        add("name_contains_query", weights["name_contains_query"])
        return
    for term in profile.terms:
        if term in name:
            add("name_contains_term", weights["name_contains_term"])
    for entity in profile.entity_names:
        if name == entity:
            add("entity_name", weights["entity_name"])
        elif len(name) > 2 and (entity in name or name in entity):
            add("entity_name", weights["entity_name"] / 2)


def _content_score(chunk: CodeChunk, profile: QueryProfile, weights: Dict[str, float],
                   add) -> None:
    content = chunk.content.lower()
    if profile.lowered and profile.lowered in content:
        add("content_contains_query", weights["content_contains_query"])
    for term in profile.terms:
        exact = len(re.findall(rf"\b{re.escape(term)}\b", content))
        partial = content.count(term) - exact
        if exact:
            add("exact_term", weights["exact_term"] * min(exact, _MAX_TERM_HITS))
        if partial > 0:
            add("partial_term", weights["partial_term"] * min(partial, _MAX_TERM_HITS))
    for entity in profile.entity_names:
        mentions = len(re.findall(rf"\b{re.escape(entity)}\b", content))
        if mentions:
            add("identifier_mention", weights["identifier_mention"] * min(mentions, _MAX_IDENTIFIER_HITS))

    doc = (chunk.metadata.documentation or "").lower()
    if doc:
        add("documented", weights["documented"])
        for term in profile.terms:
            if term in doc:
                add("documentation_term", weights["documentation_term"])
    if chunk.metadata.is_exported:
        add("exported", weights["exported"])


def _kind_score(chunk: CodeChunk, profile: QueryProfile, weights: Dict[str, float],
                add) -> None:
    kind = chunk.kind
    name = chunk.name.lower()
    content = chunk.content.lower()
    domain = weights["domain_match"]

    if kind == EntityKind.UI_COMPONENT:
        add("component", domain * 0.75)
        if profile.has("ui"):
            add("domain_match", domain)
        if profile.terms and set(profile.terms) & DomainTerms.LIFECYCLE:
            add("context_relevance", weights["context_relevance"])
    elif kind == EntityKind.CLASS:
        add("class", domain * 0.5)
        if profile.has("relationship"):
            add("domain_match", domain)
            if "extends" in content or "implements" in content:
                add("context_relevance", weights["context_relevance"])
    elif kind == EntityKind.INTERFACE:
        add("interface_boost", weights["interface_boost"])
        type_def = chunk.metadata.type_definition
        if chunk.name.endswith("Props") and (profile.has("ui") or profile.has("data") or profile.entity_names):
            add("props_interface", weights["props_interface"])
        if profile.has("data"):
            add("type_definition", weights["type_definition"])
        if type_def is not None:
            for prop in type_def.properties:
                if prop.name.lower() in profile.terms:
                    add("property_match", 5.0)
        used_by = [u.lower() for u in chunk.relationships.used_by_entities]
        if used_by:
            add("relationship", weights["relationship"])
            if any(term in u for u in used_by for term in profile.terms):
                add("cross_file", weights["cross_file"])
    elif kind == EntityKind.TYPE_ALIAS:
        add("type", weights["relationship"])
        if profile.has("data"):
            add("domain_match", domain)
        type_def = chunk.metadata.type_definition
        if type_def is not None:
            for prop in type_def.properties:
                if prop.name.lower() in profile.terms:
                    add("property_match", 5.0)
    elif kind == EntityKind.FUNCTION:
        add("function", 8.0)
        if profile.has("utility"):
            add("domain_match", domain)
        if name.startswith(("handle", "on")):
            add("handler_name", 10.0)
            if profile.has("event"):
                add("domain_match", domain)
        if profile.has("data") and "return" in content and ".map(" in content:
            add("data_transform", 12.5)
    elif kind == EntityKind.IMPORTS:
        if profile.has("relationship"):
            add("domain_match", domain)
        else:
            add("imports_penalty", weights["imports_penalty"])
    elif kind == EntityKind.VARIABLE:
        if profile.has("data"):
            add("domain_match", domain / 2)
        if "new " in content or "create" in content:
            add("constructed", 5.0)
        if "style" in name or "styled" in content:
            add("style", 10.0 if profile.has("ui") else 8.0)
        if re.search(r"\b(?:fetch|axios|http)\b", content):
            add("api", 12.5 if set(profile.terms) & DomainTerms.API else 7.0)
    elif kind == EntityKind.METHOD:
        add("method", 8.0)
        if name == "render" and profile.has("ui"):
            add("domain_match", domain)
        if name.startswith(("test", "should")) and profile.has("testing"):
            add("domain_match", domain)


def _relationship_score(chunk: CodeChunk, profile: QueryProfile, weights: Dict[str, float],
                        add) -> None:
    rel = chunk.relationships
    if any(term in source.lower() for source in rel.imports for term in profile.terms):
        add("relationship", weights["relationship"])
    if any(export.lower() in profile.entity_names for export in rel.exports):
        add("relationship", weights["relationship"])
    if any(term in related.lower() for related in rel.related_entities for term in profile.terms):
        add("context_relevance", weights["context_relevance"] * 0.9)
    if rel.imported_by and rel.exports_to:
        add("cross_file", 5.0)


def score_chunk(
    chunk: CodeChunk,
    query: str | QueryProfile,
    config: VerisearchConfig | None = None,
    explain: bool = False,
) -> float | tuple[float, dict]:
    """
    Score one chunk against a request.

    Args:
        explain: If True, return ``(score, explanation)`` where the
            explanation maps each signal to its contribution.
    """
    cfg = config or VerisearchConfig()
    profile = query if isinstance(query, QueryProfile) else build_query_profile(query)
    weights = cfg.ranking_weights
    explanation: Dict[str, float] = {}

    def add(signal: str, amount: float) -> None:
        explanation[signal] = explanation.get(signal, 0.0) + amount

    _name_score(chunk, profile, weights, add)
    _content_score(chunk, profile, weights, add)
    _kind_score(chunk, profile, weights, add)
    _relationship_score(chunk, profile, weights, add)

    lines = chunk.line_count
    if 5 < lines < 100:
        add("moderate_size", weights["moderate_size"])
    elif lines > 100:
        add("oversize_penalty", weights["oversize_penalty"])

    score = sum(explanation.values())
    if explain:
        return score, explanation
    return score


def rank(
    chunks: Sequence[CodeChunk],
    query: str,
    max_results: int,
    config: VerisearchConfig | None = None,
) -> List[CodeChunk]:
    """
    Top *max_results* chunks for *query*, plus the parents of any
    selected child entity, ordered by file path, then kind importance,
    then line number.
    """
    cfg = config or VerisearchConfig()
    profile = build_query_profile(query)
    scored = [
        (score_chunk(chunk, profile, cfg), position, chunk)
        for position, chunk in enumerate(chunks)
    ]
    scored = [item for item in scored if item[0] > 0]
    scored.sort(key=lambda item: (-item[0], item[1]))
    selected = [chunk for _, _, chunk in scored[:max(max_results, 0)]]

    keys = {c.key for c in selected}
    for chunk in list(selected):
        parent = chunk.metadata.parent_name
        if not parent:
            continue
        for candidate in chunks:
            if (candidate.file_path == chunk.file_path and candidate.name == parent
                    and candidate.key not in keys):
                selected.append(candidate)
                keys.add(candidate.key)

    selected.sort(key=lambda c: (c.file_path, EntityKind.order_of(c.kind), c.start_line))
    return selected


# =============================================================================
# File-Level Ranking
# =============================================================================

def rank_results(
    results: Sequence[SearchResult],
    search_terms: Sequence[str],
    file_name_candidates: Sequence[str],
    config: VerisearchConfig | None = None,
) -> List[SearchResult]:
    """
    Score whole-file results by path and chunk evidence and sort them
    best first.  Returns new result objects; inputs are not modified.
    """
    cfg = config or VerisearchConfig()
    weights = cfg.file_ranking_weights
    ranked: List[SearchResult] = []

    for result in results:
        score = 0.0
        path = result.display_path or result.file_path
        stem = Path(path).stem
        directory = str(Path(path).parent)
        for name in file_name_candidates:
            if name in path:
                if stem == name:
                    score += weights["basename_exact"]
                elif stem.lower() == name.lower():
                    score += weights["basename_case_insensitive"]
                elif name in stem:
                    score += weights["basename_partial"]
            if name in directory:
                score += weights["directory_match"]
        for term in search_terms:
            if term.lower() in path.lower():
                score += weights["term_in_path"]

        if Path(path).suffix.lower() == ".tsx" and any(n[:1].isupper() for n in file_name_candidates):
            score += weights["component_file"]

        if result.chunks and search_terms:
            total = 0
            for term in search_terms:
                needle = term.lower()
                for chunk in result.chunks:
                    if needle in chunk.content.lower():
                        total += 1
                    if needle in chunk.name.lower():
                        total += 2
            average = total / max(len(search_terms), 1)
            score += min(average * weights["chunk_match_scale"], weights["chunk_match_cap"])

        ranked.append(dataclasses.replace(result, relevance_score=score))

    ranked.sort(key=lambda r: r.relevance_score, reverse=True)
    return ranked


def assess_results(
    results: Sequence[SearchResult],
    file_name_candidates: Sequence[str],
    config: VerisearchConfig | None = None,
) -> List[SearchResult]:
    """
    Assign the pre-verification confidence and match type of each result.

    Base confidence is the relevance score over 100 (clamped to 0–1),
    plus a bonus for an exact file-name match and one for carrying
    verified relationship edges.
    """
    cfg = config or VerisearchConfig()
    adjust = cfg.confidence_adjustments
    candidates: Set[str] = set(file_name_candidates)
    assessed: List[SearchResult] = []
    for result in results:
        base = min(max(result.relevance_score / 100.0, 0.0), 1.0)
        if Path(result.file_path).stem in candidates:
            base += adjust["exact_name_bonus"]
        if any(c.relationships.has_verified_edges() for c in result.chunks):
            base += adjust["relationship_bonus"]
        base = round(min(base, 1.0), 4)
        prior = cfg.classify_confidence(base)
        assessed.append(dataclasses.replace(
            result,
            confidence_score=base,
            match_type=prior,
            base_confidence=base,
            prior_match_type=prior,
        ))
    return assessed
