"""
Verisearch Core — extraction, chunking, ranking, verification, and escalation.

Re-exports the primary building blocks for convenience::

    from verisearch.core import EntityExtractor, SearchPipeline, Verifier
"""

from verisearch.core.chunker import build_chunks, connect_relationships, link_file_relationships
from verisearch.core.config import DomainTerms, Prompts, QualityPhrases, VerisearchConfig
from verisearch.core.escalation import (
    EscalationController,
    FeedbackSink,
    InMemoryFeedbackSink,
    JsonFileFeedbackSink,
    ModelQuery,
    ResponseQualityClassifier,
)
from verisearch.core.extractor import EntityExtractor, extract
from verisearch.core.filesystem import Filesystem, LocalFilesystem
from verisearch.core.formatter import ReportFormatter
from verisearch.core.pipeline import SearchPipeline
from verisearch.core.ranker import assess_results, rank, rank_results
from verisearch.core.tools import SearchToolbox, Tool
from verisearch.core.verifier import Verifier, filter_results

__all__ = [
    "VerisearchConfig",
    "DomainTerms",
    "Prompts",
    "QualityPhrases",
    "EntityExtractor",
    "extract",
    "build_chunks",
    "connect_relationships",
    "link_file_relationships",
    "rank",
    "rank_results",
    "assess_results",
    "Filesystem",
    "LocalFilesystem",
    "Verifier",
    "filter_results",
    "EscalationController",
    "ResponseQualityClassifier",
    "FeedbackSink",
    "InMemoryFeedbackSink",
    "JsonFileFeedbackSink",
    "ModelQuery",
    "ReportFormatter",
    "SearchPipeline",
    "SearchToolbox",
    "Tool",
]
