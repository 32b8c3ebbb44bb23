"""Stratum cold tier and archival pipeline."""

from stratum.archive.cold_store import ColdArchiveStore, snapshot_key
from stratum.archive.object_store import InMemoryObjectStore, LocalObjectStore, ObjectStore
from stratum.archive.orchestrator import ArchivalOrchestrator
from stratum.archive.policy import ArchivePolicyEngine
from stratum.archive.retrieval import RetrievalReconstructor, merge_snapshot
from stratum.archive.summarizer import (
    FallbackSummarizer,
    LLMSummarizer,
    Summarizer,
    empty_summary,
    fallback_summary,
)
from stratum.archive.sweeper import BackgroundSweeper

__all__ = [
    "ArchivalOrchestrator",
    "ArchivePolicyEngine",
    "BackgroundSweeper",
    "ColdArchiveStore",
    "FallbackSummarizer",
    "InMemoryObjectStore",
    "LLMSummarizer",
    "LocalObjectStore",
    "ObjectStore",
    "RetrievalReconstructor",
    "Summarizer",
    "empty_summary",
    "fallback_summary",
    "merge_snapshot",
    "snapshot_key",
]
