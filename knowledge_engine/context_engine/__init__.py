"""
Context Engine - Grounding and quality layers for agent knowledge

Architecture Layers:
    1. Content Chunking - Paragraph-first, sentence-packed segmentation
    2. Content Versioning - Fingerprint dedup with per-agent version numbers
    3. Hybrid Retrieval - Dense + sparse search with confidence fusion
    4. Answer Auditing - Hallucination risk scoring and compliance flags
"""

from .chunker import ContentChunker, TextChunk
from .content_versioner import ContentVersioner, VersionResolution
from .hybrid_retriever import (
    BM25,
    HybridRetriever,
    MatchType,
    RetrievalConfig,
    RetrievalOutcome,
    RetrievalResult,
    fuse_confidence,
)
from .answer_auditor import AnswerAuditor, AuditResult, ComplianceFlag, RiskLevel

__all__ = [
    "ContentChunker",
    "TextChunk",
    "ContentVersioner",
    "VersionResolution",
    "BM25",
    "HybridRetriever",
    "MatchType",
    "RetrievalConfig",
    "RetrievalOutcome",
    "RetrievalResult",
    "fuse_confidence",
    "AnswerAuditor",
    "AuditResult",
    "ComplianceFlag",
    "RiskLevel",
]
