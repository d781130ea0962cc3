"""
Agent Knowledge Engine - grounded question answering over per-agent corpora.

Layers:
    1. Chunking with content fingerprints and per-agent versions
    2. Hybrid (vector + keyword) retrieval with confidence fusion
    3. Agent-isolated caching with similarity-based answer reuse
    4. Background ingestion jobs with progress tracking
    5. Post-hoc hallucination-risk auditing
"""

__version__ = "0.3.0"
