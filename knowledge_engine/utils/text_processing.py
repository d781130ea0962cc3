"""
Lightweight text processing utilities shared by chunking, retrieval and auditing.
"""
import hashlib
import re
from typing import Iterable, List, Optional, Sequence, Set

import numpy as np

STOP_WORDS: Set[str] = {
    "a", "about", "above", "after", "again", "all", "am", "an", "and", "any",
    "are", "as", "at", "be", "because", "been", "before", "being", "below",
    "between", "both", "but", "by", "can", "could", "did", "do", "does",
    "doing", "down", "during", "each", "few", "for", "from", "further", "had",
    "has", "have", "having", "he", "her", "here", "hers", "him", "his", "how",
    "i", "if", "in", "into", "is", "it", "its", "itself", "just", "me", "more",
    "most", "my", "of", "off", "on", "once", "only", "or", "other", "our",
    "ours", "out", "over", "own", "same", "she", "should", "so", "some",
    "such", "than", "that", "the", "their", "theirs", "them", "then", "there",
    "these", "they", "this", "those", "through", "to", "too", "under", "until",
    "up", "very", "was", "we", "were", "what", "when", "where", "which",
    "while", "who", "whom", "why", "will", "with", "would", "you", "your",
    "yours", "tell", "please", "know", "want", "get",
}

NEGATION_MARKERS: Set[str] = {"not", "never", "no", "cannot", "can't", "won't", "isn't", "doesn't", "don't"}

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+(?:'[a-z]+)?")
_NUMBER_PATTERN = re.compile(r"\b\d+(?:[.,]\d+)*%?")
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric tokens, keeping simple contractions intact."""
    if not text:
        return []
    return _TOKEN_PATTERN.findall(text.lower())


def content_words(text: str) -> List[str]:
    """Tokens with stop words and single characters removed."""
    return [token for token in tokenize(text) if token not in STOP_WORDS and len(token) > 1]


def extract_keywords(question: str, limit: Optional[int] = None) -> List[str]:
    """Stop-word-filtered, de-duplicated query terms in order of appearance."""
    seen = set()
    keywords: List[str] = []
    for token in content_words(question):
        if "'" in token or token in seen:
            continue
        seen.add(token)
        keywords.append(token)
        if limit is not None and len(keywords) >= limit:
            break
    return keywords


def split_sentences(text: str) -> List[str]:
    """Split on terminal punctuation followed by whitespace."""
    return [sentence.strip() for sentence in _SENTENCE_BOUNDARY.split(text or "") if sentence.strip()]


def extract_numbers(text: str) -> List[str]:
    return [match.rstrip("%").replace(",", "") for match in _NUMBER_PATTERN.findall(text or "")]


def has_negation(tokens: Iterable[str]) -> bool:
    return any(token in NEGATION_MARKERS for token in tokens)


def fingerprint(text: str) -> str:
    """SHA-256 digest of the trimmed text."""
    return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()


def text_hash(text: str) -> str:
    """Cache key digest for arbitrary input text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def cosine_similarity(first: Sequence[float], second: Sequence[float]) -> float:
    """Cosine similarity, 0.0 when either vector is empty or zero."""
    if first is None or second is None or len(first) == 0 or len(second) == 0:
        return 0.0
    a = np.asarray(first, dtype=float)
    b = np.asarray(second, dtype=float)
    if a.shape != b.shape:
        return 0.0
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)
