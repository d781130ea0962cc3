"""
Answer Auditor - Hallucination risk scoring for generated answers

Scores a delivered answer against the sources it was grounded on using
lexical heuristics:
    - Factual accuracy: answer sentences backed by source vocabulary
    - Source alignment: overall word overlap between answer and sources
    - Completeness: question keywords the answer addresses
    - Relevance: question keywords found in sources, blended with retrieval confidence

The auditor only annotates; it never blocks an answer.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence, Set

from ..utils.text_processing import (
    NEGATION_MARKERS,
    content_words,
    extract_keywords,
    extract_numbers,
    has_negation,
    split_sentences,
    tokenize,
)

SENTENCE_SUPPORT_RATIO = 0.5
CONTRADICTION_OVERLAP = 0.6
CONTRADICTION_MIN_SHARED = 2


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ComplianceFlag(str, Enum):
    UNSUPPORTED_NUMERIC_CLAIM = "unsupported_numeric_claim"
    CONTRADICTS_SOURCE = "contradicts_source"
    NO_SUPPORTING_SOURCES = "no_supporting_sources"
    AUDIT_UNAVAILABLE = "audit_unavailable"


@dataclass
class AuditResult:
    hallucination_risk_score: float
    risk_level: RiskLevel
    factual_accuracy: float
    source_alignment: float
    completeness: float
    relevance: float
    compliance_flags: List[str] = field(default_factory=list)
    reasoning: str = ""
    requires_human_review: bool = False
    audit_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            "hallucination_risk_score": self.hallucination_risk_score,
            "risk_level": self.risk_level.value,
            "factual_accuracy": self.factual_accuracy,
            "source_alignment": self.source_alignment,
            "completeness": self.completeness,
            "relevance": self.relevance,
            "compliance_flags": list(self.compliance_flags),
            "reasoning": self.reasoning,
            "requires_human_review": self.requires_human_review,
        }


class AnswerAuditor:
    """Combine lexical heuristics into a hallucination risk score."""

    def __init__(
        self,
        factual_weight: float = 0.40,
        alignment_weight: float = 0.30,
        completeness_weight: float = 0.15,
        relevance_weight: float = 0.15,
        medium_threshold: float = 0.35,
        high_threshold: float = 0.65,
    ) -> None:
        self.factual_weight = factual_weight
        self.alignment_weight = alignment_weight
        self.completeness_weight = completeness_weight
        self.relevance_weight = relevance_weight
        self.medium_threshold = medium_threshold
        self.high_threshold = high_threshold

    def audit(
        self,
        question: str,
        answer: str,
        sources: Sequence[str],
        confidence: float,
    ) -> AuditResult:
        sources = [source for source in sources if source and source.strip()]
        source_vocabulary: Set[str] = set()
        for source in sources:
            source_vocabulary.update(content_words(source))

        factual = self._factual_accuracy(answer, source_vocabulary)
        alignment = self._source_alignment(answer, source_vocabulary)
        completeness = self._completeness(question, answer)
        relevance = self._relevance(question, source_vocabulary, confidence)

        weighted = (
            factual * self.factual_weight
            + alignment * self.alignment_weight
            + completeness * self.completeness_weight
            + relevance * self.relevance_weight
        )
        risk = round(self._clamp(1.0 - weighted), 4)
        level = self.risk_level_for(risk)

        flags = self._compliance_flags(answer, sources)
        requires_review = level == RiskLevel.HIGH or bool(flags)

        reasoning = (
            f"factual={factual:.2f} alignment={alignment:.2f} "
            f"completeness={completeness:.2f} relevance={relevance:.2f}"
        )
        if flags:
            reasoning += f"; flags: {', '.join(flags)}"

        return AuditResult(
            hallucination_risk_score=risk,
            risk_level=level,
            factual_accuracy=round(factual, 4),
            source_alignment=round(alignment, 4),
            completeness=round(completeness, 4),
            relevance=round(relevance, 4),
            compliance_flags=flags,
            reasoning=reasoning,
            requires_human_review=requires_review,
        )

    @staticmethod
    def fail_open(reason: str) -> AuditResult:
        """Result used when scoring itself failed: maximum risk, flagged for review."""
        return AuditResult(
            hallucination_risk_score=1.0,
            risk_level=RiskLevel.HIGH,
            factual_accuracy=0.0,
            source_alignment=0.0,
            completeness=0.0,
            relevance=0.0,
            compliance_flags=[ComplianceFlag.AUDIT_UNAVAILABLE.value],
            reasoning=f"Audit unavailable: {reason}",
            requires_human_review=True,
        )

    def risk_level_for(self, risk: float) -> RiskLevel:
        if risk >= self.high_threshold:
            return RiskLevel.HIGH
        if risk >= self.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    @staticmethod
    def _factual_accuracy(answer: str, vocabulary: Set[str]) -> float:
        assessed = 0
        supported = 0
        for sentence in split_sentences(answer):
            words = set(content_words(sentence))
            if not words:
                continue
            assessed += 1
            if len(words & vocabulary) / len(words) >= SENTENCE_SUPPORT_RATIO:
                supported += 1
        return supported / assessed if assessed else 0.0

    @staticmethod
    def _source_alignment(answer: str, vocabulary: Set[str]) -> float:
        words = set(content_words(answer))
        if not words:
            return 0.0
        return len(words & vocabulary) / len(words)

    @staticmethod
    def _completeness(question: str, answer: str) -> float:
        keywords = extract_keywords(question)
        if not keywords:
            return 1.0
        answer_words = set(tokenize(answer))
        return sum(1 for keyword in keywords if keyword in answer_words) / len(keywords)

    def _relevance(self, question: str, vocabulary: Set[str], confidence: float) -> float:
        keywords = extract_keywords(question)
        if not vocabulary:
            coverage = 0.0
        elif not keywords:
            coverage = 1.0
        else:
            coverage = sum(1 for keyword in keywords if keyword in vocabulary) / len(keywords)
        return (coverage + self._clamp(confidence)) / 2

    def _compliance_flags(self, answer: str, sources: List[str]) -> List[str]:
        if not sources:
            return [ComplianceFlag.NO_SUPPORTING_SOURCES.value]

        flags: List[str] = []

        source_numbers: Set[str] = set()
        for source in sources:
            source_numbers.update(extract_numbers(source))
        if any(number not in source_numbers for number in extract_numbers(answer)):
            flags.append(ComplianceFlag.UNSUPPORTED_NUMERIC_CLAIM.value)

        if self._contradicts(answer, sources):
            flags.append(ComplianceFlag.CONTRADICTS_SOURCE.value)

        return flags

    @staticmethod
    def _contradicts(answer: str, sources: List[str]) -> bool:
        """Polarity mismatch between an answer sentence and a closely matching source sentence."""
        source_sentences = []
        for source in sources:
            for sentence in split_sentences(source):
                words = set(content_words(sentence)) - NEGATION_MARKERS
                if words:
                    source_sentences.append((words, has_negation(tokenize(sentence))))

        for sentence in split_sentences(answer):
            words = set(content_words(sentence)) - NEGATION_MARKERS
            if not words:
                continue
            negated = has_negation(tokenize(sentence))
            for source_words, source_negated in source_sentences:
                shared = len(words & source_words)
                if shared < CONTRADICTION_MIN_SHARED:
                    continue
                if shared / len(words) >= CONTRADICTION_OVERLAP and negated != source_negated:
                    return True
        return False

    @staticmethod
    def _clamp(value: float) -> float:
        return max(0.0, min(1.0, value))
