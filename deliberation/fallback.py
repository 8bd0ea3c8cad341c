"""Offline synthesis used when negotiation does not converge."""
import logging
import re
from collections import Counter
from typing import Dict, List, Optional, Tuple

from models.schema import (Confidence, ConsensusDecision, DeliberationThread,
                           Exchange, FallbackStrategy, UserRequest)

logger = logging.getLogger(__name__)

GROUPING_THRESHOLD = 0.7
MAX_THEMES = 10


def extract_words(content: str) -> set:
    """Lowercased words longer than two characters, punctuation removed."""
    normalized = re.sub(r"[^\w\s]", " ", content.lower())
    return {word for word in normalized.split() if len(word) > 2}


def word_similarity(words1: set, words2: set) -> float:
    """Jaccard similarity of two word sets."""
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def latest_by_member(thread: DeliberationThread) -> List[Exchange]:
    """Each member's most recent exchange, in order of first appearance."""
    latest: Dict[str, Exchange] = {}
    for round_ in thread.rounds:
        for exchange in round_.exchanges:
            latest[exchange.council_member_id] = exchange
    return list(latest.values())


class FallbackSynthesizer:
    """
    Deterministic synthesis from text already collected in the thread.

    No provider is called. Each member is represented by its latest
    exchange, so a member dropped mid-negotiation still contributes its
    last position.

    Strategies:
        consensus-extraction: group near-identical answers and lead with the
            largest group, listing the others as alternatives.
        weighted-fusion: every member's answer tagged with its weight,
            heaviest first.
        meta-synthesis: every member's answer followed by the themes the
            answers share.
    """

    def __init__(self, weights: Optional[Dict[str, float]] = None):
        self.weights = weights or {}

    def synthesize(
        self, request: UserRequest, thread: DeliberationThread, strategy: FallbackStrategy
    ) -> ConsensusDecision:
        """
        Build a decision from ``thread`` with the named strategy.

        Raises:
            RuntimeError: If the thread holds no exchanges
            ValueError: If the strategy is unknown
        """
        exchanges = latest_by_member(thread)
        if not exchanges:
            raise RuntimeError(
                f"Cannot synthesize request {request.id}: thread has no responses"
            )

        agreement_level = self._agreement_level(exchanges)

        if strategy == "consensus-extraction":
            content, confidence = self._consensus_extraction(exchanges, agreement_level)
        elif strategy == "weighted-fusion":
            content, confidence = self._weighted_fusion(exchanges, agreement_level)
        elif strategy == "meta-synthesis":
            content, confidence = self._meta_synthesis(exchanges, agreement_level)
        else:
            raise ValueError(f"Unknown fallback strategy: '{strategy}'")

        logger.info(
            f"Fallback synthesis for request {request.id} using {strategy} "
            f"({len(exchanges)} members, agreement {agreement_level:.2f})"
        )

        return ConsensusDecision(
            content=content,
            confidence=confidence,
            agreement_level=agreement_level,
            synthesis_strategy=strategy,
            contributing_members=[e.council_member_id for e in exchanges],
        )

    def _agreement_level(self, exchanges: List[Exchange]) -> float:
        if len(exchanges) <= 1:
            return 1.0

        word_sets = [extract_words(e.content) for e in exchanges]
        scores = [
            word_similarity(word_sets[i], word_sets[j])
            for i in range(len(word_sets))
            for j in range(i + 1, len(word_sets))
        ]
        return sum(scores) / len(scores)

    def _group(self, exchanges: List[Exchange]) -> List[List[Exchange]]:
        groups = []
        used = set()
        word_sets = [extract_words(e.content) for e in exchanges]

        for i, exchange in enumerate(exchanges):
            if i in used:
                continue
            group = [exchange]
            used.add(i)
            for j in range(i + 1, len(exchanges)):
                if j not in used and word_similarity(word_sets[i], word_sets[j]) > GROUPING_THRESHOLD:
                    group.append(exchanges[j])
                    used.add(j)
            groups.append(group)
        return groups

    def _consensus_extraction(
        self, exchanges: List[Exchange], agreement_level: float
    ) -> Tuple[str, Confidence]:
        groups = self._group(exchanges)
        majority = max(groups, key=len)
        majority_content = "\n\n".join(e.content for e in majority)

        if len(groups) == 1:
            content = f"All council members agree:\n\n{majority_content}"
        else:
            content = (
                f"Majority position ({len(majority)}/{len(exchanges)} members):"
                f"\n\n{majority_content}\n\nAlternative perspectives:\n\n"
            )
            minorities = [g for g in groups if g is not majority]
            for index, group in enumerate(minorities, start=2):
                content += f"Position {index} ({len(group)} members):\n{group[0].content}\n\n"

        if agreement_level > 0.8:
            confidence = "high"
        elif agreement_level > 0.5:
            confidence = "medium"
        else:
            confidence = "low"
        return content, confidence

    def _weighted_fusion(
        self, exchanges: List[Exchange], agreement_level: float
    ) -> Tuple[str, Confidence]:
        weight_of = {e.council_member_id: self.weights.get(e.council_member_id, 1.0) for e in exchanges}
        # Stable sort keeps member order among equal weights
        ordered = sorted(exchanges, key=lambda e: -weight_of[e.council_member_id])

        content = "Weighted synthesis of council responses:\n\n"
        for exchange in ordered:
            member_id = exchange.council_member_id
            content += f"[Weight: {weight_of[member_id]:.2f}] {member_id}:\n{exchange.content}\n\n"

        spread = max(weight_of.values()) - min(weight_of.values())
        if spread < 0.5 and agreement_level > 0.7:
            confidence = "high"
        elif agreement_level > 0.5:
            confidence = "medium"
        else:
            confidence = "low"
        return content, confidence

    def _meta_synthesis(
        self, exchanges: List[Exchange], agreement_level: float
    ) -> Tuple[str, Confidence]:
        content = "Meta-synthesis of council deliberation:\n\n"
        for exchange in exchanges:
            content += f"{exchange.council_member_id}:\n{exchange.content}\n\n"
        content += "\nSynthesized conclusion:\n" + self._common_themes(exchanges)

        if agreement_level > 0.7:
            confidence = "high"
        elif agreement_level > 0.5:
            confidence = "medium"
        else:
            confidence = "low"
        return content, confidence

    @staticmethod
    def _common_themes(exchanges: List[Exchange]) -> str:
        frequency = Counter()
        for exchange in exchanges:
            # Sorted so ties break alphabetically rather than by set order
            frequency.update(sorted(extract_words(exchange.content)))

        themes = [
            word
            for word, count in sorted(frequency.items(), key=lambda item: (-item[1], item[0]))
            if count > 1
        ][:MAX_THEMES]
        if not themes:
            return "Council members provided diverse perspectives with limited overlap."
        return f"Common themes across responses: {', '.join(themes)}"
