"""Reconsideration prompts for negotiation rounds."""
import logging
import re
from typing import List, Optional, Sequence

from deliberation.similarity import extract_core_answer
from models.schema import Agreement, Exchange, NegotiationExample

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000
MAX_EXAMPLES = 2
MAX_POSITION_CHARS = 500
DISAGREEMENT_THRESHOLD = 0.7

_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(previous|all)\s+(instructions|prompts?)", re.IGNORECASE),
    re.compile(r"forget\s+(everything|all)", re.IGNORECASE),
    re.compile(r"system\s*:\s*", re.IGNORECASE),
    re.compile(r"show\s+(me\s+)?(your|the)\s+(prompt|instructions|system)", re.IGNORECASE),
    re.compile(r"\[INST\]|\[/INST\]|<<SYS>>|<</SYS>>"),
    re.compile(r"<[^>]*>"),
]
_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F-\x9F]")
_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

# Disagreements about presentation are not worth another round
_PRESENTATION_WORDS = ("format", "structure", "present")


def sanitize_query(query: str) -> str:
    """
    Neutralize a user query before it is embedded in a prompt.

    Caps the length, replaces code with placeholders, strips control
    characters, known injection phrases and markup, and collapses whitespace.
    """
    sanitized = query[:MAX_QUERY_LENGTH]
    sanitized = re.sub(r"```[\s\S]*?```", "[code block removed]", sanitized)
    sanitized = re.sub(r"`[^`]+`", "[code removed]", sanitized)
    # Newlines become spaces rather than vanishing so words stay separated
    sanitized = re.sub(r"\s+", " ", sanitized)
    sanitized = _CONTROL_CHARS.sub("", sanitized)

    for pattern in _INJECTION_PATTERNS:
        sanitized = pattern.sub("", sanitized)

    sanitized = re.sub(r"\s+", " ", sanitized)
    if sanitized.strip():
        sanitized = sanitized.strip()
    return sanitized


def _position(content: str) -> str:
    return extract_core_answer(content)[:MAX_POSITION_CHARS]


def _example_line(example: NegotiationExample) -> str:
    return f"{example.category}: {example.disagreement} -> {example.resolution}"


class PromptBuilder:
    """
    Builds the prompt each active member answers in a negotiation round.

    The default layout shows the question, every member's current core
    answer, the member's own previous position, a couple of past
    resolutions as style examples, and any factual disagreements, then asks
    for a CORE_ANSWER / EXPLANATION / AGREE_WITH response. A custom template
    replaces the layout; it may use the placeholders ``{{query}}``,
    ``{{responses}}``, ``{{examples}}``, ``{{own_position}}``,
    ``{{disagreements}}`` and ``{{agreements}}``.
    """

    def __init__(self, template: Optional[str] = None):
        self.template = template

    def build(
        self,
        prior_exchanges: Sequence[Exchange],
        own_previous_content: Optional[str],
        examples: Sequence[NegotiationExample],
        original_query: str,
        disagreements: Optional[List[str]] = None,
        agreements: Optional[List[Agreement]] = None,
    ) -> str:
        """Build one member's reconsideration prompt. Pure given its inputs."""
        query = sanitize_query(original_query)
        examples = list(examples)[:MAX_EXAMPLES]
        disagreements = disagreements or []
        agreements = agreements or []

        if self.template:
            return self._render_template(
                query, prior_exchanges, own_previous_content, examples,
                disagreements, agreements,
            )

        parts = [
            "=== CONSENSUS ROUND ===",
            "",
            "You are helping reach consensus on the SUBSTANCE of an answer. "
            "Focus ONLY on factual accuracy and completeness.",
            "",
            "CRITICAL INSTRUCTIONS:",
            "- DO NOT discuss HOW to present or format the answer",
            "- DO NOT comment on the negotiation process itself",
            "- Focus ONLY on what the correct, factual answer should be",
            "- If you agree with another response's SUBSTANCE, adopt it exactly",
            "",
            "USER QUESTION:",
            query,
            "",
            "CURRENT POSITIONS (core answers only):",
        ]
        for exchange in prior_exchanges:
            parts.append(f"[{exchange.council_member_id}]: {_position(exchange.content)}")
            parts.append("")

        if own_previous_content:
            parts.append("YOUR PREVIOUS POSITION:")
            parts.append(_position(own_previous_content))
            parts.append("")

        if examples:
            parts.append("HOW SIMILAR DISAGREEMENTS WERE RESOLVED:")
            for example in examples:
                parts.append(f"- {_example_line(example)}")
            parts.append("")

        factual = [
            d for d in disagreements
            if not any(word in d.lower() for word in _PRESENTATION_WORDS)
        ]
        if factual:
            parts.append("FACTUAL DISAGREEMENTS TO RESOLVE:")
            for index, disagreement in enumerate(factual, start=1):
                parts.append(f"{index}. {disagreement}")
            parts.append("")

        parts.extend([
            "YOUR RESPONSE:",
            "Provide your answer in this EXACT format:",
            "",
            "CORE_ANSWER: [One clear, direct answer to the user's question - 1-3 sentences max]",
            "",
            "EXPLANATION: [Brief supporting explanation if needed - keep concise]",
            "",
            "AGREE_WITH: [If your core answer matches another member's, write their ID "
            'here, otherwise write "NONE"]',
            "",
            "Remember: Consensus is about agreeing on FACTS, not on presentation style.",
        ])
        return "\n".join(parts)

    def _render_template(
        self,
        query: str,
        prior_exchanges: Sequence[Exchange],
        own_previous_content: Optional[str],
        examples: List[NegotiationExample],
        disagreements: List[str],
        agreements: List[Agreement],
    ) -> str:
        values = {
            "query": query,
            "responses": "\n\n".join(
                f"Member {e.council_member_id}: {e.content}" for e in prior_exchanges
            ),
            "examples": "\n".join(_example_line(e) for e in examples),
            "own_position": _position(own_previous_content) if own_previous_content else "",
            "disagreements": "\n".join(disagreements),
            "agreements": "\n".join(
                f"{', '.join(a.member_ids)}: {a.position}" for a in agreements
            ),
        }
        # Unknown placeholders are left in place
        return _PLACEHOLDER.sub(
            lambda m: values.get(m.group(1), m.group(0)), self.template
        )

    def identify_disagreements(
        self,
        exchanges: Sequence[Exchange],
        matrix: List[List[float]],
        threshold: float = DISAGREEMENT_THRESHOLD,
    ) -> List[str]:
        """Describe each pair of members whose similarity is below ``threshold``."""
        disagreements = []
        for i in range(len(exchanges)):
            for j in range(i + 1, len(exchanges)):
                if matrix[i][j] >= threshold:
                    continue
                diff = _differences(exchanges[i].content, exchanges[j].content)
                if diff:
                    disagreements.append(
                        f"Members {exchanges[i].council_member_id} and "
                        f"{exchanges[j].council_member_id} disagree: {diff}"
                    )
        return disagreements

    def extract_agreements(
        self,
        exchanges: Sequence[Exchange],
        matrix: List[List[float]],
        threshold: float,
    ) -> List[Agreement]:
        """
        Group members whose answers agree.

        Each pair at or above ``threshold`` seeds a group; a third member
        joins when it agrees with both seeds. Pairs already inside a group
        do not seed another. Cohesion is the mean similarity within the group.
        """
        agreements = []
        covered = set()
        ids = [e.council_member_id for e in exchanges]

        for i in range(len(exchanges)):
            for j in range(i + 1, len(exchanges)):
                if matrix[i][j] < threshold or (i, j) in covered:
                    continue

                members = [i, j] + [
                    k for k in range(len(exchanges))
                    if k not in (i, j)
                    and matrix[i][k] >= threshold
                    and matrix[j][k] >= threshold
                ]
                members.sort()

                pairs = [
                    (a, b) for idx, a in enumerate(members) for b in members[idx + 1:]
                ]
                cohesion = sum(matrix[a][b] for a, b in pairs) / len(pairs)
                covered.update(pairs)

                agreements.append(
                    Agreement(
                        member_ids=[ids[m] for m in members],
                        position=exchanges[i].content[:200],
                        cohesion=cohesion,
                    )
                )
        return agreements


def _differences(content1: str, content2: str) -> Optional[str]:
    words1 = list(dict.fromkeys(content1.lower().split()))
    words2 = list(dict.fromkeys(content2.lower().split()))
    set1, set2 = set(words1), set(words2)

    unique1 = [w for w in words1 if w not in set2 and len(w) > 3]
    unique2 = [w for w in words2 if w not in set1 and len(w) > 3]
    if not unique1 and not unique2:
        return None

    differences = []
    if unique1:
        differences.append(f"Response 1 emphasizes: {', '.join(unique1[:3])}")
    if unique2:
        differences.append(f"Response 2 emphasizes: {', '.join(unique2[:3])}")
    return "; ".join(differences)
