"""Historical negotiation examples used to guide reconsideration prompts."""
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from deliberation.similarity import SimilarityBackend, TermFrequencyBackend
from models.schema import ExampleCategory, NegotiationExample
from persistence.storage import CouncilStorage

logger = logging.getLogger(__name__)

# Applied in order; URLs and emails first so their digits are not rewritten
PII_PATTERNS = [
    (re.compile(r"\bhttps?://\S+"), "[URL]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"), "[CREDIT_CARD]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN]"),
    (re.compile(r"\(\d{3}\)\s?\d{3}-\d{4}\b"), "[PHONE]"),
    (re.compile(r"\b\d{3}[-.]\d{3}[-.]\d{4}\b"), "[PHONE]"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP_ADDRESS]"),
    (re.compile(r"\b\d{4}-\d{2}-\d{2}\b"), "[DATE]"),
    (re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{4}\b"), "[DATE]"),
    (re.compile(r"\b(?:Mr|Mrs|Ms|Dr|Prof)\.?\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?\b"), "[NAME]"),
    (re.compile(r"\b\d{9}\b"), "[SSN]"),
    (re.compile(r"\b\d{5}(?:-\d{4})?\b"), "[ZIP_CODE]"),
]

SEED_EXAMPLES = [
    {
        "category": "endorsement",
        "query_context": "User asks for best practices in error handling",
        "disagreement": "Member A suggests try-catch everywhere, Member B suggests error boundaries",
        "resolution": "I agree with Member B. Error boundaries provide better UX and prevent app crashes.",
        "rounds_to_consensus": 1,
        "final_similarity": 0.92,
    },
    {
        "category": "endorsement",
        "query_context": "User asks about database selection for a web app",
        "disagreement": "Member A recommends PostgreSQL, Member B recommends MongoDB",
        "resolution": "I endorse Member A's PostgreSQL recommendation. The app needs ACID compliance.",
        "rounds_to_consensus": 1,
        "final_similarity": 0.88,
    },
    {
        "category": "endorsement",
        "query_context": "User asks about authentication methods",
        "disagreement": "Member A suggests JWT, Member B suggests sessions",
        "resolution": "I support Member B. Session-based auth is more secure for this use case.",
        "rounds_to_consensus": 2,
        "final_similarity": 0.85,
    },
    {
        "category": "refinement",
        "query_context": "User asks about API design patterns",
        "disagreement": "Member A prefers REST, Member B prefers GraphQL",
        "resolution": (
            "The choice depends on use case. REST for simple CRUD, GraphQL for complex "
            "data requirements with multiple relationships."
        ),
        "rounds_to_consensus": 3,
        "final_similarity": 0.87,
    },
    {
        "category": "refinement",
        "query_context": "User asks about testing strategies",
        "disagreement": "Member A emphasizes unit tests, Member B emphasizes integration tests",
        "resolution": (
            "A balanced approach is best: unit tests for business logic, integration "
            "tests for critical paths, end-to-end tests for user flows."
        ),
        "rounds_to_consensus": 2,
        "final_similarity": 0.89,
    },
    {
        "category": "refinement",
        "query_context": "User asks about state management in a frontend app",
        "disagreement": "Member A recommends a global store, Member B recommends local component state",
        "resolution": (
            "Local state is sufficient for small apps. Large apps with shared, complex "
            "state benefit from a global store."
        ),
        "rounds_to_consensus": 2,
        "final_similarity": 0.86,
    },
    {
        "category": "compromise",
        "query_context": "User asks about deployment frequency",
        "disagreement": "Member A suggests daily deployments, Member B suggests weekly",
        "resolution": (
            "Deploy twice weekly to balance velocity with stability, with daily "
            "deployments for critical fixes."
        ),
        "rounds_to_consensus": 3,
        "final_similarity": 0.82,
    },
    {
        "category": "compromise",
        "query_context": "User asks about test coverage targets",
        "disagreement": "Member A wants 90% coverage, Member B wants 70%",
        "resolution": (
            "Aim for 80% coverage with focus on critical paths. Don't sacrifice test "
            "quality for coverage metrics."
        ),
        "rounds_to_consensus": 2,
        "final_similarity": 0.85,
    },
]


def anonymize_text(text: str) -> str:
    """Replace URLs, emails, phone numbers and other identifiers with placeholders."""
    for pattern, replacement in PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def anonymize_example(example: NegotiationExample) -> NegotiationExample:
    return example.model_copy(
        update={
            "query_context": anonymize_text(example.query_context),
            "disagreement": anonymize_text(example.disagreement),
            "resolution": anonymize_text(example.resolution),
        }
    )


class ExampleSource(ABC):
    """Provides past negotiation resolutions relevant to a query."""

    @abstractmethod
    async def get_relevant_examples(self, query: str, count: int) -> List[NegotiationExample]:
        pass


class ExampleRepository(ExampleSource):
    """
    SQLite-backed example store.

    Examples are anonymized before they are stored. Relevance is the
    similarity between the query and each example's query context; the
    built-in seed examples are loaded the first time an empty store is read.
    """

    def __init__(
        self,
        storage: CouncilStorage,
        similarity: Optional[SimilarityBackend] = None,
        seed: bool = True,
    ):
        self.storage = storage
        self.similarity = similarity or TermFrequencyBackend()
        self.seed = seed
        self._seed_checked = False

    def _ensure_seeded(self) -> None:
        if self._seed_checked or not self.seed:
            return
        self._seed_checked = True
        if self.storage.count_examples() == 0:
            for data in SEED_EXAMPLES:
                self.storage.save_example(NegotiationExample(**data))
            logger.info(f"Seeded {len(SEED_EXAMPLES)} negotiation examples")

    async def store_example(self, example: NegotiationExample) -> str:
        """Anonymize and store an example. Returns its id."""
        return self.storage.save_example(anonymize_example(example))

    async def get_relevant_examples(self, query: str, count: int = 2) -> List[NegotiationExample]:
        """Up to ``count`` examples ranked by similarity of their query context to ``query``."""
        if count <= 0:
            return []
        self._ensure_seeded()

        candidates = self.storage.list_examples(limit=500)
        scored = []
        for index, example in enumerate(candidates):
            score = await self.similarity.compute_similarity(query, example.query_context)
            scored.append((score, index, example))

        # Highest score first; ties keep newest-first storage order
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [example for _, _, example in scored[:count]]

    async def get_examples_by_category(
        self, category: ExampleCategory, count: int = 2
    ) -> List[NegotiationExample]:
        """Newest examples of one category."""
        self._ensure_seeded()
        return self.storage.list_examples(category=category, limit=count)


class StaticExampleSource(ExampleSource):
    """In-memory examples (the seed set by default). Used when persistence is disabled."""

    def __init__(self, examples: Optional[List[NegotiationExample]] = None):
        if examples is None:
            examples = [NegotiationExample(**data) for data in SEED_EXAMPLES]
        self.examples = examples
        self.similarity = TermFrequencyBackend()

    async def get_relevant_examples(self, query: str, count: int) -> List[NegotiationExample]:
        if count <= 0:
            return []
        ranked = sorted(
            enumerate(self.examples),
            key=lambda item: (-self.similarity.similarity(query, item[1].query_context), item[0]),
        )
        return [example for _, example in ranked[:count]]
