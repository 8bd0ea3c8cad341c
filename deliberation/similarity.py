"""Semantic similarity measurement between council responses."""
import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import httpx
import numpy as np
from sklearn.feature_extraction.text import CountVectorizer
from sklearn.metrics.pairwise import cosine_similarity
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from adapters.base_http import is_retryable_http_error
from deliberation.cache import SimilarityCache
from models.config import SimilarityConfig
from models.schema import SimilarityResult

logger = logging.getLogger(__name__)

CORE_ANSWER_PATTERN = re.compile(
    r"CORE_ANSWER:\s*(.+?)(?=\n\n|\nEXPLANATION:|\nAGREE_WITH:|$)",
    re.IGNORECASE | re.DOTALL,
)
AGREE_WITH_PATTERN = re.compile(r"AGREE_WITH:\s*(\S+)", re.IGNORECASE)

MAX_CORE_ANSWER_CHARS = 800

# Formatting and meta-commentary removed before sentence extraction
_META_PATTERNS = [
    (re.compile(r"\*\*Deliberation Response:.*?\*\*", re.IGNORECASE), ""),
    (re.compile(r"^#+\s*Deliberation.*$", re.IGNORECASE | re.MULTILINE), ""),
    (re.compile(r"Round \d+.*?:", re.IGNORECASE), ""),
    (re.compile(r"Council Member \d+.*?responses?:?", re.IGNORECASE), ""),
    (re.compile(r"\*\*(Analysis|Critique|Observations?).*?\*\*", re.IGNORECASE), ""),
    (re.compile(r"the debate has shifted", re.IGNORECASE), ""),
    (re.compile(r"\*\*"), ""),
    (re.compile(r"^[-*]\s+", re.MULTILINE), ""),
]

_META_PREFIXES = ("let me", "i will", "i'll")
_META_FRAGMENTS = (
    "council member",
    "round ",
    "deliberation",
    "negotiate",
    "consensus",
    "agree with",
)


def _first_substantive_sentences(content: str, limit: int = 3) -> str:
    cleaned = content
    for pattern, replacement in _META_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    cleaned = cleaned.strip()

    sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", cleaned)]
    substantive = [
        s
        for s in sentences
        if len(s) > 15
        and not s.lower().startswith(_META_PREFIXES)
        and not any(fragment in s.lower() for fragment in _META_FRAGMENTS)
    ]
    return " ".join(substantive[:limit])[:MAX_CORE_ANSWER_CHARS]


def extract_core_answer(content: str) -> str:
    """
    Reduce a response to the part that carries its position.

    Structured responses yield their CORE_ANSWER section. A response that
    names another member in AGREE_WITH is prefixed with an ``[AGREES:id]``
    marker. Otherwise the first three substantive sentences are kept.

    Falls back to the trimmed content (capped) when nothing substantive is
    found, so a terse answer is still comparable.
    """
    core_match = CORE_ANSWER_PATTERN.search(content)
    if core_match:
        return core_match.group(1).strip()

    summary = _first_substantive_sentences(content)

    agree_match = AGREE_WITH_PATTERN.search(content)
    if agree_match and agree_match.group(1).lower() != "none":
        return f"[AGREES:{agree_match.group(1)}] {summary}".strip()

    if not summary:
        return content.strip()[:MAX_CORE_ANSWER_CHARS]
    return summary


# =============================================================================
# Similarity Backend Interface
# =============================================================================


class SimilarityBackend(ABC):
    """Abstract base class for similarity computation backends."""

    @abstractmethod
    async def compute_similarity(
        self, text1: str, text2: str, model: Optional[str] = None
    ) -> float:
        """
        Compute similarity between two texts.

        Args:
            text1: First text
            text2: Second text
            model: Embedding model name, for backends that take one

        Returns:
            Similarity score between 0.0 (completely different) and 1.0 (identical)
        """
        pass


class TermFrequencyBackend(SimilarityBackend):
    """
    Term-frequency cosine similarity.

    Runs locally with no network access, so it is also the fallback used
    once the embedding service is considered unavailable.
    """

    def __init__(self):
        # Keep single-character tokens ("C", "R") that the default pattern drops
        self.vectorizer = CountVectorizer(token_pattern=r"(?u)\b\w+\b")

    def similarity(self, text1: str, text2: str) -> float:
        if not text1.strip() or not text2.strip():
            return 0.0

        try:
            counts = self.vectorizer.fit_transform([text1, text2])
        except ValueError:
            # Empty vocabulary: only punctuation on at least one side
            return 1.0 if text1.strip() == text2.strip() else 0.0

        return float(cosine_similarity(counts[0], counts[1])[0][0])

    async def compute_similarity(
        self, text1: str, text2: str, model: Optional[str] = None
    ) -> float:
        return self.similarity(text1, text2)


class EmbeddingAPIBackend(SimilarityBackend):
    """
    OpenAI-compatible embeddings endpoint.

    POST {base_url}/embeddings with ``{"model": ..., "input": [...]}``.
    Vectors are cached per (model, text) so a round of N responses costs at
    most N embeddings however many pairs are compared.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: int = 30,
        default_model: str = "text-embedding-3-large",
        cache: Optional[SimilarityCache] = None,
        max_retries: int = 2,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.default_model = default_model
        self.cache = cache or SimilarityCache()
        self.max_retries = max_retries

    async def embed(self, texts: List[str], model: str) -> List[List[float]]:
        """Return one embedding per text, fetching only uncached ones."""
        found = {}
        for text in dict.fromkeys(texts):
            cached = self.cache.get_embedding(model, text)
            if cached is not None:
                found[text] = cached

        missing = [t for t in dict.fromkeys(texts) if t not in found]
        if missing:
            vectors = await self._request_embeddings(missing, model)
            if len(vectors) != len(missing):
                raise ValueError(
                    f"Embedding response has {len(vectors)} vectors for {len(missing)} inputs"
                )
            for text, vector in zip(missing, vectors):
                self.cache.put_embedding(model, text, vector)
                found[text] = vector

        return [found[t] for t in texts]

    async def _request_embeddings(self, texts: List[str], model: str) -> List[List[float]]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {"model": model, "input": texts}
        url = f"{self.base_url}/embeddings"

        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception(is_retryable_http_error),
            reraise=True,
        )
        async def _make_request():
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=headers, json=body)
                response.raise_for_status()
                return response.json()

        response_json = await _make_request()
        if "data" not in response_json:
            raise KeyError(
                f"Embedding response missing 'data' field. "
                f"Received keys: {list(response_json.keys())}"
            )
        items = sorted(response_json["data"], key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]

    async def compute_similarity(
        self, text1: str, text2: str, model: Optional[str] = None
    ) -> float:
        vec1, vec2 = await self.embed([text1, text2], model or self.default_model)
        return _cosine(vec1, vec2)


class SentenceTransformerBackend(SimilarityBackend):
    """
    Local neural embeddings via sentence-transformers.

    Requires the ``local-embeddings`` extra (~500MB model download). The
    model is loaded once per process and shared between instances.
    """

    # Class-level cache to share model across instances
    _model_cache = None
    _model_name_cache = None

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ImportError(
                "SentenceTransformerBackend requires sentence-transformers. "
                "Install with: pip install 'council-consensus[local-embeddings]'"
            ) from e

        if (
            SentenceTransformerBackend._model_cache is not None
            and SentenceTransformerBackend._model_name_cache == model_name
        ):
            logger.info(f"Reusing cached sentence transformer model: {model_name}")
            self.model = SentenceTransformerBackend._model_cache
        else:
            logger.info(f"Loading sentence transformer model: {model_name}")
            self.model = SentenceTransformer(model_name)
            SentenceTransformerBackend._model_cache = self.model
            SentenceTransformerBackend._model_name_cache = model_name

    async def compute_similarity(
        self, text1: str, text2: str, model: Optional[str] = None
    ) -> float:
        embeddings = await asyncio.to_thread(self.model.encode, [text1, text2])
        return _cosine(embeddings[0], embeddings[1])


def _cosine(vec1, vec2) -> float:
    a = np.asarray(vec1, dtype=float).reshape(1, -1)
    b = np.asarray(vec2, dtype=float).reshape(1, -1)
    if not a.any() or not b.any():
        return 0.0
    return float(cosine_similarity(a, b)[0][0])


# =============================================================================
# Similarity Measurer
# =============================================================================


class SimilarityMeasurer:
    """
    Scores agreement between council responses.

    Wraps a primary backend with a term-frequency fallback. Each upstream
    failure is scored with the fallback for that pair; after
    ``failure_threshold`` consecutive failures the measurer switches to the
    fallback permanently. Scores are clamped to [0, 1] and cached.
    """

    def __init__(
        self,
        backend: Optional[SimilarityBackend] = None,
        failure_threshold: int = 3,
        cache: Optional[SimilarityCache] = None,
        default_model: str = "text-embedding-3-large",
    ):
        self.fallback = TermFrequencyBackend()
        self.backend = backend or self.fallback
        self.failure_threshold = failure_threshold
        self.cache = cache or SimilarityCache()
        self.default_model = default_model
        self.consecutive_failures = 0
        self.using_fallback = self.backend is self.fallback

        logger.info(
            f"SimilarityMeasurer initialized with {self.backend.__class__.__name__}"
        )

    @classmethod
    def from_config(cls, config: SimilarityConfig, default_model: str) -> "SimilarityMeasurer":
        """Build a measurer with the backend named in configuration."""
        cache = SimilarityCache(
            score_cache_size=config.cache_size, embedding_cache_size=config.cache_size
        )
        backend: Optional[SimilarityBackend] = None
        if config.backend == "embedding":
            backend = EmbeddingAPIBackend(
                base_url=config.base_url,
                api_key=config.api_key,
                timeout=config.timeout,
                default_model=default_model,
                cache=cache,
            )
        elif config.backend == "sentence_transformer":
            backend = SentenceTransformerBackend(config.sentence_transformer_model)

        return cls(
            backend=backend,
            failure_threshold=config.failure_threshold,
            cache=cache,
            default_model=default_model,
        )

    async def calculate_text_similarity(
        self, text1: str, text2: str, model: Optional[str] = None
    ) -> float:
        """
        Similarity of two texts in [0, 1]. Symmetric; never raises for text input.

        Identical texts (after trimming) score 1.0 and an empty side scores 0.0
        without touching a backend.
        """
        if text1.strip() == text2.strip():
            return 1.0
        if not text1.strip() or not text2.strip():
            return 0.0

        model = model or self.default_model
        cached = self.cache.get_score(model, text1, text2)
        if cached is not None:
            return cached

        score, substituted = await self._score(text1, text2, model)
        if math.isnan(score):
            score = 0.0
        score = min(1.0, max(0.0, score))

        # A stand-in score must not outlive the backend outage
        if not substituted:
            self.cache.put_score(model, text1, text2, score)
        return score

    async def _score(self, text1: str, text2: str, model: str) -> Tuple[float, bool]:
        """Score a pair. The flag is True when the fallback stood in for a failed backend."""
        if self.using_fallback:
            return self.fallback.similarity(text1, text2), False

        try:
            score = await self.backend.compute_similarity(text1, text2, model)
        except Exception as e:
            self.consecutive_failures += 1
            logger.warning(
                f"{self.backend.__class__.__name__} failed "
                f"({self.consecutive_failures}/{self.failure_threshold}): {e}"
            )
            if self.consecutive_failures >= self.failure_threshold:
                self.using_fallback = True
                logger.warning(
                    "Similarity backend unavailable after "
                    f"{self.consecutive_failures} consecutive failures; "
                    "switching to term-frequency similarity"
                )
            return self.fallback.similarity(text1, text2), True

        self.consecutive_failures = 0
        return score, False

    async def average_pairwise_similarity(
        self, texts: List[str], model: Optional[str] = None
    ) -> float:
        """Mean similarity over all unordered pairs of core answers. N <= 1 gives 1.0."""
        if len(texts) <= 1:
            return 1.0

        cores = [extract_core_answer(t) for t in texts]
        scores = []
        for i in range(len(cores)):
            for j in range(i + 1, len(cores)):
                scores.append(await self.calculate_text_similarity(cores[i], cores[j], model))
        return sum(scores) / len(scores)

    async def similarity_matrix(
        self,
        member_ids: List[str],
        texts: List[str],
        model: Optional[str] = None,
        threshold: float = 0.7,
    ) -> SimilarityResult:
        """
        Full pairwise matrix for a round.

        Pairs scoring below ``threshold`` are reported in
        ``below_threshold_pairs`` as (member_a, member_b, score).
        """
        if len(member_ids) != len(texts):
            raise ValueError(
                f"Got {len(member_ids)} member ids for {len(texts)} responses"
            )

        n = len(texts)
        cores = [extract_core_answer(t) for t in texts]
        matrix = [[1.0] * n for _ in range(n)]
        pair_scores = []
        below = []

        for i in range(n):
            for j in range(i + 1, n):
                score = await self.calculate_text_similarity(cores[i], cores[j], model)
                matrix[i][j] = matrix[j][i] = score
                pair_scores.append(score)
                if score < threshold:
                    below.append((member_ids[i], member_ids[j], score))

        if not pair_scores:
            pair_scores = [1.0]

        return SimilarityResult(
            matrix=matrix,
            average_similarity=sum(pair_scores) / len(pair_scores),
            min_similarity=min(pair_scores),
            max_similarity=max(pair_scores),
            below_threshold_pairs=below,
        )
