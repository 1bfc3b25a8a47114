"""Pluggable similarity strategies for clustering and merging.

Every strategy satisfies ``compare(a, b) -> score in [0, 1]`` and
``best_match(text, candidates) -> (index, score) | None``:

- ``LLMSimilarity``: judged by the classification capability
- ``EmbeddingSimilarity``: cosine over an embedder, with an owned cache
- ``LexicalSimilarity``: token Jaccard, no model needed

Embedding caches are explicit objects handed to the strategy. A cache is
created once per process and invalidated when the embedding provider
changes; nothing is held at module level.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
import threading
from collections import OrderedDict
from typing import Any, List, Optional, Sequence, Tuple

from neon_soul.classification import CONFIDENCE_SCORES, parse_json_object
from neon_soul.protocols import ClassificationCapability, ConfigurationError, Embedder
from neon_soul.sanitize import INJECTION_NOTICE, delimit

logger = logging.getLogger(__name__)

# Candidates per batched best-match prompt
MAX_BATCH_SIZE = 20

_TOKEN_RE = re.compile(r"[a-z0-9']+")

_STOPWORDS = frozenset(
    {
        "a", "an", "and", "the", "to", "of", "in", "on", "for", "is", "are", "be",
        "it", "that", "this", "with", "as", "at", "by", "or", "i", "my", "me",
    }
)  # fmt: skip


def tokenize(text: str) -> List[str]:
    return [t for t in _TOKEN_RE.findall((text or "").lower()) if t not in _STOPWORDS]


def jaccard(text_a: str, text_b: str) -> float:
    """Token-set Jaccard similarity."""
    a, b = set(tokenize(text_a)), set(tokenize(text_b))
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped to [0, 1]. Zero vectors score 0."""
    if len(a) != len(b):
        raise ValueError(f"vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


class _LinearBestMatch:
    """best_match by scoring every candidate with compare()."""

    def compare(self, text_a: str, text_b: str) -> float:  # pragma: no cover - abstract
        raise NotImplementedError

    def best_match(self, text: str, candidates: Sequence[str]) -> Optional[Tuple[int, float]]:
        best: Optional[Tuple[int, float]] = None
        for i, candidate in enumerate(candidates):
            if not candidate or not candidate.strip():
                continue
            score = self.compare(text, candidate)
            # Strictly greater keeps the earliest candidate on ties
            if best is None or score > best[1]:
                best = (i, score)
        return best


# =============================================================================
# Lexical
# =============================================================================


class LexicalSimilarity(_LinearBestMatch):
    """Token Jaccard similarity. Deterministic and model-free."""

    strategy_id = "lexical"

    def compare(self, text_a: str, text_b: str) -> float:
        return jaccard(text_a, text_b)


# =============================================================================
# Embeddings
# =============================================================================


class HashEmbedder:
    """Local character-trigram embedder (feature hashing).

    No model download; good enough to group paraphrases that share
    vocabulary. Swap in a real embedder for semantic matching.
    """

    def __init__(self, dimension: int = 256) -> None:
        if dimension <= 0:
            raise ConfigurationError(f"embedding dimension must be positive, got {dimension}")
        self._dimension = dimension

    @property
    def provider_id(self) -> str:
        return f"ngram-v1:{self._dimension}"

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self._dimension
        for token in tokenize(text):
            padded = f"#{token}#"
            for i in range(max(1, len(padded) - 2)):
                gram = padded[i : i + 3]
                digest = hashlib.md5(gram.encode("utf-8"), usedforsecurity=False).digest()
                slot = int.from_bytes(digest[:4], "little") % self._dimension
                sign = 1.0 if digest[4] & 1 else -1.0
                vector[slot] += sign
        norm = math.sqrt(sum(v * v for v in vector))
        if norm:
            vector = [v / norm for v in vector]
        return vector


class EmbeddingCache:
    """Bounded LRU cache of embeddings, bound to one provider id.

    Lifecycle: create once per process and pass it to every
    EmbeddingSimilarity. ``bind()`` with a different provider id clears it.
    A failed embed is never cached.
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        if max_entries <= 0:
            raise ConfigurationError(f"max_entries must be positive, got {max_entries}")
        self._max_entries = max_entries
        self._entries: "OrderedDict[str, List[float]]" = OrderedDict()
        self._provider_id: Optional[str] = None
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def provider_id(self) -> Optional[str]:
        return self._provider_id

    def __len__(self) -> int:
        return len(self._entries)

    def bind(self, provider_id: str) -> None:
        with self._lock:
            if self._provider_id != provider_id:
                if self._provider_id is not None:
                    logger.info(
                        "Embedding provider changed (%s -> %s); clearing cache",
                        self._provider_id,
                        provider_id,
                    )
                self._entries.clear()
                self._provider_id = provider_id

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_or_compute(self, text: str, embedder: Embedder) -> List[float]:
        self.bind(embedder.provider_id)
        with self._lock:
            cached = self._entries.get(text)
            if cached is not None:
                self._entries.move_to_end(text)
                self.hits += 1
                return cached
            self.misses += 1
        vector = embedder.embed(text)
        with self._lock:
            self._entries[text] = vector
            if len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return vector


class EmbeddingSimilarity(_LinearBestMatch):
    """Cosine similarity over an embedder, memoized in an owned cache."""

    def __init__(self, embedder: Optional[Embedder] = None, cache: Optional[EmbeddingCache] = None):
        self._embedder = embedder or HashEmbedder()
        self._cache = cache if cache is not None else EmbeddingCache()

    @property
    def strategy_id(self) -> str:
        return f"embedding:{self._embedder.provider_id}"

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    def compare(self, text_a: str, text_b: str) -> float:
        if not (text_a or "").strip() or not (text_b or "").strip():
            return 0.0
        va = self._cache.get_or_compute(text_a, self._embedder)
        vb = self._cache.get_or_compute(text_b, self._embedder)
        return cosine_similarity(va, vb)


# =============================================================================
# LLM-judged
# =============================================================================

BEST_MATCH_TEMPLATE = (
    "Find the candidate that is semantically equivalent to the target statement. "
    "The statements should express the same core meaning, even if worded differently.\n\n"
    "Target statement:\n{target}\n\n"
    "Candidates:\n{candidates}\n\n"
    "{notice}\n\n"
    "If one candidate matches, respond with ONLY a JSON object:\n"
    '{{"bestMatchIndex": <number>, "confidence": "high"/"medium"/"low"}}\n'
    "If NO candidate is semantically equivalent, respond with:\n"
    '{{"bestMatchIndex": -1, "noMatch": true}}'
)


def parse_best_match(reply: str, candidate_count: int) -> Optional[Tuple[int, float]]:
    """Parse a batched best-match reply.

    Returns (index, score), (-1, 0.0) for an explicit no-match, or None
    when the reply is unusable.
    """
    data: Optional[dict[str, Any]] = parse_json_object(reply or "")
    if data is None:
        return None
    index = data.get("bestMatchIndex")
    if isinstance(index, bool) or not isinstance(index, int):
        return None
    if index == -1 or data.get("noMatch") is True:
        return (-1, 0.0)
    if not 0 <= index < candidate_count:
        return None
    label = data.get("confidence")
    score = CONFIDENCE_SCORES.get(label.strip().lower()) if isinstance(label, str) else None
    if score is None:
        return None
    return (index, score)


class LLMSimilarity:
    """Similarity judged by the classification capability.

    ``best_match`` sends candidates in batches of ``MAX_BATCH_SIZE`` and
    falls back to pairwise ``compare_similarity`` when a batch reply is
    unusable. Unavailable comparisons score 0.0, so an outage creates new
    principles rather than merging unrelated ones.
    """

    strategy_id = "llm"

    def __init__(self, capability: ClassificationCapability, batch_size: int = MAX_BATCH_SIZE):
        if batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")
        self._capability = capability
        self._batch_size = batch_size

    def compare(self, text_a: str, text_b: str) -> float:
        score = self._capability.compare_similarity(text_a, text_b)
        return 0.0 if score is None else score

    def best_match(self, text: str, candidates: Sequence[str]) -> Optional[Tuple[int, float]]:
        if not (text or "").strip():
            return None
        indexed = [(i, c) for i, c in enumerate(candidates) if c and c.strip()]
        best: Optional[Tuple[int, float]] = None

        for start in range(0, len(indexed), self._batch_size):
            batch = indexed[start : start + self._batch_size]
            result = self._batch_match(text, batch)
            if result is None:
                for original_index, candidate in batch:
                    score = self.compare(text, candidate)
                    if best is None or score > best[1]:
                        best = (original_index, score)
                continue
            local_index, score = result
            if local_index >= 0 and (best is None or score > best[1]):
                best = (batch[local_index][0], score)

        return best

    def _batch_match(
        self, text: str, batch: List[Tuple[int, str]]
    ) -> Optional[Tuple[int, float]]:
        listing = "\n".join(
            f"{i}.\n{delimit(candidate, 'candidate')}" for i, (_, candidate) in enumerate(batch)
        )
        prompt = BEST_MATCH_TEMPLATE.format(
            target=delimit(text, "target"), candidates=listing, notice=INJECTION_NOTICE
        )
        reply = self._capability.generate(prompt)
        if reply is None:
            return None
        parsed = parse_best_match(reply, len(batch))
        if parsed is None:
            logger.warning("Batch best-match reply unusable; falling back to pairwise compare")
        return parsed


def create_similarity(
    name: str,
    capability: Optional[ClassificationCapability] = None,
    *,
    cache: Optional[EmbeddingCache] = None,
):
    """Build a strategy by configuration name: 'llm', 'embedding' or 'lexical'."""
    if name == "llm":
        if capability is None:
            raise ConfigurationError("similarity 'llm' requires a classification capability")
        return LLMSimilarity(capability)
    if name == "embedding":
        return EmbeddingSimilarity(HashEmbedder(), cache)
    if name == "lexical":
        return LexicalSimilarity()
    raise ConfigurationError(f"unknown similarity strategy {name!r} (llm, embedding, lexical)")
