"""
Embedding Service

Generates text embeddings through a Jina-compatible embeddings API.
Provides:
- Single and batch embedding requests with a bounded timeout
- Article embedding (title + description + content)
- Bounded in-memory LRU cache with hit/miss statistics
- Cosine similarity helper
"""

import os
import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, asdict
from typing import List, Dict, Optional, Any, Sequence, Tuple

import numpy as np
import requests
from dotenv import load_dotenv

from ..exceptions import (
    EmptyInputError,
    NoValidInputError,
    EmbeddingAuthError,
    UpstreamError,
)

load_dotenv()

logger = logging.getLogger(__name__)

MAX_ARTICLE_TEXT_CHARS = 8000
DEFAULT_CACHE_SIZE = 1000


@dataclass
class CacheStats:
    """Statistics for cache performance tracking."""
    hits: int = 0
    misses: int = 0
    total_requests: int = 0
    cache_size: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        return self.hits / self.total_requests if self.total_requests > 0 else 0.0

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            **asdict(self),
            'hit_rate': self.hit_rate
        }


def cosine_similarity(embedding1: Sequence[float], embedding2: Sequence[float]) -> float:
    """
    Cosine similarity between two equal-length vectors.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length
    """
    a = np.asarray(embedding1, dtype=np.float64)
    b = np.asarray(embedding2, dtype=np.float64)

    if a.shape != b.shape:
        raise ValueError("Embeddings must have the same length")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


class EmbeddingService:
    """
    Client for a Jina-compatible embeddings endpoint.

    Safe for concurrent use: every call issues an independent request and
    the cache is guarded by a lock.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: str = "https://api.jina.ai/v1/embeddings",
        model: str = "jina-embeddings-v2-base-en",
        timeout: int = 30,
        enable_cache: bool = True,
        max_cache_size: int = DEFAULT_CACHE_SIZE
    ):
        """
        Initialize the embedding service.

        Args:
            api_key: Bearer credential (default: JINA_API_KEY from .env)
            api_url: Embeddings endpoint URL
            model: Embedding model identifier
            timeout: Request timeout in seconds
            enable_cache: Cache embeddings in memory by text hash
            max_cache_size: Cached vectors kept before evicting the least recently used
        """
        self.api_key = api_key if api_key is not None else os.getenv('JINA_API_KEY', '')
        self.api_url = api_url
        self.model = model
        self.timeout = timeout
        self.enable_cache = enable_cache

        self.max_cache_size = max_cache_size

        self._memory_cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._cache_stats = CacheStats()
        self._cache_lock = threading.Lock()

        logger.info(f"Initialized EmbeddingService with model: {self.model}")

    def _compute_hash(self, text: str) -> str:
        """SHA-256 of model and text, used as the cache key."""
        return hashlib.sha256(f"{self.model}:{text}".encode('utf-8')).hexdigest()

    def _request_embeddings(self, texts: List[str]) -> Tuple[List[np.ndarray], str, Dict[str, Any]]:
        """
        POST texts to the embeddings endpoint.

        Returns:
            Tuple of (vectors, model identifier, usage)

        Raises:
            EmbeddingAuthError: If no API key is configured
            UpstreamError: On connection failure, timeout, non-2xx or malformed response
        """
        if not self.api_key:
            raise EmbeddingAuthError("Embedding API key is required")

        try:
            response = requests.post(
                self.api_url,
                json={
                    "input": texts,
                    "model": self.model
                },
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json"
                },
                timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
            data = body['data']

            if len(data) != len(texts):
                raise UpstreamError(
                    f"Embedding API returned {len(data)} vectors for {len(texts)} inputs"
                )

            vectors = [np.array(item['embedding'], dtype=np.float32) for item in data]
            return vectors, body.get('model', self.model), body.get('usage', {})

        except requests.exceptions.Timeout:
            raise UpstreamError(f"Embedding request timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError:
            raise UpstreamError(f"Unable to connect to embedding API at {self.api_url}")
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else 'unknown'
            logger.error(f"Embedding API error {status}: {e}")
            raise UpstreamError(f"Embedding API returned HTTP {status}")
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamError(f"Unexpected embedding API response format: {e}")
        except requests.exceptions.RequestException as e:
            raise UpstreamError(f"Error calling embedding API: {e}")

    def embed(self, text: str) -> np.ndarray:
        """
        Generate the embedding for a single text.

        Args:
            text: Input text

        Returns:
            Embedding vector as numpy array

        Raises:
            EmptyInputError: If text is blank
            EmbeddingAuthError: If no API key is configured
            UpstreamError: If the API call fails
        """
        if not text or not text.strip():
            raise EmptyInputError("Text cannot be empty")

        text_hash = self._compute_hash(text)
        with self._cache_lock:
            self._cache_stats.total_requests += 1
            if self.enable_cache and text_hash in self._memory_cache:
                self._cache_stats.hits += 1
                self._memory_cache.move_to_end(text_hash)
                logger.debug(f"Cache hit for text hash: {text_hash[:8]}...")
                return self._memory_cache[text_hash]
            self._cache_stats.misses += 1

        vectors, model, usage = self._request_embeddings([text])
        embedding = vectors[0]
        logger.debug(f"Embedded text with {model} ({len(embedding)} dims, usage={usage})")

        if self.enable_cache:
            self._cache_put(text_hash, embedding)

        return embedding

    def _cache_put(self, text_hash: str, embedding: np.ndarray) -> None:
        with self._cache_lock:
            self._memory_cache[text_hash] = embedding
            self._memory_cache.move_to_end(text_hash)
            while len(self._memory_cache) > self.max_cache_size:
                self._memory_cache.popitem(last=False)
                self._cache_stats.evictions += 1
            self._cache_stats.cache_size = len(self._memory_cache)

    def embed_batch(self, texts: List[str]) -> List[np.ndarray]:
        """
        Generate embeddings for several texts in one request.

        Blank entries are dropped before calling the API, so the result
        aligns with the non-blank inputs only.

        Raises:
            NoValidInputError: If every text is blank
            EmbeddingAuthError: If no API key is configured
            UpstreamError: If the API call fails
        """
        valid_texts = [text for text in (texts or []) if text and text.strip()]
        if not valid_texts:
            raise NoValidInputError("No valid texts to embed")

        if len(valid_texts) < len(texts):
            logger.warning(f"Dropped {len(texts) - len(valid_texts)} blank texts from batch")

        start_time = time.time()
        vectors, model, usage = self._request_embeddings(valid_texts)
        elapsed = time.time() - start_time

        logger.info(f"Embedded {len(vectors)} texts with {model} in {elapsed:.2f}s")
        if usage:
            logger.debug(f"Token usage: {usage}")

        return vectors

    def embed_articles(self, articles: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Embed articles from their combined title, description and content.

        Returns:
            Copies of the articles with 'embedding' and 'embeddingModel' keys
        """
        if not articles:
            return []

        texts = []
        for article in articles:
            parts = [article.get('title'), article.get('description'), article.get('content')]
            combined = " ".join(p.strip() for p in parts if p and p.strip())
            texts.append(combined[:MAX_ARTICLE_TEXT_CHARS])

        embeddable = [(article, text) for article, text in zip(articles, texts) if text]
        if len(embeddable) < len(articles):
            logger.warning(f"Skipping {len(articles) - len(embeddable)} articles without text")

        vectors = self.embed_batch([text for _, text in embeddable])

        return [
            {**article, 'embedding': vector, 'embeddingModel': self.model}
            for (article, _), vector in zip(embeddable, vectors)
        ]

    def get_cache_stats(self) -> Dict:
        """Get cache performance statistics."""
        with self._cache_lock:
            return self._cache_stats.to_dict()

    def clear_cache(self) -> None:
        """Clear the embedding cache."""
        with self._cache_lock:
            self._memory_cache.clear()
            self._cache_stats = CacheStats()
        logger.info("Cleared memory cache")
