"""
Vector Store with FAISS Cosine Indexing

Similarity search over news article embeddings. Vectors are L2-normalised and
kept in an ID-mapped inner-product index, so search scores are cosine
similarities. Points are keyed by a hash of the article URL, which makes
re-indexing the same article an overwrite rather than a duplicate.
"""

import os
import hashlib
import logging
import pickle
import threading
from datetime import datetime, timezone
from typing import List, Dict, Optional, Any, Sequence

import faiss
import numpy as np
from dotenv import load_dotenv

from ..query.models import RetrievedArticle

load_dotenv()

logger = logging.getLogger(__name__)


class VectorStore:
    """
    News article collection backed by FAISS.

    Features:
    - Cosine similarity search with a score threshold
    - Idempotent upserts keyed by URL hash
    - Batch search
    - Atomic save/load of index and payloads
    - Lazy collection creation on first use
    """

    def __init__(
        self,
        index_path: Optional[str] = None,
        dimension: int = 768,
        collection_name: str = "news_articles"
    ):
        """
        Initialize the vector store.

        Args:
            index_path: Path to save/load the FAISS index (default: from .env)
            dimension: Dimension of embedding vectors (768 for jina-embeddings-v2-base-en)
            collection_name: Name reported in statistics
        """
        self.index_path = index_path or os.getenv(
            'FAISS_INDEX_PATH',
            'data/embeddings/news_articles.index'
        )
        self.dimension = dimension
        self.collection_name = collection_name

        # Payloads keyed by point id, synchronized with the index
        self.payloads: Dict[int, Dict[str, Any]] = {}

        self.index = None
        self._lock = threading.RLock()

    def _initialize_index(self) -> None:
        """Create a new, empty ID-mapped inner-product index."""
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimension))
        self.payloads = {}

    def initialize_collection(self) -> None:
        """Load the collection from disk, or create it if absent."""
        with self._lock:
            if self.index is not None:
                return

            if os.path.exists(self.index_path) and self.load_index():
                logger.info(f"Loaded collection {self.collection_name} ({self.index.ntotal} vectors)")
                return

            self._initialize_index()
            logger.info(f"Created collection: {self.collection_name}")

    @staticmethod
    def generate_id(url: str) -> int:
        """Deterministic 63-bit point id derived from the MD5 of a URL."""
        digest = hashlib.md5(url.encode('utf-8')).hexdigest()
        return int(digest[:16], 16) & 0x7FFFFFFFFFFFFFFF

    def _prepare_vectors(self, vectors: Sequence[Sequence[float]]) -> np.ndarray:
        """Convert to a normalised float32 matrix, validating dimensions."""
        matrix = np.array(vectors, dtype=np.float32)
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)

        if matrix.shape[1] != self.dimension:
            raise ValueError(
                f"Vector dimension ({matrix.shape[1]}) must match "
                f"index dimension ({self.dimension})"
            )

        matrix = np.ascontiguousarray(matrix)
        faiss.normalize_L2(matrix)
        return matrix

    def upsert(self, point_id: int, vector: Sequence[float], payload: Dict[str, Any]) -> None:
        """
        Insert a point, replacing any existing point with the same id.

        Raises:
            ValueError: If the vector dimension doesn't match the index
        """
        self.initialize_collection()
        matrix = self._prepare_vectors([vector])
        ids = np.array([point_id], dtype=np.int64)

        with self._lock:
            if point_id in self.payloads:
                self.index.remove_ids(ids)
            self.index.add_with_ids(matrix, ids)
            self.payloads[point_id] = payload

            assert self.index.ntotal == len(self.payloads), \
                "CRITICAL: Payloads out of sync with index"

    def upsert_articles(self, articles_with_embeddings: List[Dict[str, Any]]) -> int:
        """
        Upsert embedded articles keyed by their URL.

        Args:
            articles_with_embeddings: Article dicts carrying an 'embedding' key

        Returns:
            Number of points written
        """
        if not articles_with_embeddings:
            return 0

        indexed_at = datetime.now(timezone.utc).isoformat()
        for article in articles_with_embeddings:
            payload = {
                'title': article.get('title', 'Unknown'),
                'url': article['url'],
                'publishedAt': article.get('publishedAt', ''),
                'source': article.get('source', ''),
                'description': article.get('description', ''),
                'content': article.get('content', ''),
                'embeddingModel': article.get('embeddingModel', ''),
                'indexedAt': indexed_at
            }
            self.upsert(self.generate_id(article['url']), article['embedding'], payload)

        logger.info(f"Upserted {len(articles_with_embeddings)} articles into {self.collection_name}")
        return len(articles_with_embeddings)

    def _collect_results(
        self,
        scores: np.ndarray,
        ids: np.ndarray,
        limit: int,
        score_threshold: float
    ) -> List[RetrievedArticle]:
        results = []
        for score, point_id in zip(scores, ids):
            if point_id < 0 or score < score_threshold:
                continue
            payload = self.payloads.get(int(point_id))
            if payload is None:
                continue
            results.append(RetrievedArticle.from_payload(payload, float(score), int(point_id)))

        results.sort(key=lambda article: article.score, reverse=True)
        return results[:limit]

    def search(
        self,
        query_vector: Sequence[float],
        limit: int = 10,
        score_threshold: float = 0.7
    ) -> List[RetrievedArticle]:
        """
        Find the articles most similar to a query vector.

        Args:
            query_vector: Query embedding
            limit: Maximum number of results
            score_threshold: Minimum cosine similarity

        Returns:
            Articles with score >= threshold, highest score first

        Raises:
            ValueError: If limit is negative or the dimension doesn't match
        """
        return self.batch_search([query_vector], limit, score_threshold)[0]

    def batch_search(
        self,
        query_vectors: List[Sequence[float]],
        limit: int = 10,
        score_threshold: float = 0.7
    ) -> List[List[RetrievedArticle]]:
        """
        Run several searches at once.

        Returns:
            One result list per query vector, in input order
        """
        if limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")

        if not query_vectors:
            return []

        self.initialize_collection()
        matrix = self._prepare_vectors(query_vectors)

        with self._lock:
            if limit == 0 or self.index.ntotal == 0:
                return [[] for _ in query_vectors]

            k = min(limit, self.index.ntotal)
            scores, ids = self.index.search(matrix, k)

            results = [
                self._collect_results(scores[row], ids[row], limit, score_threshold)
                for row in range(len(query_vectors))
            ]

        logger.debug(f"Batch search over {len(query_vectors)} queries returned {sum(map(len, results))} articles")
        return results

    def save_index(self, path: Optional[str] = None) -> None:
        """
        Save FAISS index and payloads to disk with atomic write.

        Args:
            path: Path to save index (default: self.index_path)
        """
        self.initialize_collection()
        save_path = path or self.index_path

        directory = os.path.dirname(save_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self._lock:
            faiss.write_index(self.index, save_path)

            payload_path = save_path + '.payloads'
            temp_payload_path = payload_path + '.tmp'

            try:
                with open(temp_payload_path, 'wb') as f:
                    pickle.dump(self.payloads, f, protocol=pickle.HIGHEST_PROTOCOL)

                # Atomic rename
                os.replace(temp_payload_path, payload_path)

            except Exception:
                if os.path.exists(temp_payload_path):
                    os.remove(temp_payload_path)
                raise

    def load_index(self, path: Optional[str] = None) -> bool:
        """
        Load FAISS index and payloads from disk.

        Returns:
            True if successful, False otherwise
        """
        load_path = path or self.index_path

        with self._lock:
            try:
                if not os.path.exists(load_path):
                    return False

                loaded_index = faiss.read_index(load_path)

                payload_path = load_path + '.payloads'
                if os.path.exists(payload_path):
                    with open(payload_path, 'rb') as f:
                        loaded_payloads = pickle.load(f)
                else:
                    loaded_payloads = {}

                if loaded_index.ntotal != len(loaded_payloads):
                    raise ValueError(
                        f"Index has {loaded_index.ntotal} vectors but "
                        f"{len(loaded_payloads)} payloads"
                    )
                if loaded_index.d != self.dimension:
                    raise ValueError(
                        f"Index dimension {loaded_index.d} does not match {self.dimension}"
                    )

                self.index = loaded_index
                self.payloads = loaded_payloads
                return True

            except Exception as e:
                logger.error(f"Failed to load index from {load_path}: {e}")
                self._initialize_index()
                return False

    def clear(self) -> None:
        """Remove every point, leaving an empty collection."""
        with self._lock:
            self._initialize_index()
        logger.info(f"Cleared all points from collection: {self.collection_name}")

    def count(self) -> int:
        """Number of points in the collection."""
        self.initialize_collection()
        return self.index.ntotal

    def get_stats(self) -> Dict:
        """Collection statistics."""
        self.initialize_collection()
        return {
            'name': self.collection_name,
            'total_vectors': self.index.ntotal,
            'payload_count': len(self.payloads),
            'dimension': self.dimension,
            'distance': 'Cosine',
            'index_type': 'IndexIDMap2(IndexFlatIP)'
        }

    def __repr__(self) -> str:
        return (
            f"VectorStore(collection={self.collection_name!r}, "
            f"dimension={self.dimension}, "
            f"path={self.index_path!r})"
        )
