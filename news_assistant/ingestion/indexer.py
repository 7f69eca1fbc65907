"""
Article Indexer

Loads already-fetched news articles, embeds them and upserts them into the
vector store. Fetching and scraping feeds happens upstream of this module.
"""

import json
import logging
import time
from typing import List, Dict, Any, Optional

from tqdm import tqdm

from ..embeddings.embedding_service import EmbeddingService
from ..exceptions import ValidationError
from ..query.models import RetrievedArticle
from ..storage.vector_store import VectorStore

logger = logging.getLogger(__name__)


class ArticleIndexer:
    """Embeds articles and writes them to the vector store."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        batch_size: int = 32
    ):
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.batch_size = batch_size

    def index_articles(
        self,
        articles: List[Dict[str, Any]],
        batch_size: Optional[int] = None,
        show_progress: bool = True
    ) -> Dict[str, Any]:
        """
        Embed and upsert articles in batches.

        Articles without a URL are skipped, and a failing batch is logged
        and counted without stopping the remaining batches.

        Returns:
            Dictionary with total, indexed, skipped, failed, processing_time
            and collection statistics
        """
        start_time = time.time()

        valid = [a for a in articles if a.get('url')]
        skipped = len(articles) - len(valid)
        if skipped:
            logger.warning(f"Skipping {skipped} articles without a URL")

        indexed = 0
        failed = 0
        batch_size = batch_size or self.batch_size
        batches = range(0, len(valid), batch_size)
        iterator = tqdm(batches, desc="Indexing articles") if show_progress else batches

        for start in iterator:
            batch = valid[start:start + batch_size]
            try:
                embedded = self.embedding_service.embed_articles(batch)
                indexed += self.vector_store.upsert_articles(embedded)
                skipped += len(batch) - len(embedded)
            except Exception as e:
                logger.error(f"Failed to index batch starting at {start}: {e}")
                failed += len(batch)

        self.vector_store.save_index()

        processing_time = time.time() - start_time
        logger.info(f"Indexed {indexed}/{len(articles)} articles in {processing_time:.2f}s")

        return {
            'total': len(articles),
            'indexed': indexed,
            'skipped': skipped,
            'failed': failed,
            'processing_time': processing_time,
            'collection': self.vector_store.get_stats()
        }

    def index_from_file(self, file_path: str, show_progress: bool = True) -> Dict[str, Any]:
        """
        Index articles from a JSON file holding a list of article objects
        (title, url, publishedAt, source, description, content).

        Raises:
            ValidationError: If the file does not contain a JSON list
        """
        with open(file_path, 'r', encoding='utf-8') as f:
            articles = json.load(f)

        if not isinstance(articles, list):
            raise ValidationError(f"Expected a JSON list of articles in {file_path}")

        logger.info(f"Loaded {len(articles)} articles from {file_path}")
        return self.index_articles(articles, show_progress=show_progress)

    def test_search(
        self,
        query: str = "artificial intelligence news",
        limit: int = 5,
        score_threshold: float = 0.6
    ) -> List[RetrievedArticle]:
        """Embed a query and return the matching articles."""
        query_vector = self.embedding_service.embed(query)
        return self.vector_store.search(query_vector, limit=limit, score_threshold=score_threshold)
