"""
Shared fixtures: an in-memory Redis, a small FAISS collection and a scripted
chat model, so the whole pipeline runs without network services.
"""

from unittest.mock import Mock

import fakeredis
import numpy as np
import pytest
from langchain_core.messages import AIMessage, AIMessageChunk

from news_assistant.embeddings.embedding_service import EmbeddingService
from news_assistant.query.composer import ResponseComposer
from news_assistant.query.pipeline import ChatPipeline
from news_assistant.storage.session_store import SessionStore
from news_assistant.storage.vector_store import VectorStore

DIMENSION = 4

QUERY_VECTOR = [1.0, 0.0, 0.0, 0.0]


def make_article(n, embedding, **overrides):
    """Embedded article dict as produced by EmbeddingService.embed_articles."""
    article = {
        'title': f"Article {n}",
        'url': f"https://news.example.com/article-{n}",
        'publishedAt': f"2024-05-0{n}T08:00:00Z",
        'source': "Example News",
        'description': f"Summary of article {n}",
        'content': f"Full content of article {n}",
        'embedding': embedding,
        'embeddingModel': "jina-embeddings-v2-base-en",
    }
    article.update(overrides)
    return article


class RecordingSubscriber:
    """StreamSubscriber that records everything it receives."""

    def __init__(self):
        self.chunks = []
        self.completions = []

    def on_chunk(self, chunk, session_id):
        self.chunks.append((chunk, session_id))

    def on_complete(self, response, sources, session_id, error=None):
        self.completions.append({
            'response': response,
            'sources': sources,
            'session_id': session_id,
            'error': error,
        })


@pytest.fixture
def redis_client():
    """In-memory Redis with decoded responses."""
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def session_store(redis_client):
    return SessionStore(redis_client=redis_client)


@pytest.fixture
def vector_store(tmp_path):
    """Empty 4-dimensional collection persisted under a temp dir."""
    return VectorStore(index_path=str(tmp_path / "news_articles.index"), dimension=DIMENSION)


@pytest.fixture
def indexed_store(vector_store):
    """
    Collection with three articles. Against QUERY_VECTOR, article 1 scores
    1.0, article 2 scores 0.8 and article 3 scores 0.0.
    """
    vector_store.upsert_articles([
        make_article(1, [1.0, 0.0, 0.0, 0.0]),
        make_article(2, [0.8, 0.6, 0.0, 0.0]),
        make_article(3, [0.0, 1.0, 0.0, 0.0]),
    ])
    return vector_store


@pytest.fixture
def embedding_service():
    """Embedding client that maps every query to QUERY_VECTOR."""
    service = Mock(spec=EmbeddingService)
    service.embed.return_value = np.array(QUERY_VECTOR, dtype=np.float32)
    return service


@pytest.fixture
def llm():
    """Chat model with a canned answer citing article [1]."""
    model = Mock()
    model.invoke.return_value = AIMessage(content="Markets rallied on Monday [1].")
    model.stream.side_effect = lambda prompt: iter([
        AIMessageChunk(content="Markets "),
        AIMessageChunk(content="rallied "),
        AIMessageChunk(content="on Monday [1]."),
    ])
    return model


@pytest.fixture
def composer(llm):
    return ResponseComposer(llm=llm)


@pytest.fixture
def pipeline(session_store, embedding_service, indexed_store, composer):
    return ChatPipeline(
        session_store=session_store,
        embedding_service=embedding_service,
        vector_store=indexed_store,
        composer=composer,
        max_context_articles=5,
        min_similarity_score=0.6
    )
