"""
Component wiring.

Builds the pipeline collaborators from a Config so the CLI, the HTTP server
and tests share one construction path.
"""

import logging
from typing import Optional

from .config import Config, get_config
from .embeddings.embedding_service import EmbeddingService
from .ingestion.indexer import ArticleIndexer
from .query.composer import ResponseComposer
from .query.pipeline import ChatPipeline
from .storage.session_store import SessionStore
from .storage.vector_store import VectorStore

logger = logging.getLogger(__name__)


def build_session_store(config: Optional[Config] = None) -> SessionStore:
    config = config or get_config()
    return SessionStore(redis_url=config.redis_url, session_ttl=config.session_ttl_seconds)


def build_embedding_service(config: Optional[Config] = None) -> EmbeddingService:
    config = config or get_config()
    return EmbeddingService(
        api_key=config.jina_api_key or None,
        api_url=config.embedding_api_url,
        model=config.embedding_model,
        timeout=config.embedding_timeout,
        max_cache_size=config.embedding_cache_size
    )


def build_vector_store(config: Optional[Config] = None) -> VectorStore:
    config = config or get_config()
    return VectorStore(index_path=config.faiss_index_path, dimension=config.embedding_dimension)


def build_composer(config: Optional[Config] = None, llm=None) -> ResponseComposer:
    config = config or get_config()
    return ResponseComposer(
        llm=llm,
        llm_model=config.llm_model,
        temperature=config.llm_temperature,
        max_tokens=config.llm_max_tokens,
        ollama_base_url=config.ollama_base_url,
        max_excerpt_chars=config.max_excerpt_chars,
        history_window=config.history_window
    )


def build_pipeline(
    config: Optional[Config] = None,
    session_store: Optional[SessionStore] = None,
    embedding_service: Optional[EmbeddingService] = None,
    vector_store: Optional[VectorStore] = None,
    composer: Optional[ResponseComposer] = None
) -> ChatPipeline:
    """
    Build a ChatPipeline, creating any collaborator not supplied.

    Args:
        config: Configuration (default: global config)
    """
    config = config or get_config()
    retrieval = config.get_retrieval_config()
    pipeline = ChatPipeline(
        session_store=session_store or build_session_store(config),
        embedding_service=embedding_service or build_embedding_service(config),
        vector_store=vector_store or build_vector_store(config),
        composer=composer or build_composer(config),
        max_context_articles=retrieval['max_context_articles'],
        min_similarity_score=retrieval['min_similarity_score']
    )
    logger.info(
        f"Pipeline ready (embeddings={config.embedding_model}, llm={config.llm_model}, "
        f"retrieval={retrieval})"
    )
    return pipeline


def build_indexer(config: Optional[Config] = None) -> ArticleIndexer:
    config = config or get_config()
    return ArticleIndexer(build_embedding_service(config), build_vector_store(config))
