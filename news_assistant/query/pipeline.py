"""
Chat Pipeline

Orchestrates one conversational query:

    received -> session-resolved -> embedded -> retrieved -> composed -> persisted

Validation errors are raised before any side effect. Once the session is
resolved, every failure is turned into a degraded result whose fallback
answer is persisted next to the user's message, so history never holds an
unanswered question. Session store failures propagate as StoreError.
"""

import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol

from ..embeddings.embedding_service import EmbeddingService
from ..exceptions import SessionNotFoundError, ValidationError
from ..storage.session_store import SessionStore
from ..storage.vector_store import VectorStore
from .composer import (
    ComposedResponse,
    ERROR_RESPONSE,
    ResponseComposer,
    StreamChunk,
    StreamComplete,
)
from .models import (
    ChatTurn,
    DEFAULT_SESSION_TITLE,
    PipelineResult,
    PipelineStatus,
    RetrievedArticle,
    Role,
    Source,
)

logger = logging.getLogger(__name__)


class StreamSubscriber(Protocol):
    """Consumer of a streamed answer."""

    def on_chunk(self, chunk: str, session_id: str) -> None:
        ...

    def on_complete(
        self,
        response: str,
        sources: List[Source],
        session_id: str,
        error: Optional[str] = None
    ) -> None:
        ...


@dataclass
class TurnContext:
    """A user message admitted into a resolved session."""
    message: str
    session_id: str
    is_new_session: bool
    history: List[ChatTurn]


def validate_message(message) -> str:
    """
    Return the trimmed message.

    Raises:
        ValidationError: If the message is not a non-empty string
    """
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message is required and must be a non-empty string")
    return message.strip()


class ChatPipeline:
    """
    Retrieval-augmented chat over news articles.

    Holds no per-request state; collaborators are injected and shared.
    """

    def __init__(
        self,
        session_store: SessionStore,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        composer: ResponseComposer,
        max_context_articles: int = 5,
        min_similarity_score: float = 0.6,
        history_limit: int = 50
    ):
        """
        Initialize the pipeline.

        Args:
            session_store: Session metadata and history
            embedding_service: Query embedding client
            vector_store: Article similarity search
            composer: Answer generation
            max_context_articles: Number of articles retrieved per query
            min_similarity_score: Minimum cosine similarity for relevance
            history_limit: Number of prior turns loaded for context
        """
        self.session_store = session_store
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.composer = composer
        self.max_context_articles = max_context_articles
        self.min_similarity_score = min_similarity_score
        self.history_limit = history_limit

    def resolve_session(self, session_id: Optional[str]) -> tuple:
        """
        Use the given session, or create one if missing or unknown.

        Returns:
            Tuple of (session_id, is_new_session)
        """
        if session_id and self.session_store.session_exists(session_id):
            return session_id, False

        if session_id:
            logger.info(f"Session {session_id} not found, creating a new one")
        return self.session_store.create_session(), True

    def start_turn(self, message: str, session_id: Optional[str] = None) -> TurnContext:
        """
        Admit a user message: resolve the session, load prior history,
        persist the user turn and auto-title the session when due.

        Raises:
            ValidationError: If the message is blank (nothing is written)
            StoreError: If the session store is unavailable
        """
        message = validate_message(message)
        session_id, is_new = self.resolve_session(session_id)
        user_turn = ChatTurn(role=Role.USER.value, content=message)

        history = self.session_store.get_chat_history(session_id, self.history_limit)
        try:
            if history is None:
                raise SessionNotFoundError(session_id)
            self.session_store.add_message(session_id, user_turn)
        except SessionNotFoundError:
            # Metadata outlived its history key, or the session was deleted meanwhile
            logger.warning(f"Session {session_id} has no history, creating a new one")
            session_id, is_new, history = self.session_store.create_session(), True, []
            self.session_store.add_message(session_id, user_turn)

        if is_new:
            self.session_store.auto_generate_title(session_id, message)
        elif not history:
            # Sessions created empty and used for the first time
            session = self.session_store.get_session(session_id)
            current = self.session_store.get_chat_history(session_id, limit=None)
            if session and session.title == DEFAULT_SESSION_TITLE and current and len(current) == 1:
                logger.info(f"Auto-generating title for existing session {session_id}")
                self.session_store.auto_generate_title(session_id, message)

        logger.debug(f"Turn received for session {session_id} (new={is_new})")
        return TurnContext(message=message, session_id=session_id, is_new_session=is_new, history=history)

    def retrieve(self, query: str) -> List[RetrievedArticle]:
        """Embed the query and fetch relevant articles."""
        query_vector = self.embedding_service.embed(query)
        articles = self.vector_store.search(
            query_vector,
            limit=self.max_context_articles,
            score_threshold=self.min_similarity_score
        )
        logger.info(f"Found {len(articles)} relevant articles")
        return articles

    def _run(self, query: str, history: Optional[List[ChatTurn]]) -> ComposedResponse:
        """Embed, retrieve and compose; upstream failures become ERROR_RESPONSE."""
        try:
            articles = self.retrieve(query)
            return self.composer.compose(query, articles, history)
        except Exception as e:
            logger.error(f"Error in RAG pipeline: {e}")
            return ComposedResponse(response=ERROR_RESPONSE, sources=[], error=str(e), fallback=True)

    def _persist_answer(self, session_id: str, composed) -> None:
        try:
            self.session_store.add_message(
                session_id,
                ChatTurn(role=Role.ASSISTANT.value, content=composed.response, sources=composed.sources)
            )
        except SessionNotFoundError:
            logger.warning(f"Session {session_id} disappeared before its answer was stored")

    @staticmethod
    def _result(composed, session_id: Optional[str]) -> PipelineResult:
        status = PipelineStatus.DEGRADED if composed.fallback else PipelineStatus.DELIVERED
        return PipelineResult(
            response=composed.response,
            sources=composed.sources,
            session_id=session_id,
            status=status,
            error=composed.error
        )

    def respond(self, turn: TurnContext) -> PipelineResult:
        """Answer an admitted turn and persist the assistant reply."""
        start_time = time.time()
        composed = self._run(turn.message, turn.history)
        self._persist_answer(turn.session_id, composed)

        result = self._result(composed, turn.session_id)
        if result.degraded:
            logger.warning(f"Degraded answer for session {turn.session_id}: {result.error or 'fallback'}")
        logger.info(
            f"Query for session {turn.session_id} {result.status.value} "
            f"in {time.time() - start_time:.2f}s"
        )
        return result

    def respond_stream(self, turn: TurnContext, subscriber: StreamSubscriber) -> PipelineResult:
        """
        Answer an admitted turn incrementally.

        Each fragment is forwarded to the subscriber as it arrives, then
        on_complete is called exactly once, before the reply is persisted.
        """
        session_id = turn.session_id
        completed = None
        forwarding = True

        try:
            articles = self.retrieve(turn.message)
            for event in self.composer.compose_stream(turn.message, articles, turn.history):
                if isinstance(event, StreamChunk):
                    if not forwarding:
                        continue
                    try:
                        subscriber.on_chunk(event.text, session_id)
                    except Exception as e:
                        logger.error(f"Error delivering stream chunk for session {session_id}: {e}")
                        forwarding = False
                elif isinstance(event, StreamComplete):
                    completed = event
        except Exception as e:
            logger.error(f"Error in streaming RAG pipeline: {e}")
            completed = StreamComplete(response=ERROR_RESPONSE, sources=[], error=str(e), fallback=True)

        if completed is None:
            completed = StreamComplete(
                response=ERROR_RESPONSE, sources=[], error="Stream ended without completion", fallback=True
            )

        try:
            subscriber.on_complete(completed.response, completed.sources, session_id, completed.error)
        except Exception as e:
            logger.error(f"Error delivering stream completion for session {session_id}: {e}")

        self._persist_answer(session_id, completed)
        result = self._result(completed, session_id)
        if result.degraded:
            logger.warning(f"Degraded streamed answer for session {session_id}: {result.error or 'fallback'}")
        logger.info(f"Streamed query for session {session_id} {result.status.value}")
        return result

    def process_query(self, message: str, session_id: Optional[str] = None) -> PipelineResult:
        """Run one full query against a session."""
        return self.respond(self.start_turn(message, session_id))

    def process_query_stream(
        self,
        message: str,
        session_id: Optional[str],
        subscriber: StreamSubscriber
    ) -> PipelineResult:
        """Run one full streamed query against a session."""
        return self.respond_stream(self.start_turn(message, session_id), subscriber)

    def test_query(self, query: str) -> PipelineResult:
        """
        Run one pipeline pass without touching any session.

        Raises:
            ValidationError: If the query is blank
        """
        query = validate_message(query)
        return self._result(self._run(query, None), None)
