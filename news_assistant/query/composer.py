"""
Response Composer for Grounded Answers

Builds the grounding context from retrieved articles and recent conversation,
asks the chat model for an answer (whole or streamed), and extracts the cited
sources. Generation failures never escape: a deterministic fallback answer is
returned instead.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Iterator, Union

from langchain_ollama import ChatOllama

from .models import ChatTurn, RetrievedArticle, Role, Source

logger = logging.getLogger(__name__)


NO_ARTICLES_RESPONSE = (
    "I couldn't find any relevant news articles to answer your question. "
    "Please try rephrasing your question or ask about a different topic."
)

ERROR_RESPONSE = (
    "I'm sorry, I encountered an error while processing your question. "
    "Please try again later."
)


def generation_failed_response(articles: List[RetrievedArticle]) -> str:
    """Fallback answer listing the retrieved titles when generation fails."""
    titles = ", ".join(article.title for article in articles)
    return (
        "Based on recent news, I found some relevant articles but couldn't "
        f"generate a detailed response. Here are the key sources that might help: {titles}."
    )


SYSTEM_PROMPT = """You are a helpful news assistant that answers questions based on the news articles provided below.

IMPORTANT INSTRUCTIONS:
1. Answer using ONLY the information in the provided articles
2. If the articles don't contain enough information to answer the question, say so clearly
3. Never make up facts that are not in the articles
4. Cite your sources by referencing the article numbers in brackets, e.g., [1], [2]
5. Be concise but informative, and keep the same friendly, professional tone throughout the conversation
6. Use the previous conversation only to understand what the user is referring to, not as a source of facts

FORMATTING:
- Use **bold text** for key points
- Use bullet points (-) for lists
- Use clear paragraph breaks for readability"""


@dataclass
class ComposedResponse:
    """Answer text with the sources it relied on."""
    response: str
    sources: List[Source] = field(default_factory=list)
    error: Optional[str] = None
    fallback: bool = False


@dataclass
class StreamChunk:
    """One incremental fragment of a streamed answer."""
    text: str


@dataclass
class StreamComplete:
    """Terminal event of a streamed answer."""
    response: str
    sources: List[Source] = field(default_factory=list)
    error: Optional[str] = None
    fallback: bool = False


StreamEvent = Union[StreamChunk, StreamComplete]


class ResponseComposer:
    """
    Composes grounded answers with an Ollama chat model.

    The model is injected or created from the given settings; it only needs
    `invoke(prompt)` and `stream(prompt)`.
    """

    def __init__(
        self,
        llm=None,
        llm_model: str = "llama3.1:latest",
        temperature: float = 0.7,
        max_tokens: int = 1000,
        ollama_base_url: str = "http://localhost:11434",
        max_excerpt_chars: int = 1000,
        history_window: int = 10
    ):
        """
        Initialize the composer.

        Args:
            llm: Chat model instance (default: ChatOllama built from the settings below)
            llm_model: Ollama model name for answer generation
            temperature: LLM temperature (0.0-1.0, higher = more creative)
            max_tokens: Maximum tokens in generated answer
            ollama_base_url: Base URL for Ollama service
            max_excerpt_chars: Per-article cap on content included in the prompt
            history_window: Number of most recent turns included in the prompt
        """
        self.llm_model = llm_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_excerpt_chars = max_excerpt_chars
        self.history_window = history_window

        self.llm = llm or ChatOllama(
            model=llm_model,
            temperature=temperature,
            base_url=ollama_base_url,
            num_predict=max_tokens
        )

    def format_articles(self, articles: List[RetrievedArticle]) -> str:
        """
        Format retrieved articles as numbered grounding context.

        Content excerpts are capped at max_excerpt_chars.
        """
        if not articles:
            return ""

        parts = ["Based on the following recent news articles:\n"]
        for i, article in enumerate(articles, 1):
            lines = [
                f"[{i}] {article.title}",
                f"Source: {article.source}",
                f"Published: {article.published_at}",
            ]
            if article.description:
                lines.append(f"Summary: {article.description}")
            if article.content:
                lines.append(f"Content: {article.content[:self.max_excerpt_chars]}")
            parts.append("\n".join(lines) + "\n")

        return "\n".join(parts)

    def format_history(self, history: Optional[List[ChatTurn]]) -> str:
        """Format the last history_window turns as conversation context."""
        if not history:
            return ""

        lines = ["Previous conversation context:"]
        for turn in history[-self.history_window:]:
            if turn.role == Role.USER.value:
                lines.append(f"User: {turn.content}")
            elif turn.role == Role.ASSISTANT.value:
                lines.append(f"Assistant: {turn.content}")

        return "\n".join(lines)

    def build_prompt(
        self,
        query: str,
        articles: List[RetrievedArticle],
        history: Optional[List[ChatTurn]] = None
    ) -> str:
        """
        Build the complete prompt for the model.

        Args:
            query: User's question
            articles: Retrieved articles used as grounding context
            history: Prior conversation turns

        Returns:
            Complete prompt string
        """
        history_text = self.format_history(history)
        if history_text:
            history_text = f"\n\n{history_text}"

        return f"""{SYSTEM_PROMPT}{history_text}

{self.format_articles(articles)}
QUESTION: {query}

ANSWER:"""

    def extract_sources(self, answer: str, articles: List[RetrievedArticle]) -> List[Source]:
        """
        Sources cited in the answer as [n], in citation order.

        Falls back to every retrieved article when the answer cites none.
        Duplicates by URL are dropped.
        """
        sources = []
        seen_urls = set()

        for num_str in re.findall(r'\[(\d+)\]', answer):
            num = int(num_str)
            if 1 <= num <= len(articles):
                article = articles[num - 1]
                if article.url and article.url not in seen_urls:
                    sources.append(article.to_source())
                    seen_urls.add(article.url)

        if not sources:
            sources = self.all_sources(articles)

        return sources

    @staticmethod
    def all_sources(articles: List[RetrievedArticle]) -> List[Source]:
        """Every retrieved article as a source, deduplicated by URL."""
        sources = []
        seen_urls = set()
        for article in articles:
            if article.url and article.url not in seen_urls:
                sources.append(article.to_source())
                seen_urls.add(article.url)
        return sources

    @staticmethod
    def _fragment_text(fragment) -> str:
        content = getattr(fragment, 'content', fragment)
        return content if isinstance(content, str) else str(content)

    def compose(
        self,
        query: str,
        articles: List[RetrievedArticle],
        history: Optional[List[ChatTurn]] = None
    ) -> ComposedResponse:
        """
        Compose a whole answer.

        Returns the no-articles fallback without calling the model when
        nothing was retrieved, and the generation-failed fallback when the
        model call fails.
        """
        if not articles:
            return ComposedResponse(response=NO_ARTICLES_RESPONSE, sources=[], fallback=True)

        prompt = self.build_prompt(query, articles, history)

        try:
            answer = self._fragment_text(self.llm.invoke(prompt))
        except Exception as e:
            logger.error(f"Error generating answer with {self.llm_model}: {e}")
            return ComposedResponse(
                response=generation_failed_response(articles),
                sources=self.all_sources(articles),
                error=str(e),
                fallback=True
            )

        return ComposedResponse(
            response=answer,
            sources=self.extract_sources(answer, articles)
        )

    def compose_stream(
        self,
        query: str,
        articles: List[RetrievedArticle],
        history: Optional[List[ChatTurn]] = None
    ) -> Iterator[StreamEvent]:
        """
        Compose an answer incrementally.

        Yields StreamChunk fragments in the order the model produces them,
        then exactly one StreamComplete, also when generation fails.
        """
        if not articles:
            yield StreamComplete(response=NO_ARTICLES_RESPONSE, sources=[], fallback=True)
            return

        prompt = self.build_prompt(query, articles, history)
        fragments = []

        try:
            for fragment in self.llm.stream(prompt):
                text = self._fragment_text(fragment)
                if not text:
                    continue
                fragments.append(text)
                yield StreamChunk(text=text)
        except Exception as e:
            logger.error(f"Error streaming answer with {self.llm_model}: {e}")
            yield StreamComplete(
                response=generation_failed_response(articles),
                sources=self.all_sources(articles),
                error=str(e),
                fallback=True
            )
            return

        answer = "".join(fragments)
        yield StreamComplete(
            response=answer,
            sources=self.extract_sources(answer, articles)
        )
