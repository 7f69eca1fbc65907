"""
Test Suite for ResponseComposer

The chat model is a Mock returning langchain messages; no Ollama instance
is needed.
"""

from unittest.mock import Mock

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk

from news_assistant.query.composer import (
    NO_ARTICLES_RESPONSE,
    ResponseComposer,
    StreamChunk,
    StreamComplete,
    generation_failed_response,
)
from news_assistant.query.models import ChatTurn, RetrievedArticle, Role


def article(n, score=0.9, **overrides):
    fields = dict(
        title=f"Article {n}",
        url=f"https://news.example.com/article-{n}",
        score=score,
        published_at="2024-05-01T08:00:00Z",
        source="Example News",
        description=f"Summary {n}",
        content=f"Content {n}",
    )
    fields.update(overrides)
    return RetrievedArticle(**fields)


@pytest.fixture
def articles():
    return [article(1, 0.95), article(2, 0.85), article(3, 0.7)]


class TestPromptBuilding:
    """Test grounding context and prompt assembly."""

    def test_articles_are_numbered(self, composer, articles):
        context = composer.format_articles(articles)

        assert "[1] Article 1" in context
        assert "[3] Article 3" in context
        assert "Source: Example News" in context
        assert "Published: 2024-05-01T08:00:00Z" in context
        assert "Summary: Summary 2" in context

    def test_content_excerpt_is_capped(self, llm):
        composer = ResponseComposer(llm=llm, max_excerpt_chars=10)
        context = composer.format_articles([article(1, content="abcdefghijKLMNOP")])

        assert "Content: abcdefghij\n" in context
        assert "KLMNOP" not in context

    def test_history_window(self, llm):
        composer = ResponseComposer(llm=llm, history_window=2)
        history = [
            ChatTurn(role=Role.USER.value, content="oldest question"),
            ChatTurn(role=Role.ASSISTANT.value, content="previous answer"),
            ChatTurn(role=Role.USER.value, content="latest question"),
        ]

        text = composer.format_history(history)

        assert "oldest question" not in text
        assert "Assistant: previous answer" in text
        assert "User: latest question" in text

    def test_empty_history(self, composer):
        assert composer.format_history(None) == ""
        assert composer.format_history([]) == ""

    def test_prompt_contains_all_parts(self, composer, articles):
        history = [ChatTurn(role=Role.USER.value, content="What about inflation?")]

        prompt = composer.build_prompt("And interest rates?", articles, history)

        assert "QUESTION: And interest rates?" in prompt
        assert "User: What about inflation?" in prompt
        assert "[2] Article 2" in prompt
        assert prompt.rstrip().endswith("ANSWER:")


class TestCompose:
    """Test whole-answer composition."""

    def test_no_articles_skips_model(self, composer, llm):
        result = composer.compose("Anything new?", [])

        assert result.response == NO_ARTICLES_RESPONSE
        assert result.sources == []
        assert result.fallback is True
        llm.invoke.assert_not_called()

    def test_cited_sources_only(self, composer, llm, articles):
        llm.invoke.return_value = AIMessage(content="Stocks fell [2] while bonds rose [2].")

        result = composer.compose("Markets?", articles)

        assert result.response == "Stocks fell [2] while bonds rose [2]."
        assert [s.url for s in result.sources] == ["https://news.example.com/article-2"]
        assert result.fallback is False
        assert result.error is None

    def test_citation_order(self, composer, llm, articles):
        llm.invoke.return_value = AIMessage(content="See [3] and [1].")

        result = composer.compose("Markets?", articles)

        assert [s.title for s in result.sources] == ["Article 3", "Article 1"]

    def test_uncited_answer_returns_all_sources(self, composer, llm, articles):
        llm.invoke.return_value = AIMessage(content="Markets were mixed.")

        result = composer.compose("Markets?", articles)

        assert len(result.sources) == 3

    def test_out_of_range_citation_ignored(self, composer, llm, articles):
        llm.invoke.return_value = AIMessage(content="According to [7] and [1].")

        result = composer.compose("Markets?", articles)

        assert [s.title for s in result.sources] == ["Article 1"]

    def test_sources_deduplicated_by_url(self, composer, llm):
        duplicates = [article(1), article(2, url="https://news.example.com/article-1")]
        llm.invoke.return_value = AIMessage(content="Markets were mixed.")

        result = composer.compose("Markets?", duplicates)

        assert len(result.sources) == 1

    def test_source_fields(self, composer, articles):
        source = composer.compose("Markets?", articles).sources[0]

        assert source.title == "Article 1"
        assert source.source == "Example News"
        assert source.published_at == "2024-05-01T08:00:00Z"
        assert source.score == 0.95

    def test_generation_failure_falls_back(self, composer, llm, articles):
        llm.invoke.side_effect = RuntimeError("model not loaded")

        result = composer.compose("Markets?", articles)

        assert result.response == generation_failed_response(articles)
        assert "Article 1, Article 2, Article 3" in result.response
        assert "model not loaded" not in result.response
        assert result.error == "model not loaded"
        assert result.fallback is True
        assert len(result.sources) == 3

    def test_plain_string_model_output(self, llm, articles):
        llm.invoke.return_value = "Plain answer [1]."
        composer = ResponseComposer(llm=llm)

        assert composer.compose("Markets?", articles).response == "Plain answer [1]."


class TestComposeStream:
    """Test streamed composition."""

    def test_chunks_then_single_completion(self, composer, articles):
        events = list(composer.compose_stream("Markets?", articles))

        chunks = [e for e in events if isinstance(e, StreamChunk)]
        completions = [e for e in events if isinstance(e, StreamComplete)]

        assert len(completions) == 1
        assert isinstance(events[-1], StreamComplete)
        assert "".join(c.text for c in chunks) == completions[0].response
        assert completions[0].response == "Markets rallied on Monday [1]."
        assert [s.title for s in completions[0].sources] == ["Article 1"]

    def test_empty_fragments_are_skipped(self, composer, llm, articles):
        llm.stream.side_effect = lambda prompt: iter([
            AIMessageChunk(content=""),
            AIMessageChunk(content="Done."),
        ])

        events = list(composer.compose_stream("Markets?", articles))

        assert [e.text for e in events if isinstance(e, StreamChunk)] == ["Done."]

    def test_no_articles_single_completion(self, composer, llm):
        events = list(composer.compose_stream("Anything?", []))

        assert len(events) == 1
        assert events[0].response == NO_ARTICLES_RESPONSE
        assert events[0].fallback is True
        llm.stream.assert_not_called()

    def test_failure_mid_stream(self, composer, llm, articles):
        def broken_stream(prompt):
            yield AIMessageChunk(content="Markets ")
            raise ConnectionError("stream dropped")

        llm.stream.side_effect = broken_stream

        events = list(composer.compose_stream("Markets?", articles))
        completions = [e for e in events if isinstance(e, StreamComplete)]

        assert len(completions) == 1
        assert completions[0].response == generation_failed_response(articles)
        assert completions[0].error == "stream dropped"
        assert completions[0].fallback is True

    def test_failure_before_first_chunk(self, composer, llm, articles):
        llm.stream.side_effect = RuntimeError("model not loaded")

        events = list(composer.compose_stream("Markets?", articles))

        assert len(events) == 1
        assert isinstance(events[0], StreamComplete)
        assert events[0].fallback is True


def test_default_model_is_chat_ollama():
    from langchain_ollama import ChatOllama

    composer = ResponseComposer(llm_model="llama3.1:latest", ollama_base_url="http://localhost:11434")

    assert isinstance(composer.llm, ChatOllama)
    assert composer.llm.model == "llama3.1:latest"


def test_mock_model_is_used_as_given():
    model = Mock()
    composer = ResponseComposer(llm=model)

    assert composer.llm is model
