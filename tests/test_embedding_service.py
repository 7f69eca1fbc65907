"""
Test Suite for EmbeddingService

The embeddings endpoint is mocked at requests.post; tests cover request
shape, caching, input validation and upstream failure mapping.
"""

from unittest.mock import Mock, patch

import numpy as np
import pytest
import requests

from news_assistant.embeddings.embedding_service import (
    EmbeddingService,
    MAX_ARTICLE_TEXT_CHARS,
    cosine_similarity,
)
from news_assistant.exceptions import (
    EmbeddingAuthError,
    EmptyInputError,
    NoValidInputError,
    UpstreamError,
)


POST_TARGET = 'news_assistant.embeddings.embedding_service.requests.post'


def make_response(vectors, model="jina-embeddings-v2-base-en"):
    """Mock HTTP response in the embeddings API format."""
    response = Mock()
    response.raise_for_status.return_value = None
    response.json.return_value = {
        'model': model,
        'data': [{'index': i, 'embedding': v} for i, v in enumerate(vectors)],
        'usage': {'total_tokens': 7},
    }
    return response


def echo_post(url, json=None, headers=None, timeout=None):
    """One 4-dimensional vector per input text."""
    return make_response([[0.1, 0.2, 0.3, 0.4] for _ in json['input']])


@pytest.fixture
def service():
    return EmbeddingService(api_key="test-key", model="jina-embeddings-v2-base-en", timeout=5)


class TestEmbed:
    """Test single-text embedding."""

    def test_embed_returns_vector(self, service):
        with patch(POST_TARGET, side_effect=echo_post):
            embedding = service.embed("Central bank raises rates")

        assert isinstance(embedding, np.ndarray)
        assert embedding.dtype == np.float32
        assert embedding.shape == (4,)

    def test_request_format(self, service):
        with patch(POST_TARGET, side_effect=echo_post) as mock_post:
            service.embed("Central bank raises rates")

        args, kwargs = mock_post.call_args
        assert args[0] == "https://api.jina.ai/v1/embeddings"
        assert kwargs['json'] == {
            'input': ["Central bank raises rates"],
            'model': "jina-embeddings-v2-base-en",
        }
        assert kwargs['headers']['Authorization'] == "Bearer test-key"
        assert kwargs['timeout'] == 5

    def test_repeated_text_served_from_cache(self, service):
        with patch(POST_TARGET, side_effect=echo_post) as mock_post:
            first = service.embed("Election results")
            second = service.embed("Election results")

        assert mock_post.call_count == 1
        np.testing.assert_array_equal(first, second)

        stats = service.get_cache_stats()
        assert stats['hits'] == 1
        assert stats['misses'] == 1

    def test_cache_disabled(self):
        service = EmbeddingService(api_key="test-key", enable_cache=False)
        with patch(POST_TARGET, side_effect=echo_post) as mock_post:
            service.embed("Election results")
            service.embed("Election results")

        assert mock_post.call_count == 2

    def test_cache_evicts_least_recently_used(self):
        service = EmbeddingService(api_key="test-key", max_cache_size=2)
        with patch(POST_TARGET, side_effect=echo_post) as mock_post:
            service.embed("first")
            service.embed("second")
            service.embed("first")
            service.embed("third")
            service.embed("first")
            service.embed("second")

        assert mock_post.call_count == 4
        stats = service.get_cache_stats()
        assert stats['cache_size'] == 2
        assert stats['evictions'] == 2
        assert stats['hits'] == 2

    def test_clear_cache(self, service):
        with patch(POST_TARGET, side_effect=echo_post) as mock_post:
            service.embed("Election results")
            service.clear_cache()
            service.embed("Election results")

        assert mock_post.call_count == 2

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_blank_text_raises_without_request(self, service, text):
        with patch(POST_TARGET) as mock_post:
            with pytest.raises(EmptyInputError):
                service.embed(text)

        mock_post.assert_not_called()

    def test_missing_api_key(self):
        service = EmbeddingService(api_key="")
        with patch(POST_TARGET) as mock_post:
            with pytest.raises(EmbeddingAuthError):
                service.embed("Election results")

        mock_post.assert_not_called()

    def test_auth_error_is_upstream_error(self):
        assert issubclass(EmbeddingAuthError, UpstreamError)


class TestUpstreamFailures:
    """Test mapping of transport and API failures to UpstreamError."""

    def test_timeout(self, service):
        with patch(POST_TARGET, side_effect=requests.exceptions.Timeout()):
            with pytest.raises(UpstreamError, match="timed out"):
                service.embed("Election results")

    def test_connection_error(self, service):
        with patch(POST_TARGET, side_effect=requests.exceptions.ConnectionError()):
            with pytest.raises(UpstreamError, match="Unable to connect"):
                service.embed("Election results")

    def test_http_error_status(self, service):
        response = Mock()
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            response=Mock(status_code=401)
        )
        with patch(POST_TARGET, return_value=response):
            with pytest.raises(UpstreamError, match="401"):
                service.embed("Election results")

    def test_malformed_response(self, service):
        response = Mock()
        response.raise_for_status.return_value = None
        response.json.return_value = {'unexpected': True}
        with patch(POST_TARGET, return_value=response):
            with pytest.raises(UpstreamError, match="format"):
                service.embed("Election results")

    def test_vector_count_mismatch(self, service):
        with patch(POST_TARGET, return_value=make_response([[0.1, 0.2], [0.3, 0.4]])):
            with pytest.raises(UpstreamError, match="2 vectors for 1 inputs"):
                service.embed("Election results")

    def test_failed_request_is_not_cached(self, service):
        with patch(POST_TARGET, side_effect=[requests.exceptions.Timeout(), echo_post(None, json={'input': ['x']})]):
            with pytest.raises(UpstreamError):
                service.embed("Election results")
            embedding = service.embed("Election results")

        assert embedding.shape == (4,)


class TestEmbedBatch:
    """Test batch embedding."""

    def test_batch_in_single_request(self, service):
        with patch(POST_TARGET, side_effect=echo_post) as mock_post:
            vectors = service.embed_batch(["first", "second", "third"])

        assert len(vectors) == 3
        assert mock_post.call_count == 1

    def test_blank_texts_are_dropped(self, service):
        with patch(POST_TARGET, side_effect=echo_post) as mock_post:
            vectors = service.embed_batch(["first", "", "  ", "second"])

        assert len(vectors) == 2
        assert mock_post.call_args.kwargs['json']['input'] == ["first", "second"]

    def test_all_blank_raises(self, service):
        with patch(POST_TARGET) as mock_post:
            with pytest.raises(NoValidInputError):
                service.embed_batch(["", "   "])

        mock_post.assert_not_called()

    def test_empty_list_raises(self, service):
        with pytest.raises(NoValidInputError):
            service.embed_batch([])


class TestEmbedArticles:
    """Test article embedding."""

    def test_combines_title_description_content(self, service):
        article = {
            'title': "Rates rise",
            'description': "The central bank acted.",
            'content': "Full story here.",
            'url': "https://news.example.com/rates",
        }
        with patch(POST_TARGET, side_effect=echo_post) as mock_post:
            embedded = service.embed_articles([article])

        sent = mock_post.call_args.kwargs['json']['input'][0]
        assert sent == "Rates rise The central bank acted. Full story here."
        assert embedded[0]['url'] == article['url']
        assert embedded[0]['embeddingModel'] == "jina-embeddings-v2-base-en"
        assert len(embedded[0]['embedding']) == 4

    def test_long_text_truncated(self, service):
        article = {'title': "Long", 'content': "x" * 20000, 'url': "https://news.example.com/long"}
        with patch(POST_TARGET, side_effect=echo_post) as mock_post:
            service.embed_articles([article])

        sent = mock_post.call_args.kwargs['json']['input'][0]
        assert len(sent) == MAX_ARTICLE_TEXT_CHARS

    def test_article_without_text_is_skipped(self, service):
        articles = [
            {'title': "Has text", 'url': "https://news.example.com/a"},
            {'title': "", 'description': None, 'url': "https://news.example.com/b"},
        ]
        with patch(POST_TARGET, side_effect=echo_post):
            embedded = service.embed_articles(articles)

        assert [a['url'] for a in embedded] == ["https://news.example.com/a"]

    def test_empty_list(self, service):
        assert service.embed_articles([]) == []


class TestCosineSimilarity:
    """Test the cosine similarity helper."""

    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])
