"""
News Assistant configuration.

Every setting has a default and can be overridden by an environment variable
(or a `.env` file in the working directory). Values are checked once at
construction and again on every `update()`.
"""

import os
from dataclasses import dataclass, field, asdict, fields
from typing import Dict, Any, Optional
from urllib.parse import urlparse
from dotenv import load_dotenv

load_dotenv()


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


def _cast(key: str, value: str, kind: type):
    if kind is str:
        return value.strip()
    try:
        return kind(value)
    except ValueError:
        raise ConfigValidationError(
            f"Invalid {kind.__name__} value for {key}: '{value}'"
        )


@dataclass
class Config:
    """
    Settings for the embedding API, the generation model, the Redis
    session store, retrieval and the HTTP server.

    Field `foo_bar` is read from environment variable `FOO_BAR`.
    """

    # Embedding API
    jina_api_key: str = field(default="", repr=False)
    embedding_api_url: str = field(default="https://api.jina.ai/v1/embeddings")
    embedding_model: str = field(default="jina-embeddings-v2-base-en")
    embedding_timeout: int = field(default=30)
    embedding_dimension: int = field(default=768)
    embedding_cache_size: int = field(default=1000)

    # Generation model (Ollama)
    ollama_base_url: str = field(default="http://localhost:11434")
    llm_model: str = field(default="llama3.1:latest")
    llm_temperature: float = field(default=0.7)
    llm_max_tokens: int = field(default=1000)

    # Sessions (Redis)
    redis_url: str = field(default="redis://localhost:6379/0")
    session_ttl_seconds: int = field(default=24 * 60 * 60)

    # Retrieval
    faiss_index_path: str = field(default="data/embeddings/news_articles.index")
    max_context_articles: int = field(default=5)
    min_similarity_score: float = field(default=0.6)
    history_window: int = field(default=10)
    max_excerpt_chars: int = field(default=1000)

    # HTTP server
    host: str = field(default="0.0.0.0")
    port: int = field(default=3000)
    cors_origins: str = field(default="http://localhost:5173")

    def __post_init__(self):
        self._load_from_environment()
        self._validate()

    def _load_from_environment(self):
        kinds = {'str': str, 'int': int, 'float': float}
        for f in fields(self):
            key = f.name.upper()
            raw = os.getenv(key)
            if raw is None:
                continue
            kind = kinds.get(f.type, f.type) if isinstance(f.type, str) else f.type
            setattr(self, f.name, _cast(key, raw, kind))

        self.faiss_index_path = os.path.expanduser(self.faiss_index_path)

    def _validate(self):
        for name in ('embedding_model', 'llm_model'):
            if not getattr(self, name):
                raise ConfigValidationError(f"{name} cannot be empty")

        for name in (
            'embedding_timeout', 'embedding_dimension', 'embedding_cache_size',
            'llm_max_tokens', 'session_ttl_seconds', 'max_context_articles', 'history_window',
            'max_excerpt_chars', 'port',
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigValidationError(f"{name} must be positive, got {value}")

        for name in ('min_similarity_score', 'llm_temperature'):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigValidationError(f"{name} must be between 0 and 1, got {value}")

        for name in ('embedding_api_url', 'ollama_base_url', 'redis_url'):
            url = getattr(self, name)
            parsed = urlparse(url)
            if not (parsed.scheme and parsed.netloc):
                raise ConfigValidationError(f"Invalid URL for {name}: {url}")

    def to_dict(self) -> Dict[str, Any]:
        """Settings as a plain dict, with the API key masked."""
        data = asdict(self)
        if data.get('jina_api_key'):
            data['jina_api_key'] = '***'
        return data

    def __repr__(self) -> str:
        settings = ', '.join(f"{k}={v!r}" for k, v in self.to_dict().items())
        return f"Config({settings})"

    def update(self, **kwargs):
        """
        Change settings at runtime.

        All values are applied, then validated together. If any is rejected
        the previous values are restored.

        Raises:
            ConfigValidationError: Unknown parameter or invalid value
        """
        previous = {}

        try:
            for key, value in kwargs.items():
                if not hasattr(self, key):
                    raise ConfigValidationError(f"Unknown configuration parameter: {key}")
                previous[key] = getattr(self, key)
                setattr(self, key, value)

            self._validate()

        except Exception:
            for key, value in previous.items():
                setattr(self, key, value)
            raise

    def get_retrieval_config(self) -> Dict[str, Any]:
        return {
            'max_context_articles': self.max_context_articles,
            'min_similarity_score': self.min_similarity_score,
            'history_window': self.history_window,
            'max_excerpt_chars': self.max_excerpt_chars,
        }

    def get_cors_origins(self):
        """CORS_ORIGINS is a comma-separated list."""
        return [origin.strip() for origin in self.cors_origins.split(',') if origin.strip()]


_config_instance: Optional[Config] = None


def get_config() -> Config:
    """Process-wide Config, built on first use."""
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance


def reset_config():
    """Drop the process-wide Config so the next get_config() rebuilds it."""
    global _config_instance
    _config_instance = None
