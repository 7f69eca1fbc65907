"""
Error kinds shared across the news assistant components.
"""


class NewsAssistantError(Exception):
    """Base class for all news assistant errors."""
    pass


class ValidationError(NewsAssistantError):
    """Raised when caller input is empty or malformed."""
    pass


class EmptyInputError(ValidationError):
    """Raised when text to embed is blank."""
    pass


class NoValidInputError(ValidationError):
    """Raised when every text in a batch is blank."""
    pass


class SessionNotFoundError(NewsAssistantError):
    """Raised when a referenced session does not exist."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class UpstreamError(NewsAssistantError):
    """Raised when an embedding, search or generation call fails."""
    pass


class EmbeddingAuthError(UpstreamError):
    """Raised when no embedding API credential is configured."""
    pass


class StoreError(NewsAssistantError):
    """Raised when the session store is unavailable."""
    pass
