"""
Data records exchanged between the session store, retrieval and composition.

Records serialize to the camelCase keys used on the wire and in Redis.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Optional, Any


DEFAULT_SESSION_TITLE = "New Chat"


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class PipelineStatus(str, Enum):
    DELIVERED = "delivered"
    DEGRADED = "degraded"


@dataclass
class Source:
    """Citation attached to an assistant turn."""
    title: str
    url: str
    source: str = ""
    published_at: str = ""
    score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'url': self.url,
            'source': self.source,
            'publishedAt': self.published_at,
            'score': self.score,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Source":
        return cls(
            title=data.get('title', ''),
            url=data.get('url', ''),
            source=data.get('source', ''),
            published_at=data.get('publishedAt', ''),
            score=float(data.get('score', 0.0)),
        )


@dataclass
class RetrievedArticle:
    """
    A candidate knowledge source returned by similarity search.

    The URL is the natural key; `score` is the cosine similarity to the query.
    """
    title: str
    url: str
    score: float
    published_at: str = ""
    source: str = ""
    description: str = ""
    content: str = ""
    id: Optional[int] = None

    def to_source(self) -> Source:
        return Source(
            title=self.title,
            url=self.url,
            source=self.source,
            published_at=self.published_at,
            score=self.score,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'score': self.score,
            'title': self.title,
            'url': self.url,
            'publishedAt': self.published_at,
            'source': self.source,
            'description': self.description,
            'content': self.content,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], score: float, point_id: Optional[int] = None) -> "RetrievedArticle":
        """Build an article from a stored vector payload."""
        return cls(
            id=point_id,
            score=score,
            title=payload.get('title', 'Unknown'),
            url=payload.get('url', ''),
            published_at=payload.get('publishedAt', ''),
            source=payload.get('source', ''),
            description=payload.get('description', '') or '',
            content=payload.get('content', '') or '',
        )


@dataclass
class ChatTurn:
    """One message in a session's history."""
    role: str
    content: str
    sources: Optional[List[Source]] = None
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'role': self.role,
            'content': self.content,
            'timestamp': self.timestamp,
        }
        if self.sources is not None:
            data['sources'] = [s.to_dict() for s in self.sources]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatTurn":
        sources = data.get('sources')
        return cls(
            role=data.get('role', Role.USER.value),
            content=data.get('content', ''),
            sources=[Source.from_dict(s) for s in sources] if sources is not None else None,
            timestamp=data.get('timestamp', ''),
        )


@dataclass
class Session:
    """Metadata of one conversation."""
    id: str
    title: str = DEFAULT_SESSION_TITLE
    created_at: str = field(default_factory=utc_now)
    last_activity: str = field(default_factory=utc_now)
    message_count: int = 0
    is_active: bool = True
    last_message: Optional[ChatTurn] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'title': self.title,
            'createdAt': self.created_at,
            'lastActivity': self.last_activity,
            'messageCount': self.message_count,
            'isActive': self.is_active,
        }
        if self.last_message is not None:
            data['lastMessage'] = self.last_message.to_dict()
        return data

    def to_record(self) -> Dict[str, Any]:
        """Stored form: metadata only, without the derived last message."""
        data = self.to_dict()
        data.pop('lastMessage', None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data['id'],
            title=data.get('title') or '',
            created_at=data.get('createdAt', ''),
            last_activity=data.get('lastActivity', ''),
            message_count=int(data.get('messageCount', 0) or 0),
            is_active=bool(data.get('isActive', True)),
        )


@dataclass
class PipelineResult:
    """Outcome of one query through the pipeline."""
    response: str
    sources: List[Source]
    session_id: Optional[str]
    status: PipelineStatus = PipelineStatus.DELIVERED
    error: Optional[str] = None
    timestamp: str = field(default_factory=utc_now)

    @property
    def degraded(self) -> bool:
        return self.status == PipelineStatus.DEGRADED

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'response': self.response,
            'sessionId': self.session_id,
            'sources': [s.to_dict() for s in self.sources],
            'status': self.status.value,
            'timestamp': self.timestamp,
        }
        if self.error:
            data['error'] = self.error
        return data
