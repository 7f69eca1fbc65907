"""
Session Store for Multi-turn Conversations

Keeps session metadata and ordered chat history in Redis with a sliding
expiry: every write resets both keys to the full retention window, so an idle
session disappears once the window elapses.

History is stored as one JSON list per session and appended with a
read-modify-write. Two concurrent appends to the same session can therefore
lose one of the turns; callers accept that race.
"""

import json
import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import List, Dict, Optional, Any

import redis
from dotenv import load_dotenv

from ..exceptions import SessionNotFoundError, StoreError
from ..query.models import (
    ChatTurn,
    Session,
    DEFAULT_SESSION_TITLE,
    utc_now,
)

load_dotenv()

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 24 * 60 * 60
TITLE_MAX_LENGTH = 50
TITLE_MIN_MESSAGE_LENGTH = 10


def _base36(number: int) -> str:
    alphabet = string.digits + string.ascii_lowercase
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(alphabet[remainder])
    return "".join(reversed(digits))


def normalize_title(title: Optional[str]) -> str:
    """Return the title stripped, or the default title when blank."""
    if title is None or not str(title).strip():
        return DEFAULT_SESSION_TITLE
    return str(title).strip()


def derive_title(message: str) -> str:
    """Title from a message's leading characters, ellipsised past 50 chars."""
    if len(message) > TITLE_MAX_LENGTH:
        return message[:TITLE_MAX_LENGTH - 3] + "..."
    return message


class SessionStore:
    """
    Redis-backed store for chat sessions.

    Keys:
    - session:<id>       JSON session metadata
    - chat_history:<id>  JSON list of chat turns

    Any Redis failure surfaces as StoreError.
    """

    session_prefix = "session:"
    chat_history_prefix = "chat_history:"

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        redis_url: Optional[str] = None,
        session_ttl: int = SESSION_TTL_SECONDS
    ):
        """
        Initialize the session store.

        Args:
            redis_client: Existing Redis client (takes precedence over redis_url)
            redis_url: Redis connection URL
            session_ttl: Retention window in seconds
        """
        if redis_client is None:
            redis_client = redis.Redis.from_url(
                redis_url or "redis://localhost:6379/0",
                decode_responses=True,
                socket_timeout=5,
                retry_on_timeout=True
            )
        self.redis = redis_client
        self.session_ttl = session_ttl

    def _session_key(self, session_id: str) -> str:
        return f"{self.session_prefix}{session_id}"

    def _history_key(self, session_id: str) -> str:
        return f"{self.chat_history_prefix}{session_id}"

    @staticmethod
    def generate_session_id() -> str:
        """Unique id of the form sess_<base36 millis>_<random>."""
        timestamp = _base36(int(time.time() * 1000))
        random_part = "".join(random.choices(string.ascii_lowercase + string.digits, k=13))
        return f"sess_{timestamp}_{random_part}"

    def _remaining_ttl(self, key: str) -> int:
        ttl = self.redis.ttl(key)
        return ttl if ttl and ttl > 0 else self.session_ttl

    def _write_session(self, session: Session, ttl: Optional[int] = None) -> None:
        self.redis.set(
            self._session_key(session.id),
            json.dumps(session.to_record()),
            ex=ttl or self.session_ttl
        )

    def _read_history(self, session_id: str) -> Optional[List[Dict[str, Any]]]:
        raw = self.redis.get(self._history_key(session_id))
        if raw is None:
            return None
        return json.loads(raw)

    def _repair_title(self, session: Session) -> Session:
        """
        Repair-on-read: a stored session without a usable title is given the
        default title, and the correction is persisted with its remaining TTL.
        """
        if session.title and session.title.strip():
            return session

        logger.warning(f"Repairing blank title for session {session.id}")
        session.title = DEFAULT_SESSION_TITLE
        key = self._session_key(session.id)
        self._write_session(session, ttl=self._remaining_ttl(key))
        return session

    def create_session(self, title: Optional[str] = None) -> str:
        """
        Create a new session with an empty history.

        Args:
            title: Optional title; blank or missing titles become the default

        Returns:
            New session ID
        """
        session_id = self.generate_session_id()
        now = utc_now()
        session = Session(
            id=session_id,
            title=normalize_title(title),
            created_at=now,
            last_activity=now,
        )

        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(self._session_key(session_id), json.dumps(session.to_record()), ex=self.session_ttl)
            pipe.set(self._history_key(session_id), json.dumps([]), ex=self.session_ttl)
            pipe.execute()
        except redis.exceptions.RedisError as e:
            logger.error(f"Error creating session: {e}")
            raise StoreError(f"Error creating session: {e}") from e

        logger.info(f"Created new session: {session_id}")
        return session_id

    def session_exists(self, session_id: str) -> bool:
        """Whether the session's metadata key exists. Does not touch expiry."""
        if not session_id:
            return False
        try:
            return self.redis.exists(self._session_key(session_id)) == 1
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Error checking session existence: {e}") from e

    def get_session(self, session_id: str) -> Optional[Session]:
        """
        Get session metadata.

        Sessions stored with a blank title are repaired on read (see
        _repair_title).

        Returns:
            Session, or None if absent
        """
        try:
            raw = self.redis.get(self._session_key(session_id))
            if raw is None:
                return None
            return self._repair_title(Session.from_dict(json.loads(raw)))
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Error getting session: {e}") from e

    def get_chat_history(self, session_id: str, limit: Optional[int] = 50) -> Optional[List[ChatTurn]]:
        """
        Get the most recent turns of a session, oldest first.

        Args:
            session_id: Session identifier
            limit: Maximum number of turns (None for all)

        Returns:
            List of turns, or None if the session has no history key
        """
        try:
            history = self._read_history(session_id)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Error getting chat history: {e}") from e

        if history is None:
            return None

        if limit is not None:
            history = history[-limit:] if limit > 0 else []

        return [ChatTurn.from_dict(turn) for turn in history]

    def add_message(self, session_id: str, turn: ChatTurn) -> ChatTurn:
        """
        Append a turn to the session history.

        Refreshes the expiry of both keys, increments messageCount and
        updates lastActivity.

        Returns:
            The stored turn, stamped with the current time

        Raises:
            SessionNotFoundError: If the session's history is absent
        """
        try:
            history = self._read_history(session_id)
            if history is None:
                raise SessionNotFoundError(session_id)

            stored = ChatTurn(role=turn.role, content=turn.content, sources=turn.sources)
            history.append(stored.to_dict())

            raw_session = self.redis.get(self._session_key(session_id))
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(self._history_key(session_id), json.dumps(history), ex=self.session_ttl)

            if raw_session is not None:
                session = Session.from_dict(json.loads(raw_session))
                session.title = normalize_title(session.title)
                session.last_activity = stored.timestamp
                session.message_count += 1
                pipe.set(self._session_key(session_id), json.dumps(session.to_record()), ex=self.session_ttl)

            pipe.execute()

        except redis.exceptions.RedisError as e:
            logger.error(f"Error adding message to session {session_id}: {e}")
            raise StoreError(f"Error adding message: {e}") from e

        logger.debug(f"Added {stored.role} message to session {session_id}")
        return stored

    def update_session_title(self, session_id: str, new_title: Optional[str]) -> Session:
        """
        Set a session's title; blank titles become the default.

        Both keys get the full retention window again so they expire together.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        session.title = normalize_title(new_title)
        session.last_activity = utc_now()

        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(self._session_key(session_id), json.dumps(session.to_record()), ex=self.session_ttl)
            pipe.expire(self._history_key(session_id), self.session_ttl)
            pipe.execute()
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Error updating session title: {e}") from e

        logger.info(f"Updated session title: {session_id} -> \"{session.title}\"")
        return session

    def auto_generate_title(self, session_id: str, first_message: Optional[str]) -> Optional[str]:
        """
        Title a session from its first message.

        Messages shorter than 10 characters leave the title untouched. If the
        update fails, the default title is assigned instead; this never raises.

        Returns:
            The title now stored, or None if nothing was written
        """
        message = (first_message or "").strip()
        if len(message) < TITLE_MIN_MESSAGE_LENGTH:
            return None

        try:
            return self.update_session_title(session_id, derive_title(message)).title
        except Exception as e:
            logger.error(f"Error auto-generating title for {session_id}: {e}")

        try:
            return self.update_session_title(session_id, DEFAULT_SESSION_TITLE).title
        except Exception as e:
            logger.error(f"Error assigning default title for {session_id}: {e}")
            return None

    def clear_chat_history(self, session_id: str) -> bool:
        """
        Empty a session's history, keeping metadata and remaining expiry.

        messageCount is reset to 0 to keep it equal to the stored turns.

        Raises:
            SessionNotFoundError: If the session's history is absent
        """
        try:
            history_key = self._history_key(session_id)
            ttl = self.redis.ttl(history_key)
            if ttl == -2:
                raise SessionNotFoundError(session_id)

            pipe = self.redis.pipeline(transaction=True)
            if ttl > 0:
                pipe.set(history_key, json.dumps([]), ex=ttl)
            else:
                pipe.set(history_key, json.dumps([]), keepttl=True)

            raw_session = self.redis.get(self._session_key(session_id))
            if raw_session is not None:
                session = Session.from_dict(json.loads(raw_session))
                session.title = normalize_title(session.title)
                session.message_count = 0
                pipe.set(
                    self._session_key(session_id),
                    json.dumps(session.to_record()),
                    ex=self._remaining_ttl(self._session_key(session_id))
                )

            pipe.execute()
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Error clearing chat history: {e}") from e

        logger.info(f"Cleared chat history for session {session_id}")
        return True

    def delete_session(self, session_id: str) -> bool:
        """Remove metadata and history in a single transaction."""
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.delete(self._session_key(session_id))
            pipe.delete(self._history_key(session_id))
            pipe.execute()
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Error deleting session: {e}") from e

        logger.info(f"Deleted session {session_id}")
        return True

    def _last_turn(self, session_id: str) -> Optional[ChatTurn]:
        history = self.get_chat_history(session_id, limit=1)
        return history[-1] if history else None

    def get_all_sessions(self) -> List[Session]:
        """
        All live sessions, most recently active first.

        Each session carries its most recent turn in `last_message`, and is
        repaired on read like get_session.
        """
        sessions = []
        try:
            for key in self.redis.scan_iter(match=f"{self.session_prefix}*"):
                raw = self.redis.get(key)
                if raw is None:
                    # Expired between SCAN and GET
                    continue
                session = self._repair_title(Session.from_dict(json.loads(raw)))
                session.last_message = self._last_turn(session.id)
                sessions.append(session)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Error listing sessions: {e}") from e

        sessions.sort(key=lambda s: _parse_time(s.last_activity), reverse=True)
        return sessions

    def get_session_summary(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Session metadata plus a short form of its last message."""
        session = self.get_session(session_id)
        if session is None:
            return None

        last = self._last_turn(session_id)
        summary = session.to_dict()
        summary['lastMessage'] = {
            'content': last.content,
            'role': last.role,
            'timestamp': last.timestamp,
        } if last else None
        return summary

    def get_session_stats(self, session_id: str) -> Optional[Dict[str, Any]]:
        """
        Session statistics.

        Returns:
            Dict with sessionId, createdAt, lastActivity, messageCount,
            historyLength and ttl (seconds remaining), or None if absent
        """
        session = self.get_session(session_id)
        if session is None:
            return None

        history = self.get_chat_history(session_id, limit=None)
        try:
            ttl = self.redis.ttl(self._session_key(session_id))
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Error getting session ttl: {e}") from e

        return {
            'sessionId': session_id,
            'createdAt': session.created_at,
            'lastActivity': session.last_activity,
            'messageCount': session.message_count,
            'historyLength': len(history) if history else 0,
            'ttl': ttl,
        }

    def ping(self) -> bool:
        """Check the Redis connection."""
        try:
            return bool(self.redis.ping())
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Redis unavailable: {e}") from e

    def close(self) -> None:
        """Close the Redis connection."""
        try:
            self.redis.close()
            logger.info("Redis connection closed")
        except redis.exceptions.RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")


def _parse_time(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=timezone.utc)
