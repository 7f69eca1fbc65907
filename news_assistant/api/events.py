"""
Realtime chat events.

Transport-agnostic handling of the socket chat protocol. A connection only
needs an `id` and an `emit(event, payload)` method; rooms are named after
session ids and tracked in-process by ConnectionHub.

Inbound: join-session, leave-session, send-message, get-history,
create-session, get-sessions, update-session-title, delete-session, typing.

Outbound: joined-session, user-message, stream-chunk, stream-complete,
assistant-message, session-created, session-updated, session-title-updated,
session-deleted, chat-history, sessions-list, user-typing, error.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from ..exceptions import SessionNotFoundError, StoreError, ValidationError
from ..query.models import DEFAULT_SESSION_TITLE, Source, utc_now
from ..query.pipeline import ChatPipeline
from ..storage.session_store import SessionStore

logger = logging.getLogger(__name__)


class EventConnection(Protocol):
    """One connected client."""

    id: str

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class ConnectionHub:
    """Registry of live connections and the session rooms they joined."""

    def __init__(self):
        self._connections: Dict[str, EventConnection] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def register(self, connection: EventConnection) -> None:
        with self._lock:
            self._connections[connection.id] = connection

    def unregister(self, connection_id: str) -> None:
        """Drop a connection and remove it from every room."""
        with self._lock:
            self._connections.pop(connection_id, None)
            for room in list(self._rooms):
                self._rooms[room].discard(connection_id)
                if not self._rooms[room]:
                    del self._rooms[room]

    def join(self, connection_id: str, room: str) -> None:
        with self._lock:
            self._rooms.setdefault(room, set()).add(connection_id)

    def leave(self, connection_id: str, room: str) -> None:
        with self._lock:
            members = self._rooms.get(room)
            if members is None:
                return
            members.discard(connection_id)
            if not members:
                del self._rooms[room]

    def members(self, room: str) -> Set[str]:
        with self._lock:
            return set(self._rooms.get(room, ()))

    def broadcast(
        self,
        room: str,
        event: str,
        payload: Dict[str, Any],
        exclude: Optional[str] = None
    ) -> int:
        """
        Emit to every connection in a room except `exclude`.

        Returns:
            Number of connections the event was delivered to
        """
        with self._lock:
            targets = [
                self._connections[cid]
                for cid in self._rooms.get(room, ())
                if cid != exclude and cid in self._connections
            ]
        return self._deliver(targets, event, payload)

    def emit_all(self, event: str, payload: Dict[str, Any], exclude: Optional[str] = None) -> int:
        """Emit to every live connection."""
        with self._lock:
            targets = [conn for cid, conn in self._connections.items() if cid != exclude]
        return self._deliver(targets, event, payload)

    @staticmethod
    def _deliver(targets: List[EventConnection], event: str, payload: Dict[str, Any]) -> int:
        delivered = 0
        for connection in targets:
            try:
                connection.emit(event, payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"Failed to emit {event} to {connection.id}: {e}")
        return delivered


class SocketStreamSubscriber:
    """Forwards a streamed answer to the requesting connection."""

    def __init__(self, connection: EventConnection):
        self.connection = connection

    def on_chunk(self, chunk: str, session_id: str) -> None:
        self.connection.emit('stream-chunk', {'chunk': chunk, 'sessionId': session_id})

    def on_complete(
        self,
        response: str,
        sources: List[Source],
        session_id: str,
        error: Optional[str] = None
    ) -> None:
        payload = {
            'response': response,
            'sources': [s.to_dict() for s in sources],
            'sessionId': session_id,
            'timestamp': utc_now(),
        }
        if error:
            payload['error'] = error
        self.connection.emit('stream-complete', payload)


def _session_id_from(data: Any) -> Optional[str]:
    """Room events accept either a bare session id or {"sessionId": ...}."""
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        return data.get('sessionId') or None
    return None


class ChatEventHandler:
    """
    Dispatches inbound socket events to the pipeline and session store.

    Every failure is reported to the requesting connection as an `error`
    event carrying a user-facing message and the raw cause in `details`.
    """

    def __init__(self, pipeline: ChatPipeline, session_store: SessionStore, hub: ConnectionHub):
        self.pipeline = pipeline
        self.session_store = session_store
        self.hub = hub

        self._handlers: Dict[str, Callable[[EventConnection, Any], None]] = {
            'join-session': self.on_join_session,
            'leave-session': self.on_leave_session,
            'send-message': self.on_send_message,
            'get-history': self.on_get_history,
            'create-session': self.on_create_session,
            'get-sessions': self.on_get_sessions,
            'update-session-title': self.on_update_session_title,
            'delete-session': self.on_delete_session,
            'typing': self.on_typing,
        }

        # User-facing message per event when a store call fails
        self._failure_messages = {
            'send-message': "Internal server error",
            'get-history': "Error retrieving chat history",
            'create-session': "Error creating session",
            'get-sessions': "Error retrieving sessions",
            'update-session-title': "Error updating session title",
            'delete-session': "Error deleting session",
        }

    @staticmethod
    def _error(connection: EventConnection, message: str, details: Optional[str] = None) -> None:
        payload = {'message': message}
        if details:
            payload['details'] = details
        connection.emit('error', payload)

    def handle(self, connection: EventConnection, event: str, data: Any = None) -> None:
        """Dispatch one inbound event."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning(f"Unknown event from {connection.id}: {event}")
            self._error(connection, f"Unknown event: {event}")
            return

        try:
            handler(connection, data if data is not None else {})
        except ValidationError as e:
            self._error(connection, str(e))
        except SessionNotFoundError as e:
            self._error(connection, self._failure_messages.get(event, "Session not found"), str(e))
        except StoreError as e:
            logger.error(f"Store error handling {event}: {e}")
            self._error(connection, self._failure_messages.get(event, "Internal server error"), str(e))
        except Exception as e:
            logger.error(f"Error handling {event} from {connection.id}: {e}")
            self._error(connection, self._failure_messages.get(event, "Internal server error"), str(e))

    def on_join_session(self, connection: EventConnection, data: Any) -> None:
        session_id = _session_id_from(data)
        if not session_id:
            raise ValidationError("Session ID is required")
        self.hub.join(connection.id, session_id)
        connection.emit('joined-session', {'sessionId': session_id})

    def on_leave_session(self, connection: EventConnection, data: Any) -> None:
        session_id = _session_id_from(data)
        if session_id:
            self.hub.leave(connection.id, session_id)

    def on_send_message(self, connection: EventConnection, data: Dict[str, Any]) -> None:
        """
        Run a streamed query.

        The requester receives stream-chunk events and exactly one
        stream-complete; peers in the session room receive user-message and
        assistant-message.
        """
        if not isinstance(data, dict):
            raise ValidationError("Message is required and must be a non-empty string")

        turn = self.pipeline.start_turn(data.get('message'), data.get('sessionId'))

        self.hub.broadcast(turn.session_id, 'user-message', {
            'message': turn.message,
            'sessionId': turn.session_id,
            'timestamp': utc_now(),
        }, exclude=connection.id)

        result = self.pipeline.respond_stream(turn, SocketStreamSubscriber(connection))

        self.hub.broadcast(turn.session_id, 'assistant-message', {
            'response': result.response,
            'sources': [s.to_dict() for s in result.sources],
            'sessionId': turn.session_id,
            'timestamp': result.timestamp,
        }, exclude=connection.id)

    def on_get_history(self, connection: EventConnection, data: Any) -> None:
        session_id = _session_id_from(data)
        if not session_id:
            raise ValidationError("Session ID is required")

        history = self.session_store.get_chat_history(session_id)
        connection.emit('chat-history', {
            'sessionId': session_id,
            'history': [turn.to_dict() for turn in history] if history is not None else None,
        })

    def on_create_session(self, connection: EventConnection, data: Any) -> None:
        title = data.get('title') if isinstance(data, dict) else None
        session_id = self.session_store.create_session(title)
        session = self.session_store.get_session(session_id)

        connection.emit('session-created', {
            'sessionId': session_id,
            'title': session.title if session else DEFAULT_SESSION_TITLE,
            'timestamp': utc_now(),
        })

    def on_get_sessions(self, connection: EventConnection, data: Any) -> None:
        sessions = self.session_store.get_all_sessions()
        connection.emit('sessions-list', {
            'sessions': [s.to_dict() for s in sessions],
            'count': len(sessions),
            'timestamp': utc_now(),
        })

    def on_update_session_title(self, connection: EventConnection, data: Any) -> None:
        session_id = data.get('sessionId') if isinstance(data, dict) else None
        title = data.get('title') if isinstance(data, dict) else None
        if not session_id or not title or not str(title).strip():
            raise ValidationError("Session ID and title are required")

        session = self.session_store.update_session_title(session_id, title)
        timestamp = utc_now()

        connection.emit('session-updated', {'session': session.to_dict(), 'timestamp': timestamp})
        self.hub.broadcast(session_id, 'session-title-updated', {
            'sessionId': session_id,
            'title': session.title,
            'timestamp': timestamp,
        }, exclude=connection.id)

    def on_delete_session(self, connection: EventConnection, data: Any) -> None:
        session_id = _session_id_from(data)
        if not session_id:
            raise ValidationError("Session ID is required")

        self.session_store.delete_session(session_id)
        payload = {'sessionId': session_id, 'timestamp': utc_now()}

        connection.emit('session-deleted', payload)
        self.hub.broadcast(session_id, 'session-deleted', payload, exclude=connection.id)

    def on_typing(self, connection: EventConnection, data: Any) -> None:
        session_id = data.get('sessionId') if isinstance(data, dict) else None
        if not session_id:
            return
        self.hub.broadcast(session_id, 'user-typing', {
            'userId': connection.id,
            'isTyping': bool(data.get('isTyping')),
            'timestamp': utc_now(),
        }, exclude=connection.id)
