"""
HTTP and WebSocket surface.

REST routes under /api/chat and a WebSocket at /ws exchanging
{"event": ..., "data": ...} frames handled by ChatEventHandler.
Endpoints are synchronous and run in the server's worker threadpool.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..config import Config, get_config
from ..factory import build_pipeline
from ..exceptions import SessionNotFoundError, StoreError, ValidationError
from ..query.models import DEFAULT_SESSION_TITLE, utc_now
from ..query.pipeline import ChatPipeline
from ..storage.session_store import SessionStore
from .events import ChatEventHandler, ConnectionHub

logger = logging.getLogger(__name__)

DEFAULT_TEST_QUERY = "What's the latest news about technology?"


class ChatRequest(BaseModel):
    message: Optional[str] = None
    sessionId: Optional[str] = None


class CreateSessionRequest(BaseModel):
    title: Optional[str] = None


class UpdateSessionRequest(BaseModel):
    title: Optional[str] = None


class TestQueryRequest(BaseModel):
    query: Optional[str] = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={'error': message})


def _session_not_found() -> JSONResponse:
    return _error(404, "Session not found")


class WebSocketConnection:
    """
    EventConnection over a Starlette WebSocket.

    Handlers run in worker threads; emits are scheduled on the socket's event
    loop and awaited so frames leave in the order they were emitted.
    """

    send_timeout = 30

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.loop = loop

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        frame = {'event': event, 'data': payload}
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self.loop:
            self.loop.create_task(self.websocket.send_json(frame))
            return

        future = asyncio.run_coroutine_threadsafe(self.websocket.send_json(frame), self.loop)
        try:
            future.result(timeout=self.send_timeout)
        except Exception as e:
            # Client disconnected; the turn still completes and persists
            logger.warning(f"Dropped {event} for connection {self.id}: {e}")


def build_router(pipeline: ChatPipeline, session_store: SessionStore, hub: ConnectionHub) -> APIRouter:
    """REST routes for chat and session management."""
    router = APIRouter(prefix="/api/chat", tags=["chat"])

    @router.post("")
    def chat(request: ChatRequest):
        try:
            result = pipeline.process_query(request.message, request.sessionId)
        except ValidationError as e:
            return _error(400, str(e))

        return {
            'response': result.response,
            'sessionId': result.session_id,
            'sources': [s.to_dict() for s in result.sources],
            'timestamp': utc_now(),
        }

    @router.post("/sessions", status_code=201)
    def create_session(request: Optional[CreateSessionRequest] = None):
        title = request.title if request else None
        session_id = session_store.create_session(title)
        session = session_store.get_session(session_id)
        title = session.title if session else DEFAULT_SESSION_TITLE
        timestamp = utc_now()

        hub.emit_all('session-created', {'sessionId': session_id, 'title': title, 'timestamp': timestamp})

        return {
            'message': "Session created successfully",
            'sessionId': session_id,
            'title': title,
            'timestamp': timestamp,
        }

    @router.get("/sessions")
    def list_sessions():
        sessions = session_store.get_all_sessions()
        return {
            'sessions': [s.to_dict() for s in sessions],
            'count': len(sessions),
            'timestamp': utc_now(),
        }

    @router.get("/sessions/{session_id}")
    def get_session(session_id: str):
        summary = session_store.get_session_summary(session_id)
        if summary is None:
            return _session_not_found()
        return {'session': summary, 'timestamp': utc_now()}

    @router.get("/sessions/{session_id}/history")
    def get_history(session_id: str, limit: int = Query(50)):
        if not session_store.session_exists(session_id):
            return _session_not_found()

        history = session_store.get_chat_history(session_id, limit) or []
        return {
            'sessionId': session_id,
            'history': [turn.to_dict() for turn in history],
            'stats': session_store.get_session_stats(session_id),
        }

    @router.get("/sessions/{session_id}/stats")
    def get_stats(session_id: str):
        stats = session_store.get_session_stats(session_id)
        if stats is None:
            return _session_not_found()
        return {'sessionId': session_id, 'stats': stats}

    @router.put("/sessions/{session_id}")
    def update_session(session_id: str, request: UpdateSessionRequest):
        if not request.title or not request.title.strip():
            return _error(400, "Title is required")

        try:
            session = session_store.update_session_title(session_id, request.title)
        except SessionNotFoundError:
            return _session_not_found()

        return {
            'message': "Session updated successfully",
            'session': session.to_dict(),
            'timestamp': utc_now(),
        }

    @router.delete("/sessions/{session_id}")
    def remove_session(
        session_id: str,
        clear_history: bool = Query(True, alias="clearHistory"),
        delete_session: bool = Query(False, alias="deleteSession")
    ):
        if not session_store.session_exists(session_id):
            return _session_not_found()

        if delete_session:
            session_store.delete_session(session_id)
            return {'message': "Session deleted successfully", 'sessionId': session_id}

        if clear_history:
            session_store.clear_chat_history(session_id)
            return {'message': "Chat history cleared successfully", 'sessionId': session_id}

        return _error(400, "Invalid operation. Use clearHistory=true or deleteSession=true")

    @router.post("/test")
    def test_query(request: Optional[TestQueryRequest] = None):
        query = (request.query if request else None) or DEFAULT_TEST_QUERY
        try:
            result = pipeline.test_query(query)
        except ValidationError as e:
            return _error(400, str(e))

        return {'testQuery': query, 'result': result.to_dict(), 'timestamp': utc_now()}

    return router


def create_app(
    pipeline: Optional[ChatPipeline] = None,
    session_store: Optional[SessionStore] = None,
    hub: Optional[ConnectionHub] = None,
    config: Optional[Config] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Collaborators not supplied are built from the configuration.
    """
    config = config or get_config()

    if pipeline is None:
        pipeline = build_pipeline(config, session_store=session_store)
    session_store = session_store or pipeline.session_store
    hub = hub or ConnectionHub()
    handler = ChatEventHandler(pipeline, session_store, hub)

    app = FastAPI(title="News AI Assistant API", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    app.state.pipeline = pipeline
    app.state.session_store = session_store
    app.state.hub = hub
    app.state.event_handler = handler

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Session store error on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={'error': "Internal server error", 'message': str(exc)})

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
        return _session_not_found()

    @app.get("/health")
    def health():
        """Redis connectivity and vector collection size."""
        try:
            session_store.ping()
        except StoreError as e:
            logger.error(f"Health check failed: {e}")
            return JSONResponse(status_code=503, content={'status': "unhealthy", 'redis': str(e)})

        return {
            'status': "healthy",
            'redis': "ok",
            'vectors': pipeline.vector_store.count(),
            'timestamp': utc_now(),
        }

    @app.get("/")
    def root():
        return {
            'message': "News AI Assistant API",
            'version': __version__,
            'status': "running",
            'endpoints': {
                'chat': "POST /api/chat",
                'sessions': "GET|POST /api/chat/sessions",
                'session': "GET|PUT|DELETE /api/chat/sessions/{sessionId}",
                'history': "GET /api/chat/sessions/{sessionId}/history",
                'stats': "GET /api/chat/sessions/{sessionId}/stats",
                'test': "POST /api/chat/test",
                'health': "GET /health",
                'websocket': "WS /ws",
            },
        }

    app.include_router(build_router(pipeline, session_store, hub))

    @app.websocket("/ws")
    async def websocket_chat(websocket: WebSocket):
        await websocket.accept()
        connection = WebSocketConnection(websocket, asyncio.get_running_loop())
        hub.register(connection)
        logger.info(f"Client connected: {connection.id}")

        tasks = set()
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    frame = None

                if not isinstance(frame, dict) or not frame.get('event'):
                    await websocket.send_json({'event': 'error', 'data': {'message': "Invalid event frame"}})
                    continue

                task = asyncio.create_task(
                    run_in_threadpool(handler.handle, connection, frame['event'], frame.get('data'))
                )
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        except WebSocketDisconnect:
            logger.info(f"Client disconnected: {connection.id}")
        finally:
            hub.unregister(connection.id)

    return app
