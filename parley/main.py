"""
FastAPI application, the parley server entry point.

POST /chat takes {"message": ..., "sessionId"?: ...} and streams the model's
reply back as plain text. The session id (new or reused) travels in the
X-Session-Id response header so the body stays pure generated text.
Failures before the first fragment come back as a JSON error instead.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from parley import SESSION_HEADER
from parley.backends.openai_compat import OpenAICompatibleBackend
from parley.config import get_config
from parley.errors import ParleyError
from parley.orchestrator import ConversationOrchestrator, Turn
from parley.prompts import system_prompt_from_config
from parley.sessions import SessionRegistry
from parley.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Globals, initialized at startup, torn down at shutdown
# ---------------------------------------------------------------------------
store: SQLiteStore | None = None
orchestrator: ConversationOrchestrator | None = None


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle. A broken store stops startup."""
    global store, orchestrator

    cfg = get_config()
    _setup_logging(cfg)

    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    backend = OpenAICompatibleBackend.from_config()
    sessions = SessionRegistry.from_config()
    orchestrator = ConversationOrchestrator(
        store=store,
        backend=backend,
        sessions=sessions,
        system_prompt=system_prompt_from_config(),
    )

    logger.info(
        "parley started, listening on %s:%s, backend %s (model %s)",
        cfg["server"]["host"],
        cfg["server"]["port"],
        backend.url,
        backend.model,
    )
    logger.info("Storage: SQLite=%s", cfg["storage"]["sqlite_path"])
    logger.info("Busy sessions: %s", sessions.busy_policy)

    yield

    logger.info("parley shutting down")
    orchestrator = None
    store = None


app = FastAPI(
    title="parley",
    description="Streaming multi-turn voice conversation server.",
    version="0.1.0",
    lifespan=lifespan,
)


def _error(status_code: int, message: str, error_type: str, session_id: str | None = None) -> JSONResponse:
    return JSONResponse(
        {"error": message, "type": error_type, "session_id": session_id},
        status_code=status_code,
    )


@app.exception_handler(ParleyError)
async def parley_error_handler(request: Request, exc: ParleyError):
    response = _error(exc.status_code, exc.message, exc.__class__.__name__, exc.session_id)
    if exc.session_id:
        # The user message may already be stored under this id.
        response.headers[SESSION_HEADER] = exc.session_id
    return response


# ---------------------------------------------------------------------------
# Conversation endpoints
# ---------------------------------------------------------------------------

class TurnResponse(StreamingResponse):
    """
    Streams one turn and always finishes it, even when the body is never
    read. A caller that is gone before the first chunk means the body
    iterator is never started.
    """

    def __init__(self, turn: Turn, **kwargs):
        super().__init__(turn.stream(), **kwargs)
        self.turn = turn

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            try:
                await self.body_iterator.aclose()
            finally:
                await self.turn.aclose()


@app.post("/chat")
async def chat(request: Request):
    """
    Run one conversation turn. The reply is streamed as it is generated;
    nothing is sent until the first fragment is ready, so pre-stream
    failures still get a proper status code.
    """
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Request body must be JSON", "BadRequest")
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object", "BadRequest")

    message = body.get("message")
    session_id = body.get("sessionId") or body.get("session_id")
    if not isinstance(message, str) or not message.strip():
        return _error(400, "'message' must be a non-empty string", "BadRequest")
    if session_id is not None and not isinstance(session_id, str):
        return _error(400, "'sessionId' must be a string", "BadRequest")

    turn = await orchestrator.start_turn(session_id, message)

    return TurnResponse(
        turn,
        media_type="text/plain; charset=utf-8",
        headers={
            SESSION_HEADER: turn.session_id,
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/sessions/{session_id}/messages")
async def session_messages(session_id: str):
    if store.get_session(session_id) is None:
        return _error(404, f"Unknown session {session_id}", "NotFound", session_id)
    return {
        "session_id": session_id,
        "messages": [m.to_dict() for m in store.list_messages(session_id)],
    }


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    if not store.delete_session(session_id):
        return _error(404, f"Unknown session {session_id}", "NotFound", session_id)
    return {"session_id": session_id, "deleted": True}


@app.get("/health")
async def health():
    backend_ok = await orchestrator.backend.health_check()
    return {"status": "ok", "backend": "ok" if backend_ok else "unreachable"}


@app.get("/stats")
async def stats():
    return store.get_stats()
