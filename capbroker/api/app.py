"""
FastAPI application - agent-facing surface of the credential broker.

Tool-call contract under /api/tools, operator endpoints for health and
sessions, and the session-bound HTTP proxy handed out by get_http_access:

    <PROXY_PUBLIC_URL>/<service>/<path>   Authorization: Bearer <sessionId>

Bind to loopback: the broker has no operator authentication of its own.
"""

import contextvars
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from capbroker.broker.dispatcher import Dispatcher
from capbroker.broker.sessions import short_id
from capbroker.broker.tools import BrokerToolExecutor
from capbroker.shared.config import load_config
from capbroker.shared.errors import BrokerError, SessionNotFoundError
from capbroker.shared.models import ToolCall

logger = logging.getLogger(__name__)

# ── Request ID tracking via ContextVar ────────────────────────────────────────
_request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class RequestIDFilter(logging.Filter):
    """Injects the current request ID into every log record."""
    def filter(self, record):
        record.request_id = _request_id_ctx.get("-")
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Generates a unique request ID, stores it in ContextVar, adds to response header."""
    async def dispatch(self, request: Request, call_next):
        request_id = uuid.uuid4().hex[:12]
        _request_id_ctx.set(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# Global references set during lifespan
_dispatcher: Optional[Dispatcher] = None
_tools: Optional[BrokerToolExecutor] = None
_config = None

_PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH"]


def _configure_logging(log_level_name: str, log_file_dir: str) -> None:  # pragma: no cover
    log_level = getattr(logging, log_level_name)
    log_format = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s:%(message)s"

    rid_filter = RequestIDFilter()
    formatter = logging.Formatter(log_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.addFilter(rid_filter)

    if not root_logger.handlers:
        console = logging.StreamHandler()
        console.setLevel(log_level)
        root_logger.addHandler(console)

    for handler in root_logger.handlers:
        handler.setFormatter(formatter)
        handler.addFilter(rid_filter)

    # uvicorn loggers don't propagate to root
    for uv_logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uv_log = logging.getLogger(uv_logger_name)
        uv_log.addFilter(rid_filter)
        for handler in uv_log.handlers:
            handler.setFormatter(formatter)
            handler.addFilter(rid_filter)

    if log_file_dir:
        os.makedirs(log_file_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        log_file = os.path.join(log_file_dir, f"capbroker_{timestamp}.log")
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(rid_filter)
        root_logger.addHandler(file_handler)
        for uv_logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            logging.getLogger(uv_logger_name).addHandler(file_handler)
        logger.info(f"Logging to file: {log_file}")


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover
    """Application startup and shutdown."""
    global _dispatcher, _tools, _config

    _config = load_config()
    _configure_logging(_config.log_level, _config.log_file_dir)

    # Configuration errors abort startup here, never at request time.
    _dispatcher = await Dispatcher.build(_config)
    _tools = BrokerToolExecutor(_dispatcher)
    _dispatcher.start_sweeper(_config.session_sweep_interval_seconds)

    logger.info(f"Broker started ({_config.environment.value}), proxy at {_config.proxy.public_url}")
    yield
    await _dispatcher.close()
    logger.info("Broker shutdown")


app = FastAPI(
    title="capbroker",
    description="Local credential broker for AI agents",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestIDMiddleware)


@app.exception_handler(BrokerError)
async def broker_error_handler(request: Request, exc: BrokerError):
    return JSONResponse(status_code=exc.http_status, content={"error": exc.as_dict()})


def _require_dispatcher() -> Dispatcher:
    if not _dispatcher:
        raise HTTPException(503, "Broker not initialized")
    return _dispatcher


# --- API Endpoints ---

@app.get("/api/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/api/providers/health")
async def providers_health():
    dispatcher = _require_dispatcher()
    results = await dispatcher.registry.health_check_all()
    return {
        "healthy": all(r.healthy for r in results.values()),
        "providers": {name: r.to_dict() for name, r in results.items()},
    }


@app.get("/api/sessions")
async def list_sessions():
    dispatcher = _require_dispatcher()
    sessions = []
    for session in dispatcher.sessions.list_sessions():
        entry = session.to_dict()
        # Full ids are bearer credentials; only the holder gets one.
        entry["id"] = short_id(session.id)
        sessions.append(entry)
    return {"count": len(sessions), "sessions": sessions}


@app.delete("/api/sessions/{session_id}")
async def revoke_session(session_id: str):
    dispatcher = _require_dispatcher()
    if not dispatcher.sessions.revoke_session(session_id):
        raise SessionNotFoundError()
    return {"revoked": True}


@app.get("/api/tools")
async def get_tools():
    if not _tools:
        raise HTTPException(503, "Not ready")
    return {"tools": _tools.get_tool_definitions()}


@app.post("/api/tools/{tool_name}")
async def call_tool(tool_name: str, request: Request):
    if not _tools:
        raise HTTPException(503, "Not ready")
    raw = await request.body()
    try:
        arguments = await request.json() if raw else {}
    except ValueError:
        raise HTTPException(400, "Tool arguments must be a JSON object") from None
    if not isinstance(arguments, dict):
        raise HTTPException(400, "Tool arguments must be a JSON object")
    result = await _tools.execute(ToolCall(tool_name=tool_name, arguments=arguments))
    return result.to_dict()


# Registered last so /api/* always wins over a service called "api".
@app.api_route("/{service}/{path:path}", methods=_PROXY_METHODS)
async def proxy(service: str, path: str, request: Request):
    dispatcher = _require_dispatcher()
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise SessionNotFoundError()

    target = "/" + path
    if request.url.query:
        target += "?" + request.url.query
    raw = await request.body()

    response = await dispatcher.proxy(
        session_id=token.strip(),
        service=service,
        method=request.method,
        path=target,
        body=raw.decode("utf-8", errors="replace") if raw else None,
        headers=dict(request.headers),
    )
    return Response(content=response.body, status_code=response.status, headers=response.headers)
