"""Centralized multi-tenant HTTP binding.

Serves one FastMCP tool surface over two transports: Streamable HTTP at
``/mcp`` and legacy SSE at ``/sse`` + ``/messages/``. Every handshake gets
its own TransportSession (and ToolDispatcher), so refinement state never
crosses connections. Generated files are written flat into the output
directory and served back from ``/files/<name>``.

Request path, outermost first:

    AuthMiddleware -> TransportSessionMiddleware -> TransportRouter
        -> FastMCP Streamable HTTP app (/mcp, /healthz, /files/...)
        -> FastMCP SSE app (/sse, /messages/)
"""
from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, MutableMapping, Optional, Tuple

import anyio.to_thread
import uvicorn
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_request
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response

from .auth import AuthVerifier, RequestCredentials, create_auth_verifier
from .config import ServerConfig, require_api_key
from .core import GeminiImageGenerator
from .dispatcher import DispatcherOptions, ImageGenerator, ToolDispatcher, resolve_download_path
from .server import create_server
from .session import SESSION_TTL_SECONDS
from .transports import SSE, STREAMABLE_HTTP, TransportRegistry, TransportSessionError

logger = logging.getLogger(__name__)

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]

SERVER_NAME = "gemini-diagram"
MCP_PATH = "/mcp"
SSE_PATH = "/sse"
MESSAGE_PATH = "/messages"
HEALTH_PATH = "/healthz"
SESSION_HEADER = "mcp-session-id"
# Registry backstop lags the transport's own idle timeout so the transport always expires first.
IDLE_GRACE_SECONDS = 60

_SSE_SESSION_RE = re.compile(r"session_id=([0-9a-fA-F]+)")
# The endpoint event is the first thing on the stream; stop looking after this much.
_SSE_SCAN_LIMIT = 4096


def _header(scope: Scope, name: str) -> Optional[str]:
    target = name.encode("latin-1")
    for key, value in scope.get("headers") or []:
        if key.lower() == target:
            return value.decode("latin-1")
    return None


def _query_param(scope: Scope, name: str) -> Optional[str]:
    return Request(scope).query_params.get(name)


def _normalize_path(path: str) -> str:
    return path.rstrip("/") or "/"


async def _jsonrpc_error(scope: Scope, receive: Receive, send: Send, message: str, status: int) -> None:
    body = {"jsonrpc": "2.0", "error": {"code": -32000, "message": message}, "id": None}
    await JSONResponse(body, status_code=status)(scope, receive, send)


async def _read_body(receive: Receive) -> Tuple[bytes, List[Message]]:
    """Drain the request body, keeping the messages so they can be replayed."""
    chunks: List[bytes] = []
    messages: List[Message] = []
    while True:
        message = await receive()
        messages.append(message)
        if message["type"] != "http.request":
            break
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            break
    return b"".join(chunks), messages


def _replay(messages: List[Message], receive: Receive) -> Receive:
    pending = list(messages)

    async def replay() -> Message:
        if pending:
            return pending.pop(0)
        return await receive()

    return replay


def is_initialize_request(body: bytes) -> bool:
    """True when a JSON-RPC payload (single or batch) carries ``initialize``."""
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return False
    messages = payload if isinstance(payload, list) else [payload]
    return any(isinstance(m, dict) and m.get("method") == "initialize" for m in messages)


class AuthMiddleware:
    """Reject unauthenticated requests on every path except the health check."""

    def __init__(self, app: ASGIApp, verifier: AuthVerifier, *, public_paths=(HEALTH_PATH,)):
        self.app = app
        self.verifier = verifier
        self.public_paths = frozenset(public_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or _normalize_path(scope["path"]) in self.public_paths:
            await self.app(scope, receive, send)
            return

        try:
            result = await anyio.to_thread.run_sync(
                self.verifier.verify, RequestCredentials.from_scope(scope)
            )
        except Exception:  # pylint: disable=broad-except
            logger.exception("Auth middleware error")
            await JSONResponse({"error": "Internal server error"}, status_code=500)(scope, receive, send)
            return

        if not result.ok:
            logger.debug("Denied %s %s: %s", scope.get("method"), scope["path"], result.error)
            await JSONResponse({"error": result.error}, status_code=result.status)(scope, receive, send)
            return

        scope.setdefault("state", {})["auth"] = {"mode": self.verifier.mode, "claims": result.claims}
        await self.app(scope, receive, send)


class TransportSessionMiddleware:
    """Tie transport handshakes to TransportSessions in the registry.

    New sessions are registered by watching the transport announce their id
    (the ``mcp-session-id`` response header, or the SSE ``endpoint`` event).
    Follow-up requests must name a live session of the same transport kind.
    """

    def __init__(
        self,
        app: ASGIApp,
        registry: TransportRegistry,
        *,
        mcp_path: str = MCP_PATH,
        sse_path: str = SSE_PATH,
        message_path: str = MESSAGE_PATH,
    ):
        self.app = app
        self.registry = registry
        self.mcp_path = mcp_path
        self.sse_path = sse_path
        self.message_path = message_path

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = _normalize_path(scope["path"])
        if path == self.mcp_path:
            await self._streamable(scope, receive, send)
        elif path == self.sse_path:
            await self._sse_stream(scope, receive, send)
        elif path == self.message_path:
            await self._sse_message(scope, receive, send)
        else:
            await self.app(scope, receive, send)

    async def _streamable(self, scope: Scope, receive: Receive, send: Send) -> None:
        if not self.registry.accepting:
            await _jsonrpc_error(scope, receive, send, "Server is shutting down", 503)
            return

        session_id = _header(scope, SESSION_HEADER)
        if session_id:
            await self._streamable_follow_up(session_id, scope, receive, send)
            return

        if scope["method"] != "POST":
            await _jsonrpc_error(scope, receive, send, "Bad Request: No valid session ID provided", 400)
            return

        body, messages = await _read_body(receive)
        if not is_initialize_request(body):
            await _jsonrpc_error(scope, receive, send, "Bad Request: No valid session ID provided", 400)
            return

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start" and message.get("status", 500) < 400:
                for key, value in message.get("headers") or []:
                    if key.lower() == SESSION_HEADER.encode("latin-1"):
                        self._register(value.decode("latin-1"), STREAMABLE_HTTP)
                        break
            await send(message)

        await self.app(scope, _replay(messages, receive), send_wrapper)

    async def _streamable_follow_up(self, session_id: str, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            self.registry.begin(session_id, STREAMABLE_HTTP)
        except TransportSessionError as exc:
            await _jsonrpc_error(scope, receive, send, str(exc), exc.status)
            return

        statuses: List[int] = []

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                statuses.append(message.get("status", 500))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            self.registry.finish(session_id)
            # 404 means the transport already dropped the session (idle timeout or crash).
            if scope["method"] == "DELETE" or statuses[:1] == [404]:
                self.registry.release(session_id)

    async def _sse_stream(self, scope: Scope, receive: Receive, send: Send) -> None:
        if not self.registry.accepting:
            await _jsonrpc_error(scope, receive, send, "Server is shutting down", 503)
            return

        registered: List[str] = []
        buffer = bytearray()

        async def send_wrapper(message: Message) -> None:
            if (
                message["type"] == "http.response.body"
                and not registered
                and len(buffer) < _SSE_SCAN_LIMIT
            ):
                buffer.extend(message.get("body", b""))
                match = _SSE_SESSION_RE.search(buffer.decode("utf-8", errors="ignore"))
                if match:
                    session_id = match.group(1)
                    self._register(session_id, SSE)
                    registered.append(session_id)
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            for session_id in registered:
                self.registry.release(session_id)

    async def _sse_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            self.registry.resolve(_query_param(scope, "session_id"), SSE)
        except TransportSessionError as exc:
            await _jsonrpc_error(scope, receive, send, str(exc), exc.status)
            return
        await self.app(scope, receive, send)

    def _register(self, session_id: str, kind: str) -> None:
        try:
            self.registry.register(session_id, kind)
        except TransportSessionError as exc:
            logger.warning("Could not register %s session %s: %s", kind, session_id, exc)


class TransportRouter:
    """Send legacy SSE traffic to the SSE app and everything else (lifespan included) to /mcp."""

    def __init__(
        self,
        streamable_app: ASGIApp,
        sse_app: ASGIApp,
        *,
        sse_path: str = SSE_PATH,
        message_path: str = MESSAGE_PATH,
    ):
        self.streamable_app = streamable_app
        self.sse_app = sse_app
        self.sse_path = sse_path
        self.message_path = message_path

    def _is_sse(self, path: str) -> bool:
        return (
            path == self.sse_path
            or path == self.message_path
            or path.startswith(self.message_path + "/")
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and self._is_sse(scope["path"]):
            await self.sse_app(scope, receive, send)
        else:
            await self.streamable_app(scope, receive, send)


class DiagramHttpApp:
    """The assembled ASGI application plus handles used by the runner and tests."""

    def __init__(self, asgi: ASGIApp, registry: TransportRegistry, mcp, options: DispatcherOptions):
        self.asgi = asgi
        self.registry = registry
        self.mcp = mcp
        self.options = options

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.asgi(scope, receive, send)


def _session_id_from_request(request: Request) -> Optional[str]:
    return request.headers.get(SESSION_HEADER) or request.query_params.get("session_id")


def create_app(
    config: ServerConfig,
    verifier: AuthVerifier,
    generator: Optional[ImageGenerator] = None,
    *,
    idle_timeout: float = SESSION_TTL_SECONDS,
) -> DiagramHttpApp:
    """Build the centralized HTTP application.

    The output directory is created here so a bad OUTPUT_DIR fails at startup.
    Streamable HTTP sessions with no request in flight for ``idle_timeout``
    seconds are terminated by the transport; the registry follows.
    """
    output_dir = config.http_output_dir()
    output_dir.mkdir(parents=True, exist_ok=True)

    options = DispatcherOptions(
        output_dir=output_dir,
        public_base_url=config.http_public_base_url(),
        allow_absolute_output=False,
        allow_subdirs_in_output=False,
        inline_images=config.inline_images,
        download_auth_hint=verifier.mode != "none",
    )
    if generator is None:
        generator = GeminiImageGenerator(model_id=config.model_id)

    registry = TransportRegistry(
        lambda session_id: ToolDispatcher(options, generator, session_key=session_id),
        idle_timeout=idle_timeout + IDLE_GRACE_SECONDS,
    )

    def resolve_dispatcher() -> ToolDispatcher:
        session = registry.get(_session_id_from_request(get_http_request()))
        if session is None:
            raise ToolError("No active transport session for this request.")
        return session.dispatcher

    @asynccontextmanager
    async def lifespan(_server):
        try:
            yield {}
        finally:
            logger.info("Shutting down")
            registry.close_all()

    mcp = create_server(resolve_dispatcher, name=SERVER_NAME, lifespan=lifespan)

    @mcp.custom_route(HEALTH_PATH, methods=["GET"])
    async def healthz(_request: Request) -> Response:
        return JSONResponse({"ok": True})

    @mcp.custom_route("/files/{filename}", methods=["GET"])
    async def download_file(request: Request) -> Response:
        try:
            path = resolve_download_path(output_dir, request.path_params["filename"])
        except ValueError:
            return JSONResponse({"error": "Invalid filename"}, status_code=400)
        if not path.is_file():
            return JSONResponse({"error": "Not found"}, status_code=404)
        return FileResponse(path, media_type="image/png")

    # Host header allowlist (DNS rebinding); loopback-bound servers are always checked.
    host_guard = {
        "host_origin_protection": "auto",
        "allowed_hosts": config.allowed_hosts or None,
    }
    streamable_app = mcp.http_app(
        path=MCP_PATH, transport="http", session_idle_timeout=idle_timeout, **host_guard
    )
    sse_app = mcp.http_app(path=SSE_PATH, transport="sse", **host_guard)

    router = TransportRouter(streamable_app, sse_app)
    asgi = AuthMiddleware(TransportSessionMiddleware(router, registry), verifier)
    return DiagramHttpApp(asgi, registry, mcp, options)


def _startup_banner(config: ServerConfig, options: DispatcherOptions) -> Dict[str, str]:
    base = options.public_base_url
    return {
        "listening": f"http://{config.host}:{config.port}",
        "mcp": f"{base}{MCP_PATH}",
        "sse": f"{base}{SSE_PATH}",
        "files": f"{base}/files/<filename>",
        "output": str(options.output_dir),
    }


def run_http(config: Optional[ServerConfig] = None) -> None:
    """Validate configuration, then serve until SIGINT/SIGTERM.

    Raises:
        ConfigError: If the API key or auth settings are missing or invalid.
    """
    config = config or ServerConfig.from_env()
    api_key = require_api_key()
    verifier = create_auth_verifier(config.auth)
    app = create_app(
        config,
        verifier,
        generator=GeminiImageGenerator(api_key=api_key, model_id=config.model_id),
    )

    banner = _startup_banner(config, app.options)
    logger.info("Gemini Diagram MCP server listening on %s (auth: %s)", banner["listening"], verifier.mode)
    logger.info("MCP endpoint (Streamable HTTP): %s", banner["mcp"])
    logger.info("Legacy SSE endpoint: %s", banner["sse"])
    logger.info("Files endpoint: %s", banner["files"])
    logger.info("Output directory: %s", banner["output"])
    if config.allowed_hosts:
        logger.info("Allowed hosts: %s", ", ".join(config.allowed_hosts))

    uvicorn.run(app, host=config.host, port=config.port, log_level="warning")


__all__ = [
    "AuthMiddleware",
    "DiagramHttpApp",
    "TransportRouter",
    "TransportSessionMiddleware",
    "create_app",
    "is_initialize_request",
    "run_http",
]
