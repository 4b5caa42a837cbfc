"""ELF HTTP Server -- Streamable HTTP transport for the MCP server.

Serves the same tools as the stdio server through the MCP SDK's
StreamableHTTPSessionManager, for hosts that cannot spawn a stdio process.
Requests to /mcp need the API key from $ELF_HOME/api_key unless auth is off.
"""

import contextlib
import logging
import os
import secrets
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Dict, Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import ASGIApp, Receive, Scope, Send

from mcp.server.streamable_http_manager import StreamableHTTPSessionManager

from elfmem import config

logger = logging.getLogger("elfmem.server.http")

SERVER_NAME = "elf-memory"


def api_key_path() -> Path:
    return config.elf_home() / "api_key"


def get_or_create_api_key() -> str:
    """Return the key stored in $ELF_HOME/api_key, writing a fresh one (0600) if absent."""
    path = api_key_path()
    if path.exists():
        return path.read_text().strip()
    path.parent.mkdir(parents=True, exist_ok=True)
    generated = secrets.token_urlsafe(32)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, (generated + "\n").encode("utf-8"))
    finally:
        os.close(fd)
    logger.info("Generated HTTP API key at %s", path)
    return generated


def _authorized(request: Request, api_key: str) -> bool:
    provided = request.headers.get("x-api-key") or request.query_params.get("api_key") or ""
    return secrets.compare_digest(provided.encode(), api_key.encode())


def require_api_key(app: ASGIApp, api_key: Optional[str]) -> ASGIApp:
    """Wrap ``app`` so requests without ``api_key`` get a 401. None leaves it open."""
    if not api_key:
        return app

    async def guarded(scope: Scope, receive: Receive, send: Send) -> None:
        if not _authorized(Request(scope, receive), api_key):
            await JSONResponse({"error": "Unauthorized"}, status_code=401)(scope, receive, send)
            return
        await app(scope, receive, send)

    return guarded


def server_card() -> Dict[str, Any]:
    from elfmem import __version__
    from elfmem.server.tool_schemas import TOOL_SCHEMAS

    return {
        "name": SERVER_NAME,
        "version": __version__,
        "description": "Emergent Learning Framework memory for AI coding assistants",
        "transports": [
            {"type": "streamable-http", "url": "/mcp"},
            {"type": "stdio", "command": "elfmem serve"},
        ],
        "tools_count": len(TOOL_SCHEMAS),
        "tools": [schema["name"] for schema in TOOL_SCHEMAS],
    }


async def _health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "server": SERVER_NAME})


async def _server_card(request: Request) -> JSONResponse:
    return JSONResponse(server_card())


def create_http_app(server, api_key: Optional[str] = None) -> Starlette:
    """Starlette app exposing ``server`` at /mcp plus /health and the server card.

    ``api_key`` guards /mcp only; the two informational routes stay open.
    """
    sessions = StreamableHTTPSessionManager(app=server, json_response=True, stateless=True)

    async def mcp_endpoint(scope: Scope, receive: Receive, send: Send) -> None:
        await sessions.handle_request(scope, receive, send)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with sessions.run():
            yield

    routes = [
        Mount("/mcp", app=require_api_key(mcp_endpoint, api_key)),
        Route("/health", endpoint=_health),
        Route("/.well-known/mcp.json", endpoint=_server_card),
    ]
    return Starlette(routes=routes, lifespan=lifespan)


async def run_http(host: str, port: int, api_key: Optional[str]) -> None:
    """Serve the stdio server's tool set over HTTP with uvicorn."""
    import uvicorn

    from elfmem.server.mcp_server import server

    if api_key is None:
        logger.warning("HTTP auth disabled; /mcp is open to anyone who can reach %s:%d", host, port)
    http_app = create_http_app(server, api_key=api_key)
    await uvicorn.Server(uvicorn.Config(http_app, host=host, port=port, log_level="info")).serve()
