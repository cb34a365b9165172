"""hardmem HTTP Server -- JSON API over the Hard Memory bridge.

Routes:
    GET    /health
    GET    /api/memories?q=&tags=a,b&limit=10
    POST   /api/memories          {title, content, tags, folder_id, conversation_id}
    PUT    /api/memories          {id, title?, content?, tags?, folder_id?}
    DELETE /api/memories?id=
    POST   /api/context           {query, max_results, search_tags, include_recent}
    POST   /api/commands          {text}

The caller is identified by the ``x-user-id`` header. When an API key is
configured it must be sent as ``x-api-key`` (or ``?api_key=``).
"""

import functools
import json
import logging
import secrets
from pathlib import Path
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from hardmem import bridge
from hardmem.crypto import hardmem_home
from hardmem.formatter import format_hard_memory_for_prompt
from hardmem.types import HardMemoryError

logger = logging.getLogger("hardmem.server.http")

MAX_LIMIT = 100


def api_key_path() -> Path:
    return hardmem_home() / "api_key"


def get_or_create_api_key() -> str:
    """Load the API key from $HARDMEM_HOME/api_key, or generate one."""
    path = api_key_path()
    if path.exists():
        return path.read_text().strip()
    key = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(key + "\n")
    path.chmod(0o600)
    return key


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _limit(value: Optional[str], default: int = 10) -> int:
    try:
        return max(1, min(int(value), MAX_LIMIT))
    except (TypeError, ValueError):
        return default


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValueError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def create_http_app(api_key: Optional[str] = None) -> Starlette:
    """Create the Starlette app.

    Args:
        api_key: Optional API key for authentication. None disables the check.
    """

    def endpoint(fn):
        """Authenticate, resolve the caller and map errors to status codes."""

        @functools.wraps(fn)
        async def wrapper(request: Request):
            if api_key:
                provided = request.headers.get("x-api-key") or request.query_params.get("api_key")
                if provided is None or not secrets.compare_digest(provided, api_key):
                    return _error("Unauthorized", 401)
            user_id = (request.headers.get("x-user-id") or "").strip()
            if not user_id:
                return _error("Unauthorized", 401)
            try:
                return await fn(request, user_id)
            except ValueError as e:
                return _error(str(e), 400)
            except Exception as e:
                logger.error("%s %s failed: %s", request.method, request.url.path, e, exc_info=True)
                return _error("Internal server error", 500)

        return wrapper

    async def health(request: Request):
        return JSONResponse({"status": "ok", "server": "hardmem", "store": bridge.get_store().name})

    @endpoint
    async def list_memories(request: Request, user_id: str):
        query = request.query_params.get("q", "")
        tags = [t for t in request.query_params.get("tags", "").split(",") if t]
        limit = _limit(request.query_params.get("limit"))

        db = bridge.get_store()
        if query or tags:
            memories = await db.search_memories(query, tags, user_id)
        else:
            memories = await db.get_all_memories(user_id)
        limited = memories[:limit]
        return JSONResponse({
            "memories": [m.to_dict() for m in limited],
            "count": len(limited),
            "total": len(memories),
            "query": query,
            "tags": tags,
        })

    @endpoint
    async def create_memory(request: Request, user_id: str):
        body = await _json_body(request)
        title = (body.get("title") or "").strip()
        if not title:
            return _error("Title is required", 400)
        memory = await bridge.save_memory_from_ai(
            user_id,
            title,
            body.get("content") or "",
            tags=body.get("tags") or [],
            folder_id=body.get("folder_id"),
            conversation_id=body.get("conversation_id"),
            auto_entities=bool(body.get("auto_entities", True)),
        )
        return JSONResponse({"memory": memory.to_dict()}, status_code=201)

    @endpoint
    async def update_memory(request: Request, user_id: str):
        body = await _json_body(request)
        memory_id = body.get("id")
        if not memory_id:
            return _error("Memory ID is required", 400)
        patch = {k: body[k] for k in ("title", "content", "tags", "folder_id") if k in body}
        result = await bridge.edit_memory(memory_id, patch, user_id=user_id)
        if not result["success"]:
            if "not found" in result["error"]:
                return _error("Memory not found", 404)
            return _error(result["error"], 400)
        return JSONResponse({"memory": result["memory"]})

    @endpoint
    async def delete_memory(request: Request, user_id: str):
        memory_id = request.query_params.get("id")
        if not memory_id:
            return _error("Memory ID is required", 400)
        result = await bridge.delete_memory(memory_id, user_id=user_id)
        if not result["success"]:
            return _error("Memory not found", 404)
        return JSONResponse({"success": True})

    @endpoint
    async def context(request: Request, user_id: str):
        body = await _json_body(request)
        ctx = await bridge.lookup(
            user_id,
            body.get("query") or "",
            max_results=_limit(body.get("max_results")),
            search_tags=body.get("search_tags") or [],
            include_recent=bool(body.get("include_recent", True)),
        )
        return JSONResponse({
            "prompt": format_hard_memory_for_prompt(ctx),
            "memories": [m.to_dict() for m in ctx.found_memories],
            "relevant_count": ctx.relevant_count,
            "stages": dict(ctx.stages),
            "is_factual": ctx.is_factual,
        })

    @endpoint
    async def command(request: Request, user_id: str):
        body = await _json_body(request)
        try:
            result = await bridge.handle_command(user_id, body.get("text") or "")
        except HardMemoryError as e:
            return _error(str(e), 503)
        return JSONResponse(result)

    async def memories(request: Request):
        handlers = {
            "GET": list_memories,
            "POST": create_memory,
            "PUT": update_memory,
            "DELETE": delete_memory,
        }
        return await handlers.get(request.method, list_memories)(request)

    return Starlette(
        routes=[
            Route("/health", endpoint=health),
            Route("/api/memories", endpoint=memories, methods=["GET", "POST", "PUT", "DELETE"]),
            Route("/api/context", endpoint=context, methods=["POST"]),
            Route("/api/commands", endpoint=command, methods=["POST"]),
        ],
    )


async def run_http(host: str, port: int, api_key: Optional[str]) -> None:
    """Create the HTTP app and serve it with uvicorn."""
    import uvicorn

    app = create_http_app(api_key=api_key)
    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    srv = uvicorn.Server(config)
    await srv.serve()
