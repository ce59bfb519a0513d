import argparse
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from agent_manager import AgentManager
from cli_resolver import resolve_executable
from config import PermissionMode, Settings
from rules_loader import RulesStore

logger = logging.getLogger(__name__)

APP_NAME = "Claude Web UI"
APP_VERSION = "1.0.0"
NDJSON_MEDIA_TYPE = "application/x-ndjson"
_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., description="User message or slash command")
    request_id: str = Field(..., alias="requestId", min_length=1, description="Unique id used to abort this request")
    session_id: Optional[str] = Field(default=None, alias="sessionId", description="Claude session to resume")
    allowed_tools: Optional[list[str]] = Field(
        default=None,
        alias="allowedTools",
        description="Tools approved by the user; write-capable tools are always removed",
    )
    working_directory: Optional[str] = Field(default=None, alias="workingDirectory")
    permission_mode: Optional[PermissionMode] = Field(default=None, alias="permissionMode")


def _ndjson_line(event: dict) -> bytes:
    return (json.dumps(event, ensure_ascii=False) + "\n").encode("utf-8")


async def ndjson_stream(events: AsyncIterator[dict]) -> AsyncIterator[bytes]:
    """Serialize events one line at a time; a failure mid-stream becomes a final error line."""
    try:
        async for event in events:
            yield _ndjson_line(event)
    except Exception as e:
        logger.exception("Chat stream failed after streaming began")
        yield _ndjson_line({"type": "error", "error": str(e) or "Stream failed"})
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()


async def _single_event(event: dict) -> AsyncIterator[dict]:
    yield event


def _ndjson_response(events: AsyncIterator[dict]) -> StreamingResponse:
    return StreamingResponse(
        ndjson_stream(events),
        media_type=NDJSON_MEDIA_TYPE,
        headers=_STREAM_HEADERS,
    )


async def verify_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
):
    """Verify the API key header when the server is configured with one."""
    expected = request.app.state.settings.api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _get_manager(request: Request) -> AgentManager:
    manager = request.app.state.agent_manager
    if manager is None:
        raise HTTPException(status_code=503, detail="Agent manager not initialized")
    return manager


def create_app(settings: Optional[Settings] = None, *, agent_manager: Optional[AgentManager] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.agent_manager is None:
            # Raises ExecutableNotFoundError before the server accepts requests.
            cli = await resolve_executable(settings.claude_path)
            rules = RulesStore(settings.rules_path)
            rules.load()
            app.state.agent_manager = AgentManager(
                cli_path=cli.path,
                rules=rules,
                turn_timeout=settings.turn_timeout_seconds,
            )
        yield

    app = FastAPI(
        title=APP_NAME,
        description="Web front end relay for the Claude Code CLI",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.agent_manager = agent_manager

    limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return Response(
            content=json.dumps({"detail": "Rate limit exceeded. Please slow down."}),
            status_code=429,
            media_type="application/json",
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key"],
    )

    @app.post("/api/chat", dependencies=[Depends(verify_api_key)])
    @limiter.limit(settings.rate_limit_chat)
    async def chat(request: Request, req: ChatRequest):
        """
        Run one Claude Code turn and stream it as newline-delimited JSON.

        Each line is one of:
        - claude_json: a raw engine message under `data`
        - done: the turn finished
        - aborted: the turn was cancelled through /api/abort
        - error: the turn failed; `error` holds the message
        """
        manager = _get_manager(request)
        logger.debug("Received chat request %s", req.model_dump(by_alias=True))

        if req.permission_mode == "bypassPermissions" and not settings.allow_bypass_permissions:
            return _ndjson_response(
                _single_event({"type": "error", "error": "permissionMode=bypassPermissions is disabled on this server"})
            )

        events = manager.chat_stream(
            message=req.message,
            request_id=req.request_id,
            session_id=req.session_id,
            allowed_tools=req.allowed_tools,
            working_directory=req.working_directory,
            permission_mode=req.permission_mode,
        )
        return _ndjson_response(events)

    @app.post("/api/abort/{request_id}", dependencies=[Depends(verify_api_key)])
    async def abort(request: Request, request_id: str):
        manager = _get_manager(request)
        if manager.abort(request_id):
            return {"success": True, "requestId": request_id}
        # A late abort racing natural completion is expected.
        return {"success": False, "requestId": request_id, "error": "No active request"}

    @app.get("/api/rules", dependencies=[Depends(verify_api_key)])
    async def get_rules(request: Request):
        try:
            rules = _get_manager(request).rules.get()
            return {"success": True, "rules": rules, "length": len(rules)}
        except Exception as e:
            logger.exception("Failed to get rules")
            return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    @app.post("/api/rules/reload", dependencies=[Depends(verify_api_key)])
    async def reload_rules(request: Request):
        try:
            rules = _get_manager(request).rules.reload()
            logger.info("Rules reloaded successfully (%d chars)", len(rules))
            return {
                "success": True,
                "message": "Rules reloaded successfully",
                "rules": rules,
                "length": len(rules),
            }
        except Exception as e:
            logger.exception("Failed to reload rules")
            return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    @app.get("/api/config", dependencies=[Depends(verify_api_key)])
    async def get_config():
        return {"defaultProjectPath": settings.default_project_path}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/")
    async def root():
        """API information."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "endpoints": {
                "POST /api/chat": "Stream a Claude Code turn (NDJSON)",
                "POST /api/abort/{requestId}": "Abort an in-flight chat request",
                "GET /api/rules": "Current RULES.md content",
                "POST /api/rules/reload": "Reload RULES.md from disk",
                "GET /api/config": "Frontend configuration",
                "GET /health": "Health check",
            },
        }

    return app


def main() -> None:
    parser = argparse.ArgumentParser(prog="claude-webui", description="Web UI backend for the Claude Code CLI")
    parser.add_argument("--host", default=None, help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (default: 8080)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--claude-path", default=None, help="Explicit path to the claude executable")
    parser.add_argument("--rules-path", default=None, help="Path to RULES.md (default: ./RULES.md)")
    parser.add_argument("--default-project-path", default=None, help="Project directory suggested to the frontend")
    args = parser.parse_args()

    overrides = {
        "host": args.host,
        "port": args.port,
        "claude_path": args.claude_path,
        "rules_path": Path(args.rules_path) if args.rules_path else None,
        "default_project_path": args.default_project_path,
    }
    settings = Settings.from_env().model_copy(
        update={key: value for key, value in overrides.items() if value is not None}
    )
    if args.debug:
        settings = settings.model_copy(update={"debug": True})

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.debug:
        logger.info("Debug mode enabled")

    logger.info("Server starting on %s:%s", settings.host, settings.port)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="debug" if settings.debug else "info")


if __name__ == "__main__":
    main()
