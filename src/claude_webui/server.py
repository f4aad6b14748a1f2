"""FastAPI web server for claude-webui."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from . import __version__
from .bridge import ClaudeOptions
from .context import AppContext
from .core import check_project_name
from .errors import (
    CheckpointNotFoundError,
    ConfigurationError,
    InvalidProjectNameError,
    InvalidProjectPathError,
    ProjectExistsError,
    SessionNotFoundError,
    WebUIError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ctx = AppContext.create()
    app.state.ctx = ctx
    await ctx.start()
    try:
        yield
    finally:
        await ctx.close()


app = FastAPI(title="claude-webui", version=__version__, lifespan=lifespan)


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def valid_project_name(project_name: str) -> str:
    try:
        return check_project_name(project_name)
    except InvalidProjectNameError as e:
        raise HTTPException(status_code=400, detail=str(e))


class CreateProjectRequest(BaseModel):
    path: str
    displayName: str | None = None


class RenameProjectRequest(BaseModel):
    displayName: str | None = None


class CreateCheckpointRequest(BaseModel):
    projectName: str
    promptId: str
    userMessage: str


class RestoreCheckpointRequest(BaseModel):
    projectName: str
    promptId: str


# ── Projects ─────────────────────────────────────────────────────


@app.get("/api/projects")
async def list_projects(ctx: AppContext = Depends(get_context)):
    """Return all projects with their most recent sessions."""
    try:
        return ctx.projects.snapshot()
    except Exception as e:
        logger.error("Failed to list projects: %s", e)
        raise HTTPException(status_code=500, detail="Failed to list projects")


@app.post("/api/projects/create")
async def create_project(body: CreateProjectRequest, ctx: AppContext = Depends(get_context)):
    path = body.path.strip()
    if not path:
        raise HTTPException(status_code=400, detail="Project path is required")

    display_name = (body.displayName or "").strip() or None
    try:
        project = ctx.projects.add_project_manually(path, display_name)
    except InvalidProjectPathError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProjectExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OSError as e:
        logger.error("Failed to create project for %s: %s", path, e)
        raise HTTPException(status_code=500, detail="Failed to create project")

    return {"success": True, "project": project.to_dict()}


@app.put("/api/projects/{project_name}/rename")
async def rename_project(body: RenameProjectRequest, project_name: str = Depends(valid_project_name), ctx: AppContext = Depends(get_context)):
    try:
        ctx.projects.rename_project(project_name, body.displayName)
    except OSError as e:
        logger.error("Failed to rename project %s: %s", project_name, e)
        raise HTTPException(status_code=500, detail="Failed to rename project")
    return {"success": True}


@app.delete("/api/projects/{project_name}")
async def delete_project(project_name: str = Depends(valid_project_name), ctx: AppContext = Depends(get_context)):
    """Delete a project with all its sessions and checkpoints."""
    try:
        ctx.projects.delete_project(project_name)
    except OSError as e:
        logger.error("Failed to delete project %s: %s", project_name, e)
        raise HTTPException(status_code=500, detail="Failed to delete project")
    return {"success": True}


# ── Sessions ─────────────────────────────────────────────────────


@app.get("/api/projects/{project_name}/sessions")
async def list_sessions(
    project_name: str = Depends(valid_project_name),
    limit: int = Query(5, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    ctx: AppContext = Depends(get_context),
):
    return ctx.provider.list_sessions(project_name, limit=limit, offset=offset).to_dict()


@app.get("/api/projects/{project_name}/sessions/{session_id}/messages")
async def get_session_messages(session_id: str, project_name: str = Depends(valid_project_name), ctx: AppContext = Depends(get_context)):
    """Return the raw log entries of a session, oldest first."""
    return {"messages": ctx.provider.list_messages(project_name, session_id)}


@app.delete("/api/projects/{project_name}/sessions/{session_id}")
async def delete_session(session_id: str, project_name: str = Depends(valid_project_name), ctx: AppContext = Depends(get_context)):
    try:
        ctx.provider.delete_session(project_name, session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except OSError as e:
        logger.error("Failed to delete session %s: %s", session_id, e)
        raise HTTPException(status_code=500, detail="Failed to delete session")
    return {"success": True}


@app.delete("/api/projects/{project_name}/sessions")
async def delete_all_sessions(project_name: str = Depends(valid_project_name), ctx: AppContext = Depends(get_context)):
    deleted = ctx.provider.delete_all_sessions(project_name)
    return {"success": True, "deletedCount": deleted}


# ── Checkpoints ──────────────────────────────────────────────────


@app.post("/api/checkpoints/create")
async def create_checkpoint(body: CreateCheckpointRequest, ctx: AppContext = Depends(get_context)):
    if not body.projectName or not body.promptId or not body.userMessage:
        raise HTTPException(status_code=400, detail="Project name, prompt ID, and user message are required")
    try:
        return ctx.checkpoints.create(body.projectName, body.promptId, body.userMessage)
    except (CheckpointNotFoundError, InvalidProjectNameError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OSError as e:
        logger.error("Failed to create checkpoint %s: %s", body.promptId, e)
        raise HTTPException(status_code=500, detail="Failed to create checkpoint")


@app.post("/api/checkpoints/restore")
async def restore_checkpoint(body: RestoreCheckpointRequest, ctx: AppContext = Depends(get_context)):
    try:
        return ctx.checkpoints.restore(body.projectName, body.promptId)
    except InvalidProjectNameError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CheckpointNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except OSError as e:
        logger.error("Failed to restore checkpoint %s: %s", body.promptId, e)
        raise HTTPException(status_code=500, detail="Failed to restore checkpoint")


@app.get("/api/checkpoints/{project_name}")
async def list_checkpoints(project_name: str = Depends(valid_project_name), ctx: AppContext = Depends(get_context)):
    return {"checkpoints": ctx.checkpoints.list_checkpoints(project_name)}


@app.delete("/api/checkpoints/{project_name}/{prompt_id}")
async def delete_checkpoint(prompt_id: str, project_name: str = Depends(valid_project_name), ctx: AppContext = Depends(get_context)):
    return {"success": ctx.checkpoints.delete(project_name, prompt_id)}


@app.delete("/api/checkpoints/{project_name}")
async def clear_checkpoints(project_name: str = Depends(valid_project_name), ctx: AppContext = Depends(get_context)):
    return {"success": True, "deletedCount": ctx.checkpoints.clear_project(project_name)}


# ── WebSocket ────────────────────────────────────────────────────


class ClientConnection:
    """A chat WebSocket; serializes sends from concurrent command tasks."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.closed = False
        self._lock = asyncio.Lock()

    async def send_json(self, message: dict) -> None:
        if self.closed:
            return
        try:
            async with self._lock:
                await self.websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            self.closed = True
            logger.debug("Dropping message to closed client: %s", e)


@app.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    ctx: AppContext = websocket.app.state.ctx
    await websocket.accept()
    conn = ClientConnection(websocket)
    ctx.hub.add(conn)
    logger.info("Chat client connected (%d total)", len(ctx.hub))

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                await conn.send_json({"type": "error", "error": f"Invalid JSON: {e}"})
                continue
            if not isinstance(data, dict):
                await conn.send_json({"type": "error", "error": "Expected a JSON object"})
                continue
            await _dispatch(ctx, conn, data)
    except WebSocketDisconnect:
        logger.info("Chat client disconnected")
    finally:
        conn.closed = True
        ctx.hub.discard(conn)


async def _dispatch(ctx: AppContext, conn: ClientConnection, data: dict) -> None:
    kind = data.get("type")

    if kind == "claude-command":
        options = ClaudeOptions.from_dict(data.get("options"))
        logger.info("Command for session %s (resume=%s)", options.session_id or "new", options.resume)
        ctx.spawn(_run_command(ctx, conn, data.get("command") or "", options))
    elif kind == "abort-session":
        session_id = data.get("sessionId")
        success = ctx.processes.abort(session_id) if session_id else False
        await conn.send_json({"type": "session-aborted", "sessionId": session_id, "success": success})
    elif kind == "truncate_messages":
        await conn.send_json(_truncate(ctx, data.get("data") or {}))
    else:
        logger.debug("Ignoring WebSocket message of type %r", kind)


async def _run_command(ctx: AppContext, conn: ClientConnection, command: str, options: ClaudeOptions) -> None:
    try:
        await ctx.bridge.spawn(command, options, conn.send_json)
    except ConfigurationError as e:
        logger.error("%s", e)
        await conn.send_json({"type": "error", "error": str(e)})


def _truncate(ctx: AppContext, payload: dict) -> dict:
    checkpoint_id = payload.get("checkpointId")
    message_count = payload.get("messageCount")
    project_name = payload.get("projectName")
    session_id = payload.get("sessionId")

    response = {"type": "messages-truncated", "checkpointId": checkpoint_id, "messageCount": message_count}
    if not (project_name and session_id and checkpoint_id and message_count):
        return {**response, "success": False, "error": "Missing required truncation parameters"}

    try:
        result = ctx.provider.truncate_session(project_name, session_id, int(message_count))
    except (WebUIError, OSError, ValueError) as e:
        logger.error("Truncation of %s failed: %s", session_id, e)
        return {**response, "success": False, "error": str(e)}

    return {
        **response,
        "truncatedCount": result["truncated"],
        "filesModified": result["files"],
        "success": True,
    }
