"""
server.py — Zen Chat · FastAPI Host
===================================
Hosts the chat core for a browser (or any websocket) UI.  Each UI socket
owns exactly one ChatSessionController, i.e. one conversation session with
its own session id, message log, responder connection and microphone.

Endpoints
---------
  GET  /health       Service liveness
  GET  /config       Current runtime configuration
  PUT  /config       Deep-merge patch, persisted to CHAT_CONFIG_PATH
  GET  /personas     Persona picker data (never the hidden system prompt)
  WS   /ws/chat      One chat session per socket

WS protocol
-----------
Client → server (JSON):
    {"action": "submit", "text": "..."}
    {"action": "quick_reply", "index": 0}
    {"action": "persona", "persona": "shiva"}
    {"action": "record"}                       toggle push-to-talk
    {"action": "dictation", "enabled": true}
    {"action": "state"}
Server → client (JSON): {"type": "session", ...full state} on connect and on
"state", then one object per controller event ({"type": "transcript", ...},
{"type": "typing", ...}, {"type": "notice", ...}, ...).

Sessions are torn down when the socket closes: responder connection closed,
microphone released, dictation stopped.  Config changes apply to sessions
opened afterwards.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from config import ChatEngineConfig
from session import ChatSessionController

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("CHAT_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("zen_chat.server")

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
MAX_SESSIONS = int(os.getenv("MAX_CHAT_SESSIONS", "200"))

# WS close code for "try again later"
_CLOSE_TRY_AGAIN_LATER = 1013


def _config_path() -> Path:
    return Path(os.getenv("CHAT_CONFIG_PATH", "chat_config.json"))


# session_id → controller
active_sessions: dict[str, ChatSessionController] = {}


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class PersonaInfo(BaseModel):
    id: str
    name: str
    description: str
    greeting: str
    quick_replies: list[str]
    default: bool


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    app.state.config = ChatEngineConfig.load(_config_path())
    log.info("event=server_start max_sessions=%d personas=%d", MAX_SESSIONS, len(app.state.config.personas))
    yield
    log.info("event=server_shutdown closing %d active sessions", len(active_sessions))
    close_tasks = [c.aclose() for c in list(active_sessions.values())]
    if close_tasks:
        await asyncio.gather(*close_tasks, return_exceptions=True)
    active_sessions.clear()
    log.info("event=server_stopped")


app = FastAPI(
    title="Zen Chat",
    version="1.0.0",
    description="Real-time spiritual guidance chat core",
    lifespan=_lifespan,
)

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe."""
    return JSONResponse({
        "status":          "ok",
        "active_sessions": len(active_sessions),
        "max_sessions":    MAX_SESSIONS,
    })


@app.get("/config")
async def get_config(request: Request) -> JSONResponse:
    config: ChatEngineConfig = request.app.state.config
    return JSONResponse(config.model_dump())


@app.put("/config")
async def put_config(request: Request) -> JSONResponse:
    """Merge a partial config over the current one and persist it.

    Example:
        {"moderation": {"off_topic_keywords": ["politics", "crypto"]}}
    """
    try:
        patch = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
    if not isinstance(patch, dict):
        raise HTTPException(status_code=400, detail="Config patch must be a JSON object.")

    current: ChatEngineConfig = request.app.state.config
    try:
        updated = current.merge_patch(patch)
    except ValidationError as exc:
        log.warning("event=config_patch_rejected errors=%d", exc.error_count())
        raise HTTPException(status_code=400, detail=json.loads(exc.json())) from exc

    try:
        updated.save(_config_path())
    except OSError as exc:
        log.error("event=config_save_failed path=%s error=%s", _config_path(), exc)
        raise HTTPException(status_code=500, detail="Failed to persist config.") from exc

    request.app.state.config = updated
    log.info("event=config_updated keys=%s", sorted(patch))
    return JSONResponse(updated.model_dump())


@app.get("/personas", response_model=list[PersonaInfo])
async def list_personas(request: Request) -> list[PersonaInfo]:
    config: ChatEngineConfig = request.app.state.config
    return [
        PersonaInfo(
            id=persona_id,
            name=p.name,
            description=p.description,
            greeting=p.greeting,
            quick_replies=p.quick_replies,
            default=persona_id == config.default_persona,
        )
        for persona_id, p in config.personas.items()
    ]


# ---------------------------------------------------------------------------
# Chat websocket
# ---------------------------------------------------------------------------

async def _dispatch(controller: ChatSessionController, data: Any, outbox: asyncio.Queue) -> None:
    """Apply one client action to the controller."""
    if not isinstance(data, dict):
        controller.notify_user("Malformed request.")
        return

    action = data.get("action")
    if action == "submit":
        text = data.get("text", "")
        if not isinstance(text, str):
            controller.notify_user("Malformed request.")
            return
        await controller.submit(text)
    elif action == "quick_reply":
        try:
            await controller.submit_quick_reply(int(data.get("index", -1)))
        except (TypeError, ValueError) as exc:
            controller.notify_user(str(exc))
    elif action == "persona":
        try:
            await controller.switch_persona(str(data.get("persona", "")))
        except ValueError as exc:
            controller.notify_user(str(exc))
    elif action == "record":
        await controller.toggle_recording()
    elif action == "dictation":
        if data.get("enabled", True):
            await controller.start_dictation()
        else:
            await controller.stop_dictation()
    elif action == "state":
        outbox.put_nowait({"type": "session", **controller.state()})
    else:
        log.info("event=ws_unknown_action session=%s action=%r", controller.session_id, action)
        controller.notify_user(f"Unknown action: {action!r}")


@app.websocket("/ws/chat")
async def ws_chat(ws: WebSocket, persona: str | None = None) -> None:
    await ws.accept()

    if len(active_sessions) >= MAX_SESSIONS:
        log.warning("event=session_limit_reached current=%d max=%d", len(active_sessions), MAX_SESSIONS)
        await ws.close(code=_CLOSE_TRY_AGAIN_LATER)
        return

    config: ChatEngineConfig = ws.app.state.config
    persona_id = persona if persona in config.personas else None
    controller = ChatSessionController(config, persona_id=persona_id)
    active_sessions[controller.session_id] = controller
    log.info("event=ws_chat_connected session=%s remote=%s", controller.session_id, ws.client)

    outbox: asyncio.Queue[dict] = asyncio.Queue()
    controller.add_listener(lambda kind, payload: outbox.put_nowait({"type": kind, **payload}))
    outbox.put_nowait({"type": "session", **controller.state()})

    async def sender() -> None:
        while True:
            event = await outbox.get()
            await ws.send_json(event)

    send_task = asyncio.create_task(sender(), name=f"ws_chat_sender_{controller.session_id}")
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                controller.notify_user("Malformed request.")
                continue
            try:
                data = json.loads(raw)
            except ValueError:
                controller.notify_user("Malformed request.")
                continue
            await _dispatch(controller, data, outbox)
    except WebSocketDisconnect:
        pass
    finally:
        send_task.cancel()
        try:
            await send_task
        except asyncio.CancelledError:
            if asyncio.current_task().cancelling():
                raise
        except Exception as exc:
            log.debug("event=ws_chat_sender_error session=%s error=%s", controller.session_id, exc)
        finally:
            await controller.aclose()
            active_sessions.pop(controller.session_id, None)
            log.info("event=ws_chat_disconnected session=%s", controller.session_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=os.getenv("CHAT_HOST", "127.0.0.1"),
        port=int(os.getenv("CHAT_PORT", "8000")),
    )
