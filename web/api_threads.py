"""
Thread and agent-loop REST API endpoints.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from agent.messages import Thread, UserMessage
from agent.stream_state import state_to_dict
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()


async def _body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        body = {}
    return body if isinstance(body, dict) else {}


def _not_found(thread_id: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": f"Thread not found: {thread_id}"}, status_code=404)


def _summary(thread: Thread) -> Dict[str, Any]:
    ctrl = _state.get_controller()
    first = next((m for m in thread.messages if isinstance(m, UserMessage)), None)
    return {
        "id": thread.id,
        "title": (first.display_content[:60] if first else "New thread"),
        "created_at": thread.created_at,
        "last_modified": thread.last_modified,
        "message_count": len(thread.messages),
        "is_current": thread.id == ctrl.current_thread_id,
        "stream_state": state_to_dict(ctrl.get_stream_state(thread.id)),
    }


# ------------------------------------------------------------------
# Thread collection
# ------------------------------------------------------------------

@router.get("/api/threads")
async def list_threads():
    ctrl = _state.get_controller()
    return [_summary(t) for t in ctrl.list_threads()]


@router.post("/api/threads")
async def new_thread():
    thread = _state.get_controller().open_new_thread()
    return {"ok": True, "thread": _summary(thread)}


@router.get("/api/threads/{thread_id}")
async def get_thread(thread_id: str):
    ctrl = _state.get_controller()
    thread = ctrl.get_thread(thread_id)
    if thread is None:
        return _not_found(thread_id)
    data = thread.to_dict()
    data["stream_state"] = state_to_dict(ctrl.get_stream_state(thread_id))
    return data


@router.delete("/api/threads/{thread_id}")
async def delete_thread(thread_id: str):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    ctrl.delete_thread(thread_id)
    return {"ok": True, "current_thread_id": ctrl.current_thread_id}


@router.post("/api/threads/{thread_id}/duplicate")
async def duplicate_thread(thread_id: str):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    clone = ctrl.duplicate_thread(thread_id)
    return {"ok": True, "thread": _summary(clone)}


@router.post("/api/threads/{thread_id}/switch")
async def switch_thread(thread_id: str):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    ctrl.switch_to_thread(thread_id)
    return {"ok": True, "current_thread_id": thread_id}


@router.post("/api/threads/{thread_id}/staging")
async def add_staging_selection(thread_id: str, request: Request):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    body = await _body(request)
    selection = body.get("selection")
    if not isinstance(selection, dict):
        return JSONResponse({"ok": False, "error": "selection must be an object"}, status_code=400)
    ctrl.add_staging_selection(thread_id, selection)
    return {"ok": True, "staging_selections": ctrl.get_thread(thread_id).state.staging_selections}


# ------------------------------------------------------------------
# Agent loop
# ------------------------------------------------------------------

@router.post("/api/threads/{thread_id}/messages")
async def send_message(thread_id: str, request: Request):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    body = await _body(request)
    text = str(body.get("text", "") or "")
    if not text.strip():
        return JSONResponse({"ok": False, "error": "Message text is required"}, status_code=400)
    selections = body.get("selections")
    _state.start_run(ctrl.send_message(
        thread_id, text,
        selections=selections if isinstance(selections, list) else None,
        images=body.get("images") if isinstance(body.get("images"), list) else None,
    ))
    return {"ok": True}


@router.post("/api/threads/{thread_id}/messages/{message_idx}/edit")
async def edit_message(thread_id: str, message_idx: int, request: Request):
    ctrl = _state.get_controller()
    thread = ctrl.get_thread(thread_id)
    if thread is None:
        return _not_found(thread_id)
    if not 0 <= message_idx < len(thread.messages) or not isinstance(thread.messages[message_idx], UserMessage):
        return JSONResponse({"ok": False, "error": "Only user messages can be edited"}, status_code=400)
    body = await _body(request)
    text = str(body.get("text", "") or "")
    _state.start_run(ctrl.edit_user_message_and_stream(thread_id, message_idx, text))
    return {"ok": True}


@router.post("/api/threads/{thread_id}/approve")
async def approve(thread_id: str):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    _state.start_run(ctrl.approve_latest_tool_request(thread_id))
    return {"ok": True}


@router.post("/api/threads/{thread_id}/reject")
async def reject(thread_id: str):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    ctrl.reject_latest_tool_request(thread_id)
    return {"ok": True}


@router.post("/api/threads/{thread_id}/abort")
async def abort(thread_id: str):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    ctrl.abort_running(thread_id)
    return {"ok": True}


@router.post("/api/threads/{thread_id}/jump")
async def jump(thread_id: str, request: Request):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    body = await _body(request)
    try:
        message_idx = int(body.get("message_idx"))
    except (TypeError, ValueError):
        return JSONResponse({"ok": False, "error": "message_idx must be an integer"}, status_code=400)
    moved = await ctrl.jump_to_checkpoint_before_message_idx(
        thread_id, message_idx, bool(body.get("jump_to_user_modified", False))
    )
    return {
        "ok": moved,
        "curr_checkpoint_idx": ctrl.get_thread(thread_id).state.curr_checkpoint_idx,
    }


@router.get("/api/threads/{thread_id}/stream-state")
async def stream_state(thread_id: str):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    return state_to_dict(ctrl.get_stream_state(thread_id))


@router.post("/api/threads/{thread_id}/dismiss-error")
async def dismiss_error(thread_id: str):
    ctrl = _state.get_controller()
    if ctrl.get_thread(thread_id) is None:
        return _not_found(thread_id)
    ctrl.dismiss_stream_error(thread_id)
    return {"ok": True}


# ------------------------------------------------------------------
# Human edits and notifications
# ------------------------------------------------------------------

@router.put("/api/file")
async def user_edit(request: Request):
    """Save a file edited by the user; recorded against the current checkpoint."""
    _state.get_controller()
    body = await _body(request)
    path = (body.get("path", "") or "").strip()
    if not path:
        return JSONResponse({"ok": False, "error": "Invalid path"}, status_code=400)
    try:
        await _state._files.user_edit(path, str(body.get("content", "")))
    except ValueError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
    except RuntimeError as e:
        return JSONResponse({"ok": False, "error": str(e)}, status_code=409)
    return {"ok": True, "path": path}


@router.get("/api/notifications")
async def notifications():
    _state.get_controller()
    return _state._notifier.drain()
