"""
Threadloop web server.
FastAPI REST surface over the agent loop controller.

Run:  python -m web [--port 8765] [--dir /path/to/project]
"""

import logging

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI

from config import app_config
import web.state as _state
from web import api_threads

logger = logging.getLogger(__name__)

# ============================================================
# FastAPI application
# ============================================================

app = FastAPI(title=app_config.title)


@app.on_event("shutdown")
async def _on_shutdown():
    """Abort running threads and flush pending thread writes before exit."""
    ctrl = _state._controller
    if ctrl is None:
        return
    for thread_id in list(ctrl.threads):
        if ctrl.is_streaming(thread_id):
            ctrl.abort_running(thread_id)
    try:
        ctrl.store.force_flush()
        logger.info("Shutdown: threads flushed")
    except Exception as exc:
        logger.error(f"Shutdown: failed to flush threads: {exc}")


@app.get("/api/info")
async def info():
    ctrl = _state.get_controller()
    return {
        "title": app_config.title,
        "working_directory": _state._working_directory,
        "current_thread_id": ctrl.current_thread_id,
    }


app.include_router(api_threads.router)
