"""
CLI entry point for the Threadloop web server.

Run:  python -m web [--port 8765] [--dir /path/to/project]
"""

import argparse
import logging
import os

import web.state as _state
from config import app_config


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Threadloop - agent loop server")
    parser.add_argument("--port", type=int, default=8765, help="Server port (default: 8765)")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--dir", default=".", help="Working directory for the agent")
    args = parser.parse_args()

    working_directory = os.path.abspath(os.path.expanduser(args.dir))
    if not os.path.isdir(working_directory):
        print(f"\n  Error: directory not found: {working_directory}\n")
        raise SystemExit(1)

    # uvicorn's log_level only affects its own loggers
    level = getattr(logging, app_config.log_level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    for name in ("web", "agent", "tools", "thread_store", "bedrock_service"):
        log = logging.getLogger(name)
        log.setLevel(level)
        if not log.handlers:
            log.addHandler(handler)

    _state.build_controller(working_directory)
    print(f"\n  Threadloop")
    print(f"  http://{args.host}:{args.port}")
    print(f"  Working directory: {working_directory}\n")

    from web import app
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
