"""
Entry point for the voice agent control plane.

Usage:
    python -m control_plane

Starts the FastAPI control plane (default http://127.0.0.1:8000); voice
sessions are started through POST /session/connect.
"""
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from logging_setup import setup_logging

# Local dev convenience; never overrides variables already exported.
root = Path(__file__).parent.parent
for name in (".env", ".env.local"):
    p = root / name
    if p.exists():
        load_dotenv(p, override=False)


def main() -> None:
    from voice_agent.config import get_config
    from .server import build_services, create_app

    setup_logging(use_json=True)
    config = get_config()
    app = create_app(build_services(config))

    uvicorn.run(
        app,
        host=config.control_plane_host,
        port=config.control_plane_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
