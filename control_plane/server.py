"""
FastAPI application for the control plane.

The app owns no state of its own: everything lives in the `Services`
graph built by `build_services` and is reached through `app.state`.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from .control_api import router
from .services import Services, build_services, run_startup_check

__all__ = ["build_services", "create_app"]


def create_app(services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services.startup_check:
            await run_startup_check(services)
        yield
        await services.controller.disconnect()

    app = FastAPI(title="AutoRent Voice Agent Control Plane", lifespan=lifespan)
    app.state.services = services
    app.include_router(router)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "service": "control_plane"}

    return app
