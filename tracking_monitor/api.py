"""Read-only status API for the running monitor."""

from __future__ import annotations

from fastapi import FastAPI, HTTPException

from tracking_monitor import __version__
from tracking_monitor.supervisor import RequestSupervisor


def create_app(supervisor: RequestSupervisor) -> FastAPI:
    app = FastAPI(title="Tracking Monitor", version=__version__)
    app.state.supervisor = supervisor

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "tracking-monitor", "watchers": len(supervisor)}

    @app.get("/watchers")
    async def list_watchers():
        items = supervisor.snapshot()
        return {"count": len(items), "watchers": items}

    @app.get("/watchers/{owner}")
    async def owner_watchers(owner: int):
        items = [w.to_dict() for w in supervisor.watchers(owner)]
        if not items:
            raise HTTPException(status_code=404, detail="No watchers for this owner")
        return {"owner": owner, "count": len(items), "watchers": items}

    return app
