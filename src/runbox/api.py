from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .core.languages import LanguageTable
from .executor.base import ContainerRuntime
from .executor.docker import DockerRuntime
from .services.cleanup import CleanupWorker
from .services.controller import ExecutionController
from .services.gateway import Gateway
from .services.history import RunHistory, RunStatus
from .services.launcher import SandboxLauncher
from .services.registry import SessionRegistry
from .services.storage import WorkspaceStorage
from .settings import Settings, load_settings

log = structlog.get_logger(__name__)


# --------- Schemas ---------

class HealthRes(BaseModel):
    status: str


class RunRes(BaseModel):
    id: str
    status: str
    language: str
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


def create_app(settings: Optional[Settings] = None, runtime: Optional[ContainerRuntime] = None) -> FastAPI:
    s = settings or load_settings()
    runtime = runtime or DockerRuntime(s)

    registry = SessionRegistry()
    storage = WorkspaceStorage(s.temp_dir)
    history = RunHistory(s.history_url)
    launcher = SandboxLauncher(registry, storage, runtime, LanguageTable(s.languages, s.default_language))
    controller = ExecutionController(registry, launcher, runtime, s, history)
    cleanup = CleanupWorker(storage, runtime, s.container_prefix)
    gateway = Gateway(registry, controller, cleanup, s.default_language)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("server.ready", temp_dir=str(storage.temp_dir), timeout_s=s.timeout_s)
        yield
        await gateway.close_all()

    app = FastAPI(title="runbox", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = s
    app.state.registry = registry
    app.state.gateway = gateway
    app.state.history = history

    # --------- Endpoints ---------

    @app.get("/health", response_model=HealthRes)
    async def health():
        return HealthRes(status="ok")

    @app.get("/sessions/{session_id}/runs", response_model=List[RunRes])
    def session_runs(session_id: str):
        return [
            RunRes(
                id=run.id, status=RunStatus(run.status).value, language=run.language,
                exit_code=run.exit_code, reason=run.reason, created_at=run.created_at,
                started_at=run.started_at, finished_at=run.finished_at,
            )
            for run in history.for_session(session_id)
        ]

    @app.websocket("/")
    async def session_socket(ws: WebSocket):
        await ws.accept()

        async def emit(event: dict) -> None:
            try:
                await ws.send_json(event)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                # client is gone; the receive loop will notice and close the session
                log.debug("session.send_dropped", type=event.get("type"), err=str(e))

        session = await gateway.open(emit)
        try:
            while True:
                raw = await ws.receive_text()
                await gateway.dispatch(session.id, raw, emit)
        except WebSocketDisconnect:
            pass
        finally:
            await gateway.close(session.id)

    return app
