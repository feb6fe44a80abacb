"""FastAPI surface over DebugService.

Endpoints:
- POST /sessions                       start a session
- GET  /sessions/{session_id}          pulse
- POST /sessions/{session_id}/cancel   cancel (idempotent)
- POST /sessions/{session_id}/observations

The service holds the session registry, so cancellation only works for
sessions started by this server process. Status queries work for any
session in the data directory because they only read the log trail.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from bugsquad import __version__
from bugsquad.core.errors import ConfigError, SessionNotFoundError
from bugsquad.core.models import CancelAck, ObservationAck, Pulse
from bugsquad.core.store import COORDINATOR_ACTOR
from bugsquad.service import DebugService

logger = logging.getLogger(__name__)


# ========== API Models ==========


class StartRequest(BaseModel):
    """Request to start a debugging session"""

    error: str = Field(min_length=1)
    repo_path: str
    context: str | None = None
    language: str | None = None
    file_path: str | None = None


class StartResponse(BaseModel):
    session_id: str


class ObservationRequest(BaseModel):
    """Observation addressed to the coordinator or one investigator"""

    text: str = Field(min_length=1)
    agent_id: str = COORDINATOR_ACTOR
    author: str = "client"


def create_app(service: DebugService) -> FastAPI:
    """Build the app around an existing service."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await run_in_threadpool(service.shutdown)

    app = FastAPI(
        title="bugsquad API",
        description="Hypothesis-driven debugging sessions",
        version=__version__,
        lifespan=lifespan,
    )

    @app.post("/sessions", status_code=201)
    async def start_session(request: StartRequest) -> StartResponse:
        try:
            session_id = await run_in_threadpool(
                service.start,
                request.error,
                request.repo_path,
                context=request.context,
                language=request.language,
                file_path=request.file_path,
            )
        except (ConfigError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return StartResponse(session_id=session_id)

    @app.get("/sessions/{session_id}")
    async def check_session(session_id: str) -> Pulse:
        return await run_in_threadpool(service.check, session_id)

    @app.post("/sessions/{session_id}/cancel")
    async def cancel_session(session_id: str) -> CancelAck:
        # Blocks for up to the termination grace window
        return await run_in_threadpool(service.cancel, session_id)

    @app.post("/sessions/{session_id}/observations", status_code=201)
    async def add_observation(session_id: str, request: ObservationRequest) -> ObservationAck:
        try:
            return await run_in_threadpool(
                service.add_observation,
                request.text,
                session_id,
                agent_id=request.agent_id,
                author=request.author,
            )
        except SessionNotFoundError:
            raise HTTPException(status_code=404, detail="Session not found")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    return app
