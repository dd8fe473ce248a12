"""HTTP API for submitting, polling and cancelling sessions."""

import structlog
from fastapi import FastAPI, HTTPException

from changeflow.engine.service import WorkflowService
from changeflow.exceptions import ChangeflowError, SessionNotCancellableError, SessionNotFoundError
from changeflow.models.domain import ChangeBatch, LogEntry, SessionSummary

log = structlog.get_logger(__name__)


def create_app(service: WorkflowService) -> FastAPI:
    """Create the API application around a workflow service.

    Args:
        service: Service that owns session runs

    Returns:
        FastAPI application. Background runs are cancelled on shutdown.
    """
    app = FastAPI(title="changeflow")
    app.state.service = service

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await service.shutdown()

    @app.post("/sessions", status_code=202)
    async def submit_batch(batch: ChangeBatch) -> dict[str, str]:
        """Submit a batch and return the new session id immediately."""
        try:
            session_id = await service.submit(batch)
        except ChangeflowError as e:
            log.error("submit_failed", error=e.message, exc_info=True)
            raise HTTPException(status_code=503, detail=e.message) from e
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return {"session_id": session_id}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> SessionSummary:
        summary = await service.get_status(session_id)
        if summary is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        return summary

    @app.get("/sessions/{session_id}/logs")
    async def get_session_logs(session_id: str) -> list[LogEntry]:
        """Full log history of a session."""
        if await service.get_status(session_id) is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        return await service.store.get_all_logs(session_id)

    @app.post("/sessions/{session_id}/cancel")
    async def cancel_session(session_id: str) -> SessionSummary:
        try:
            return await service.cancel(session_id)
        except SessionNotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message) from e
        except SessionNotCancellableError as e:
            raise HTTPException(status_code=400, detail=e.message) from e

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "service": "changeflow"}

    return app
