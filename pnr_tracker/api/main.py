"""FastAPI control API over the tracking service."""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from pnr_tracker.config import Config, config
from pnr_tracker.errors import InvalidBatch, InvalidRecordId, UnknownRecord
from pnr_tracker.models import CheckOutcome, NotificationSettings, TrackedRecord
from pnr_tracker.service import TrackingService

logger = logging.getLogger(__name__)

# API Key security (if configured)
API_KEY_HEADER = APIKeyHeader(name="X-API-KEY", auto_error=False)


def verify_api_key(api_key: str = Depends(API_KEY_HEADER)) -> bool:
    """Verify API key if configured."""
    expected_key = config.API_KEY
    if expected_key:
        if not api_key or api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API key")
    return True


def get_service(request: Request) -> TrackingService:
    return request.app.state.service


class TrackRequest(BaseModel):
    """Request model for registering a PNR."""
    pnr: str
    owner_id: str
    check_interval: Optional[float] = Field(default=None, gt=0)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)


class CheckAllRequest(BaseModel):
    """Request model for an on-demand batch check."""
    pnrs: list[str]
    concurrency_limit: Optional[int] = Field(default=None, ge=1)


def create_app(service: Optional[TrackingService] = None, start_scheduler: bool = True) -> FastAPI:
    app = FastAPI(title="PNR Tracker API", version="0.1.0")
    app.state.service = service or TrackingService.create()

    @app.on_event("startup")
    async def startup():
        """Initialize on startup."""
        if start_scheduler:
            await app.state.service.start()
        else:
            await app.state.service.initialize()

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.service.aclose()

    @app.exception_handler(UnknownRecord)
    async def unknown_record_handler(request: Request, exc: UnknownRecord):
        return JSONResponse(status_code=404, content={"detail": str(exc), "kind": exc.kind})

    @app.exception_handler(InvalidRecordId)
    @app.exception_handler(InvalidBatch)
    async def invalid_request_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=400, content={"detail": str(exc), "kind": exc.kind})

    @app.get("/health")
    async def health(service: TrackingService = Depends(get_service)):
        """Health check endpoint (no auth required)."""
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scheduler_running": service.scheduler.running,
        }

    @app.get("/metrics")
    async def get_metrics(
        service: TrackingService = Depends(get_service),
        _: bool = Depends(verify_api_key),
    ):
        """Get store counts and event counters (requires API key if configured)."""
        return await service.get_stats()

    @app.post("/tracking", status_code=201)
    async def register_tracking(
        request: TrackRequest,
        service: TrackingService = Depends(get_service),
        _: bool = Depends(verify_api_key),
    ):
        record = await service.register_tracking(
            TrackedRecord(
                pnr=request.pnr,
                owner_id=request.owner_id,
                check_interval=request.check_interval,
                notifications=request.notifications,
            )
        )
        job = service.scheduler.get_job(record.pnr)
        return {
            "record": record.model_dump(mode="json"),
            "next_check_at": job.next_fire_at if job else None,
        }

    @app.delete("/tracking/{pnr}")
    async def cancel_tracking(
        pnr: str,
        remove: bool = False,
        service: TrackingService = Depends(get_service),
        _: bool = Depends(verify_api_key),
    ):
        """Stop tracking a PNR; with remove=true its record and history are deleted too."""
        if remove:
            removed = await service.remove_tracking(pnr)
            return {"pnr": pnr, "cancelled": True, "removed": removed}
        cancelled = await service.cancel_tracking(pnr)
        return {"pnr": pnr, "cancelled": cancelled, "removed": False}

    @app.post("/tracking/{pnr}/check", response_model=CheckOutcome)
    async def check_now(
        pnr: str,
        service: TrackingService = Depends(get_service),
        _: bool = Depends(verify_api_key),
    ):
        return await service.check_now(pnr)

    @app.post("/check-all")
    async def check_all(
        request: CheckAllRequest,
        service: TrackingService = Depends(get_service),
        _: bool = Depends(verify_api_key),
    ):
        report = await service.check_all(request.pnrs, concurrency_limit=request.concurrency_limit)
        return {
            **report.model_dump(mode="json"),
            "succeeded": report.succeeded,
            "failed": report.failed,
        }

    @app.get("/tracking/{pnr}/history")
    async def get_history(
        pnr: str,
        limit: int = Query(default=50, ge=1, le=500),
        before_id: Optional[int] = None,
        service: TrackingService = Depends(get_service),
        _: bool = Depends(verify_api_key),
    ):
        entries = await service.get_history(pnr, limit=limit, before_id=before_id)
        next_before_id = entries[-1].id if len(entries) == limit else None
        return {
            "pnr": pnr,
            "entries": [entry.model_dump(mode="json") for entry in entries],
            "next_before_id": next_before_id,
        }

    @app.get("/tracking/{pnr}/status")
    async def get_status(
        pnr: str,
        service: TrackingService = Depends(get_service),
        _: bool = Depends(verify_api_key),
    ):
        record = await service.get_record(pnr)
        job = service.scheduler.get_job(pnr)
        return {
            "pnr": pnr,
            "cached_status": await service.get_cached_status(pnr),
            "current_status": record.current_status,
            "is_finalized": record.is_finalized,
            "last_checked_at": record.last_checked_at.isoformat() if record.last_checked_at else None,
            "job_state": service.scheduler.state(pnr).value,
            "next_check_at": job.next_fire_at if job else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    from pnr_tracker.logging_conf import setup_logging

    setup_logging()
    Config.validate()
    uvicorn.run(app, host="0.0.0.0", port=8000)
