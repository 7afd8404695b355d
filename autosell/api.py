"""FastAPI app exposing liveness, stats and the manual liquidation trigger."""
from __future__ import annotations
import os
from common.logging import configure_logging
configure_logging(os.getenv("LOG_FORMAT", "json"), service_name="autosell")

import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from prometheus_client import make_asgi_app
from pydantic import BaseModel, ConfigDict, Field

from common.auth import require_token

from .config import Settings
from .jobs import LoanNotFound, LoanNotLiquidatable
from .models import JobRead
from .quotes import QuoteProvider
from .service import AutosellService, build_service
from .swap import SwapExecutor

_LOG = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class LiquidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    loan_id: str = Field(..., min_length=1, alias="loanId")


class LiquidateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: str


# ---------------------------------------------------------------------------
# Dependency helpers
# ---------------------------------------------------------------------------


def get_service(request: Request) -> AutosellService:
    return request.app.state.service


def require_ready(service: AutosellService = Depends(get_service)) -> AutosellService:
    if not service.scheduler.ready:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="initializing")
    return service


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    *,
    service: Optional[AutosellService] = None,
    quotes: Optional[QuoteProvider] = None,
    swap: Optional[SwapExecutor] = None,
) -> FastAPI:
    """Factory used by tests and the ``python -m autosell`` entrypoint."""
    settings = settings or Settings.from_env()
    service = service or build_service(settings, quotes=quotes, swap=swap)

    app = FastAPI(title="Mortgage Autosell Monitor")
    app.state.service = service
    app.mount("/metrics", make_asgi_app())

    @app.on_event("startup")
    async def _start_scheduler() -> None:
        await service.start()

    @app.on_event("shutdown")
    async def _stop_scheduler() -> None:
        await service.stop()

    @app.get("/ping")
    async def ping() -> Dict[str, str]:
        return {"message": "Server is up"}

    @app.get("/healthz")
    async def healthz(svc: AutosellService = Depends(get_service)) -> Dict[str, Any]:
        state = svc.scheduler.state.value
        if not svc.scheduler.ready:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=state.lower())
        return {"ok": True, "state": state}

    @app.get("/stats")
    async def stats(
        svc: AutosellService = Depends(get_service),
        _: Dict[str, Any] = Depends(require_token),
    ) -> Dict[str, Any]:
        return svc.stats()

    @app.post(
        "/liquidate",
        response_model=LiquidateResponse,
        status_code=status.HTTP_202_ACCEPTED,
        response_model_by_alias=True,
    )
    async def liquidate(
        req: LiquidateRequest,
        svc: AutosellService = Depends(require_ready),
        principal: Dict[str, Any] = Depends(require_token),
    ) -> LiquidateResponse:
        try:
            job = svc.jobs.submit(req.loan_id, requested_by=principal.get("sub"))
        except LoanNotFound:
            raise HTTPException(status_code=404, detail="loan_not_found")
        except LoanNotLiquidatable as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return LiquidateResponse(job_id=job.id, status=job.status)

    @app.get("/jobStatus", response_model=JobRead, response_model_by_alias=True)
    async def job_status(
        job_id: str = Query(..., alias="jobId", min_length=1),
        svc: AutosellService = Depends(get_service),
        _: Dict[str, Any] = Depends(require_token),
    ) -> JobRead:
        job = svc.jobs.status(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job_not_found")
        return JobRead.model_validate(job)

    return app
