from __future__ import annotations

from fastapi import APIRouter

from statement_intake.modules.jobs.api import router as jobs_router

router = APIRouter()

router.include_router(jobs_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
