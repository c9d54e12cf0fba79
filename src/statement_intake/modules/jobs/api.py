from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, Header, HTTPException, UploadFile, status
from sqlalchemy.orm import Session

from statement_intake.core.db import db_session
from statement_intake.core.logging import get_logger, log_event
from statement_intake.modules.jobs.schemas import ParseJobCreated, ParseJobOut
from statement_intake.modules.jobs.service import create_parse_job, get_parse_job
from statement_intake.worker.tasks import process_parse_job_task

router = APIRouter(tags=["parse-jobs"])
logger = get_logger(__name__)


@router.post(
    "/parse-jobs",
    response_model=ParseJobCreated,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_parse_job(
    files: list[UploadFile] = File(...),
    x_agent_id: str | None = Header(default=None),
    session: Session = Depends(db_session),
) -> ParseJobCreated:
    uploads: list[tuple[str, str | None, bytes]] = []
    for upload in files:
        body = await upload.read()
        log_event(
            logger,
            "upload.received",
            filename=upload.filename or "upload.bin",
            content_type=upload.content_type,
            byte_size=len(body),
            agent_id=x_agent_id,
        )
        uploads.append((upload.filename or "upload.bin", upload.content_type, body))

    job = create_parse_job(session, uploads=uploads, agent_id=x_agent_id)
    async_result = process_parse_job_task.delay(str(job.id))
    log_event(
        logger,
        "celery.task.enqueued",
        task_name="process_parse_job",
        celery_task_id=async_result.id,
        parse_job_id=str(job.id),
    )
    # Eager mode has already run the job in its own session.
    session.refresh(job)
    return ParseJobCreated(
        job_id=job.id,
        status=job.status,
        file_count=len(uploads),
        poll_url=f"/api/parse-jobs/{job.id}",
    )


@router.get("/parse-jobs/{job_id}", response_model=ParseJobOut)
def read_parse_job(job_id: uuid.UUID, session: Session = Depends(db_session)) -> ParseJobOut:
    job = get_parse_job(session, job_id=job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parse job not found")
    return ParseJobOut.model_validate(job, from_attributes=True)
