from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from statement_intake.modules.jobs.models import ParseJobStatus


class ParseJobFileOut(BaseModel):
    display_name: str
    mime_type: str


class ParseJobOut(BaseModel):
    id: uuid.UUID
    status: ParseJobStatus
    agent_id: str | None
    files: list[ParseJobFileOut]
    progress: int
    progress_message: str | None
    result_json: dict[str, Any] | None
    warnings_json: list[str] | None
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ParseJobCreated(BaseModel):
    job_id: uuid.UUID
    status: ParseJobStatus
    file_count: int
    poll_url: str
