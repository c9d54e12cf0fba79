from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from statement_intake.core.models import Base, Timestamped, UUIDPrimaryKey


class ParseJobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ParseJob(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "jobs_parse_job"

    status: Mapped[ParseJobStatus] = mapped_column(
        Enum(ParseJobStatus, native_enum=False), index=True
    )
    agent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # [{"path": ..., "mime_type": ..., "display_name": ...}] in upload order
    files: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    progress: Mapped[int] = mapped_column(Integer, default=0)
    progress_message: Mapped[str | None] = mapped_column(String(500), nullable=True)

    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    warnings_json: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
