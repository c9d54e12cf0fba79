from __future__ import annotations

import re
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from statement_intake.core.config import Settings, settings
from statement_intake.core.db import SessionLocal, session_scope
from statement_intake.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_job_context,
    set_job_context,
)
from statement_intake.core.models import utcnow
from statement_intake.core.numbers import clamp
from statement_intake.core.storage import ObjectStorage, StorageError, get_storage
from statement_intake.modules.extraction.ai import (
    PRICING_EXTRACTION_PROMPT,
    STATEMENT_EXTRACTION_PROMPT,
    extract_structured,
    reconcile,
)
from statement_intake.modules.extraction.capability import (
    ExtractionCapability,
    build_capability,
)
from statement_intake.modules.extraction.chunked import (
    ChunkedDocumentParser,
    ChunkedParserConfig,
    ProgressCallback,
)
from statement_intake.modules.extraction.classifier import classify
from statement_intake.modules.extraction.decoders import DecodedContent, decode_file
from statement_intake.modules.extraction.errors import (
    CapabilityConfigurationError,
    ExtractionError,
)
from statement_intake.modules.extraction.merger import (
    combine_extractions,
    combine_pages,
    finalize,
    merge,
)
from statement_intake.modules.extraction.parsers.legacy_statement import (
    HeuristicResult,
    parse_heuristic,
)
from statement_intake.modules.extraction.records import (
    Classification,
    DocumentType,
    MergedResult,
    StructuredRecord,
    UploadedFile,
)
from statement_intake.modules.extraction.validator import validate
from statement_intake.modules.jobs.models import ParseJob, ParseJobStatus

logger = get_logger(__name__)

NO_FILES_MESSAGE = "No files to parse"

PROGRESS_CLASSIFY = (0, 20)
PROGRESS_EXTRACT = (20, 80)
PROGRESS_MERGE = 85
PROGRESS_VALIDATE = 95

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class JobSink:
    """Where the orchestrator externalizes job state.

    `report_progress` may be called many times; `report_terminal` exactly once per run,
    with either a completed result or a single failure message.
    """

    def report_progress(self, job_id: str, percent: int, message: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def report_terminal(
        self,
        job_id: str,
        status: ParseJobStatus,
        *,
        result: MergedResult | None = None,
        error_message: str | None = None,
    ) -> None:  # pragma: no cover
        raise NotImplementedError


class DatabaseJobSink(JobSink):
    def report_progress(self, job_id: str, percent: int, message: str) -> None:
        with session_scope() as session:
            job = session.get(ParseJob, uuid.UUID(job_id))
            if job is None:
                log_event(logger, "parse_job.missing", parse_job_id=job_id)
                return
            if job.status == ParseJobStatus.QUEUED:
                job.status = ParseJobStatus.PROCESSING
            if job.started_at is None:
                job.started_at = utcnow()
            job.progress = percent
            job.progress_message = message[:500]
        log_event(logger, "parse_job.progress", parse_job_id=job_id, progress=percent)

    def report_terminal(
        self,
        job_id: str,
        status: ParseJobStatus,
        *,
        result: MergedResult | None = None,
        error_message: str | None = None,
    ) -> None:
        with session_scope() as session:
            job = session.get(ParseJob, uuid.UUID(job_id))
            if job is None:
                log_event(logger, "parse_job.missing", parse_job_id=job_id)
                return
            job.status = status
            job.completed_at = utcnow()
            if status == ParseJobStatus.COMPLETED and result is not None:
                job.result_json = result.to_dict()
                job.warnings_json = list(result.warnings)
                job.error_message = None
                job.progress = 100
                job.progress_message = "Completed"
            else:
                job.result_json = None
                job.error_message = error_message or "Parse job failed"
                job.progress_message = "Failed"


class ProgressTracker:
    """Keeps reported percentages inside 0-100 and never lets them go backwards."""

    def __init__(self, sink: JobSink, job_id: str):
        self._sink = sink
        self._job_id = job_id
        self.percent = 0

    def report(self, percent: float, message: str) -> None:
        self.percent = int(clamp(percent, self.percent, 100))
        self._sink.report_progress(self._job_id, self.percent, message)

    def band(self, low: float, high: float, done: int, total: int, message: str) -> None:
        fraction = done / total if total else 1.0
        self.report(low + (high - low) * fraction, message)


@dataclass
class _Collected:
    pricing: list[StructuredRecord] = field(default_factory=list)
    statements: list[StructuredRecord] = field(default_factory=list)
    document_types: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    pricing_failure: str | None = None


def run_parse_job(
    job_id: str,
    files: Sequence[UploadedFile],
    *,
    storage: ObjectStorage,
    capability: ExtractionCapability,
    sink: JobSink,
    config: Settings | None = None,
    chunked_parser: ChunkedDocumentParser | None = None,
) -> MergedResult | None:
    """Run one parse job end to end and report its terminal state through `sink`.

    Returns the finalized result, or None when the job failed. Only configuration
    errors and an empty file list are expected failures; anything else that escapes a
    stage is logged and reported as a failed job with its message.
    """
    cfg = config or settings
    start = time.monotonic()
    log_event(logger, "parse_job.start", parse_job_id=job_id, file_count=len(files))

    if not files:
        _fail(sink, job_id, NO_FILES_MESSAGE, start)
        return None

    try:
        capability.ensure_configured()
        tracker = ProgressTracker(sink, job_id)
        parser = chunked_parser or ChunkedDocumentParser(
            capability, ChunkedParserConfig.from_settings(cfg)
        )
        result = _run_stages(
            files,
            storage=storage,
            capability=capability,
            tracker=tracker,
            cfg=cfg,
            parser=parser,
        )
    except CapabilityConfigurationError as e:
        log_event(logger, "parse_job.configuration_error", parse_job_id=job_id, error=str(e))
        _fail(sink, job_id, str(e), start)
        return None
    except Exception as e:  # noqa: BLE001
        log_exception(logger, "parse_job.error", parse_job_id=job_id)
        _fail(sink, job_id, str(e) or type(e).__name__, start)
        return None

    tracker.report(100, "Done")
    sink.report_terminal(job_id, ParseJobStatus.COMPLETED, result=result)
    log_event(
        logger,
        "parse_job.completed",
        parse_job_id=job_id,
        status=result.status.value,
        confidence=result.confidence,
        warning_count=len(result.warnings),
        duration_ms=monotonic_ms(start),
    )
    return result


def _fail(sink: JobSink, job_id: str, message: str, start: float) -> None:
    sink.report_terminal(job_id, ParseJobStatus.FAILED, error_message=message)
    log_event(
        logger,
        "parse_job.failed",
        parse_job_id=job_id,
        error=message,
        duration_ms=monotonic_ms(start),
    )


def _run_stages(
    files: Sequence[UploadedFile],
    *,
    storage: ObjectStorage,
    capability: ExtractionCapability,
    tracker: ProgressTracker,
    cfg: Settings,
    parser: ChunkedDocumentParser,
) -> MergedResult:
    total = len(files)
    collected = _Collected()

    tracker.report(0, f"Classifying {total} file(s)")
    classified: list[tuple[Classification, DecodedContent, int]] = []
    for i, file in enumerate(files):
        decoded, byte_size = _load(storage, file)
        classification = classify(file, decoded.body, capability, decoded=decoded, config=cfg)
        warning = _classification_warning(classification, decoded, cfg)
        if warning:
            collected.warnings.append(warning)
        classified.append((classification, decoded, byte_size))
        tracker.band(*PROGRESS_CLASSIFY, i + 1, total, f"Classified {file.display_name}")

    low, high = PROGRESS_EXTRACT
    span = (high - low) / total
    for i, (classification, decoded, byte_size) in enumerate(classified):
        file_low = low + span * i
        tracker.report(file_low, f"Extracting {classification.file.display_name}")
        if decoded.is_readable:
            _extract_into(
                collected,
                classification,
                decoded,
                byte_size=byte_size,
                capability=capability,
                cfg=cfg,
                parser=parser,
                on_progress=_sub_progress(tracker, file_low, file_low + span, classification),
            )
        tracker.band(low, high, i + 1, total, f"Extracted {classification.file.display_name}")

    tracker.report(PROGRESS_MERGE, "Merging extracted data")
    merged = merge(
        pricing=combine_extractions(collected.pricing),
        statement=combine_extractions(collected.statements),
        document_types_seen=collected.document_types,
        upstream_warnings=collected.warnings,
        pricing_failure=None if collected.pricing else collected.pricing_failure,
        prefer=cfg.merge_prefer,
    )

    tracker.report(PROGRESS_VALIDATE, "Validating result")
    return finalize(merged, validate(merged.current, merged.options))


def _load(storage: ObjectStorage, file: UploadedFile) -> tuple[DecodedContent, int]:
    try:
        byte_size = storage.size(key=file.path)
        body = storage.get(key=file.path)
    except (StorageError, OSError) as e:
        log_event(
            logger,
            "parse_job.file.unreadable",
            file_name=file.display_name,
            storage_key=file.path,
            error=str(e),
        )
        reason = f"could not be read from storage: {e}"
        return DecodedContent(kind="unsupported", reason=reason), 0
    return decode_file(file, body), byte_size


def _classification_warning(
    classification: Classification, decoded: DecodedContent, cfg: Settings
) -> str | None:
    name = classification.file.display_name
    if not decoded.is_readable:
        return f"{name}: skipped, {decoded.reason or decoded.kind}"
    if classification.document_type == DocumentType.UNKNOWN:
        return f"{name}: document type could not be determined, treated as a statement"
    if classification.confidence < int(cfg.classification_warn_below):
        label = classification.document_type.value.replace("_", " ")
        return f"{name}: low classification confidence ({classification.confidence}%) as {label}"
    return None


def _sub_progress(
    tracker: ProgressTracker, low: float, high: float, classification: Classification
) -> ProgressCallback:
    name = classification.file.display_name

    def _on_progress(percent: int, message: str) -> None:
        tracker.report(low + (high - low) * percent / 100, f"{name}: {message}")

    return _on_progress


def _extract_into(
    collected: _Collected,
    classification: Classification,
    decoded: DecodedContent,
    *,
    byte_size: int,
    capability: ExtractionCapability,
    cfg: Settings,
    parser: ChunkedDocumentParser,
    on_progress: ProgressCallback,
) -> None:
    name = classification.file.display_name
    document_type = classification.document_type
    is_pricing = document_type.is_pricing_spreadsheet
    try:
        record = _extract_file(
            name,
            document_type,
            decoded,
            byte_size=byte_size,
            capability=capability,
            cfg=cfg,
            parser=parser,
            on_progress=on_progress,
            warnings=collected.warnings,
        )
    except CapabilityConfigurationError:
        raise
    except Exception as e:  # noqa: BLE001
        log_exception(
            logger,
            "parse_job.file.error",
            file_name=name,
            document_type=document_type.value,
        )
        reason = str(e) or type(e).__name__
        collected.warnings.append(f"{name}: extraction failed ({reason})")
        if is_pricing and collected.pricing_failure is None:
            collected.pricing_failure = reason
        return

    if not _usable(record):
        reason = "; ".join(record.notes) or "no data returned"
        collected.warnings.append(f"{name}: no usable data extracted ({reason})")
        if is_pricing and collected.pricing_failure is None:
            collected.pricing_failure = reason
        return

    log_event(
        logger,
        "parse_job.file.extracted",
        file_name=name,
        document_type=document_type.value,
        source=record.source,
        confidence=record.confidence,
    )
    (collected.pricing if is_pricing else collected.statements).append(record)
    if document_type.value not in collected.document_types:
        collected.document_types.append(document_type.value)


def _usable(record: StructuredRecord) -> bool:
    return record.confidence > 0 or record.current.has_data() or bool(record.options)


def _extract_file(
    name: str,
    document_type: DocumentType,
    decoded: DecodedContent,
    *,
    byte_size: int,
    capability: ExtractionCapability,
    cfg: Settings,
    parser: ChunkedDocumentParser,
    on_progress: ProgressCallback,
    warnings: list[str],
) -> StructuredRecord:
    timeout = float(cfg.ai_request_timeout_seconds)
    if document_type.is_pricing_spreadsheet:
        return extract_structured(
            decoded, PRICING_EXTRACTION_PROMPT, capability, file_name=name, timeout=timeout
        )

    heuristic = _heuristic(decoded)
    try:
        if decoded.kind == "pdf" and byte_size > int(cfg.chunk_threshold_bytes):
            record = _extract_chunked(name, decoded, parser, on_progress, warnings)
        else:
            prompt = (
                PRICING_EXTRACTION_PROMPT
                if document_type == DocumentType.PROPOSAL_DOCUMENT
                else STATEMENT_EXTRACTION_PROMPT
            )
            record = extract_structured(
                decoded, prompt, capability, file_name=name, timeout=timeout
            )
    except CapabilityConfigurationError:
        raise
    except ExtractionError as e:
        if heuristic is None:
            raise
        warnings.append(f"{name}: AI extraction failed ({e}); using label-based values only")
        return heuristic.record

    if heuristic is not None:
        return reconcile(heuristic, record)
    return record


def _heuristic(decoded: DecodedContent) -> HeuristicResult | None:
    if decoded.kind not in {"pdf", "text"} or not decoded.text.strip():
        return None
    result = parse_heuristic(decoded.text)
    if result.record.confidence <= 0:
        return None
    return result


def _extract_chunked(
    name: str,
    decoded: DecodedContent,
    parser: ChunkedDocumentParser,
    on_progress: ProgressCallback,
    warnings: list[str],
) -> StructuredRecord:
    result = parser.parse(decoded.body, on_progress=on_progress, file_name=name)
    warnings.extend(result.warnings)
    record = combine_pages(result.page_results) if result.success else None
    if record is None:
        detail = "; ".join(result.errors[:3]) or "no pages extracted"
        raise ExtractionError(f"chunked extraction failed: {detail}")
    return record


def _storage_key(job_id: uuid.UUID, index: int, filename: str) -> str:
    safe = _SAFE_NAME_RE.sub("_", filename).strip("._") or "upload.bin"
    return f"parse_jobs/{job_id}/{index:02d}-{safe}"


def create_parse_job(
    session: Session,
    *,
    uploads: Sequence[tuple[str, str | None, bytes]],
    agent_id: str | None = None,
) -> ParseJob:
    """Store uploaded files and create a QUEUED job referencing them in upload order."""
    job_id = uuid.uuid4()
    storage = get_storage()
    files: list[dict[str, str]] = []
    for index, (filename, content_type, body) in enumerate(uploads):
        stored = storage.put(key=_storage_key(job_id, index, filename), body=body)
        files.append(
            {
                "path": stored.key,
                "mime_type": content_type or "application/octet-stream",
                "display_name": filename,
            }
        )

    job = ParseJob(
        id=job_id,
        status=ParseJobStatus.QUEUED,
        agent_id=agent_id,
        files=files,
        progress=0,
        progress_message="Queued",
    )
    session.add(job)
    try:
        session.commit()
    except Exception:
        session.rollback()
        for f in files:
            storage.delete(key=f["path"])
        raise
    session.refresh(job)
    log_event(
        logger,
        "parse_job.created",
        parse_job_id=str(job.id),
        agent_id=agent_id,
        file_count=len(files),
    )
    return job


def get_parse_job(session: Session, *, job_id: uuid.UUID) -> ParseJob | None:
    return session.scalar(select(ParseJob).where(ParseJob.id == job_id))


def job_files(job: ParseJob) -> list[UploadedFile]:
    return [
        UploadedFile(
            path=f["path"],
            mime_type=f.get("mime_type") or "application/octet-stream",
            display_name=f.get("display_name") or f["path"].rsplit("/", 1)[-1],
        )
        for f in job.files or []
    ]


def process_parse_job(*, parse_job_id: str) -> None:
    with SessionLocal() as session:
        job = get_parse_job(session, job_id=uuid.UUID(parse_job_id))
        if not job:
            log_event(logger, "parse_job.missing", parse_job_id=parse_job_id)
            return
        files = job_files(job)
        job.status = ParseJobStatus.PROCESSING
        job.started_at = utcnow()
        job.error_message = None
        session.add(job)
        session.commit()

    token = set_job_context(parse_job_id)
    try:
        run_parse_job(
            parse_job_id,
            files,
            storage=get_storage(),
            capability=build_capability(),
            sink=DatabaseJobSink(),
        )
    finally:
        reset_job_context(token)
