from __future__ import annotations

from io import BytesIO

import pytest
from openpyxl import Workbook
from pypdf import PdfWriter

from conftest import ScriptedCapability, prompt_of
from statement_intake.core.config import Settings
from statement_intake.core.storage import ObjectStorage, StorageError, StoredObject
from statement_intake.modules.extraction.capability import DocumentPart
from statement_intake.modules.extraction.chunked import ChunkedDocumentParser, ChunkedParserConfig
from statement_intake.modules.extraction.classifier import CLASSIFICATION_PROMPT
from statement_intake.modules.extraction.decoders import PdfPage
from statement_intake.modules.extraction.errors import CapabilityError
from statement_intake.modules.extraction.records import ResultStatus, UploadedFile
from statement_intake.modules.jobs.models import ParseJobStatus
from statement_intake.modules.jobs.service import NO_FILES_MESSAGE, JobSink, run_parse_job

STATEMENT_REPLY = {
    "merchantName": "Joe's Diner",
    "processorName": "First Processing",
    "statementPeriod": "March 2025",
    "currentState": {
        "totalVolume": 40000,
        "totalTransactions": 1015,
        "totalFees": 1500,
        "cardBreakdown": {
            "visa": {"volume": 25000, "transactions": 625, "rate": 2.5},
            "mastercard": {"volume": 15000, "transactions": 390, "rate": 2.6},
        },
        "fees": {"interchange": 900, "assessments": 100, "processorMarkup": 500},
    },
    "confidence": 90,
}


class MemoryStorage(ObjectStorage):
    def __init__(self, objects: dict[str, bytes]):
        self.objects = dict(objects)

    def put(self, *, key: str, body: bytes) -> StoredObject:
        self.objects[key] = body
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        if key not in self.objects:
            raise StorageError(f"Object not found: {key}")
        return self.objects[key]

    def size(self, *, key: str) -> int:
        return len(self.get(key=key))

    def delete(self, *, key: str) -> None:
        self.objects.pop(key, None)


class RecordingSink(JobSink):
    def __init__(self) -> None:
        self.progress: list[tuple[int, str]] = []
        self.terminal: list[dict] = []

    def report_progress(self, job_id: str, percent: int, message: str) -> None:
        self.progress.append((percent, message))

    def report_terminal(self, job_id, status, *, result=None, error_message=None) -> None:
        self.terminal.append({"status": status, "result": result, "error": error_message})


def _upload(name: str, mime: str) -> UploadedFile:
    return UploadedFile(path=f"jobs/1/{name}", mime_type=mime, display_name=name)


def _classifying(labels: dict[str, str], extract):
    def _reply(parts):
        if prompt_of(parts) == CLASSIFICATION_PROMPT:
            first = parts[0]
            text = getattr(first, "text", "") or getattr(first, "filename", "")
            name = next(n for n in labels if n in text)
            return {"documentType": labels[name], "confidence": 95, "summary": name}
        return extract(parts)

    return _reply


def _pricing_workbook() -> bytes:
    wb = Workbook()
    wb.active.append(["Proposed", "Interchange Plus", "Savings"])
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def test_statement_job_computes_effective_rate():
    statement = _upload("statement.txt", "text/plain")
    storage = MemoryStorage({statement.path: b"Monthly statement\nFirst Processing\n"})
    capability = ScriptedCapability(
        _classifying({"statement.txt": "processing_statement"}, lambda parts: STATEMENT_REPLY)
    )
    sink = RecordingSink()

    result = run_parse_job(
        "job-1", [statement], storage=storage, capability=capability, sink=sink
    )

    assert result is not None
    assert result.current.effective_rate_percent == pytest.approx(3.75)
    assert result.warnings == []
    assert result.status == ResultStatus.SUCCESS
    assert result.confidence == 90
    out = result.to_dict()
    assert out["effectiveRatePercent"] == 3.75
    assert out["avgTicket"] == round(40000 / 1015, 2)
    assert out["documentTypesSeen"] == ["processing_statement"]

    assert sink.terminal == [{"status": ParseJobStatus.COMPLETED, "result": result, "error": None}]
    percents = [p for p, _ in sink.progress]
    assert percents == sorted(percents)
    assert percents[-1] == 100
    assert 20 in percents and 85 in percents and 95 in percents


def test_statement_with_partial_labels_keeps_ai_totals_and_invents_no_proposal():
    statement = _upload("statement.txt", "text/plain")
    storage = MemoryStorage(
        {statement.path: b"Statement Fee $10.00\nDiscover $5,000.00 2.70% $135.00\n"}
    )
    capability = ScriptedCapability(
        _classifying({"statement.txt": "processing_statement"}, lambda parts: STATEMENT_REPLY)
    )

    result = run_parse_job(
        "job-partial", [statement], storage=storage, capability=capability, sink=RecordingSink()
    )

    assert result is not None
    assert result.current.total_volume == 40000
    assert result.current.total_monthly_cost == 1500
    assert result.current.effective_rate_percent == pytest.approx(3.75)
    assert result.options == []
    assert result.to_dict()["proposalType"] is None
    assert (
        "Reconciled total monthly cost: kept 1,500.00 from AI reading, "
        "discarded 10.00 from document labels"
    ) in result.warnings
    assert not any(w.startswith("Default value used") for w in result.warnings)


def test_pricing_failure_falls_back_to_statement_data():
    statement = _upload("statement.txt", "text/plain")
    pricing = _upload("pricing.xlsx", "application/octet-stream")
    storage = MemoryStorage(
        {statement.path: b"Monthly statement\n", pricing.path: _pricing_workbook()}
    )

    def _extract(parts):
        if "pricing.xlsx" in parts[0].text:
            raise CapabilityError("AI provider returned HTTP 503")
        return STATEMENT_REPLY

    capability = ScriptedCapability(
        _classifying(
            {"statement.txt": "processing_statement", "pricing.xlsx": "pricing_spreadsheet_mixed"},
            _extract,
        )
    )
    sink = RecordingSink()

    result = run_parse_job(
        "job-2", [pricing, statement], storage=storage, capability=capability, sink=sink
    )

    assert result.current.total_volume == 40000
    assert result.options == []
    assert result.warnings == [
        "pricing.xlsx: extraction failed (AI provider returned HTTP 503)",
        "Pricing spreadsheet extraction failed (AI provider returned HTTP 503); "
        "using statement data only",
    ]
    # upstream warnings do not change the validator-derived status
    assert result.status == ResultStatus.SUCCESS
    assert result.document_types_seen == ["processing_statement"]


def test_no_files_fails_the_job():
    sink = RecordingSink()
    capability = ScriptedCapability(lambda parts: {})

    result = run_parse_job(
        "job-3", [], storage=MemoryStorage({}), capability=capability, sink=sink
    )

    assert result is None
    assert sink.terminal == [
        {"status": ParseJobStatus.FAILED, "result": None, "error": NO_FILES_MESSAGE}
    ]
    assert capability.calls == []


def test_missing_configuration_fails_without_partial_result():
    statement = _upload("statement.txt", "text/plain")
    sink = RecordingSink()
    capability = ScriptedCapability(lambda parts: STATEMENT_REPLY, configured=False)

    result = run_parse_job(
        "job-4",
        [statement],
        storage=MemoryStorage({statement.path: b"text"}),
        capability=capability,
        sink=sink,
    )

    assert result is None
    assert sink.terminal == [
        {"status": ParseJobStatus.FAILED, "result": None, "error": "AI_API_KEY is not configured"}
    ]


def test_unexpected_error_is_reported_as_failed_job(monkeypatch):
    from statement_intake.modules.jobs import service as jobs_service

    def _explode(current, options):
        raise RuntimeError("validator exploded")

    monkeypatch.setattr(jobs_service, "validate", _explode)
    statement = _upload("statement.txt", "text/plain")
    sink = RecordingSink()
    result = run_parse_job(
        "job-5",
        [statement],
        storage=MemoryStorage({statement.path: b"Monthly statement\n"}),
        capability=ScriptedCapability(
            _classifying({"statement.txt": "processing_statement"}, lambda parts: STATEMENT_REPLY)
        ),
        sink=sink,
    )

    assert result is None
    assert sink.terminal[0]["status"] == ParseJobStatus.FAILED
    assert sink.terminal[0]["error"] == "validator exploded"


def test_storage_os_error_skips_only_that_file():
    statement = _upload("statement.txt", "text/plain")
    locked = _upload("locked.pdf", "application/pdf")

    class LockedStorage(MemoryStorage):
        def get(self, *, key: str) -> bytes:
            if key == locked.path:
                raise PermissionError(13, "Permission denied")
            return super().get(key=key)

    storage = LockedStorage({statement.path: b"Monthly statement\n", locked.path: b"%PDF-1.4"})
    sink = RecordingSink()
    result = run_parse_job(
        "job-5b",
        [statement, locked],
        storage=storage,
        capability=ScriptedCapability(
            _classifying({"statement.txt": "processing_statement"}, lambda parts: STATEMENT_REPLY)
        ),
        sink=sink,
    )

    assert sink.terminal[0]["status"] == ParseJobStatus.COMPLETED
    assert result.current.effective_rate_percent == pytest.approx(3.75)
    assert result.warnings == [
        "locked.pdf: skipped, could not be read from storage: [Errno 13] Permission denied"
    ]


def test_unreadable_and_unsupported_files_are_skipped_with_warnings():
    statement = _upload("statement.txt", "text/plain")
    missing = _upload("gone.pdf", "application/pdf")
    bogus = _upload("fake.pdf", "application/pdf")
    storage = MemoryStorage({statement.path: b"Monthly statement\n", bogus.path: b"\x00\x01"})
    capability = ScriptedCapability(
        _classifying({"statement.txt": "processing_statement"}, lambda parts: STATEMENT_REPLY)
    )

    result = run_parse_job(
        "job-6",
        [missing, bogus, statement],
        storage=storage,
        capability=capability,
        sink=RecordingSink(),
    )

    assert result.current.merchant_name == "Joe's Diner"
    assert result.warnings[0].startswith("gone.pdf: skipped, could not be read from storage")
    assert result.warnings[1] == "fake.pdf: skipped, bad PDF upload"
    assert len(result.warnings) == 2


def test_low_confidence_and_unknown_classifications_warn_but_continue():
    statement = _upload("statement.txt", "text/plain")
    other = _upload("other.txt", "text/plain")
    storage = MemoryStorage({statement.path: b"Monthly statement\n", other.path: b"misc"})

    def _reply(parts):
        if prompt_of(parts) == CLASSIFICATION_PROMPT:
            if "statement.txt" in parts[0].text:
                return {"documentType": "processing_statement", "confidence": 55}
            return {"documentType": "something_else", "confidence": 20}
        if "other.txt" in parts[0].text:
            return "no idea"
        return STATEMENT_REPLY

    result = run_parse_job(
        "job-7",
        [statement, other],
        storage=storage,
        capability=ScriptedCapability(_reply),
        sink=RecordingSink(),
    )

    assert result.current.total_volume == 40000
    assert result.warnings[:3] == [
        "statement.txt: low classification confidence (55%) as processing statement",
        "other.txt: document type could not be determined, treated as a statement",
        "other.txt: no usable data extracted (AI response did not contain a JSON object)",
    ]


def test_large_pdf_is_parsed_page_by_page():
    writer = PdfWriter()
    for _ in range(3):
        writer.add_blank_page(width=612, height=792)
    buf = BytesIO()
    writer.write(buf)
    big = _upload("big.pdf", "application/pdf")
    storage = MemoryStorage({big.path: buf.getvalue()})

    page_replies = {
        "page-1.pdf": {
            "pageType": "detail",
            "merchantName": "Joe's Diner",
            "currentState": {"cardBreakdown": {"visa": {"volume": 25000, "transactions": 625}}},
        },
        "page-2.pdf": {
            "pageType": "detail",
            "currentState": {
                "cardBreakdown": {"mastercard": {"volume": 15000, "transactions": 390}}
            },
        },
        "page-3.pdf": {
            "pageType": "summary",
            "currentState": {"totalVolume": 40000, "totalTransactions": 1015, "totalFees": 1500},
        },
    }

    def _reply(parts):
        if prompt_of(parts) == CLASSIFICATION_PROMPT:
            return {"documentType": "processing_statement", "confidence": 90}
        doc = next(p for p in parts if isinstance(p, DocumentPart))
        return page_replies[doc.filename]

    def _split(body: bytes):
        return [PdfPage(index=i, text="", pdf_bytes=b"%PDF-page") for i in range(3)]

    capability = ScriptedCapability(_reply)
    cfg = Settings(chunk_threshold_bytes=10)
    parser = ChunkedDocumentParser(
        capability, ChunkedParserConfig.from_settings(cfg), splitter=_split
    )
    sink = RecordingSink()

    result = run_parse_job(
        "job-8",
        [big],
        storage=storage,
        capability=capability,
        sink=sink,
        config=cfg,
        chunked_parser=parser,
    )

    assert result.current.total_volume == 40000
    assert result.current.card("visa").volume == 25000
    assert result.current.card("mastercard").volume == 15000
    assert result.current.effective_rate_percent == pytest.approx(3.75)
    assert result.status == ResultStatus.SUCCESS
    assert any(msg.startswith("big.pdf: Processed page") for _, msg in sink.progress)
