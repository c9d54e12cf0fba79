from __future__ import annotations

from io import BytesIO

import pytest
from openpyxl import Workbook
from pypdf import PdfReader, PdfWriter

from conftest import ScriptedCapability, prompt_of
from statement_intake.core.config import Settings
from statement_intake.modules.extraction.capability import DocumentPart, TextPart
from statement_intake.modules.extraction.classifier import (
    CLASSIFICATION_PROMPT,
    classify,
    classify_all,
)
from statement_intake.modules.extraction.errors import (
    CapabilityConfigurationError,
    CapabilityTimeout,
)
from statement_intake.modules.extraction.records import DocumentType, UploadedFile


def _file(name: str, mime: str = "application/octet-stream") -> UploadedFile:
    return UploadedFile(path=f"uploads/{name}", mime_type=mime, display_name=name)


def _blank_pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buf = BytesIO()
    writer.write(buf)
    return buf.getvalue()


def test_classify_maps_label_and_clamps_confidence():
    capability = ScriptedCapability(
        lambda parts: {
            "documentType": "Pricing-Spreadsheet-Dual-Pricing",
            "confidence": 130,
            "summary": "  Dual pricing comparison  ",
        }
    )
    result = classify(_file("p.txt", "text/plain"), b"Zero cost processing proposal", capability)

    assert result.document_type == DocumentType.PRICING_SPREADSHEET_DUAL_PRICING
    assert result.confidence == 100
    assert result.summary == "Dual pricing comparison"
    assert prompt_of(capability.calls[0]["parts"]) == CLASSIFICATION_PROMPT


def test_proposal_pdf_label_is_a_proposal_document():
    capability = ScriptedCapability(lambda parts: {"documentType": "proposal_pdf", "confidence": 88})
    result = classify(_file("p.txt", "text/plain"), b"Prepared For: Acme", capability)

    assert result.document_type == DocumentType.PROPOSAL_DOCUMENT
    assert result.summary == ""


@pytest.mark.parametrize(
    "reply",
    [
        {"documentType": "bank_statement", "confidence": 90},
        {"confidence": 90},
    ],
)
def test_unrecognized_labels_become_unknown(reply):
    result = classify(_file("a.txt", "text/plain"), b"hello", ScriptedCapability(lambda p: reply))
    assert result.document_type == DocumentType.UNKNOWN


def test_unsupported_file_is_unknown_without_calling_capability():
    capability = ScriptedCapability(lambda parts: pytest.fail("capability must not be called"))

    empty = classify(_file("a.pdf", "application/pdf"), b"", capability)
    assert empty.document_type == DocumentType.UNKNOWN
    assert empty.confidence == 0
    assert "empty" in empty.summary

    bad = classify(_file("a.pdf", "application/pdf"), b"\x00\x01junk", capability)
    assert bad.document_type == DocumentType.UNKNOWN
    assert "bad PDF upload" in bad.summary
    assert capability.calls == []


def test_capability_failure_and_malformed_reply_degrade_to_unknown():
    def _timeout(parts):
        raise CapabilityTimeout("AI request timed out after 60s")

    failed = classify(_file("a.txt", "text/plain"), b"text", ScriptedCapability(_timeout))
    assert failed.document_type == DocumentType.UNKNOWN
    assert failed.confidence == 0
    assert failed.summary.startswith("Classification failed: AI request timed out")

    malformed = classify(
        _file("a.txt", "text/plain"), b"text", ScriptedCapability(lambda p: "not json")
    )
    assert malformed.document_type == DocumentType.UNKNOWN
    assert malformed.confidence == 0


def test_configuration_error_propagates():
    def _unconfigured(parts):
        raise CapabilityConfigurationError("AI provider rejected credentials (HTTP 401)")

    with pytest.raises(CapabilityConfigurationError):
        classify(_file("a.txt", "text/plain"), b"text", ScriptedCapability(_unconfigured))


def test_spreadsheet_sends_first_three_sheets_truncated():
    wb = Workbook()
    wb.active.title = "S1"
    wb.active.append(["x" * 200])
    for name in ("S2", "S3", "S4"):
        wb.create_sheet(name).append([name])
    buf = BytesIO()
    wb.save(buf)

    capability = ScriptedCapability(
        lambda parts: {"documentType": "pricing_spreadsheet_mixed", "confidence": 75}
    )
    cfg = Settings(classification_max_chars=150)
    result = classify(_file("pricing.xlsx"), buf.getvalue(), capability, config=cfg)

    assert result.document_type == DocumentType.PRICING_SPREADSHEET_MIXED
    first = capability.calls[0]["parts"][0]
    assert isinstance(first, TextPart)
    assert len(first.text) <= len("Document Name: pricing.xlsx\n\nSpreadsheet Content:\n") + 150
    assert "S4" not in first.text


def test_large_pdf_sends_only_its_first_pages():
    capability = ScriptedCapability(
        lambda parts: {"documentType": "processing_statement", "confidence": 92}
    )
    cfg = Settings(chunk_threshold_bytes=10, classification_head_pages=3)

    result = classify(_file("big.pdf", "application/pdf"), _blank_pdf(8), capability, config=cfg)

    assert result.document_type == DocumentType.PROCESSING_STATEMENT
    doc = capability.calls[0]["parts"][0]
    assert isinstance(doc, DocumentPart)
    assert len(PdfReader(BytesIO(doc.data)).pages) == 3


def test_classify_all_reports_document_families():
    labels = {
        "s.txt": "processing_statement",
        "p.txt": "pricing_spreadsheet_interchange",
    }

    def _reply(parts):
        name = next(n for n in labels if n in parts[0].text)
        return {"documentType": labels[name], "confidence": 90}

    files = [_file("s.txt", "text/plain"), _file("p.txt", "text/plain")]
    summary = classify_all(files, lambda f: b"content", ScriptedCapability(_reply))

    assert [c.document_type for c in summary.classifications] == [
        DocumentType.PROCESSING_STATEMENT,
        DocumentType.PRICING_SPREADSHEET_INTERCHANGE,
    ]
    assert summary.has_statement
    assert summary.has_pricing_spreadsheet
    assert not summary.has_proposal
