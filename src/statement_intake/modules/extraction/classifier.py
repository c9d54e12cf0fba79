from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from statement_intake.core.config import Settings, settings
from statement_intake.core.logging import get_logger, log_event, monotonic_ms
from statement_intake.core.numbers import clamp, parse_optional_number
from statement_intake.modules.extraction.ai import content_parts, parse_json_object
from statement_intake.modules.extraction.capability import (
    DocumentPart,
    ExtractionCapability,
    TextPart,
)
from statement_intake.modules.extraction.decoders import DecodedContent, decode_file, pdf_head
from statement_intake.modules.extraction.errors import CapabilityConfigurationError
from statement_intake.modules.extraction.records import (
    Classification,
    DocumentType,
    UploadedFile,
)

logger = get_logger(__name__)

CLASSIFICATION_PROMPT = """Analyze this document and classify it. Return ONLY valid JSON with this structure:
{
  "documentType": "one of: processing_statement, pricing_spreadsheet_interchange, pricing_spreadsheet_dual_pricing, pricing_spreadsheet_mixed, proposal_document, unknown",
  "confidence": 85,
  "summary": "Brief description of what this document is",
  "reasoning": "Why you classified it this way"
}

Document Types:
- processing_statement: A monthly merchant processing statement showing actual transaction volumes, fees charged, and card brand breakdowns. Has processor name, statement period, etc.
- pricing_spreadsheet_interchange: A pricing comparison spreadsheet showing proposed Interchange+ (cost-plus) pricing with discount rate + per-transaction fee
- pricing_spreadsheet_dual_pricing: A pricing comparison spreadsheet showing proposed Dual Pricing (zero cost processing) with separate cash/card pricing
- pricing_spreadsheet_mixed: A pricing spreadsheet showing BOTH interchange+ AND dual pricing options
- proposal_document: A pre-made proposal document (not a statement or spreadsheet)
- unknown: Cannot determine the document type

Look for key indicators:
- Statements have: processor name, statement period, "charges this period", interchange fees, actual transaction data
- Pricing spreadsheets have: "proposed", "savings", comparison columns, discount rates, per-item fees, calculated totals
- Dual pricing mentions: "zero cost", "dual pricing", "cash discount", "service fee"
- Interchange+ mentions: "interchange plus", "cost plus", "discount rate + per item\""""


@dataclass(frozen=True)
class ClassificationSummary:
    classifications: list[Classification]

    @property
    def has_statement(self) -> bool:
        return any(
            c.document_type == DocumentType.PROCESSING_STATEMENT for c in self.classifications
        )

    @property
    def has_pricing_spreadsheet(self) -> bool:
        return any(c.document_type.is_pricing_spreadsheet for c in self.classifications)

    @property
    def has_proposal(self) -> bool:
        return any(
            c.document_type == DocumentType.PROPOSAL_DOCUMENT for c in self.classifications
        )


def _unknown(file: UploadedFile, summary: str) -> Classification:
    return Classification(
        file=file, document_type=DocumentType.UNKNOWN, confidence=0, summary=summary
    )


def classify(
    file: UploadedFile,
    body: bytes,
    capability: ExtractionCapability,
    *,
    decoded: DecodedContent | None = None,
    config: Settings | None = None,
) -> Classification:
    """Assign a document type to one upload.

    Only a capability configuration error escapes; every other failure yields an
    `unknown` classification with zero confidence and the reason as its summary.
    """
    cfg = config or settings
    start = time.monotonic()
    content = decoded if decoded is not None else decode_file(file, body)
    if not content.is_readable:
        result = _unknown(file, f"Unsupported file: {content.reason or content.kind}")
        log_event(
            logger,
            "classifier.result",
            file_name=file.display_name,
            document_type=result.document_type.value,
            confidence=0,
            reason=content.reason,
        )
        return result

    try:
        parts = _classification_parts(file, content, cfg)
        parts.append(TextPart(CLASSIFICATION_PROMPT))
        raw = capability.generate(parts, timeout=float(cfg.ai_request_timeout_seconds))
    except CapabilityConfigurationError:
        raise
    except Exception as e:  # noqa: BLE001
        log_event(
            logger,
            "classifier.failure",
            file_name=file.display_name,
            error_type=type(e).__name__,
            duration_ms=monotonic_ms(start),
        )
        return _unknown(file, f"Classification failed: {e}")

    obj = parse_json_object(raw)
    if not isinstance(obj, dict):
        log_event(logger, "classifier.malformed", file_name=file.display_name)
        return _unknown(file, "Classification failed: response was not JSON")

    document_type = DocumentType.from_label(obj.get("documentType"))
    confidence = parse_optional_number(obj.get("confidence"))
    summary = obj.get("summary")
    result = Classification(
        file=file,
        document_type=document_type,
        confidence=int(round(clamp(confidence or 0.0, 0.0, 100.0))),
        summary=summary.strip()[:500] if isinstance(summary, str) else "",
    )
    log_event(
        logger,
        "classifier.result",
        file_name=file.display_name,
        document_type=result.document_type.value,
        raw_label=obj.get("documentType") if isinstance(obj.get("documentType"), str) else None,
        confidence=result.confidence,
        duration_ms=monotonic_ms(start),
    )
    return result


def _classification_parts(file: UploadedFile, content: DecodedContent, cfg: Settings):
    if content.kind == "pdf" and len(content.body) > int(cfg.chunk_threshold_bytes):
        head = pdf_head(content.body, pages=int(cfg.classification_head_pages))
        return [DocumentPart(data=head, filename=file.display_name or "document.pdf")]
    return content_parts(
        content,
        file_name=file.display_name,
        max_chars=int(cfg.classification_max_chars),
        max_sheets=3,
    )


def classify_all(
    files: Sequence[UploadedFile],
    read: Callable[[UploadedFile], bytes],
    capability: ExtractionCapability,
    *,
    config: Settings | None = None,
) -> ClassificationSummary:
    log_event(logger, "classifier.batch.start", file_count=len(files))
    classifications = [classify(f, read(f), capability, config=config) for f in files]
    return ClassificationSummary(classifications=classifications)
