from __future__ import annotations

import csv
from dataclasses import dataclass, field
from datetime import date, datetime
from io import BytesIO, StringIO
from pathlib import PurePath

from openpyxl import load_workbook
from PIL import Image
from pypdf import PdfReader, PdfWriter

from statement_intake.core.config import settings
from statement_intake.core.logging import get_logger, log_event
from statement_intake.modules.extraction.records import UploadedFile

logger = get_logger(__name__)

_SPREADSHEET_EXTS = (".xlsx", ".xlsm")
_IMAGE_EXTS = (".png", ".jpg", ".jpeg", ".gif", ".webp")
_TEXT_EXTS = (".txt", ".md", ".text")


@dataclass(frozen=True)
class SheetText:
    name: str
    csv: str


@dataclass(frozen=True)
class DecodedContent:
    kind: str  # pdf | grid | image | text | unsupported | empty
    text: str = ""
    body: bytes = b""
    mime_type: str = ""
    page_count: int = 0
    sheets: tuple[SheetText, ...] = field(default_factory=tuple)
    reason: str | None = None

    @property
    def is_readable(self) -> bool:
        return self.kind in {"pdf", "grid", "image", "text"}


@dataclass(frozen=True)
class PdfPage:
    index: int
    text: str
    pdf_bytes: bytes


def decode_file(file: UploadedFile, body: bytes) -> DecodedContent:
    """Turn raw upload bytes into text, a cell grid, a PDF or an image payload.

    Never raises for bad input: unreadable content comes back as `unsupported` with a
    reason, and zero-byte uploads as `empty`.
    """
    if not body:
        return DecodedContent(kind="empty", reason="empty file")

    filename = file.display_name or file.path
    kind = detect_kind(filename=filename, mime_type=file.mime_type, body=body)
    try:
        if kind == "pdf":
            return _decode_pdf(body)
        if kind == "image":
            return _decode_image(body)
        if kind == "xlsx":
            return _decode_workbook(body)
        if kind == "csv":
            return _decode_csv(body)
        if kind == "text":
            return DecodedContent(kind="text", text=_decode_text(body), body=body)
    except Exception as e:  # noqa: BLE001
        log_event(
            logger,
            "decoder.failure",
            file_name=file.display_name,
            detected_kind=kind,
            error_type=type(e).__name__,
        )
        reason = f"could not read {kind}: {e}"
        return DecodedContent(kind="unsupported", body=body, reason=reason)

    reasons = {
        "bad_pdf_upload": "bad PDF upload",
        "bad_image_upload": "file is not a readable image",
        "xls": "legacy .xls spreadsheets are not supported",
    }
    return DecodedContent(
        kind="unsupported", body=body, reason=reasons.get(kind, "unsupported file type")
    )


def detect_kind(*, filename: str, mime_type: str | None, body: bytes) -> str:
    name = PurePath(filename or "").name.lower()
    ctype = (mime_type or "").lower()

    if _looks_like_pdf_bytes(body):
        return "pdf"
    if _looks_like_image_bytes(body):
        return "image"
    is_zip = body.startswith(b"PK\x03\x04")
    if is_zip and (name.endswith(_SPREADSHEET_EXTS) or "spreadsheetml" in ctype):
        return "xlsx"
    if name.endswith(".xls") or ctype == "application/vnd.ms-excel":
        return "xls"
    if name.endswith(".csv") or ctype in {"text/csv", "application/csv"}:
        return "csv"
    if name.endswith(".pdf") or ctype.endswith("/pdf"):
        # Never hand non-PDF bytes to PdfReader.
        return "bad_pdf_upload"
    if name.endswith(_IMAGE_EXTS) or ctype.startswith("image/"):
        return "bad_image_upload"
    if _looks_like_text_bytes(body) or name.endswith(_TEXT_EXTS) or ctype.startswith("text/"):
        return "text"
    return "unknown"


def _looks_like_pdf_bytes(body: bytes) -> bool:
    b = body.lstrip()
    if b.startswith(b"\xef\xbb\xbf"):
        b = b[3:].lstrip()
    return b.startswith(b"%PDF")


def _looks_like_image_bytes(body: bytes) -> bool:
    return (
        body.startswith(b"\x89PNG\r\n\x1a\n")
        or body.startswith(b"\xff\xd8\xff")
        or body.startswith((b"GIF87a", b"GIF89a"))
        or (len(body) >= 12 and body.startswith(b"RIFF") and body[8:12] == b"WEBP")
    )


def _looks_like_text_bytes(body: bytes) -> bool:
    sample = body[:4096]
    if b"\x00" in sample:
        return False
    try:
        sample.decode("utf-8", errors="strict")
    except UnicodeDecodeError:
        # A multi-byte sequence may be cut at the sample boundary.
        try:
            sample[:-3].decode("utf-8", errors="strict")
        except UnicodeDecodeError:
            return False
    return True


def _decode_text(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace")
    if text.startswith("\ufeff"):
        text = text[1:]
    return text.replace("\u202f", " ").replace("\xa0", " ")


def _clean_page_text(text: str | None) -> str:
    return (text or "").replace("\u202f", " ").replace("\xa0", " ")


def _decode_pdf(body: bytes) -> DecodedContent:
    reader = PdfReader(BytesIO(body))
    pages = [_clean_page_text(page.extract_text()) for page in reader.pages]
    return DecodedContent(
        kind="pdf",
        text="\n\n".join(pages),
        body=body,
        mime_type="application/pdf",
        page_count=len(pages),
    )


def split_pdf_pages(body: bytes) -> list[PdfPage]:
    """Split a PDF into standalone single-page documents, keeping each page's text."""
    reader = PdfReader(BytesIO(body))
    out: list[PdfPage] = []
    for idx, page in enumerate(reader.pages):
        writer = PdfWriter()
        writer.add_page(page)
        buf = BytesIO()
        writer.write(buf)
        text = _clean_page_text(page.extract_text())
        out.append(PdfPage(index=idx, text=text, pdf_bytes=buf.getvalue()))
    return out


def pdf_head(body: bytes, *, pages: int) -> bytes:
    reader = PdfReader(BytesIO(body))
    writer = PdfWriter()
    for page in reader.pages[: max(1, pages)]:
        writer.add_page(page)
    buf = BytesIO()
    writer.write(buf)
    return buf.getvalue()


def _decode_image(body: bytes) -> DecodedContent:
    with Image.open(BytesIO(body)) as candidate:
        candidate.verify()

    image = Image.open(BytesIO(body))
    fmt = (image.format or "").upper()
    max_dim = int(settings.image_max_dimension)
    if max(image.size) <= max_dim and fmt in {"PNG", "JPEG", "GIF", "WEBP"}:
        return DecodedContent(kind="image", body=body, mime_type=f"image/{fmt.lower()}")

    if image.mode not in {"RGB", "L"}:
        image = image.convert("RGB")
    image.thumbnail((max_dim, max_dim))
    buf = BytesIO()
    image.save(buf, format="JPEG", quality=85)
    log_event(
        logger,
        "decoder.image.resized",
        original_format=fmt or None,
        width=image.size[0],
        height=image.size[1],
    )
    return DecodedContent(kind="image", body=buf.getvalue(), mime_type="image/jpeg")


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _rows_to_csv(rows) -> str:
    buf = StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for row in rows:
        cells = [_cell_text(v) for v in row]
        while cells and not cells[-1]:
            cells.pop()
        if not cells:
            continue
        writer.writerow(cells)
    return buf.getvalue()


def _decode_workbook(body: bytes) -> DecodedContent:
    wb = load_workbook(BytesIO(body), read_only=True, data_only=True)
    try:
        sheets = tuple(
            SheetText(name=ws.title, csv=_rows_to_csv(ws.iter_rows(values_only=True)))
            for ws in wb.worksheets
        )
    finally:
        wb.close()
    return DecodedContent(
        kind="grid",
        text=render_sheets(sheets),
        body=body,
        mime_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        sheets=sheets,
    )


def _decode_csv(body: bytes) -> DecodedContent:
    text = _decode_text(body)
    rows = csv.reader(StringIO(text))
    sheet = SheetText(name="csv", csv=_rows_to_csv(rows))
    return DecodedContent(
        kind="grid", text=render_sheets((sheet,)), body=body, mime_type="text/csv", sheets=(sheet,)
    )


def render_sheets(sheets, *, max_sheets: int | None = None) -> str:
    selected = list(sheets)[:max_sheets] if max_sheets else list(sheets)
    return "\n".join(f"=== Sheet: {s.name} ===\n{s.csv}" for s in selected)
