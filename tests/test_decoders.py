from __future__ import annotations

from io import BytesIO

from openpyxl import Workbook
from PIL import Image
from pypdf import PdfReader, PdfWriter

from statement_intake.modules.extraction.decoders import (
    decode_file,
    detect_kind,
    pdf_head,
    split_pdf_pages,
)
from statement_intake.modules.extraction.records import UploadedFile


def _file(name: str, mime: str = "application/octet-stream") -> UploadedFile:
    return UploadedFile(path=f"uploads/{name}", mime_type=mime, display_name=name)


def _blank_pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buf = BytesIO()
    writer.write(buf)
    return buf.getvalue()


def _xlsx() -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Pricing"
    ws.append(["Card", "Volume", "Rate"])
    ws.append(["Visa", 25000, 2.5])
    ws.append([None, None, None])
    ws.append(["Mastercard", 15000.0, None])
    second = wb.create_sheet("Notes")
    second.append(["Proposed savings", "$200"])
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def test_detect_kind_rejects_non_pdf_bytes_for_pdf_extension():
    kind = detect_kind(filename="statement.pdf", mime_type="application/pdf", body=b"\x00\x01\x02")
    assert kind == "bad_pdf_upload"


def test_detect_kind_prefers_magic_bytes_over_name():
    assert detect_kind(filename="scan.txt", mime_type="text/plain", body=b"%PDF-1.7\n") == "pdf"
    assert detect_kind(filename="x.pdf", mime_type=None, body=b"\x89PNG\r\n\x1a\nrest") == "image"


def test_detect_kind_falls_back_to_content_and_extension():
    assert detect_kind(filename="notes", mime_type=None, body=b"Statement for: Acme\n") == "text"
    assert detect_kind(filename="legacy.xls", mime_type=None, body=b"\xd0\xcf\x11\xe0") == "xls"


def test_empty_and_unsupported_files_carry_a_reason():
    empty = decode_file(_file("a.pdf", "application/pdf"), b"")
    assert empty.kind == "empty"
    assert not empty.is_readable

    bad = decode_file(_file("a.pdf", "application/pdf"), b"\x00\x01not a pdf")
    assert bad.kind == "unsupported"
    assert bad.reason == "bad PDF upload"

    xls = decode_file(_file("old.xls"), b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1")
    assert xls.kind == "unsupported"
    assert "xls" in xls.reason


def test_corrupt_pdf_is_unsupported_not_an_exception():
    decoded = decode_file(_file("broken.pdf", "application/pdf"), b"%PDF-1.4\ngarbage")
    assert decoded.kind == "unsupported"
    assert decoded.reason.startswith("could not read pdf")


def test_plain_text_strips_bom_and_odd_spaces():
    decoded = decode_file(_file("s.txt", "text/plain"), "\ufeffTotal\xa0$1,000".encode("utf-8"))
    assert decoded.kind == "text"
    assert decoded.text == "Total $1,000"


def test_workbook_renders_every_sheet_as_csv():
    decoded = decode_file(
        _file(
            "pricing.xlsx",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        ),
        _xlsx(),
    )

    assert decoded.kind == "grid"
    assert [s.name for s in decoded.sheets] == ["Pricing", "Notes"]
    assert decoded.sheets[0].csv == "Card,Volume,Rate\nVisa,25000,2.5\nMastercard,15000\n"
    assert decoded.text.startswith("=== Sheet: Pricing ===\n")
    assert "=== Sheet: Notes ===\nProposed savings,$200\n" in decoded.text


def test_csv_upload_is_a_single_grid_sheet():
    decoded = decode_file(_file("data.csv", "text/csv"), b"Card,Volume\nVisa,\"25,000\"\n")
    assert decoded.kind == "grid"
    assert decoded.sheets[0].name == "csv"
    assert 'Visa,"25,000"' in decoded.text


def test_pdf_pages_split_into_single_page_documents():
    body = _blank_pdf(3)

    decoded = decode_file(_file("s.pdf", "application/pdf"), body)
    assert decoded.kind == "pdf"
    assert decoded.page_count == 3

    pages = split_pdf_pages(body)
    assert [p.index for p in pages] == [0, 1, 2]
    for page in pages:
        assert len(PdfReader(BytesIO(page.pdf_bytes)).pages) == 1

    head = pdf_head(body, pages=2)
    assert len(PdfReader(BytesIO(head)).pages) == 2


def test_large_image_is_downsized_to_jpeg():
    buf = BytesIO()
    Image.new("RGBA", (3000, 1200), (255, 0, 0, 255)).save(buf, format="PNG")

    decoded = decode_file(_file("scan.png", "image/png"), buf.getvalue())

    assert decoded.kind == "image"
    assert decoded.mime_type == "image/jpeg"
    with Image.open(BytesIO(decoded.body)) as out:
        assert max(out.size) == 2000
        assert out.format == "JPEG"


def test_small_image_passes_through_unchanged():
    buf = BytesIO()
    Image.new("RGB", (400, 300), (0, 0, 255)).save(buf, format="PNG")
    body = buf.getvalue()

    decoded = decode_file(_file("scan.png", "image/png"), body)

    assert decoded.kind == "image"
    assert decoded.mime_type == "image/png"
    assert decoded.body == body


def test_unreadable_image_is_unsupported():
    decoded = decode_file(_file("scan.jpg", "image/jpeg"), b"\xff\xd8\xffnot really a jpeg")
    assert decoded.kind == "unsupported"
    assert decoded.reason.startswith("could not read image")
