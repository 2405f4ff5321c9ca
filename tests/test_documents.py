import io
import sys
from pathlib import Path

import docx
import pytest
from pypdf import PdfWriter

sys.path.append(str(Path(__file__).resolve().parents[1]))

from ipbible.services.documents import (
    DocumentExtractionError,
    EmptyContent,
    UnsupportedFormat,
    extract_document,
)


def _docx_bytes(*paragraphs):
    document = docx.Document()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def _blank_pdf_bytes():
    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def test_plain_text_is_decoded_and_counted():
    document = extract_document("INT. WARD 9 - NIGHT\nMara checks the monitors.\n".encode("utf-8"), "night.TXT")

    assert document.file_kind == "txt"
    assert not document.is_pdf
    assert document.text == "INT. WARD 9 - NIGHT\nMara checks the monitors."
    assert document.word_count == 9


def test_invalid_utf8_is_replaced_not_rejected():
    document = extract_document(b"Mara \xff sees", "night.txt")

    assert document.text == "Mara � sees"


def test_whitespace_only_text_is_empty():
    with pytest.raises(EmptyContent):
        extract_document(b"   \n\t ", "blank.txt")


def test_legacy_doc_is_rejected_with_conversion_hint():
    with pytest.raises(UnsupportedFormat) as excinfo:
        extract_document(b"\xd0\xcf\x11\xe0", "old-draft.doc")

    assert ".docx" in str(excinfo.value)


def test_unknown_extension_is_unsupported():
    with pytest.raises(UnsupportedFormat):
        extract_document(b"{\\rtf1 hello}", "draft.rtf")


def test_docx_paragraphs_are_joined():
    document = extract_document(_docx_bytes("FADE IN:", "Mara walks the corridor."), "night.docx")

    assert document.file_kind == "docx"
    assert document.text == "FADE IN:\nMara walks the corridor."


def test_corrupt_pdf_raises_extraction_error():
    with pytest.raises(DocumentExtractionError):
        extract_document(b"this is not a pdf", "broken.pdf")


def test_pdf_without_text_is_empty():
    with pytest.raises(EmptyContent):
        extract_document(_blank_pdf_bytes(), "scan.pdf")
