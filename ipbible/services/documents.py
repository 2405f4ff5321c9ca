"""Plain-text extraction from uploaded script files (.txt, .pdf, .docx)."""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import PurePath

import docx
import pypdf
from pypdf.errors import PyPdfError

LOGGER = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".txt", ".pdf", ".docx")


class DocumentExtractionError(RuntimeError):
    """Raised when a script file cannot be turned into text."""


class UnsupportedFormat(DocumentExtractionError):
    pass


class EmptyContent(DocumentExtractionError):
    pass


@dataclass
class ExtractedDocument:
    text: str
    filename: str
    file_kind: str
    data: bytes

    @property
    def is_pdf(self) -> bool:
        return self.file_kind == "pdf"

    @property
    def word_count(self) -> int:
        return len(self.text.split())


def extract_document(data: bytes, filename: str) -> ExtractedDocument:
    name = (filename or "").strip() or "Untitled Script"
    suffix = PurePath(name).suffix.lower()

    if suffix == ".txt":
        text = data.decode("utf-8", errors="replace")
        kind = "txt"
    elif suffix == ".pdf":
        text = _pdf_text(data)
        kind = "pdf"
    elif suffix == ".docx":
        text = _docx_text(data)
        kind = "docx"
    elif suffix == ".doc":
        raise UnsupportedFormat(
            "Legacy .doc is not supported. Please save the script as .docx, .pdf, or .txt and upload that."
        )
    else:
        raise UnsupportedFormat("Unsupported file type. Use .txt, .pdf, or .docx.")

    text = text.strip()
    if not text:
        raise EmptyContent(f"No text could be extracted from {name}.")
    LOGGER.debug("Extracted %d characters from %s (%s)", len(text), name, kind)
    return ExtractedDocument(text=text, filename=name, file_kind=kind, data=bytes(data))


def _pdf_text(data: bytes) -> str:
    try:
        reader = pypdf.PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PyPdfError, ValueError) as exc:
        raise DocumentExtractionError(f"Could not read PDF: {exc}") from exc
    return "\n".join(pages)


def _docx_text(data: bytes) -> str:
    try:
        document = docx.Document(io.BytesIO(data))
    except Exception as exc:  # python-docx raises zipfile/KeyError/ValueError variants
        raise DocumentExtractionError(f"Could not read DOCX: {exc}") from exc
    return "\n".join(paragraph.text for paragraph in document.paragraphs)


__all__ = [
    "DocumentExtractionError",
    "EmptyContent",
    "ExtractedDocument",
    "SUPPORTED_EXTENSIONS",
    "UnsupportedFormat",
    "extract_document",
]
