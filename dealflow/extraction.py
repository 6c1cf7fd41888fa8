"""Plain-text extraction for uploaded diligence documents."""
from __future__ import annotations

import io
import logging

from pypdf import PdfReader

log = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
TEXT_MIME = "text/plain"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MSWORD_MIME = "application/msword"

SUPPORTED_MIME_TYPES = (PDF_MIME, TEXT_MIME)


class ExtractionError(Exception):
    """Text could not be extracted from a document."""


class UnsupportedDocumentType(ExtractionError):
    """The declared MIME type has no extractor."""


class DocumentParseError(ExtractionError):
    """The document is corrupt or the parser failed."""


class EmptyDocumentError(ExtractionError):
    """Extraction succeeded but produced no text."""


def _base_mime(mime_type: str | None) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def extract_pdf_text(content: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(content))
        pages = [page.extract_text() or "" for page in reader.pages]
    except Exception as exc:
        raise DocumentParseError(f"Failed to parse PDF: {exc}") from exc
    return "\n".join(pages)


def extract_plain_text(content: bytes) -> str:
    return content.decode("utf-8-sig", errors="replace")


def extract_text(content: bytes, mime_type: str | None) -> str:
    """Return the plain text of *content* according to its declared MIME type."""
    mime = _base_mime(mime_type)
    if mime == PDF_MIME:
        text = extract_pdf_text(content)
    elif mime == TEXT_MIME:
        text = extract_plain_text(content)
    elif mime in (DOCX_MIME, MSWORD_MIME):
        raise UnsupportedDocumentType("Please convert Word documents to PDF for text extraction")
    else:
        raise UnsupportedDocumentType("Unsupported file type. Please upload PDF or TXT files.")

    if not text.strip():
        raise EmptyDocumentError("Could not extract text from the document")
    log.debug("Extracted %d characters from %s document", len(text), mime)
    return text


def count_words(text: str) -> int:
    """Number of whitespace-delimited tokens."""
    return len(text.split())
