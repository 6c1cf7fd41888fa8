from __future__ import annotations

import io

import pytest
from pypdf import PdfWriter

from dealflow.extraction import (
    DOCX_MIME,
    DocumentParseError,
    EmptyDocumentError,
    ExtractionError,
    UnsupportedDocumentType,
    count_words,
    extract_text,
)


def _blank_pdf() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class TestExtractText:
    def test_plain_text(self):
        assert extract_text(b"hello world", "text/plain") == "hello world"

    def test_mime_parameters_ignored(self):
        assert extract_text(b"hi", "text/plain; charset=utf-8") == "hi"

    def test_bom_stripped_and_bad_bytes_replaced(self):
        text = extract_text(b"\xef\xbb\xbfabc \xff", "text/plain")
        assert text.startswith("abc")
        assert "\ufffd" in text

    def test_word_documents_rejected(self):
        with pytest.raises(UnsupportedDocumentType, match="convert Word documents to PDF"):
            extract_text(b"PK...", DOCX_MIME)

    def test_other_types_rejected(self):
        with pytest.raises(UnsupportedDocumentType, match="PDF or TXT"):
            extract_text(b"\x89PNG", "image/png")

    def test_whitespace_only(self):
        with pytest.raises(EmptyDocumentError):
            extract_text(b"  \n\t ", "text/plain")

    def test_corrupt_pdf(self):
        with pytest.raises(DocumentParseError, match="Failed to parse PDF"):
            extract_text(b"definitely not a pdf", "application/pdf")

    def test_pdf_without_text(self):
        with pytest.raises(EmptyDocumentError):
            extract_text(_blank_pdf(), "application/pdf")

    def test_errors_share_base(self):
        for exc in (UnsupportedDocumentType, DocumentParseError, EmptyDocumentError):
            assert issubclass(exc, ExtractionError)


class TestCountWords:
    def test_hello_world(self):
        assert count_words("hello world") == 2
        assert len("hello world") == 11

    def test_collapses_whitespace(self):
        assert count_words("  one\n\ntwo\tthree  ") == 3
        assert count_words("") == 0
