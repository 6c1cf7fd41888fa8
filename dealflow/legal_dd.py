"""Legal due-diligence document registry.

Documents live inside ``Startup.legal_diligence_json``::

    {
      "uploadedDocuments": {"<category>": [<document>, ...]},
      "analysisResults":   {"<category>": <cached analysis>}
    }

Older records may hold a single document object per category instead of a
list; every read and write goes through :func:`normalize_documents`.
Any change to a category's documents drops that category's cached analysis.
"""
from __future__ import annotations

import logging
import secrets
import string
import time
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealflow.extraction import count_words, extract_text
from dealflow.models import Startup
from dealflow.utils import json_dump, json_parse

log = logging.getLogger(__name__)

DOCUMENTS_KEY = "uploadedDocuments"
ANALYSIS_KEY = "analysisResults"

_ID_ALPHABET = string.ascii_lowercase + string.digits


# ---------------------------------------------------------------------------
# Pure helpers over the legal_diligence dict
# ---------------------------------------------------------------------------


def new_document_id() -> str:
    """``doc-<epoch ms>-<9 random base36 chars>``. Not checked for collisions."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"doc-{int(time.time() * 1000)}-{suffix}"


def normalize_documents(value: Any) -> list[dict]:
    """Coerce a stored category value (list, legacy single dict, or nothing) to a list."""
    if isinstance(value, list):
        return value
    if value:
        return [value]
    return []


def build_document(file_name: str, file_type: str, text: str) -> dict:
    return {
        "id": new_document_id(),
        "fileName": file_name,
        "fileType": file_type,
        "text": text,
        "uploadedAt": datetime.now(UTC).isoformat(),
        "characterCount": len(text),
        "wordCount": count_words(text),
    }


def _invalidate_analysis(legal: dict, category: str) -> None:
    analysis = dict(legal.get(ANALYSIS_KEY) or {})
    analysis.pop(category, None)
    legal[ANALYSIS_KEY] = analysis


def append_document(legal: dict, category: str, document: dict) -> tuple[dict, int]:
    """Return (updated registry, documents now in category)."""
    legal = dict(legal or {})
    docs = dict(legal.get(DOCUMENTS_KEY) or {})
    category_docs = [*normalize_documents(docs.get(category)), document]
    docs[category] = category_docs
    legal[DOCUMENTS_KEY] = docs
    _invalidate_analysis(legal, category)
    return legal, len(category_docs)


def remove_documents(legal: dict, category: str, document_id: str | None = None) -> dict:
    """Drop one document (by id) or the whole category. Unknown ids are a no-op."""
    legal = dict(legal or {})
    docs = dict(legal.get(DOCUMENTS_KEY) or {})
    if document_id:
        remaining = [d for d in normalize_documents(docs.get(category)) if d.get("id") != document_id]
        if remaining:
            docs[category] = remaining
        else:
            docs.pop(category, None)
    else:
        docs.pop(category, None)
    legal[DOCUMENTS_KEY] = docs
    _invalidate_analysis(legal, category)
    return legal


def category_documents(legal: dict, category: str) -> list[dict]:
    return normalize_documents((legal.get(DOCUMENTS_KEY) or {}).get(category))


def all_documents(legal: dict) -> dict[str, list[dict]]:
    return {cat: normalize_documents(docs) for cat, docs in (legal.get(DOCUMENTS_KEY) or {}).items()}


# ---------------------------------------------------------------------------
# Session-level operations
# ---------------------------------------------------------------------------


def _load_for_update(session: Session, startup_id: str) -> Startup | None:
    return session.execute(
        select(Startup).where(Startup.id == startup_id).with_for_update()
    ).scalars().first()


def upload_document(
    session: Session, startup_id: str, category: str,
    file_name: str, mime_type: str, content: bytes,
) -> dict | None:
    """Extract text and append a document. Returns None if the startup is unknown.

    Raises ``ExtractionError`` subclasses when the file cannot be read.
    """
    startup = _load_for_update(session, startup_id)
    if startup is None:
        return None
    log.info("Processing legal DD upload %s (%s) for %s", file_name, mime_type, startup_id)
    text = extract_text(content, mime_type)
    document = build_document(file_name, mime_type, text)

    legal, total = append_document(json_parse(startup.legal_diligence_json, {}), category, document)
    startup.legal_diligence_json = json_dump(legal)
    session.commit()
    log.info("Stored %s in %s/%s (%d documents)", file_name, startup_id, category, total)
    return {
        "message": "Document uploaded successfully",
        "document": {
            "id": document["id"], "file_name": document["fileName"],
            "character_count": document["characterCount"], "word_count": document["wordCount"],
        },
        "category": category,
        "total_documents": total,
    }


def get_documents(session: Session, startup_id: str, category: str | None = None):
    """One category's list, or every category. None if the startup is unknown."""
    startup = session.get(Startup, startup_id)
    if startup is None:
        return None
    legal = json_parse(startup.legal_diligence_json, {})
    if category:
        return category_documents(legal, category)
    return all_documents(legal)


def delete_documents(
    session: Session, startup_id: str, category: str, document_id: str | None = None,
) -> bool:
    """Remove a document or a category. False if the startup is unknown."""
    startup = _load_for_update(session, startup_id)
    if startup is None:
        return False
    legal = remove_documents(json_parse(startup.legal_diligence_json, {}), category, document_id)
    startup.legal_diligence_json = json_dump(legal)
    session.commit()
    log.info("Removed %s from %s/%s", document_id or "all documents", startup_id, category)
    return True
