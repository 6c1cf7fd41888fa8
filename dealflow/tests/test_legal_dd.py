"""Tests for the legal due-diligence document registry."""
from __future__ import annotations

import re

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dealflow import legal_dd
from dealflow.extraction import UnsupportedDocumentType
from dealflow.models import Base, Startup
from dealflow.utils import json_dump, json_parse


@pytest.fixture()
def session():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    sess = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def startup(session) -> Startup:
    s = Startup(id="s1", name="Acme")
    session.add(s)
    session.commit()
    return s


def _legal(session, startup_id="s1") -> dict:
    return json_parse(session.get(Startup, startup_id).legal_diligence_json, {})


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_document_id_format(self):
        assert re.fullmatch(r"doc-\d+-[a-z0-9]{9}", legal_dd.new_document_id())

    def test_normalize_legacy_shapes(self):
        assert legal_dd.normalize_documents(None) == []
        assert legal_dd.normalize_documents({"id": "a"}) == [{"id": "a"}]
        assert legal_dd.normalize_documents([{"id": "a"}]) == [{"id": "a"}]

    def test_build_document_counts(self):
        doc = legal_dd.build_document("memo.txt", "text/plain", "hello world")
        assert doc["characterCount"] == 11
        assert doc["wordCount"] == 2
        assert doc["fileName"] == "memo.txt"

    def test_append_to_legacy_single_document(self):
        legal = {"uploadedDocuments": {"ip": {"id": "old"}}, "analysisResults": {"ip": {"ok": 1}}}
        updated, total = legal_dd.append_document(legal, "ip", {"id": "new"})
        assert total == 2
        assert [d["id"] for d in updated["uploadedDocuments"]["ip"]] == ["old", "new"]
        assert "ip" not in updated["analysisResults"]

    def test_remove_unknown_id_is_noop(self):
        legal = {"uploadedDocuments": {"ip": [{"id": "a"}]}}
        updated = legal_dd.remove_documents(legal, "ip", "missing")
        assert updated["uploadedDocuments"] == {"ip": [{"id": "a"}]}

    def test_remove_keeps_other_categories_analysis(self):
        legal = {
            "uploadedDocuments": {"ip": [{"id": "a"}], "hr": [{"id": "b"}]},
            "analysisResults": {"ip": "x", "hr": "y"},
        }
        updated = legal_dd.remove_documents(legal, "ip")
        assert updated["uploadedDocuments"] == {"hr": [{"id": "b"}]}
        assert updated["analysisResults"] == {"hr": "y"}


# ---------------------------------------------------------------------------
# Session-level operations
# ---------------------------------------------------------------------------


class TestUpload:
    def test_hello_world(self, session, startup):
        result = legal_dd.upload_document(session, "s1", "ip", "memo.txt", "text/plain", b"hello world")
        assert result["document"]["character_count"] == 11
        assert result["document"]["word_count"] == 2
        assert result["total_documents"] == 1
        stored = _legal(session)["uploadedDocuments"]["ip"][0]
        assert stored["text"] == "hello world"
        assert stored["id"] == result["document"]["id"]

    def test_second_upload_appends_and_clears_analysis(self, session, startup):
        legal_dd.upload_document(session, "s1", "ip", "a.txt", "text/plain", b"first")
        startup.legal_diligence_json = json_dump({
            **_legal(session), "analysisResults": {"ip": {"summary": "cached"}},
        })
        session.commit()

        result = legal_dd.upload_document(session, "s1", "ip", "b.txt", "text/plain", b"second doc")
        assert result["total_documents"] == 2
        legal = _legal(session)
        assert [d["fileName"] for d in legal["uploadedDocuments"]["ip"]] == ["a.txt", "b.txt"]
        assert "ip" not in legal["analysisResults"]

    def test_unknown_startup(self, session):
        assert legal_dd.upload_document(session, "nope", "ip", "a.txt", "text/plain", b"x") is None

    def test_extraction_error_leaves_registry_alone(self, session, startup):
        with pytest.raises(UnsupportedDocumentType):
            legal_dd.upload_document(session, "s1", "ip", "a.png", "image/png", b"\x89PNG")
        assert _legal(session) == {}


class TestGetAndDelete:
    def test_get_by_category_and_all(self, session, startup):
        legal_dd.upload_document(session, "s1", "ip", "a.txt", "text/plain", b"one")
        legal_dd.upload_document(session, "s1", "hr", "b.txt", "text/plain", b"two")
        assert [d["fileName"] for d in legal_dd.get_documents(session, "s1", "ip")] == ["a.txt"]
        assert set(legal_dd.get_documents(session, "s1")) == {"ip", "hr"}
        assert legal_dd.get_documents(session, "s1", "tax") == []
        assert legal_dd.get_documents(session, "nope") is None

    def test_delete_sole_document_removes_category(self, session, startup):
        result = legal_dd.upload_document(session, "s1", "ip", "a.txt", "text/plain", b"one")
        startup.legal_diligence_json = json_dump({
            **_legal(session), "analysisResults": {"ip": {"summary": "cached"}},
        })
        session.commit()

        assert legal_dd.delete_documents(session, "s1", "ip", result["document"]["id"])
        legal = _legal(session)
        assert "ip" not in legal["uploadedDocuments"]
        assert "ip" not in legal["analysisResults"]

    def test_delete_unknown_id_succeeds(self, session, startup):
        legal_dd.upload_document(session, "s1", "ip", "a.txt", "text/plain", b"one")
        assert legal_dd.delete_documents(session, "s1", "ip", "doc-0-missing00")
        assert len(_legal(session)["uploadedDocuments"]["ip"]) == 1

    def test_delete_whole_category(self, session, startup):
        legal_dd.upload_document(session, "s1", "ip", "a.txt", "text/plain", b"one")
        legal_dd.upload_document(session, "s1", "ip", "b.txt", "text/plain", b"two")
        assert legal_dd.delete_documents(session, "s1", "ip")
        assert _legal(session)["uploadedDocuments"] == {}

    def test_delete_unknown_startup(self, session):
        assert not legal_dd.delete_documents(session, "nope", "ip")
