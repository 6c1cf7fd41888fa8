from __future__ import annotations

import csv
import io
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import openpyxl
from sqlalchemy.orm import Session

from dealflow import services
from dealflow.column_mapper import UNMAPPED, ColumnMapper, ConfirmedMapping, MappingSuggester
from dealflow.schemas import ColumnMapping, StartupCreate

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _i(value: str) -> int | None:
    """Safely coerce cell value to int, None if not numeric."""
    try:
        return int(float(value.replace(",", "")))
    except (ValueError, TypeError, AttributeError):
        return None


def _f(value: str) -> float | None:
    """Safely coerce cell value to float, None if not numeric."""
    try:
        return float(value.replace(",", ""))
    except (ValueError, TypeError, AttributeError):
        return None


# ---------------------------------------------------------------------------
# Reading spreadsheets
# ---------------------------------------------------------------------------


@dataclass
class TableData:
    headers: list[str]
    rows: list[dict[str, str]]

    def sample_rows(self, n: int = 5) -> list[dict[str, str]]:
        return self.rows[:n]


def _normalize_table(raw_rows: list[list[Any]]) -> TableData:
    if not raw_rows:
        raise ValueError("The file is empty")
    headers: list[str] = []
    for idx, cell in enumerate(raw_rows[0]):
        header = _s(cell) or f"Column {idx + 1}"
        if header in headers:
            raise ValueError(f"Duplicate column header: {header!r}")
        headers.append(header)

    rows: list[dict[str, str]] = []
    for raw in raw_rows[1:]:
        values = [_s(c) for c in raw]
        if not any(values):
            continue
        values += [""] * (len(headers) - len(values))
        rows.append(dict(zip(headers, values)))
    return TableData(headers=headers, rows=rows)


def _read_csv(content: bytes) -> list[list[Any]]:
    text = content.decode("utf-8-sig", errors="replace")
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    return list(csv.reader(io.StringIO(text), dialect))


def _read_xlsx(content: bytes) -> list[list[Any]]:
    wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        return [list(row) for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def read_table(file_name: str, content: bytes) -> TableData:
    """Parse a .csv or .xlsx upload; the first row holds the headers."""
    suffix = Path(file_name or "").suffix.lower()
    if suffix == ".csv":
        raw = _read_csv(content)
    elif suffix == ".xlsx":
        raw = _read_xlsx(content)
    else:
        raise ValueError("Only .csv and .xlsx files are supported")
    return _normalize_table(raw)


# ---------------------------------------------------------------------------
# Heuristic baseline mapping
# ---------------------------------------------------------------------------

# canonical field -> normalized header aliases (lowercase alphanumerics only)
_HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "companyname", "startupname", "company", "startup", "organization", "organisation"),
    "description": ("description", "companydescription", "about", "summary", "overview", "shortdescription"),
    "sector": ("sector", "vertical"),
    "stage": ("stage", "fundingstage", "investmentstage", "round"),
    "country": ("country", "hqcountry", "countryofincorporation"),
    "website": ("website", "websiteurl", "companywebsite", "homepage", "url"),
    "linkedin_url": ("linkedin", "linkedinurl", "companylinkedin", "linkedinprofile"),
    "location": ("location", "city"),
    "headquarters": ("headquarters", "hq", "hqlocation"),
    "founding_year": ("foundingyear", "founded", "yearfounded", "foundedyear"),
    "founders": ("founders", "founder", "cofounders", "foundernames"),
    "employee_count": ("employeecount", "employees", "numberofemployees", "headcount", "teamsize"),
    "funding_raised": ("fundingraised", "totalfunding", "totalraised", "raised", "funding"),
    "founders_education": ("founderseducation", "education"),
    "founders_prior_experience": ("foundersexperience", "priorexperience", "foundersprior"),
    "key_team_members": ("keyteammembers", "keypeople", "team"),
    "team_depth": ("teamdepth",),
    "industry": ("industry",),
    "sub_industry": ("subindustry", "subsector"),
    "market_size": ("marketsize", "tam"),
    "b2b_or_b2c": ("b2borb2c", "b2bb2c", "customertype"),
    "sales_motion": ("salesmotion",),
    "gtm_strategy": ("gtmstrategy", "gtm", "gotomarket", "gotomarketstrategy"),
    "problem_solved": ("problemsolved", "problem"),
    "moat": ("moat", "competitivemoat", "competitiveadvantage"),
    "revenue_model": ("revenuemodel", "businessmodel", "monetization"),
    "competitors": ("competitors", "competition"),
    "score": ("score", "llmscore", "aiscore"),
    "machine_learning_score": ("mlscore", "machinelearningscore"),
}


def _normalize_header(header: str) -> str:
    return re.sub(r"[^a-z0-9]", "", header.casefold())


def suggest_mapping(headers: list[str]) -> ColumnMapping:
    """Baseline mapping from header names alone; each header is used at most once."""
    by_norm: dict[str, str] = {}
    for h in headers:
        by_norm.setdefault(_normalize_header(h), h)
    used: set[str] = set()
    values: dict[str, str] = {}
    for canonical, aliases in _HEADER_ALIASES.items():
        for alias in aliases:
            header = by_norm.get(alias)
            if header and header not in used:
                values[canonical] = header
                used.add(header)
                break
    return ColumnMapping(**values)


# ---------------------------------------------------------------------------
# Applying a confirmed mapping
# ---------------------------------------------------------------------------

_CORE_FIELDS = ("name", "description", "sector", "stage", "country")

# canonical field -> (startup bag, key in bag)
_BAG_FIELDS: dict[str, tuple[str, str]] = {
    "website": ("company_info", "website"),
    "linkedin_url": ("company_info", "linkedin_url"),
    "location": ("company_info", "location"),
    "headquarters": ("company_info", "headquarters"),
    "founding_year": ("company_info", "founding_year"),
    "founders": ("company_info", "founders"),
    "employee_count": ("company_info", "employee_count"),
    "funding_raised": ("company_info", "funding_raised"),
    "founders_education": ("team_info", "founders_education"),
    "founders_prior_experience": ("team_info", "founders_prior_experience"),
    "key_team_members": ("team_info", "key_team_members"),
    "team_depth": ("team_info", "team_depth"),
    "industry": ("market_info", "industry"),
    "sub_industry": ("market_info", "sub_industry"),
    "market_size": ("market_info", "market_size"),
    "b2b_or_b2c": ("market_info", "b2b_or_b2c"),
    "sales_motion": ("sales_info", "sales_motion"),
    "gtm_strategy": ("sales_info", "gtm_strategy"),
    "problem_solved": ("product_info", "problem_solved"),
    "moat": ("product_info", "moat"),
    "revenue_model": ("business_model_info", "revenue_model"),
    "competitors": ("competitive_info", "competitors"),
    "score": ("ai_scores", "score"),
    "machine_learning_score": ("ai_scores", "machine_learning_score"),
}

_INT_FIELDS = {"founding_year"}
_FLOAT_FIELDS = {"score", "machine_learning_score"}


def build_record(row: dict[str, str], confirmed: ConfirmedMapping) -> dict[str, Any] | None:
    """One startup payload from one row; None when the row has no name."""
    record: dict[str, Any] = {}
    canonical_headers: set[str] = set()
    unparsed: dict[str, str] = {}

    for canonical, header in confirmed.mapping.model_dump().items():
        if header is None:
            continue
        canonical_headers.add(header)
        raw = _s(row.get(header))
        if not raw:
            continue
        value: Any = raw
        if canonical in _INT_FIELDS:
            value = _i(raw)
        elif canonical in _FLOAT_FIELDS:
            value = _f(raw)
        if value is None:
            log.warning("Could not read %s from %r, keeping it as custom data", canonical, raw)
            unparsed[header] = raw
            continue
        if canonical in _CORE_FIELDS:
            record[canonical] = value
            continue
        bag, key = _BAG_FIELDS[canonical]
        record.setdefault(bag, {})[key] = value
        if canonical == "score":
            record["score"] = value

    if not record.get("name"):
        return None

    custom_data: dict[str, dict[str, str]] = {}
    custom_schema: dict[str, dict[str, dict[str, str]]] = {}
    for header, raw in row.items():
        if header in canonical_headers or header in confirmed.skipped_headers:
            continue
        category, fld = confirmed.placements.get(header, (UNMAPPED, header))
        custom_schema.setdefault(category, {})[fld] = {"label": header, "type": "text"}
        value = _s(raw)
        if value:
            custom_data.setdefault(category, {})[fld] = value
    for header, raw in unparsed.items():
        custom_schema.setdefault(UNMAPPED, {})[header] = {"label": header, "type": "text"}
        custom_data.setdefault(UNMAPPED, {})[header] = raw
    if custom_data:
        record["custom_data"] = custom_data
    if custom_schema:
        record["custom_schema"] = custom_schema
    return record


def build_records(rows: list[dict[str, str]], confirmed: ConfirmedMapping) -> list[StartupCreate]:
    out: list[StartupCreate] = []
    for idx, row in enumerate(rows, start=2):
        record = build_record(row, confirmed)
        if record is None:
            continue
        try:
            out.append(services.sanitize_startup(record))
        except ValueError as exc:
            log.warning("Skipping row %d: %s", idx, exc)
    return out


def import_records(session: Session, records: list[StartupCreate], batch_size: int = 500) -> int:
    """Bulk insert in batches, then recalculate ranks once. Returns rows created."""
    created = 0
    for start in range(0, len(records), batch_size):
        created += services.create_startups_bulk(session, records[start:start + batch_size])
    services.recalculate_ranks(session)
    return created


# ---------------------------------------------------------------------------
# Live import sessions
# ---------------------------------------------------------------------------


@dataclass
class ImportSession:
    id: str
    file_name: str
    table: TableData
    mapper: ColumnMapper
    touched_at: float = field(default_factory=time.monotonic)


class ImportSessions:
    """In-memory registry of mapping sessions awaiting confirmation."""

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._sessions: dict[str, ImportSession] = {}

    def start(
        self, file_name: str, content: bytes, suggester: MappingSuggester, sample_size: int = 5,
    ) -> ImportSession:
        table = read_table(file_name, content)
        mapper = ColumnMapper(
            table.headers, table.sample_rows(sample_size), suggest_mapping(table.headers), suggester,
        )
        sess = ImportSession(id=uuid.uuid4().hex, file_name=file_name, table=table, mapper=mapper)
        with self._lock:
            self._expire()
            self._sessions[sess.id] = sess
        log.info("Import session %s: %s (%d rows, %d columns)",
                 sess.id, file_name, len(table.rows), len(table.headers))
        return sess

    def get(self, session_id: str) -> ImportSession | None:
        with self._lock:
            self._expire()
            sess = self._sessions.get(session_id)
            if sess is not None:
                sess.touched_at = time.monotonic()
            return sess

    def discard(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def _expire(self) -> None:
        cutoff = time.monotonic() - self.ttl_seconds
        for sid in [sid for sid, s in self._sessions.items() if s.touched_at < cutoff]:
            del self._sessions[sid]


def session_state(sess: ImportSession) -> dict:
    mapper = sess.mapper
    return {
        "id": sess.id,
        "file_name": sess.file_name,
        "headers": mapper.headers,
        "sample_rows": mapper.sample_rows,
        "row_count": len(sess.table.rows),
        "mode": mapper.mode,
        "mapping": mapper.mapping,
        "analysis": mapper.analysis,
        "error": mapper.error,
        "groups": {
            cat: [
                {
                    "csv_header": e.csv_header, "category": e.category, "field": e.field,
                    "is_new_category": e.is_new_category, "is_new_field": e.is_new_field,
                    "data_type": e.data_type, "skip": e.skip, "suggestion": e.suggestion,
                }
                for e in entries
            ]
            for cat, entries in mapper.grouped().items()
        },
        "is_valid": mapper.is_valid,
    }
