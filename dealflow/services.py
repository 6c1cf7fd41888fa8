"""Shared business logic for the Dealflow API: startup store, ranks, shortlists,
threshold issues."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import date
from typing import Any, Iterable

from pydantic import ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import delete, func, or_, select, text
from sqlalchemy.orm import Session

from dealflow.models import (
    ISSUE_STATUSES, RISK_RATINGS, StoreFlag, Startup, ThresholdIssue, UserShortlist,
)
from dealflow.schemas import BAG_SCHEMAS, StartupCreate, ThresholdIssueCreate
from dealflow.utils import json_dump, json_parse, validation_message

log = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 50
MAX_LIMIT = 10000

RANKS_STALE_FLAG = "ranks_stale"

# List view projection: everything except the large JSON bags.
LIST_COLUMNS = (
    Startup.id, Startup.name, Startup.sector, Startup.stage, Startup.country,
    Startup.description, Startup.score, Startup.rank, Startup.pipeline_stage,
    Startup.ai_scores_json, Startup.company_info_json, Startup.market_info_json,
)

SCALAR_FIELDS = (
    "id", "name", "sector", "stage", "country", "description", "score", "rank",
    "pipeline_stage", "user_id",
)

_RECALCULATE_RANKS_SQL = text("""
    UPDATE startups
    SET rank = ranked.new_rank
    FROM (
        SELECT id, ROW_NUMBER() OVER (ORDER BY score DESC, name ASC) AS new_rank
        FROM startups
    ) AS ranked
    WHERE startups.id = ranked.id
""")

# ---------------------------------------------------------------------------
# Query parameter parsing (invalid input falls back, never fails)
# ---------------------------------------------------------------------------


def parse_page(value: str | int | None) -> int:
    try:
        page = int(value) if value is not None else DEFAULT_PAGE
    except (TypeError, ValueError):
        return DEFAULT_PAGE
    return page if page >= 1 else DEFAULT_PAGE


def parse_limit(value: str | int | None) -> int:
    try:
        limit = int(value) if value is not None else DEFAULT_LIMIT
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    if limit < 1:
        return DEFAULT_LIMIT
    return min(limit, MAX_LIMIT)


def parse_score(value: str | float | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(score) else score


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def startup_summary(row: Any, shortlisted: bool = False) -> dict:
    """Summary dict from a Startup or a LIST_COLUMNS row."""
    return {
        "id": row.id, "name": row.name, "sector": row.sector or "",
        "stage": row.stage or "", "country": row.country or "",
        "description": row.description or "", "score": row.score or 0.0,
        "rank": row.rank, "pipeline_stage": row.pipeline_stage,
        "ai_scores": json_parse(row.ai_scores_json, {}),
        "company_info": json_parse(row.company_info_json, {}),
        "market_info": json_parse(row.market_info_json, {}),
        "shortlisted": shortlisted,
    }


def startup_detail(startup: Startup, shortlisted: bool = False) -> dict:
    base = startup_summary(startup, shortlisted)
    base["user_id"] = startup.user_id
    for bag in BAG_SCHEMAS:
        base[bag] = json_parse(getattr(startup, f"{bag}_json"), {})
    base["legal_diligence"] = json_parse(startup.legal_diligence_json, {})
    base["custom_data"] = json_parse(startup.custom_data_json, {})
    base["custom_schema"] = json_parse(startup.custom_schema_json, {})
    base["created_at"] = startup.created_at.isoformat() if startup.created_at else None
    return base


def get_entity(session: Session, model, entity_id: Any):
    """Fetch an entity by primary key or return None."""
    return session.get(model, entity_id)


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


def _list_filters(
    *, sector: str | None, pipeline_stage: str | None, search: str | None,
    min_score: float | None, max_score: float | None,
) -> list:
    filters = []
    if sector:
        filters.append(Startup.sector == sector)
    if pipeline_stage:
        filters.append(Startup.pipeline_stage == pipeline_stage)
    if search:
        q = search.lower()
        filters.append(or_(
            func.lower(Startup.name).contains(q, autoescape=True),
            func.lower(Startup.description).contains(q, autoescape=True),
        ))
    if min_score is not None:
        filters.append(Startup.score >= min_score)
    if max_score is not None:
        filters.append(Startup.score <= max_score)
    return filters


def shortlisted_ids(session: Session, user_id: str | None, startup_ids: Iterable[str]) -> set[str]:
    ids = list(startup_ids)
    if not user_id or not ids:
        return set()
    rows = session.execute(
        select(UserShortlist.startup_id).where(
            UserShortlist.user_id == user_id, UserShortlist.startup_id.in_(ids),
        )
    ).scalars().all()
    return set(rows)


async def list_startups(
    session: Session, *, page: Any = None, limit: Any = None,
    sector: str | None = None, pipeline_stage: str | None = None,
    search: str | None = None, min_score: Any = None, max_score: Any = None,
    user_id: str | None = None,
) -> dict:
    """Paginated, filtered startup list. Count and page queries run concurrently."""
    page = parse_page(page)
    limit = parse_limit(limit)
    filters = _list_filters(
        sector=sector, pipeline_stage=pipeline_stage, search=search,
        min_score=parse_score(min_score), max_score=parse_score(max_score),
    )
    skip = (page - 1) * limit
    bind = session.get_bind()

    def _count() -> int:
        with Session(bind) as s:
            return s.execute(select(func.count()).select_from(Startup).where(*filters)).scalar_one()

    def _page() -> list:
        with Session(bind) as s:
            return list(s.execute(
                select(*LIST_COLUMNS).where(*filters)
                .order_by(Startup.rank.is_(None), Startup.rank, Startup.name)
                .offset(skip).limit(limit)
            ).all())

    total, rows = await asyncio.gather(asyncio.to_thread(_count), asyncio.to_thread(_page))

    starred = shortlisted_ids(session, user_id, (r.id for r in rows))
    return {
        "startups": [startup_summary(r, r.id in starred) for r in rows],
        "pagination": {
            "page": page, "limit": limit, "total": total,
            "total_pages": math.ceil(total / limit),
        },
        "ranks_stale": ranks_stale(session),
    }


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def sanitize_startup(payload: Any) -> StartupCreate:
    """Validate a raw payload. Unknown keys are dropped; raises ValueError on bad input."""
    if not isinstance(payload, dict):
        raise ValueError("Startup payload must be a JSON object")
    try:
        return StartupCreate.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(validation_message(exc)) from exc


def _to_orm(data: StartupCreate) -> Startup:
    values: dict[str, Any] = {
        "name": data.name, "sector": data.sector, "stage": data.stage,
        "country": data.country, "description": data.description,
        "score": data.score, "pipeline_stage": data.pipeline_stage,
        "user_id": data.user_id,
        "custom_data_json": json_dump(data.custom_data),
        "custom_schema_json": json_dump(data.custom_schema),
    }
    if data.id:
        values["id"] = data.id
    for bag in BAG_SCHEMAS:
        sub = getattr(data, bag)
        values[f"{bag}_json"] = json_dump(
            sub.model_dump(by_alias=True, exclude_none=True) if sub is not None else {}
        )
    return Startup(**values)


def create_startup(session: Session, data: StartupCreate) -> Startup:
    """Insert one startup and recalculate ranks before returning."""
    startup = _to_orm(data)
    session.add(startup)
    session.commit()
    log.info("Created startup %s (%s); recalculating ranks", startup.id, startup.name)
    recalculate_ranks(session)
    session.refresh(startup)
    return startup


def create_startups_bulk(session: Session, items: list[StartupCreate]) -> int:
    """Insert many startups, skipping ids that already exist. Ranks are left stale."""
    candidates = [_to_orm(item) for item in items]
    given_ids = [s.id for s in candidates if s.id]
    existing: set[str] = set()
    if given_ids:
        existing = set(session.execute(
            select(Startup.id).where(Startup.id.in_(given_ids))
        ).scalars().all())

    inserted = 0
    for startup in candidates:
        if startup.id:
            if startup.id in existing:
                continue
            existing.add(startup.id)
        session.add(startup)
        inserted += 1
    if inserted:
        set_flag(session, RANKS_STALE_FLAG, "1")
    session.commit()
    log.info(
        "Bulk inserted %d of %d startups (rank recalculation deferred)",
        inserted, len(candidates),
    )
    return inserted


# ---------------------------------------------------------------------------
# Ranks
# ---------------------------------------------------------------------------


def recalculate_ranks(session: Session) -> int:
    """Assign dense ranks by (score desc, name asc) in a single UPDATE statement."""
    started = time.perf_counter()
    session.execute(_RECALCULATE_RANKS_SQL)
    set_flag(session, RANKS_STALE_FLAG, "0")
    session.commit()
    total = session.execute(select(func.count()).select_from(Startup)).scalar_one()
    log.info("Recalculated ranks for %d startups in %.2fs", total, time.perf_counter() - started)
    return total


def set_flag(session: Session, key: str, value: str) -> None:
    flag = session.get(StoreFlag, key)
    if flag is None:
        session.add(StoreFlag(key=key, value=value))
    else:
        flag.value = value


def ranks_stale(session: Session) -> bool:
    flag = session.get(StoreFlag, RANKS_STALE_FLAG)
    return flag is not None and flag.value == "1"


# ---------------------------------------------------------------------------
# Shortlist
# ---------------------------------------------------------------------------


def set_shortlisted(session: Session, user_id: str, startup_id: str, shortlisted: bool) -> None:
    current = session.execute(
        select(UserShortlist).where(
            UserShortlist.user_id == user_id, UserShortlist.startup_id == startup_id,
        )
    ).scalars().first()
    if shortlisted and current is None:
        session.add(UserShortlist(user_id=user_id, startup_id=startup_id))
    elif not shortlisted and current is not None:
        session.execute(delete(UserShortlist).where(UserShortlist.id == current.id))
    session.commit()


# ---------------------------------------------------------------------------
# Threshold issues
# ---------------------------------------------------------------------------

_REQUIRED_ISSUE_FIELDS = ("startup_id", "category", "issue", "risk_rating", "mitigation")


def validate_threshold_issue(body: ThresholdIssueCreate) -> None:
    """Raise ValueError with a client-facing message when the payload is invalid."""
    missing = [to_camel(f) for f in _REQUIRED_ISSUE_FIELDS if not getattr(body, f)]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")
    if body.risk_rating not in RISK_RATINGS:
        raise ValueError(f"Invalid riskRating. Must be one of: {', '.join(RISK_RATINGS)}")
    if body.status and body.status not in ISSUE_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(ISSUE_STATUSES)}")


def create_threshold_issue(session: Session, body: ThresholdIssueCreate) -> ThresholdIssue | None:
    """Create an issue; returns None when the startup does not exist."""
    validate_threshold_issue(body)
    if get_entity(session, Startup, body.startup_id) is None:
        return None
    issue = ThresholdIssue(
        startup_id=body.startup_id,
        category=body.category,
        issue=body.issue,
        risk_rating=body.risk_rating,
        mitigation=body.mitigation,
        status=body.status or "Open",
        source=body.source or "Manual",
        identified_date=body.identified_date or date.today().isoformat(),
    )
    session.add(issue)
    session.commit()
    session.refresh(issue)
    return issue


def list_threshold_issues(session: Session, startup_id: str) -> list[ThresholdIssue]:
    return list(session.execute(
        select(ThresholdIssue)
        .where(ThresholdIssue.startup_id == startup_id)
        .order_by(ThresholdIssue.identified_date, ThresholdIssue.id)
    ).scalars().all())


def threshold_issue_summary(issue: ThresholdIssue) -> dict:
    return {
        "id": issue.id, "startup_id": issue.startup_id, "category": issue.category,
        "issue": issue.issue, "risk_rating": issue.risk_rating,
        "mitigation": issue.mitigation, "status": issue.status,
        "source": issue.source, "identified_date": issue.identified_date,
    }
