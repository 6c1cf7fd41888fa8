from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Generator

from fastapi import Cookie, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dealflow import importer, legal_dd, services, ui_state
from dealflow.auth import token_from_request, user_id_for_token
from dealflow.column_mapper import LLMMappingSuggester, MappingNotConfirmable, MappingSuggester
from dealflow.config import get_settings
from dealflow.db import get_session, init_db
from dealflow.extraction import DocumentParseError, ExtractionError
from dealflow.llm import LLMCallError
from dealflow.models import Startup
from dealflow.schemas import (
    AnalyzeGuidance,
    AnalyzeRequest,
    AnalyzeResponse,
    BackTarget,
    Breadcrumb,
    BulkCreateResult,
    FieldAssignment,
    HeaderUpdate,
    ImportResult,
    ImportSessionOut,
    RankRecalcResult,
    ScrollPositionIn,
    ScrollPositionOut,
    StartupDetail,
    StartupListResponse,
    ThresholdIssueCreate,
    ThresholdIssueOut,
    UploadResult,
    ViewModeIn,
    ViewModeOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Dealflow",
    version="0.1.0",
    description=(
        "Startup deal-flow tracking API: pipeline of startups, legal due-diligence "
        "documents, threshold issues, and CSV/XLSX import with AI-assisted column mapping. "
        "All endpoints return JSON with camelCase keys."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Startups", "description": "Browse, create, and rank startups in the pipeline."},
        {"name": "Threshold Issues", "description": "Diligence red flags recorded against a startup."},
        {"name": "Legal DD", "description": "Upload and manage legal due-diligence documents."},
        {"name": "Import", "description": "Bulk import startups from CSV/XLSX with column mapping."},
        {"name": "UI State", "description": "Per-session scroll positions, view mode, and navigation."},
    ],
)

_import_sessions = importer.ImportSessions(get_settings().import_session_ttl_minutes * 60)
_ui_storages = ui_state.SessionStorageRegistry(
    get_settings().ui_session_ttl_minutes * 60, get_settings().max_ui_sessions,
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_user_id(
    session: Session = Depends(db_session),
    authorization: str | None = Header(None),
    access_token: str | None = Cookie(None),
) -> str | None:
    return user_id_for_token(session, token_from_request(authorization, access_token))


def require_user(user_id: str | None = Depends(current_user_id)) -> str:
    if user_id is None:
        raise HTTPException(401, "Unauthorized")
    return user_id


def mapping_suggester() -> MappingSuggester:
    return LLMMappingSuggester()


def import_sessions() -> importer.ImportSessions:
    return _import_sessions


def ui_sessions() -> ui_state.SessionStorageRegistry:
    return _ui_storages


def ui_storage(
    response: Response,
    dealflow_session: str | None = Cookie(None),
    registry: ui_state.SessionStorageRegistry = Depends(ui_sessions),
) -> ui_state.SessionStorage:
    def issue_cookie(session_id: str) -> None:
        response.set_cookie(ui_state.SESSION_COOKIE, session_id, httponly=True, samesite="lax")

    return ui_state.SessionView(registry, dealflow_session, issue_cookie)


@contextmanager
def _db_errors(session: Session, message: str):
    """Roll back, log, and answer 500 with a generic message on persistence failure."""
    try:
        yield
    except SQLAlchemyError:
        session.rollback()
        log.exception(message)
        raise HTTPException(500, message) from None


def _get_or_404(session: Session, model, entity_id: Any, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if obj is None:
        raise HTTPException(404, f"{label} not found")
    return obj


def _import_session_or_404(registry: importer.ImportSessions, session_id: str) -> importer.ImportSession:
    sess = registry.get(session_id)
    if sess is None:
        raise HTTPException(404, "Import session not found")
    return sess


# ---------------------------------------------------------------------------
# Routes: Startups
# ---------------------------------------------------------------------------


@app.get("/api/startups", response_model=StartupListResponse,
         tags=["Startups"], summary="List startups with filtering and pagination")
async def list_startups(
    page: str | None = Query(None),
    limit: str | None = Query(None),
    sector: str | None = Query(None),
    pipeline_stage: str | None = Query(None, alias="pipelineStage"),
    search: str | None = Query(None),
    min_score: str | None = Query(None, alias="minScore"),
    max_score: str | None = Query(None, alias="maxScore"),
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
):
    with _db_errors(session, "Failed to fetch startups"):
        return await services.list_startups(
            session, page=page, limit=limit, sector=sector, pipeline_stage=pipeline_stage,
            search=search, min_score=min_score, max_score=max_score, user_id=user_id,
        )


@app.post("/api/startups", response_model=StartupDetail | BulkCreateResult, status_code=201,
          tags=["Startups"], summary="Create one startup (object) or many (array)")
async def create_startups(
    request: Request,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(400, "Request body must be valid JSON") from None

    if isinstance(payload, list):
        try:
            items = [services.sanitize_startup(p) for p in payload]
        except ValueError as exc:
            raise HTTPException(400, str(exc)) from exc
        for item in items:
            item.user_id = item.user_id or user_id or ""
        with _db_errors(session, "Failed to create startups"):
            count = services.create_startups_bulk(session, items)
        return BulkCreateResult(message=f"Successfully created {count} startups", count=count)

    try:
        data = services.sanitize_startup(payload)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    data.user_id = data.user_id or user_id or ""
    with _db_errors(session, "Failed to create startup"):
        startup = services.create_startup(session, data)
    return services.startup_detail(startup)


@app.post("/api/startups/recalculate-ranks", response_model=RankRecalcResult,
          tags=["Startups"], summary="Recompute every startup's rank from score and name")
async def recalculate_ranks(session: Session = Depends(db_session)):
    with _db_errors(session, "Failed to recalculate ranks"):
        return {"updated": services.recalculate_ranks(session)}


@app.get("/api/startups/{startup_id}", response_model=StartupDetail,
         tags=["Startups"], summary="Get full startup detail")
async def get_startup(
    startup_id: str,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user_id),
):
    startup = _get_or_404(session, Startup, startup_id, "Startup")
    starred = services.shortlisted_ids(session, user_id, [startup.id])
    return services.startup_detail(startup, startup.id in starred)


@app.put("/api/startups/{startup_id}/shortlist", tags=["Startups"],
         summary="Add a startup to the caller's shortlist")
async def add_to_shortlist(
    startup_id: str,
    session: Session = Depends(db_session),
    user_id: str = Depends(require_user),
):
    _get_or_404(session, Startup, startup_id, "Startup")
    with _db_errors(session, "Failed to update shortlist"):
        services.set_shortlisted(session, user_id, startup_id, True)
    return {"shortlisted": True}


@app.delete("/api/startups/{startup_id}/shortlist", tags=["Startups"],
            summary="Remove a startup from the caller's shortlist")
async def remove_from_shortlist(
    startup_id: str,
    session: Session = Depends(db_session),
    user_id: str = Depends(require_user),
):
    _get_or_404(session, Startup, startup_id, "Startup")
    with _db_errors(session, "Failed to update shortlist"):
        services.set_shortlisted(session, user_id, startup_id, False)
    return {"shortlisted": False}


@app.get("/api/startups/{startup_id}/breadcrumbs", response_model=list[Breadcrumb],
         tags=["UI State"], summary="Breadcrumb trail for a startup detail page")
async def startup_breadcrumbs(
    startup_id: str,
    origin: str | None = Query(None, alias="from"),
    session: Session = Depends(db_session),
    storage: ui_state.SessionStorage = Depends(ui_storage),
):
    startup = _get_or_404(session, Startup, startup_id, "Startup")
    return ui_state.startup_breadcrumbs(startup.name, origin, storage)


# ---------------------------------------------------------------------------
# Routes: Threshold issues
# ---------------------------------------------------------------------------


@app.post("/api/threshold-issues", response_model=ThresholdIssueOut, status_code=201,
          tags=["Threshold Issues"], summary="Record a threshold issue against a startup")
async def create_threshold_issue(
    body: ThresholdIssueCreate,
    session: Session = Depends(db_session),
    user_id: str = Depends(require_user),
):
    try:
        with _db_errors(session, "Failed to create threshold issue"):
            issue = services.create_threshold_issue(session, body)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    if issue is None:
        raise HTTPException(404, "Startup not found")
    log.info("Threshold issue %d (%s) created by %s", issue.id, issue.risk_rating, user_id)
    return services.threshold_issue_summary(issue)


@app.get("/api/threshold-issues", response_model=list[ThresholdIssueOut],
         tags=["Threshold Issues"], summary="List a startup's threshold issues")
async def list_threshold_issues(
    startup_id: str = Query(..., alias="startupId"),
    session: Session = Depends(db_session),
):
    _get_or_404(session, Startup, startup_id, "Startup")
    return [services.threshold_issue_summary(i) for i in services.list_threshold_issues(session, startup_id)]


# ---------------------------------------------------------------------------
# Routes: Legal DD documents
# ---------------------------------------------------------------------------


@app.post("/api/legal-documents", response_model=UploadResult,
          tags=["Legal DD"], summary="Upload a PDF or TXT document into a diligence category")
async def upload_legal_document(
    startup_id: str | None = Form(None, alias="startupId"),
    category: str | None = Form(None),
    file: UploadFile | None = File(None),
    session: Session = Depends(db_session),
):
    if file is None or not startup_id or not category:
        raise HTTPException(400, "Missing required fields: startupId, category, file")
    content = await file.read()
    if not content:
        raise HTTPException(400, "Uploaded file is empty")
    if len(content) > get_settings().max_upload_bytes:
        raise HTTPException(400, "Uploaded file is too large")

    try:
        with _db_errors(session, "Failed to store document"):
            result = legal_dd.upload_document(
                session, startup_id, category, file.filename or "document",
                file.content_type or "", content,
            )
    except DocumentParseError as exc:
        log.warning("Extraction failed for %s: %s", file.filename, exc)
        raise HTTPException(500, str(exc)) from exc
    except ExtractionError as exc:
        raise HTTPException(400, str(exc)) from exc
    if result is None:
        raise HTTPException(404, "Startup not found")
    return result


@app.get("/api/legal-documents", tags=["Legal DD"],
         summary="Documents for one category, or every category")
async def list_legal_documents(
    startup_id: str | None = Query(None, alias="startupId"),
    category: str | None = Query(None),
    session: Session = Depends(db_session),
):
    if not startup_id:
        raise HTTPException(400, "startupId is required")
    docs = legal_dd.get_documents(session, startup_id, category)
    if docs is None:
        raise HTTPException(404, "Startup not found")
    return {"documents": docs}


@app.delete("/api/legal-documents", tags=["Legal DD"],
            summary="Delete one document or a whole category")
async def delete_legal_documents(
    startup_id: str | None = Query(None, alias="startupId"),
    category: str | None = Query(None),
    document_id: str | None = Query(None, alias="documentId"),
    session: Session = Depends(db_session),
):
    if not startup_id or not category:
        raise HTTPException(400, "startupId and category are required")
    with _db_errors(session, "Failed to delete document"):
        found = legal_dd.delete_documents(session, startup_id, category, document_id)
    if not found:
        raise HTTPException(404, "Startup not found")
    return {"message": "Document deleted successfully" if document_id else "Documents deleted successfully"}


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/csv-analyze", response_model=AnalyzeResponse,
          tags=["Import"], summary="AI column-mapping suggestions for CSV headers")
async def csv_analyze(body: AnalyzeRequest, suggester: MappingSuggester = Depends(mapping_suggester)):
    try:
        return await suggester.suggest(
            body.headers, body.sample_rows, body.existing_categories, body.user_context,
        )
    except LLMCallError as exc:
        log.warning("CSV analysis failed: %s", exc)
        raise HTTPException(503 if exc.retryable else 502, f"AI analysis failed: {exc}") from exc


@app.post("/api/import/sessions", response_model=ImportSessionOut, status_code=201,
          tags=["Import"], summary="Upload a CSV/XLSX file and start a mapping session")
async def start_import(
    file: UploadFile = File(...),
    suggester: MappingSuggester = Depends(mapping_suggester),
    registry: importer.ImportSessions = Depends(import_sessions),
):
    content = await file.read()
    if not content:
        raise HTTPException(400, "Uploaded file is empty")
    if len(content) > get_settings().max_upload_bytes:
        raise HTTPException(400, "Uploaded file is too large")
    try:
        sess = registry.start(file.filename or "", content, suggester, get_settings().sample_row_count)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    await sess.mapper.analyze()
    return importer.session_state(sess)


@app.get("/api/import/sessions/{session_id}", response_model=ImportSessionOut,
         tags=["Import"], summary="Current mapping state")
async def get_import(session_id: str, registry: importer.ImportSessions = Depends(import_sessions)):
    return importer.session_state(_import_session_or_404(registry, session_id))


@app.post("/api/import/sessions/{session_id}/analyze", response_model=ImportSessionOut,
          tags=["Import"], summary="Re-run AI analysis, optionally with guidance")
async def analyze_import(
    session_id: str,
    body: AnalyzeGuidance,
    registry: importer.ImportSessions = Depends(import_sessions),
):
    sess = _import_session_or_404(registry, session_id)
    if body.guidance is None:
        await sess.mapper.analyze()
    else:
        try:
            await sess.mapper.reanalyze(body.guidance)
        except ValueError as exc:
            raise HTTPException(400, str(exc)) from exc
    sess.mapper.use_ai_mode()
    return importer.session_state(sess)


@app.patch("/api/import/sessions/{session_id}/headers", response_model=ImportSessionOut,
           tags=["Import"], summary="Override one header's category, field, or skip flag")
async def update_import_header(
    session_id: str,
    body: HeaderUpdate,
    registry: importer.ImportSessions = Depends(import_sessions),
):
    sess = _import_session_or_404(registry, session_id)
    try:
        sess.mapper.update_header(body.csv_header, category=body.category, field=body.field, skip=body.skip)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return importer.session_state(sess)


@app.put("/api/import/sessions/{session_id}/mapping", response_model=ImportSessionOut,
         tags=["Import"], summary="Manually assign a canonical field's source column")
async def assign_import_field(
    session_id: str,
    body: FieldAssignment,
    registry: importer.ImportSessions = Depends(import_sessions),
):
    sess = _import_session_or_404(registry, session_id)
    try:
        sess.mapper.set_field(body.field, body.csv_header)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    sess.mapper.use_manual_mode()
    return importer.session_state(sess)


@app.post("/api/import/sessions/{session_id}/confirm", response_model=ImportResult,
          tags=["Import"], summary="Confirm the mapping and import every row")
async def confirm_import(
    session_id: str,
    session: Session = Depends(db_session),
    registry: importer.ImportSessions = Depends(import_sessions),
):
    sess = _import_session_or_404(registry, session_id)
    try:
        confirmed = sess.mapper.confirm()
    except MappingNotConfirmable as exc:
        raise HTTPException(400, str(exc)) from exc

    records = importer.build_records(sess.table.rows, confirmed)
    with _db_errors(session, "Failed to import startups"):
        created = importer.import_records(session, records, get_settings().import_batch_size)
    registry.discard(session_id)
    total = len(sess.table.rows)
    log.info("Imported %s: %d of %d rows created", sess.file_name, created, total)
    return {"total_rows": total, "created": created, "skipped": total - created}


@app.delete("/api/import/sessions/{session_id}", tags=["Import"], summary="Cancel an import session")
async def cancel_import(session_id: str, registry: importer.ImportSessions = Depends(import_sessions)):
    if not registry.discard(session_id):
        raise HTTPException(404, "Import session not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: UI state
# ---------------------------------------------------------------------------


@app.put("/api/ui/scroll/{view}", response_model=ScrollPositionOut,
         tags=["UI State"], summary="Save the scroll offset of a list view")
async def save_scroll(view: str, body: ScrollPositionIn, storage=Depends(ui_storage)):
    ui_state.save_scroll_position(storage, view, body.y)
    return {"view": view, "y": body.y}


@app.get("/api/ui/scroll/{view}", response_model=ScrollPositionOut,
         tags=["UI State"], summary="Saved scroll offset, if still fresh")
async def get_scroll(view: str, storage=Depends(ui_storage)):
    y = ui_state.get_scroll_position(storage, view, expiry_minutes=get_settings().scroll_expiry_minutes)
    return {"view": view, "y": y}


@app.post("/api/ui/scroll/{view}/restore", response_model=ScrollPositionOut,
          tags=["UI State"], summary="Read and clear the saved scroll offset")
async def restore_scroll(view: str, storage=Depends(ui_storage)):
    y = ui_state.restore_scroll_position(storage, view, expiry_minutes=get_settings().scroll_expiry_minutes)
    return {"view": view, "y": y}


@app.get("/api/ui/view-mode", response_model=ViewModeOut, tags=["UI State"], summary="Saved dashboard view")
async def get_view_mode(storage=Depends(ui_storage)):
    return {"mode": ui_state.get_view_mode(storage)}


@app.put("/api/ui/view-mode", response_model=ViewModeOut, tags=["UI State"], summary="Save dashboard view")
async def save_view_mode(body: ViewModeIn, storage=Depends(ui_storage)):
    try:
        ui_state.save_view_mode(storage, body.mode)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return {"mode": body.mode}


@app.delete("/api/ui/view-mode", response_model=ViewModeOut, tags=["UI State"], summary="Forget dashboard view")
async def clear_view_mode(storage=Depends(ui_storage)):
    ui_state.clear_view_mode(storage)
    return {"mode": None}


@app.get("/api/ui/back", response_model=BackTarget, tags=["UI State"], summary="Back-button destination")
async def back_target(
    return_to: str = Query(..., alias="returnTo"),
    label: str | None = Query(None),
    storage=Depends(ui_storage),
):
    try:
        return ui_state.back_target(return_to, storage, label)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc


def main():
    import uvicorn
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("dealflow.app:app", host="127.0.0.1", port=8001)
