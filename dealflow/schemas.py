"""Pydantic request/response schemas for the Dealflow API.

Wire format is camelCase; Python attributes stay snake_case.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from dealflow.models import PIPELINE_STAGES


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Bag(CamelModel):
    """Structured JSON bag on a startup. Unknown keys are dropped; numbers sent
    for text fields are kept as their string form."""
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


# ---------------------------------------------------------------------------
# Startup JSON bags
# ---------------------------------------------------------------------------


class CompanyInfo(_Bag):
    website: str | None = None
    linkedin_url: str | None = None
    location: str | None = None
    headquarters: str | None = None
    founding_year: int | None = None
    founders: str | None = None
    employee_count: str | None = None
    funding_raised: str | None = None


class TeamInfo(_Bag):
    founders_education: str | None = None
    founders_prior_experience: str | None = None
    key_team_members: str | None = None
    team_depth: str | None = None


class MarketInfo(_Bag):
    industry: str | None = None
    sub_industry: str | None = None
    market_size: str | None = None
    b2b_or_b2c: str | None = None


class ProductInfo(_Bag):
    problem_solved: str | None = None
    moat: str | None = None
    product_stage: str | None = None


class BusinessModelInfo(_Bag):
    revenue_model: str | None = None
    pricing: str | None = None


class SalesInfo(_Bag):
    sales_motion: str | None = None
    gtm_strategy: str | None = None


class CompetitiveInfo(_Bag):
    competitors: str | None = None
    differentiation: str | None = None


class RiskInfo(_Bag):
    key_risks: str | None = None
    regulatory_risk: str | None = None


class OpportunityInfo(_Bag):
    key_opportunities: str | None = None
    exit_potential: str | None = None


class AIScores(_Bag):
    score: float | None = None
    machine_learning_score: float | None = None
    rationale: str | None = None


# Startup attribute -> bag schema. Also drives the *_json column names.
BAG_SCHEMAS: dict[str, type[_Bag]] = {
    "company_info": CompanyInfo,
    "team_info": TeamInfo,
    "market_info": MarketInfo,
    "product_info": ProductInfo,
    "business_model_info": BusinessModelInfo,
    "sales_info": SalesInfo,
    "competitive_info": CompetitiveInfo,
    "risk_info": RiskInfo,
    "opportunity_info": OpportunityInfo,
    "ai_scores": AIScores,
}


# ---------------------------------------------------------------------------
# Startups
# ---------------------------------------------------------------------------


class StartupCreate(CamelModel):
    """Accepted shape for new startups; anything else in the payload is dropped."""
    model_config = ConfigDict(extra="ignore")

    id: str | None = Field(None, max_length=64)
    name: str = Field(..., max_length=300)
    sector: str = ""
    stage: str = ""
    country: str = ""
    description: str = ""
    score: float = 0.0
    pipeline_stage: str = "Deal Flow"
    user_id: str = ""

    company_info: CompanyInfo | None = None
    team_info: TeamInfo | None = None
    market_info: MarketInfo | None = None
    product_info: ProductInfo | None = None
    business_model_info: BusinessModelInfo | None = None
    sales_info: SalesInfo | None = None
    competitive_info: CompetitiveInfo | None = None
    risk_info: RiskInfo | None = None
    opportunity_info: OpportunityInfo | None = None
    ai_scores: AIScores | None = None

    custom_data: dict[str, Any] = {}
    custom_schema: dict[str, Any] = {}

    @field_validator("sector", "stage", "country", "description", "user_id", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("score", mode="before")
    @classmethod
    def none_score_to_zero(cls, v: Any) -> Any:
        return 0.0 if v is None or v == "" else v

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("pipeline_stage")
    @classmethod
    def known_pipeline_stage(cls, v: str) -> str:
        if v not in PIPELINE_STAGES:
            raise ValueError(f"must be one of: {', '.join(PIPELINE_STAGES)}")
        return v


class StartupListItem(CamelModel):
    id: str
    name: str
    sector: str
    stage: str
    country: str
    description: str
    score: float
    rank: int | None = None
    pipeline_stage: str
    ai_scores: dict[str, Any] = {}
    company_info: dict[str, Any] = {}
    market_info: dict[str, Any] = {}
    shortlisted: bool = False


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class StartupListResponse(CamelModel):
    startups: list[StartupListItem]
    pagination: Pagination
    ranks_stale: bool = False


class StartupDetail(StartupListItem):
    user_id: str = ""
    team_info: dict[str, Any] = {}
    product_info: dict[str, Any] = {}
    business_model_info: dict[str, Any] = {}
    sales_info: dict[str, Any] = {}
    competitive_info: dict[str, Any] = {}
    risk_info: dict[str, Any] = {}
    opportunity_info: dict[str, Any] = {}
    legal_diligence: dict[str, Any] = {}
    custom_data: dict[str, Any] = {}
    custom_schema: dict[str, Any] = {}
    created_at: str | None = None


class BulkCreateResult(CamelModel):
    message: str
    count: int


class RankRecalcResult(CamelModel):
    updated: int


# ---------------------------------------------------------------------------
# Threshold issues
# ---------------------------------------------------------------------------


class ThresholdIssueCreate(CamelModel):
    """All optional so that missing fields surface as a single 400, not a 422."""
    model_config = ConfigDict(extra="ignore")

    startup_id: str | None = None
    category: str | None = None
    issue: str | None = None
    risk_rating: str | None = None
    mitigation: str | None = None
    status: str | None = None
    source: str | None = None
    identified_date: str | None = None


class ThresholdIssueOut(CamelModel):
    id: int
    startup_id: str
    category: str
    issue: str
    risk_rating: str
    mitigation: str
    status: str
    source: str
    identified_date: str


# ---------------------------------------------------------------------------
# Legal DD documents
# ---------------------------------------------------------------------------


class UploadedDocumentSummary(CamelModel):
    id: str
    file_name: str
    character_count: int
    word_count: int


class UploadResult(CamelModel):
    message: str
    document: UploadedDocumentSummary
    category: str
    total_documents: int


# ---------------------------------------------------------------------------
# Column mapping / import
# ---------------------------------------------------------------------------


class ColumnMapping(CamelModel):
    """Canonical startup field -> CSV header chosen for it (None = unmapped)."""
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    description: str | None = None
    sector: str | None = None
    stage: str | None = None
    country: str | None = None
    website: str | None = None
    linkedin_url: str | None = None
    location: str | None = None
    headquarters: str | None = None
    founding_year: str | None = None
    founders: str | None = None
    employee_count: str | None = None
    funding_raised: str | None = None
    founders_education: str | None = None
    founders_prior_experience: str | None = None
    key_team_members: str | None = None
    team_depth: str | None = None
    industry: str | None = None
    sub_industry: str | None = None
    market_size: str | None = None
    b2b_or_b2c: str | None = None
    sales_motion: str | None = None
    gtm_strategy: str | None = None
    problem_solved: str | None = None
    moat: str | None = None
    revenue_model: str | None = None
    competitors: str | None = None
    score: str | None = None
    machine_learning_score: str | None = None


CANONICAL_FIELDS: tuple[str, ...] = tuple(ColumnMapping.model_fields)


def _clamp_confidence(v: Any) -> int:
    try:
        return max(0, min(100, int(round(float(v)))))
    except (TypeError, ValueError):
        return 0


class MappingSuggestion(CamelModel):
    csv_header: str
    suggested_category: str = "unmapped"
    suggested_field: str = ""
    category_type: Literal["existing", "new"] = "existing"
    confidence: int = 0
    reasoning: str = ""
    sample_value: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> int:
        return _clamp_confidence(v)

    @field_validator("suggested_category", "suggested_field", "reasoning", "sample_value", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("category_type", mode="before")
    @classmethod
    def normalize_category_type(cls, v: Any) -> str:
        return "new" if str(v or "").strip().lower() == "new" else "existing"


class AnalyzeRequest(CamelModel):
    headers: list[str]
    sample_rows: list[dict[str, Any]] = []
    existing_categories: list[str] = []
    user_context: str | None = None


class AnalyzeResponse(CamelModel):
    mappings: list[MappingSuggestion] = []
    confidence: int = 0
    analysis_notes: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> int:
        return _clamp_confidence(v)


class EditableMappingOut(CamelModel):
    csv_header: str
    category: str
    field: str
    is_new_category: bool
    is_new_field: bool
    data_type: str
    skip: bool
    suggestion: MappingSuggestion | None = None


class ImportSessionOut(CamelModel):
    id: str
    file_name: str
    headers: list[str]
    sample_rows: list[dict[str, Any]]
    row_count: int
    mode: str
    mapping: ColumnMapping
    analysis: AnalyzeResponse | None = None
    error: str | None = None
    groups: dict[str, list[EditableMappingOut]] = {}
    is_valid: bool


class AnalyzeGuidance(CamelModel):
    guidance: str | None = None


class HeaderUpdate(CamelModel):
    csv_header: str
    category: str | None = None
    field: str | None = None
    skip: bool | None = None


class FieldAssignment(CamelModel):
    field: str
    csv_header: str | None = None


class ImportResult(CamelModel):
    total_rows: int
    created: int
    skipped: int


# ---------------------------------------------------------------------------
# UI state
# ---------------------------------------------------------------------------


class ScrollPositionIn(CamelModel):
    y: float = Field(..., ge=0)


class ScrollPositionOut(CamelModel):
    view: str
    y: float | None = None


class ViewModeIn(CamelModel):
    mode: str


class ViewModeOut(CamelModel):
    mode: str | None = None


class BackTarget(CamelModel):
    href: str
    label: str


class Breadcrumb(CamelModel):
    label: str
    href: str | None = None
    current: bool = False
