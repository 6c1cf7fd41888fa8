"""CSV column mapping: reconcile heuristic, AI-suggested and manual mappings.

Flow
----
1. The importer builds a heuristic baseline ``ColumnMapping`` from header names.
2. ``ColumnMapper.analyze()`` asks a ``MappingSuggester`` (normally the LLM) to
   place every header into a category/field. Each header gets an editable
   entry seeded from its suggestion (or ``unmapped``), and suggestions whose
   ``(category, field)`` pair is in ``FIELD_TRANSLATION`` overwrite the
   matching canonical field of the working mapping.
3. The operator may re-run analysis with guidance, edit entries, toggle skip,
   or switch to manual mode and assign canonical fields directly.
4. ``confirm()`` requires ``name`` to be mapped and hands the canonical
   mapping plus the non-skipped suggestions to the importer.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field as dc_field
from typing import Any, Protocol

from pydantic import ValidationError

from dealflow.llm import LLMCallError, LLMClient
from dealflow.schemas import CANONICAL_FIELDS, AnalyzeResponse, ColumnMapping, MappingSuggestion

log = logging.getLogger(__name__)

UNMAPPED = "unmapped"
CORE = "core"

CATEGORY_NAMES: dict[str, str] = {
    "companyInfo": "Company Info",
    "teamInfo": "Team Info",
    "marketInfo": "Market Info",
    "salesInfo": "Sales Info",
    "productInfo": "Product Info",
    "businessModel": "Business Model",
    "competitiveInfo": "Competitive Info",
    "riskOpportunity": "Risk & Opportunity",
    "metrics": "Metrics",
    "aiScores": "AI Scores",
    CORE: "Core Fields",
    UNMAPPED: "Unmapped",
}

# (suggestedCategory, suggestedField) -> canonical ColumnMapping attribute
FIELD_TRANSLATION: dict[tuple[str, str], str] = {
    ("core", "name"): "name",
    ("core", "description"): "description",
    ("core", "sector"): "sector",
    ("core", "stage"): "stage",
    ("core", "country"): "country",
    ("companyInfo", "website"): "website",
    ("companyInfo", "linkedin"): "linkedin_url",
    ("companyInfo", "location"): "location",
    ("companyInfo", "headquarters"): "headquarters",
    ("companyInfo", "founded"): "founding_year",
    ("companyInfo", "founders"): "founders",
    ("companyInfo", "employeeCount"): "employee_count",
    ("companyInfo", "fundingRaised"): "funding_raised",
    ("teamInfo", "foundersEducation"): "founders_education",
    ("teamInfo", "foundersPriorExperience"): "founders_prior_experience",
    ("teamInfo", "keyTeamMembers"): "key_team_members",
    ("teamInfo", "teamDepth"): "team_depth",
    ("marketInfo", "industry"): "industry",
    ("marketInfo", "subIndustry"): "sub_industry",
    ("marketInfo", "marketSize"): "market_size",
    ("marketInfo", "b2bOrB2c"): "b2b_or_b2c",
    ("salesInfo", "salesMotion"): "sales_motion",
    ("salesInfo", "gtmStrategy"): "gtm_strategy",
    ("productInfo", "problemSolved"): "problem_solved",
    ("productInfo", "moat"): "moat",
    ("businessModel", "revenueModel"): "revenue_model",
    ("competitiveInfo", "competitors"): "competitors",
    ("aiScores", "score"): "score",
    ("aiScores", "machineLearningScore"): "machine_learning_score",
}


class MappingNotConfirmable(Exception):
    """The mapping cannot be confirmed yet (company name not mapped)."""


class MappingSuggester(Protocol):
    async def suggest(
        self,
        headers: list[str],
        sample_rows: list[dict[str, Any]],
        categories: list[str],
        guidance: str | None = None,
    ) -> AnalyzeResponse: ...


# ---------------------------------------------------------------------------
# LLM-backed suggester
# ---------------------------------------------------------------------------

SUGGESTION_SYSTEM_PROMPT = """\
You organise the columns of a CSV export of startups into the schema of a \
venture deal-flow database.

For EVERY CSV header decide:
- suggestedCategory: one of the existing categories when one fits, otherwise \
a new short camelCase category name
- suggestedField: a camelCase field name within that category. Prefer the \
known fields below when the column means the same thing.
- categoryType: "existing" or "new"
- confidence: integer 0-100
- reasoning: one short sentence
- sampleValue: a representative value from the sample rows

Known fields (category.field):
{known_fields}

The company / startup name column MUST map to core.name.

Respond with ONLY valid JSON:
{{
  "mappings": [
    {{"csvHeader": "...", "suggestedCategory": "...", "suggestedField": "...",
      "categoryType": "existing", "confidence": 90, "reasoning": "...", "sampleValue": "..."}}
  ],
  "confidence": <overall 0-100>,
  "analysisNotes": "<optional short note for the operator>"
}}
"""


def build_suggestion_prompt() -> str:
    known = "\n".join(f"- {cat}.{fld}" for cat, fld in FIELD_TRANSLATION)
    return SUGGESTION_SYSTEM_PROMPT.format(known_fields=known)


def build_suggestion_request(
    headers: list[str], sample_rows: list[dict[str, Any]],
    categories: list[str], guidance: str | None,
) -> str:
    sections = [
        "CSV HEADERS:", json.dumps(headers, ensure_ascii=False),
        "\nSAMPLE ROWS:", json.dumps(sample_rows, ensure_ascii=False, default=str),
        "\nEXISTING CATEGORIES:", ", ".join(categories),
    ]
    if guidance:
        sections += ["\nOPERATOR GUIDANCE (follow it):", guidance]
    return "\n".join(sections)


class LLMMappingSuggester:
    """``MappingSuggester`` backed by :class:`LLMClient`."""

    def __init__(self, client: LLMClient | None = None):
        self._client = client

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient()
        return self._client

    async def suggest(
        self,
        headers: list[str],
        sample_rows: list[dict[str, Any]],
        categories: list[str],
        guidance: str | None = None,
    ) -> AnalyzeResponse:
        raw = await self.client.call(
            build_suggestion_prompt(),
            build_suggestion_request(headers, sample_rows, categories, guidance),
        )
        try:
            response = AnalyzeResponse.model_validate(raw)
        except ValidationError as exc:
            raise LLMCallError(f"LLM returned an unexpected mapping shape: {exc}") from exc
        known = set(headers)
        dropped = [m.csv_header for m in response.mappings if m.csv_header not in known]
        if dropped:
            log.warning("Ignoring suggestions for unknown headers: %s", dropped)
            response.mappings = [m for m in response.mappings if m.csv_header in known]
        return response


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass
class EditableMapping:
    csv_header: str
    category: str = UNMAPPED
    field: str = ""
    is_new_category: bool = False
    is_new_field: bool = False
    data_type: str = "text"
    skip: bool = False
    suggestion: MappingSuggestion | None = None


@dataclass
class ConfirmedMapping:
    mapping: ColumnMapping
    ai_mappings: list[MappingSuggestion] = dc_field(default_factory=list)
    # header -> (category, field) for non-skipped headers outside the canonical mapping
    placements: dict[str, tuple[str, str]] = dc_field(default_factory=dict)
    skipped_headers: set[str] = dc_field(default_factory=set)


def seed_editable_mappings(
    headers: list[str], suggestions: list[MappingSuggestion],
) -> list[EditableMapping]:
    by_header = {s.csv_header: s for s in suggestions}
    entries = []
    for header in headers:
        s = by_header.get(header)
        if s is None:
            entries.append(EditableMapping(csv_header=header))
            continue
        entries.append(EditableMapping(
            csv_header=header,
            category=s.suggested_category or UNMAPPED,
            field=s.suggested_field,
            is_new_category=s.category_type == "new",
            suggestion=s,
        ))
    return entries


def translate_suggestions(
    baseline: ColumnMapping, suggestions: list[MappingSuggestion],
) -> ColumnMapping:
    """Baseline mapping with every translatable suggestion folded in."""
    mapping = baseline.model_copy()
    for s in suggestions:
        canonical = FIELD_TRANSLATION.get((s.suggested_category, s.suggested_field))
        if canonical:
            setattr(mapping, canonical, s.csv_header)
    return mapping


class ColumnMapper:
    """Mapping state for one import: AI suggestions, operator edits, confirmation."""

    def __init__(
        self,
        headers: list[str],
        sample_rows: list[dict[str, Any]],
        suggested_mapping: ColumnMapping,
        suggester: MappingSuggester,
    ):
        self.headers = list(headers)
        self.sample_rows = sample_rows
        self.baseline = suggested_mapping.model_copy()
        self.mapping = suggested_mapping.model_copy()
        self.suggester = suggester
        self.editable: list[EditableMapping] = []
        self.analysis: AnalyzeResponse | None = None
        self.error: str | None = None
        self.mode = "ai"

    async def analyze(self, guidance: str | None = None) -> AnalyzeResponse | None:
        """Run (or re-run) AI analysis. On failure, prior state is left untouched."""
        self.error = None
        try:
            response = await self.suggester.suggest(
                self.headers, self.sample_rows, list(CATEGORY_NAMES), guidance,
            )
        except LLMCallError as exc:
            log.warning("Column analysis failed: %s", exc)
            self.error = str(exc)
            return None
        self.analysis = response
        self.editable = seed_editable_mappings(self.headers, response.mappings)
        self.mapping = translate_suggestions(self.baseline, response.mappings)
        log.info(
            "AI mapped %d of %d columns (confidence %d)",
            len(response.mappings), len(self.headers), response.confidence,
        )
        return response

    async def reanalyze(self, guidance: str) -> AnalyzeResponse | None:
        guidance = (guidance or "").strip()
        if not guidance:
            raise ValueError("Guidance is required to re-analyze")
        return await self.analyze(guidance)

    # -- operator edits ------------------------------------------------------

    def entry(self, csv_header: str) -> EditableMapping:
        for e in self.editable:
            if e.csv_header == csv_header:
                return e
        if csv_header not in self.headers:
            raise ValueError(f"Unknown column: {csv_header!r}")
        e = EditableMapping(csv_header=csv_header)
        self.editable.append(e)
        return e

    def update_header(
        self, csv_header: str, *, category: str | None = None,
        field: str | None = None, skip: bool | None = None,
    ) -> EditableMapping:
        e = self.entry(csv_header)
        if category is not None or field is not None:
            old = FIELD_TRANSLATION.get((e.category, e.field))
            if category is not None:
                e.is_new_category = category not in CATEGORY_NAMES
                e.category = category or UNMAPPED
            if field is not None:
                e.field = field
            e.is_new_field = bool(e.field) and (e.category, e.field) not in FIELD_TRANSLATION
            if old and getattr(self.mapping, old) == csv_header:
                setattr(self.mapping, old, None)
            new = FIELD_TRANSLATION.get((e.category, e.field))
            if new:
                setattr(self.mapping, new, csv_header)
        if skip is not None:
            e.skip = skip
        return e

    def toggle_skip(self, csv_header: str) -> bool:
        e = self.entry(csv_header)
        e.skip = not e.skip
        return e.skip

    def use_manual_mode(self) -> None:
        self.mode = "manual"

    def use_ai_mode(self) -> None:
        self.mode = "ai"

    def set_field(self, field: str, csv_header: str | None) -> None:
        """Manually assign a canonical field ("none" or None clears it)."""
        if field not in CANONICAL_FIELDS:
            raise ValueError(f"Unknown field: {field!r}")
        if csv_header in (None, "", "none"):
            csv_header = None
        elif csv_header not in self.headers:
            raise ValueError(f"Unknown column: {csv_header!r}")
        setattr(self.mapping, field, csv_header)

    # -- review & confirm ----------------------------------------------------

    def grouped(self) -> dict[str, list[EditableMapping]]:
        """Entries by category; core and unmapped first, then in encounter order."""
        groups: dict[str, list[EditableMapping]] = {}
        for e in self.editable:
            groups.setdefault(e.category or UNMAPPED, []).append(e)
        pinned = [c for c in (CORE, UNMAPPED) if c in groups]
        rest = [c for c in groups if c not in (CORE, UNMAPPED)]
        return {c: groups[c] for c in (*pinned, *rest)}

    @property
    def is_valid(self) -> bool:
        return self.mapping.name is not None

    def confirm(self) -> ConfirmedMapping:
        if not self.is_valid:
            raise MappingNotConfirmable("Map a column to the company name before importing")
        skipped = {e.csv_header for e in self.editable if e.skip}
        ai_mappings = [
            m for m in (self.analysis.mappings if self.analysis else [])
            if m.csv_header not in skipped
        ]
        canonical_headers = {
            h for h in self.mapping.model_dump().values() if h is not None
        }
        placements = {
            e.csv_header: (e.category or UNMAPPED, e.field or e.csv_header)
            for e in self.editable
            if e.csv_header not in skipped and e.csv_header not in canonical_headers
        }
        log.info(
            "Confirmed mapping: %d canonical fields, %d custom columns, %d skipped",
            len(canonical_headers), len(placements), len(skipped),
        )
        return ConfirmedMapping(
            mapping=self.mapping.model_copy(),
            ai_mappings=ai_mappings,
            placements=placements,
            skipped_headers=skipped,
        )
