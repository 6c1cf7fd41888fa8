"""Tests for CSV column-mapping reconciliation with a stubbed suggester."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from dealflow.column_mapper import (
    CATEGORY_NAMES,
    ColumnMapper,
    LLMMappingSuggester,
    MappingNotConfirmable,
    translate_suggestions,
)
from dealflow.llm import LLMCallError, parse_json_reply
from dealflow.schemas import AnalyzeResponse, ColumnMapping, MappingSuggestion

HEADERS = ["Startup", "Company Website", "Team Size", "Notes", "Internal ID"]
SAMPLE = [{
    "Startup": "Acme", "Company Website": "https://acme.io", "Team Size": "12",
    "Notes": "warm intro", "Internal ID": "A-1",
}]


def _suggestion(header, category, field, confidence=90, category_type="existing"):
    return MappingSuggestion(
        csv_header=header, suggested_category=category, suggested_field=field,
        confidence=confidence, category_type=category_type,
    )


def _response(*mappings, confidence=85) -> AnalyzeResponse:
    return AnalyzeResponse(mappings=list(mappings), confidence=confidence)


def _mapper(response: AnalyzeResponse | Exception | None = None, baseline: ColumnMapping | None = None):
    suggester = AsyncMock()
    if isinstance(response, Exception):
        suggester.suggest.side_effect = response
    else:
        suggester.suggest.return_value = response or _response()
    return ColumnMapper(HEADERS, SAMPLE, baseline or ColumnMapping(), suggester), suggester


STANDARD = _response(
    _suggestion("Startup", "core", "name"),
    _suggestion("Company Website", "companyInfo", "website", confidence=92),
    _suggestion("Team Size", "companyInfo", "employeeCount"),
    _suggestion("Notes", "dealNotes", "notes", category_type="new"),
)


class TestAnalyze:
    def test_translates_company_website(self):
        mapper, _ = _mapper(_response(
            _suggestion("Company Website", "companyInfo", "website", confidence=92),
        ))
        asyncio.run(mapper.analyze())
        assert mapper.mapping.website == "Company Website"

    def test_seeds_entry_per_header(self):
        mapper, _ = _mapper(STANDARD)
        asyncio.run(mapper.analyze())
        entries = {e.csv_header: e for e in mapper.editable}
        assert list(entries) == HEADERS
        assert entries["Notes"].category == "dealNotes"
        assert entries["Notes"].is_new_category
        missing = entries["Internal ID"]
        assert (missing.category, missing.field, missing.skip) == ("unmapped", "", False)
        assert missing.suggestion is None

    def test_untranslatable_suggestions_stay_out_of_mapping(self):
        mapper, _ = _mapper(STANDARD)
        asyncio.run(mapper.analyze())
        assert "Notes" not in mapper.mapping.model_dump().values()

    def test_passes_categories_and_guidance(self):
        mapper, suggester = _mapper(STANDARD)
        asyncio.run(mapper.reanalyze("Startup is the company name"))
        args = suggester.suggest.call_args.args
        assert args[0] == HEADERS
        assert args[2] == list(CATEGORY_NAMES)
        assert args[3] == "Startup is the company name"

    def test_reanalyze_requires_guidance(self):
        mapper, _ = _mapper(STANDARD)
        with pytest.raises(ValueError):
            asyncio.run(mapper.reanalyze("   "))

    def test_rerun_replaces_editable_state(self):
        mapper, suggester = _mapper(STANDARD)
        asyncio.run(mapper.analyze())
        mapper.toggle_skip("Notes")
        suggester.suggest.return_value = _response(_suggestion("Startup", "core", "name"))
        asyncio.run(mapper.analyze("again"))
        notes = mapper.entry("Notes")
        assert notes.skip is False
        assert notes.category == "unmapped"
        assert mapper.mapping.website is None

    def test_baseline_survives_rerun(self):
        mapper, _ = _mapper(_response(), baseline=ColumnMapping(name="Startup"))
        asyncio.run(mapper.analyze())
        assert mapper.mapping.name == "Startup"

    def test_failure_leaves_state_untouched(self):
        mapper, suggester = _mapper(STANDARD)
        asyncio.run(mapper.analyze())
        before = [(e.csv_header, e.category, e.field) for e in mapper.editable]
        suggester.suggest.side_effect = LLMCallError("rate limited", retryable=True)

        assert asyncio.run(mapper.analyze("more")) is None
        assert mapper.error == "rate limited"
        assert [(e.csv_header, e.category, e.field) for e in mapper.editable] == before
        assert mapper.mapping.website == "Company Website"

    def test_failure_still_allows_manual_mode(self):
        mapper, _ = _mapper(LLMCallError("down", retryable=True))
        asyncio.run(mapper.analyze())
        mapper.use_manual_mode()
        mapper.set_field("name", "Startup")
        assert mapper.mode == "manual"
        assert mapper.is_valid


class TestEdits:
    def test_update_header_moves_canonical_assignment(self):
        mapper, _ = _mapper(STANDARD)
        asyncio.run(mapper.analyze())
        mapper.update_header("Company Website", category="companyInfo", field="linkedin")
        assert mapper.mapping.website is None
        assert mapper.mapping.linkedin_url == "Company Website"

    def test_update_header_to_custom_field(self):
        mapper, _ = _mapper(STANDARD)
        asyncio.run(mapper.analyze())
        entry = mapper.update_header("Team Size", category="metrics", field="headcount")
        assert entry.is_new_field
        assert mapper.mapping.employee_count is None

    def test_category_change_rechecks_field(self):
        mapper, _ = _mapper(STANDARD)
        asyncio.run(mapper.analyze())
        entry = mapper.update_header("Company Website", category="metrics")
        assert entry.field == "website"
        assert entry.is_new_field
        assert mapper.mapping.website is None
        entry = mapper.update_header("Company Website", category="companyInfo")
        assert not entry.is_new_field
        assert mapper.mapping.website == "Company Website"

    def test_unknown_header(self):
        mapper, _ = _mapper(STANDARD)
        with pytest.raises(ValueError, match="Unknown column"):
            mapper.update_header("Nope", skip=True)

    def test_set_field_validation(self):
        mapper, _ = _mapper()
        with pytest.raises(ValueError, match="Unknown field"):
            mapper.set_field("favourite_colour", "Startup")
        with pytest.raises(ValueError, match="Unknown column"):
            mapper.set_field("name", "Nope")
        mapper.set_field("name", "Startup")
        mapper.set_field("name", "none")
        assert mapper.mapping.name is None

    def test_grouped_pins_core_and_unmapped(self):
        mapper, _ = _mapper(_response(
            _suggestion("Team Size", "companyInfo", "employeeCount"),
            _suggestion("Notes", "dealNotes", "notes"),
            _suggestion("Startup", "core", "name"),
        ))
        asyncio.run(mapper.analyze())
        assert list(mapper.grouped()) == ["core", "unmapped", "companyInfo", "dealNotes"]


class TestConfirm:
    def test_rejects_without_name(self):
        mapper, _ = _mapper(_response(
            _suggestion("Company Website", "companyInfo", "website"),
            _suggestion("Team Size", "companyInfo", "employeeCount"),
        ))
        asyncio.run(mapper.analyze())
        assert not mapper.is_valid
        with pytest.raises(MappingNotConfirmable):
            mapper.confirm()

    def test_emits_mapping_and_non_skipped_suggestions(self):
        mapper, _ = _mapper(STANDARD)
        asyncio.run(mapper.analyze())
        mapper.toggle_skip("Notes")
        confirmed = mapper.confirm()
        assert confirmed.mapping.name == "Startup"
        assert [m.csv_header for m in confirmed.ai_mappings] == ["Startup", "Company Website", "Team Size"]
        assert confirmed.skipped_headers == {"Notes"}
        assert confirmed.placements == {"Internal ID": ("unmapped", "Internal ID")}

    def test_custom_placement(self):
        mapper, _ = _mapper(STANDARD)
        asyncio.run(mapper.analyze())
        confirmed = mapper.confirm()
        assert confirmed.placements["Notes"] == ("dealNotes", "notes")


class TestTranslate:
    def test_does_not_mutate_baseline(self):
        baseline = ColumnMapping(name="Startup")
        out = translate_suggestions(baseline, [_suggestion("Company Website", "companyInfo", "website")])
        assert out.website == "Company Website"
        assert baseline.website is None


class TestLLMSuggester:
    def test_validates_reply_and_drops_unknown_headers(self):
        client = AsyncMock()
        client.call.return_value = {
            "mappings": [
                {"csvHeader": "Startup", "suggestedCategory": "core", "suggestedField": "name",
                 "categoryType": "EXISTING", "confidence": 140, "reasoning": "obvious", "sampleValue": 1},
                {"csvHeader": "Ghost", "suggestedCategory": "core", "suggestedField": "sector"},
            ],
            "confidence": 77,
        }
        response = asyncio.run(LLMMappingSuggester(client).suggest(HEADERS, SAMPLE, list(CATEGORY_NAMES)))
        assert [m.csv_header for m in response.mappings] == ["Startup"]
        assert response.mappings[0].confidence == 100
        assert response.mappings[0].sample_value == "1"
        assert response.mappings[0].category_type == "existing"

    def test_bad_shape_is_llm_error(self):
        client = AsyncMock()
        client.call.return_value = {"mappings": "nope"}
        with pytest.raises(LLMCallError):
            asyncio.run(LLMMappingSuggester(client).suggest(HEADERS, SAMPLE, []))


class TestParseJsonReply:
    def test_fenced(self):
        assert parse_json_reply('```json\n{"a": 1}\n```') == {"a": 1}

    def test_invalid(self):
        with pytest.raises(LLMCallError):
            parse_json_reply("not json")

    def test_not_object(self):
        with pytest.raises(LLMCallError):
            parse_json_reply("[1, 2]")
