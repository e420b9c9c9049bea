"""Tests for thakirni.core.intent_parser — LLM-based intent extraction."""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from thakirni.core.intent_parser import (
    ParsedIntent,
    _clean_llm_response,
    build_prompt,
    fallback_response,
    generate_response,
    parse_message,
    resolve_datetime,
)

NOW = datetime(2026, 2, 13, 7, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Unit tests for _clean_llm_response
# ---------------------------------------------------------------------------


class TestCleanLlmResponse:
    def test_strips_json_code_block(self):
        raw = '```json\n{"intent": "help"}\n```'
        assert _clean_llm_response(raw) == '{"intent": "help"}'

    def test_strips_bare_code_block(self):
        assert _clean_llm_response('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_no_code_block(self):
        assert _clean_llm_response('  {"a": 1} ') == '{"a": 1}'


# ---------------------------------------------------------------------------
# ParsedIntent validation
# ---------------------------------------------------------------------------


class TestParsedIntent:
    def test_unknown_tag_coerced(self):
        assert ParsedIntent(intent="book_flight").intent == "unknown"

    def test_confidence_clamped(self):
        assert ParsedIntent(confidence=7).confidence == 1.0
        assert ParsedIntent(confidence=-1).confidence == 0.0
        assert ParsedIntent(confidence="high").confidence == 0.0

    def test_out_of_enum_fields_dropped(self):
        p = ParsedIntent(intent="create_task", recurrence="hourly", priority="meh")
        assert p.recurrence is None
        assert p.priority is None

    def test_non_string_enum_fields_dropped(self):
        p = ParsedIntent(intent="create_task", recurrence={"every": "day"}, priority=["high"])
        assert p.intent == "create_task"
        assert p.recurrence is None
        assert p.priority is None

    def test_non_string_text_fields(self):
        p = ParsedIntent(title=["Report"], location={"room": 3}, description=42)
        assert p.title is None
        assert p.location is None
        assert p.description == "42"

    def test_blank_strings_become_none(self):
        assert ParsedIntent(title="   ").title is None

    def test_bad_quantity(self):
        assert ParsedIntent(quantity="two").quantity is None
        assert ParsedIntent(quantity=0).quantity is None
        assert ParsedIntent(quantity="2").quantity == 2.0


# ---------------------------------------------------------------------------
# Tests for parse_message (LLM mocked)
# ---------------------------------------------------------------------------


class TestParseMessage:
    @pytest.mark.asyncio
    async def test_parse_reminder(self):
        llm_response = (
            '{"intent": "create_reminder", "title": "Call mom", '
            '"datetime": "2026-02-14T17:00:00+03:00", "recurrence": "none", "confidence": 0.9}'
        )
        with patch("thakirni.core.intent_parser.complete", AsyncMock(return_value=llm_response)):
            result = await parse_message("ذكرني أتصل بأمي بكرة الساعة 5 مساءً", now=NOW, tz_name="Asia/Riyadh")
        assert result.intent == "create_reminder"
        assert result.title == "Call mom"
        assert result.datetime == "2026-02-14T17:00:00+03:00"
        assert result.confidence == 0.9

    @pytest.mark.asyncio
    async def test_parse_fenced_grocery_item(self):
        llm_response = '```json\n{"intent": "add_grocery_item", "title": "حليب", "quantity": 2, "confidence": 0.8}\n```'
        with patch("thakirni.core.intent_parser.complete", AsyncMock(return_value=llm_response)):
            result = await parse_message("أضف 2 حليب", now=NOW, tz_name="Asia/Riyadh")
        assert result.intent == "add_grocery_item"
        assert result.quantity == 2

    @pytest.mark.asyncio
    async def test_unhashable_priority_keeps_intent(self):
        llm_response = '{"intent": "create_task", "title": "Report", "priority": ["high"], "confidence": 0.9}'
        with patch("thakirni.core.intent_parser.complete", AsyncMock(return_value=llm_response)):
            result = await parse_message("task Report, high priority", now=NOW, tz_name="Asia/Riyadh")
        assert result.intent == "create_task"
        assert result.title == "Report"
        assert result.priority is None

    @pytest.mark.asyncio
    async def test_single_element_list_unwrapped(self):
        llm_response = '[{"intent": "list_tasks", "confidence": 0.7}]'
        with patch("thakirni.core.intent_parser.complete", AsyncMock(return_value=llm_response)):
            result = await parse_message("my tasks", now=NOW, tz_name="Asia/Riyadh")
        assert result.intent == "list_tasks"

    @pytest.mark.asyncio
    async def test_empty_text_skips_llm(self):
        mock = AsyncMock()
        with patch("thakirni.core.intent_parser.complete", mock):
            result = await parse_message("   ")
        assert result.intent == "unknown"
        assert result.confidence == 0.0
        mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_llm_error_falls_back(self):
        with patch("thakirni.core.intent_parser.complete", AsyncMock(side_effect=RuntimeError("quota"))):
            result = await parse_message("remind me", now=NOW, tz_name="Asia/Riyadh")
        assert result.intent == "unknown"
        assert result.confidence == 0.0

    @pytest.mark.asyncio
    async def test_invalid_json_falls_back(self):
        with patch("thakirni.core.intent_parser.complete", AsyncMock(return_value="not json")):
            result = await parse_message("remind me", now=NOW, tz_name="Asia/Riyadh")
        assert result.intent == "unknown"

    @pytest.mark.asyncio
    async def test_non_object_falls_back(self):
        with patch("thakirni.core.intent_parser.complete", AsyncMock(return_value="42")):
            result = await parse_message("remind me", now=NOW, tz_name="Asia/Riyadh")
        assert result.intent == "unknown"

    @pytest.mark.asyncio
    async def test_prompt_carries_local_date(self):
        mock = AsyncMock(return_value='{"intent": "help"}')
        with patch("thakirni.core.intent_parser.complete", mock):
            await parse_message("help me", now=NOW, tz_name="Asia/Riyadh")
        system = mock.await_args.kwargs["system"]
        assert "2026-02-13" in system
        assert "10:00" in system
        assert "Asia/Riyadh" in system


class TestBuildPrompt:
    def test_local_date_rolls_over(self):
        late = datetime(2026, 2, 13, 22, 30, tzinfo=timezone.utc)
        prompt = build_prompt(late, "Asia/Riyadh")
        assert "Current date: 2026-02-14 (Saturday)" in prompt


class TestResolveDatetime:
    def test_aware_value(self):
        p = ParsedIntent(datetime="2026-02-14T17:00:00+03:00")
        assert resolve_datetime(p, "Asia/Riyadh") == datetime(2026, 2, 14, 14, 0, tzinfo=timezone.utc)

    def test_naive_read_as_local(self):
        p = ParsedIntent(datetime="2026-02-14T17:00:00")
        assert resolve_datetime(p, "Asia/Riyadh") == datetime(2026, 2, 14, 14, 0, tzinfo=timezone.utc)

    def test_zulu_suffix(self):
        p = ParsedIntent(datetime="2026-02-14T14:00:00Z")
        assert resolve_datetime(p, "Asia/Riyadh") == datetime(2026, 2, 14, 14, 0, tzinfo=timezone.utc)

    def test_missing_or_garbage(self):
        assert resolve_datetime(ParsedIntent(), "Asia/Riyadh") is None
        assert resolve_datetime(ParsedIntent(datetime="tomorrow"), "Asia/Riyadh") is None


class TestGenerateResponse:
    @pytest.mark.asyncio
    async def test_uses_llm_reply(self):
        with patch(
            "thakirni.core.intent_parser.complete",
            AsyncMock(return_value='{"response": "Done! I will remind you 🔔"}'),
        ):
            reply = await generate_response("create_reminder", {"title": "x"}, "en")
        assert reply == "Done! I will remind you 🔔"

    @pytest.mark.asyncio
    async def test_fallback_on_error(self):
        with patch("thakirni.core.intent_parser.complete", AsyncMock(side_effect=TimeoutError())):
            reply = await generate_response("create_task", {"title": "x"}, "ar")
        assert reply == fallback_response("create_task", "ar")

    @pytest.mark.asyncio
    async def test_fallback_on_empty(self):
        with patch("thakirni.core.intent_parser.complete", AsyncMock(return_value='{"response": ""}')):
            reply = await generate_response("whatever", {}, "en")
        assert reply == "Done!"
