"""Tests for structured output repair and tolerant field extraction."""

from __future__ import annotations

import pytest

from imagechat.errors import ResponseParseError
from imagechat.parsing import (
    MAIN_IMAGE_PROMPT_PROPERTIES,
    PropertyDetails,
    extract_json_fields_with_tolerance,
    extract_top_bracketed_content,
    parse_llm_json,
    quote_unquoted_keys,
    remove_invalid_child_properties,
    strip_json_comments,
)


class TestBracketExtraction:
    def test_extracts_object_from_prose(self) -> None:
        text = 'Sure! Here it is: {"a": 1, "b": {"c": 2}} Hope that helps.'
        assert extract_top_bracketed_content(text) == '{"a": 1, "b": {"c": 2}}'

    def test_brackets_inside_strings_are_ignored(self) -> None:
        text = 'x {"a": "a } and a ] inside", "b": [1, 2]} y'
        assert extract_top_bracketed_content(text) == '{"a": "a } and a ] inside", "b": [1, 2]}'

    def test_array_comes_first(self) -> None:
        assert extract_top_bracketed_content('noise [{"a": 1}] {"b": 2}') == '[{"a": 1}]'

    def test_unclosed_returns_remainder(self) -> None:
        assert extract_top_bracketed_content('ok {"a": [1, 2') == '{"a": [1, 2'

    def test_no_brackets(self) -> None:
        assert extract_top_bracketed_content("no json here") is None


class TestCleanup:
    def test_strip_comments_keeps_urls_in_strings(self) -> None:
        text = '{\n  // the link\n  "url": "https://example.com/a", /* note */ "b": 1\n}'
        cleaned = strip_json_comments(text)
        assert "the link" not in cleaned
        assert "note" not in cleaned
        assert '"https://example.com/a"' in cleaned

    def test_quote_unquoted_keys(self) -> None:
        assert quote_unquoted_keys('{prompt: "x", negative_prompt: "y"}') == '{"prompt": "x", "negative_prompt": "y"}'

    def test_remove_invalid_child_properties(self) -> None:
        text = '{\n"a": "x",\n",\n"b": "y"\n}'
        assert remove_invalid_child_properties(text) == '{\n"a": "x",\n"b": "y"\n}'


class TestParseLlmJson:
    def test_plain_json(self) -> None:
        assert parse_llm_json('{"start_new_image": true}') == {"start_new_image": True}

    def test_code_fence(self) -> None:
        assert parse_llm_json('```json\n[{"complaint_type": "blurry"}]\n```') == [{"complaint_type": "blurry"}]

    def test_comments_and_unquoted_keys(self) -> None:
        text = '{\n  prompt: "a fox", // main prompt\n  negative_prompt: "blur"\n}'
        assert parse_llm_json(text) == {"prompt": "a fox", "negative_prompt": "blur"}

    def test_trailing_comma_is_repaired(self) -> None:
        assert parse_llm_json('{"a": 1, "b": 2,}') == {"a": 1, "b": 2}

    def test_stray_quote_line_is_removed(self) -> None:
        assert parse_llm_json('{\n"a": "x",\n",\n"b": "y"\n}') == {"a": "x", "b": "y"}

    def test_text_without_json_fails(self) -> None:
        with pytest.raises(ResponseParseError):
            parse_llm_json("I cannot help with that.")

    def test_property_details_use_tolerant_extraction(self) -> None:
        text = '{"prompt": "a "neon" sign", "prompt_summary": "sign"}'
        assert parse_llm_json(text, MAIN_IMAGE_PROMPT_PROPERTIES) == {
            "prompt": 'a "neon" sign',
            "prompt_summary": "sign",
        }


class TestTolerantExtraction:
    def test_main_prompt_fields(self) -> None:
        text = (
            'Result:\n{"prompt": "a "neon" sign over a bar", "negative_prompt": "blur", '
            '"prompt_summary": "neon sign", "user_input_has_complaints": true}'
        )
        fields = extract_json_fields_with_tolerance(text, MAIN_IMAGE_PROMPT_PROPERTIES)
        assert fields == {
            "prompt": 'a "neon" sign over a bar',
            "negative_prompt": "blur",
            "prompt_summary": "neon sign",
            "user_input_has_complaints": True,
        }

    def test_number_coercion(self) -> None:
        fields = extract_json_fields_with_tolerance(
            '{"steps": 12, "scale": 3.5}',
            [PropertyDetails(name="steps", type="number"), PropertyDetails(name="scale", type="number")],
        )
        assert fields == {"steps": 12, "scale": 3.5}

    def test_unknown_fields_are_ignored(self) -> None:
        fields = extract_json_fields_with_tolerance(
            '{"other": "x", "prompt": "y"}', [PropertyDetails(name="prompt")]
        )
        assert fields == {"prompt": "y"}

    def test_no_object(self) -> None:
        with pytest.raises(ResponseParseError):
            extract_json_fields_with_tolerance("prompt: a fox", MAIN_IMAGE_PROMPT_PROPERTIES)

    def test_no_expected_fields(self) -> None:
        with pytest.raises(ResponseParseError):
            extract_json_fields_with_tolerance('{"other": "x"}', MAIN_IMAGE_PROMPT_PROPERTIES)
