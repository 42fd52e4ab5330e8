from __future__ import annotations

import pytest

from prospector.errors import ParseError
from prospector.outcomes import Degraded, Fatal, Ok, value_or_none
from prospector.utils import (
    Parsed,
    Unparsed,
    decode_json,
    decode_or,
    json_parse,
    round_half_up,
    string_list,
    truncate,
)


class TestJsonParse:
    def test_valid_json(self):
        assert json_parse('{"a": 1}') == {"a": 1}

    def test_invalid_json_default(self):
        assert json_parse("not json", []) == []

    def test_invalid_json_no_default(self):
        assert json_parse("not json") == {}

    def test_none_input(self):
        assert json_parse(None) == {}


class TestRoundHalfUp:
    def test_half_goes_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(12.5) == 13

    def test_below_half_goes_down(self):
        assert round_half_up(2.49) == 2

    def test_integers_unchanged(self):
        assert round_half_up(7.0) == 7


class TestTruncate:
    def test_short_text_unchanged(self):
        assert truncate("hello", 10) == "hello"

    def test_long_text_elided_with_length(self):
        out = truncate("x" * 50, 10)
        assert out.startswith("x" * 10 + "…")
        assert "50 chars total" in out


class TestDecodeJson:
    def test_direct(self):
        result = decode_json('{"a": 1}')
        assert result == Parsed({"a": 1}, "direct")

    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"trends": ["AI"]}\n```\nAnything else?'
        result = decode_json(text)
        assert isinstance(result, Parsed)
        assert result.method == "fenced"
        assert result.value == {"trends": ["AI"]}

    def test_bracket_scan_in_prose(self):
        result = decode_json('Sure! {"a": {"b": 2}} Hope that helps.')
        assert isinstance(result, Parsed)
        assert result.method == "bracket"
        assert result.value == {"a": {"b": 2}}

    def test_list_expected(self):
        result = decode_json('Competitors: [{"name": "Sparky"}] done', expect=list)
        assert isinstance(result, Parsed)
        assert result.value == [{"name": "Sparky"}]

    def test_wrong_shape_is_unparsed(self):
        result = decode_json("[1, 2, 3]", expect=dict)
        assert isinstance(result, Unparsed)

    def test_plain_text_is_unparsed(self):
        result = decode_json("No JSON here at all.")
        assert result == Unparsed("No JSON here at all.")

    def test_none_is_unparsed(self):
        assert decode_json(None) == Unparsed("")

    def test_decode_or_fallback(self):
        assert decode_or("garbage", {"fallback": True}) == {"fallback": True}


class TestStringList:
    def test_list_filters_empty(self):
        assert string_list(["a", "", None, " b "]) == ["a", "b"]

    def test_single_string(self):
        assert string_list("only") == ["only"]

    def test_other_types(self):
        assert string_list(42) == []

    def test_limit(self):
        assert string_list(["a", "b", "c"], limit=2) == ["a", "b"]


class TestOutcomes:
    def test_value_or_none(self):
        assert value_or_none(Ok(3)) == 3
        assert value_or_none(Degraded("down")) is None
        assert value_or_none(Fatal(RuntimeError("x"))) is None


class TestUnwrap:
    def test_parsed_unwraps_value(self):
        assert decode_json('{"a": 1}').unwrap() == {"a": 1}

    def test_unparsed_raises_parse_error(self):
        with pytest.raises(ParseError) as excinfo:
            decode_json("not json").unwrap()
        assert excinfo.value.raw == "not json"
