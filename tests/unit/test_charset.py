"""tests/unit/test_charset.py — Charset descriptor and restriction tests."""

import json

import pytest

from capsolve.core.exceptions import ConfigurationError, InvalidRequestError
from capsolve.processing.charset import Charset, CharsetRange, calc_restriction, parse_range


class TestCharset:
    def test_from_json(self):
        text = json.dumps({"word": False, "image": [-1, 64], "channel": 1, "charset": ["", "a", "b"]})
        cs = Charset.from_json(text)
        assert cs.image == (-1, 64)
        assert cs.channel_count == 1
        assert not cs.is_word_model
        assert cs.charset == ["", "a", "b"]

    def test_invalid_channel_rejected(self):
        with pytest.raises(ConfigurationError):
            Charset.from_json(json.dumps({"image": [10, 10], "channel": 2, "charset": ["a"]}))

    def test_empty_charset_rejected(self):
        with pytest.raises(ConfigurationError):
            Charset.from_json(json.dumps({"image": [10, 10], "channel": 1, "charset": []}))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            Charset.from_file(tmp_path / "nope.json")

    def test_undecodable_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_bytes(b"\xff\xfe\xfa")
        with pytest.raises(ConfigurationError, match="Cannot read"):
            Charset.from_file(path)

    def test_frozen(self, line_charset):
        with pytest.raises(Exception):
            line_charset.word = True

    def test_target_size_fixed(self, rgb_charset):
        assert rgb_charset.target_size(500, 20) == (32, 16)

    def test_target_size_line_keeps_aspect(self, line_charset):
        assert line_charset.target_size(100, 40) == (160, 64)

    def test_target_size_line_floors(self, line_charset):
        # 33 * 64 // 20 = 105.6 -> 105
        assert line_charset.target_size(33, 20) == (105, 64)

    def test_target_size_word_is_square(self):
        cs = Charset(word=True, image=(-1, 64), channel=1, charset=["a"])
        assert cs.target_size(300, 40) == (64, 64)


class TestParseRange:
    @pytest.mark.parametrize("spec", ["0", "7", 0, 7])
    def test_presets(self, spec):
        assert isinstance(parse_range(spec), CharsetRange)

    def test_literal_string(self):
        assert parse_range("abc") == "abc"

    def test_multi_digit_string_is_literal(self):
        assert parse_range("01") == "01"

    def test_invalid_int(self):
        with pytest.raises(InvalidRequestError):
            parse_range(9)


class TestCalcRestriction:
    def test_digits_preset(self):
        assert calc_restriction("0") == list("0123456789") + [""]

    def test_literal_dedup_keeps_order(self):
        assert calc_restriction("abca") == ["a", "b", "c", ""]

    def test_empty_token_appended_once(self):
        assert calc_restriction(CharsetRange.UPPERCASE).count("") == 1

    def test_explicit_list_verbatim(self):
        assert calc_restriction(["x", "y"]) == ["x", "y"]

    def test_preset_7_filters_alnum_tokens(self):
        cs = Charset(image=(-1, 64), channel=1, charset=["", "a", "中", "1", "文", "A"])
        assert calc_restriction(7, cs) == ["中", "文", ""]

    def test_preset_7_requires_charset(self):
        with pytest.raises(ConfigurationError):
            calc_restriction("7")
