"""
processing/charset.py
---------------------
Model charset descriptor and charset restrictions.

A classification model ships with a JSON descriptor next to the ONNX file
(``common.onnx`` -> ``common.json``)::

    {"word": false, "image": [-1, 64], "channel": 1, "charset": ["", "a", ...]}

A *restriction* narrows the tokens a caller is interested in; decoding
projects the model's probabilities onto it.
"""

from __future__ import annotations

import json
import logging
import string
from enum import IntEnum
from pathlib import Path
from typing import Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from capsolve.core.exceptions import ConfigurationError, InvalidRequestError

logger = logging.getLogger(__name__)


class Charset(BaseModel):
    """Immutable charset + input geometry of a classification model."""

    model_config = ConfigDict(frozen=True)

    word: bool = False
    image: tuple[int, int]
    """``(width, height)``; width ``-1`` means derived from the input image."""

    channel: int = 1
    charset: list[str] = Field(min_length=1)

    @field_validator("image")
    @classmethod
    def valid_geometry(cls, v: tuple[int, int]) -> tuple[int, int]:
        width, height = v
        if height <= 0:
            raise ValueError("image height must be positive")
        if width != -1 and width <= 0:
            raise ValueError("image width must be positive or -1")
        return v

    @field_validator("channel")
    @classmethod
    def valid_channel(cls, v: int) -> int:
        if v not in (1, 3):
            raise ValueError("channel must be 1 or 3")
        return v

    @property
    def is_word_model(self) -> bool:
        return self.word

    @property
    def channel_count(self) -> int:
        return self.channel

    def target_size(self, orig_width: int, orig_height: int) -> tuple[int, int]:
        """Model input ``(width, height)`` for an image of the given size."""
        width, height = self.image
        if width != -1:
            return width, height
        if self.word:
            return height, height
        return max(1, orig_width * height // orig_height), height

    def index_of(self, token: str) -> Optional[int]:
        try:
            return self.charset.index(token)
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_json(cls, text: str) -> "Charset":
        try:
            return cls.model_validate(json.loads(text))
        except Exception as exc:
            raise ConfigurationError(f"Invalid charset descriptor: {exc}") from exc

    @classmethod
    def from_file(cls, path: str | Path) -> "Charset":
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Charset file not found: {path}")
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigurationError(f"Cannot read charset file {path}: {exc}") from exc
        charset = cls.from_json(text)
        logger.info("Charset loaded from %s (%d tokens)", path, len(charset.charset))
        return charset


# ---------------------------------------------------------------------------
# Restrictions
# ---------------------------------------------------------------------------

class CharsetRange(IntEnum):
    """Preset restrictions, addressable by their integer value."""

    DIGIT = 0
    LOWERCASE = 1
    UPPERCASE = 2
    LOWERCASE_UPPERCASE = 3
    LOWERCASE_DIGIT = 4
    UPPERCASE_DIGIT = 5
    LOWERCASE_UPPERCASE_DIGIT = 6
    DEFAULT_CHARSET_LOWERCASE_UPPERCASE_DIGIT = 7
    """Every charset token that contains no ASCII letter or digit."""


_ALNUM = string.ascii_lowercase + string.ascii_uppercase + string.digits

_PRESETS: dict[CharsetRange, str] = {
    CharsetRange.DIGIT: string.digits,
    CharsetRange.LOWERCASE: string.ascii_lowercase,
    CharsetRange.UPPERCASE: string.ascii_uppercase,
    CharsetRange.LOWERCASE_UPPERCASE: string.ascii_lowercase + string.ascii_uppercase,
    CharsetRange.LOWERCASE_DIGIT: string.ascii_lowercase + string.digits,
    CharsetRange.UPPERCASE_DIGIT: string.ascii_uppercase + string.digits,
    CharsetRange.LOWERCASE_UPPERCASE_DIGIT: _ALNUM,
}

RangeSpec = Union[int, str, CharsetRange, Sequence[str]]


def parse_range(spec: Union[int, str]) -> Union[CharsetRange, str]:
    """Map a request-level specifier to a preset or a literal token string.

    ``"0"``..``"7"`` (and the ints 0..7) are presets; any other string is
    taken as its own characters.
    """
    if isinstance(spec, int):
        try:
            return CharsetRange(spec)
        except ValueError as exc:
            raise InvalidRequestError(f"Invalid charset range: {spec}") from exc
    if len(spec) == 1 and spec in "01234567":
        return CharsetRange(int(spec))
    return spec


def calc_restriction(spec: RangeSpec, charset: Optional[Charset] = None) -> list[str]:
    """Compute the restriction tokens for *spec*.

    Preset and string specifiers are deduplicated (first occurrence order)
    and always end with the empty "no character" token.  An explicit token
    list is returned as-is.

    Raises:
        ConfigurationError: Preset 7 without a loaded charset.
        InvalidRequestError: Unknown integer preset.
    """
    if isinstance(spec, (list, tuple)):
        return list(spec)

    parsed = spec if isinstance(spec, CharsetRange) else parse_range(spec)

    if parsed is CharsetRange.DEFAULT_CHARSET_LOWERCASE_UPPERCASE_DIGIT:
        if charset is None:
            raise ConfigurationError("Charset range 7 requires a loaded OCR charset")
        tokens = [t for t in charset.charset if not any(c in _ALNUM for c in t)]
    elif isinstance(parsed, CharsetRange):
        tokens = list(_PRESETS[parsed])
    else:
        tokens = list(parsed)

    unique = [t for t in dict.fromkeys(tokens) if t != ""]
    unique.append("")
    return unique
