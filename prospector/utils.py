"""Shared utility functions used across Prospector modules."""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from prospector.errors import ParseError

_MISSING = object()

T = TypeVar("T")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (``round()`` is banker's)."""
    return int(math.floor(value + 0.5))


def truncate(text: str, limit: int) -> str:
    """Elide *text* beyond *limit* characters, noting the original length."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}… [truncated, {len(text)} chars total]"


# ---------------------------------------------------------------------------
# LLM response decoding
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T
    method: str

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Unparsed:
    raw: str

    def unwrap(self) -> Any:
        raise ParseError("response was not valid JSON", raw=self.raw)


Decoded = Union[Parsed[Any], Unparsed]

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
_BRACKETS = {dict: ("{", "}"), list: ("[", "]")}


def _bracket_scan(text: str, opener: str, closer: str) -> str | None:
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def decode_json(text: str | None, expect: type = dict) -> Decoded:
    """Decode JSON from a model response of unknown wrapping.

    Tries, in order: the whole text, the first fenced code block, and the
    outermost bracket span for *expect* (``dict`` or ``list``).  Returns
    :class:`Parsed` tagged with the method that worked, or :class:`Unparsed`
    carrying the raw text.
    """
    raw = text or ""
    candidates: list[tuple[str, str | None]] = [("direct", raw.strip())]
    fence = _FENCE_RE.search(raw)
    candidates.append(("fenced", fence.group(1).strip() if fence else None))
    opener, closer = _BRACKETS.get(expect, ("{", "}"))
    candidates.append(("bracket", _bracket_scan(raw, opener, closer)))

    for method, candidate in candidates:
        if not candidate:
            continue
        try:
            value = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(value, expect):
            return Parsed(value, method)
    return Unparsed(raw)


def decode_or(text: str | None, fallback: Any, expect: type = dict) -> Any:
    """Like :func:`decode_json` but return *fallback* when nothing parses."""
    result = decode_json(text, expect)
    return result.value if isinstance(result, Parsed) else fallback


def string_list(value: Any, limit: int | None = None) -> list[str]:
    """Coerce a loosely-typed model field into a list of non-empty strings."""
    if isinstance(value, str):
        items = [value]
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value if v not in (None, "")]
    else:
        items = []
    items = [i.strip() for i in items if str(i).strip()]
    return items[:limit] if limit is not None else items
