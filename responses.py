"""
responses.py — Parsing of generation payloads into typed results.

A payload is one of:

  null                         -> SKIP (content is not substantive)
  plain text                   -> GenerationResult(summary=<whole payload>)
  [<L_analysis> ... </L_analysis>] <L_summary> ... </L_summary>
                               -> GenerationResult(summary, analysis)

where L is the level name ("paragraph", "chapter", "book"). Markers are
matched case-insensitively. An unterminated region runs up to the next
opening marker, or to the end of the payload. Stray closing markers are
ignored. When a region appears twice, the first one wins.
"""

from __future__ import annotations
from dataclasses import dataclass
import re
from typing import Optional, Union

from errors import GenerationError


LEVELS = ("paragraph", "chapter", "book")
NULL_SENTINEL = "null"


@dataclass(frozen=True)
class GenerationResult:
    summary: str
    analysis: Optional[str] = None


class Skip:
    """Marker for content judged non-substantive."""

    _instance: Optional["Skip"] = None

    def __new__(cls) -> "Skip":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SKIP"


SKIP = Skip()

ParsedResponse = Union[GenerationResult, Skip]


def is_null(text: str) -> bool:
    return text.strip().lower() == NULL_SENTINEL


def _marker_pattern(level: str) -> re.Pattern:
    return re.compile(
        rf"<\s*(/?)\s*{re.escape(level)}_(analysis|summary)\s*>",
        re.IGNORECASE,
    )


def split_regions(payload: str, level: str) -> dict[str, str]:
    """Return the raw `analysis` / `summary` regions found in a payload."""
    regions: dict[str, str] = {}
    open_name: Optional[str] = None
    open_end = 0

    for m in _marker_pattern(level).finditer(payload):
        closing = m.group(1) == "/"
        name = m.group(2).lower()
        if not closing:
            if open_name is not None:
                regions.setdefault(open_name, payload[open_end:m.start()])
            open_name, open_end = name, m.end()
        elif name == open_name:
            regions.setdefault(name, payload[open_end:m.start()])
            open_name = None

    if open_name is not None:
        regions.setdefault(open_name, payload[open_end:])
    return regions


def parse_response(payload: Optional[str], level: str) -> ParsedResponse:
    if level not in LEVELS:
        raise ValueError(f"Unknown level: {level}")

    text = (payload or "").strip()
    if not text:
        raise GenerationError(f"Empty {level} response")
    if is_null(text):
        return SKIP

    regions = split_regions(text, level)
    if "summary" not in regions:
        return GenerationResult(summary=text)

    summary = regions["summary"].strip()
    if is_null(summary):
        return SKIP
    if not summary:
        raise GenerationError(f"Empty <{level}_summary> region in response")

    analysis = regions.get("analysis", "").strip() or None
    return GenerationResult(summary=summary, analysis=analysis)
