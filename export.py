"""
export.py — Persisted export of a summarized book: {structure, summaries}.

`structure` is the annotated tree, `summaries` the cache map. Importing
replaces both wholesale; nothing is merged with an in-progress document.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from cache import SummaryCache
from epub_parser import Book, Chapter, Paragraph
from errors import ImportFormatError


# ---------------------------------------------------------------------------
# Tree <-> plain data
# ---------------------------------------------------------------------------

def book_to_dict(book: Book) -> dict:
    return {
        "title": book.title,
        "metadata": dict(book.metadata),
        "levels": {
            "book": {
                "content": book.content,
                "summary": book.summary,
                "analysis": book.analysis,
                "skip": book.skip,
            },
            "chapters": [
                {
                    "id": c.id,
                    "href": c.href,
                    "title": c.title,
                    "content": c.content,
                    "summary": c.summary,
                    "analysis": c.analysis,
                    "skip": c.skip,
                    "paragraphs": [
                        {"content": p.content, "summary": p.summary, "skip": p.skip}
                        for p in c.paragraphs
                    ],
                }
                for c in book.chapters
            ],
        },
    }


def _optional_str(raw: dict, key: str) -> Optional[str]:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise ImportFormatError(f"`{key}` must be a string or null")
    return value


def book_from_dict(raw: Any) -> Book:
    try:
        levels = raw["levels"]
        book_level = levels["book"]
        chapters_raw = levels["chapters"]
        if not isinstance(chapters_raw, list):
            raise ImportFormatError("`structure.levels.chapters` must be a list")

        chapters = []
        for i, c in enumerate(chapters_raw):
            paragraphs = [
                Paragraph(
                    content=str(p["content"]),
                    summary=_optional_str(p, "summary"),
                    skip=bool(p.get("skip", False)),
                )
                for p in c.get("paragraphs", [])
            ]
            chapters.append(Chapter(
                id=c.get("id", i),
                href=str(c.get("href", "")),
                title=str(c.get("title") or f"Chapter {i + 1}"),
                content=str(c.get("content", "")),
                paragraphs=paragraphs,
                summary=_optional_str(c, "summary"),
                analysis=_optional_str(c, "analysis"),
                skip=bool(c.get("skip", False)),
            ))

        return Book(
            title=str(raw.get("title") or "Untitled EPUB"),
            metadata={str(k): str(v) for k, v in (raw.get("metadata") or {}).items()},
            content=str(book_level.get("content", "")),
            chapters=chapters,
            summary=_optional_str(book_level, "summary"),
            analysis=_optional_str(book_level, "analysis"),
            skip=bool(book_level.get("skip", False)),
        )
    except ImportFormatError:
        raise
    except (KeyError, TypeError, AttributeError) as e:
        raise ImportFormatError(f"Malformed structure: {e}") from e


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------

def export_state(book: Book, cache: SummaryCache) -> dict:
    return {
        "structure": book_to_dict(book),
        "summaries": cache.export(),
    }


def import_state(payload: Any, cache: SummaryCache) -> Book:
    """Validate an export, replace `cache` contents and return the imported tree."""
    if not isinstance(payload, dict):
        raise ImportFormatError("Export must be a JSON object")
    missing = [k for k in ("structure", "summaries") if k not in payload]
    if missing:
        raise ImportFormatError(f"Invalid export format: missing {', '.join(missing)}")
    if not isinstance(payload["summaries"], dict):
        raise ImportFormatError("`summaries` must be an object")

    book = book_from_dict(payload["structure"])
    try:
        cache.import_(payload["summaries"])
    except TypeError as e:
        raise ImportFormatError(str(e)) from e
    return book


def save_export(path: Path, payload: dict) -> Path:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, path)
    return path


def load_export(path: Path) -> dict:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ImportFormatError(f"Could not read export {path}: {e}") from e
