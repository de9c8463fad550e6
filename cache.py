"""
cache.py — Content-addressed cache for summaries.

Keyed by level + SHA-256 of the content, so identical text is generated at
most once per level, and a re-run over an imported export is a no-op.
The same text at two levels is two entries: the prompt framing differs.
"""

from __future__ import annotations
import asyncio
import hashlib
import json
from pathlib import Path
from typing import Any, Optional, Union
import weakref

from responses import SKIP, GenerationResult, Skip


CacheValue = Union[GenerationResult, Skip]


class SummaryCache:
    def __init__(self, entries: Optional[dict[str, Any]] = None):
        self._mem: dict[str, CacheValue] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        if entries:
            self.import_(entries)

    @staticmethod
    def key(level: str, content: str) -> str:
        digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
        return f"{level}-{digest}"

    def get(self, level: str, content: str) -> Optional[CacheValue]:
        return self._mem.get(self.key(level, content))

    def put(self, level: str, content: str, value: CacheValue) -> str:
        key = self.key(level, content)
        self._mem[key] = value
        return key

    def lock(self, level: str, content: str) -> asyncio.Lock:
        """Lock serializing check-generate-write for one key across every user of this cache.

        Held only weakly: a lock disappears once no caller holds it.
        """
        key = self.key(level, content)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __contains__(self, key: str) -> bool:
        return key in self._mem

    def __len__(self) -> int:
        return len(self._mem)

    # -----------------------------------------------------------------------
    # Serialization
    # -----------------------------------------------------------------------

    def export(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in self._mem.items():
            if value is SKIP:
                out[key] = None
            elif value.analysis:
                out[key] = {"analysis": value.analysis, "summary": value.summary}
            else:
                out[key] = value.summary
        return out

    def import_(self, entries: dict[str, Any]) -> None:
        """Replace the current contents wholesale with an exported map."""
        if not isinstance(entries, dict):
            raise TypeError("cache entries must be a mapping")
        mem: dict[str, CacheValue] = {}
        for key, raw in entries.items():
            if raw is None:
                mem[key] = SKIP
            elif isinstance(raw, str):
                mem[key] = GenerationResult(summary=raw)
            elif isinstance(raw, dict) and isinstance(raw.get("summary"), str):
                analysis = raw.get("analysis")
                mem[key] = GenerationResult(
                    summary=raw["summary"],
                    analysis=analysis if isinstance(analysis, str) and analysis else None,
                )
            else:
                raise TypeError(f"unsupported cache value for key {key!r}")
        self._mem = mem

    def save(self, path: Path) -> None:
        path.write_text(json.dumps(self.export(), indent=2), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "SummaryCache":
        try:
            entries = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            entries = {}
        cache = cls()
        if isinstance(entries, dict):
            try:
                cache.import_(entries)
            except TypeError:
                cache = cls()
        return cache

    def stats(self) -> dict:
        return {"cached_entries": len(self._mem)}
