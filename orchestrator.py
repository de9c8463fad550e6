"""
orchestrator.py — Execution engine for the fractal (multi-level) summarization pipeline.

Execution order:
  1. Book-first attempt: summarize the whole book text in one call
  2. Paragraphs: one-sentence summaries, fanned out, then skipped ones pruned
  3. Chapters: summaries from chapter text + paragraph summaries (+ book
     summary as context when step 1 succeeded), then skipped ones pruned
  4. Book synthesis from chapter summaries, only when step 1 hit the
     model's context limit

Each level must be complete and pruned before the next one starts, because
parent prompts embed child summaries verbatim. Every distinct
(level, content) pair is generated at most once; results live in the
SummaryCache passed in by the caller, which also owns the per-key locks, so
runs sharing one cache never generate the same entry twice.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from agents import GenerationContext, Summarizer
from cache import SummaryCache
from epub_parser import Book, Chapter, Paragraph
from errors import Cancelled, PipelineError, SizeLimitExceeded
from responses import SKIP, GenerationResult, ParsedResponse, parse_response


ERROR_PLACEHOLDER = "Error generating summary"

BOOK_FIRST = "book_first"
BOTTOM_UP = "bottom_up"


class NodeState(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    CACHED = "cached"
    SKIPPED = "skipped"
    ERRORED = "errored"


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class RunResult:
    book: Book
    strategy: str
    errors: list[Exception] = field(default_factory=list)
    stats: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class BookOrchestrator:
    def __init__(
        self,
        *,
        summarizer: Optional[Summarizer] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        cache: Optional[SummaryCache] = None,
        max_concurrent: int = 8,
        verbose: bool = True,
        on_progress: Optional[Callable[[float], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.verbose = verbose
        self.max_concurrent = max(1, max_concurrent)
        self.on_progress = on_progress
        self.on_error = on_error
        self.cancel_event = cancel_event

        self.summarizer = summarizer or Summarizer(
            api_key=api_key,
            model=model,
            max_concurrent=self.max_concurrent,
            verbose=verbose,
        )
        self.cache = cache if cache is not None else SummaryCache()
        self._reset_run_state(total=0)

    def _log(self, msg: str):
        if self.verbose:
            print(msg, flush=True)

    def _reset_run_state(self, *, total: int):
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._total = total
        self._completed = 0
        self._progress = 0.0
        self.errors: list[Exception] = []
        self.states: dict[NodeState, int] = {s: 0 for s in NodeState}
        self._calls = 0
        self._cache_hits = 0
        self._pruned_paragraphs = 0
        self._pruned_chapters = 0

    # -----------------------------------------------------------------------
    # Progress, cancellation, diagnostics
    # -----------------------------------------------------------------------

    def _advance(self, units: int = 1):
        self._completed += units
        fraction = self._completed / self._total if self._total else 1.0
        fraction = min(1.0, fraction)
        if fraction < self._progress:
            return
        self._progress = fraction
        if self.on_progress is not None:
            self.on_progress(fraction)

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Cancelled("Summarization cancelled")

    def _absorb(self, exc: Exception, *, level: str, label: str):
        self.errors.append(exc)
        self.states[NodeState.ERRORED] += 1
        self._log(f"  [{level}] {label}: {type(exc).__name__}: {exc}")
        if self.on_error is not None:
            self.on_error(exc)

    # -----------------------------------------------------------------------
    # Cache-backed generation
    # -----------------------------------------------------------------------

    async def _summarize(
        self,
        level: str,
        content: str,
        context: Optional[GenerationContext] = None,
    ) -> ParsedResponse:
        async with self.cache.lock(level, content):
            cached = self.cache.get(level, content)
            if cached is not None:
                self._cache_hits += 1
                self.states[NodeState.SKIPPED if cached is SKIP else NodeState.CACHED] += 1
                return cached

            self._check_cancelled()
            async with self._slots:
                self._check_cancelled()
                self._calls += 1
                self.states[NodeState.GENERATING] += 1
                payload = await self.summarizer.generate(content, level, context)

            result = parse_response(payload, level)
            self.cache.put(level, content, result)
            self.states[NodeState.SKIPPED if result is SKIP else NodeState.CACHED] += 1
            return result

    async def _summarize_node(
        self,
        level: str,
        content: str,
        context: Optional[GenerationContext] = None,
        *,
        label: str,
    ) -> Optional[ParsedResponse]:
        """Like _summarize, but per-node failures become None (placeholder)."""
        try:
            return await self._summarize(level, content, context)
        except Cancelled:
            raise
        except Exception as e:
            self._absorb(e, level=level, label=label)
            return None

    @staticmethod
    async def _gather(coros: list) -> None:
        results = await asyncio.gather(*coros, return_exceptions=True)
        for r in results:
            if isinstance(r, BaseException):
                raise r

    # -----------------------------------------------------------------------
    # Phase 1: Book-first attempt (Strategy A)
    # -----------------------------------------------------------------------

    @staticmethod
    def _apply_book(book: Book, outcome: Optional[ParsedResponse]):
        if outcome is None:
            book.summary, book.analysis = ERROR_PLACEHOLDER, None
        elif outcome is SKIP:
            book.summary, book.analysis, book.skip = None, None, True
        else:
            book.summary, book.analysis = outcome.summary, outcome.analysis

    def _book_context(self, book: Book, **kwargs) -> GenerationContext:
        return GenerationContext(
            title=book.title,
            author=book.metadata.get("creator"),
            **kwargs,
        )

    async def _book_first(self, book: Book) -> bool:
        """Return False when the book is too large and the bottom-up fallback is needed."""
        self._log(f"\n[Phase 1] Book-first attempt ({len(book.content):,} chars)...")

        if not book.content.strip():
            book.skip = True
            self.states[NodeState.SKIPPED] += 1
            self._advance()
            self._log("  Book has no body text; marked as skipped")
            return True

        try:
            outcome = await self._summarize("book", book.content, self._book_context(book))
        except SizeLimitExceeded as e:
            book.summary, book.analysis, book.skip = None, None, False
            self._log(f"  Book exceeds the context budget; switching to bottom-up ({e})")
            return False
        except Cancelled:
            raise
        except Exception as e:
            self._absorb(e, level="book", label=book.title)
            outcome = None

        self._apply_book(book, outcome)
        self._advance()
        return True

    # -----------------------------------------------------------------------
    # Phase 2: Paragraphs
    # -----------------------------------------------------------------------

    async def _summarize_paragraph(self, chapter: Chapter, index: int, paragraph: Paragraph):
        outcome = await self._summarize_node(
            "paragraph",
            paragraph.content,
            label=f"{chapter.title} ¶{index + 1}",
        )
        if outcome is None:
            paragraph.summary = ERROR_PLACEHOLDER
        elif outcome is SKIP:
            paragraph.summary, paragraph.skip = None, True
        else:
            paragraph.summary = outcome.summary
        self._advance()

    async def _summarize_paragraphs(self, book: Book):
        count = sum(len(c.paragraphs) for c in book.chapters)
        self._log(f"\n[Phase 2] Summarizing {count} paragraphs (parallel, max {self.max_concurrent})...")
        await self._gather([
            self._summarize_paragraph(chapter, i, p)
            for chapter in book.chapters
            for i, p in enumerate(chapter.paragraphs)
        ])

    def _prune_paragraphs(self, book: Book):
        for chapter in book.chapters:
            kept = [p for p in chapter.paragraphs if not p.skip]
            self._pruned_paragraphs += len(chapter.paragraphs) - len(kept)
            chapter.paragraphs = kept
            if not kept:
                chapter.skip = True
        self._log(f"  Pruned {self._pruned_paragraphs} non-substantive paragraphs")

    # -----------------------------------------------------------------------
    # Phase 3: Chapters
    # -----------------------------------------------------------------------

    async def _summarize_chapter(self, chapter: Chapter, book_summary: Optional[str]):
        if chapter.skip or not chapter.paragraphs:
            chapter.skip = True
            self.states[NodeState.SKIPPED] += 1
            self._advance()
            return

        context = GenerationContext(
            prior_level_summary=book_summary,
            child_summaries=[p.summary for p in chapter.paragraphs if p.summary],
            title=chapter.title,
        )
        outcome = await self._summarize_node("chapter", chapter.content, context, label=chapter.title)
        if outcome is None:
            chapter.summary, chapter.analysis = ERROR_PLACEHOLDER, None
        elif outcome is SKIP:
            chapter.summary, chapter.analysis, chapter.skip = None, None, True
        else:
            chapter.summary, chapter.analysis = outcome.summary, outcome.analysis
        self._advance()

    async def _summarize_chapters(self, book: Book, *, book_summary: Optional[str]):
        self._log(f"\n[Phase 3] Summarizing {len(book.chapters)} chapters...")
        await self._gather([self._summarize_chapter(c, book_summary) for c in book.chapters])

    def _prune_chapters(self, book: Book) -> list[str]:
        excluded = [c.title for c in book.chapters if c.skip]
        book.chapters = [c for c in book.chapters if not c.skip]
        self._pruned_chapters += len(excluded)
        self._log(f"  Pruned {len(excluded)} chapters; {len(book.chapters)} remain")
        return excluded

    # -----------------------------------------------------------------------
    # Phase 4: Book synthesis from chapter summaries (Strategy B)
    # -----------------------------------------------------------------------

    async def _synthesize_book(self, book: Book, *, excluded: list[str]):
        self._log(f"\n[Phase 4] Synthesizing book summary from {len(book.chapters)} chapter summaries...")
        if not book.chapters:
            book.skip = True
            self.states[NodeState.SKIPPED] += 1
            self._advance()
            return

        text = "\n\n".join(f"{c.title}\n{c.summary}" for c in book.chapters)
        context = self._book_context(book, excluded_sections=excluded, from_chapter_summaries=True)
        try:
            outcome = await self._summarize("book", text, context)
        except SizeLimitExceeded as e:
            raise PipelineError(f"Book summary still exceeds the context budget after fallback: {e}") from e
        except Cancelled:
            raise
        except Exception as e:
            self._absorb(e, level="book", label=book.title)
            outcome = None

        self._apply_book(book, outcome)
        if outcome is not None:
            # A re-run over the same text resolves from the cache without a call.
            self.cache.put("book", book.content, outcome)
        self._advance()

    # -----------------------------------------------------------------------
    # Main entry point
    # -----------------------------------------------------------------------

    async def run(self, book: Book) -> RunResult:
        self._reset_run_state(total=book.count_units())
        self._log(
            f"\n[Start] `{book.title}`: {len(book.chapters)} chapters, "
            f"{self._total - 1 - len(book.chapters)} paragraphs"
        )

        self._check_cancelled()
        fits = await self._book_first(book)
        strategy = BOOK_FIRST if fits else BOTTOM_UP

        self._check_cancelled()
        await self._summarize_paragraphs(book)
        self._prune_paragraphs(book)

        self._check_cancelled()
        book_summary = book.summary if fits and book.summary != ERROR_PLACEHOLDER else None
        await self._summarize_chapters(book, book_summary=book_summary)
        excluded = self._prune_chapters(book)

        if not fits:
            self._check_cancelled()
            await self._synthesize_book(book, excluded=excluded)

        if not book.chapters:
            book.skip = True

        tracker = getattr(self.summarizer, "tracker", None)
        stats = {
            "strategy": strategy,
            "generation_calls": self._calls,
            "cache_hits": self._cache_hits,
            "errors": len(self.errors),
            "chapters": len(book.chapters),
            "paragraphs": sum(len(c.paragraphs) for c in book.chapters),
            "pruned_chapters": self._pruned_chapters,
            "pruned_paragraphs": self._pruned_paragraphs,
            "node_states": {s.value: n for s, n in self.states.items()},
            "progress": self._progress,
            **(vars(tracker) if tracker is not None else {}),
        }
        self._log(f"\n[Done] strategy={strategy}, calls={self._calls}, cache hits={self._cache_hits}")
        return RunResult(book=book, strategy=strategy, errors=list(self.errors), stats=stats)
