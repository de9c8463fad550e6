import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

import pytest

from agents import GenerationContext
from cache import SummaryCache
from epub_parser import Book, Chapter, Paragraph
from errors import Cancelled, GenerationError, PipelineError, SizeLimitExceeded
from export import export_state, import_state
from orchestrator import BOOK_FIRST, BOTTOM_UP, ERROR_PLACEHOLDER, BookOrchestrator
from responses import GenerationResult


@dataclass
class _DummyTracker:
    input_tokens: int = 0
    output_tokens: int = 0
    api_calls: int = 0

    def report(self) -> str:
        return "dummy"


def _echo(text: str, level: str, context: Optional[GenerationContext]) -> str:
    return f"{level.upper()}: {text}"


class _ScriptedSummarizer:
    def __init__(self, respond: Callable = _echo, delay: float = 0.0):
        self.respond = respond
        self.delay = delay
        self.calls: list[tuple[str, str, Optional[GenerationContext]]] = []
        self.in_flight = 0
        self.peak = 0
        self.tracker = _DummyTracker()

    async def generate(self, text: str, level: str, context: Optional[GenerationContext] = None) -> str:
        self.calls.append((level, text, context))
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return self.respond(text, level, context)
        finally:
            self.in_flight -= 1

    def levels(self) -> list[str]:
        return [level for level, _, _ in self.calls]


def _book(*chapters: list[str], title: str = "Test Book") -> Book:
    built = []
    for i, paras in enumerate(chapters):
        built.append(Chapter(
            id=i,
            href=f"ch{i + 1}.xhtml",
            title=f"Chapter {i + 1}",
            content="\n\n".join(paras),
            paragraphs=[Paragraph(content=p) for p in paras],
            skip=not paras,
        ))
    return Book(
        title=title,
        metadata={"creator": "Ada Author"},
        content="\n\n".join(c.content for c in built if c.content),
        chapters=built,
    )


def _orchestrator(summarizer, **kwargs) -> BookOrchestrator:
    return BookOrchestrator(summarizer=summarizer, verbose=False, **kwargs)


def test_book_first_summarizes_every_level_with_book_context():
    summarizer = _ScriptedSummarizer()
    progress: list[float] = []
    orch = _orchestrator(summarizer, on_progress=progress.append)
    book = _book(["Alpha one.", "Alpha two."], ["Beta one.", "Beta two."])

    result = asyncio.run(orch.run(book))

    assert result.strategy == BOOK_FIRST
    assert book.summary == f"BOOK: {book.content}"
    assert book.chapters[0].paragraphs[1].summary == "PARAGRAPH: Alpha two."
    assert book.chapters[1].summary == f"CHAPTER: {book.chapters[1].content}"
    assert summarizer.levels().count("book") == 1
    assert summarizer.levels().count("paragraph") == 4
    assert summarizer.levels().count("chapter") == 2

    chapter_contexts = [ctx for level, _, ctx in summarizer.calls if level == "chapter"]
    for ctx in chapter_contexts:
        assert ctx.prior_level_summary == book.summary
        assert len(ctx.child_summaries) == 2

    assert progress == sorted(progress)
    assert progress[-1] == 1.0
    assert result.stats["generation_calls"] == 7
    assert result.errors == []


def test_identical_content_is_generated_once():
    summarizer = _ScriptedSummarizer()
    orch = _orchestrator(summarizer)
    book = _book(["Same line.", "Other line."], ["Same line."])

    result = asyncio.run(orch.run(book))

    paragraph_texts = [text for level, text, _ in summarizer.calls if level == "paragraph"]
    assert sorted(paragraph_texts) == ["Other line.", "Same line."]
    assert book.chapters[1].paragraphs[0].summary == book.chapters[0].paragraphs[0].summary
    assert result.stats["cache_hits"] >= 1


def test_null_paragraphs_are_pruned_with_their_chapter():
    def respond(text, level, context):
        if level == "paragraph" and text.startswith("Copyright"):
            return "null"
        return _echo(text, level, context)

    summarizer = _ScriptedSummarizer(respond)
    orch = _orchestrator(summarizer)
    book = _book(["Story begins.", "Copyright 2001."], ["Copyright notice.", "Copyright again."])

    result = asyncio.run(orch.run(book))

    assert [c.title for c in book.chapters] == ["Chapter 1"]
    assert [p.content for p in book.chapters[0].paragraphs] == ["Story begins."]
    chapter_texts = [text for level, text, _ in summarizer.calls if level == "chapter"]
    assert chapter_texts == [book.chapters[0].content]
    assert result.stats["pruned_paragraphs"] == 3
    assert result.stats["pruned_chapters"] == 1


def test_oversized_book_falls_back_to_chapter_synthesis():
    def respond(text, level, context):
        if level == "book" and not context.from_chapter_summaries:
            raise SizeLimitExceeded("too long")
        if level == "paragraph" and text == "Boilerplate.":
            return "null"
        return _echo(text, level, context)

    summarizer = _ScriptedSummarizer(respond)
    cache = SummaryCache()
    orch = _orchestrator(summarizer, cache=cache)
    book = _book(["One."], ["Two."], ["Boilerplate."])
    full_text = book.content

    result = asyncio.run(orch.run(book))

    assert result.strategy == BOTTOM_UP
    assert result.stats["progress"] == 1.0
    for level, _, ctx in summarizer.calls:
        if level == "chapter":
            assert ctx.prior_level_summary is None

    synth_level, synth_text, synth_ctx = summarizer.calls[-1]
    assert synth_level == "book"
    assert synth_ctx.from_chapter_summaries
    assert synth_ctx.excluded_sections == ["Chapter 3"]
    assert synth_text.startswith("Chapter 1\nCHAPTER: One.")
    assert book.summary == f"BOOK: {synth_text}"
    assert cache.get("book", full_text) == GenerationResult(book.summary)
    assert cache.get("book", synth_text) == GenerationResult(book.summary)
    book_keys = [key for key in cache.export() if key.startswith("book-")]
    assert len(book_keys) == 2
    assert book.analysis is None and not book.skip
    assert result.errors == []


def test_fallback_that_still_overflows_raises():
    def respond(text, level, context):
        if level == "book":
            raise SizeLimitExceeded("too long")
        return _echo(text, level, context)

    orch = _orchestrator(_ScriptedSummarizer(respond))

    with pytest.raises(PipelineError):
        asyncio.run(orch.run(_book(["One."], ["Two."])))


def test_failed_node_gets_placeholder_and_is_not_cached():
    def respond(text, level, context):
        if text == "Broken.":
            raise GenerationError("bad response")
        return _echo(text, level, context)

    seen: list[Exception] = []
    cache = SummaryCache()
    orch = _orchestrator(_ScriptedSummarizer(respond), cache=cache, on_error=seen.append)
    book = _book(["Fine.", "Broken."])

    result = asyncio.run(orch.run(book))

    assert book.chapters[0].paragraphs[1].summary == ERROR_PLACEHOLDER
    assert book.chapters[0].paragraphs[0].summary == "PARAGRAPH: Fine."
    assert len(result.errors) == 1 and isinstance(result.errors[0], GenerationError)
    assert seen == result.errors
    assert cache.get("paragraph", "Broken.") is None
    assert result.stats["node_states"]["errored"] == 1


def test_oversized_chapter_becomes_placeholder():
    def respond(text, level, context):
        if level == "chapter" and context.title == "Chapter 2":
            raise SizeLimitExceeded("chapter too long")
        return _echo(text, level, context)

    orch = _orchestrator(_ScriptedSummarizer(respond))
    book = _book(["One."], ["Two."])

    result = asyncio.run(orch.run(book))

    assert result.strategy == BOOK_FIRST
    assert book.chapters[1].summary == ERROR_PLACEHOLDER
    assert book.chapters[0].summary == "CHAPTER: One."
    assert isinstance(result.errors[0], SizeLimitExceeded)


def test_book_level_null_marks_book_skipped():
    def respond(text, level, context):
        if level == "book":
            return "null"
        return _echo(text, level, context)

    summarizer = _ScriptedSummarizer(respond)
    book = _book(["Table of contents."])

    asyncio.run(_orchestrator(summarizer).run(book))

    assert book.skip
    assert book.summary is None
    chapter_ctx = [ctx for level, _, ctx in summarizer.calls if level == "chapter"][0]
    assert chapter_ctx.prior_level_summary is None


def test_skipped_chapter_is_never_sent():
    summarizer = _ScriptedSummarizer()
    book = _book(["Body."], [])

    result = asyncio.run(_orchestrator(summarizer).run(book))

    chapter_texts = [text for level, text, _ in summarizer.calls if level == "chapter"]
    assert chapter_texts == ["Body."]
    assert [c.title for c in book.chapters] == ["Chapter 1"]
    assert result.stats["pruned_chapters"] == 1


def test_book_without_text_makes_no_calls():
    summarizer = _ScriptedSummarizer()
    book = _book([], [])

    result = asyncio.run(_orchestrator(summarizer).run(book))

    assert summarizer.calls == []
    assert book.skip
    assert book.chapters == []
    assert result.stats["progress"] == 1.0


def test_rerun_over_imported_export_makes_no_calls():
    cache = SummaryCache()
    book = _book(["Alpha.", "Beta."], ["Gamma."])
    asyncio.run(_orchestrator(_ScriptedSummarizer(), cache=cache).run(book))
    payload = export_state(book, cache)

    def refuse(text, level, context):
        raise AssertionError(f"unexpected {level} call")

    fresh_cache = SummaryCache()
    imported = import_state(payload, fresh_cache)
    summarizer = _ScriptedSummarizer(refuse)

    result = asyncio.run(_orchestrator(summarizer, cache=fresh_cache).run(imported))

    assert summarizer.calls == []
    assert result.errors == []
    assert imported.summary == book.summary
    assert [c.summary for c in imported.chapters] == [c.summary for c in book.chapters]


def test_concurrent_runs_sharing_a_cache_generate_each_entry_once():
    shared = SummaryCache()
    first = _ScriptedSummarizer(delay=0.01)
    second = _ScriptedSummarizer(delay=0.01)

    async def scenario():
        return await asyncio.gather(
            _orchestrator(first, cache=shared).run(_book(["Same para."])),
            _orchestrator(second, cache=shared).run(_book(["Same para."])),
        )

    results = asyncio.run(scenario())

    assert sorted(first.levels() + second.levels()) == ["book", "chapter", "paragraph"]
    assert sum(r.stats["cache_hits"] for r in results) == 3
    assert results[0].book.summary == results[1].book.summary


def test_concurrency_is_bounded():
    summarizer = _ScriptedSummarizer(delay=0.01)
    book = _book([f"Paragraph {i}." for i in range(8)])

    asyncio.run(_orchestrator(summarizer, max_concurrent=2).run(book))

    assert summarizer.peak <= 2
    assert summarizer.levels().count("paragraph") == 8


def test_cancellation_stops_the_run():
    async def scenario():
        cancel = asyncio.Event()

        def respond(text, level, context):
            if level == "paragraph":
                cancel.set()
            return _echo(text, level, context)

        summarizer = _ScriptedSummarizer(respond)
        orch = _orchestrator(summarizer, cancel_event=cancel, max_concurrent=1)
        with pytest.raises(Cancelled):
            await orch.run(_book([f"Paragraph {i}." for i in range(5)]))
        return summarizer

    summarizer = asyncio.run(scenario())

    assert summarizer.levels().count("paragraph") == 1
    assert "chapter" not in summarizer.levels()


def test_cancel_before_start():
    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        summarizer = _ScriptedSummarizer()
        with pytest.raises(Cancelled):
            await _orchestrator(summarizer, cancel_event=cancel).run(_book(["One."]))
        return summarizer

    assert asyncio.run(scenario()).calls == []


def test_phase_logs_are_emitted():
    logs: list[str] = []
    orch = _orchestrator(_ScriptedSummarizer())
    orch._log = logs.append

    asyncio.run(orch.run(_book(["One."])))

    joined = "\n".join(logs)
    assert "[Phase 1]" in joined
    assert "[Phase 2]" in joined
    assert "[Phase 3]" in joined
    assert "[Done]" in joined
