#!/usr/bin/env python3
"""
book_summarizer.py — CLI entry point.

Usage:
    # Summarize an EPUB; writes <title>-summaries.json and prints a report
    python book_summarizer.py book.epub

    # Save the markdown report and the export to explicit paths
    python book_summarizer.py book.epub --output report.md --export book.json

    # Resume from (or re-render) a previous export; cached nodes cost nothing
    python book_summarizer.py --import book.json

    # Let the model pick body-text CSS classes before extraction
    python book_summarizer.py book.epub --classify-classes

    # Lower the number of concurrent API calls
    python book_summarizer.py book.epub --max-concurrent 4

Environment:
    ANTHROPIC_API_KEY       — required (or pass --api-key)
    BOOK_SUMMARIZER_MODEL   — optional, one model for every level (or pass --model)
"""

from __future__ import annotations
import argparse
import asyncio
import os
import re
import sys
import time
from pathlib import Path
from typing import Optional

from agents import Summarizer
from cache import SummaryCache
from epub_parser import Book, EpubStructurer
from errors import ContainerError, ImportFormatError, PipelineError
from export import export_state, import_state, load_export, save_export
from orchestrator import BookOrchestrator, RunResult


def build_markdown_report(result: RunResult) -> str:
    book = result.book
    stats = result.stats
    lines = [
        f"# Book Summary: {book.title}",
        "",
    ]
    if book.metadata.get("creator"):
        lines += [f"*by {book.metadata['creator']}*", ""]
    lines += [
        f"*{stats['chapters']} chapters | {stats['paragraphs']} paragraphs | "
        f"strategy: {result.strategy}*",
        "",
        "---",
        "",
        book.summary or "*No substantive body text found.*",
        "",
        "---",
        "",
        "## Chapters",
        "",
    ]

    for chapter in book.chapters:
        lines.append(f"### {chapter.title}")
        lines.append("")
        lines.append(chapter.summary or "")
        lines.append("")
        for p in chapter.paragraphs:
            if p.summary:
                lines.append(f"- {p.summary}")
        lines.append("")

    lines += [
        "---", "", "## Run Stats", "",
        f"- Generation calls: {stats['generation_calls']}",
        f"- Cache hits: {stats['cache_hits']}",
        f"- Pruned chapters: {stats['pruned_chapters']}",
        f"- Pruned paragraphs: {stats['pruned_paragraphs']}",
        f"- Absorbed errors: {stats['errors']}",
    ]
    return "\n".join(lines)


def default_export_path(book: Book) -> Path:
    stem = re.sub(r"[^\w\-. ]+", "", book.title).strip() or "book"
    return Path(f"{stem}-summaries.json")


async def load_book(
    args: argparse.Namespace,
    summarizer: Summarizer,
    cache: SummaryCache,
) -> Book:
    if args.import_path is not None:
        print(f"\n📥 Importing {args.import_path}", flush=True)
        return import_state(load_export(args.import_path), cache)

    data = args.target.read_bytes()
    structurer = EpubStructurer(data, args.target.name, verbose=args.verbose)

    body_classes: Optional[list[str]] = None
    if args.classify_classes:
        samples = structurer.class_samples(args.max_classes)
        body_classes = await summarizer.identify_body_classes(samples)
        if args.verbose:
            print(f"  Body-text classes: {body_classes or 'none (using <p> tags)'}", flush=True)

    book = structurer.structure(body_classes)
    if structurer.errors:
        print(f"⚠️  {len(structurer.errors)} content items could not be read", file=sys.stderr)
    return book


async def main():
    parser = argparse.ArgumentParser(
        description="Summarize an EPUB at every level: book, chapters and paragraphs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("target", type=Path, nargs="?", default=None,
                        help="EPUB file to summarize")
    parser.add_argument("--import", dest="import_path", type=Path, default=None,
                        help="Load structure and summaries from a previous export instead of an EPUB")
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Write markdown report to this file")
    parser.add_argument("--export", dest="export_path", type=Path, default=None,
                        help="Write the JSON export here (default: <title>-summaries.json)")
    parser.add_argument("--api-key", default=None,
                        help="Anthropic API key (default: ANTHROPIC_API_KEY env var)")
    parser.add_argument("--model", default=None,
                        help="Use one model for every level (default: BOOK_SUMMARIZER_MODEL or per-level defaults)")
    parser.add_argument("--max-concurrent", type=int, default=8,
                        help="Max concurrent API calls (default: 8)")
    parser.add_argument("--classify-classes", action="store_true",
                        help="Ask the model which CSS classes hold body text before extraction")
    parser.add_argument("--max-classes", type=int, default=40,
                        help="Max class samples sent for classification (default: 40)")
    parser.add_argument("--summary-only", action="store_true",
                        help="Print only the book-level summary")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Print progress for each phase and node")

    args = parser.parse_args()

    if args.target is None and args.import_path is None:
        parser.error("either an EPUB path or --import is required")
    if args.target is not None and not args.target.exists():
        print(f"Error: Path does not exist: {args.target}", file=sys.stderr)
        sys.exit(1)

    api_key = args.api_key or os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        print("Error: ANTHROPIC_API_KEY environment variable not set.", file=sys.stderr)
        sys.exit(1)
    model = args.model or os.environ.get("BOOK_SUMMARIZER_MODEL")

    summarizer = Summarizer(
        api_key=api_key,
        model=model,
        max_concurrent=args.max_concurrent,
        verbose=args.verbose,
    )
    cache = SummaryCache()

    start = time.time()
    try:
        book = await load_book(args, summarizer, cache)
    except (ContainerError, ImportFormatError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"\n📚 Book Summarizer — `{book.title}`", flush=True)

    last_pct = -1

    def report_progress(fraction: float):
        nonlocal last_pct
        pct = int(fraction * 100)
        if pct // 10 > last_pct // 10 or pct == 100:
            print(f"  Progress: {pct}%", flush=True)
        last_pct = pct

    orchestrator = BookOrchestrator(
        summarizer=summarizer,
        cache=cache,
        max_concurrent=args.max_concurrent,
        verbose=args.verbose,
        on_progress=report_progress,
    )

    try:
        result = await orchestrator.run(book)
    except PipelineError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    elapsed = time.time() - start
    print(f"\n✅ Complete in {elapsed:.1f}s\n", flush=True)

    export_path = args.export_path or default_export_path(result.book)
    save_export(export_path, export_state(result.book, cache))
    print(f"📊 Export written to: {export_path}")

    if args.summary_only:
        output_text = result.book.summary or ""
    else:
        output_text = build_markdown_report(result)

    if args.output:
        args.output.write_text(output_text)
        print(f"📄 Report written to: {args.output}")
    else:
        print("\n" + "=" * 80)
        print(output_text)

    if result.errors:
        print(f"\n⚠️  {len(result.errors)} nodes fell back to placeholder summaries", file=sys.stderr)
    print(f"\n💰 {summarizer.tracker.report()}")


def run_cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run_cli()
