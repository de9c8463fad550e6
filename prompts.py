"""
prompts.py — Level-specific prompts for each level of the book hierarchy.

Every prompt asks for the same response shape: an optional reasoning region
and a final answer region, both wrapped in level-specific markers, or the
bare word "null" when the input is not substantive body text. See
responses.py for how those payloads are parsed.
"""

from __future__ import annotations
from typing import Optional


SYSTEM_PROMPT = "You are a precise summarizer that maintains accuracy while being concise."

_NON_SUBSTANTIVE = "an acknowledgment, table of contents, references, copyright page, or something similar"


def _response_format(level: str) -> str:
    return f"""Respond in exactly this format:
<{level}_analysis>
Your brief reasoning about the text (main points, whether it is substantive).
</{level}_analysis>
<{level}_summary>
The summary only.
</{level}_summary>

If the text is not substantive body content, respond with the single word null and nothing else."""


# ---------------------------------------------------------------------------
# Paragraph level
# ---------------------------------------------------------------------------

def paragraph_prompt(*, text: str) -> str:
    return f"""You are an expert summarizer with a talent for distilling complex information into concise, accurate statements. Your task is to create a one-sentence summary of the following text.

<input_text>
{text}
</input_text>

Please follow these steps:
1. Carefully read and analyze the input text.
2. Determine if the text contains substantive body content. It does not if it is {_NON_SUBSTANTIVE}.
3. If it does, identify the main point and key information.
4. Write exactly one sentence that captures the essence of the text.
5. Do not say "This paragraph" or "In this paragraph"; state the content as if from the author themselves.

{_response_format("paragraph")}"""


# ---------------------------------------------------------------------------
# Chapter level
# ---------------------------------------------------------------------------

def chapter_prompt(
    *,
    text: str,
    title: Optional[str] = None,
    book_summary: Optional[str] = None,
    paragraph_summaries: Optional[list[str]] = None,
    excluded_sections: Optional[list[str]] = None,
) -> str:
    title_ctx = f"\nChapter title: {title}" if title else ""

    book_ctx = ""
    if book_summary:
        book_ctx = f"""
The chapter belongs to a book summarized as follows. Use it to place the chapter in context, but summarize the chapter itself:
<book_summary>
{book_summary}
</book_summary>
"""

    para_ctx = ""
    if paragraph_summaries:
        para_block = "\n".join(f"- {s}" for s in paragraph_summaries)
        para_ctx = f"""
One-sentence summaries of the chapter's paragraphs, in order:
<paragraph_summaries>
{para_block}
</paragraph_summaries>
"""

    excluded_ctx = ""
    if excluded_sections:
        excluded_ctx = (
            "\nThese sections were judged non-substantive and should be ignored: "
            + ", ".join(excluded_sections) + "\n"
        )

    return f"""You are an expert summarizer specializing in comprehensive chapter analysis. Your task is to create a detailed summary of the following chapter.{title_ctx}
{book_ctx}{para_ctx}{excluded_ctx}
<input_text>
{text}
</input_text>

Please follow these steps:
1. Carefully read and analyze the chapter content.
2. Determine if the chapter contains substantive body content. It does not if it is {_NON_SUBSTANTIVE}.
3. Identify major themes, key arguments, and their connections.
4. Write a summary of approximately 75 words that maintains narrative flow.
5. Do not preface the summary with a title or heading.
6. Do not say "This chapter" or "In this chapter"; state the content as if from the author themselves.

{_response_format("chapter")}"""


# ---------------------------------------------------------------------------
# Book level
# ---------------------------------------------------------------------------

def book_prompt(
    *,
    text: str,
    title: Optional[str] = None,
    author: Optional[str] = None,
    from_chapter_summaries: bool = False,
    excluded_sections: Optional[list[str]] = None,
) -> str:
    header = ""
    if title:
        header += f"\nBook title: {title}"
    if author:
        header += f"\nAuthor: {author}"

    source_desc = (
        "the following chapter summaries, which together cover the whole book"
        if from_chapter_summaries
        else "the following book"
    )

    excluded_ctx = ""
    if excluded_sections:
        excluded_ctx = (
            "\nThese sections were judged non-substantive and are not included: "
            + ", ".join(excluded_sections) + "\n"
        )

    return f"""You are an expert summarizer specializing in comprehensive book analysis. Your task is to create a detailed summary of the book from {source_desc}.{header}
{excluded_ctx}
<input_text>
{text}
</input_text>

Please follow these steps:
1. Carefully read and analyze the content.
2. Determine if it contains substantive body text.
3. Identify the main themes, arguments, and conclusions.
4. Write a summary of approximately 150 words that captures the book's progression, key supporting evidence, and significant conclusions.
5. Do not preface the summary with a title or heading.
6. Do not say "This book" or "In this book"; state the content as if from the author themselves.

{_response_format("book")}"""


# ---------------------------------------------------------------------------
# Body-text class classification
# ---------------------------------------------------------------------------

def body_class_prompt(*, samples: dict[str, str]) -> str:
    rows = "\n".join(f'- "{cls}": {sample[:160]!r}' for cls, sample in samples.items())
    return f"""Below are the CSS class names used in an ebook's markup, each with a sample of the text it wraps.

{rows}

Identify which classes mark ordinary body-text paragraphs (the running prose of the book), as opposed to headings, captions, footnotes, navigation, page numbers, or decoration.
Return ONLY a JSON array of class name strings, e.g. ["body", "para-indent"]. Return [] if none qualify."""
