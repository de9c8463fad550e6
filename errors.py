"""
errors.py — Failure taxonomy for the structuring and summarization pipeline.

Container- and pipeline-level errors propagate to the caller. Per-item and
per-node errors are absorbed where they happen and recorded as placeholder
content, so a run always yields a navigable tree.
"""

from __future__ import annotations
from typing import Optional


class BookSummarizerError(Exception):
    pass


class ContainerError(BookSummarizerError):
    """No reading order could be recovered from the container."""


class ContentExtractionError(BookSummarizerError):
    """A single content item could not be loaded. Recoverable."""

    def __init__(self, ref: str, reason: Optional[str] = None):
        self.ref = ref
        self.reason = reason
        msg = f"Could not extract content for `{ref}`"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class GenerationError(BookSummarizerError):
    """A generation call failed or returned something unusable. Recoverable."""


class SizeLimitExceeded(BookSummarizerError):
    """The input is larger than the generation capability's context budget."""


class PipelineError(BookSummarizerError):
    """The pipeline could not complete, even after the bottom-up fallback."""


class ImportFormatError(BookSummarizerError):
    pass


class Cancelled(BookSummarizerError):
    pass
