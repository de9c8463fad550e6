"""
agents.py — Async generation client for each summarization level.

Design:
- Paragraph and chapter prompts use claude-haiku-4-5 — cheap, fast, fanned out heavily
- Book prompts use claude-sonnet-4-6 — needs more synthesis ability
- A single `model` override applies one model to every level

Failures are translated at this boundary so callers never see raw API
exceptions: an over-long input becomes SizeLimitExceeded, everything else
becomes GenerationError. Rate limits are waited out a bounded number of times.
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
import json
import re
from typing import Any, Optional

import anthropic

from errors import GenerationError, SizeLimitExceeded
from prompts import SYSTEM_PROMPT, body_class_prompt, book_prompt, chapter_prompt, paragraph_prompt
from responses import LEVELS


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

HAIKU  = "claude-haiku-4-5-20251001"
SONNET = "claude-sonnet-4-6"

LEVEL_MODELS = {
    "paragraph": HAIKU,
    "chapter": HAIKU,
    "book": SONNET,
}

LEVEL_MAX_TOKENS = {
    "paragraph": 250,
    "chapter": 750,
    "book": 1000,
}

_SIZE_LIMIT_HINTS = (
    "prompt is too long",
    "too many tokens",
    "context window",
    "context length",
    "maximum context",
    "request too large",
)


# Approximate (input, output) USD per million tokens; unknown models are priced as sonnet
MODEL_PRICES = {
    HAIKU: (0.80, 4.00),
    SONNET: (3.00, 15.00),
}


@dataclass
class CostTracker:
    input_tokens: int = 0
    output_tokens: int = 0
    api_calls: int = 0
    usd: float = 0.0

    def add(self, model: str, input_tok: int, output_tok: int):
        self.input_tokens += input_tok
        self.output_tokens += output_tok
        self.api_calls += 1
        price_in, price_out = MODEL_PRICES.get(model, MODEL_PRICES[SONNET])
        self.usd += (input_tok * price_in + output_tok * price_out) / 1_000_000

    def estimate_usd(self) -> float:
        return self.usd

    def report(self) -> str:
        return (
            f"API calls: {self.api_calls} | "
            f"Tokens in: {self.input_tokens:,} | Tokens out: {self.output_tokens:,} | "
            f"Est. cost: ~${self.estimate_usd():.3f}"
        )


@dataclass
class GenerationContext:
    prior_level_summary: Optional[str] = None
    excluded_sections: list[str] = field(default_factory=list)
    child_summaries: list[str] = field(default_factory=list)
    title: Optional[str] = None
    author: Optional[str] = None
    from_chapter_summaries: bool = False


def is_size_limit_error(e: anthropic.APIStatusError) -> bool:
    if e.status_code == 413:
        return True
    if e.status_code == 400:
        msg = str(e).lower()
        return any(hint in msg for hint in _SIZE_LIMIT_HINTS)
    return False


# ---------------------------------------------------------------------------
# Core LLM caller
# ---------------------------------------------------------------------------

class Summarizer:
    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
        model: Optional[str] = None,
        max_concurrent: int = 8,
        max_retries: int = 3,
        rate_limit_wait: float = 30.0,
        verbose: bool = False,
    ):
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)
        self.model = model
        self.semaphore = asyncio.Semaphore(max(1, max_concurrent))
        self.tracker = CostTracker()
        self.max_retries = max(0, max_retries)
        self.rate_limit_wait = rate_limit_wait
        self.verbose = verbose

    def model_for(self, level: str) -> str:
        return self.model or LEVEL_MODELS.get(level, HAIKU)

    async def _call(
        self,
        prompt: str,
        model: str,
        max_tokens: int = 512,
        layer: str = "unknown",
        system_prompt: Optional[str] = None,
    ) -> str:
        attempt = 0
        while True:
            try:
                async with self.semaphore:
                    request = dict(
                        model=model,
                        max_tokens=max_tokens,
                        messages=[{"role": "user", "content": prompt}],
                    )
                    if system_prompt is not None:
                        request["system"] = system_prompt

                    response = await self.client.messages.create(**request)
            except anthropic.RateLimitError as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise GenerationError(f"[{layer}] rate limited on {model}: {e}") from e
                if self.verbose:
                    print(f"  [{layer}] rate limited on {model}; retrying in {self.rate_limit_wait:.0f}s", flush=True)
                await asyncio.sleep(self.rate_limit_wait)
                continue
            except anthropic.APIStatusError as e:
                if is_size_limit_error(e):
                    raise SizeLimitExceeded(f"[{layer}] input exceeds the context budget of {model}: {e}") from e
                raise GenerationError(f"[{layer}] API error on {model}: {e}") from e
            except anthropic.APIError as e:
                raise GenerationError(f"[{layer}] API error on {model}: {e}") from e

            self.tracker.add(
                model,
                response.usage.input_tokens,
                response.usage.output_tokens,
            )
            chunks = [
                getattr(block, "text", "")
                for block in response.content
                if getattr(block, "type", "text") == "text"
            ]
            text = "".join(chunks).strip()
            if not text:
                raise GenerationError(f"[{layer}] empty response from {model}")
            return text

    # -----------------------------------------------------------------------
    # Generation capability
    # -----------------------------------------------------------------------

    @staticmethod
    def build_prompt(text: str, level: str, context: Optional[GenerationContext] = None) -> str:
        ctx = context or GenerationContext()
        if level == "paragraph":
            return paragraph_prompt(text=text)
        if level == "chapter":
            return chapter_prompt(
                text=text,
                title=ctx.title,
                book_summary=ctx.prior_level_summary,
                paragraph_summaries=ctx.child_summaries or None,
                excluded_sections=ctx.excluded_sections or None,
            )
        if level == "book":
            return book_prompt(
                text=text,
                title=ctx.title,
                author=ctx.author,
                from_chapter_summaries=ctx.from_chapter_summaries,
                excluded_sections=ctx.excluded_sections or None,
            )
        raise ValueError(f"Unknown level: {level}")

    async def generate(
        self,
        text: str,
        level: str,
        context: Optional[GenerationContext] = None,
    ) -> str:
        """Return the raw payload for `text` at `level`.

        Raises SizeLimitExceeded when the input does not fit the model's
        context, GenerationError for any other failure.
        """
        if level not in LEVELS:
            raise ValueError(f"Unknown level: {level}")
        prompt = self.build_prompt(text, level, context)
        if self.verbose:
            label = f" `{context.title}`" if context and context.title else ""
            print(f"  {level}{label} ({len(text):,} chars)", flush=True)
        return await self._call(
            prompt,
            model=self.model_for(level),
            max_tokens=LEVEL_MAX_TOKENS[level],
            layer=level,
            system_prompt=SYSTEM_PROMPT,
        )

    # -----------------------------------------------------------------------
    # Body-text class classification
    # -----------------------------------------------------------------------

    @staticmethod
    def _parse_class_list(text: str) -> Optional[list[str]]:
        cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", text.strip())
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, list) or not all(isinstance(s, str) for s in parsed):
            return None
        return parsed

    async def identify_body_classes(self, samples: dict[str, str]) -> Optional[list[str]]:
        """Ask which classes mark body text. None means "use plain <p> extraction"."""
        if not samples:
            return None
        try:
            text = await self._call(
                body_class_prompt(samples=samples),
                model=self.model or HAIKU,
                max_tokens=300,
                layer="classes",
            )
        except (GenerationError, SizeLimitExceeded) as e:
            if self.verbose:
                print(f"  [classes] classification failed: {e}", flush=True)
            return None

        parsed = self._parse_class_list(text)
        if parsed is None:
            if self.verbose:
                print("  [classes] response was not a JSON array of class names", flush=True)
            return None
        known = [c for c in parsed if c in samples]
        return known or None
