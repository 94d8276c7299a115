"""Compaction engine: fit an unbounded context history into a token budget."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .models import ContextEntry, EntryType
from .telemetry import trace_compaction
from .tokens import CHARS_PER_TOKEN, estimate_tokens

DEFAULT_THRESHOLD_TOKENS = 4000
DEFAULT_BUDGET_TOKENS = 2500

# Per-item character caps inside the digest
DECISION_CHARS = 200
PREFERENCE_CHARS = 150
CODE_CHARS = 300
NOTE_CHARS = 100

MAX_RECENT_SUMMARIES = 3
MAX_RECENT_CODE = 2
MAX_RECENT_NOTES = 5

# Notes are only added while the digest is below this share of the budget.
NOTES_FILL_RATIO = 0.9

_KEY_PHRASES = (
    "decided",
    "choose",
    "will use",
    "implemented",
    "created",
    "todo",
    "fixme",
    "important",
    "key",
    "main",
    "problem",
    "solution",
)
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_MIN_SENTENCE_CHARS = 20

Extractor = Callable[[str], str]


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def truncate(text: str, max_length: int) -> str:
    """Cut *text* to *max_length* characters, ending in ``...`` when shortened."""
    if len(text) <= max_length:
        return text
    if max_length < 3:
        return text[: max(max_length, 0)]
    return text[: max_length - 3] + "..."


def extract_main_points(text: str) -> str:
    """Keep the sentences that carry decisions or actions.

    Up to three sentences mentioning a key phrase ("decided", "implemented",
    "TODO", ...) are kept; otherwise the first two sentences.  Text without
    any sentence longer than 20 characters is returned truncated instead.
    """
    sentences = [
        s.strip() for s in _SENTENCE_SPLIT.split(text) if len(s.strip()) > _MIN_SENTENCE_CHARS
    ]
    if not sentences:
        return truncate(text.strip(), DECISION_CHARS)

    important = [s for s in sentences if any(p in s.lower() for p in _KEY_PHRASES)]
    chosen = important[:3] if important else sentences[:2]
    return ". ".join(chosen) + "."


def _source_prefix(entry: ContextEntry) -> str:
    return f"[{entry.source_llm}] " if entry.source_llm else ""


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class CompactionResult:
    """Outcome of :meth:`Compactor.compact`."""

    content: str
    original_tokens: int
    summary_tokens: int
    compression_ratio: float
    summarized: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "originalTokens": self.original_tokens,
            "summaryTokens": self.summary_tokens,
            "compressionRatio": self.compression_ratio,
            "summarized": self.summarized,
        }


# ---------------------------------------------------------------------------
# Digest builder
# ---------------------------------------------------------------------------


class _Digest:
    """Appends sections while the running estimate stays within budget."""

    def __init__(self, budget: int) -> None:
        self.budget = budget
        self.text = ""

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.text)

    def _fits(self, piece: str) -> bool:
        return estimate_tokens(self.text + piece) <= self.budget

    def add_section(
        self,
        title: str,
        items: list[ContextEntry],
        formatter: Callable[[ContextEntry], str],
    ) -> None:
        if not items or self.tokens >= self.budget:
            return
        header = f"# {title}\n\n"
        if not self._fits(header):
            return
        self.text += header
        for item in items:
            line = formatter(item)
            if not self._fits(line):
                break
            self.text += line
        if self._fits("\n"):
            self.text += "\n"


# ---------------------------------------------------------------------------
# Compactor
# ---------------------------------------------------------------------------


def _group_by_type(entries: Iterable[ContextEntry]) -> dict[EntryType, list[ContextEntry]]:
    grouped: dict[EntryType, list[ContextEntry]] = {t: [] for t in EntryType}
    for entry in entries:
        grouped[entry.entry_type].append(entry)
    return grouped


class Compactor:
    """Decides when to compact and produces budget-bounded digests.

    The compactor is stateless; entries are passed in on every call.
    """

    def __init__(
        self,
        threshold_tokens: int = DEFAULT_THRESHOLD_TOKENS,
        default_budget: int = DEFAULT_BUDGET_TOKENS,
        extractor: Extractor = extract_main_points,
    ) -> None:
        self._threshold = threshold_tokens
        self._default_budget = default_budget
        self._extractor = extractor

    @property
    def default_budget(self) -> int:
        return self._default_budget

    def should_compact(
        self,
        entries: list[ContextEntry],
        source_llm: str | None = None,
        target_llm: str | None = None,
        budget: int | None = None,  # noqa: ARG002
    ) -> bool:
        """True on a cross-assistant handoff or when stored tokens exceed the threshold.

        A handoff compacts regardless of size.  *budget* does not take part
        in the decision; it is accepted so callers can pass their request
        through unchanged.
        """
        if source_llm and target_llm and source_llm != target_llm:
            return True
        total = sum(e.token_count for e in entries)
        return total > self._threshold

    def render_full(self, entries: list[ContextEntry]) -> str:
        """Deterministic full rendering grouped by type, oldest first within a group."""
        grouped = _group_by_type(sorted(entries, key=lambda e: e.created_at))
        content = ""

        if grouped[EntryType.SUMMARY]:
            content += "# Previous Conversations\n\n"
            for e in grouped[EntryType.SUMMARY]:
                content += f"{_source_prefix(e)}{e.content}\n\n"

        if grouped[EntryType.DECISION]:
            content += "# Key Decisions\n\n"
            for e in grouped[EntryType.DECISION]:
                content += f"- {e.content}\n"
            content += "\n"

        if grouped[EntryType.CODE]:
            content += "# Code Snippets\n\n"
            for e in grouped[EntryType.CODE]:
                content += f"{e.content}\n\n"

        if grouped[EntryType.PREFERENCE]:
            content += "# User Preferences\n\n"
            for e in grouped[EntryType.PREFERENCE]:
                content += f"- {e.content}\n"
            content += "\n"

        if grouped[EntryType.NOTE]:
            content += "# Notes\n\n"
            for e in grouped[EntryType.NOTE]:
                content += f"- {e.content}\n"
            content += "\n"

        return content.strip()

    def compact(self, entries: list[ContextEntry], budget: int | None = None) -> CompactionResult:
        """Return the full rendering if it fits *budget*, otherwise a digest."""
        target = self._default_budget if budget is None else budget
        if target < 0:
            msg = "budget must be non-negative"
            raise ValueError(msg)

        with trace_compaction(len(entries), target):
            full = self.render_full(entries)
            original_tokens = estimate_tokens(full)

            if original_tokens <= target:
                return CompactionResult(
                    content=full,
                    original_tokens=original_tokens,
                    summary_tokens=original_tokens,
                    compression_ratio=1.0,
                    summarized=False,
                )

            digest = self._digest(entries, target)
            summary_tokens = estimate_tokens(digest)
            return CompactionResult(
                content=digest,
                original_tokens=original_tokens,
                summary_tokens=summary_tokens,
                compression_ratio=summary_tokens / original_tokens,
                summarized=True,
            )

    def _digest(self, entries: list[ContextEntry], budget: int) -> str:
        newest = sorted(entries, key=lambda e: e.created_at, reverse=True)
        grouped = _group_by_type(newest)
        digest = _Digest(budget)

        digest.add_section(
            "Key Decisions",
            grouped[EntryType.DECISION],
            lambda e: f"- {truncate(e.content, DECISION_CHARS)}\n",
        )
        digest.add_section(
            "User Preferences",
            grouped[EntryType.PREFERENCE],
            lambda e: f"- {truncate(e.content, PREFERENCE_CHARS)}\n",
        )
        digest.add_section(
            "Recent Conversations",
            grouped[EntryType.SUMMARY][:MAX_RECENT_SUMMARIES],
            lambda e: f"{_source_prefix(e)}{self._extractor(e.content)}\n\n",
        )
        digest.add_section(
            "Recent Code",
            grouped[EntryType.CODE][:MAX_RECENT_CODE],
            lambda e: f"{truncate(e.content, CODE_CHARS)}\n\n",
        )
        if digest.tokens < budget * NOTES_FILL_RATIO:
            digest.add_section(
                "Notes & TODOs",
                grouped[EntryType.NOTE][:MAX_RECENT_NOTES],
                lambda e: f"- {truncate(e.content, NOTE_CHARS)}\n",
            )

        text = digest.text.strip()
        if text:
            return text
        latest = newest[0].content if newest else "No context available"
        return truncate(latest, budget * CHARS_PER_TOKEN)
