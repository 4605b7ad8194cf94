"""
Content filtering for player-authored text.

Every chat line, direct message, mail and forum post passes through
:func:`filter_text` before it is stored. The filter is stateless; the
same input always produces the same output.

Stages, in order:

1. Profanity masking: whole-word, case-insensitive matches against
   :data:`BLOCKED_WORDS` are replaced with ``*`` of the same length.
2. Link stripping: tokens beginning with ``http://``, ``https://`` or
   ``www.`` become ``[link removed]``.
3. Spam heuristics: shouting (more than 70% of letters uppercase in a
   message longer than 10 characters) is lowercased, and runs of six or
   more identical characters collapse to three.
4. Leading and trailing whitespace is trimmed.

Callers decide what an empty result means; the services refuse it with
``EMPTY_AFTER_FILTER``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# Client wordlist plus the server-side spam terms
BLOCKED_WORDS: tuple[str, ...] = (
    "damn",
    "hell",
    "crap",
    "shit",
    "fuck",
    "ass",
    "bastard",
    "bitch",
    "spam",
    "scam",
    "hack",
)

LINK_REPLACEMENT = "[link removed]"

CAPS_RATIO = 0.7
CAPS_MIN_LENGTH = 10
REPEAT_THRESHOLD = 6
REPEAT_COLLAPSE_TO = 3

_LINK_PATTERN = re.compile(r"(?:https?://|www\.)\S*", re.IGNORECASE)
_REPEAT_PATTERN = re.compile(r"(.)\1{%d,}" % (REPEAT_THRESHOLD - 1), re.DOTALL)


@dataclass(frozen=True, slots=True)
class FilterResult:
    """Filtered text and whether any stage changed it."""

    text: str
    was_filtered: bool


class ContentFilter:
    """Applies the filter stages with a configurable wordlist."""

    def __init__(self, words: tuple[str, ...] | list[str] = BLOCKED_WORDS) -> None:
        self.words = tuple(w.lower() for w in words if w)
        if self.words:
            alternation = "|".join(re.escape(w) for w in sorted(self.words, key=len, reverse=True))
            self._word_pattern: re.Pattern[str] | None = re.compile(
                rf"\b(?:{alternation})\b", re.IGNORECASE
            )
        else:
            self._word_pattern = None

    def apply(self, text: str) -> FilterResult:
        original = text
        text = self.mask_profanity(text)
        text = strip_links(text)
        text = collapse_shouting(text)
        text = collapse_repeats(text)
        text = text.strip()
        return FilterResult(text=text, was_filtered=text != original.strip())

    def mask_profanity(self, text: str) -> str:
        if self._word_pattern is None:
            return text
        return self._word_pattern.sub(lambda m: "*" * len(m.group(0)), text)


def strip_links(text: str) -> str:
    return _LINK_PATTERN.sub(LINK_REPLACEMENT, text)


def collapse_shouting(text: str) -> str:
    """Lowercase ``text`` when it is mostly capitals and longer than the minimum."""
    if len(text) <= CAPS_MIN_LENGTH:
        return text
    letters = [c for c in text if c.isalpha()]
    if not letters:
        return text
    upper = sum(1 for c in letters if c.isupper())
    if upper / len(letters) > CAPS_RATIO:
        return text.lower()
    return text


def collapse_repeats(text: str) -> str:
    return _REPEAT_PATTERN.sub(lambda m: m.group(1) * REPEAT_COLLAPSE_TO, text)


_default_filter = ContentFilter()


def filter_text(text: str) -> FilterResult:
    """Run the default filter over ``text``."""
    return _default_filter.apply(text)
