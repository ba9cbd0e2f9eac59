"""
Element re-resolution.

When a step's target id has gone stale (the page re-rendered), look for the
element that best matches the step's textual description in a fresh snapshot.
Scoring is plain word overlap:

  +10  element text contains a description word
  +5   link destination contains a description word
  +3   structural context contains a description word
  +8   element text contains an expected-result word
  +4   link destination contains an expected-result word
"""

from __future__ import annotations

import json

from tabpilot.state import PageElement

GENERIC_WORDS = {"link", "click", "button", "article", "page", "library"}
NAV_BOILERPLATE = {"home", "library", "coaching", "freebies", "search"}
MIN_WORD_LENGTH = 5
MIN_TEXT_LENGTH = 5


def _significant_words(text: str | None, exclude: set[str] = frozenset()) -> list[str]:
    if not text:
        return []
    return [
        w for w in text.lower().split()
        if len(w) >= MIN_WORD_LENGTH and w not in exclude
    ]


def score_element(
    element: PageElement,
    description_words: list[str],
    expected_words: list[str],
) -> int:
    text = (element.text or "").lower()
    href = (element.href or "").lower()

    # Looking for content links, not chrome
    if element.tag == "button" or len(text) < MIN_TEXT_LENGTH:
        return 0
    if text.strip() in NAV_BOILERPLATE:
        return 0

    score = 0
    for word in description_words:
        if word in text:
            score += 10
        if word in href:
            score += 5

    if element.context:
        context = json.dumps(element.context, default=str).lower()
        for word in description_words:
            if word in context:
                score += 3

    for word in expected_words:
        if word in text:
            score += 8
        if word in href:
            score += 4

    return score


def find_best_match(
    elements: list[PageElement],
    target_description: str | None,
    expected_result: str | None = None,
) -> tuple[PageElement | None, int]:
    """Return the highest-scoring element and its score; (None, 0) when nothing matches."""
    description_words = _significant_words(target_description, GENERIC_WORDS)
    expected_words = _significant_words(expected_result)

    best: PageElement | None = None
    best_score = 0
    for element in elements:
        score = score_element(element, description_words, expected_words)
        if score > best_score:
            best, best_score = element, score
    return best, best_score
