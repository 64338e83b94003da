"""Fuzzy matching of purchases against a free-text query."""
import logging
import re
import unicodedata
from typing import Iterable, List, Union

from rapidfuzz import fuzz

from .entities import Purchase
from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.6
MIN_QUERY_LENGTH = 4

_PUNCTUATION = re.compile(r"[.,]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, strip accents and treat ``.``/``,`` as word separators."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    without_accents = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _PUNCTUATION.sub(" ", without_accents).strip()


def similarity(first: str, second: str) -> float:
    """Normalized edit similarity between 0 and 1."""
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    return fuzz.ratio(first, second) / 100.0


def fuzzy_match(query: str, text: str, threshold: float = DEFAULT_THRESHOLD) -> bool:
    """Match if the query is a substring, or every query word is close to some text word."""
    if not query or not text:
        return False

    normalized_query = normalize_text(query)
    normalized_text = normalize_text(text)

    if normalized_query in normalized_text:
        return True

    query_words = [w for w in _WHITESPACE.split(normalized_query) if w]
    text_words = [w for w in _WHITESPACE.split(normalized_text) if w]

    return all(
        any(similarity(q_word, t_word) >= threshold for t_word in text_words)
        for q_word in query_words
    )


def fuzzy_search_fields(
    query: str,
    fields: Iterable[Union[str, float, int, None]],
    threshold: float = DEFAULT_THRESHOLD,
) -> bool:
    return any(
        fuzzy_match(query, str(value), threshold) for value in fields if value is not None
    )


def search_purchases(purchases: Iterable[Purchase], query: str) -> List[str]:
    """Ids of matching purchases, newest first.

    Raises:
        ValidationError: if the query is shorter than ``MIN_QUERY_LENGTH``
    """
    if len(query.strip()) < MIN_QUERY_LENGTH:
        raise ValidationError(
            f"Query must be at least {MIN_QUERY_LENGTH} characters long", fields=["query"]
        )
    matches = [
        purchase
        for purchase in purchases
        if fuzzy_search_fields(
            query,
            (
                purchase.order,
                purchase.description,
                purchase.amount,
                purchase.date.isoformat(),
                purchase.screenshot_summary,
            ),
        )
    ]
    matches.sort(key=lambda p: p.date, reverse=True)
    logger.debug(f"Fuzzy search '{query}' matched {len(matches)} purchases")
    return [purchase.id for purchase in matches]
