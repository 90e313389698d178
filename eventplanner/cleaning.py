import html
import re
from typing import Optional

STOP_WORDS = frozenset({"the", "a", "an", "and", "or", "at", "in", "on", "for", "with", "by"})

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_whitespace(text: Optional[str]) -> Optional[str]:
    """
    Strips leading/trailing whitespace and collapses internal runs (spaces,
    tabs, newlines) to a single space. Returns None for None or blank input.
    """
    if text is None:
        return None
    text = _WHITESPACE.sub(' ', text.strip())
    return text if text else None


def clean_html_entities(text: Optional[str]) -> Optional[str]:
    """Converts HTML character entities (&amp;, &nbsp;, ...) to their Unicode characters."""
    if text is None:
        return None
    return html.unescape(text)


def clean_and_normalize_text(text: Optional[str]) -> Optional[str]:
    """HTML entity decoding followed by whitespace normalization."""
    if text is None:
        return None
    return normalize_whitespace(clean_html_entities(text))


def normalize_title(text: Optional[str]) -> str:
    """Lower-cased, punctuation-free, whitespace-collapsed form used in fingerprints."""
    if not text:
        return ""
    cleaned = clean_and_normalize_text(text) or ""
    cleaned = _PUNCTUATION.sub(' ', cleaned.lower())
    return normalize_whitespace(cleaned) or ""


def significant_words(text: Optional[str]) -> str:
    """normalize_title() with stop words dropped, for similarity scoring."""
    return " ".join(word for word in normalize_title(text).split() if word not in STOP_WORDS)
