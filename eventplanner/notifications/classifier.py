"""
Keyword classification of free-text approval replies.

Short exact replies are decided first, then hedging words, multi-word
phrases, and finally single keywords on word boundaries. A reply that carries
both approve and reject signals is unclear.
"""

import re
from typing import Optional

from eventplanner.models import Channel, ResponseClassification

EXACT_APPROVE = frozenset({"yes", "y", "1", "ok"})
EXACT_REJECT = frozenset({"no", "n", "0"})

AMBIGUOUS_WORDS = ("maybe", "perhaps", "possibly", "might", "not sure", "hmm", "dunno")
REJECT_PHRASES = ("not interested", "not now", "next time", "not this time", "maybe later", "no thanks", "not really")
APPROVE_PHRASES = ("sounds good", "sure thing", "do it", "lets do it", "let's do it", "love it", "want it",
                   "sign us up", "count me in")

APPROVE_KEYWORDS = ("yes", "y", "yeah", "yep", "yup", "sure", "ok", "okay", "good", "great", "perfect",
                    "awesome", "approve", "book", "register", "go", "accept")
REJECT_KEYWORDS = ("no", "n", "nope", "nah", "pass", "skip", "reject", "decline")
# cancel replies classify as rejected
CANCEL_KEYWORDS = ("cancel", "cancelled", "abort")

_REPLY_HEADER = re.compile(r"^On .+ wrote:\s*$")


def _keyword_pattern(words) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(word) for word in words) + r")\b")


_APPROVE_RE = _keyword_pattern(APPROVE_KEYWORDS)
_REJECT_RE = _keyword_pattern(REJECT_KEYWORDS)
_CANCEL_RE = _keyword_pattern(CANCEL_KEYWORDS)
_AMBIGUOUS_RE = _keyword_pattern(AMBIGUOUS_WORDS)


def clean_email_body(body: str) -> str:
    """Strips quoted history, reply headers and signatures; keeps the first three lines."""
    kept = []
    for line in (body or "").splitlines():
        stripped = line.strip()
        if stripped.startswith("--") or stripped.lower().startswith("sent from my"):
            break
        if _REPLY_HEADER.match(stripped):
            break
        if stripped.startswith(">") or not stripped:
            continue
        kept.append(stripped)
    return "\n".join(kept[:3])


def _normalize(text: str) -> str:
    text = text.lower().strip()
    text = re.sub(r"[^\w\s']", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def classify_response(text: Optional[str], channel: str = Channel.SMS.value) -> ResponseClassification:
    if channel == Channel.EMAIL:
        text = clean_email_body(text or "")
    normalized = _normalize(text or "")
    if not normalized:
        return ResponseClassification.UNCLEAR

    if normalized in EXACT_APPROVE:
        return ResponseClassification.APPROVED
    if normalized in EXACT_REJECT:
        return ResponseClassification.REJECTED

    if any(phrase in normalized for phrase in REJECT_PHRASES):
        return ResponseClassification.REJECTED
    if _AMBIGUOUS_RE.search(normalized):
        return ResponseClassification.UNCLEAR
    if any(phrase in normalized for phrase in APPROVE_PHRASES):
        return ResponseClassification.APPROVED

    approve = bool(_APPROVE_RE.search(normalized))
    reject = bool(_REJECT_RE.search(normalized)) or bool(_CANCEL_RE.search(normalized))
    if approve and reject:
        return ResponseClassification.UNCLEAR
    if approve:
        return ResponseClassification.APPROVED
    if reject:
        return ResponseClassification.REJECTED
    return ResponseClassification.UNCLEAR
