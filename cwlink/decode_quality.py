"""
Helpers for cleaning noisy CW decode output and scoring confidence.
"""

from __future__ import annotations

import re
from enum import Enum


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_NON_PRINTABLE = re.compile(r"[^\x20-\x7E]+")
_HEAVY_PUNCTUATION_RUN = re.compile(r"[=~*#]{2,}")
_NOISE_TOKEN = re.compile(r"(?<!\S)[=~*#@]{2,}(?!\S)")
_QUESTION_RUN = re.compile(r"\?{3,}")
_UNCERTAIN = re.compile(r"[?=~*#]")
_WHITESPACE_RUN = re.compile(r"\s+")

HIGH_CONFIDENCE_RATIO = 0.05
MEDIUM_CONFIDENCE_RATIO = 0.2


def filter_decode_noise(text: str) -> str:
    """Best-effort cleanup of common fldigi noise bursts, keeping real CW content"""
    cleaned = text.upper()
    cleaned = _NON_PRINTABLE.sub(" ", cleaned)
    cleaned = _HEAVY_PUNCTUATION_RUN.sub(" ", cleaned)
    cleaned = _NOISE_TOKEN.sub(" ", cleaned)
    cleaned = _QUESTION_RUN.sub(" ? ", cleaned)
    return _WHITESPACE_RUN.sub(" ", cleaned).strip()


def score_message_confidence(text: str) -> Confidence:
    """Confidence of a whole decoded message from its share of uncertain characters"""
    visible = _WHITESPACE_RUN.sub("", text)
    if not visible:
        return Confidence.LOW

    ratio = len(_UNCERTAIN.findall(visible)) / len(visible)
    if ratio <= HIGH_CONFIDENCE_RATIO:
        return Confidence.HIGH
    if ratio <= MEDIUM_CONFIDENCE_RATIO:
        return Confidence.MEDIUM
    return Confidence.LOW
