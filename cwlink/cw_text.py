"""
Outbound CW text helpers: sanitize, then format.

sanitize_for_cw() restricts text to what Morse can actually send.
format_for_cw() adds station addressing and a closing prosign chosen by
the intent of the transmission. Sanitize first; format assumes clean,
upper-case input.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional

from cwlink.prosigns import CLOSING_PROSIGNS, Prosign, ends_with_prosign


# Characters with a Morse representation (after upper-casing)
VALID_CW_CHARS = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789 .,?!'\"/()&:;=+-_@")

_WHITESPACE_RUN = re.compile(r"\s+")


class TxIntent(Enum):
    """Why we are transmitting; selects addressing and the closing prosign"""
    CQ = "cq"            # calling any station, ends with K
    REPLY = "reply"      # normal turn in a contact, ends with KN
    SIGNOFF = "signoff"  # last transmission of a contact, ends with SK
    DEFAULT = "default"  # unknown, ends with KN


CLOSING_PROSIGN = {
    TxIntent.CQ: Prosign.K,
    TxIntent.REPLY: Prosign.KN,
    TxIntent.SIGNOFF: Prosign.SK,
    TxIntent.DEFAULT: Prosign.KN,
}


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RUN.sub(" ", text).strip()


def sanitize_for_cw(text: str) -> str:
    """
    Make text sendable as Morse.

    Upper-cases, drops every character without a Morse representation,
    and collapses/trims whitespace. May return "".

    >>> sanitize_for_cw("hello™ world®")
    'HELLO WORLD'
    """
    upper = collapse_whitespace(text).upper()
    kept = "".join(ch for ch in upper if ch in VALID_CW_CHARS)
    return collapse_whitespace(kept)


def format_for_cw(text: str, intent: TxIntent, own_call: str,
                  peer_call: Optional[str] = None) -> str:
    """
    Wrap sanitized text with addressing and a closing prosign.

    Parameters
    ----------
    text : str
        Output of sanitize_for_cw().
    intent : TxIntent
        CQ appends "DE <own_call>" unless already present. Every other
        intent prepends "<peer_call> DE <own_call>" when a peer is known
        and the text does not already start with it.
    own_call : str
        This station's callsign.
    peer_call : str, optional
        The other station. Ignored for CQ.

    The closing prosign for the intent is appended unless the text
    already ends in any closing prosign.
    """
    result = text

    if intent is TxIntent.CQ:
        de_own = f"DE {own_call}"
        if de_own not in result:
            result = f"{result} {de_own}"
    elif peer_call:
        addressing = f"{peer_call} DE {own_call}"
        if not result.startswith(addressing):
            result = f"{addressing} {result}"

    if ends_with_prosign(result, CLOSING_PROSIGNS) is None:
        result = f"{result} {CLOSING_PROSIGN[intent].value}"

    return result.strip()


def append_identification(text: str, own_call: str) -> str:
    """Station identification suffix required at regular intervals"""
    return f"{text} DE {own_call}"
