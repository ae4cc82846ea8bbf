"""
Procedural signals (prosigns) that control turn-taking on a CW contact.

One enumerated set, one matching function. The sentence buffer uses it
to decide when a received message is complete; the formatter uses it to
avoid appending a second closing signal to outbound text.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional


class Prosign(Enum):
    AR = "AR"  # end of message
    SK = "SK"  # end of contact
    KN = "KN"  # go ahead, named station only
    BK = "BK"  # break
    K = "K"    # go ahead, any station


# Multi-letter signals are listed before K so the longest match is reported
FLUSH_PROSIGNS = (Prosign.AR, Prosign.SK, Prosign.KN, Prosign.BK, Prosign.K)
CLOSING_PROSIGNS = (Prosign.KN, Prosign.SK, Prosign.AR, Prosign.BK, Prosign.K)


def ends_with_prosign(text: str, prosigns: Iterable[Prosign] = FLUSH_PROSIGNS) -> Optional[Prosign]:
    """
    Return the prosign `text` ends with, or None.

    A prosign only counts as a separate word: it must be preceded by
    whitespace, so the K at the end of "OK" or "PA3XYZK" never matches.
    Matching is case-insensitive. Trailing whitespace after the prosign
    is not stripped.
    """
    upper = text.upper()
    for prosign in prosigns:
        word = prosign.value
        if not upper.endswith(word):
            continue
        boundary = len(upper) - len(word) - 1
        if boundary >= 0 and upper[boundary].isspace():
            return prosign
    return None
