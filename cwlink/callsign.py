"""
Amateur radio callsign extraction from decoded CW text.

Recognised forms:
- Standard: W1AW, PA3XYZ, VU2ABC, JA1ABC, 4X6TT, 9A1A
- Special event: GB13YOTA, II0IARU
- Portable/mobile: PA3XYZ/P, DL2ABC/MM, W1AW/4
- DX prefix: EA8/ON4UN
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

# 1-3 char prefix, one digit, 1-5 letter suffix
STANDARD_CALL = r"[A-Z0-9]{1,3}\d[A-Z]{1,5}"
# 1-2 letter prefix, two digits, 1-6 letter suffix
SPECIAL_EVENT_CALL = r"[A-Z]{1,2}\d{2}[A-Z]{1,6}"
CALL_CORE = rf"(?:{STANDARD_CALL}|{SPECIAL_EVENT_CALL})"
CALL_TOKEN = rf"(?:[A-Z0-9]{{1,4}}/)?{CALL_CORE}(?:/[A-Z0-9]{{1,4}})?"

# Lookarounds instead of \b so a trailing "/P" is kept with its call
_CALLSIGN_PATTERN = re.compile(rf"(?<![A-Z0-9/])({CALL_TOKEN})(?![A-Z0-9/])")
_CQ_DE_PATTERN = re.compile(rf"\bCQ(?:\s+CQ)*\s+DE\s+({CALL_TOKEN})(?![A-Z0-9/])")
_CALL_DE_CALL_PATTERN = re.compile(
    rf"(?<![A-Z0-9/])({CALL_TOKEN})\s+DE\s+({CALL_TOKEN})(?![A-Z0-9/])"
)
_WHOLE_CALL = re.compile(rf"^{CALL_TOKEN}$")


@dataclass(frozen=True)
class CallsignMatch:
    callsign: str
    index: int  # offset of the callsign in the source text


@dataclass(frozen=True)
class DirectedExchange:
    to_call: str    # station being called
    from_call: str  # station transmitting (after DE)


@dataclass(frozen=True)
class CqCall:
    from_call: str


def extract_callsigns(text: str) -> List[CallsignMatch]:
    """All distinct callsign-shaped tokens, in order of first appearance"""
    results = []
    seen = set()
    for match in _CALLSIGN_PATTERN.finditer(text.upper()):
        callsign = match.group(1)
        if callsign not in seen:
            seen.add(callsign)
            results.append(CallsignMatch(callsign=callsign, index=match.start(1)))
    return results


def extract_cq_calls(text: str) -> List[CqCall]:
    """Stations calling CQ: 'CQ CQ DE PA3XYZ' -> PA3XYZ"""
    return [CqCall(from_call=m.group(1)) for m in _CQ_DE_PATTERN.finditer(text.upper())]


def extract_directed_exchanges(text: str) -> List[DirectedExchange]:
    """'<to> DE <from>' pairs"""
    return [
        DirectedExchange(to_call=m.group(1), from_call=m.group(2))
        for m in _CALL_DE_CALL_PATTERN.finditer(text.upper())
    ]


def is_callsign(text: str) -> bool:
    return bool(_WHOLE_CALL.match(text.upper().strip()))
