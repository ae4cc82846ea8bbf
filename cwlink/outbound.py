"""
Outbound adapter: turns a host's (text, peer, metadata) send request into a
Transmitter call.

The host decides what to say; this module decides how it goes on the air.
metadata["tx_intent"] picks the intent ("cq", "reply", "signoff"), the peer
is only used for addressing when it looks like a real callsign, and the TX
speed follows whatever the receiver last measured.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from cwlink.callsign import is_callsign
from cwlink.cw_text import TxIntent
from cwlink.transmitter import TransmitOutcome, Transmitter

logger = logging.getLogger(__name__)

SendHandler = Callable[[str, Optional[str], Optional[Mapping[str, Any]]], Awaitable[TransmitOutcome]]


def resolve_intent(metadata: Optional[Mapping[str, Any]]) -> TxIntent:
    """metadata["tx_intent"] as a TxIntent; anything unrecognised is DEFAULT"""
    if not metadata:
        return TxIntent.DEFAULT
    raw = metadata.get("tx_intent")
    if isinstance(raw, TxIntent):
        return raw
    if isinstance(raw, str):
        try:
            return TxIntent(raw.strip().lower())
        except ValueError:
            pass
    return TxIntent.DEFAULT


def resolve_peer_call(peer: Optional[str]) -> Optional[str]:
    """Upper-cased peer if it is callsign-shaped ("UNKNOWN", names etc. are not)"""
    if not peer:
        return None
    call = peer.strip().upper()
    return call if is_callsign(call) else None


def create_send_handler(transmitter: Optional[Transmitter],
                        get_detected_wpm: Callable[[], Optional[float]]) -> SendHandler:
    """
    Build the async send(text, peer, metadata) callable handed to the host.

    Args:
        transmitter: The station transmitter, or None when TX is not wired up
        get_detected_wpm: Returns the receiver's last measured speed

    Returns:
        Coroutine function resolving to a TransmitOutcome
    """

    async def send(text: str, peer: Optional[str] = None,
                   metadata: Optional[Mapping[str, Any]] = None) -> TransmitOutcome:
        if transmitter is None:
            logger.info(f"TX not configured, not sending: {text}")
            return TransmitOutcome.rejected("TX not configured")

        intent = resolve_intent(metadata)
        peer_call = resolve_peer_call(peer)
        outcome = await transmitter.send(
            text,
            detected_rx_wpm=get_detected_wpm(),
            intent=intent,
            peer_call=peer_call,
        )
        if not outcome.success:
            logger.warning(f"Send failed: {outcome.error}")
        return outcome

    return send
