"""
Link Service
============

One fldigi instance, one client, one poller, one transmitter, wired together:

    fldigi ◄──XML-RPC──► FldigiClient ◄───┬─── FldigiPoller ──► on_utterance(text, peer, metadata)
                                          │          │          utterances (bounded asyncio.Queue)
                                          │          └──► CONNECTED ──► transmitter.mark_listen_start()
                                          └─── Transmitter ◄── send(text, intent, peer_call)

Every (re)connection restarts the listen-before-transmit clock, so the
station always hears the frequency for a while before it may key up.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from cwlink.config_manager import CwLinkConfig
from cwlink.cw_text import TxIntent
from cwlink.fldigi_client import FldigiClient
from cwlink.link_poller import (
    ConnectionCallback,
    ConnectionState,
    DecodedUtterance,
    FldigiPoller,
    PollerCallbacks,
    UtteranceCallback,
    UtteranceMetadata,
)
from cwlink.outbound import SendHandler, create_send_handler
from cwlink.transmitter import TransmitOutcome, Transmitter, TransmitterCallbacks


UTTERANCE_QUEUE_SIZE = 100


class LinkService:
    """Receive loop plus guarded transmitter for one decoder"""

    def __init__(self, config: CwLinkConfig,
                 on_utterance: Optional[UtteranceCallback] = None,
                 on_connection_change: Optional[ConnectionCallback] = None,
                 client: Optional[FldigiClient] = None,
                 transmitter_callbacks: Optional[TransmitterCallbacks] = None,
                 queue_size: int = UTTERANCE_QUEUE_SIZE):
        self.config = config
        self.on_utterance = on_utterance
        self.on_connection_change = on_connection_change

        self.client = client if client is not None else FldigiClient(
            config.fldigi.host, config.fldigi.port, timeout=config.fldigi.timeout
        )
        self.poller = FldigiPoller(
            config,
            PollerCallbacks(
                on_utterance=self._handle_utterance,
                on_connection_change=self._handle_connection_change,
            ),
            client=self.client,
        )
        self.transmitter = Transmitter(self.client, config, transmitter_callbacks)
        # Oldest entries are dropped when nobody drains the queue
        self.utterances: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

        self._started = False
        self.logger = logging.getLogger(__name__)

    @property
    def state(self) -> ConnectionState:
        return self.poller.state

    @property
    def running(self) -> bool:
        return self._started

    def send_handler(self) -> SendHandler:
        """send(text, peer, metadata) for hosts that speak in peers and metadata"""
        return create_send_handler(self.transmitter, lambda: self.poller.detected_wpm)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.logger.info(
            f"🚀 Starting CW link on {self.config.frequency} Hz via "
            f"{self.config.fldigi.host}:{self.config.fldigi.port}"
        )
        if not self.config.tx.enabled:
            self.logger.info("TX disabled - receive only")
        await self.poller.start()

    async def stop(self) -> None:
        """Stop polling and cancel transmitter timers. Safe to call twice."""
        if not self._started:
            return
        self._started = False
        await self.poller.stop()
        self.transmitter.destroy()
        self.logger.info("CW link stopped")

    async def send(self, text: str, intent: TxIntent = TxIntent.DEFAULT,
                   peer_call: Optional[str] = None) -> TransmitOutcome:
        return await self.transmitter.send(
            text,
            detected_rx_wpm=self.poller.detected_wpm,
            intent=intent,
            peer_call=peer_call,
        )

    async def emergency_stop(self) -> None:
        await self.transmitter.emergency_stop()

    def clear_inhibit(self) -> None:
        self.transmitter.clear_inhibit()

    async def check_qrl(self) -> bool:
        return await self.transmitter.check_qrl()

    def _handle_utterance(self, text: str, peer: str, metadata: UtteranceMetadata) -> None:
        self._publish(DecodedUtterance(text=text, peer=peer, metadata=metadata))
        if self.on_utterance is not None:
            self.on_utterance(text, peer, metadata)

    def _publish(self, utterance: DecodedUtterance) -> None:
        if self.utterances.full():
            dropped = self.utterances.get_nowait()
            self.logger.debug(f"Utterance queue full, dropped: {dropped.text}")
        self.utterances.put_nowait(utterance)

    def _handle_connection_change(self, state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            self.transmitter.mark_listen_start()
        if self.on_connection_change is not None:
            self.on_connection_change(state)
