"""
Link Poller
===========

Owns the receive side of the link: reads new decoded text from fldigi's
RX buffer, frames it into messages with a SentenceBuffer, works out who
is transmitting, and keeps the connection alive.

Connection Lifecycle
--------------------
    DISCONNECTED ──start()──► CONNECTING ──ok──► CONNECTED
                                  │                  │
                                  │ fail             │ poll error
                                  ▼                  ▼
                             RECONNECTING ◄──────────┘
                                  │ backoff 1s, 2s, 4s ... 30s
                                  └──► retry connect

A ProtocolFault (fldigi answered, but with an error) moves to ERROR
instead of RECONNECTING; the retry schedule is the same.

Poll Cycle
----------
Exactly one cycle is in flight at a time. The next poll is scheduled
only after the current one has settled, so reads never overlap and the
cadence never drifts.

1. Read the RX buffer length. Shorter than our cursor means fldigi
   restarted: snap the cursor and drop the partial message.
2. Read the new slice, advance the cursor, update the peer from the
   whole message so far, push the slice into the sentence buffer.
   Flushed messages are scored on the raw decode, then cleaned of noise
   bursts; a message that is nothing but noise is dropped.
3. Every `signal_sample_interval` seconds, sample WPM and S/N.
   Failures here are ignored.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from cwlink.callsign import extract_callsigns, extract_cq_calls, extract_directed_exchanges
from cwlink.config_manager import CwLinkConfig
from cwlink.decode_quality import Confidence, filter_decode_noise, score_message_confidence
from cwlink.fldigi_client import FldigiClient
from cwlink.sentence_buffer import DEFAULT_SILENCE_THRESHOLD, SentenceBuffer
from cwlink.xmlrpc import ProtocolFault, XmlRpcError


CHANNEL_ID = "morse-radio"
UNKNOWN_PEER = "UNKNOWN"
BACKOFF_INITIAL = 1.0
BACKOFF_MAX = 30.0
PERF_LOG_INTERVAL = 60.0
SIGNAL_SAMPLE_INTERVAL = 1.0


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class UtteranceMetadata:
    timestamp: str                  # UTC, ISO-8601
    frequency_hz: float
    channel: str = CHANNEL_ID
    detected_wpm: Optional[int] = None
    snr: Optional[float] = None
    confidence: Confidence = Confidence.LOW


@dataclass(frozen=True)
class DecodedUtterance:
    """One complete message framed out of the decode stream"""
    text: str
    peer: str
    metadata: UtteranceMetadata


UtteranceCallback = Callable[[str, str, UtteranceMetadata], None]
ConnectionCallback = Callable[[ConnectionState], None]


@dataclass
class PollerCallbacks:
    """Where the poller reports. Both sinks are optional."""
    on_utterance: Optional[UtteranceCallback] = None
    on_connection_change: Optional[ConnectionCallback] = None


class FldigiPoller:
    """Receive loop with framing, peer inference, and reconnect/backoff"""

    def __init__(self, config: CwLinkConfig, callbacks: Optional[PollerCallbacks] = None,
                 client: Optional[FldigiClient] = None,
                 silence_threshold: float = DEFAULT_SILENCE_THRESHOLD,
                 backoff_initial: float = BACKOFF_INITIAL,
                 backoff_max: float = BACKOFF_MAX,
                 signal_sample_interval: float = SIGNAL_SAMPLE_INTERVAL):
        self.config = config
        self.callbacks = callbacks or PollerCallbacks()
        self._client = client if client is not None else FldigiClient(
            config.fldigi.host, config.fldigi.port, timeout=config.fldigi.timeout
        )
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.signal_sample_interval = signal_sample_interval

        self.sentence_buffer = SentenceBuffer(self._handle_flush, silence_threshold=silence_threshold)

        self._running = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._state = ConnectionState.DISCONNECTED
        self._rx_offset = 0
        self._current_peer = UNKNOWN_PEER
        self.backoff = backoff_initial

        self._poll_count = 0
        self._last_perf_log = 0.0
        self._last_signal_sample_at: Optional[float] = None
        self._detected_wpm: Optional[int] = None
        self._snr: Optional[float] = None

        self.logger = logging.getLogger(__name__)

    # ─── Read-only state ────────────────────────────────────────────

    @property
    def client(self) -> FldigiClient:
        return self._client

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    @property
    def rx_offset(self) -> int:
        return self._rx_offset

    @property
    def current_peer(self) -> str:
        return self._current_peer

    @property
    def detected_wpm(self) -> Optional[int]:
        return self._detected_wpm

    @property
    def snr(self) -> Optional[float]:
        return self._snr

    # ─── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Connect (or begin retrying) and start polling"""
        if self._running:
            self.logger.debug("Poller already running")
            return

        self._running = True
        self._rx_offset = 0
        self._current_peer = UNKNOWN_PEER
        self.backoff = self.backoff_initial
        self._poll_count = 0
        self._last_perf_log = time.monotonic()
        self._last_signal_sample_at = None
        self._detected_wpm = None
        self._snr = None

        await self._try_connect()

    async def stop(self) -> None:
        """Cancel pending work and drop any partial message. Safe to call twice."""
        self._running = False
        self._cancel_timer()

        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self.sentence_buffer.reset()
        self._set_state(ConnectionState.DISCONNECTED)

    # ─── Connection ─────────────────────────────────────────────────

    async def _try_connect(self) -> None:
        if not self._running:
            return

        if self._state is ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.CONNECTING)

        try:
            version = await self._client.connect()
            # Start at the end of the buffer: only text decoded from now on
            self._rx_offset = await self._client.get_rx_length()
        except ProtocolFault as e:
            self.logger.error(f"fldigi rejected connection check: {e}")
            self._set_state(ConnectionState.ERROR)
            self._schedule_reconnect()
            return
        except (XmlRpcError, ValueError) as e:
            self.logger.warning(
                f"Cannot reach fldigi at {self._client.host}:{self._client.port} ({e}), "
                f"retrying in {self.backoff:.1f}s"
            )
            self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()
            return

        self.logger.info(f"📡 Connected to fldigi {version} (RX offset {self._rx_offset})")
        self.backoff = self.backoff_initial
        self._set_state(ConnectionState.CONNECTED)
        self._schedule_poll()

    # ─── Scheduling ─────────────────────────────────────────────────

    def _schedule_poll(self) -> None:
        self._schedule(self.config.fldigi.polling_interval, self._poll)

    def _schedule_reconnect(self) -> float:
        """Schedule a connect attempt after the current backoff, then double it"""
        delay = self.backoff
        self._schedule(delay, self._try_connect)
        self.backoff = min(self.backoff * 2, self.backoff_max)
        return delay

    def _schedule(self, delay: float, action) -> None:
        if not self._running:
            return
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._fire, action)

    def _fire(self, action) -> None:
        self._timer = None
        if self._running:
            self._task = asyncio.ensure_future(action())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ─── Polling ────────────────────────────────────────────────────

    async def _poll(self) -> None:
        if not self._running:
            return

        poll_start = time.monotonic()

        try:
            current_length = await self._client.get_rx_length()

            if current_length < self._rx_offset:
                self.logger.info(
                    f"RX buffer shrank ({self._rx_offset} -> {current_length}), "
                    f"fldigi restarted? Re-syncing"
                )
                self._rx_offset = current_length
                self.sentence_buffer.reset()
                self._current_peer = UNKNOWN_PEER

            if current_length > self._rx_offset:
                new_text = await self._client.get_rx_text(
                    self._rx_offset, current_length - self._rx_offset
                )
                self._rx_offset = current_length

                if new_text:
                    self._update_peer(self.sentence_buffer.pending + new_text)
                    self.sentence_buffer.push(new_text)

            await self._sample_signal_metrics_if_due()

        except ProtocolFault as e:
            self.logger.error(f"Poll fault: {e}")
            self._fail_poll(ConnectionState.ERROR)
            return
        except (XmlRpcError, ValueError) as e:
            self.logger.warning(f"Poll error: {e}")
            self._fail_poll(ConnectionState.RECONNECTING)
            return

        self._poll_count += 1
        self._log_perf_if_due(poll_start)
        self._schedule_poll()

    def _fail_poll(self, state: ConnectionState) -> None:
        self._set_state(state)
        # Don't strand a message that was waiting on its silence timer
        self.sentence_buffer.flush()
        self._schedule_reconnect()

    def _update_peer(self, text: str) -> None:
        """Infer the transmitting station from the whole message so far"""
        cq_calls = extract_cq_calls(text)
        if cq_calls:
            self._current_peer = cq_calls[-1].from_call
            return

        exchanges = extract_directed_exchanges(text)
        if exchanges:
            self._current_peer = exchanges[-1].from_call
            return

        calls = extract_callsigns(text)
        self._current_peer = calls[-1].callsign if calls else UNKNOWN_PEER

    def _handle_flush(self, message: str) -> None:
        """SentenceBuffer callback: one complete message"""
        peer = self._current_peer
        self._current_peer = UNKNOWN_PEER

        # Confidence is judged on the raw decode, before the junk is stripped
        confidence = score_message_confidence(message)
        text = filter_decode_noise(message)
        if not text:
            self.logger.debug(f"Dropped noise-only decode: {message!r}")
            return

        metadata = UtteranceMetadata(
            timestamp=datetime.now(timezone.utc).isoformat(),
            frequency_hz=self.config.frequency,
            detected_wpm=self._detected_wpm,
            snr=self._snr,
            confidence=confidence,
        )

        self.logger.debug(f"Message from {peer}: {text}")
        if self.callbacks.on_utterance is None:
            return
        try:
            self.callbacks.on_utterance(text, peer, metadata)
        except Exception as e:
            self.logger.error(f"Utterance callback error: {e}")

    async def _sample_signal_metrics_if_due(self) -> None:
        now = time.monotonic()
        if (self._last_signal_sample_at is not None
                and now - self._last_signal_sample_at < self.signal_sample_interval):
            return

        self._last_signal_sample_at = now
        wpm, snr = await asyncio.gather(
            self._client.get_wpm(),
            self._client.get_signal_noise_ratio(),
            return_exceptions=True,
        )

        wpm = self._sampled("WPM", wpm)
        if wpm is not None:
            self._detected_wpm = wpm
        snr = self._sampled("S/N", snr)
        if snr is not None:
            self._snr = snr

    def _sampled(self, name: str, result):
        """A gathered metric, or None when the read failed or is not finite"""
        if isinstance(result, (XmlRpcError, ValueError)):
            self.logger.debug(f"{name} sampling failed, keeping last value: {result}")
            return None
        if isinstance(result, BaseException):
            raise result
        return result if math.isfinite(result) else None

    def _set_state(self, state: ConnectionState) -> None:
        if self._state is state:
            return
        self._state = state
        self.logger.info(f"Link state: {state.value}")
        if self.callbacks.on_connection_change is None:
            return
        try:
            self.callbacks.on_connection_change(state)
        except Exception as e:
            self.logger.error(f"Connection callback error: {e}")

    def _log_perf_if_due(self, poll_start: float) -> None:
        now = time.monotonic()
        if now - self._last_perf_log >= PERF_LOG_INTERVAL:
            latency_ms = (now - poll_start) * 1000
            self.logger.info(
                f"Polls: {self._poll_count}, last latency: {latency_ms:.0f}ms, offset: {self._rx_offset}"
            )
            self._last_perf_log = now
