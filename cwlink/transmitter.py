"""
Transmitter
===========

Every outbound CW transmission goes through here. The safety rules are
enforced in code on every call and cannot be skipped by the caller:

Preflight gates (first failure wins, returned as a TransmitOutcome)
-------------------------------------------------------------------
1. TX enabled in config
2. Not inhibited (latched by emergency_stop(), cleared by clear_inhibit())
3. Station callsign configured
4. Cooldown since the last transmission started
5. Listen-before-transmit: receiver listening long enough

Then
----
    sanitize → format (addressing + closing prosign)
             → set TX speed (matched to RX speed, every time)
             → append "DE <call>" if identification is due
             → write TX buffer
             → arm max-duration watchdog, key up
             → log entry

Expected failures never raise: callers get TransmitOutcome(success=False,
error=reason) and may retry later. The watchdog aborts on its own if a
transmission runs past max_duration_seconds, whether or not anyone is
still waiting on the call that started it. Inhibit is checked again
before every fldigi write, so an emergency stop that lands mid-send
wins.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from cwlink.config_manager import CwLinkConfig
from cwlink.cw_text import TxIntent, append_identification, format_for_cw, sanitize_for_cw
from cwlink.fldigi_client import FldigiClient
from cwlink.xmlrpc import XmlRpcError


TX_COOLDOWN = 0.5            # seconds between transmission starts
LEGAL_ID_INTERVAL = 600.0    # identify at least every 10 minutes
LISTEN_BEFORE_TX = 10.0      # seconds of listening before the first TX
QRL_WAIT = 5.0               # seconds to wait for an answer to QRL?
QRL_QUERY = "QRL?"
INHIBITED = "TX is inhibited (emergency stop active)"

MIN_WPM = 5
MAX_WPM = 60


@dataclass(frozen=True)
class TransmitOutcome:
    success: bool
    error: Optional[str] = None
    transmitted: Optional[str] = None  # final text handed to fldigi

    @classmethod
    def rejected(cls, reason: str) -> 'TransmitOutcome':
        return cls(success=False, error=reason)


@dataclass(frozen=True)
class TransmitLogEntry:
    """Audit record, one per successful transmission"""
    timestamp: str
    text: str
    wpm: int
    frequency_hz: float
    callsign: str


@dataclass
class TransmitterCallbacks:
    on_transmit_logged: Optional[Callable[[TransmitLogEntry], None]] = None
    on_identification_sent: Optional[Callable[[str], None]] = None


def resolve_wpm(detected_rx_wpm: Optional[float], default_wpm: int) -> int:
    """
    TX speed: the RX speed rounded down to an even number, clamped to
    [5, 60]. Falls back to `default_wpm` when no usable RX speed is known.
    """
    if (detected_rx_wpm is not None and math.isfinite(detected_rx_wpm)
            and detected_rx_wpm >= MIN_WPM):
        matched = int(detected_rx_wpm // 2) * 2
        return max(MIN_WPM, min(matched, MAX_WPM))
    return default_wpm


class Transmitter:
    """Gate-then-act pipeline for outbound CW"""

    def __init__(self, client: FldigiClient, config: CwLinkConfig,
                 callbacks: Optional[TransmitterCallbacks] = None, *,
                 cooldown: float = TX_COOLDOWN,
                 listen_before_tx: float = LISTEN_BEFORE_TX,
                 id_interval: float = LEGAL_ID_INTERVAL,
                 qrl_wait: float = QRL_WAIT,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.config = config
        self.callbacks = callbacks or TransmitterCallbacks()
        self.cooldown = cooldown
        self.listen_before_tx = listen_before_tx
        self.id_interval = id_interval
        self.qrl_wait = qrl_wait
        self.clock = clock

        self._last_tx_at: Optional[float] = None
        self._last_id_at: Optional[float] = None
        self._listen_started_at: Optional[float] = None
        self._inhibited = config.tx.inhibit
        self._qrl_checked_frequency: Optional[float] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()

        self.logger = logging.getLogger(__name__)

    @property
    def inhibited(self) -> bool:
        return self._inhibited

    @property
    def is_transmitting(self) -> bool:
        """True while the duration watchdog is armed"""
        return self._watchdog is not None

    @property
    def qrl_checked_frequency(self) -> Optional[float]:
        return self._qrl_checked_frequency

    # ─── Operator controls ──────────────────────────────────────────

    def mark_listen_start(self) -> None:
        """The receiver started listening on the current frequency"""
        self._listen_started_at = self.clock()

    async def emergency_stop(self) -> None:
        """Latch inhibit, cancel the watchdog, abort and return to RX (best effort)"""
        self._inhibited = True
        self._cancel_watchdog()
        await self._abort_and_receive("Emergency stop")
        self.logger.warning("🛑 EMERGENCY STOP - TX inhibited")

    def clear_inhibit(self) -> None:
        self._inhibited = False
        self.logger.info("TX inhibit cleared")

    def disarm_watchdog(self) -> None:
        """Transmission is known to be over; cancel the duration watchdog"""
        self._cancel_watchdog()

    def destroy(self) -> None:
        """Cancel pending timers without touching fldigi. Call on shutdown."""
        self._cancel_watchdog()
        task = self._watchdog_task
        self._watchdog_task = None
        if task is not None and not task.done():
            task.cancel()

    # ─── Transmit ───────────────────────────────────────────────────

    async def send(self, text: str, detected_rx_wpm: Optional[float] = None,
                   intent: TxIntent = TxIntent.DEFAULT,
                   peer_call: Optional[str] = None) -> TransmitOutcome:
        """
        Transmit text as CW.

        Args:
            text: Free text; sanitized and formatted here
            detected_rx_wpm: Most recent RX speed, for speed matching
            intent: Selects addressing and closing prosign
            peer_call: The other station, for directed intents

        Returns:
            TransmitOutcome; never raises for gate or fldigi failures
        """
        async with self._send_lock:
            rejection = self._check_gates()
            if rejection is not None:
                self.logger.info(f"TX refused: {rejection.error}")
                return rejection

            sanitized = sanitize_for_cw(text)
            if not sanitized:
                return TransmitOutcome.rejected("Text is empty after sanitization")

            callsign = self.config.tx.callsign
            formatted = format_for_cw(sanitized, intent, callsign, peer_call)

            wpm = resolve_wpm(detected_rx_wpm, self.config.tx.wpm)
            try:
                await self.client.set_wpm(wpm)
            except XmlRpcError as e:
                return TransmitOutcome.rejected(f"Failed to set WPM: {e}")

            final_text = formatted
            id_due = self._is_identification_due()
            if id_due:
                final_text = append_identification(final_text, callsign)

            failure = await self._key_up(final_text)
            if failure is not None:
                self.logger.warning(f"TX failed: {failure}")
                return TransmitOutcome.rejected(failure)

            now = self.clock()
            if id_due:
                self._last_id_at = now
                self.logger.info(f"Legal ID appended: DE {callsign}")
                self._notify(self.callbacks.on_identification_sent, callsign)

            self.logger.info(f"📻 TX: \"{final_text}\" @ {wpm} WPM on {self.config.frequency} Hz")
            self._notify(self.callbacks.on_transmit_logged, TransmitLogEntry(
                timestamp=datetime.now(timezone.utc).isoformat(),
                text=final_text,
                wpm=wpm,
                frequency_hz=self.config.frequency,
                callsign=callsign,
            ))

            return TransmitOutcome(success=True, transmitted=final_text)

    async def check_qrl(self) -> bool:
        """
        Send "QRL?" and listen for an answer.

        Returns True when the frequency appears clear, i.e. nothing new
        was decoded during the wait. Gate failures and fldigi errors
        return False.
        """
        async with self._send_lock:
            rejection = self._check_gates()
            if rejection is not None:
                self.logger.info(f"QRL? refused: {rejection.error}")
                return False

            try:
                rx_before = await self.client.get_rx_length()
                failure = await self._key_up(QRL_QUERY)
                if failure is None:
                    self.logger.info(f"Sent QRL? - waiting {self.qrl_wait}s for a response")
                    await asyncio.sleep(self.qrl_wait)
                    rx_after = await self.client.get_rx_length()
            except (XmlRpcError, ValueError) as e:
                failure = str(e)

            if failure is not None:
                self.logger.warning(f"QRL? check failed: {failure}")
                self._qrl_checked_frequency = None
                return False

            if rx_after > rx_before:
                self.logger.info("QRL? - frequency is occupied (response detected)")
                self._qrl_checked_frequency = None
                return False

            self.logger.info("QRL? - frequency appears clear")
            self._qrl_checked_frequency = self.config.frequency
            return True

    async def _key_up(self, text: str) -> Optional[str]:
        """
        Write text to the TX buffer and key up.

        emergency_stop() does not wait for the send lock, so inhibit is
        checked again after every await. The watchdog is armed before
        main.tx goes out and stays armed if that call fails, since fldigi
        may have keyed anyway.

        Returns:
            None once keyed, otherwise the failure reason
        """
        if self._inhibited:
            return INHIBITED
        try:
            await self.client.send_tx_text(text)
        except XmlRpcError as e:
            return f"fldigi TX error: {e}"
        if self._inhibited:
            await self._abort_and_receive("Inhibited before key-up")
            return INHIBITED

        self._arm_watchdog()
        self._last_tx_at = self.clock()
        try:
            await self.client.start_tx()
        except XmlRpcError as e:
            return f"fldigi TX error: {e}"
        if self._inhibited:
            self._cancel_watchdog()
            await self._abort_and_receive("Inhibited during key-up")
            return INHIBITED
        return None

    async def _abort_and_receive(self, reason: str) -> None:
        """Abort TX and return to RX. Failures are logged, not raised."""
        try:
            await self.client.abort_tx()
            await self.client.stop_tx()
        except Exception as e:
            self.logger.error(f"{reason} could not reach fldigi: {e}")

    # ─── Gates ──────────────────────────────────────────────────────

    def _check_gates(self) -> Optional[TransmitOutcome]:
        return (
            self._check_preflight()
            or self._check_cooldown()
            or self._check_listen_guard()
        )

    def _check_preflight(self) -> Optional[TransmitOutcome]:
        if not self.config.tx.enabled:
            return TransmitOutcome.rejected("TX is disabled in config")
        if self._inhibited:
            return TransmitOutcome.rejected(INHIBITED)
        if not self.config.tx.callsign:
            return TransmitOutcome.rejected("TX callsign is not configured")
        return None

    def _check_cooldown(self) -> Optional[TransmitOutcome]:
        if self._last_tx_at is None:
            return None
        elapsed = self.clock() - self._last_tx_at
        if elapsed < self.cooldown:
            remaining_ms = math.ceil((self.cooldown - elapsed) * 1000)
            return TransmitOutcome.rejected(f"TX cooldown: wait {remaining_ms}ms")
        return None

    def _check_listen_guard(self) -> Optional[TransmitOutcome]:
        if self._listen_started_at is None:
            return TransmitOutcome.rejected("Must listen before transmitting (receiver not started)")
        listened = self.clock() - self._listen_started_at
        if listened < self.listen_before_tx:
            remaining = math.ceil(self.listen_before_tx - listened)
            return TransmitOutcome.rejected(f"Listen-before-transmit: {remaining}s remaining")
        return None

    def _is_identification_due(self) -> bool:
        if self._last_id_at is None:
            return True
        return self.clock() - self._last_id_at >= self.id_interval

    # ─── Watchdog ───────────────────────────────────────────────────

    def _arm_watchdog(self) -> None:
        self._cancel_watchdog()
        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(
            self.config.tx.max_duration_seconds, self._on_watchdog_expired
        )

    def _on_watchdog_expired(self) -> None:
        self._watchdog = None
        self._watchdog_task = asyncio.ensure_future(self._watchdog_abort())

    async def _watchdog_abort(self) -> None:
        self.logger.warning(
            f"WatchdogAbort: max TX duration ({self.config.tx.max_duration_seconds}s) exceeded - aborting"
        )
        await self._abort_and_receive("Watchdog abort")

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _notify(self, callback, payload) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            self.logger.error(f"Transmitter callback error: {e}")
