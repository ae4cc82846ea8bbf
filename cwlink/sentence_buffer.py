"""
Sentence Buffer
===============

Turns the continuous decoded-character stream into discrete messages.

Characters arrive in arbitrary fragments from the poll loop. A message
is complete when either:

- the buffer ends in a turn-taking prosign (AR, SK, KN, BK, or a
  standalone K), which flushes immediately, or
- nothing has been pushed for `silence_threshold` seconds.

    push("CQ CQ ")   → accumulating, silence timer (re)armed
    push("DE PA3")   → accumulating, silence timer (re)armed
    push("XYZ K")    → ends in " K" → flush("CQ CQ DE PA3XYZ K")

Known limitation: the standalone K needs whitespace before it. Under
noise the decoder sometimes drops the word gap ("PA3XYZK"), and the
go-ahead is then only caught by the silence timer.

The buffer performs no I/O and must be driven from a single task (the
poll loop). The silence timer is an asyncio TimerHandle on the running
loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from cwlink.cw_text import collapse_whitespace
from cwlink.prosigns import ends_with_prosign


DEFAULT_SILENCE_THRESHOLD = 3.0

FlushCallback = Callable[[str], None]


class SentenceBuffer:
    """Accumulates decoded text and emits complete, normalized messages"""

    def __init__(self, on_flush: FlushCallback,
                 silence_threshold: float = DEFAULT_SILENCE_THRESHOLD,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.on_flush = on_flush
        self.silence_threshold = silence_threshold
        self._loop = loop
        self._buffer = ""
        self._silence_timer: Optional[asyncio.TimerHandle] = None
        self.logger = logging.getLogger(__name__)

    @property
    def pending(self) -> str:
        """Raw, not yet flushed buffer contents"""
        return self._buffer

    def push(self, text: str) -> None:
        """Append a fragment, restart the silence timer, flush on a prosign"""
        if not text:
            return

        self._buffer += text
        self._restart_silence_timer()

        prosign = ends_with_prosign(self._buffer)
        if prosign is not None:
            self.logger.debug(f"Prosign {prosign.value} closes message")
            self.flush()

    def flush(self) -> None:
        """Emit the buffer if it holds anything, then clear it. Never emits ''."""
        self._cancel_silence_timer()

        message = collapse_whitespace(self._buffer)
        self._buffer = ""

        if message:
            self.on_flush(message)

    def reset(self) -> None:
        """Discard the buffer and cancel the timer without emitting"""
        self._buffer = ""
        self._cancel_silence_timer()

    def _restart_silence_timer(self) -> None:
        self._cancel_silence_timer()
        loop = self._loop or asyncio.get_running_loop()
        self._silence_timer = loop.call_later(self.silence_threshold, self._on_silence)

    def _on_silence(self) -> None:
        self._silence_timer = None
        self.flush()

    def _cancel_silence_timer(self) -> None:
        if self._silence_timer is not None:
            self._silence_timer.cancel()
            self._silence_timer = None
