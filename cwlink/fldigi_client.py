"""
Typed client for fldigi's XML-RPC control API.

Each method is exactly one wire call. Results come back from the
transport as strings and are coerced here: buffer lengths and speeds to
int, frequency and quality to float, everything else passed through.
No retries or buffering; resilience lives in the poller and transmitter.

fldigi XML-RPC reference: http://www.w1hkj.com/FldigiHelp/xmlrpc_control_page.html
"""

from __future__ import annotations

from typing import Optional

from cwlink.xmlrpc import DEFAULT_TIMEOUT, XmlRpcClient


def parse_int(value: str) -> int:
    """fldigi sometimes reports integers as '20.0'"""
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        try:
            return int(float(text))
        except ValueError:
            raise ValueError(f"Expected an integer from fldigi, got {value!r}") from None


def parse_float(value: str) -> float:
    try:
        return float(value.strip())
    except ValueError:
        raise ValueError(f"Expected a number from fldigi, got {value!r}") from None


class FldigiClient:
    """Semantic operations over one fldigi XML-RPC endpoint"""

    def __init__(self, host: str = "127.0.0.1", port: int = 7362,
                 timeout: float = DEFAULT_TIMEOUT, rpc: Optional[XmlRpcClient] = None):
        self.rpc = rpc if rpc is not None else XmlRpcClient(host, port, timeout=timeout)

    @property
    def host(self) -> str:
        return self.rpc.host

    @property
    def port(self) -> int:
        return self.rpc.port

    # ─── Connection / identity ──────────────────────────────────────

    async def connect(self) -> str:
        """Liveness check. Returns the fldigi version, raises if unreachable."""
        return await self.get_version()

    async def get_version(self) -> str:
        return await self.rpc.call("fldigi.version")

    async def get_name(self) -> str:
        return await self.rpc.call("fldigi.name")

    # ─── Receive ────────────────────────────────────────────────────

    async def get_rx_length(self) -> int:
        """Total length of fldigi's RX text buffer"""
        return parse_int(await self.rpc.call("text.get_rx_length"))

    async def get_rx_text(self, start: int, length: int) -> str:
        """Slice of the RX buffer: `length` characters from offset `start`"""
        return await self.rpc.call("text.get_rx", start, length)

    # ─── Frequency / mode ───────────────────────────────────────────

    async def get_frequency(self) -> float:
        """Dial frequency in Hz"""
        return parse_float(await self.rpc.call("main.get_frequency"))

    async def set_frequency(self, hz: float) -> None:
        await self.rpc.call("main.set_frequency", float(hz))

    async def get_mode(self) -> str:
        """Modem name, e.g. 'CW'"""
        return await self.rpc.call("modem.get_name")

    async def set_mode(self, mode: str) -> None:
        await self.rpc.call("modem.set_by_name", mode)

    # ─── Signal quality / speed ─────────────────────────────────────

    async def get_signal_noise_ratio(self) -> float:
        return parse_float(await self.rpc.call("modem.get_quality"))

    async def get_wpm(self) -> int:
        """Receive speed detected by the CW modem, in WPM"""
        return parse_int(await self.rpc.call("modem.get_wpm"))

    # ─── Transmit ───────────────────────────────────────────────────

    async def send_tx_text(self, text: str) -> None:
        """Append text to the TX buffer"""
        await self.rpc.call("text.add_tx", text)

    async def get_tx_length(self) -> int:
        return parse_int(await self.rpc.call("text.get_tx_length"))

    async def set_wpm(self, wpm: int) -> None:
        await self.rpc.call("modem.set_wpm", int(wpm))

    async def start_tx(self) -> None:
        """Key up and send what is in the TX buffer"""
        await self.rpc.call("main.tx")

    async def stop_tx(self) -> None:
        """Return to receive"""
        await self.rpc.call("main.rx")

    async def abort_tx(self) -> None:
        await self.rpc.call("main.abort")
