"""
Minimal XML-RPC Transport
=========================

XML-RPC is an HTTP POST with an XML body in each direction. The decoder
surface we talk to is small (a dozen method names), so the request
encoder and response parser are written out here rather than pulled in
from a full XML-RPC stack.

    call("text.get_rx", 120, 8)
                  ↓
    build_request() → <methodCall> ... <int>120</int> ... <int>8</int>
                  ↓
    POST /RPC2 (aiohttp, per-call timeout, bounded read)
                  ↓
    parse_response() → "CQ CQ DE" (always a string; caller coerces)

Error Taxonomy
--------------
XmlRpcError
    Base class for everything raised by this module.
TransportError
    Connection refused/reset, non-2xx status, oversized response.
    Transient: callers reconnect and retry.
TransportTimeout
    No response within the configured timeout. Subclass of
    TransportError so the two are handled identically.
ProtocolFault
    The remote answered a well-formed call with a <fault>. Not
    transient: it means the method or its arguments are wrong.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from typing import Optional, Sequence, Union

import aiohttp


MAX_RESPONSE_BYTES = 1_000_000
DEFAULT_TIMEOUT = 5.0
RPC_PATH = "/RPC2"

# Typed wrappers a <value> may carry, in the order we try to unwrap them
VALUE_TYPES = ("string", "int", "i4", "double", "boolean", "base64")

Param = Union[str, int, float, bool, bytes]

_FAULT_STRING = re.compile(
    r"<name>faultString</name>\s*<value>\s*(?:<string>)?(.*?)(?:</string>)?\s*</value>",
    re.DOTALL,
)
_FAULT_CODE = re.compile(
    r"<name>faultCode</name>\s*<value>\s*<(?:int|i4)>\s*(-?\d+)\s*</(?:int|i4)>",
    re.DOTALL,
)
_SELF_CLOSING = re.compile(r"^\s*<(\w+)\s*/>\s*$")
_CHAR_REF = re.compile(r"&#(x[0-9a-fA-F]+|\d+);")

logger = logging.getLogger(__name__)


class XmlRpcError(Exception):
    """Base class for XML-RPC failures"""


class TransportError(XmlRpcError):
    """Network-level failure: the call may succeed if retried later"""


class TransportTimeout(TransportError):
    """No response arrived within the per-call timeout"""


class ProtocolFault(XmlRpcError):
    """The remote explicitly signalled a fault for a well-formed call"""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


def escape_xml(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def unescape_xml(text: str) -> str:
    """Reverse XML entity escaping. &amp; goes last so '&amp;lt;' stays '&lt;'."""
    text = (
        text.replace("&lt;", "<")
        .replace("&gt;", ">")
        .replace("&quot;", '"')
        .replace("&apos;", "'")
    )
    text = _CHAR_REF.sub(_decode_char_ref, text)
    return text.replace("&amp;", "&")


def _decode_char_ref(match: re.Match) -> str:
    ref = match.group(1)
    codepoint = int(ref[1:], 16) if ref.startswith("x") else int(ref)
    return chr(codepoint)


def encode_value(value: Param) -> str:
    """Encode one parameter as an XML-RPC <value> element"""
    # bool first: bool is a subclass of int
    if isinstance(value, bool):
        return f"<value><boolean>{1 if value else 0}</boolean></value>"
    if isinstance(value, int):
        return f"<value><int>{value}</int></value>"
    if isinstance(value, float):
        return f"<value><double>{value!r}</double></value>"
    if isinstance(value, (bytes, bytearray)):
        encoded = base64.b64encode(bytes(value)).decode("ascii")
        return f"<value><base64>{encoded}</base64></value>"
    return f"<value><string>{escape_xml(str(value))}</string></value>"


def build_request(method: str, params: Sequence[Param] = ()) -> str:
    """Build an XML-RPC methodCall request body"""
    param_xml = "".join(f"<param>{encode_value(p)}</param>" for p in params)
    return (
        '<?xml version="1.0"?>'
        f"<methodCall><methodName>{method}</methodName>"
        f"<params>{param_xml}</params></methodCall>"
    )


def extract_tag(xml: str, tag: str) -> Optional[str]:
    """Text between the first <tag> and the next </tag>, or None"""
    open_tag = f"<{tag}>"
    close_tag = f"</{tag}>"
    start = xml.find(open_tag)
    if start == -1:
        return None
    end = xml.find(close_tag, start)
    if end == -1:
        return None
    return xml[start + len(open_tag):end]


def parse_response(xml: str) -> str:
    """
    Parse the return value out of a methodResponse.

    The result is still XML-escaped; XmlRpcClient.call() unescapes it.

    Raises:
        ProtocolFault: the response is a <fault>
    """
    if "<fault>" in xml:
        match = _FAULT_STRING.search(xml)
        message = unescape_xml(match.group(1)) if match else "Unknown XML-RPC fault"
        code_match = _FAULT_CODE.search(xml)
        code = int(code_match.group(1)) if code_match else None
        raise ProtocolFault(f"XML-RPC fault: {message}", code=code)

    value = extract_tag(xml, "value")
    if value is None:
        return ""

    for value_type in VALUE_TYPES:
        inner = extract_tag(value, value_type)
        if inner is not None:
            return inner

    # <value><string/></value> and friends
    if _SELF_CLOSING.match(value):
        return ""

    # Bare <value>text</value> is legal XML-RPC (implicit string)
    return value


class XmlRpcClient:
    """
    Request/response client for one XML-RPC endpoint.

    Every call opens its own aiohttp session, so a client can be shared
    by the poller and the transmitter and used from any event loop.
    """

    def __init__(self, host: str, port: int, timeout: float = DEFAULT_TIMEOUT,
                 path: str = RPC_PATH, max_response_bytes: int = MAX_RESPONSE_BYTES):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.path = path
        self.max_response_bytes = max_response_bytes
        self.logger = logging.getLogger(__name__)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    async def call(self, method: str, *params: Param) -> str:
        """
        Call a remote method and return its result as a string.

        Args:
            method: XML-RPC method name, e.g. "text.get_rx_length"
            *params: Positional parameters, typed by their Python type

        Returns:
            The unwrapped, unescaped return value (possibly "")

        Raises:
            TransportTimeout: no response within self.timeout seconds
            TransportError: connection failure, HTTP error, oversized body
            ProtocolFault: the remote returned a fault
        """
        body = build_request(method, params)
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.post(
                    self.url,
                    data=body.encode("utf-8"),
                    headers={"Content-Type": "text/xml"},
                ) as response:
                    if not 200 <= response.status < 300:
                        raise TransportError(
                            f"XML-RPC HTTP error {response.status} calling {method}"
                        )
                    payload = await self._read_bounded(response, method)
        except asyncio.TimeoutError as e:
            raise TransportTimeout(
                f"XML-RPC timeout after {self.timeout}s calling {method}"
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(f"XML-RPC connection error calling {method}: {e}") from e

        xml = payload.decode("utf-8", errors="replace")
        return unescape_xml(parse_response(xml))

    async def _read_bounded(self, response: aiohttp.ClientResponse, method: str) -> bytes:
        """Read the body, refusing anything over the size ceiling"""
        declared = response.content_length
        if declared is not None and declared > self.max_response_bytes:
            raise TransportError(
                f"XML-RPC response too large ({declared} bytes) calling {method}"
            )

        chunks = []
        total = 0
        async for chunk in response.content.iter_chunked(64 * 1024):
            total += len(chunk)
            if total > self.max_response_bytes:
                raise TransportError(
                    f"XML-RPC response too large (>{self.max_response_bytes} bytes) calling {method}"
                )
            chunks.append(chunk)
        return b"".join(chunks)
