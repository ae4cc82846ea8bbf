"""
Shared fixtures: an in-memory fldigi, a controllable clock, config
factories, and an in-process XML-RPC server speaking fldigi's wire format.
"""

import asyncio
import re
import socket

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from cwlink.config_manager import CwLinkConfig
from cwlink.xmlrpc import ProtocolFault, TransportError, TransportTimeout


class FakeFldigi:
    """
    Stands in for FldigiClient. Records every call by its wire name.

    fail            every call raises TransportError (fldigi down)
    fail_methods    only these wire names raise TransportError
    fault_methods   these wire names raise ProtocolFault
    timeout_methods these wire names reach fldigi, then raise TransportTimeout
    delays          wire name -> seconds the call stays in flight
    hooks           wire name -> callable(*params), run on success
    """

    def __init__(self):
        self.host = "127.0.0.1"
        self.port = 7362
        self.version = "4.1.26"
        self.rx_buffer = ""
        self.tx_buffer = ""
        self.wpm = 20
        self.snr = 10.0
        self.frequency = 7030000.0
        self.mode = "CW"
        self.tx_wpm = None

        self.calls = []
        self.fail = False
        self.fail_methods = set()
        self.fault_methods = set()
        self.timeout_methods = set()
        self.delays = {}
        self.hooks = {}

    async def _call(self, method, *params):
        self.calls.append((method, params))
        if method in self.delays:
            await asyncio.sleep(self.delays[method])
        if method in self.timeout_methods:
            raise TransportTimeout(f"XML-RPC timeout calling {method}")
        if self.fail or method in self.fail_methods:
            raise TransportError(f"XML-RPC connection error calling {method}: refused")
        if method in self.fault_methods:
            raise ProtocolFault(f"XML-RPC fault: {method} not supported", code=-1)
        hook = self.hooks.get(method)
        if hook is not None:
            hook(*params)

    def methods(self):
        return [method for method, _ in self.calls]

    def params_of(self, method):
        return [params for name, params in self.calls if name == method]

    async def connect(self):
        return await self.get_version()

    async def get_version(self):
        await self._call("fldigi.version")
        return self.version

    async def get_rx_length(self):
        await self._call("text.get_rx_length")
        return len(self.rx_buffer)

    async def get_rx_text(self, start, length):
        await self._call("text.get_rx", start, length)
        return self.rx_buffer[start:start + length]

    async def get_frequency(self):
        await self._call("main.get_frequency")
        return self.frequency

    async def get_mode(self):
        await self._call("modem.get_name")
        return self.mode

    async def get_wpm(self):
        await self._call("modem.get_wpm")
        return self.wpm

    async def get_signal_noise_ratio(self):
        await self._call("modem.get_quality")
        return self.snr

    async def send_tx_text(self, text):
        await self._call("text.add_tx", text)
        self.tx_buffer += text

    async def get_tx_length(self):
        await self._call("text.get_tx_length")
        return len(self.tx_buffer)

    async def set_wpm(self, wpm):
        await self._call("modem.set_wpm", wpm)
        self.tx_wpm = wpm

    async def start_tx(self):
        await self._call("main.tx")

    async def stop_tx(self):
        await self._call("main.rx")

    async def abort_tx(self):
        await self._call("main.abort")


class FakeClock:
    """Monotonic clock the test moves by hand"""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class MockFldigiServer:
    """
    In-process XML-RPC endpoint on /RPC2.

    responses   method name -> inner <value> XML, e.g. "<int>42</int>"
    faults      method name -> (code, message)
    raw_body    send this body verbatim for every call
    status      HTTP status for every call
    delay       seconds to stall before answering
    """

    def __init__(self, responses=None, faults=None, raw_body=None, status=200, delay=0.0):
        self.responses = dict(responses or {})
        self.faults = dict(faults or {})
        self.raw_body = raw_body
        self.status = status
        self.delay = delay
        self.requests = []
        self.server = None

    async def __aenter__(self):
        app = web.Application()
        app.router.add_post("/RPC2", self._handle)
        self.server = TestServer(app)
        await self.server.start_server()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.server.close()

    @property
    def host(self):
        return self.server.host

    @property
    def port(self):
        return self.server.port

    def methods(self):
        return [method for method, _ in self.requests]

    async def _handle(self, request):
        body = await request.text()
        match = re.search(r"<methodName>(.*?)</methodName>", body)
        method = match.group(1) if match else ""
        self.requests.append((method, body))

        if self.delay:
            await asyncio.sleep(self.delay)

        if self.status != 200:
            return web.Response(status=self.status, text="Internal Server Error")

        if self.raw_body is not None:
            return web.Response(text=self.raw_body, content_type="text/xml")

        if method in self.faults:
            code, message = self.faults[method]
            return web.Response(text=fault_response(code, message), content_type="text/xml")

        value = self.responses.get(method, "<string></string>")
        return web.Response(text=value_response(value), content_type="text/xml")


def value_response(inner: str) -> str:
    return (
        '<?xml version="1.0"?><methodResponse><params><param>'
        f"<value>{inner}</value>"
        "</param></params></methodResponse>"
    )


def fault_response(code: int, message: str) -> str:
    return (
        '<?xml version="1.0"?><methodResponse><fault><value><struct>'
        f"<member><name>faultCode</name><value><int>{code}</int></value></member>"
        f"<member><name>faultString</name><value><string>{message}</string></value></member>"
        "</struct></value></fault></methodResponse>"
    )


@pytest.fixture
def fake_fldigi():
    return FakeFldigi()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_server():
    """Factory: `async with mock_server(responses={...}) as server:`"""
    return MockFldigiServer


@pytest.fixture
def free_port():
    """A localhost port with nothing listening on it"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def make_config():
    """Config factory with a fast poll interval; keyword args go to the tx section"""
    def _make(**tx_settings):
        config = CwLinkConfig()
        config.fldigi.polling_interval = 0.01
        for key, value in tx_settings.items():
            setattr(config.tx, key, value)
        return config
    return _make


@pytest.fixture
def tx_config(make_config):
    """TX enabled with a callsign: every config-level gate open"""
    return make_config(enabled=True, callsign="PA3XYZ")
