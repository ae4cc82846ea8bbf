"""
cwlink
======

A link between fldigi (the CW decoder/encoder) and a host that wants to
read and write Morse as plain text messages. fldigi does the DSP; this
package polls its decoded text over XML-RPC, frames it into messages,
works out who sent them, and sends replies back through a transmitter
that refuses to key up unless it is safe and legal to do so.

Architecture Overview
---------------------

    ┌──────────┐  XML-RPC   ┌──────────────┐     ┌────────────────┐     ┌──────────────┐
    │  fldigi  │◄──────────►│ FldigiClient │◄────│ FldigiPoller   │────►│ on_utterance │
    │ (decoder │  /RPC2     │ (xmlrpc.py)  │     │  SentenceBuffer│     │ (text, peer, │
    │  + rig)  │            └──────▲───────┘     │  callsign.py   │     │  metadata)   │
    └──────────┘                   │             └────────────────┘     └──────────────┘
                                   │
                            ┌──────┴───────┐     ┌────────────────┐
                            │ Transmitter  │◄────│ send(text,     │
                            │ gates, ID,   │     │  intent, peer) │
                            │ watchdog     │     └────────────────┘
                            └──────────────┘

Receive: every polling_interval the poller reads the new slice of
fldigi's RX buffer. The SentenceBuffer closes a message on a turn-taking
prosign (AR, SK, KN, BK, K) or after 3 seconds of silence. The peer is
taken from "CQ DE <call>", then "<call> DE <call>", then the last
callsign seen.

Transmit: TX is off unless enabled in config. Every send passes the
preflight gates (enabled, not inhibited, callsign set, cooldown,
listen-before-transmit), is sanitized to Morse-sendable characters,
gets addressing and a closing prosign, is sent at the speed the other
station is using, carries "DE <call>" at least every 10 minutes, and is
aborted by a watchdog if it runs too long.

Module Structure
----------------
    cwlink/
    ├── __init__.py          ← This file. Public API.
    ├── xmlrpc.py            ← Minimal async XML-RPC over aiohttp, error taxonomy.
    ├── fldigi_client.py     ← Typed fldigi operations.
    ├── prosigns.py          ← Turn-taking prosigns, end-of-message detection.
    ├── sentence_buffer.py   ← Character stream → messages.
    ├── callsign.py          ← Callsign and exchange extraction.
    ├── decode_quality.py    ← Decode noise filter and confidence score.
    ├── link_poller.py       ← Receive loop, reconnect with backoff.
    ├── cw_text.py           ← Sanitize and format outbound text.
    ├── transmitter.py       ← TX safety pipeline.
    ├── outbound.py          ← Host send(text, peer, metadata) adapter.
    ├── service.py           ← LinkService: everything wired together.
    ├── config_manager.py    ← YAML + environment + CLI configuration.
    └── cli.py               ← `cwlink` console command.

Dependencies
------------
aiohttp (XML-RPC transport), PyYAML (configuration files).
"""

from cwlink.callsign import extract_callsigns, extract_cq_calls, extract_directed_exchanges, is_callsign
from cwlink.config_manager import (
    ConfigurationManager,
    ConsoleConfig,
    CwLinkConfig,
    FldigiConfig,
    TransmitConfig,
)
from cwlink.cw_text import TxIntent, format_for_cw, sanitize_for_cw
from cwlink.decode_quality import Confidence, filter_decode_noise, score_message_confidence
from cwlink.fldigi_client import FldigiClient
from cwlink.link_poller import (
    ConnectionState,
    DecodedUtterance,
    FldigiPoller,
    PollerCallbacks,
    UtteranceMetadata,
)
from cwlink.outbound import create_send_handler
from cwlink.prosigns import Prosign, ends_with_prosign
from cwlink.sentence_buffer import SentenceBuffer
from cwlink.service import LinkService
from cwlink.transmitter import TransmitLogEntry, TransmitOutcome, Transmitter, TransmitterCallbacks
from cwlink.xmlrpc import ProtocolFault, TransportError, TransportTimeout, XmlRpcClient, XmlRpcError

__version__ = "0.1.0"

__all__ = [
    'ConfigurationManager', 'ConsoleConfig', 'CwLinkConfig', 'FldigiConfig', 'TransmitConfig',
    'Confidence', 'filter_decode_noise', 'score_message_confidence',
    'ConnectionState', 'DecodedUtterance', 'FldigiPoller', 'PollerCallbacks', 'UtteranceMetadata',
    'FldigiClient', 'LinkService', 'SentenceBuffer', 'Prosign', 'ends_with_prosign',
    'TransmitLogEntry', 'TransmitOutcome', 'Transmitter', 'TransmitterCallbacks',
    'TxIntent', 'format_for_cw', 'sanitize_for_cw', 'create_send_handler',
    'extract_callsigns', 'extract_cq_calls', 'extract_directed_exchanges', 'is_callsign',
    'ProtocolFault', 'TransportError', 'TransportTimeout', 'XmlRpcClient', 'XmlRpcError',
]
