"""
portrelay: forward local TCP and UDP ports to remote host:port targets.

Each configured rule gets its own relay (an asyncio TCP server or UDP
datagram endpoint); rules run concurrently and fail independently.
"""

from portrelay.dispatcher import Dispatcher
from portrelay.errors import BindError, DialError, ErrorKind, ForwardError, NoRulesError, RelayIOError
from portrelay.rules import Config, Protocol, Rule
from portrelay.tcp_relay import TcpRelay
from portrelay.udp_relay import SessionTable, UdpRelay, UdpSession

__version__ = "0.1.0"

__all__ = [
    "BindError",
    "Config",
    "DialError",
    "Dispatcher",
    "ErrorKind",
    "ForwardError",
    "NoRulesError",
    "Protocol",
    "RelayIOError",
    "Rule",
    "SessionTable",
    "TcpRelay",
    "UdpRelay",
    "UdpSession",
]
