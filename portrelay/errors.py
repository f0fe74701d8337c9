"""
Error taxonomy for the forwarding engine.

Every failure the relays care about falls into one of a few kinds:

    bind     local port cannot be claimed          -> rule never starts
    dial     target unreachable                     -> one connection/datagram dropped
    io       mid-relay read/write/listener failure  -> connection, session or rule ends
    timeout  a deadline expired
    config   nothing to do / invalid rule data      -> process exits
"""

from __future__ import annotations

import asyncio
import enum
import errno
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from portrelay.rules import Rule


PRIVILEGED_PORT_LIMIT = 1024


class ErrorKind(enum.Enum):
    BIND = "bind"
    DIAL = "dial"
    IO = "io"
    TIMEOUT = "timeout"
    CONFIG = "config"


class ForwardError(Exception):
    kind = ErrorKind.IO

    def __init__(self, message: str, *, rule: Optional["Rule"] = None) -> None:
        super().__init__(message)
        self.rule = rule


class BindError(ForwardError):
    kind = ErrorKind.BIND


class DialError(ForwardError):
    kind = ErrorKind.DIAL


class RelayIOError(ForwardError):
    kind = ErrorKind.IO


class ConfigError(ForwardError):
    kind = ErrorKind.CONFIG


class NoRulesError(ConfigError):
    pass


def is_permission_error(exc: BaseException) -> bool:
    if isinstance(exc, PermissionError):
        return True
    return isinstance(exc, OSError) and exc.errno in (errno.EACCES, errno.EPERM)


def bind_error(rule: "Rule", exc: OSError) -> BindError:
    proto = rule.protocol.value
    port = rule.local_port
    if port < PRIVILEGED_PORT_LIMIT and is_permission_error(exc):
        msg = (
            f"permission denied binding to {proto} port {port}: ports below {PRIVILEGED_PORT_LIMIT} "
            "require root privileges or CAP_NET_BIND_SERVICE"
        )
    else:
        msg = f"cannot bind {proto} port {port}: {exc}"
    return BindError(msg, rule=rule)


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, ForwardError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    return ErrorKind.IO
