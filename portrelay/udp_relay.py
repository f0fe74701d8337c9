"""
UDP relay: one listening datagram endpoint per rule, one session per client address.

    client A --dgram--> [listener :local_port] --(session A socket)--> target
    client A <--------- [listener :local_port] <--(reply task A)------ target

Session state is kept in a SessionTable guarded by an asyncio.Lock. The
datagram path (lookup-or-create + timestamp refresh), the reaper
(staleness check + eviction) and reply-task completion (self removal) all
mutate the table under that lock, so:
  - at most one session exists per client address,
  - a session refreshed by a datagram is never evicted by a concurrent reap,
  - a session is closed exactly once, whoever gets to it first.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from portrelay.errors import DialError, RelayIOError, bind_error, classify
from portrelay.logsetup import emit
from portrelay.rules import Rule

Address = Tuple[Any, ...]

DEFAULT_BIND_HOST = "0.0.0.0"
SESSION_IDLE_TIMEOUT = 60.0
REAP_INTERVAL = 30.0
QUEUE_SIZE = 4096


def monotime() -> float:
    return time.monotonic()


# =============================================================================
# Datagram protocols -> asyncio queues
# =============================================================================

class _QueueProtocol(asyncio.DatagramProtocol):
    """
    Receive path never does work: datagrams go to a bounded queue, a task
    drains it. A close (and, for outbound session sockets, any socket error)
    is recorded in `error` and the reader is woken with a None item.
    Listener sockets pass `on_error`: their error_received is per-peer noise
    (a reply to a vanished client), reported but not fatal.
    """

    def __init__(
        self,
        maxsize: int = QUEUE_SIZE,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self.on_error = on_error
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.queue: "asyncio.Queue[Optional[Tuple[bytes, Address]]]" = asyncio.Queue(maxsize=maxsize)
        self.error: Optional[BaseException] = None
        self.dropped = 0

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Address) -> None:
        try:
            self.queue.put_nowait((data, addr))
        except asyncio.QueueFull:
            self.dropped += 1

    def error_received(self, exc: Exception) -> None:
        if self.on_error is not None:
            self.on_error(exc)
            return
        self._fail(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._fail(exc or ConnectionAbortedError("socket closed"))

    def _fail(self, exc: BaseException) -> None:
        if self.error is None:
            self.error = exc
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            # reader is not waiting; it checks `error` before the next get()
            pass

    async def next_datagram(self) -> Tuple[bytes, Address]:
        while True:
            if self.error is not None:
                raise self.error
            item = await self.queue.get()
            if item is not None:
                return item


# =============================================================================
# Session model
# =============================================================================

@dataclass
class UdpSession:
    client_addr: Address
    transport: asyncio.DatagramTransport
    protocol: _QueueProtocol
    last_seen: float = field(default_factory=monotime)
    reply_task: Optional[asyncio.Task] = None
    closed: bool = False
    close_reason: Optional[str] = None

    def touch(self, ts: float) -> None:
        self.last_seen = ts

    def close(self, reason: str) -> None:
        """Cancel the reply task and close the outbound socket. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        t = self.reply_task
        if t is not None and t is not asyncio.current_task() and not t.done():
            t.cancel()
        self.transport.close()


SessionFactory = Callable[[Address], Awaitable[UdpSession]]


class SessionTable:
    """Client address -> UdpSession, every mutation under one asyncio.Lock."""

    def __init__(self, idle_timeout: float = SESSION_IDLE_TIMEOUT) -> None:
        self.idle_timeout = float(idle_timeout)
        self._sessions: Dict[Address, UdpSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, addr: Address) -> bool:
        return addr in self._sessions

    def get(self, addr: Address) -> Optional[UdpSession]:
        return self._sessions.get(addr)

    def sessions(self) -> List[UdpSession]:
        return list(self._sessions.values())

    async def get_or_create(
        self,
        addr: Address,
        factory: SessionFactory,
        now: Optional[float] = None,
    ) -> Tuple[UdpSession, bool]:
        """
        Return (session, created). The lock is held across `factory`, so two
        datagrams from one address can never create two sessions. The
        session's timestamp is refreshed under the same lock the reaper uses.
        """
        async with self._lock:
            s = self._sessions.get(addr)
            created = False
            if s is None or s.closed:
                # a closed session whose reply task has not removed itself yet is replaced
                s = await factory(addr)
                self._sessions[addr] = s
                created = True
            s.touch(monotime() if now is None else now)
            return s, created

    async def discard(self, addr: Address, session: UdpSession) -> bool:
        """Remove `session` if it is still the one mapped to `addr`."""
        async with self._lock:
            if self._sessions.get(addr) is not session:
                return False
            del self._sessions[addr]
            return True

    async def expire(self, now: Optional[float] = None) -> List[UdpSession]:
        """Evict and close idle sessions. Returns the evicted sessions."""
        async with self._lock:
            ts = monotime() if now is None else now
            stale = [a for a, s in self._sessions.items() if ts - s.last_seen > self.idle_timeout]
            out: List[UdpSession] = []
            for a in stale:
                s = self._sessions.pop(a)
                s.close(f"idle_timeout_{self.idle_timeout:.0f}s")
                out.append(s)
            return out

    async def drain(self, reason: str) -> List[UdpSession]:
        """Remove and close every session."""
        async with self._lock:
            out = list(self._sessions.values())
            self._sessions.clear()
        for s in out:
            s.close(reason)
        return out


# =============================================================================
# Relay
# =============================================================================

class UdpRelay:
    def __init__(
        self,
        rule: Rule,
        log: logging.Logger,
        *,
        bind_host: str = DEFAULT_BIND_HOST,
        idle_timeout: float = SESSION_IDLE_TIMEOUT,
        reap_interval: float = REAP_INTERVAL,
        queue_size: int = QUEUE_SIZE,
    ) -> None:
        self.rule = rule
        self.log = log
        self.bind_host = bind_host
        self.reap_interval = float(reap_interval)
        self.queue_size = queue_size

        self.table = SessionTable(idle_timeout=idle_timeout)
        self.ready = asyncio.Event()
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._listener: Optional[_QueueProtocol] = None

        self.sessions_created = 0
        self.sessions_expired = 0
        self.session_failures = 0
        self.datagrams_in = 0
        self.datagrams_out = 0
        self.listener_errors = 0
        self._ended_reply_drops = 0

    @property
    def bound_port(self) -> Optional[int]:
        if self._transport is None:
            return None
        sock = self._transport.get_extra_info("sockname")
        return sock[1] if sock else None

    @property
    def datagrams_dropped(self) -> int:
        return self._listener.dropped if self._listener else 0

    @property
    def reply_datagrams_dropped(self) -> int:
        """Target replies dropped on full session queues, ended sessions included."""
        live = sum(s.protocol.dropped for s in self.table.sessions() if not s.closed)
        return self._ended_reply_drops + live

    def stats(self) -> Dict[str, Any]:
        return {
            "rule": self.rule.describe(),
            "sessions_active": len(self.table),
            "sessions_created": self.sessions_created,
            "sessions_expired": self.sessions_expired,
            "session_failures": self.session_failures,
            "datagrams_in": self.datagrams_in,
            "datagrams_out": self.datagrams_out,
            "datagrams_dropped": self.datagrams_dropped,
            "reply_datagrams_dropped": self.reply_datagrams_dropped,
            "listener_errors": self.listener_errors,
        }

    async def run(self) -> None:
        """
        Bind and relay until cancelled or the listening socket fails.
        Bind failure raises BindError; listener failure raises RelayIOError.
        Every live session is torn down before returning.
        """
        loop = asyncio.get_running_loop()
        try:
            transport, listener = await loop.create_datagram_endpoint(
                lambda: _QueueProtocol(self.queue_size, on_error=self._listener_error),
                local_addr=(self.bind_host, self.rule.local_port),
            )
        except OSError as e:
            raise bind_error(self.rule, e) from e

        self._transport = transport
        self._listener = listener
        emit(self.log, logging.INFO, "udp", "listening", {
            "port": self.rule.local_port,
            "target": f"{self.rule.remote_host}:{self.rule.remote_port}",
        })
        self.ready.set()

        reaper = asyncio.create_task(self._reap_loop(), name=f"udp-reaper-{self.rule.local_port}")
        try:
            while True:
                try:
                    data, addr = await listener.next_datagram()
                except OSError as e:
                    raise RelayIOError(
                        f"UDP listener on port {self.rule.local_port} failed: {e}", rule=self.rule
                    ) from e
                self.datagrams_in += 1
                await self._forward(data, addr)
        finally:
            reaper.cancel()
            transport.close()
            sessions = await self.table.drain("relay_stop")
            tasks = [s.reply_task for s in sessions if s.reply_task is not None]
            await asyncio.gather(reaper, *tasks, return_exceptions=True)
            emit(self.log, logging.INFO, "udp", "stopped", {
                "port": self.rule.local_port,
                "sessions_closed": len(sessions),
            })

    def _listener_error(self, exc: Exception) -> None:
        self.listener_errors += 1
        emit(self.log, logging.DEBUG, "udp", "listener_error", {
            "port": self.rule.local_port,
            "kind": classify(exc).value,
            "error": repr(exc),
        })

    async def _forward(self, data: bytes, addr: Address) -> None:
        try:
            session, created = await self.table.get_or_create(addr, self._open_session)
        except DialError as e:
            self.session_failures += 1
            emit(self.log, logging.WARNING, "udp", "session_failed", {"client": str(addr), "error": str(e)})
            return

        if created:
            self.sessions_created += 1
            emit(self.log, logging.DEBUG, "udp", "session_created", {
                "port": self.rule.local_port,
                "client": str(addr),
                "sessions": len(self.table),
            })

        try:
            session.transport.sendto(data)
        except OSError as e:
            emit(self.log, logging.DEBUG, "udp", "send_error", {
                "client": str(addr),
                "kind": classify(e).value,
                "error": repr(e),
            })

    async def _open_session(self, addr: Address) -> UdpSession:
        loop = asyncio.get_running_loop()
        host, port = self.rule.remote_host, self.rule.remote_port
        try:
            transport, proto = await loop.create_datagram_endpoint(
                lambda: _QueueProtocol(self.queue_size),
                remote_addr=(host, port),
            )
        except OSError as e:
            raise DialError(f"cannot open UDP socket to {host}:{port}: {e}", rule=self.rule) from e

        session = UdpSession(client_addr=addr, transport=transport, protocol=proto)
        session.reply_task = asyncio.create_task(
            self._reply_loop(session),
            name=f"udp-reply-{self.rule.local_port}-{addr}",
        )
        return session

    async def _reply_loop(self, session: UdpSession) -> None:
        addr = session.client_addr
        try:
            while True:
                data, _src = await session.protocol.next_datagram()
                listener = self._transport
                if listener is None or listener.is_closing():
                    return
                listener.sendto(data, addr)
                self.datagrams_out += 1
        except OSError as e:
            emit(self.log, logging.DEBUG, "udp", "session_error", {
                "client": str(addr),
                "kind": classify(e).value,
                "error": repr(e),
            })
        finally:
            session.close("reply_ended")
            self._ended_reply_drops += session.protocol.dropped
            await self.table.discard(addr, session)

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            for s in await self.table.expire():
                self.sessions_expired += 1
                emit(self.log, logging.DEBUG, "udp", "session_expired", {
                    "port": self.rule.local_port,
                    "client": str(s.client_addr),
                    "idle_sec": round(monotime() - s.last_seen, 1),
                })
