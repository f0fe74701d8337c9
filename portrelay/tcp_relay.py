"""
TCP relay: one listening server per rule, one task per accepted connection.

Each accepted connection dials a fresh connection to the rule's target and
runs two independent pipes (client->target, target->client) joined with
gather. When a pipe's source ends (EOF or error) it half-closes its
destination, so the opposite direction keeps delivering whatever is still
in flight. Both sockets are closed only after both pipes finished.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from portrelay.errors import DialError, RelayIOError, bind_error, classify
from portrelay.logsetup import emit
from portrelay.rules import Rule

DEFAULT_BIND_HOST = "0.0.0.0"
CHUNK_SIZE = 65536
LISTENER_CHECK_INTERVAL = 1.0


async def close_writer(writer: asyncio.StreamWriter, timeout: float = 0.25) -> None:
    try:
        writer.close()
    except Exception:
        return
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=timeout)
    except (asyncio.TimeoutError, OSError):
        pass


def half_close(writer: asyncio.StreamWriter) -> None:
    tr = writer.transport
    if tr is None or tr.is_closing():
        return
    try:
        if writer.can_write_eof():
            writer.write_eof()
        else:
            writer.close()
    except OSError:
        writer.close()


class TcpRelay:
    def __init__(
        self,
        rule: Rule,
        log: logging.Logger,
        *,
        bind_host: str = DEFAULT_BIND_HOST,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.rule = rule
        self.log = log
        self.bind_host = bind_host
        self.chunk_size = chunk_size

        self.ready = asyncio.Event()
        self._server: Optional[asyncio.base_events.Server] = None
        self._connections: Set[asyncio.Task] = set()

        self.connections_total = 0
        self.dial_failures = 0
        self.bytes_c2s = 0
        self.bytes_s2c = 0

    @property
    def bound_port(self) -> Optional[int]:
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    def stats(self) -> Dict[str, Any]:
        return {
            "rule": self.rule.describe(),
            "connections_total": self.connections_total,
            "connections_active": len(self._connections),
            "dial_failures": self.dial_failures,
            "bytes_c2s": self.bytes_c2s,
            "bytes_s2c": self.bytes_s2c,
        }

    async def run(self) -> None:
        """Bind and serve until cancelled. Bind failure raises BindError."""
        try:
            self._server = await asyncio.start_server(
                self._handle_client, host=self.bind_host, port=self.rule.local_port
            )
        except OSError as e:
            raise bind_error(self.rule, e) from e

        emit(self.log, logging.INFO, "tcp", "listening", {
            "port": self.rule.local_port,
            "target": f"{self.rule.remote_host}:{self.rule.remote_port}",
        })
        self.ready.set()

        # Timed loop => stop cleanly on cancel. is_serving() only turns False after an
        # explicit server.close(); accept errors are handled inside the event loop.
        try:
            while self._server.is_serving():
                await asyncio.sleep(LISTENER_CHECK_INTERVAL)
            raise RelayIOError(f"TCP listener on port {self.rule.local_port} closed", rule=self.rule)
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        srv = self._server
        if srv is not None:
            srv.close()
        conns = list(self._connections)
        for t in conns:
            t.cancel()
        if conns:
            await asyncio.gather(*conns, return_exceptions=True)
        if srv is not None:
            try:
                await asyncio.wait_for(srv.wait_closed(), timeout=0.5)
            except (asyncio.TimeoutError, OSError):
                pass
        emit(self.log, logging.INFO, "tcp", "stopped", {"port": self.rule.local_port})

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        self.connections_total += 1
        peer = writer.get_extra_info("peername")
        emit(self.log, logging.DEBUG, "tcp", "accepted", {"port": self.rule.local_port, "peer": str(peer)})

        try:
            try:
                t_reader, t_writer = await self._dial()
            except DialError as e:
                self.dial_failures += 1
                emit(self.log, logging.WARNING, "tcp", "dial_failed", {"peer": str(peer), "error": str(e)})
                return

            try:
                await asyncio.gather(
                    self._pipe(reader, t_writer, "c2s", peer),
                    self._pipe(t_reader, writer, "s2c", peer),
                )
            finally:
                await close_writer(t_writer)
        finally:
            await close_writer(writer)
            if task is not None:
                self._connections.discard(task)
            emit(self.log, logging.DEBUG, "tcp", "closed", {"port": self.rule.local_port, "peer": str(peer)})

    async def _dial(self):
        host, port = self.rule.remote_host, self.rule.remote_port
        try:
            return await asyncio.open_connection(host=host, port=port)
        except (OSError, asyncio.TimeoutError) as e:
            raise DialError(f"cannot connect to {host}:{port}: {e}", rule=self.rule) from e

    async def _pipe(
        self,
        src: asyncio.StreamReader,
        dst: asyncio.StreamWriter,
        direction: str,
        peer: Any,
    ) -> None:
        try:
            while True:
                data = await src.read(self.chunk_size)
                if not data:
                    break
                dst.write(data)
                await dst.drain()
                if direction == "c2s":
                    self.bytes_c2s += len(data)
                else:
                    self.bytes_s2c += len(data)
        except (OSError, asyncio.IncompleteReadError) as e:
            emit(self.log, logging.DEBUG, "tcp", "pipe_error", {
                "peer": str(peer),
                "direction": direction,
                "kind": classify(e).value,
                "error": repr(e),
            })
        finally:
            half_close(dst)
