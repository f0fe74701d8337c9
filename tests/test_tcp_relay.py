"""
TCP relay tests on localhost.

Each scenario runs a small asyncio target server on an ephemeral port and a
TcpRelay bound to 127.0.0.1 in front of it.
"""

import asyncio
import os
import socket

import pytest

from conftest import alloc_port, run
from portrelay.errors import BindError, ErrorKind, RelayIOError
from portrelay.rules import Protocol, Rule
from portrelay.tcp_relay import TcpRelay


async def _start_target(handler):
    srv = await asyncio.start_server(handler, host="127.0.0.1", port=0)
    return srv, srv.sockets[0].getsockname()[1]


async def _echo(reader, writer, seen=None):
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            if seen is not None:
                seen.append(data)
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        writer.close()


async def _start_relay(log, target_port, local_port=None):
    rule = Rule(
        local_port=local_port or alloc_port(),
        remote_port=target_port,
        remote_host="127.0.0.1",
        protocol=Protocol.TCP,
    )
    relay = TcpRelay(rule, log, bind_host="127.0.0.1")
    task = asyncio.create_task(relay.run())
    await asyncio.wait_for(relay.ready.wait(), timeout=5)
    return relay, task


async def _stop(task):
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


def test_ping_reaches_target_and_reply_reaches_sender(log):
    async def scenario():
        seen = []
        srv, target_port = await _start_target(lambda r, w: _echo(r, w, seen))
        relay, task = await _start_relay(log, target_port)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)
            writer.write(b"ping")
            await writer.drain()
            reply = await asyncio.wait_for(reader.readexactly(4), timeout=5)
            writer.close()
            return reply, b"".join(seen), relay.stats()
        finally:
            await _stop(task)
            srv.close()

    reply, observed, stats = run(scenario())
    assert reply == b"ping"
    assert observed == b"ping"
    assert stats["connections_total"] == 1
    assert stats["bytes_c2s"] == 4


def test_large_payload_is_relayed_byte_for_byte_in_both_directions(log):
    payload = os.urandom(2 * 1024 * 1024)

    async def scenario():
        srv, target_port = await _start_target(_echo)
        relay, task = await _start_relay(log, target_port)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)

            async def send():
                writer.write(payload)
                await writer.drain()

            _, echoed = await asyncio.gather(send(), reader.readexactly(len(payload)))
            writer.close()
            return echoed
        finally:
            await _stop(task)
            srv.close()

    assert run(scenario()) == payload


def test_half_close_still_delivers_buffered_replies(log):
    """Client shuts its write side; the target's full answer must still arrive."""
    request = b"hello target"
    answer = os.urandom(512 * 1024)

    async def respond_after_eof(reader, writer):
        got = await reader.read()  # until client EOF
        writer.write(got + answer)
        await writer.drain()
        writer.close()

    async def scenario():
        srv, target_port = await _start_target(respond_after_eof)
        relay, task = await _start_relay(log, target_port)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)
            writer.write(request)
            await writer.drain()
            writer.write_eof()
            data = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()
            return data
        finally:
            await _stop(task)
            srv.close()

    assert run(scenario()) == request + answer


def test_concurrent_connections_are_isolated(log):
    async def scenario():
        srv, target_port = await _start_target(_echo)
        relay, task = await _start_relay(log, target_port)
        try:
            async def client(tag: bytes):
                reader, writer = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)
                out = b""
                for i in range(20):
                    msg = tag + str(i).encode() + b";"
                    writer.write(msg)
                    await writer.drain()
                    out += await reader.readexactly(len(msg))
                writer.close()
                return out

            return await asyncio.gather(client(b"A"), client(b"B"))
        finally:
            await _stop(task)
            srv.close()

    a, b = run(scenario())
    assert b"B" not in a and a.startswith(b"A0;")
    assert b"A" not in b and b.startswith(b"B0;")


def test_slow_reader_does_not_stall_other_connection(log):
    flood = b"x" * (8 * 1024 * 1024)

    async def handler(reader, writer):
        try:
            data = await reader.read(65536)
            if data == b"flood":
                writer.write(flood)
                await writer.drain()  # blocks: nobody reads this connection
            else:
                writer.write(data)
                await writer.drain()
                await _echo(reader, writer)
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def scenario():
        srv, target_port = await _start_target(handler)
        relay, task = await _start_relay(log, target_port)
        try:
            _slow_r, slow_w = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)
            slow_w.write(b"flood")
            await slow_w.drain()
            await asyncio.sleep(0.2)

            reader, writer = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)
            writer.write(b"quick")
            await writer.drain()
            reply = await asyncio.wait_for(reader.readexactly(5), timeout=2)
            writer.close()
            slow_w.close()
            return reply
        finally:
            await _stop(task)
            srv.close()

    assert run(scenario()) == b"quick"


def test_dial_failure_closes_client_and_listener_keeps_accepting(log):
    async def scenario():
        dead_port = alloc_port()
        relay, task = await _start_relay(log, dead_port)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)
            first = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()

            # target comes up on the same port: the same listener now relays
            srv = await asyncio.start_server(_echo, host="127.0.0.1", port=dead_port)
            try:
                reader, writer = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)
                writer.write(b"again")
                await writer.drain()
                second = await asyncio.wait_for(reader.readexactly(5), timeout=5)
                writer.close()
            finally:
                srv.close()
            return first, second, relay.dial_failures
        finally:
            await _stop(task)

    first, second, failures = run(scenario())
    assert first == b""
    assert second == b"again"
    assert failures == 1


def test_bind_failure_raises_bind_error(log):
    async def scenario():
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]
            rule = Rule(local_port=port, remote_port=1, remote_host="127.0.0.1")
            relay = TcpRelay(rule, log, bind_host="127.0.0.1")
            with pytest.raises(BindError) as ei:
                await relay.run()
            return ei.value

    err = run(scenario())
    assert err.kind is ErrorKind.BIND
    assert str(err.rule.local_port) in str(err)


def test_cancel_closes_open_connections(log):
    async def scenario():
        srv, target_port = await _start_target(_echo)
        relay, task = await _start_relay(log, target_port)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)
            writer.write(b"hi")
            await writer.drain()
            await reader.readexactly(2)
            assert relay.stats()["connections_active"] == 1

            await _stop(task)
            tail = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()
            return tail, relay.stats()["connections_active"]
        finally:
            srv.close()

    tail, active = run(scenario())
    assert tail == b""
    assert active == 0


def test_closed_listener_stops_rule_with_io_error(log):
    async def scenario():
        srv, target_port = await _start_target(_echo)
        relay, task = await _start_relay(log, target_port)
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", relay.rule.local_port)
            writer.write(b"hi")
            await writer.drain()
            await reader.readexactly(2)

            relay._server.close()
            with pytest.raises(RelayIOError) as ei:
                await asyncio.wait_for(task, timeout=5)
            tail = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()
            return ei.value, tail, relay.stats()["connections_active"]
        finally:
            srv.close()

    err, tail, active = run(scenario())
    assert err.kind is ErrorKind.IO
    assert err.rule.protocol is Protocol.TCP
    assert tail == b""
    assert active == 0
