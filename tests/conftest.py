"""Shared fixtures for the relay test suite."""

import asyncio
import logging
import socket

import pytest


def alloc_port(sock_type=socket.SOCK_STREAM) -> int:
    """Reserve an available loopback port for tests."""
    with socket.socket(socket.AF_INET, sock_type) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def run(coro, timeout: float = 15.0):
    """Drive one test scenario on a fresh event loop with a hard deadline."""
    return asyncio.run(asyncio.wait_for(coro, timeout))


@pytest.fixture
def log():
    logger = logging.getLogger("portrelay.tests")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture
def tcp_port():
    return alloc_port(socket.SOCK_STREAM)


@pytest.fixture
def udp_port():
    return alloc_port(socket.SOCK_DGRAM)
