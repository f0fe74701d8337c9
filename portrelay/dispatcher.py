from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from portrelay.errors import ForwardError, NoRulesError
from portrelay.logsetup import emit
from portrelay.rules import Config, Protocol, Rule
from portrelay.tcp_relay import TcpRelay
from portrelay.udp_relay import UdpRelay

Relay = Union[TcpRelay, UdpRelay]

_TCP_OPTS = ("bind_host", "chunk_size")
_UDP_OPTS = ("bind_host", "idle_timeout", "reap_interval", "queue_size")


class Dispatcher:
    """
    Starts one relay per configured rule and keeps their failures apart:
    a rule that cannot bind, or whose listener dies, is logged and left
    stopped while the others keep running. Nothing is retried.
    """

    def __init__(self, config: Config, log: logging.Logger, **relay_kw: Any) -> None:
        self.config = config
        self.log = log
        self.relay_kw = relay_kw
        self.relays: List[Relay] = []
        self.failures: Dict[int, BaseException] = {}
        self._tasks: List[asyncio.Task] = []

    def relay_for(self, rule: Rule) -> Relay:
        if rule.protocol is Protocol.UDP:
            return UdpRelay(rule, self.log, **self._kw(_UDP_OPTS))
        return TcpRelay(rule, self.log, **self._kw(_TCP_OPTS))

    def _kw(self, allowed: Tuple[str, ...]) -> Dict[str, Any]:
        return {k: v for k, v in self.relay_kw.items() if k in allowed}

    def stats(self) -> List[Dict[str, Any]]:
        return [r.stats() for r in self.relays]

    async def run(self, started: Optional[asyncio.Event] = None) -> None:
        """
        Run every rule until all of them have stopped or this coroutine is
        cancelled, in which case every rule task is cancelled and awaited.
        """
        rules = self.config.rules
        if not rules:
            raise NoRulesError("no forwarding rules configured")

        self.relays = [self.relay_for(rule) for rule in rules]
        self._tasks = [
            asyncio.create_task(self._run_rule(i, relay), name=f"rule-{relay.rule.protocol.value}-{relay.rule.local_port}")
            for i, relay in enumerate(self.relays)
        ]
        if started is not None:
            started.set()

        try:
            await asyncio.gather(*self._tasks)
        finally:
            for t in self._tasks:
                t.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _run_rule(self, index: int, relay: Relay) -> None:
        rule = relay.rule
        emit(self.log, logging.INFO, "rule", "loading", {"rule": rule.describe()})
        try:
            await relay.run()
        except asyncio.CancelledError:
            raise
        except ForwardError as e:
            self.failures[index] = e
            emit(self.log, logging.ERROR, "rule", "failed", {"rule": rule.describe(), "kind": e.kind.value, "error": str(e)})
        except Exception as e:
            self.failures[index] = e
            self.log.exception("rule.crashed %s", {"rule": rule.describe(), "error": repr(e)})
