from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional, Tuple

from portrelay.config import default_config_path, ensure_default_config, load_config, working_dir
from portrelay.dispatcher import Dispatcher
from portrelay.errors import NoRulesError
from portrelay.logsetup import emit, setup_logging
from portrelay.rules import Config
from portrelay.service import install_service, remove_service


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Forward local TCP/UDP ports to remote host:port targets")
    p.add_argument("--config", default=None, help=f"Path to JSON (or json-ish) config file (default: {default_config_path()})")
    p.add_argument("--install-service", action="store_true", help="Install and start a systemd service (root)")
    p.add_argument("--remove-service", action="store_true", help="Stop and remove the systemd service (root)")
    p.add_argument("--working-dir", default=None, help=f"Service working directory (default: {working_dir()})")
    p.add_argument("--user", default="root", help="User the service runs as (default: root)")
    return p


def _read_config(path: Path) -> Tuple[Config, Optional[str]]:
    try:
        return load_config(path), None
    except FileNotFoundError as e:
        return Config(), f"no configuration found or could not be read ({e}); using defaults"


async def amain(args: argparse.Namespace) -> int:
    path = Path(args.config) if args.config else default_config_path()
    created_warning = ensure_default_config(path) if not args.config else None

    cfg, read_warning = _read_config(path)
    log = setup_logging(cfg)
    for w in (created_warning, read_warning):
        if w:
            emit(log, logging.WARNING, "config", "warning", {"path": str(path), "detail": w})
    emit(log, logging.INFO, "config", "loaded", {"path": str(path), "rules": len(cfg.rules), "debug": cfg.debug})

    dispatcher = Dispatcher(cfg, log)
    stop_ev = asyncio.Event()

    def _stop(*_a) -> None:
        stop_ev.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except NotImplementedError:
            pass

    run_task = asyncio.create_task(dispatcher.run(), name="dispatcher")
    stop_task = asyncio.create_task(stop_ev.wait(), name="stop-signal")
    try:
        await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
        if not run_task.done():
            run_task.cancel()
        results = await asyncio.gather(run_task, stop_task, return_exceptions=True)

    err = results[0]
    if isinstance(err, NoRulesError):
        emit(log, logging.ERROR, "config", "no_rules", {"path": str(path), "hint": "add rules to the config file"})
        return 1
    if isinstance(err, BaseException) and not isinstance(err, asyncio.CancelledError):
        log.error("dispatcher.crashed %s", {"error": repr(err)})
        return 1

    if stop_ev.is_set():
        emit(log, logging.INFO, "process", "stopped", {"stats": dispatcher.stats()})
        return 0

    # every rule ended on its own
    emit(log, logging.ERROR, "process", "all_rules_stopped", {"failures": len(dispatcher.failures)})
    return 1


def main(argv: Optional[list] = None) -> None:
    args = build_argparser().parse_args(argv)

    if args.install_service or args.remove_service:
        if args.remove_service:
            remove_service()
        else:
            wd = Path(args.working_dir) if args.working_dir else working_dir()
            cfg_path = Path(args.config) if args.config else default_config_path()
            install_service(wd, cfg_path, user=args.user)
        raise SystemExit(0)

    try:
        rc = asyncio.run(amain(args))
    except KeyboardInterrupt:
        rc = 130
    raise SystemExit(rc)
