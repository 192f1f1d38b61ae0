"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import signal
import sys

from reconciler.app import ClientFactory, run_all
from reconciler.config.bots import load_bot_configs
from reconciler.config.config import Settings
from reconciler.infra.logging_cfg import ERROR, build_logger, log_event
from reconciler.ledger.database import Database
from reconciler.monitoring.metrics import ReconMetrics, start_metrics_server

log = logging.getLogger("reconciler")


def load_client_factory(spec: str | None) -> ClientFactory | None:
    """Resolve "package.module:callable" to the exchange client factory."""
    if not spec:
        return None
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"RECON_EXCHANGE_FACTORY={spec!r} must look like 'module:callable'")
    factory = getattr(importlib.import_module(module_name), attr)
    if not callable(factory):
        raise ValueError(f"{spec} is not callable")
    return factory


async def main() -> None:
    cfg = Settings.load()
    build_logger("reconciler", level=getattr(logging, cfg.log_level), file_path=cfg.log_file)

    bots = load_bot_configs(cfg.bots_file)
    if not bots:
        log_event(log, "no_bots_configured", level=ERROR, bots_file=cfg.bots_file)
        sys.exit(1)

    client_factory = load_client_factory(cfg.exchange_factory)
    db = Database(cfg.db_path)
    metrics = ReconMetrics()
    start_metrics_server(metrics, cfg.metrics_port)

    log_event(log, "startup", bots=[b.bot_id for b in bots], settings=cfg.dump())

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(run_all(bots, cfg, db, client_factory, metrics))

    def stop_all() -> None:
        if not run_task.done():
            run_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    try:
        await run_task
    except asyncio.CancelledError:
        log_event(log, "shutdown_signal")
    finally:
        db.close()
        log_event(log, "shutdown_complete")


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nReconciler stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    cli()
