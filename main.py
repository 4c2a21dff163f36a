"""Local paper trading runner."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Any

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL, RUN_TAG
from monitor.dexscreener import DexScreenerSource
from trading.engine import TradingEngine
from trading.state_store import StateStore
from trading.strategy import StrategyConfigError

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] [%(run_tag)s] %(name)s: %(message)s")
    prev_factory = logging.getLogRecordFactory()

    def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = prev_factory(*args, **kwargs)
        if not hasattr(record, "run_tag"):
            setattr(record, "run_tag", RUN_TAG)
        return record

    logging.setLogRecordFactory(_record_factory)

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Paper trade freshly launched meme tokens from DexScreener.")
    parser.add_argument("--reset", action="store_true", help="Wipe cash, positions and history before starting.")
    parser.add_argument(
        "--import-strategy",
        metavar="PATH",
        default="",
        help="Load a strategy JSON file (overrides STRATEGY_FILE).",
    )
    parser.add_argument("--export-strategy", metavar="PATH", default="", help="Write the active strategy and exit.")
    parser.add_argument("--once", action="store_true", help="Run one scan and one monitor tick, then exit.")
    return parser.parse_args(argv)


def _install_stop_handlers(request_stop: Any) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead.
            continue


async def run(args: argparse.Namespace) -> int:
    engine = TradingEngine(DexScreenerSource(), store=StateStore())
    try:
        strategy_path = args.import_strategy or str(config.STRATEGY_FILE or "")
        if strategy_path:
            try:
                engine.import_strategy(strategy_path)
            except StrategyConfigError as exc:
                logger.error("STRATEGY_IMPORT failed path=%s error=%s", strategy_path, exc)
                return 2
        if args.reset:
            await engine.reset()
        if args.export_strategy:
            engine.export_strategy(args.export_strategy)
            return 0
        if args.once:
            await engine.scan_once()
            await engine.monitor_once()
            logger.info("RUN_ONCE stats=%s", engine.get_stats())
            return 0

        engine.start()
        _install_stop_handlers(engine.request_stop)
        await engine.wait_stopped()
        logger.info("SHUTDOWN stats=%s", engine.get_stats())
        return 1 if engine.fatal_error is not None else 0
    finally:
        await engine.shutdown()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging()
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
