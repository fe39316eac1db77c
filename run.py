#!/usr/bin/env python3
"""
Regime Signals - streaming regime classification and confluence signals

Usage:
    python run.py                      # BTCUSDT 5m from .env / defaults
    python run.py -s ETHUSDT -i 1m     # Another market and interval
    python run.py --log-level DEBUG    # Verbose bus/feed logging
    python run.py --help               # Show all options
"""

import argparse
import asyncio
import signal
import sys

from core.config import settings
from core.events import AgentMessage, FeedErrorReport, MessageType, NewSignal
from core.logging_utils import get_logger, quiet_library_loggers, setup_logging
from core.pipeline import SignalPipeline

logger = get_logger("run")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='regime-signals',
        description='Regime Signals - live regime classification and trade signals',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py                     Stream the configured market
  python run.py -s ETHUSDT -i 15m   Stream ETHUSDT 15m candles
""",
    )
    parser.add_argument('-s', '--symbol', type=str, default=None,
                        help=f'Market symbol (default: {settings.symbol})')
    parser.add_argument('-i', '--interval', type=str, default=None,
                        help=f'Kline interval (default: {settings.interval})')
    parser.add_argument('-b', '--balance', type=float, default=None,
                        help=f'Account balance for sizing (default: {settings.account_balance:.0f})')
    parser.add_argument('--log-level', type=str, default=None,
                        help=f'Log level (default: {settings.log_level})')
    return parser


def settings_from_args(args: argparse.Namespace):
    update = {}
    if args.symbol:
        update["symbol"] = args.symbol.upper()
    if args.interval:
        update["interval"] = args.interval
    if args.balance is not None:
        update["account_balance"] = args.balance
    if args.log_level:
        update["log_level"] = args.log_level
    return settings.model_copy(update=update)


def _log_signal(message: AgentMessage) -> None:
    payload = message.payload
    if isinstance(payload, NewSignal) and payload.signal.is_actionable:
        sig = payload.signal
        logger.info(
            "[SIGNAL] %s %s conf=%.0f entry=%.2f SL=%.2f TP=%.2f size=%.6f%s",
            sig.regime.value,
            sig.action.value,
            sig.confidence,
            sig.entry_price,
            sig.stop_loss,
            sig.take_profit,
            sig.position.position_size if sig.position else 0.0,
            "" if sig.executable else f" [not executable: {sig.rejection_reason}]",
        )


def _log_feed_error(message: AgentMessage) -> None:
    payload = message.payload
    if isinstance(payload, FeedErrorReport) and payload.terminal:
        logger.error("[FEED] Offline: %s (%s)", payload.message, payload.error)


async def run(args: argparse.Namespace) -> None:
    cfg = settings_from_args(args)
    pipeline = SignalPipeline.for_binance(cfg)
    pipeline.bus.register(MessageType.NEW_SIGNAL, _log_signal)
    pipeline.bus.register(MessageType.FEED_ERROR, _log_feed_error)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig, frame):
        logger.info("Received signal %s, shutting down gracefully...", sig)
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("Streaming %s %s (balance %.2f)", cfg.symbol, cfg.interval, cfg.account_balance)
    pipeline.start()
    try:
        await stop_event.wait()
    finally:
        await pipeline.stop()
        logger.info("Shutdown complete")


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level or settings.log_level)
    quiet_library_loggers()
    try:
        asyncio.run(run(args))
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
