"""Main entry point for GapWatch.

Serves the latency-gap monitor and the signed Kalshi proxy over HTTP.
Polling cadence belongs to the caller (dashboard interval, cron, etc.).
"""

import asyncio
import os
import signal
import sys
from typing import Optional

from dotenv import load_dotenv
from loguru import logger

from data.state_store import DEFAULT_STATE_PATH, get_store
from logic.gap_monitor import ArbitrageMonitor, MonitorConfig
from services.gap_server import GapServer
from services.kalshi_client import KalshiClient
from services.price_feed import SpotPriceFeed


# Load environment variables
load_dotenv()


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure loguru logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for log output
    """
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        level=log_level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        colorize=True,
    )

    if log_file:
        logger.add(
            log_file,
            level=log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}",
            rotation="10 MB",
            retention="7 days",
            compression="gz",
        )


def build_server() -> GapServer:
    """Wire the monitor and server from environment configuration."""
    timeout = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
    use_demo = os.getenv("KALSHI_USE_DEMO", "false").lower() in ("true", "1", "yes")

    config = MonitorConfig(
        series_ticker=os.getenv("KALSHI_SERIES_TICKER", "KXBTCD"),
        opportunity_threshold_usd=float(os.getenv("GAP_THRESHOLD_USD", "150")),
    )

    kalshi = KalshiClient(use_demo=use_demo, timeout=timeout)
    price_feed = SpotPriceFeed(
        symbol=os.getenv("SPOT_SYMBOL", "BTCUSDT"),
        coinbase_product=os.getenv("COINBASE_PRODUCT", "BTC-USD"),
        timeout=timeout,
    )
    store = get_store(os.getenv("MONITOR_STATE_FILE", DEFAULT_STATE_PATH))
    monitor = ArbitrageMonitor(kalshi, price_feed, store, config)

    return GapServer(
        monitor,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
    )


async def main():
    """Main async entry point."""
    setup_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FILE"))

    server = build_server()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()

    def handle_shutdown():
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_shutdown)

    await server.start()
    try:
        await stop_event.wait()
    finally:
        await server.stop()
        logger.info("GapWatch stopped")


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
