"""
Futures Session - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line runner for a live trading session.

- Loads credentials from .env / environment
- Connects and keeps the session alive
- Logs every closed candle and position update
- Shuts down cleanly on SIGINT / SIGTERM

============================================================
USAGE
============================================================
python -m futures_session --symbol BTCUSDT --interval 1m --testnet
python -m futures_session --mock --log-level DEBUG

Exit codes:
  0  stopped by signal
  1  connection attempts exhausted / invalid arguments

============================================================
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .adapters.mock import MockExchangeService
from .client import FuturesSessionClient
from .config import ExchangeConfig, SessionConfig
from .positions import Snapshot, describe
from .types import Candle, ConnectionState


logger = logging.getLogger(__name__)


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="futures-session",
        description="Live Binance USD-M Futures trading session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
  BINANCE_API_KEY / BINANCE_API_SECRET   API credentials
  BINANCE_TESTNET=true                   use testnet endpoints
  SESSION_SYMBOL / SESSION_INTERVAL      defaults for --symbol / --interval
  SESSION_MAX_RETRIES                    default for --max-retries
        """
    )

    # --------------------------------------------------------
    # Session Options
    # --------------------------------------------------------
    session_group = parser.add_argument_group("Session Options")
    session_group.add_argument(
        "--symbol", "-s",
        type=str,
        help="Symbol to stream candles for (default: SESSION_SYMBOL or BTCUSDT)",
    )
    session_group.add_argument(
        "--interval", "-i",
        type=str,
        help="Candle interval (default: SESSION_INTERVAL or 1m)",
    )
    session_group.add_argument(
        "--max-retries",
        type=int,
        metavar="N",
        help="Connect attempts before giving up (default: 10)",
    )

    # --------------------------------------------------------
    # Exchange Options
    # --------------------------------------------------------
    exchange_group = parser.add_argument_group("Exchange Options")
    exchange_group.add_argument(
        "--testnet",
        action="store_true",
        help="Use Binance Futures testnet endpoints",
    )
    exchange_group.add_argument(
        "--mock",
        action="store_true",
        help="Run against the in-memory mock exchange (no network)",
    )
    exchange_group.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help="Path to .env file (default: ./.env if present)",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")
    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    return parser


def validate_args(args: argparse.Namespace) -> List[str]:
    """Return a list of argument errors."""
    errors = []
    if args.max_retries is not None and args.max_retries < 1:
        errors.append("--max-retries must be at least 1")
    if args.testnet and args.mock:
        errors.append("--testnet and --mock are mutually exclusive")
    return errors


# ============================================================
# CONFIGURATION
# ============================================================

def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_config(args: argparse.Namespace) -> SessionConfig:
    """
    Build session configuration from environment + CLI arguments.

    CLI arguments win over environment variables.
    """
    config = SessionConfig.from_env()

    if args.symbol:
        config.symbol = args.symbol.upper()
    if args.interval:
        config.interval = args.interval
    if args.max_retries is not None:
        config.retry.max_attempts = args.max_retries
    if args.testnet:
        config.exchange = ExchangeConfig(testnet=True)

    return config


def build_client(args: argparse.Namespace, config: SessionConfig) -> FuturesSessionClient:
    if args.mock:
        return FuturesSessionClient(MockExchangeService(), config)
    return FuturesSessionClient.binance(config)


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(args: argparse.Namespace) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    config = build_config(args)
    client = build_client(args, config)

    stop_requested = asyncio.Event()
    exhausted = asyncio.Event()

    def on_candle(candle: Optional[Candle]) -> None:
        if candle is not None:
            logger.info(
                f"{config.symbol} {config.interval} closed: "
                f"O={candle.open} H={candle.high} L={candle.low} C={candle.close} V={candle.volume}"
            )

    def on_positions(snapshot: Snapshot) -> None:
        if not snapshot:
            logger.info("Positions: none open")
            return
        for line in describe(snapshot):
            logger.info(f"Position: {line}")

    def on_state(state: ConnectionState) -> None:
        logger.info(f"Connection state: {state.value}")
        if state == ConnectionState.DISCONNECTED and not stop_requested.is_set():
            exhausted.set()

    client.candles.subscribe(on_candle)
    client.position_updates.subscribe(on_positions)
    client.status.subscribe(on_state)

    _install_signal_handlers(stop_requested)

    try:
        await client.connect()
        waiters = [
            asyncio.ensure_future(stop_requested.wait()),
            asyncio.ensure_future(exhausted.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
    finally:
        stop_requested.set()
        await client.close()

    if exhausted.is_set():
        logger.error("Connection attempts exhausted")
        return 1
    logger.info("Session stopped")
    return 0


def _install_signal_handlers(stop_requested: asyncio.Event) -> None:
    """Set `stop_requested` on SIGINT/SIGTERM."""
    if sys.platform == "win32":
        signal.signal(signal.SIGINT, lambda signum, frame: stop_requested.set())
        return

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    if args.env_file:
        load_dotenv(args.env_file, override=False)
    else:
        load_dotenv()

    setup_logging(args.log_level)
    print_banner(args)

    return asyncio.run(async_main(args))


def print_banner(args: argparse.Namespace) -> None:
    """Print startup banner."""
    exchange = "mock" if args.mock else ("testnet" if args.testnet else "env/mainnet")
    print()
    print("=" * 60)
    print("  FUTURES SESSION")
    print("=" * 60)
    print(f"  Symbol:     {args.symbol or '(from env)'}")
    print(f"  Interval:   {args.interval or '(from env)'}")
    print(f"  Exchange:   {exchange}")
    print(f"  Log Level:  {args.log_level}")
    print("=" * 60)
    print()


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
