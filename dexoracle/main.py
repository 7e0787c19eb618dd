#!/usr/bin/env python3
"""Stellar DEX Price Oracle.

Aggregates DEX trades of tracked assets against a base asset over a time
window and merges the volume-weighted prices with the oracle contract's
previously published prices.

Run once, periodically with --watch to investigate zero or missing prices, or
look up an account's signers with --account.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import time

from .src.AssetResolver import AssetType
from .src.errors import OracleError
from .src.LedgerStoreReplay import ReplayLedgerStore
from .src.LedgerStoreRpc import RpcLedgerStore
from .src.PriceOracle import (
    DEFAULT_RPC_URL,
    DEFAULT_SCAN_TIMEOUT,
    AggregatedTradeResult,
    PriceOracle,
    TradeAggregationParams,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 14
DEFAULT_TIMEFRAME = 300


def parse_assets(assets_str: str | None) -> list[dict[str, object]]:
    """Parse a comma-separated asset list into descriptors.

    Format: XLM,USDC:GA5Z...,EURC:GDHU...

    :param assets_str: Comma-separated asset codes.
    :returns: List of ``{"type", "code"}`` descriptors.
    """
    if not assets_str:
        return []
    return [
        {"type": int(AssetType.STELLAR), "code": code.strip()}
        for code in assets_str.split(",")
        if code.strip()
    ]


def normalize_timestamp(timestamp: float, timeframe: int) -> int:
    """Round a timestamp down to the start of its timeframe.

    :param timestamp: Unix seconds.
    :param timeframe: Timeframe length in seconds.
    :returns: Start of the timeframe containing ``timestamp``.
    """
    return int(timestamp // timeframe) * timeframe


def last_complete_window(now: float, timeframe: int) -> int:
    """Start of the most recent timeframe that has fully elapsed.

    :param now: Current unix time.
    :param timeframe: Timeframe length in seconds.
    :returns: Window start in unix seconds.
    """
    return normalize_timestamp(now, timeframe) - timeframe


def find_missing_prices(result: AggregatedTradeResult) -> list[str]:
    """List assets whose merged price is missing or zero.

    :param result: Aggregation result to inspect.
    :returns: Canonical asset strings with a None or 0 price.
    """
    return [str(asset) for asset, price in result.prices.items() if not price]


def build_params(args: argparse.Namespace, from_timestamp: int) -> TradeAggregationParams:
    return TradeAggregationParams(
        contract=args.contract,
        base_asset=parse_assets(args.base_asset)[0],
        assets=parse_assets(args.assets),
        decimals=args.decimals,
        from_timestamp=from_timestamp,
        period=args.timeframe,
    )


async def run_once(oracle: PriceOracle, args: argparse.Namespace) -> None:
    from_timestamp = args.from_timestamp
    if from_timestamp is None:
        from_timestamp = last_complete_window(time.time(), args.timeframe)

    result = await oracle.aggregate_trades(build_params(args, from_timestamp))
    print(json.dumps(result.to_dict(), indent=2))


async def run_watch(oracle: PriceOracle, args: argparse.Namespace) -> None:
    """Aggregate every timeframe and flag zero or missing prices."""
    while True:
        from_timestamp = last_complete_window(time.time(), args.timeframe)
        try:
            result = await oracle.aggregate_trades(build_params(args, from_timestamp))
        except OracleError as e:
            # Caller input errors will not fix themselves; stop watching
            if isinstance(e, ValueError):
                raise
            logger.error(f"Window {from_timestamp} failed: {e}")
        else:
            logger.info(f"Window {from_timestamp}: {json.dumps(result.to_dict())}")
            for asset in find_missing_prices(result):
                logger.warning(
                    f"Window {from_timestamp}: zero or missing price for {asset} "
                    f"(trades={result.trades.get(asset, 0)})"
                )

        next_window = normalize_timestamp(time.time(), args.timeframe) + args.timeframe
        await asyncio.sleep(max(0.0, next_window - time.time()))


async def run_account(oracle: PriceOracle, account: str) -> None:
    props = await oracle.retrieve_account_props(account)
    print(json.dumps(props.to_dict(), indent=2))


async def run(oracle: PriceOracle, args: argparse.Namespace) -> None:
    async with oracle:
        if args.account:
            await run_account(oracle, args.account)
        elif args.watch:
            await run_watch(oracle, args)
        else:
            await run_once(oracle, args)


def main() -> None:
    """Main entry point for the DEX price oracle CLI."""
    parser = argparse.ArgumentParser(
        description="Stellar DEX Price Oracle: windowed trade aggregation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Aggregate the last complete 5 minute window
  python -m dexoracle.main --contract CC... \\
      --assets USDC:GA5ZSEJYB37JRC5AVCIA5MOP4RHTM335X2KGX3IHOJAPP5RE34K4KZVN

  # Investigate zero prices every timeframe
  python -m dexoracle.main --contract CC... --assets USDC:GA5Z... --watch

  # Replay a captured window offline
  python -m dexoracle.main --replay capture.json --contract CC... \\
      --assets USDC:GA5Z... --from 1717000000

  # Show an account's signers
  python -m dexoracle.main --account GB...

Environment variables (CLI args take precedence):
  RPC_URL, REPLAY_FILE, CONTRACT, BASE_ASSET, ASSETS, DECIMALS, TIMEFRAME,
  FROM_TIMESTAMP, SCAN_TIMEOUT, REQUEST_TIMEOUT, ACCOUNT
""",
    )

    parser.add_argument(
        "--rpc-url",
        dest="rpc_url",
        type=str,
        help=f"Stellar RPC endpoint (default: {DEFAULT_RPC_URL})",
        default=os.environ.get("RPC_URL") or DEFAULT_RPC_URL,
    )

    parser.add_argument(
        "--replay",
        type=str,
        help="Read ledger data from a JSON capture instead of RPC",
        default=os.environ.get("REPLAY_FILE"),
    )

    parser.add_argument(
        "--contract",
        type=str,
        help="Oracle contract id (C... strkey or hex hash)",
        default=os.environ.get("CONTRACT"),
    )

    parser.add_argument(
        "--base-asset",
        dest="base_asset",
        type=str,
        help="Base asset prices are quoted in (default: XLM)",
        default=os.environ.get("BASE_ASSET") or "XLM",
    )

    parser.add_argument(
        "--assets",
        type=str,
        help="Comma-separated tracked assets (e.g., USDC:GA5Z...,EURC:GDHU...)",
        default=os.environ.get("ASSETS"),
    )

    parser.add_argument(
        "--decimals",
        type=int,
        help=f"Fractional digits of price mantissas (default: {DEFAULT_DECIMALS})",
        default=int(os.environ.get("DECIMALS") or DEFAULT_DECIMALS),
    )

    parser.add_argument(
        "--timeframe",
        type=int,
        help=f"Window length in seconds (default: {DEFAULT_TIMEFRAME})",
        default=int(os.environ.get("TIMEFRAME") or DEFAULT_TIMEFRAME),
    )

    parser.add_argument(
        "--from",
        dest="from_timestamp",
        type=int,
        help="Window start in unix seconds (default: last complete timeframe)",
        default=int(os.environ["FROM_TIMESTAMP"]) if os.environ.get("FROM_TIMESTAMP") else None,
    )

    parser.add_argument(
        "--scan-timeout",
        dest="scan_timeout",
        type=float,
        help=f"Deadline for one window scan in seconds (default: {DEFAULT_SCAN_TIMEOUT:g}, 0 to disable)",
        default=float(os.environ.get("SCAN_TIMEOUT") or DEFAULT_SCAN_TIMEOUT),
    )

    parser.add_argument(
        "--request-timeout",
        dest="request_timeout",
        type=float,
        help="Timeout for individual RPC requests in seconds (default: 30.0)",
        default=float(os.environ.get("REQUEST_TIMEOUT") or "30.0"),
    )

    parser.add_argument(
        "--account",
        type=str,
        help="Print the properties of this account and exit",
        default=os.environ.get("ACCOUNT"),
    )

    parser.add_argument(
        "--watch",
        action="store_true",
        help="Aggregate every timeframe and warn about zero or missing prices",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if not args.account:
        if not args.contract:
            parser.error("--contract is required for aggregation")
        if not parse_assets(args.assets):
            parser.error("At least one tracked asset must be specified")
        if not parse_assets(args.base_asset):
            parser.error("--base-asset must not be empty")

    if args.timeframe < 1:
        parser.error("--timeframe must be at least 1 second")

    if args.decimals < 0:
        parser.error("--decimals must not be negative")

    if args.watch and args.from_timestamp is not None:
        parser.error("--from cannot be combined with --watch")

    scan_timeout = args.scan_timeout if args.scan_timeout > 0 else None

    if args.replay:
        store = ReplayLedgerStore.from_file(args.replay)
        source = f"replay {args.replay}"
    else:
        store = RpcLedgerStore(args.rpc_url, timeout=args.request_timeout)
        source = args.rpc_url

    # Log configuration
    logger.info("=" * 60)
    logger.info("Stellar DEX Price Oracle")
    logger.info("=" * 60)
    logger.info(f"Ledger source:     {source}")
    if args.account:
        logger.info(f"Account:           {args.account}")
    else:
        logger.info(f"Contract:          {args.contract}")
        logger.info(f"Base asset:        {args.base_asset}")
        logger.info(f"Tracked assets:    {args.assets}")
        logger.info(f"Decimals:          {args.decimals}")
        logger.info(f"Timeframe:         {args.timeframe}s")
        logger.info(f"Mode:              {'watch' if args.watch else 'once'}")
    logger.info("=" * 60)

    try:
        oracle = PriceOracle(store, scan_timeout=scan_timeout)
        asyncio.run(run(oracle, args))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
