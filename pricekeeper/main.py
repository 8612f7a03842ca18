#!/usr/bin/env python3
"""Price Feed Keeper.

Fetches market quotes from multiple sources, aggregates them into a price
with a confidence score and keeps one on-ledger price feed account per
trading pair up to date.

Configure with CLI arguments or env vars (see --help).
"""

import argparse
import asyncio
import logging
import os
import sys

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .src.config import (
    LOCALNET_PRIVATE_KEY,
    AggregatorConfig,
    KeeperConfig,
    SchedulerConfig,
    parse_api_keys,
)
from .src.KeeperScheduler import KeeperScheduler
from .src.LedgerClient import LedgerClient
from .src.LocalLedger import LocalLedger
from .src.PriceAggregator import PriceAggregator
from .src.QuoteCollector import QuoteCollector
from .src.RpcLedgerClient import RpcLedgerClient
from .src.sources import get_available_sources, get_source
from .src.SourceManager import SourceManager
from .src.TradingPair import TradingPairIdentity

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def build_ledger(config: KeeperConfig) -> LedgerClient:
    """Create the ledger client for a configuration.

    :param config: Keeper configuration.
    :returns: RpcLedgerClient if a gateway URL is set, LocalLedger otherwise.
    """
    if config.ledger_url:
        return RpcLedgerClient(config.ledger_url)
    logger.warning("No ledger URL configured, using in-process local ledger")
    return LocalLedger(config.program_id, config.policy)


def build_scheduler(
    config: KeeperConfig,
    signer: LocalAccount,
    ledger: LedgerClient | None = None,
) -> KeeperScheduler:
    """Wire sources, collector, aggregator and ledger into a scheduler.

    :param config: Keeper configuration.
    :param signer: Authority account that signs updates.
    :param ledger: Ledger client (default: from build_ledger()).
    :returns: KeeperScheduler ready to run.
    :raises ValueError: If a pair or source name is invalid.
    """
    pairs = [TradingPairIdentity.from_string(p) for p in config.pairs]
    sources = {
        name: get_source(
            name,
            api_key=config.api_keys.get(name),
            timeout=config.scheduler.fetch_timeout,
        )
        for name in config.sources
    }
    collector = QuoteCollector(
        sources,
        SourceManager(
            list(sources),
            base_backoff_seconds=config.scheduler.base_backoff,
            max_backoff_seconds=config.scheduler.max_backoff,
        ),
        fetch_timeout=config.scheduler.fetch_timeout,
    )
    return KeeperScheduler(
        pairs,
        collector,
        ledger or build_ledger(config),
        signer,
        aggregator=PriceAggregator(config.aggregator),
        config=config.scheduler,
        program_id=config.program_id,
        history_capacity=config.history_capacity,
    )


def main() -> None:
    """Main entry point for the Price Feed Keeper CLI."""
    available_sources = get_available_sources()

    try:
        defaults = KeeperConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid environment configuration: {e}")
        sys.exit(2)

    parser = argparse.ArgumentParser(
        description="Price Feed Keeper: Aggregated multi-source on-ledger price feeds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Examples:
  # SOL/USDC from every source against an in-process ledger
  python -m pricekeeper.main --pairs sol/usdc --sources okx,binance,coingecko

  # Several pairs against a remote ledger gateway
  python -m pricekeeper.main --pairs sol/usdc,btc/usdt \\
      --ledger-url http://localhost:8899

  # With API keys for premium sources
  python -m pricekeeper.main --pairs sol/usdc \\
      --api-keys coingecko=your-api-key

Environment variables (CLI args take precedence):
  PAIRS, SOURCES, MIN_SOURCES, MAX_QUOTE_AGE, OUTLIER_Z, DRIFT_LIMIT_PERCENT,
  PRICE_THRESHOLD_PERCENT, UPDATE_INTERVAL, FETCH_TIMEOUT, LEDGER_URL,
  PROGRAM_ID, HISTORY_CAPACITY, KEEPER_PRIVATE_KEY, API_KEYS,
  API_KEY_COINGECKO, etc.
""",
    )

    parser.add_argument(
        "--pairs",
        type=str,
        help="Comma-separated trading pairs (e.g., sol/usdc,btc/usdt)",
        default=",".join(defaults.pairs),
    )

    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated price sources. Available: {', '.join(available_sources)}",
        default=",".join(defaults.sources),
    )

    parser.add_argument(
        "--min-sources",
        dest="min_sources",
        type=int,
        help="Minimum sources required for valid aggregation (default: 2)",
        default=defaults.aggregator.min_sources,
    )

    parser.add_argument(
        "--max-quote-age",
        dest="max_quote_age",
        type=float,
        help="Seconds after which a source quote is discarded (default: 60)",
        default=defaults.aggregator.max_age,
    )

    parser.add_argument(
        "--outlier-z",
        dest="outlier_z",
        type=float,
        help="Z-score above which a quote is an outlier (default: 2.0)",
        default=defaults.aggregator.outlier_z_threshold,
    )

    parser.add_argument(
        "--drift-limit",
        dest="drift_limit",
        type=float,
        help="Max change vs previous price percent (default: 0, disabled)",
        default=defaults.aggregator.drift_limit_percent or 0.0,
    )

    parser.add_argument(
        "--price-threshold",
        dest="price_threshold",
        type=float,
        help="Price move percent that triggers an update (default: 1.0)",
        default=defaults.scheduler.price_threshold * 100,
    )

    parser.add_argument(
        "--update-interval",
        dest="update_interval",
        type=float,
        help="Seconds between keeper cycles (minimum: 1, default: 60)",
        default=defaults.scheduler.update_interval,
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for individual fetch requests in seconds (default: 10.0)",
        default=defaults.scheduler.fetch_timeout,
    )

    parser.add_argument(
        "--ledger-url",
        dest="ledger_url",
        type=str,
        help="Ledger gateway URL (default: in-process local ledger)",
        default=defaults.ledger_url,
    )

    parser.add_argument(
        "--program-id",
        dest="program_id",
        type=str,
        help="Address of the program that owns feed accounts",
        default=defaults.program_id,
    )

    parser.add_argument(
        "--history-capacity",
        dest="history_capacity",
        type=int,
        help="History slots for newly created feed accounts (default: 1000)",
        default=defaults.history_capacity,
    )

    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., coingecko=abc)",
        default=None,
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
    if args.update_interval < 1:
        parser.error("--update-interval must be at least 1 second")

    if args.min_sources < 1:
        parser.error("--min-sources must be at least 1")

    # Parse pairs and sources
    pairs = [p.strip() for p in args.pairs.split(",") if p.strip()]
    sources = [s.strip().lower() for s in args.sources.split(",") if s.strip()]

    if not pairs:
        parser.error("At least one trading pair must be specified")

    if not sources:
        parser.error("At least one source must be specified")

    # Validate sources
    invalid_sources = [s for s in sources if s not in available_sources]
    if invalid_sources:
        parser.error(
            f"Unknown sources: {invalid_sources}. "
            f"Available: {', '.join(available_sources)}"
        )

    # Parse API keys (environment + CLI)
    api_keys = dict(defaults.api_keys)
    api_keys.update(parse_api_keys(args.api_keys))

    # Handle drift limit (0 means disabled)
    drift_limit = args.drift_limit if args.drift_limit > 0 else None

    try:
        config = KeeperConfig(
            pairs=tuple(pairs),
            sources=tuple(sources),
            api_keys=api_keys,
            ledger_url=args.ledger_url,
            program_id=args.program_id,
            history_capacity=args.history_capacity,
            aggregator=AggregatorConfig(
                min_sources=args.min_sources,
                max_age=args.max_quote_age,
                outlier_z_threshold=args.outlier_z,
                drift_limit_percent=drift_limit,
            ),
            scheduler=SchedulerConfig(
                update_interval=args.update_interval,
                price_threshold=args.price_threshold / 100,
                fetch_timeout=args.fetch_timeout,
            ),
            policy=defaults.policy,
        )
    except ValueError as e:
        parser.error(str(e))

    private_key = os.environ.get("KEEPER_PRIVATE_KEY")
    if not private_key:
        if config.ledger_url:
            parser.error("KEEPER_PRIVATE_KEY is required with --ledger-url")
        logger.warning("KEEPER_PRIVATE_KEY not set, using localnet development key")
        private_key = LOCALNET_PRIVATE_KEY
    signer = Account.from_key(private_key)

    # Log configuration
    logger.info("=" * 60)
    logger.info("Price Feed Keeper")
    logger.info("=" * 60)
    logger.info(f"Ledger:            {config.ledger_url or 'local (in-process)'}")
    logger.info(f"Program:           {config.program_id}")
    logger.info(f"Authority:         {signer.address}")
    logger.info(f"Trading Pairs:     {', '.join(pairs)}")
    logger.info(f"Sources:           {', '.join(sources)}")
    logger.info(f"Min Sources:       {args.min_sources}")
    logger.info(f"Outlier Z:         {args.outlier_z}")
    logger.info(f"Drift Limit:       {args.drift_limit}%" if drift_limit else "Drift Limit:       disabled")
    logger.info(f"Price Threshold:   {args.price_threshold}%")
    logger.info(f"Update Interval:   {args.update_interval}s")
    logger.info(f"Fetch Timeout:     {args.fetch_timeout}s")
    if api_keys:
        logger.info(f"API Keys:          {', '.join(api_keys.keys())}")
    logger.info("=" * 60)

    try:
        scheduler = build_scheduler(config, signer)
        asyncio.run(scheduler.run())
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
