"""
Price Feed Keeper - On-Ledger Price Feed Module

This module keeps aggregated market prices on price feed accounts:
- TradingPairIdentity: Trading pair representation and feed address derivation
- PriceFeedAccount: Feed account state (current price, history, statistics)
- PriceAggregator: Weighted average with outlier filtering and confidence
- UpdateProtocol: Update instructions, validation and processing
- KeeperScheduler: Fetch, decide and submit loop
- sources: Modular market data source implementations
"""

from .config import AggregatorConfig, FeedPolicy, KeeperConfig, SchedulerConfig
from .errors import ErrorKind, KeeperError
from .KeeperScheduler import KeeperScheduler, KeeperStats, PairStats, Phase
from .LedgerClient import LedgerClient, SubmitReceipt
from .LocalLedger import LocalLedger
from .PriceAggregator import AggregatedQuote, AggregationResult, PriceAggregator
from .PriceFeedAccount import PriceFeedAccount
from .PriceSample import PriceSample, SourceQuote
from .QuoteCollector import QuoteCollector
from .RpcLedgerClient import RpcLedgerClient
from .SourceManager import SourceManager, SourceStatus
from .TradingPair import TradingPairIdentity

__all__ = [
    "AggregatedQuote",
    "AggregationResult",
    "AggregatorConfig",
    "ErrorKind",
    "FeedPolicy",
    "KeeperConfig",
    "KeeperError",
    "KeeperScheduler",
    "KeeperStats",
    "LedgerClient",
    "LocalLedger",
    "PairStats",
    "Phase",
    "PriceAggregator",
    "PriceFeedAccount",
    "PriceSample",
    "QuoteCollector",
    "RpcLedgerClient",
    "SchedulerConfig",
    "SourceManager",
    "SourceQuote",
    "SourceStatus",
    "SubmitReceipt",
    "TradingPairIdentity",
]
