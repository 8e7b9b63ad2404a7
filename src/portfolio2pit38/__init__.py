from .core import (
    BASE_CURRENCY,
    POLISH_TAX_RATE,
    WITHHOLDING_TAX_RATE,
    OversellPolicy,
    PortfolioOrchestrator,
    allocate_dividends,
    calculate_dividend_totals,
    calculate_money_invested,
    calculate_ownership_periods,
    compute_dividend_tax,
    compute_tax,
    filter_dividends_by_ownership,
    find_period_quantity,
    handle_ingest_request,
    replay_ledger,
)
from .errors import (
    ConcurrentModificationError,
    ExternalLookupError,
    InvariantViolation,
    PersistenceError,
    PortfolioError,
    ValidationError,
    error_payload,
)
from .fx import (
    DEFAULT_USD_PLN_RATE,
    FailFast,
    FallbackConstant,
    FxRateResolver,
    NbpRateSource,
    build_nbp_rate_urls,
    load_nbp_rates,
)
from .market_data import FmpForexRateSource, FmpMarketDataClient
from .models import (
    AllocatedDividend,
    DividendRecord,
    DividendTaxTotals,
    OwnershipPeriod,
    PortfolioAggregate,
    Transaction,
)
from .storage import InMemoryPortfolioStore, JsonFilePortfolioStore
from .validation import parse_transaction
from .config import Settings
from .cli import main

__all__ = [
    "BASE_CURRENCY",
    "DEFAULT_USD_PLN_RATE",
    "POLISH_TAX_RATE",
    "WITHHOLDING_TAX_RATE",
    "AllocatedDividend",
    "ConcurrentModificationError",
    "DividendRecord",
    "DividendTaxTotals",
    "ExternalLookupError",
    "FailFast",
    "FallbackConstant",
    "FmpForexRateSource",
    "FmpMarketDataClient",
    "FxRateResolver",
    "InMemoryPortfolioStore",
    "InvariantViolation",
    "JsonFilePortfolioStore",
    "NbpRateSource",
    "OversellPolicy",
    "OwnershipPeriod",
    "PersistenceError",
    "PortfolioAggregate",
    "PortfolioError",
    "PortfolioOrchestrator",
    "Settings",
    "Transaction",
    "ValidationError",
    "allocate_dividends",
    "build_nbp_rate_urls",
    "calculate_dividend_totals",
    "calculate_money_invested",
    "calculate_ownership_periods",
    "compute_dividend_tax",
    "compute_tax",
    "error_payload",
    "filter_dividends_by_ownership",
    "find_period_quantity",
    "handle_ingest_request",
    "load_nbp_rates",
    "main",
    "parse_transaction",
    "replay_ledger",
]
