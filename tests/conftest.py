import datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from portfolio2pit38 import (
    DividendRecord,
    InMemoryPortfolioStore,
    PortfolioOrchestrator,
    Transaction,
)


def d(value):
    """ISO string -> datetime.date."""
    return datetime.date.fromisoformat(value)


def tx(date, kind, quantity, price, commission="0", symbol="AAPL"):
    return Transaction(
        symbol=symbol,
        date=d(date),
        kind=kind,
        quantity=Decimal(str(quantity)),
        price_per_unit=Decimal(str(price)),
        commission=Decimal(str(commission)),
    )


def dividend(ex_date, payment_date, gross, currency="USD", record_date=None, label=""):
    return DividendRecord(
        ex_date=d(ex_date) if ex_date else None,
        record_date=d(record_date) if record_date else None,
        payment_date=d(payment_date) if payment_date else None,
        declaration_date=None,
        gross_per_unit=Decimal(str(gross)),
        currency=currency,
        label=label,
    )


class StubFxSource:
    """In-process FX collaborator: quotes keyed by (pair, ISO date); records every call."""

    def __init__(self, quotes=None, error=None):
        self.quotes = {(pair, d(day)): Decimal(str(rate)) for (pair, day), rate in (quotes or {}).items()}
        self.error = error
        self.calls = []

    def historical_close(self, pair, day):
        self.calls.append((pair, day))
        if self.error is not None:
            raise self.error
        return self.quotes.get((pair, day))


class StubMarketData:
    """In-process market-data collaborator."""

    def __init__(self, price="150.00", dividends=(), quote_error=None, on_quote=None):
        self.price = Decimal(price) if price is not None else None
        self.dividends = list(dividends)
        self.quote_error = quote_error
        self.on_quote = on_quote
        self.quote_calls = 0

    def quote(self, symbol):
        self.quote_calls += 1
        if self.on_quote is not None:
            self.on_quote()
        if self.quote_error is not None:
            raise self.quote_error
        return self.price

    def dividend_history(self, symbol):
        return list(self.dividends)


@pytest.fixture
def ledger_example():
    """Buy 10@150 fee 5, sell 5@160 fee 3, buy 8@140 fee 4."""
    return [
        tx("2023-01-01", "buy", 10, 150, 5),
        tx("2023-02-01", "sell", 5, 160, 3),
        tx("2023-03-01", "buy", 8, 140, 4),
    ]


@pytest.fixture
def aapl_dividends():
    return [
        dividend("2022-11-04", "2022-11-10", "0.23", label="before first buy"),
        dividend("2023-02-10", "2023-02-16", "0.23", label="Q1"),
    ]


@pytest.fixture
def usd_pln_quotes():
    return StubFxSource({("USDPLN", "2023-02-15"): "4.0"})


@pytest.fixture
def store():
    return InMemoryPortfolioStore()


@pytest.fixture
def orchestrator(store, aapl_dividends, usd_pln_quotes):
    return PortfolioOrchestrator(store, StubMarketData(dividends=aapl_dividends), usd_pln_quotes)


def urlopen_returning(payload: bytes):
    """Patch urllib.request.urlopen so every call returns ``payload``; the mock records URLs."""
    def _mock_urlopen(url, **kwargs):
        resp = MagicMock()
        resp.read.return_value = payload
        resp.__enter__ = lambda s: s
        resp.__exit__ = MagicMock(return_value=False)
        return resp

    return patch("portfolio2pit38.market_data.urllib.request.urlopen", side_effect=_mock_urlopen)


SETTINGS_ENV = (
    "FMP_API_KEY", "FMP_BASE_URL", "PORTFOLIO2PIT38_STORE", "PORTFOLIO2PIT38_FX_SOURCE",
    "PORTFOLIO2PIT38_FX_FALLBACK_RATE", "PORTFOLIO2PIT38_OVERSELL", "PORTFOLIO2PIT38_HTTP_TIMEOUT",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No settings from the real environment or a stray .env file."""
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch
