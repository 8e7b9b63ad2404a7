import datetime
import json
import logging
import ssl
import urllib.error
import urllib.parse
import urllib.request
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import certifi

from .errors import ExternalLookupError
from .models import DividendRecord

DEFAULT_FMP_BASE_URL = "https://financialmodelingprep.com/api/v3"


def fetch_json(url: str, timeout: float = 10.0) -> Any:
    """GET ``url`` and decode the JSON body, raising ExternalLookupError on failure."""
    ssl_ctx = ssl.create_default_context(cafile=certifi.where())
    try:
        with urllib.request.urlopen(url, context=ssl_ctx, timeout=timeout) as resp:
            raw = resp.read().decode('utf-8')
    except (urllib.error.URLError, OSError) as exc:
        raise ExternalLookupError(f"Request to {_redact(url)} failed: {exc}") from exc
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ExternalLookupError(f"Malformed JSON from {_redact(url)}: {exc}") from exc


def _redact(url: str) -> str:
    """Strip the query string so API keys never reach logs or error messages."""
    return url.split('?', 1)[0]


def _parse_optional_date(value: Any) -> Optional[datetime.date]:
    if not value:
        return None
    try:
        return datetime.date.fromisoformat(str(value)[:10])
    except ValueError:
        logging.warning("Ignoring unparseable date %r in market data.", value)
        return None


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _historical(data: Dict[str, Any], what: str) -> List[Dict[str, Any]]:
    """The 'historical' list of an FMP payload, raising unless it is a list of objects."""
    items = data.get('historical') or []
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ExternalLookupError(f"Unexpected {what} payload: 'historical' is not a list of objects.")
    return items


class FmpMarketDataClient:
    """Quotes and dividend history from the Financial Modeling Prep REST API."""

    def __init__(self, api_key: str, base_url: str = DEFAULT_FMP_BASE_URL, timeout: float = 10.0):
        if not api_key:
            raise ValueError("An FMP API key is required; set FMP_API_KEY.")
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def _url(self, path: str, **params: str) -> str:
        query = urllib.parse.urlencode({**params, 'apikey': self.api_key})
        return f"{self.base_url}/{path}?{query}"

    def quote(self, symbol: str) -> Decimal:
        """Latest traded price for ``symbol``."""
        data = fetch_json(self._url(f"quote/{urllib.parse.quote(symbol)}"), timeout=self.timeout)
        if not isinstance(data, list) or not data:
            raise ExternalLookupError(f"No quote returned for {symbol}.")
        if not isinstance(data[0], dict):
            raise ExternalLookupError(f"Unexpected quote payload for {symbol}: {data[0]!r}")
        price = _decimal(data[0].get('price'))
        if price is None:
            raise ExternalLookupError(f"Quote for {symbol} has no price.")
        return price

    def dividend_history(self, symbol: str) -> List[DividendRecord]:
        """Full dividend history for ``symbol``, newest first as the API returns it."""
        data = fetch_json(
            self._url(f"historical-price-full/stock_dividend/{urllib.parse.quote(symbol)}"),
            timeout=self.timeout,
        )
        if not isinstance(data, dict):
            raise ExternalLookupError(f"Unexpected dividend payload for {symbol}.")
        records = []
        for item in _historical(data, f"{symbol} dividends"):
            gross = _decimal(item.get('dividend'))
            if gross is None:
                logging.warning("Skipping %s dividend %r without an amount.", symbol, item.get('label'))
                continue
            records.append(DividendRecord(
                ex_date=_parse_optional_date(item.get('date')),
                record_date=_parse_optional_date(item.get('recordDate')),
                payment_date=_parse_optional_date(item.get('paymentDate')),
                declaration_date=_parse_optional_date(item.get('declarationDate')),
                gross_per_unit=gross,
                currency=str(item.get('currency') or 'USD').upper(),
                label=item.get('label') or '',
                adj_dividend=_decimal(item.get('adjDividend')),
            ))
        logging.info("Fetched %d dividend record(s) for %s.", len(records), symbol)
        return records


class FmpForexRateSource:
    """Daily forex closes from Financial Modeling Prep, one day per request."""

    def __init__(self, api_key: str, base_url: str = DEFAULT_FMP_BASE_URL, timeout: float = 10.0):
        self.client = FmpMarketDataClient(api_key, base_url, timeout)

    def historical_close(self, pair: str, day: datetime.date) -> Optional[Decimal]:
        url = self.client._url(
            f"historical-price-full/forex/{pair.upper()}",
            **{'from': day.isoformat(), 'to': day.isoformat()},
        )
        data = fetch_json(url, timeout=self.client.timeout)
        if not isinstance(data, dict):
            raise ExternalLookupError(f"Unexpected {pair} forex payload for {day}.")
        for item in _historical(data, f"{pair} forex"):
            if str(item.get('date', ''))[:10] == day.isoformat():
                return _decimal(item.get('close'))
        return None
