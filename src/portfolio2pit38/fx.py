import datetime
import io
import logging
import re
import ssl
import urllib.request
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

import certifi
import pandas as pd

from .errors import ExternalLookupError

MAX_FX_LOOKBACK_DAYS = 5
DEFAULT_USD_PLN_RATE = Decimal("4.00")
RATE_PLACES = Decimal("0.000001")
NBP_ARCHIVE_URL = "https://static.nbp.pl/dane/kursy/Archiwum/archiwum_tab_a_{year}.csv"

# NBP table A column headers: units + ISO code, e.g. "1USD", "100JPY"
_NBP_RATE_COLUMN = re.compile(r"^(\d+)([A-Z]{3})$")


class FxRateSource(Protocol):
    def historical_close(self, pair: str, day: datetime.date) -> Optional[Decimal]:
        """Close of ``pair`` (e.g. "USDPLN") on exactly ``day``, or None without a quote."""


class FxFallbackPolicy:
    """What to do when no rate is found within the lookback window."""

    def apply(self, pair: str, day: datetime.date) -> Decimal:
        raise NotImplementedError


@dataclass(frozen=True)
class FailFast(FxFallbackPolicy):
    def apply(self, pair: str, day: datetime.date) -> Decimal:
        raise ExternalLookupError(
            f"No {pair} exchange rate found for {day} or the {MAX_FX_LOOKBACK_DAYS} days before."
        )


@dataclass(frozen=True)
class FallbackConstant(FxFallbackPolicy):
    rate: Decimal

    def apply(self, pair: str, day: datetime.date) -> Decimal:
        logging.warning("No %s exchange rate found for %s. Using fallback rate of %s.", pair, day, self.rate)
        return self.rate


class FxRateResolver:
    """Historical FX lookups with a bounded backward walk over missing days.

    ``rate`` returns units of ``to_currency`` per 1 ``from_currency``. When the
    source has no quote for the requested day (weekend, bank holiday), earlier
    days are tried one at a time, at most ``max_lookback_days`` steps back.
    Quotes are cached per (pair, day) for the lifetime of the resolver.
    """

    def __init__(self, source: FxRateSource, max_lookback_days: int = MAX_FX_LOOKBACK_DAYS):
        self.source = source
        self.max_lookback_days = max_lookback_days
        self._cache: Dict[Tuple[str, datetime.date], Optional[Decimal]] = {}

    def _quote(self, pair: str, day: datetime.date) -> Optional[Decimal]:
        key = (pair, day)
        if key not in self._cache:
            self._cache[key] = self.source.historical_close(pair, day)
        return self._cache[key]

    def rate(self, from_currency: str, to_currency: str, on_or_before: datetime.date) -> Optional[Decimal]:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return Decimal("1")
        pair = f"{from_currency}{to_currency}"
        day = on_or_before
        for steps in range(self.max_lookback_days + 1):
            quote = self._quote(pair, day)
            if quote is not None:
                logging.info("Found %s rate for %s: %s (%d day(s) back)", pair, day, quote, steps)
                return quote
            day -= datetime.timedelta(days=1)
        logging.warning(
            "No %s rate found for %s after %d backward step(s).",
            pair,
            on_or_before,
            self.max_lookback_days,
        )
        return None

    def resolve(
        self,
        from_currency: str,
        to_currency: str,
        on_or_before: datetime.date,
        policy: FxFallbackPolicy,
    ) -> Decimal:
        """Like ``rate``, but a missing or unreachable quote is handed to ``policy``."""
        pair = f"{from_currency.upper()}{to_currency.upper()}"
        try:
            quote = self.rate(from_currency, to_currency, on_or_before)
        except ExternalLookupError as exc:
            logging.error("Exchange-rate lookup for %s on %s failed: %s", pair, on_or_before, exc)
            quote = None
        if quote is None:
            return policy.apply(pair, on_or_before)
        return quote


def build_nbp_rate_urls(years: Iterable[int]) -> List[str]:
    """Build NBP table A archive URLs for the given years.

    Args:
        years: Calendar years to cover.

    Returns:
        List of NBP CSV archive URLs, one per distinct year, ascending.
    """
    urls = [NBP_ARCHIVE_URL.format(year=y) for y in sorted(set(years))]
    logging.info("NBP rate URLs: %d files", len(urls))
    return urls


def load_nbp_rates(urls: List[str], timeout: float = 10.0) -> pd.DataFrame:
    """Load and merge PLN exchange rates from NBP (National Bank of Poland) CSV archives.

    Fetches semicolon-separated, cp1250-encoded CSV files from static.nbp.pl,
    keeps rows whose 'data' column matches an 8-digit date (YYYYMMDD), and
    parses every "<units><CODE>" column (comma-decimal format) into the PLN
    price of one unit of that currency, e.g. '100JPY' is divided by 100.

    Args:
        urls: URLs to NBP archival CSV files, e.g.
              "https://static.nbp.pl/dane/kursy/Archiwum/archiwum_tab_a_2024.csv".
        timeout: Per-request timeout in seconds.

    Returns:
        DataFrame with a 'date' column plus one column per currency code,
        sorted by date, deduplicated.
    """
    ssl_ctx = ssl.create_default_context(cafile=certifi.where())
    frames = []
    for url in urls:
        try:
            with urllib.request.urlopen(url, context=ssl_ctx, timeout=timeout) as resp:
                raw = resp.read().decode('cp1250')
        except OSError as exc:
            raise ExternalLookupError(f"Cannot fetch NBP rates from {url}: {exc}") from exc
        try:
            df = pd.read_csv(io.StringIO(raw), sep=';', header=0, dtype=str)
        except ValueError as exc:
            raise ExternalLookupError(f"Malformed NBP archive {url}: {exc}") from exc
        if 'data' not in df.columns:
            raise ExternalLookupError(f"{url} is not an NBP table A archive: no 'data' column.")
        df = df[df['data'].str.match(r"\d{8}", na=False)]
        out = pd.DataFrame({'date': pd.to_datetime(df['data'], format='%Y%m%d', errors='coerce')})
        for column in df.columns:
            m = _NBP_RATE_COLUMN.match(str(column).strip())
            if not m:
                continue
            units, code = int(m.group(1)), m.group(2)
            out[code] = pd.to_numeric(df[column].str.replace(',', '.'), errors='coerce') / units
        frames.append(out.dropna(subset=['date']))
    if not frames:
        return pd.DataFrame({'date': pd.Series(dtype='datetime64[ns]')})
    rates = pd.concat(frames).drop_duplicates('date').sort_values('date').reset_index(drop=True)
    logging.info("Loaded %d NBP exchange-rate entries.", len(rates))
    return rates


class NbpRateSource:
    """FX source backed by NBP table A mid rates (PLN per unit of foreign currency).

    Supports "XXXPLN" pairs directly, "PLNXXX" as the inverse and any other
    pair as a cross rate through PLN. When built without a rates frame, the
    archive for a year is downloaded the first time a day in it is requested.
    """

    def __init__(self, rates: Optional[pd.DataFrame] = None, timeout: float = 10.0):
        self.timeout = timeout
        self._auto_load = rates is None
        self._rates = rates if rates is not None else pd.DataFrame({'date': pd.Series(dtype='datetime64[ns]')})
        self._loaded_years: Set[int] = set()

    def _ensure_year(self, year: int) -> None:
        if not self._auto_load or year in self._loaded_years:
            return
        loaded = load_nbp_rates(build_nbp_rate_urls([year]), timeout=self.timeout)
        self._loaded_years.add(year)
        if not self._rates.empty:
            loaded = pd.concat([self._rates, loaded])
        self._rates = loaded.drop_duplicates('date').sort_values('date').reset_index(drop=True)

    def _pln_price(self, currency: str, day: datetime.date) -> Optional[float]:
        if currency == 'PLN':
            return 1.0
        self._ensure_year(day.year)
        if currency not in self._rates.columns:
            return None
        row = self._rates.loc[self._rates['date'] == pd.Timestamp(day), currency]
        if row.empty or pd.isna(row.iloc[0]):
            return None
        return float(row.iloc[0])

    def historical_close(self, pair: str, day: datetime.date) -> Optional[Decimal]:
        base, quote = pair[:3].upper(), pair[3:].upper()
        base_pln = self._pln_price(base, day)
        quote_pln = self._pln_price(quote, day)
        if base_pln is None or not quote_pln:
            return None
        rate = Decimal(str(base_pln)) / Decimal(str(quote_pln))
        return rate.quantize(RATE_PLACES, rounding=ROUND_HALF_UP)
