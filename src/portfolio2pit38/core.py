#!/usr/bin/env python3
# DISCLAIMER: This script is provided "as is" for informational purposes only.
# I am not a certified accountant or tax advisor; consult a professional for personalized guidance.

import datetime
import enum
import json
import logging
from dataclasses import fields, replace
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from .errors import ExternalLookupError, PortfolioError, ValidationError, error_payload
from .fx import DEFAULT_USD_PLN_RATE, FallbackConstant, FxFallbackPolicy, FxRateResolver, FxRateSource
from .models import (
    BUY,
    SELL,
    AllocatedDividend,
    DividendRecord,
    DividendTaxTotals,
    OwnershipPeriod,
    PortfolioAggregate,
    Transaction,
)
from .storage import PortfolioStore
from .validation import (
    check_dividend_allocated,
    check_dividend_ex_date,
    check_quote_present,
    check_sale_not_oversell,
    check_transaction_symbol,
    parse_transaction,
    warn_sale_oversell,
)

BASE_CURRENCY = 'USD'
TAX_CURRENCY = 'PLN'
WITHHOLDING_TAX_RATE = Decimal("0.15")  # flat US withholding assumed for every dividend
POLISH_TAX_RATE = Decimal("0.19")
TWO_PLACES = Decimal("0.01")
ZERO = Decimal("0")

DEFAULT_FX_POLICY = FallbackConstant(DEFAULT_USD_PLN_RATE)
IDENTITY_RATE = FallbackConstant(Decimal("1"))


class OversellPolicy(enum.Enum):
    """How ledger replay treats a sale larger than the quantity held."""
    REJECT = 'reject'
    CLAMP = 'clamp'
    ALLOW = 'allow'


class MarketDataSource(Protocol):
    def quote(self, symbol: str) -> Decimal: ...

    def dividend_history(self, symbol: str) -> List[DividendRecord]: ...


def _round_money(value: Decimal) -> Decimal:
    """Round a monetary amount to 0.01, half up."""
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _day_before(day: datetime.date) -> datetime.date:
    return day - datetime.timedelta(days=1)


def calculate_money_invested(transactions: Sequence[Transaction]) -> Decimal:
    """Net cash put into a position.

    Buys add quantity * price, sells subtract it. Commission of every
    transaction, buy and sell alike, is added.
    """
    total_buy = ZERO
    total_sell = ZERO
    commission = ZERO
    for t in transactions:
        commission += t.commission
        if t.kind == BUY:
            total_buy += t.quantity * t.price_per_unit
        elif t.kind == SELL:
            total_sell += t.quantity * t.price_per_unit
    return total_buy - total_sell + commission


def calculate_ownership_periods(
    transactions: Sequence[Transaction],
    oversell_policy: OversellPolicy = OversellPolicy.REJECT,
) -> List[OwnershipPeriod]:
    """Replay transactions in the given order into ownership periods.

    Every buy or sell closes the open period at the transaction date with the
    quantity held before it, and (while something is still held) opens a new
    one at the new cumulative quantity. Whatever is held after the last
    transaction forms a final open period with ``end_date=None``.

    Transactions are not sorted; the input order is authoritative.

    Args:
        transactions: Ledger entries for a single symbol.
        oversell_policy: REJECT raises InvariantViolation on a sale larger than
            the holding; CLAMP caps the sale at the holding; ALLOW lets the
            holding go short. Periods are only emitted for positive holdings.

    Returns:
        Ownership periods ordered by start date.
    """
    periods: List[OwnershipPeriod] = []
    total_held = ZERO
    period_start: Optional[datetime.date] = None

    for t in transactions:
        if t.kind == BUY:
            if total_held > 0 and period_start is not None:
                periods.append(OwnershipPeriod(period_start, t.date, total_held))
            total_held += t.quantity
            period_start = t.date
        elif t.kind == SELL:
            sold = t.quantity
            if sold > total_held:
                if oversell_policy is OversellPolicy.REJECT:
                    check_sale_not_oversell(t, max(total_held, ZERO))
                warn_sale_oversell(t, total_held, clamped=oversell_policy is OversellPolicy.CLAMP)
                if oversell_policy is OversellPolicy.CLAMP:
                    sold = max(total_held, ZERO)
            if total_held > 0 and period_start is not None:
                periods.append(OwnershipPeriod(period_start, t.date, total_held))
            total_held -= sold
            period_start = t.date if total_held > 0 else None

    if total_held > 0 and period_start is not None:
        periods.append(OwnershipPeriod(period_start, None, total_held))
    return periods


def replay_ledger(
    transactions: Sequence[Transaction],
    oversell_policy: OversellPolicy = OversellPolicy.REJECT,
) -> Tuple[Decimal, List[OwnershipPeriod]]:
    """Return (money_invested, ownership_periods) for an ordered ledger."""
    money_invested = calculate_money_invested(transactions)
    periods = calculate_ownership_periods(transactions, oversell_policy)
    logging.info("Replayed %d transaction(s) into %d ownership period(s).", len(transactions), len(periods))
    return money_invested, periods


def filter_dividends_by_ownership(
    dividends: Sequence[DividendRecord],
    ownership_periods: Sequence[OwnershipPeriod],
) -> List[DividendRecord]:
    """Keep dividends whose ex-dividend date falls inside some ownership period (inclusive)."""
    eligible = []
    for dividend in dividends:
        if not check_dividend_ex_date(dividend.ex_date, dividend.label):
            continue
        if any(period.contains(dividend.ex_date) for period in ownership_periods):
            eligible.append(dividend)
    return eligible


def find_period_quantity(ownership_periods: Sequence[OwnershipPeriod], day: datetime.date) -> Decimal:
    """Quantity of the first period covering ``day``; zero when none does.

    A transaction date closes one period and opens the next, so both cover it;
    the earlier period wins.
    """
    for period in ownership_periods:
        if period.contains(day):
            return period.quantity
    return ZERO


def _record_fields(dividend: DividendRecord) -> Dict[str, Any]:
    return {f.name: getattr(dividend, f.name) for f in fields(DividendRecord)}


def _to_base_currency_rate(
    dividend: DividendRecord,
    fx_resolver: Optional[FxRateResolver],
    base_currency: str,
    policy: FxFallbackPolicy,
) -> Decimal:
    currency = dividend.currency.upper()
    if currency == base_currency:
        return Decimal("1")
    rate_day = _day_before(dividend.payment_date)
    if fx_resolver is None:
        return policy.apply(f"{currency}{base_currency}", rate_day)
    return fx_resolver.resolve(currency, base_currency, rate_day, policy)


def allocate_dividends(
    dividends: Sequence[DividendRecord],
    ownership_periods: Sequence[OwnershipPeriod],
    fx_resolver: Optional[FxRateResolver] = None,
    *,
    base_currency: str = BASE_CURRENCY,
    currency_policy: FxFallbackPolicy = IDENTITY_RATE,
) -> List[AllocatedDividend]:
    """Match dividends to the quantity held and normalize them to the holding currency.

    Eligibility is decided by the ex-dividend date (see
    ``filter_dividends_by_ownership``); the allocated quantity is the one held
    on the payment date. Eligible dividends without a covering period on their
    payment date are dropped with a warning.

    Foreign-currency dividends are converted with the rate of the day before
    payment. Without a rate, ``currency_policy`` decides; the default keeps the
    amount unconverted (rate 1).

    Args:
        dividends: Raw dividend history for one symbol.
        ownership_periods: Output of ``calculate_ownership_periods``.
        fx_resolver: Resolver used for non-USD dividends.
        base_currency: Currency the position is held in.
        currency_policy: Fallback when a conversion rate cannot be resolved.

    Returns:
        New AllocatedDividend records; tax fields are left unset.
    """
    allocated = []
    for dividend in filter_dividends_by_ownership(dividends, ownership_periods):
        quantity = ZERO
        if dividend.payment_date is not None:
            quantity = find_period_quantity(ownership_periods, dividend.payment_date)
        if not check_dividend_allocated(dividend.payment_date, dividend.ex_date, quantity):
            continue
        rate = _to_base_currency_rate(dividend, fx_resolver, base_currency, currency_policy)
        gross_in_usd = _round_money(dividend.gross_per_unit * rate)
        allocated.append(AllocatedDividend(
            **_record_fields(dividend),
            allocated_quantity=quantity,
            gross_in_usd=gross_in_usd,
            total_gross=_round_money(quantity * gross_in_usd),
        ))
    logging.info("Allocated %d of %d dividend record(s).", len(allocated), len(dividends))
    return allocated


def compute_dividend_tax(
    dividend: AllocatedDividend,
    fx_resolver: FxRateResolver,
    policy: FxFallbackPolicy = DEFAULT_FX_POLICY,
) -> AllocatedDividend:
    """Withholding and Polish tax figures for one allocated dividend, per unit.

    Uses the USD/PLN close of the day before payment. Each amount is rounded
    to grosze/cents right after it is computed:
      withholding  = gross_in_usd * 15%
      dividend_pln = gross_in_usd * rate
      tax_due      = dividend_pln * 19% - withholding * rate
    """
    if dividend.payment_date is None:
        raise ValidationError(f"Dividend with ex-date {dividend.ex_date} has no payment date.")
    rate = fx_resolver.resolve(BASE_CURRENCY, TAX_CURRENCY, _day_before(dividend.payment_date), policy)
    withholding = _round_money(dividend.gross_in_usd * WITHHOLDING_TAX_RATE)
    dividend_pln = _round_money(dividend.gross_in_usd * rate)
    tax_due = _round_money(dividend_pln * POLISH_TAX_RATE - withholding * rate)
    return replace(
        dividend,
        fx_rate_usd_pln=rate,
        withholding_tax_usd=withholding,
        dividend_pln=dividend_pln,
        tax_due_pln_per_unit=tax_due,
    )


def calculate_dividend_totals(dividends: Sequence[AllocatedDividend]) -> DividendTaxTotals:
    """Sum already-rounded per-dividend figures, rounding each total once more."""
    return DividendTaxTotals(
        total_dividend_value=_round_money(sum((d.total_gross for d in dividends), ZERO)),
        total_withholding_tax_paid=_round_money(
            sum((d.withholding_tax_usd * d.allocated_quantity for d in dividends), ZERO)
        ),
        tax_due_in_poland=_round_money(
            sum((d.tax_due_pln_per_unit * d.allocated_quantity for d in dividends), ZERO)
        ),
    )


def compute_tax(
    allocated: Sequence[AllocatedDividend],
    fx_resolver: FxRateResolver,
    policy: FxFallbackPolicy = DEFAULT_FX_POLICY,
) -> Tuple[List[AllocatedDividend], DividendTaxTotals]:
    """Apply ``compute_dividend_tax`` to every dividend and total the results."""
    taxed = [compute_dividend_tax(d, fx_resolver, policy) for d in allocated]
    totals = calculate_dividend_totals(taxed)
    logging.info(
        "Dividends USD: %.2f; Withholding tax USD: %.2f; Tax due in Poland PLN: %.2f",
        totals.total_dividend_value,
        totals.total_withholding_tax_paid,
        totals.tax_due_in_poland,
    )
    return taxed, totals


class PortfolioOrchestrator:
    """Recomputes a symbol's aggregate from its ledger and market data, then stores it.

    One ingest is a single read-modify-write: the stored aggregate is loaded,
    rebuilt from scratch and written back only if every stage succeeded. The
    write is conditional on the version that was read, so a concurrent ingest
    for the same symbol fails with ConcurrentModificationError instead of
    silently overwriting.
    """

    def __init__(
        self,
        store: PortfolioStore,
        market_data: MarketDataSource,
        fx_source: FxRateSource,
        *,
        oversell_policy: OversellPolicy = OversellPolicy.REJECT,
        fx_policy: FxFallbackPolicy = DEFAULT_FX_POLICY,
        currency_policy: FxFallbackPolicy = IDENTITY_RATE,
    ):
        self.store = store
        self.market_data = market_data
        self.fx_source = fx_source
        self.oversell_policy = oversell_policy
        self.fx_policy = fx_policy
        self.currency_policy = currency_policy

    def _enrich(self, symbol: str) -> Tuple[Decimal, List[DividendRecord]]:
        try:
            price = check_quote_present(symbol, self.market_data.quote(symbol))
            history = self.market_data.dividend_history(symbol)
        except OSError as exc:
            raise ExternalLookupError(f"Market data for {symbol} unavailable: {exc}") from exc
        return price, history

    def _build(self, symbol: str, transactions: Sequence[Transaction], version: int) -> PortfolioAggregate:
        money_invested, periods = replay_ledger(transactions, self.oversell_policy)
        price, history = self._enrich(symbol)
        resolver = FxRateResolver(self.fx_source)
        allocated = allocate_dividends(history, periods, resolver, currency_policy=self.currency_policy)
        taxed, totals = compute_tax(allocated, resolver, self.fx_policy)
        return PortfolioAggregate(
            symbol=symbol,
            transactions=tuple(transactions),
            ownership_periods=tuple(periods),
            money_invested=money_invested,
            current_price=price,
            dividends=tuple(taxed),
            total_dividend_value=totals.total_dividend_value,
            total_withholding_tax_paid=totals.total_withholding_tax_paid,
            tax_due_in_poland=totals.tax_due_in_poland,
            version=version,
        )

    def ingest(self, symbol: str, transaction: Transaction) -> PortfolioAggregate:
        """Append ``transaction`` to the ledger of ``symbol`` and store the recomputed aggregate."""
        symbol = symbol.upper()
        check_transaction_symbol(symbol, transaction)
        logging.info(
            "Ingesting %s %s %s @ %s on %s",
            transaction.kind,
            transaction.quantity,
            symbol,
            transaction.price_per_unit,
            transaction.date,
        )
        prior = self.store.get(symbol)
        prior_version = prior.version if prior is not None else 0
        transactions = (prior.transactions if prior is not None else ()) + (transaction,)
        aggregate = self._build(symbol, transactions, prior_version + 1)
        self.store.put(symbol, aggregate, expected_version=prior_version)
        return aggregate

    def recompute(self, symbol: str) -> PortfolioAggregate:
        """Refresh price, dividends and taxes of a stored symbol without a new transaction."""
        symbol = symbol.upper()
        prior = self.store.get(symbol)
        if prior is None:
            raise ValidationError(f"No portfolio stored for {symbol}.")
        aggregate = self._build(symbol, prior.transactions, prior.version + 1)
        self.store.put(symbol, aggregate, expected_version=prior.version)
        return aggregate

    def get(self, symbol: str) -> Optional[PortfolioAggregate]:
        return self.store.get(symbol.upper())

    def list_portfolios(self) -> List[PortfolioAggregate]:
        portfolios = []
        for symbol in self.store.list_symbols():
            aggregate = self.store.get(symbol)
            if aggregate is not None:
                portfolios.append(aggregate)
        return portfolios

    def delete(self, symbol: str) -> bool:
        deleted = self.store.delete(symbol.upper())
        if deleted:
            logging.info("Deleted portfolio %s", symbol.upper())
        else:
            logging.warning("No portfolio stored for %s; nothing deleted.", symbol.upper())
        return deleted


def handle_ingest_request(
    orchestrator: PortfolioOrchestrator,
    payload: Union[str, Mapping[str, Any]],
) -> Dict[str, Any]:
    """Ingest one transaction payload and return a JSON-ready result.

    Args:
        orchestrator: Configured PortfolioOrchestrator.
        payload: Transaction object, or its JSON text.

    Returns:
        The serialized PortfolioAggregate, or ``{"kind": ..., "message": ...}``
        when any stage fails; ``kind`` is "InternalError" for anything that is
        not a PortfolioError. Nothing is stored on failure.
    """
    try:
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError as exc:
                raise ValidationError(f"Transaction payload is not valid JSON: {exc}") from None
        transaction = parse_transaction(payload)
        aggregate = orchestrator.ingest(transaction.symbol, transaction)
    except PortfolioError as exc:
        logging.error("Ingest failed (%s): %s", type(exc).__name__, exc)
        return error_payload(exc)
    except Exception as exc:
        logging.exception("Ingest failed unexpectedly")
        return error_payload(exc)
    return aggregate.to_dict()
