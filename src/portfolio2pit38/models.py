import datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from rich.console import Console
from rich.table import Table
from rich.text import Text

BUY = 'buy'
SELL = 'sell'
TRANSACTION_KINDS = (BUY, SELL)
ZERO = Decimal("0.00")

_console = Console()


def _iso(value: Optional[datetime.date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_date(value: Optional[str]) -> Optional[datetime.date]:
    if value in (None, ''):
        return None
    return datetime.date.fromisoformat(value)


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _parse_dec(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


@dataclass(frozen=True)
class Transaction:
    """One buy or sell entry of the append-only ledger."""
    symbol: str
    date: datetime.date
    kind: str
    quantity: Decimal
    price_per_unit: Decimal
    commission: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'date': self.date.isoformat(),
            'kind': self.kind,
            'quantity': str(self.quantity),
            'price': str(self.price_per_unit),
            'commission': str(self.commission),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            symbol=data['symbol'],
            date=datetime.date.fromisoformat(data['date']),
            kind=data['kind'],
            quantity=Decimal(data['quantity']),
            price_per_unit=Decimal(data['price']),
            commission=Decimal(data.get('commission', '0')),
        )


@dataclass(frozen=True)
class OwnershipPeriod:
    """Date range during which a fixed quantity was held (end_date None = still held)."""
    start_date: datetime.date
    end_date: Optional[datetime.date]
    quantity: Decimal

    def contains(self, day: datetime.date) -> bool:
        return self.start_date <= day and (self.end_date is None or day <= self.end_date)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'startDate': self.start_date.isoformat(),
            'endDate': _iso(self.end_date),
            'quantity': str(self.quantity),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OwnershipPeriod':
        return cls(
            start_date=datetime.date.fromisoformat(data['startDate']),
            end_date=_parse_date(data.get('endDate')),
            quantity=Decimal(data['quantity']),
        )


@dataclass(frozen=True)
class DividendRecord:
    """Dividend as published by the market-data feed, per unit held."""
    ex_date: Optional[datetime.date]
    record_date: Optional[datetime.date]
    payment_date: Optional[datetime.date]
    declaration_date: Optional[datetime.date]
    gross_per_unit: Decimal
    currency: str = 'USD'
    label: str = ''
    adj_dividend: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': _iso(self.ex_date),
            'recordDate': _iso(self.record_date),
            'paymentDate': _iso(self.payment_date),
            'declarationDate': _iso(self.declaration_date),
            'dividend': str(self.gross_per_unit),
            'currency': self.currency,
            'label': self.label,
            'adjDividend': _dec(self.adj_dividend),
        }

    @staticmethod
    def _record_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
        return dict(
            ex_date=_parse_date(data.get('date')),
            record_date=_parse_date(data.get('recordDate')),
            payment_date=_parse_date(data.get('paymentDate')),
            declaration_date=_parse_date(data.get('declarationDate')),
            gross_per_unit=Decimal(str(data['dividend'])),
            currency=data.get('currency') or 'USD',
            label=data.get('label') or '',
            adj_dividend=_parse_dec(data.get('adjDividend')),
        )


@dataclass(frozen=True)
class AllocatedDividend(DividendRecord):
    """Dividend matched to a held quantity, with USD/PLN tax figures.

    ``gross_in_usd`` is the per-unit gross in the holding currency (USD).
    Tax fields stay at zero / None until the tax stage has run.
    """
    allocated_quantity: Decimal = ZERO
    gross_in_usd: Decimal = ZERO
    total_gross: Decimal = ZERO
    fx_rate_usd_pln: Optional[Decimal] = None
    withholding_tax_usd: Decimal = ZERO
    dividend_pln: Decimal = ZERO
    tax_due_pln_per_unit: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            'quantity': str(self.allocated_quantity),
            'dividendInUsd': str(self.gross_in_usd),
            'totalDividend': str(self.total_gross),
            'usdPlnRate': _dec(self.fx_rate_usd_pln),
            'withholdingTaxPaid': str(self.withholding_tax_usd),
            'dividendInPln': str(self.dividend_pln),
            'taxDueInPoland': str(self.tax_due_pln_per_unit),
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AllocatedDividend':
        return cls(
            **cls._record_kwargs(data),
            allocated_quantity=Decimal(data['quantity']),
            gross_in_usd=Decimal(data['dividendInUsd']),
            total_gross=Decimal(data['totalDividend']),
            fx_rate_usd_pln=_parse_dec(data.get('usdPlnRate')),
            withholding_tax_usd=Decimal(data['withholdingTaxPaid']),
            dividend_pln=Decimal(data['dividendInPln']),
            tax_due_pln_per_unit=Decimal(data['taxDueInPoland']),
        )


@dataclass(frozen=True)
class DividendTaxTotals:
    """Aggregated dividend figures for one symbol."""
    total_dividend_value: Decimal = ZERO
    total_withholding_tax_paid: Decimal = ZERO
    tax_due_in_poland: Decimal = ZERO


@dataclass(frozen=True)
class PortfolioAggregate:
    """Everything known about one symbol, recomputed and replaced on each ingest."""
    symbol: str
    transactions: Tuple[Transaction, ...] = ()
    ownership_periods: Tuple[OwnershipPeriod, ...] = ()
    money_invested: Decimal = ZERO
    current_price: Optional[Decimal] = None
    dividends: Tuple[AllocatedDividend, ...] = ()
    total_dividend_value: Decimal = ZERO
    total_withholding_tax_paid: Decimal = ZERO
    tax_due_in_poland: Decimal = ZERO
    version: int = 0

    @property
    def quantity_held(self) -> Decimal:
        """Quantity of the open ownership period, zero when nothing is held."""
        for period in reversed(self.ownership_periods):
            if period.end_date is None:
                return period.quantity
        return Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'transactions': [t.to_dict() for t in self.transactions],
            'ownershipPeriods': [p.to_dict() for p in self.ownership_periods],
            'moneyInvested': str(self.money_invested),
            'currentPrice': _dec(self.current_price),
            'dividends': [d.to_dict() for d in self.dividends],
            'totalDividendValue': str(self.total_dividend_value),
            'totalWithholdingTaxPaid': str(self.total_withholding_tax_paid),
            'taxToBePaidInPoland': str(self.tax_due_in_poland),
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PortfolioAggregate':
        return cls(
            symbol=data['symbol'],
            transactions=tuple(Transaction.from_dict(t) for t in data.get('transactions', [])),
            ownership_periods=tuple(OwnershipPeriod.from_dict(p) for p in data.get('ownershipPeriods', [])),
            money_invested=Decimal(data.get('moneyInvested', '0')),
            current_price=_parse_dec(data.get('currentPrice')),
            dividends=tuple(AllocatedDividend.from_dict(d) for d in data.get('dividends', [])),
            total_dividend_value=Decimal(data.get('totalDividendValue', '0')),
            total_withholding_tax_paid=Decimal(data.get('totalWithholdingTaxPaid', '0')),
            tax_due_in_poland=Decimal(data.get('taxToBePaidInPoland', '0')),
            version=int(data.get('version', 0)),
        )

    def print(self) -> None:
        """Print the position, its ownership periods and dividend taxes to the terminal."""
        _console.print()
        title = Text()
        title.append("Portfolio position ", style="bold cyan")
        title.append(self.symbol, style="bold cyan underline")
        _console.print(title)

        price = f"{self.current_price:.2f} USD" if self.current_price is not None else "n/a"
        _console.print(Text(f"  Money invested: {self.money_invested:.2f} USD", style="bold"))
        _console.print(Text(f"  Quantity held: {self.quantity_held}", style="bold"))
        _console.print(Text(f"  Current price: {price}", style="bold"))

        periods = Table(title="Ownership periods", title_style="bold blue")
        periods.add_column("From")
        periods.add_column("To")
        periods.add_column("Quantity", justify="right")
        for period in self.ownership_periods:
            periods.add_row(
                period.start_date.isoformat(),
                _iso(period.end_date) or "(held)",
                str(period.quantity),
            )
        _console.print(periods)

        dividends = Table(title="Dividends", title_style="bold blue")
        for column in ("Ex-date", "Paid", "Qty", "Gross/unit USD", "Total USD",
                       "USD/PLN", "WHT/unit USD", "PLN/unit", "Tax due/unit PLN"):
            dividends.add_column(column, justify="right")
        for div in self.dividends:
            dividends.add_row(
                _iso(div.ex_date) or "",
                _iso(div.payment_date) or "",
                str(div.allocated_quantity),
                f"{div.gross_in_usd:.2f}",
                f"{div.total_gross:.2f}",
                str(div.fx_rate_usd_pln) if div.fx_rate_usd_pln is not None else "",
                f"{div.withholding_tax_usd:.2f}",
                f"{div.dividend_pln:.2f}",
                f"{div.tax_due_pln_per_unit:.2f}",
            )
        _console.print(dividends)

        _console.print(Text("Dividend tax (19% less foreign withholding):", style="bold blue"))
        _console.print(Text(f"  Total dividends: {self.total_dividend_value:.2f} USD"))
        _console.print(Text(f"  Withholding tax paid: {self.total_withholding_tax_paid:.2f} USD"))
        due = Text()
        due.append("  Tax due in Poland: ", style="bright_yellow")
        due.append(f"{self.tax_due_in_poland:.2f} PLN", style="bright_yellow bold")
        _console.print(due)
        _console.print()
