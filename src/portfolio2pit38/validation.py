import datetime
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from .errors import ExternalLookupError, InvariantViolation, ValidationError
from .models import TRANSACTION_KINDS, Transaction

# Wire aliases accepted for transaction fields: canonical name first.
_FIELD_ALIASES = {
    'kind': ('kind', 'type'),
    'quantity': ('quantity', 'amount'),
    'price': ('price', 'pricePerUnit'),
}


def _field(payload: Mapping[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES.get(name, (name,)):
        if payload.get(key) not in (None, ''):
            return payload[key]
    return None


def _non_negative_decimal(payload: Mapping[str, Any], name: str, required: bool = True) -> Decimal:
    raw = _field(payload, name)
    if raw is None:
        if required:
            raise ValidationError(f"Transaction field '{name}' is missing.")
        return Decimal("0")
    if isinstance(raw, bool):
        raise ValidationError(f"Transaction field '{name}' must be a number, got {raw!r}.")
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise ValidationError(f"Transaction field '{name}' must be a number, got {raw!r}.") from None
    if not value.is_finite() or value < 0:
        raise ValidationError(f"Transaction field '{name}' must be a non-negative number, got {raw!r}.")
    return value


def parse_transaction(payload: Mapping[str, Any]) -> Transaction:
    """Build a Transaction from a structured payload, raising ValidationError on bad fields.

    Accepts ``kind``/``type``, ``quantity``/``amount`` and ``price``/``pricePerUnit``
    spellings. ``commission`` is optional and defaults to zero.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Transaction payload must be an object.")

    symbol = _field(payload, 'symbol')
    if not isinstance(symbol, str) or not symbol.strip():
        raise ValidationError("Transaction field 'symbol' is missing.")

    raw_date = _field(payload, 'date')
    if raw_date is None:
        raise ValidationError("Transaction field 'date' is missing.")
    try:
        date = datetime.date.fromisoformat(str(raw_date)[:10])
    except ValueError:
        raise ValidationError(f"Transaction field 'date' must be an ISO-8601 date, got {raw_date!r}.") from None

    kind = _field(payload, 'kind')
    kind = str(kind).strip().lower() if kind is not None else None
    if kind not in TRANSACTION_KINDS:
        raise ValidationError(
            f"Transaction field 'kind' must be one of {', '.join(TRANSACTION_KINDS)}, got {kind!r}."
        )

    return Transaction(
        symbol=symbol.strip().upper(),
        date=date,
        kind=kind,
        quantity=_non_negative_decimal(payload, 'quantity'),
        price_per_unit=_non_negative_decimal(payload, 'price'),
        commission=_non_negative_decimal(payload, 'commission', required=False),
    )


def check_transaction_symbol(symbol: str, transaction: Transaction) -> None:
    """Raise if a transaction is ingested under a different symbol."""
    if symbol.upper() != transaction.symbol.upper():
        raise ValidationError(
            f"Transaction symbol {transaction.symbol!r} does not match portfolio symbol {symbol!r}."
        )


def check_sale_not_oversell(transaction: Transaction, held: Decimal) -> None:
    """Raise InvariantViolation when a sale exceeds the quantity currently held."""
    if transaction.quantity > held:
        raise InvariantViolation(
            "Oversell: attempting to sell %s %s on %s, but only %s held."
            % (transaction.quantity, transaction.symbol, transaction.date, held)
        )


def warn_sale_oversell(transaction: Transaction, held: Decimal, clamped: bool) -> None:
    """Log an oversell that the active policy lets through."""
    if transaction.quantity > held:
        logging.warning(
            "Ledger inconsistency: selling %s %s on %s with only %s held; %s.",
            transaction.quantity,
            transaction.symbol,
            transaction.date,
            held,
            "sale capped at held quantity" if clamped else "holding goes short",
        )


def check_dividend_ex_date(ex_date: Optional[datetime.date], label: str) -> bool:
    """Check whether a dividend has the ex-date used for eligibility."""
    if ex_date is None:
        logging.warning("Skipping dividend %r with missing ex-dividend date.", label)
        return False
    return True


def check_dividend_allocated(payment_date: Optional[datetime.date], ex_date: Optional[datetime.date],
                             quantity: Decimal) -> bool:
    """Check whether an eligible dividend matched a held quantity on its payment date."""
    if payment_date is None:
        logging.warning("Dropping dividend with ex-date %s: payment date unknown.", ex_date)
        return False
    if quantity <= 0:
        logging.warning(
            "Dropping dividend with ex-date %s: no ownership period covers payment date %s.",
            ex_date,
            payment_date,
        )
        return False
    return True


def check_quote_present(symbol: str, price: Optional[Decimal]) -> Decimal:
    """Raise when the market-data feed returned no price for a symbol."""
    if price is None:
        raise ExternalLookupError(f"No current price returned for {symbol}.")
    return price
