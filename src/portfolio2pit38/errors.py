from typing import Dict


class PortfolioError(Exception):
    """Base class for errors surfaced by the portfolio engine."""


class ValidationError(PortfolioError, ValueError):
    """Malformed or missing transaction fields."""


class ExternalLookupError(PortfolioError):
    """Market-data or FX collaborator unavailable or returned nothing usable."""


class InvariantViolation(PortfolioError):
    """Ledger replay produced a state that must not exist (e.g. oversell)."""


class PersistenceError(PortfolioError):
    """Reading or writing the portfolio store failed."""


class ConcurrentModificationError(PersistenceError):
    """Stored aggregate changed between load and write."""


def error_payload(exc: BaseException) -> Dict[str, str]:
    """Structured ``{kind, message}`` pair for an error returned to a caller."""
    kind = type(exc).__name__ if isinstance(exc, PortfolioError) else 'InternalError'
    return {'kind': kind, 'message': str(exc)}
