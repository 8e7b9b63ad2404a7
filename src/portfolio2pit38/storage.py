import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from .errors import ConcurrentModificationError, PersistenceError
from .models import PortfolioAggregate


class PortfolioStore(Protocol):
    def get(self, symbol: str) -> Optional[PortfolioAggregate]: ...

    def put(self, symbol: str, aggregate: PortfolioAggregate, expected_version: Optional[int] = None) -> None: ...

    def delete(self, symbol: str) -> bool: ...

    def list_symbols(self) -> List[str]: ...


def _check_version(symbol: str, stored_version: int, expected_version: Optional[int]) -> None:
    """Reject a write when the stored aggregate moved past the version the caller read."""
    if expected_version is not None and stored_version != expected_version:
        raise ConcurrentModificationError(
            f"Portfolio {symbol} changed concurrently: expected version {expected_version}, "
            f"found {stored_version}."
        )


class InMemoryPortfolioStore:
    """Dict-backed store, for tests and one-off runs."""

    def __init__(self, aggregates: Optional[Dict[str, PortfolioAggregate]] = None):
        self._items: Dict[str, PortfolioAggregate] = dict(aggregates or {})

    def get(self, symbol: str) -> Optional[PortfolioAggregate]:
        return self._items.get(symbol.upper())

    def put(self, symbol: str, aggregate: PortfolioAggregate, expected_version: Optional[int] = None) -> None:
        current = self.get(symbol)
        _check_version(symbol, current.version if current is not None else 0, expected_version)
        self._items[symbol.upper()] = aggregate

    def delete(self, symbol: str) -> bool:
        return self._items.pop(symbol.upper(), None) is not None

    def list_symbols(self) -> List[str]:
        return sorted(self._items)


class JsonFilePortfolioStore:
    """All aggregates in one JSON document keyed by symbol.

    Writes go to a temporary file in the same directory and replace the
    original atomically, so a failed write leaves the previous state intact.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _load(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Cannot read portfolio store {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Portfolio store {self.path} is not a JSON object.")
        return data

    def _save(self, data: Dict[str, dict]) -> None:
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=self.path.name, suffix='.tmp', dir=directory)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                os.replace(tmp_name, self.path)
            except BaseException:
                os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise PersistenceError(f"Cannot write portfolio store {self.path}: {exc}") from exc

    def get(self, symbol: str) -> Optional[PortfolioAggregate]:
        item = self._load().get(symbol.upper())
        if item is None:
            return None
        try:
            return PortfolioAggregate.from_dict(item)
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise PersistenceError(f"Stored portfolio {symbol} is corrupt: {exc}") from exc

    def put(self, symbol: str, aggregate: PortfolioAggregate, expected_version: Optional[int] = None) -> None:
        data = self._load()
        current = data.get(symbol.upper())
        _check_version(symbol, int(current.get('version', 0)) if current is not None else 0, expected_version)
        data[symbol.upper()] = aggregate.to_dict()
        self._save(data)
        logging.info("Saved portfolio %s (version %d) to %s", symbol, aggregate.version, self.path)

    def delete(self, symbol: str) -> bool:
        data = self._load()
        if data.pop(symbol.upper(), None) is None:
            return False
        self._save(data)
        return True

    def list_symbols(self) -> List[str]:
        return sorted(self._load())
