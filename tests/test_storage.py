import json
from decimal import Decimal

import pytest

from conftest import tx
from portfolio2pit38 import (
    ConcurrentModificationError,
    InMemoryPortfolioStore,
    JsonFilePortfolioStore,
    PersistenceError,
    PortfolioAggregate,
)


@pytest.fixture
def aggregate(orchestrator):
    return orchestrator.ingest("AAPL", tx("2023-01-01", "buy", 10, 150, 5))


@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryPortfolioStore()
    return JsonFilePortfolioStore(tmp_path / "portfolio.json")


def test_put_then_get(any_store, aggregate):
    any_store.put("AAPL", aggregate)
    assert any_store.get("aapl") == aggregate


def test_get_unknown_symbol(any_store):
    assert any_store.get("AAPL") is None


def test_version_conflict(any_store, aggregate):
    any_store.put("AAPL", aggregate, expected_version=0)
    with pytest.raises(ConcurrentModificationError, match="expected version 0, found 1"):
        any_store.put("AAPL", aggregate, expected_version=0)


def test_unconditional_put_overwrites(any_store, aggregate):
    any_store.put("AAPL", aggregate)
    any_store.put("AAPL", aggregate)
    assert any_store.list_symbols() == ["AAPL"]


def test_delete_and_list(any_store, aggregate):
    any_store.put("AAPL", aggregate)
    assert any_store.delete("AAPL") is True
    assert any_store.delete("AAPL") is False
    assert any_store.list_symbols() == []


class TestJsonFile:
    def test_document_is_keyed_by_symbol(self, tmp_path, aggregate):
        path = tmp_path / "portfolio.json"
        JsonFilePortfolioStore(path).put("AAPL", aggregate)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert list(data) == ["AAPL"]
        assert data["AAPL"]["moneyInvested"] == "1505"
        assert data["AAPL"]["dividends"][0]["usdPlnRate"] == "4.0"

    def test_decimals_survive_round_trip(self, tmp_path, aggregate):
        store = JsonFilePortfolioStore(tmp_path / "portfolio.json")
        store.put("AAPL", aggregate)
        loaded = store.get("AAPL")
        assert loaded.tax_due_in_poland == Decimal("0.50")
        assert loaded.dividends[0].withholding_tax_usd == Decimal("0.03")

    def test_creates_parent_directory_and_leaves_no_temp_files(self, tmp_path, aggregate):
        path = tmp_path / "nested" / "portfolio.json"
        JsonFilePortfolioStore(path).put("AAPL", aggregate)
        assert [p.name for p in path.parent.iterdir()] == ["portfolio.json"]

    def test_unreadable_document(self, tmp_path):
        path = tmp_path / "portfolio.json"
        path.write_text("{broken", encoding="utf-8")
        with pytest.raises(PersistenceError, match="Cannot read"):
            JsonFilePortfolioStore(path).get("AAPL")

    def test_document_must_be_object(self, tmp_path):
        path = tmp_path / "portfolio.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(PersistenceError):
            JsonFilePortfolioStore(path).list_symbols()

    def test_corrupt_aggregate(self, tmp_path):
        path = tmp_path / "portfolio.json"
        path.write_text(json.dumps({"AAPL": {"symbol": "AAPL", "moneyInvested": "lots"}}), encoding="utf-8")
        with pytest.raises(PersistenceError, match="corrupt"):
            JsonFilePortfolioStore(path).get("AAPL")

    def test_failed_write_keeps_previous_state(self, tmp_path, aggregate, monkeypatch):
        path = tmp_path / "portfolio.json"
        store = JsonFilePortfolioStore(path)
        store.put("AAPL", aggregate)
        before = path.read_text(encoding="utf-8")

        def fail(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("portfolio2pit38.storage.os.replace", fail)
        with pytest.raises(PersistenceError, match="Cannot write"):
            store.put("MSFT", PortfolioAggregate(symbol="MSFT"))
        assert path.read_text(encoding="utf-8") == before
        assert [p.name for p in tmp_path.iterdir()] == ["portfolio.json"]
