import datetime
from decimal import Decimal

import pytest

from conftest import StubFxSource, d
from portfolio2pit38 import ExternalLookupError, FailFast, FallbackConstant, FxRateResolver


def test_same_currency_is_identity_without_lookup():
    source = StubFxSource()
    assert FxRateResolver(source).rate("usd", "USD", d("2023-01-01")) == Decimal("1")
    assert source.calls == []


def test_exact_day_hit():
    source = StubFxSource({("USDPLN", "2023-03-15"): "4.41"})
    assert FxRateResolver(source).rate("USD", "PLN", d("2023-03-15")) == Decimal("4.41")
    assert source.calls == [("USDPLN", d("2023-03-15"))]


def test_walks_back_exactly_two_steps():
    source = StubFxSource({("USDPLN", "2023-03-13"): "4.38"})
    rate = FxRateResolver(source).rate("USD", "PLN", d("2023-03-15"))
    assert rate == Decimal("4.38")
    assert [day for _, day in source.calls] == [d("2023-03-15"), d("2023-03-14"), d("2023-03-13")]


def test_lookback_window_is_bounded():
    # Quote six days back is out of reach of a five-step walk.
    source = StubFxSource({("USDPLN", "2023-03-09"): "4.30"})
    resolver = FxRateResolver(source)
    assert resolver.rate("USD", "PLN", d("2023-03-15")) is None
    assert len(source.calls) == 6
    assert source.calls[-1] == ("USDPLN", d("2023-03-10"))


def test_quote_at_window_edge_is_found():
    source = StubFxSource({("USDPLN", "2023-03-10"): "4.31"})
    assert FxRateResolver(source).rate("USD", "PLN", d("2023-03-15")) == Decimal("4.31")


def test_quotes_are_cached_per_pair_and_day():
    source = StubFxSource({("USDPLN", "2023-03-13"): "4.38"})
    resolver = FxRateResolver(source)
    resolver.rate("USD", "PLN", d("2023-03-15"))
    resolver.rate("USD", "PLN", d("2023-03-14"))
    assert len(source.calls) == 3


class TestResolve:
    def test_found_rate_ignores_policy(self):
        source = StubFxSource({("USDPLN", "2023-03-15"): "4.41"})
        rate = FxRateResolver(source).resolve("USD", "PLN", d("2023-03-15"), FailFast())
        assert rate == Decimal("4.41")

    def test_fallback_constant_used_when_nothing_found(self, caplog):
        rate = FxRateResolver(StubFxSource()).resolve(
            "USD", "PLN", d("2023-03-15"), FallbackConstant(Decimal("4.00"))
        )
        assert rate == Decimal("4.00")
        assert "fallback rate" in caplog.text

    def test_fail_fast_raises(self):
        with pytest.raises(ExternalLookupError, match="USDPLN"):
            FxRateResolver(StubFxSource()).resolve("USD", "PLN", d("2023-03-15"), FailFast())

    def test_unreachable_source_goes_through_policy(self):
        source = StubFxSource(error=ExternalLookupError("down"))
        resolver = FxRateResolver(source)
        assert resolver.resolve("USD", "PLN", d("2023-03-15"), FallbackConstant(Decimal("3.9"))) == Decimal("3.9")
        with pytest.raises(ExternalLookupError):
            resolver.resolve("USD", "PLN", d("2023-03-15"), FailFast())


def test_custom_lookback():
    source = StubFxSource({("EURUSD", "2023-03-14"): "1.07"})
    resolver = FxRateResolver(source, max_lookback_days=0)
    assert resolver.rate("EUR", "USD", d("2023-03-15")) is None
    assert source.calls == [("EURUSD", datetime.date(2023, 3, 15))]
