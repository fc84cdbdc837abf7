from __future__ import annotations

import asyncio
import datetime as dt
import math

import pytest

from conftest import TODAY, FakeStore, series
from portfolio_dashboard.models import Holding, Transaction
from portfolio_dashboard.monthly_returns import (
    _month_return,
    month_starts,
    monthly_returns,
    return_statistics,
)
from portfolio_dashboard.price_service import PriceLookupCache


def _txn(security_id, direction, date, quantity, price=100.0):
    return Transaction(security_id=security_id, direction=direction, date=date, quantity=quantity, price=price)


def _run(holdings, transactions, prices, today=TODAY):
    store = FakeStore(prices=prices)
    cache = PriceLookupCache(store)
    return asyncio.run(monthly_returns(holdings, transactions, cache, today)), store


def _by_month(entries):
    return {e["month"]: e for e in entries}


def test_month_starts_cover_trailing_five_years():
    starts = month_starts(TODAY)
    assert starts[0] == dt.date(2020, 6, 1)
    assert starts[-1] == dt.date(2025, 6, 1)
    assert len(starts) == 61


def test_quantities_are_replayed_from_transactions():
    prices = {
        "X1": series({
            dt.date(2025, 3, 1): 100.0,
            dt.date(2025, 3, 31): 110.0,
            dt.date(2025, 4, 1): 110.0,
            dt.date(2025, 4, 30): 99.0,
            dt.date(2025, 5, 1): 99.0,
            dt.date(2025, 5, 31): 108.9,
        })
    }
    transactions = [
        _txn("X1", "BUY", "2025-03-01", 10),
        _txn("X1", "SELL", "2025-04-15", 4),
        _txn("X1", "DIVIDEND", "2025-04-20", 6, 1.0),
    ]

    entries, _ = _run([], transactions, prices)
    months = _by_month(entries)

    assert len(entries) == 61
    assert months["Feb-25"]["returnAmount"] == 0.0
    assert months["Mar-25"]["returnPercent"] == pytest.approx(10.0)
    assert months["Mar-25"]["returnAmount"] == pytest.approx(100.0)
    assert months["Apr-25"]["returnPercent"] == pytest.approx(-10.0)
    assert months["Apr-25"]["returnAmount"] == pytest.approx(-110.0)
    assert months["May-25"]["returnPercent"] == pytest.approx(10.0)
    assert months["May-25"]["returnAmount"] == pytest.approx(6 * 9.9)
    assert months["Jun-25"]["returnAmount"] == 0.0


def test_untraded_holding_uses_open_quantity():
    holdings = [Holding(security_id="Y1", open_quantity=5)]
    prices = {"Y1": series({dt.date(2025, 1, 1): 10.0, dt.date(2025, 1, 31): 12.0})}

    entries, _ = _run(holdings, [], prices)
    january = _by_month(entries)["Jan-25"]

    assert january["returnAmount"] == pytest.approx(10.0)
    assert january["returnPercent"] == pytest.approx(20.0)


def test_all_series_are_prefetched_once():
    holdings = [Holding(security_id="Y1", open_quantity=5)]
    transactions = [_txn("X1", "BUY", "2024-01-01", 1), _txn("X1", "SELL", "2024-06-01", 1)]

    _, store = _run(holdings, transactions, {})
    assert sorted(store.series_calls) == ["X1", "Y1"]


def test_only_start_price_means_no_movement():
    class StartOnlyPrices:
        def cached_price(self, security_id, target):
            return 50.0 if target.day == 1 else 0.0

    entry = _month_return(dt.date(2025, 2, 1), {"X1": 10.0}, StartOnlyPrices())
    assert entry == {"month": "Feb-25", "returnPercent": 0.0, "returnAmount": 0.0}


def test_single_price_point_gives_zero_return():
    prices = {"X1": series({dt.date(2025, 5, 2): 100.0})}
    entries, _ = _run([], [_txn("X1", "BUY", "2025-01-01", 10)], prices)
    assert _by_month(entries)["May-25"]["returnAmount"] == 0.0


def test_returns_are_clamped_and_finite():
    prices = {
        "X1": series({
            dt.date(2025, 1, 1): 1.0,
            dt.date(2025, 1, 31): 10.0,
            dt.date(2025, 2, 1): 10.0,
            dt.date(2025, 2, 28): 0.01,
        })
    }
    entries, _ = _run([], [_txn("X1", "BUY", "2024-12-01", 100)], prices)
    months = _by_month(entries)

    assert months["Jan-25"]["returnPercent"] == 200.0
    assert months["Jan-25"]["returnAmount"] == pytest.approx(900.0)
    assert months["Feb-25"]["returnPercent"] >= -100.0
    for entry in entries:
        assert -100.0 <= entry["returnPercent"] <= 200.0
        assert math.isfinite(entry["returnAmount"])


def test_no_inputs_no_series():
    entries, store = _run([], [], {})
    assert entries == []
    assert store.series_calls == []


def test_return_statistics():
    monthly = [
        {"month": "Nov-24", "returnPercent": 8.0, "returnAmount": 800.0},
        {"month": "Dec-24", "returnPercent": -2.0, "returnAmount": -200.0},
        {"month": "Jan-25", "returnPercent": 4.0, "returnAmount": 400.0},
        {"month": "Feb-25", "returnPercent": -6.0, "returnAmount": -600.0},
        {"month": "Mar-25", "returnPercent": 1.0, "returnAmount": 100.0},
    ]

    stats = return_statistics(monthly, [], [], 0.0, TODAY, xirr=12.5)

    assert stats["xirr"] == 12.5
    assert stats["cagr"] == 0.0
    assert stats["avgReturnOverall"] == {"percent": pytest.approx(1.0), "amount": pytest.approx(100.0)}
    assert stats["avgReturnCurrentYear"]["percent"] == pytest.approx(-1 / 3)
    assert stats["bestMonthCurrentYear"] == {"month": "Jan-25", "percent": 4.0, "amount": 400.0}
    assert stats["worstMonthCurrentYear"] == {"month": "Feb-25", "percent": -6.0, "amount": -600.0}


def test_return_statistics_without_months():
    stats = return_statistics([], [], [], 0.0, TODAY, xirr=0.0)
    assert stats["avgReturnOverall"] == {"percent": 0.0, "amount": 0.0}
    assert stats["bestMonthCurrentYear"] == {"month": "", "percent": 0.0, "amount": 0.0}
    assert stats["worstMonthCurrentYear"] == {"month": "", "percent": 0.0, "amount": 0.0}


def test_statistics_cagr_uses_portfolio_floor():
    transactions = [Transaction(security_id="X1", direction="BUY", date="2025-06-14", quantity=10, price=100)]

    stats = return_statistics([], transactions, [], 1100.0, TODAY, xirr=0.0)

    assert stats["cagr"] == pytest.approx((1.1 ** 100 - 1) * 100)
