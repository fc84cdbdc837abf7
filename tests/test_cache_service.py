from __future__ import annotations

import datetime as dt

from conftest import series
from portfolio_dashboard.models import Holding, RealizedLot, Transaction


def _txn(security_id, direction, date, quantity, price=10.0):
    return Transaction(security_id=security_id, direction=direction, date=date, quantity=quantity, price=price)


def test_replace_holdings_overwrites_snapshot(sqlite_store):
    sqlite_store.replace_holdings("p1", [Holding(security_id="A1"), Holding(security_id="B1")])
    sqlite_store.replace_holdings("p1", [Holding(security_id="C1", display_name="Charlie", open_quantity=3)])
    sqlite_store.replace_holdings("p2", [Holding(security_id="Z1")])

    holdings = sqlite_store.holdings_for("p1")

    assert [h.security_id for h in holdings] == ["C1"]
    assert holdings[0].display_name == "Charlie"
    assert holdings[0].open_quantity == 3
    assert sqlite_store.holdings_for("missing") == []


def test_append_transactions_skips_reimports(sqlite_store):
    first = [_txn("A1", "BUY", "2024-03-01", 5), _txn("A1", "SELL", "2024-05-01", 2)]
    assert sqlite_store.append_transactions("p1", first) == 2

    second = [_txn("a1", "BUY", "2024-03-01", 5), _txn("A1", "BUY", "2024-01-01", 1)]
    assert sqlite_store.append_transactions("p1", second) == 1

    stored = sqlite_store.transactions_for("p1")
    assert [(t.trade_date, t.direction.value) for t in stored] == [
        (dt.date(2024, 1, 1), "BUY"),
        (dt.date(2024, 3, 1), "BUY"),
        (dt.date(2024, 5, 1), "SELL"),
    ]


def test_realized_lots_round_trip_aliases(sqlite_store):
    lot = RealizedLot(security_id="X1", closed_quantity=4, realized_pl_amount=12.5, sell_date="2024-02-01")
    sqlite_store.replace_realized_lots("p1", [lot])

    stored = sqlite_store.realized_lots_for("p1")
    assert [s.model_dump() for s in stored] == [lot.model_dump()]


def test_price_series_normalized_and_ordered(sqlite_store):
    sqlite_store.save_price_series_batch(" x1 ", series({dt.date(2024, 1, 2): 11.0, dt.date(2024, 1, 1): 10.0}))
    sqlite_store.save_price_series_batch("X1", series({dt.date(2024, 1, 2): 12.0}))

    points = sqlite_store.series_for("x1")

    assert [(p.price_date, p.close) for p in points] == [
        (dt.date(2024, 1, 1), 10.0),
        (dt.date(2024, 1, 2), 12.0),
    ]
    assert sqlite_store.save_price_series_batch("X1", []) == 0


def test_stats_and_clear_prices(sqlite_store):
    sqlite_store.replace_holdings("p1", [Holding(security_id="A1")])
    sqlite_store.append_transactions("p1", [_txn("A1", "BUY", "2024-03-01", 5)])
    sqlite_store.save_price_series_batch("A1", series({dt.date(2024, 1, 1): 10.0, dt.date(2024, 2, 1): 11.0}))
    sqlite_store.save_price_series_batch("B1", series({dt.date(2024, 1, 15): 5.0}))

    stats = sqlite_store.get_cache_stats()
    assert stats["historical_prices_count"] == 3
    assert stats["securities_cached"] == 2
    assert tuple(stats["price_date_range"]) == ("2024-01-01", "2024-02-01")
    assert stats["holdings_count"] == 1
    assert stats["transactions_count"] == 1
    assert stats["realized_lots_count"] == 0
    assert stats["db_size_bytes"] > 0

    sqlite_store.clear_prices()
    assert sqlite_store.series_for("A1") == []
    assert sqlite_store.holdings_for("p1") != []
