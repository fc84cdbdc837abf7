from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portfolio_dashboard.cache_service import PortfolioStore
from portfolio_dashboard.models import PricePoint

TODAY = dt.date(2025, 6, 15)


class FakeStore:
    """In-memory stand-in for the portfolio store."""

    def __init__(self, holdings=None, transactions=None, lots=None, prices=None, failing=()):
        self.holdings = list(holdings or [])
        self.transactions = list(transactions or [])
        self.lots = list(lots or [])
        self.prices = dict(prices or {})
        self.failing = set(failing)
        self.series_calls: list[str] = []

    def holdings_for(self, portfolio_id):
        return list(self.holdings)

    def transactions_for(self, portfolio_id):
        return list(self.transactions)

    def realized_lots_for(self, portfolio_id):
        return list(self.lots)

    def series_for(self, security_id):
        self.series_calls.append(security_id)
        if security_id in self.failing:
            raise RuntimeError(f"price store unavailable for {security_id}")
        return list(self.prices.get(security_id, []))


def series(closes: dict) -> list[PricePoint]:
    """Build a price series from {date: close}."""
    return [PricePoint(date=d, close=c) for d, c in sorted(closes.items())]


@pytest.fixture()
def today() -> dt.date:
    return TODAY


@pytest.fixture()
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def sqlite_store(tmp_path) -> PortfolioStore:
    return PortfolioStore(tmp_path / "portfolio.db")
