from __future__ import annotations

import datetime as dt
import math

import pytest

from conftest import TODAY
from portfolio_dashboard.models import Holding, Transaction
from portfolio_dashboard.returns import (
    NEUTRAL_RETURN,
    annualized_percent,
    months_between,
    portfolio_cagr,
    portfolio_return,
    position_return,
    simple_xirr,
)

YEAR_AGO = dt.date(2024, 6, 15)


def _txn(security_id, direction, date, quantity, price, charges=0.0):
    return Transaction(
        security_id=security_id, direction=direction, date=date,
        quantity=quantity, price=price, charges=charges,
    )


def test_position_return_open_holding():
    holding = Holding(
        security_id="X1", open_quantity=100, market_price=100,
        market_value=10_000, invested_amount=5_000,
    )
    txns = [_txn("X1", "BUY", "2023-01-01", 100, 50)]

    result = position_return(txns, holding, TODAY)

    years = (TODAY - dt.date(2023, 1, 1)).days / 365
    expected = ((10_000 / 5_000) ** (1 / years) - 1) * 100
    assert result.cagr == pytest.approx(expected)
    assert result.xirr == pytest.approx(expected)
    assert (result.holding_period_years, result.holding_period_months) == (2, 5)


def test_holding_period_uses_calendar_months():
    assert months_between(dt.date(2024, 1, 31), dt.date(2024, 2, 1)) == 1
    assert months_between(dt.date(2024, 3, 1), dt.date(2024, 3, 31)) == 0
    assert months_between(dt.date(2025, 1, 1), dt.date(2024, 1, 1)) == 0


def test_position_return_with_partial_sale():
    holding = Holding(security_id="X1", open_quantity=5, market_value=1_000, invested_amount=500)
    txns = [
        _txn("X1", "BUY", YEAR_AGO, 10, 100),
        _txn("X1", "SELL", "2025-01-10", 5, 120),
    ]
    result = position_return(txns, holding, TODAY)
    # (600 + 1000) / 1000 over exactly one year
    assert result.xirr == pytest.approx(60.0)
    assert result.cagr == pytest.approx(100.0)


def test_position_without_transactions_is_neutral():
    holding = Holding(security_id="X1", open_quantity=1, market_value=100, invested_amount=50)
    assert position_return([], holding, TODAY) == NEUTRAL_RETURN


def test_zero_market_value_keeps_holding_period():
    holding = Holding(security_id="X1", open_quantity=10, market_value=0, invested_amount=1_000)
    result = position_return([_txn("X1", "BUY", YEAR_AGO, 10, 100)], holding, TODAY)
    assert result.xirr == 0.0
    assert result.cagr == 0.0
    assert (result.holding_period_years, result.holding_period_months) == (1, 0)


def test_malformed_dates_yield_neutral_result():
    holding = Holding(security_id="X1", open_quantity=10, market_value=2_000, invested_amount=1_000)
    txns = [_txn("X1", "BUY", "??", 10, 100)]
    assert position_return(txns, holding, TODAY) == NEUTRAL_RETURN


def test_closed_position_has_no_cagr():
    holding = Holding(security_id="X1", open_quantity=0, market_value=0, invested_amount=0)
    txns = [_txn("X1", "BUY", YEAR_AGO, 10, 100), _txn("X1", "SELL", "2025-01-01", 10, 150)]
    result = position_return(txns, holding, TODAY)
    assert result.xirr == pytest.approx(50.0)
    assert result.cagr == 0.0


@pytest.mark.parametrize(
    "ratio, years",
    [(float("inf"), 1.0), (float("nan"), 1.0), (0.0, 1.0), (-2.0, 1.0), (1e300, 1e-4), (2.0, 0.0)],
)
def test_annualized_percent_never_explodes(ratio, years):
    result = annualized_percent(ratio, years)
    assert math.isfinite(result)
    assert result == 0.0


def test_portfolio_return_uses_weighted_xirr_when_close_to_cagr():
    holdings = [Holding(security_id="X1", open_quantity=10, market_value=2_000, invested_amount=1_000)]
    txns = [_txn("X1", "BUY", YEAR_AGO, 10, 100)]
    assert portfolio_return(txns, holdings, TODAY) == pytest.approx(100.0)


def test_portfolio_return_blends_when_measures_diverge():
    holdings = [Holding(security_id="X1", open_quantity=10, market_value=2_000, invested_amount=1_000)]
    txns = [
        _txn("X1", "BUY", YEAR_AGO, 10, 100),
        _txn("Y1", "BUY", YEAR_AGO, 10, 100),
        _txn("Y1", "SELL", "2024-12-01", 5, 100),
    ]
    # weighted XIRR 100%, portfolio CAGR (2000 + 500) / 1500 - 1 = 66.67%
    cagr = (2_500 / 1_500 - 1) * 100
    assert portfolio_return(txns, holdings, TODAY) == pytest.approx(0.6 * 100 + 0.4 * cagr)


def test_portfolio_return_without_market_value_uses_cash_flows():
    txns = [
        _txn("X1", "BUY", YEAR_AGO, 10, 100),
        _txn("X1", "SELL", "2025-03-01", 10, 150),
    ]
    assert portfolio_return(txns, [], TODAY) == pytest.approx(50.0)
    assert simple_xirr(txns, [], TODAY) == pytest.approx(50.0)


def test_portfolio_return_without_transactions():
    holdings = [Holding(security_id="X1", open_quantity=10, market_value=2_000, invested_amount=1_000)]
    assert portfolio_return([], holdings, TODAY) == 0.0


def test_portfolio_cagr_falls_back_to_total_bought():
    txns = [
        _txn("X1", "BUY", YEAR_AGO, 10, 100),
        _txn("X1", "SELL", "2025-01-01", 10, 150),
    ]
    # net invested is negative, so divide by the 1000 bought
    assert portfolio_cagr(txns, 0.0, TODAY) == pytest.approx(50.0)
    assert portfolio_cagr([], 1_000.0, TODAY) == 0.0
