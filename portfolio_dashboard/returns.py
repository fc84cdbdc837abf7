"""Approximate annualized returns for positions and the whole portfolio.

XIRR here is the closed-form ratio approximation used across the dashboard:
``(returned / invested) ** (1 / years) - 1``, with years measured from the
first cash flow to today. It is not a root-solved IRR.
"""

import logging
import math
from collections import defaultdict
from datetime import date
from typing import NamedTuple, Optional

from .models import Holding, TradeDirection, Transaction

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365
MIN_YEARS = 1 / DAYS_PER_YEAR
MIN_PORTFOLIO_YEARS = 0.01

# Blend of weighted holding XIRR and portfolio CAGR
BLEND_THRESHOLD = 5.0
BLEND_XIRR_WEIGHT = 0.6


class PositionReturn(NamedTuple):
    xirr: float = 0.0
    cagr: float = 0.0
    holding_period_years: int = 0
    holding_period_months: int = 0


NEUTRAL_RETURN = PositionReturn()


def annualized_percent(ratio: float, years: float) -> float:
    """Annualize a growth ratio over a number of years, in percent.

    Returns 0.0 whenever the result would be undefined or non-finite.
    """
    if not math.isfinite(ratio) or ratio <= 0:
        return 0.0
    if not math.isfinite(years) or years <= 0:
        return 0.0
    try:
        result = (math.pow(ratio, 1 / years) - 1) * 100
    except (OverflowError, ValueError, ZeroDivisionError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def years_since(start: date, today: date, min_years: float = MIN_YEARS) -> float:
    """Fractional years from start to today, never below min_years."""
    return max(min_years, (today - start).days / DAYS_PER_YEAR)


def months_between(start: date, end: date) -> int:
    """Whole calendar months between two dates (year/month components only)."""
    return max(0, (end.year - start.year) * 12 + (end.month - start.month))


def transactions_by_key(transactions: list[Transaction]) -> dict[str, list[Transaction]]:
    """Group transactions by identity key, keeping their order."""
    grouped: dict[str, list[Transaction]] = defaultdict(list)
    for txn in transactions:
        grouped[txn.identity_key].append(txn)
    return grouped


def cash_flows(
    transactions: list[Transaction],
    current_value: float = 0.0,
    today: Optional[date] = None,
) -> list[tuple[date, float]]:
    """Dated cash flows: buys negative, sells positive, current value last.

    Undated or non-finite trades are skipped. Dividends are not flows.
    """
    if today is None:
        today = date.today()

    flows = []
    for txn in transactions:
        if txn.trade_date is None:
            continue
        value = abs(txn.trade_value)
        if not math.isfinite(value) or value == 0:
            continue
        if txn.direction == TradeDirection.BUY:
            flows.append((txn.trade_date, -value))
        elif txn.direction == TradeDirection.SELL:
            flows.append((txn.trade_date, value))

    if current_value > 0 and math.isfinite(current_value):
        flows.append((today, current_value))
    return flows


def xirr_from_flows(flows: list[tuple[date, float]], today: Optional[date] = None) -> float:
    """Ratio-based XIRR approximation over a list of dated flows.

    Args:
        flows: (date, amount) pairs, outflows negative
        today: Valuation date

    Returns:
        Annualized return in percent, 0.0 when it cannot be computed
    """
    if today is None:
        today = date.today()
    if len(flows) < 2:
        return 0.0

    invested = abs(sum(amount for _, amount in flows if amount < 0))
    returned = sum(amount for _, amount in flows if amount > 0)
    if invested == 0 or not math.isfinite(invested) or not math.isfinite(returned):
        return 0.0

    first_date = min(d for d, _ in flows)
    return annualized_percent(returned / invested, years_since(first_date, today))


def stock_xirr(transactions: list[Transaction], holding: Holding, today: Optional[date] = None) -> float:
    """XIRR of one security; the open position counts as a final inflow."""
    current_value = 0.0
    if holding.open_quantity > 0 and holding.market_value > 0:
        current_value = holding.market_value
    return xirr_from_flows(cash_flows(transactions, current_value, today), today)


def first_buy_date(transactions: list[Transaction]) -> Optional[date]:
    dates = [
        t.trade_date for t in transactions
        if t.direction == TradeDirection.BUY and t.trade_date is not None
    ]
    return min(dates) if dates else None


def stock_cagr_and_holding_period(
    transactions: list[Transaction],
    holding: Holding,
    today: Optional[date] = None,
) -> tuple[float, int, int]:
    """CAGR from the first buy, plus the holding period in years and months.

    Returns:
        (cagr percent, holding period years, remaining months)
    """
    if today is None:
        today = date.today()

    started = first_buy_date(transactions)
    if started is None or holding.open_quantity <= 0:
        return 0.0, 0, 0

    months = months_between(started, today)
    period_years, period_months = months // 12, months % 12

    if holding.invested_amount <= 0 or holding.market_value <= 0:
        return 0.0, period_years, period_months

    cagr = annualized_percent(
        holding.market_value / holding.invested_amount,
        years_since(started, today),
    )
    return cagr, period_years, period_months


def position_return(
    transactions: list[Transaction],
    holding: Holding,
    today: Optional[date] = None,
) -> PositionReturn:
    """XIRR, CAGR and holding period of one position. Never raises."""
    try:
        if not transactions:
            return NEUTRAL_RETURN
        xirr = stock_xirr(transactions, holding, today)
        cagr, years, months = stock_cagr_and_holding_period(transactions, holding, today)
        return PositionReturn(xirr, cagr, years, months)
    except Exception as e:
        logger.warning(f"Error computing returns for {holding.security_id or holding.display_name}: {e}")
        return NEUTRAL_RETURN


def _trade_totals(transactions: list[Transaction]) -> tuple[float, float]:
    bought = sum(t.trade_value for t in transactions if t.direction == TradeDirection.BUY)
    sold = sum(t.trade_value for t in transactions if t.direction == TradeDirection.SELL)
    return bought, sold


def portfolio_cagr(
    transactions: list[Transaction],
    current_value: float,
    today: Optional[date] = None,
    min_years: float = MIN_YEARS,
) -> float:
    """Portfolio-level CAGR: (current value + sold) over net invested.

    Falls back to total bought as the divisor when net invested is not
    positive.
    """
    if today is None:
        today = date.today()

    started = first_buy_date(transactions)
    if started is None:
        return 0.0

    bought, sold = _trade_totals(transactions)
    net_invested = bought - sold
    total_value = current_value + sold
    divisor = net_invested if net_invested > 0 else bought
    if divisor <= 0 or total_value <= 0:
        return 0.0
    return annualized_percent(total_value / divisor, years_since(started, today, min_years))


def simple_xirr(
    transactions: list[Transaction],
    holdings: list[Holding],
    today: Optional[date] = None,
) -> float:
    """Portfolio XIRR from transaction cash flows alone."""
    current_value = sum(h.market_value for h in holdings if h.market_value > 0)
    return xirr_from_flows(cash_flows(transactions, current_value, today), today)


def portfolio_return(
    transactions: list[Transaction],
    holdings: list[Holding],
    today: Optional[date] = None,
) -> float:
    """Headline portfolio return in percent.

    Market-value weighted XIRR of the open holdings, blended 60/40 with the
    portfolio CAGR when the two differ by more than 5 points. Realized gains
    enter through the SELL flows.

    Args:
        transactions: All ledger entries in scope
        holdings: Open holdings in scope
        today: Valuation date

    Returns:
        Annualized return in percent
    """
    if today is None:
        today = date.today()
    if not transactions:
        return 0.0

    try:
        by_key = transactions_by_key(transactions)
        weighted_sum = 0.0
        total_value = 0.0
        for holding in holdings:
            own = by_key.get(holding.identity_key, [])
            if own and holding.market_value > 0:
                weighted_sum += stock_xirr(own, holding, today) * holding.market_value
                total_value += holding.market_value

        if total_value == 0:
            return simple_xirr(transactions, holdings, today)

        weighted_xirr = weighted_sum / total_value
        if first_buy_date(transactions) is None:
            return weighted_xirr

        overall_cagr = portfolio_cagr(transactions, total_value, today, MIN_PORTFOLIO_YEARS)
        if abs(weighted_xirr - overall_cagr) > BLEND_THRESHOLD:
            return weighted_xirr * BLEND_XIRR_WEIGHT + overall_cagr * (1 - BLEND_XIRR_WEIGHT)
        return weighted_xirr

    except Exception as e:
        logger.error(f"Error computing portfolio return: {e}")
        return 0.0
