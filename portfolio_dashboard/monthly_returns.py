"""Month-by-month mark-to-market returns and derived statistics."""

import calendar
import logging
from datetime import date, datetime
from typing import Optional

from .cash_flows import MONTH_LABEL_FORMAT, month_label
from .models import Holding, TradeDirection, Transaction
from .price_service import PriceLookupCache
from .returns import MIN_PORTFOLIO_YEARS, portfolio_cagr, portfolio_return

logger = logging.getLogger(__name__)

LOOKBACK_YEARS = 5

# Bounds on a single month's return percent
MONTHLY_RETURN_FLOOR = -100.0
MONTHLY_RETURN_CAP = 200.0


def month_starts(today: date, lookback_years: int = LOOKBACK_YEARS) -> list[date]:
    """First day of every month from lookback_years ago up to today."""
    current = date(today.year - lookback_years, today.month, 1)
    starts = []
    while current <= today:
        starts.append(current)
        if current.month == 12:
            current = date(current.year + 1, 1, 1)
        else:
            current = date(current.year, current.month + 1, 1)
    return starts


def month_end(month_start: date) -> date:
    last_day = calendar.monthrange(month_start.year, month_start.month)[1]
    return month_start.replace(day=last_day)


def _zero_entry(month_start: date) -> dict:
    return {"month": month_label(month_start), "returnPercent": 0.0, "returnAmount": 0.0}


def _month_return(month_start: date, quantities: dict[str, float], prices: PriceLookupCache) -> dict:
    end = month_end(month_start)
    value_start = 0.0
    value_end = 0.0

    for security_id, qty in quantities.items():
        if qty <= 0:
            continue
        price_start = prices.cached_price(security_id, month_start)
        price_end = prices.cached_price(security_id, end)
        if price_start <= 0:
            continue
        # No end price means no movement
        if price_end <= 0:
            price_end = price_start
        value_start += qty * price_start
        value_end += qty * price_end

    return_amount = value_end - value_start
    return_percent = 0.0
    if value_start > 0:
        return_percent = (return_amount / value_start) * 100
        return_percent = max(MONTHLY_RETURN_FLOOR, min(MONTHLY_RETURN_CAP, return_percent))

    return {
        "month": month_label(month_start),
        "returnPercent": return_percent,
        "returnAmount": return_amount,
    }


async def monthly_returns(
    holdings: list[Holding],
    transactions: list[Transaction],
    prices: PriceLookupCache,
    today: Optional[date] = None,
    lookback_years: int = LOOKBACK_YEARS,
) -> list[dict]:
    """Monthly portfolio return series over the trailing lookback window.

    Quantities held at each month start are rebuilt by replaying buys and
    sells dated on or before it. Securities with no trade history use their
    current open quantity throughout.

    Args:
        holdings: Current open holdings
        transactions: Ledger entries
        prices: Request-scoped price cache
        today: Last day covered
        lookback_years: Length of the window

    Returns:
        List of {month, returnPercent, returnAmount}, oldest month first
    """
    if today is None:
        today = date.today()
    if not holdings and not transactions:
        return []

    trades = sorted(
        (
            t for t in transactions
            if t.security_id and t.trade_date is not None and t.direction != TradeDirection.DIVIDEND
        ),
        key=lambda t: t.trade_date,
    )
    traded = {t.security_id for t in trades}
    untraded = {
        h.security_id: h.open_quantity
        for h in holdings
        if h.security_id and h.security_id not in traded
    }

    # All series must be in memory before the month loop starts
    await prices.prefetch(sorted(traded | set(untraded)))

    quantities: dict[str, float] = dict(untraded)
    trade_idx = 0
    results = []

    for month_start in month_starts(today, lookback_years):
        while trade_idx < len(trades) and trades[trade_idx].trade_date <= month_start:
            txn = trades[trade_idx]
            change = txn.quantity if txn.direction == TradeDirection.BUY else -txn.quantity
            quantities[txn.security_id] = quantities.get(txn.security_id, 0.0) + change
            trade_idx += 1

        try:
            results.append(_month_return(month_start, quantities, prices))
        except Exception as e:
            logger.error(f"Error computing return for {month_label(month_start)}: {e}")
            results.append(_zero_entry(month_start))

    return results


def _label_to_date(label: str) -> Optional[date]:
    try:
        return datetime.strptime(label, MONTH_LABEL_FORMAT).date()
    except (TypeError, ValueError):
        return None


def _average(entries: list[dict]) -> dict:
    if not entries:
        return {"percent": 0.0, "amount": 0.0}
    return {
        "percent": sum(e["returnPercent"] for e in entries) / len(entries),
        "amount": sum(e["returnAmount"] for e in entries) / len(entries),
    }


def _month_summary(entry: Optional[dict]) -> dict:
    if entry is None:
        return {"month": "", "percent": 0.0, "amount": 0.0}
    return {
        "month": entry["month"],
        "percent": entry["returnPercent"],
        "amount": entry["returnAmount"],
    }


def return_statistics(
    monthly: list[dict],
    transactions: list[Transaction],
    holdings: list[Holding],
    current_value: float,
    today: Optional[date] = None,
    xirr: Optional[float] = None,
) -> dict:
    """Headline return figures plus averages and best/worst months.

    Args:
        monthly: Output of monthly_returns
        transactions: Ledger entries
        holdings: Open holdings
        current_value: Total market value of the holdings
        today: Valuation date; its calendar year is the "current year"
        xirr: Precomputed portfolio return, computed here when omitted

    Returns:
        Dictionary with xirr, cagr, avgReturnOverall, avgReturnCurrentYear,
        bestMonthCurrentYear and worstMonthCurrentYear
    """
    if today is None:
        today = date.today()
    if xirr is None:
        xirr = portfolio_return(transactions, holdings, today)
    cagr = portfolio_cagr(transactions, current_value, today, MIN_PORTFOLIO_YEARS)

    year_start = date(today.year, 1, 1)
    current_year = []
    for entry in monthly:
        month_date = _label_to_date(entry["month"])
        if month_date is not None and month_date >= year_start:
            current_year.append(entry)

    ranked = sorted(current_year, key=lambda e: e["returnPercent"], reverse=True)

    return {
        "xirr": xirr,
        "cagr": cagr,
        "avgReturnOverall": _average(monthly),
        "avgReturnCurrentYear": _average(current_year),
        "bestMonthCurrentYear": _month_summary(ranked[0] if ranked else None),
        "worstMonthCurrentYear": _month_summary(ranked[-1] if ranked else None),
    }
