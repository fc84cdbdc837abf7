"""Sector distribution of open holdings."""

import logging
from datetime import date
from typing import Optional

from .models import UNKNOWN_SECTOR, Holding, Transaction
from .returns import annualized_percent, first_buy_date, portfolio_return, years_since

logger = logging.getLogger(__name__)


def _sector_row(
    sector: str,
    holdings: list[Holding],
    transactions: list[Transaction],
    total_value: float,
    today: date,
) -> dict:
    amount = sum(h.market_value for h in holdings)
    invested = sum(h.invested_amount for h in holdings)
    profit_loss = sum(h.unrealized_pl_amount for h in holdings)

    keys = {h.identity_key for h in holdings}
    sector_txns = [t for t in transactions if t.identity_key in keys]

    xirr = 0.0
    cagr = 0.0
    try:
        xirr = portfolio_return(sector_txns, holdings, today)
        started = first_buy_date(sector_txns)
        if started is not None and invested > 0 and amount > 0:
            cagr = annualized_percent(amount / invested, years_since(started, today))
    except Exception as e:
        logger.warning(f"Error computing returns for sector {sector}: {e}")

    return {
        "sector": sector,
        "amount": amount,
        "percentage": (amount / total_value) * 100 if total_value > 0 else 0.0,
        "xirr": xirr,
        "cagr": cagr,
        "overallReturnPercent": ((amount - invested) / invested) * 100 if invested > 0 else 0.0,
        "profitLossPercent": (profit_loss / invested) * 100 if invested > 0 else 0.0,
        "profitLossAmount": profit_loss,
    }


def industry_distribution(
    holdings: list[Holding],
    transactions: list[Transaction],
    today: Optional[date] = None,
) -> list[dict]:
    """Group holdings by sector with value share, P&L and returns.

    Returns:
        One row per sector, largest market value first
    """
    if today is None:
        today = date.today()

    by_sector: dict[str, list[Holding]] = {}
    for holding in holdings:
        by_sector.setdefault(holding.sector or UNKNOWN_SECTOR, []).append(holding)

    total_value = sum(h.market_value for h in holdings)
    rows = [
        _sector_row(sector, members, transactions, total_value, today)
        for sector, members in by_sector.items()
    ]
    return sorted(rows, key=lambda r: r["amount"], reverse=True)
