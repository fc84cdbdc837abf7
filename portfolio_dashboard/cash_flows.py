"""Monthly investment, withdrawal and dividend aggregation."""

import logging
from collections import defaultdict
from datetime import date

from .models import TradeDirection, Transaction

logger = logging.getLogger(__name__)

MONTH_LABEL_FORMAT = "%b-%y"


def month_label(d: date) -> str:
    """Label a month as e.g. 'Jan-24'."""
    return d.strftime(MONTH_LABEL_FORMAT)


def _stock_name(txn: Transaction) -> str:
    return txn.display_name or txn.security_id or "Unknown"


def _sorted_details(details: dict[str, dict]) -> list[dict]:
    return sorted(details.values(), key=lambda d: d["amount"], reverse=True)


def monthly_cash_flows(transactions: list[Transaction]) -> list[dict]:
    """Bucket buys and sells into calendar months.

    Dividends are left out of this view. Undated transactions cannot be
    placed in a month and are skipped.

    Args:
        transactions: Ledger entries in any order

    Returns:
        List of {month, investments, withdrawals, investmentDetails,
        withdrawalDetails} ordered by month
    """
    months: dict[date, dict] = {}

    for txn in transactions:
        if txn.direction == TradeDirection.DIVIDEND:
            continue
        if txn.trade_date is None:
            logger.warning(f"Skipping undated {txn.direction.value} for {txn.security_id or txn.display_name}")
            continue

        month_start = txn.trade_date.replace(day=1)
        if month_start not in months:
            months[month_start] = {
                "investments": 0.0,
                "withdrawals": 0.0,
                "buys": {},
                "sells": {},
            }
        bucket = months[month_start]

        amount = txn.trade_value
        if txn.direction == TradeDirection.BUY:
            bucket["investments"] += amount
            details = bucket["buys"]
        else:
            bucket["withdrawals"] += amount
            details = bucket["sells"]

        name = _stock_name(txn)
        if name not in details:
            details[name] = {"stockName": name, "qty": 0.0, "amount": 0.0}
        details[name]["qty"] += txn.quantity
        details[name]["amount"] += amount

    return [
        {
            "month": month_label(month_start),
            "investments": bucket["investments"],
            "withdrawals": bucket["withdrawals"],
            "investmentDetails": _sorted_details(bucket["buys"]),
            "withdrawalDetails": _sorted_details(bucket["sells"]),
        }
        for month_start, bucket in sorted(months.items())
    ]


def monthly_dividends(transactions: list[Transaction]) -> list[dict]:
    """Bucket dividend receipts (price x quantity) into calendar months.

    Returns:
        List of {month, amount, stockDetails} ordered by month
    """
    months: dict[date, float] = {}
    per_stock: dict[date, dict[str, float]] = defaultdict(lambda: defaultdict(float))

    for txn in transactions:
        if txn.direction != TradeDirection.DIVIDEND or txn.trade_date is None:
            continue

        month_start = txn.trade_date.replace(day=1)
        amount = txn.price * txn.quantity
        months[month_start] = months.get(month_start, 0.0) + amount
        per_stock[month_start][_stock_name(txn)] += amount

    return [
        {
            "month": month_label(month_start),
            "amount": total,
            "stockDetails": [
                {"stockName": name, "amount": amount}
                for name, amount in sorted(
                    per_stock[month_start].items(), key=lambda x: x[1], reverse=True
                )
            ],
        }
        for month_start, total in sorted(months.items())
    ]
