"""Fully exited positions from the realized P&L ledger or the transactions."""

import logging
from datetime import date
from typing import Optional

from .identifiers import name_key, reconcile
from .models import (
    Holding,
    HoldingPeriod,
    RealizedLot,
    RealizedStockSummary,
    TradeDirection,
    Transaction,
)
from .price_service import PriceLookupCache
from .returns import DAYS_PER_YEAR, annualized_percent, transactions_by_key, years_since

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30


class LotGroup:
    """Running totals of all realized lots sharing one identity key."""

    def __init__(self, key: str, lot: RealizedLot):
        self.key = key
        self.stock_name = lot.display_name
        self.sector_name = lot.sector
        self.security_id = lot.security_id
        self.closed_quantity = 0.0
        self.buy_value = 0.0
        self.sell_value = 0.0
        self.realized_pl = 0.0
        self.first_buy_date: Optional[date] = None
        self.last_sell_date: Optional[date] = None
        self.buy_prices: list[float] = []
        self.sell_prices: list[float] = []

    def add(self, lot: RealizedLot) -> None:
        self.closed_quantity += lot.closed_quantity
        self.buy_value += lot.buy_value
        self.sell_value += lot.sell_value
        self.realized_pl += lot.realized_pl_amount

        if lot.buy_date and (self.first_buy_date is None or lot.buy_date < self.first_buy_date):
            self.first_buy_date = lot.buy_date
        if lot.sell_date and (self.last_sell_date is None or lot.sell_date > self.last_sell_date):
            self.last_sell_date = lot.sell_date

        if lot.buy_price > 0:
            self.buy_prices.append(lot.buy_price)
        if lot.sell_price > 0:
            self.sell_prices.append(lot.sell_price)

        if not self.stock_name and lot.display_name:
            self.stock_name = lot.display_name

    @property
    def has_signal(self) -> bool:
        return self.closed_quantity > 0 or self.realized_pl != 0


def held_keys(holdings: list[Holding]) -> set[str]:
    """Keys under which an open holding may appear in other sources."""
    keys = set()
    for holding in holdings:
        if holding.security_id:
            keys.add(holding.security_id)
        if holding.display_name:
            keys.add(name_key(holding.display_name))
    return keys


def group_realized_lots(lots: list[RealizedLot], held: set[str]) -> dict[str, LotGroup]:
    """Group ledger lots by identity key, leaving out positions still held."""
    groups: dict[str, LotGroup] = {}
    for lot in lots:
        key = lot.identity_key
        if not key:
            logger.warning("Realized lot without security id or name cannot be attributed, skipping")
            continue
        if key in held:
            continue
        if key not in groups:
            groups[key] = LotGroup(key, lot)
        groups[key].add(lot)
    return groups


def holding_period(first_buy: Optional[date], last_sell: Optional[date]) -> tuple[HoldingPeriod, int]:
    """Holding period from elapsed days (30-day months), and the day count.

    Under 30 days only days are reported.
    """
    if first_buy is None or last_sell is None:
        return HoldingPeriod(), 0

    days = max(1, (last_sell - first_buy).days)
    if days < DAYS_PER_MONTH:
        return HoldingPeriod(days=days), days
    months = days // DAYS_PER_MONTH
    return HoldingPeriod(years=months // 12, months=months % 12), days


def _summary(
    stock_name: str,
    sector_name: str,
    security_id: str,
    quantity: float,
    avg_cost: float,
    avg_sold_price: float,
    invested: float,
    proceeds: float,
    realized_pl: float,
    first_buy: Optional[date],
    last_sell: Optional[date],
    current_price: float,
    today: date,
) -> RealizedStockSummary:
    # A missing side borrows the other so the period can still be estimated
    if first_buy is None:
        first_buy = last_sell
    if last_sell is None:
        last_sell = first_buy

    current_value = current_price * quantity if current_price > 0 else 0.0
    unrealized_pl = current_value - invested if current_price > 0 else 0.0
    total_pl = realized_pl + unrealized_pl
    period, days = holding_period(first_buy, last_sell)

    xirr = 0.0
    cagr = 0.0
    if first_buy is not None and invested > 0:
        xirr = annualized_percent(proceeds / invested, days / DAYS_PER_YEAR)
        if current_value > 0:
            cagr = annualized_percent(current_value / invested, years_since(first_buy, today))

    return RealizedStockSummary(
        stock_name=stock_name or security_id,
        sector_name=sector_name,
        security_id=security_id,
        qty_sold=quantity,
        avg_cost=avg_cost,
        avg_sold_price=avg_sold_price,
        total_invested=invested,
        last_sold_date=last_sell,
        current_price=current_price,
        current_value=current_value,
        realized_pl=realized_pl,
        unrealized_pl=unrealized_pl,
        total_pl=total_pl,
        total_pl_percent=(total_pl / invested) * 100 if invested > 0 else 0.0,
        xirr=xirr,
        cagr=cagr,
        holding_period=period,
    )


def summarize_group(
    group: LotGroup,
    prices: PriceLookupCache,
    today: date,
    force: bool = False,
) -> Optional[RealizedStockSummary]:
    """Build the summary row of one lot group.

    Args:
        group: Aggregated lots
        prices: Price cache, already holding the group's series
        today: Valuation date
        force: Build a row even for a group without quantity or P&L

    Returns:
        The summary, or None for a group with nothing to report
    """
    if not group.has_signal and not force:
        return None

    quantity = group.closed_quantity
    if quantity <= 0:
        logger.warning(f"{group.stock_name or group.key}: no closed quantity, assuming 1")
        quantity = 1.0

    avg_sold_price = (
        sum(group.sell_prices) / len(group.sell_prices)
        if group.sell_prices else group.sell_value / quantity
    )
    avg_cost = (
        sum(group.buy_prices) / len(group.buy_prices)
        if group.buy_prices else group.buy_value / quantity
    )
    current_price = prices.latest_price(group.security_id) if group.security_id else 0.0

    return _summary(
        stock_name=group.stock_name,
        sector_name=group.sector_name,
        security_id=group.security_id,
        quantity=quantity,
        avg_cost=avg_cost,
        avg_sold_price=avg_sold_price,
        invested=group.buy_value,
        proceeds=group.sell_value,
        realized_pl=group.realized_pl,
        first_buy=group.first_buy_date,
        last_sell=group.last_sell_date,
        current_price=current_price,
        today=today,
    )


def realized_from_lots(
    groups: dict[str, LotGroup],
    prices: PriceLookupCache,
    today: date,
) -> list[RealizedStockSummary]:
    summaries = []
    for key, group in groups.items():
        try:
            summary = summarize_group(group, prices, today)
        except Exception as e:
            logger.error(f"Error summarizing realized lots for {key}: {e}")
            continue
        if summary is not None:
            summaries.append(summary)
    return summaries


def _exited_position(
    txns: list[Transaction],
    prices: PriceLookupCache,
    today: date,
) -> Optional[RealizedStockSummary]:
    buys = [t for t in txns if t.direction == TradeDirection.BUY]
    sells = [t for t in txns if t.direction == TradeDirection.SELL]
    if not buys or not sells:
        return None

    bought_qty = sum(t.quantity for t in buys)
    sold_qty = sum(t.quantity for t in sells)
    if sold_qty < bought_qty or bought_qty <= 0:
        return None

    invested = sum(t.trade_value for t in buys)
    proceeds = sum(t.trade_value for t in sells)

    sold_gross = 0.0
    for t in sells:
        if t.price > 0:
            sold_gross += t.price * t.quantity
        elif t.trade_value > 0:
            sold_gross += t.trade_value + t.charges

    buy_dates = [t.trade_date for t in buys if t.trade_date]
    sell_dates = [t.trade_date for t in sells if t.trade_date]
    security_id = buys[0].security_id
    current_price = prices.latest_price(security_id) if security_id else 0.0

    return _summary(
        stock_name=buys[0].display_name,
        sector_name=buys[0].sector,
        security_id=security_id,
        quantity=bought_qty,
        avg_cost=invested / bought_qty,
        avg_sold_price=sold_gross / sold_qty if sold_qty > 0 else 0.0,
        invested=invested,
        proceeds=proceeds,
        realized_pl=proceeds - invested,
        first_buy=min(buy_dates) if buy_dates else None,
        last_sell=max(sell_dates) if sell_dates else None,
        current_price=current_price,
        today=today,
    )


def realized_from_transactions(
    transactions: list[Transaction],
    held: set[str],
    prices: PriceLookupCache,
    today: date,
) -> list[RealizedStockSummary]:
    """Derive exited positions from buys and sells when there is no ledger.

    A security qualifies when it has both buys and sells, has sold at least
    what it bought, and is not currently held.
    """
    summaries = []
    for key, txns in transactions_by_key(transactions).items():
        if not key or key in held:
            continue
        try:
            summary = _exited_position(txns, prices, today)
        except Exception as e:
            logger.error(f"Error deriving realized position for {key}: {e}")
            continue
        if summary is not None:
            summaries.append(summary)
    return summaries


def ensure_complete(
    summaries: list[RealizedStockSummary],
    lots: list[RealizedLot],
    held: set[str],
    prices: PriceLookupCache,
    today: date,
) -> list[RealizedStockSummary]:
    """Append a row for every ledger key missing from the summaries."""
    expected = {lot.identity_key for lot in lots} - held
    missing = reconcile(expected, {s.identity_key for s in summaries})
    if not missing:
        return summaries

    result = list(summaries)
    for key in sorted(missing):
        source = [lot for lot in lots if lot.identity_key == key]
        try:
            group = LotGroup(key, source[0])
            for lot in source:
                group.add(lot)
            result.append(summarize_group(group, prices, today, force=True))
            logger.info(f"Re-added realized position {key} from {len(source)} lots")
        except Exception as e:
            logger.warning(f"Realized position {key} could not be rebuilt, leaving it out: {e}")
    return result


async def realized_stocks(
    lots: list[RealizedLot],
    transactions: list[Transaction],
    holdings: list[Holding],
    prices: PriceLookupCache,
    today: Optional[date] = None,
) -> list[RealizedStockSummary]:
    """One row per fully exited security, most recent exit first.

    The realized P&L ledger is authoritative; transactions are used only
    when the ledger yields nothing. Every ledger key not currently held is
    guaranteed a row.

    Args:
        lots: Realized P&L ledger
        transactions: Ledger of trades
        holdings: Currently open holdings
        prices: Request-scoped price cache
        today: Valuation date

    Returns:
        List of RealizedStockSummary sorted by last sell date, newest first
    """
    if today is None:
        today = date.today()

    held = held_keys(holdings)
    groups = group_realized_lots(lots, held)

    if groups:
        await prices.prefetch(g.security_id for g in groups.values() if g.security_id)
        summaries = realized_from_lots(groups, prices, today)
    elif transactions:
        await prices.prefetch(t.security_id for t in transactions if t.security_id and t.security_id not in held)
        summaries = realized_from_transactions(transactions, held, prices, today)
    else:
        summaries = []

    summaries = ensure_complete(summaries, lots, held, prices, today)
    logger.info(f"Realized positions: {len(summaries)} from {len(lots)} ledger lots")
    return sorted(summaries, key=lambda s: s.last_sold_date or date.min, reverse=True)
