"""Portfolio analytics: annotated holdings, returns and the dashboard payload."""

import asyncio
import logging
from datetime import date
from typing import Any, Callable, Optional

from .cash_flows import monthly_cash_flows, monthly_dividends
from .identifiers import reconcile
from .models import Holding, RealizedLot, RealizedStockSummary, Transaction
from .monthly_returns import monthly_returns, return_statistics
from .price_service import PriceHistoryStore, PriceLookupCache
from .realized import realized_stocks
from .returns import portfolio_return, position_return, transactions_by_key
from .sectors import industry_distribution

logger = logging.getLogger(__name__)

# Upper bounds for the slow computations; on expiry they report nothing
MONTHLY_RETURNS_TIMEOUT = 45.0
REALIZED_STOCKS_TIMEOUT = 30.0

PERFORMER_COUNT = 3


def _sort_key(txn: Transaction) -> tuple:
    return (txn.trade_date is None, txn.trade_date or date.min)


class Portfolio:
    """Analytics over one snapshot of a portfolio.

    Holdings are copied and revalued in memory; nothing is written back.
    """

    def __init__(
        self,
        holdings: list[Holding],
        transactions: list[Transaction],
        realized_lots: list[RealizedLot],
        price_store: PriceHistoryStore,
        today: Optional[date] = None,
        monthly_timeout: float = MONTHLY_RETURNS_TIMEOUT,
        realized_timeout: float = REALIZED_STOCKS_TIMEOUT,
    ):
        """Initialize the portfolio.

        Args:
            holdings: Open holdings snapshot
            transactions: Trade and dividend ledger
            realized_lots: Realized P&L ledger
            price_store: Source of price history
            today: Valuation date (defaults to today)
            monthly_timeout: Seconds allowed for the monthly return series
            realized_timeout: Seconds allowed for realized positions
        """
        self.holdings = [h.model_copy() for h in holdings]
        self.transactions = sorted(transactions, key=_sort_key)
        self.realized_lots = list(realized_lots)
        self.today = today or date.today()
        self.monthly_timeout = monthly_timeout
        self.realized_timeout = realized_timeout
        self.prices = PriceLookupCache(price_store)

    @classmethod
    async def from_store(cls, store: Any, portfolio_id: str, today: Optional[date] = None) -> "Portfolio":
        """Load a portfolio snapshot. Store errors propagate to the caller."""
        holdings, transactions, lots = await asyncio.gather(
            asyncio.to_thread(store.holdings_for, portfolio_id),
            asyncio.to_thread(store.transactions_for, portfolio_id),
            asyncio.to_thread(store.realized_lots_for, portfolio_id),
        )
        logger.info(
            f"Loaded portfolio {portfolio_id}: {len(holdings)} holdings, "
            f"{len(transactions)} transactions, {len(lots)} realized lots"
        )
        return cls(holdings, transactions, lots, store, today=today)

    async def refresh_prices(self) -> None:
        """Revalue every holding at its latest known close."""
        await self.prices.prefetch(h.security_id for h in self.holdings)

        for holding in self.holdings:
            try:
                price = self.prices.cached_price(holding.security_id, self.today)
                if price > 0:
                    holding.update_with_price(price)
                    continue
                if holding.market_price <= 0:
                    holding.market_price = holding.avg_cost
                if holding.market_value <= 0:
                    holding.market_value = holding.market_price * holding.open_quantity
            except Exception as e:
                logger.error(f"Error refreshing price for {holding.security_id}: {e}")

    def annotate_holdings(self) -> list[Holding]:
        """Attach XIRR, CAGR and holding period to every holding."""
        by_key = transactions_by_key(self.transactions)
        annotated = []
        failed = []

        for holding in self.holdings:
            try:
                result = position_return(by_key.get(holding.identity_key, []), holding, self.today)
                holding.xirr = result.xirr
                holding.cagr = result.cagr
                holding.holding_period_years = result.holding_period_years
                holding.holding_period_months = result.holding_period_months
                annotated.append(holding)
            except Exception as e:
                logger.error(f"Error annotating holding {holding.security_id}: {e}")
                failed.append(holding)

        missing = reconcile(
            (h.identity_key for h in self.holdings),
            (h.identity_key for h in annotated),
        )
        # Holdings sharing a key, or without one, are tracked by object
        for holding in failed:
            holding.reset_returns()
            annotated.append(holding)
        if failed:
            logger.info(f"Re-added {len(failed)} holdings with neutral returns ({len(missing)} keys missing)")

        self.holdings = annotated
        return annotated

    @property
    def current_value(self) -> float:
        return sum(h.market_value for h in self.holdings)

    def get_summary(self, xirr: float) -> dict:
        """Headline totals of the portfolio."""
        current_value = self.current_value
        total_invested = sum(h.invested_amount for h in self.holdings)
        total_return = current_value - total_invested

        return {
            "currentValue": current_value,
            "totalInvested": total_invested,
            "totalProfitLoss": sum(h.unrealized_pl_amount for h in self.holdings),
            "totalRealizedPL": sum(lot.realized_pl_amount for lot in self.realized_lots),
            "totalReturn": total_return,
            "totalReturnPercent": (total_return / total_invested) * 100 if total_invested > 0 else 0.0,
            "xirr": xirr,
        }

    def get_performers(self) -> tuple[list[dict], list[dict]]:
        """Best and worst holdings by unrealized P&L percent."""
        def entry(h: Holding) -> dict:
            return {
                "stockName": h.display_name,
                "securityId": h.security_id,
                "profitLossPercent": h.unrealized_pl_percent,
                "profitLoss": h.unrealized_pl_amount,
                "marketValue": h.market_value,
            }

        ranked = sorted(self.holdings, key=lambda h: h.unrealized_pl_percent, reverse=True)
        top = [entry(h) for h in ranked[:PERFORMER_COUNT]]
        worst = [entry(h) for h in list(reversed(ranked))[:PERFORMER_COUNT]]
        return top, worst

    def thinned_transactions(self) -> list[dict]:
        return [
            {
                "securityId": t.security_id,
                "date": t.trade_date.isoformat() if t.trade_date else None,
                "direction": t.direction.value,
                "price": t.price,
                "quantity": t.quantity,
                "value": t.trade_value,
            }
            for t in self.transactions
        ]

    async def get_monthly_returns(self) -> list[dict]:
        """Monthly return series, or [] if it fails or runs out of time."""
        try:
            return await asyncio.wait_for(
                monthly_returns(self.holdings, self.transactions, self.prices, self.today),
                timeout=self.monthly_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Monthly returns timed out after {self.monthly_timeout}s")
        except Exception as e:
            logger.error(f"Error computing monthly returns: {e}")
        return []

    async def get_realized_stocks(self) -> list[RealizedStockSummary]:
        """Exited positions, or [] if it fails or runs out of time."""
        try:
            return await asyncio.wait_for(
                realized_stocks(
                    self.realized_lots, self.transactions, self.holdings, self.prices, self.today
                ),
                timeout=self.realized_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Realized stocks timed out after {self.realized_timeout}s")
        except Exception as e:
            logger.error(f"Error computing realized stocks: {e}")
        return []

    def _safely(self, label: str, default: Any, func: Callable, *args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Error computing {label}: {e}")
            return default

    async def build_payload(self) -> dict:
        """Compute the full dashboard payload.

        Each part is computed independently; a failing part is replaced by
        its empty value and the rest of the payload is still returned.
        """
        await self.refresh_prices()
        self.annotate_holdings()

        xirr = self._safely("portfolio xirr", 0.0, portfolio_return, self.transactions, self.holdings, self.today)
        top, worst = self._safely("performers", ([], []), self.get_performers)

        monthly, realized = await asyncio.gather(
            self.get_monthly_returns(),
            self.get_realized_stocks(),
        )

        statistics = self._safely(
            "return statistics",
            {
                "xirr": xirr,
                "cagr": 0.0,
                "avgReturnOverall": {"percent": 0.0, "amount": 0.0},
                "avgReturnCurrentYear": {"percent": 0.0, "amount": 0.0},
                "bestMonthCurrentYear": {"month": "", "percent": 0.0, "amount": 0.0},
                "worstMonthCurrentYear": {"month": "", "percent": 0.0, "amount": 0.0},
            },
            return_statistics,
            monthly, self.transactions, self.holdings, self.current_value, self.today, xirr=xirr,
        )

        return {
            "summary": self.get_summary(xirr),
            "topPerformers": top,
            "worstPerformers": worst,
            "holdings": [h.model_dump(by_alias=True, mode="json") for h in self.holdings],
            "monthlyInvestments": self._safely("monthly investments", [], monthly_cash_flows, self.transactions),
            "monthlyDividends": self._safely("monthly dividends", [], monthly_dividends, self.transactions),
            "monthlyReturns": monthly,
            "returnStatistics": statistics,
            "industryDistribution": self._safely(
                "industry distribution", [], industry_distribution,
                self.holdings, self.transactions, self.today,
            ),
            "realizedStocks": [s.model_dump(by_alias=True, mode="json") for s in realized],
            "transactions": self.thinned_transactions(),
        }
