"""Price lookups against stored history, plus yfinance backfill."""

import asyncio
import bisect
import logging
import math
from datetime import date
from typing import Iterable, Optional, Protocol

import yfinance as yf

from .identifiers import normalize
from .models import PricePoint

logger = logging.getLogger(__name__)

# Securities fetched concurrently per wave
PRICE_FETCH_BATCH_SIZE = 10


class PriceHistoryStore(Protocol):
    def series_for(self, security_id: str) -> list[PricePoint]: ...


class PriceLookupCache:
    """Per-request cache of full price histories with nearest-date lookup.

    Create one per analytics request; nothing is shared across requests.
    """

    def __init__(self, store: PriceHistoryStore, batch_size: int = PRICE_FETCH_BATCH_SIZE):
        """Initialize the cache.

        Args:
            store: Source of price series (anything with series_for)
            batch_size: Max number of series fetched concurrently
        """
        self.store = store
        self.batch_size = max(1, batch_size)
        self._series: dict[str, tuple[list[date], list[float]]] = {}
        # Loads claimed by a running prefetch; concurrent callers wait on these
        self._inflight: dict[str, asyncio.Future] = {}

    def is_loaded(self, security_id: str) -> bool:
        return normalize(security_id) in self._series

    async def prefetch(self, security_ids: Iterable[str]) -> None:
        """Load the history of every not-yet-cached security, in bounded waves.

        Securities already being loaded by another prefetch are awaited,
        not fetched again.
        """
        pending = []
        waiting = []
        for security_id in security_ids:
            canonical = normalize(security_id)
            if not canonical or canonical in self._series or canonical in pending:
                continue
            if canonical in self._inflight:
                if self._inflight[canonical] not in waiting:
                    waiting.append(self._inflight[canonical])
                continue
            pending.append(canonical)

        if pending:
            loop = asyncio.get_running_loop()
            for canonical in pending:
                self._inflight[canonical] = loop.create_future()

            logger.info(f"Prefetching price history for {len(pending)} securities")
            try:
                for start in range(0, len(pending), self.batch_size):
                    batch = pending[start:start + self.batch_size]
                    await asyncio.gather(*(self._load(security_id) for security_id in batch))
                    self._release(batch)
            finally:
                self._release(pending)

        if waiting:
            await asyncio.gather(*(asyncio.shield(future) for future in waiting))

    def _release(self, security_ids: list[str]) -> None:
        for security_id in security_ids:
            future = self._inflight.pop(security_id, None)
            if future is not None and not future.done():
                future.set_result(None)

    async def _load(self, security_id: str) -> None:
        try:
            points = await asyncio.to_thread(self.store.series_for, security_id)
        except Exception as e:
            logger.error(f"Error fetching price history for {security_id}: {e}")
            points = []
        self._remember(security_id, points)

    def _remember(self, security_id: str, points: list[PricePoint]) -> None:
        usable = sorted(
            (p for p in points if p.close > 0 and math.isfinite(p.close)),
            key=lambda p: p.price_date,
        )
        self._series[security_id] = (
            [p.price_date for p in usable],
            [p.close for p in usable],
        )

    async def price_on_or_nearest(self, security_id: str, target: Optional[date]) -> float:
        """Closest known close to a date, fetching the series on first use.

        Returns:
            The close price, or 0.0 when no usable price is known
        """
        canonical = normalize(security_id)
        if canonical and canonical not in self._series:
            await self.prefetch([canonical])
        return self.cached_price(canonical, target)

    def cached_price(self, security_id: str, target: Optional[date]) -> float:
        """Nearest-date close from already loaded series; 0.0 if unknown.

        On equal distance the earlier date wins.
        """
        series = self._series.get(normalize(security_id))
        if not series or target is None:
            return 0.0

        dates, closes = series
        if not dates:
            return 0.0

        idx = bisect.bisect_left(dates, target)
        if idx < len(dates) and dates[idx] == target:
            return closes[idx]

        best = None
        for candidate in (idx - 1, idx):
            if 0 <= candidate < len(dates):
                distance = abs((dates[candidate] - target).days)
                if best is None or distance < best[0]:
                    best = (distance, candidate)
        return closes[best[1]] if best else 0.0

    def latest_price(self, security_id: str) -> float:
        """Most recent cached close, or 0.0."""
        series = self._series.get(normalize(security_id))
        if not series or not series[1]:
            return 0.0
        return series[1][-1]


def fetch_price_history(symbol: str, period: str = "5y") -> list[PricePoint]:
    """Download daily closes for a symbol from Yahoo Finance.

    Args:
        symbol: Yahoo Finance ticker symbol (e.g. RELIANCE.NS)
        period: yfinance history period

    Returns:
        List of PricePoint, oldest first; empty on any error
    """
    try:
        ticker = yf.Ticker(symbol)
        history = ticker.history(period=period)
        if history.empty:
            logger.warning(f"No price history available for {symbol}")
            return []

        points = []
        for date_idx, row in history.iterrows():
            close = float(row["Close"])
            if not math.isfinite(close):
                continue
            points.append(PricePoint(date=date_idx.to_pydatetime().date(), close=close))
        return points

    except Exception as e:
        logger.error(f"Error fetching price history for {symbol}: {e}")
        return []
