"""FastAPI application entry point."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import FastAPI, HTTPException, Query

from .cache_service import portfolio_store
from .models import Holding, PricePoint, RealizedLot, Transaction
from .portfolio import Portfolio
from .price_service import fetch_price_history

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Portfolio Dashboard",
    description="Returns, cash flows and realized positions of brokerage portfolios",
    version="1.0.0",
)

store = portfolio_store

# API-level response cache, keyed by portfolio id
_api_cache: dict[str, tuple[dict, datetime]] = {}
API_CACHE_TTL = timedelta(seconds=30)


def _get_api_cache(key: str) -> Optional[dict]:
    if key in _api_cache:
        data, cached_at = _api_cache[key]
        if datetime.now() - cached_at < API_CACHE_TTL:
            return data
    return None


def _set_api_cache(key: str, data: dict) -> None:
    _api_cache[key] = (data, datetime.now())


@app.get("/api/dashboard")
async def get_dashboard(portfolio_id: str = Query(..., description="Portfolio identifier")):
    """Get the complete dashboard analytics of a portfolio."""
    cached = _get_api_cache(portfolio_id)
    if cached is not None:
        return cached

    try:
        portfolio = await Portfolio.from_store(store, portfolio_id)
    except Exception as e:
        logger.error(f"Error loading portfolio {portfolio_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    payload = await portfolio.build_payload()
    result = {"success": True, "data": payload}
    _set_api_cache(portfolio_id, result)
    return result


@app.put("/api/portfolios/{portfolio_id}/holdings")
async def replace_holdings(portfolio_id: str, holdings: list[Holding]):
    """Replace the holdings snapshot of a portfolio."""
    try:
        count = store.replace_holdings(portfolio_id, holdings)
        _api_cache.clear()
        return {"message": f"Stored {count} holdings", "count": count}
    except Exception as e:
        logger.error(f"Error storing holdings for {portfolio_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/portfolios/{portfolio_id}/transactions")
async def append_transactions(portfolio_id: str, transactions: list[Transaction]):
    """Append transactions to a portfolio's ledger."""
    try:
        inserted = store.append_transactions(portfolio_id, transactions)
        _api_cache.clear()
        return {
            "message": f"Added {inserted} transactions",
            "inserted": inserted,
            "duplicates": len(transactions) - inserted,
        }
    except Exception as e:
        logger.error(f"Error storing transactions for {portfolio_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.put("/api/portfolios/{portfolio_id}/realized-lots")
async def replace_realized_lots(portfolio_id: str, lots: list[RealizedLot]):
    """Replace the realized P&L ledger of a portfolio."""
    try:
        count = store.replace_realized_lots(portfolio_id, lots)
        _api_cache.clear()
        return {"message": f"Stored {count} realized lots", "count": count}
    except Exception as e:
        logger.error(f"Error storing realized lots for {portfolio_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/prices/{security_id}")
async def save_prices(security_id: str, points: list[PricePoint]):
    """Store daily closes for a security."""
    try:
        count = store.save_price_series_batch(security_id, points)
        _api_cache.clear()
        return {"message": f"Saved {count} prices", "count": count}
    except Exception as e:
        logger.error(f"Error saving prices for {security_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/prices/{security_id}/refresh")
async def refresh_prices(
    security_id: str,
    symbol: str = Query(..., description="Yahoo Finance ticker, e.g. RELIANCE.NS"),
    period: str = Query("5y", description="History period (1y, 5y, max)"),
):
    """Backfill a security's price history from Yahoo Finance."""
    points = fetch_price_history(symbol, period=period)
    if not points:
        raise HTTPException(status_code=400, detail=f"No price data returned for {symbol}")

    try:
        count = store.save_price_series_batch(security_id, points)
        _api_cache.clear()
        return {"message": f"Saved {count} prices from {symbol}", "count": count}
    except Exception as e:
        logger.error(f"Error saving prices for {security_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/cache/stats")
async def get_cache_stats():
    """Get storage statistics."""
    try:
        return store.get_cache_stats()
    except Exception as e:
        logger.error(f"Error getting cache stats: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/cache/clear")
async def clear_cache(clear_prices: bool = Query(False, description="Also delete stored price history")):
    """Clear the response cache, optionally with the price history."""
    try:
        _api_cache.clear()
        if clear_prices:
            store.clear_prices()
        return {"message": "Cache cleared successfully"}
    except Exception as e:
        logger.error(f"Error clearing cache: {e}")
        raise HTTPException(status_code=500, detail=str(e))

