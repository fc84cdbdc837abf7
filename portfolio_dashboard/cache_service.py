"""SQLite-backed storage for portfolio snapshots and historical prices."""

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from .identifiers import normalize
from .models import Holding, PricePoint, RealizedLot, Transaction

logger = logging.getLogger(__name__)


class PortfolioStore:
    """Holdings, transactions, realized lots and price history in one SQLite file.

    Records are stored as their JSON serialization next to the columns
    needed for ordering and de-duplication.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file. Defaults to data/portfolio.db
        """
        if db_path is None:
            db_path = Path(__file__).parent.parent / "data" / "portfolio.db"

        self.db_path = Path(db_path)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS holdings (
                    portfolio_id TEXT NOT NULL,
                    security_id TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)

            # Append-only ledger; the unique key drops re-imported rows
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    portfolio_id TEXT NOT NULL,
                    security_id TEXT NOT NULL,
                    trade_date TEXT,
                    direction TEXT NOT NULL,
                    quantity REAL NOT NULL,
                    payload TEXT NOT NULL,
                    UNIQUE (portfolio_id, security_id, trade_date, direction, quantity)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS realized_lots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    portfolio_id TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS historical_prices (
                    security_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    close_price REAL NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (security_id, date)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_holdings_portfolio
                ON holdings(portfolio_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_transactions_portfolio_date
                ON transactions(portfolio_id, trade_date)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_realized_lots_portfolio
                ON realized_lots(portfolio_id)
            """)

            conn.commit()
            logger.info(f"Portfolio database initialized at {self.db_path}")

    # --- Holdings ---

    def holdings_for(self, portfolio_id: str) -> list[Holding]:
        """Get the current holdings snapshot of a portfolio."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT payload FROM holdings WHERE portfolio_id = ? ORDER BY rowid",
                (portfolio_id,)
            )
            return [Holding.model_validate_json(row[0]) for row in cursor.fetchall()]

    def replace_holdings(self, portfolio_id: str, holdings: list[Holding]) -> int:
        """Replace a portfolio's holdings wholesale.

        Args:
            portfolio_id: Portfolio identifier
            holdings: The new snapshot

        Returns:
            Number of holdings stored
        """
        rows = [
            (portfolio_id, h.security_id, h.model_dump_json(by_alias=True))
            for h in holdings
        ]
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM holdings WHERE portfolio_id = ?", (portfolio_id,))
            cursor.executemany(
                "INSERT INTO holdings (portfolio_id, security_id, payload) VALUES (?, ?, ?)",
                rows
            )
            conn.commit()

        logger.info(f"Stored {len(rows)} holdings for portfolio {portfolio_id}")
        return len(rows)

    # --- Transactions ---

    def transactions_for(self, portfolio_id: str) -> list[Transaction]:
        """Get a portfolio's transactions in chronological order."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """SELECT payload FROM transactions WHERE portfolio_id = ?
                   ORDER BY trade_date, id""",
                (portfolio_id,)
            )
            return [Transaction.model_validate_json(row[0]) for row in cursor.fetchall()]

    def append_transactions(self, portfolio_id: str, transactions: list[Transaction]) -> int:
        """Append transactions to the ledger, skipping exact re-imports.

        Returns:
            Number of transactions actually inserted
        """
        rows = [
            (
                portfolio_id,
                t.security_id,
                t.trade_date.isoformat() if t.trade_date else None,
                t.direction.value,
                t.quantity,
                t.model_dump_json(by_alias=True),
            )
            for t in transactions
        ]
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            before = conn.total_changes
            cursor.executemany(
                """INSERT OR IGNORE INTO transactions
                   (portfolio_id, security_id, trade_date, direction, quantity, payload)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                rows
            )
            inserted = conn.total_changes - before
            conn.commit()

        if inserted < len(rows):
            logger.info(f"Skipped {len(rows) - inserted} duplicate transactions for portfolio {portfolio_id}")
        return inserted

    # --- Realized lots ---

    def realized_lots_for(self, portfolio_id: str) -> list[RealizedLot]:
        """Get the realized P&L ledger of a portfolio."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT payload FROM realized_lots WHERE portfolio_id = ? ORDER BY id",
                (portfolio_id,)
            )
            return [RealizedLot.model_validate_json(row[0]) for row in cursor.fetchall()]

    def replace_realized_lots(self, portfolio_id: str, lots: list[RealizedLot]) -> int:
        """Replace a portfolio's realized P&L ledger."""
        rows = [(portfolio_id, lot.model_dump_json(by_alias=True)) for lot in lots]
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM realized_lots WHERE portfolio_id = ?", (portfolio_id,))
            cursor.executemany(
                "INSERT INTO realized_lots (portfolio_id, payload) VALUES (?, ?)",
                rows
            )
            conn.commit()

        logger.info(f"Stored {len(rows)} realized lots for portfolio {portfolio_id}")
        return len(rows)

    # --- Price history ---

    def series_for(self, security_id: str) -> list[PricePoint]:
        """Get the full close-price history of a security, oldest first."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """SELECT date, close_price FROM historical_prices
                   WHERE security_id = ? ORDER BY date""",
                (normalize(security_id),)
            )
            return [PricePoint(date=row[0], close=row[1]) for row in cursor.fetchall()]

    def save_price_series_batch(self, security_id: str, points: list[PricePoint]) -> int:
        """Save multiple closes for a security, replacing existing dates.

        Returns:
            Number of prices saved
        """
        canonical = normalize(security_id)
        rows = [(canonical, p.price_date.isoformat(), p.close) for p in points]
        if not rows:
            return 0

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.executemany(
                """INSERT OR REPLACE INTO historical_prices (security_id, date, close_price)
                   VALUES (?, ?, ?)""",
                rows
            )
            conn.commit()

        logger.info(f"Saved {len(rows)} historical prices for {canonical}")
        return len(rows)

    # --- Utility Methods ---

    def clear_prices(self) -> None:
        """Delete all stored price history."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM historical_prices")
            conn.commit()
        logger.info("Price history cleared")

    def get_cache_stats(self) -> dict:
        """Get storage statistics.

        Returns:
            Dictionary with row counts and the price date range
        """
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("SELECT COUNT(*) FROM historical_prices")
            price_count = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(DISTINCT security_id) FROM historical_prices")
            security_count = cursor.fetchone()[0]

            cursor.execute("SELECT MIN(date), MAX(date) FROM historical_prices")
            price_range = cursor.fetchone()

            cursor.execute("SELECT COUNT(*) FROM holdings")
            holding_count = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM transactions")
            transaction_count = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM realized_lots")
            lot_count = cursor.fetchone()[0]

        return {
            "historical_prices_count": price_count,
            "securities_cached": security_count,
            "price_date_range": price_range,
            "holdings_count": holding_count,
            "transactions_count": transaction_count,
            "realized_lots_count": lot_count,
            "db_size_bytes": self.db_path.stat().st_size if self.db_path.exists() else 0,
        }


# Global store instance
portfolio_store = PortfolioStore()
