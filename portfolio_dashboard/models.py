"""Data models for the portfolio dashboard."""

import logging
import math
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .identifiers import identity_key, normalize

logger = logging.getLogger(__name__)

UNKNOWN_SECTOR = "Unknown"

# Brokerage exports use day-first dates; ISO is tried before these.
DATE_FORMATS = ["%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%m/%d/%Y", "%Y/%m/%d"]


def parse_date(value: Any) -> Optional[date]:
    """Parse a date from a date, datetime or string in one of DATE_FORMATS.

    Returns None when the value is missing or cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    logger.warning(f"Unparseable date '{value}', treating as missing")
    return None


def to_number(value: Any) -> float:
    """Coerce a raw numeric field to a finite float.

    None, blanks and unparseable values become 0.0, as do NaN and infinities.
    Thousands separators in strings are ignored.
    """
    if value is None:
        return 0.0
    if isinstance(value, str):
        value = value.replace(",", "").strip()
        if not value:
            return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Unparseable number '{value}', using 0")
        return 0.0
    if not math.isfinite(number):
        logger.warning(f"Non-finite number {value}, using 0")
        return 0.0
    return number


class CamelModel(BaseModel):
    """Base model serializing field names in camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TradeDirection(str, Enum):
    """Transaction directions."""
    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"

    @classmethod
    def parse(cls, value: Any) -> "TradeDirection":
        """Parse a direction from brokerage spellings (B, BUY, S, SELL, DIV...)."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        if text in ("B", "BUY"):
            return cls.BUY
        if text in ("S", "SELL"):
            return cls.SELL
        if "DIV" in text:
            return cls.DIVIDEND
        raise ValueError(f"Invalid direction '{value}'. Valid directions: BUY, SELL, DIVIDEND")


class Holding(CamelModel):
    """A currently open position."""
    security_id: str = ""
    display_name: str = ""
    sector: str = UNKNOWN_SECTOR
    open_quantity: float = 0.0
    avg_cost: float = 0.0
    invested_amount: float = 0.0
    market_price: float = 0.0
    market_value: float = 0.0
    unrealized_pl_amount: float = Field(0.0, alias="unrealizedPLAmount")
    unrealized_pl_percent: float = Field(0.0, alias="unrealizedPLPercent")
    xirr: float = 0.0
    cagr: float = 0.0
    holding_period_years: int = 0
    holding_period_months: int = 0

    @field_validator("security_id", mode="before")
    @classmethod
    def normalize_security_id(cls, v: Any) -> str:
        return normalize(v)

    @field_validator("display_name", mode="before")
    @classmethod
    def strip_name(cls, v: Any) -> str:
        return str(v).strip() if v is not None else ""

    @field_validator("sector", mode="before")
    @classmethod
    def default_sector(cls, v: Any) -> str:
        text = str(v).strip() if v is not None else ""
        return text or UNKNOWN_SECTOR

    @field_validator(
        "open_quantity", "avg_cost", "invested_amount", "market_price",
        "market_value", "unrealized_pl_amount", "unrealized_pl_percent",
        "xirr", "cagr",
        mode="before",
    )
    @classmethod
    def coerce_number(cls, v: Any) -> float:
        return to_number(v)

    @property
    def identity_key(self) -> str:
        return identity_key(self.security_id, self.display_name)

    def update_with_price(self, price: float) -> None:
        """Revalue the holding at a new market price."""
        self.market_price = price
        self.market_value = self.open_quantity * price
        self.unrealized_pl_amount = self.market_value - self.invested_amount
        if self.invested_amount > 0:
            self.unrealized_pl_percent = (self.unrealized_pl_amount / self.invested_amount) * 100
        else:
            self.unrealized_pl_percent = 0.0

    def reset_returns(self) -> None:
        """Attach neutral derived return fields."""
        self.xirr = 0.0
        self.cagr = 0.0
        self.holding_period_years = 0
        self.holding_period_months = 0


class Transaction(CamelModel):
    """A single ledger entry: buy, sell or dividend."""
    security_id: str = ""
    display_name: str = ""
    sector: str = UNKNOWN_SECTOR
    direction: TradeDirection
    trade_date: Optional[date] = Field(None, alias="date")
    quantity: float = 0.0
    price: float = 0.0
    charges: float = 0.0
    value: Optional[float] = None  # explicit adjusted trade value from the broker

    @field_validator("security_id", mode="before")
    @classmethod
    def normalize_security_id(cls, v: Any) -> str:
        return normalize(v)

    @field_validator("display_name", mode="before")
    @classmethod
    def strip_name(cls, v: Any) -> str:
        return str(v).strip() if v is not None else ""

    @field_validator("sector", mode="before")
    @classmethod
    def default_sector(cls, v: Any) -> str:
        text = str(v).strip() if v is not None else ""
        return text or UNKNOWN_SECTOR

    @field_validator("direction", mode="before")
    @classmethod
    def parse_direction(cls, v: Any) -> TradeDirection:
        return TradeDirection.parse(v)

    @field_validator("trade_date", mode="before")
    @classmethod
    def parse_trade_date(cls, v: Any) -> Optional[date]:
        return parse_date(v)

    @field_validator("quantity", "price", "charges", mode="before")
    @classmethod
    def coerce_number(cls, v: Any) -> float:
        return to_number(v)

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> Optional[float]:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return to_number(v)

    @property
    def identity_key(self) -> str:
        return identity_key(self.security_id, self.display_name)

    @property
    def trade_value(self) -> float:
        """Adjusted trade value: explicit value if given, else price x qty +/- charges."""
        if self.value:
            return self.value
        gross = self.price * self.quantity
        if self.direction == TradeDirection.BUY:
            return gross + self.charges
        if self.direction == TradeDirection.SELL:
            return gross - self.charges
        return gross


class RealizedLot(CamelModel):
    """A closed (fully or partially) buy/sell match from the realized P&L ledger."""
    security_id: str = ""
    display_name: str = ""
    sector: str = UNKNOWN_SECTOR
    closed_quantity: float = 0.0
    buy_value: float = 0.0
    sell_value: float = 0.0
    buy_price: float = 0.0
    sell_price: float = 0.0
    buy_date: Optional[date] = None
    sell_date: Optional[date] = None
    realized_pl_amount: float = Field(0.0, alias="realizedPLAmount")

    @field_validator("security_id", mode="before")
    @classmethod
    def normalize_security_id(cls, v: Any) -> str:
        return normalize(v)

    @field_validator("display_name", mode="before")
    @classmethod
    def strip_name(cls, v: Any) -> str:
        return str(v).strip() if v is not None else ""

    @field_validator("sector", mode="before")
    @classmethod
    def default_sector(cls, v: Any) -> str:
        text = str(v).strip() if v is not None else ""
        return text or UNKNOWN_SECTOR

    @field_validator("buy_date", "sell_date", mode="before")
    @classmethod
    def parse_lot_date(cls, v: Any) -> Optional[date]:
        return parse_date(v)

    @field_validator(
        "closed_quantity", "buy_value", "sell_value", "buy_price",
        "sell_price", "realized_pl_amount",
        mode="before",
    )
    @classmethod
    def coerce_number(cls, v: Any) -> float:
        return to_number(v)

    @property
    def identity_key(self) -> str:
        return identity_key(self.security_id, self.display_name)


class PricePoint(CamelModel):
    """One daily close of a security."""
    price_date: date = Field(alias="date")
    close: float

    @field_validator("price_date", mode="before")
    @classmethod
    def parse_price_date(cls, v: Any) -> date:
        parsed = parse_date(v)
        if parsed is None:
            raise ValueError(f"Invalid price date: {v}")
        return parsed

    @field_validator("close", mode="before")
    @classmethod
    def coerce_close(cls, v: Any) -> float:
        return to_number(v)


class HoldingPeriod(CamelModel):
    years: int = 0
    months: int = 0
    days: int = 0


class RealizedStockSummary(CamelModel):
    """Aggregate of all realized lots of one fully exited security."""
    stock_name: str
    sector_name: str = UNKNOWN_SECTOR
    security_id: str = ""
    qty_sold: float = 0.0
    avg_cost: float = 0.0
    avg_sold_price: float = 0.0
    total_invested: float = 0.0
    last_sold_date: Optional[date] = None
    current_price: float = 0.0
    current_value: float = 0.0
    realized_pl: float = Field(0.0, alias="realizedPL")
    unrealized_pl: float = Field(0.0, alias="unrealizedPL")
    total_pl: float = Field(0.0, alias="totalPL")
    total_pl_percent: float = Field(0.0, alias="totalPLPercent")
    xirr: float = 0.0
    cagr: float = 0.0
    holding_period: HoldingPeriod = Field(default_factory=HoldingPeriod)

    @property
    def identity_key(self) -> str:
        return identity_key(self.security_id, self.stock_name)
