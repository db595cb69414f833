import uuid
from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MarketDataEvent(BaseModel):
    """Bus envelope: the raw exchange frame plus the exchange it came from"""
    message: Optional[str] = None
    source: Optional[str] = None


class Tick(BaseModel):
    """One ticker update for one instrument from one exchange"""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    tick_id: Optional[uuid.UUID] = None
    trade_id: Optional[int] = None
    sequence: Optional[int] = None

    type: Optional[str] = None
    side: Optional[str] = None
    source: str
    product_id: Optional[str] = None

    price: Optional[Decimal] = None
    open_24h: Optional[Decimal] = None
    high_24h: Optional[Decimal] = None
    low_24h: Optional[Decimal] = None
    best_bid: Optional[Decimal] = None
    best_ask: Optional[Decimal] = None

    volume_24h: Optional[Decimal] = None
    volume_30d: Optional[Decimal] = None
    best_bid_size: Optional[Decimal] = None
    best_ask_size: Optional[Decimal] = None
    last_size: Optional[Decimal] = None

    time: datetime = Field(default_factory=utcnow)
    created_at: Optional[datetime] = None


# Decimal columns of the market_data table, in schema order
DECIMAL_FIELDS = (
    "price", "open_24h", "high_24h", "low_24h", "best_bid", "best_ask",
    "volume_24h", "volume_30d", "best_bid_size", "best_ask_size", "last_size",
)


class OHLCV(BaseModel):
    """Represents a standardized Candle"""
    symbol: str
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    interval: int # in minutes


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class TechnicalIndicators(BaseModel):
    rsi: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None
    bollinger_upper: Optional[float] = None
    bollinger_middle: Optional[float] = None
    bollinger_lower: Optional[float] = None
    sma_20: Optional[float] = None
    sma_50: Optional[float] = None
    ema_12: Optional[float] = None
    ema_26: Optional[float] = None
    atr: Optional[float] = None # Average True Range
    volume_sma: Optional[float] = None
    price_change: Optional[float] = None
    volume_change: Optional[float] = None

    # Signal strength
    trend_strength: Optional[float] = None
    volatility: Optional[float] = None
    momentum: Optional[float] = None


class TradeSignal(BaseModel):
    """Output of signal generation. Values of the indicators that triggered it are frozen in."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    product_id: str
    signal_type: SignalType
    strategy: Optional[str] = None # RSI, MACD, BOLLINGER_BANDS, ...
    current_price: Optional[Decimal] = None
    target_price: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    reasoning: Optional[str] = Field(default=None, max_length=1000)
    timestamp: datetime = Field(default_factory=utcnow)
    source: Optional[str] = None

    rsi_value: Optional[float] = None
    macd_value: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None
    bollinger_upper: Optional[float] = None
    bollinger_middle: Optional[float] = None
    bollinger_lower: Optional[float] = None
    sma_20: Optional[float] = None
    sma_50: Optional[float] = None
    ema_12: Optional[float] = None
    ema_26: Optional[float] = None
