import math
import threading
import pandas as pd
import numpy as np
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple
from centinel.core.models import OHLCV, TechnicalIndicators

DEFAULT_TIMEFRAMES = (1, 5, 15)


class CandleBuffer:
    def __init__(self, max_size=200):
        self.max_size = max_size
        # Initialize empty DataFrame with float columns provided to avoid dtype issues later
        self.df = pd.DataFrame(columns=["open", "high", "low", "close", "volume"], dtype=float)
        self.df.index.name = "time"

    def __len__(self):
        return len(self.df)

    def add_candle(self, candle: OHLCV):
        new_row = self._row(candle)
        if self.df.empty:
            self.df = new_row
        else:
            self.df = pd.concat([self.df, new_row])
            self.df = self.df[~self.df.index.duplicated(keep='last')]

        # Trim
        if len(self.df) > self.max_size:
            self.df = self.df.iloc[-self.max_size:]

    def with_live(self, candle: Optional[OHLCV]) -> pd.DataFrame:
        """Closed candles plus the still-open one, without storing it"""
        if candle is None:
            return self.df
        if self.df.empty:
            return self._row(candle)
        return pd.concat([self.df, self._row(candle)])

    @staticmethod
    def _row(candle: OHLCV) -> pd.DataFrame:
        return pd.DataFrame({
            "open": [float(candle.open)],
            "high": [float(candle.high)],
            "low": [float(candle.low)],
            "close": [float(candle.close)],
            "volume": [float(candle.volume)]
        }, index=[candle.time])


# --- Indicators ---

def sma(close: pd.Series, period=20) -> pd.Series:
    return close.rolling(window=period).mean()

def ema(close: pd.Series, period=20) -> pd.Series:
    return close.ewm(span=period, adjust=False).mean()

def rsi(close: pd.Series, period=14) -> pd.Series:
    """Relative Strength Index (Wilder's Method)"""
    delta = close.diff()

    up = delta.clip(lower=0)
    down = (-delta).clip(lower=0)

    # Wilder's Smoothing: alpha = 1/period
    roll_up = up.ewm(alpha=1/period, adjust=False).mean()
    roll_down = down.ewm(alpha=1/period, adjust=False).mean()

    rs = roll_up / roll_down
    return 100.0 - (100.0 / (1.0 + rs))

def macd(close: pd.Series, fast=12, slow=26, signal=9) -> Tuple[pd.Series, pd.Series, pd.Series]:
    line = ema(close, fast) - ema(close, slow)
    signal_line = line.ewm(span=signal, adjust=False).mean()
    return line, signal_line, line - signal_line

def bollinger(close: pd.Series, period=20, width=2.0) -> Tuple[pd.Series, pd.Series, pd.Series]:
    middle = sma(close, period)
    std = close.rolling(window=period).std()
    return middle + width * std, middle, middle - width * std

def atr(df: pd.DataFrame, period=14) -> pd.Series:
    prev_close = df["close"].shift(1)
    true_range = pd.concat([
        df["high"] - df["low"],
        (df["high"] - prev_close).abs(),
        (df["low"] - prev_close).abs(),
    ], axis=1).max(axis=1)
    return true_range.ewm(alpha=1/period, adjust=False).mean()


def _last(series: pd.Series, min_periods: int = 1) -> Optional[float]:
    if len(series.dropna()) < min_periods:
        return None
    value = series.iloc[-1]
    if value is None or (isinstance(value, float) and (math.isnan(value) or math.isinf(value))):
        return None
    return float(value)


def compute_indicators(df: pd.DataFrame) -> TechnicalIndicators:
    """Indicator snapshot for the newest row of an OHLCV frame. Too little history -> None fields."""
    if df.empty:
        return TechnicalIndicators()

    close = df["close"].astype(float)
    volume = df["volume"].astype(float)
    macd_line, macd_signal, macd_hist = macd(close)
    upper, middle, lower = bollinger(close)
    sma_20 = sma(close, 20)
    sma_50 = sma(close, 50)
    returns = close.pct_change(fill_method=None).replace([np.inf, -np.inf], np.nan)

    sma_20_last = _last(sma_20)
    sma_50_last = _last(sma_50)
    trend = None
    if sma_20_last is not None and sma_50_last:
        trend = (sma_20_last - sma_50_last) / sma_50_last

    return TechnicalIndicators(
        rsi=_last(rsi(close), min_periods=15),
        macd=_last(macd_line, min_periods=26),
        macd_signal=_last(macd_signal, min_periods=26),
        macd_histogram=_last(macd_hist, min_periods=26),
        bollinger_upper=_last(upper),
        bollinger_middle=_last(middle),
        bollinger_lower=_last(lower),
        sma_20=sma_20_last,
        sma_50=sma_50_last,
        ema_12=_last(ema(close, 12), min_periods=12),
        ema_26=_last(ema(close, 26), min_periods=26),
        atr=_last(atr(df), min_periods=15),
        volume_sma=_last(sma(volume, 20)),
        price_change=_last(returns),
        volume_change=_last(volume.pct_change(fill_method=None).replace([np.inf, -np.inf], np.nan)),
        trend_strength=trend,
        volatility=_last(returns.rolling(window=20).std()),
        momentum=_last(close - close.shift(10)),
    )


class TickAggregator:
    def __init__(self, interval_minutes=1):
        self.interval = interval_minutes
        self.current_candle: Optional[OHLCV] = None
        self.last_bucket: Optional[datetime] = None

    def bucket_of(self, t: datetime) -> datetime:
        minute = t.minute - t.minute % self.interval
        return t.replace(minute=minute, second=0, microsecond=0)

    def on_price(self, symbol: str, price: float, volume: float, t: datetime) -> Optional[OHLCV]:
        """
        Accepts a price. Returns a COMPLETED candle if the bucket has rolled over.
        Returns None otherwise. Prices older than the open bucket are ignored.
        """
        bucket = self.bucket_of(t)
        closed_candle = None

        if self.current_candle is None:
            self.current_candle = self._new_candle(symbol, price, volume, bucket)
            self.last_bucket = bucket
        elif bucket > self.last_bucket:
            closed_candle = self.current_candle
            self.current_candle = self._new_candle(symbol, price, volume, bucket)
            self.last_bucket = bucket
        elif bucket == self.last_bucket:
            c = self.current_candle
            c.high = max(c.high, price)
            c.low = min(c.low, price)
            c.close = price
            # 24h volume is a running figure, keep the latest reading
            c.volume = volume

        return closed_candle

    def _new_candle(self, symbol, price, volume, bucket):
        return OHLCV(
            symbol=symbol,
            time=bucket,
            open=price,
            high=price,
            low=price,
            close=price,
            volume=volume,
            interval=self.interval
        )


class MultiTimeframeWindows:
    """Per-product candle windows for several timeframes. Safe to call from worker threads."""

    def __init__(self, timeframes: Iterable[int] = DEFAULT_TIMEFRAMES, max_candles: int = 200):
        self.timeframes = tuple(timeframes)
        self.max_candles = max_candles
        self._windows: Dict[Tuple[str, int], Tuple[TickAggregator, CandleBuffer]] = {}
        self._lock = threading.Lock()

    def add_price(self, product_id: str, price: float, volume: float, t: datetime) -> Dict[int, TechnicalIndicators]:
        snapshot = {}
        with self._lock:
            for interval in self.timeframes:
                key = (product_id, interval)
                if key not in self._windows:
                    self._windows[key] = (TickAggregator(interval), CandleBuffer(self.max_candles))
                aggregator, buffer = self._windows[key]

                closed = aggregator.on_price(product_id, price, volume, t)
                if closed is not None:
                    buffer.add_candle(closed)
                snapshot[interval] = compute_indicators(buffer.with_live(aggregator.current_candle))
        return snapshot

    def candles(self, product_id: str, interval: int) -> pd.DataFrame:
        with self._lock:
            window = self._windows.get((product_id, interval))
            if window is None:
                return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
            aggregator, buffer = window
            return buffer.with_live(aggregator.current_candle).copy()
