import aiosqlite
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from centinel.core.logger import logger
from centinel.core.models import DECIMAL_FIELDS, Tick, TradeSignal, utcnow

TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
BUCKET_FORMAT = "%Y-%m-%dT%H:%M"

# Decimal columns are NUMERIC(20, 8) in intent. SQLite would coerce NUMERIC
# affinity to REAL, so they are kept as canonical decimal text.
_DECIMAL_COLUMNS = ",\n".join(f"    {name} TEXT" for name in DECIMAL_FIELDS)

MARKET_DATA_DDL = f"""
CREATE TABLE IF NOT EXISTS market_data (
    id TEXT PRIMARY KEY,
    tick_id TEXT,
    trade_id INTEGER,
    sequence INTEGER,
    type TEXT,
    side TEXT,
    source TEXT NOT NULL,
    product_id TEXT NOT NULL,
{_DECIMAL_COLUMNS},
    time TEXT NOT NULL,
    created_at TEXT NOT NULL
)
"""

TRADE_SIGNALS_DDL = """
CREATE TABLE IF NOT EXISTS trade_signals (
    id TEXT PRIMARY KEY,
    product_id TEXT NOT NULL,
    signal_type TEXT NOT NULL CHECK (signal_type IN ('BUY', 'SELL', 'HOLD')),
    strategy TEXT,
    current_price TEXT,
    target_price TEXT,
    stop_loss TEXT,
    take_profit TEXT,
    confidence REAL CHECK (confidence IS NULL OR (confidence >= 0 AND confidence <= 1)),
    reasoning TEXT,
    timestamp TEXT NOT NULL,
    source TEXT,
    rsi_value REAL,
    macd_value REAL,
    macd_signal REAL,
    macd_histogram REAL,
    bollinger_upper REAL,
    bollinger_middle REAL,
    bollinger_lower REAL,
    sma_20 REAL,
    sma_50 REAL,
    ema_12 REAL,
    ema_26 REAL
)
"""

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_market_data_product_time ON market_data (product_id, time DESC)",
    "CREATE INDEX IF NOT EXISTS idx_market_data_source_time ON market_data (source, time DESC)",
    "CREATE INDEX IF NOT EXISTS idx_market_data_time ON market_data (time DESC)",
    "CREATE INDEX IF NOT EXISTS idx_trade_signals_product_id ON trade_signals (product_id)",
    "CREATE INDEX IF NOT EXISTS idx_trade_signals_signal_type ON trade_signals (signal_type)",
    "CREATE INDEX IF NOT EXISTS idx_trade_signals_timestamp ON trade_signals (timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_trade_signals_confidence ON trade_signals (confidence DESC)",
]

TICK_COLUMNS = (
    "id", "tick_id", "trade_id", "sequence", "type", "side", "source", "product_id",
    *DECIMAL_FIELDS, "time", "created_at",
)

SIGNAL_COLUMNS = (
    "id", "product_id", "signal_type", "strategy", "current_price", "target_price",
    "stop_loss", "take_profit", "confidence", "reasoning", "timestamp", "source",
    "rsi_value", "macd_value", "macd_signal", "macd_histogram", "bollinger_upper",
    "bollinger_middle", "bollinger_lower", "sma_20", "sma_50", "ema_12", "ema_26",
)


def format_instant(value: datetime) -> str:
    """Fixed-width UTC text, so lexical order is time order"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIME_FORMAT)


def parse_stored_instant(value: str) -> datetime:
    return datetime.strptime(value, TIME_FORMAT).replace(tzinfo=timezone.utc)


def _text(value) -> Optional[str]:
    return None if value is None else str(value)


class MarketDataPersistence:
    """Append-only store for ticks. One insert, one transaction."""

    def __init__(self, db_path: str = "data/market_data.db", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        # Ensure directory exists
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _connect(self):
        return aiosqlite.connect(self.db_path, timeout=self.timeout)

    async def init_db(self):
        """Initialize DB Schema and WAL mode"""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(MARKET_DATA_DDL)
            await db.execute(TRADE_SIGNALS_DDL)
            for statement in INDEXES:
                await db.execute(statement)
            await db.commit()
        logger.info(f"DB Initialized at {self.db_path} (WAL Mode)")

    # --- Write side ---

    async def persist(self, tick: Tick) -> bool:
        """Insert one tick. Never raises: failures are logged and reported as False."""
        try:
            created_at = tick.created_at or utcnow()
            row = {
                "id": str(tick.id),
                "tick_id": _text(tick.tick_id),
                "trade_id": tick.trade_id,
                "sequence": tick.sequence,
                "type": tick.type,
                "side": tick.side,
                "source": tick.source,
                "product_id": tick.product_id,
                "time": format_instant(tick.time),
                "created_at": format_instant(created_at),
            }
            for name in DECIMAL_FIELDS:
                row[name] = _text(getattr(tick, name))

            placeholders = ", ".join("?" for _ in TICK_COLUMNS)
            async with self._connect() as db:
                await db.execute(
                    f"INSERT INTO market_data ({', '.join(TICK_COLUMNS)}) VALUES ({placeholders})",
                    tuple(row[c] for c in TICK_COLUMNS),
                )
                await db.commit()

            logger.debug(f"Persisted market data with ID: {tick.id}")
            return True

        except Exception as e:
            logger.error(
                f"Error persisting market data: {e}",
                extra={"product_id": tick.product_id, "source": tick.source},
                exc_info=True,
            )
            return False

    async def save_signal(self, signal: TradeSignal):
        data = signal.model_dump()
        data["id"] = str(signal.id)
        data["signal_type"] = signal.signal_type.value
        data["timestamp"] = format_instant(signal.timestamp)
        for name in ("current_price", "target_price", "stop_loss", "take_profit"):
            data[name] = _text(data[name])

        placeholders = ", ".join("?" for _ in SIGNAL_COLUMNS)
        async with self._connect() as db:
            await db.execute(
                f"INSERT INTO trade_signals ({', '.join(SIGNAL_COLUMNS)}) VALUES ({placeholders})",
                tuple(data[c] for c in SIGNAL_COLUMNS),
            )
            await db.commit()

    # --- Read side (downstream queries) ---

    async def _select_ticks(self, where: str, params: tuple, limit: Optional[int] = None) -> List[Tick]:
        sql = f"SELECT * FROM market_data WHERE {where} ORDER BY time DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (limit,)
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_tick(dict(row)) for row in rows]

    @staticmethod
    def _row_to_tick(row: Dict[str, Any]) -> Tick:
        for name in DECIMAL_FIELDS:
            if row[name] is not None:
                row[name] = Decimal(row[name])
        row["id"] = uuid.UUID(row["id"])
        if row["tick_id"]:
            row["tick_id"] = uuid.UUID(row["tick_id"])
        row["time"] = parse_stored_instant(row["time"])
        row["created_at"] = parse_stored_instant(row["created_at"])
        return Tick(**row)

    async def find_by_product(self, product_id: str) -> List[Tick]:
        return await self._select_ticks("product_id = ?", (product_id,))

    async def find_between(self, product_id: str, start: datetime, end: datetime) -> List[Tick]:
        return await self._select_ticks(
            "product_id = ? AND time BETWEEN ? AND ?",
            (product_id, format_instant(start), format_instant(end)),
        )

    async def find_recent(self, product_id: str, since: datetime, limit: Optional[int] = None) -> List[Tick]:
        return await self._select_ticks("product_id = ? AND time >= ?", (product_id, format_instant(since)), limit)

    async def find_latest(self, product_id: str) -> Optional[Tick]:
        ticks = await self._select_ticks("product_id = ?", (product_id,), limit=1)
        return ticks[0] if ticks else None

    async def count(self) -> int:
        async with self._connect() as db:
            async with db.execute("SELECT COUNT(*) FROM market_data") as cursor:
                row = await cursor.fetchone()
                return row[0]

    async def time_series(self, product_id: str, since: datetime) -> List[Dict[str, Any]]:
        """1-minute buckets, newest first"""
        sql = """
            SELECT substr(time, 1, 16) AS bucket,
                   AVG(CAST(price AS REAL)) AS avg_price,
                   MAX(CAST(price AS REAL)) AS max_price,
                   MIN(CAST(price AS REAL)) AS min_price,
                   SUM(CAST(volume_24h AS REAL)) AS total_volume
            FROM market_data
            WHERE product_id = ? AND time >= ? AND price IS NOT NULL
            GROUP BY bucket
            ORDER BY bucket DESC
        """
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, (product_id, format_instant(since))) as cursor:
                rows = await cursor.fetchall()
        result = []
        for row in rows:
            item = dict(row)
            item["bucket"] = datetime.strptime(item["bucket"], BUCKET_FORMAT).replace(tzinfo=timezone.utc)
            result.append(item)
        return result
