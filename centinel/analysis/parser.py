"""
Raw exchange frame -> Tick.

Extraction is lenient and isolated per field: a field that cannot be coerced
is logged and left empty, the rest of the tick survives. Numbers are decoded
straight into Decimal so wire prices never pass through a float.
"""
import json
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from centinel.core.logger import logger
from centinel.core.models import DECIMAL_FIELDS, MarketDataEvent, Tick, utcnow

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_INTEGER = re.compile(r"[+-]?\d+")
_DECIMAL = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")
_FRACTION = re.compile(r"\.(\d+)")


def get_string(data: Dict[str, Any], field: str) -> Optional[str]:
    value = data.get(field)
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, Decimal)):
        return str(value)
    logger.warning(f"Could not read text from field {field}: {value!r}")
    return None


def get_integer(data: Dict[str, Any], field: str) -> Optional[int]:
    value = data.get(field)
    if value is None:
        return None
    if isinstance(value, bool):
        result = None
    elif isinstance(value, int):
        result = value
    elif isinstance(value, str) and _INTEGER.fullmatch(value.strip()):
        result = int(value.strip())
    else:
        result = None

    if result is None:
        logger.warning(f"Could not parse integer from field {field}: {value!r}")
        return None
    if not INT64_MIN <= result <= INT64_MAX:
        logger.warning(f"Integer field {field} out of 64-bit range: {result}")
        return None
    return result


def get_decimal(data: Dict[str, Any], field: str) -> Optional[Decimal]:
    value = data.get(field)
    if value is None:
        return None
    if isinstance(value, Decimal) and value.is_finite():
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return Decimal(value)
    if isinstance(value, str) and _DECIMAL.fullmatch(value.strip()):
        return Decimal(value.strip())
    logger.warning(f"Could not parse decimal from field {field}: {value!r}")
    return None


def get_uuid(data: Dict[str, Any], field: str) -> Optional[uuid.UUID]:
    value = get_string(data, field)
    if value is None:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        logger.warning(f"Could not parse UUID from field {field}: {value!r}")
        return None


def parse_instant(text: str) -> Optional[datetime]:
    """ISO-8601 instant with Z or an explicit offset. Naive times are rejected."""
    text = text.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    # fromisoformat wants exactly 6 fractional digits on older interpreters
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


class TickParser:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def parse(self, event: MarketDataEvent) -> Optional[Tick]:
        message = event.message
        if message is None or not message.strip():
            logger.error("Market data event message is null or empty", extra={"source": event.source})
            return None
        if not event.source:
            logger.error("Market data event has no source, dropping it")
            return None

        try:
            data = json.loads(message, parse_float=Decimal)
        except ValueError:
            logger.error(f"Failed to parse JSON message: {message}", extra={"source": event.source})
            return None
        if not isinstance(data, dict):
            logger.error(f"Expected a JSON object, got: {message}", extra={"source": event.source})
            return None

        product_id = get_string(data, "product_id")
        if product_id is None or not product_id.strip():
            # subscriptions, heartbeat, error frames
            logger.warning(f"Skipping {data.get('type')!r} message without product_id", extra={"source": event.source})
            return None

        now = self.clock()
        fields = {name: get_decimal(data, name) for name in DECIMAL_FIELDS}

        time_str = get_string(data, "time")
        tick_time = None
        if time_str is not None:
            tick_time = parse_instant(time_str)
            if tick_time is None:
                logger.warning(f"Could not parse time from data: {time_str}, using current time")

        tick = Tick(
            tick_id=get_uuid(data, "tick_id"),
            type=get_string(data, "type"),
            sequence=get_integer(data, "sequence"),
            product_id=product_id,
            side=get_string(data, "side"),
            trade_id=get_integer(data, "trade_id"),
            source=event.source,
            time=tick_time or now,
            created_at=now,
            **fields,
        )
        logger.debug(f"Parsed market data for product: {tick.product_id}")
        return tick
