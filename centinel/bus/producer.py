import asyncio
import json
from typing import Optional
from aiokafka import AIOKafkaProducer
from centinel.core.errors import BusError
from centinel.core.logger import logger
from centinel.core.models import MarketDataEvent


def serialize_event(event: MarketDataEvent) -> bytes:
    return json.dumps({"message": event.message, "source": event.source}).encode("utf-8")


class MarketDataProducer:
    """
    Publishes raw exchange frames to the market data topic.
    Fire-and-forget: send() returns once the record is buffered, delivery
    failures are reported from the delivery callback. Records carry no key.
    """

    def __init__(self, bootstrap_servers: str, topic: str, acks: int = 1, linger_ms: int = 5,
                 max_batch_size: int = 16384, request_timeout_ms: int = 30000,
                 client: Optional[AIOKafkaProducer] = None):
        self.topic = topic
        self._config = dict(
            bootstrap_servers=bootstrap_servers,
            acks=acks,
            linger_ms=linger_ms,
            max_batch_size=max_batch_size,
            request_timeout_ms=request_timeout_ms,
        )
        self._client = client
        self.running = False
        self.sent = 0
        self.failed = 0

    @classmethod
    def from_settings(cls, settings) -> "MarketDataProducer":
        return cls(
            settings.BUS_BOOTSTRAP_SERVERS,
            settings.BUS_TOPIC_MARKET_DATA,
            acks=settings.BUS_PRODUCER_ACKS,
            linger_ms=settings.BUS_PRODUCER_LINGER_MS,
            max_batch_size=settings.BUS_PRODUCER_MAX_BATCH_SIZE,
            request_timeout_ms=settings.BUS_PRODUCER_REQUEST_TIMEOUT_MS,
        )

    async def start(self):
        if self.running:
            return
        owned = self._client is None
        if owned:
            # aiokafka clients bind to the running loop, so build them here
            self._client = AIOKafkaProducer(value_serializer=serialize_event, **self._config)
        try:
            await self._client.start()
        except BaseException:
            await self._release_client(owned)
            raise
        self.running = True
        logger.info(f"Bus producer started for topic {self.topic}")

    async def _release_client(self, owned: bool):
        """Close a client whose start() failed; a fresh one is built on the next attempt"""
        try:
            await self._client.stop()
        except Exception as e:
            logger.error(f"Error closing bus producer after failed start: {e}")
        if owned:
            self._client = None

    async def stop(self):
        if not self.running:
            return
        self.running = False
        # stop() flushes buffered records before closing
        await self._client.stop()
        logger.info(f"Bus producer stopped ({self.sent} sent, {self.failed} failed)")

    async def send(self, event: MarketDataEvent) -> asyncio.Future:
        if not self.running:
            raise BusError("producer is not started")
        delivery = await self._client.send(self.topic, value=event)
        delivery.add_done_callback(self._on_delivery)
        return delivery

    def _on_delivery(self, delivery: asyncio.Future):
        if delivery.cancelled():
            self.failed += 1
            logger.error(f"Delivery to {self.topic} cancelled")
            return
        error = delivery.exception()
        if error is not None:
            self.failed += 1
            logger.error(f"Failed to deliver event to {self.topic}: {error}")
        else:
            self.sent += 1
