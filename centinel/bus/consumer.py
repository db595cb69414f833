import asyncio
import json
from typing import Callable, Dict, List, Optional, Tuple
from aiokafka import AIOKafkaConsumer, TopicPartition
from pydantic import ValidationError
from centinel.core.logger import logger
from centinel.core.models import MarketDataEvent


def deserialize_event(raw: Optional[bytes]) -> MarketDataEvent:
    """Undecodable values become an empty envelope; the parser rejects those downstream."""
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("envelope is not a JSON object")
        return MarketDataEvent.model_validate(data)
    except (TypeError, ValueError, ValidationError) as e:
        logger.error(f"Could not deserialize market data event: {e}", extra={"raw": repr(raw)[:500]})
        return MarketDataEvent()


class KafkaBatchAcknowledgment:
    """Commits the offsets right after the last record of each partition in a batch"""

    def __init__(self, client: AIOKafkaConsumer, offsets: Dict[TopicPartition, int]):
        self.client = client
        self.offsets = offsets
        self.acknowledged = False

    async def acknowledge(self):
        if self.acknowledged:
            return
        await self.client.commit(self.offsets)
        self.acknowledged = True


class MarketDataConsumer:
    """
    Batch listener for the market data topic.

    Runs `concurrency` independent consumers in the same group, each owning its
    own partitions and handing one batch at a time to the handler. Offsets are
    only committed through the acknowledgment given to the handler. When the
    handler raises, every partition of the batch is rewound so the whole batch
    is fetched again; after `max_batch_attempts` failures it is skipped.
    """

    def __init__(self, handler, topic: str, bootstrap_servers: str, group_id: str,
                 concurrency: int = 3, max_poll_records: int = 100, fetch_min_bytes: int = 1024,
                 fetch_max_wait_ms: int = 500, max_batch_attempts: int = 10,
                 client_factory: Optional[Callable[[], AIOKafkaConsumer]] = None):
        self.handler = handler
        self.topic = topic
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.concurrency = concurrency
        self.max_poll_records = max_poll_records
        self.fetch_min_bytes = fetch_min_bytes
        self.fetch_max_wait_ms = fetch_max_wait_ms
        self.max_batch_attempts = max_batch_attempts
        self.client_factory = client_factory or self._create_client
        self.running = False
        self.batches = 0
        self.failed_batches = 0
        self._clients: List[AIOKafkaConsumer] = []
        self._tasks: List[asyncio.Task] = []
        self._attempts: Dict[Tuple, int] = {}

    @classmethod
    def from_settings(cls, settings, handler) -> "MarketDataConsumer":
        return cls(
            handler,
            settings.BUS_TOPIC_MARKET_DATA,
            settings.BUS_BOOTSTRAP_SERVERS,
            settings.BUS_CONSUMER_GROUP_ID,
            concurrency=settings.BUS_CONSUMER_LISTENER_THREADS,
            max_poll_records=settings.BUS_CONSUMER_MAX_POLL_RECORDS,
            fetch_min_bytes=settings.BUS_CONSUMER_FETCH_MIN_BYTES,
            fetch_max_wait_ms=settings.BUS_CONSUMER_FETCH_MAX_WAIT_MS,
            max_batch_attempts=settings.BUS_CONSUMER_MAX_BATCH_ATTEMPTS,
        )

    def _create_client(self) -> AIOKafkaConsumer:
        return AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_poll_records=self.max_poll_records,
            fetch_min_bytes=self.fetch_min_bytes,
            fetch_max_wait_ms=self.fetch_max_wait_ms,
            value_deserializer=deserialize_event,
        )

    async def start(self):
        """Start every listener or none: clients already started are closed if a later one fails"""
        if self.running:
            return
        clients = []
        try:
            for _ in range(self.concurrency):
                client = self.client_factory()
                clients.append(client)
                await client.start()
        except BaseException:
            await self._close_clients(clients)
            raise

        self._clients = clients
        self.running = True
        self._tasks = [
            asyncio.create_task(self._poll_loop(client), name=f"consumer-{index}")
            for index, client in enumerate(clients)
        ]
        logger.info(
            f"Consuming {self.topic} as {self.group_id}",
            extra={"listeners": self.concurrency, "max_poll_records": self.max_poll_records},
        )

    async def stop(self):
        """Stop polling. Batches already being handled run to completion."""
        if not self.running:
            return
        self.running = False
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._close_clients(self._clients)
        self._tasks = []
        self._clients = []
        logger.info("Market data consumer stopped", extra={"batches": self.batches, "failed_batches": self.failed_batches})

    @staticmethod
    async def _close_clients(clients: List[AIOKafkaConsumer]):
        for client in clients:
            try:
                await client.stop()
            except Exception as e:
                logger.error(f"Error closing consumer: {e}")

    async def _poll_loop(self, client: AIOKafkaConsumer):
        while self.running:
            try:
                batches = await client.getmany(timeout_ms=self.fetch_max_wait_ms, max_records=self.max_poll_records)
            except Exception as e:
                logger.error(f"Error polling {self.topic}: {e}", exc_info=True)
                await asyncio.sleep(1.0)
                continue
            if batches:
                await self.process_batch(client, batches)

    async def process_batch(self, client: AIOKafkaConsumer, batches: Dict[TopicPartition, list]):
        events = []
        first_offsets = {}
        next_offsets = {}
        for tp, records in batches.items():
            if not records:
                continue
            first_offsets[tp] = records[0].offset
            next_offsets[tp] = records[-1].offset + 1
            events.extend(record.value for record in records)
        if not events:
            return

        ack = KafkaBatchAcknowledgment(client, next_offsets)
        key = tuple(sorted((tp.topic, tp.partition, offset) for tp, offset in first_offsets.items()))
        try:
            await self.handler.handle_batch(events, ack)
            self.batches += 1
            self._attempts.pop(key, None)
        except Exception as e:
            self.failed_batches += 1
            attempts = self._attempts.get(key, 0) + 1
            if attempts >= self.max_batch_attempts:
                self._attempts.pop(key, None)
                logger.error(
                    f"Batch failed {attempts} times, skipping it: {e}",
                    extra={"offsets": {f"{tp.topic}-{tp.partition}": o for tp, o in first_offsets.items()}},
                )
                try:
                    await ack.acknowledge()
                except Exception as commit_error:
                    logger.error(f"Could not commit skipped batch: {commit_error}")
                return

            self._attempts[key] = attempts
            logger.error(f"Batch handler failed (attempt {attempts}), batch will be redelivered: {e}")
            for tp, offset in first_offsets.items():
                client.seek(tp, offset)

    def status(self) -> dict:
        return {
            "running": self.running,
            "listeners": len(self._tasks),
            "batches": self.batches,
            "failed_batches": self.failed_batches,
        }
