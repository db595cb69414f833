import asyncio
from typing import List
from centinel.analysis.dispatcher import AnalysisDispatcher
from centinel.analysis.parser import TickParser
from centinel.analysis.persistence import MarketDataPersistence
from centinel.core.logger import logger
from centinel.core.models import MarketDataEvent
from centinel.core.worker_pool import WorkerPool


class MarketDataBatchHandler:
    """
    parse -> persist -> dispatch for every event of a batch, in parallel.

    The batch is acknowledged once every event has attempted persistence.
    A persistence failure is only logged; an exception escaping an event
    task leaves the batch unacknowledged so the bus redelivers all of it.
    """

    def __init__(self, pool: WorkerPool, parser: TickParser, persistence: MarketDataPersistence,
                 dispatcher: AnalysisDispatcher):
        self.pool = pool
        self.parser = parser
        self.persistence = persistence
        self.dispatcher = dispatcher

    async def handle_batch(self, events: List[MarketDataEvent], acknowledgment) -> int:
        logger.info(f"Received {len(events)} market data events")

        futures = [await self.pool.submit(self._process_event, event) for event in events]
        results = await asyncio.gather(*futures, return_exceptions=True)

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.error(
                f"Error processing market data batch, not acknowledging: {errors[0]}",
                extra={"failed_events": len(errors), "batch_size": len(events)},
            )
            raise errors[0]

        successful = sum(1 for r in results if r is True)
        logger.info(f"Batch processing completed: {successful}/{len(events)} events processed successfully")

        await acknowledgment.acknowledge()
        logger.debug(f"Acknowledged batch of {len(events)} events")
        return successful

    async def _process_event(self, event: MarketDataEvent) -> bool:
        logger.debug(f"Processing event: source={event.source}")
        tick = self.parser.parse(event)
        if tick is None:
            return False

        persisted = await self.persistence.persist(tick)
        if persisted:
            await self.dispatcher.dispatch(tick)
        else:
            logger.warning(f"Skipping analysis due to persistence failure: source={event.source}")
        return persisted
