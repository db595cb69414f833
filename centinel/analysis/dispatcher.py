import asyncio
from typing import Optional
from centinel.core.errors import PoolShutdownError
from centinel.core.logger import logger
from centinel.core.models import Tick
from centinel.core.worker_pool import WorkerPool


class AnalysisDispatcher:
    """Hands persisted ticks to the analysis service without waiting for it"""

    def __init__(self, pool: WorkerPool, analysis_service):
        self.pool = pool
        self.analysis_service = analysis_service
        self.dispatched = 0

    async def dispatch(self, tick: Tick) -> Optional[asyncio.Future]:
        # The returned future is never joined by the batch barrier
        try:
            future = await self.pool.submit(self._analyze, tick.model_copy(deep=True))
        except PoolShutdownError:
            logger.warning(f"Analysis pool is shut down, skipping analysis for {tick.product_id}")
            return None
        self.dispatched += 1
        return future

    async def _analyze(self, tick: Tick):
        try:
            await self.analysis_service.analyze(tick)
        except Exception as e:
            logger.error(f"Error in async analysis for {tick.product_id}: {e}", exc_info=True)
