import asyncio
from contextlib import asynccontextmanager
import psutil
import uvicorn
from fastapi import FastAPI
from centinel.analysis.analysis import MarketDataAnalysisService
from centinel.analysis.batch import MarketDataBatchHandler
from centinel.analysis.dispatcher import AnalysisDispatcher
from centinel.analysis.parser import TickParser
from centinel.analysis.persistence import MarketDataPersistence
from centinel.bus.consumer import MarketDataConsumer
from centinel.config import Settings, load_settings
from centinel.core.logger import logger, setup_logger
from centinel.core.retry import start_with_retry
from centinel.core.worker_pool import WorkerPool


def create_app(settings: Settings, persistence=None, pool=None, consumer=None) -> FastAPI:
    persistence = persistence or MarketDataPersistence(settings.DATABASE_PATH)
    pool = pool or WorkerPool(
        core_size=settings.WORKER_POOL_CORE_SIZE,
        max_size=settings.WORKER_POOL_MAX_SIZE,
        queue_capacity=settings.WORKER_POOL_QUEUE_CAPACITY,
        name="analysis",
    )
    if consumer is None:
        analysis_service = MarketDataAnalysisService(signal_store=persistence)
        dispatcher = AnalysisDispatcher(pool, analysis_service)
        handler = MarketDataBatchHandler(pool, TickParser(), persistence, dispatcher)
        consumer = MarketDataConsumer.from_settings(settings, handler)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(
            "Centinel Analysis Initialized",
            extra={"version": settings.APP_VERSION, "pool_core": pool.core_size, "pool_max": pool.max_size},
        )
        await persistence.init_db()
        # An unreachable broker is transient: keep retrying in the background
        startup = asyncio.create_task(start_with_retry(
            consumer.start, "Market data consumer",
            min_delay=settings.BUS_START_RETRY_DELAY, max_delay=settings.BUS_START_RETRY_MAX_DELAY,
        ))

        yield

        # Shutdown: let in-flight batches finish, then drain the pool
        logger.info("Shutdown Initiated...")
        startup.cancel()
        await asyncio.gather(startup, return_exceptions=True)
        await consumer.stop()
        await pool.shutdown(settings.WORKER_POOL_TERMINATION_GRACE_SECONDS)
        logger.info("Centinel Analysis Shutdown Complete")

    app = FastAPI(title=f"{settings.APP_NAME} Analysis", version=settings.APP_VERSION, lifespan=lifespan)
    app.state.persistence = persistence
    app.state.pool = pool
    app.state.consumer = consumer

    @app.get("/health")
    async def health():
        consumer_status = consumer.status()
        return {
            "status": "UP" if consumer_status.get("running") else "DOWN",
            "version": settings.APP_VERSION,
            "consumer": consumer_status,
            "pool": pool.stats(),
            "memory_percent": psutil.virtual_memory().percent,
        }

    return app


def main():
    settings = load_settings()
    setup_logger("centinel", settings.LOG_LEVEL)
    logger.info(f"Starting {settings.APP_NAME} Analysis v{settings.APP_VERSION}")
    app = create_app(settings)
    uvicorn.run(app, host=settings.HTTP_HOST, port=settings.ANALYSIS_HTTP_PORT, log_config=None)

if __name__ == "__main__":
    main()
