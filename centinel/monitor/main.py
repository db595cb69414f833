import asyncio
from contextlib import asynccontextmanager
import psutil
import uvicorn
from fastapi import FastAPI
from centinel.bus.producer import MarketDataProducer
from centinel.config import Settings, load_settings
from centinel.core.logger import logger, setup_logger
from centinel.core.retry import start_with_retry
from centinel.monitor.streaming import StreamingService, build_connectors


def create_app(settings: Settings, producer=None, streaming=None) -> FastAPI:
    producer = producer or MarketDataProducer.from_settings(settings)
    streaming = streaming or StreamingService(build_connectors(settings, producer), settings.MARKET_DATA_SYMBOLS)

    async def bootstrap():
        # An unreachable broker is transient: keep retrying, streaming waits for the producer
        await start_with_retry(
            producer.start, "Bus producer",
            min_delay=settings.BUS_START_RETRY_DELAY, max_delay=settings.BUS_START_RETRY_MAX_DELAY,
        )
        streaming.schedule_start()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Centinel Monitor Initialized", extra={"version": settings.APP_VERSION})
        startup = asyncio.create_task(bootstrap())

        yield

        # Shutdown
        logger.info("Shutdown Initiated...")
        startup.cancel()
        await asyncio.gather(startup, return_exceptions=True)
        await streaming.stop_streaming()
        await producer.stop()
        logger.info("Centinel Monitor Shutdown Complete")

    app = FastAPI(title=f"{settings.APP_NAME} Monitor", version=settings.APP_VERSION, lifespan=lifespan)
    app.state.streaming = streaming
    app.state.producer = producer

    @app.get("/health")
    async def health():
        exchanges = streaming.status()
        healthy = producer.running and bool(exchanges) and all(e["connected"] for e in exchanges.values())
        return {
            "status": "UP" if healthy else "DEGRADED",
            "version": settings.APP_VERSION,
            "exchanges": exchanges,
            "producer": {"running": producer.running, "sent": producer.sent, "failed": producer.failed},
            "memory_percent": psutil.virtual_memory().percent,
        }

    return app


def main():
    settings = load_settings()
    setup_logger("centinel", settings.LOG_LEVEL)
    logger.info(f"Starting {settings.APP_NAME} Monitor v{settings.APP_VERSION}")
    app = create_app(settings)
    uvicorn.run(app, host=settings.HTTP_HOST, port=settings.MONITOR_HTTP_PORT, log_config=None)

if __name__ == "__main__":
    main()
