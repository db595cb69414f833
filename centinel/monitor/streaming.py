import asyncio
from typing import Dict, List
from centinel.connectors.coinbase_ws import CoinbaseWebsocketConnector
from centinel.connectors.exchange import ExchangeConnector
from centinel.core.logger import logger

# Connector variants by exchange name
CONNECTORS = {
    "coinbase": CoinbaseWebsocketConnector,
}


def build_connectors(settings, producer) -> Dict[str, ExchangeConnector]:
    connector_cls = CONNECTORS.get(settings.EXCHANGE_NAME.lower())
    if connector_cls is None:
        raise ValueError(f"Unsupported exchange: {settings.EXCHANGE_NAME}")
    return {settings.EXCHANGE_NAME: connector_cls.from_settings(settings, producer)}


class StreamingService:
    """Owns the exchange connectors for the lifetime of the monitor process"""

    def __init__(self, connectors: Dict[str, ExchangeConnector], symbols: List[str]):
        self.connectors = connectors
        self.symbols = list(symbols)
        self._start_task = None

    async def start_streaming(self) -> Dict[str, bool]:
        """Connect every exchange. Failures are logged, never raised."""
        logger.info(f"Starting market data streaming for symbols: {self.symbols}")
        results = {}
        for name, connector in self.connectors.items():
            try:
                await connector.connect(self.symbols)
                results[name] = True
                logger.info(f"Market data streaming started for {name}")
            except Exception as e:
                results[name] = False
                logger.error(f"Failed to start market data streaming for {name}: {e}", exc_info=True)
        return results

    def schedule_start(self) -> asyncio.Task:
        """Deferred start used on application ready; the host does not wait on it."""
        self._start_task = asyncio.create_task(self.start_streaming())
        return self._start_task

    async def stop_streaming(self):
        logger.info("Stopping market data streaming")
        if self._start_task and not self._start_task.done():
            await asyncio.gather(self._start_task, return_exceptions=True)
        for name, connector in self.connectors.items():
            try:
                await connector.disconnect()
            except Exception as e:
                logger.error(f"Failed to stop streaming for {name}: {e}", exc_info=True)

    def status(self) -> Dict[str, dict]:
        return {
            name: {
                "state": connector.state.value,
                "connected": connector.is_connected(),
                "symbols": list(getattr(connector, "subscribed_symbols", [])),
            }
            for name, connector in self.connectors.items()
        }
