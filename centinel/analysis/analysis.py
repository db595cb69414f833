import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional
from centinel.core.indicators import MultiTimeframeWindows
from centinel.core.logger import logger
from centinel.core.models import TechnicalIndicators, Tick, TradeSignal


class SignalGenerator(ABC):
    @abstractmethod
    async def generate(self, tick: Tick, indicators: Dict[int, TechnicalIndicators]) -> Optional[TradeSignal]:
        """Indicators are keyed by timeframe in minutes"""


class NoSignalGenerator(SignalGenerator):
    """Placeholder until a strategy is plugged in"""

    async def generate(self, tick, indicators):
        return None


class MarketDataAnalysisService:
    def __init__(self, windows: Optional[MultiTimeframeWindows] = None,
                 signal_generator: Optional[SignalGenerator] = None, signal_store=None):
        self.windows = windows or MultiTimeframeWindows()
        self.signal_generator = signal_generator or NoSignalGenerator()
        self.signal_store = signal_store
        self.analyzed = 0

    async def analyze(self, tick: Tick) -> Optional[TradeSignal]:
        if tick.product_id is None or tick.price is None:
            logger.debug(f"Nothing to analyze for {tick.type} message from {tick.source}")
            return None

        # pandas work stays off the event loop
        indicators = await asyncio.to_thread(
            self.windows.add_price,
            tick.product_id,
            float(tick.price),
            float(tick.volume_24h or 0),
            tick.time,
        )
        self.analyzed += 1
        logger.debug(f"Added data to multi-timeframe windows for product: {tick.product_id}")

        signal = await self.signal_generator.generate(tick, indicators)
        if signal is None:
            logger.debug(f"No trade signal generated for product: {tick.product_id}")
            return None

        logger.info(
            f"Trade signal generated: {signal.signal_type.value} {signal.product_id}",
            extra={"confidence": signal.confidence, "strategy": signal.strategy},
        )
        if self.signal_store is not None:
            await self.signal_store.save_signal(signal)
        return signal
