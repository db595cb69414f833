import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from centinel.analysis.dispatcher import AnalysisDispatcher
from centinel.core.models import Tick
from centinel.core.worker_pool import WorkerPool


def make_service():
    service = MagicMock()
    service.analyze = AsyncMock()
    return service

@pytest.mark.asyncio
async def test_dispatch_hands_over_a_copy():
    pool = WorkerPool(core_size=1, max_size=1, queue_capacity=5)
    service = make_service()
    dispatcher = AnalysisDispatcher(pool, service)
    tick = Tick(product_id="BTC-USD", price=Decimal("1.0"), source="coinbase")

    future = await dispatcher.dispatch(tick)
    await future

    analyzed = service.analyze.await_args.args[0]
    assert analyzed == tick
    assert analyzed is not tick
    assert dispatcher.dispatched == 1

@pytest.mark.asyncio
async def test_analysis_errors_are_logged():
    pool = WorkerPool(core_size=1, max_size=1, queue_capacity=5)
    service = make_service()
    service.analyze.side_effect = ValueError("bad window")
    dispatcher = AnalysisDispatcher(pool, service)

    with patch("centinel.analysis.dispatcher.logger") as mock_logger:
        future = await dispatcher.dispatch(Tick(product_id="BTC-USD", source="coinbase"))
        assert await future is None
        mock_logger.error.assert_called_once()

@pytest.mark.asyncio
async def test_dispatch_after_shutdown_is_skipped():
    pool = WorkerPool(core_size=1, max_size=1, queue_capacity=5)
    await pool.shutdown(1)
    service = make_service()
    dispatcher = AnalysisDispatcher(pool, service)

    assert await dispatcher.dispatch(Tick(product_id="BTC-USD", source="coinbase")) is None
    assert dispatcher.dispatched == 0
    service.analyze.assert_not_awaited()
