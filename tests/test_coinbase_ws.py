import pytest
import asyncio
import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock, patch
from centinel.connectors.coinbase_ws import CoinbaseWebsocketConnector
from centinel.connectors.exchange import ConnectionState
from centinel.core.errors import ConnectorError, InvalidStateError, SubscriptionError
from centinel.core.models import MarketDataEvent

SECRET = base64.b64encode(b"secret").decode()


class FakeWebSocket:
    """Yields the given frames, then ends, raises or waits for close()"""

    def __init__(self, frames=(), error=None, hold_open=True):
        self.frames = list(frames)
        self.sent = []
        self.closed = False
        self.error = error
        self.hold_open = hold_open
        self._release = asyncio.Event()

    async def send(self, msg):
        self.sent.append(msg)

    async def close(self):
        self.closed = True
        self._release.set()

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame
        if self.error:
            raise self.error
        if self.hold_open:
            await self._release.wait()


async def wait_until(condition, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_producer():
    producer = MagicMock()
    producer.send = AsyncMock()
    return producer


def test_public_subscribe_frame():
    connector = CoinbaseWebsocketConnector(make_producer())
    frame = json.loads(connector.build_subscribe_message(["BTC-USD", "ETH-USD"]))

    assert frame == {
        "type": "subscribe",
        "channels": [{"name": "ticker", "product_ids": ["BTC-USD", "ETH-USD"]}],
    }
    assert connector.authenticated is False

def test_authenticated_subscribe_frame_signature():
    connector = CoinbaseWebsocketConnector(make_producer(), api_key="k", api_secret=SECRET, passphrase="p")
    frame = json.loads(connector.build_subscribe_message(["BTC-USD"], timestamp="1700000000"))

    expected = base64.b64encode(
        hmac.new(b"secret", b"1700000000GET/users/self/verify", hashlib.sha256).digest()
    ).decode()
    assert frame["signature"] == expected
    assert frame["key"] == "k"
    assert frame["passphrase"] == "p"
    assert frame["timestamp"] == "1700000000"

def test_signature_uses_unix_seconds():
    connector = CoinbaseWebsocketConnector(make_producer(), api_key="k", api_secret=SECRET, passphrase="p")
    with patch("centinel.connectors.coinbase_ws.time.time", return_value=1700000000.75):
        frame = json.loads(connector.build_subscribe_message(["BTC-USD"]))

    assert frame["timestamp"] == "1700000000"
    assert frame["signature"] == CoinbaseWebsocketConnector.sign("1700000000", SECRET)

def test_sign_requires_secret():
    with pytest.raises(ValueError):
        CoinbaseWebsocketConnector.sign("1700000000", "")

@pytest.mark.asyncio
async def test_empty_symbols_refused_before_connecting():
    connector = CoinbaseWebsocketConnector(make_producer())
    with patch("centinel.connectors.coinbase_ws.websockets.connect", new=AsyncMock()) as mock_connect:
        with pytest.raises(SubscriptionError):
            await connector.connect([])
        with pytest.raises(SubscriptionError):
            await connector.connect(["  ", ""])

    mock_connect.assert_not_called()
    assert connector.state == ConnectionState.DISCONNECTED

@pytest.mark.asyncio
async def test_connect_forward_disconnect():
    producer = make_producer()
    connector = CoinbaseWebsocketConnector(producer)
    ws = FakeWebSocket(['{"type":"ticker","product_id":"BTC-USD"}', b'{"type":"heartbeat"}'])

    with patch("centinel.connectors.coinbase_ws.websockets.connect", new=AsyncMock(return_value=ws)) as mock_connect:
        await connector.connect(["BTC-USD"])

    mock_connect.assert_awaited_once_with("wss://ws-feed.exchange.coinbase.com")
    assert connector.state == ConnectionState.SUBSCRIBED
    assert connector.is_connected()
    assert json.loads(ws.sent[0])["channels"][0]["product_ids"] == ["BTC-USD"]

    await wait_until(lambda: producer.send.await_count == 2)
    first = producer.send.await_args_list[0].args[0]
    second = producer.send.await_args_list[1].args[0]
    assert first == MarketDataEvent(message='{"type":"ticker","product_id":"BTC-USD"}', source="coinbase")
    assert second.message == '{"type":"heartbeat"}'

    await connector.disconnect()
    assert ws.closed
    assert connector.state == ConnectionState.DISCONNECTED
    assert not connector.is_connected()

@pytest.mark.asyncio
async def test_authenticated_uses_private_url():
    connector = CoinbaseWebsocketConnector(
        make_producer(), api_key="k", api_secret=SECRET, passphrase="p",
        public_url="wss://public.example", private_url="wss://private.example",
    )
    ws = FakeWebSocket()
    with patch("centinel.connectors.coinbase_ws.websockets.connect", new=AsyncMock(return_value=ws)) as mock_connect:
        await connector.connect(["BTC-USD"])

    mock_connect.assert_awaited_once_with("wss://private.example")
    assert "signature" in json.loads(ws.sent[0])
    await connector.disconnect()

@pytest.mark.asyncio
async def test_connect_twice_is_invalid():
    connector = CoinbaseWebsocketConnector(make_producer())
    with patch("centinel.connectors.coinbase_ws.websockets.connect", new=AsyncMock(return_value=FakeWebSocket())):
        await connector.connect(["BTC-USD"])
        with pytest.raises(InvalidStateError):
            await connector.connect(["BTC-USD"])
    await connector.disconnect()

@pytest.mark.asyncio
async def test_handshake_failure():
    connector = CoinbaseWebsocketConnector(make_producer())
    with patch("centinel.connectors.coinbase_ws.websockets.connect", new=AsyncMock(side_effect=OSError("refused"))):
        with pytest.raises(ConnectorError):
            await connector.connect(["BTC-USD"])
    assert connector.state == ConnectionState.DISCONNECTED

@pytest.mark.asyncio
async def test_remote_close_is_logged():
    connector = CoinbaseWebsocketConnector(make_producer())
    ws = FakeWebSocket(['{"type":"ticker"}'], hold_open=False)

    with patch("centinel.connectors.coinbase_ws.websockets.connect", new=AsyncMock(return_value=ws)), \
         patch("centinel.connectors.coinbase_ws.logger") as mock_logger:
        await connector.connect(["BTC-USD"])
        await connector._reader

    assert connector.state == ConnectionState.DISCONNECTED
    messages = [c.args[0] for c in mock_logger.error.call_args_list]
    assert any("stream lost (closed by remote)" in m for m in messages)

@pytest.mark.asyncio
async def test_transport_error_is_logged():
    connector = CoinbaseWebsocketConnector(make_producer())
    ws = FakeWebSocket(error=OSError("reset by peer"))

    with patch("centinel.connectors.coinbase_ws.websockets.connect", new=AsyncMock(return_value=ws)), \
         patch("centinel.connectors.coinbase_ws.logger") as mock_logger:
        await connector.connect(["BTC-USD"])
        await connector._reader

    assert connector.state == ConnectionState.DISCONNECTED
    messages = [c.args[0] for c in mock_logger.error.call_args_list]
    assert any("transport error: reset by peer" in m for m in messages)

@pytest.mark.asyncio
async def test_forward_failure_does_not_stop_stream():
    producer = make_producer()
    producer.send.side_effect = [RuntimeError("buffer full"), None]
    connector = CoinbaseWebsocketConnector(producer)
    ws = FakeWebSocket(['{"n":1}', '{"n":2}'])

    with patch("centinel.connectors.coinbase_ws.websockets.connect", new=AsyncMock(return_value=ws)):
        await connector.connect(["BTC-USD"])
        await wait_until(lambda: producer.send.await_count == 2)

    assert connector.state == ConnectionState.SUBSCRIBED
    await connector.disconnect()

@pytest.mark.asyncio
async def test_reconnect_when_enabled():
    producer = make_producer()
    connector = CoinbaseWebsocketConnector(producer, reconnect=True, min_reconnect_delay=0.01)
    dropped = FakeWebSocket(['{"n":1}'], hold_open=False)
    replacement = FakeWebSocket(['{"n":2}'])

    with patch("centinel.connectors.coinbase_ws.websockets.connect",
               new=AsyncMock(side_effect=[dropped, replacement])) as mock_connect:
        await connector.connect(["BTC-USD"])
        await wait_until(lambda: producer.send.await_count == 2)

    assert mock_connect.await_count == 2
    assert connector.state == ConnectionState.SUBSCRIBED
    assert replacement.sent

    await connector.disconnect()
    assert replacement.closed
    assert connector.state == ConnectionState.DISCONNECTED

@pytest.mark.asyncio
async def test_no_reconnect_by_default():
    connector = CoinbaseWebsocketConnector(make_producer())
    with patch("centinel.connectors.coinbase_ws.websockets.connect",
               new=AsyncMock(return_value=FakeWebSocket(hold_open=False))) as mock_connect:
        await connector.connect(["BTC-USD"])
        await connector._reader

    assert mock_connect.await_count == 1
    assert connector.state == ConnectionState.DISCONNECTED

@pytest.mark.asyncio
async def test_connect_refused_during_reconnect_backoff():
    connector = CoinbaseWebsocketConnector(make_producer(), reconnect=True, min_reconnect_delay=10)
    with patch("centinel.connectors.coinbase_ws.websockets.connect",
               new=AsyncMock(return_value=FakeWebSocket(hold_open=False))) as mock_connect:
        await connector.connect(["BTC-USD"])
        await wait_until(lambda: connector.state == ConnectionState.DISCONNECTED)

        # The reader is sleeping before its next attempt
        with pytest.raises(InvalidStateError):
            await connector.connect(["BTC-USD"])
        assert mock_connect.await_count == 1

        await connector.disconnect()

    assert connector.state == ConnectionState.DISCONNECTED
    assert connector._reader.done()

@pytest.mark.asyncio
async def test_send_message():
    connector = CoinbaseWebsocketConnector(make_producer())
    assert await connector.send_message('{"type":"unsubscribe"}') is False

    ws = FakeWebSocket()
    with patch("centinel.connectors.coinbase_ws.websockets.connect", new=AsyncMock(return_value=ws)):
        await connector.connect(["BTC-USD"])

    assert await connector.send_message('{"type":"unsubscribe"}') is True
    assert ws.sent[-1] == '{"type":"unsubscribe"}'
    await connector.disconnect()

@pytest.mark.asyncio
async def test_disconnect_when_not_connected_is_noop():
    connector = CoinbaseWebsocketConnector(make_producer())
    await connector.disconnect()
    assert connector.state == ConnectionState.DISCONNECTED
