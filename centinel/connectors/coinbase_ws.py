import asyncio
import base64
import hashlib
import hmac
import json
import time
from typing import List, Optional
import websockets
from websockets.exceptions import ConnectionClosed
from centinel.connectors.exchange import ConnectionState, ExchangeConnector
from centinel.core.errors import ConnectorError, InvalidStateError, SubscriptionError
from centinel.core.logger import logger
from centinel.core.models import MarketDataEvent

COINBASE_WS_URL = "wss://ws-feed.exchange.coinbase.com"
VERIFY_METHOD = "GET"
VERIFY_PATH = "/users/self/verify"

class CoinbaseWebsocketConnector(ExchangeConnector):
    def __init__(self, producer, api_key: str = "", api_secret: str = "", passphrase: str = "",
                 public_url: str = COINBASE_WS_URL, private_url: str = COINBASE_WS_URL,
                 exchange_name: str = "coinbase", reconnect: bool = False, max_reconnect_delay: float = 60.0,
                 min_reconnect_delay: float = 1.0):
        self.producer = producer
        self.api_key = api_key
        self.api_secret = api_secret
        self.passphrase = passphrase
        self.public_url = public_url
        self.private_url = private_url
        self.exchange_name = exchange_name
        self.reconnect = reconnect
        self.max_reconnect_delay = max_reconnect_delay
        self.min_reconnect_delay = min_reconnect_delay
        self.subscribed_symbols: List[str] = []
        self._state = ConnectionState.DISCONNECTED
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False
        self._reconnect_delay = min_reconnect_delay

    @classmethod
    def from_settings(cls, settings, producer) -> "CoinbaseWebsocketConnector":
        return cls(
            producer,
            api_key=settings.EXCHANGE_API_KEY,
            api_secret=settings.EXCHANGE_API_SECRET,
            passphrase=settings.EXCHANGE_API_PASSPHRASE,
            public_url=settings.EXCHANGE_WS_PUBLIC_URL,
            private_url=settings.EXCHANGE_WS_PRIVATE_URL,
            exchange_name=settings.EXCHANGE_NAME,
            reconnect=settings.EXCHANGE_WS_RECONNECT,
            max_reconnect_delay=settings.EXCHANGE_WS_RECONNECT_MAX_DELAY,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def authenticated(self) -> bool:
        return bool(self.api_key and self.api_secret and self.passphrase)

    def is_connected(self) -> bool:
        return self._state in (ConnectionState.OPEN, ConnectionState.SUBSCRIBED)

    def _set_state(self, state: ConnectionState):
        if state != self._state:
            logger.debug(f"{self.exchange_name} connector {self._state.value} -> {state.value}")
            self._state = state

    # --- Lifecycle ---

    async def connect(self, symbols: List[str]):
        if self._state != ConnectionState.DISCONNECTED:
            raise InvalidStateError(f"connect() requires DISCONNECTED, connector is {self._state.value}")
        if self._reader is not None and not self._reader.done():
            # Waiting out a reconnect backoff; disconnect() first
            raise InvalidStateError(f"{self.exchange_name} reader still running, disconnect() first")

        symbols = [s.strip() for s in (symbols or []) if s and s.strip()]
        if not symbols:
            logger.error(f"Refusing to subscribe to {self.exchange_name}: no symbols configured")
            raise SubscriptionError("cannot subscribe with an empty symbol list")

        self.subscribed_symbols = symbols
        self._closing = False
        await self._open_and_subscribe()
        self._reader = asyncio.create_task(self._read_loop())

    async def _open_and_subscribe(self):
        self._set_state(ConnectionState.CONNECTING)
        url = self.private_url if self.authenticated else self.public_url
        logger.info(f"Connecting to {url}...")
        try:
            ws = await websockets.connect(url)
        except Exception as e:
            self._set_state(ConnectionState.DISCONNECTED)
            logger.error(f"{self.exchange_name} handshake failed: {e}")
            raise ConnectorError(f"could not connect to {url}") from e

        self._ws = ws
        self._set_state(ConnectionState.OPEN)

        try:
            await ws.send(self.build_subscribe_message(self.subscribed_symbols))
        except Exception as e:
            logger.error(f"{self.exchange_name} subscribe failed: {e}", exc_info=True)
            self._ws = None
            self._set_state(ConnectionState.DISCONNECTED)
            await ws.close()
            raise SubscriptionError("subscribe frame could not be sent") from e

        self._set_state(ConnectionState.SUBSCRIBED)
        self._reconnect_delay = self.min_reconnect_delay
        logger.info(
            f"Connected to {self.exchange_name} and subscribed to tickers: {self.subscribed_symbols}",
            extra={"authenticated": self.authenticated},
        )

    async def disconnect(self):
        self._closing = True
        if self._state not in (ConnectionState.OPEN, ConnectionState.SUBSCRIBED):
            # Possibly waiting out a reconnect backoff
            if self._reader and not self._reader.done():
                self._reader.cancel()
                await asyncio.gather(self._reader, return_exceptions=True)
                if self._ws is not None:
                    ws, self._ws = self._ws, None
                    await ws.close()
                self._set_state(ConnectionState.DISCONNECTED)
            logger.debug(f"{self.exchange_name} disconnect() ignored in state {self._state.value}")
            return

        logger.info(f"Closing {self.exchange_name} stream...")
        self._set_state(ConnectionState.CLOSING)
        ws, self._ws = self._ws, None
        try:
            await ws.close()
        except Exception as e:
            logger.error(f"Failed to close {self.exchange_name} websocket: {e}")
        if self._reader:
            await asyncio.gather(self._reader, return_exceptions=True)
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"{self.exchange_name} stream closed")

    async def _read_loop(self):
        """Forward frames until the stream ends, then reconnect if enabled"""
        while True:
            ws = self._ws
            try:
                async for raw in ws:
                    await self._forward(raw)
                cause = "closed by remote"
            except ConnectionClosed as e:
                cause = f"connection closed: {e}"
            except Exception as e:
                cause = f"transport error: {e}"

            if self._closing:
                return

            self._ws = None
            self._set_state(ConnectionState.DISCONNECTED)
            logger.error(f"{self.exchange_name} stream lost ({cause})")

            if not self.reconnect or not await self._reconnect():
                return

    async def _reconnect(self) -> bool:
        while not self._closing:
            logger.warning(f"Reconnecting to {self.exchange_name} in {self._reconnect_delay}s...")
            await asyncio.sleep(self._reconnect_delay)
            self._reconnect_delay = min(self._reconnect_delay * 2, self.max_reconnect_delay)
            if self._closing:
                break
            try:
                await self._open_and_subscribe()
                return True
            except ConnectorError:
                continue
        return False

    async def _forward(self, raw):
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError:
                logger.error(f"Dropping undecodable binary frame from {self.exchange_name}")
                return

        event = MarketDataEvent(message=raw, source=self.exchange_name)
        try:
            await self.producer.send(event)
        except Exception as e:
            logger.error(f"Failed to forward {self.exchange_name} frame: {e}", exc_info=True)

    async def send_message(self, message: str) -> bool:
        if not self.is_connected() or self._ws is None:
            logger.warning(f"Not connected to {self.exchange_name}, message not sent")
            return False
        try:
            await self._ws.send(message)
            return True
        except Exception as e:
            logger.error(f"Failed to send message to {self.exchange_name}: {e}")
            return False

    # --- Framing ---

    def build_subscribe_message(self, symbols: List[str], timestamp: Optional[str] = None) -> str:
        if not symbols:
            raise SubscriptionError("cannot subscribe with an empty symbol list")

        message = {
            "type": "subscribe",
            "channels": [{"name": "ticker", "product_ids": list(symbols)}],
        }
        if self.authenticated:
            timestamp = timestamp or str(int(time.time()))
            message["signature"] = self.sign(timestamp, self.api_secret)
            message["key"] = self.api_key
            message["passphrase"] = self.passphrase
            message["timestamp"] = timestamp
        return json.dumps(message)

    @staticmethod
    def sign(timestamp: str, secret: str, method: str = VERIFY_METHOD, request_path: str = VERIFY_PATH) -> str:
        """
        Coinbase feed auth.
        Formula: Base64( HMAC-SHA256( Base64Decode(secret), timestamp + method + requestPath ) )
        """
        if not secret:
            raise ValueError("API secret not set")

        prehash = timestamp + method + request_path
        key = base64.b64decode(secret)
        mac = hmac.new(key, prehash.encode("utf-8"), hashlib.sha256)
        return base64.b64encode(mac.digest()).decode("utf-8")
