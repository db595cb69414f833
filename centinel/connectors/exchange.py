from abc import ABC, abstractmethod
from enum import Enum
from typing import List


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    SUBSCRIBED = "SUBSCRIBED"
    CLOSING = "CLOSING"
    ERROR = "ERROR"


class ExchangeConnector(ABC):
    """
    One streaming conversation with one exchange.
    Implementations forward every inbound frame, unparsed, to the bus producer.
    """
    exchange_name: str
    subscribed_symbols: List[str]

    @abstractmethod
    async def connect(self, symbols: List[str]):
        """Open the stream and subscribe to `symbols`. Only valid while DISCONNECTED."""

    @abstractmethod
    async def disconnect(self):
        """Close the stream. No-op unless OPEN or SUBSCRIBED."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Advisory: may be stale when read from outside the reader task."""

    @abstractmethod
    async def send_message(self, message: str):
        pass

    @property
    @abstractmethod
    def state(self) -> ConnectionState:
        pass

    @property
    @abstractmethod
    def authenticated(self) -> bool:
        """True when the subscription carries credentials"""
