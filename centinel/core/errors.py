class CentinelError(Exception):
    """Base class for pipeline errors"""


class ConnectorError(CentinelError):
    """Transport-level failure talking to an exchange"""


class SubscriptionError(ConnectorError):
    """Subscribe frame could not be built or sent"""


class InvalidStateError(ConnectorError):
    """Connector asked to move to a state it cannot reach from where it is"""


class BusError(CentinelError):
    """Producer/consumer misuse or publish failure"""


class PoolShutdownError(CentinelError):
    """Work submitted to a worker pool that is shutting down"""
