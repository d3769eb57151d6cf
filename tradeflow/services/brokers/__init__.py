"""Broker adapter implementations."""

from .alpaca_adapter import AlpacaBrokerAdapter
from .factory import create_broker_adapter, get_simulated_broker, select_alpaca_credentials

__all__ = [
    "AlpacaBrokerAdapter",
    "create_broker_adapter",
    "get_simulated_broker",
    "select_alpaca_credentials",
]
