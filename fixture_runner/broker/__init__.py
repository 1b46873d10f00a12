"""
Broker Clients
==============

Interface to the vehicle-signal broker and its KUKSA implementation.

Usage:
    from fixture_runner.broker import KuksaBrokerClient

    broker = KuksaBrokerClient("databroker:55555")
    handle = broker.resolve("Vehicle.Cabin.Door.Row1.Left.IsLocked")
"""

from .base import BrokerClient, SignalHandle, ValueCallback
from .kuksa import KuksaBrokerClient, parse_address

__all__ = [
    'BrokerClient',
    'SignalHandle',
    'ValueCallback',
    'KuksaBrokerClient',
    'parse_address',
]
