"""
Hardware Fixture Runner
=======================

Simulates vehicle actuator hardware against a KUKSA databroker: serves
actuator signals, receives commanded values, and publishes actual values
after a configured delay or transform.
"""

__version__ = "0.1.0"
