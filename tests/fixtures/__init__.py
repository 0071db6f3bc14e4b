"""
Shared Test Fixtures

Factories and constants used across the tracking test suite.
"""

from .factories import (
    DELHI,
    MUMBAI,
    NOON,
    FixedClock,
    admin_of,
    courier_of,
    make_sample,
    make_shipment,
)

__all__ = [
    "DELHI",
    "MUMBAI",
    "NOON",
    "FixedClock",
    "admin_of",
    "courier_of",
    "make_sample",
    "make_shipment",
]
