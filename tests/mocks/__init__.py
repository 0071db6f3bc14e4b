"""
Test Mocks

In-memory replacements for the location store and observer connections.
"""

from .sender_mock import RecordingSender, StalledSender
from .store_mock import InMemoryLocationStore

__all__ = [
    "InMemoryLocationStore",
    "RecordingSender",
    "StalledSender",
]
