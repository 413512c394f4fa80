"""
In-memory Service Bus emulator: broker plus FastAPI management endpoints.
"""

from .api import create_app
from .broker import BrokerMessage, FeedPage, InMemoryBroker

__all__ = ["BrokerMessage", "FeedPage", "InMemoryBroker", "create_app"]
