from .base import EventLogProvider
from .memory_provider import InMemoryEventLog

__all__ = ["EventLogProvider", "InMemoryEventLog"]
