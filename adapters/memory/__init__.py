"""In-memory store, directory and channel stubs for local runs and tests."""

from .channels import LoggingPushChannel, LoggingSmsChannel
from .directory import InMemoryDirectory
from .store import InMemoryCareStore

__all__ = ["InMemoryCareStore", "InMemoryDirectory", "LoggingPushChannel", "LoggingSmsChannel"]
