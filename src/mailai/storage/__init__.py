"""Persistence of counters and observation of the configuration file."""

from .counters import PersistentCounterStore
from .watcher import ConfigWatcher

__all__ = ["ConfigWatcher", "PersistentCounterStore"]
