from waypoint.event_registry.memory import MemoryEventRegistry
from waypoint.event_registry.sqlite import SQLiteEventRegistry

__all__ = ["MemoryEventRegistry", "SQLiteEventRegistry"]
