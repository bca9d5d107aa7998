from .queue_store import DEFAULT_DRAIN_LIMIT, PersistentQueue

__all__ = ["DEFAULT_DRAIN_LIMIT", "PersistentQueue"]
