"""Cache backends for tie-break verdicts."""
from .kv_store import InMemoryKVStore, JSONKVStore, KeyValueStore

__all__ = [
    'InMemoryKVStore',
    'JSONKVStore',
    'KeyValueStore',
]
