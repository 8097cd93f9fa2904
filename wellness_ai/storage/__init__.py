from wellness_ai.storage.kv import KeyValueStore, MemoryKeyValueStore, SqlKeyValueStore, build_store

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "SqlKeyValueStore", "build_store"]
