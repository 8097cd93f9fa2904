from wellness_ai.models.kv_entry import KvEntry

__all__ = ["KvEntry"]
