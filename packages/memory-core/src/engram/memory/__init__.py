from engram.memory.coordinator import PurgeResult, TieredMemoryCoordinator
from engram.memory.long_term import LongTermStore
from engram.memory.short_term import ShortTermStore

__all__ = ["LongTermStore", "PurgeResult", "ShortTermStore", "TieredMemoryCoordinator"]
