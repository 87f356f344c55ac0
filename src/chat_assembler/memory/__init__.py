from chat_assembler.memory.sqlite_sink import NullPersistenceSink, PersistenceSink, SqlitePersistenceSink
from chat_assembler.memory.store import MemoryStore

__all__ = [
    "MemoryStore",
    "NullPersistenceSink",
    "PersistenceSink",
    "SqlitePersistenceSink",
]
