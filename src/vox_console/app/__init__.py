"""Console core: stream decoding, block extraction, sessions, and stores."""

from .extractor import StructuredBlock, StructuredBlockExtractor
from .memory import InMemoryStore
from .session import SessionState, StreamingSession
from .sse import ChunkDecoder, iter_deltas
from .storage import PostgresStore
from .store import Store, StoreError
from .tasks import TaskMaterializer

__all__ = [
    "ChunkDecoder",
    "InMemoryStore",
    "PostgresStore",
    "SessionState",
    "Store",
    "StoreError",
    "StreamingSession",
    "StructuredBlock",
    "StructuredBlockExtractor",
    "TaskMaterializer",
    "iter_deltas",
]
