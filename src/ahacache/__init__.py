"""ahacache: local SQLite cache, sync, and semantic search for the Aha! API, served over MCP."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ahacache")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from ahacache.core import CacheStore
from ahacache.embedding import EmbeddingOrchestrator, HashEmbeddingProvider
from ahacache.hybrid import HybridReader
from ahacache.similarity import SimilarityIndex
from ahacache.sync import SyncOrchestrator

__all__ = [
    "CacheStore",
    "EmbeddingOrchestrator",
    "HashEmbeddingProvider",
    "HybridReader",
    "SimilarityIndex",
    "SyncOrchestrator",
    "__version__",
]
