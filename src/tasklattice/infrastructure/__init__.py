"""Infrastructure layer for tasklattice."""

from tasklattice.infrastructure.config import Config, ConfigManager
from tasklattice.infrastructure.graph_store import GraphCapability, GraphStore
from tasklattice.infrastructure.logger import get_logger, setup_logging
from tasklattice.infrastructure.memory_graph_store import InMemoryGraphStore
from tasklattice.infrastructure.outbox import Outbox, OutboxEntry
from tasklattice.infrastructure.record_store import MarkdownRecordStore, RecordStat
from tasklattice.infrastructure.sqlite_graph_store import SQLiteGraphStore

__all__ = [
    "Config",
    "ConfigManager",
    "GraphCapability",
    "GraphStore",
    "InMemoryGraphStore",
    "MarkdownRecordStore",
    "Outbox",
    "OutboxEntry",
    "RecordStat",
    "SQLiteGraphStore",
    "get_logger",
    "setup_logging",
]
