"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .events import SqliteEventRepository
from .tool_stats import SqliteToolStatRepository
from .cursors import SqliteFilePositionRepository
from .analytics import SqliteCostAnalyticsRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteEventRepository",
    "SqliteToolStatRepository",
    "SqliteFilePositionRepository",
    "SqliteCostAnalyticsRepository",
]
