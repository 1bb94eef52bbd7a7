from src.infrastructure.engagement.in_memory import InMemoryEngagementRepository
from src.infrastructure.engagement.postgres import PostgresEngagementRepository
from src.infrastructure.engagement.sqlite import SqliteEngagementRepository

__all__ = [
    "InMemoryEngagementRepository",
    "PostgresEngagementRepository",
    "SqliteEngagementRepository",
]
