from src.infrastructure.experts.in_memory import InMemoryExpertProfileStore

__all__ = [
    "InMemoryExpertProfileStore",
]
