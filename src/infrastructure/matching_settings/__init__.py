from src.infrastructure.matching_settings.env_json import EnvJsonMatchingSettingsStore
from src.infrastructure.matching_settings.postgres import PostgresMatchingSettingsStore

__all__ = [
    "EnvJsonMatchingSettingsStore",
    "PostgresMatchingSettingsStore",
]
