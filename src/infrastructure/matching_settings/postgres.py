import json
from contextlib import closing
from datetime import datetime, timezone
from importlib.util import find_spec
from typing import Any, Optional

from src.infrastructure.matching_settings.env_json import EnvJsonMatchingSettingsStore
from src.infrastructure.postgres_migrations import apply_postgres_migrations

ACTIVE_SETTINGS_ID = "active"


class PostgresMatchingSettingsStore:
    """Admin settings document shared by every replica and the automation CLI.

    Until an admin stores a document, reads fall back to ``MATCHING_SETTINGS_JSON``
    with the same semantics as the env-only store.
    """

    def __init__(self, *, dsn: str, settings_json: Optional[str] = None) -> None:
        if not dsn:
            raise RuntimeError("ENGAGEMENT_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("ENGAGEMENT_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._seed = EnvJsonMatchingSettingsStore(settings_json=settings_json)
        self._init_db()

    def get_raw(self) -> Optional[dict[str, Any]]:
        query = """
            SELECT settings_json
            FROM matching_settings
            WHERE settings_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (ACTIVE_SETTINGS_ID,)).fetchone()
        if row is None:
            return self._seed.get_raw()
        return json.loads(row["settings_json"])

    def replace(self, settings: dict[str, Any]) -> None:
        query = """
            INSERT INTO matching_settings (
                settings_id,
                settings_json,
                updated_at
            ) VALUES (%s, %s, %s)
            ON CONFLICT (settings_id) DO UPDATE SET
                settings_json=excluded.settings_json,
                updated_at=excluded.updated_at
        """
        with closing(self._connect()) as connection:
            connection.execute(
                query,
                (
                    ACTIVE_SETTINGS_ID,
                    json.dumps(settings, separators=(",", ":"), sort_keys=True),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            connection.commit()

    def _connect(self) -> Any:
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="engagement")


def _import_psycopg() -> tuple[Any, Any]:
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row
