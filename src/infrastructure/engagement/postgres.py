from contextlib import closing
from importlib.util import find_spec

from src.infrastructure.engagement.sql_common import SqlEngagementRepository
from src.infrastructure.postgres_migrations import apply_postgres_migrations


class PostgresEngagementRepository(SqlEngagementRepository):
    placeholder = "%s"
    lock_suffix = " FOR UPDATE"

    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("ENGAGEMENT_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("ENGAGEMENT_POSTGRES_DRIVER_MISSING")
        super().__init__()
        self._dsn = dsn
        self._init_db()

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _begin(self, connection) -> None:
        # psycopg opens the transaction implicitly on the first statement.
        return None

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="engagement")


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row
