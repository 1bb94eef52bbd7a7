from __future__ import annotations

import hashlib
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

MIGRATIONS_ROOT = Path(__file__).with_name("postgres_migrations")
ENGAGEMENT_NAMESPACE = "engagement"


@dataclass(frozen=True)
class PostgresMigration:
    version: str
    sql_path: Path
    checksum: str

    def statements(self) -> list[str]:
        sql = self.sql_path.read_text(encoding="utf-8")
        return [statement.strip() for statement in sql.split(";") if statement.strip()]


def apply_postgres_migrations(
    *, connection: Any, namespace: str = ENGAGEMENT_NAMESPACE
) -> list[str]:
    """Apply pending forward-only migrations and return the versions applied.

    Runs under a namespace-scoped advisory lock so concurrent replicas starting
    together apply each file once. A recorded checksum that no longer matches
    the file on disk aborts the whole batch.
    """
    migrations = _load_migrations(namespace=namespace)
    with _advisory_lock(connection=connection, namespace=namespace):
        try:
            _ensure_schema_migrations_table(connection)
            applied = _applied_checksums(connection=connection, namespace=namespace)
            newly_applied: list[str] = []
            for migration in migrations:
                recorded = applied.get(migration.version)
                if recorded is not None:
                    if recorded != migration.checksum:
                        raise RuntimeError(
                            f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{migration.version}"
                        )
                    continue
                for statement in migration.statements():
                    connection.execute(statement)
                _record_migration(connection=connection, namespace=namespace, migration=migration)
                newly_applied.append(migration.version)
            connection.commit()
        except Exception:
            connection.rollback()
            raise
    return newly_applied


def pending_postgres_migrations(
    *, connection: Any, namespace: str = ENGAGEMENT_NAMESPACE
) -> list[str]:
    """Versions on disk that are not yet recorded for ``namespace``."""
    migrations = _load_migrations(namespace=namespace)
    exists = connection.execute("SELECT to_regclass('schema_migrations') AS name").fetchone()
    if exists is None or exists["name"] is None:
        return [migration.version for migration in migrations]
    applied = _applied_checksums(connection=connection, namespace=namespace)
    return [migration.version for migration in migrations if migration.version not in applied]


@contextmanager
def _advisory_lock(*, connection: Any, namespace: str) -> Iterator[None]:
    lock_key = _migration_lock_key(namespace=namespace)
    connection.execute("SELECT pg_advisory_lock(%s::bigint)", (lock_key,))
    try:
        yield
    finally:
        connection.execute("SELECT pg_advisory_unlock(%s::bigint)", (lock_key,))


def _ensure_schema_migrations_table(connection: Any) -> None:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )


def _applied_checksums(*, connection: Any, namespace: str) -> dict[str, str]:
    rows = connection.execute(
        """
        SELECT version, checksum
        FROM schema_migrations
        WHERE namespace = %s
        ORDER BY version ASC
        """,
        (namespace,),
    ).fetchall()
    applied: dict[str, str] = {}
    for row in rows:
        version = str(row["version"]).removeprefix(f"{namespace}:")
        checksum = str(row["checksum"])
        if applied.get(version, checksum) != checksum:
            raise RuntimeError(f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{version}")
        applied[version] = checksum
    return applied


def _record_migration(*, connection: Any, namespace: str, migration: PostgresMigration) -> None:
    connection.execute(
        """
        INSERT INTO schema_migrations (
            version,
            namespace,
            checksum,
            applied_at
        ) VALUES (%s, %s, %s, %s)
        """,
        (
            f"{namespace}:{migration.version}",
            namespace,
            migration.checksum,
            datetime.now(timezone.utc).isoformat(),
        ),
    )


def _load_migrations(*, namespace: str) -> list[PostgresMigration]:
    namespace_path = MIGRATIONS_ROOT / namespace
    if not namespace_path.is_dir():
        raise RuntimeError(f"POSTGRES_MIGRATIONS_NAMESPACE_NOT_FOUND:{namespace}")
    return [
        PostgresMigration(
            version=sql_path.stem.split("_", maxsplit=1)[0],
            sql_path=sql_path,
            checksum=hashlib.sha256(sql_path.read_bytes()).hexdigest(),
        )
        for sql_path in sorted(namespace_path.glob("*.sql"))
    ]


def _migration_lock_key(*, namespace: str) -> int:
    digest = hashlib.sha256(namespace.encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)
