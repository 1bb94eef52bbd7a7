import sqlite3
from contextlib import closing
from pathlib import Path

from src.infrastructure.engagement.sql_common import SqlEngagementRepository


class SqliteEngagementRepository(SqlEngagementRepository):
    """Single-file backend; ``BEGIN IMMEDIATE`` serialises writers across processes."""

    def __init__(self, *, database_path: str) -> None:
        super().__init__()
        self._database_path = database_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_path, isolation_level=None, timeout=30.0)
        connection.row_factory = sqlite3.Row
        return connection

    def _begin(self, connection: sqlite3.Connection) -> None:
        connection.execute("BEGIN IMMEDIATE")

    def _init_db(self) -> None:
        Path(self._database_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as connection:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS engagement_briefs (
                    brief_id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_engagement_briefs_status
                ON engagement_briefs (status);

                CREATE TABLE IF NOT EXISTS engagement_invitations (
                    invitation_id TEXT PRIMARY KEY,
                    brief_id TEXT NOT NULL,
                    expert_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    UNIQUE (brief_id, expert_id)
                );

                CREATE INDEX IF NOT EXISTS idx_engagement_invitations_status
                ON engagement_invitations (status);

                CREATE TABLE IF NOT EXISTS engagement_proposals (
                    proposal_id TEXT PRIMARY KEY,
                    brief_id TEXT NOT NULL,
                    expert_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_engagement_proposals_brief
                ON engagement_proposals (brief_id);

                CREATE TABLE IF NOT EXISTS engagement_projects (
                    project_id TEXT PRIMARY KEY,
                    brief_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS engagement_milestones (
                    milestone_id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    milestone_number INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    UNIQUE (project_id, milestone_number)
                );

                CREATE TABLE IF NOT EXISTS engagement_automation_runs (
                    run_id TEXT PRIMARY KEY,
                    job_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS engagement_corrective_actions (
                    idempotency_key TEXT PRIMARY KEY,
                    job_name TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    bucket INTEGER NOT NULL,
                    run_id TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS engagement_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    event_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    dedupe_key TEXT NULL UNIQUE,
                    occurred_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_engagement_events_entity
                ON engagement_events (entity_id);
                """
            )
