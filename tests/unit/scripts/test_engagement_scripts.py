import json

import pytest

from scripts import postgres_migrate, run_automation_job
from src.core.errors import EngagementNotFoundError


def test_run_automation_job_lists_job_names(capsys):
    assert run_automation_job.main(["--list"]) == 0

    names = capsys.readouterr().out.split()
    assert names[0] == "expert-propose-nudge"
    assert "rematch-pending-briefs" in names
    assert len(names) == 8


def test_run_automation_job_prints_run_records(capsys):
    assert run_automation_job.main(["--job", "retainer-offer"]) == 0

    runs = json.loads(capsys.readouterr().out)
    assert [run["job_name"] for run in runs] == ["retainer-offer"]
    assert runs[0]["status"] == "succeeded"


def test_run_all_reports_failure_exit_code(monkeypatch, capsys):
    monkeypatch.setenv("MATCHING_SETTINGS_JSON", "[1, 2]")

    assert run_automation_job.main(["--all"]) == 1

    runs = json.loads(capsys.readouterr().out)
    assert {run["status"] for run in runs} == {"failed"}


def test_run_automation_job_requires_a_selection():
    with pytest.raises(SystemExit):
        run_automation_job.main([])


def test_unknown_job_name_is_rejected():
    with pytest.raises(EngagementNotFoundError, match="AUTOMATION_JOB_NOT_FOUND"):
        run_automation_job.main(["--job", "no-such-job"])


def test_postgres_migrate_requires_dsn():
    with pytest.raises(RuntimeError, match="POSTGRES_MIGRATION_DSN_REQUIRED:engagement"):
        postgres_migrate.main(["--dsn", ""])
