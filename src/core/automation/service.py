import logging
import uuid
from datetime import datetime
from typing import Iterable, Optional

from src.core.automation.jobs import AutomationJob, JobContext, QaChecker, default_jobs
from src.core.common.canonical import corrective_action_key, time_bucket
from src.core.engagement.models import (
    AutomationRunRecord,
    AutomationRunSummary,
    CorrectiveActionRecord,
    EngagementEventRecord,
)
from src.core.engagement.service import EngagementService
from src.core.errors import EngagementNotFoundError, StaleStateRaceError

logger = logging.getLogger(__name__)


class AutomationScheduler:
    """Runs corrective jobs on demand; the cadence belongs to an external scheduler.

    Every run is recorded as an ``AutomationRunRecord``. The matching
    configuration is snapshotted once per run and shared by every entity the
    run touches.
    """

    def __init__(
        self,
        *,
        service: EngagementService,
        jobs: Optional[Iterable[AutomationJob]] = None,
        qa_checker: Optional[QaChecker] = None,
    ) -> None:
        self._service = service
        self._repository = service.repository
        self._qa_checker = qa_checker
        self._jobs: dict[str, AutomationJob] = {
            job.name: job for job in (default_jobs() if jobs is None else jobs)
        }

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def run_all(self, *, now: Optional[datetime] = None) -> list[AutomationRunRecord]:
        moment = now or self._service.now()
        return [self.run_job(name, now=moment, reraise=False) for name in self._jobs]

    def run_job(
        self, job_name: str, *, now: Optional[datetime] = None, reraise: bool = True
    ) -> AutomationRunRecord:
        """Run one job. A failed selection marks the run ``failed`` and re-raises
        unless ``reraise`` is off, in which case the failed run is returned."""
        job = self._jobs.get(job_name)
        if job is None:
            raise EngagementNotFoundError(f"AUTOMATION_JOB_NOT_FOUND: {job_name}")
        moment = now or self._service.now()
        run = AutomationRunRecord(
            run_id=f"run_{uuid.uuid4().hex[:12]}",
            job_name=job.name,
            started_at=moment,
        )
        self._repository.create_automation_run(run)

        try:
            context = JobContext(
                repository=self._repository,
                service=self._service,
                config=self._service.load_config(),
                qa_checker=self._qa_checker,
            )
            entities = job.select(context, moment)
        except Exception as exc:
            run.status = "failed"
            run.error = str(exc)
            run.finished_at = self._service.now()
            self._repository.update_automation_run(run)
            logger.exception(
                "automation.run_failed",
                extra={"extra_fields": {"run_id": run.run_id, "job_name": job.name}},
            )
            if reraise:
                raise
            return run

        summary = AutomationRunSummary(processed=len(entities))
        bucket = time_bucket(moment, width=job.window)
        for entity in entities:
            entity_id = job.entity_id(entity)
            try:
                acted = self._correct(job, context, entity, run=run, bucket=bucket, now=moment)
            except StaleStateRaceError:
                summary.skipped += 1
                logger.info(
                    "automation.entity_stale",
                    extra={"extra_fields": {"job_name": job.name, "entity_id": entity_id}},
                )
            except Exception:
                summary.failed += 1
                logger.exception(
                    "automation.entity_failed",
                    extra={"extra_fields": {"job_name": job.name, "entity_id": entity_id}},
                )
            else:
                if acted:
                    summary.actions += 1
                else:
                    summary.skipped += 1

        run.summary = summary
        run.status = "partial" if summary.failed else "succeeded"
        run.finished_at = self._service.now()
        self._repository.update_automation_run(run)
        logger.info(
            "automation.run_completed",
            extra={
                "extra_fields": {
                    "run_id": run.run_id,
                    "job_name": job.name,
                    "status": run.status,
                    **summary.model_dump(),
                }
            },
        )
        return run

    def list_runs(
        self, *, job_name: Optional[str] = None, limit: int = 50
    ) -> list[AutomationRunRecord]:
        return self._repository.list_automation_runs(job_name=job_name, limit=limit)

    def _correct(
        self,
        job: AutomationJob,
        context: JobContext,
        entity,
        *,
        run: AutomationRunRecord,
        bucket: int,
        now: datetime,
    ) -> bool:
        entity_id = job.entity_id(entity)
        recorded: list[EngagementEventRecord] = []
        with self._repository.transaction():
            current = job.reload(context, entity)
            if current is None or not job.is_due(context, current, now):
                return False
            claimed = self._repository.claim_corrective_action(
                CorrectiveActionRecord(
                    idempotency_key=corrective_action_key(
                        entity_id=entity_id, job_name=job.name, bucket=bucket
                    ),
                    job_name=job.name,
                    entity_id=entity_id,
                    bucket=bucket,
                    run_id=run.run_id,
                    created_at=now,
                )
            )
            if not claimed:
                return False
            recorded = self._service.record_events(job.apply(context, current, now))
        self._service.publish(recorded)
        job.follow_up(context, current, now)
        logger.info(
            "automation.action",
            extra={
                "extra_fields": {
                    "run_id": run.run_id,
                    "job_name": job.name,
                    "entity_id": entity_id,
                    "events": [event.event_type for event in recorded],
                }
            },
        )
        return True
