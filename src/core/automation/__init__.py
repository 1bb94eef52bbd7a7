from src.core.automation.jobs import (
    AutomationJob,
    JobContext,
    QaChecker,
    default_jobs,
)
from src.core.automation.service import AutomationScheduler

__all__ = [
    "AutomationJob",
    "AutomationScheduler",
    "JobContext",
    "QaChecker",
    "default_jobs",
]
