import argparse
import json
import sys
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main(argv: list[str] | None = None) -> int:
    from src.api.observability import configure_logging
    from src.api.routers.engagement import close_engagement_service, get_automation_scheduler

    parser = argparse.ArgumentParser(
        description="Run engagement automation jobs once; intended for an external scheduler."
    )
    selection = parser.add_mutually_exclusive_group(required=True)
    selection.add_argument("--job", help="Automation job name, e.g. expert-propose-nudge.")
    selection.add_argument("--all", action="store_true", help="Run every automation job.")
    selection.add_argument("--list", action="store_true", help="List job names and exit.")
    args = parser.parse_args(argv)

    configure_logging()
    try:
        scheduler = get_automation_scheduler()
        if args.list:
            for name in scheduler.job_names:
                print(name)
            return 0
        runs = scheduler.run_all() if args.all else [scheduler.run_job(args.job)]
    finally:
        close_engagement_service()
    print(json.dumps([run.model_dump(mode="json") for run in runs], indent=2, sort_keys=True))
    return 1 if any(run.status == "failed" for run in runs) else 0


if __name__ == "__main__":
    raise SystemExit(main())
