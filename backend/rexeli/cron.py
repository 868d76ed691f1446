"""Scheduled sweeps as a command-line entry point.

For schedulers that run commands rather than calling HTTP endpoints:

    python -m rexeli.cron reset-credits
    python -m rexeli.cron check-expiry
    python -m rexeli.cron monitor-jobs
    python -m rexeli.cron auto-train

Each task runs once, prints its result as JSON and exits non-zero if the
sweep reported errors or raised.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Dict

from rexeli.config import settings
from rexeli.database import dispose_engine
from rexeli.exceptions import RExeliError

logger = logging.getLogger(__name__)


async def reset_credits() -> Dict[str, Any]:
    from rexeli.services.ledger_service import ledger_service

    return (await ledger_service.reset_monthly_credits()).model_dump(mode="json")


async def check_expiry() -> Dict[str, Any]:
    from rexeli.services.ledger_service import ledger_service

    return (await ledger_service.check_subscription_expiry()).model_dump(mode="json")


async def monitor_jobs() -> Dict[str, Any]:
    from rexeli.services.orchestrator_service import orchestrator_service

    return (await orchestrator_service.monitor_active_jobs()).model_dump(mode="json")


async def auto_train() -> Dict[str, Any]:
    from rexeli.services.orchestrator_service import orchestrator_service

    jobs = await orchestrator_service.run_auto_triggers()
    return {"jobs_started": len(jobs), "job_ids": [str(j.id) for j in jobs]}


TASKS: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
    "reset-credits": reset_credits,
    "check-expiry": check_expiry,
    "monitor-jobs": monitor_jobs,
    "auto-train": auto_train,
}


async def run_task(name: str) -> int:
    """Runs one task and returns the process exit code."""
    try:
        result = await TASKS[name]()
    except RExeliError as e:
        logger.error("Task %s failed: %s | %s", name, e.message, e.context)
        return 1
    finally:
        await dispose_engine()

    print(json.dumps(result, indent=2))
    if result.get("errors"):
        logger.warning("Task %s finished with %d errors", name, result["errors"])
        return 1
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="RExeli scheduled tasks")
    parser.add_argument("task", choices=sorted(TASKS), help="Task to run once")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    sys.exit(asyncio.run(run_task(args.task)))


if __name__ == "__main__":
    main()
