from __future__ import annotations

import logging
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger("leadflow.jobs")


def _guarded(name: str, task: Callable[[], Any]) -> Callable[[], Any]:
    def run() -> Any:
        try:
            return task()
        except Exception:
            logger.exception("job_failed name=%s", name)
            return None

    return run


class JobScheduler:
    """
    Fixed-interval background jobs on an APScheduler ``BackgroundScheduler``.

    Each job runs at most once at a time and missed runs are coalesced, so a
    slow sweep never stacks up behind itself.
    """

    def __init__(self, interval_seconds: float) -> None:
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.tasks: dict[str, Callable[[], Any]] = {}

    def add(self, name: str, task: Callable[[], Any]) -> None:
        self.tasks[name] = task
        self.scheduler.add_job(
            _guarded(name, task),
            "interval",
            seconds=self.interval_seconds,
            id=name,
            name=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def job_ids(self) -> list[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def run_once(self, name: str) -> Any:
        return _guarded(name, self.tasks[name])()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info(
            "jobs_started names=%s interval=%s", ",".join(self.tasks), self.interval_seconds
        )

    def shutdown(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("jobs_stopped names=%s", ",".join(self.tasks))
