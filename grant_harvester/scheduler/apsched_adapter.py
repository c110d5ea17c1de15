"""APScheduler wrapper scheduling sources by their scraping frequency."""

from __future__ import annotations

from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.models import ScrapingFrequency, SourceConfiguration
from ..logging_conf import configure_logging

FREQUENCY_INTERVALS: dict[ScrapingFrequency, dict[str, int]] = {
    ScrapingFrequency.HOURLY: {"hours": 1},
    ScrapingFrequency.DAILY: {"days": 1},
    ScrapingFrequency.WEEKLY: {"weeks": 1},
    ScrapingFrequency.MONTHLY: {"days": 30},
}


def job_id_for(source_id: str) -> str:
    return f"source::{source_id}"


class APSchedulerAdapter:
    """Manage one APScheduler interval job per active source."""

    def __init__(self, scheduler: BackgroundScheduler | None = None) -> None:
        self.scheduler = scheduler or BackgroundScheduler()
        self.logger = configure_logging().bind(component="scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_source(
        self, source: SourceConfiguration, callback: Callable[[SourceConfiguration], object]
    ) -> None:
        trigger = self.build_trigger(source.frequency)
        self.scheduler.add_job(
            callback,
            trigger=trigger,
            id=job_id_for(source.id),
            args=[source],
            replace_existing=True,
        )
        self.logger.info("job_scheduled", source_id=source.id, frequency=source.frequency.value)

    def remove_source(self, source_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id_for(source_id))
        except JobLookupError:
            self.logger.warning("job_remove_failed", source_id=source_id)

    @staticmethod
    def build_trigger(frequency: ScrapingFrequency) -> IntervalTrigger:
        return IntervalTrigger(**FREQUENCY_INTERVALS[frequency])

    def list_jobs(self) -> list[dict]:
        return [
            {"id": job.id, "next_run_time": getattr(job, "next_run_time", None), "trigger": str(job.trigger)}
            for job in self.scheduler.get_jobs()
        ]


__all__ = ["APSchedulerAdapter", "FREQUENCY_INTERVALS", "job_id_for"]
