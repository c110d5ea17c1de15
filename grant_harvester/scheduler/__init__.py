"""Scheduling integration."""

from .apsched_adapter import APSchedulerAdapter, FREQUENCY_INTERVALS, job_id_for

__all__ = ["APSchedulerAdapter", "FREQUENCY_INTERVALS", "job_id_for"]
