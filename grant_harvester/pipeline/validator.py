"""Rule-based validation of processed grants."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Callable
from urllib.parse import urlparse

from ..models import ProcessedRecord
from .base import GrantValidator, ValidationResult

MIN_DESCRIPTION_LENGTH = 20
MAX_TITLE_LENGTH = 500
MAX_PLAUSIBLE_FUNDING = 1_000_000_000


class BasicValidator(GrantValidator):
    """Reject records that cannot be stored; warn on ones that look weak.

    A deadline older than ``grace_days`` is an error, a more recent past
    deadline only a warning.
    """

    def __init__(self, grace_days: int = 30, today: Callable[[], date] = date.today) -> None:
        self.grace_days = grace_days
        self._today = today

    def validate_grant(self, record: ProcessedRecord) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        if not record.title.strip():
            errors.append("Title is required")
        elif len(record.title) > MAX_TITLE_LENGTH:
            warnings.append("Title is unusually long")

        if len(record.description.strip()) < MIN_DESCRIPTION_LENGTH:
            warnings.append("Description is missing or very short")

        low, high = record.funding_amount_min, record.funding_amount_max
        if (low is not None and low < 0) or (high is not None and high < 0):
            errors.append("Funding amounts cannot be negative")
        elif low is not None and high is not None and low > high:
            errors.append("Minimum funding exceeds maximum funding")
        elif high is not None and high > MAX_PLAUSIBLE_FUNDING:
            warnings.append("Funding amount looks implausibly large")

        if record.deadline is not None:
            today = self._today()
            if record.deadline < today - timedelta(days=self.grace_days):
                errors.append("Deadline has passed")
            elif record.deadline < today:
                warnings.append("Deadline is in the past")

        if record.application_url:
            parsed = urlparse(record.application_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append("Application URL is not a valid http(s) URL")
        else:
            warnings.append("No application URL")

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            quality_score=max(0, 100 - 25 * len(errors) - 10 * len(warnings)),
        )


__all__ = ["BasicValidator"]
