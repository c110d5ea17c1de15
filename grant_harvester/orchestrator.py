"""Job orchestrator wiring extraction, processing, deduplication and persistence."""

from __future__ import annotations

import dataclasses
import time
from concurrent.futures import Future
from threading import Lock
from typing import Iterable, Sequence

import structlog

from .cancellation import CancellationToken
from .config.models import OrchestratorSettings, SourceConfiguration
from .database.content_hasher import ContentHasher
from .database.deduplication import DeduplicationEngine
from .database.writer import DatabaseWriter
from .engines.base import EngineRegistry
from .errors import JobCancelledError, ScrapingError, SourceNotFoundError
from .logging_conf import configure_logging, source_logger
from .models import (
    JobState,
    JobStatus,
    ProcessedRecord,
    RawExtractedRecord,
    ScrapeJob,
    ScrapingResult,
    SourceRunStats,
    utcnow,
)
from .pipeline import (
    BasicDataProcessor,
    BasicValidator,
    DataProcessor,
    GrantClassifier,
    GrantValidator,
    KeywordClassifier,
)
from .source_manager import SourceManager
from .thread_pool import ThreadPoolManager


class Orchestrator:
    """Central coordinator running each source through the harvesting pipeline.

    Every source run is sequential: extract, process, validate, classify,
    deduplicate in memory, then hand the survivors to the writer. Sources run
    in parallel on the thread pool, bounded by ``max_concurrent_sources``.
    Cancellation is cooperative and checked before extraction, after
    extraction, before deduplication and before persistence; batches already
    committed by the writer stay committed.
    """

    def __init__(
        self,
        source_manager: SourceManager,
        engines: EngineRegistry,
        writer: DatabaseWriter,
        *,
        settings: OrchestratorSettings | None = None,
        processor: DataProcessor | None = None,
        validator: GrantValidator | None = None,
        classifier: GrantClassifier | None = None,
        deduplication: DeduplicationEngine | None = None,
        hasher: ContentHasher | None = None,
        thread_pool: ThreadPoolManager | None = None,
        scheduler=None,
    ) -> None:
        self.source_manager = source_manager
        self.engines = engines
        self.writer = writer
        self.settings = settings or OrchestratorSettings()
        self.processor = processor or BasicDataProcessor()
        self.validator = validator or BasicValidator()
        self.classifier = classifier or KeywordClassifier()
        self.deduplication = deduplication or writer.deduplication
        self.hasher = hasher or writer.hasher
        self.thread_pool = thread_pool or ThreadPoolManager()
        self.scheduler = scheduler
        self.logger = configure_logging().bind(component="orchestrator")
        self._active_jobs: dict[str, JobState] = {}
        self._jobs_lock = Lock()

    # ------------------------------------------------------------------
    # Scheduling entry points
    # ------------------------------------------------------------------
    def register_schedules(self, sources: Iterable[SourceConfiguration]) -> None:
        if self.scheduler is None:
            raise RuntimeError("Orchestrator was built without a scheduler")
        for source in sources:
            self.scheduler.schedule_source(source, self.run_source_async)
        self.scheduler.start()

    def run_source_async(self, source: SourceConfiguration) -> Future[ScrapingResult]:
        return self.submit(ScrapeJob(source_id=source.id))

    def submit(self, job: ScrapeJob) -> Future[ScrapingResult]:
        return self.thread_pool.submit(self.execute_scrape_job, job)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def execute_scrape_job(self, job: ScrapeJob) -> ScrapingResult:
        state = JobState(
            job_id=job.id,
            source_id=job.source_id,
            status=JobStatus.RUNNING,
            started_at=utcnow(),
            cancel_token=job.cancel_token,
        )
        with self._jobs_lock:
            self._active_jobs[job.id] = state
        job.status = JobStatus.RUNNING
        job.started_at = state.started_at
        self.logger.info("job_started", job_id=job.id, source_id=job.source_id)
        try:
            result = self._run_job(job)
            if result.cancelled:
                job.status = JobStatus.CANCELLED
            elif result.failed:
                job.status = JobStatus.FAILED
            else:
                job.status = JobStatus.SUCCESS
            job.finished_at = utcnow()
            state.status = job.status
            self._persist_job(job, result)
            self.logger.info(
                "job_finished",
                job_id=job.id,
                source_id=job.source_id,
                status=job.status.value,
                errors=len(result.errors),
            )
            return result
        finally:
            with self._jobs_lock:
                self._active_jobs.pop(job.id, None)

    def _run_job(self, job: ScrapeJob) -> ScrapingResult:
        if job.cancel_token.cancelled:
            return self._aborted_result(job, JobCancelledError(), cancelled=True)
        try:
            source = self.source_manager.get_active_source(job.source_id)
        except Exception as exc:  # noqa: BLE001
            return self._aborted_result(job, exc)
        if source is None:
            return self._aborted_result(job, SourceNotFoundError(job.source_id))
        self._persist_job(job)
        return self.process_source(source, job=job, cancel_token=job.cancel_token)

    def get_active_job_status(self, job_id: str) -> JobState | None:
        with self._jobs_lock:
            return self._active_jobs.get(job_id)

    def cancel_active_job(self, job_id: str) -> bool:
        with self._jobs_lock:
            state = self._active_jobs.get(job_id)
        if state is None:
            return False
        state.cancel_token.cancel()
        self.logger.info("job_cancel_requested", job_id=job_id, source_id=state.source_id)
        return True

    def active_jobs(self) -> list[JobState]:
        with self._jobs_lock:
            return list(self._active_jobs.values())

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------
    def process_multiple_sources(self, sources: Sequence[SourceConfiguration]) -> list[ScrapingResult]:
        return self.thread_pool.run_ordered(
            self.process_source,
            list(sources),
            limit=self.settings.max_concurrent_sources,
        )

    def process_source(
        self,
        source: SourceConfiguration,
        job: ScrapeJob | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ScrapingResult:
        token = cancel_token or (job.cancel_token if job is not None else CancellationToken())
        log = source_logger(source.id)
        started = time.perf_counter()
        result = ScrapingResult(
            source_id=source.id,
            metadata={
                "job_id": job.id if job is not None else None,
                "started_at": utcnow().isoformat(),
                "processed_count": 0,
                "validated_count": 0,
                "failed": False,
                "cancelled": False,
            },
        )
        try:
            self._run_pipeline(source, job, token, result, log)
        except JobCancelledError as exc:
            result.errors.append(ScrapingError.from_exception(exc, url=source.url))
            result.metadata.update(failed=True, cancelled=True, error=str(exc))
            log.warning("source_cancelled")
        except Exception as exc:  # noqa: BLE001
            result.errors.append(ScrapingError.from_exception(exc, url=source.url))
            result.metadata.update(failed=True, error=str(exc))
            log.error("source_failed", error=str(exc), error_type=result.errors[-1].type.value)

        result.duration = time.perf_counter() - started
        result.metadata["finished_at"] = utcnow().isoformat()
        self._record_metrics(source, result, log)
        log.info(
            "source_processed",
            found=result.total_found,
            inserted=result.total_inserted,
            updated=result.total_updated,
            skipped=result.total_skipped,
            duplicates=result.duplicates_found,
            errors=len(result.errors),
            duration=round(result.duration, 3),
        )
        return result

    def _run_pipeline(
        self,
        source: SourceConfiguration,
        job: ScrapeJob | None,
        token: CancellationToken,
        result: ScrapingResult,
        log: structlog.BoundLogger,
    ) -> None:
        engine = self.engines.get(source.engine)

        token.raise_if_cancelled()
        raw_records = engine.scrape(source, cancel_token=token)
        result.total_found = len(raw_records)
        token.raise_if_cancelled()
        if not raw_records:
            log.warning("no_records_found")
            return

        processed = self._process(raw_records, source, result, log)
        result.metadata["processed_count"] = len(processed)

        valid = [record for record in processed if self._is_valid(record, source, result, log)]
        result.metadata["validated_count"] = len(valid)

        if self.settings.enable_classification:
            valid = [self._classify(record, source, result, log) for record in valid]
        candidates = [self.hasher.stamp(record) for record in valid]

        token.raise_if_cancelled()
        if self.settings.enable_deduplication:
            batch = self.deduplication.deduplicate_batch(candidates)
            candidates = batch.records
            result.duplicates_found += batch.duplicates_found

        token.raise_if_cancelled()
        written = self.writer.batch_insert_grants(
            candidates,
            source_id=source.id,
            job_id=job.id if job is not None else None,
        )
        result.total_inserted += written.inserted
        result.total_updated += written.updated
        result.total_skipped += written.skipped
        result.duplicates_found += written.duplicates_found
        result.errors.extend(written.errors)

    def _process(
        self,
        raw_records: list[RawExtractedRecord],
        source: SourceConfiguration,
        result: ScrapingResult,
        log: structlog.BoundLogger,
    ) -> list[ProcessedRecord]:
        try:
            return list(self.processor.process_raw_data(raw_records, source=source))
        except Exception as exc:  # noqa: BLE001
            log.warning("batch_processing_failed", error=str(exc), records=len(raw_records))

        processed: list[ProcessedRecord] = []
        for raw in raw_records:
            try:
                processed.extend(self.processor.process_raw_data([raw], source=source))
            except Exception as exc:  # noqa: BLE001
                result.errors.append(
                    ScrapingError.from_exception(
                        exc,
                        url=raw.source_url or source.url,
                        message=f'Failed to process record "{raw.title}": {exc}',
                    )
                )
        return processed

    def _is_valid(
        self,
        record: ProcessedRecord,
        source: SourceConfiguration,
        result: ScrapingResult,
        log: structlog.BoundLogger,
    ) -> bool:
        try:
            validation = self.validator.validate_grant(record)
        except Exception as exc:  # noqa: BLE001
            result.errors.append(
                ScrapingError.from_exception(
                    exc, url=source.url, message=f'Failed to validate grant "{record.title}": {exc}'
                )
            )
            return False
        if not validation.is_valid:
            log.debug("grant_rejected", title=record.title, errors=validation.errors)
        return validation.is_valid

    def _classify(
        self,
        record: ProcessedRecord,
        source: SourceConfiguration,
        result: ScrapingResult,
        log: structlog.BoundLogger,
    ) -> ProcessedRecord:
        try:
            classification = self.classifier.classify_grant(record)
        except Exception as exc:  # noqa: BLE001
            result.errors.append(
                ScrapingError.from_exception(
                    exc, url=source.url, message=f'Failed to classify grant "{record.title}": {exc}'
                )
            )
            log.warning("classification_failed", title=record.title, error=str(exc))
            return record
        return dataclasses.replace(
            record,
            category=classification.category,
            tags=list(classification.tags),
            confidence_score=classification.confidence,
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def _aborted_result(self, job: ScrapeJob, exc: Exception, *, cancelled: bool = False) -> ScrapingResult:
        now = utcnow().isoformat()
        self.logger.warning("job_aborted", job_id=job.id, source_id=job.source_id, error=str(exc))
        return ScrapingResult(
            source_id=job.source_id,
            errors=[ScrapingError.from_exception(exc)],
            metadata={
                "job_id": job.id,
                "started_at": now,
                "finished_at": now,
                "processed_count": 0,
                "validated_count": 0,
                "failed": True,
                "cancelled": cancelled,
                "error": str(exc),
            },
        )

    def _record_metrics(
        self, source: SourceConfiguration, result: ScrapingResult, log: structlog.BoundLogger
    ) -> None:
        run = SourceRunStats(
            success=not result.failed,
            processing_time=result.duration,
            grants_found=result.total_found,
            error=result.metadata.get("error"),
        )
        try:
            self.source_manager.update_source_metrics(source.id, run)
        except Exception as exc:  # noqa: BLE001
            log.warning("metrics_update_failed", error=str(exc))

    def _persist_job(self, job: ScrapeJob, result: ScrapingResult | None = None) -> None:
        try:
            self.writer.update_scrape_job_status(job, result)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("job_persist_failed", job_id=job.id, error=str(exc))

    def shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
        self.thread_pool.shutdown()
        self.engines.close()


__all__ = ["Orchestrator"]
