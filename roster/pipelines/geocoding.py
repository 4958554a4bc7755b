"""Geocoding job engine: resumable, rate-limited enrichment of voter addresses.

A job walks the un-geocoded voters of a version in id order, one provider
request at a time, and checkpoints its counters together with the id of the
last processed voter. Pause works by polling: the loop re-reads the job
status before every record and stops when it is no longer ``running``.
Jobs left ``pending`` or ``running`` by a stopped process are picked up
again on start-up.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roster import models
from roster.config import settings
from roster.geocoder import GeocodeResult, Geocoder, GeocodingRequestError
from roster.models import GeocodingJobStatus
from roster.pipelines.versions import ensure_version_exists

logger = logging.getLogger(__name__)

# Statuses a run loop may start from
LAUNCHABLE_JOB_STATUSES = (GeocodingJobStatus.PENDING, GeocodingJobStatus.RUNNING)


class GeocodingJobError(Exception):
    """Raised when a geocoding job operation is rejected."""
    pass


class GeocodingJobNotFoundError(GeocodingJobError):
    def __init__(self, job_id: int):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(GeocodingJobError):
    """Raised when pause/resume is requested from the wrong status."""

    def __init__(self, message: str, current_status: GeocodingJobStatus):
        super().__init__(message)
        self.current_status = current_status


class NothingToGeocodeError(GeocodingJobError):
    pass


@dataclass
class JobProgress:
    """Snapshot of a job as seen by pollers."""
    id: int
    version_id: int
    status: GeocodingJobStatus
    total_voters: int
    processed_voters: int
    geocoded_count: int
    failed_count: int
    skipped_count: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None

    @classmethod
    def from_model(cls, job: models.GeocodingJob) -> JobProgress:
        return cls(
            id=job.id,
            version_id=job.version_id,
            status=job.status,
            total_voters=job.total_voters,
            processed_voters=job.processed_voters,
            geocoded_count=job.geocoded_count,
            failed_count=job.failed_count,
            skipped_count=job.skipped_count,
            error_message=job.error_message,
            started_at=job.started_at,
            completed_at=job.completed_at,
            created_at=job.created_at,
        )


@dataclass
class _Counters:
    processed: int = 0
    geocoded: int = 0
    failed: int = 0
    skipped: int = 0
    last_voter_id: int | None = None

    @classmethod
    def from_model(cls, job: models.GeocodingJob) -> _Counters:
        return cls(
            processed=job.processed_voters,
            geocoded=job.geocoded_count,
            failed=job.failed_count,
            skipped=job.skipped_count,
            last_voter_id=job.last_voter_id,
        )

    def as_values(self) -> dict[str, Any]:
        return {
            "processed_voters": self.processed,
            "geocoded_count": self.geocoded,
            "failed_count": self.failed,
            "skipped_count": self.skipped,
            "last_voter_id": self.last_voter_id,
            "updated_at": models.utcnow(),
        }


def build_address_line(parts: Sequence[str | None]) -> str:
    """Join the non-blank address parts with ", "."""
    return ", ".join(part.strip() for part in parts if part and part.strip())


def _target_filters(version_id: int) -> tuple:
    return (
        models.VoterRecord.version_id == version_id,
        models.VoterRecord.lat.is_(None),
        models.VoterRecord.address.is_not(None),
        models.VoterRecord.address != "",
    )


class GeocodingJobEngine:
    """Owns the background tasks of geocoding jobs in this process.

    At most one task runs per job id. Tasks open their own short sessions
    from ``session_factory`` and never share one with a request.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        geocoder: Geocoder,
        *,
        request_delay: float | None = None,
        checkpoint_every: int | None = None,
    ):
        self.session_factory = session_factory
        self.geocoder = geocoder
        self.request_delay = settings.geocoding.request_delay_seconds if request_delay is None else request_delay
        self.checkpoint_every = checkpoint_every or settings.geocoding.checkpoint_every
        self._tasks: dict[int, asyncio.Task] = {}
        self._relaunch: set[int] = set()
        self._closing = False

    # Job store access

    async def _active_job(self, session: AsyncSession, version_id: int) -> models.GeocodingJob | None:
        result = await session.execute(
            select(models.GeocodingJob)
            .where(
                models.GeocodingJob.version_id == version_id,
                models.GeocodingJob.status.in_(list(models.ACTIVE_JOB_STATUSES)),
            )
            .order_by(models.GeocodingJob.created_at.desc(), models.GeocodingJob.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_job(self, job_id: int) -> JobProgress:
        async with self.session_factory() as session:
            job = await session.get(models.GeocodingJob, job_id)
            if job is None:
                raise GeocodingJobNotFoundError(job_id)
            return JobProgress.from_model(job)

    async def latest_job(self, version_id: int) -> JobProgress | None:
        """Most recently created job of a version, if any."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.GeocodingJob)
                .where(models.GeocodingJob.version_id == version_id)
                .order_by(models.GeocodingJob.created_at.desc(), models.GeocodingJob.id.desc())
                .limit(1)
            )
            job = result.scalar_one_or_none()
            return JobProgress.from_model(job) if job is not None else None

    async def count_targets(self, session: AsyncSession, version_id: int) -> int:
        result = await session.execute(
            select(func.count()).select_from(models.VoterRecord).where(*_target_filters(version_id))
        )
        return result.scalar_one()

    # Lifecycle

    async def create_job(self, version_id: int, created_by: int | None = None) -> tuple[JobProgress, bool]:
        """Create a pending job for a version, or return its active job.

        Args:
            version_id: Roster version to geocode
            created_by: Staff id of the requester

        Returns:
            (job, created) where created is False when an active job existed

        Raises:
            RosterVersionNotFoundError: If the version does not exist
            NothingToGeocodeError: If no voter of the version needs geocoding
        """
        async with self.session_factory() as session:
            await ensure_version_exists(session, version_id)

            existing = await self._active_job(session, version_id)
            if existing is not None:
                logger.info(f"Version {version_id} already has active geocoding job {existing.id}")
                return JobProgress.from_model(existing), False

            total = await self.count_targets(session, version_id)
            if total == 0:
                raise NothingToGeocodeError("No voters found that need geocoding")

            job = models.GeocodingJob(
                version_id=version_id,
                status=GeocodingJobStatus.PENDING,
                total_voters=total,
                created_by=created_by,
            )
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                # Another request created the active job first
                await session.rollback()
                existing = await self._active_job(session, version_id)
                if existing is None:
                    raise
                return JobProgress.from_model(existing), False

            logger.info(f"Created geocoding job {job.id} for version {version_id} ({total} voters)")
            return JobProgress.from_model(job), True

    async def start_job(self, version_id: int, created_by: int | None = None) -> tuple[JobProgress, bool]:
        """Create a job and launch its run loop; idempotent per version."""
        progress, created = await self.create_job(version_id, created_by)
        if created:
            self.launch(progress.id)
        elif progress.status in LAUNCHABLE_JOB_STATUSES and not self.is_running(progress.id):
            # Left behind by a stopped process
            logger.info(f"Relaunching stranded geocoding job {progress.id} ({progress.status.value})")
            self.launch(progress.id)
        return progress, created

    async def pause_job(self, job_id: int) -> JobProgress:
        """Request a running job to stop after its current record."""
        return await self._transition(
            job_id,
            GeocodingJobStatus.RUNNING,
            GeocodingJobStatus.PAUSED,
            "Cannot pause job: Job is not running",
        )

    async def resume_job(self, job_id: int) -> JobProgress:
        """Set a paused job running again and relaunch its loop."""
        progress = await self._transition(
            job_id,
            GeocodingJobStatus.PAUSED,
            GeocodingJobStatus.RUNNING,
            "Cannot resume job: Job is not paused",
        )
        self.launch(job_id)
        return progress

    async def _transition(
        self,
        job_id: int,
        expected: GeocodingJobStatus,
        target: GeocodingJobStatus,
        message: str,
    ) -> JobProgress:
        async with self.session_factory() as session:
            result = await session.execute(
                update(models.GeocodingJob)
                .where(models.GeocodingJob.id == job_id, models.GeocodingJob.status == expected)
                .values(status=target, updated_at=models.utcnow())
            )
            await session.commit()

            job = await session.get(models.GeocodingJob, job_id, populate_existing=True)
            if job is None:
                raise GeocodingJobNotFoundError(job_id)
            if result.rowcount == 0:
                raise InvalidJobStateError(
                    f"{message} (current status: {job.status.value})",
                    current_status=job.status,
                )

        logger.info(f"Geocoding job {job_id}: {expected.value} -> {target.value}")
        return JobProgress.from_model(job)

    # Task registry

    def launch(self, job_id: int) -> asyncio.Task:
        """Start the run loop of a job unless one is already live."""
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            # The live loop may be about to stop on a stale status
            self._relaunch.add(job_id)
            return task

        task = asyncio.create_task(self.run(job_id), name=f"geocoding-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(functools.partial(self._on_task_done, job_id))
        return task

    def _on_task_done(self, job_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Geocoding task for job {job_id} crashed: {task.exception()!r}")

        if job_id in self._relaunch:
            self._relaunch.discard(job_id)
            if not self._closing:
                self.launch(job_id)

    def is_running(self, job_id: int) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def wait(self, job_id: int) -> None:
        """Wait until no task for the job is live in this process."""
        while True:
            task = self._tasks.get(job_id)
            if task is None or task.done():
                return
            await asyncio.wait({task})

    async def recover_interrupted(self) -> list[int]:
        """Relaunch jobs a previous process left ``pending`` or ``running``."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.GeocodingJob.id)
                .where(models.GeocodingJob.status.in_(list(LAUNCHABLE_JOB_STATUSES)))
                .order_by(models.GeocodingJob.id)
            )
            job_ids = list(result.scalars().all())

        for job_id in job_ids:
            self.launch(job_id)

        if job_ids:
            logger.info(f"Resumed {len(job_ids)} interrupted geocoding jobs: {job_ids}")
        return job_ids

    async def shutdown(self) -> None:
        """Cancel live tasks; their jobs stay ``running`` for recovery."""
        self._closing = True
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Stopped {len(tasks)} geocoding tasks")
        self._tasks.clear()

    # Run loop

    async def run(self, job_id: int) -> None:
        """Process a job to completion, pause, or failure.

        Any exception other than cancellation marks the job ``failed``.
        """
        counters: _Counters | None = None
        try:
            counters = await self._begin(job_id)
            if counters is None:
                return
            await self._process(job_id, counters)
        except asyncio.CancelledError:
            logger.info(f"Geocoding job {job_id} interrupted")
            raise
        except Exception as e:
            logger.error(f"Geocoding job {job_id} failed: {e}", exc_info=True)
            await self._mark_failed(job_id, str(e), counters)

    async def _begin(self, job_id: int) -> _Counters | None:
        async with self.session_factory() as session:
            job = await session.get(models.GeocodingJob, job_id)
            if job is None:
                raise GeocodingJobNotFoundError(job_id)

            result = await session.execute(
                update(models.GeocodingJob)
                .where(
                    models.GeocodingJob.id == job_id,
                    models.GeocodingJob.status.in_(list(LAUNCHABLE_JOB_STATUSES)),
                )
                .values(
                    status=GeocodingJobStatus.RUNNING,
                    started_at=job.started_at or models.utcnow(),
                    updated_at=models.utcnow(),
                )
            )
            await session.commit()

            if result.rowcount == 0:
                logger.info(f"Geocoding job {job_id} is {job.status.value}; not running it")
                return None

            logger.info(
                f"Geocoding job {job_id} running from voter id > {job.last_voter_id} "
                f"({job.processed_voters}/{job.total_voters} done)"
            )
            return _Counters.from_model(job)

    async def _process(self, job_id: int, counters: _Counters) -> None:
        async with self.session_factory() as session:
            job = await session.get(models.GeocodingJob, job_id)
            if job is None:
                raise GeocodingJobNotFoundError(job_id)
            version_id = job.version_id

            query = (
                select(
                    models.VoterRecord.id,
                    models.VoterRecord.address,
                    models.VoterRecord.postcode,
                    models.VoterRecord.district,
                    models.VoterRecord.locality_name,
                )
                .where(*_target_filters(version_id))
                .order_by(models.VoterRecord.id)
            )
            if counters.last_voter_id is not None:
                query = query.where(models.VoterRecord.id > counters.last_voter_id)
            targets = (await session.execute(query)).all()

        for voter_id, *parts in targets:
            status = await self._current_status(job_id)
            if status is not GeocodingJobStatus.RUNNING:
                await self._checkpoint(job_id, counters)
                logger.info(
                    f"Geocoding job {job_id} stopped at {counters.processed} processed "
                    f"(status: {status.value if status else 'missing'})"
                )
                return

            result: GeocodeResult | None = None
            address = build_address_line(parts)
            if not address:
                counters.skipped += 1
            else:
                try:
                    result = await self.geocoder.geocode(address)
                except GeocodingRequestError as e:
                    logger.warning(f"Geocoding voter {voter_id} failed: {e}")
                    result = None
                # Provider rate limit applies to every attempted request
                await self._throttle()

                if result is None:
                    counters.failed += 1
                else:
                    counters.geocoded += 1

            counters.processed += 1
            counters.last_voter_id = voter_id

            if result is not None:
                # The voter leaves the target set here, so its count goes with it
                await self._store_coordinates(job_id, voter_id, result, counters)
            elif counters.processed % self.checkpoint_every == 0:
                await self._checkpoint(job_id, counters)

        await self._complete(job_id, counters)

    async def _throttle(self) -> None:
        await asyncio.sleep(self.request_delay)

    async def _current_status(self, job_id: int) -> GeocodingJobStatus | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(models.GeocodingJob.status).where(models.GeocodingJob.id == job_id)
            )
            return result.scalar_one_or_none()

    async def _store_coordinates(
        self,
        job_id: int,
        voter_id: int,
        result: GeocodeResult,
        counters: _Counters,
    ) -> None:
        """Write a voter's coordinates and the job checkpoint in one transaction."""
        async with self.session_factory() as session:
            await session.execute(
                update(models.VoterRecord)
                .where(models.VoterRecord.id == voter_id)
                .values(lat=result.lat, lng=result.lng, updated_at=models.utcnow())
            )
            await session.execute(
                update(models.GeocodingJob)
                .where(models.GeocodingJob.id == job_id)
                .values(**counters.as_values())
            )
            await session.commit()

    async def _checkpoint(self, job_id: int, counters: _Counters) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(models.GeocodingJob)
                .where(models.GeocodingJob.id == job_id)
                .values(**counters.as_values())
            )
            await session.commit()

    async def _complete(self, job_id: int, counters: _Counters) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                update(models.GeocodingJob)
                .where(
                    models.GeocodingJob.id == job_id,
                    models.GeocodingJob.status == GeocodingJobStatus.RUNNING,
                )
                .values(
                    status=GeocodingJobStatus.COMPLETED,
                    completed_at=models.utcnow(),
                    **counters.as_values(),
                )
            )
            await session.commit()

        if result.rowcount == 0:
            # Paused after the last record; a resume completes it
            await self._checkpoint(job_id, counters)
            return

        logger.info(
            f"Geocoding job {job_id} completed: {counters.geocoded} geocoded, "
            f"{counters.failed} failed, {counters.skipped} skipped"
        )

    async def _mark_failed(self, job_id: int, message: str, counters: _Counters | None) -> None:
        values: dict[str, Any] = counters.as_values() if counters is not None else {"updated_at": models.utcnow()}
        async with self.session_factory() as session:
            await session.execute(
                update(models.GeocodingJob)
                .where(models.GeocodingJob.id == job_id)
                .values(
                    status=GeocodingJobStatus.FAILED,
                    error_message=message,
                    completed_at=models.utcnow(),
                    **values,
                )
            )
            await session.commit()
