"""
Tests for pipelines/geocoding.py - the resumable geocoding job engine.
"""

import asyncio

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from roster import models
from roster.config import settings
from roster.geocoder import GeocodeResult, GeocodingRequestError
from roster.models import GeocodingJobStatus
from roster.pipelines.geocoding import (
    GeocodingJobEngine,
    GeocodingJobNotFoundError,
    InvalidJobStateError,
    NothingToGeocodeError,
    build_address_line,
)
from roster.pipelines.versions import RosterVersionNotFoundError, create_version


class FakeGeocoder:
    """Scripted geocoder; addresses map to a result, None, or an exception."""

    def __init__(self, outcomes=None, default=GeocodeResult(lat=5.98, lng=116.07), on_call=None):
        self.outcomes = outcomes or {}
        self.default = default
        self.on_call = on_call
        self.calls = []

    async def geocode(self, address):
        self.calls.append(address)
        if self.on_call is not None:
            await self.on_call(len(self.calls))
        outcome = self.outcomes.get(address, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _seed(factory, addresses):
    """Create a version with one voter per address; returns (version_id, voter_ids)."""
    async with factory() as session:
        version = await create_version(session, name="PRU15")
        voters = [
            models.VoterRecord(version_id=version.id, name=f"Voter {i}", address=address)
            for i, address in enumerate(addresses)
        ]
        session.add_all(voters)
        await session.commit()
        return version.id, [v.id for v in voters]


async def _job_row(factory, job_id):
    async with factory() as session:
        return await session.get(models.GeocodingJob, job_id)


def _assert_consistent(job):
    assert job.processed_voters == job.geocoded_count + job.failed_count + job.skipped_count


class TestAddressLine:
    """Test address composition."""

    def test_blank_parts_dropped(self):
        assert build_address_line(["Lot 12", "  ", None, " Kampung Likas "]) == "Lot 12, Kampung Likas"

    def test_all_blank(self):
        assert build_address_line([" ", None, ""]) == ""


class TestCreateJob:
    """Test job creation and the one-active-job rule."""

    def test_create_is_idempotent(self, store):
        async def scenario():
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1", "Jalan 2"])
                async with factory() as session:
                    # Already geocoded, no address, empty address: not targets
                    session.add_all([
                        models.VoterRecord(version_id=version_id, name="Done", address="Jalan 3", lat=1.0, lng=2.0),
                        models.VoterRecord(version_id=version_id, name="Nowhere"),
                        models.VoterRecord(version_id=version_id, name="Empty", address=""),
                    ])
                    await session.commit()

                engine = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0)
                first, created_first = await engine.create_job(version_id, created_by=7)
                second, created_second = await engine.create_job(version_id)
                return first, created_first, second, created_second

        first, created_first, second, created_second = asyncio.run(scenario())

        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert first.status is GeocodingJobStatus.PENDING
        assert first.total_voters == 2

    def test_nothing_to_geocode(self, store):
        async def scenario():
            async with store() as factory:
                version_id, _ = await _seed(factory, [None, ""])
                engine = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0)
                with pytest.raises(NothingToGeocodeError, match="No voters found that need geocoding"):
                    await engine.create_job(version_id)

        asyncio.run(scenario())

    def test_unknown_version(self, store):
        async def scenario():
            async with store() as factory:
                engine = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0)
                with pytest.raises(RosterVersionNotFoundError):
                    await engine.create_job(31337)

        asyncio.run(scenario())

    def test_database_rejects_second_active_job(self, store):
        async def scenario():
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1"])
                async with factory() as session:
                    session.add(models.GeocodingJob(version_id=version_id, status=GeocodingJobStatus.RUNNING))
                    await session.commit()
                    session.add(models.GeocodingJob(version_id=version_id, status=GeocodingJobStatus.PAUSED))
                    with pytest.raises(IntegrityError):
                        await session.commit()
                    await session.rollback()
                    # Terminal jobs do not count
                    session.add(models.GeocodingJob(version_id=version_id, status=GeocodingJobStatus.COMPLETED))
                    await session.commit()

        asyncio.run(scenario())


class TestRunLoop:
    """Test processing outcomes."""

    def test_run_to_completion(self, store):
        outcomes = {
            "Jalan Gagal": None,
            "Jalan Rosak": GeocodingRequestError("HTTP 500"),
        }
        geocoder = FakeGeocoder(outcomes=outcomes)

        async def scenario():
            async with store() as factory:
                version_id, voter_ids = await _seed(factory, ["Jalan 1", "Jalan Gagal", "   ", "Jalan Rosak", "Jalan 5"])
                engine = GeocodingJobEngine(factory, geocoder, request_delay=0, checkpoint_every=2)
                job, created = await engine.start_job(version_id)
                assert created
                await engine.wait(job.id)

                async with factory() as session:
                    result = await session.execute(
                        select(models.VoterRecord.lat, models.VoterRecord.lng).order_by(models.VoterRecord.id)
                    )
                    coords = result.all()
                latest = await engine.latest_job(version_id)
                return await _job_row(factory, job.id), coords, latest, voter_ids

        job, coords, latest, voter_ids = asyncio.run(scenario())

        assert job.status is GeocodingJobStatus.COMPLETED
        assert job.completed_at is not None and job.started_at is not None
        assert (job.processed_voters, job.geocoded_count, job.failed_count, job.skipped_count) == (5, 2, 2, 1)
        assert job.processed_voters == job.total_voters
        assert job.last_voter_id == voter_ids[-1]
        _assert_consistent(job)
        # Whitespace-only address never reaches the provider
        assert geocoder.calls == ["Jalan 1", "Jalan Gagal", "Jalan Rosak", "Jalan 5"]
        assert coords[0] == (5.98, 116.07)
        assert coords[1] == (None, None)
        assert latest.id == job.id and latest.status is GeocodingJobStatus.COMPLETED

    def test_address_parts_joined(self, store):
        geocoder = FakeGeocoder()

        async def scenario():
            async with store() as factory:
                async with factory() as session:
                    version = await create_version(session, name="PRU15")
                    session.add(models.VoterRecord(
                        version_id=version.id,
                        name="Ali",
                        address="Lot 12",
                        postcode="88300",
                        district=" ",
                        locality_name="Kampung Likas",
                    ))
                    await session.commit()
                engine = GeocodingJobEngine(factory, geocoder, request_delay=0)
                job, _ = await engine.start_job(version.id)
                await engine.wait(job.id)

        asyncio.run(scenario())
        assert geocoder.calls == ["Lot 12, 88300, Kampung Likas"]

    def test_unexpected_error_fails_job(self, store):
        geocoder = FakeGeocoder(outcomes={"Jalan 2": RuntimeError("provider exploded")})

        async def scenario():
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1", "Jalan 2", "Jalan 3"])
                engine = GeocodingJobEngine(factory, geocoder, request_delay=0)
                job, _ = await engine.start_job(version_id)
                await engine.wait(job.id)
                failed = await engine.get_job(job.id)

                # A failed job no longer blocks a new one
                retry, created = await engine.create_job(version_id)
                return failed, retry, created

        failed, retry, created = asyncio.run(scenario())

        assert failed.status is GeocodingJobStatus.FAILED
        assert failed.error_message == "provider exploded"
        assert failed.completed_at is not None
        assert failed.processed_voters == 1
        assert created is True
        assert retry.id != failed.id
        assert retry.total_voters == 2

    def test_run_ignores_terminal_job(self, store):
        geocoder = FakeGeocoder()

        async def scenario():
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1"])
                engine = GeocodingJobEngine(factory, geocoder, request_delay=0)
                job, _ = await engine.create_job(version_id)
                async with factory() as session:
                    await session.execute(
                        update(models.GeocodingJob)
                        .where(models.GeocodingJob.id == job.id)
                        .values(status=GeocodingJobStatus.COMPLETED)
                    )
                    await session.commit()
                await engine.run(job.id)
                return await engine.get_job(job.id)

        job = asyncio.run(scenario())
        assert job.status is GeocodingJobStatus.COMPLETED
        assert geocoder.calls == []


    def test_wait_follows_every_provider_call(self, store):
        outcomes = {
            "Jalan Gagal": None,
            "Jalan Rosak": GeocodingRequestError("HTTP 500"),
        }
        geocoder = FakeGeocoder(outcomes=outcomes)
        waits = []

        class RecordingEngine(GeocodingJobEngine):
            async def _throttle(self):
                waits.append(len(geocoder.calls))

        async def scenario():
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1", "Jalan Gagal", "   ", "Jalan Rosak", "Jalan 5"])
                engine = RecordingEngine(factory, geocoder, request_delay=0)
                job, _ = await engine.start_job(version_id)
                await engine.wait(job.id)

        asyncio.run(scenario())

        # Success, no result and request error each wait once; the skipped record does not
        assert waits == [1, 2, 3, 4]
        assert len(geocoder.calls) == 4

    def test_default_delay_honours_provider_limit(self):
        engine = GeocodingJobEngine(None, FakeGeocoder())
        assert engine.request_delay == settings.geocoding.request_delay_seconds
        assert engine.request_delay >= 1.0

    def test_job_failed_mid_run_stops_loop(self, store):
        holder = {}

        async def fail_on_second_call(call_count):
            if call_count == 2:
                async with holder["factory"]() as session:
                    await session.execute(
                        update(models.GeocodingJob)
                        .where(models.GeocodingJob.id == holder["job_id"])
                        .values(status=GeocodingJobStatus.FAILED, error_message="stopped by operator")
                    )
                    await session.commit()

        geocoder = FakeGeocoder(on_call=fail_on_second_call)

        async def scenario():
            async with store() as factory:
                version_id, voter_ids = await _seed(factory, ["Jalan 1", "Jalan 2", "Jalan 3", "Jalan 4"])
                engine = GeocodingJobEngine(factory, geocoder, request_delay=0)
                job, _ = await engine.create_job(version_id)
                holder.update(factory=factory, job_id=job.id)
                engine.launch(job.id)
                await engine.wait(job.id)
                return await _job_row(factory, job.id), voter_ids

        job, voter_ids = asyncio.run(scenario())

        assert job.status is GeocodingJobStatus.FAILED
        assert job.completed_at is None
        assert job.error_message == "stopped by operator"
        assert geocoder.calls == ["Jalan 1", "Jalan 2"]
        assert job.processed_voters == 2
        assert job.last_voter_id == voter_ids[1]
        _assert_consistent(job)


class TestPauseResume:
    """Test the pause/resume state machine."""

    def test_preconditions(self, store):
        async def scenario():
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1"])
                engine = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0)
                job, _ = await engine.create_job(version_id)

                with pytest.raises(InvalidJobStateError) as pause_error:
                    await engine.pause_job(job.id)
                with pytest.raises(InvalidJobStateError) as resume_error:
                    await engine.resume_job(job.id)
                with pytest.raises(GeocodingJobNotFoundError):
                    await engine.pause_job(9999)
                with pytest.raises(GeocodingJobNotFoundError):
                    await engine.get_job(9999)
                return str(pause_error.value), str(resume_error.value), pause_error.value.current_status

        pause_message, resume_message, current = asyncio.run(scenario())

        assert pause_message == "Cannot pause job: Job is not running (current status: pending)"
        assert resume_message == "Cannot resume job: Job is not paused (current status: pending)"
        assert current is GeocodingJobStatus.PENDING

    def test_pause_then_resume_finishes_every_voter_once(self, store):
        holder = {}

        async def pause_on_second_call(call_count):
            if call_count == 2:
                await holder["engine"].pause_job(holder["job_id"])

        geocoder = FakeGeocoder(on_call=pause_on_second_call)

        async def scenario():
            async with store() as factory:
                version_id, voter_ids = await _seed(factory, [f"Jalan {i}" for i in range(1, 6)])
                engine = GeocodingJobEngine(factory, geocoder, request_delay=0, checkpoint_every=10)
                job, _ = await engine.create_job(version_id)
                holder.update(engine=engine, job_id=job.id)

                engine.launch(job.id)
                await engine.wait(job.id)
                paused = await _job_row(factory, job.id)

                with pytest.raises(InvalidJobStateError):
                    await engine.pause_job(job.id)

                await engine.resume_job(job.id)
                await engine.wait(job.id)
                finished = await _job_row(factory, job.id)
                return paused, finished, voter_ids

        paused, finished, voter_ids = asyncio.run(scenario())

        # The record in flight completes before the loop notices the pause
        assert paused.status is GeocodingJobStatus.PAUSED
        assert paused.processed_voters == 2
        assert paused.last_voter_id == voter_ids[1]
        _assert_consistent(paused)

        assert finished.status is GeocodingJobStatus.COMPLETED
        assert finished.processed_voters == finished.total_voters == 5
        assert finished.geocoded_count == 5
        _assert_consistent(finished)
        assert geocoder.calls == [f"Jalan {i}" for i in range(1, 6)]

    def test_launch_reuses_live_task(self, store):
        release = None

        async def hold(call_count):
            await release.wait()

        async def scenario():
            nonlocal release
            release = asyncio.Event()
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1"])
                engine = GeocodingJobEngine(factory, FakeGeocoder(on_call=hold), request_delay=0)
                job, _ = await engine.create_job(version_id)
                first = engine.launch(job.id)
                second = engine.launch(job.id)
                running = engine.is_running(job.id)
                release.set()
                await engine.wait(job.id)
                return first is second, running, await engine.get_job(job.id)

        same, running, job = asyncio.run(scenario())
        assert same
        assert running
        assert job.status is GeocodingJobStatus.COMPLETED


class TestRecovery:
    """Test shutdown and start-up recovery."""

    def test_cancelled_job_stays_running_and_recovers(self, store):
        started = None

        async def block_first_call(call_count):
            if call_count == 1:
                started.set()
                await asyncio.Event().wait()

        async def scenario():
            nonlocal started
            started = asyncio.Event()
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1", "Jalan 2"])

                engine = GeocodingJobEngine(factory, FakeGeocoder(on_call=block_first_call), request_delay=0)
                job, _ = await engine.start_job(version_id)
                await started.wait()
                await engine.shutdown()
                interrupted = await engine.get_job(job.id)

                # A fresh process picks the job up again
                recovering = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0)
                recovered_ids = await recovering.recover_interrupted()
                await recovering.wait(job.id)
                return interrupted, recovered_ids, await recovering.get_job(job.id)

        interrupted, recovered_ids, finished = asyncio.run(scenario())

        assert interrupted.status is GeocodingJobStatus.RUNNING
        assert interrupted.processed_voters == 0
        assert recovered_ids == [finished.id]
        assert finished.status is GeocodingJobStatus.COMPLETED
        assert finished.processed_voters == 2

    def test_job_cancelled_before_starting_is_recovered(self, store):
        async def scenario():
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1", "Jalan 2"])

                engine = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0)
                job, _ = await engine.start_job(version_id)
                # Stopped before the task ever ran
                await engine.shutdown()
                stranded = await engine.get_job(job.id)

                recovering = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0)
                recovered_ids = await recovering.recover_interrupted()
                await recovering.wait(job.id)
                return stranded, recovered_ids, await recovering.get_job(job.id)

        stranded, recovered_ids, finished = asyncio.run(scenario())

        assert stranded.status is GeocodingJobStatus.PENDING
        assert recovered_ids == [finished.id]
        assert finished.status is GeocodingJobStatus.COMPLETED
        assert finished.processed_voters == finished.total_voters == 2

    def test_start_job_relaunches_stranded_job(self, store):
        async def scenario():
            async with store() as factory:
                version_id, _ = await _seed(factory, ["Jalan 1", "Jalan 2"])

                engine = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0)
                job, _ = await engine.start_job(version_id)
                await engine.shutdown()

                restarted = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0)
                again, created = await restarted.start_job(version_id)
                running = restarted.is_running(job.id)
                await restarted.wait(job.id)
                return job, again, created, running, await restarted.get_job(job.id)

        job, again, created, running, finished = asyncio.run(scenario())

        assert created is False
        assert again.id == job.id
        assert running
        assert finished.status is GeocodingJobStatus.COMPLETED
        assert finished.processed_voters == 2

    def test_counts_survive_interruption_between_checkpoints(self, store):
        started = None

        async def block_third_call(call_count):
            if call_count == 3:
                started.set()
                await asyncio.Event().wait()

        async def scenario():
            nonlocal started
            started = asyncio.Event()
            async with store() as factory:
                version_id, _ = await _seed(factory, [f"Jalan {i}" for i in range(1, 6)])

                engine = GeocodingJobEngine(
                    factory, FakeGeocoder(on_call=block_third_call), request_delay=0, checkpoint_every=10
                )
                job, _ = await engine.start_job(version_id)
                await started.wait()
                await engine.shutdown()
                interrupted = await engine.get_job(job.id)

                recovering = GeocodingJobEngine(factory, FakeGeocoder(), request_delay=0, checkpoint_every=10)
                await recovering.recover_interrupted()
                await recovering.wait(job.id)
                return interrupted, await _job_row(factory, job.id)

        interrupted, finished = asyncio.run(scenario())

        # Stored coordinates are always counted
        assert interrupted.processed_voters == interrupted.geocoded_count == 2
        assert finished.status is GeocodingJobStatus.COMPLETED
        assert finished.processed_voters == finished.total_voters == 5
        assert finished.geocoded_count == 5
        _assert_consistent(finished)
