from __future__ import annotations

import unittest
from datetime import date, datetime, time, timedelta, timezone

from timeclock.errors import ApiError
from timeclock.models import Job, JobStatus, Profile, Site, TimeLog
from timeclock.services.jobs import (
    advance_job_status,
    can_transition,
    cancel_job,
    collect_actuals,
    create_jobs,
    parse_clock_time,
    parse_duration_minutes,
    planned_end_time,
    set_actual_minutes,
    update_job,
)


class _FakeJobsDB:
    def __init__(self, *, job: Job | None = None, scalar_value: object = None):
        self.job = job
        self.scalar_value = scalar_value
        self.site = Site(id=3, name="Office Tower", lat=0.0, lng=0.0, radius_m=80)
        self.workers = {
            7: Profile(id=7, email="ana@example.com", full_name="Ana", password_hash="x"),
            8: Profile(id=8, email="ben@example.com", full_name="Ben", password_hash="x"),
        }
        self.added: list[object] = []
        self.deleted: list[object] = []
        self.commit_calls = 0

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        if model is Job and self.job is not None and pk == self.job.id:
            return self.job
        if model is Site and pk == self.site.id:
            return self.site
        if model is Profile:
            return self.workers.get(pk)
        return None

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        return self.scalar_value

    def add(self, obj: object) -> None:
        self.added.append(obj)

    def delete(self, obj: object) -> None:
        self.deleted.append(obj)

    def commit(self) -> None:
        self.commit_calls += 1

    def refresh(self, _obj: object) -> None:
        return


def _job(status: JobStatus = JobStatus.PLANNED) -> Job:
    return Job(
        id=11,
        site_id=3,
        worker_id=7,
        job_date=date(2024, 1, 1),
        scheduled_time=time(8, 0),
        status=status,
    )


class JobStatusMachineTests(unittest.TestCase):
    def test_forward_transitions_are_allowed(self) -> None:
        self.assertTrue(can_transition(JobStatus.PLANNED, JobStatus.IN_PROGRESS))
        self.assertTrue(can_transition(JobStatus.IN_PROGRESS, JobStatus.DONE))

    def test_backward_and_skipping_transitions_are_rejected(self) -> None:
        self.assertFalse(can_transition(JobStatus.DONE, JobStatus.PLANNED))
        self.assertFalse(can_transition(JobStatus.IN_PROGRESS, JobStatus.PLANNED))
        self.assertFalse(can_transition(JobStatus.PLANNED, JobStatus.DONE))

    def test_advance_raises_with_from_and_to(self) -> None:
        job = _job(JobStatus.DONE)
        with self.assertRaises(ApiError) as ctx:
            advance_job_status(job, JobStatus.PLANNED)

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.code, "INVALID_STATUS_TRANSITION")
        self.assertEqual(ctx.exception.details, {"from": "done", "to": "planned"})
        self.assertEqual(job.status, JobStatus.DONE)

    def test_advance_to_same_status_is_noop(self) -> None:
        job = _job(JobStatus.IN_PROGRESS)
        self.assertFalse(advance_job_status(job, JobStatus.IN_PROGRESS))
        self.assertTrue(advance_job_status(job, JobStatus.DONE))
        self.assertEqual(job.status, JobStatus.DONE)


class JobParsingTests(unittest.TestCase):
    def test_parse_clock_time_pads_seconds(self) -> None:
        self.assertEqual(parse_clock_time("8:05"), time(8, 5, 0))
        self.assertEqual(parse_clock_time("17:30:15"), time(17, 30, 15))

    def test_parse_clock_time_rejects_garbage(self) -> None:
        for raw in ("", "25:00", "12:60", "noon"):
            with self.subTest(raw=raw):
                with self.assertRaises(ApiError) as ctx:
                    parse_clock_time(raw)
                self.assertEqual(ctx.exception.code, "INVALID_TIME")

    def test_parse_duration_accepts_minutes_or_hm(self) -> None:
        self.assertEqual(parse_duration_minutes(minutes=95, hm=None), 95)
        self.assertEqual(parse_duration_minutes(minutes=None, hm="3:30"), 210)
        with self.assertRaises(ApiError) as ctx:
            parse_duration_minutes(minutes=None, hm="3h")
        self.assertEqual(ctx.exception.code, "INVALID_DURATION")

    def test_planned_end_time_wraps_past_midnight(self) -> None:
        self.assertEqual(planned_end_time(time(22, 30), 120), "00:30")
        self.assertEqual(planned_end_time(time(8, 0), 90), "09:30")
        self.assertIsNone(planned_end_time(time(8, 0), None))

    def test_collect_actuals_uses_earliest_start_and_latest_end(self) -> None:
        base = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        logs = [
            TimeLog(job_id=1, worker_id=7, started_at=base + timedelta(hours=2), ended_at=None),
            TimeLog(job_id=1, worker_id=7, started_at=base, ended_at=base + timedelta(hours=1)),
        ]
        actuals = collect_actuals(logs)
        self.assertEqual(actuals.started_at, base)
        self.assertEqual(actuals.ended_at, base + timedelta(hours=1))


class JobAdminOperationTests(unittest.TestCase):
    def test_create_jobs_makes_one_planned_shift_per_worker(self) -> None:
        db = _FakeJobsDB()
        jobs = create_jobs(
            db,  # type: ignore[arg-type]
            site_id=3,
            worker_ids=[7, 8, 7],
            job_date=date(2024, 1, 2),
            scheduled_time="08:00",
            scheduled_end_time="12:15",
        )

        self.assertEqual([job.worker_id for job in jobs], [7, 8])
        self.assertTrue(all(job.status == JobStatus.PLANNED for job in jobs))
        self.assertEqual(jobs[0].scheduled_time, time(8, 0, 0))
        self.assertEqual(jobs[0].scheduled_end_time, time(12, 15, 0))
        self.assertEqual(db.commit_calls, 1)

    def test_create_jobs_rejects_unknown_worker(self) -> None:
        db = _FakeJobsDB()
        with self.assertRaises(ApiError) as ctx:
            create_jobs(db, site_id=3, worker_ids=[42], job_date=date(2024, 1, 2), scheduled_time="08:00")  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "WORKER_NOT_FOUND")
        self.assertEqual(db.added, [])

    def test_update_job_refuses_reassignment_after_start(self) -> None:
        job = _job(JobStatus.IN_PROGRESS)
        db = _FakeJobsDB(job=job)
        with self.assertRaises(ApiError) as ctx:
            update_job(db, job, {"worker_id": 8})  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "JOB_NOT_PLANNED")
        self.assertEqual(job.worker_id, 7)

    def test_update_job_reassigns_planned_shift(self) -> None:
        job = _job()
        db = _FakeJobsDB(job=job)
        update_job(db, job, {"worker_id": 8, "scheduled_time": "09:45"})  # type: ignore[arg-type]
        self.assertEqual(job.worker_id, 8)
        self.assertEqual(job.scheduled_time, time(9, 45))

    def test_update_job_rejects_cancelled_status(self) -> None:
        job = _job()
        with self.assertRaises(ApiError) as ctx:
            update_job(_FakeJobsDB(job=job), job, {"status": "cancelled"})  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "USE_CANCEL_ENDPOINT")

    def test_update_job_status_goes_through_status_machine(self) -> None:
        job = _job()
        with self.assertRaises(ApiError) as ctx:
            update_job(_FakeJobsDB(job=job), job, {"status": "done"})  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "INVALID_STATUS_TRANSITION")

    def test_update_job_cannot_start_shift_without_time_logs(self) -> None:
        for current, target in ((JobStatus.PLANNED, "in_progress"), (JobStatus.IN_PROGRESS, "done")):
            with self.subTest(target=target):
                job = _job(current)
                db = _FakeJobsDB(job=job, scalar_value=None)
                with self.assertRaises(ApiError) as ctx:
                    update_job(db, job, {"status": target, "planned_minutes": 90})  # type: ignore[arg-type]
                self.assertEqual(ctx.exception.status_code, 409)
                self.assertEqual(ctx.exception.code, "NO_TIME_LOGS")
                self.assertEqual(job.status, current)
                self.assertIsNone(job.planned_minutes)
                self.assertEqual(db.commit_calls, 0)

    def test_update_job_advances_status_when_work_is_logged(self) -> None:
        job = _job(JobStatus.IN_PROGRESS)
        db = _FakeJobsDB(job=job, scalar_value=41)
        update_job(db, job, {"status": "done"})  # type: ignore[arg-type]
        self.assertEqual(job.status, JobStatus.DONE)
        self.assertEqual(db.commit_calls, 1)

    def test_cancel_deletes_planned_shift(self) -> None:
        job = _job()
        db = _FakeJobsDB(job=job, scalar_value=None)
        cancel_job(db, 11)  # type: ignore[arg-type]
        self.assertEqual(db.deleted, [job])
        self.assertEqual(db.commit_calls, 1)

    def test_cancel_refuses_started_shift(self) -> None:
        for status in (JobStatus.IN_PROGRESS, JobStatus.DONE):
            with self.subTest(status=status):
                db = _FakeJobsDB(job=_job(status))
                with self.assertRaises(ApiError) as ctx:
                    cancel_job(db, 11)  # type: ignore[arg-type]
                self.assertEqual(ctx.exception.status_code, 409)
                self.assertEqual(ctx.exception.code, "JOB_NOT_CANCELLABLE")
                self.assertEqual(db.deleted, [])

    def test_cancel_refuses_planned_shift_with_time_logs(self) -> None:
        db = _FakeJobsDB(job=_job(), scalar_value=99)
        with self.assertRaises(ApiError) as ctx:
            cancel_job(db, 11)  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "JOB_NOT_CANCELLABLE")

    def test_set_actual_minutes_closes_first_log(self) -> None:
        started = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        time_log = TimeLog(id=5, job_id=11, worker_id=7, started_at=started)
        db = _FakeJobsDB(job=_job(JobStatus.IN_PROGRESS), scalar_value=time_log)

        result = set_actual_minutes(db, 11, 210)  # type: ignore[arg-type]

        self.assertIs(result, time_log)
        self.assertEqual(time_log.started_at, started)
        self.assertEqual(time_log.ended_at, started + timedelta(minutes=210))

    def test_set_actual_minutes_without_logs(self) -> None:
        db = _FakeJobsDB(job=_job(), scalar_value=None)
        with self.assertRaises(ApiError) as ctx:
            set_actual_minutes(db, 11, 30)  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "NO_TIME_LOGS")


if __name__ == "__main__":
    unittest.main()
