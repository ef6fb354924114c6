from __future__ import annotations

import unittest
from datetime import date, datetime, time, timezone

from timeclock.errors import ApiError
from timeclock.models import Job, JobStatus, Site, TimeLog
from timeclock.services.checkin import attempt_check_in, attempt_check_out


class _FakeCheckinDB:
    def __init__(self, job: Job | None, open_log: TimeLog | None = None):
        self.job = job
        self.open_log = open_log
        self.added: list[object] = []
        self.commit_calls = 0

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        if model is Job and self.job is not None and pk == self.job.id:
            return self.job
        return None

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        return self.open_log

    def add(self, obj: object) -> None:
        self.added.append(obj)

    def commit(self) -> None:
        self.commit_calls += 1

    def refresh(self, obj: object) -> None:
        if getattr(obj, "id", None) is None:
            obj.id = 500  # type: ignore[attr-defined]


def _site(*, lat: float | None = 0.0, lng: float | None = 0.0, radius_m: int | None = 1000) -> Site:
    return Site(id=3, name="Office Tower", lat=lat, lng=lng, radius_m=radius_m)


def _job(*, status: JobStatus = JobStatus.PLANNED, site: Site | None = None, worker_id: int = 7) -> Job:
    return Job(
        id=11,
        site_id=3,
        worker_id=worker_id,
        job_date=date(2024, 1, 1),
        scheduled_time=time(8, 0),
        status=status,
        site=site if site is not None else _site(),
    )


class CheckInGateTests(unittest.TestCase):
    def _check_in(self, db: _FakeCheckinDB, **overrides):  # type: ignore[no-untyped-def]
        params = {"job_id": 11, "worker_id": 7, "lat": 0.0, "lng": 0.0089932, "accuracy_m": 10.0}
        params.update(overrides)
        return attempt_check_in(db, **params)  # type: ignore[arg-type]

    def test_admits_fix_inside_radius_and_starts_shift(self) -> None:
        job = _job()
        db = _FakeCheckinDB(job)
        now = datetime(2024, 1, 1, 8, 2, tzinfo=timezone.utc)

        time_log = self._check_in(db, now_utc=now)

        self.assertEqual(job.status, JobStatus.IN_PROGRESS)
        self.assertEqual(db.added, [time_log])
        self.assertEqual(db.commit_calls, 1)
        self.assertEqual(time_log.job_id, 11)
        self.assertEqual(time_log.worker_id, 7)
        self.assertEqual(time_log.started_at, now)
        self.assertIsNone(time_log.ended_at)
        self.assertEqual(time_log.start_accuracy_m, 10.0)

    def test_accuracy_at_threshold_is_accepted(self) -> None:
        db = _FakeCheckinDB(_job())
        self._check_in(db, accuracy_m=80.0)
        self.assertEqual(len(db.added), 1)

    def test_accuracy_above_threshold_is_poor_signal(self) -> None:
        db = _FakeCheckinDB(_job())
        with self.assertRaises(ApiError) as ctx:
            self._check_in(db, accuracy_m=81.0)

        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(ctx.exception.code, "GPS_ACCURACY_TOO_LOW")
        self.assertEqual(ctx.exception.details, {"accuracy_m": 81.0, "max_accuracy_m": 80.0})
        self.assertEqual(db.added, [])
        self.assertEqual(db.commit_calls, 0)

    def test_fix_outside_radius_is_too_far(self) -> None:
        job = _job()
        db = _FakeCheckinDB(job)
        with self.assertRaises(ApiError) as ctx:
            self._check_in(db, lng=0.02)

        self.assertEqual(ctx.exception.code, "TOO_FAR_FROM_SITE")
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(ctx.exception.details["radius_m"], 1000.0)  # type: ignore[index]
        self.assertGreater(ctx.exception.details["distance_m"], 2000)  # type: ignore[index]
        self.assertEqual(job.status, JobStatus.PLANNED)
        self.assertEqual(db.added, [])

    def test_done_shift_is_rejected_regardless_of_position(self) -> None:
        db = _FakeCheckinDB(_job(status=JobStatus.DONE))
        with self.assertRaises(ApiError) as ctx:
            self._check_in(db, lat=45.0, lng=45.0, accuracy_m=500.0)

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.code, "JOB_ALREADY_DONE")

    def test_unknown_job_is_not_found(self) -> None:
        db = _FakeCheckinDB(None)
        with self.assertRaises(ApiError) as ctx:
            self._check_in(db)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.code, "JOB_NOT_FOUND")

    def test_job_of_another_worker_is_forbidden(self) -> None:
        db = _FakeCheckinDB(_job(worker_id=99))
        with self.assertRaises(ApiError) as ctx:
            self._check_in(db)
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.code, "JOB_NOT_ASSIGNED")

    def test_site_without_radius_is_not_configured(self) -> None:
        db = _FakeCheckinDB(_job(site=_site(radius_m=None)))
        with self.assertRaises(ApiError) as ctx:
            self._check_in(db)
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.code, "SITE_NOT_CONFIGURED")

    def test_site_without_coordinates_is_not_configured(self) -> None:
        db = _FakeCheckinDB(_job(site=_site(lat=None)))
        with self.assertRaises(ApiError) as ctx:
            self._check_in(db)
        self.assertEqual(ctx.exception.code, "SITE_NOT_CONFIGURED")

    def test_poor_signal_is_checked_before_distance(self) -> None:
        db = _FakeCheckinDB(_job())
        with self.assertRaises(ApiError) as ctx:
            self._check_in(db, lng=0.5, accuracy_m=150.0)
        self.assertEqual(ctx.exception.code, "GPS_ACCURACY_TOO_LOW")

    def test_re_entry_on_started_shift_appends_another_log(self) -> None:
        job = _job(status=JobStatus.IN_PROGRESS)
        db = _FakeCheckinDB(job)

        self._check_in(db)

        self.assertEqual(job.status, JobStatus.IN_PROGRESS)
        self.assertEqual(len(db.added), 1)
        self.assertIsInstance(db.added[0], TimeLog)


class CheckOutTests(unittest.TestCase):
    def _open_log(self) -> TimeLog:
        return TimeLog(
            id=41,
            job_id=11,
            worker_id=7,
            started_at=datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc),
        )

    def test_check_out_closes_open_log_and_finishes_shift(self) -> None:
        job = _job(status=JobStatus.IN_PROGRESS)
        open_log = self._open_log()
        db = _FakeCheckinDB(job, open_log=open_log)
        now = datetime(2024, 1, 1, 10, 30, tzinfo=timezone.utc)

        result = attempt_check_out(db, job_id=11, worker_id=7, lat=0.0, lng=0.001, accuracy_m=12.0, now_utc=now)  # type: ignore[arg-type]

        self.assertIs(result, open_log)
        self.assertEqual(open_log.ended_at, now)
        self.assertEqual(open_log.end_lng, 0.001)
        self.assertEqual(open_log.end_accuracy_m, 12.0)
        self.assertEqual(job.status, JobStatus.DONE)
        self.assertEqual(db.commit_calls, 1)

    def test_check_out_without_open_log_is_rejected(self) -> None:
        job = _job(status=JobStatus.IN_PROGRESS)
        db = _FakeCheckinDB(job, open_log=None)
        with self.assertRaises(ApiError) as ctx:
            attempt_check_out(db, job_id=11, worker_id=7, lat=0.0, lng=0.0, accuracy_m=5.0)  # type: ignore[arg-type]

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.code, "NO_ACTIVE_SESSION")
        self.assertEqual(job.status, JobStatus.IN_PROGRESS)

    def test_check_out_falls_back_to_default_radius(self) -> None:
        job = _job(status=JobStatus.IN_PROGRESS, site=_site(radius_m=None))
        db = _FakeCheckinDB(job, open_log=self._open_log())

        # About 133 m east of the site center.
        attempt_check_out(db, job_id=11, worker_id=7, lat=0.0, lng=0.0012, accuracy_m=5.0)  # type: ignore[arg-type]
        self.assertEqual(job.status, JobStatus.DONE)

        far_job = _job(status=JobStatus.IN_PROGRESS, site=_site(radius_m=None))
        far_db = _FakeCheckinDB(far_job, open_log=self._open_log())
        with self.assertRaises(ApiError) as ctx:
            attempt_check_out(far_db, job_id=11, worker_id=7, lat=0.0, lng=0.002, accuracy_m=5.0)  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "TOO_FAR_FROM_SITE")
        self.assertEqual(ctx.exception.details["radius_m"], 150.0)  # type: ignore[index]

    def test_check_out_on_planned_shift_is_invalid_transition(self) -> None:
        job = _job(status=JobStatus.PLANNED)
        db = _FakeCheckinDB(job, open_log=self._open_log())
        with self.assertRaises(ApiError) as ctx:
            attempt_check_out(db, job_id=11, worker_id=7, lat=0.0, lng=0.0, accuracy_m=5.0)  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "INVALID_STATUS_TRANSITION")
        self.assertEqual(db.commit_calls, 0)


if __name__ == "__main__":
    unittest.main()
