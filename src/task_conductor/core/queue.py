"""Durable job queue on sqlite, and the worker pool that drains it.

Every queue class shares the ``jobs`` table. At most one waiting or active job
exists per ``(queue, job_key)``, enforced by a partial unique index, so
enqueueing the same task twice merges instead of duplicating.
A paused queue class keeps accepting jobs but hands none out until resumed.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Callable

from task_conductor.core.errors import WorkerStopping
from task_conductor.db.engine import get_db, parse_dt, utcnow
from task_conductor.db.models import Job, JobPriority, JobStatus, QueueClass, TaskType

logger = logging.getLogger(__name__)

JobListener = Callable[[str, Job], None]
JobHandler = Callable[[Job], dict | None]


def _value(v):
    return getattr(v, "value", v)


def queue_for_task_type(task_type: TaskType | str) -> QueueClass:
    """Queue class that executes tasks of the given type."""
    if TaskType(_value(task_type)) in (TaskType.TEST, TaskType.TESTING):
        return QueueClass.TEST_EXECUTION
    return QueueClass.AGENT_EXECUTION


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        queue=QueueClass(row["queue"]),
        job_key=row["job_key"],
        task_id=row["task_id"],
        payload=json.loads(row["payload"] or "{}"),
        priority=row["priority"],
        status=JobStatus(row["status"]),
        attempts=row["attempts"] or 0,
        max_attempts=row["max_attempts"],
        backoff_delay=row["backoff_delay"],
        run_after=parse_dt(row["run_after"]),
        rerun_requested=bool(row["rerun_requested"]),
        last_error=row["last_error"],
        result=json.loads(row["result"]) if row["result"] else None,
        worker_id=row["worker_id"],
        created_at=parse_dt(row["created_at"]),
        started_at=parse_dt(row["started_at"]),
        finished_at=parse_dt(row["finished_at"]),
    )


class JobQueue:
    """Priority job queue with delayed retries and bounded history."""

    def __init__(
        self,
        db_path: Path,
        default_attempts: int = 3,
        backoff_delay: float = 2.0,
        keep_completed: int = 100,
        keep_failed: int = 500,
    ):
        self.db_path = db_path
        self.default_attempts = default_attempts
        self.backoff_delay = backoff_delay
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self._listeners: list[JobListener] = []

    # ── Listeners ───────────────────────────────────────────────────────────

    def add_listener(self, listener: JobListener):
        self._listeners.append(listener)

    def _emit(self, event: str, job: Job):
        log = logger.warning if event in ("failed", "stalled") else logger.info
        log(
            "Job %s [%s/%s] %s (attempt %s/%s)",
            job.id, job.queue.value, job.job_key, event, job.attempts, job.max_attempts,
        )
        for listener in list(self._listeners):
            try:
                listener(event, job)
            except Exception:
                logger.exception("Job listener failed on %s for job %s", event, job.id)

    # ── Producing ───────────────────────────────────────────────────────────

    def enqueue(
        self,
        queue: QueueClass | str,
        key: str,
        task_id: str | None = None,
        payload: dict | None = None,
        priority: int = JobPriority.NORMAL,
        delay: float = 0.0,
        max_attempts: int | None = None,
    ) -> Job:
        """Add a job, or merge into the open job with the same key.

        A waiting job keeps the better priority and the earlier start time. An
        active job is flagged to run again once its current attempt finishes.
        """
        queue = QueueClass(_value(queue))
        priority = int(priority)
        run_after = utcnow(delay)
        payload_json = json.dumps(payload or {})
        with get_db(self.db_path, initialize=False) as db:
            # A concurrent finish can close the open job between the failed
            # insert and the merge, so try again a few times.
            for _ in range(5):
                try:
                    cur = db.execute(
                        """INSERT INTO jobs (queue, job_key, task_id, payload, priority, status,
                                             max_attempts, backoff_delay, run_after, created_at)
                           VALUES (?, ?, ?, ?, ?, 'waiting', ?, ?, ?, ?)""",
                        (
                            queue.value, key, task_id, payload_json, priority,
                            max_attempts or self.default_attempts, self.backoff_delay,
                            run_after, utcnow(),
                        ),
                    )
                    db.commit()
                    job = self._get(db, cur.lastrowid)
                    self._emit("enqueued", job)
                    return job
                except sqlite3.IntegrityError:
                    db.rollback()

                existing = self._find_open(db, queue, key)
                if existing is None:
                    continue
                if existing.status == JobStatus.WAITING:
                    cur = db.execute(
                        """UPDATE jobs
                           SET priority = MIN(priority, ?), run_after = MIN(run_after, ?),
                               payload = CASE WHEN ? = '{}' THEN payload ELSE ? END
                           WHERE id = ? AND status = 'waiting'""",
                        (priority, run_after, payload_json, payload_json, existing.id),
                    )
                else:
                    cur = db.execute(
                        """UPDATE jobs
                           SET rerun_requested = 1, priority = MIN(priority, ?), run_after = ?,
                               payload = CASE WHEN ? = '{}' THEN payload ELSE ? END
                           WHERE id = ? AND status = 'active'""",
                        (priority, run_after, payload_json, payload_json, existing.id),
                    )
                db.commit()
                if cur.rowcount:
                    job = self._get(db, existing.id)
                    self._emit("merged", job)
                    return job
        raise RuntimeError(f"Could not enqueue job {queue.value}/{key}")

    # ── Consuming ───────────────────────────────────────────────────────────

    def claim_next(self, queue: QueueClass | str, worker_id: str) -> Job | None:
        """Atomically take the best due waiting job of a queue class.

        Returns None while the queue class is paused.
        """
        queue = QueueClass(_value(queue))
        with get_db(self.db_path, initialize=False) as db:
            while True:
                if self._is_paused(db, queue):
                    return None
                now = utcnow()
                row = db.execute(
                    """SELECT id FROM jobs
                       WHERE queue = ? AND status = 'waiting' AND run_after <= ?
                       ORDER BY priority ASC, run_after ASC, id ASC LIMIT 1""",
                    (queue.value, now),
                ).fetchone()
                if not row:
                    return None
                cur = db.execute(
                    """UPDATE jobs
                       SET status = 'active', attempts = attempts + 1, worker_id = ?,
                           started_at = ?, rerun_requested = 0
                       WHERE id = ? AND status = 'waiting'""",
                    (worker_id, now, row["id"]),
                )
                db.commit()
                if cur.rowcount:
                    return self._get(db, row["id"])

    def complete(self, job_id: int, result: dict | None = None) -> Job | None:
        with get_db(self.db_path, initialize=False) as db:
            job = self._get(db, job_id)
            if job is None or job.status != JobStatus.ACTIVE:
                return job
            if job.rerun_requested:
                return self._requeue_for_rerun(db, job)
            db.execute(
                """UPDATE jobs SET status = 'completed', result = ?, finished_at = ?,
                                   worker_id = NULL
                   WHERE id = ? AND status = 'active'""",
                (json.dumps(result) if result is not None else None, utcnow(), job_id),
            )
            db.commit()
            self._trim(db, job.queue, JobStatus.COMPLETED, self.keep_completed)
            job = self._get(db, job_id)
        self._emit("completed", job)
        return job

    def fail(self, job_id: int, error: str, retry: bool = True) -> Job | None:
        """Record a failed attempt.

        With attempts left and ``retry`` set, the job waits
        ``backoff_delay * 2^(attempts-1)`` seconds before it is due again.
        """
        with get_db(self.db_path, initialize=False) as db:
            job = self._get(db, job_id)
            if job is None or job.status != JobStatus.ACTIVE:
                return job
            if job.rerun_requested:
                return self._requeue_for_rerun(db, job, error)
            if retry and job.attempts < job.max_attempts:
                delay = job.backoff_delay * (2 ** max(job.attempts - 1, 0))
                db.execute(
                    """UPDATE jobs SET status = 'waiting', run_after = ?, last_error = ?,
                                       worker_id = NULL
                       WHERE id = ? AND status = 'active'""",
                    (utcnow(delay), error, job_id),
                )
                db.commit()
                event = "retrying"
            else:
                db.execute(
                    """UPDATE jobs SET status = 'failed', last_error = ?, finished_at = ?,
                                       worker_id = NULL
                       WHERE id = ? AND status = 'active'""",
                    (error, utcnow(), job_id),
                )
                db.commit()
                self._trim(db, job.queue, JobStatus.FAILED, self.keep_failed)
                event = "failed"
            job = self._get(db, job_id)
        self._emit(event, job)
        return job

    def release(self, job_id: int) -> Job | None:
        """Return an active job to waiting without consuming an attempt."""
        with get_db(self.db_path, initialize=False) as db:
            db.execute(
                """UPDATE jobs SET status = 'waiting', attempts = MAX(attempts - 1, 0),
                                   worker_id = NULL, started_at = NULL
                   WHERE id = ? AND status = 'active'""",
                (job_id,),
            )
            db.commit()
            return self._get(db, job_id)

    def recover_interrupted(self) -> list[Job]:
        """Return jobs left active by a crashed process to waiting."""
        with get_db(self.db_path, initialize=False) as db:
            rows = db.execute("SELECT id FROM jobs WHERE status = 'active'").fetchall()
            recovered = []
            for row in rows:
                cur = db.execute(
                    """UPDATE jobs SET status = 'waiting', worker_id = NULL, run_after = ?
                       WHERE id = ? AND status = 'active'""",
                    (utcnow(), row["id"]),
                )
                db.commit()
                if cur.rowcount:
                    recovered.append(self._get(db, row["id"]))
        for job in recovered:
            self._emit("stalled", job)
        return recovered

    def _requeue_for_rerun(self, db: sqlite3.Connection, job: Job, error: str | None = None) -> Job:
        db.execute(
            """UPDATE jobs SET status = 'waiting', attempts = 0, rerun_requested = 0,
                               worker_id = NULL, started_at = NULL, last_error = ?
               WHERE id = ? AND status = 'active'""",
            (error, job.id),
        )
        db.commit()
        job = self._get(db, job.id)
        self._emit("requeued", job)
        return job

    # ── Control ─────────────────────────────────────────────────────────────

    def pause(self, queue: QueueClass | str):
        """Stop handing out jobs of a queue class. Active jobs run on."""
        self._set_paused(QueueClass(_value(queue)), True)

    def resume(self, queue: QueueClass | str):
        self._set_paused(QueueClass(_value(queue)), False)

    def is_paused(self, queue: QueueClass | str) -> bool:
        with get_db(self.db_path, initialize=False) as db:
            return self._is_paused(db, QueueClass(_value(queue)))

    def remove(self, queue: QueueClass | str, key: str) -> Job | None:
        """Delete the waiting job with this key. Returns the removed job.

        An active job is left to finish; its rerun request is dropped.
        """
        queue = QueueClass(_value(queue))
        with get_db(self.db_path, initialize=False) as db:
            job = self._find_open(db, queue, key)
            if job is None:
                return None
            if job.status == JobStatus.ACTIVE:
                db.execute(
                    "UPDATE jobs SET rerun_requested = 0 WHERE id = ? AND status = 'active'",
                    (job.id,),
                )
                db.commit()
                return None
            cur = db.execute("DELETE FROM jobs WHERE id = ? AND status = 'waiting'", (job.id,))
            db.commit()
            if not cur.rowcount:
                return None
        self._emit("removed", job)
        return job

    def _set_paused(self, queue: QueueClass, paused: bool):
        with get_db(self.db_path, initialize=False) as db:
            db.execute(
                """INSERT INTO queue_state (queue, paused, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(queue) DO UPDATE SET paused = excluded.paused,
                                                    updated_at = excluded.updated_at""",
                (queue.value, int(paused), utcnow()),
            )
            db.commit()
        logger.info("Queue %s %s", queue.value, "paused" if paused else "resumed")

    def _is_paused(self, db: sqlite3.Connection, queue: QueueClass) -> bool:
        row = db.execute("SELECT paused FROM queue_state WHERE queue = ?", (queue.value,)).fetchone()
        return bool(row and row["paused"])

    # ── Inspection ──────────────────────────────────────────────────────────

    def get_job(self, job_id: int) -> Job | None:
        with get_db(self.db_path, initialize=False) as db:
            return self._get(db, job_id)

    def find_open_job(self, queue: QueueClass | str, key: str) -> Job | None:
        with get_db(self.db_path, initialize=False) as db:
            return self._find_open(db, QueueClass(_value(queue)), key)

    def list_jobs(
        self,
        queue: QueueClass | str | None = None,
        status: JobStatus | str | None = None,
        task_id: str | None = None,
        limit: int = 50,
    ) -> list[Job]:
        query = "SELECT * FROM jobs WHERE 1=1"
        params: list = []
        if queue:
            query += " AND queue = ?"
            params.append(_value(queue))
        if status:
            query += " AND status = ?"
            params.append(_value(status))
        if task_id:
            query += " AND task_id = ?"
            params.append(task_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with get_db(self.db_path, initialize=False) as db:
            return [_row_to_job(r) for r in db.execute(query, params).fetchall()]

    def stats(self) -> dict[str, dict[str, int]]:
        """Per queue class: waiting, delayed, active, completed and failed counts."""
        now = utcnow()
        result = {
            q.value: {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0}
            for q in QueueClass
        }
        with get_db(self.db_path, initialize=False) as db:
            rows = db.execute(
                """SELECT queue,
                          CASE WHEN status = 'waiting' AND run_after > ? THEN 'delayed'
                               ELSE status END AS bucket,
                          COUNT(*) AS n
                   FROM jobs GROUP BY queue, bucket""",
                (now,),
            ).fetchall()
        for r in rows:
            result[r["queue"]][r["bucket"]] = r["n"]
        return result

    def clean(
        self,
        older_than: float = 0.0,
        status: JobStatus | str = JobStatus.COMPLETED,
        queue: QueueClass | str | None = None,
    ) -> int:
        """Delete finished jobs that finished more than ``older_than`` seconds ago."""
        status = JobStatus(_value(status))
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValueError(f"Only finished jobs can be cleaned, not {status.value}")
        query = "DELETE FROM jobs WHERE status = ? AND finished_at <= ?"
        params: list = [status.value, utcnow(-older_than)]
        if queue:
            query += " AND queue = ?"
            params.append(_value(queue))
        with get_db(self.db_path, initialize=False) as db:
            cur = db.execute(query, params)
            db.commit()
            return cur.rowcount

    def _get(self, db: sqlite3.Connection, job_id: int) -> Job | None:
        row = db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def _find_open(self, db: sqlite3.Connection, queue: QueueClass, key: str) -> Job | None:
        row = db.execute(
            """SELECT * FROM jobs
               WHERE queue = ? AND job_key = ? AND status IN ('waiting', 'active')""",
            (queue.value, key),
        ).fetchone()
        return _row_to_job(row) if row else None

    def _trim(self, db: sqlite3.Connection, queue: QueueClass, status: JobStatus, keep: int):
        db.execute(
            """DELETE FROM jobs
               WHERE queue = ? AND status = ? AND id NOT IN (
                   SELECT id FROM jobs WHERE queue = ? AND status = ?
                   ORDER BY finished_at DESC, id DESC LIMIT ?
               )""",
            (queue.value, status.value, queue.value, status.value, keep),
        )
        db.commit()


class WorkerPool:
    """Threads that claim jobs from their queue class and run its handler.

    A handler's return value becomes the job result. Exceptions fail the job,
    with a retry unless the exception says ``retryable = False``; a
    ``WorkerStopping`` puts the job back untouched.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[QueueClass, JobHandler],
        concurrency: dict[QueueClass, int] | None = None,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.handlers = handlers
        self.concurrency = concurrency or {}
        self.poll_interval = poll_interval
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self):
        if self._threads:
            return
        self.stop_event.clear()
        for queue_class, handler in self.handlers.items():
            for i in range(max(1, self.concurrency.get(queue_class, 1))):
                worker_id = f"{queue_class.value}-{i}"
                thread = threading.Thread(
                    target=self._work,
                    args=(queue_class, handler, worker_id),
                    name=worker_id,
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info("Worker pool started with %d threads", len(self._threads))

    def stop(self, timeout: float = 10.0):
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Worker pool stopped")

    def _work(self, queue_class: QueueClass, handler: JobHandler, worker_id: str):
        while not self.stop_event.is_set():
            try:
                job = self.queue.claim_next(queue_class, worker_id)
            except Exception:
                logger.exception("Worker %s could not claim a job", worker_id)
                job = None
            if job is None:
                self.stop_event.wait(self.poll_interval)
                continue
            self.process(job, handler)

    def process(self, job: Job, handler: JobHandler):
        """Run one claimed job through its handler and record the outcome."""
        try:
            result = handler(job)
        except WorkerStopping:
            self.queue.release(job.id)
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            if retryable:
                logger.exception("Job %s [%s/%s] raised", job.id, job.queue.value, job.job_key)
            else:
                logger.warning("Job %s [%s/%s] failed: %s", job.id, job.queue.value, job.job_key, e)
            self.queue.fail(job.id, str(e), retry=retryable)
        else:
            self.queue.complete(job.id, result)
