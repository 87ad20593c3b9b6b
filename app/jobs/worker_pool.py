from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, ContextManager

from app.jobs.job_tracker import ACTIVE_JOB_STATUSES, describe_fatal_error

logger = logging.getLogger(__name__)

JobRunner = Callable[[Any, str], Any]
RepositoryFactory = Callable[[], ContextManager[Any]]


class JobWorkerPool:
    """One background task per sync job; every task opens its own repository."""

    def __init__(
        self,
        repository_factory: RepositoryFactory,
        max_workers: int = 4,
        *,
        fail_attempts: int = 3,
        fail_retry_delay_sec: float = 0.5,
    ):
        self.repository_factory = repository_factory
        self.max_workers = max(1, int(max_workers))
        self.fail_attempts = max(1, int(fail_attempts))
        self.fail_retry_delay_sec = fail_retry_delay_sec
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="sync-job")

    def submit(self, job_id: str, runner: JobRunner) -> Future:
        self.start()
        logger.info("sync_job_submitted job_id=%s", job_id)
        return self._executor.submit(self._run, job_id, runner)

    def _run(self, job_id: str, runner: JobRunner) -> Any:
        try:
            with self.repository_factory() as repo:
                return runner(repo, job_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("sync_job_worker_crashed job_id=%s", job_id)
            self._fail_abandoned_job(job_id, exc)
            return None

    def _fail_abandoned_job(self, job_id: str, exc: BaseException) -> None:
        """Mark a job the runner never finished as FAILED so it stops blocking its union."""
        message = describe_fatal_error(exc)
        for attempt in range(1, self.fail_attempts + 1):
            try:
                with self.repository_factory() as repo:
                    job = repo.get_sync_job(job_id)
                    if job is not None and job["status"] in ACTIVE_JOB_STATUSES:
                        repo.fail_job(job_id, message, None)
                return
            except Exception as record_exc:  # noqa: BLE001
                logger.warning(
                    "sync_job_fail_record_retry job_id=%s attempt=%s/%s error=%s",
                    job_id,
                    attempt,
                    self.fail_attempts,
                    record_exc,
                )
                if attempt < self.fail_attempts:
                    time.sleep(self.fail_retry_delay_sec * attempt)
        # Startup recovery fails whatever is still non-terminal.
        logger.error("sync_job_fail_unrecorded job_id=%s", job_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)


class InlineJobPool:
    """Runs each job synchronously on the caller's thread (CLI runs and tests)."""

    def __init__(self, repository_factory: RepositoryFactory):
        self.repository_factory = repository_factory
        self.completed: list[tuple[str, Any]] = []

    def start(self) -> None:
        return None

    def submit(self, job_id: str, runner: JobRunner) -> Future:
        future: Future = Future()
        with self.repository_factory() as repo:
            outcome = runner(repo, job_id)
        self.completed.append((job_id, outcome))
        future.set_result(outcome)
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None
