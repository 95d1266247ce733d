"""Hands upload jobs to the Celery worker pool and keeps track of what it sent."""
import logging
import threading
from typing import Dict, Optional
from uuid import UUID

from kombu.exceptions import OperationalError

from app.exceptions import NetworkError
from app.tasks.celery_app import celery_app
from app.tasks.import_tasks import process_upload_job

logger = logging.getLogger(__name__)


class ProcessingScheduler:
    """
    Submits processing jobs to Celery.

    Constructed and started by the application lifespan and injected into the
    upload routes. Remembers the task id submitted for each job so a cancel
    can revoke work that has not started yet.
    """

    def __init__(self, task=process_upload_job):
        self._task = task
        self._task_ids: Dict[UUID, str] = {}
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        self._running = True
        logger.info("▶️ Processing scheduler started")

    def stop(self) -> None:
        self._running = False
        with self._lock:
            tracked = len(self._task_ids)
            self._task_ids.clear()
        logger.info(f"⏹️ Processing scheduler stopped ({tracked} jobs still tracked)")

    def submit(self, job_id: UUID) -> str:
        """
        Queue a job for processing.

        Raises:
            RuntimeError: scheduler is not started
            NetworkError: broker unreachable
        """
        if not self._running:
            raise RuntimeError("Processing scheduler is not running")

        try:
            result = self._task.delay(str(job_id))
        except OperationalError as e:
            logger.error(f"❌ Could not queue job {job_id}: {e}")
            raise NetworkError(f"Task broker unavailable: {e}") from e

        with self._lock:
            self._task_ids[job_id] = result.id
        logger.info(f"🚀 Queued job {job_id} as task {result.id}")
        return result.id

    def task_id(self, job_id: UUID) -> Optional[str]:
        with self._lock:
            return self._task_ids.get(job_id)

    def forget(self, job_id: UUID) -> None:
        """Drop tracking for a job and revoke its task if one was queued."""
        with self._lock:
            task_id = self._task_ids.pop(job_id, None)
        if task_id is None:
            return

        try:
            celery_app.control.revoke(task_id)
            logger.info(f"🛑 Revoked task {task_id} for job {job_id}")
        except OperationalError as e:
            logger.warning(f"⚠️ Failed to revoke task {task_id} for job {job_id}: {e}")
