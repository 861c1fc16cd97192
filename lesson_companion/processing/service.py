from __future__ import annotations

import logging

from .job_queue import JobQueue
from .models import ProcessingJob, ProcessingStatus, StatusReport
from .repository import LessonRepository

logger = logging.getLogger(__name__)


class LessonJobClient:
    """
    Producer-side handle on the processing queue. Construct one at process
    start and pass it to whatever submits lessons or reports their status.
    """

    def __init__(self, queue: JobQueue, repository: LessonRepository):
        self.queue = queue
        self.repo = repository

    def enqueue(self, job: ProcessingJob) -> bool:
        """
        Submit a lesson for processing. Re-submitting a lesson that is
        already queued or in flight is a no-op and returns False.
        """
        if self.repo.get_lesson(job.lesson_id) is None:
            raise ValueError(f"Lesson {job.lesson_id} not found")
        if self.queue.contains(job.lesson_id):
            logger.info("Lesson %s already queued, ignoring resubmission", job.lesson_id)
            return False
        self.repo.update_processing_status(job.lesson_id, ProcessingStatus.PROCESSING)
        if not self.queue.enqueue(job):
            logger.info("Lesson %s was queued concurrently, ignoring resubmission", job.lesson_id)
            return False
        logger.info("Queued %s for lesson %s", job.job_id, job.lesson_id)
        return True

    def get_status(self, lesson_id: str) -> StatusReport:
        lesson = self.repo.get_lesson(lesson_id)
        if lesson is None:
            raise ValueError(f"Lesson {lesson_id} not found")
        queued = self.queue.get(lesson_id)
        return StatusReport(
            lesson_id=lesson_id,
            status=lesson.processing_status,
            error=lesson.processing_error,
            queued=queued is not None,
            attempt=queued.attempt if queued else None,
        )

    def close(self) -> None:
        self.queue.close()
