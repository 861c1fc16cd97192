from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from .analyzer import ContentAnalyzer
from .cache import RedisDashboardCache
from .config import ProcessingConfig
from .conversion import ConversionServiceClient
from .engine import DoclingOcrEngine, OcrEngine, VisionOcrEngine
from .errors import LeaseLostError, describe_error
from .extractors import (
    HttpTranscriptProvider,
    ImageVisionOCR,
    PDFVisionExtractor,
    SlideDeckExtractor,
    TextPassthrough,
    TranscriptProvider,
    UnconfiguredTranscriptProvider,
    VideoTranscriptExtractor,
)
from .indexing import LessonIndexer, NoopIndexer, WhooshIndexer
from .job_queue import JobQueue, RedisJobQueue
from .model_client import GeminiModelClient
from .models import ProcessingJob, ProcessingStatus
from .processor import LessonProcessor
from .progress import SqlAlchemyProgressTracker
from .repository import LessonRepository, SqlAlchemyLessonRepository
from .router import ExtractionRouter
from .side_effects import SideEffectCoordinator
from .storage import HttpSourceFetcher

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Delay before the next try after `attempt` failed: base, 2*base, 4*base, ..."""
    return base_seconds * (2 ** max(attempt - 1, 0))


class LeaseKeeper:
    """
    Background thread that renews a claimed job's lease every
    `interval_seconds` until stopped. Losing the lease is logged; the
    queue then ignores the stale holder's ack/nack.
    """

    def __init__(self, queue: JobQueue, job: ProcessingJob, lease_seconds: float, interval_seconds: float):
        self.queue = queue
        self.job = job
        self.lease_seconds = lease_seconds
        self.interval_seconds = interval_seconds
        self.lost = False
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"lease-{job.lesson_id}", daemon=True)

    def __enter__(self) -> "LeaseKeeper":
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop.set()
        self._thread.join()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                renewed = self.queue.renew(self.job, self.lease_seconds)
            except Exception:  # noqa: BLE001
                logger.exception("Could not renew lease for lesson %s", self.job.lesson_id)
                continue
            if not renewed:
                self.lost = True
                logger.warning("Lost lease for lesson %s", self.job.lesson_id)
                return


class WorkerPool:
    """
    Bounded pool of worker threads pulling from a `JobQueue`. Each worker
    runs one job at a time: claim, process under a renewed lease, then ack
    on success. Failures are retried with exponential backoff up to
    `max_attempts`; after that the lesson is marked FAILED with the last
    error and the job is removed from the queue.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: LessonProcessor,
        repository: LessonRepository,
        config: ProcessingConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.processor = processor
        self.repo = repository
        self.config = config
        self._sleep = sleep
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self.config.concurrency):
            thread = threading.Thread(target=self._run, args=(f"worker-{index}",), name=f"worker-{index}")
            thread.start()
            self._threads.append(thread)
        logger.info("Started %s workers on queue %s", self.config.concurrency, self.config.queue_name)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop claiming new jobs, wait for in-flight jobs, then close the queue."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self.queue.close()
        logger.info("Worker pool stopped")

    def _run(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                worked = self.process_next(worker_id)
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s could not claim a job", worker_id)
                worked = False
            if not worked:
                self._stop.wait(self.config.poll_interval_seconds)

    def process_next(self, worker_id: str = "worker-0") -> bool:
        """Claim and run one job. Returns False when nothing was claimable."""
        job = self.queue.claim(worker_id, self.config.lease_seconds)
        if job is None:
            return False

        if job.attempt > self.config.max_attempts:
            # Reclaimed after a crash on the final attempt.
            self._fail(job, job.last_error or "InternalError: Job lease expired before completion")
            return True

        with LeaseKeeper(self.queue, job, self.config.lease_seconds, self.config.lease_renew_seconds) as keeper:
            try:
                self.repo.update_processing_status(job.lesson_id, ProcessingStatus.PROCESSING)
                self.processor.process(job, still_holds=lambda: self._still_holds(job, keeper))
            except Exception as exc:  # noqa: BLE001
                self._handle_failure(job, exc)
                return True
        self.queue.ack(job)
        return True

    def run_until_done(self, lesson_id: str, worker_id: str = "worker-0", max_polls: int = 1000) -> Optional[ProcessingStatus]:
        """Process jobs in the calling thread until `lesson_id` leaves the queue."""
        for _ in range(max_polls):
            if not self.queue.contains(lesson_id):
                break
            if not self.process_next(worker_id):
                self._sleep(self.config.poll_interval_seconds)
        lesson = self.repo.get_lesson(lesson_id)
        return lesson.processing_status if lesson else None

    def _still_holds(self, job: ProcessingJob, keeper: Optional[LeaseKeeper] = None) -> bool:
        if keeper is not None and keeper.lost:
            return False
        return self.queue.renew(job, self.config.lease_seconds)

    def _handle_failure(self, job: ProcessingJob, exc: Exception) -> None:
        if isinstance(exc, LeaseLostError):
            logger.warning("Abandoning lesson %s: %s", job.lesson_id, exc)
            return
        error = describe_error(exc)
        retryable = getattr(exc, "retryable", True)
        if retryable and job.attempt < self.config.max_attempts:
            delay = backoff_delay(job.attempt, self.config.backoff_seconds)
            logger.warning(
                "Lesson %s attempt %s/%s failed (%s), retrying in %.0fs",
                job.lesson_id,
                job.attempt,
                self.config.max_attempts,
                error,
                delay,
            )
            self.queue.nack(job, delay, error)
            return
        logger.error("Lesson %s failed after %s attempts: %s", job.lesson_id, job.attempt, error, exc_info=exc)
        self._fail(job, error)

    def _fail(self, job: ProcessingJob, error: str) -> None:
        if not self._still_holds(job):
            logger.warning("Not marking lesson %s failed: lease already passed to another worker", job.lesson_id)
            return
        try:
            self.repo.update_processing_status(job.lesson_id, ProcessingStatus.FAILED, error)
        except Exception:  # noqa: BLE001
            logger.exception("Could not record failure for lesson %s", job.lesson_id)
        self.queue.ack(job)


def build_processor(config: ProcessingConfig, repository: SqlAlchemyLessonRepository) -> LessonProcessor:
    """
    Wire the production pipeline from config: Gemini models, HTTP fetcher,
    conversion and transcript services, SQL progress, Redis cache, and
    optional Whoosh indexing.
    """
    analysis_model = GeminiModelClient(
        config.analysis_model, config.gemini_api_key, timeout_seconds=config.model_timeout_seconds
    )
    vision_model = GeminiModelClient(
        config.vision_model, config.gemini_api_key, timeout_seconds=config.model_timeout_seconds
    )
    fetcher = HttpSourceFetcher(
        timeout_seconds=config.fetch_timeout_seconds, local_root=Path(config.upload_storage_root)
    )
    ocr_engine: OcrEngine = (
        DoclingOcrEngine() if config.pdf_ocr_backend == "docling" else VisionOcrEngine(vision_model)
    )
    transcripts: TranscriptProvider = (
        HttpTranscriptProvider(config.transcript_service_url, timeout_seconds=config.fetch_timeout_seconds)
        if config.transcript_service_url
        else UnconfiguredTranscriptProvider()
    )
    router = ExtractionRouter(
        text=TextPassthrough(),
        image=ImageVisionOCR(fetcher, vision_model),
        pdf=PDFVisionExtractor(fetcher, ocr_engine, model=vision_model),
        slides=SlideDeckExtractor(
            fetcher,
            ConversionServiceClient(config.conversion_service_url, timeout_seconds=config.conversion_timeout_seconds),
        ),
        video=VideoTranscriptExtractor(transcripts),
        min_chars=config.min_extracted_chars,
    )
    indexer: LessonIndexer = WhooshIndexer(Path(config.whoosh_index_dir)) if config.whoosh_index_dir else NoopIndexer()
    coordinator = SideEffectCoordinator(
        repository=repository,
        progress=SqlAlchemyProgressTracker(engine=repository.engine),
        cache=RedisDashboardCache.from_url(config.redis_url),
        indexer=indexer,
    )
    return LessonProcessor(
        repository=repository,
        router=router,
        analyzer=ContentAnalyzer(analysis_model),
        coordinator=coordinator,
        persist_retries=config.persist_retries,
        analyze_native_documents=config.analyze_native_documents,
    )


def build_worker_pool(config: ProcessingConfig) -> WorkerPool:
    repository = SqlAlchemyLessonRepository(config.database_url)
    queue = RedisJobQueue(config.redis_url, config.queue_name)
    return WorkerPool(queue, build_processor(config, repository), repository, config)
