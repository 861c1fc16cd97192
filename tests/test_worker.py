import time

import httpx
import pytest

from lesson_companion.processing import (
    AgeGroup,
    InMemoryJobQueue,
    InMemoryLessonRepository,
    InMemoryProgressTracker,
    LearnerContext,
    ModelCallError,
    PersistenceError,
    ProcessingConfig,
    ProcessingJob,
    ProcessingStatus,
    SourceKind,
)
from lesson_companion.processing.conversion import ConversionServiceClient
from lesson_companion.processing.worker import LeaseKeeper, backoff_delay

from conftest import LESSON_PROSE, NO_EXERCISES, FakeClock, FakeFetcher, FakeModel, Pipeline, analysis_json, make_lesson

DECK_REF = "file:///uploads/lesson-1/deck.pptx"


def _job(kind: SourceKind = SourceKind.TEXT, ref: str = LESSON_PROSE, lesson_id: str = "lesson-1") -> ProcessingJob:
    return ProcessingJob(
        lesson_id=lesson_id,
        source_kind=kind,
        source_ref=ref,
        child_id="child-1",
        parent_id="parent-1",
        learner_context=LearnerContext(age_group=AgeGroup.YOUNG, grade_level=2),
    )


class FlakyRepository(InMemoryLessonRepository):
    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    def update_lesson(self, lesson_id, values):
        if self.failures:
            self.failures -= 1
            raise PersistenceError("database is locked")
        super().update_lesson(lesson_id, values)


class BrokenAchievements(InMemoryProgressTracker):
    def evaluate_achievements(self, child_id, event):
        raise RuntimeError("achievement rules unavailable")


# region end-to-end
def test_text_lesson_completes_without_exercises():
    pipeline = Pipeline(FakeModel([analysis_json(NO_EXERCISES)]))
    make_lesson(pipeline.repo)

    assert pipeline.client.enqueue(_job()) is True
    assert pipeline.client.get_status("lesson-1").to_dict() == {"status": "PROCESSING"}

    assert pipeline.pool.run_until_done("lesson-1") == ProcessingStatus.COMPLETED
    lesson = pipeline.repo.get_lesson("lesson-1")
    assert lesson.formatted_content
    assert lesson.extracted_text == LESSON_PROSE
    assert lesson.subject == "Science" and lesson.grade_level == "3"
    assert lesson.processing_error is None
    assert pipeline.repo.list_exercises("lesson-1") == []
    assert pipeline.progress.lessons_completed["child-1"] == 1
    assert not pipeline.queue.contains("lesson-1")

    report = pipeline.client.get_status("lesson-1")
    assert report.to_dict() == {"status": "COMPLETED"}
    assert report.queued is False


def test_duplicate_enqueue_processes_once():
    model = FakeModel([analysis_json()])
    pipeline = Pipeline(model)
    make_lesson(pipeline.repo)

    assert pipeline.client.enqueue(_job()) is True
    assert pipeline.client.enqueue(_job()) is False
    assert pipeline.pool.run_until_done("lesson-1") == ProcessingStatus.COMPLETED

    log = pipeline.repo.write_log
    assert log.count("update:lesson-1") == 1
    assert log.count("exercises:lesson-1:1") == 1
    assert len(model.calls) == 1
    exercises = pipeline.repo.list_exercises("lesson-1")
    assert [e.question_text for e in exercises] == ["What do plants need to grow?"]
    assert f'data-exercise-position="{exercises[0].original_position}"' in pipeline.repo.get_lesson("lesson-1").formatted_content


def test_enqueue_unknown_lesson_is_rejected():
    pipeline = Pipeline(FakeModel())
    with pytest.raises(ValueError, match="not found"):
        pipeline.client.enqueue(_job())
    with pytest.raises(ValueError):
        pipeline.client.get_status("ghost")
    assert not pipeline.queue.contains("lesson-1")


def test_transient_analysis_failures_retry_until_success():
    model = FakeModel([ModelCallError("503 overloaded"), ModelCallError("503 overloaded"), analysis_json()])
    pipeline = Pipeline(model)
    make_lesson(pipeline.repo)
    pipeline.client.enqueue(_job())

    assert pipeline.pool.process_next() is True
    report = pipeline.client.get_status("lesson-1")
    assert report.status == ProcessingStatus.PROCESSING
    assert report.error is None
    assert report.queued and report.attempt == 1
    assert pipeline.queue.get("lesson-1").last_error == "AnalysisError: Model call failed: 503 overloaded"

    # Not due again until the 5s backoff has passed.
    assert pipeline.pool.process_next() is False

    started = pipeline.clock.now
    assert pipeline.pool.run_until_done("lesson-1") == ProcessingStatus.COMPLETED
    assert len(model.calls) == 3
    assert pipeline.clock.now - started >= 5 + 10
    assert pipeline.repo.get_lesson("lesson-1").processing_error is None


def test_slide_conversion_failure_marks_lesson_failed_after_max_attempts():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(500, text="soffice crashed")

    pipeline = Pipeline(
        FakeModel(),
        fetcher=FakeFetcher({DECK_REF: b"PK\x03\x04 slide deck"}),
        converter=ConversionServiceClient("http://convert.test", client=httpx.Client(transport=httpx.MockTransport(handler))),
    )
    make_lesson(pipeline.repo, kind=SourceKind.SLIDES, ref=DECK_REF)
    pipeline.client.enqueue(_job(SourceKind.SLIDES, DECK_REF))

    assert pipeline.pool.run_until_done("lesson-1") == ProcessingStatus.FAILED
    lesson = pipeline.repo.get_lesson("lesson-1")
    assert lesson.processing_error == "ConversionError: Conversion service returned HTTP 500"
    assert lesson.formatted_content is None
    assert len(requests) == pipeline.config.max_attempts
    assert not pipeline.queue.contains("lesson-1")
    assert pipeline.client.get_status("lesson-1").to_dict() == {
        "status": "FAILED",
        "error": "ConversionError: Conversion service returned HTTP 500",
    }


def test_single_attempt_config_fails_without_retry():
    model = FakeModel(["not json at all"])
    config = ProcessingConfig(database_url="sqlite://", max_attempts=1)
    pipeline = Pipeline(model, config=config)
    make_lesson(pipeline.repo)
    pipeline.client.enqueue(_job())

    assert pipeline.pool.run_until_done("lesson-1") == ProcessingStatus.FAILED
    assert pipeline.repo.get_lesson("lesson-1").processing_error.startswith("AnalysisError: Model output is not structured data")
    assert len(model.calls) == 1


# endregion


# region persistence and side effects
def test_final_write_is_retried_in_place():
    repo = FlakyRepository(failures=2)
    pipeline = Pipeline(FakeModel([analysis_json()]), repo=repo)
    make_lesson(repo)
    pipeline.client.enqueue(_job())

    assert pipeline.pool.process_next() is True
    assert repo.get_lesson("lesson-1").processing_status == ProcessingStatus.COMPLETED
    assert not pipeline.queue.contains("lesson-1")


def test_exhausted_final_write_retries_the_job():
    repo = FlakyRepository(failures=3)
    pipeline = Pipeline(FakeModel([analysis_json(), analysis_json()]), repo=repo)
    make_lesson(repo)
    pipeline.client.enqueue(_job())

    pipeline.pool.process_next()
    assert repo.get_lesson("lesson-1").processing_status == ProcessingStatus.PROCESSING
    assert pipeline.queue.get("lesson-1").last_error == "PersistenceError: database is locked"

    assert pipeline.pool.run_until_done("lesson-1") == ProcessingStatus.COMPLETED


def test_side_effect_failure_does_not_fail_the_lesson():
    pipeline = Pipeline(FakeModel([analysis_json()]), progress=BrokenAchievements())
    make_lesson(pipeline.repo)
    pipeline.client.enqueue(_job())

    assert pipeline.pool.run_until_done("lesson-1") == ProcessingStatus.COMPLETED
    lesson = pipeline.repo.get_lesson("lesson-1")
    assert lesson.formatted_content and lesson.processing_error is None
    assert len(pipeline.repo.list_exercises("lesson-1")) == 1
    assert pipeline.progress.lessons_completed["child-1"] == 1
    assert pipeline.progress.achievements == {}
    assert not pipeline.queue.contains("lesson-1")


# endregion


# region queue leases
def test_expired_lease_is_reclaimed_and_stale_holder_is_ignored():
    clock = FakeClock()
    queue = InMemoryJobQueue(clock=clock)
    assert queue.enqueue(_job()) is True
    assert queue.enqueue(_job()) is False

    first = queue.claim("worker-a", lease_seconds=10)
    assert first.attempt == 1 and first.lock_token.startswith("worker-a:")
    assert queue.claim("worker-b", lease_seconds=10) is None

    clock.advance(5)
    assert queue.renew(first, lease_seconds=10) is True
    clock.advance(9)
    assert queue.claim("worker-b", lease_seconds=10) is None

    clock.advance(2)
    second = queue.claim("worker-b", lease_seconds=10)
    assert second.attempt == 2

    assert queue.renew(first, lease_seconds=10) is False
    assert queue.ack(first) is False
    assert queue.nack(first, 0, "late") is False
    assert queue.get("lesson-1").last_error is None

    assert queue.ack(second) is True
    assert not queue.contains("lesson-1")


def _expire_mid_analysis(pipeline, on_expiry, reply=None):
    """Model stand-in that lets the lease lapse during the first call and hands the job to another worker."""
    state = {"calls": 0}

    def respond(prompt, attachment):
        state["calls"] += 1
        if state["calls"] == 1:
            pipeline.clock.advance(pipeline.config.lease_seconds + 1)
            on_expiry()
        return reply if reply is not None else analysis_json()

    return respond


def test_stale_worker_does_not_overwrite_failed_lesson():
    config = ProcessingConfig(database_url="sqlite://", max_attempts=1)
    model = FakeModel()
    pipeline = Pipeline(model, config=config)
    model.responses = _expire_mid_analysis(pipeline, lambda: pipeline.pool.process_next("worker-b"))
    make_lesson(pipeline.repo)
    pipeline.client.enqueue(_job())

    assert pipeline.pool.process_next("worker-a") is True

    lesson = pipeline.repo.get_lesson("lesson-1")
    assert lesson.processing_status == ProcessingStatus.FAILED
    assert lesson.formatted_content is None
    assert "update:lesson-1" not in pipeline.repo.write_log
    assert pipeline.repo.list_exercises("lesson-1") == []
    assert pipeline.progress.lessons_completed == {}
    assert not pipeline.queue.contains("lesson-1")


def test_stale_worker_skips_side_effects_after_new_owner_completes():
    model = FakeModel()
    pipeline = Pipeline(model)
    model.responses = _expire_mid_analysis(pipeline, lambda: pipeline.pool.process_next("worker-b"))
    make_lesson(pipeline.repo)
    pipeline.client.enqueue(_job())

    assert pipeline.pool.process_next("worker-a") is True

    assert pipeline.repo.get_lesson("lesson-1").processing_status == ProcessingStatus.COMPLETED
    assert pipeline.repo.write_log.count("update:lesson-1") == 1
    assert len(pipeline.repo.list_exercises("lesson-1")) == 1
    assert pipeline.progress.lessons_completed["child-1"] == 1
    assert len(model.calls) == 2
    assert not pipeline.queue.contains("lesson-1")


def test_stale_worker_failure_leaves_new_owner_alone():
    config = ProcessingConfig(database_url="sqlite://", max_attempts=1)
    model = FakeModel()
    pipeline = Pipeline(model, config=config)
    model.responses = _expire_mid_analysis(
        pipeline,
        lambda: pipeline.queue.claim("worker-b", config.lease_seconds),
        reply=ModelCallError("deadline exceeded"),
    )
    make_lesson(pipeline.repo)
    pipeline.client.enqueue(_job())

    assert pipeline.pool.process_next("worker-a") is True

    assert pipeline.repo.get_lesson("lesson-1").processing_status == ProcessingStatus.PROCESSING
    assert "status:lesson-1:FAILED" not in pipeline.repo.write_log
    job = pipeline.queue.get("lesson-1")
    assert job.attempt == 2 and job.lock_token.startswith("worker-b:")
    assert job.last_error is None


def test_lease_keeper_lost_flag_counts_as_lost_lease():
    pipeline = Pipeline(FakeModel())
    make_lesson(pipeline.repo)
    pipeline.client.enqueue(_job())
    job = pipeline.queue.claim("worker-a", pipeline.config.lease_seconds)
    keeper = LeaseKeeper(pipeline.queue, job, pipeline.config.lease_seconds, pipeline.config.lease_renew_seconds)

    assert pipeline.pool._still_holds(job, keeper) is True
    keeper.lost = True
    assert pipeline.pool._still_holds(job, keeper) is False


def test_nack_delays_next_claim():
    clock = FakeClock()
    queue = InMemoryJobQueue(clock=clock)
    queue.enqueue(_job())
    job = queue.claim("w", lease_seconds=30)
    assert queue.nack(job, 5, "FetchError: timeout") is True
    assert queue.claim("w", lease_seconds=30) is None
    clock.advance(5)
    again = queue.claim("w", lease_seconds=30)
    assert again.attempt == 2
    assert again.last_error == "FetchError: timeout"


def test_job_reclaimed_past_attempt_cap_is_failed():
    pipeline = Pipeline(FakeModel())
    make_lesson(pipeline.repo)
    pipeline.client.enqueue(_job())
    for _ in range(pipeline.config.max_attempts):
        assert pipeline.queue.claim("crashed-worker", lease_seconds=10) is not None
        pipeline.clock.advance(11)

    assert pipeline.pool.process_next() is True
    lesson = pipeline.repo.get_lesson("lesson-1")
    assert lesson.processing_status == ProcessingStatus.FAILED
    assert lesson.processing_error == "InternalError: Job lease expired before completion"
    assert not pipeline.queue.contains("lesson-1")


@pytest.mark.parametrize("attempt,expected", [(1, 5), (2, 10), (3, 20)])
def test_backoff_doubles_per_attempt(attempt, expected):
    assert backoff_delay(attempt, 5) == expected


# endregion


def test_worker_threads_drain_queue_and_stop():
    config = ProcessingConfig(database_url="sqlite://", concurrency=2, poll_interval_seconds=0.01)
    pipeline = Pipeline(FakeModel(lambda prompt, attachment: analysis_json(NO_EXERCISES)), config=config)
    for lesson_id in ("lesson-1", "lesson-2", "lesson-3"):
        make_lesson(pipeline.repo, lesson_id=lesson_id)
        pipeline.client.enqueue(_job(lesson_id=lesson_id))

    pipeline.pool.start()
    try:
        deadline = time.time() + 10
        while time.time() < deadline and any(
            pipeline.queue.contains(lesson_id) for lesson_id in ("lesson-1", "lesson-2", "lesson-3")
        ):
            time.sleep(0.02)
    finally:
        pipeline.pool.stop(timeout=5)

    for lesson_id in ("lesson-1", "lesson-2", "lesson-3"):
        assert pipeline.repo.get_lesson(lesson_id).processing_status == ProcessingStatus.COMPLETED
    assert pipeline.progress.lessons_completed["child-1"] == 3
