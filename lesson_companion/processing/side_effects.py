from __future__ import annotations

import logging
import uuid
from typing import Callable, List, Optional

from .cache import DashboardCache, NoopDashboardCache
from .errors import describe_error
from .indexing import LessonIndexer, NoopIndexer
from .markers import assign_positions, check_binding, exercises_from_markers
from .models import XP_BY_DIFFICULTY, ExerciseRecord, ProcessingJob, SideEffectReport
from .progress import LESSON_COMPLETE, ProgressTracker
from .repository import LessonRepository
from .schema import DetectedExercise, StructuredAnalysis

logger = logging.getLogger(__name__)


class ExerciseBindingError(RuntimeError):
    pass


class SideEffectCoordinator:
    """
    Runs the best-effort steps that follow a completed lesson write. Each step
    is attempted independently; a failure is logged and recorded in the
    returned report and never reaches the caller or the lesson status.
    """

    def __init__(
        self,
        repository: LessonRepository,
        progress: ProgressTracker,
        cache: Optional[DashboardCache] = None,
        indexer: Optional[LessonIndexer] = None,
    ):
        self.repo = repository
        self.progress = progress
        self.cache = cache or NoopDashboardCache()
        self.indexer = indexer or NoopIndexer()

    def run(
        self,
        job: ProcessingJob,
        formatted_content: str,
        analysis: Optional[StructuredAnalysis],
        extracted_text: str,
    ) -> SideEffectReport:
        report = SideEffectReport(lesson_id=job.lesson_id)
        parent_id = job.parent_id or self._lesson_parent(job.lesson_id)

        self._attempt(report, "exercises", lambda: self._create_exercises(job.lesson_id, formatted_content, analysis))
        self._attempt(report, "progress", lambda: self._increment_progress(job.child_id))
        self._attempt(
            report,
            "achievements",
            lambda: ",".join(self.progress.evaluate_achievements(job.child_id, LESSON_COMPLETE)) or None,
        )
        self._attempt(report, "cache", lambda: self.cache.invalidate(job.child_id, parent_id))
        self._attempt(
            report,
            "search_index",
            lambda: self.indexer.index_lesson(
                job.lesson_id, job.child_id, analysis.title if analysis else None, extracted_text
            ),
        )

        if report.failed:
            logger.warning("Lesson %s side effects failed: %s", job.lesson_id, ", ".join(report.failed))
        return report

    def _attempt(self, report: SideEffectReport, name: str, step: Callable[[], Optional[str]]) -> None:
        try:
            detail = step()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Side effect %s failed for lesson %s", name, report.lesson_id)
            report.record(name, False, describe_error(exc))
            return
        report.record(name, True, detail)

    def _lesson_parent(self, lesson_id: str) -> Optional[str]:
        try:
            lesson = self.repo.get_lesson(lesson_id)
        except Exception:  # noqa: BLE001
            logger.warning("Could not load lesson %s to resolve its parent", lesson_id)
            return None
        return lesson.parent_id if lesson else None

    def _increment_progress(self, child_id: str) -> str:
        return f"lessons_completed={self.progress.increment_lesson_count(child_id)}"

    def _create_exercises(
        self, lesson_id: str, formatted_content: str, analysis: Optional[StructuredAnalysis]
    ) -> str:
        detected: List[DetectedExercise] = list(analysis.exercises) if analysis else []
        if not detected:
            detected = exercises_from_markers(formatted_content)
            if detected:
                logger.info("Recovered %s exercises from content markers for lesson %s", len(detected), lesson_id)

        positioned = assign_positions(detected)
        binding = check_binding(formatted_content, [position for position, _ in positioned])
        if not binding.ok:
            raise ExerciseBindingError(
                f"Exercise markers do not match exercises (missing={binding.missing_markers}, "
                f"orphan={binding.orphan_markers}, duplicate={binding.duplicate_markers})"
            )
        if not positioned:
            return "0 exercises"

        records = [
            ExerciseRecord(
                id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"lesson/{lesson_id}/exercise/{position}")),
                lesson_id=lesson_id,
                type=exercise.type,
                question_text=exercise.question_text,
                expected_answer=exercise.expected_answer,
                original_position=position,
                acceptable_answers=list(exercise.acceptable_answers),
                hints=exercise.hints,
                explanation=exercise.explanation,
                difficulty=exercise.difficulty,
                options=list(exercise.options),
                xp_reward=XP_BY_DIFFICULTY[exercise.difficulty],
                order_index=index,
            )
            for index, (position, exercise) in enumerate(positioned)
        ]
        self.repo.create_exercises(lesson_id, records)
        return f"{len(records)} exercises"
