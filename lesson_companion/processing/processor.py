from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .analyzer import ContentAnalyzer
from .errors import LeaseLostError, PersistenceError
from .formatter import DocumentFormatter
from .models import ExtractionResult, ProcessingJob, ProcessingStatus, SideEffectReport
from .repository import LessonRepository
from .router import ExtractionRouter
from .schema import ContentBlock, StructuredAnalysis
from .side_effects import SideEffectCoordinator

logger = logging.getLogger(__name__)


@dataclass
class ProcessingOutcome:
    lesson_id: str
    extraction: ExtractionResult
    analysis: StructuredAnalysis
    formatted_content: str
    side_effects: SideEffectReport


class LessonProcessor:
    """
    Drives one job through extract -> analyze -> format -> final write ->
    side effects. Stateless between jobs; retry and terminal failure belong
    to the worker pool, so any stage error is raised unchanged.

    The lesson row is written once on success: all derived fields together
    with the COMPLETED transition, so readers never see half a lesson.
    """

    def __init__(
        self,
        repository: LessonRepository,
        router: ExtractionRouter,
        analyzer: ContentAnalyzer,
        coordinator: SideEffectCoordinator,
        formatter: Optional[DocumentFormatter] = None,
        persist_retries: int = 3,
        analyze_native_documents: bool = False,
    ):
        self.repo = repository
        self.router = router
        self.analyzer = analyzer
        self.coordinator = coordinator
        self.formatter = formatter or DocumentFormatter()
        self.persist_retries = persist_retries
        self.analyze_native_documents = analyze_native_documents

    def process(self, job: ProcessingJob, still_holds: Optional[Callable[[], bool]] = None) -> ProcessingOutcome:
        """
        Run one job. `still_holds` reports whether the caller still owns the
        job's lease; it is checked before the final write and again before
        side effects, and a lost lease raises `LeaseLostError` so a stale
        worker never writes over the lesson's new owner.
        """
        logger.info("Processing lesson %s (%s, attempt %s)", job.lesson_id, job.source_kind.value, job.attempt)
        extraction = self.router.extract(job)

        if self.analyze_native_documents and extraction.document is not None:
            analysis = self.analyzer.analyze(
                job.learner_context, document=extraction.document, mime_type=extraction.mime_type
            )
        else:
            analysis = self.analyzer.analyze(job.learner_context, text=extraction.raw_text)

        blocks = [b for b in (extraction.content_blocks or []) if isinstance(b, ContentBlock)]
        formatted = self.formatter.format(
            extraction.raw_text,
            analysis=analysis,
            content_blocks=blocks or None,
            age_group=job.learner_context.age_group,
        )

        self._check_lease(job, still_holds, "final write")
        self._persist(job.lesson_id, self._lesson_values(extraction, analysis, formatted))
        logger.info("Lesson %s completed (%s chars formatted)", job.lesson_id, len(formatted))

        self._check_lease(job, still_holds, "side effects")
        report = self.coordinator.run(job, formatted, analysis, extraction.raw_text)
        return ProcessingOutcome(
            lesson_id=job.lesson_id,
            extraction=extraction,
            analysis=analysis,
            formatted_content=formatted,
            side_effects=report,
        )

    def _check_lease(self, job: ProcessingJob, still_holds: Optional[Callable[[], bool]], stage: str) -> None:
        if still_holds is not None and not still_holds():
            raise LeaseLostError(f"Lease on lesson {job.lesson_id} lost before {stage}")

    def _lesson_values(
        self, extraction: ExtractionResult, analysis: StructuredAnalysis, formatted: str
    ) -> Dict[str, Any]:
        return {
            "extracted_text": extraction.raw_text,
            "formatted_content": formatted,
            "title": analysis.title,
            "summary": analysis.summary,
            "subject": analysis.subject,
            "grade_level": analysis.grade_level,
            "chapters": [c.model_dump(by_alias=True) for c in analysis.chapters],
            "vocabulary": [v.model_dump() for v in analysis.vocabulary],
            "key_concepts": list(analysis.key_concepts),
            "suggested_questions": list(analysis.suggested_questions),
            "ai_confidence": analysis.confidence,
            "processing_status": ProcessingStatus.COMPLETED,
            "processing_error": None,
            "updated_at": datetime.utcnow(),
        }

    def _persist(self, lesson_id: str, values: Dict[str, Any]) -> None:
        attempts = max(1, self.persist_retries)
        for attempt in range(1, attempts + 1):
            try:
                self.repo.update_lesson(lesson_id, values)
                return
            except PersistenceError:
                if attempt == attempts:
                    raise
                logger.warning("Final write for lesson %s failed (try %s/%s), retrying", lesson_id, attempt, attempts)
