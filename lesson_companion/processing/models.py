from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SourceKind(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    PDF = "PDF"
    SLIDES = "SLIDES"
    VIDEO = "VIDEO"


class ProcessingStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AgeGroup(str, Enum):
    YOUNG = "YOUNG"
    OLDER = "OLDER"


class CurriculumType(str, Enum):
    IB = "IB"
    BRITISH = "BRITISH"
    AMERICAN = "AMERICAN"
    INDIAN_CBSE = "INDIAN_CBSE"
    INDIAN_ICSE = "INDIAN_ICSE"
    ARABIC = "ARABIC"


class ExerciseType(str, Enum):
    MATH_PROBLEM = "MATH_PROBLEM"
    FILL_IN_BLANK = "FILL_IN_BLANK"
    SHORT_ANSWER = "SHORT_ANSWER"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    TRUE_FALSE = "TRUE_FALSE"


class Difficulty(str, Enum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"


XP_BY_DIFFICULTY: Dict[Difficulty, int] = {
    Difficulty.EASY: 5,
    Difficulty.MEDIUM: 10,
    Difficulty.HARD: 15,
}


@dataclass
class LearnerContext:
    age_group: AgeGroup = AgeGroup.OLDER
    curriculum_type: Optional[CurriculumType] = None
    grade_level: Optional[int] = None
    subject_hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ageGroup": self.age_group.value,
            "curriculumType": self.curriculum_type.value if self.curriculum_type else None,
            "gradeLevel": self.grade_level,
            "subjectHint": self.subject_hint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearnerContext":
        curriculum = data.get("curriculumType")
        grade = data.get("gradeLevel")
        return cls(
            age_group=AgeGroup(data.get("ageGroup") or AgeGroup.OLDER.value),
            curriculum_type=CurriculumType(curriculum) if curriculum else None,
            grade_level=int(grade) if grade is not None else None,
            subject_hint=data.get("subjectHint"),
        )


@dataclass
class ProcessingJob:
    """
    One unit of queued work. `lesson_id` doubles as the job key, so at most
    one job per lesson can be queued or in flight.
    """

    lesson_id: str
    source_kind: SourceKind
    source_ref: str
    child_id: str
    learner_context: LearnerContext = field(default_factory=LearnerContext)
    parent_id: Optional[str] = None
    attempt: int = 0
    lock_token: Optional[str] = None
    lock_expires_at: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def job_id(self) -> str:
        return f"process-{self.lesson_id}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "lessonId": self.lesson_id,
            "sourceKind": self.source_kind.value,
            "sourceRef": self.source_ref,
            "childId": self.child_id,
            "parentId": self.parent_id,
            "learnerContext": self.learner_context.to_dict(),
            "attempt": self.attempt,
            "lastError": self.last_error,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProcessingJob":
        return cls(
            lesson_id=payload["lessonId"],
            source_kind=SourceKind(payload["sourceKind"]),
            source_ref=payload["sourceRef"],
            child_id=payload["childId"],
            parent_id=payload.get("parentId"),
            learner_context=LearnerContext.from_dict(payload.get("learnerContext") or {}),
            attempt=int(payload.get("attempt") or 0),
            last_error=payload.get("lastError"),
        )


@dataclass
class ExtractionResult:
    raw_text: str
    content_blocks: Optional[List[Any]] = None
    document: Optional[bytes] = None
    mime_type: Optional[str] = None
    strategy: str = ""


@dataclass
class LessonRecord:
    id: str
    child_id: str
    source_kind: SourceKind
    source_ref: str
    parent_id: Optional[str] = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    processing_error: Optional[str] = None
    extracted_text: Optional[str] = None
    formatted_content: Optional[str] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    chapters: List[Dict[str, Any]] = field(default_factory=list)
    vocabulary: List[Dict[str, Any]] = field(default_factory=list)
    key_concepts: List[str] = field(default_factory=list)
    suggested_questions: List[str] = field(default_factory=list)
    ai_confidence: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ExerciseRecord:
    id: str
    lesson_id: str
    type: ExerciseType
    question_text: str
    expected_answer: str
    original_position: str
    acceptable_answers: List[str] = field(default_factory=list)
    hints: List[str] = field(default_factory=list)
    explanation: Optional[str] = None
    difficulty: Difficulty = Difficulty.MEDIUM
    options: List[str] = field(default_factory=list)
    xp_reward: int = 10
    order_index: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class StatusReport:
    lesson_id: str
    status: ProcessingStatus
    error: Optional[str] = None
    queued: bool = False
    attempt: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class StepOutcome:
    name: str
    ok: bool
    detail: Optional[str] = None


@dataclass
class SideEffectReport:
    """
    Result of the post-completion steps. Always returned, never raised:
    failed steps show up here and in the logs only.
    """

    lesson_id: str
    steps: List[StepOutcome] = field(default_factory=list)

    def record(self, name: str, ok: bool, detail: Optional[str] = None) -> None:
        self.steps.append(StepOutcome(name=name, ok=ok, detail=detail))

    @property
    def succeeded(self) -> List[str]:
        return [s.name for s in self.steps if s.ok]

    @property
    def failed(self) -> List[str]:
        return [s.name for s in self.steps if not s.ok]
