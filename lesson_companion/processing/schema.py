"""
Validated shapes for generative model output.

Model responses are untrusted JSON. Everything is decoded once at this
boundary into the models below; downstream code never touches raw dicts.
Malformed list entries are dropped one by one instead of failing the whole
payload.
"""

from __future__ import annotations

import logging
import math
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import AnalysisError
from .models import Difficulty, ExerciseType

logger = logging.getLogger(__name__)

BLOCK_TYPES = {
    "heading",
    "paragraph",
    "vocabulary-callout",
    "exercise-marker",
    "image",
    "bulletList",
    "numberedList",
    "table",
    "definition",
    "tip",
    "note",
    "warning",
    "keyConceptBox",
    "formula",
    "rule",
    "example",
    "stepByStep",
    "wordProblem",
    "answer",
    "metadata",
    "divider",
}

_BLOCK_ALIASES = {
    "header": "heading",
    "vocabulary": "vocabulary-callout",
    "exercise": "exercise-marker",
    "question": "exercise-marker",
    "explanation": "paragraph",
}

_EXERCISE_TYPE_ALIASES = {
    "SHORT-ANSWER": ExerciseType.SHORT_ANSWER,
    "MULTIPLE-CHOICE": ExerciseType.MULTIPLE_CHOICE,
    "MATH-PROBLEM": ExerciseType.MATH_PROBLEM,
    "FILL-BLANK": ExerciseType.FILL_IN_BLANK,
    "FILL_BLANK": ExerciseType.FILL_IN_BLANK,
    "FILL-IN-BLANK": ExerciseType.FILL_IN_BLANK,
    "TRUE-FALSE": ExerciseType.TRUE_FALSE,
}


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _keep_valid(model: type, items: Any) -> list:
    if not isinstance(items, list):
        return []
    kept = []
    for item in items:
        try:
            kept.append(model.model_validate(item))
        except ValidationError as exc:
            logger.debug("Dropping malformed %s entry: %s", model.__name__, exc.errors()[:1])
    return kept


def _as_text_list(items: Any) -> List[str]:
    if not isinstance(items, list):
        return []
    return [str(item).strip() for item in items if isinstance(item, (str, int, float)) and str(item).strip()]


class Chapter(_Lenient):
    title: str
    content: str = ""
    key_points: List[str] = Field(default_factory=list, alias="keyPoints")

    @field_validator("key_points", mode="before")
    @classmethod
    def _points(cls, value: Any) -> List[str]:
        return _as_text_list(value)


class VocabularyItem(_Lenient):
    term: str = Field(min_length=1)
    definition: str = ""
    example: Optional[str] = None


class DetectedExercise(_Lenient):
    id: Optional[str] = None
    type: ExerciseType = ExerciseType.SHORT_ANSWER
    question_text: str = Field(alias="questionText", min_length=1)
    expected_answer: str = Field(default="", alias="expectedAnswer")
    acceptable_answers: List[str] = Field(default_factory=list, alias="acceptableAnswers")
    hint1: Optional[str] = None
    hint2: Optional[str] = None
    explanation: Optional[str] = None
    difficulty: Difficulty = Difficulty.MEDIUM
    location_in_content: Optional[str] = Field(default=None, alias="locationInContent")
    options: List[str] = Field(default_factory=list)

    @field_validator("id", "location_in_content", "expected_answer", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _exercise_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().upper().replace(" ", "_")
            if normalized in _EXERCISE_TYPE_ALIASES:
                return _EXERCISE_TYPE_ALIASES[normalized]
            if normalized in ExerciseType.__members__:
                return ExerciseType[normalized]
            return ExerciseType.SHORT_ANSWER
        return value

    @field_validator("difficulty", mode="before")
    @classmethod
    def _difficulty(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().upper() in Difficulty.__members__:
            return Difficulty[value.strip().upper()]
        return Difficulty.MEDIUM

    @field_validator("acceptable_answers", "options", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @property
    def hints(self) -> List[str]:
        return [h for h in (self.hint1, self.hint2) if h]


class ContentBlock(_Lenient):
    """
    One typed node of document structure. Only `type` is required; the
    renderer reads whichever of the remaining fields the type uses.
    """

    type: str
    text: Optional[str] = None
    level: int = 2
    term: Optional[str] = None
    definition: Optional[str] = None
    example: Optional[str] = None
    exercise_id: Optional[str] = Field(default=None, alias="exerciseId")
    src: Optional[str] = None
    alt: Optional[str] = None
    caption: Optional[str] = None
    title: Optional[str] = None
    items: List[str] = Field(default_factory=list)
    headers: List[str] = Field(default_factory=list)
    rows: List[List[str]] = Field(default_factory=list)
    content: Optional[str] = None
    description: Optional[str] = None
    formula: Optional[str] = None
    explanation: Optional[str] = None
    solution: Optional[str] = None
    steps: List[str] = Field(default_factory=list)
    problem: Optional[str] = None
    understand: Optional[str] = None
    setup: Optional[str] = None
    calculate: Optional[str] = None
    simplify: Optional[str] = None
    answer: Optional[str] = None
    label: Optional[str] = None
    subject: Optional[str] = None
    grade_level: Optional[str] = Field(default=None, alias="gradeLevel")
    topic: Optional[str] = None
    duration: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _unknown_as_paragraph(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            return data
        kind = _BLOCK_ALIASES.get(data["type"], data["type"])
        text = data.get("text") or data.get("content")
        if kind not in BLOCK_TYPES and isinstance(text, str) and text.strip():
            logger.debug("Rendering unknown block type %r as a paragraph", kind)
            return {**data, "type": "paragraph", "text": text}
        return data

    @field_validator("type", mode="before")
    @classmethod
    def _block_type(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("block type must be a string")
        value = _BLOCK_ALIASES.get(value, value)
        if value not in BLOCK_TYPES:
            raise ValueError(f"unknown block type {value!r}")
        return value

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, value: Any) -> int:
        try:
            return min(max(int(value), 1), 4)
        except (TypeError, ValueError):
            return 2

    @field_validator("exercise_id", mode="before")
    @classmethod
    def _exercise_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("items", "headers", mode="before")
    @classmethod
    def _items(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @field_validator(
        "text", "content", "formula", "solution", "problem", "calculate", "simplify", "answer", "duration", mode="before"
    )
    @classmethod
    def _number_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("steps", mode="before")
    @classmethod
    def _steps(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        steps = []
        for step in value:
            if isinstance(step, dict):
                label = str(step.get("label") or "").strip()
                content = str(step.get("content") or "").strip()
                step = f"{label}: {content}" if label and content else label or content
            if isinstance(step, (str, int, float)) and str(step).strip():
                steps.append(str(step).strip())
        return steps

    @field_validator("grade_level", mode="before")
    @classmethod
    def _grade(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(int(value))
        return value

    @field_validator("rows", mode="before")
    @classmethod
    def _rows(cls, value: Any) -> List[List[str]]:
        if not isinstance(value, list):
            return []
        return [[str(cell) for cell in row] for row in value if isinstance(row, list)]


class StructuredAnalysis(_Lenient):
    title: Optional[str] = None
    summary: Optional[str] = None
    subject: Optional[str] = None
    grade_level: Optional[str] = Field(default=None, alias="gradeLevel")
    chapters: List[Chapter] = Field(default_factory=list)
    key_concepts: List[str] = Field(default_factory=list, alias="keyConcepts")
    vocabulary: List[VocabularyItem] = Field(default_factory=list)
    suggested_questions: List[str] = Field(default_factory=list, alias="suggestedQuestions")
    exercises: List[DetectedExercise] = Field(default_factory=list)
    content_blocks: List[ContentBlock] = Field(default_factory=list, alias="contentBlocks")
    confidence: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _require_identification(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("analysis payload must be a JSON object")
        if not data.get("subject") and data.get("gradeLevel") in (None, ""):
            raise ValueError("analysis payload names neither subject nor gradeLevel")
        return data

    @field_validator("grade_level", mode="before")
    @classmethod
    def _grade(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(int(value))
        return value

    @field_validator("chapters", mode="before")
    @classmethod
    def _chapters(cls, value: Any) -> List[Chapter]:
        return _keep_valid(Chapter, value)

    @field_validator("vocabulary", mode="before")
    @classmethod
    def _vocabulary(cls, value: Any) -> List[VocabularyItem]:
        return _keep_valid(VocabularyItem, value)

    @field_validator("exercises", mode="before")
    @classmethod
    def _exercises(cls, value: Any) -> List[DetectedExercise]:
        return _keep_valid(DetectedExercise, value)

    @field_validator("content_blocks", mode="before")
    @classmethod
    def _blocks(cls, value: Any) -> List[ContentBlock]:
        return _keep_valid(ContentBlock, value)

    @field_validator("key_concepts", "suggested_questions", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> List[str]:
        return _as_text_list(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> Optional[float]:
        try:
            confidence = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(confidence):
            return None
        return min(max(confidence, 0.0), 1.0)


def parse_analysis(payload: Union[dict, list, Any]) -> StructuredAnalysis:
    """Validate a decoded payload, raising `AnalysisError` on schema failure."""
    try:
        return StructuredAnalysis.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        raise AnalysisError(f"Model output failed validation: {first.get('msg', exc)}") from exc


def parse_content_blocks(payload: Any) -> List[ContentBlock]:
    """Accept either a bare list of blocks or an object with `contentBlocks`."""
    if isinstance(payload, dict):
        payload = payload.get("contentBlocks") or payload.get("blocks") or []
    return _keep_valid(ContentBlock, payload)
