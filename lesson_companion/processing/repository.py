from __future__ import annotations

import json
from copy import deepcopy
from dataclasses import fields
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text, create_engine, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import PersistenceError
from .models import (
    Difficulty,
    ExerciseRecord,
    ExerciseType,
    LessonRecord,
    ProcessingStatus,
    SourceKind,
)

Base = declarative_base()

LESSON_FIELDS = {f.name for f in fields(LessonRecord)} - {"id", "created_at"}
_JSON_LESSON_FIELDS = ("chapters", "vocabulary", "key_concepts", "suggested_questions")


class LessonModel(Base):
    __tablename__ = "lessons"
    id = Column(String, primary_key=True)
    child_id = Column(String, index=True)
    parent_id = Column(String)
    source_kind = Column(Enum(SourceKind))
    source_ref = Column(Text)
    processing_status = Column(Enum(ProcessingStatus), index=True)
    processing_error = Column(Text)
    extracted_text = Column(Text)
    formatted_content = Column(Text)
    title = Column(String)
    summary = Column(Text)
    subject = Column(String)
    grade_level = Column(String)
    chapters = Column(Text)
    vocabulary = Column(Text)
    key_concepts = Column(Text)
    suggested_questions = Column(Text)
    ai_confidence = Column(Float)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class ExerciseModel(Base):
    __tablename__ = "exercises"
    id = Column(String, primary_key=True)
    lesson_id = Column(String, ForeignKey("lessons.id", ondelete="CASCADE"), index=True)
    type = Column(Enum(ExerciseType))
    question_text = Column(Text)
    expected_answer = Column(Text)
    acceptable_answers = Column(Text)
    hints = Column(Text)
    explanation = Column(Text)
    difficulty = Column(Enum(Difficulty))
    options = Column(Text)
    original_position = Column(String)
    xp_reward = Column(Integer)
    order_index = Column(Integer)
    created_at = Column(DateTime)


class LessonRepository:
    """
    Persistence boundary for lessons and their exercises. Each call is atomic
    on its own; nothing is transactional across calls. Write failures are
    raised as `PersistenceError`.
    """

    def get_lesson(self, lesson_id: str) -> Optional[LessonRecord]:
        raise NotImplementedError

    def save_lesson(self, lesson: LessonRecord) -> None:
        raise NotImplementedError

    def update_lesson(self, lesson_id: str, values: Dict[str, Any]) -> None:
        raise NotImplementedError

    def update_processing_status(
        self, lesson_id: str, status: ProcessingStatus, error: Optional[str] = None
    ) -> None:
        raise NotImplementedError

    def create_exercises(self, lesson_id: str, exercises: Iterable[ExerciseRecord]) -> List[ExerciseRecord]:
        """Replace the lesson's exercise set so retried jobs never duplicate rows."""
        raise NotImplementedError

    def list_exercises(self, lesson_id: str) -> List[ExerciseRecord]:
        raise NotImplementedError

    def delete_lesson(self, lesson_id: str) -> None:
        raise NotImplementedError


def _check_fields(values: Dict[str, Any]) -> None:
    unknown = set(values) - LESSON_FIELDS
    if unknown:
        raise ValueError(f"Unknown lesson fields: {sorted(unknown)}")


class InMemoryLessonRepository(LessonRepository):
    """
    In-memory store for local runs and tests. Keeps copies of dataclasses to
    avoid cross-mutation between calls.
    """

    def __init__(self):
        self.lessons: Dict[str, LessonRecord] = {}
        self.exercises: Dict[str, ExerciseRecord] = {}
        self.write_log: List[str] = []

    def _clone(self, obj):
        return deepcopy(obj)

    def get_lesson(self, lesson_id: str) -> Optional[LessonRecord]:
        lesson = self.lessons.get(lesson_id)
        return self._clone(lesson) if lesson else None

    def save_lesson(self, lesson: LessonRecord) -> None:
        self.lessons[lesson.id] = self._clone(lesson)

    def update_lesson(self, lesson_id: str, values: Dict[str, Any]) -> None:
        _check_fields(values)
        lesson = self.lessons.get(lesson_id)
        if not lesson:
            raise PersistenceError(f"Lesson {lesson_id} not found")
        for key, value in values.items():
            setattr(lesson, key, self._clone(value))
        lesson.updated_at = datetime.utcnow()
        self.write_log.append(f"update:{lesson_id}")

    def update_processing_status(
        self, lesson_id: str, status: ProcessingStatus, error: Optional[str] = None
    ) -> None:
        lesson = self.lessons.get(lesson_id)
        if not lesson:
            raise PersistenceError(f"Lesson {lesson_id} not found")
        lesson.processing_status = status
        lesson.processing_error = error
        lesson.updated_at = datetime.utcnow()
        self.write_log.append(f"status:{lesson_id}:{status.value}")

    def create_exercises(self, lesson_id: str, exercises: Iterable[ExerciseRecord]) -> List[ExerciseRecord]:
        if lesson_id not in self.lessons:
            raise PersistenceError(f"Lesson {lesson_id} not found")
        for key in [k for k, e in self.exercises.items() if e.lesson_id == lesson_id]:
            del self.exercises[key]
        created = []
        for exercise in exercises:
            self.exercises[exercise.id] = self._clone(exercise)
            created.append(self._clone(exercise))
        self.write_log.append(f"exercises:{lesson_id}:{len(created)}")
        return created

    def list_exercises(self, lesson_id: str) -> List[ExerciseRecord]:
        found = [self._clone(e) for e in self.exercises.values() if e.lesson_id == lesson_id]
        return sorted(found, key=lambda e: e.order_index)

    def delete_lesson(self, lesson_id: str) -> None:
        self.lessons.pop(lesson_id, None)
        for key in [k for k, e in self.exercises.items() if e.lesson_id == lesson_id]:
            del self.exercises[key]


class SqlAlchemyLessonRepository(LessonRepository):
    """
    SQL-backed repository using SQLAlchemy. Works with SQLite/Postgres URLs.
    List-valued lesson fields are stored as JSON text.
    """

    def __init__(self, database_url: str):
        self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def _session(self) -> Session:
        return self.SessionLocal()

    # region Lesson operations
    def get_lesson(self, lesson_id: str) -> Optional[LessonRecord]:
        with self._session() as session:
            model = session.get(LessonModel, lesson_id)
            if not model:
                return None
            return self._to_record(model)

    def save_lesson(self, lesson: LessonRecord) -> None:
        try:
            with self._session() as session:
                session.merge(
                    LessonModel(
                        id=lesson.id,
                        **{name: self._dump(name, getattr(lesson, name)) for name in LESSON_FIELDS},
                        created_at=lesson.created_at,
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not save lesson {lesson.id}: {exc.__class__.__name__}") from exc

    def update_lesson(self, lesson_id: str, values: Dict[str, Any]) -> None:
        _check_fields(values)
        row = {name: self._dump(name, value) for name, value in values.items()}
        row.setdefault("updated_at", datetime.utcnow())
        self._update(lesson_id, row)

    def update_processing_status(
        self, lesson_id: str, status: ProcessingStatus, error: Optional[str] = None
    ) -> None:
        self._update(
            lesson_id,
            {"processing_status": status, "processing_error": error, "updated_at": datetime.utcnow()},
        )

    def _update(self, lesson_id: str, row: Dict[str, Any]) -> None:
        try:
            with self._session() as session:
                result = session.execute(update(LessonModel).where(LessonModel.id == lesson_id).values(**row))
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not update lesson {lesson_id}: {exc.__class__.__name__}") from exc
        if result.rowcount == 0:
            raise PersistenceError(f"Lesson {lesson_id} not found")

    def delete_lesson(self, lesson_id: str) -> None:
        with self._session() as session:
            session.execute(delete(ExerciseModel).where(ExerciseModel.lesson_id == lesson_id))
            session.execute(delete(LessonModel).where(LessonModel.id == lesson_id))
            session.commit()

    # endregion

    # region Exercise operations
    def create_exercises(self, lesson_id: str, exercises: Iterable[ExerciseRecord]) -> List[ExerciseRecord]:
        records = list(exercises)
        try:
            with self._session() as session:
                if session.get(LessonModel, lesson_id) is None:
                    raise PersistenceError(f"Lesson {lesson_id} not found")
                session.execute(delete(ExerciseModel).where(ExerciseModel.lesson_id == lesson_id))
                for exercise in records:
                    session.add(
                        ExerciseModel(
                            id=exercise.id,
                            lesson_id=lesson_id,
                            type=exercise.type,
                            question_text=exercise.question_text,
                            expected_answer=exercise.expected_answer,
                            acceptable_answers=json.dumps(exercise.acceptable_answers),
                            hints=json.dumps(exercise.hints),
                            explanation=exercise.explanation,
                            difficulty=exercise.difficulty,
                            options=json.dumps(exercise.options),
                            original_position=exercise.original_position,
                            xp_reward=exercise.xp_reward,
                            order_index=exercise.order_index,
                            created_at=exercise.created_at,
                        )
                    )
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not create exercises for {lesson_id}: {exc.__class__.__name__}") from exc
        return records

    def list_exercises(self, lesson_id: str) -> List[ExerciseRecord]:
        with self._session() as session:
            stmt = (
                select(ExerciseModel)
                .where(ExerciseModel.lesson_id == lesson_id)
                .order_by(ExerciseModel.order_index)
            )
            return [
                ExerciseRecord(
                    id=m.id,
                    lesson_id=m.lesson_id,
                    type=m.type,
                    question_text=m.question_text,
                    expected_answer=m.expected_answer or "",
                    original_position=m.original_position,
                    acceptable_answers=json.loads(m.acceptable_answers or "[]"),
                    hints=json.loads(m.hints or "[]"),
                    explanation=m.explanation,
                    difficulty=m.difficulty,
                    options=json.loads(m.options or "[]"),
                    xp_reward=m.xp_reward or 0,
                    order_index=m.order_index or 0,
                    created_at=m.created_at,
                )
                for m in session.execute(stmt).scalars().all()
            ]

    # endregion

    def _dump(self, name: str, value: Any) -> Any:
        if name in _JSON_LESSON_FIELDS:
            return json.dumps(value or [])
        return value

    def _to_record(self, model: LessonModel) -> LessonRecord:
        values = {name: getattr(model, name) for name in LESSON_FIELDS}
        for name in _JSON_LESSON_FIELDS:
            values[name] = json.loads(values[name] or "[]")
        return LessonRecord(id=model.id, created_at=model.created_at, **values)
