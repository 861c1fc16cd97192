from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Protocol, Set, Tuple

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from .repository import Base

logger = logging.getLogger(__name__)

LESSON_COMPLETE = "LESSON_COMPLETE"


@dataclass(frozen=True)
class AchievementRule:
    code: str
    name: str
    min_lessons: int


ACHIEVEMENT_RULES: Tuple[AchievementRule, ...] = (
    AchievementRule("FIRST_LESSON", "First Lesson", 1),
    AchievementRule("LESSONS_5", "Eager Learner", 5),
    AchievementRule("LESSONS_10", "Bookworm", 10),
    AchievementRule("LESSONS_25", "Scholar", 25),
    AchievementRule("LESSONS_50", "Lesson Legend", 50),
)


def rules_met(lessons_completed: int) -> List[AchievementRule]:
    return [rule for rule in ACHIEVEMENT_RULES if lessons_completed >= rule.min_lessons]


class ProgressTracker(Protocol):
    def increment_lesson_count(self, child_id: str) -> int:
        ...

    def evaluate_achievements(self, child_id: str, event: str) -> List[str]:
        ...


class InMemoryProgressTracker:
    def __init__(self):
        self.lessons_completed: Dict[str, int] = {}
        self.achievements: Dict[str, Set[str]] = {}
        self._lock = Lock()

    def increment_lesson_count(self, child_id: str) -> int:
        with self._lock:
            self.lessons_completed[child_id] = self.lessons_completed.get(child_id, 0) + 1
            return self.lessons_completed[child_id]

    def evaluate_achievements(self, child_id: str, event: str) -> List[str]:
        with self._lock:
            count = self.lessons_completed.get(child_id, 0)
            owned = self.achievements.setdefault(child_id, set())
            unlocked = [rule.code for rule in rules_met(count) if rule.code not in owned]
            owned.update(unlocked)
            return unlocked


class ChildProgressModel(Base):
    __tablename__ = "child_progress"
    child_id = Column(String, primary_key=True)
    lessons_completed = Column(Integer, default=0)
    updated_at = Column(DateTime)


class AchievementModel(Base):
    __tablename__ = "achievements"
    __table_args__ = (UniqueConstraint("child_id", "code"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    child_id = Column(String, index=True)
    code = Column(String)
    event = Column(String)
    unlocked_at = Column(DateTime)


class SqlAlchemyProgressTracker:
    """
    Progress counters and unlocked achievements stored next to the lessons.
    Pass the lesson repository's engine to share one database.
    """

    def __init__(self, database_url: Optional[str] = None, engine=None):
        self.engine = engine or create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def _session(self) -> Session:
        return self.SessionLocal()

    def increment_lesson_count(self, child_id: str) -> int:
        with self._session() as session:
            with session.begin():
                model = session.get(ChildProgressModel, child_id, with_for_update=True)
                if model is None:
                    model = ChildProgressModel(child_id=child_id, lessons_completed=0)
                    session.add(model)
                model.lessons_completed = (model.lessons_completed or 0) + 1
                model.updated_at = datetime.utcnow()
                count = model.lessons_completed
        return count

    def evaluate_achievements(self, child_id: str, event: str) -> List[str]:
        with self._session() as session:
            with session.begin():
                progress = session.get(ChildProgressModel, child_id)
                count = progress.lessons_completed if progress else 0
                owned = set(
                    session.execute(select(AchievementModel.code).where(AchievementModel.child_id == child_id)).scalars()
                )
                unlocked = [rule.code for rule in rules_met(count) if rule.code not in owned]
                for code in unlocked:
                    session.add(AchievementModel(child_id=child_id, code=code, event=event, unlocked_at=datetime.utcnow()))
        if unlocked:
            logger.info("Child %s unlocked %s", child_id, ", ".join(unlocked))
        return unlocked

    def lessons_completed(self, child_id: str) -> int:
        with self._session() as session:
            model = session.get(ChildProgressModel, child_id)
            return model.lessons_completed if model else 0
