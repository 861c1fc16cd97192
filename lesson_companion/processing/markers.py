"""
Exercise markers: the join key between formatted lesson content and the
persisted exercise rows.

A marker is `<span class="interactive-exercise" data-exercise-position="P"
data-type="T">question</span>`. Positions are assigned once by
`assign_positions` and reused by both the formatter and exercise creation,
so the two always agree.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set, Tuple

from .models import ExerciseType
from .schema import DetectedExercise

MARKER_CLASS = "interactive-exercise"

_MARKER_OPEN_RE = re.compile(r'<span\s+class="interactive-exercise"([^>]*)>', re.IGNORECASE)
_ATTR_RE = re.compile(r'([a-zA-Z-]+)="([^"]*)"')
_TAG_RE = re.compile(r"<[^>]+>")
_SPAN_TAG_RE = re.compile(r"<(/?)span\b[^>]*>", re.IGNORECASE)


@dataclass
class MarkerRef:
    position: str
    exercise_type: Optional[str]
    text: str


@dataclass
class BindingCheck:
    missing_markers: List[str] = field(default_factory=list)
    orphan_markers: List[str] = field(default_factory=list)
    duplicate_markers: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing_markers or self.orphan_markers or self.duplicate_markers)


def assign_positions(exercises: Sequence[DetectedExercise]) -> List[Tuple[str, DetectedExercise]]:
    """
    Pair each exercise with a position unique within the lesson: its
    `locationInContent`, else its id, else (or on collision) `ex-<n>`.
    """
    taken: Set[str] = set()
    paired: List[Tuple[str, DetectedExercise]] = []
    for index, exercise in enumerate(exercises, start=1):
        candidate = (exercise.location_in_content or exercise.id or "").strip()
        if not candidate or candidate in taken:
            candidate = f"ex-{index}"
            suffix = 1
            while candidate in taken:
                suffix += 1
                candidate = f"ex-{index}-{suffix}"
        taken.add(candidate)
        paired.append((candidate, exercise))
    return paired


def build_marker(position: str, exercise_type: ExerciseType, inner_html: str) -> str:
    return (
        f'<span class="{MARKER_CLASS}" data-exercise-position="{html.escape(position, quote=True)}" '
        f'data-type="{exercise_type.value}">{inner_html}</span>'
    )


def extract_markers(content: str) -> List[MarkerRef]:
    """Return every marker in document order, with its visible text."""
    refs: List[MarkerRef] = []
    for match in _MARKER_OPEN_RE.finditer(content or ""):
        attrs = dict(_ATTR_RE.findall(match.group(1)))
        position = attrs.get("data-exercise-position") or attrs.get("data-exercise-id")
        if position is None:
            continue
        inner = _marker_inner_html(content, match.end())
        refs.append(
            MarkerRef(
                position=html.unescape(position),
                exercise_type=attrs.get("data-type"),
                text=html.unescape(_TAG_RE.sub("", inner)).strip(),
            )
        )
    return refs


def _marker_inner_html(content: str, start: int) -> str:
    depth = 1
    for tag in _SPAN_TAG_RE.finditer(content, start):
        depth += -1 if tag.group(1) else 1
        if depth == 0:
            return content[start : tag.start()]
    return content[start:]


def check_binding(content: str, positions: Sequence[str]) -> BindingCheck:
    found = [ref.position for ref in extract_markers(content)]
    expected = set(positions)
    seen: Set[str] = set()
    duplicates: List[str] = []
    for position in found:
        if position in seen and position not in duplicates:
            duplicates.append(position)
        seen.add(position)
    return BindingCheck(
        missing_markers=[p for p in positions if p not in seen],
        orphan_markers=[p for p in dict.fromkeys(found) if p not in expected],
        duplicate_markers=duplicates,
    )


def exercises_from_markers(content: str) -> List[DetectedExercise]:
    """
    Recovery path: rebuild minimal exercise entries from markers already in
    the content when the analysis produced none.
    """
    recovered: List[DetectedExercise] = []
    seen: Set[str] = set()
    for ref in extract_markers(content):
        if ref.position in seen or not ref.text:
            continue
        seen.add(ref.position)
        recovered.append(
            DetectedExercise.model_validate(
                {
                    "id": ref.position,
                    "locationInContent": ref.position,
                    "type": ref.exercise_type or ExerciseType.SHORT_ANSWER.value,
                    "questionText": ref.text,
                }
            )
        )
    return recovered
