"""
Prompt builders for the extraction and analysis model calls.

Only the input/output contract matters to the pipeline: analysis prompts must
ask for a single JSON object with the keys `parse_analysis` understands, and
OCR prompts must ask for plain text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .models import AgeGroup, CurriculumType, LearnerContext


@dataclass(frozen=True)
class GradeLevelConfig:
    max_sentence_length: int
    vocabulary_tier: str
    instruction_style: str


@dataclass(frozen=True)
class CurriculumConfig:
    display_name: str
    teacher_role: str


GRADE_LEVEL_CONFIGS: Dict[int, GradeLevelConfig] = {
    0: GradeLevelConfig(8, "basic", "Visual demonstrations with simple verbal support"),
    1: GradeLevelConfig(10, "basic", "Modelled examples with guided practice"),
    2: GradeLevelConfig(12, "simple_academic", "Guided practice with scaffolded support"),
    3: GradeLevelConfig(15, "simple_academic", "Explained concepts with structured practice"),
    4: GradeLevelConfig(15, "subject_specific", "Scaffolded learning with increasing independence"),
    5: GradeLevelConfig(18, "subject_specific", "Discussion-based with guided inquiry"),
    6: GradeLevelConfig(20, "technical", "Discussed concepts with Socratic questioning"),
    7: GradeLevelConfig(22, "technical", "Independent learning with critical analysis"),
    8: GradeLevelConfig(25, "technical", "Self-directed learning with abstract reasoning"),
}

CURRICULUM_CONFIGS: Dict[CurriculumType, CurriculumConfig] = {
    CurriculumType.IB: CurriculumConfig("IB Primary Years Programme", "Facilitator and co-learner who guides discovery"),
    CurriculumType.BRITISH: CurriculumConfig(
        "British National Curriculum", "Knowledgeable instructor who guides with structure and warmth"
    ),
    CurriculumType.AMERICAN: CurriculumConfig("American Common Core", "Coach and facilitator who supports individual growth"),
    CurriculumType.INDIAN_CBSE: CurriculumConfig(
        "Indian CBSE Curriculum", "Respected guide and knowledge expert in the Guru-Shishya tradition"
    ),
    CurriculumType.INDIAN_ICSE: CurriculumConfig(
        "Indian ICSE Curriculum", "Expert instructor providing thorough, detailed explanations"
    ),
    CurriculumType.ARABIC: CurriculumConfig("Arabic Curriculum", "Respected guide providing clear, structured instruction"),
}


def grade_config(grade_level: Optional[int], age_group: AgeGroup) -> GradeLevelConfig:
    if grade_level is None:
        grade_level = 1 if age_group == AgeGroup.YOUNG else 4
    return GRADE_LEVEL_CONFIGS[max(0, min(8, int(grade_level)))]


def curriculum_guidance(context: LearnerContext) -> str:
    curriculum = CURRICULUM_CONFIGS[context.curriculum_type or CurriculumType.AMERICAN]
    grade = grade_config(context.grade_level, context.age_group)
    grade_label = context.grade_level if context.grade_level is not None else "unknown"
    return "\n".join(
        [
            f"TEACHING APPROACH ({curriculum.display_name}):",
            f"Your role: {curriculum.teacher_role}",
            "",
            f"LANGUAGE CALIBRATION (Grade {grade_label}):",
            f"- Keep sentences to approximately {grade.max_sentence_length} words",
            f"- Use {grade.vocabulary_tier.replace('_', ' ')} vocabulary",
            f"- {grade.instruction_style}",
        ]
    )


ANALYSIS_SCHEMA_HINT = """{
  "title": "short lesson title",
  "summary": "2-3 sentence summary",
  "subject": "MATH | SCIENCE | ENGLISH | ARABIC | ISLAMIC_STUDIES | SOCIAL_STUDIES | ART | MUSIC | OTHER",
  "gradeLevel": "estimated grade, e.g. \\"3\\"",
  "chapters": [{"title": "", "content": "", "keyPoints": [""]}],
  "keyConcepts": [""],
  "vocabulary": [{"term": "", "definition": "", "example": ""}],
  "suggestedQuestions": [""],
  "exercises": [{
    "id": "ex-1",
    "type": "MATH_PROBLEM | FILL_IN_BLANK | SHORT_ANSWER | MULTIPLE_CHOICE | TRUE_FALSE",
    "questionText": "exact question text as it appears in the content",
    "expectedAnswer": "",
    "acceptableAnswers": [""],
    "hint1": "",
    "hint2": "",
    "explanation": "",
    "difficulty": "EASY | MEDIUM | HARD",
    "locationInContent": "unique anchor such as ex-1",
    "options": []
  }],
  "confidence": 0.0
}"""


def build_analysis_prompt(context: LearnerContext, text: Optional[str]) -> str:
    audience = "a young child (ages 4-7)" if context.age_group == AgeGroup.YOUNG else "an older child (ages 8-12)"
    subject_line = f"The uploader says the subject is {context.subject_hint}.\n" if context.subject_hint else ""
    body = f"\nCONTENT:\n{text}\n" if text else "\nThe content is the attached document.\n"
    return (
        f"You are analysing lesson material for {audience}.\n"
        f"{curriculum_guidance(context)}\n\n"
        f"{subject_line}"
        "Identify the subject and grade level, summarise the material, split it into chapters, "
        "pull out vocabulary and key concepts, and list every gradeable exercise already present "
        "in the material. Do not invent exercises that are not in the content.\n"
        "Respond with ONLY one JSON object of this shape:\n"
        f"{ANALYSIS_SCHEMA_HINT}\n"
        f"{body}"
    )


IMAGE_OCR_PROMPT = (
    "Extract all text from this image of educational material. Preserve the reading order, "
    "line breaks, numbering and any exercise or question text exactly. "
    "Return plain text only, with no commentary."
)

PDF_OCR_PROMPT = (
    "This PDF is a scanned document. Transcribe all visible text page by page. "
    "Start each page with a line of the form [Page N]. Keep headings, lists, tables "
    "(as tab-separated rows) and exercise numbering. Return plain text only."
)

DOCUMENT_STRUCTURE_PROMPT = """Read this document and return its structure as JSON.
Respond with ONLY one JSON object: {"rawText": "full plain text of the document", "contentBlocks": [...]}.
Each content block is one of:
  {"type": "heading", "text": "", "level": 1-4}
  {"type": "paragraph", "text": ""}
  {"type": "vocabulary-callout", "term": "", "definition": "", "example": ""}
  {"type": "exercise-marker", "exerciseId": "ex-1", "text": "question text"}
  {"type": "image", "alt": "", "caption": ""}
  {"type": "bulletList" | "numberedList", "items": [""]}
  {"type": "table", "headers": [""], "rows": [[""]]}
  {"type": "tip" | "note" | "warning" | "keyConceptBox", "title": "", "text": ""}
Keep the original reading order. Number exercise markers ex-1, ex-2, ... in order."""
