"""
Deterministic lesson formatter.

Turns raw extracted text plus whatever structure the analysis produced into
renderable HTML. Rendering falls through four tiers, best first:

1. content blocks from a structured document read
2. heuristic layout over the raw text, annotated with vocabulary and
   exercise markers
3. heuristic layout without annotations
4. escaped text split into paragraphs

Every tier places exactly one marker per exercise; exercises whose question
text cannot be found inline are listed in a trailing practice section.
`DocumentFormatter.format` never raises.
"""

from __future__ import annotations

import html
import logging
import re
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .markers import MARKER_CLASS, assign_positions, build_marker
from .math_format import format_math
from .models import AgeGroup, ExerciseType
from .schema import ContentBlock, DetectedExercise, StructuredAnalysis, VocabularyItem

logger = logging.getLogger(__name__)

Positioned = List[Tuple[str, DetectedExercise]]

SECTION_HEADERS = [
    re.compile(r"^(Learning Objectives?|Objectives?|Goals?):?$", re.I),
    re.compile(r"^(Prerequisites?|Requirements?|Before You Begin):?$", re.I),
    re.compile(r"^(Key Concepts?|Important Concepts?|Main Ideas?):?$", re.I),
    re.compile(r"^(Summary|Conclusion|Review|Recap):?$", re.I),
    re.compile(r"^(Introduction|Overview|Background):?$", re.I),
    re.compile(r"^(Examples?|Practice|Exercises?|Problems?|Activities?):?$", re.I),
    re.compile(r"^(Steps?|Procedure|Instructions?|How To):?$", re.I),
    re.compile(r"^(Definition|Formula|Rule|Theorem|Law):?$", re.I),
    re.compile(r"^(Materials?|Supplies|What You Need|Vocabulary):?$", re.I),
]
NUMBERED_HEADER = re.compile(
    r"^((?:Step|Example|Part|Section|Chapter|Lesson|Unit|Question|Problem|Exercise)\s*\d+)\s*[:.)]\s*", re.I
)
ALL_CAPS_HEADER = re.compile(r"^[A-Z][A-Z\s]{5,}$")
TITLE_CASE_HEADER = re.compile(r"^[A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,5}$")

BULLET = re.compile(r"^[•·∙‣⁃○●◦▪▸\-*]\s+")
NUMBERED_ITEM = re.compile(r"^(\d+)[.)]\s+")
LETTERED_ITEM = re.compile(r"^([a-zA-Z])[.)]\s+")

QUESTION = re.compile(
    r"^(What|Why|How|When|Where|Which|Who|Can|Do|Does|Is|Are|Will|Would|Should|Could)\s+.+\?$", re.I
)
METADATA = [
    re.compile(r"^(?:Duration|Time|Length):\s*[\d-]+\s*(?:minutes?|mins?|hours?|hrs?)", re.I),
    re.compile(r"^(?:Grade|Level|Year)(?:\s*Level)?:\s*(?:K|\d+)(?:st|nd|rd|th)?(?:\s*Grade)?", re.I),
    re.compile(r"^(?:Subject|Topic|Course):\s*[A-Za-z\s]+", re.I),
]

CALLOUTS = [
    ("tip", "Tip", re.compile(r"^(?:💡\s*)?(?:Tip|Hint|Pro Tip|Quick Tip)\s*[:!]\s*(.+)$", re.I)),
    ("note", "Note", re.compile(r"^(?:📝\s*)?(?:Note|Remember|Keep in mind|FYI)\s*[:!]\s*(.+)$", re.I)),
    (
        "warning",
        "Watch out",
        re.compile(r"^(?:⚠️\s*)?(?:Warning|Caution|Watch out|Be careful|Common mistake|Avoid)\s*[:!]\s*(.+)$", re.I),
    ),
    (
        "key-concept",
        "Key concept",
        re.compile(r"^(?:Key Concept|Important|Key Point|Key Idea|Main Idea|Essential)\s*[:!]\s*(.+)$", re.I),
    ),
    ("rule", "Rule", re.compile(r"^(?:📐\s*)?(?:Rule|The Rule|Grammar Rule|Math Rule|Spelling Rule)\s*[:!]\s*(.+)$", re.I)),
    ("formula", "Formula", re.compile(r"^(?:🔢\s*)?(?:Formula|Equation)\s*[:!]\s*(.+)$", re.I)),
    ("example", "Example", re.compile(r"^(?:Example|For example|For instance|e\.g\.)\s*[:!]\s*(.+)$", re.I)),
]
DEFINITION = re.compile(
    r"^([A-Z][a-zA-Z]*(?:\s[a-zA-Z]+){0,3})(?:\s+[-–]\s+|\s+(?:means|is defined as|refers to)\s+)(.+)$"
)

SLIDE_MARKER = re.compile(r"^---\s*SLIDE\s*(\d+)\s*:\s*(.+?)\s*---$", re.I)
SECTION_MARKER = re.compile(r"^(?:\[(Page|Section)\s+(\d+)\]|---\s*SECTION\s*(\d+)\s*---)$", re.I)

ABBREVIATIONS = [
    "Mr", "Mrs", "Ms", "Dr", "Prof", "Sr", "Jr", "vs", "etc", "i.e", "e.g", "al", "Inc", "Ltd", "Co",
    "Jan", "Feb", "Mar", "Apr", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
    "St", "Ave", "Mt", "ft", "cm", "mm", "km", "kg", "lb", "No", "Vol", "Ch", "Sec", "Fig", "pg", "pp",
]
_ABBR_RE = re.compile(r"\b(" + "|".join(re.escape(a) for a in ABBREVIATIONS) + r")\.")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9\"'(])")
_RESTORE_HEADERS = re.compile(
    r"([.!?])\s+(Learning Objectives|Key Concepts|Summary|Vocabulary|Practice|Exercises|Introduction|Examples)\s*[:\-•]?\s*"
)
_TAG_SPLIT = re.compile(r"(<[^>]+>)")

MAX_SENTENCES_PER_PARAGRAPH = 4


class DocumentFormatter:
    def format(
        self,
        raw_text: Optional[str],
        analysis: Optional[StructuredAnalysis] = None,
        content_blocks: Optional[Sequence[ContentBlock]] = None,
        age_group: AgeGroup = AgeGroup.OLDER,
    ) -> str:
        text = raw_text if isinstance(raw_text, str) else ""
        exercises: Positioned = []
        vocabulary: List[VocabularyItem] = []
        chapter_titles: List[str] = []
        blocks: List[ContentBlock] = list(content_blocks or [])
        try:
            if analysis is not None:
                exercises = assign_positions(analysis.exercises)
                vocabulary = list(analysis.vocabulary)
                chapter_titles = [c.title for c in analysis.chapters]
                blocks = blocks or list(analysis.content_blocks)
        except Exception:  # noqa: BLE001
            logger.exception("Analysis fields unusable, formatting raw text only")
            exercises, vocabulary, chapter_titles, blocks = [], [], [], []

        tiers = []
        if blocks:
            tiers.append(("blocks", lambda: self._render_blocks(blocks, exercises, vocabulary)))
        if exercises or vocabulary or chapter_titles:
            tiers.append(("annotated", lambda: self._render_annotated(text, exercises, vocabulary, chapter_titles)))
        tiers.append(("heuristic", lambda: self._finish(_style_math(self._convert_to_html(text)), exercises, set())))

        for name, render in tiers:
            try:
                body = render()
            except Exception:  # noqa: BLE001
                logger.exception("Formatter tier %s failed, falling back", name)
                continue
            if _has_visible_text(body) or not text.strip():
                logger.debug("Formatted content with tier %s", name)
                return self._wrap(body, age_group)
            logger.warning("Formatter tier %s produced no visible text, falling back", name)

        return self._minimal(text, exercises, age_group)

    # region tiers
    def _render_annotated(
        self,
        text: str,
        exercises: Positioned,
        vocabulary: List[VocabularyItem],
        chapter_titles: List[str],
    ) -> str:
        body = self._convert_to_html(text, chapter_titles)
        placed: Set[str] = set()
        body = self._mark_exercises(body, exercises, placed)
        body = self._highlight_vocabulary(body, vocabulary)
        body = _style_math(body)
        return self._finish(body, exercises, placed)

    def _render_blocks(
        self,
        blocks: Sequence[ContentBlock],
        exercises: Positioned,
        vocabulary: List[VocabularyItem],
    ) -> str:
        by_key: Dict[str, Tuple[str, DetectedExercise]] = {}
        for position, exercise in exercises:
            by_key.setdefault(position, (position, exercise))
            if exercise.id:
                by_key.setdefault(exercise.id, (position, exercise))

        placed: Set[str] = set()
        parts: List[str] = []
        for block in blocks:
            if block.type == "exercise-marker":
                parts.append(self._render_exercise_block(block, by_key, placed, has_exercises=bool(exercises)))
            else:
                parts.append(self._render_block(block))
        body = "\n".join(p for p in parts if p)
        body = self._mark_exercises(body, exercises, placed)
        body = self._highlight_vocabulary(body, vocabulary)
        body = _style_math(body)
        return self._finish(body, exercises, placed)

    def _finish(self, body: str, exercises: Positioned, placed: Set[str]) -> str:
        remaining = [(p, e) for p, e in exercises if p not in placed]
        if not remaining:
            return body
        items = "\n".join(
            f"<li>{build_marker(position, exercise.type, _escape(exercise.question_text))}</li>"
            for position, exercise in remaining
        )
        practice = (
            '<section class="practice-section">\n'
            '<h2 class="lesson-header">Practice</h2>\n'
            f"<ol>\n{items}\n</ol>\n</section>"
        )
        return f"{body}\n{practice}" if body else practice

    def _minimal(self, text: str, exercises: Positioned, age_group: AgeGroup) -> str:
        escaped = html.escape(text or "")
        paragraphs = [p.replace("\n", "<br>") for p in re.split(r"\n\s*\n+", escaped) if p.strip()]
        body = "\n".join(f"<p>{p}</p>" for p in paragraphs)
        try:
            body = self._finish(body, exercises, set())
        except Exception:  # noqa: BLE001
            logger.exception("Could not append practice section in minimal format")
        return self._wrap(body, age_group)

    def _wrap(self, body: str, age_group: AgeGroup) -> str:
        age_class = "age-young" if age_group == AgeGroup.YOUNG else "age-older"
        return f'<div class="formatted-content {age_class}">\n{body}\n</div>'

    # endregion

    # region content blocks
    def _render_exercise_block(
        self,
        block: ContentBlock,
        by_key: Dict[str, Tuple[str, DetectedExercise]],
        placed: Set[str],
        has_exercises: bool,
    ) -> str:
        key = (block.exercise_id or "").strip()
        match = by_key.get(key)
        if match and match[0] not in placed:
            position, exercise = match
            placed.add(position)
            question = block.text or exercise.question_text
            return f'<p class="exercise">{build_marker(position, exercise.type, _escape(question))}</p>'
        if not block.text:
            return ""
        if has_exercises or not key or key in placed:
            return f'<p class="question"><strong>{_escape(block.text)}</strong></p>'
        # No structured exercises: keep the marker so exercises can be recovered from it.
        placed.add(key)
        return f'<p class="exercise">{build_marker(key, ExerciseType.SHORT_ANSWER, _escape(block.text))}</p>'

    def _render_block(self, block: ContentBlock) -> str:
        kind = block.type
        if kind == "heading":
            return f'<h{block.level} class="lesson-header">{_escape(block.text)}</h{block.level}>' if block.text else ""
        if kind == "paragraph":
            return self._paragraphs(block.text or "")
        if kind in ("vocabulary-callout", "definition"):
            term = block.term or block.title
            if not term:
                return self._paragraphs(block.text or "")
            definition = block.definition or block.text or ""
            example = f'<div class="vocabulary-example"><em>{_escape(block.example)}</em></div>' if block.example else ""
            return (
                '<div class="vocabulary-callout">'
                f'<strong class="vocabulary-callout-term">{_escape(term)}</strong>: {_escape(definition)}{example}</div>'
            )
        if kind == "image":
            label = block.caption or block.alt or "Image"
            src = block.src if block.src and block.src.startswith(("https://", "http://", "data:image/")) else None
            img = f'<img src="{html.escape(src, quote=True)}" alt="{html.escape(block.alt or "", quote=True)}">' if src else ""
            return f'<figure class="lesson-image">{img}<figcaption>{_escape(label)}</figcaption></figure>'
        if kind in ("bulletList", "numberedList"):
            if not block.items:
                return ""
            tag = "ol" if kind == "numberedList" else "ul"
            items = "\n".join(f"<li>{_inline(item)}</li>" for item in block.items)
            return f"<{tag}>\n{items}\n</{tag}>"
        if kind == "table":
            return self._table(block)
        if kind in ("tip", "note", "warning", "keyConceptBox"):
            css = "key-concept" if kind == "keyConceptBox" else kind
            label = block.title or {"tip": "Tip", "note": "Note", "warning": "Watch out"}.get(kind, "Key concept")
            return _callout(css, label, block.text or "") if block.text else ""
        if kind == "formula":
            formula = block.formula or block.text
            if not formula:
                return ""
            explanation = f"<p>{_inline(block.explanation)}</p>" if block.explanation else ""
            return (
                '<div class="callout callout-formula"><span class="callout-label">Formula</span> '
                f'<code class="math equation">{_escape(formula)}</code>{explanation}</div>'
            )
        if kind == "rule":
            title = block.title or "Rule"
            parts = [f'<span class="callout-label">{_escape(title)}</span>']
            if block.description or block.text:
                parts.append(f"<p>{_inline(block.description or block.text)}</p>")
            if block.steps:
                parts.append("<ol>" + "".join(f"<li>{_inline(step)}</li>" for step in block.steps) + "</ol>")
            if block.formula:
                parts.append(f'<code class="math equation">{_escape(block.formula)}</code>')
            return f'<div class="callout callout-rule">{"".join(parts)}</div>' if len(parts) > 1 else ""
        if kind == "example":
            content = block.content or block.text
            if not content:
                return ""
            solution = (
                f'<p class="example-solution"><strong>Solution:</strong> {_inline(block.solution)}</p>'
                if block.solution
                else ""
            )
            return (
                f'<div class="callout callout-example"><span class="callout-label">{_escape(block.title or "Example")}</span> '
                f"<p>{_inline(content)}</p>{solution}</div>"
            )
        if kind == "stepByStep":
            if not block.steps:
                return self._paragraphs(block.text or "")
            title = f'<h4 class="lesson-header">{_escape(block.title)}</h4>' if block.title else ""
            steps = "\n".join(f"<li>{_inline(step)}</li>" for step in block.steps)
            return f'<div class="step-by-step">{title}<ol>\n{steps}\n</ol></div>'
        if kind == "wordProblem":
            problem = block.problem or block.text
            if not problem:
                return ""
            parts = [
                f'<h4 class="lesson-header">{_escape(block.title or "Word problem")}</h4>',
                f'<p class="word-problem-text">{_inline(problem)}</p>',
            ]
            for label, value in (
                ("Understand", block.understand),
                ("Set up", block.setup),
                ("Calculate", block.calculate),
                ("Simplify", block.simplify),
                ("Answer", block.answer),
            ):
                if value:
                    parts.append(f'<p class="word-problem-step"><strong>{label}:</strong> {_inline(value)}</p>')
            return f'<div class="word-problem">{"".join(parts)}</div>'
        if kind == "answer":
            answer = block.answer or block.text
            if not answer:
                return ""
            explanation = f" {_inline(block.explanation)}" if block.explanation else ""
            return f'<p class="answer"><strong>Answer:</strong> {_inline(answer)}{explanation}</p>'
        if kind == "metadata":
            fields = [
                ("Grade", block.grade_level),
                ("Subject", block.subject),
                ("Topic", block.topic),
                ("Duration", block.duration),
            ]
            shown = " · ".join(f"{label}: {_escape(value)}" for label, value in fields if value)
            return f'<p class="metadata">{shown}</p>' if shown else ""
        if kind == "divider":
            if block.label:
                return f'<div class="section-break"><span class="section-marker">{_escape(block.label)}</span></div>'
            return '<hr class="lesson-divider">'
        return ""

    def _table(self, block: ContentBlock) -> str:
        if not block.rows and not block.headers:
            return ""
        head = ""
        if block.headers:
            head = "<thead><tr>" + "".join(f"<th>{_escape(h)}</th>" for h in block.headers) + "</tr></thead>"
        rows = "".join("<tr>" + "".join(f"<td>{_escape(c)}</td>" for c in row) + "</tr>" for row in block.rows)
        return f'<table class="lesson-table">{head}<tbody>{rows}</tbody></table>'

    # endregion

    # region heuristics
    def _convert_to_html(self, text: str, chapter_titles: Sequence[str] = ()) -> str:
        text = (text or "").replace("\r\n", "\n").replace("\r", "\n")
        if _needs_restoration(text):
            text = _restore_line_breaks(text)
        chapters = {t.strip().lower(): i for i, t in enumerate(chapter_titles, start=1) if t and t.strip()}

        lines = text.split("\n")
        result: List[str] = []
        paragraph: List[str] = []
        list_items: List[str] = []
        list_type: Optional[str] = None

        def flush_paragraph() -> None:
            if paragraph:
                result.append(self._paragraphs(" ".join(paragraph)))
                paragraph.clear()

        def flush_list() -> None:
            nonlocal list_type
            if list_items:
                tag = "ul" if list_type == "bullet" else "ol"
                items = "\n".join(f"<li>{_inline(item)}</li>" for item in list_items)
                result.append(f"<{tag}>\n{items}\n</{tag}>")
                list_items.clear()
            list_type = None

        for index, line in enumerate(lines):
            trimmed = line.strip()
            next_line = lines[index + 1].strip() if index + 1 < len(lines) else ""

            if not trimmed:
                flush_list()
                flush_paragraph()
                continue

            block = self._structural_line(trimmed, next_line, chapters)
            if block is not None:
                flush_list()
                flush_paragraph()
                result.append(block)
                continue

            item = _list_item(trimmed)
            if item:
                flush_paragraph()
                if list_type and list_type != item[0]:
                    flush_list()
                list_type = item[0]
                list_items.append(item[1])
                continue
            flush_list()

            if QUESTION.match(trimmed):
                flush_paragraph()
                result.append(f'<p class="question"><strong>{_inline(trimmed)}</strong></p>')
                continue
            if any(p.match(trimmed) for p in METADATA):
                flush_paragraph()
                result.append(f'<p class="metadata">{_inline(trimmed)}</p>')
                continue

            paragraph.append(trimmed)

        flush_list()
        flush_paragraph()
        return "\n".join(r for r in result if r)

    def _structural_line(self, trimmed: str, next_line: str, chapters: Dict[str, int]) -> Optional[str]:
        section = SECTION_MARKER.match(trimmed)
        if section:
            label = (section.group(1) or "Section").title()
            number = section.group(2) or section.group(3)
            return (
                f'<div class="section-break" data-{label.lower()}="{number}">'
                f'<span class="section-marker">{label} {number}</span></div>'
            )
        slide = SLIDE_MARKER.match(trimmed)
        if slide:
            return f'<h2 class="lesson-header slide-title" data-slide="{slide.group(1)}">{_escape(slide.group(2))}</h2>'

        chapter_index = chapters.get(trimmed.rstrip(":").strip().lower())
        if chapter_index:
            return f'<h2 class="lesson-header" id="chapter-{chapter_index}">{_escape(trimmed.rstrip(":"))}</h2>'

        for css, label, pattern in CALLOUTS:
            match = pattern.match(trimmed)
            if match:
                return _callout(css, label, match.group(1))
        definition = DEFINITION.match(trimmed)
        if definition and len(trimmed) < 200:
            return (
                '<div class="callout callout-definition">'
                f"<strong>{_escape(definition.group(1))}</strong>: {_inline(definition.group(2))}</div>"
            )

        header = _header_tag(trimmed, next_line)
        if header:
            return f'<{header} class="lesson-header">{_escape(trimmed.rstrip(":"))}</{header}>'
        return None

    def _paragraphs(self, text: str) -> str:
        text = text.strip()
        if not text:
            return ""
        sentences = split_sentences(text)
        chunks = [
            " ".join(sentences[i : i + MAX_SENTENCES_PER_PARAGRAPH])
            for i in range(0, len(sentences), MAX_SENTENCES_PER_PARAGRAPH)
        ] or [text]
        return "\n".join(f"<p>{_inline(chunk)}</p>" for chunk in chunks)

    # endregion

    # region annotations
    def _mark_exercises(self, body: str, exercises: Positioned, placed: Set[str]) -> str:
        for position, exercise in exercises:
            if position in placed:
                continue
            needle = _escape(exercise.question_text.strip())
            if len(needle) < 3:
                continue
            body, found = _wrap_first_outside_tags(
                body, needle, lambda match: build_marker(position, exercise.type, match)
            )
            if found:
                placed.add(position)
        return body

    def _highlight_vocabulary(self, body: str, vocabulary: Sequence[VocabularyItem]) -> str:
        for item in vocabulary:
            term = item.term.strip()
            if not term:
                continue
            definition = html.escape(item.definition or "", quote=True)
            pattern = re.compile(r"(?<![&#])\b(" + re.escape(_escape(term)) + r")\b", re.I)
            opening = f'<span class="vocabulary-term" data-definition="{definition}" title="{definition}">'
            body = _sub_outside_spans(body, pattern, lambda m, opening=opening: f"{opening}{m.group(1)}</span>")
        return body

    # endregion


def split_sentences(text: str) -> List[str]:
    """Sentence split that leaves abbreviations, decimals and ellipses intact."""
    if not text:
        return []
    protected = _ABBR_RE.sub(lambda m: m.group(1) + "\x00", text)
    protected = re.sub(r"(\d)\.(\d)", "\\1\x01\\2", protected)
    protected = protected.replace("...", "\x02")
    sentences = []
    for sentence in _SENTENCE_END.split(protected):
        restored = sentence.replace("\x00", ".").replace("\x01", ".").replace("\x02", "...").strip()
        if restored:
            sentences.append(restored)
    return sentences


def _needs_restoration(text: str) -> bool:
    return len(text) > 100 and text.count("\n") / len(text) < 0.002


def _restore_line_breaks(text: str) -> str:
    text = _RESTORE_HEADERS.sub(lambda m: f"{m.group(1)}\n\n{m.group(2)}\n", text)
    restored = []
    for line in text.split("\n"):
        sentences = split_sentences(line)
        if len(sentences) <= MAX_SENTENCES_PER_PARAGRAPH:
            restored.append(line)
            continue
        restored.append(
            "\n\n".join(
                " ".join(sentences[i : i + MAX_SENTENCES_PER_PARAGRAPH])
                for i in range(0, len(sentences), MAX_SENTENCES_PER_PARAGRAPH)
            )
        )
    return "\n".join(restored)


def _header_tag(trimmed: str, next_line: str) -> Optional[str]:
    if len(trimmed) > 100:
        return None
    if any(p.match(trimmed) for p in SECTION_HEADERS):
        return "h2"
    if NUMBERED_HEADER.match(trimmed) and len(trimmed) < 80 and not trimmed.endswith("?"):
        return "h3"
    if ALL_CAPS_HEADER.match(trimmed):
        return "h2"
    if trimmed.endswith(":") and len(trimmed) < 50 and trimmed[0].isupper():
        return "h3"
    if TITLE_CASE_HEADER.match(trimmed) and next_line and not BULLET.match(next_line):
        return "h3"
    return None


def _list_item(trimmed: str) -> Optional[Tuple[str, str]]:
    for kind, pattern in (("bullet", BULLET), ("numbered", NUMBERED_ITEM), ("lettered", LETTERED_ITEM)):
        match = pattern.match(trimmed)
        if match:
            rest = trimmed[match.end() :].strip()
            if rest:
                return kind, rest
    return None


def _callout(css: str, label: str, text: str) -> str:
    return (
        f'<div class="callout callout-{css}"><span class="callout-label">{_escape(label)}</span> '
        f"{_inline(text)}</div>"
    )


def _escape(text: Optional[str]) -> str:
    return html.escape(text or "", quote=False)


def _inline(text: str) -> str:
    escaped = _escape(text)
    return re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", escaped)


def _has_visible_text(body: str) -> bool:
    return bool(re.sub(r"<[^>]+>", "", body or "").strip())


def _wrap_first_outside_tags(body: str, needle: str, wrap) -> Tuple[str, bool]:
    """Wrap the first case-insensitive occurrence of `needle` in text outside tags and markers."""
    pattern = re.compile(re.escape(needle), re.I)
    parts = _TAG_SPLIT.split(body)
    depth = 0
    for index, part in enumerate(parts):
        if part.startswith("<"):
            depth = _marker_depth(part, depth)
            continue
        if depth:
            continue
        match = pattern.search(part)
        if match:
            parts[index] = part[: match.start()] + wrap(match.group(0)) + part[match.end() :]
            return "".join(parts), True
    return body, False


def _apply_outside_spans(body: str, transform) -> str:
    """Apply `transform` to text runs that sit outside any <span> or <code> element."""
    parts = _TAG_SPLIT.split(body)
    depth = 0
    for index, part in enumerate(parts):
        if part.startswith("<"):
            if re.match(r"<(span|code)\b", part, re.I):
                depth += 1
            elif re.match(r"</(span|code)\s*>", part, re.I):
                depth = max(0, depth - 1)
            continue
        if not depth and part:
            parts[index] = transform(part)
    return "".join(parts)


def _sub_outside_spans(body: str, pattern: re.Pattern, replacement) -> str:
    return _apply_outside_spans(body, lambda part: pattern.sub(replacement, part))


def _style_math(body: str) -> str:
    return _apply_outside_spans(body, format_math)


def _marker_depth(tag: str, depth: int) -> int:
    if depth:
        if re.match(r"<span\b", tag, re.I):
            return depth + 1
        if re.match(r"</span\s*>", tag, re.I):
            return depth - 1
        return depth
    return 1 if f'class="{MARKER_CLASS}"' in tag else 0


_default_formatter = DocumentFormatter()


def format_lesson(
    raw_text: Optional[str],
    analysis: Optional[StructuredAnalysis] = None,
    content_blocks: Optional[Sequence[ContentBlock]] = None,
    age_group: AgeGroup = AgeGroup.OLDER,
) -> str:
    return _default_formatter.format(raw_text, analysis, content_blocks, age_group)
