import pytest

from lesson_companion.processing import DocumentFormatter, format_lesson
from lesson_companion.processing.markers import (
    assign_positions,
    build_marker,
    check_binding,
    exercises_from_markers,
    extract_markers,
)
from lesson_companion.processing.models import AgeGroup, ExerciseType
from lesson_companion.processing.schema import (
    ContentBlock,
    DetectedExercise,
    StructuredAnalysis,
    parse_analysis,
    parse_content_blocks,
)

from conftest import ANALYSIS, LESSON_PROSE


def _analysis(**overrides) -> StructuredAnalysis:
    payload = dict(ANALYSIS)
    payload.update(overrides)
    return parse_analysis(payload)


def _positions(content):
    return [ref.position for ref in extract_markers(content)]


# region markers
def test_assign_positions_prefers_location_then_id_and_deduplicates():
    exercises = [
        DetectedExercise.model_validate({"questionText": "A?", "locationInContent": "para-2", "id": "x"}),
        DetectedExercise.model_validate({"questionText": "B?", "id": "q7"}),
        DetectedExercise.model_validate({"questionText": "C?"}),
        DetectedExercise.model_validate({"questionText": "D?", "id": "q7"}),
    ]
    assert [p for p, _ in assign_positions(exercises)] == ["para-2", "q7", "ex-3", "ex-4"]


def test_assign_positions_avoids_collision_with_generated_names():
    exercises = [
        DetectedExercise.model_validate({"questionText": "A?", "id": "ex-2"}),
        DetectedExercise.model_validate({"questionText": "B?"}),
    ]
    assert [p for p, _ in assign_positions(exercises)] == ["ex-2", "ex-2-2"]


def test_extract_markers_handles_nested_spans_and_escaping():
    inner = 'What is <span class="vocabulary-term">photosynthesis</span> &amp; why?'
    content = f"<p>{build_marker('q&1', ExerciseType.SHORT_ANSWER, inner)}</p>"
    refs = extract_markers(content)
    assert len(refs) == 1
    assert refs[0].position == "q&1"
    assert refs[0].exercise_type == "SHORT_ANSWER"
    assert refs[0].text == "What is photosynthesis & why?"


def test_check_binding_reports_missing_orphan_and_duplicate():
    content = (
        build_marker("a", ExerciseType.SHORT_ANSWER, "one")
        + build_marker("a", ExerciseType.SHORT_ANSWER, "one again")
        + build_marker("stray", ExerciseType.SHORT_ANSWER, "two")
    )
    check = check_binding(content, ["a", "b"])
    assert not check.ok
    assert check.missing_markers == ["b"]
    assert check.orphan_markers == ["stray"]
    assert check.duplicate_markers == ["a"]
    assert check_binding("<p>plain</p>", []).ok


def test_exercises_recovered_from_markers():
    content = (
        build_marker("p1", ExerciseType.MATH_PROBLEM, "3 + 4 = ?")
        + build_marker("p2", ExerciseType.SHORT_ANSWER, "")
        + build_marker("p1", ExerciseType.MATH_PROBLEM, "3 + 4 = ?")
    )
    recovered = exercises_from_markers(content)
    assert [(e.location_in_content, e.type, e.question_text) for e in recovered] == [
        ("p1", ExerciseType.MATH_PROBLEM, "3 + 4 = ?")
    ]


# endregion


def test_rich_analysis_places_marker_inline_and_highlights_vocabulary():
    content = format_lesson(LESSON_PROSE, _analysis(), age_group=AgeGroup.YOUNG)
    assert content.startswith('<div class="formatted-content age-young">')
    assert _positions(content) == ["q1"]
    assert 'data-exercise-position="q1" data-type="SHORT_ANSWER">What do plants need to grow?</span>' in content
    assert 'class="vocabulary-term"' in content
    assert "practice-section" not in content


def test_exercise_not_found_in_text_goes_to_practice_section():
    analysis = _analysis(
        exercises=[{"id": "q9", "questionText": "Draw a plant and label its roots.", "type": "SHORT_ANSWER"}]
    )
    content = format_lesson(LESSON_PROSE, analysis)
    assert '<section class="practice-section">' in content
    assert _positions(content) == ["q9"]


def test_every_exercise_gets_exactly_one_marker():
    analysis = _analysis(
        exercises=[
            {"id": "q1", "questionText": "What do plants need to grow?"},
            {"id": "q1", "questionText": "Why are leaves green?"},
            {"questionText": "Name the part that carries water."},
        ]
    )
    content = format_lesson(LESSON_PROSE + "\nWhat do plants need to grow?", analysis)
    positions = [p for p, _ in assign_positions(analysis.exercises)]
    assert check_binding(content, positions).ok
    assert sorted(_positions(content)) == sorted(positions)


def test_raw_text_only_is_still_readable():
    content = format_lesson(LESSON_PROSE)
    assert content.startswith('<div class="formatted-content age-older">')
    assert "<p>" in content
    assert "photosynthesis" in content
    assert extract_markers(content) == []


def test_content_blocks_render_with_exercise_binding():
    blocks = [
        ContentBlock.model_validate({"type": "heading", "text": "Plants", "level": 1}),
        ContentBlock.model_validate({"type": "paragraph", "text": "Plants need sunlight to grow."}),
        ContentBlock.model_validate({"type": "vocabulary-callout", "term": "root", "definition": "takes in water"}),
        ContentBlock.model_validate({"type": "exercise-marker", "exerciseId": "q1", "text": "What do plants need?"}),
        ContentBlock.model_validate({"type": "image", "src": "javascript:alert(1)", "alt": "leaf"}),
        ContentBlock.model_validate({"type": "table", "headers": ["Part", "Job"], "rows": [["Leaf", "Food"]]}),
    ]
    content = format_lesson(LESSON_PROSE, _analysis(), content_blocks=blocks)
    assert '<h1 class="lesson-header">Plants</h1>' in content
    assert '<div class="vocabulary-callout">' in content
    assert "javascript:" not in content
    assert '<table class="lesson-table">' in content
    assert _positions(content) == ["q1"]


def test_exercise_marker_block_without_analysis_exercises_is_recoverable():
    blocks = [
        ContentBlock.model_validate({"type": "paragraph", "text": "Count the apples."}),
        ContentBlock.model_validate({"type": "exercise-marker", "exerciseId": "e1", "text": "How many apples?"}),
    ]
    content = format_lesson("Count the apples. How many apples?", None, content_blocks=blocks)
    recovered = exercises_from_markers(content)
    assert [e.location_in_content for e in recovered] == ["e1"]


def test_heuristics_detect_structure():
    text = "\n".join(
        [
            "--- SLIDE 1: Fractions ---",
            "[Page 2]",
            "Learning Objectives",
            "- Add fractions",
            "- Compare fractions",
            "1. Find a common denominator",
            "2. Add the numerators",
            "Tip: Always simplify your answer",
            "Numerator - the top number of a fraction",
            "Grade: 4",
            "Why do we need a common denominator?",
            "",
            "One. Two. Three. Four. Five. Six.",
        ]
    )
    content = format_lesson(text)
    assert 'class="lesson-header slide-title" data-slide="1">Fractions</h2>' in content
    assert 'data-page="2"' in content
    assert '<h2 class="lesson-header">Learning Objectives</h2>' in content
    assert "<ul>\n<li>Add fractions</li>\n<li>Compare fractions</li>\n</ul>" in content
    assert "<ol>\n<li>Find a common denominator</li>" in content
    assert "callout-tip" in content
    assert "callout-definition" in content
    assert '<p class="metadata">Grade: 4</p>' in content
    assert '<p class="question">' in content
    assert "<p>One. Two. Three. Four.</p>\n<p>Five. Six.</p>" in content


def test_chapter_titles_become_anchored_headings():
    analysis = _analysis(chapters=[{"title": "Roots and stems"}], exercises=[], vocabulary=[])
    content = format_lesson("Roots and stems\nRoots drink water from the soil every day.", analysis)
    assert '<h2 class="lesson-header" id="chapter-1">Roots and stems</h2>' in content


def test_run_together_text_gets_paragraph_breaks():
    text = " ".join(f"Sentence number {i} talks about plants." for i in range(12))
    content = format_lesson(text)
    assert content.count("<p>") == 3


def test_html_in_source_is_escaped():
    content = format_lesson("<script>alert('x')</script> is not a lesson but must render safely anyway.")
    assert "<script>" not in content
    assert "&lt;script&gt;" in content


@pytest.mark.parametrize("raw", ["", None, "   \n\n  "])
def test_empty_input_never_raises(raw):
    content = format_lesson(raw)
    assert content.startswith('<div class="formatted-content')


def test_failing_tier_falls_back_to_next(monkeypatch):
    formatter = DocumentFormatter()

    def boom(*args, **kwargs):
        raise RuntimeError("renderer bug")

    monkeypatch.setattr(formatter, "_render_annotated", boom)
    content = formatter.format(LESSON_PROSE, _analysis())
    assert "Plants need sunlight" in content
    assert _positions(content) == ["q1"]


def test_all_tiers_failing_still_returns_minimal_output(monkeypatch):
    formatter = DocumentFormatter()

    def boom(*args, **kwargs):
        raise RuntimeError("renderer bug")

    monkeypatch.setattr(formatter, "_convert_to_html", boom)
    content = formatter.format("First paragraph.\n\nSecond <paragraph>.", _analysis())
    assert "<p>First paragraph.</p>" in content
    assert "Second &lt;paragraph&gt;." in content
    assert _positions(content) == ["q1"]


def test_teaching_blocks_render_and_unknown_text_survives():
    blocks = parse_content_blocks(
        [
            {"type": "heading", "text": "Area", "level": 2},
            {"type": "formula", "formula": "A = l × w", "explanation": "Multiply length by width."},
            {"type": "stepByStep", "steps": [{"label": "Step 1", "content": "First multiply the sides"}]},
            {"type": "wordProblem", "problem": "A rug is 2 by 3 metres. What is its area?", "answer": 6},
            {"type": "divider"},
            {"type": "hologram", "text": "Strange text here."},
        ]
    )
    content = format_lesson("", None, content_blocks=blocks)
    assert '<code class="math equation">A = l × w</code>' in content
    assert '<div class="step-by-step"><ol>\n<li>Step 1: First multiply the sides</li>' in content
    assert '<div class="word-problem">' in content
    assert "<strong>Answer:</strong> 6" in content
    assert '<hr class="lesson-divider">' in content
    assert "<p>Strange text here.</p>" in content


def test_math_is_styled_without_breaking_exercise_markers():
    analysis = _analysis(
        vocabulary=[],
        exercises=[{"id": "m1", "questionText": "What is 5 + 3 = 8?", "type": "MATH_PROBLEM"}],
    )
    text = "We know that 2 + 2 = 4 and half of a pie is 1/2.\n\nWhat is 5 + 3 = 8?"
    content = format_lesson(text, analysis)
    assert '<code class="math addition">2 + 2 = 4</code>' in content
    assert '<span class="fraction">1/2</span>' in content
    assert _positions(content) == ["m1"]
    assert 'data-type="MATH_PROBLEM">What is 5 + 3 = 8?</span>' in content
    assert "practice-section" not in content


def test_vocabulary_never_matches_inside_entities():
    analysis = _analysis(
        exercises=[],
        vocabulary=[{"term": "amp", "definition": "speaker box"}, {"term": "lt", "definition": "unused"}],
    )
    content = format_lesson("Tom & Jerry plug in the amp. Then a < b.", analysis)
    assert "Tom &amp; Jerry" in content
    assert "a &lt; b" in content
    assert content.count('class="vocabulary-term"') == 1
    assert 'title="speaker box">amp</span>' in content
