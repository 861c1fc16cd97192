import json
from io import BytesIO
from typing import Callable, Dict, List, Optional, Union

import pytest
from pypdf import PdfWriter

from lesson_companion.processing import (
    ContentAnalyzer,
    ExtractionRouter,
    ImageVisionOCR,
    InMemoryJobQueue,
    InMemoryLessonRepository,
    InMemoryProgressTracker,
    LessonJobClient,
    LessonProcessor,
    LessonRecord,
    OcrEngine,
    PDFVisionExtractor,
    ProcessingConfig,
    SideEffectCoordinator,
    SlideDeckExtractor,
    SourceKind,
    TextPassthrough,
    UnconfiguredTranscriptProvider,
    VideoTranscriptExtractor,
    WorkerPool,
)
from lesson_companion.processing.conversion import ConversionServiceClient
from lesson_companion.processing.errors import FetchError

LESSON_PROSE = (
    "Plants need sunlight to grow. Leaves catch the light and turn it into food for the plant. "
    "This process is called photosynthesis. Roots take in water from the soil, and the stem carries "
    "the water up to the leaves. What do plants need to grow?"
)

ANALYSIS = {
    "title": "Plants and Sunlight",
    "summary": "How plants use light, water and air to make food.",
    "subject": "Science",
    "gradeLevel": 3,
    "chapters": [{"title": "How plants make food", "content": "Leaves catch light.", "keyPoints": ["light"]}],
    "keyConcepts": ["photosynthesis", "roots"],
    "vocabulary": [{"term": "photosynthesis", "definition": "how plants make food from light"}],
    "suggestedQuestions": ["Why do leaves face the sun?"],
    "exercises": [
        {
            "id": "q1",
            "type": "SHORT_ANSWER",
            "questionText": "What do plants need to grow?",
            "expectedAnswer": "sunlight",
            "hint1": "Look up at the sky",
            "difficulty": "EASY",
        }
    ],
    "confidence": 0.9,
}

NO_EXERCISES = {
    "title": "Plants",
    "subject": "Science",
    "gradeLevel": "3",
    "exercises": [],
    "vocabulary": [],
}


class FakeModel:
    """
    Scripted stand-in for a generative model. Each call pops the next
    response; an Exception instance is raised instead of returned. A
    callable receives the prompt and attachment.
    """

    def __init__(self, responses: Union[List, Callable, None] = None):
        self.responses = responses if responses is not None else []
        self.calls: List[Dict] = []

    def generate(self, prompt, *, attachment=None, json_output=False, temperature=0.3, max_output_tokens=8192):
        self.calls.append(
            {
                "prompt": prompt,
                "attachment": attachment,
                "json_output": json_output,
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
            }
        )
        if callable(self.responses):
            response = self.responses(prompt, attachment)
        else:
            response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeFetcher:
    def __init__(self, sources: Optional[Dict[str, bytes]] = None):
        self.sources = sources or {}
        self.fetched: List[str] = []

    def fetch_bytes(self, ref: str) -> bytes:
        self.fetched.append(ref)
        if ref not in self.sources:
            raise FetchError(f"Source file not found: {ref}")
        return self.sources[ref]


class FakeOcrEngine(OcrEngine):
    name = "fake-ocr"

    def __init__(self, text: str = ""):
        self.text = text
        self.calls = 0

    def ocr_pdf(self, data: bytes) -> str:
        self.calls += 1
        return self.text


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def blank_pdf(pages: int = 1) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def analysis_json(payload: Optional[Dict] = None) -> str:
    return json.dumps(payload if payload is not None else ANALYSIS)


def make_lesson(repo, lesson_id: str = "lesson-1", kind: SourceKind = SourceKind.TEXT, ref: str = LESSON_PROSE):
    repo.save_lesson(
        LessonRecord(id=lesson_id, child_id="child-1", parent_id="parent-1", source_kind=kind, source_ref=ref)
    )


class Pipeline:
    """In-memory wiring of the whole pipeline with fake external services."""

    def __init__(
        self,
        analysis_model: FakeModel,
        vision_model: Optional[FakeModel] = None,
        fetcher: Optional[FakeFetcher] = None,
        ocr: Optional[FakeOcrEngine] = None,
        converter: Optional[ConversionServiceClient] = None,
        progress=None,
        config: Optional[ProcessingConfig] = None,
        repo: Optional[InMemoryLessonRepository] = None,
    ):
        self.clock = FakeClock()
        self.config = config or ProcessingConfig(database_url="sqlite://", poll_interval_seconds=1.0)
        self.repo = repo or InMemoryLessonRepository()
        self.queue = InMemoryJobQueue(clock=self.clock)
        self.progress = progress or InMemoryProgressTracker()
        self.fetcher = fetcher or FakeFetcher()
        self.ocr = ocr or FakeOcrEngine()
        self.vision_model = vision_model or FakeModel()
        self.router = ExtractionRouter(
            text=TextPassthrough(),
            image=ImageVisionOCR(self.fetcher, self.vision_model),
            pdf=PDFVisionExtractor(self.fetcher, self.ocr),
            slides=SlideDeckExtractor(self.fetcher, converter or ConversionServiceClient("http://convert.test")),
            video=VideoTranscriptExtractor(UnconfiguredTranscriptProvider()),
            min_chars=self.config.min_extracted_chars,
        )
        self.coordinator = SideEffectCoordinator(self.repo, self.progress)
        self.processor = LessonProcessor(
            self.repo,
            self.router,
            ContentAnalyzer(analysis_model),
            self.coordinator,
            persist_retries=self.config.persist_retries,
        )
        self.client = LessonJobClient(self.queue, self.repo)
        self.pool = WorkerPool(self.queue, self.processor, self.repo, self.config, sleep=self.clock.advance)


@pytest.fixture
def clock():
    return FakeClock()
