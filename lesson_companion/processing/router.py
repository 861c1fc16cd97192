from __future__ import annotations

import logging
from typing import Callable, Dict

from .errors import ExtractionError
from .extractors import (
    ImageVisionOCR,
    PDFVisionExtractor,
    SlideDeckExtractor,
    TextPassthrough,
    VideoTranscriptExtractor,
)
from .models import ExtractionResult, ProcessingJob, SourceKind

logger = logging.getLogger(__name__)

DEFAULT_MIN_CHARS = 50


class ExtractionRouter:
    """
    Dispatches a job to the strategy registered for its source kind and
    enforces the minimum-content rule on the result.

    The router also owns the PDF fallback: when the text layer is shorter
    than the threshold the OCR pass runs before the job is allowed to fail.
    Slide decks share the same PDF path after conversion.
    """

    def __init__(
        self,
        text: TextPassthrough,
        image: ImageVisionOCR,
        pdf: PDFVisionExtractor,
        slides: SlideDeckExtractor,
        video: VideoTranscriptExtractor,
        min_chars: int = DEFAULT_MIN_CHARS,
    ):
        self.pdf = pdf
        self.slides = slides
        self.min_chars = min_chars
        self._strategies: Dict[SourceKind, Callable[[ProcessingJob], ExtractionResult]] = {
            SourceKind.TEXT: text.extract,
            SourceKind.IMAGE: image.extract,
            SourceKind.PDF: self._extract_pdf,
            SourceKind.SLIDES: self._extract_slides,
            SourceKind.VIDEO: video.extract,
        }

    def extract(self, job: ProcessingJob) -> ExtractionResult:
        strategy = self._strategies.get(job.source_kind)
        if strategy is None:
            raise ExtractionError(f"Unsupported source kind: {job.source_kind}")
        result = strategy(job)
        result.raw_text = (result.raw_text or "").strip()
        if not self.is_sufficient(result.raw_text):
            raise ExtractionError(
                f"Could not extract sufficient text from content ({len(result.raw_text)} chars)"
            )
        logger.info(
            "Extracted %s chars from lesson %s via %s%s",
            len(result.raw_text),
            job.lesson_id,
            result.strategy,
            f" with {len(result.content_blocks)} blocks" if result.content_blocks else "",
        )
        return result

    def is_sufficient(self, text: str) -> bool:
        return len((text or "").strip()) >= self.min_chars

    def _extract_pdf(self, job: ProcessingJob) -> ExtractionResult:
        return self._pdf_from_bytes(self.pdf.fetch(job), strategy="pdf")

    def _extract_slides(self, job: ProcessingJob) -> ExtractionResult:
        return self._pdf_from_bytes(self.slides.to_pdf(job), strategy="slides")

    def _pdf_from_bytes(self, data: bytes, strategy: str) -> ExtractionResult:
        text = self.pdf.read_text_layer(data)
        if not self.is_sufficient(text):
            logger.info("Text layer yielded %s chars, falling back to OCR", len(text.strip()))
            text = self.pdf.ocr(data)
            strategy = f"{strategy}+{self.pdf.ocr_engine.name}"
        blocks = self.pdf.read_structure(data) if self.is_sufficient(text) else None
        return ExtractionResult(
            raw_text=text,
            content_blocks=blocks,
            document=data,
            mime_type="application/pdf",
            strategy=strategy,
        )
