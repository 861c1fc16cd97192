"""
Per-source-kind extraction strategies.

Each extractor turns a job's source reference into raw text (and, for
documents, optional content blocks). Thresholds and strategy selection live
in `router.py`.
"""

from __future__ import annotations

import json
import logging
import re
from io import BytesIO
from typing import List, Optional, Protocol
from urllib.parse import parse_qs, urlparse

import httpx
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .conversion import ConversionServiceClient
from .engine import OcrEngine
from .errors import ExtractionError, ModelCallError
from .json_decode import decode_first_payload
from .model_client import Attachment, GenerativeModel
from .models import ExtractionResult, ProcessingJob
from .prompts import DOCUMENT_STRUCTURE_PROMPT, IMAGE_OCR_PROMPT
from .schema import ContentBlock, parse_content_blocks
from .storage import SourceFetcher, guess_mime_type, sniff_image_mime_type

logger = logging.getLogger(__name__)


class TextPassthrough:
    name = "text"

    def extract(self, job: ProcessingJob) -> ExtractionResult:
        return ExtractionResult(raw_text=job.source_ref or "", strategy=self.name)


class ImageVisionOCR:
    """Single vision call over the image; raw text only, no blocks."""

    name = "image-ocr"

    def __init__(self, fetcher: SourceFetcher, model: GenerativeModel, max_output_tokens: int = 4000):
        self.fetcher = fetcher
        self.model = model
        self.max_output_tokens = max_output_tokens

    def extract(self, job: ProcessingJob) -> ExtractionResult:
        data = self.fetcher.fetch_bytes(job.source_ref)
        mime_type = guess_mime_type(job.source_ref, default="")
        if not mime_type.startswith("image/"):
            mime_type = sniff_image_mime_type(data)
        try:
            text = self.model.generate(
                IMAGE_OCR_PROMPT,
                attachment=Attachment(data=data, mime_type=mime_type),
                temperature=0.1,
                max_output_tokens=self.max_output_tokens,
            )
        except ModelCallError as exc:
            raise ExtractionError(f"Image OCR failed: {exc}") from exc
        return ExtractionResult(raw_text=text, strategy=self.name)


class PDFVisionExtractor:
    """
    Reads a PDF three ways: the embedded text layer (pypdf), an OCR pass for
    scanned documents, and a native multimodal structure read that yields
    content blocks. Which of these run is decided by the router.
    """

    name = "pdf"

    def __init__(self, fetcher: SourceFetcher, ocr_engine: OcrEngine, model: Optional[GenerativeModel] = None):
        self.fetcher = fetcher
        self.ocr_engine = ocr_engine
        self.model = model

    def fetch(self, job: ProcessingJob) -> bytes:
        return self.fetcher.fetch_bytes(job.source_ref)

    def read_text_layer(self, data: bytes) -> str:
        try:
            reader = PdfReader(BytesIO(data))
            pages = []
            for number, page in enumerate(reader.pages, start=1):
                text = (page.extract_text() or "").strip()
                if text:
                    pages.append(f"[Page {number}]\n{text}")
            return "\n\n".join(pages)
        except (PdfReadError, ValueError, KeyError) as exc:
            raise ExtractionError(f"Unreadable PDF: {exc.__class__.__name__}") from exc

    def ocr(self, data: bytes) -> str:
        logger.info("Running %s fallback over %s bytes", self.ocr_engine.name, len(data))
        return self.ocr_engine.ocr_pdf(data) or ""

    def read_structure(self, data: bytes) -> Optional[List[ContentBlock]]:
        """Best-effort structured read; returns None when unavailable or undecodable."""
        if self.model is None:
            return None
        try:
            raw = self.model.generate(
                DOCUMENT_STRUCTURE_PROMPT,
                attachment=Attachment(data=data, mime_type="application/pdf"),
                json_output=True,
                temperature=0.1,
                max_output_tokens=65536,
            )
            blocks = parse_content_blocks(decode_first_payload(raw))
        except (ModelCallError, json.JSONDecodeError) as exc:
            logger.warning("Structured PDF read failed, continuing without blocks: %s", exc)
            return None
        return blocks or None


class SlideDeckExtractor:
    """Converts a deck to PDF through the conversion service; the router then runs the PDF path."""

    name = "slides"

    def __init__(self, fetcher: SourceFetcher, converter: ConversionServiceClient):
        self.fetcher = fetcher
        self.converter = converter

    def to_pdf(self, job: ProcessingJob) -> bytes:
        data = self.fetcher.fetch_bytes(job.source_ref)
        if data.startswith(b"%PDF"):
            return data
        filename = urlparse(job.source_ref).path.rsplit("/", 1)[-1] or "slides.pptx"
        return self.converter.convert_to_pdf(data, filename=filename)


class TranscriptProvider(Protocol):
    def fetch_transcript(self, video_id: str) -> str:
        ...


class UnconfiguredTranscriptProvider:
    def fetch_transcript(self, video_id: str) -> str:
        raise ExtractionError(f"Video transcripts are not available in this deployment (video {video_id})")


class HttpTranscriptProvider:
    """
    Looks transcripts up from a transcript service:
    `GET {base_url}/transcripts/{video_id}` returning `{"text": ...}` or
    `{"segments": [{"text": ...}, ...]}`.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 30.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    def fetch_transcript(self, video_id: str) -> str:
        url = f"{self.base_url}/transcripts/{video_id}"
        try:
            if self._client is not None:
                response = self._client.get(url, timeout=self.timeout_seconds)
            else:
                with httpx.Client(timeout=self.timeout_seconds) as client:
                    response = client.get(url)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise ExtractionError(f"Transcript lookup returned HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExtractionError(f"Transcript lookup failed: {exc.__class__.__name__}") from exc
        if isinstance(payload, dict) and isinstance(payload.get("text"), str):
            return payload["text"]
        segments = payload.get("segments") if isinstance(payload, dict) else None
        if isinstance(segments, list):
            return " ".join(str(s.get("text", "")).strip() for s in segments if isinstance(s, dict))
        raise ExtractionError("Transcript service returned an unexpected payload")


_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{6,20}$")


def parse_video_id(ref: str) -> str:
    ref = (ref or "").strip()
    if _VIDEO_ID_RE.match(ref):
        return ref
    parsed = urlparse(ref)
    host = (parsed.hostname or "").lower()
    if host.endswith("youtu.be"):
        candidate = parsed.path.strip("/").split("/")[0]
    elif "youtube" in host:
        if parsed.path == "/watch":
            candidate = (parse_qs(parsed.query).get("v") or [""])[0]
        else:
            parts = [p for p in parsed.path.split("/") if p]
            candidate = parts[1] if len(parts) >= 2 and parts[0] in ("embed", "shorts", "live", "v") else ""
    else:
        candidate = ""
    if not _VIDEO_ID_RE.match(candidate):
        raise ExtractionError(f"Could not determine a video id from {ref!r}")
    return candidate


class VideoTranscriptExtractor:
    name = "video"

    def __init__(self, provider: TranscriptProvider):
        self.provider = provider

    def extract(self, job: ProcessingJob) -> ExtractionResult:
        video_id = parse_video_id(job.source_ref)
        return ExtractionResult(raw_text=self.provider.fetch_transcript(video_id), strategy=self.name)
