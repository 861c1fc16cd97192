from __future__ import annotations

import logging
from io import BytesIO

from .errors import ExtractionError, ModelCallError
from .model_client import Attachment, GenerativeModel
from .prompts import PDF_OCR_PROMPT

logger = logging.getLogger(__name__)


class OcrEngine:
    """
    Abstract OCR backend for PDFs without a usable text layer.
    Implementations should be stateless and reusable.
    """

    name = "ocr"

    def ocr_pdf(self, data: bytes) -> str:
        raise NotImplementedError


class VisionOcrEngine(OcrEngine):
    """OCR by a single vision-model pass over the whole PDF."""

    name = "vision-ocr"

    def __init__(self, model: GenerativeModel, max_output_tokens: int = 65536):
        self.model = model
        self.max_output_tokens = max_output_tokens

    def ocr_pdf(self, data: bytes) -> str:
        try:
            return self.model.generate(
                PDF_OCR_PROMPT,
                attachment=Attachment(data=data, mime_type="application/pdf"),
                temperature=0.1,
                max_output_tokens=self.max_output_tokens,
            )
        except ModelCallError as exc:
            raise ExtractionError(f"Vision OCR failed: {exc}") from exc


class DoclingOcrEngine(OcrEngine):
    """
    Local OCR through Docling's PDF pipeline (RapidOCR). Docling is an
    optional install (`pip install lesson-companion[ocr]`), so it is imported
    lazily and the converter is built on first use.
    """

    name = "docling-ocr"

    def __init__(self, num_threads: int = 4):
        self.num_threads = num_threads
        self._converter = None

    def _build_converter(self):
        try:
            from docling.datamodel.accelerator_options import AcceleratorDevice, AcceleratorOptions
            from docling.datamodel.base_models import InputFormat
            from docling.datamodel.pipeline_options import PdfPipelineOptions, RapidOcrOptions
            from docling.document_converter import DocumentConverter, PdfFormatOption
        except ImportError as exc:  # pragma: no cover - dependency guard
            raise RuntimeError("Docling is required for local OCR. Please install 'lesson-companion[ocr]'.") from exc

        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_ocr = True
        pipeline_options.force_full_page_ocr = True
        pipeline_options.do_table_structure = True
        pipeline_options.ocr_options = RapidOcrOptions()
        pipeline_options.accelerator_options = AcceleratorOptions(
            num_threads=self.num_threads, device=AcceleratorDevice.AUTO
        )
        return DocumentConverter(
            format_options={InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options)}
        )

    def ocr_pdf(self, data: bytes) -> str:
        if self._converter is None:
            self._converter = self._build_converter()
        from docling.datamodel.base_models import DocumentStream

        try:
            result = self._converter.convert(DocumentStream(name="source.pdf", stream=BytesIO(data)))
        except Exception as exc:  # noqa: BLE001
            raise ExtractionError(f"Docling OCR failed: {exc.__class__.__name__}") from exc
        return result.document.export_to_markdown()
