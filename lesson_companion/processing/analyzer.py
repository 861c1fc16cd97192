from __future__ import annotations

import json
import logging
from typing import Optional

from .errors import AnalysisError, ModelCallError
from .json_decode import decode_first_payload
from .model_client import Attachment, GenerativeModel
from .models import LearnerContext
from .prompts import build_analysis_prompt
from .schema import StructuredAnalysis, parse_analysis

logger = logging.getLogger(__name__)


class ContentAnalyzer:
    """
    Sends extracted text (or the original document bytes) to the model and
    returns a validated `StructuredAnalysis`.

    Model output is never trusted to be bare JSON: the first structured
    payload is pulled out of whatever the model wrote, then validated. Any
    model or decode failure surfaces as `AnalysisError`.
    """

    def __init__(self, model: GenerativeModel, max_output_tokens: int = 16384, temperature: float = 0.3):
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    def analyze(
        self,
        context: LearnerContext,
        text: Optional[str] = None,
        document: Optional[bytes] = None,
        mime_type: Optional[str] = None,
    ) -> StructuredAnalysis:
        if not text and not document:
            raise AnalysisError("Nothing to analyse")

        attachment = None
        if document is not None and not text:
            attachment = Attachment(data=document, mime_type=mime_type or "application/pdf")
        prompt = build_analysis_prompt(context, text)

        try:
            raw = self.model.generate(
                prompt,
                attachment=attachment,
                json_output=True,
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
            )
        except ModelCallError as exc:
            raise AnalysisError(f"Model call failed: {exc}") from exc

        try:
            payload = decode_first_payload(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Undecodable analysis output (%s chars): %s", len(raw or ""), exc.msg)
            raise AnalysisError(f"Model output is not structured data: {exc.msg}") from exc

        analysis = parse_analysis(payload)
        logger.info(
            "Analysis: subject=%s grade=%s chapters=%s vocabulary=%s exercises=%s confidence=%s",
            analysis.subject,
            analysis.grade_level,
            len(analysis.chapters),
            len(analysis.vocabulary),
            len(analysis.exercises),
            analysis.confidence,
        )
        return analysis
