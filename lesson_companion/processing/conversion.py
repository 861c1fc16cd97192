from __future__ import annotations

import logging
from typing import Optional

import httpx

from .errors import ConversionError

logger = logging.getLogger(__name__)


class ConversionServiceClient:
    """
    Client for a Gotenberg-style office conversion endpoint
    (`POST {base_url}/forms/libreoffice/convert`). Any HTTP error, timeout
    or empty body is reported as `ConversionError`.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 120.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    def convert_to_pdf(self, data: bytes, filename: str = "slides.pptx") -> bytes:
        url = f"{self.base_url}/forms/libreoffice/convert"
        files = {"files": (filename, data, "application/octet-stream")}
        try:
            if self._client is not None:
                response = self._client.post(url, files=files, timeout=self.timeout_seconds)
            else:
                with httpx.Client(timeout=self.timeout_seconds) as client:
                    response = client.post(url, files=files)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ConversionError(f"Conversion service returned HTTP {exc.response.status_code}") from exc
        except httpx.TimeoutException as exc:
            raise ConversionError("Conversion service timed out") from exc
        except httpx.HTTPError as exc:
            raise ConversionError(f"Conversion service unreachable: {exc.__class__.__name__}") from exc

        if not response.content.startswith(b"%PDF"):
            raise ConversionError("Conversion service did not return a PDF")
        logger.info("Converted %s (%s bytes) to PDF (%s bytes)", filename, len(data), len(response.content))
        return response.content
