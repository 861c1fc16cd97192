"""Generative model adapter built on the google-genai SDK."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from google import genai
from google.genai import types

from .errors import ModelCallError

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    data: bytes
    mime_type: str


class GenerativeModel(Protocol):
    def generate(
        self,
        prompt: str,
        *,
        attachment: Optional[Attachment] = None,
        json_output: bool = False,
        temperature: float = 0.3,
        max_output_tokens: int = 8192,
    ) -> str:
        ...


class GeminiModelClient:
    """
    Thin synchronous wrapper around `client.models.generate_content`.

    Every call carries the configured timeout; rate-limit responses (429) are
    retried a few times with jittered exponential delay before giving up.
    """

    def __init__(
        self,
        model_name: str,
        api_key: Optional[str],
        timeout_seconds: float = 150.0,
        rate_limit_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required for model calls")
        self.model_name = model_name
        self.rate_limit_retries = rate_limit_retries
        self._sleep = sleep
        self._client = genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(timeout=int(timeout_seconds * 1000)),
        )

    def generate(
        self,
        prompt: str,
        *,
        attachment: Optional[Attachment] = None,
        json_output: bool = False,
        temperature: float = 0.3,
        max_output_tokens: int = 8192,
    ) -> str:
        contents: list = []
        if attachment is not None:
            contents.append(types.Part.from_bytes(data=attachment.data, mime_type=attachment.mime_type))
        contents.append(prompt)
        config = types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            response_mime_type="application/json" if json_output else None,
        )
        try:
            response = self._with_backoff(
                self._client.models.generate_content,
                model=self.model_name,
                contents=contents,
                config=config,
            )
        except Exception as exc:  # noqa: BLE001
            raise ModelCallError(f"{self.model_name} call failed: {exc}") from exc

        text = response.text if response is not None else None
        if not text:
            raise ModelCallError(f"{self.model_name} returned an empty response")
        if response.usage_metadata:
            logger.info(
                "Model %s usage: prompt=%s completion=%s",
                self.model_name,
                response.usage_metadata.prompt_token_count,
                response.usage_metadata.candidates_token_count,
            )
        return text

    def _with_backoff(self, func, *args, **kwargs):
        base_delay = 1.0
        for attempt in range(self.rate_limit_retries):
            try:
                return func(*args, **kwargs)
            except Exception as exc:  # noqa: BLE001
                message = str(exc)
                rate_limited = "429" in message or "Too Many Requests" in message or "RESOURCE_EXHAUSTED" in message
                if not rate_limited or attempt == self.rate_limit_retries - 1:
                    raise
                delay = base_delay * (2**attempt) + random.uniform(0, 1)
                logger.warning("Model rate limited, retrying in %.1fs (%s/%s)", delay, attempt + 1, self.rate_limit_retries)
                self._sleep(delay)
        return func(*args, **kwargs)
