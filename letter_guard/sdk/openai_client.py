"""
OpenAI text-generation client.

The boundary between letter_guard and the generation service. Provider
exceptions are converted here, once, into ServiceError carrying a
normalized ServiceFailure.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import openai
from openai import OpenAI

from ..core.errors import classify_error, service_error_for

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4-turbo"


@dataclass(frozen=True)
class GenerationRequest:
    """One request to the text-generation service."""
    prompt: str
    system: str
    temperature: float = 0.7
    max_tokens: int = 2048
    model: str = DEFAULT_MODEL


class TextGenerator(Protocol):
    """Anything that turns a GenerationRequest into text.

    Implementations raise ServiceError on failure.
    """

    def generate(self, request: GenerationRequest) -> str:
        ...


class OpenAITextGenerator:
    """Text generator backed by OpenAI chat completions.

    The OpenAI SDK's own retries are disabled; retrying is left to the
    caller's retry policy. The client is created on first use, so code paths
    that never reach the service run without credentials.
    """

    def __init__(self, client: Optional[OpenAI] = None, request_timeout: float = 60.0):
        """Initialize the generator.

        Args:
            client: Preconfigured OpenAI client (one is created on first use
                if omitted)
            request_timeout: Per-request timeout in seconds
        """
        self._client = client
        self.request_timeout = request_timeout

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(timeout=self.request_timeout, max_retries=0)
        return self._client

    def generate(self, request: GenerationRequest) -> str:
        """Create a chat completion and return its text.

        Args:
            request: Prompt and sampling parameters

        Returns:
            Generated text, stripped of surrounding whitespace

        Raises:
            TransientServiceError: Rate limit, timeout, connection or 5xx failure
            PermanentServiceError: Missing credentials, authentication,
                malformed request or empty response
        """
        if not request.prompt:
            raise ValueError("prompt is required and cannot be empty")

        try:
            client = self.client
        except openai.OpenAIError as e:
            # Raised by the constructor, e.g. when no API key is configured
            raise service_error_for(classify_error(code="invalid_api_key", message=str(e))) from e

        try:
            response = client.chat.completions.create(
                model=request.model,
                messages=[
                    {"role": "system", "content": request.system},
                    {"role": "user", "content": request.prompt},
                ],
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        except openai.APITimeoutError as e:
            raise service_error_for(classify_error(code="timeout", message=str(e))) from e
        except openai.APIConnectionError as e:
            raise service_error_for(classify_error(code="connection_error", message=str(e))) from e
        except openai.APIStatusError as e:
            raise service_error_for(classify_error(
                code=e.code,
                http_status=e.status_code,
                message=e.message
            )) from e

        text = ""
        if response.choices:
            text = (response.choices[0].message.content or "").strip()
        if not text:
            raise service_error_for(classify_error(
                code="empty_response",
                message="Empty response from OpenAI"
            ))

        logger.debug("OpenAI returned %d characters (model=%s)", len(text), request.model)
        return text
