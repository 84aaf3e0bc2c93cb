"""Claude completion client used by every model-backed stage.

Two call shapes are exposed:

* ``generate_text``: free-text generation (summaries, synthesis)
* ``generate_structured``: schema-constrained generation parsed into a
  Pydantic model (reflection)

Both return the token usage of the call alongside the content. A call that
completes but yields empty or unparseable content raises
``ModelOutputError`` carrying that usage, so no spend goes unrecorded.

The Anthropic client is lazy-initialised so that the class can be
instantiated in tests without requiring a live API key.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, TypeVar

from pydantic import BaseModel

from core.errors import ModelOutputError
from core.models import TokenUsage

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def usage_from_response(response: object) -> TokenUsage:
    """Map an Anthropic ``usage`` block onto ``TokenUsage``."""
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()
    prompt = int(getattr(usage, "input_tokens", 0) or 0)
    completion = int(getattr(usage, "output_tokens", 0) or 0)
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
    )


def _response_text(response: object) -> str:
    parts: list[str] = []
    for block in getattr(response, "content", []) or []:
        if getattr(block, "type", "text") == "text":
            parts.append(getattr(block, "text", "") or "")
    return "".join(parts)


class LLMClient:
    """Thin wrapper over the Anthropic Messages API bound to one model."""

    def __init__(
        self,
        settings: Settings,
        model: Optional[str] = None,
        max_tokens: int = 2000,
        client: object = None,
    ) -> None:
        """Initialise the client.

        Args:
            settings: Application configuration (must have ``anthropic_api_key``).
            model: Model name; defaults to ``settings.research_model``.
            max_tokens: Default completion budget per call.
            client: Pre-built SDK client (tests inject a mock here).
        """
        self.settings = settings
        self.model = model or settings.research_model
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> object:
        """Lazy-initialise and return the Anthropic SDK client."""
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(
                api_key=self.settings.anthropic_api_key,
                max_retries=5,
            )
        return self._client

    def generate_text(
        self,
        prompt: str,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        system: Optional[str] = None,
    ) -> tuple[str, TokenUsage]:
        """Generate free text for *prompt*.

        Raises:
            ModelOutputError: If the model returned no text.
            anthropic.APIError: On API failures.
        """
        kwargs: dict = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        response = self.client.messages.create(**kwargs)
        usage = usage_from_response(response)
        text = _response_text(response).strip()

        logger.debug(
            "generate_text model=%s chars=%d tokens=%d",
            self.model, len(text), usage.total_tokens,
        )
        if not text:
            raise ModelOutputError("Model returned an empty response.", token_usage=usage)
        return text, usage

    def generate_structured(
        self,
        prompt: str,
        output_format: type[ModelT],
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        system: Optional[str] = None,
    ) -> tuple[ModelT, TokenUsage]:
        """Generate output constrained to *output_format* and parse it.

        Raises:
            ModelOutputError: If the output could not be parsed into the schema.
            anthropic.APIError: On API failures.
        """
        kwargs: dict = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
            "output_format": output_format,
        }
        if system:
            kwargs["system"] = system

        response = self.client.messages.parse(**kwargs)
        usage = usage_from_response(response)
        parsed = getattr(response, "parsed_output", None)

        if not isinstance(parsed, output_format):
            raise ModelOutputError(
                f"Model output could not be parsed as {output_format.__name__}.",
                token_usage=usage,
            )
        return parsed, usage
