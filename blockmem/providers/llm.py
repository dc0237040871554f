"""
Structured completion providers using LLMs.

Both providers return the raw text of the model reply; callers run it
through parse_structured_output() so prose or code fences around the
JSON are tolerated.
"""

import json
import logging
import os

from ..errors import ExternalServiceError
from .base import get_registry

logger = logging.getLogger(__name__)


def _schema_instructions(schema: dict) -> str:
    return (
        "Respond with a single JSON object and nothing else. "
        "It must conform to this JSON schema:\n"
        + json.dumps(schema, indent=2)
    )


class AnthropicCompletion:
    """
    Completion provider using Anthropic's Claude API.

    Authentication: api_key parameter, or ANTHROPIC_API_KEY.
    The schema is given to the model as instructions in the system prompt.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str | None = None,
        max_tokens: int = 2048,
    ):
        try:
            from anthropic import Anthropic
        except ImportError:
            raise RuntimeError("AnthropicCompletion requires 'anthropic' library")

        self.model = model
        self.max_tokens = max_tokens

        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ValueError("Anthropic authentication required. Set ANTHROPIC_API_KEY")

        self.client = Anthropic(api_key=key)

    def complete_json(
        self,
        system: str,
        prompt: str,
        schema: dict,
        *,
        timeout: float = 120.0,
    ) -> str:
        """Send the prompt and return the reply text."""
        import anthropic

        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=f"{system}\n\n{_schema_instructions(schema)}",
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
            )
        except anthropic.AnthropicError as e:
            raise ExternalServiceError(f"Anthropic completion failed: {e}") from e

        parts = [
            block.text for block in (response.content or [])
            if getattr(block, "type", "text") == "text"
        ]
        return "".join(parts)


class OpenAICompletion:
    """
    Completion provider using OpenAI's chat API with a JSON schema
    response format.

    Requires: BLOCKMEM_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    """

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        api_key: str | None = None,
        max_tokens: int = 2048,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAICompletion requires 'openai' library")

        self.model = model
        self.max_tokens = max_tokens

        key = api_key or os.environ.get("BLOCKMEM_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set BLOCKMEM_OPENAI_API_KEY or OPENAI_API_KEY"
            )

        self._client = OpenAI(api_key=key)

        # GPT-5+ and reasoning models take max_completion_tokens and no temperature
        self._new_api = self.model.startswith(("gpt-5", "o3", "o4"))

    def _completion_kwargs(self, max_tokens: int) -> dict:
        """Return model-appropriate kwargs for token limit and temperature."""
        if self._new_api:
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens, "temperature": 0.2}

    def complete_json(
        self,
        system: str,
        prompt: str,
        schema: dict,
        *,
        timeout: float = 120.0,
    ) -> str:
        """Send the prompt with a json_schema response format; return the reply text."""
        import openai

        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "structured_output", "schema": schema},
                },
                timeout=timeout,
                **self._completion_kwargs(self.max_tokens),
            )
        except openai.OpenAIError as e:
            raise ExternalServiceError(f"OpenAI completion failed: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


# Register providers
_registry = get_registry()
_registry.register_completion("anthropic", AnthropicCompletion)
_registry.register_completion("openai", OpenAICompletion)
