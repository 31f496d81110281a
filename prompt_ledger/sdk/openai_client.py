"""
Image-to-prompt client wrapper.

Turns an image into a text prompt through an OpenAI-compatible vision
endpoint and records the result in the usage and history stores.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional

from openai import OpenAI

from ..core.pricing import compute_cost
from ..core.token_counter import TokenUsage, estimate_usage
from ..storage.history import HistoryStore
from ..storage.models import MAX_PROMPT_LENGTH, HistoryEntry, validate_history_entry
from ..storage.repository import UsageStore

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_INSTRUCTION = (
    "Describe this image in detail and suggest a good prompt for generating similar images."
)


@dataclass(frozen=True)
class GenerationResult:
    """What the model client hands to the stores."""
    prompt: str
    model_id: str
    model_name: str
    usage: TokenUsage


class PromptGenerator:
    """Generates image prompts with a vision chat model.

    API failures propagate unchanged so callers can tell nothing was
    generated.
    """

    def __init__(
        self,
        model_id: str,
        model_name: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = OPENROUTER_BASE_URL,
    ):
        """Initialize the generator.

        Args:
            model_id: Provider model identifier (required)
            model_name: Display name, defaults to ``model_id``
            api_key: API key, defaults to the OPENAI_API_KEY environment variable
            base_url: OpenAI-compatible endpoint

        Raises:
            ValueError: If model_id is missing/empty
        """
        if not model_id or not model_id.strip():
            raise ValueError("model_id is required and cannot be empty")

        self.model_id = model_id
        self.model_name = model_name or model_id
        self.client = OpenAI(api_key=api_key, base_url=base_url)

    def generate(
        self,
        image_url: str,
        instruction: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> GenerationResult:
        """Ask the model for a prompt describing ``image_url``.

        The reply is trimmed and cut to the longest prompt the history
        accepts. Token counts come from the response, or are estimated
        when the provider does not report usage.

        Raises:
            ValueError: If image_url is empty or the reply has no text
            OpenAI API errors: Propagated without modification
        """
        if not image_url:
            raise ValueError("image_url is required and cannot be empty")

        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": instruction or DEFAULT_INSTRUCTION},
                    {"type": "image_url", "image_url": {"url": image_url}},
                ],
            }
        ]

        response = self.client.chat.completions.create(
            model=self.model_id,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )

        if not response.choices or not response.choices[0].message.content:
            raise ValueError("Model response contained no prompt text")
        text = response.choices[0].message.content.strip()
        if len(text) > MAX_PROMPT_LENGTH:
            logger.info("Truncating %d character prompt from %s", len(text), self.model_id)
            text = text[:MAX_PROMPT_LENGTH]

        usage = response.usage
        if usage and usage.prompt_tokens is not None and usage.completion_tokens is not None:
            token_usage = TokenUsage(
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens
            )
        else:
            logger.info("No token usage reported by %s; estimating", self.model_id)
            token_usage = estimate_usage(image_url, text)

        return GenerationResult(
            prompt=text,
            model_id=self.model_id,
            model_name=self.model_name,
            usage=token_usage,
        )


class PromptRecorder:
    """Runs a generation and writes the usage and history entries for it.

    The history entry is built and validated before usage is recorded,
    so a failed generation, an unpriced model or an invalid entry leaves
    both stores untouched.
    """

    def __init__(
        self,
        generator: PromptGenerator,
        history: HistoryStore,
        usage: UsageStore,
        keep_previews: bool = False,
    ):
        self.generator = generator
        self.history = history
        self.usage = usage
        self.keep_previews = keep_previews

    def generate(self, image_url: str, instruction: Optional[str] = None) -> HistoryEntry:
        """Generate a prompt for ``image_url`` and record it.

        Returns:
            The new history entry

        Raises:
            UnknownModelError: If the model has no rate configured
            ValidationError: If the result cannot be stored as a history entry
            OpenAI API errors: Propagated without modification
        """
        result = self.generator.generate(image_url, instruction=instruction)

        cost = compute_cost(
            result.model_id,
            result.usage.input_tokens,
            result.usage.output_tokens,
            self.usage.rate_table,
        )
        draft = HistoryEntry.create(
            image_url=image_url,
            prompt=result.prompt,
            total_cost=cost.total_cost,
            model_id=result.model_id,
            model_name=result.model_name,
        )
        validate_history_entry(draft)

        usage_entry = self.usage.record(
            model_id=result.model_id,
            model_name=result.model_name,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            image_preview=image_url if self.keep_previews else None,
        )

        entry = replace(draft, total_cost=usage_entry.total_cost, created_at=usage_entry.timestamp)
        self.history.add(entry)
        return entry
