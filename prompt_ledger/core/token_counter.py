"""
Token counting and usage tracking.

Maps images and generated text onto token-equivalents for pricing.
"""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Input covers the image and instruction, output the generated prompt.
    """
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


def estimate_image_tokens(image_url: str) -> int:
    """Estimate the token-equivalent of an image by its encoded size.

    Only data URLs carry a size; an external URL counts as a small image.
    """
    base64_data = image_url.split(",", 1)[1] if "," in image_url else ""
    size_in_bytes = len(base64_data) * 0.75

    if size_in_bytes < 100_000:
        return 85
    if size_in_bytes < 500_000:
        return 120
    if size_in_bytes < 1_000_000:
        return 170
    return 200


def estimate_text_tokens(text: str) -> int:
    """Estimate text tokens at roughly four characters per token."""
    return math.ceil(len(text) / 4)


def estimate_usage(image_url: str, output_text: str) -> TokenUsage:
    """Token-equivalents for one image-to-prompt generation."""
    return TokenUsage(
        input_tokens=estimate_image_tokens(image_url),
        output_tokens=estimate_text_tokens(output_text),
    )
