"""
SDK for prompt-ledger.

Provides the model client that feeds the history and usage stores.
"""

from .openai_client import GenerationResult, PromptGenerator, PromptRecorder

__all__ = ["GenerationResult", "PromptGenerator", "PromptRecorder"]
