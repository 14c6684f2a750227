"""
SDK for letter_guard.

Clients for the external text-generation service.
"""

from .openai_client import GenerationRequest, OpenAITextGenerator, TextGenerator

__all__ = ["GenerationRequest", "OpenAITextGenerator", "TextGenerator"]
