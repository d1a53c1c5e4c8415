"""LLM clients for frame analysis."""

from .openai_client import OpenAIFrameClient

__all__ = ["OpenAIFrameClient"]
