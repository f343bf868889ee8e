"""
Text generation used for cluster summaries and long-message summarization.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

import ollama

from ..core.errors import UpstreamError


@dataclass
class GenerationResult:
    text: str
    model_used: str
    processing_time_ms: int = 0


class ILLMClient(ABC):
    """Abstract interface for LLM text generation."""

    @abstractmethod
    async def generate(self, prompt: str, temperature: float = 0.3, max_tokens: int = 500) -> GenerationResult:
        """Generate a completion for prompt."""
        pass


class OllamaLLMClient(ILLMClient):
    """
    LLM client backed by a local Ollama model.
    Any failure is surfaced as UpstreamError so callers can fall back.
    """

    def __init__(self, model_name: str, host: str = None, client: "ollama.AsyncClient" = None):
        self.model_name = model_name
        self.client = client or ollama.AsyncClient(host=host)

    async def generate(self, prompt: str, temperature: float = 0.3, max_tokens: int = 500) -> GenerationResult:
        start_time = datetime.now()

        try:
            response = await self.client.generate(
                model=self.model_name,
                prompt=prompt,
                options={
                    'temperature': temperature,
                    'num_predict': max_tokens
                }
            )
        except ollama.ResponseError as e:
            raise UpstreamError(f"Ollama model error: {e}", details={"model": self.model_name}) from e
        except Exception as e:
            raise UpstreamError(f"Ollama request failed: {e}", details={"model": self.model_name}) from e

        processing_time = int((datetime.now() - start_time).total_seconds() * 1000)
        text = (response.get('response') or '').strip()
        if not text:
            raise UpstreamError("Ollama returned an empty response", details={"model": self.model_name})

        return GenerationResult(text=text, model_used=self.model_name, processing_time_ms=processing_time)
