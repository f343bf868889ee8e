from .client import ILLMClient, GenerationResult, OllamaLLMClient

__all__ = ['ILLMClient', 'GenerationResult', 'OllamaLLMClient']
