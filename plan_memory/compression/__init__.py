"""
Memory compression - deduplication and cluster summarization of plan memory.
"""

from .compressor import MemoryCompressor
from .scheduler import CompressionScheduler

__all__ = ['MemoryCompressor', 'CompressionScheduler']
