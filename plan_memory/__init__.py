"""
plan-memory: bounded long-term memory and token-budgeted prompt assembly for per-plan assistants.
"""

from .core.config import VERSION

__version__ = VERSION
