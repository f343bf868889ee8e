"""
Memory compression and context builder configuration.
All settings come from environment variables and are read once at import time.
"""

import os
from dataclasses import dataclass
from typing import List

# Memory compression (enabled by default, sweeps are cheap when nothing matches)
MEMORY_COMPRESSION_ENABLED = os.getenv("MEMORY_COMPRESSION_ENABLED", "true").lower() == "true"
MEMORY_COMPRESSION_ARCHIVE_THRESHOLD = int(os.getenv("MEMORY_COMPRESSION_ARCHIVE_THRESHOLD", "1000"))
MEMORY_COMPRESSION_DEFAULT_MODE = os.getenv("MEMORY_COMPRESSION_DEFAULT_MODE", "light")  # light|full
MEMORY_COMPRESSION_INACTIVE_PLAN_DAYS = int(os.getenv("MEMORY_COMPRESSION_INACTIVE_PLAN_DAYS", "30"))
MEMORY_COMPRESSION_MIN_EMBEDDINGS_THRESHOLD = int(os.getenv("MEMORY_COMPRESSION_MIN_EMBEDDINGS_THRESHOLD", "50"))
MEMORY_COMPRESSION_PRESERVE_RECENT_COUNT = int(os.getenv("MEMORY_COMPRESSION_PRESERVE_RECENT_COUNT", "20"))
MEMORY_COMPRESSION_ACTIVE_CONVERSATION_DAYS = int(os.getenv("MEMORY_COMPRESSION_ACTIVE_CONVERSATION_DAYS", "7"))
MEMORY_COMPRESSION_SIMILARITY_THRESHOLD = float(os.getenv("MEMORY_COMPRESSION_SIMILARITY_THRESHOLD", "0.95"))
MEMORY_COMPRESSION_DUPLICATE_THRESHOLD = float(os.getenv("MEMORY_COMPRESSION_DUPLICATE_THRESHOLD", "0.97"))
MEMORY_COMPRESSION_MIN_CLUSTER_SIZE = int(os.getenv("MEMORY_COMPRESSION_MIN_CLUSTER_SIZE", "2"))
MEMORY_COMPRESSION_MAX_CLUSTER_SIZE = int(os.getenv("MEMORY_COMPRESSION_MAX_CLUSTER_SIZE", "50"))
MEMORY_COMPRESSION_MIN_AGE_DAYS = int(os.getenv("MEMORY_COMPRESSION_MIN_AGE_DAYS", "14"))
MEMORY_COMPRESSION_SUMMARY_MIN_CLUSTER_SIZE = int(os.getenv("MEMORY_COMPRESSION_SUMMARY_MIN_CLUSTER_SIZE", "3"))
MEMORY_COMPRESSION_CLUSTER_BATCH_SIZE = int(os.getenv("MEMORY_COMPRESSION_CLUSTER_BATCH_SIZE", "5"))
MEMORY_COMPRESSION_LIGHT_INTERVAL_SEC = int(os.getenv("MEMORY_COMPRESSION_LIGHT_INTERVAL_SEC", "86400"))  # daily
MEMORY_COMPRESSION_FULL_INTERVAL_SEC = int(os.getenv("MEMORY_COMPRESSION_FULL_INTERVAL_SEC", "604800"))  # weekly

COMPRESSION_MODES = ("light", "full")
COMPRESSION_JOB_TYPE = "memory_compression"
COMPRESSION_SUMMARY_REF_TYPE = "compression_summary"

# Context builders
CONTEXT_BUILDER_MAX_TOKENS = int(os.getenv("CONTEXT_BUILDER_MAX_TOKENS", "8000"))
CONTEXT_BUILDER_MESSAGE_LIMIT = int(os.getenv("CONTEXT_BUILDER_MESSAGE_LIMIT", "30"))
CONTEXT_BUILDER_MESSAGE_OVERFETCH = int(os.getenv("CONTEXT_BUILDER_MESSAGE_OVERFETCH", "2"))
CONTEXT_BUILDER_EMBEDDING_TOP_K = int(os.getenv("CONTEXT_BUILDER_EMBEDDING_TOP_K", "10"))
CONTEXT_BUILDER_EMBEDDING_THRESHOLD = float(os.getenv("CONTEXT_BUILDER_EMBEDDING_THRESHOLD", "0.7"))
CONTEXT_BUILDER_JOB_LIMIT = int(os.getenv("CONTEXT_BUILDER_JOB_LIMIT", "5"))
CONTEXT_BUILDER_LONG_MESSAGE_THRESHOLD = int(os.getenv("CONTEXT_BUILDER_LONG_MESSAGE_THRESHOLD", "1000"))

# Default split of the total budget (fractions)
CONTEXT_BUILDER_TOKEN_BUDGET_DEFAULT = {
    "messages": 0.5,
    "embeddings": 0.35,
    "plan": 0.15,
}

# Floors used by the composer when trimming each block
CONTEXT_BUILDER_MIN_TOKENS = {
    "messages": 100,
    "embeddings": 50,
    "plan": 50,
}

# Heartbeat ticker (default disabled)
HEARTBEAT_ENABLED = os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"

# Embedding and LLM providers
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence_transformers|ollama
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-mpnet-base-v2")
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_NORMALIZE = os.getenv("EMBED_NORMALIZE", "false").lower() == "true"
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3.1:8b")
OLLAMA_EMBED_MODEL = os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text")

VERSION = "1.0.0"


@dataclass(frozen=True)
class CompressionSettings:
    """Snapshot of the memory compression knobs."""
    enabled: bool = MEMORY_COMPRESSION_ENABLED
    archive_threshold: int = MEMORY_COMPRESSION_ARCHIVE_THRESHOLD
    default_mode: str = MEMORY_COMPRESSION_DEFAULT_MODE
    inactive_plan_days: int = MEMORY_COMPRESSION_INACTIVE_PLAN_DAYS
    min_embeddings_threshold: int = MEMORY_COMPRESSION_MIN_EMBEDDINGS_THRESHOLD
    preserve_recent_count: int = MEMORY_COMPRESSION_PRESERVE_RECENT_COUNT
    active_conversation_days: int = MEMORY_COMPRESSION_ACTIVE_CONVERSATION_DAYS
    similarity_threshold: float = MEMORY_COMPRESSION_SIMILARITY_THRESHOLD
    duplicate_threshold: float = MEMORY_COMPRESSION_DUPLICATE_THRESHOLD
    min_cluster_size: int = MEMORY_COMPRESSION_MIN_CLUSTER_SIZE
    max_cluster_size: int = MEMORY_COMPRESSION_MAX_CLUSTER_SIZE
    min_age_days: int = MEMORY_COMPRESSION_MIN_AGE_DAYS
    summary_min_cluster_size: int = MEMORY_COMPRESSION_SUMMARY_MIN_CLUSTER_SIZE
    cluster_batch_size: int = MEMORY_COMPRESSION_CLUSTER_BATCH_SIZE
    light_interval_sec: int = MEMORY_COMPRESSION_LIGHT_INTERVAL_SEC
    full_interval_sec: int = MEMORY_COMPRESSION_FULL_INTERVAL_SEC
    normalize_vectors: bool = EMBED_NORMALIZE


@dataclass(frozen=True)
class ContextBuilderSettings:
    """Snapshot of the context builder knobs."""
    max_tokens: int = CONTEXT_BUILDER_MAX_TOKENS
    message_limit: int = CONTEXT_BUILDER_MESSAGE_LIMIT
    message_overfetch: int = CONTEXT_BUILDER_MESSAGE_OVERFETCH
    embedding_top_k: int = CONTEXT_BUILDER_EMBEDDING_TOP_K
    embedding_threshold: float = CONTEXT_BUILDER_EMBEDDING_THRESHOLD
    job_limit: int = CONTEXT_BUILDER_JOB_LIMIT
    long_message_threshold: int = CONTEXT_BUILDER_LONG_MESSAGE_THRESHOLD


def get_compression_settings() -> CompressionSettings:
    """Return compression settings built from the current module constants."""
    return CompressionSettings(
        enabled=MEMORY_COMPRESSION_ENABLED,
        archive_threshold=MEMORY_COMPRESSION_ARCHIVE_THRESHOLD,
        default_mode=MEMORY_COMPRESSION_DEFAULT_MODE,
        inactive_plan_days=MEMORY_COMPRESSION_INACTIVE_PLAN_DAYS,
        min_embeddings_threshold=MEMORY_COMPRESSION_MIN_EMBEDDINGS_THRESHOLD,
        preserve_recent_count=MEMORY_COMPRESSION_PRESERVE_RECENT_COUNT,
        active_conversation_days=MEMORY_COMPRESSION_ACTIVE_CONVERSATION_DAYS,
        similarity_threshold=MEMORY_COMPRESSION_SIMILARITY_THRESHOLD,
        duplicate_threshold=MEMORY_COMPRESSION_DUPLICATE_THRESHOLD,
        min_cluster_size=MEMORY_COMPRESSION_MIN_CLUSTER_SIZE,
        max_cluster_size=MEMORY_COMPRESSION_MAX_CLUSTER_SIZE,
        min_age_days=MEMORY_COMPRESSION_MIN_AGE_DAYS,
        summary_min_cluster_size=MEMORY_COMPRESSION_SUMMARY_MIN_CLUSTER_SIZE,
        cluster_batch_size=MEMORY_COMPRESSION_CLUSTER_BATCH_SIZE,
        light_interval_sec=MEMORY_COMPRESSION_LIGHT_INTERVAL_SEC,
        full_interval_sec=MEMORY_COMPRESSION_FULL_INTERVAL_SEC,
        normalize_vectors=EMBED_NORMALIZE,
    )


def get_context_builder_settings() -> ContextBuilderSettings:
    """Return context builder settings built from the current module constants."""
    return ContextBuilderSettings(
        max_tokens=CONTEXT_BUILDER_MAX_TOKENS,
        message_limit=CONTEXT_BUILDER_MESSAGE_LIMIT,
        message_overfetch=CONTEXT_BUILDER_MESSAGE_OVERFETCH,
        embedding_top_k=CONTEXT_BUILDER_EMBEDDING_TOP_K,
        embedding_threshold=CONTEXT_BUILDER_EMBEDDING_THRESHOLD,
        job_limit=CONTEXT_BUILDER_JOB_LIMIT,
        long_message_threshold=CONTEXT_BUILDER_LONG_MESSAGE_THRESHOLD,
    )


def get_embedding_provider():
    """Get configured embedding provider implementation."""
    if EMBED_PROVIDER == "sentence_transformers":
        from plan_memory.vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(EMBED_MODEL_NAME)
    elif EMBED_PROVIDER == "ollama":
        from plan_memory.vector.embeddings import OllamaEmbedding
        return OllamaEmbedding(OLLAMA_EMBED_MODEL, host=OLLAMA_HOST)
    else:
        from plan_memory.vector.embeddings import DeterministicHashEmbedding
        return DeterministicHashEmbedding(EMBED_DIM)


def get_llm_client():
    """Get configured LLM client used for summarization."""
    from plan_memory.llm.client import OllamaLLMClient
    return OllamaLLMClient(OLLAMA_MODEL, host=OLLAMA_HOST)


def is_compression_enabled():
    """Check if scheduled memory compression is enabled."""
    return MEMORY_COMPRESSION_ENABLED


def is_heartbeat_enabled():
    """Check if heartbeat ticker is enabled."""
    return HEARTBEAT_ENABLED


def validate_compression_config(settings: CompressionSettings = None) -> List[str]:
    """Validate compression configuration and return any issues."""
    settings = settings or get_compression_settings()
    issues = []

    if settings.default_mode not in COMPRESSION_MODES:
        issues.append(f"Invalid MEMORY_COMPRESSION_DEFAULT_MODE: {settings.default_mode}")

    for name in ("similarity_threshold", "duplicate_threshold"):
        value = getattr(settings, name)
        if not 0 < value <= 1:
            issues.append(f"{name} must be in (0, 1]: {value}")

    if settings.min_cluster_size < 2:
        issues.append("min_cluster_size must be >= 2")

    if settings.max_cluster_size < settings.min_cluster_size:
        issues.append("max_cluster_size must be >= min_cluster_size")

    if settings.cluster_batch_size < 1:
        issues.append("cluster_batch_size must be >= 1")

    if settings.preserve_recent_count < 0 or settings.min_age_days < 0:
        issues.append("preserve_recent_count and min_age_days must be >= 0")

    if settings.light_interval_sec < 1 or settings.full_interval_sec < 1:
        issues.append("Sweep intervals must be >= 1 second")

    return issues


def validate_heartbeat_config():
    """Validate heartbeat configuration and return any issues."""
    issues = []

    if is_heartbeat_enabled() and not is_compression_enabled():
        issues.append("HEARTBEAT_ENABLED requires MEMORY_COMPRESSION_ENABLED=true")

    issues.extend(validate_compression_config())

    return issues
