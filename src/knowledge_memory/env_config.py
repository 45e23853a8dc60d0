"""
Environment configuration module.

Builds a ``MemoryConfig`` from environment variables with sensible defaults.
Values are loaded from a .env file or the system environment.
"""

import os

from dotenv import load_dotenv

from .config import (
    EmbeddingConfig,
    MemoryConfig,
    StorageConfig,
    SummarizerConfig,
    TierConfig,
)

# Load .env file if it exists
load_dotenv()


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default fallback."""
    return os.getenv(key, default)


def get_env_int(key: str, default: int = 0) -> int:
    """Get environment variable as integer with default fallback."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get environment variable as boolean with default fallback."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def load_config_from_env() -> MemoryConfig:
    """Create a MemoryConfig from the current environment."""
    storage_defaults = StorageConfig()
    embedding_defaults = EmbeddingConfig()
    summarizer_defaults = SummarizerConfig()
    tier_defaults = TierConfig()

    return MemoryConfig(
        log_level=get_env("KNOWLEDGE_MEMORY_LOG_LEVEL", "INFO"),
        storage=StorageConfig(
            backend=get_env("KNOWLEDGE_MEMORY_BACKEND", storage_defaults.backend),
            extended_dir=get_env(
                "EXTENDED_MEMORY_DIR", storage_defaults.extended_dir
            ),
            sqlite_db_path=get_env(
                "KNOWLEDGE_MEMORY_SQLITE_PATH", storage_defaults.sqlite_db_path
            ),
        ),
        embedding=EmbeddingConfig(
            provider=get_env("EMBEDDING_PROVIDER", embedding_defaults.provider),
            model=get_env("EMBEDDING_MODEL", embedding_defaults.model),
            api_base_url=get_env(
                "EMBEDDING_API_BASE", embedding_defaults.api_base_url
            ),
            api_key=get_env("EMBEDDING_API_KEY"),
            trust_remote_code=get_env_bool("EMBEDDING_TRUST_REMOTE_CODE", False),
        ),
        summarizer=SummarizerConfig(
            api_base_url=get_env(
                "SUMMARY_API_BASE", summarizer_defaults.api_base_url
            ),
            api_key=get_env("SUMMARY_API_KEY"),
            model=get_env("SUMMARY_MODEL", summarizer_defaults.model),
        ),
        tiers=TierConfig(
            working_memory_tokens=get_env_int(
                "WORKING_MEMORY_TOKENS", tier_defaults.working_memory_tokens
            ),
            total_memory_tokens=get_env_int(
                "TOTAL_MEMORY_TOKENS", tier_defaults.total_memory_tokens
            ),
            monitor_enabled=get_env_bool(
                "KNOWLEDGE_MEMORY_MONITOR", tier_defaults.monitor_enabled
            ),
        ),
    )
