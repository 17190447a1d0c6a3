"""Config module exports."""

from codeindex.config.loader import CodeIndexSettings, load_config
from codeindex.config.models import (
    CloudConfig,
    CodeIndexConfig,
    EmbeddingConfig,
    IndexConfig,
    IndexerConfig,
    LoggingConfig,
    SearchConfig,
    StorageConfig,
    TimeoutsConfig,
)

__all__ = [
    "load_config",
    "CodeIndexConfig",
    "CodeIndexSettings",
    "CloudConfig",
    "EmbeddingConfig",
    "IndexConfig",
    "IndexerConfig",
    "LoggingConfig",
    "SearchConfig",
    "StorageConfig",
    "TimeoutsConfig",
]
