"""Configuration loading for the change-feed ingestion jobs.

Configuration lives in a single YAML file (src/config/config.yaml by default,
or the path in $BLOBFEED_CONFIG):

    source:        change feed account and page sizing
    cursor_store:  json | blob
    repository:    json | table
    publisher:     jsonl | servicebus | eventhub
    ingestion:     cycle limits, retention, timer interval
    cleanup:       sweep interval
    logging:       log directory and format

Usage:
    >>> from config import load_config
    >>> config = load_config()
    >>> config.ingestion.retention_days
    7
"""

from config.config import (
    AppConfig,
    CleanupConfig,
    CursorStoreConfig,
    IngestionConfig,
    LoggingConfig,
    PublisherConfig,
    RepositoryConfig,
    SourceConfig,
    load_config,
)

__all__ = [
    "AppConfig",
    "SourceConfig",
    "CursorStoreConfig",
    "RepositoryConfig",
    "PublisherConfig",
    "IngestionConfig",
    "CleanupConfig",
    "LoggingConfig",
    "load_config",
]
