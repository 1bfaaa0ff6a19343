"""Change-feed ingestion configuration from a YAML file.

Loads from config/config.yaml with all settings in one place:
- Change feed source (storage account, page sizing)
- Cursor store, metadata repository and publisher backends
- Ingestion cycle limits and cleanup schedule
- Logging

Environment variables ARE supported using ${VAR_NAME} and ${VAR_NAME:-default}
syntax in YAML files. The resulting AppConfig is built once at process start and
handed to component constructors; components never read the environment.
"""

import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from core.errors.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yaml"
CONFIG_PATH_ENV_VAR = "BLOBFEED_CONFIG"


# =============================================================================
# Section dataclasses
# =============================================================================


@dataclass
class SourceConfig:
    """Blob change feed of the monitored storage account."""

    connection_string: str = ""
    page_size: int = 500
    max_pages_per_cycle: Optional[int] = None


@dataclass
class CursorStoreConfig:
    """Where the committed change-feed cursor lives ("json" or "blob")."""

    type: str = "json"
    connection_string: str = ""
    container_name: str = "changefeedcheckpoints"
    storage_path: str = "./.checkpoints"


@dataclass
class RepositoryConfig:
    """File metadata store ("json" for local files, "table" for Azure Table Storage)."""

    type: str = "json"
    connection_string: str = ""
    table_name: str = "FileMetadata"
    partition_key: str = "FileMetadata"
    storage_path: str = "./.metadata"


@dataclass
class PublisherConfig:
    """Downstream queue ("servicebus", "eventhub" or "jsonl")."""

    type: str = "jsonl"
    connection_string: str = ""
    queue_name: str = ""
    eventhub_name: str = ""
    output_path: str = "./.outbox/file_metadata.jsonl"


@dataclass
class IngestionConfig:
    """Limits for a single ingestion cycle.

    All timing values in seconds.
    """

    partition_id: str = "default"
    retention_days: int = 7
    max_events_per_cycle: int = 5000
    cycle_time_budget_seconds: float = 240.0
    operation_timeout_seconds: float = 30.0
    interval_seconds: int = 300


@dataclass
class CleanupConfig:
    interval_seconds: int = 86400
    operation_timeout_seconds: float = 30.0
    batch_size: int = 500


@dataclass
class LoggingConfig:
    log_dir: str = "logs"
    json_format: bool = True
    level: str = "INFO"


_SECTIONS: Dict[str, type] = {
    "source": SourceConfig,
    "cursor_store": CursorStoreConfig,
    "repository": RepositoryConfig,
    "publisher": PublisherConfig,
    "ingestion": IngestionConfig,
    "cleanup": CleanupConfig,
    "logging": LoggingConfig,
}

CURSOR_STORE_TYPES = ("json", "blob")
REPOSITORY_TYPES = ("json", "table")
PUBLISHER_TYPES = ("jsonl", "servicebus", "eventhub")


@dataclass
class AppConfig:
    """Complete configuration for the ingestion and cleanup jobs.

    Configuration structure:
        source: {...}          # change feed account + page sizing
        cursor_store: {...}    # committed cursor slot
        repository: {...}      # file metadata table
        publisher: {...}       # downstream queue
        ingestion: {...}       # cycle limits and timer interval
        cleanup: {...}         # sweep interval
        logging: {...}
    """

    source: SourceConfig = field(default_factory=SourceConfig)
    cursor_store: CursorStoreConfig = field(default_factory=CursorStoreConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    publisher: PublisherConfig = field(default_factory=PublisherConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """Build from a parsed YAML mapping, ignoring unknown keys with a warning."""
        sections = {}
        for name, section_cls in _SECTIONS.items():
            raw = data.get(name) or {}
            known = {f.name for f in fields(section_cls)}
            unknown = set(raw) - known
            if unknown:
                logger.warning(
                    f"Ignoring unknown keys in '{name}' section: {sorted(unknown)}"
                )
            sections[name] = section_cls(**{k: v for k, v in raw.items() if k in known})
        return cls(**sections)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> None:
        """Validate configuration for correctness and constraints.

        Collects every problem before raising so operators can fix them in one pass.
        """
        problems: list[str] = []

        if self.cursor_store.type not in CURSOR_STORE_TYPES:
            problems.append(
                f"cursor_store.type must be one of {list(CURSOR_STORE_TYPES)}, "
                f"got '{self.cursor_store.type}'"
            )
        elif self.cursor_store.type == "blob" and not self.cursor_store.connection_string:
            problems.append("cursor_store.connection_string is required for type 'blob'")

        if self.repository.type not in REPOSITORY_TYPES:
            problems.append(
                f"repository.type must be one of {list(REPOSITORY_TYPES)}, "
                f"got '{self.repository.type}'"
            )
        elif self.repository.type == "table" and not self.repository.connection_string:
            problems.append("repository.connection_string is required for type 'table'")

        if self.publisher.type not in PUBLISHER_TYPES:
            problems.append(
                f"publisher.type must be one of {list(PUBLISHER_TYPES)}, "
                f"got '{self.publisher.type}'"
            )
        elif self.publisher.type == "servicebus":
            if not self.publisher.connection_string:
                problems.append("publisher.connection_string is required for type 'servicebus'")
            if not self.publisher.queue_name:
                problems.append("publisher.queue_name is required for type 'servicebus'")
        elif self.publisher.type == "eventhub":
            if not self.publisher.connection_string:
                problems.append("publisher.connection_string is required for type 'eventhub'")
            if not self.publisher.eventhub_name:
                problems.append("publisher.eventhub_name is required for type 'eventhub'")

        if self.source.page_size < 1:
            problems.append(f"source.page_size must be >= 1, got {self.source.page_size}")
        if self.source.max_pages_per_cycle is not None and self.source.max_pages_per_cycle < 1:
            problems.append(
                f"source.max_pages_per_cycle must be >= 1 or null, "
                f"got {self.source.max_pages_per_cycle}"
            )

        ing = self.ingestion
        if not ing.partition_id:
            problems.append("ingestion.partition_id must not be empty")
        if ing.retention_days <= 0:
            problems.append(f"ingestion.retention_days must be > 0, got {ing.retention_days}")
        if ing.max_events_per_cycle < 1:
            problems.append(
                f"ingestion.max_events_per_cycle must be >= 1, got {ing.max_events_per_cycle}"
            )
        elif self.source.page_size > ing.max_events_per_cycle:
            # a mid-page stop commits the page start, so the cursor would never move
            problems.append(
                f"source.page_size ({self.source.page_size}) must not exceed "
                f"ingestion.max_events_per_cycle ({ing.max_events_per_cycle})"
            )
        for key in ("cycle_time_budget_seconds", "operation_timeout_seconds", "interval_seconds"):
            if getattr(ing, key) <= 0:
                problems.append(f"ingestion.{key} must be > 0, got {getattr(ing, key)}")

        if self.cleanup.interval_seconds <= 0:
            problems.append(
                f"cleanup.interval_seconds must be > 0, got {self.cleanup.interval_seconds}"
            )
        if self.cleanup.operation_timeout_seconds <= 0:
            problems.append(
                f"cleanup.operation_timeout_seconds must be > 0, "
                f"got {self.cleanup.operation_timeout_seconds}"
            )
        if self.cleanup.batch_size <= 0:
            problems.append(f"cleanup.batch_size must be > 0, got {self.cleanup.batch_size}")

        if problems:
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(problems)}", problems=problems
            )


def resolve_config_path(config_path: Optional[Path] = None) -> Path:
    """Explicit path, then $BLOBFEED_CONFIG, then src/config/config.yaml."""
    if config_path is not None:
        return Path(config_path)
    env_path = os.getenv(CONFIG_PATH_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> AppConfig:
    """Load and validate configuration from a config.yaml file.

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigurationError: If values are missing or invalid
    """
    config_path = resolve_config_path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Set {CONFIG_PATH_ENV_VAR} or pass --config"
        )

    logger.info(f"Loading configuration from file: {config_path}")
    yaml_data = _expand_env_vars(load_yaml(config_path))

    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        yaml_data = _deep_merge(yaml_data, overrides)

    config = AppConfig.from_dict(yaml_data)
    config.validate()
    return config


def _cli_main() -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Change feed ingestion configuration tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate configuration
  python -m config.config --validate

  # Show resolved configuration (env vars expanded)
  python -m config.config --show-merged --json
        """,
    )
    parser.add_argument("--validate", action="store_true", help="Validate configuration")
    parser.add_argument(
        "--show-merged", action="store_true", help="Display resolved configuration"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config.yaml file (default: src/config/config.yaml)",
    )
    parser.add_argument("--json", action="store_true", help="Output in JSON format")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    if not args.validate and not args.show_merged:
        parser.print_help()
        return 0

    try:
        config = load_config(config_path=args.config)
    except (FileNotFoundError, ConfigurationError) as e:
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            print(f"✗ Error: {e}", file=sys.stderr)
        return 1

    if args.validate and not args.json:
        print("✓ Configuration validation passed")

    if args.show_merged:
        if args.json:
            print(json.dumps(config.to_dict(), indent=2))
        else:
            print(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False))

    return 0


if __name__ == "__main__":
    sys.exit(_cli_main())
