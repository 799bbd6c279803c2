"""
Configuration management for bulkextract.

Loads and validates config.yaml from $BULKEXTRACT_HOME (default
~/.config/bulkextract). The `bulk` section drives the extraction engine,
`logging` drives utils.setup_logging, `connection` / `query_api` name the
factories that build authenticated sessions with the remote service, and
`catalog` names the factory for the table catalog datasets are registered in.
"""

import importlib
import logging
import os
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from bulkextract.errors import ConfigurationError
from bulkextract.models import JobOperation

logger = logging.getLogger(__name__)

MIN_PK_CHUNKING_SIZE = 100000
MAX_PK_CHUNKING_SIZE = 250000
DEFAULT_PK_CHUNKING_SIZE = 200000
# PK chunking multiplies bulk API calls, so it is only allowed for small partition counts
PK_CHUNKING_MAX_PARTITIONS_LIMIT = 3
DEFAULT_FETCH_SIZE = 1000
DEFAULT_FETCH_RETRY_LIMIT = 5
DEFAULT_MAX_PARTITIONS = 1

LOG_FORMATS = ("structured", "pretty")


def get_bulkextract_home() -> Path:
    """Return the configuration home directory."""
    home = os.environ.get("BULKEXTRACT_HOME")
    if home:
        return Path(home)
    return Path("~/.config/bulkextract").expanduser()


def _require_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"bulk.{name} must be a boolean, got {value!r}")
    return value


def _require_int(name: str, value: Any, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"bulk.{name} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigurationError(f"bulk.{name} must be >= {minimum}, got {value}")
    return value


@dataclass
class BulkConfig:
    """
    Settings for the bulk extraction engine.

    Attributes:
        enable_pk_chunking: Request server-side PK chunking when eligible
        pk_chunking_size: Requested chunk size (clamped into [100000, 250000])
        pk_chunking_skip_count_check: Chunk without the preliminary count query
        fetch_size: Maximum rows per RecordBatch (0 means the default)
        fetch_retry_limit: Reconnect attempts per stream read before failing
        use_query_all: Create jobs with the queryAll operation
        soft_deletes_pull_disabled: Skip the soft-delete fallback query
        max_partitions: Partitions the caller splits the extraction into
        has_user_specified_partitions: Caller pre-specified partitions
        soft_delete_column: Column marking logically deleted rows
        api_version: Remote API version; derived from use_query_all when unset
    """
    enable_pk_chunking: bool = False
    pk_chunking_size: int = DEFAULT_PK_CHUNKING_SIZE
    pk_chunking_skip_count_check: bool = False
    fetch_size: int = DEFAULT_FETCH_SIZE
    fetch_retry_limit: int = DEFAULT_FETCH_RETRY_LIMIT
    use_query_all: bool = False
    soft_deletes_pull_disabled: bool = False
    max_partitions: int = DEFAULT_MAX_PARTITIONS
    has_user_specified_partitions: bool = False
    soft_delete_column: str = "IsDeleted"
    api_version: Optional[str] = None

    def __post_init__(self):
        for name in (
            "enable_pk_chunking",
            "pk_chunking_skip_count_check",
            "use_query_all",
            "soft_deletes_pull_disabled",
            "has_user_specified_partitions",
        ):
            _require_bool(name, getattr(self, name))

        _require_int("pk_chunking_size", self.pk_chunking_size)
        _require_int("fetch_size", self.fetch_size)
        _require_int("fetch_retry_limit", self.fetch_retry_limit)
        _require_int("max_partitions", self.max_partitions, minimum=1)

        if not self.soft_delete_column:
            raise ConfigurationError("bulk.soft_delete_column must not be empty")

        if self.fetch_size == 0:
            self.fetch_size = DEFAULT_FETCH_SIZE

        if not MIN_PK_CHUNKING_SIZE <= self.pk_chunking_size <= MAX_PK_CHUNKING_SIZE:
            logger.warning(
                f"bulk.pk_chunking_size {self.pk_chunking_size} outside "
                f"[{MIN_PK_CHUNKING_SIZE}, {MAX_PK_CHUNKING_SIZE}], using {self.chunk_size}"
            )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BulkConfig":
        """Build from the `bulk` section of config.yaml."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown bulk settings: {unknown}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def chunking_eligible(self) -> bool:
        """Whether PK chunking may be used at all.

        Pre-specified partitions or a partition count above the ceiling
        disable chunking regardless of enable_pk_chunking.
        """
        if self.has_user_specified_partitions or self.max_partitions > PK_CHUNKING_MAX_PARTITIONS_LIMIT:
            if self.enable_pk_chunking:
                logger.warning("Max partitions too high, so PK chunking is not enabled")
            return False
        return self.enable_pk_chunking

    @property
    def chunk_size(self) -> int:
        """Chunk size clamped into [MIN_PK_CHUNKING_SIZE, MAX_PK_CHUNKING_SIZE]."""
        return max(MIN_PK_CHUNKING_SIZE, min(MAX_PK_CHUNKING_SIZE, self.pk_chunking_size))

    @property
    def operation(self) -> JobOperation:
        return JobOperation.QUERY_ALL if self.use_query_all else JobOperation.QUERY

    @property
    def resolved_api_version(self) -> str:
        # queryAll on the bulk API needs a newer API version
        if self.api_version:
            return str(self.api_version)
        return "42.0" if self.use_query_all else "29.0"

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ExtractorConfig:
    """Complete bulkextract configuration."""
    bulk: BulkConfig = field(default_factory=BulkConfig)
    logging: Dict[str, Any] = field(default_factory=dict)
    connection: Optional[str] = None
    query_api: Optional[str] = None
    catalog: Optional[str] = None
    config_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_path: Optional[Path] = None) -> "ExtractorConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")
        config = cls(
            bulk=BulkConfig.from_dict(data.get("bulk")),
            logging=dict(data.get("logging") or {}),
            connection=data.get("connection"),
            query_api=data.get("query_api"),
            catalog=data.get("catalog"),
            config_path=config_path,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate cross-section settings."""
        log_format = self.get_log_format()
        if log_format not in LOG_FORMATS:
            raise ConfigurationError(
                f"logging.format must be one of {LOG_FORMATS}, got {log_format!r}"
            )
        for name in ("connection", "query_api", "catalog"):
            value = getattr(self, name)
            if value is not None and ":" not in str(value):
                raise ConfigurationError(
                    f"{name} must be an import path of the form 'module:factory', got {value!r}"
                )

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with date interpolation, or None when file logging is off."""
        log_output = self.logging.get("output")
        if not log_output:
            return None
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output).expanduser()

    def get_log_level(self) -> str:
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        return self.logging.get("console", True)

    def __repr__(self) -> str:
        return f"ExtractorConfig(path={self.config_path}, bulk={self.bulk})"


def load_config(config_path: Optional[Path] = None) -> ExtractorConfig:
    """
    Load bulkextract configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $BULKEXTRACT_HOME/config.yaml

    Returns:
        ExtractorConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigurationError: If config is invalid
    """
    if config_path is None:
        config_path = get_bulkextract_home() / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"bulkextract config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax: {e}") from e

    if not data:
        raise ConfigurationError("Configuration file is empty")

    return ExtractorConfig.from_dict(data, config_path=config_path)


def import_factory(path: str) -> Callable[..., Any]:
    """
    Resolve a 'module:attribute' import path to a callable.

    Raises:
        ConfigurationError: If the module or attribute cannot be loaded
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Invalid factory path: {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import module {module_name!r}: {e}") from e
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(f"{path!r} is not a callable factory")
    return factory
