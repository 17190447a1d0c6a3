"""Configuration loading with pydantic-settings.

Supports loading configuration from multiple sources with precedence:
1. Direct kwargs (highest priority)
2. Environment variables (CODEINDEX__SECTION__KEY)
3. Workspace config (<workspace>/.codeindex/config.yaml)
4. Global config (~/.config/codeindex/config.yaml)
5. Built-in defaults (lowest priority)
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

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
from codeindex.core.errors import ConfigurationError

GLOBAL_CONFIG_PATH = Path("~/.config/codeindex/config.yaml").expanduser()
WORKSPACE_CONFIG_DIR = ".codeindex"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError.parse_error(str(path), str(e)) from e
    if not isinstance(data, dict):
        raise ConfigurationError.parse_error(str(path), "top level must be a mapping")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class _YamlSource(PydanticBaseSettingsSource):
    """Settings source that reads from pre-loaded YAML config."""

    def __init__(self, settings_cls: type[BaseSettings], yaml_config: dict[str, Any]) -> None:
        super().__init__(settings_cls)
        self._yaml_config = yaml_config

    def get_field_value(
        self,
        field: Any,  # noqa: ARG002
        field_name: str,
    ) -> tuple[Any, str, bool]:
        val = self._yaml_config.get(field_name)
        return val, field_name, val is not None

    def __call__(self) -> dict[str, Any]:
        return self._yaml_config


def _make_settings_class(yaml_config: dict[str, Any]) -> type[BaseSettings]:
    """Create a Settings class with instance-based YAML source (thread-safe)."""

    class CodeIndexSettings(BaseSettings):
        """Root config. Env vars: CODEINDEX__LOGGING__LEVEL, CODEINDEX__INDEX__CLOUD_ENABLED, etc."""

        model_config = SettingsConfigDict(
            env_prefix="CODEINDEX__",
            env_nested_delimiter="__",
            case_sensitive=False,
        )

        logging: LoggingConfig = LoggingConfig()
        storage: StorageConfig = StorageConfig()
        index: IndexConfig = IndexConfig()
        indexer: IndexerConfig = IndexerConfig()
        embedding: EmbeddingConfig = EmbeddingConfig()
        cloud: CloudConfig = CloudConfig()
        search: SearchConfig = SearchConfig()
        timeouts: TimeoutsConfig = TimeoutsConfig()

        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            # Precedence (first wins): init kwargs > env vars > yaml files
            return (init_settings, env_settings, _YamlSource(settings_cls, yaml_config))

    return CodeIndexSettings


CodeIndexSettings = _make_settings_class({})


def load_config(workspace_root: Path | None = None, **kwargs: Any) -> CodeIndexConfig:
    """Load config: defaults < global yaml < workspace yaml < env vars < kwargs.

    Args:
        workspace_root: Workspace to load .codeindex/config.yaml from.
                        Defaults to current working directory.
        **kwargs: Override values (highest precedence).

    Returns:
        Fully resolved configuration object.

    Raises:
        ConfigurationError: On invalid YAML syntax or validation errors.
    """
    workspace_root = workspace_root or Path.cwd()

    yaml_config = _load_yaml(GLOBAL_CONFIG_PATH)
    workspace_config = _load_yaml(workspace_root / WORKSPACE_CONFIG_DIR / "config.yaml")
    if workspace_config:
        yaml_config = _deep_merge(yaml_config, workspace_config)

    settings_cls = _make_settings_class(yaml_config)
    try:
        return settings_cls(**kwargs)  # type: ignore[return-value]
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(loc) for loc in err["loc"])
        raise ConfigurationError.invalid_value(field, err.get("input"), err["msg"]) from e
