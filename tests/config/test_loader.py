"""Tests for config/loader.py module.

Covers:
- _load_yaml() function
- _deep_merge() function
- load_config() precedence: defaults < global yaml < workspace yaml < env < kwargs
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from unittest.mock import patch

import pytest

from codeindex.config.loader import WORKSPACE_CONFIG_DIR, _deep_merge, _load_yaml, load_config
from codeindex.core.errors import ConfigurationError, ErrorCode


@pytest.fixture(autouse=True)
def isolated_global_config(tmp_path: Path) -> Generator[Path, None, None]:
    """Point the global config at a temp file so the host's config never leaks in."""
    path = tmp_path / "global" / "config.yaml"
    with patch("codeindex.config.loader.GLOBAL_CONFIG_PATH", path):
        yield path


def _write_workspace_config(root: Path, content: str) -> None:
    config_dir = root / WORKSPACE_CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "config.yaml").write_text(content)


class TestLoadYaml:
    """Tests for _load_yaml function."""

    def test_returns_empty_dict_for_missing_file(self, tmp_path: Path) -> None:
        assert _load_yaml(tmp_path / "nonexistent.yaml") == {}

    def test_loads_valid_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("index:\n  chunk_size_lines: 50\n")

        assert _load_yaml(yaml_file) == {"index": {"chunk_size_lines": 50}}

    def test_returns_empty_for_empty_file(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "empty.yaml"
        yaml_file.write_text("")

        assert _load_yaml(yaml_file) == {}

    def test_raises_parse_error_for_invalid_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "bad.yaml"
        yaml_file.write_text("index: [unclosed\n")

        with pytest.raises(ConfigurationError) as exc_info:
            _load_yaml(yaml_file)
        assert exc_info.value.code == ErrorCode.CONFIG_PARSE_ERROR

    def test_raises_parse_error_for_non_mapping(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "list.yaml"
        yaml_file.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            _load_yaml(yaml_file)


class TestDeepMerge:
    def test_nested_dicts_merge_and_override_wins(self) -> None:
        base = {"index": {"chunk_size_lines": 200, "max_files": 10}, "logging": {"level": "INFO"}}
        override = {"index": {"chunk_size_lines": 50}}

        result = _deep_merge(base, override)

        assert result == {
            "index": {"chunk_size_lines": 50, "max_files": 10},
            "logging": {"level": "INFO"},
        }
        assert base["index"]["chunk_size_lines"] == 200


class TestLoadConfig:
    def test_given_no_files_when_load_then_defaults(self, tmp_path: Path) -> None:
        # Given / When
        config = load_config(tmp_path)

        # Then
        assert config.index.local_enabled is True
        assert config.index.cloud_enabled is False
        assert config.index.chunk_size_lines == 200
        assert config.indexer.batch_size == 20
        assert config.timeouts.status_sec == 5.0
        assert config.cloud.voyage_model == "voyage-code-3"

    def test_given_workspace_yaml_when_load_then_overrides_global(
        self, tmp_path: Path, isolated_global_config: Path
    ) -> None:
        # Given
        isolated_global_config.parent.mkdir(parents=True)
        isolated_global_config.write_text("index:\n  chunk_size_lines: 100\n  max_files: 5\n")
        workspace = tmp_path / "ws"
        _write_workspace_config(workspace, "index:\n  chunk_size_lines: 40\n")

        # When
        config = load_config(workspace)

        # Then
        assert config.index.chunk_size_lines == 40
        assert config.index.max_files == 5

    def test_given_env_var_when_load_then_overrides_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        # Given
        _write_workspace_config(tmp_path, "indexer:\n  max_workers: 2\n")
        monkeypatch.setenv("CODEINDEX__INDEXER__MAX_WORKERS", "8")

        # When
        config = load_config(tmp_path)

        # Then
        assert config.indexer.max_workers == 8

    def test_given_kwargs_when_load_then_highest_precedence(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CODEINDEX__INDEX__CLOUD_ENABLED", "false")

        config = load_config(tmp_path, index={"cloud_enabled": True})

        assert config.index.cloud_enabled is True

    def test_given_secret_env_var_when_load_then_masked(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CODEINDEX__CLOUD__VOYAGE_API_KEY", "sk-test")

        config = load_config(tmp_path)

        assert config.cloud.voyage_api_key is not None
        assert config.cloud.voyage_api_key.get_secret_value() == "sk-test"
        assert "sk-test" not in repr(config.cloud)

    def test_given_invalid_value_when_load_then_configuration_error(self, tmp_path: Path) -> None:
        # Given
        _write_workspace_config(tmp_path, "index:\n  chunk_size_lines: 0\n")

        # When / Then
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(tmp_path)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_VALUE
        assert "chunk_size_lines" in exc_info.value.details["field"]
