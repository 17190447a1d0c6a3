"""Tests for the cix command line."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import yaml
from click.testing import CliRunner

from codeindex.cli.main import cli

runner = CliRunner()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Workspace with two source files and a config pointing storage outside it."""
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "src" / "auth.py").write_text(
        "def check_password(user, password):\n    return user.password == password\n"
    )
    (root / "src" / "app.py").write_text(
        "from auth import check_password\n\ndef login(user):\n    return check_password(user, 'x')\n"
    )
    config_dir = root / ".codeindex"
    config_dir.mkdir()
    config = {
        "storage": {"root": str(tmp_path / "storage")},
        "embedding": {"model": "hash", "cache_dir": str(tmp_path / "models")},
    }
    (config_dir / "config.yaml").write_text(yaml.safe_dump(config))
    return root


def _json(output: str) -> Any:
    return json.loads(output.strip().splitlines()[-1])


class TestIndexCommand:
    def test_given_workspace_when_index_json_then_ready_counts(self, workspace: Path) -> None:
        # When
        result = runner.invoke(cli, ["index", str(workspace), "--json"])

        # Then
        assert result.exit_code == 0, result.output
        status = _json(result.stdout)
        assert status["state"] == "ready"
        assert status["total_files"] == 2
        assert status["indexed_files"] == 2

    def test_given_file_option_when_index_then_refreshes_only_those(self, workspace: Path) -> None:
        runner.invoke(cli, ["index", str(workspace)])
        (workspace / "src" / "auth.py").write_text("def check_password():\n    return True\n")

        result = runner.invoke(
            cli, ["index", str(workspace), "--file", "src/auth.py", "--json"]
        )

        assert result.exit_code == 0, result.output
        stats = _json(result.stdout)
        assert stats["indexed"] == 1

    def test_given_cloud_without_key_when_index_then_fails_cleanly(self, workspace: Path) -> None:
        result = runner.invoke(cli, ["--backend", "cloud", "index", str(workspace)])

        assert result.exit_code == 1
        assert "voyage_api_key" in result.output

    def test_given_missing_path_then_usage_error(self, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["index", str(tmp_path / "nope")])

        assert result.exit_code == 2


class TestStatusCommand:
    def test_status_before_index_is_idle(self, workspace: Path) -> None:
        result = runner.invoke(cli, ["status", str(workspace), "--json"])

        assert result.exit_code == 0, result.output
        status = _json(result.stdout)
        assert status["total_files"] == 0
        assert status["disabled"] is False

    def test_status_after_index_is_human_readable(self, workspace: Path) -> None:
        runner.invoke(cli, ["index", str(workspace)])

        result = runner.invoke(cli, ["status", str(workspace)])

        assert result.exit_code == 0, result.output
        assert "Files: 2/2" in result.output
        assert "Model: hash" in result.output

    def test_status_when_disabled(self, workspace: Path) -> None:
        config_path = workspace / ".codeindex" / "config.yaml"
        config = yaml.safe_load(config_path.read_text())
        config["index"] = {"local_enabled": False, "cloud_enabled": False}
        config_path.write_text(yaml.safe_dump(config))

        result = runner.invoke(cli, ["status", str(workspace)])

        assert result.exit_code == 0
        assert "disabled" in result.output

    def test_diagnostics_json_reports_backend_and_sample(self, workspace: Path) -> None:
        runner.invoke(cli, ["index", str(workspace)])

        result = runner.invoke(
            cli, ["diagnostics", str(workspace), "--sample-query", "check_password", "--json"]
        )

        assert result.exit_code == 0, result.output
        diag = _json(result.stdout)
        assert diag["backend"] == "local"
        assert diag["embedding_model"] == "hash"
        assert diag["sample_query_hits"] >= 1


class TestQueryCommands:
    def test_search_json_returns_ranked_results(self, workspace: Path) -> None:
        runner.invoke(cli, ["index", str(workspace)])

        result = runner.invoke(cli, ["search", "check_password", str(workspace), "--json"])

        assert result.exit_code == 0, result.output
        results = _json(result.stdout)
        assert results
        assert {r["path"] for r in results} >= {"src/auth.py", "src/app.py"}
        assert results == sorted(results, key=lambda r: -r["score"])

    def test_search_lexical_only_with_language_filter(self, workspace: Path) -> None:
        runner.invoke(cli, ["index", str(workspace)])

        result = runner.invoke(
            cli,
            ["search", "login", str(workspace), "--no-vector", "--language", "python", "--json"],
        )

        assert result.exit_code == 0, result.output
        assert [r["path"] for r in _json(result.stdout)] == ["src/app.py"]

    def test_context_prints_bundle(self, workspace: Path) -> None:
        runner.invoke(cli, ["index", str(workspace)])

        result = runner.invoke(
            cli, ["context", "login", str(workspace), "--max-snippets", "2"]
        )

        assert result.exit_code == 0, result.output
        bundle = json.loads(result.stdout)
        assert bundle["query"] == "login"
        assert bundle["index_freshness"] != "uninitialized"
        assert 0 < len(bundle["snippets"]) <= 2


class TestRebuildAndDelete:
    def test_rebuild_reports_status(self, workspace: Path) -> None:
        runner.invoke(cli, ["index", str(workspace)])

        result = runner.invoke(cli, ["rebuild", str(workspace)])

        assert result.exit_code == 0, result.output
        assert "2/2 indexed" in result.output

    def test_delete_with_yes_removes_storage(self, workspace: Path, tmp_path: Path) -> None:
        runner.invoke(cli, ["index", str(workspace)])
        storage = tmp_path / "storage"
        assert any(storage.iterdir())

        result = runner.invoke(cli, ["delete", str(workspace), "--yes"])

        assert result.exit_code == 0, result.output
        assert not any(storage.iterdir())

    def test_delete_declined_keeps_storage(
        self, workspace: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        class _Declined:
            def ask(self) -> bool:
                return False

        monkeypatch.setattr(
            "codeindex.cli.index.questionary.select", lambda *args, **kwargs: _Declined()
        )
        runner.invoke(cli, ["index", str(workspace)])

        result = runner.invoke(cli, ["delete", str(workspace)])

        assert result.exit_code == 0
        assert "Cancelled" in result.output
        assert any((tmp_path / "storage").iterdir())
