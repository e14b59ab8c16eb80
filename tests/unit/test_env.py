"""Tests for environment variable expansion."""

import os

import pytest

from historian.lib.env import expand_env_vars, expand_options, load_env_file


class TestExpandEnvVars:
    """Tests for expand_env_vars."""

    def test_braced_and_bare(self, monkeypatch):
        monkeypatch.setenv("WAREHOUSE_DIR", "/data")
        assert expand_env_vars("${WAREHOUSE_DIR}/tags.duckdb") == "/data/tags.duckdb"
        assert expand_env_vars("$WAREHOUSE_DIR/tags.duckdb") == "/data/tags.duckdb"

    def test_unset_left_alone(self, monkeypatch):
        monkeypatch.delenv("HISTORIAN_UNSET", raising=False)
        assert expand_env_vars("${HISTORIAN_UNSET}") == "${HISTORIAN_UNSET}"

    def test_unset_strict(self, monkeypatch):
        monkeypatch.delenv("HISTORIAN_UNSET", raising=False)
        with pytest.raises(KeyError, match="HISTORIAN_UNSET"):
            expand_env_vars("${HISTORIAN_UNSET}", strict=True)

    def test_expand_options_recursive(self, monkeypatch):
        monkeypatch.setenv("REGION", "EU")
        options = {
            "engine": {"target": "tags_${REGION}", "workers": 2},
            "tables": ["h_${REGION}", 3],
        }

        assert expand_options(options) == {
            "engine": {"target": "tags_EU", "workers": 2},
            "tables": ["h_EU", 3],
        }


class TestLoadEnvFile:
    """Tests for load_env_file."""

    def test_loads_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("HISTORIAN_FROM_FILE=yes\n")

        try:
            assert load_env_file(env_file) is True
            assert os.environ["HISTORIAN_FROM_FILE"] == "yes"
        finally:
            os.environ.pop("HISTORIAN_FROM_FILE", None)

    def test_does_not_override_by_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HISTORIAN_KEEP", "original")
        env_file = tmp_path / ".env"
        env_file.write_text("HISTORIAN_KEEP=replaced\n")

        load_env_file(env_file)
        assert os.environ["HISTORIAN_KEEP"] == "original"

    def test_missing_file(self, tmp_path):
        assert load_env_file(tmp_path / "absent.env") is False
