"""Tests for forevervm_mcp/config.py — option resolution."""

from __future__ import annotations

import json

import pytest

from forevervm_mcp.config import (
    DEFAULT_FOREVERVM_SERVER,
    ConfigError,
    ForeverVMOptions,
    load_options,
)


@pytest.fixture
def missing(tmp_path):
    return tmp_path / "nope" / "config.json"


def _write(tmp_path, content):
    path = tmp_path / "config.json"
    path.write_text(content if isinstance(content, str) else json.dumps(content))
    return path


class TestFromEnvironment:
    def test_token_with_default_url(self, missing):
        opts = load_options({"FOREVERVM_TOKEN": "abc"}, missing)
        assert opts == ForeverVMOptions(token="abc", base_url=DEFAULT_FOREVERVM_SERVER)

    def test_custom_url_trailing_slash_stripped(self, missing):
        opts = load_options(
            {"FOREVERVM_TOKEN": "abc", "FOREVERVM_BASE_URL": "http://localhost:8080/"},
            missing,
        )
        assert opts.base_url == "http://localhost:8080"

    def test_env_wins_over_file(self, tmp_path):
        path = _write(tmp_path, {"token": "from-file"})
        assert load_options({"FOREVERVM_TOKEN": "from-env"}, path).token == "from-env"

    def test_exec_timeout(self, missing):
        opts = load_options({"FOREVERVM_TOKEN": "abc", "FOREVERVM_EXEC_TIMEOUT": "90"}, missing)
        assert opts.exec_timeout == 90.0

    def test_blank_timeout_means_none(self, missing):
        opts = load_options({"FOREVERVM_TOKEN": "abc", "FOREVERVM_EXEC_TIMEOUT": " "}, missing)
        assert opts.exec_timeout is None

    @pytest.mark.parametrize("raw", ["soon", "0", "-5"])
    def test_bad_timeout(self, missing, raw):
        with pytest.raises(ConfigError, match="FOREVERVM_EXEC_TIMEOUT"):
            load_options({"FOREVERVM_TOKEN": "abc", "FOREVERVM_EXEC_TIMEOUT": raw}, missing)


class TestFromFile:
    def test_reads_token_and_server_url(self, tmp_path):
        path = _write(tmp_path, {"token": "t1", "server_url": "https://fvm.example/"})
        opts = load_options({}, path)
        assert opts.token == "t1"
        assert opts.base_url == "https://fvm.example"

    def test_default_server_url(self, tmp_path):
        path = _write(tmp_path, {"token": "t1"})
        assert load_options({}, path).base_url == DEFAULT_FOREVERVM_SERVER

    def test_missing_file(self, missing):
        with pytest.raises(ConfigError, match="not found"):
            load_options({}, missing)

    def test_missing_token(self, tmp_path):
        path = _write(tmp_path, {"server_url": "https://fvm.example"})
        with pytest.raises(ConfigError, match="does not contain a token"):
            load_options({}, path)

    def test_invalid_json(self, tmp_path):
        path = _write(tmp_path, "{not json")
        with pytest.raises(ConfigError, match="Failed to read"):
            load_options({}, path)


def test_repr_hides_token():
    assert "secret" not in repr(ForeverVMOptions(token="secret"))
