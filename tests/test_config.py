"""
Tests for the Configuration module.

Run with: pytest tests/test_config.py -v
"""

import os
import shutil
import sys
import tempfile

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faceid import config as config_module
from faceid.config import (
    CONFIG_ENV_VAR,
    get_config,
    get_lockout_config,
    get_project_root,
    get_section,
    get_server_config,
    load_config,
)


CUSTOM_CONFIG = """
lockout:
  max_failures: 3
  window_minutes: 10
api:
  base_url: "http://0.0.0.0:9000"
"""


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = tempfile.mkdtemp()
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def custom_config(temp_dir, monkeypatch):
    """Point FACEID_CONFIG at a small config file and reset the singleton."""
    path = os.path.join(temp_dir, "config.yaml")
    with open(path, "w", encoding="utf-8") as f:
        f.write(CUSTOM_CONFIG)

    monkeypatch.setenv(CONFIG_ENV_VAR, path)
    monkeypatch.setattr(config_module, "_config_instance", None)
    return path


class TestProjectConfig:
    """Tests against the repository's own config.yaml."""

    def test_project_root_has_config(self):
        assert (get_project_root() / "config.yaml").exists()

    def test_default_sections(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        config = load_config()

        for section in ("camera", "capture", "matching", "lockout", "storage", "api"):
            assert section in config

        assert config["lockout"]["max_failures"] == 5
        assert config["lockout"]["window_minutes"] == 30
        assert config["lockout"]["ledger_capacity"] == 20
        assert config["matching"]["distance_threshold"] == 15.0
        assert config["capture"]["enrollment_rounds"] == 3
        assert config["camera"]["acquire_timeout_ms"] == 8000


class TestEnvironmentOverride:
    """Tests for FACEID_CONFIG."""

    def test_env_var_path(self, custom_config):
        assert get_lockout_config()["max_failures"] == 3

    def test_singleton_is_cached(self, custom_config):
        assert get_config() is get_config()

    def test_reload(self, custom_config):
        first = get_config()
        assert get_config(reload=True) is not first

    def test_missing_section(self, custom_config):
        with pytest.raises(KeyError):
            get_section("camera")

    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_config(os.path.join(temp_dir, "nope.yaml"))

    def test_server_config(self, custom_config):
        assert get_server_config() == {"host": "0.0.0.0", "port": 9000}

    def test_server_config_localhost(self, temp_dir, monkeypatch):
        path = os.path.join(temp_dir, "config.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write('api:\n  base_url: "http://localhost:8010/"\n')
        monkeypatch.setenv(CONFIG_ENV_VAR, path)
        monkeypatch.setattr(config_module, "_config_instance", None)

        assert get_server_config() == {"host": "127.0.0.1", "port": 8010}
