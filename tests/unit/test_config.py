"""
Unit Tests for sbclient Configuration

Tests for settings loading precedence and connection string parsing.

Author: sbclient contributors
Date: 2026-10-17
"""

import json
import pytest
from pydantic import ValidationError

from sbclient.config import (
    ConfigManager,
    EmulatorConfig,
    Settings,
    load_settings,
    parse_connection_string,
)


ENV_VARS = [
    "SBCLIENT_CONNECTION_STRING",
    "SBCLIENT_ENDPOINT",
    "SBCLIENT_API_VERSION",
    "SBCLIENT_MAX_PAGE_SIZE",
    "SBCLIENT_REQUEST_TIMEOUT",
    "SBCLIENT_EMULATOR_NAMESPACE",
    "SBCLIENT_EMULATOR_PORT",
    "SBCLIENT_LOG_LEVEL",
    "SBCLIENT_LOG_FORMAT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Make sure no SBCLIENT_* variable leaks into a test."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def yaml_config(tmp_path):
    path = tmp_path / "sbclient.yaml"
    path.write_text(
        "client:\n"
        "  endpoint: contoso.servicebus.windows.net\n"
        "  max_page_size: 50\n"
        "emulator:\n"
        "  namespace: local\n"
        "  queues:\n"
        "    - name: orders\n"
        "      requires_session: true\n"
        "  topics:\n"
        "    - name: events\n"
        "      subscriptions:\n"
        "        - name: audit\n"
        "          rules:\n"
        "            - name: errors\n"
        "              sql_filter: \"level = 'error'\"\n"
        "logging:\n"
        "  level: DEBUG\n"
    )
    return path


class TestLoadSettings:
    """Tests for loading settings from the supported sources."""

    def test_defaults(self):
        """Test settings without any source."""
        settings = load_settings()

        assert settings.client.endpoint is None
        assert settings.client.api_version == "2017-04"
        assert settings.client.max_page_size is None
        assert settings.emulator.default_page_size == 100
        assert settings.logging.level == "INFO"

    def test_yaml_file(self, yaml_config):
        """Test loading a YAML file."""
        settings = load_settings(str(yaml_config))

        assert settings.client.endpoint == "contoso.servicebus.windows.net"
        assert settings.client.max_page_size == 50
        assert settings.emulator.queues[0].requires_session is True
        rule = settings.emulator.topics[0].subscriptions[0].rules[0]
        assert rule.sql_filter == "level = 'error'"
        assert settings.logging.level == "DEBUG"

    def test_json_file(self, tmp_path):
        """Test loading a JSON file."""
        path = tmp_path / "sbclient.json"
        path.write_text(json.dumps({"client": {"request_timeout": 5}}))

        settings = load_settings(str(path))

        assert settings.client.request_timeout == 5

    def test_environment_overrides_file(self, yaml_config, monkeypatch):
        """Test that environment variables win over the file."""
        monkeypatch.setenv("SBCLIENT_MAX_PAGE_SIZE", "25")
        monkeypatch.setenv("SBCLIENT_EMULATOR_PORT", "9000")
        monkeypatch.setenv("SBCLIENT_LOG_LEVEL", "warning")

        settings = load_settings(str(yaml_config))

        assert settings.client.max_page_size == 25
        assert settings.emulator.port == 9000
        assert settings.logging.level == "WARNING"
        assert settings.emulator.namespace == "local"

    def test_connection_string_env(self, monkeypatch):
        """Test that the connection string variable sets the endpoint."""
        monkeypatch.setenv(
            "SBCLIENT_CONNECTION_STRING",
            "Endpoint=sb://fabrikam.servicebus.windows.net/;SharedAccessKeyName=Root;SharedAccessKey=k=",
        )

        assert load_settings().client.endpoint == "fabrikam.servicebus.windows.net"

    def test_cli_overrides_environment(self, monkeypatch):
        """Test that CLI overrides have the highest precedence."""
        monkeypatch.setenv("SBCLIENT_EMULATOR_PORT", "9000")

        settings = load_settings(cli_overrides={"emulator": {"port": 7000}})

        assert settings.emulator.port == 7000

    def test_invalid_page_size(self, monkeypatch):
        """Test that out-of-range page sizes are rejected."""
        monkeypatch.setenv("SBCLIENT_MAX_PAGE_SIZE", "5000")

        with pytest.raises(ValidationError):
            load_settings()

    def test_missing_file(self, tmp_path):
        """Test that a missing file is reported."""
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "missing.yaml"))

    def test_unsupported_format(self, tmp_path):
        """Test that unknown file types are rejected."""
        path = tmp_path / "sbclient.ini"
        path.write_text("[client]")

        with pytest.raises(ValueError):
            load_settings(str(path))

    def test_manager_load_uses_cli_overrides(self):
        """Test that CLI overrides win over defaults."""
        settings = ConfigManager().load(cli_overrides={"client": {"max_page_size": 7}})

        assert isinstance(settings, Settings)
        assert settings.client.max_page_size == 7

    def test_emulator_page_size_bounds(self):
        """Test emulator page size validation."""
        with pytest.raises(ValidationError):
            EmulatorConfig(default_page_size=0)


class TestConnectionString:
    """Tests for connection string parsing."""

    def test_full_connection_string(self):
        """Test all recognised parts."""
        parts = parse_connection_string(
            "Endpoint=sb://contoso.servicebus.windows.net/;"
            "SharedAccessKeyName=RootManageSharedAccessKey;"
            "SharedAccessKey=abc123=;EntityPath=orders"
        )

        assert parts == {
            "endpoint": "contoso.servicebus.windows.net",
            "shared_access_key_name": "RootManageSharedAccessKey",
            "shared_access_key": "abc123=",
            "entity_path": "orders",
        }

    def test_endpoint_with_port(self):
        """Test that a port is kept with the host."""
        assert parse_connection_string("Endpoint=sb://localhost:8000/")["endpoint"] == "localhost:8000"

    def test_keys_are_case_insensitive(self):
        """Test key matching ignores case."""
        assert parse_connection_string("endpoint=sb://ns/")["endpoint"] == "ns"

    @pytest.mark.parametrize("value", [
        "",
        "SharedAccessKeyName=Root",
        "Endpoint=",
        "Endpoint=sb://",
        "Endpoint",
    ])
    def test_invalid(self, value):
        """Test strings without a usable endpoint."""
        with pytest.raises(ValueError):
            parse_connection_string(value)
