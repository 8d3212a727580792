"""Tests for monitor.py wiring and configuration loading"""

import pytest

from config import Config, load_config
from monitor import feed_factory
from sources.tibber import TibberFeed

ENV_VARS = (
    "TIBBER_TOKEN", "TIBBER_HOME_ID", "TIBBER_QUERY_URL", "TIBBER_TIMEOUT",
    "INFLUXDB_IP", "INFLUXDB_PORT", "INFLUXDB_TOKEN", "INFLUXDB_ORG", "INFLUXDB_BUCKET",
    "API_PORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    """Test the load_config() startup function"""

    def test_load_config_defaults(self, monkeypatch):
        """Only the Tibber token is required"""
        monkeypatch.setenv("TIBBER_TOKEN", "test_token_123")

        config = load_config()

        assert config.tibber_token == "test_token_123"
        assert config.tibber_home_id is None
        assert config.tibber_query_url == "https://api.tibber.com/v1-beta/gql"
        assert config.influxdb_url == "http://localhost:8086"
        assert config.influxdb_org == "Home"
        assert config.influxdb_bucket == "Tibber"
        assert config.api_port == 3000

    def test_load_config_from_environment(self, monkeypatch):
        monkeypatch.setenv("TIBBER_TOKEN", "tok")
        monkeypatch.setenv("TIBBER_HOME_ID", "home-1")
        monkeypatch.setenv("TIBBER_TIMEOUT", "2.5")
        monkeypatch.setenv("INFLUXDB_IP", "10.0.0.5")
        monkeypatch.setenv("INFLUXDB_PORT", "9999")
        monkeypatch.setenv("INFLUXDB_TOKEN", "influx-secret")
        monkeypatch.setenv("INFLUXDB_BUCKET", "Power")
        monkeypatch.setenv("API_PORT", "8080")

        config = load_config()

        assert config.tibber_home_id == "home-1"
        assert config.tibber_timeout == 2.5
        assert config.influxdb_url == "http://10.0.0.5:9999"
        assert config.influxdb_token == "influx-secret"
        assert config.influxdb_bucket == "Power"
        assert config.api_port == 8080

    def test_load_config_missing_token_exits(self):
        """Test startup fails when TIBBER_TOKEN is missing"""
        with pytest.raises(SystemExit) as exc_info:
            load_config()

        assert exc_info.value.code == 1

    def test_load_config_bad_port_exits(self, monkeypatch):
        monkeypatch.setenv("TIBBER_TOKEN", "tok")
        monkeypatch.setenv("API_PORT", "http")

        with pytest.raises(SystemExit) as exc_info:
            load_config()

        assert exc_info.value.code == 1

    def test_config_is_immutable(self):
        config = Config(tibber_token="tok")

        with pytest.raises(AttributeError):
            config.api_port = 1


def test_feed_factory_builds_fresh_feeds():
    """Every connection attempt gets its own TibberFeed"""
    config = Config(tibber_token="tok", tibber_home_id="home-1", tibber_timeout=3.0)
    make_feed = feed_factory(config)

    first, second = make_feed(), make_feed()

    assert isinstance(first, TibberFeed)
    assert first is not second
    assert first.token == "tok"
    assert first.home_id == "home-1"
    assert first.timeout == 3.0
