import asyncio
from pathlib import Path

import pytest

from config import Config, ConfigurationLoadError, default_config

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / ".example" / "config.toml"


def load(path):
    config = Config(path)
    asyncio.run(config.initialize())
    return config


def test_defaults_fill_an_empty_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("")
    config = load(path)
    assert config.values == default_config()
    assert config["server"]["websocket_port"] == 3001
    assert config["relay"]["presence_stale_seconds"] == 30
    assert config["peer"]["resend_delays"] == [0.5, 1.0, 2.0]
    assert config["client"]["segment_url"] is None


def test_example_config_loads():
    config = load(EXAMPLE_CONFIG)
    assert config["client"]["segment_url"] == "http://localhost:3002"
    assert config["broker"]["topic_prefix"] == "image-sync"


def test_partial_section_keeps_other_defaults(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[broker]\nurl = "mqtts://broker.test"\n')
    config = load(path)
    assert config["broker"]["url"] == "mqtts://broker.test"
    assert config["broker"]["qos"] == 1


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationLoadError):
        load(tmp_path / "missing.toml")


def test_invalid_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[server\nname = ")
    with pytest.raises(ConfigurationLoadError):
        load(path)


def test_schema_violation(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[server]\nwebsocket_port = 70000\n")
    with pytest.raises(ConfigurationLoadError):
        load(path)
