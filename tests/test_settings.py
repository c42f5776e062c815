from pathlib import Path

import pytest

from settings import ConfigError, load_settings


def test_defaults(tmp_path):
    settings = load_settings({}, cwd=tmp_path)
    assert settings.host == "0.0.0.0"
    assert settings.port == 8080
    assert settings.templates_dir == (tmp_path / "templates").resolve()
    assert settings.assets_dir == (tmp_path / "assets").resolve()
    assert settings.live_reload is True
    assert settings.debounce == pytest.approx(0.1)
    assert settings.listener_queue_size == 16
    assert settings.log_level == "INFO"


def test_overrides(tmp_path):
    env = {
        "HOST": "127.0.0.1",
        "PORT": "9000",
        "TEMPLATES_DIR": "/srv/site/templates",
        "ASSETS_DIR": "static",
        "LIVE_RELOAD": "off",
        "RELOAD_DEBOUNCE_MS": "250",
        "LISTENER_QUEUE_SIZE": "4",
        "LOG_LEVEL": "debug",
    }
    settings = load_settings(env, cwd=tmp_path)
    assert settings.host == "127.0.0.1"
    assert settings.port == 9000
    assert settings.templates_dir == Path("/srv/site/templates").resolve()
    assert settings.assets_dir == (tmp_path / "static").resolve()
    assert settings.live_reload is False
    assert settings.debounce == pytest.approx(0.25)
    assert settings.listener_queue_size == 4
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    "env",
    [
        {"PORT": "http"},
        {"PORT": "0"},
        {"PORT": "70000"},
        {"RELOAD_DEBOUNCE_MS": "-1"},
        {"LISTENER_QUEUE_SIZE": "0"},
        {"LIVE_RELOAD": "maybe"},
        {"LOG_LEVEL": "chatty"},
        {"HOST": "  "},
    ],
)
def test_invalid_values(env, tmp_path):
    with pytest.raises(ConfigError):
        load_settings(env, cwd=tmp_path)
