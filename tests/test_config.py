import json

import pytest

from chipotle_mcp.config import DEFAULT_USER_AGENT, load_config


def test_load_config_fills_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"account": {"email": "me@example.com", "password": "pw"}}))

    config = load_config(str(path))

    assert config.account.email == "me@example.com"
    assert config.browser.user_agent == DEFAULT_USER_AGENT
    assert (config.browser.viewport_width, config.browser.viewport_height) == (1167, 821)
    assert config.api.base_url == "https://services.chipotle.com"
    assert config.timeouts.max_login_attempts == 5
    assert config.timeouts.two_factor_ms < config.timeouts.login_response_ms


def test_load_config_from_env(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "account": {"email": "me@example.com", "password": "pw", "card_last_four": "4242"},
                "browser": {"headless": False},
                "timeouts": {"max_login_attempts": 2},
            }
        )
    )
    monkeypatch.setenv("CONFIG_PATH", str(path))

    config = load_config()

    assert config.account.card_last_four == "4242"
    assert config.browser.headless is False
    assert config.timeouts.max_login_attempts == 2


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError, match="config.json.example"):
        load_config(str(tmp_path / "nope.json"))
