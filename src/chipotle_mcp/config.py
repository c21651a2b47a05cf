import json
import os
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/99.0.4844.0 Safari/537.36"
)


class Account(BaseModel):
    email: str
    password: str
    card_last_four: str = ""


class BrowserSettings(BaseModel):
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    viewport_width: int = 1167
    viewport_height: int = 821


class ApiSettings(BaseModel):
    base_url: str = "https://services.chipotle.com"
    site_url: str = "https://chipotle.com/"
    login_url: str = "https://services.chipotle.com/auth/v2/customer/login"
    subscription_key: str = "b4d9f36380184a3788857063bce25d6a"
    # No separator between "online" and the order id; other order endpoints use one.
    submit_path: str = "/order/v2/online{order_id}/submit"
    request_timeout: float = 30.0


class Timeouts(BaseModel):
    two_factor_ms: int = 5000
    login_response_ms: int = 10000
    ui_ms: int = 30000
    max_login_attempts: int = 5


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"


class ChipotleConfig(BaseModel):
    account: Account
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    timeouts: Timeouts = Field(default_factory=Timeouts)
    server: ServerConfig = Field(default_factory=ServerConfig)


def load_config(path: Optional[str] = None) -> ChipotleConfig:
    config_path = path or os.environ.get("CONFIG_PATH", "/config/config.json")
    if not os.path.exists(config_path):
        raise FileNotFoundError(
            f"Config file not found at {config_path}. "
            "Copy config.json.example to the config path and fill in your details."
        )
    with open(config_path) as f:
        data = json.load(f)
    return ChipotleConfig(**data)
