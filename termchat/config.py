import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class LLMConfig(BaseModel):
    local_base_url: str = "http://localhost:8002"
    local_endpoint: str = "/v1/chat/completions"
    minitool_base_url: str = "https://minitoolai.com"
    turnstile_solver_url: str = "https://api.nekolabs.web.id/tls/bypass/cf-turnstile"
    turnstile_site_key: str = "0x4AAAAAABjI2cBIeVpBYEFi"
    request_timeout: float = 120.0
    max_tokens: int = 4096
    default_temperature: float = 0.7


class ChatConfig(BaseModel):
    default_model: str = "MiniMax-M2"
    assistant_name: str = "TermChat"
    prompt_timezone: str = "Asia/Jakarta"
    history_limit: int = 20


class StorageConfig(BaseModel):
    data_dir: str = ""  # defaults to <home>/data
    retention_days: int = 30


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3001
    environment: str = "development"
    log_level: str = "INFO"
    allowed_origins: list[str] = ["http://localhost:3000"]
    rate_limit: int = 100           # requests per rate_window
    rate_window: int = 15 * 60
    chat_rate_limit: int = 20       # chat requests per chat_rate_window
    chat_rate_window: int = 60


class AppConfig(BaseModel):
    llm: LLMConfig = LLMConfig()
    chat: ChatConfig = ChatConfig()
    storage: StorageConfig = StorageConfig()
    server: ServerConfig = ServerConfig()

    @property
    def data_dir(self) -> Path:
        if self.storage.data_dir:
            return Path(self.storage.data_dir).expanduser()
        return _config_dir / "data"

    @property
    def is_production(self) -> bool:
        return self.server.environment == "production"


_config_dir = Path(os.environ.get("TERMCHAT_HOME", Path.home() / ".termchat"))
_config_file = _config_dir / "config.json"

# env var -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "AI_BASE_URL": ("llm", "local_base_url"),
    "AI_API_ENDPOINT": ("llm", "local_endpoint"),
    "MINITOOL_BASE_URL": ("llm", "minitool_base_url"),
    "AI_TIMEOUT": ("llm", "request_timeout"),
    "MAX_TOKENS": ("llm", "max_tokens"),
    "DEFAULT_TEMPERATURE": ("llm", "default_temperature"),
    "DEFAULT_MODEL": ("chat", "default_model"),
    "AI_NAME": ("chat", "assistant_name"),
    "PROMPT_TIMEZONE": ("chat", "prompt_timezone"),
    "TERMCHAT_DATA_DIR": ("storage", "data_dir"),
    "CONVERSATION_RETENTION_DAYS": ("storage", "retention_days"),
    "HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "TERMCHAT_ENV": ("server", "environment"),
    "LOG_LEVEL": ("server", "log_level"),
    "ALLOWED_ORIGINS": ("server", "allowed_origins"),
}


def _apply_env_overrides(data: dict, environ=None) -> dict:
    environ = os.environ if environ is None else environ
    for var, (section, field) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        if field == "allowed_origins":
            value = [o.strip() for o in value.split(",") if o.strip()]
        data.setdefault(section, {})[field] = value
    return data


def load_config(environ=None) -> AppConfig:
    """Read config.json (when present) and layer environment overrides on top."""
    data: dict = {}
    if _config_file.exists():
        try:
            data = json.loads(_config_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to read %s, using defaults", _config_file)
    return AppConfig(**_apply_env_overrides(data, environ))


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


_current_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    global _current_config
    if _current_config is None:
        _current_config = load_config()
    return _current_config
