"""
Configuration loader for the WhatsApp auto-responder.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class AIConfig:
    provider: str = "anthropic"                        # "anthropic" | "openai"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 300
    api_key: str = ""
    system_prompt: str = (
        "You write short, friendly WhatsApp replies on behalf of a business. "
        "Reply with the message text only."
    )


@dataclass
class WhatsAppConfig:
    api_base: str = "https://graph.facebook.com/v21.0"
    verify_token: str = ""
    app_secret: str = ""                               # empty disables signature checks
    template_language: str = "en"
    media_base_url: str = ""                           # prefix for relative media links
    request_timeout: float = 15.0
    send_attempts: int = 1                             # 1 = no transport retry


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./autoresponder.db"          # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class AutomationConfig:
    welcome_window_minutes: int = 5
    chatbot_timeout_seconds: int = 720
    max_flow_steps: int = 50
    default_country_code: str = "234"
    timezone: Optional[str] = None                     # None = process local time


@dataclass
class Settings:
    app_name: str = "wa-autoresponder"
    debug: bool = False
    ai: AIConfig = field(default_factory=AIConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _unresolved(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("${")


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a YAML section, keeping defaults for
    unknown keys and for ${VARS} that the environment did not provide."""
    defaults = cls()
    kwargs = {}
    for name in defaults.__dataclass_fields__:
        if name in raw and raw[name] is not None and not _unresolved(raw[name]):
            kwargs[name] = raw[name]
    return cls(**kwargs)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "AUTORESPONDER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = bool(raw.get("debug", settings.debug))

        if "ai" in raw:
            settings.ai = _section(AIConfig, raw["ai"] or {})
        if "whatsapp" in raw:
            settings.whatsapp = _section(WhatsAppConfig, raw["whatsapp"] or {})
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"] or {})
        if "automation" in raw:
            settings.automation = _section(AutomationConfig, raw["automation"] or {})
            settings.automation.default_country_code = str(
                settings.automation.default_country_code
            ).lstrip("+")

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
