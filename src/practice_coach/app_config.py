from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

_PROVIDER_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_AI_API_KEY",
}


@dataclass
class RuntimeEnv:
    api_keys: dict[str, str] = field(default_factory=dict)

    def missing_providers(self) -> list[str]:
        return [name for name in _PROVIDER_ENV_VARS if not self.api_keys.get(name)]

    @staticmethod
    def env_var_for(provider_name: str) -> str:
        return _PROVIDER_ENV_VARS.get(provider_name, f"{provider_name.upper()}_API_KEY")


@dataclass
class AppConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    database_path: str = ".practice_coach/coach.db"
    default_model: str = "anthropic:claude-sonnet-4-20250514"
    fallback_model: str = "anthropic:claude-sonnet-4-20250514"
    max_tokens: int = 1024
    max_retries: int = 2
    retry_delay_seconds: float = 1.0
    idle_timeout_seconds: float = 1800.0
    max_message_chars: int = 10_000
    max_aside_chars: int = 2_000
    aside_cancel_grace_seconds: float = 5.0
    aside_timeout_seconds: float = 120.0
    quota_warning_ratio: float = 0.2
    observer_send_timeout_seconds: float = 2.0
    log_level: str = "INFO"
    log_consumers: list | None = None


def load_json_config(config_path: Path | None = None) -> dict:
    config_path = config_path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def parse_app_config(config: dict) -> AppConfig:
    defaults = AppConfig()
    return AppConfig(
        host=str(config.get("Host", defaults.host)),
        port=int(config.get("Port", defaults.port)),
        database_path=str(config.get("DatabasePath", defaults.database_path)),
        default_model=str(config.get("DefaultModel", defaults.default_model)).strip(),
        fallback_model=str(config.get("FallbackModel", defaults.fallback_model)).strip(),
        max_tokens=int(config.get("MaxTokens", defaults.max_tokens)),
        max_retries=int(config.get("MaxRetries", defaults.max_retries)),
        retry_delay_seconds=float(config.get("RetryDelaySeconds", defaults.retry_delay_seconds)),
        idle_timeout_seconds=float(config.get("IdleTimeoutSeconds", defaults.idle_timeout_seconds)),
        max_message_chars=int(config.get("MaxMessageChars", defaults.max_message_chars)),
        max_aside_chars=int(config.get("MaxAsideChars", defaults.max_aside_chars)),
        aside_cancel_grace_seconds=float(config.get("AsideCancelGraceSeconds", defaults.aside_cancel_grace_seconds)),
        aside_timeout_seconds=float(config.get("AsideTimeoutSeconds", defaults.aside_timeout_seconds)),
        quota_warning_ratio=float(config.get("QuotaWarningRatio", defaults.quota_warning_ratio)),
        observer_send_timeout_seconds=float(
            config.get("ObserverSendTimeoutSeconds", defaults.observer_send_timeout_seconds)
        ),
        log_level=config.get("LogLevel", defaults.log_level),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    api_keys = {}
    for provider_name, env_var in _PROVIDER_ENV_VARS.items():
        value = os.environ.get(env_var, "").strip()
        if value:
            api_keys[provider_name] = value
    return RuntimeEnv(api_keys=api_keys)
