from __future__ import annotations

from dataclasses import dataclass, field

from practice_coach.app_config import AppConfig, RuntimeEnv
from practice_coach.provider import SUPPORTED_PROVIDERS, parse_model


@dataclass
class StartupReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _check_model(report: StartupReport, label: str, model_string: str, env: RuntimeEnv) -> None:
    provider_name, model = parse_model(model_string)
    if not model:
        report.errors.append(f"{label} {model_string!r} has no model name")
        return
    if provider_name not in SUPPORTED_PROVIDERS:
        report.errors.append(f"{label} {model_string!r} uses unknown provider {provider_name!r}")
        return
    if not env.api_keys.get(provider_name):
        report.warnings.append(
            f"{label} {model_string!r} needs {RuntimeEnv.env_var_for(provider_name)}, which is not set"
        )


def run_startup_checks(app: AppConfig, env: RuntimeEnv) -> StartupReport:
    """Validate configuration before the server starts accepting connections.

    Errors describe a configuration the server cannot run with. Warnings
    describe one it can run with, but where some conversations will fail
    (typically a provider whose API key is missing).
    """
    report = StartupReport()

    if not 0 < app.port < 65536:
        report.errors.append(f"Port {app.port} is out of range")
    if app.max_tokens <= 0:
        report.errors.append("MaxTokens must be positive")
    if app.max_retries < 0:
        report.errors.append("MaxRetries must not be negative")
    if app.retry_delay_seconds < 0:
        report.errors.append("RetryDelaySeconds must not be negative")
    if app.idle_timeout_seconds <= 0:
        report.errors.append("IdleTimeoutSeconds must be positive")
    if app.max_message_chars <= 0 or app.max_aside_chars <= 0:
        report.errors.append("MaxMessageChars and MaxAsideChars must be positive")
    if not 0 < app.quota_warning_ratio < 1:
        report.errors.append("QuotaWarningRatio must be between 0 and 1")
    if app.observer_send_timeout_seconds <= 0:
        report.errors.append("ObserverSendTimeoutSeconds must be positive")
    if app.aside_timeout_seconds <= 0:
        report.errors.append("AsideTimeoutSeconds must be positive")
    if app.aside_cancel_grace_seconds > app.aside_timeout_seconds:
        report.warnings.append("AsideCancelGraceSeconds exceeds AsideTimeoutSeconds; the deadline will win")

    _check_model(report, "DefaultModel", app.default_model, env)
    _check_model(report, "FallbackModel", app.fallback_model, env)

    if not env.api_keys:
        report.warnings.append("No provider API keys are set; every stream will fail")

    return report
