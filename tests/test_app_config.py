import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from practice_coach.app_config import AppConfig, RuntimeEnv, load_json_config, parse_app_config, resolve_runtime_env
from practice_coach.startup_checks import run_startup_checks


class ParseAppConfigTests(unittest.TestCase):
    def test_empty_config_uses_defaults(self) -> None:
        self.assertEqual(AppConfig(), parse_app_config({}))

    def test_reads_pascal_case_keys(self) -> None:
        app = parse_app_config(
            {
                "Port": "9000",
                "DefaultModel": " google:gemini-2.5-flash ",
                "MaxRetries": 4,
                "IdleTimeoutSeconds": 60,
                "QuotaWarningRatio": 0.1,
                "ObserverSendTimeoutSeconds": 0.5,
                "LogConsumers": [{"type": "console"}],
            }
        )
        self.assertEqual(9000, app.port)
        self.assertEqual("google:gemini-2.5-flash", app.default_model)
        self.assertEqual(4, app.max_retries)
        self.assertEqual(60.0, app.idle_timeout_seconds)
        self.assertEqual(0.1, app.quota_warning_ratio)
        self.assertEqual(0.5, app.observer_send_timeout_seconds)
        self.assertEqual([{"type": "console"}], app.log_consumers)

    def test_load_json_config_missing_file_is_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual({}, load_json_config(Path(tmp) / "config.json"))

    def test_load_json_config_reads_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text(json.dumps({"Port": 1234}))
            self.assertEqual({"Port": 1234}, load_json_config(path))


class RuntimeEnvTests(unittest.TestCase):
    def test_blank_keys_are_treated_as_missing(self) -> None:
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-1", "OPENAI_API_KEY": "  "}, clear=True):
            env = resolve_runtime_env()
        self.assertEqual({"anthropic": "sk-1"}, env.api_keys)
        self.assertEqual(["openai", "google"], env.missing_providers())

    def test_env_var_names(self) -> None:
        self.assertEqual("GOOGLE_AI_API_KEY", RuntimeEnv.env_var_for("google"))
        self.assertEqual("MISTRAL_API_KEY", RuntimeEnv.env_var_for("mistral"))


class StartupCheckTests(unittest.TestCase):
    def test_defaults_with_anthropic_key_are_clean(self) -> None:
        report = run_startup_checks(AppConfig(), RuntimeEnv({"anthropic": "sk"}))
        self.assertTrue(report.ok)
        self.assertEqual([], report.warnings)

    def test_invalid_values_are_errors(self) -> None:
        app = AppConfig(port=0, max_tokens=0, quota_warning_ratio=1.5, idle_timeout_seconds=0)
        report = run_startup_checks(app, RuntimeEnv({"anthropic": "sk"}))
        self.assertFalse(report.ok)
        self.assertEqual(4, len(report.errors))

    def test_unknown_provider_is_an_error(self) -> None:
        report = run_startup_checks(AppConfig(default_model="mistral:large"), RuntimeEnv({"anthropic": "sk"}))
        self.assertEqual(1, len(report.errors))
        self.assertIn("mistral", report.errors[0])

    def test_missing_key_is_a_warning(self) -> None:
        report = run_startup_checks(AppConfig(fallback_model="openai:gpt-4o"), RuntimeEnv({"anthropic": "sk"}))
        self.assertTrue(report.ok)
        self.assertEqual(1, len(report.warnings))
        self.assertIn("OPENAI_API_KEY", report.warnings[0])

    def test_no_keys_warns_for_every_model(self) -> None:
        report = run_startup_checks(AppConfig(), RuntimeEnv())
        self.assertTrue(report.ok)
        self.assertEqual(3, len(report.warnings))
