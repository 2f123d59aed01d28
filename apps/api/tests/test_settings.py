import json
from pathlib import Path

import pytest

from brokerflow_api.security import mask_email_addresses, redact_sensitive_text
from brokerflow_api.settings import EngineSettings, load_interface_rules


def test_default_interface_rules(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "BROKERFLOW_INTERFACE_RULES_FILE",
        "BROKERFLOW_SUBMISSION_SORT_ORDERS",
        "BROKERFLOW_SUBMISSION_NAME_PATTERNS",
        "BROKERFLOW_QUESTION_SORT_ORDERS",
        "BROKERFLOW_QUESTION_NAME_PATTERNS",
    ):
        monkeypatch.delenv(name, raising=False)

    rules = load_interface_rules()

    assert rules.email_sort_orders == [12, 14]
    assert rules.email_name_patterns == ["send submission", "send follow-up"]
    assert rules.chat_sort_orders == [15]
    assert rules.chat_name_patterns == ["review flagged", "underwriter questions"]


def test_interface_rules_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BROKERFLOW_INTERFACE_RULES_FILE", raising=False)
    monkeypatch.setenv("BROKERFLOW_SUBMISSION_SORT_ORDERS", " 3, 4 ")
    monkeypatch.setenv("BROKERFLOW_SUBMISSION_NAME_PATTERNS", "Email Markets")

    rules = load_interface_rules()

    assert rules.email_sort_orders == [3, 4]
    assert rules.email_name_patterns == ["email markets"]


def test_invalid_sort_orders_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BROKERFLOW_INTERFACE_RULES_FILE", raising=False)
    monkeypatch.setenv("BROKERFLOW_SUBMISSION_SORT_ORDERS", "12,fourteen")

    with pytest.raises(ValueError, match="BROKERFLOW_SUBMISSION_SORT_ORDERS"):
        load_interface_rules()


def test_interface_rules_file_overrides_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    rules_file = tmp_path / "rules.json"
    rules_file.write_text(json.dumps({"email_sort_orders": [7], "chat_name_patterns": ["Ask UW"]}), encoding="utf-8")
    monkeypatch.setenv("BROKERFLOW_INTERFACE_RULES_FILE", str(rules_file))
    monkeypatch.setenv("BROKERFLOW_SUBMISSION_SORT_ORDERS", "12")

    rules = load_interface_rules()

    assert rules.email_sort_orders == [7]
    assert rules.email_name_patterns == []
    assert rules.chat_name_patterns == ["ask uw"]


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BROKERFLOW_STATE_FILE", "/tmp/brokerflow/state.json")
    monkeypatch.setenv("BROKERFLOW_LOG_LEVEL", "debug")
    monkeypatch.setenv("BROKERFLOW_LOG_JSON", "true")
    monkeypatch.setenv("BROKERFLOW_CORS_ALLOW_ORIGINS", "http://a.local, http://b.local")
    monkeypatch.delenv("BROKERFLOW_COMPLETION_URL", raising=False)

    settings = EngineSettings.from_env()

    assert settings.state_file == "/tmp/brokerflow/state.json"
    assert settings.log_level == "DEBUG"
    assert settings.log_json is True
    assert settings.cors_allow_origins == ["http://a.local", "http://b.local"]
    assert settings.completion_url is None


def test_redaction_masks_secrets_and_addresses() -> None:
    redacted = redact_sensitive_text("password=hunter2 sent to jane.doe@carrier.example")

    assert redacted == "password=[REDACTED] sent to j***@carrier.example"
    assert redact_sensitive_text(None) is None
    assert mask_email_addresses("no address here") == "no address here"
