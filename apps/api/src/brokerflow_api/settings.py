from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import BaseModel, Field

from brokerflow_api.schemas import InterfaceTypeRules

DEFAULT_SUBMISSION_SORT_ORDERS = "12,14"
DEFAULT_SUBMISSION_NAME_PATTERNS = "send submission,send follow-up"
DEFAULT_QUESTION_SORT_ORDERS = "15"
DEFAULT_QUESTION_NAME_PATTERNS = "review flagged,underwriter questions"


class EngineSettings(BaseModel):
    state_file: str | None = None
    interface_rules: InterfaceTypeRules = Field(default_factory=InterfaceTypeRules)
    completion_url: str | None = None
    cors_allow_origins: list[str] = Field(default_factory=list)
    cors_allow_origin_regex: str = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            state_file=os.getenv("BROKERFLOW_STATE_FILE") or None,
            interface_rules=load_interface_rules(),
            completion_url=os.getenv("BROKERFLOW_COMPLETION_URL") or None,
            cors_allow_origins=_parse_csv_env("BROKERFLOW_CORS_ALLOW_ORIGINS", default="null"),
            cors_allow_origin_regex=_env_or_default(
                "BROKERFLOW_CORS_ALLOW_ORIGIN_REGEX",
                r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
            ),
            log_level=_env_or_default("BROKERFLOW_LOG_LEVEL", "INFO").upper(),
            log_json=_env_or_default("BROKERFLOW_LOG_JSON", "false").lower() in ("1", "true", "yes"),
        )


def load_interface_rules() -> InterfaceTypeRules:
    rules_file = os.getenv("BROKERFLOW_INTERFACE_RULES_FILE")
    if rules_file:
        path = Path(rules_file).expanduser()
        data = json.loads(path.read_text(encoding="utf-8"))
        return InterfaceTypeRules(**data)

    return InterfaceTypeRules(
        email_sort_orders=_parse_int_csv_env("BROKERFLOW_SUBMISSION_SORT_ORDERS", DEFAULT_SUBMISSION_SORT_ORDERS),
        email_name_patterns=_parse_csv_env("BROKERFLOW_SUBMISSION_NAME_PATTERNS", DEFAULT_SUBMISSION_NAME_PATTERNS),
        chat_sort_orders=_parse_int_csv_env("BROKERFLOW_QUESTION_SORT_ORDERS", DEFAULT_QUESTION_SORT_ORDERS),
        chat_name_patterns=_parse_csv_env("BROKERFLOW_QUESTION_NAME_PATTERNS", DEFAULT_QUESTION_NAME_PATTERNS),
    )


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    value = _env_or_default(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_int_csv_env(name: str, default: str = "") -> list[int]:
    values: list[int] = []
    for item in _parse_csv_env(name, default):
        try:
            values.append(int(item))
        except ValueError as exc:
            raise ValueError(f"{name} must be a comma-separated list of integers, got: {item!r}") from exc
    return values
