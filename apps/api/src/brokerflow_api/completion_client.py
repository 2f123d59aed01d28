from __future__ import annotations

import os

import httpx

from brokerflow_api.logging_config import get_logger
from brokerflow_api.schemas import CompletionTrigger, TaskRead
from brokerflow_api.security import redact_sensitive_text

logger = get_logger(__name__)


def _completion_url() -> str | None:
    return os.getenv("BROKERFLOW_COMPLETION_URL") or None


def trigger_ai_completion(task: TaskRead, *, completion_url: str | None = None) -> CompletionTrigger:
    base_url = completion_url or _completion_url()
    if not base_url:
        return CompletionTrigger(
            triggered=False,
            completion_url=None,
            message="completion url not configured",
        )

    request_payload = {
        "task_id": task.id,
        "company_id": task.company_id,
        "task_name": task.name,
        "dependencies": task.dependencies,
    }
    callback_token = os.getenv("BROKERFLOW_COMPLETION_TOKEN")
    headers = {"Authorization": f"Bearer {callback_token}"} if callback_token else None

    try:
        response = httpx.post(
            f"{base_url.rstrip('/')}/tasks/{task.id}/complete",
            json=request_payload,
            headers=headers,
            timeout=5.0,
        )
        response.raise_for_status()
        logger.info("ai_completion_triggered", task_id=task.id, company_id=task.company_id)
        return CompletionTrigger(
            triggered=True,
            completion_url=base_url,
            message="triggered",
        )
    except Exception as exc:  # noqa: BLE001
        sanitized_error = redact_sensitive_text(str(exc))
        logger.warning("ai_completion_failed", task_id=task.id, error=sanitized_error)
        return CompletionTrigger(
            triggered=False,
            completion_url=base_url,
            message=f"completion trigger failed: {sanitized_error}",
        )
