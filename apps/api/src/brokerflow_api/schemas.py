from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class TaskStatus(str, Enum):
    UPCOMING = "upcoming"
    AVAILABLE = "available"
    NEEDS_ATTENTION = "needs_attention"
    COMPLETED = "completed"


class InterfaceType(str, Enum):
    CHAT = "chat"
    ARTIFACT = "artifact"
    EMAIL = "email"


class SubmissionStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"


# Spellings observed across older writers of the task collection.
_TASK_STATUS_ALIASES: dict[str, TaskStatus] = {
    "upcoming": TaskStatus.UPCOMING,
    "waiting": TaskStatus.UPCOMING,
    "blocked": TaskStatus.UPCOMING,
    "available": TaskStatus.AVAILABLE,
    "ready": TaskStatus.AVAILABLE,
    "needs_attention": TaskStatus.NEEDS_ATTENTION,
    "pending": TaskStatus.NEEDS_ATTENTION,
    "in_progress": TaskStatus.NEEDS_ATTENTION,
    "completed": TaskStatus.COMPLETED,
    "complete": TaskStatus.COMPLETED,
    "done": TaskStatus.COMPLETED,
}

_STATUS_SEPARATOR_RE = re.compile(r"[\s\-]+")


def normalize_task_status(value: TaskStatus | str) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    key = _STATUS_SEPARATOR_RE.sub("_", str(value).strip().lower())
    status = _TASK_STATUS_ALIASES.get(key)
    if status is None:
        raise ValueError(f"unknown task status '{value}'")
    return status


class TaskCreate(BaseModel):
    id: str | None = None
    company_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    sort_order: int = 0
    dependencies: list[str] = Field(default_factory=list)
    status: TaskStatus | None = None
    interface_type: InterfaceType | None = None
    template_id: str | None = None
    primary_dependency_id: str | None = None
    tag: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        if value is None:
            return None
        return normalize_task_status(value)

    @model_validator(mode="after")
    def normalize_fields(self) -> "TaskCreate":
        if self.id is not None:
            self.id = self.id.strip()
            if not self.id:
                raise ValueError("id must not be blank")
        self.company_id = self.company_id.strip()
        self.dependencies = _normalize_string_list(self.dependencies)
        if self.id is not None and self.id in self.dependencies:
            raise ValueError("task cannot depend on itself")
        _validate_primary_dependency(self.primary_dependency_id, self.dependencies)
        return self


class TaskDependenciesUpdate(BaseModel):
    dependencies: list[str] = Field(default_factory=list)
    primary_dependency_id: str | None = None

    @model_validator(mode="after")
    def normalize_fields(self) -> "TaskDependenciesUpdate":
        self.dependencies = _normalize_string_list(self.dependencies)
        _validate_primary_dependency(self.primary_dependency_id, self.dependencies)
        return self


class TaskRead(BaseModel):
    id: str
    company_id: str
    name: str
    sort_order: int = 0
    dependencies: list[str] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.UPCOMING
    interface_type: InterfaceType | None = None
    template_id: str | None = None
    primary_dependency_id: str | None = None
    tag: str | None = None
    completed_at: str | None = None
    updated_at: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        return normalize_task_status(value)


class ArtifactCreate(BaseModel):
    name: str = ""
    content: str
    tags: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_fields(self) -> "ArtifactCreate":
        self.name = self.name.strip()
        self.tags = _normalize_string_list(self.tags)
        return self


class ArtifactBatchCreate(BaseModel):
    artifacts: list[ArtifactCreate] = Field(min_length=1)


class ArtifactRead(BaseModel):
    id: str
    company_id: str
    task_id: str
    name: str
    content: str
    artifact_index: int = 0
    total_artifacts: int = 1
    tags: list[str] = Field(default_factory=list)
    created_at: str


class SubmissionAttachment(BaseModel):
    name: str
    content: str


class SubmissionRead(BaseModel):
    id: str
    company_id: str
    task_id: str
    recipient_name: str
    recipient_address: str
    subject: str
    body: str
    attachments: list[SubmissionAttachment] = Field(default_factory=list)
    status: SubmissionStatus = SubmissionStatus.DRAFT
    source_task_ids: list[str] = Field(default_factory=list)


class EngineIssue(BaseModel):
    task_id: str
    error: str
    message: str


class StatusTransition(BaseModel):
    task_id: str
    previous: TaskStatus
    current: TaskStatus


class PropagationResult(BaseModel):
    origin_task_id: str | None = None
    company_id: str
    updated: list[str] = Field(default_factory=list)
    transitions: list[StatusTransition] = Field(default_factory=list)
    synthesized: list[str] = Field(default_factory=list)
    errors: list[EngineIssue] = Field(default_factory=list)


class SynthesisResult(BaseModel):
    task_id: str
    submissions: list[SubmissionRead] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ResolvedStatusRead(BaseModel):
    task_id: str
    stored_status: TaskStatus
    resolved_status: TaskStatus


class InterfaceTypeRead(BaseModel):
    task_id: str
    interface_type: InterfaceType
    derived: bool


class InterfaceTypeRules(BaseModel):
    email_sort_orders: list[int] = Field(default_factory=list)
    email_name_patterns: list[str] = Field(default_factory=list)
    chat_sort_orders: list[int] = Field(default_factory=list)
    chat_name_patterns: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_fields(self) -> "InterfaceTypeRules":
        self.email_name_patterns = _normalize_string_list([item.lower() for item in self.email_name_patterns])
        self.chat_name_patterns = _normalize_string_list([item.lower() for item in self.chat_name_patterns])
        return self


class EventRead(BaseModel):
    id: int
    event_type: str
    company_id: str | None = None
    task_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str


class CompletionTrigger(BaseModel):
    triggered: bool
    completion_url: str | None = None
    message: str


def _validate_primary_dependency(primary_dependency_id: str | None, dependencies: list[str]) -> None:
    if primary_dependency_id is None:
        return
    if primary_dependency_id not in dependencies:
        raise ValueError("primary_dependency_id must be one of the task dependencies")


def _normalize_string_list(values: list[str]) -> list[str]:
    normalized: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed:
            continue
        if trimmed in normalized:
            continue
        normalized.append(trimmed)
    return normalized
