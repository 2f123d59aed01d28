from __future__ import annotations


class EngineError(Exception):
    """Base class for task graph engine failures."""

    code = "engine_error"


class UnknownDependency(EngineError):
    code = "unknown_dependency"

    def __init__(self, task_id: str, dependency_id: str) -> None:
        self.task_id = task_id
        self.dependency_id = dependency_id
        super().__init__(f"task {task_id} depends on unknown task '{dependency_id}'")


class CycleDetected(EngineError):
    code = "cycle_detected"

    def __init__(self, task_ids: list[str]) -> None:
        self.task_ids = sorted(task_ids)
        super().__init__(f"dependency cycle detected involving tasks: {', '.join(self.task_ids)}")


class StoreUnavailable(EngineError):
    code = "store_unavailable"

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"store unavailable during {operation}: {detail}")


class MalformedArtifact(EngineError):
    code = "malformed_artifact"

    def __init__(self, detail: str, *, offset: int | None = None) -> None:
        self.detail = detail
        self.offset = offset
        location = f" at offset {offset}" if offset is not None else ""
        super().__init__(f"malformed artifact content{location}: {detail}")


class AmbiguousRecipientMatch(EngineError):
    code = "ambiguous_recipient_match"

    def __init__(self, task_id: str, recipient_name: str) -> None:
        self.task_id = task_id
        self.recipient_name = recipient_name
        super().__init__(
            f"dependency task {task_id} produced more than one block for recipient "
            f"'{recipient_name}'; keeping the last one"
        )
