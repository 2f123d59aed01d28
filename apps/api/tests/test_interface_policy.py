from brokerflow_api.interface_policy import derive_interface_type, effective_interface_type, is_submission_task
from brokerflow_api.schemas import InterfaceType, InterfaceTypeRules, TaskRead


RULES = InterfaceTypeRules(
    email_sort_orders=[12, 14],
    email_name_patterns=["Send Submission", "send follow-up"],
    chat_sort_orders=[15],
    chat_name_patterns=["underwriter questions"],
)


def _task(name: str, *, sort_order: int = 1, dependencies: list[str] | None = None, **kwargs) -> TaskRead:
    return TaskRead(
        id="t1",
        company_id="c1",
        name=name,
        sort_order=sort_order,
        dependencies=dependencies or [],
        **kwargs,
    )


def test_submission_sort_order_derives_email() -> None:
    assert derive_interface_type(_task("Anything", sort_order=12), RULES) == InterfaceType.EMAIL


def test_submission_name_pattern_is_case_insensitive() -> None:
    task = _task("SEND SUBMISSION to markets", sort_order=3, dependencies=["t0"])

    assert derive_interface_type(task, RULES) == InterfaceType.EMAIL


def test_question_rules_derive_chat() -> None:
    assert derive_interface_type(_task("Underwriter Questions", dependencies=["t0"]), RULES) == InterfaceType.CHAT
    assert derive_interface_type(_task("Follow up", sort_order=15, dependencies=["t0"]), RULES) == InterfaceType.CHAT


def test_dependencies_derive_artifact_otherwise_chat() -> None:
    assert derive_interface_type(_task("Draft cover letter", dependencies=["t0"]), RULES) == InterfaceType.ARTIFACT
    assert derive_interface_type(_task("Collect loss runs"), RULES) == InterfaceType.CHAT


def test_persisted_interface_type_wins() -> None:
    task = _task("Send submission", sort_order=12, interface_type=InterfaceType.CHAT)

    assert effective_interface_type(task, RULES) == InterfaceType.CHAT
    assert not is_submission_task(task, RULES)


def test_derivation_is_not_cached() -> None:
    task = _task("Draft cover letter", dependencies=["t0"])
    assert effective_interface_type(task, RULES) == InterfaceType.ARTIFACT

    task.name = "Send follow-up"
    assert effective_interface_type(task, RULES) == InterfaceType.EMAIL
