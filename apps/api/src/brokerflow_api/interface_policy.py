from __future__ import annotations

from typing import Protocol

from brokerflow_api.schemas import InterfaceType, InterfaceTypeRules


class InterfaceTaskLike(Protocol):
    name: str
    sort_order: int
    dependencies: list[str]
    interface_type: InterfaceType | None


def derive_interface_type(task: InterfaceTaskLike, rules: InterfaceTypeRules) -> InterfaceType:
    if _matches(task, sort_orders=rules.email_sort_orders, name_patterns=rules.email_name_patterns):
        return InterfaceType.EMAIL
    if _matches(task, sort_orders=rules.chat_sort_orders, name_patterns=rules.chat_name_patterns):
        return InterfaceType.CHAT
    if task.dependencies:
        return InterfaceType.ARTIFACT
    return InterfaceType.CHAT


def effective_interface_type(task: InterfaceTaskLike, rules: InterfaceTypeRules) -> InterfaceType:
    if task.interface_type is not None:
        return task.interface_type
    return derive_interface_type(task, rules)


def is_submission_task(task: InterfaceTaskLike, rules: InterfaceTypeRules) -> bool:
    return effective_interface_type(task, rules) == InterfaceType.EMAIL


def _matches(task: InterfaceTaskLike, *, sort_orders: list[int], name_patterns: list[str]) -> bool:
    if task.sort_order in sort_orders:
        return True
    lowered_name = task.name.lower()
    return any(pattern in lowered_name for pattern in name_patterns)
