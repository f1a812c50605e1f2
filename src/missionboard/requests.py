"""Boundary validation for structured command input.

Requests arrive as loosely-typed JSON objects. Each ``from_dict`` collects
every problem it finds and raises a single ``ValidationError`` so callers can
fix all of them in one round trip.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from missionboard.errors import ValidationError
from missionboard.items import FRONTMATTER_FIELDS, ITEM_ID_PATTERN
from missionboard.stages import Agent, ItemType, parse_agent, parse_item_type

COMPLETION_STATUSES = ("success", "failed")


def _string(
    data: dict[str, Any], key: str, errors: list[str], *, required: bool = False
) -> str | None:
    value = data.get(key)
    if value is None:
        if required:
            errors.append(f"Missing required field: {key}")
        return None
    if not isinstance(value, str):
        errors.append(f"{key} must be a string")
        return None
    if required and not value.strip():
        errors.append(f"{key} must not be empty")
        return None
    return value


def _string_list(
    data: dict[str, Any], key: str, errors: list[str], *, required: bool = False
) -> list[str] | None:
    value = data.get(key)
    if value is None:
        if required:
            errors.append(f"Missing required field: {key}")
        return None
    if not isinstance(value, list):
        errors.append(f"{key} must be an array")
        return None
    bad = [index for index, entry in enumerate(value) if not isinstance(entry, str)]
    for index in bad:
        errors.append(f"{key}[{index}] must be a string")
    return None if bad else list(value)


def _outputs(data: dict[str, Any], errors: list[str]) -> dict[str, str] | None:
    value = data.get("outputs")
    if value is None:
        return None
    if not isinstance(value, dict):
        errors.append("outputs must be an object")
        return None
    for key, path in value.items():
        if not isinstance(path, str) or not path:
            errors.append(f"outputs.{key} must be a non-empty string")
    return {str(key): str(path) for key, path in value.items()}


def _item_type(value: str | None, errors: list[str]) -> ItemType | None:
    if value is None:
        return None
    try:
        return parse_item_type(value)
    except ValueError:
        errors.append(f"type must be one of: {', '.join(ItemType)}")
        return None


def require_agent(value: str | Agent | None, *, field_name: str = "agent") -> Agent:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"Missing required field: {field_name}")
    try:
        return parse_agent(value)
    except ValueError as exc:
        names = ", ".join(agent.value for agent in Agent if agent is not Agent.SYSTEM)
        raise ValidationError(f"{field_name} must be one of: {names}") from exc


def optional_agent(value: str | Agent | None, *, field_name: str = "agent") -> Agent | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return require_agent(value, field_name=field_name)


def _fail(errors: list[str]) -> None:
    if errors:
        raise ValidationError(f"Validation failed: {'; '.join(errors)}", errors=errors)


@dataclass(slots=True)
class CreateItemRequest:
    title: str
    type: ItemType
    objective: str
    acceptance: list[str]
    id: str | None = None
    outputs: dict[str, str] | None = None
    dependencies: list[str] = field(default_factory=list)
    parallel_group: str | None = None
    context: str | None = None
    estimate: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CreateItemRequest:
        if not isinstance(data, dict):
            raise ValidationError("Request must be a JSON object")
        errors: list[str] = []
        item_id = _string(data, "id", errors)
        if item_id is not None and not ITEM_ID_PATTERN.match(item_id):
            errors.append(f"Invalid ID format: {item_id}. Must be 3 digits.")
        title = _string(data, "title", errors, required=True)
        item_type = _item_type(_string(data, "type", errors, required=True), errors)
        objective = _string(data, "objective", errors, required=True)
        acceptance = _string_list(data, "acceptance", errors, required=True)
        outputs = _outputs(data, errors)
        dependencies = _string_list(data, "dependencies", errors) or []
        parallel_group = _string(data, "parallel_group", errors)
        context = _string(data, "context", errors)
        estimate = _string(data, "estimate", errors)
        _fail(errors)
        return cls(
            title=title or "",
            type=item_type or ItemType.FEATURE,
            objective=objective or "",
            acceptance=acceptance or [],
            id=item_id,
            outputs=outputs,
            dependencies=list(dict.fromkeys(dependencies)),
            parallel_group=parallel_group or None,
            context=context or None,
            estimate=estimate or None,
        )


@dataclass(slots=True)
class UpdateItemRequest:
    fields: dict[str, Any] = field(default_factory=dict)
    objective: str | None = None
    acceptance: list[str] | None = None
    check_acceptance: tuple[int, bool] | None = None
    context: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.fields and all(
            value is None
            for value in (self.objective, self.acceptance, self.check_acceptance, self.context)
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UpdateItemRequest:
        if not isinstance(data, dict):
            raise ValidationError("updates must be an object")
        errors: list[str] = []
        fields: dict[str, Any] = {}
        for key in FRONTMATTER_FIELDS:
            if key not in data:
                continue
            if key == "type":
                item_type = _item_type(_string(data, key, errors, required=True), errors)
                if item_type is not None:
                    fields[key] = str(item_type)
            elif key == "dependencies":
                dependencies = _string_list(data, key, errors)
                fields[key] = list(dict.fromkeys(dependencies or []))
            elif key == "outputs":
                fields[key] = _outputs(data, errors)
            elif key == "parallel_group":
                fields[key] = _string(data, key, errors) or None
            else:
                value = _string(data, key, errors, required=key in {"title", "status"})
                if value is not None:
                    fields[key] = value

        check: tuple[int, bool] | None = None
        raw_check = data.get("check_acceptance", data.get("checkAcceptance"))
        if raw_check is not None:
            if not isinstance(raw_check, dict) or not isinstance(raw_check.get("index"), int):
                errors.append("check_acceptance must be an object with an integer index")
            else:
                check = (raw_check["index"], bool(raw_check.get("checked", True)))

        request = cls(
            fields=fields,
            objective=_string(data, "objective", errors),
            acceptance=_string_list(data, "acceptance", errors),
            check_acceptance=check,
            context=_string(data, "context", errors),
        )
        _fail(errors)
        if request.is_empty:
            raise ValidationError("No updates provided")
        return request


@dataclass(slots=True)
class CompleteItemRequest:
    agent: Agent
    status: str
    summary: str
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompleteItemRequest:
        errors: list[str] = []
        agent_name = _string(data, "agent", errors, required=True)
        status = _string(data, "status", errors, required=True)
        summary = _string(data, "summary", errors, required=True)
        if status is not None and status not in COMPLETION_STATUSES:
            errors.append(f"status must be one of: {', '.join(COMPLETION_STATUSES)}")
        files_created = _string_list(data, "files_created", errors) or []
        files_modified = _string_list(data, "files_modified", errors) or []
        _fail(errors)
        return cls(
            agent=require_agent(agent_name),
            status=status or "success",
            summary=summary or "",
            files_created=files_created,
            files_modified=files_modified,
        )
