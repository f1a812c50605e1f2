from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from missionboard.errors import ValidationError
from missionboard.stages import STAGE_ORDER, parse_stage

DEFAULT_CONFIG_NAME = "missionboard.toml"
DEFAULT_WIP_LIMITS: dict[str, int | None] = {
    "testing": 3,
    "implementing": 4,
    "review": 3,
    "probing": 3,
}
UNLIMITED_MARKERS = frozenset({"none", "unlimited"})


@dataclass(slots=True)
class MissionConfig:
    dir: str = "mission"
    default_name: str = "New Mission"


@dataclass(slots=True)
class LockConfig:
    timeout_seconds: float = 5.0
    initial_backoff_seconds: float = 0.02
    max_backoff_seconds: float = 0.5
    stale_seconds: float = 10.0


@dataclass(slots=True)
class WorkflowConfig:
    max_rejections: int = 2
    strict_dependencies: bool = False


def _wip_limit(stage: str, value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in UNLIMITED_MARKERS:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"Invalid WIP limit for {stage}: {value!r}",
            details={"stage": stage, "limit": value},
        )
    return None if value < 0 else value


@dataclass(slots=True)
class WipConfig:
    """Per-stage WIP limits; a stage mapped to ``None`` is unlimited."""

    stages: dict[str, int | None] = field(default_factory=lambda: dict(DEFAULT_WIP_LIMITS))

    def limits(self) -> dict[str, int | None]:
        return dict(self.stages)

    def set_limit(self, stage: str, limit: int | None) -> None:
        self.stages[str(parse_stage(stage))] = limit

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WipConfig:
        stages = dict(DEFAULT_WIP_LIMITS)
        for key, value in data.items():
            try:
                stage = parse_stage(key)
            except ValueError as exc:
                raise ValidationError(
                    f"Unknown stage in [wip]: {key}",
                    details={"stage": key, "valid": [str(item) for item in STAGE_ORDER]},
                ) from exc
            stages[str(stage)] = _wip_limit(str(stage), value)
        return cls(stages=stages)


@dataclass(slots=True)
class ChecksConfig:
    lint: str = "ruff check ."
    unit: str = "pytest -q"
    e2e: str = ""
    precheck: list[str] = field(default_factory=lambda: ["lint", "unit"])
    postcheck: list[str] = field(default_factory=lambda: ["lint", "unit"])

    def command_for(self, name: str) -> str | None:
        command = {"lint": self.lint, "unit": self.unit, "e2e": self.e2e}.get(name, "")
        if not command or command.strip().lower() == "none":
            return None
        return command


@dataclass(slots=True)
class BoardConfig:
    mission: MissionConfig = field(default_factory=MissionConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    wip: WipConfig = field(default_factory=WipConfig)
    checks: ChecksConfig = field(default_factory=ChecksConfig)

    @classmethod
    def default(cls) -> BoardConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> BoardConfig:
        try:
            return cls(
                mission=MissionConfig(**data.get("mission", {})),
                lock=LockConfig(**data.get("lock", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
                wip=WipConfig.from_dict(data.get("wip", {})),
                checks=ChecksConfig(**data.get("checks", {})),
            )
        except TypeError as exc:
            raise ValidationError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "mission": {
                "dir": self.mission.dir,
                "default_name": self.mission.default_name,
            },
            "lock": {
                "timeout_seconds": self.lock.timeout_seconds,
                "initial_backoff_seconds": self.lock.initial_backoff_seconds,
                "max_backoff_seconds": self.lock.max_backoff_seconds,
                "stale_seconds": self.lock.stale_seconds,
            },
            "workflow": {
                "max_rejections": self.workflow.max_rejections,
                "strict_dependencies": self.workflow.strict_dependencies,
            },
            "wip": self.wip.limits(),
            "checks": {
                "lint": self.checks.lint,
                "unit": self.checks.unit,
                "e2e": self.checks.e2e,
                "precheck": list(self.checks.precheck),
                "postcheck": list(self.checks.postcheck),
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if value is None:
        return '"none"'
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: BoardConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["mission", "lock", "workflow", "wip", "checks"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> BoardConfig:
    """Read ``path``; a missing file means defaults, a broken one a ``ValidationError``."""
    if not path.exists():
        return BoardConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(
            f"Config file {path} is not valid TOML: {exc}", details={"config": str(path)}
        ) from exc
    try:
        return BoardConfig.from_dict(data)
    except ValidationError as exc:
        exc.details.setdefault("config", str(path))
        raise


def save_config(path: Path, config: BoardConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
