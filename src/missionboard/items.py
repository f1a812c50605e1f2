from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import frontmatter

from missionboard.stages import Stage

ITEM_ID_PATTERN = re.compile(r"^\d{3}$")
CHECKBOX_PATTERN = re.compile(r"^- \[([ x])\] (.*)$")
SLUG_PATTERN = re.compile(r"[^a-z0-9]+")

FRONTMATTER_FIELDS = (
    "title",
    "type",
    "status",
    "outputs",
    "dependencies",
    "parallel_group",
    "estimate",
)


def slugify(text: str, max_length: int = 50) -> str:
    return SLUG_PATTERN.sub("-", text.lower()).strip("-")[:max_length]


def item_filename(item_id: str, title: str) -> str:
    return f"{item_id}-{slugify(title)}.md"


def next_item_id(board: dict[str, Any]) -> str:
    """Next free 3-digit id; archived ids stay reserved."""
    taken = [item_id for ids in (board.get("phases") or {}).values() for item_id in ids or []]
    taken.extend(board.get("archived") or [])
    numbers = [int(item_id) for item_id in taken if str(item_id).isdigit()]
    return f"{max(numbers, default=0) + 1:03d}"


@dataclass(slots=True)
class WorkItem:
    id: str
    title: str
    type: str = "feature"
    status: str = "pending"
    rejection_count: int = 0
    dependencies: list[str] = field(default_factory=list)
    parallel_group: str | None = None
    outputs: dict[str, str] | None = None
    estimate: str | None = None
    assigned_agent: str | None = None
    rejection_history: list[dict[str, Any]] = field(default_factory=list)
    work_log: list[dict[str, Any]] = field(default_factory=list)
    content: str = ""
    stage: Stage = Stage.BRIEFINGS
    path: Path | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_text(cls, text: str, *, stage: Stage, path: Path | None = None) -> WorkItem:
        post = frontmatter.loads(text)
        meta = dict(post.metadata or {})
        fallback_id = path.name.split("-", 1)[0] if path is not None else ""
        known = {
            "id",
            "title",
            "type",
            "status",
            "rejection_count",
            "dependencies",
            "parallel_group",
            "outputs",
            "estimate",
            "assigned_agent",
            "rejection_history",
            "work_log",
        }
        return cls(
            id=str(meta.get("id") or fallback_id),
            title=str(meta.get("title") or ""),
            type=str(meta.get("type") or "feature"),
            status=str(meta.get("status") or "pending"),
            rejection_count=int(meta.get("rejection_count") or 0),
            dependencies=[str(dep) for dep in meta.get("dependencies") or []],
            parallel_group=meta.get("parallel_group") or None,
            outputs=meta.get("outputs") or None,
            estimate=meta.get("estimate") or None,
            assigned_agent=meta.get("assigned_agent") or None,
            rejection_history=list(meta.get("rejection_history") or []),
            work_log=list(meta.get("work_log") or []),
            content=post.content,
            stage=stage,
            path=path,
            extra={key: value for key, value in meta.items() if key not in known},
        )

    @property
    def filename(self) -> str:
        if self.path is not None:
            return self.path.name
        return item_filename(self.id, self.title)

    def metadata(self) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "status": self.status,
            "rejection_count": self.rejection_count,
        }
        if self.outputs:
            meta["outputs"] = dict(self.outputs)
        if self.dependencies:
            meta["dependencies"] = list(self.dependencies)
        if self.parallel_group:
            meta["parallel_group"] = self.parallel_group
        if self.estimate:
            meta["estimate"] = self.estimate
        if self.assigned_agent:
            meta["assigned_agent"] = self.assigned_agent
        if self.rejection_history:
            meta["rejection_history"] = list(self.rejection_history)
        if self.work_log:
            meta["work_log"] = list(self.work_log)
        meta.update(self.extra)
        return meta

    def to_text(self) -> str:
        post = frontmatter.Post(self.content, **self.metadata())
        return frontmatter.dumps(post, sort_keys=False) + "\n"

    def to_dict(self) -> dict[str, Any]:
        payload = self.metadata()
        payload["stage"] = str(self.stage)
        payload["path"] = str(self.path) if self.path is not None else None
        return payload


def build_body(objective: str, acceptance: list[str], context: str | None = None) -> str:
    lines = ["## Objective", "", objective, "", "## Acceptance Criteria", ""]
    lines.extend(f"- [ ] {criterion}" for criterion in acceptance)
    lines.append("")
    if context:
        lines.extend(["## Context", "", context, ""])
    return "\n".join(lines)


def _section_bounds(lines: list[str], heading: str) -> tuple[int, int] | None:
    try:
        start = lines.index(heading)
    except ValueError:
        return None
    end = len(lines)
    for index in range(start + 1, len(lines)):
        if lines[index].startswith("## "):
            end = index
            break
    return start, end


def replace_section(content: str, heading: str, body_lines: list[str]) -> str:
    lines = content.split("\n")
    bounds = _section_bounds(lines, heading)
    block = [heading, "", *body_lines, ""]
    if bounds is None:
        while lines and not lines[-1].strip():
            lines.pop()
        return "\n".join([*lines, "", *block])
    start, end = bounds
    return "\n".join(lines[:start] + block + lines[end:])


def set_objective(content: str, objective: str) -> str:
    return replace_section(content, "## Objective", [objective])


def replace_acceptance(content: str, criteria: list[str]) -> str:
    return replace_section(
        content, "## Acceptance Criteria", [f"- [ ] {criterion}" for criterion in criteria]
    )


def check_acceptance(content: str, index: int, checked: bool) -> tuple[str, bool]:
    """Toggle the ``index``-th checkbox line; returns the new body and whether it changed."""
    lines = content.split("\n")
    seen = 0
    for position, line in enumerate(lines):
        match = CHECKBOX_PATTERN.match(line)
        if not match:
            continue
        if seen == index:
            lines[position] = f"- [{'x' if checked else ' '}] {match.group(2)}"
            return "\n".join(lines), True
        seen += 1
    return content, False


def append_context(content: str, context: str) -> str:
    lines = content.split("\n")
    bounds = _section_bounds(lines, "## Context")
    if bounds is None:
        return replace_section(content, "## Context", [context])
    start, end = bounds
    existing = lines[start + 1 : end]
    while existing and not existing[-1].strip():
        existing.pop()
    while existing and not existing[0].strip():
        existing.pop(0)
    merged = [*existing, "", context] if existing else [context]
    return replace_section(content, "## Context", merged)


def append_work_log_note(content: str, note: str) -> str:
    lines = content.split("\n")
    bounds = _section_bounds(lines, "## Work Log")
    if bounds is None:
        return content.rstrip() + f"\n\n## Work Log\n{note}\n"
    start, _ = bounds
    return "\n".join(lines[: start + 1] + [note] + lines[start + 1 :])
