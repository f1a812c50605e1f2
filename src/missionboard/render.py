from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from missionboard.items import WorkItem
from missionboard.state.store import parse_iso

OUTPUT_LABELS = {"test": "Test", "impl": "Implementation", "types": "Types"}


def _date(value: Any) -> str:
    text = str(value or "")
    return text.split("T", 1)[0] or "-"


def _clock(value: str | None) -> str:
    if not value or "T" not in value:
        return "00:00:00"
    return value.split("T", 1)[1][:8]


def format_duration(duration_ms: int | None) -> str:
    """``HH:MM:SS`` with hours allowed to grow past 24."""
    total = max(0, int(duration_ms or 0)) // 1000
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def render_item(item: WorkItem) -> str:
    lines = [f"# {item.id} - {item.title}", ""]
    lines.append(f"**Type:** {item.type or 'feature'}")
    lines.append(f"**Stage:** {item.stage}")
    lines.append(f"**Status:** {item.status or 'pending'}")
    if item.assigned_agent:
        lines.append(f"**Agent:** {item.assigned_agent}")
    if item.dependencies:
        lines.append(f"**Dependencies:** {', '.join(item.dependencies)}")
    if item.parallel_group:
        lines.append(f"**Parallel Group:** {item.parallel_group}")
    if item.estimate:
        lines.append(f"**Estimate:** {item.estimate}")
    lines.append("")

    if item.outputs:
        lines.extend(["## Outputs", ""])
        for key, path in item.outputs.items():
            lines.append(f"- {OUTPUT_LABELS.get(key, key.title())}: `{path}`")
        lines.append("")

    if item.content.strip():
        lines.extend([item.content.strip(), ""])

    if item.rejection_history:
        lines.extend(
            [
                "## Rejection History",
                "",
                "| # | Reason | Agent | Date |",
                "|---|--------|-------|------|",
            ]
        )
        for index, entry in enumerate(item.rejection_history, start=1):
            lines.append(
                f"| {index} | {entry.get('reason', '-')} | {entry.get('agent') or 'Lynch'} "
                f"| {_date(entry.get('date'))} |"
            )
        lines.append("")

    if item.rejection_count > 0:
        lines.extend([f"**Rejection Count:** {item.rejection_count}", ""])
    return "\n".join(lines)


def _agents_used(board: dict[str, Any], items: Iterable[WorkItem]) -> set[str]:
    agents: set[str] = set()
    for entries in (board.get("history") or {}).values():
        agents.update(entry["agent"] for entry in entries if entry.get("agent"))
    for item in items:
        agents.update(entry["agent"] for entry in item.work_log if entry.get("agent"))
        agents.update(entry["agent"] for entry in item.rejection_history if entry.get("agent"))
    return agents


def render_mission_summary(
    board: dict[str, Any],
    items: list[WorkItem],
    end_time: str,
    *,
    max_rejections: int = 2,
) -> str:
    """Markdown report written next to archived items when a mission closes.

    ``board`` is the document as it stood before the items were archived, so
    stage history and totals still cover them.
    """
    mission = board.get("mission") or {}
    name = mission.get("name") or board.get("project") or "Unnamed Mission"
    start = mission.get("started_at") or mission.get("created_at") or board.get("created_at")
    ordered = sorted(items, key=lambda item: item.id)
    stats = board.get("stats") or {}
    total = max(int(stats.get("total_items") or 0), len(ordered))

    completed = mission.get("completed_at") or end_time
    duration_ms = mission.get("duration_ms")
    if duration_ms is None and start:
        duration_ms = int((parse_iso(completed) - parse_iso(start)).total_seconds() * 1000)

    lines = [f"# Mission Complete: {name}", "", f"**Completed:** {completed}"]
    if duration_ms is not None:
        lines.append(f"**Duration:** {format_duration(duration_ms)}")
    lines.extend([f"**Items Completed:** {len(ordered)}/{total}", ""])

    needing_input = sum(1 for item in ordered if item.rejection_count >= max_rejections)
    lines.extend(
        [
            "## Statistics",
            "",
            f"- Total rejections: {int(stats.get('rejected_count') or 0)}",
            f"- Items requiring human input: {needing_input}",
            f"- Agents utilized: {len(_agents_used(board, ordered))}",
            "",
            "## Work Items",
            "",
            "| ID | Title | Type | Rejections |",
            "|----|-------|------|------------|",
        ]
    )
    for item in ordered:
        lines.append(f"| {item.id} | {item.title} | {item.type} | {item.rejection_count} |")
    lines.append("")

    rejected = [item for item in ordered if item.rejection_count > 0]
    if rejected:
        lines.extend(
            ["## Rejection Summary", "", "| Item | Count | Reasons |", "|------|-------|---------|"]
        )
        for item in rejected:
            reasons = "; ".join(
                str(entry.get("reason")) for entry in item.rejection_history if entry.get("reason")
            )
            lines.append(f"| {item.id} | {item.rejection_count} | {reasons or '-'} |")
        lines.append("")

    lines.extend(["## Timeline", ""])
    if start:
        lines.append(f"- {_clock(start)} - Mission started")
    lines.extend([f"- {_clock(completed)} - Mission complete", ""])
    return "\n".join(lines)
