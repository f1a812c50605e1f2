from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from missionboard.stages import Agent, agent_from_display


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def display_agent(agent: Agent | str | None) -> str:
    if agent is None:
        return Agent.SYSTEM.display_name
    if isinstance(agent, Agent):
        return agent.display_name
    parsed = agent_from_display(agent)
    return parsed.display_name if parsed else str(agent)


@dataclass(slots=True, frozen=True)
class ActivityEntry:
    timestamp: str
    agent: str
    message: str

    @classmethod
    def parse(cls, line: str) -> ActivityEntry | None:
        timestamp, _, rest = line.partition(" ")
        if not rest.startswith("["):
            return None
        agent, sep, message = rest[1:].partition("] ")
        if not sep:
            return None
        return cls(timestamp=timestamp, agent=agent, message=message)

    def format(self) -> str:
        return f"{self.timestamp} [{self.agent}] {self.message}"


class ActivityLog:
    """Append-only, line-oriented feed read by the dashboard."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, agent: Agent | str | None, message: str) -> ActivityEntry:
        entry = ActivityEntry(
            timestamp=_utcnow_iso(),
            agent=display_agent(agent),
            message=" ".join(message.splitlines()),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(entry.format() + "\n")
        return entry

    def read(self, limit: int | None = None) -> list[ActivityEntry]:
        if not self.path.exists():
            return []
        entries = [
            entry
            for entry in (
                ActivityEntry.parse(line)
                for line in self.path.read_text(encoding="utf-8").splitlines()
            )
            if entry is not None
        ]
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries

    def rotate(self, destination: Path) -> Path | None:
        """Copy the live log to ``destination`` and truncate it."""
        if not self.path.exists():
            return None
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.path, destination)
        self.path.write_text("", encoding="utf-8")
        return destination

    def reset(self, first_message: str | None = None, agent: Agent | str | None = None) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")
        if first_message:
            self.append(agent, first_message)
