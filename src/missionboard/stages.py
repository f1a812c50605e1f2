from __future__ import annotations

from enum import StrEnum


class Stage(StrEnum):
    BRIEFINGS = "briefings"
    READY = "ready"
    TESTING = "testing"
    IMPLEMENTING = "implementing"
    REVIEW = "review"
    PROBING = "probing"
    DONE = "done"
    BLOCKED = "blocked"


class Agent(StrEnum):
    HANNIBAL = "hannibal"
    FACE = "face"
    MURDOCK = "murdock"
    BA = "ba"
    LYNCH = "lynch"
    AMY = "amy"
    SOSA = "sosa"
    SYSTEM = "system"

    @property
    def display_name(self) -> str:
        return AGENT_DISPLAY_NAMES[self]


class ItemType(StrEnum):
    FEATURE = "feature"
    BUG = "bug"
    ENHANCEMENT = "enhancement"
    TASK = "task"
    IMPLEMENTATION = "implementation"
    INTEGRATION = "integration"
    INTERFACE = "interface"
    TEST = "test"


AGENT_DISPLAY_NAMES: dict[Agent, str] = {
    Agent.HANNIBAL: "Hannibal",
    Agent.FACE: "Face",
    Agent.MURDOCK: "Murdock",
    Agent.BA: "B.A.",
    Agent.LYNCH: "Lynch",
    Agent.AMY: "Amy",
    Agent.SOSA: "Sosa",
    Agent.SYSTEM: "System",
}

STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)

VALID_TRANSITIONS: dict[Stage, tuple[Stage, ...]] = {
    Stage.BRIEFINGS: (Stage.READY,),
    Stage.READY: (Stage.TESTING, Stage.BLOCKED),
    Stage.TESTING: (Stage.IMPLEMENTING, Stage.BLOCKED),
    Stage.IMPLEMENTING: (Stage.REVIEW, Stage.BLOCKED),
    # review: approve -> probing, reject -> ready
    Stage.REVIEW: (Stage.PROBING, Stage.READY),
    # probing: verified -> done, flagged -> ready
    Stage.PROBING: (Stage.DONE, Stage.READY),
    Stage.DONE: (),
    Stage.BLOCKED: (Stage.READY,),
}

AGENT_STAGES: frozenset[Stage] = frozenset({Stage.TESTING, Stage.IMPLEMENTING, Stage.REVIEW})
CLAIMABLE_STAGES: frozenset[Stage] = frozenset(
    {Stage.READY, Stage.TESTING, Stage.IMPLEMENTING, Stage.REVIEW, Stage.PROBING}
)
IN_FLIGHT_STAGES: tuple[Stage, ...] = (
    Stage.TESTING,
    Stage.IMPLEMENTING,
    Stage.REVIEW,
    Stage.PROBING,
)
BACKLOG_STAGES: tuple[Stage, ...] = (Stage.BRIEFINGS, Stage.READY)

WORKER_AGENTS: tuple[Agent, ...] = tuple(agent for agent in Agent if agent is not Agent.SYSTEM)


def parse_stage(value: str | Stage) -> Stage:
    """Normalize user input to a ``Stage``; raises ``ValueError`` when unknown."""
    if isinstance(value, Stage):
        return value
    return Stage(str(value).strip().lower())


def parse_agent(value: str | Agent) -> Agent:
    """Normalize agent names: case-insensitive, dots ignored (``B.A.`` == ``ba``)."""
    if isinstance(value, Agent):
        return value
    key = str(value).strip().lower().replace(".", "")
    for agent in Agent:
        if agent.value == key:
            return agent
    raise ValueError(f"Unknown agent: {value}")


def agent_from_display(display: str) -> Agent | None:
    for agent, name in AGENT_DISPLAY_NAMES.items():
        if name == display:
            return agent
    try:
        return parse_agent(display)
    except ValueError:
        return None


def parse_item_type(value: str | ItemType) -> ItemType:
    if isinstance(value, ItemType):
        return value
    return ItemType(str(value).strip().lower())
