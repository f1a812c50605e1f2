from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from missionboard.activity import ActivityLog
from missionboard.config import LockConfig
from missionboard.errors import BoardNotFoundError, ItemNotFoundError, StoreCorruptedError
from missionboard.items import WorkItem
from missionboard.stages import (
    BACKLOG_STAGES,
    IN_FLIGHT_STAGES,
    STAGE_ORDER,
    WORKER_AGENTS,
    Agent,
    Stage,
)
from missionboard.state.lock import StoreLock

logger = logging.getLogger(__name__)


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def elapsed_ms(start: str | None, end: str) -> int | None:
    if not start:
        return None
    try:
        return int((parse_iso(end) - parse_iso(start)).total_seconds() * 1000)
    except ValueError:
        return None


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via a temp file in the same directory and a rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        tmp_path = Path(handle.name)
        try:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        except BaseException:
            handle.close()
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def new_board(name: str, wip_limits: dict[str, int | None]) -> dict[str, Any]:
    now = utcnow_iso()
    return {
        "mission": {
            "name": name,
            "status": "planning",
            "created_at": now,
            "started_at": None,
            "completed_at": None,
            "duration_ms": None,
            "final_review_verdict": None,
            "postcheck": None,
        },
        "project": name,
        "created_at": now,
        "updated_at": now,
        "revision": 0,
        "stats": {
            "total_items": 0,
            "completed": 0,
            "in_flight": 0,
            "blocked": 0,
            "backlog": 0,
            "rejected_count": 0,
        },
        "phases": {str(stage): [] for stage in STAGE_ORDER},
        "assignments": {},
        "agents": {
            agent.display_name: {"status": "idle", "current_item": None}
            for agent in WORKER_AGENTS
        },
        "history": {},
        "wip_limits": dict(wip_limits),
        "dependency_graph": {},
        "parallel_groups": {},
        "archived": [],
    }


def phase_list(board: dict[str, Any], stage: Stage) -> list[str]:
    phases = board.setdefault("phases", {})
    values = phases.get(str(stage))
    if not isinstance(values, list):
        values = []
        phases[str(stage)] = values
    return values


def stage_of(board: dict[str, Any], item_id: str) -> Stage | None:
    phases = board.get("phases") or {}
    for stage in STAGE_ORDER:
        if item_id in (phases.get(str(stage)) or []):
            return stage
    return None


def refresh_stats(board: dict[str, Any]) -> dict[str, Any]:
    phases = board.get("phases") or {}

    def count(stages: tuple[Stage, ...]) -> int:
        return sum(len(phases.get(str(stage)) or []) for stage in stages)

    previous = board.get("stats") or {}
    board["stats"] = {
        "total_items": count(STAGE_ORDER),
        "completed": count((Stage.DONE,)),
        "in_flight": count(IN_FLIGHT_STAGES),
        "blocked": count((Stage.BLOCKED,)),
        "backlog": count(BACKLOG_STAGES),
        "rejected_count": int(previous.get("rejected_count") or 0),
    }
    return board["stats"]


def update_phases(board: dict[str, Any], item_id: str, to_stage: Stage) -> None:
    """Place ``item_id`` in exactly one phase list, appending to ``to_stage``."""
    for stage in STAGE_ORDER:
        values = phase_list(board, stage)
        if stage is not to_stage and item_id in values:
            values[:] = [value for value in values if value != item_id]
    target = phase_list(board, to_stage)
    if item_id not in target:
        target.append(item_id)
    refresh_stats(board)


def remove_item(board: dict[str, Any], item_id: str) -> None:
    """Drop every board reference to ``item_id`` except its archived marker."""
    for stage in STAGE_ORDER:
        values = phase_list(board, stage)
        if item_id in values:
            values[:] = [value for value in values if value != item_id]
    for key in ("assignments", "history", "dependency_graph"):
        (board.get(key) or {}).pop(item_id, None)
    groups = board.get("parallel_groups") or {}
    for name in list(groups):
        groups[name] = [value for value in groups[name] if value != item_id]
        if not groups[name]:
            del groups[name]
    refresh_stats(board)


@dataclass(slots=True)
class BoardTransaction:
    """Mutable view of the board for one locked read-modify-write.

    Item writes, file relocations and activity lines are collected here and
    applied by ``BoardStore`` only after the board document has been written.
    """

    store: BoardStore
    board: dict[str, Any]
    saves: dict[str, WorkItem] = field(default_factory=dict)
    moves: dict[str, tuple[Path, Path]] = field(default_factory=dict)
    activity: list[tuple[Agent | str | None, str]] = field(default_factory=list)
    discarded: bool = False

    def discard(self) -> None:
        """Leave the store untouched when the transaction block exits."""
        self.discarded = True

    def load_item(self, item_id: str) -> WorkItem:
        item = self.saves.get(item_id) or self.store.load_item(item_id, self.board)
        if item.path is not None and item.path.parent.name != str(item.stage):
            logger.warning(
                "Item %s file is under %s but board says %s; relocating",
                item_id,
                item.path.parent.name,
                item.stage,
            )
            self.move_item(item, item.stage)
        return item

    def save_item(self, item: WorkItem) -> None:
        self.saves[item.id] = item

    def move_item(self, item: WorkItem, stage: Stage) -> Path:
        target = self.store.stage_dir(stage) / item.filename
        source = self.moves[item.id][0] if item.id in self.moves else item.path
        if source is not None and source != target:
            self.moves[item.id] = (source, target)
        item.path = target
        item.stage = stage
        update_phases(self.board, item.id, stage)
        return target

    def archive_item(self, item: WorkItem, directory: Path) -> Path:
        target = directory / item.filename
        source = self.moves[item.id][0] if item.id in self.moves else item.path
        if source is not None:
            self.moves[item.id] = (source, target)
        item.path = target
        remove_item(self.board, item.id)
        archived = self.board.setdefault("archived", [])
        if item.id not in archived:
            archived.append(item.id)
        return target

    def log(self, agent: Agent | str | None, message: str) -> None:
        self.activity.append((agent, message))


class BoardStore:
    BOARD_FILE = "board.json"
    ACTIVITY_FILE = "activity.log"
    LOCK_FILE = ".lock"

    def __init__(self, mission_dir: Path, *, lock_config: LockConfig | None = None) -> None:
        self.mission_dir = mission_dir.resolve()
        self.board_path = self.mission_dir / self.BOARD_FILE
        self.archive_root = self.mission_dir / "archive"
        lock_config = lock_config or LockConfig()
        self.lock = StoreLock(
            self.mission_dir / self.LOCK_FILE,
            timeout_seconds=lock_config.timeout_seconds,
            initial_backoff_seconds=lock_config.initial_backoff_seconds,
            max_backoff_seconds=lock_config.max_backoff_seconds,
            stale_seconds=lock_config.stale_seconds,
        )
        self.activity = ActivityLog(self.mission_dir / self.ACTIVITY_FILE)

    def exists(self) -> bool:
        return self.board_path.exists()

    def stage_dir(self, stage: Stage) -> Path:
        return self.mission_dir / str(stage)

    def ensure_stage_directories(self) -> None:
        for stage in STAGE_ORDER:
            self.stage_dir(stage).mkdir(parents=True, exist_ok=True)
        self.archive_root.mkdir(parents=True, exist_ok=True)

    def read_board(self) -> dict[str, Any]:
        try:
            raw = self.board_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise BoardNotFoundError("No mission found. Run `board init` first.") from exc
        try:
            board = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreCorruptedError(
                f"Board document {self.board_path} is not valid JSON: {exc}"
            ) from exc
        if not isinstance(board, dict):
            raise StoreCorruptedError(f"Board document {self.board_path} is not a JSON object")
        return board

    def write_board(self, board: dict[str, Any]) -> None:
        board["revision"] = int(board.get("revision") or 0) + 1
        board["updated_at"] = utcnow_iso()
        atomic_write_text(self.board_path, json.dumps(board, ensure_ascii=False, indent=2) + "\n")

    @contextmanager
    def transaction(self) -> Iterator[BoardTransaction]:
        with self.lock.hold():
            tx = BoardTransaction(store=self, board=self.read_board())
            yield tx
            if not tx.discarded:
                self.commit(tx)

    def commit(self, tx: BoardTransaction) -> None:
        self.write_board(tx.board)
        for item_id, item in tx.saves.items():
            path = tx.moves[item_id][0] if item_id in tx.moves else item.path
            if path is None:
                continue
            atomic_write_text(path, item.to_text())
        for item_id, (source, target) in tx.moves.items():
            self._relocate(item_id, source, target)
        for agent, message in tx.activity:
            self.activity.append(agent, message)

    def _relocate(self, item_id: str, source: Path, target: Path) -> None:
        if source == target:
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.replace(source, target)
        except FileNotFoundError:
            if not target.exists():
                logger.warning("Item %s file %s missing; reconcile required", item_id, source)
        except OSError as exc:
            logger.warning("Item %s could not be moved to %s: %s", item_id, target, exc)

    def find_item_file(self, item_id: str) -> Path | None:
        for stage in STAGE_ORDER:
            stage_dir = self.stage_dir(stage)
            if not stage_dir.is_dir():
                continue
            for path in sorted(stage_dir.glob(f"{item_id}-*.md")):
                return path
            candidate = stage_dir / f"{item_id}.md"
            if candidate.exists():
                return candidate
        return None

    def read_item_file(self, path: Path, stage: Stage) -> WorkItem:
        try:
            return WorkItem.from_text(path.read_text(encoding="utf-8"), stage=stage, path=path)
        except yaml.YAMLError as exc:
            raise StoreCorruptedError(f"Item file {path} has invalid front matter: {exc}") from exc

    def load_item(self, item_id: str, board: dict[str, Any] | None = None) -> WorkItem:
        """Load an item; the board's phase list decides its stage."""
        path = self.find_item_file(item_id)
        if path is None:
            raise ItemNotFoundError(item_id)
        file_stage = Stage(path.parent.name)
        stage = stage_of(board, item_id) if board is not None else None
        return self.read_item_file(path, stage or file_stage)

    def _read_listed(self, path: Path, stage: Stage, wanted: Stage | None) -> WorkItem | None:
        """Read a globbed item file; a file moved since the scan is looked up again."""
        try:
            return self.read_item_file(path, stage)
        except FileNotFoundError:
            item_id = path.stem.split("-", 1)[0]
            moved = self.find_item_file(item_id)
            logger.debug("Item file %s moved during scan; now at %s", path, moved)
            if moved is None:
                return None
            moved_stage = Stage(moved.parent.name)
            if wanted is not None and moved_stage is not wanted:
                return None
            try:
                return self.read_item_file(moved, moved_stage)
            except FileNotFoundError:
                return None

    def list_items(self, stage: Stage | None = None) -> list[WorkItem]:
        """Lock-free scan of item files; each id appears at most once."""
        stages = (stage,) if stage is not None else STAGE_ORDER
        items: list[WorkItem] = []
        seen: set[str] = set()
        for current in stages:
            stage_dir = self.stage_dir(current)
            if not stage_dir.is_dir():
                continue
            for path in sorted(stage_dir.glob("*.md")):
                item = self._read_listed(path, current, stage)
                if item is None or item.id in seen:
                    continue
                seen.add(item.id)
                items.append(item)
        return items

    def reconcile(self, tx: BoardTransaction) -> list[dict[str, str]]:
        """Bring file locations and phase lists back into agreement (board wins)."""
        fixes: list[dict[str, str]] = []
        on_disk = {item.id: item for item in self.list_items()}
        seen: set[str] = set()
        for stage in STAGE_ORDER:
            for item_id in list(phase_list(tx.board, stage)):
                if item_id in seen:
                    phase_list(tx.board, stage).remove(item_id)
                    fixes.append(
                        {"item": item_id, "issue": "duplicate_phase_entry", "stage": str(stage)}
                    )
                    continue
                seen.add(item_id)
                item = on_disk.get(item_id)
                if item is None:
                    fixes.append({"item": item_id, "issue": "missing_file", "stage": str(stage)})
                    continue
                if item.stage is not stage:
                    tx.move_item(item, stage)
                    fixes.append({"item": item_id, "issue": "relocated", "stage": str(stage)})
        for item_id, item in on_disk.items():
            if item_id not in seen:
                update_phases(tx.board, item_id, item.stage)
                fixes.append({"item": item_id, "issue": "adopted", "stage": str(item.stage)})
        refresh_stats(tx.board)
        for fix in fixes:
            logger.warning("Reconcile: %s", fix)
        return fixes
