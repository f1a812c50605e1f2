from __future__ import annotations

import copy
import json
import logging
import os
import re
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any

from missionboard.config import BoardConfig
from missionboard.errors import ExistingMissionError, InvalidStageError, ValidationError
from missionboard.items import WorkItem, slugify
from missionboard.render import render_mission_summary
from missionboard.requests import optional_agent
from missionboard.stages import STAGE_ORDER, Agent, Stage
from missionboard.state.store import (
    BoardStore,
    atomic_write_text,
    elapsed_ms,
    new_board,
    phase_list,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
FINAL_REVIEW_VERDICTS = ("approved", "rejected")


class MissionService:
    """Mission lifecycle: init, quality checks, archival and final review."""

    def __init__(
        self, store: BoardStore, config: BoardConfig | None = None, *, repo_root: Path
    ) -> None:
        self.store = store
        self.config = config or BoardConfig.default()
        self.repo_root = repo_root

    def init(self, name: str | None = None, *, force: bool = False) -> dict[str, Any]:
        mission_name = (name or "").strip() or self.config.mission.default_name
        self.store.mission_dir.mkdir(parents=True, exist_ok=True)
        with self.store.lock.hold():
            previous: dict[str, Any] | None = None
            if self.store.exists():
                board = self.store.read_board()
                if not force:
                    mission = board.get("mission") or {}
                    existing = mission.get("name") or board.get("project") or "unnamed"
                    stats = board.get("stats") or {}
                    total = int(stats.get("total_items") or 0)
                    completed = int(stats.get("completed") or 0)
                    raise ExistingMissionError(
                        f'Existing mission found: "{existing}" ({completed}/{total} complete). '
                        "Use --force to archive and start fresh.",
                        details={
                            "existingMission": {
                                "name": existing,
                                "total": total,
                                "completed": completed,
                                "status": mission.get("status") or "unknown",
                            }
                        },
                    )
                previous = self._archive_existing(board)

            self.store.ensure_stage_directories()
            board = new_board(mission_name, self.config.wip.limits())
            self.store.write_board(board)
            self.store.activity.reset(f"Mission initialized: {mission_name}", Agent.HANNIBAL)

        logger.info("Initialized mission %s in %s", mission_name, self.store.mission_dir)
        result: dict[str, Any] = {
            "success": True,
            "mission": board["mission"],
            "missionDir": str(self.store.mission_dir),
            "archived": previous is not None,
        }
        if previous is not None:
            result["previousMission"] = previous
        return result

    def _archive_existing(self, board: dict[str, Any]) -> dict[str, Any]:
        mission = board.get("mission") or {}
        name = mission.get("name") or board.get("project") or "unnamed-mission"
        archive_dir = self.store.archive_root / f"{slugify(name)}-{int(time.time() * 1000)}"
        archive_dir.mkdir(parents=True, exist_ok=True)

        count = 0
        for stage in STAGE_ORDER:
            stage_dir = self.store.stage_dir(stage)
            if not stage_dir.is_dir():
                continue
            for path in sorted(stage_dir.glob("*.md")):
                os.replace(path, archive_dir / path.name)
                count += 1
        if self.store.activity.path.exists():
            os.replace(self.store.activity.path, archive_dir / self.store.ACTIVITY_FILE)
        os.replace(self.store.board_path, archive_dir / self.store.BOARD_FILE)

        stats = board.get("stats") or {}
        info = "\n".join(
            [
                f"# Archived Mission: {name}",
                "",
                f"**Archived:** {utcnow_iso()}",
                f"**Items:** {count}",
                f"**Status:** {mission.get('status') or 'unknown'}",
                "",
                "## Final Stats",
                f"- Completed: {stats.get('completed') or 0}",
                f"- Blocked: {stats.get('blocked') or 0}",
                f"- Rejected: {stats.get('rejected_count') or 0}",
                "",
            ]
        )
        atomic_write_text(archive_dir / "_archive-info.md", info)
        logger.info("Archived previous mission %s to %s", name, archive_dir)
        return {"name": name, "archiveDir": str(archive_dir), "itemCount": count}

    def archive(
        self,
        item_ids: list[str] | None = None,
        *,
        complete: bool = False,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Move ``done`` items into the mission's archive directory.

        With ``complete`` the mission is closed as well: a ``_summary.md``
        report is written, the activity log is rotated into the archive and a
        snapshot of the board is kept beside it. ``dry_run`` reports what would
        happen without touching the store.
        """
        with self.store.transaction() as tx:
            board = tx.board
            mission = board.setdefault("mission", {})
            name = mission.get("name") or board.get("project") or "mission"
            archive_dir = self.store.archive_root / slugify(name)
            done_ids = list(phase_list(board, Stage.DONE))

            if item_ids:
                unknown = [item_id for item_id in item_ids if item_id not in done_ids]
                if unknown:
                    raise ValidationError(
                        f"Items not in done stage: {', '.join(unknown)}",
                        details={"items": unknown},
                    )
                selected = list(dict.fromkeys(item_ids))
            else:
                selected = done_ids

            if not selected and not complete:
                tx.discard()
                return {"success": True, "archived": 0, "message": "No items to archive"}

            if dry_run:
                tx.discard()
                return {
                    "success": True,
                    "dryRun": True,
                    "wouldArchive": len(selected),
                    "items": selected,
                    "destination": str(archive_dir),
                    "complete": complete,
                }

            items: list[WorkItem] = [tx.load_item(item_id) for item_id in selected]
            end_time = utcnow_iso()
            before_archive: dict[str, Any] = {}
            if complete:
                mission["status"] = "completed"
                if not mission.get("completed_at"):
                    mission["completed_at"] = end_time
                    mission["duration_ms"] = elapsed_ms(
                        mission.get("started_at") or mission.get("created_at"), end_time
                    )
                before_archive = copy.deepcopy(board)
            for item in items:
                tx.archive_item(item, archive_dir)
            archive_dir.mkdir(parents=True, exist_ok=True)

            result: dict[str, Any] = {
                "success": True,
                "archived": len(items),
                "items": [item.id for item in items],
                "destination": str(archive_dir),
            }
            tx.log(Agent.HANNIBAL, f"Archived {len(items)} items to {archive_dir.name}/")

            if complete:
                summary = render_mission_summary(
                    before_archive,
                    items,
                    end_time,
                    max_rejections=self.config.workflow.max_rejections,
                )
                atomic_write_text(archive_dir / "_summary.md", summary)
                self.store.activity.rotate(archive_dir / self.store.ACTIVITY_FILE)
                atomic_write_text(
                    archive_dir / self.store.BOARD_FILE,
                    json.dumps(board, ensure_ascii=False, indent=2) + "\n",
                )
                tx.log(Agent.HANNIBAL, "Mission complete. I love it when a plan comes together.")
                result["missionCompleted"] = True
                result["summary"] = str(archive_dir / "_summary.md")
        return result

    def _run_command(self, command: str) -> dict[str, Any]:
        command_text = command.strip()
        used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
        command_payload: str | list[str] = command_text
        if not used_shell:
            try:
                command_payload = shlex.split(command_text)
            except ValueError:
                used_shell = True
                command_payload = command_text

        try:
            proc = subprocess.run(
                command_payload,
                cwd=self.repo_root,
                shell=used_shell,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            return {
                "command": command,
                "exit_code": 127,
                "stdout_tail": "",
                "stderr_tail": str(exc),
                "used_shell": used_shell,
            }
        return {
            "command": command,
            "exit_code": proc.returncode,
            "stdout_tail": proc.stdout.strip()[-1000:],
            "stderr_tail": proc.stderr.strip()[-1000:],
            "used_shell": used_shell,
        }

    def _run_checks(self, names: list[str]) -> dict[str, Any]:
        results: list[dict[str, Any]] = []
        skipped: list[str] = []
        for name in names:
            command = self.config.checks.command_for(name)
            if command is None:
                logger.info("Skipping %s (not configured)", name)
                skipped.append(name)
                continue
            logger.info("Running %s: %s", name, command)
            outcome = self._run_command(command)
            outcome["name"] = name
            outcome["passed"] = outcome["exit_code"] == 0
            if not outcome["passed"]:
                logger.warning("Check %s failed with exit code %s", name, outcome["exit_code"])
            results.append(outcome)
        all_passed = all(result["passed"] for result in results)
        return {
            "success": all_passed,
            "allPassed": all_passed,
            "checks": results,
            "skipped": skipped,
        }

    def precheck(self) -> dict[str, Any]:
        return self._run_checks(list(self.config.checks.precheck))

    def postcheck(self) -> dict[str, Any]:
        report = self._run_checks(list(self.config.checks.postcheck))
        if not self.store.exists():
            logger.warning("No board found; postcheck results not recorded")
            return report
        with self.store.transaction() as tx:
            tx.board.setdefault("mission", {})["postcheck"] = {
                "timestamp": utcnow_iso(),
                "passed": report["allPassed"],
                "checks": [
                    {"name": result["name"], "passed": result["passed"]}
                    for result in report["checks"]
                ],
            }
            outcome = "passed" if report["allPassed"] else "failed"
            tx.log(Agent.HANNIBAL, f"Postcheck {outcome}")
        return report

    def record_final_review(
        self,
        verdict: str,
        *,
        agent: str | Agent | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        normalized = verdict.strip().lower()
        if normalized not in FINAL_REVIEW_VERDICTS:
            raise ValidationError(
                f"verdict must be one of: {', '.join(FINAL_REVIEW_VERDICTS)}",
                details={"verdict": verdict},
            )
        reviewer = optional_agent(agent) or Agent.LYNCH
        with self.store.transaction() as tx:
            mission = tx.board.setdefault("mission", {})
            if not mission.get("completed_at"):
                raise InvalidStageError(
                    "Final review is only possible once every item is done",
                    details={"stats": tx.board.get("stats") or {}},
                )
            now = utcnow_iso()
            mission["final_review_verdict"] = normalized
            mission["final_review"] = {
                "verdict": normalized,
                "agent": reviewer.display_name,
                "reviewed_at": now,
            }
            if notes:
                mission["final_review"]["notes"] = notes
            tx.log(reviewer, f"Final Mission Review: {normalized.upper()}")
        return {"success": True, "verdict": normalized, "reviewedAt": now}
