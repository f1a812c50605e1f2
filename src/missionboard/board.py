from __future__ import annotations

import logging
from typing import Any

from missionboard.config import BoardConfig
from missionboard.errors import (
    AgentRequiredError,
    AlreadyClaimedError,
    DependencyBlockedError,
    DependencyCycleError,
    DuplicateIdError,
    InvalidAgentError,
    InvalidStageError,
    InvalidTransitionError,
    ValidationError,
    WipLimitExceededError,
)
from missionboard.graph import DependencyReport, GraphNode, analyze, find_cycles_with
from missionboard.items import (
    WorkItem,
    append_context,
    append_work_log_note,
    build_body,
    check_acceptance,
    item_filename,
    next_item_id,
    replace_acceptance,
    set_objective,
)
from missionboard.requests import (
    CompleteItemRequest,
    CreateItemRequest,
    UpdateItemRequest,
    optional_agent,
    require_agent,
)
from missionboard.rules import check_dependencies, check_wip_limit, validate_transition
from missionboard.stages import (
    AGENT_STAGES,
    CLAIMABLE_STAGES,
    STAGE_ORDER,
    Agent,
    Stage,
    agent_from_display,
    parse_item_type,
    parse_stage,
)
from missionboard.state.store import (
    BoardStore,
    elapsed_ms,
    phase_list,
    refresh_stats,
    stage_of,
    update_phases,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

# Dependencies gate forward progress only; parking or recycling an item never waits.
UNGATED_TARGETS = frozenset({Stage.READY, Stage.BLOCKED})
FINISHED_ASSIGNMENT_STATUSES = frozenset({"completed", "failed"})


def require_stage(value: str | Stage, *, field_name: str = "stage") -> Stage:
    try:
        return parse_stage(value)
    except ValueError as exc:
        raise InvalidStageError(
            f"Invalid {field_name}: {value}. Valid stages: {', '.join(STAGE_ORDER)}",
            details={"stage": str(value), "valid": [str(stage) for stage in STAGE_ORDER]},
        ) from exc


def _same_agent(display: str | None, agent: Agent) -> bool:
    return display is not None and agent_from_display(display) is agent


class BoardService:
    """Every board mutation runs as one locked read-modify-write on ``BoardStore``."""

    def __init__(self, store: BoardStore, config: BoardConfig | None = None) -> None:
        self.store = store
        self.config = config or BoardConfig.default()

    @staticmethod
    def _assignments(board: dict[str, Any]) -> dict[str, dict[str, Any]]:
        return board.setdefault("assignments", {})

    @staticmethod
    def _set_agent(board: dict[str, Any], display: str, status: str, item_id: str | None) -> None:
        board.setdefault("agents", {})[display] = {"status": status, "current_item": item_id}

    def _idle_if_free(self, board: dict[str, Any], display: str) -> None:
        still_held = [
            item_id
            for item_id, assignment in self._assignments(board).items()
            if assignment.get("agent") == display
            and assignment.get("status") not in FINISHED_ASSIGNMENT_STATUSES
        ]
        if still_held:
            self._set_agent(board, display, "active", still_held[0])
        else:
            self._set_agent(board, display, "idle", None)

    def _drop_assignment(self, board: dict[str, Any], item_id: str) -> dict[str, Any] | None:
        assignment = self._assignments(board).pop(item_id, None)
        if assignment and assignment.get("agent"):
            self._idle_if_free(board, assignment["agent"])
        return assignment

    def _assign(
        self,
        board: dict[str, Any],
        item_id: str,
        agent: Agent,
        *,
        status: str,
        task_id: str | None,
        now: str,
    ) -> dict[str, Any]:
        assignment: dict[str, Any] = {"agent": agent.display_name, "started_at": now}
        if task_id:
            assignment["task_id"] = task_id
        self._assignments(board)[item_id] = assignment
        self._set_agent(board, agent.display_name, status, item_id)
        return assignment

    @staticmethod
    def _history(board: dict[str, Any], item_id: str) -> list[dict[str, Any]]:
        return board.setdefault("history", {}).setdefault(item_id, [])

    def _close_stage(
        self,
        board: dict[str, Any],
        item_id: str,
        source: Stage,
        previous: dict[str, Any] | None,
        now: str,
    ) -> None:
        if previous and previous.get("agent"):
            self._history(board, item_id).append(
                {
                    "stage": str(source),
                    "agent": previous["agent"],
                    "started_at": previous.get("started_at"),
                    "completed_at": now,
                    "duration_ms": elapsed_ms(previous.get("started_at"), now),
                }
            )
        else:
            self._history(board, item_id).append({"stage": str(source), "completed_at": now})

    @staticmethod
    def _all_done(board: dict[str, Any]) -> bool:
        done = phase_list(board, Stage.DONE)
        return bool(done) and all(
            not phase_list(board, stage) for stage in STAGE_ORDER if stage is not Stage.DONE
        )

    def claim(self, item_id: str, agent: str | Agent, *, task_id: str | None = None) -> dict:
        actor = require_agent(agent)
        with self.store.transaction() as tx:
            item = tx.load_item(item_id)
            if item.stage not in CLAIMABLE_STAGES:
                raise InvalidStageError(
                    f"Cannot claim item in stage: {item.stage}",
                    item_id=item_id,
                    details={
                        "stage": str(item.stage),
                        "claimable": [
                            str(stage) for stage in STAGE_ORDER if stage in CLAIMABLE_STAGES
                        ],
                    },
                )
            current = self._assignments(tx.board).get(item_id)
            if (
                current
                and current.get("agent")
                and current.get("status") not in FINISHED_ASSIGNMENT_STATUSES
            ):
                holder = current["agent"]
                if not _same_agent(holder, actor):
                    raise AlreadyClaimedError(
                        f"Item {item_id} already claimed by {holder}",
                        item_id=item_id,
                        details={"holder": holder},
                    )
                tx.discard()
                return {
                    "success": True,
                    "itemId": item_id,
                    "agent": holder,
                    "claimed": True,
                    "alreadyHeld": True,
                }
            now = utcnow_iso()
            assignment = self._assign(
                tx.board, item_id, actor, status="active", task_id=task_id, now=now
            )
            item.assigned_agent = actor.display_name
            tx.save_item(item)
            tx.log(Agent.HANNIBAL, f"Assigned {item_id} to {actor.display_name}")
        return {
            "success": True,
            "itemId": item_id,
            "agent": actor.display_name,
            "claimed": True,
            "claimedAt": assignment["started_at"],
            "stage": str(item.stage),
        }

    def release(
        self, item_id: str, *, agent: str | Agent | None = None, reason: str | None = None
    ) -> dict:
        expected = optional_agent(agent)
        with self.store.transaction() as tx:
            current = self._assignments(tx.board).get(item_id)
            if not current:
                tx.discard()
                return {
                    "success": True,
                    "itemId": item_id,
                    "released": False,
                    "message": "Item was not claimed",
                }
            holder = current.get("agent")
            if expected is not None and not _same_agent(holder, expected):
                raise InvalidAgentError(
                    f"Item {item_id} is claimed by {holder}, not {expected.display_name}",
                    item_id=item_id,
                    details={"holder": holder},
                )
            self._drop_assignment(tx.board, item_id)
            if self.store.find_item_file(item_id) is not None:
                item = tx.load_item(item_id)
                if item.assigned_agent:
                    item.assigned_agent = None
                    tx.save_item(item)
            message = f"Released {item_id} from {holder}"
            if reason:
                message += f": {reason}"
            tx.log(expected or Agent.HANNIBAL, message)
        return {"success": True, "itemId": item_id, "released": True, "agent": holder}

    def move(
        self,
        item_id: str,
        to_stage: str | Stage,
        *,
        agent: str | Agent | None = None,
        task_id: str | None = None,
    ) -> dict:
        target = require_stage(to_stage, field_name="target stage")
        actor = optional_agent(agent)
        if target in AGENT_STAGES and actor is None:
            raise AgentRequiredError(
                f"Moving to {target} requires an agent",
                item_id=item_id,
                details={"stage": str(target)},
            )
        with self.store.transaction() as tx:
            item = tx.load_item(item_id)
            source = item.stage
            check = validate_transition(source, target)
            if not check.legal:
                raise InvalidTransitionError(
                    check.message,
                    item_id=item_id,
                    details={
                        "from": str(source),
                        "to": str(target),
                        "allowed": [str(stage) for stage in check.allowed_next],
                    },
                )
            wip = check_wip_limit(tx.board, target)
            if not wip.allowed:
                raise WipLimitExceededError(
                    f"WIP limit reached for {target}: {wip.current}/{wip.limit}",
                    item_id=item_id,
                    details={"stage": str(target), "current": wip.current, "limit": wip.limit},
                )
            if target not in UNGATED_TARGETS:
                pending = check_dependencies(tx.board, item.dependencies)
                if pending:
                    raise DependencyBlockedError(
                        f"Item {item_id} is waiting on dependencies: {', '.join(pending)}",
                        item_id=item_id,
                        details={"pending": pending},
                    )

            now = utcnow_iso()
            previous = self._drop_assignment(tx.board, item_id)
            if previous or not (source in AGENT_STAGES or target in AGENT_STAGES):
                self._close_stage(tx.board, item_id, source, previous, now)
            if item.assigned_agent:
                item.assigned_agent = None
                tx.save_item(item)
            path = tx.move_item(item, target)

            if target in AGENT_STAGES and actor is not None:
                self._assign(tx.board, item_id, actor, status="working", task_id=task_id, now=now)
                item.assigned_agent = actor.display_name
                tx.save_item(item)
                mission = tx.board.setdefault("mission", {})
                if not mission.get("started_at"):
                    mission["started_at"] = now
                    mission["status"] = "active"
            tx.log(actor or Agent.HANNIBAL, f"Feature {item_id} → {target}")

            final_review_ready = False
            if target is Stage.DONE and self._all_done(tx.board):
                final_review_ready = True
                mission = tx.board.setdefault("mission", {})
                if not mission.get("completed_at"):
                    mission["completed_at"] = now
                    mission["duration_ms"] = elapsed_ms(
                        mission.get("started_at") or mission.get("created_at"), now
                    )
                tx.log(Agent.HANNIBAL, "All items complete - Final Mission Review ready")

        result = {
            "success": True,
            "itemId": item_id,
            "from": str(source),
            "to": str(target),
            "path": str(path),
            "wip": wip.to_dict(),
        }
        if final_review_ready:
            result["finalReviewReady"] = True
        return result

    def reject(
        self,
        item_id: str,
        reason: str,
        *,
        agent: str | Agent | None = None,
        issues: list[str] | None = None,
    ) -> dict:
        if not reason or not reason.strip():
            raise ValidationError("Missing required field: reason", item_id=item_id)
        reviewer = optional_agent(agent) or Agent.LYNCH
        threshold = max(1, int(self.config.workflow.max_rejections))
        with self.store.transaction() as tx:
            item = tx.load_item(item_id)
            source = item.stage
            if source is Stage.DONE:
                raise InvalidStageError(
                    f"Cannot reject item {item_id}: it is already done",
                    item_id=item_id,
                    details={"stage": str(source)},
                )
            now = utcnow_iso()
            item.rejection_count += 1
            entry: dict[str, Any] = {
                "date": now,
                "agent": reviewer.display_name,
                "reason": reason,
            }
            if issues:
                entry["issues"] = list(issues)
            item.rejection_history.append(entry)
            escalated = item.rejection_count >= threshold
            target = Stage.BLOCKED if escalated else Stage.READY
            item.status = "blocked" if escalated else "pending"
            item.assigned_agent = None

            previous = self._drop_assignment(tx.board, item_id)
            if previous:
                self._close_stage(tx.board, item_id, source, previous, now)
            tx.save_item(item)
            path = tx.move_item(item, target)
            stats = refresh_stats(tx.board)
            stats["rejected_count"] = int(stats.get("rejected_count") or 0) + 1

            if escalated:
                tx.log(reviewer, f"REJECTED {item_id} (escalated to blocked): {reason}")
                tx.log(Agent.HANNIBAL, f"ALERT: Item {item_id} requires human intervention")
            else:
                tx.log(
                    reviewer,
                    f"REJECTED {item_id} ({item.rejection_count}/{threshold}): {reason}",
                )
        return {
            "success": True,
            "itemId": item_id,
            "rejectionCount": item.rejection_count,
            "maxRejections": threshold,
            "escalated": escalated,
            "from": str(source),
            "to": str(target),
            "path": str(path),
        }

    def create_item(self, request: CreateItemRequest | dict[str, Any]) -> dict:
        if not isinstance(request, CreateItemRequest):
            request = CreateItemRequest.from_dict(request)
        self.store.ensure_stage_directories()
        with self.store.transaction() as tx:
            item_id = request.id or next_item_id(tx.board)
            if stage_of(tx.board, item_id) or item_id in (tx.board.get("archived") or []):
                raise DuplicateIdError(f"Item {item_id} already exists", item_id=item_id)
            if self.store.find_item_file(item_id) is not None:
                raise DuplicateIdError(
                    f"Item {item_id} already exists on disk", item_id=item_id
                )
            graph = tx.board.setdefault("dependency_graph", {})
            self._guard_cycles(graph, item_id, request.dependencies)

            item = WorkItem(
                id=item_id,
                title=request.title,
                type=str(request.type),
                status="pending",
                dependencies=list(request.dependencies),
                parallel_group=request.parallel_group,
                outputs=request.outputs,
                estimate=request.estimate,
                content=build_body(request.objective, request.acceptance, request.context),
                stage=Stage.BRIEFINGS,
                path=self.store.stage_dir(Stage.BRIEFINGS) / item_filename(item_id, request.title),
            )
            tx.save_item(item)
            update_phases(tx.board, item_id, Stage.BRIEFINGS)
            graph[item_id] = list(request.dependencies)
            if request.parallel_group:
                group = tx.board.setdefault("parallel_groups", {}).setdefault(
                    request.parallel_group, []
                )
                group.append(item_id)
            known = {value for ids in (tx.board.get("phases") or {}).values() for value in ids}
            known.update(tx.board.get("archived") or [])
            missing = [dep for dep in request.dependencies if dep not in known]
            for dep in missing:
                logger.warning("Item %s depends on non-existent item %s", item_id, dep)
            tx.log(Agent.FACE, f"Created item {item_id}: {request.title}")

        result: dict[str, Any] = {
            "success": True,
            "itemId": item_id,
            "path": str(item.path),
            "stage": str(Stage.BRIEFINGS),
        }
        if missing:
            result["warnings"] = [
                f"Item {item_id} depends on non-existent item {dep}" for dep in missing
            ]
        return result

    def _guard_cycles(self, graph: dict[str, list[str]], item_id: str, deps: list[str]) -> None:
        if item_id in deps:
            raise DependencyCycleError(
                f"Item {item_id} cannot depend on itself",
                item_id=item_id,
                details={"cycles": [[item_id, item_id]]},
            )
        if not self.config.workflow.strict_dependencies:
            return
        cycles = find_cycles_with(graph, item_id, deps)
        if cycles:
            rendered = "; ".join(" -> ".join(cycle) for cycle in cycles)
            raise DependencyCycleError(
                f"Dependencies of {item_id} would create a cycle: {rendered}",
                item_id=item_id,
                details={"cycles": cycles},
            )

    def update_item(self, item_id: str, updates: UpdateItemRequest | dict[str, Any]) -> dict:
        if not isinstance(updates, UpdateItemRequest):
            updates = UpdateItemRequest.from_dict(updates)
        with self.store.transaction() as tx:
            item = tx.load_item(item_id)
            changed: list[str] = []
            old_group = item.parallel_group
            for key, value in updates.fields.items():
                if key == "dependencies":
                    self._guard_cycles(tx.board.setdefault("dependency_graph", {}), item_id, value)
                if key == "type":
                    value = str(parse_item_type(value))
                setattr(item, key, value)
                changed.append(key)
            if updates.objective is not None:
                item.content = set_objective(item.content, updates.objective)
                changed.append("objective")
            if updates.acceptance is not None:
                item.content = replace_acceptance(item.content, updates.acceptance)
                changed.append("acceptance")
            if updates.check_acceptance is not None:
                index, checked = updates.check_acceptance
                item.content, toggled = check_acceptance(item.content, index, checked)
                if not toggled:
                    raise ValidationError(
                        f"Item {item_id} has no acceptance criterion at index {index}",
                        item_id=item_id,
                    )
                changed.append("acceptance")
            if updates.context is not None:
                item.content = append_context(item.content, updates.context)
                changed.append("context")

            if "dependencies" in updates.fields:
                tx.board.setdefault("dependency_graph", {})[item_id] = list(item.dependencies)
            if "parallel_group" in updates.fields and old_group != item.parallel_group:
                groups = tx.board.setdefault("parallel_groups", {})
                if old_group and old_group in groups:
                    groups[old_group] = [value for value in groups[old_group] if value != item_id]
                    if not groups[old_group]:
                        del groups[old_group]
                if item.parallel_group:
                    groups.setdefault(item.parallel_group, []).append(item_id)
            tx.save_item(item)
            changed = list(dict.fromkeys(changed))
            tx.log(Agent.FACE, f"Updated item {item_id}: {', '.join(changed)}")
        return {"success": True, "itemId": item_id, "updated": changed, "path": str(item.path)}

    def complete_item(self, item_id: str, request: CompleteItemRequest | dict[str, Any]) -> dict:
        if not isinstance(request, CompleteItemRequest):
            request = CompleteItemRequest.from_dict(request)
        display = request.agent.display_name
        with self.store.transaction() as tx:
            item = tx.load_item(item_id)
            if item.stage not in CLAIMABLE_STAGES:
                raise InvalidStageError(
                    f"Cannot complete item in stage: {item.stage}",
                    item_id=item_id,
                    details={"stage": str(item.stage)},
                )
            now = utcnow_iso()
            assignments = self._assignments(tx.board)
            assignment = assignments.get(item_id) or {"agent": display, "started_at": now}
            assignment.update(
                {
                    "completed_at": now,
                    "status": "completed" if request.status == "success" else "failed",
                    "message": request.summary,
                }
            )
            assignments[item_id] = assignment
            self._idle_if_free(tx.board, display)

            entry: dict[str, Any] = {
                "agent": display,
                "timestamp": now,
                "status": request.status,
                "summary": request.summary,
            }
            if request.files_created:
                entry["files_created"] = list(request.files_created)
            if request.files_modified:
                entry["files_modified"] = list(request.files_modified)
            item.work_log.append(entry)
            item.content = append_work_log_note(item.content, f"{display} - {request.summary}")
            item.assigned_agent = None
            tx.save_item(item)
            marker = "✓" if request.status == "success" else "✗"
            tx.log(request.agent, f"{marker} {item_id}: {request.summary}")
        return {
            "success": True,
            "itemId": item_id,
            "agent": display,
            "status": request.status,
            "completedAt": now,
        }

    def reconcile(self) -> dict:
        with self.store.transaction() as tx:
            fixes = self.store.reconcile(tx)
            if not fixes:
                tx.discard()
            else:
                tx.log(Agent.SYSTEM, f"Reconciled {len(fixes)} board inconsistencies")
        return {"success": True, "fixes": fixes}

    def get_item(self, item_id: str) -> WorkItem:
        board = self.store.read_board()
        return self.store.load_item(item_id, board)

    def read_board(
        self,
        *,
        stage: str | Stage | None = None,
        item_id: str | None = None,
        include_agents: bool = False,
    ) -> dict:
        board = self.store.read_board()
        if item_id:
            return {"item": self.store.load_item(item_id, board).to_dict()}
        if stage is not None:
            column = require_stage(stage)
            return {
                "column": str(column),
                "items": [
                    {"id": item.id, "title": item.title, "path": str(item.path)}
                    for item in self.store.list_items(column)
                ],
            }
        stats = board.get("stats") or {}
        result: dict[str, Any] = {
            "mission": board.get("mission") or {},
            "phases": board.get("phases") or {},
            "stats": stats,
            "progress": {
                "done": stats.get("completed", 0),
                "total": stats.get("total_items", 0),
            },
            "wip": {
                "current": stats.get("in_flight", 0),
                "limits": board.get("wip_limits") or {},
            },
            "revision": board.get("revision", 0),
        }
        if include_agents:
            result["agents"] = board.get("agents") or {}
            result["assignments"] = board.get("assignments") or {}
        return result

    def list_items(
        self,
        *,
        stage: str | Stage | None = None,
        item_type: str | None = None,
        agent: str | Agent | None = None,
    ) -> list[dict]:
        column = require_stage(stage) if stage is not None else None
        wanted_agent = optional_agent(agent)
        board = self.store.read_board()
        assignments = board.get("assignments") or {}
        items: list[dict] = []
        for item in self.store.list_items(column):
            if item_type and item.type != item_type:
                continue
            if wanted_agent is not None:
                holder = item.assigned_agent or (assignments.get(item.id) or {}).get("agent")
                if not _same_agent(holder, wanted_agent):
                    continue
            items.append(
                {
                    "id": item.id,
                    "title": item.title,
                    "type": item.type,
                    "stage": str(stage_of(board, item.id) or item.stage),
                    "status": item.status,
                    "assigned_agent": item.assigned_agent,
                    "dependencies": list(item.dependencies),
                    "path": str(item.path),
                }
            )
        return items

    def dependency_report(self, *, strict: bool | None = None) -> DependencyReport:
        if strict is None:
            strict = self.config.workflow.strict_dependencies
        board = self.store.read_board() if self.store.exists() else {}
        nodes = [
            GraphNode(
                id=item.id,
                dependencies=list(item.dependencies),
                stage=stage_of(board, item.id) or item.stage,
                title=item.title,
            )
            for item in self.store.list_items()
        ]
        present = {node.id for node in nodes}
        nodes.extend(
            GraphNode(id=item_id, stage=Stage.DONE)
            for item_id in board.get("archived") or []
            if item_id not in present
        )
        return analyze(nodes, strict=strict)
