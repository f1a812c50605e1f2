from pathlib import Path

import pytest

from missionboard.board import BoardService
from missionboard.errors import (
    AgentRequiredError,
    AlreadyClaimedError,
    DependencyBlockedError,
    DependencyCycleError,
    DuplicateIdError,
    InvalidAgentError,
    InvalidStageError,
    InvalidTransitionError,
    ItemNotFoundError,
    ValidationError,
    WipLimitExceededError,
)
from missionboard.stages import Stage
from missionboard.state import BoardStore

PIPELINE = [
    ("ready", None),
    ("testing", "murdock"),
    ("implementing", "ba"),
    ("review", "lynch"),
    ("probing", "amy"),
    ("done", None),
]


def _create(service: BoardService, title: str, **fields: object) -> str:
    payload = {
        "title": title,
        "type": "feature",
        "objective": f"Deliver {title}",
        "acceptance": ["It works"],
    }
    payload.update(fields)
    return service.create_item(payload)["itemId"]


def _advance(service: BoardService, item_id: str, until: str = "done") -> dict:
    names = [name for name, _ in PIPELINE]
    current = str(service.get_item(item_id).stage)
    start = names.index(current) + 1 if current in names else 0
    result: dict = {}
    for stage, agent in PIPELINE[start:]:
        result = service.move(item_id, stage, agent=agent)
        if stage == until:
            break
    return result


def _wip_limit(store: BoardStore, stage: str, limit: int | None) -> None:
    with store.transaction() as tx:
        tx.board["wip_limits"][stage] = limit


def test_create_item_writes_briefing_and_updates_board(
    service: BoardService, store: BoardStore
) -> None:
    result = service.create_item(
        {
            "title": "Login form",
            "type": "feature",
            "objective": "Let users sign in",
            "acceptance": ["Renders", "Submits"],
            "outputs": {"test": "tests/test_login.py", "impl": "app/login.py"},
            "parallel_group": "auth",
        }
    )

    assert result["itemId"] == "001"
    path = Path(result["path"])
    assert path.parent.name == "briefings"
    assert path.name == "001-login-form.md"
    assert "- [ ] Submits" in path.read_text(encoding="utf-8")

    board = store.read_board()
    assert board["phases"]["briefings"] == ["001"]
    assert board["stats"]["total_items"] == 1
    assert board["dependency_graph"] == {"001": []}
    assert board["parallel_groups"] == {"auth": ["001"]}
    assert store.activity.read()[-1].message == "Created item 001: Login form"


def test_create_item_rejects_duplicates_and_bad_input(service: BoardService) -> None:
    _create(service, "First", id="005")

    with pytest.raises(DuplicateIdError) as duplicate:
        _create(service, "Again", id="005")
    assert duplicate.value.exit_code == 12

    with pytest.raises(ValidationError) as invalid:
        service.create_item({"type": "rocket", "id": "12", "acceptance": "nope"})
    errors = invalid.value.errors
    assert "Missing required field: title" in errors
    assert any(error.startswith("type must be one of") for error in errors)
    assert any("Invalid ID format" in error for error in errors)
    assert "acceptance must be an array" in errors
    assert invalid.value.exit_code == 11


def test_missing_dependencies_are_a_warning_not_an_error(service: BoardService) -> None:
    result = service.create_item(
        {
            "title": "Early bird",
            "type": "task",
            "objective": "Exists before its dependency",
            "acceptance": ["ok"],
            "dependencies": ["042"],
        }
    )

    assert result["warnings"] == ["Item 001 depends on non-existent item 042"]
    report = service.dependency_report()
    assert report.valid is True
    assert report.depths == {"001": 0}
    assert [error.dependency for error in report.validation_errors] == ["042"]
    assert service.dependency_report(strict=True).valid is False


def test_scenario_claim_conflict_cites_holder(service: BoardService, store: BoardStore) -> None:
    item_id = _create(service, "Claimable")
    service.move(item_id, "ready")

    claimed = service.claim(item_id, "face")
    assert claimed["agent"] == "Face"

    with pytest.raises(AlreadyClaimedError) as exc_info:
        service.claim(item_id, "murdock")
    assert "Face" in exc_info.value.message
    assert exc_info.value.details == {"holder": "Face"}
    assert exc_info.value.exit_code == 23

    revision = store.read_board()["revision"]
    again = service.claim(item_id, "Face")
    assert again["alreadyHeld"] is True
    assert store.read_board()["revision"] == revision

    board = store.read_board()
    assert board["assignments"][item_id]["agent"] == "Face"
    assert board["agents"]["Face"] == {"status": "active", "current_item": item_id}
    assert service.get_item(item_id).assigned_agent == "Face"


def test_claim_outside_claimable_stages_is_rejected(service: BoardService) -> None:
    item_id = _create(service, "Still a briefing")

    with pytest.raises(InvalidStageError):
        service.claim(item_id, "face")
    with pytest.raises(ValidationError):
        service.claim(item_id, "templeton")
    with pytest.raises(ItemNotFoundError):
        service.claim("404", "face")


def test_release_without_claim_is_idempotent(service: BoardService, store: BoardStore) -> None:
    item_id = _create(service, "Nobody holds me")
    revision = store.read_board()["revision"]

    first = service.release(item_id)
    second = service.release(item_id)

    assert first["released"] is False
    assert second["released"] is False
    assert store.read_board()["revision"] == revision


def test_release_checks_holder_and_idles_agent(service: BoardService, store: BoardStore) -> None:
    item_id = _create(service, "Held")
    service.move(item_id, "ready")
    service.claim(item_id, "murdock")

    with pytest.raises(InvalidAgentError) as exc_info:
        service.release(item_id, agent="ba")
    assert exc_info.value.details == {"holder": "Murdock"}

    result = service.release(item_id, agent="murdock", reason="handing off")
    assert result["released"] is True
    board = store.read_board()
    assert item_id not in board["assignments"]
    assert board["agents"]["Murdock"]["status"] == "idle"
    assert service.get_item(item_id).assigned_agent is None
    assert store.activity.read()[-1].message == f"Released {item_id} from Murdock: handing off"


def test_scenario_dependency_blocks_until_done(service: BoardService) -> None:
    x = _create(service, "Foundation")
    y = _create(service, "Builds on foundation")
    _advance(service, y, until="implementing")
    service.update_item(y, {"dependencies": [x]})

    with pytest.raises(DependencyBlockedError) as exc_info:
        service.move(y, "review", agent="lynch")
    assert exc_info.value.details == {"pending": [x]}
    assert exc_info.value.exit_code == 24

    _advance(service, x)
    result = service.move(y, "review", agent="lynch")

    assert result["to"] == "review"
    assert service.get_item(y).stage is Stage.REVIEW


def test_dependencies_never_block_parking_an_item(service: BoardService) -> None:
    x = _create(service, "Upstream")
    y = _create(service, "Downstream")
    _advance(service, y, until="ready")
    service.update_item(y, {"dependencies": [x]})

    with pytest.raises(DependencyBlockedError):
        service.move(y, "testing", agent="murdock")
    assert service.move(y, "blocked")["to"] == "blocked"
    assert service.move(y, "ready")["to"] == "ready"


def test_scenario_three_cycle_invalidates_report(service: BoardService) -> None:
    _create(service, "A", id="001", dependencies=["002"])
    _create(service, "B", id="002", dependencies=["003"])
    _create(service, "C", id="003", dependencies=["001"])

    report = service.dependency_report()

    assert report.valid is False
    assert len(report.cycles) == 1
    assert set(report.cycles[0]) == {"001", "002", "003"}
    assert len(report.cycles[0]) == 4


def test_strict_mode_refuses_cycles_on_create(
    service: BoardService, store: BoardStore
) -> None:
    service.config.workflow.strict_dependencies = True
    _create(service, "A", id="001", dependencies=["002"])

    with pytest.raises(DependencyCycleError) as exc_info:
        _create(service, "B", id="002", dependencies=["001"])

    assert exc_info.value.exit_code == 28
    assert store.read_board()["phases"]["briefings"] == ["001"]


def test_self_dependency_is_always_refused(service: BoardService) -> None:
    with pytest.raises(DependencyCycleError):
        _create(service, "Ouroboros", id="001", dependencies=["001"])


def test_scenario_wip_limit_frees_up_when_item_leaves(
    service: BoardService, store: BoardStore
) -> None:
    first = _create(service, "First")
    second = _create(service, "Second")
    _advance(service, first, until="ready")
    _advance(service, second, until="ready")
    _wip_limit(store, "testing", 1)

    service.move(first, "testing", agent="murdock")
    with pytest.raises(WipLimitExceededError) as exc_info:
        service.move(second, "testing", agent="murdock")
    assert exc_info.value.details["current"] == 1
    assert exc_info.value.details["limit"] == 1
    assert exc_info.value.exit_code == 22

    service.move(first, "implementing", agent="ba")
    assert service.move(second, "testing", agent="murdock")["to"] == "testing"


def test_move_checks_agent_before_anything_else(service: BoardService) -> None:
    with pytest.raises(AgentRequiredError) as exc_info:
        service.move("999", "testing")
    assert exc_info.value.exit_code == 25

    with pytest.raises(ItemNotFoundError):
        service.move("999", "ready")


def test_move_rejects_illegal_transitions(service: BoardService) -> None:
    item_id = _create(service, "Skipper")

    with pytest.raises(InvalidTransitionError) as exc_info:
        service.move(item_id, "implementing", agent="ba")
    assert exc_info.value.details["allowed"] == ["ready"]

    with pytest.raises(InvalidStageError):
        service.move(item_id, "shipping")


def test_move_tracks_assignment_history_and_file_location(
    service: BoardService, store: BoardStore
) -> None:
    item_id = _create(service, "Tracked")
    service.move(item_id, "ready")
    service.move(item_id, "testing", agent="murdock", task_id="task-1")

    board = store.read_board()
    assert board["assignments"][item_id]["agent"] == "Murdock"
    assert board["assignments"][item_id]["task_id"] == "task-1"
    assert board["agents"]["Murdock"]["status"] == "working"
    assert board["mission"]["status"] == "active"
    assert board["mission"]["started_at"]
    item = service.get_item(item_id)
    assert item.assigned_agent == "Murdock"
    assert item.path is not None and item.path.parent.name == "testing"

    service.move(item_id, "implementing", agent="ba")

    board = store.read_board()
    history = board["history"][item_id]
    assert history[0] == {"stage": "briefings", "completed_at": history[0]["completed_at"]}
    assert history[-1]["stage"] == "testing"
    assert history[-1]["agent"] == "Murdock"
    assert history[-1]["duration_ms"] >= 0
    assert board["agents"]["Murdock"]["status"] == "idle"
    assert board["assignments"][item_id]["agent"] == "B.A."
    assert not list(store.stage_dir(Stage.TESTING).glob("*.md"))
    assert "Feature" in store.activity.read()[-1].message


def test_last_item_done_announces_final_review(service: BoardService, store: BoardStore) -> None:
    first = _create(service, "One")
    second = _create(service, "Two")

    assert "finalReviewReady" not in _advance(service, first)
    result = _advance(service, second)

    assert result["finalReviewReady"] is True
    board = store.read_board()
    assert board["mission"]["completed_at"]
    assert board["mission"]["duration_ms"] >= 0
    assert board["stats"]["completed"] == 2
    assert board["assignments"] == {}
    messages = [entry.message for entry in store.activity.read()]
    assert "All items complete - Final Mission Review ready" in messages

    with pytest.raises(InvalidStageError):
        service.reject(second, "too late")


def test_rejection_threshold_escalates_to_blocked(
    service: BoardService, store: BoardStore
) -> None:
    item_id = _create(service, "Fragile")
    _advance(service, item_id, until="review")

    first = service.reject(item_id, "Missing edge cases", issues=["empty input"])
    assert first["rejectionCount"] == 1
    assert first["escalated"] is False
    assert service.get_item(item_id).stage is Stage.READY

    second = service.reject(item_id, "Still missing edge cases", agent="lynch")
    assert second["rejectionCount"] == 2
    assert second["escalated"] is True

    item = service.get_item(item_id)
    assert item.stage is Stage.BLOCKED
    assert item.status == "blocked"
    assert item.rejection_history[0]["issues"] == ["empty input"]
    board = store.read_board()
    assert board["stats"]["rejected_count"] == 2
    assert board["phases"]["blocked"] == [item_id]
    assert item_id not in board["assignments"]
    messages = [entry.message for entry in store.activity.read()]
    assert f"ALERT: Item {item_id} requires human intervention" in messages

    with pytest.raises(ValidationError):
        service.reject(item_id, "   ")


def test_complete_item_records_work_log(service: BoardService, store: BoardStore) -> None:
    item_id = _create(service, "Implemented")
    _advance(service, item_id, until="implementing")

    result = service.complete_item(
        item_id,
        {
            "agent": "ba",
            "status": "success",
            "summary": "Implemented handler",
            "files_created": ["app/handler.py"],
        },
    )

    assert result["agent"] == "B.A."
    item = service.get_item(item_id)
    assert item.assigned_agent is None
    assert item.work_log[-1]["files_created"] == ["app/handler.py"]
    assert "B.A. - Implemented handler" in item.content.split("## Work Log", 1)[1]
    board = store.read_board()
    assert board["assignments"][item_id]["status"] == "completed"
    assert board["agents"]["B.A."]["status"] == "idle"

    service.claim(item_id, "murdock")

    with pytest.raises(ValidationError):
        service.complete_item(item_id, {"agent": "ba", "status": "maybe", "summary": "?"})


def test_update_item_syncs_board_indexes(service: BoardService, store: BoardStore) -> None:
    base = _create(service, "Base")
    item_id = _create(service, "Editable", parallel_group="wave-1")

    result = service.update_item(
        item_id,
        {
            "title": "Edited",
            "dependencies": [base],
            "parallel_group": "wave-2",
            "check_acceptance": {"index": 0, "checked": True},
            "context": "Extra notes",
        },
    )

    assert set(result["updated"]) == {
        "title",
        "dependencies",
        "parallel_group",
        "acceptance",
        "context",
    }
    board = store.read_board()
    assert board["dependency_graph"][item_id] == [base]
    assert board["parallel_groups"] == {"wave-2": [item_id]}
    item = service.get_item(item_id)
    assert item.title == "Edited"
    assert "- [x] It works" in item.content

    with pytest.raises(ValidationError):
        service.update_item(item_id, {})
    with pytest.raises(ValidationError):
        service.update_item(item_id, {"check_acceptance": {"index": 9}})


def test_queries_filter_items(service: BoardService) -> None:
    first = _create(service, "Alpha")
    _create(service, "Beta", type="bug")
    _advance(service, first, until="testing")

    assert [item["id"] for item in service.list_items(stage="testing")] == [first]
    assert [item["title"] for item in service.list_items(item_type="bug")] == ["Beta"]
    assert [item["id"] for item in service.list_items(agent="murdock")] == [first]

    summary = service.read_board(include_agents=True)
    assert summary["progress"] == {"done": 0, "total": 2}
    assert summary["wip"]["current"] == 1
    assert summary["agents"]["Murdock"]["current_item"] == first
    column = service.read_board(stage="briefings")
    assert [item["title"] for item in column["items"]] == ["Beta"]
    assert service.read_board(item_id=first)["item"]["stage"] == "testing"


def test_reconcile_repairs_a_stray_file(service: BoardService, store: BoardStore) -> None:
    item_id = _create(service, "Wanderer")
    service.move(item_id, "ready")
    path = service.get_item(item_id).path
    assert path is not None
    stray = store.stage_dir(Stage.BLOCKED) / path.name
    path.rename(stray)

    result = service.reconcile()

    assert result["fixes"] == [{"item": item_id, "issue": "relocated", "stage": "ready"}]
    assert (store.stage_dir(Stage.READY) / path.name).exists()
    assert service.reconcile()["fixes"] == []


def test_complete_item_requires_a_claimable_stage(
    service: BoardService, store: BoardStore
) -> None:
    item_id = _create(service, "Too early")

    with pytest.raises(InvalidStageError) as exc_info:
        service.complete_item(item_id, {"agent": "ba", "status": "success", "summary": "Done?"})

    assert exc_info.value.exit_code == 26
    assert item_id not in (store.read_board().get("assignments") or {})
    assert service.get_item(item_id).work_log == []


def test_scans_tolerate_items_moving_mid_read(
    service: BoardService, store: BoardStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    racy = _create(service, "Racy")
    steady = _create(service, "Steady", dependencies=[racy])
    read_item_file = store.read_item_file
    moved: list[Path] = []

    def move_then_read(path: Path, stage: Stage):
        if not moved and path.parent.name == "briefings" and path.name.startswith(f"{racy}-"):
            moved.append(path)
            service.move(racy, "ready")
        return read_item_file(path, stage)

    monkeypatch.setattr(store, "read_item_file", move_then_read)

    report = service.dependency_report()

    assert moved
    assert report.total_items == 2
    assert report.depths == {racy: 0, steady: 1}
    stages = {item["id"]: item["stage"] for item in service.list_items()}
    assert stages == {racy: "ready", steady: "briefings"}
