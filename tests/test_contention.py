import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from missionboard.board import BoardService
from missionboard.config import BoardConfig
from missionboard.errors import AlreadyClaimedError
from missionboard.mission import MissionService
from missionboard.state import BoardStore

AGENTS = ["face", "murdock", "ba", "lynch", "amy", "sosa"]


def _config() -> BoardConfig:
    config = BoardConfig.default()
    config.lock.timeout_seconds = 30.0
    config.lock.initial_backoff_seconds = 0.001
    config.lock.max_backoff_seconds = 0.01
    return config


def _service(root: Path, config: BoardConfig) -> BoardService:
    # Each worker gets its own store and lock, as separate processes would.
    store = BoardStore(root / config.mission.dir, lock_config=config.lock)
    return BoardService(store, config)


def _payload(title: str) -> dict[str, Any]:
    return {
        "title": title,
        "type": "task",
        "objective": f"Finish {title}",
        "acceptance": ["Finished"],
    }


def _run_together(tasks: list[Callable[[], Any]]) -> list[Any]:
    barrier = threading.Barrier(len(tasks))
    results: list[Any] = [None] * len(tasks)

    def run(index: int, task: Callable[[], Any]) -> None:
        barrier.wait()
        try:
            results[index] = task()
        except Exception as exc:
            results[index] = exc

    threads = [threading.Thread(target=run, args=pair) for pair in enumerate(tasks)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results


def _init(tmp_path: Path, config: BoardConfig) -> BoardService:
    service = _service(tmp_path, config)
    MissionService(service.store, config, repo_root=tmp_path).init("Crowded")
    return service


def test_concurrent_creates_lose_no_updates(tmp_path: Path) -> None:
    config = _config()
    first = _init(tmp_path, config)
    before = first.store.read_board()["revision"]
    workers = [_service(tmp_path, config) for _ in AGENTS]

    results = _run_together(
        [
            lambda worker=worker, n=n: worker.create_item(_payload(f"Item {n}"))
            for n, worker in enumerate(workers)
        ]
    )

    assert not [result for result in results if isinstance(result, Exception)]
    ids = sorted(result["itemId"] for result in results)
    assert ids == [f"{n:03d}" for n in range(1, len(AGENTS) + 1)]
    board = first.store.read_board()
    assert board["revision"] == before + len(AGENTS)
    assert sorted(board["phases"]["briefings"]) == ids
    assert board["stats"]["total_items"] == len(AGENTS)
    assert len(first.store.list_items()) == len(AGENTS)


def test_concurrent_claims_have_exactly_one_winner(tmp_path: Path) -> None:
    config = _config()
    first = _init(tmp_path, config)
    item_id = first.create_item(_payload("Contested"))["itemId"]
    first.move(item_id, "ready")
    workers = [_service(tmp_path, config) for _ in AGENTS]

    results = _run_together(
        [
            lambda worker=worker, agent=agent: worker.claim(item_id, agent)
            for worker, agent in zip(workers, AGENTS)
        ]
    )

    winners = [result for result in results if isinstance(result, dict)]
    losers = [result for result in results if isinstance(result, AlreadyClaimedError)]
    assert len(winners) == 1
    assert len(losers) == len(AGENTS) - 1
    holder = winners[0]["agent"]
    assert first.store.read_board()["assignments"][item_id]["agent"] == holder
    assert all(loser.details["holder"] == holder for loser in losers)
    assert first.get_item(item_id).assigned_agent == holder
