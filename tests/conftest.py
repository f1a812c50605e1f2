from pathlib import Path

import pytest

from missionboard.board import BoardService
from missionboard.config import BoardConfig
from missionboard.mission import MissionService
from missionboard.state import BoardStore


@pytest.fixture
def config() -> BoardConfig:
    config = BoardConfig.default()
    config.lock.timeout_seconds = 0.5
    config.lock.initial_backoff_seconds = 0.005
    config.lock.max_backoff_seconds = 0.05
    return config


@pytest.fixture
def store(tmp_path: Path, config: BoardConfig) -> BoardStore:
    return BoardStore(tmp_path / config.mission.dir, lock_config=config.lock)


@pytest.fixture
def missions(tmp_path: Path, store: BoardStore, config: BoardConfig) -> MissionService:
    return MissionService(store, config, repo_root=tmp_path)


@pytest.fixture
def service(store: BoardStore, config: BoardConfig, missions: MissionService) -> BoardService:
    missions.init("Test Mission")
    return BoardService(store, config)
