import tomllib
from pathlib import Path

import pytest

from missionboard import __version__
from missionboard.config import BoardConfig, dumps_toml, load_config, save_config
from missionboard.errors import ValidationError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "missionboard.toml"
    config = BoardConfig.default()
    config.mission.dir = "ops"
    config.lock.timeout_seconds = 1.5
    config.workflow.max_rejections = 3
    config.workflow.strict_dependencies = True
    config.wip.set_limit("implementing", 6)
    config.wip.set_limit("review", None)
    config.checks.e2e = "npx playwright test"
    config.checks.postcheck = ["lint", "unit", "e2e"]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.mission.dir == "ops"
    assert loaded.mission.default_name == "New Mission"
    assert loaded.lock.timeout_seconds == 1.5
    assert loaded.workflow.max_rejections == 3
    assert loaded.workflow.strict_dependencies is True
    assert loaded.wip.limits() == {
        "testing": 3,
        "implementing": 6,
        "review": None,
        "probing": 3,
    }
    assert loaded.checks.e2e == "npx playwright test"
    assert loaded.checks.postcheck == ["lint", "unit", "e2e"]


def test_missing_config_file_falls_back_to_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.workflow.max_rejections == 2
    assert loaded.workflow.strict_dependencies is False
    assert loaded.wip.limits() == {"testing": 3, "implementing": 4, "review": 3, "probing": 3}


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(BoardConfig.default())

    for section in ("[mission]", "[lock]", "[workflow]", "[wip]", "[checks]"):
        assert section in rendered
    assert "stale_seconds" in rendered
    assert "strict_dependencies = false" in rendered
    assert 'precheck = ["lint", "unit"]' in rendered


def test_disabled_check_commands_resolve_to_none() -> None:
    checks = BoardConfig.default().checks
    checks.e2e = ""
    checks.lint = "None"

    assert checks.command_for("e2e") is None
    assert checks.command_for("lint") is None
    assert checks.command_for("unit") == "pytest -q"
    assert checks.command_for("smoke") is None


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


def test_wip_section_accepts_any_stage_and_unlimited(tmp_path: Path) -> None:
    config_path = tmp_path / "missionboard.toml"
    config_path.write_text(
        '[wip]\nready = 2\nreview = "none"\nprobing = -1\n', encoding="utf-8"
    )

    limits = load_config(config_path).wip.limits()

    assert limits["ready"] == 2
    assert limits["review"] is None
    assert limits["probing"] is None
    assert limits["testing"] == 3


@pytest.mark.parametrize(
    "body",
    [
        "[wip]\nparking = 2\n",
        "[wip]\ntesting = true\n",
        "[wip]\ntesting = 1.5\n",
        "[lock]\ntimeout = 3\n",
        "[wip\ntesting = 3\n",
    ],
)
def test_broken_config_raises_validation_error(tmp_path: Path, body: str) -> None:
    config_path = tmp_path / "missionboard.toml"
    config_path.write_text(body, encoding="utf-8")

    with pytest.raises(ValidationError) as exc_info:
        load_config(config_path)

    assert exc_info.value.exit_code == 11
    assert exc_info.value.details["config"] == str(config_path)
