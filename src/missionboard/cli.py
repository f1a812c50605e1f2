from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

import click

from missionboard.activity import display_agent
from missionboard.board import BoardService
from missionboard.config import DEFAULT_CONFIG_NAME, BoardConfig, load_config, save_config
from missionboard.errors import BoardError, ValidationError
from missionboard.mission import FINAL_REVIEW_VERDICTS, MissionService
from missionboard.render import render_item
from missionboard.requests import require_agent
from missionboard.stages import STAGE_ORDER, ItemType
from missionboard.state import BoardStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: BoardConfig
    store: BoardStore
    board: BoardService
    mission: MissionService


class BoardCommandError(click.ClickException):
    """Carries a ``BoardError`` out of a command as JSON on stderr plus its exit code."""

    def __init__(self, error: BoardError) -> None:
        super().__init__(error.message)
        self.error = error
        self.exit_code = error.exit_code

    def show(self, file: IO[Any] | None = None) -> None:
        payload = json.dumps(self.error.to_dict(), ensure_ascii=False, indent=2)
        click.echo(payload, file=file, err=file is None)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store = BoardStore(repo_root / config.mission.dir, lock_config=config.lock)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        board=BoardService(store, config),
        mission=MissionService(store, config, repo_root=repo_root),
    )


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@contextmanager
def _board_errors() -> Iterator[None]:
    try:
        yield
    except BoardError as exc:
        raise BoardCommandError(exc) from exc
    except Exception as exc:
        logger.debug("Unhandled error in command", exc_info=True)
        raise BoardCommandError(BoardError(str(exc))) from exc


def _read_json_input(input_file: IO[str] | None) -> dict[str, Any]:
    stream = input_file or click.get_text_stream("stdin")
    raw = stream.read()
    if not raw.strip():
        raise ValidationError("Expected a JSON object on stdin or via --input")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid JSON input: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("JSON input must be an object")
    return data


stage_choice = click.Choice([str(stage) for stage in STAGE_ORDER], case_sensitive=False)


@click.group()
@click.option(
    "--root",
    "root_value",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root holding the mission directory (default: cwd).",
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Debug logging on stderr.")
@click.pass_context
def cli(ctx: click.Context, root_value: Path | None, config_value: str, verbose: bool) -> None:
    """Mission board: stages, claims and dependencies for work items."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    repo_root = (root_value or Path.cwd()).resolve()
    with _board_errors():
        ctx.obj = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


pass_runtime = click.make_pass_decorator(Runtime)


@cli.command("init")
@click.option("--name", default=None, help="Mission name.")
@click.option("--force", is_flag=True, default=False, help="Archive an existing mission first.")
@pass_runtime
def init_command(runtime: Runtime, name: str | None, force: bool) -> None:
    with _board_errors():
        result = runtime.mission.init(name, force=force)
        if not runtime.config_path.exists():
            save_config(runtime.config_path, runtime.config)
            result["config"] = str(runtime.config_path)
    _emit(result)


@cli.command("precheck")
@pass_runtime
def precheck_command(runtime: Runtime) -> None:
    with _board_errors():
        report = runtime.mission.precheck()
    _emit(report)
    if not report["allPassed"]:
        sys.exit(1)


@cli.command("postcheck")
@pass_runtime
def postcheck_command(runtime: Runtime) -> None:
    with _board_errors():
        report = runtime.mission.postcheck()
    _emit(report)
    if not report["allPassed"]:
        sys.exit(1)


@cli.command("archive")
@click.option("--item", "item_ids", multiple=True, help="Archive only these done items.")
@click.option("--complete", is_flag=True, default=False, help="Close the mission as well.")
@click.option("--dry-run", is_flag=True, default=False)
@pass_runtime
def archive_command(
    runtime: Runtime, item_ids: tuple[str, ...], complete: bool, dry_run: bool
) -> None:
    with _board_errors():
        _emit(runtime.mission.archive(list(item_ids) or None, complete=complete, dry_run=dry_run))


@cli.command("final-review")
@click.argument("verdict", type=click.Choice(FINAL_REVIEW_VERDICTS, case_sensitive=False))
@click.option("--agent", default=None)
@click.option("--notes", default=None)
@pass_runtime
def final_review_command(
    runtime: Runtime, verdict: str, agent: str | None, notes: str | None
) -> None:
    with _board_errors():
        _emit(runtime.mission.record_final_review(verdict, agent=agent, notes=notes))


@cli.command("create")
@click.option("--input", "input_file", type=click.File("r", encoding="utf-8"), default=None)
@pass_runtime
def create_command(runtime: Runtime, input_file: IO[str] | None) -> None:
    """Create a work item from a JSON object."""
    with _board_errors():
        _emit(runtime.board.create_item(_read_json_input(input_file)))


@cli.command("update")
@click.option("--input", "input_file", type=click.File("r", encoding="utf-8"), default=None)
@pass_runtime
def update_command(runtime: Runtime, input_file: IO[str] | None) -> None:
    """Apply ``{"itemId": ..., "updates": {...}}`` to a work item."""
    with _board_errors():
        data = _read_json_input(input_file)
        item_id = data.get("itemId") or data.get("id")
        if not isinstance(item_id, str) or not item_id:
            raise ValidationError("Missing required field: itemId")
        updates = data.get("updates")
        if updates is None:
            updates = {key: value for key, value in data.items() if key not in {"itemId", "id"}}
        _emit(runtime.board.update_item(item_id, updates))


@cli.command("move")
@click.argument("item_id")
@click.argument("stage")
@click.option("--agent", default=None)
@click.option("--task-id", default=None)
@pass_runtime
def move_command(
    runtime: Runtime, item_id: str, stage: str, agent: str | None, task_id: str | None
) -> None:
    with _board_errors():
        _emit(runtime.board.move(item_id, stage, agent=agent, task_id=task_id))


@cli.command("claim")
@click.argument("item_id")
@click.argument("agent")
@click.option("--task-id", default=None)
@pass_runtime
def claim_command(runtime: Runtime, item_id: str, agent: str, task_id: str | None) -> None:
    with _board_errors():
        _emit(runtime.board.claim(item_id, agent, task_id=task_id))


@cli.command("release")
@click.argument("item_id")
@click.option("--agent", default=None)
@click.option("--reason", default=None)
@pass_runtime
def release_command(
    runtime: Runtime, item_id: str, agent: str | None, reason: str | None
) -> None:
    with _board_errors():
        _emit(runtime.board.release(item_id, agent=agent, reason=reason))


@cli.command("reject")
@click.argument("item_id")
@click.option("--reason", required=True)
@click.option("--agent", default=None)
@click.option("--issue", "issues", multiple=True)
@pass_runtime
def reject_command(
    runtime: Runtime, item_id: str, reason: str, agent: str | None, issues: tuple[str, ...]
) -> None:
    with _board_errors():
        _emit(runtime.board.reject(item_id, reason, agent=agent, issues=list(issues)))


@cli.command("complete")
@click.argument("item_id")
@click.argument("agent")
@click.option("--status", type=click.Choice(["success", "failed"]), required=True)
@click.option("--summary", required=True)
@click.option("--created", "files_created", multiple=True)
@click.option("--modified", "files_modified", multiple=True)
@pass_runtime
def complete_command(
    runtime: Runtime,
    item_id: str,
    agent: str,
    status: str,
    summary: str,
    files_created: tuple[str, ...],
    files_modified: tuple[str, ...],
) -> None:
    with _board_errors():
        _emit(
            runtime.board.complete_item(
                item_id,
                {
                    "agent": agent,
                    "status": status,
                    "summary": summary,
                    "files_created": list(files_created),
                    "files_modified": list(files_modified),
                },
            )
        )


@cli.command("render")
@click.argument("item_id")
@pass_runtime
def render_command(runtime: Runtime, item_id: str) -> None:
    with _board_errors():
        click.echo(render_item(runtime.board.get_item(item_id)))


@cli.command("read")
@click.option("--stage", type=stage_choice, default=None)
@click.option("--item", "item_id", default=None)
@click.option("--agents", "include_agents", is_flag=True, default=False)
@pass_runtime
def read_command(
    runtime: Runtime, stage: str | None, item_id: str | None, include_agents: bool
) -> None:
    if stage and item_id:
        raise click.UsageError("Use either --stage or --item, not both.")
    with _board_errors():
        _emit(
            runtime.board.read_board(stage=stage, item_id=item_id, include_agents=include_agents)
        )


@cli.command("list")
@click.option("--stage", type=stage_choice, default=None)
@click.option("--type", "item_type", type=click.Choice([str(kind) for kind in ItemType]))
@click.option("--agent", default=None)
@pass_runtime
def list_command(
    runtime: Runtime, stage: str | None, item_type: str | None, agent: str | None
) -> None:
    with _board_errors():
        items = runtime.board.list_items(stage=stage, item_type=item_type, agent=agent)
    _emit({"count": len(items), "items": items})


@cli.command("deps-check")
@click.option("--verbose", "show_graph", is_flag=True, default=False, help="Show waves and graph.")
@click.option("--strict", is_flag=True, default=False, help="Missing dependencies invalidate.")
@pass_runtime
def deps_check_command(runtime: Runtime, show_graph: bool, strict: bool) -> None:
    with _board_errors():
        report = runtime.board.dependency_report(strict=strict or None)
    _emit(report.to_dict(verbose=show_graph))
    if not report.valid:
        sys.exit(1)


@cli.command("log")
@click.argument("agent")
@click.argument("message", nargs=-1, required=True)
@pass_runtime
def log_command(runtime: Runtime, agent: str, message: tuple[str, ...]) -> None:
    """Append a line to the mission activity feed."""
    with _board_errors():
        display = display_agent(require_agent(agent))
        entry = runtime.store.activity.append(display, " ".join(message))
    _emit(
        {
            "success": True,
            "timestamp": entry.timestamp,
            "agent": entry.agent,
            "message": entry.message,
        }
    )


@cli.command("reconcile")
@pass_runtime
def reconcile_command(runtime: Runtime) -> None:
    """Repair drift between the board document and item file locations."""
    with _board_errors():
        _emit(runtime.board.reconcile())
