"""fleetflow コマンドラインインターフェース。"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from importlib import import_module
import json
import logging
from pathlib import Path
from typing import Any, NoReturn

import click
from dotenv import load_dotenv
import typer

from .checkpoint import CheckpointStore
from .errors import FleetFlowError, ValidationError
from .loader import Definition, load_definitions
from .models import FleetDef
from .observability import JsonlLogger
from .persistence import FileBackend
from .registry import Registry
from .runtime import RunStatus, Runtime
from .workflow import WorkflowDef

LOGGER = logging.getLogger(__name__)

CHECKPOINT_FILE = "checkpoints.json"

app = typer.Typer(add_completion=False, help="Fleet coordination and workflow runner")


def _exit_with(code: int) -> NoReturn:
    raise typer.Exit(code)


def _describe(definition: Definition) -> str:
    if isinstance(definition, FleetDef):
        mode = definition.coordination.mode.value
        return f"fleet {definition.name}: mode={mode} members={len(definition.members)}"
    return (
        f"workflow {definition.name}: entrypoint={definition.entrypoint} "
        f"steps={len(definition.steps)} connections={len(definition.connections)}"
    )


def _report_validation(exc: ValidationError) -> None:
    typer.echo(f"error: {exc}", err=True)
    for issue in exc.issues:
        typer.echo(f"  - {issue}", err=True)


def _load_env(path: Path | None) -> None:
    if path is None:
        return
    if not path.exists():
        typer.echo(f"error: env file not found: {path}", err=True)
        _exit_with(2)
    load_dotenv(path, override=False)
    LOGGER.info("loaded env file %s", path)


def _load_agents(factory_ref: str) -> Mapping[str, Any]:
    module_name, _, attribute = factory_ref.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter("expected 'module:factory'", param_hint="--agents")
    try:
        factory = getattr(import_module(module_name), attribute)
    except (ImportError, AttributeError) as exc:
        raise typer.BadParameter(f"cannot import {factory_ref}: {exc}", param_hint="--agents") from exc
    agents = factory() if callable(factory) else factory
    if not isinstance(agents, Mapping):
        raise typer.BadParameter(f"{factory_ref} did not return a mapping of agents", param_hint="--agents")
    return agents


def _parse_input(raw: str | None) -> Any:
    if raw is None:
        return None
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text(encoding="utf-8")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"input is not valid JSON: {exc}", param_hint="--input") from exc


def _pick_target(definitions: Sequence[Definition], target: str | None) -> Definition:
    if target is not None:
        for definition in definitions:
            if definition.name == target:
                return definition
        raise typer.BadParameter(f"no definition named {target!r}", param_hint="--target")
    workflows = [definition for definition in definitions if isinstance(definition, WorkflowDef)]
    if len(workflows) == 1:
        return workflows[0]
    if not workflows and len(definitions) == 1:
        return definitions[0]
    raise typer.BadParameter("several definitions found; choose one with --target", param_hint="--target")


def _checkpoint_store(directory: Path | None) -> CheckpointStore | None:
    if directory is None:
        return None
    directory.mkdir(parents=True, exist_ok=True)
    return CheckpointStore(FileBackend(directory / CHECKPOINT_FILE))


def _build_runtime(
    definitions: Sequence[Definition],
    agents: Mapping[str, Any],
    *,
    log_jsonl: Path | None,
    checkpoint_dir: Path | None,
) -> Runtime:
    registry = Registry(agents=agents)
    for definition in definitions:
        if isinstance(definition, FleetDef):
            registry.register_fleet(definition)
        else:
            registry.register_workflow(definition)
    return Runtime(
        registry,
        event_logger=JsonlLogger(log_jsonl) if log_jsonl is not None else None,
        checkpoints=_checkpoint_store(checkpoint_dir),
    )


def _print_status(status: RunStatus) -> None:
    typer.echo(json.dumps(status.to_dict(), ensure_ascii=False, indent=2, default=str))


async def _run_to_end(runtime: Runtime, target: Definition, payload: Any) -> RunStatus:
    try:
        return await runtime.run(target, payload)
    finally:
        await runtime.shutdown(close_registry=True)


async def _resume_to_end(runtime: Runtime, run_id: str) -> RunStatus:
    try:
        runtime.resume(run_id)
        return await runtime.wait(run_id)
    finally:
        await runtime.shutdown(close_registry=True)


@app.callback()
def _root(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)


@app.command()
def validate(
    paths: list[Path] = typer.Argument(..., help="Fleet or workflow definition files."),
) -> None:
    """定義ファイルを検証し、概要を表示します。"""

    failed = False
    for path in paths:
        try:
            definitions = load_definitions(path)
        except ValidationError as exc:
            failed = True
            _report_validation(exc)
            continue
        for definition in definitions:
            typer.echo(f"{path}: {_describe(definition)}")
    if failed:
        _exit_with(2)


@app.command()
def run(
    definition: Path = typer.Argument(..., help="Definition file holding the fleet or workflow."),
    agents: str = typer.Option(..., "--agents", help="module:factory returning {name: capability}."),
    input_json: str | None = typer.Option(None, "--input", help="JSON input, or @file."),
    target: str | None = typer.Option(None, "--target", help="Definition name to run."),
    env: Path | None = typer.Option(None, "--env", help=".env file to load first."),
    log_jsonl: Path | None = typer.Option(None, "--log-jsonl", help="Append events to this file."),
    checkpoint_dir: Path | None = typer.Option(None, "--checkpoint-dir", help="Checkpoint directory."),
) -> None:
    """フリートまたはワークフローを 1 回実行し、最終状態を JSON で表示します。"""

    _load_env(env)
    try:
        definitions = load_definitions(definition)
    except ValidationError as exc:
        _report_validation(exc)
        _exit_with(2)
    chosen = _pick_target(definitions, target)
    runtime = _build_runtime(
        definitions,
        _load_agents(agents),
        log_jsonl=log_jsonl,
        checkpoint_dir=checkpoint_dir,
    )
    try:
        status = asyncio.run(_run_to_end(runtime, chosen, _parse_input(input_json)))
    except ValidationError as exc:
        _report_validation(exc)
        _exit_with(2)
    _print_status(status)
    _exit_with(0 if status.status == "completed" else 1)


@app.command()
def resume(
    run_id: str = typer.Argument(..., help="Workflow run to continue."),
    definition: Path = typer.Option(..., "--definition", help="Definition file of the workflow."),
    agents: str = typer.Option(..., "--agents", help="module:factory returning {name: capability}."),
    checkpoint_dir: Path = typer.Option(..., "--checkpoint-dir", help="Checkpoint directory."),
    env: Path | None = typer.Option(None, "--env", help=".env file to load first."),
    log_jsonl: Path | None = typer.Option(None, "--log-jsonl", help="Append events to this file."),
) -> None:
    """チェックポイントからワークフローを再開します。"""

    _load_env(env)
    try:
        definitions = load_definitions(definition)
    except ValidationError as exc:
        _report_validation(exc)
        _exit_with(2)
    runtime = _build_runtime(
        definitions,
        _load_agents(agents),
        log_jsonl=log_jsonl,
        checkpoint_dir=checkpoint_dir,
    )
    try:
        status = asyncio.run(_resume_to_end(runtime, run_id))
    except (FleetFlowError, LookupError) as exc:
        typer.echo(f"error: {exc}", err=True)
        _exit_with(2)
    _print_status(status)
    _exit_with(0 if status.status == "completed" else 1)


@app.command()
def checkpoints(
    run_id: str = typer.Argument(..., help="Workflow run id."),
    checkpoint_dir: Path = typer.Option(..., "--checkpoint-dir", help="Checkpoint directory."),
) -> None:
    """保存済みチェックポイントを古い順に表示します。"""

    path = checkpoint_dir / CHECKPOINT_FILE
    entries = CheckpointStore(FileBackend(path)).list(run_id) if path.exists() else []
    if not entries:
        typer.echo(f"no checkpoints for {run_id}", err=True)
        _exit_with(1)
    for checkpoint in entries:
        typer.echo(
            json.dumps(
                {
                    "sequence": checkpoint.sequence,
                    "checkpoint_id": checkpoint.checkpoint_id,
                    "step_id": checkpoint.step_id,
                    "status": checkpoint.status,
                    "phase": checkpoint.metadata.get("phase"),
                    "created_at": checkpoint.created_at,
                },
                ensure_ascii=False,
            )
        )


def main(argv: list[str] | None = None) -> int:
    try:
        result = app(args=list(argv) if argv is not None else None, standalone_mode=False)
    except typer.Exit as exc:  # pragma: no cover - click は通常 exit code を返す
        return int(exc.exit_code or 0)
    except click.ClickException as exc:
        exc.show()
        return exc.exit_code
    except click.exceptions.Abort:
        return 1
    return result if isinstance(result, int) else 0


__all__ = ["app", "main"]
