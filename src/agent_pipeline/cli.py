from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from loguru import logger

from agent_pipeline.config import (
    CONFIG_FILE,
    PipelineConfig,
    load_config,
    model_for_agent,
    save_config,
)
from agent_pipeline.errors import PipelineError
from agent_pipeline.manager import PipelineEvent, PipelineManager
from agent_pipeline.phases import Phase
from agent_pipeline.state import PipelineStore
from agent_pipeline.sync import AutoCompleter, StateWatcher
from agent_pipeline.worker import WorkerTools, find_workspace_root

MANUAL_COMPLETION_PLACEHOLDER = "[Phase completed manually by user - no output captured]"
LOG_FORMAT = "{time:HH:mm:ss} | {level: <7} | {message}"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: PipelineConfig
    store: PipelineStore
    manager: PipelineManager


def _configure_logging(debug: bool) -> None:
    logger.remove()
    logger.add(
        lambda message: click.echo(message, err=True, nl=False),
        level="DEBUG" if debug else "WARNING",
        format=LOG_FORMAT,
    )


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _read_config(config_path: Path) -> PipelineConfig:
    try:
        return load_config(config_path)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc


def _build_store(repo_root: Path, config: PipelineConfig) -> PipelineStore:
    return PipelineStore(repo_root, state_dir=config.pipeline.state_dir)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = _read_config(config_path)
    store = _build_store(repo_root, config)
    try:
        manager = PipelineManager(store)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        manager=manager,
    )


def _runtime_from_cwd(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _read_output_text(output: str | None, output_file: Path | None) -> str | None:
    if output is not None and output_file is not None:
        raise click.UsageError("Use either --output or --file, not both.")
    if output_file is not None:
        return output_file.read_text(encoding="utf-8")
    return output


def _status_payload(runtime: Runtime, *, verbose: bool) -> dict[str, Any]:
    manager = runtime.manager
    state = manager.state
    agent = manager.active_agent()
    history = [entry.to_dict() for entry in state.history]
    return {
        "phase": str(state.current_phase),
        "task": state.task_description,
        "active_agent": agent.name if agent else None,
        "model": model_for_agent(agent.name, runtime.config) if agent else None,
        "can_start": manager.can_start(),
        "can_approve": manager.can_approve(),
        "can_reject": manager.can_reject(),
        "outputs": sorted(state.outputs),
        "history": history if verbose else history[-5:],
        "created_at": state.created_at,
        "updated_at": state.updated_at,
    }


def _echo_event(event: PipelineEvent) -> None:
    if event.type == "phase_changed":
        click.echo(f"phase_changed: {event.phase}")
    elif event.type == "output_saved":
        click.echo(f"output_saved: {event.agent_name}")
    elif event.type == "pipeline_reset":
        click.echo("pipeline_reset")
    else:
        click.echo(f"error: {event.message}", err=True)


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(debug: bool) -> None:
    """Agent pipeline CLI."""
    _configure_logging(debug)


@cli.command("init")
@click.option("--no-auto-complete", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def init_command(no_auto_complete: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _read_config(config_path)
    if no_auto_complete:
        config.auto_complete.enabled = False
    save_config(config_path, config)

    store = _build_store(repo_root, config)
    try:
        store.ensure_dirs()
        if not store.state_file.exists():
            store.save(store.load())
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized agent pipeline in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {store.root}")
    click.echo(f"Auto-complete: {'on' if config.auto_complete.enabled else 'off'}")


@cli.command("start")
@click.argument("task")
@click.option(
    "--reset", "reset_first", is_flag=True, default=False, help="Reset a running pipeline first."
)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def start_command(task: str, reset_first: bool, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    task = task.strip()
    if not task:
        raise click.BadParameter("Task description must not be empty.", param_hint="TASK")
    try:
        if reset_first and not runtime.manager.can_start():
            runtime.manager.reset()
        runtime.manager.start(task)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc

    agent = runtime.manager.active_agent()
    click.echo(f"Pipeline started: {task}")
    if agent is not None:
        model = model_for_agent(agent.name, runtime.config)
        click.echo(f"Active agent: {agent.name} (model: {model})")


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def status_command(verbose: bool, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    payload = _status_payload(runtime, verbose=verbose)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("complete")
@click.option("--output", default=None, help="Output text of the active agent.")
@click.option(
    "--file",
    "output_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def complete_command(output: str | None, output_file: Path | None, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    if not runtime.manager.is_agent_active():
        raise click.ClickException("No active agent phase to complete.")
    content = _read_output_text(output, output_file) or MANUAL_COMPLETION_PLACEHOLDER
    try:
        phase = runtime.manager.save_output(content)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Phase completed. Now in: {phase}")


@cli.command("approve")
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def approve_command(config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    try:
        phase = runtime.manager.approve()
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    if phase == Phase.COMPLETED:
        click.echo("Pipeline completed.")
    else:
        click.echo(f"Approved. Now in: {phase}")


@cli.command("reject")
@click.option("--feedback", default=None, help="Feedback for the retried agent.")
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def reject_command(feedback: str | None, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    try:
        phase = runtime.manager.reject(feedback or None)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Rejected. Retrying: {phase}")


@cli.command("reset")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def reset_command(yes: bool, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    if not yes:
        click.confirm("Reset the entire pipeline? All outputs will be cleared.", abort=True)
    try:
        runtime.manager.reset()
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Pipeline reset.")


@cli.command("watch")
@click.option("--no-auto-complete", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILE, show_default=True)
def watch_command(no_auto_complete: bool, config_value: str) -> None:
    runtime = _runtime_from_cwd(config_value)
    manager = runtime.manager
    manager.subscribe(_echo_event)

    settings = runtime.config.auto_complete
    watcher = StateWatcher(manager, debounce_seconds=runtime.config.sync.reload_debounce_seconds)
    auto_complete = AutoCompleter(
        manager,
        enabled=settings.enabled and not no_auto_complete,
        debounce_seconds=settings.effective_debounce_seconds(),
        ignore_dirs=settings.ignore_dirs,
    )

    click.echo(f"Watching {runtime.store.root} (phase: {manager.current_phase}). Ctrl+C to stop.")
    with watcher, auto_complete:
        try:
            while True:
                time.sleep(0.5)
        except KeyboardInterrupt:
            click.echo("Stopped watching.")


@cli.group("worker")
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.pass_context
def worker_group(ctx: click.Context, workspace: Path | None) -> None:
    """Store-level tools for the autonomous worker process."""
    root = workspace.resolve() if workspace is not None else find_workspace_root()
    config = _read_config(root / CONFIG_FILE)
    ctx.obj = WorkerTools(_build_store(root, config))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@worker_group.command("get-task")
@click.pass_obj
def worker_get_task(tools: WorkerTools) -> None:
    _echo_json(tools.get_task())


@worker_group.command("get-outputs")
@click.option("--agent", "agent_name", default=None)
@click.pass_obj
def worker_get_outputs(tools: WorkerTools, agent_name: str | None) -> None:
    result = tools.get_outputs(agent_name)
    if agent_name:
        if result is None:
            click.echo(f'No output found for agent "{agent_name}".')
        else:
            click.echo(result)
        return
    _echo_json(result)


@worker_group.command("get-inputs")
@click.option("--agent", "agent_name", default=None, help="Defaults to the active agent.")
@click.pass_obj
def worker_get_inputs(tools: WorkerTools, agent_name: str | None) -> None:
    try:
        inputs = tools.get_inputs(agent_name)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(inputs)


@worker_group.command("save-output")
@click.argument("agent_name")
@click.option("--output", default=None)
@click.option(
    "--file",
    "output_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)
@click.pass_obj
def worker_save_output(
    tools: WorkerTools, agent_name: str, output: str | None, output_file: Path | None
) -> None:
    content = _read_output_text(output, output_file)
    if content is None:
        content = click.get_text_stream("stdin").read()
    try:
        phase = tools.save_output(agent_name, content)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f'Output saved for agent "{agent_name}". Pipeline moved to phase: {phase}.')


@worker_group.command("get-context")
@click.pass_obj
def worker_get_context(tools: WorkerTools) -> None:
    _echo_json(tools.get_context())


@worker_group.command("get-status")
@click.pass_obj
def worker_get_status(tools: WorkerTools) -> None:
    _echo_json(tools.get_status())
