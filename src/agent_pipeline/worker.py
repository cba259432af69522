"""Tool surface for the autonomous worker process.

The worker runs in its own process and talks to the pipeline only through the
on-disk store. Output saves go through :func:`apply_output`, the same
transition the in-process manager uses, so both paths agree on the resulting
state. The controller notices these writes through its store watcher.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from loguru import logger

from agent_pipeline.context import project_context
from agent_pipeline.errors import InvalidTransitionError, UnknownAgentError
from agent_pipeline.manager import apply_output
from agent_pipeline.phases import Phase, agent_by_name, agent_for_phase
from agent_pipeline.state.store import DEFAULT_STATE_DIR, PipelineStore

WORKSPACE_ENV_VAR = "AGENT_PIPELINE_WORKSPACE"
WORKSPACE_MARKERS = (".git", "pyproject.toml", "package.json")

ContextProvider = Callable[[Path], dict[str, Any]]


def find_workspace_root(start: Path | None = None, *, state_dir: str = DEFAULT_STATE_DIR) -> Path:
    env_root = os.environ.get(WORKSPACE_ENV_VAR)
    if env_root and Path(env_root).is_dir():
        return Path(env_root).resolve()

    origin = (start or Path.cwd()).resolve()
    for directory in (origin, *origin.parents):
        if (directory / state_dir).exists():
            return directory
        if any((directory / marker).exists() for marker in WORKSPACE_MARKERS):
            return directory
    return origin


class WorkerTools:
    def __init__(
        self,
        store: PipelineStore,
        *,
        context_provider: ContextProvider = project_context,
    ) -> None:
        self.store = store
        self.context_provider = context_provider

    def get_task(self) -> dict[str, Any]:
        state = self.store.load()
        return {
            "taskDescription": state.task_description,
            "currentPhase": str(state.current_phase),
            "hasOutputs": len(state.outputs),
        }

    def get_outputs(self, agent_name: str | None = None) -> str | dict[str, str] | None:
        state = self.store.load()
        if agent_name:
            if agent_by_name(agent_name) is None:
                return None
            recorded = state.outputs.get(agent_name)
            if recorded:
                return recorded
            return self.store.read_output(agent_name)

        outputs = dict(state.outputs)
        for name, content in self.store.read_all_outputs().items():
            if not outputs.get(name):
                outputs[name] = content
        return outputs

    def get_inputs(self, agent_name: str | None = None) -> dict[str, str]:
        """Outputs of the agents whose work ``agent_name`` builds on.

        Defaults to the active agent. Inputs that have no output yet are left
        out; the result keeps pipeline order.
        """
        state = self.store.load()
        if agent_name:
            agent = agent_by_name(agent_name)
            if agent is None:
                raise UnknownAgentError(f'Unknown agent "{agent_name}".')
        else:
            agent = agent_for_phase(state.current_phase)
            if agent is None:
                return {}

        inputs: dict[str, str] = {}
        for required in agent.required_inputs:
            content = state.outputs.get(required) or self.store.read_output(required)
            if content:
                inputs[str(required)] = content
        return inputs

    def save_output(self, agent_name: str, output: str) -> Phase:
        agent = agent_by_name(agent_name)
        if agent is None:
            raise UnknownAgentError(f'Unknown agent "{agent_name}".')

        state = self.store.load()
        active_phase = state.current_phase
        updated, active = apply_output(state, output)
        if active.name != agent.name:
            raise InvalidTransitionError(
                f'Agent "{agent.name}" cannot save output while "{active.name}" is active.',
                phase=active_phase,
            )

        self.store.save_output(agent.name, output)
        self.store.save(updated)
        logger.info(f"Worker saved {agent.name} output; pipeline moved to {updated.current_phase}")
        return updated.current_phase

    def get_context(self) -> dict[str, Any]:
        return self.context_provider(self.store.workspace_root)

    def get_status(self) -> dict[str, Any]:
        state = self.store.load()
        return {
            "currentPhase": str(state.current_phase),
            "taskDescription": state.task_description,
            "outputAgents": list(state.outputs),
            "historyCount": len(state.history),
            "recentHistory": [entry.to_dict() for entry in state.history[-5:]],
            "createdAt": state.created_at,
            "updatedAt": state.updated_at,
        }
