from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from loguru import logger

from agent_pipeline.errors import InvalidTransitionError, NoActiveAgentError
from agent_pipeline.phases import (
    DECISION_PHASES,
    REVIEW_PHASES,
    STARTABLE_PHASES,
    AgentDefinition,
    Phase,
    agent_for_phase,
    next_phase_after_approval,
    retry_phase_for,
)
from agent_pipeline.state.models import PipelineState
from agent_pipeline.state.store import PipelineStore

EventType = Literal["phase_changed", "output_saved", "pipeline_reset", "error"]

NO_FEEDBACK = "No feedback provided"


@dataclass(frozen=True, slots=True)
class PipelineEvent:
    type: EventType
    phase: Phase | None = None
    agent_name: str | None = None
    message: str | None = None


PipelineEventHook = Callable[[PipelineEvent], None]


def apply_start(state: PipelineState, task_description: str) -> PipelineState:
    if state.current_phase not in STARTABLE_PHASES:
        raise InvalidTransitionError(
            f'Cannot start pipeline: currently in phase "{state.current_phase}". Reset first.',
            phase=state.current_phase,
        )
    started = PipelineState.default()
    started.task_description = task_description
    started.current_phase = Phase.PLANNING
    started.add_history(Phase.PLANNING, "started", f"Task: {task_description}")
    return started


def apply_output(state: PipelineState, content: str) -> tuple[PipelineState, AgentDefinition]:
    """Record the active agent's output and move to its review phase.

    Shared by the in-process manager and the worker tool surface so that both
    paths produce the same post-state.
    """
    agent = agent_for_phase(state.current_phase)
    if agent is None:
        raise NoActiveAgentError(
            f'No agent assigned to phase "{state.current_phase}". Cannot save output.',
            phase=state.current_phase,
        )
    updated = state.copy()
    updated.outputs[agent.name] = content
    updated.add_history(agent.phase, "output_saved", f"Agent: {agent.name}")
    updated.current_phase = agent.review_phase
    updated.add_history(agent.review_phase, "entered", f"Awaiting review for {agent.name}")
    return updated, agent


def _ensure_decision_phase(state: PipelineState, action: str) -> None:
    if state.current_phase not in DECISION_PHASES:
        raise InvalidTransitionError(
            f'Cannot {action}: not in a review phase (current: "{state.current_phase}").',
            phase=state.current_phase,
        )


def apply_approve(state: PipelineState) -> PipelineState:
    _ensure_decision_phase(state, "approve")
    next_phase = next_phase_after_approval(state.current_phase)
    updated = state.copy()
    updated.add_history(state.current_phase, "approved", f"Advancing to {next_phase}")
    updated.current_phase = next_phase
    updated.add_history(next_phase, "entered")
    return updated


def apply_reject(state: PipelineState, feedback: str | None = None) -> PipelineState:
    _ensure_decision_phase(state, "reject")
    retry_phase = retry_phase_for(state.current_phase)
    updated = state.copy()
    updated.add_history(state.current_phase, "rejected", feedback or NO_FEEDBACK)
    updated.current_phase = retry_phase
    updated.add_history(retry_phase, "entered", "Retry after rejection")
    return updated


class PipelineManager:
    """In-process owner of the pipeline state machine.

    Every mutating operation builds the next state on a copy, persists it and
    only then swaps it in and notifies subscribers. A failed guard or a failed
    write leaves the in-memory state untouched.
    """

    def __init__(self, store: PipelineStore) -> None:
        self.store = store
        self._lock = threading.RLock()
        self._subscribers: list[PipelineEventHook] = []
        store.ensure_dirs()
        self._state = store.load()

    # Subscribers

    def subscribe(self, hook: PipelineEventHook) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(hook)

        def _unsubscribe() -> None:
            with self._lock:
                if hook in self._subscribers:
                    self._subscribers.remove(hook)

        return _unsubscribe

    def _emit(self, event: PipelineEvent) -> None:
        for hook in list(self._subscribers):
            try:
                hook(event)
            except Exception as exc:
                logger.warning(f"Pipeline subscriber failed on {event.type}: {exc}")

    def report_error(self, message: str) -> None:
        with self._lock:
            event = PipelineEvent(type="error", phase=self._state.current_phase, message=message)
            self._emit(event)

    # Accessors

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state.copy()

    @property
    def current_phase(self) -> Phase:
        return self._state.current_phase

    @property
    def task_description(self) -> str:
        return self._state.task_description

    def outputs(self) -> dict[str, str]:
        return self.store.read_all_outputs()

    def output(self, agent_name: str) -> str | None:
        return self.store.read_output(agent_name)

    def can_start(self) -> bool:
        return self._state.current_phase in STARTABLE_PHASES

    def can_approve(self) -> bool:
        return self._state.current_phase in REVIEW_PHASES

    def can_reject(self) -> bool:
        return self.can_approve()

    def is_agent_active(self) -> bool:
        return agent_for_phase(self._state.current_phase) is not None

    def active_agent(self) -> AgentDefinition | None:
        return agent_for_phase(self._state.current_phase)

    # Operations

    def _commit(self, state: PipelineState) -> None:
        self.store.save(state)
        self._state = state

    def start(self, task_description: str) -> None:
        with self._lock:
            started = apply_start(self._state, task_description)
            self._commit(started)
            logger.info(f"Pipeline started: {task_description}")
            self._emit(PipelineEvent(type="phase_changed", phase=started.current_phase))

    def save_output(self, content: str, *, expected_phase: Phase | None = None) -> Phase:
        with self._lock:
            if expected_phase is not None and self._state.current_phase != expected_phase:
                raise InvalidTransitionError(
                    f'Output was produced for phase "{expected_phase}" but the pipeline '
                    f'is in "{self._state.current_phase}".',
                    phase=self._state.current_phase,
                )
            updated, agent = apply_output(self._state, content)
            self.store.save_output(agent.name, content)
            self._commit(updated)
            logger.info(f"{agent.display_name} output saved; now in {updated.current_phase}")
            self._emit(PipelineEvent(type="output_saved", agent_name=agent.name))
            self._emit(PipelineEvent(type="phase_changed", phase=updated.current_phase))
            return updated.current_phase

    def approve(self) -> Phase:
        with self._lock:
            updated = apply_approve(self._state)
            self._commit(updated)
            logger.info(f"Approved; now in {updated.current_phase}")
            self._emit(PipelineEvent(type="phase_changed", phase=updated.current_phase))
            return updated.current_phase

    def reject(self, feedback: str | None = None) -> Phase:
        with self._lock:
            updated = apply_reject(self._state, feedback)
            self._commit(updated)
            logger.info(f"Rejected; retrying in {updated.current_phase}")
            self._emit(PipelineEvent(type="phase_changed", phase=updated.current_phase))
            return updated.current_phase

    def reset(self) -> None:
        with self._lock:
            self.store.clear()
            fresh = PipelineState.default()
            self._commit(fresh)
            logger.info("Pipeline reset")
            self._emit(PipelineEvent(type="pipeline_reset"))
            self._emit(PipelineEvent(type="phase_changed", phase=Phase.IDLE))

    def reload(self) -> Phase:
        with self._lock:
            self._state = self.store.load()
            logger.debug(f"Reloaded pipeline state; phase={self._state.current_phase}")
            self._emit(PipelineEvent(type="phase_changed", phase=self._state.current_phase))
            return self._state.current_phase
