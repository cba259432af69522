from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Phase(StrEnum):
    IDLE = "idle"
    PLANNING = "planning"
    PLAN_REVIEW = "plan_review"
    IMPLEMENTING = "implementing"
    IMPL_REVIEW = "impl_review"
    REVIEWING = "reviewing"
    REVIEW_DONE = "review_done"
    TESTING = "testing"
    COMPLETED = "completed"


class AgentName(StrEnum):
    PLANNER = "planner"
    IMPLEMENTER = "implementer"
    REVIEWER = "reviewer"
    TEST = "test"


@dataclass(frozen=True, slots=True)
class AgentDefinition:
    name: AgentName
    display_name: str
    phase: Phase
    review_phase: Phase
    description: str
    required_inputs: tuple[AgentName, ...] = ()
    default_model: str = "claude-4.5-sonnet"


AGENTS: dict[AgentName, AgentDefinition] = {
    AgentName.PLANNER: AgentDefinition(
        name=AgentName.PLANNER,
        display_name="Planner",
        phase=Phase.PLANNING,
        review_phase=Phase.PLAN_REVIEW,
        description="Analyzes the task and creates a detailed implementation plan",
        default_model="claude-4.5-sonnet",
    ),
    AgentName.IMPLEMENTER: AgentDefinition(
        name=AgentName.IMPLEMENTER,
        display_name="Implementer",
        phase=Phase.IMPLEMENTING,
        review_phase=Phase.IMPL_REVIEW,
        description="Implements the code changes according to the plan",
        required_inputs=(AgentName.PLANNER,),
        default_model="claude-4.6-opus",
    ),
    AgentName.REVIEWER: AgentDefinition(
        name=AgentName.REVIEWER,
        display_name="Reviewer",
        phase=Phase.REVIEWING,
        review_phase=Phase.REVIEW_DONE,
        description="Reviews the implementation for quality, security, and best practices",
        required_inputs=(AgentName.PLANNER, AgentName.IMPLEMENTER),
        default_model="gpt-5.2",
    ),
    # The tester has no separate review phase: its output completes the pipeline.
    AgentName.TEST: AgentDefinition(
        name=AgentName.TEST,
        display_name="Tester",
        phase=Phase.TESTING,
        review_phase=Phase.COMPLETED,
        description="Creates and runs tests for the implementation",
        required_inputs=(AgentName.PLANNER, AgentName.IMPLEMENTER, AgentName.REVIEWER),
        default_model="claude-4.5-sonnet",
    ),
}

PHASE_ORDER: tuple[Phase, ...] = (
    Phase.IDLE,
    Phase.PLANNING,
    Phase.PLAN_REVIEW,
    Phase.IMPLEMENTING,
    Phase.IMPL_REVIEW,
    Phase.REVIEWING,
    Phase.REVIEW_DONE,
    Phase.TESTING,
    Phase.COMPLETED,
)

WORK_PHASES: frozenset[Phase] = frozenset(agent.phase for agent in AGENTS.values())
REVIEW_PHASES: frozenset[Phase] = frozenset(
    {Phase.PLAN_REVIEW, Phase.IMPL_REVIEW, Phase.REVIEW_DONE}
)
# Phases accepted by approve/reject; testing folds its own review into the phase.
DECISION_PHASES: frozenset[Phase] = REVIEW_PHASES | {Phase.TESTING}
STARTABLE_PHASES: frozenset[Phase] = frozenset({Phase.IDLE, Phase.COMPLETED})

_AGENT_BY_PHASE: dict[Phase, AgentDefinition] = {agent.phase: agent for agent in AGENTS.values()}

_RETRY_TARGETS: dict[Phase, Phase] = {
    Phase.PLAN_REVIEW: Phase.PLANNING,
    Phase.IMPL_REVIEW: Phase.IMPLEMENTING,
    # Failed review and failed tests are treated as implementation defects.
    Phase.REVIEW_DONE: Phase.IMPLEMENTING,
    Phase.TESTING: Phase.IMPLEMENTING,
}


def agent_for_phase(phase: Phase) -> AgentDefinition | None:
    return _AGENT_BY_PHASE.get(phase)


def agent_by_name(name: str) -> AgentDefinition | None:
    try:
        return AGENTS[AgentName(name)]
    except ValueError:
        return None


def next_phase_after_approval(phase: Phase) -> Phase:
    """Return the phase after ``phase`` in the linear pipeline order.

    ``idle`` is not part of the approval order, so it (like the last phase)
    maps to ``completed``.
    """
    approval_order = PHASE_ORDER[1:]
    if phase not in approval_order:
        return Phase.COMPLETED
    index = approval_order.index(phase)
    if index >= len(approval_order) - 1:
        return Phase.COMPLETED
    return approval_order[index + 1]


def retry_phase_for(phase: Phase) -> Phase:
    return _RETRY_TARGETS.get(phase, phase)


def is_work_phase(phase: Phase) -> bool:
    return phase in WORK_PHASES


def is_review_phase(phase: Phase) -> bool:
    return phase in REVIEW_PHASES
