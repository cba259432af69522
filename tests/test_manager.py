from pathlib import Path

import pytest

from agent_pipeline.errors import InvalidTransitionError, NoActiveAgentError, StoreUnwritableError
from agent_pipeline.manager import PipelineEvent, PipelineManager
from agent_pipeline.phases import REVIEW_PHASES, Phase, retry_phase_for
from agent_pipeline.state import PipelineStore


def _manager(tmp_path: Path) -> tuple[PipelineManager, list[PipelineEvent]]:
    manager = PipelineManager(PipelineStore(tmp_path))
    events: list[PipelineEvent] = []
    manager.subscribe(events.append)
    return manager, events


def _drive_to(manager: PipelineManager, phase: Phase) -> None:
    manager.start("Add auth")
    steps = {
        Phase.PLANNING: [],
        Phase.PLAN_REVIEW: ["save"],
        Phase.IMPLEMENTING: ["save", "approve"],
        Phase.IMPL_REVIEW: ["save", "approve", "save"],
        Phase.REVIEWING: ["save", "approve", "save", "approve"],
        Phase.REVIEW_DONE: ["save", "approve", "save", "approve", "save"],
        Phase.TESTING: ["save", "approve", "save", "approve", "save", "approve"],
    }[phase]
    for step in steps:
        if step == "save":
            manager.save_output(f"output for {manager.current_phase}")
        else:
            manager.approve()
    assert manager.current_phase == phase


def test_new_manager_starts_idle(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)

    assert manager.current_phase == Phase.IDLE
    assert manager.can_start()
    assert not manager.can_approve()
    assert not manager.is_agent_active()
    assert manager.active_agent() is None
    assert (tmp_path / ".agent_pipeline" / "outputs").is_dir()


def test_full_scenario(tmp_path: Path) -> None:
    manager, events = _manager(tmp_path)

    manager.start("Add auth")
    assert manager.current_phase == Phase.PLANNING
    assert events[-1] == PipelineEvent(type="phase_changed", phase=Phase.PLANNING)

    manager.save_output("plan text")
    assert manager.current_phase == Phase.PLAN_REVIEW
    assert manager.state.outputs["planner"] == "plan text"
    assert manager.output("planner") == "plan text"

    manager.approve()
    assert manager.current_phase == Phase.IMPLEMENTING

    with pytest.raises(InvalidTransitionError):
        manager.reject("needs refactor")
    assert manager.current_phase == Phase.IMPLEMENTING

    manager.save_output("first implementation")
    assert manager.current_phase == Phase.IMPL_REVIEW

    manager.reject("needs refactor")
    state = manager.state
    assert state.current_phase == Phase.IMPLEMENTING
    assert state.outputs["implementer"] == "first implementation"
    rejected = [entry for entry in state.history if entry.action == "rejected"]
    assert len(rejected) == 1
    assert rejected[0].detail == "needs refactor"
    assert rejected[0].phase == "impl_review"


def test_save_output_events_and_history(tmp_path: Path) -> None:
    manager, events = _manager(tmp_path)
    manager.start("Add auth")
    events.clear()

    manager.save_output("plan text")

    assert events == [
        PipelineEvent(type="output_saved", agent_name="planner"),
        PipelineEvent(type="phase_changed", phase=Phase.PLAN_REVIEW),
    ]
    actions = [(entry.phase, entry.action) for entry in manager.state.history]
    assert actions == [
        ("planning", "started"),
        ("planning", "output_saved"),
        ("plan_review", "entered"),
    ]


def test_testing_completes_and_allows_restart(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)
    _drive_to(manager, Phase.TESTING)

    manager.save_output("all green")
    assert manager.current_phase == Phase.COMPLETED
    assert not manager.is_agent_active()

    with pytest.raises(InvalidTransitionError):
        manager.approve()

    manager.start("Next task")
    assert manager.current_phase == Phase.PLANNING
    assert manager.task_description == "Next task"
    assert manager.state.outputs == {}


def test_testing_accepts_approve_and_reject(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)
    _drive_to(manager, Phase.TESTING)
    assert not manager.can_approve()

    manager.reject("tests fail")
    assert manager.current_phase == Phase.IMPLEMENTING

    _drive_to_testing_again(manager)
    manager.approve()
    assert manager.current_phase == Phase.COMPLETED


def _drive_to_testing_again(manager: PipelineManager) -> None:
    manager.save_output("fix")
    manager.approve()
    manager.save_output("review")
    manager.approve()
    assert manager.current_phase == Phase.TESTING


@pytest.mark.parametrize("phase", sorted(REVIEW_PHASES))
def test_reject_matches_retry_table(tmp_path: Path, phase: Phase) -> None:
    manager, _ = _manager(tmp_path)
    _drive_to(manager, phase)

    manager.reject()
    assert manager.current_phase == retry_phase_for(phase)
    assert manager.state.history[-2].detail == "No feedback provided"


def test_start_illegal_while_running(tmp_path: Path) -> None:
    manager, events = _manager(tmp_path)
    manager.start("Add auth")
    before = manager.state
    events.clear()

    with pytest.raises(InvalidTransitionError):
        manager.start("Other")

    assert manager.state == before
    assert events == []


@pytest.mark.parametrize("phase", [Phase.IDLE, Phase.PLAN_REVIEW])
def test_save_output_requires_active_agent(tmp_path: Path, phase: Phase) -> None:
    manager, _ = _manager(tmp_path)
    if phase != Phase.IDLE:
        _drive_to(manager, phase)
    history_length = len(manager.state.history)

    with pytest.raises(NoActiveAgentError):
        manager.save_output("late output")

    assert len(manager.state.history) == history_length
    assert manager.current_phase == phase


def test_reset_after_any_progress(tmp_path: Path) -> None:
    manager, events = _manager(tmp_path)
    _drive_to(manager, Phase.REVIEWING)
    events.clear()

    manager.reset()

    state = manager.state
    assert state.current_phase == Phase.IDLE
    assert state.outputs == {}
    assert state.history == []
    assert manager.outputs() == {}
    assert [event.type for event in events] == ["pipeline_reset", "phase_changed"]
    assert events[-1].phase == Phase.IDLE
    assert PipelineStore(tmp_path).load().current_phase == Phase.IDLE


def test_reload_observes_external_write(tmp_path: Path) -> None:
    manager, events = _manager(tmp_path)
    manager.start("Add auth")

    other = PipelineManager(PipelineStore(tmp_path))
    other.save_output("plan from elsewhere")
    assert manager.current_phase == Phase.PLANNING

    events.clear()
    assert manager.reload() == Phase.PLAN_REVIEW
    assert manager.state.outputs["planner"] == "plan from elsewhere"
    assert events == [PipelineEvent(type="phase_changed", phase=Phase.PLAN_REVIEW)]


def test_reload_is_idempotent(tmp_path: Path) -> None:
    manager, _ = _manager(tmp_path)
    _drive_to(manager, Phase.IMPL_REVIEW)

    manager.reload()
    first = manager.state
    manager.reload()
    assert manager.state == first


def test_failed_write_keeps_previous_state(tmp_path: Path, monkeypatch) -> None:
    manager, events = _manager(tmp_path)
    manager.start("Add auth")
    events.clear()

    def _fail(state) -> None:
        raise StoreUnwritableError("disk full")

    monkeypatch.setattr(manager.store, "save", _fail)
    with pytest.raises(StoreUnwritableError):
        manager.save_output("plan text")

    assert manager.current_phase == Phase.PLANNING
    assert "planner" not in manager.state.outputs
    assert events == []


def test_subscriber_errors_do_not_break_operations(tmp_path: Path) -> None:
    manager, events = _manager(tmp_path)

    def _broken(event: PipelineEvent) -> None:
        raise ValueError("boom")

    manager.subscribe(_broken)
    unsubscribe = manager.subscribe(lambda event: None)
    unsubscribe()

    manager.start("Add auth")
    assert manager.current_phase == Phase.PLANNING
    assert events[-1].phase == Phase.PLANNING


def test_save_output_with_stale_expected_phase_is_rejected(tmp_path: Path) -> None:
    manager, events = _manager(tmp_path)
    _drive_to(manager, Phase.IMPLEMENTING)
    events.clear()

    with pytest.raises(InvalidTransitionError):
        manager.save_output("late plan", expected_phase=Phase.PLANNING)

    assert manager.current_phase == Phase.IMPLEMENTING
    assert "implementer" not in manager.state.outputs
    assert events == []

    assert manager.save_output("code", expected_phase=Phase.IMPLEMENTING) == Phase.IMPL_REVIEW
