from pathlib import Path

import pytest

from agent_pipeline.context import build_file_tree, detect_tech_stack, project_context
from agent_pipeline.errors import InvalidTransitionError, NoActiveAgentError, UnknownAgentError
from agent_pipeline.manager import PipelineManager
from agent_pipeline.phases import Phase
from agent_pipeline.state import PipelineStore
from agent_pipeline.worker import WORKSPACE_ENV_VAR, WorkerTools, find_workspace_root


def _comparable(manager_state) -> tuple:
    return (
        manager_state.current_phase,
        manager_state.task_description,
        manager_state.outputs,
        [(entry.phase, entry.action, entry.detail) for entry in manager_state.history],
    )


def test_worker_and_manager_save_produce_same_state(tmp_path: Path) -> None:
    manager_root = tmp_path / "manager"
    worker_root = tmp_path / "worker"
    manager_root.mkdir()
    worker_root.mkdir()

    manager = PipelineManager(PipelineStore(manager_root))
    manager.start("Add auth")
    PipelineManager(PipelineStore(worker_root)).start("Add auth")

    manager.save_output("plan text")
    phase = WorkerTools(PipelineStore(worker_root)).save_output("planner", "plan text")

    worker_state = PipelineStore(worker_root).load()
    assert phase == Phase.PLAN_REVIEW
    assert _comparable(worker_state) == _comparable(manager.state)
    assert PipelineStore(worker_root).read_output("planner") == "plan text"


def test_worker_save_for_tester_completes_pipeline(tmp_path: Path) -> None:
    manager = PipelineManager(PipelineStore(tmp_path))
    manager.start("Add auth")
    for content in ("plan", "impl", "review"):
        manager.save_output(content)
        manager.approve()
    assert manager.current_phase == Phase.TESTING

    tools = WorkerTools(PipelineStore(tmp_path))
    assert tools.save_output("test", "all green") == Phase.COMPLETED
    assert manager.reload() == Phase.COMPLETED


def test_worker_save_guards(tmp_path: Path) -> None:
    store = PipelineStore(tmp_path)
    tools = WorkerTools(store)

    with pytest.raises(UnknownAgentError):
        tools.save_output("documenter", "docs")
    with pytest.raises(NoActiveAgentError):
        tools.save_output("planner", "plan")

    PipelineManager(store).start("Add auth")
    with pytest.raises(InvalidTransitionError):
        tools.save_output("implementer", "code")

    assert store.load().current_phase == Phase.PLANNING
    assert store.read_output("implementer") is None


def test_get_task_and_status(tmp_path: Path) -> None:
    manager = PipelineManager(PipelineStore(tmp_path))
    manager.start("Add auth")
    manager.save_output("plan text")
    tools = WorkerTools(PipelineStore(tmp_path))

    assert tools.get_task() == {
        "taskDescription": "Add auth",
        "currentPhase": "plan_review",
        "hasOutputs": 1,
    }
    status = tools.get_status()
    assert status["currentPhase"] == "plan_review"
    assert status["outputAgents"] == ["planner"]
    assert status["historyCount"] == 3
    assert [entry["action"] for entry in status["recentHistory"]] == [
        "started",
        "output_saved",
        "entered",
    ]


def test_get_outputs_prefers_record_and_falls_back_to_blobs(tmp_path: Path) -> None:
    store = PipelineStore(tmp_path)
    manager = PipelineManager(store)
    manager.start("Add auth")
    manager.save_output("plan text")
    store.save_output("reviewer", "blob only review")
    tools = WorkerTools(store)

    assert tools.get_outputs("planner") == "plan text"
    assert tools.get_outputs("reviewer") == "blob only review"
    assert tools.get_outputs("implementer") is None
    assert tools.get_outputs("../state") is None
    assert tools.get_outputs() == {"planner": "plan text", "reviewer": "blob only review"}


def test_get_context_uses_provider(tmp_path: Path) -> None:
    tools = WorkerTools(
        PipelineStore(tmp_path),
        context_provider=lambda root: {"root": str(root)},
    )
    assert tools.get_context() == {"root": str(tmp_path.resolve())}


def test_project_context(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text("[project]\n", encoding="utf-8")
    (tmp_path / "Dockerfile").write_text("FROM python\n", encoding="utf-8")
    (tmp_path / "src" / "app").mkdir(parents=True)
    (tmp_path / "src" / "app" / "main.py").write_text("", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / ".hidden").write_text("", encoding="utf-8")

    assert detect_tech_stack(tmp_path) == ["Python", "Docker"]
    tree = build_file_tree(tmp_path)
    assert tree.splitlines() == [
        "src/",
        "  app/",
        "    main.py",
        "Dockerfile",
        "pyproject.toml",
    ]
    context = project_context(tmp_path)
    assert context["workspaceRoot"] == str(tmp_path)
    assert context["fileTree"] == tree


def test_file_tree_truncates(tmp_path: Path) -> None:
    for index in range(5):
        (tmp_path / f"f{index}.txt").write_text("", encoding="utf-8")

    tree = build_file_tree(tmp_path, max_entries=3)
    assert tree.splitlines()[-1] == "... (truncated)"
    assert len(tree.splitlines()) == 4


def test_find_workspace_root(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(WORKSPACE_ENV_VAR, raising=False)
    project = tmp_path / "project"
    nested = project / "src" / "pkg"
    nested.mkdir(parents=True)
    (project / ".agent_pipeline").mkdir()

    assert find_workspace_root(nested) == project.resolve()

    monkeypatch.setenv(WORKSPACE_ENV_VAR, str(tmp_path))
    assert find_workspace_root(nested) == tmp_path.resolve()


def test_get_inputs_follows_required_inputs(tmp_path: Path) -> None:
    store = PipelineStore(tmp_path)
    manager = PipelineManager(store)
    tools = WorkerTools(store)

    assert tools.get_inputs() == {}
    manager.start("Add auth")
    assert tools.get_inputs() == {}

    manager.save_output("plan text")
    manager.approve()
    assert tools.get_inputs() == {"planner": "plan text"}

    manager.save_output("diff")
    manager.approve()
    assert tools.get_inputs() == {"planner": "plan text", "implementer": "diff"}
    assert tools.get_inputs("implementer") == {"planner": "plan text"}
    assert tools.get_inputs("test") == {"planner": "plan text", "implementer": "diff"}

    with pytest.raises(UnknownAgentError):
        tools.get_inputs("documenter")
