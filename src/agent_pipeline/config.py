from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

from agent_pipeline.errors import PipelineConfigError
from agent_pipeline.phases import AGENTS, AgentName
from agent_pipeline.state.store import DEFAULT_STATE_DIR
from agent_pipeline.sync.auto_complete import DEFAULT_AUTO_COMPLETE_SECONDS, DEFAULT_IGNORE_DIRS
from agent_pipeline.sync.watcher import DEFAULT_RELOAD_DEBOUNCE_SECONDS

CONFIG_FILE = "agent_pipeline.toml"
FALLBACK_MODEL = "claude-4.5-sonnet"
AUTO_COMPLETE_MIN_SECONDS = 2.0
AUTO_COMPLETE_MAX_SECONDS = 30.0
CONFIG_HEADER = "# agent-pipeline settings. Remove a key to fall back to its default."
SECTIONS = ("pipeline", "sync", "auto_complete", "models")


@dataclass(slots=True)
class PipelineSection:
    state_dir: str = DEFAULT_STATE_DIR


@dataclass(slots=True)
class SyncConfig:
    reload_debounce_seconds: float = DEFAULT_RELOAD_DEBOUNCE_SECONDS


@dataclass(slots=True)
class AutoCompleteConfig:
    enabled: bool = True
    debounce_seconds: float = DEFAULT_AUTO_COMPLETE_SECONDS
    ignore_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_IGNORE_DIRS))

    def effective_debounce_seconds(self) -> float:
        seconds = float(self.debounce_seconds)
        return min(AUTO_COMPLETE_MAX_SECONDS, max(AUTO_COMPLETE_MIN_SECONDS, seconds))


@dataclass(slots=True)
class ModelsConfig:
    planner: str = AGENTS[AgentName.PLANNER].default_model
    implementer: str = AGENTS[AgentName.IMPLEMENTER].default_model
    reviewer: str = AGENTS[AgentName.REVIEWER].default_model
    test: str = AGENTS[AgentName.TEST].default_model


@dataclass(slots=True)
class PipelineConfig:
    pipeline: PipelineSection = field(default_factory=PipelineSection)
    sync: SyncConfig = field(default_factory=SyncConfig)
    auto_complete: AutoCompleteConfig = field(default_factory=AutoCompleteConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)

    @classmethod
    def default(cls) -> PipelineConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PipelineConfig:
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise PipelineConfigError(f"Unknown config section(s): {', '.join(unknown)}")
        return cls(
            pipeline=_section(data, "pipeline", PipelineSection),
            sync=_section(data, "sync", SyncConfig),
            auto_complete=_section(data, "auto_complete", AutoCompleteConfig),
            models=_section(data, "models", ModelsConfig),
        )

    def to_dict(self) -> dict:
        return {
            "pipeline": {
                "state_dir": self.pipeline.state_dir,
            },
            "sync": {
                "reload_debounce_seconds": self.sync.reload_debounce_seconds,
            },
            "auto_complete": {
                "enabled": self.auto_complete.enabled,
                "debounce_seconds": self.auto_complete.debounce_seconds,
                "ignore_dirs": list(self.auto_complete.ignore_dirs),
            },
            "models": {
                "planner": self.models.planner,
                "implementer": self.models.implementer,
                "reviewer": self.models.reviewer,
                "test": self.models.test,
            },
        }


def _section(data: dict, name: str, section_type: type) -> object:
    values = data.get(name, {})
    if not isinstance(values, dict):
        raise PipelineConfigError(f"[{name}] must be a table.")
    known = {item.name for item in fields(section_type)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise PipelineConfigError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    return section_type(**values)


def model_for_agent(agent_name: str, config: PipelineConfig | None = None) -> str:
    try:
        agent = AGENTS[AgentName(agent_name)]
    except ValueError:
        return FALLBACK_MODEL
    if config is None:
        return agent.default_model
    configured = getattr(config.models, agent.name, "")
    return str(configured).strip() or agent.default_model


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PipelineConfig) -> str:
    lines = [CONFIG_HEADER, ""]
    for section, values in config.to_dict().items():
        lines.append(f"[{section}]")
        lines.extend(f"{key} = {_toml_value(value)}" for key, value in values.items())
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PipelineConfig:
    """Read ``path``, or return the defaults when the file does not exist."""
    if not path.exists():
        return PipelineConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise PipelineConfigError(f"Cannot read config {path}: {exc}") from exc
    try:
        return PipelineConfig.from_dict(data)
    except PipelineConfigError as exc:
        raise PipelineConfigError(f"{path}: {exc}") from exc


def save_config(path: Path, config: PipelineConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
