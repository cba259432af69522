from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from agent_pipeline.errors import StoreCorruptError
from agent_pipeline.phases import Phase


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class HistoryEntry:
    phase: str
    action: str
    timestamp: str = field(default_factory=utcnow_iso)
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "phase": self.phase,
            "action": self.action,
            "timestamp": self.timestamp,
        }
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload

    @classmethod
    def from_dict(cls, data: Any) -> HistoryEntry:
        if not isinstance(data, dict):
            raise StoreCorruptError(f"History entry must be an object, got {type(data).__name__}")
        phase = data.get("phase")
        action = data.get("action")
        timestamp = data.get("timestamp")
        if not isinstance(phase, str) or not isinstance(action, str):
            raise StoreCorruptError("History entry requires string 'phase' and 'action'.")
        detail = data.get("detail")
        return cls(
            phase=phase,
            action=action,
            timestamp=str(timestamp) if timestamp is not None else utcnow_iso(),
            detail=None if detail is None else str(detail),
        )


@dataclass(slots=True)
class PipelineState:
    current_phase: Phase = Phase.IDLE
    task_description: str = ""
    outputs: dict[str, str] = field(default_factory=dict)
    history: list[HistoryEntry] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not self.updated_at:
            self.updated_at = self.created_at

    @classmethod
    def default(cls) -> PipelineState:
        return cls()

    def copy(self) -> PipelineState:
        return copy.deepcopy(self)

    def add_history(self, phase: Phase | str, action: str, detail: str | None = None) -> None:
        self.history.append(HistoryEntry(phase=str(phase), action=action, detail=detail))

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentPhase": str(self.current_phase),
            "taskDescription": self.task_description,
            "outputs": dict(self.outputs),
            "history": [entry.to_dict() for entry in self.history],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> PipelineState:
        if not isinstance(data, dict):
            raise StoreCorruptError(f"State record must be an object, got {type(data).__name__}")

        raw_phase = data.get("currentPhase", Phase.IDLE.value)
        try:
            phase = Phase(raw_phase)
        except ValueError as exc:
            raise StoreCorruptError(f"Unknown pipeline phase: {raw_phase!r}") from exc

        outputs = data.get("outputs", {})
        if not isinstance(outputs, dict):
            raise StoreCorruptError("State 'outputs' must be an object.")
        history = data.get("history", [])
        if not isinstance(history, list):
            raise StoreCorruptError("State 'history' must be a list.")

        created_at = data.get("createdAt") or utcnow_iso()
        return cls(
            current_phase=phase,
            task_description=str(data.get("taskDescription") or ""),
            outputs={str(key): str(value) for key, value in outputs.items()},
            history=[HistoryEntry.from_dict(item) for item in history],
            created_at=str(created_at),
            updated_at=str(data.get("updatedAt") or created_at),
        )
