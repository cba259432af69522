from agent_pipeline.state.models import HistoryEntry, PipelineState
from agent_pipeline.state.store import PipelineStore

__all__ = ["HistoryEntry", "PipelineState", "PipelineStore"]
