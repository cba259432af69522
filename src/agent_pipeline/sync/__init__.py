from agent_pipeline.sync.auto_complete import AutoCompleter, WorkspaceSaveHandler
from agent_pipeline.sync.debounce import Debouncer
from agent_pipeline.sync.watcher import StateWatcher, StoreChangeHandler

__all__ = [
    "AutoCompleter",
    "Debouncer",
    "StateWatcher",
    "StoreChangeHandler",
    "WorkspaceSaveHandler",
]
