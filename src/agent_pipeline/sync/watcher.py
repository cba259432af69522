from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from agent_pipeline.errors import PipelineError
from agent_pipeline.manager import PipelineEvent, PipelineManager
from agent_pipeline.state.store import TEMP_SUFFIX
from agent_pipeline.sync.debounce import Debouncer

DEFAULT_RELOAD_DEBOUNCE_SECONDS = 0.5
RELEVANT_EVENT_TYPES = {"created", "modified", "deleted", "moved"}


def _is_under(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


class StoreChangeHandler(FileSystemEventHandler):
    """Watchdog handler that forwards changes under the store root."""

    def __init__(self, store_root: Path, on_change: Callable[[], None]) -> None:
        super().__init__()
        self.store_root = store_root
        self.on_change = on_change

    def _relevant_path(self, event: FileSystemEvent) -> Path | None:
        if event.event_type not in RELEVANT_EVENT_TYPES:
            return None
        raw = event.dest_path if event.event_type == "moved" and event.dest_path else event.src_path
        path = Path(str(raw))
        if path.name.endswith(TEMP_SUFFIX):
            return None
        if not _is_under(path, self.store_root):
            return None
        return path

    def on_any_event(self, event: FileSystemEvent) -> None:
        path = self._relevant_path(event)
        if path is None:
            return
        logger.debug(f"Store change detected: {event.event_type} {path}")
        self.on_change()


class StateWatcher:
    """Reloads the manager after the worker process writes the store.

    Bursts of writes (state record, output blob) collapse into one reload.
    """

    def __init__(
        self,
        manager: PipelineManager,
        *,
        debounce_seconds: float = DEFAULT_RELOAD_DEBOUNCE_SECONDS,
        on_reconciled: Callable[[], None] | None = None,
    ) -> None:
        self.manager = manager
        self.on_reconciled = on_reconciled
        self.debouncer = Debouncer(debounce_seconds, self._reconcile, name="state-watcher")
        self.handler = StoreChangeHandler(manager.store.root, self.debouncer.trigger)
        self._observer: Observer | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def _on_pipeline_event(self, event: PipelineEvent) -> None:
        if event.type == "pipeline_reset":
            self.debouncer.cancel()

    def _reconcile(self) -> None:
        try:
            phase = self.manager.reload()
        except PipelineError as exc:
            logger.error(f"Reload after external change failed: {exc}")
            self.manager.report_error(f"Reload failed: {exc}")
            return
        logger.info(f"Reconciled pipeline state from disk; phase={phase}")
        if self.on_reconciled is not None:
            self.on_reconciled()

    @property
    def running(self) -> bool:
        return self._observer is not None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.manager.subscribe(self._on_pipeline_event)

    def detach(self) -> None:
        self.debouncer.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def start(self) -> None:
        if self._observer is not None:
            return
        self.attach()
        observer = Observer()
        # The store root is deleted and recreated by reset, so watch its parent.
        observer.schedule(self.handler, str(self.manager.store.workspace_root), recursive=True)
        observer.start()
        self._observer = observer
        logger.debug(f"Watching {self.manager.store.root} for external changes")

    def stop(self) -> None:
        self.detach()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None

    def __enter__(self) -> StateWatcher:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
