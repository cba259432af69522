from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from pathlib import Path

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from agent_pipeline.errors import InvalidTransitionError, PipelineError
from agent_pipeline.manager import PipelineEvent, PipelineManager
from agent_pipeline.phases import Phase, is_work_phase
from agent_pipeline.sync.debounce import Debouncer

DEFAULT_IGNORE_DIRS: tuple[str, ...] = (
    ".agent_pipeline",
    ".cursor",
    ".git",
    "node_modules",
    ".next",
    "dist",
    "build",
    ".vscode",
)
DEFAULT_AUTO_COMPLETE_SECONDS = 5.0


class AutoCompleter:
    """Completes the active agent's phase after a quiet period of file saves.

    A burst of saves followed by silence is taken as the agent having
    finished. Each qualifying save restarts the timer. Saves are counted
    against the phase they happened in; when the timer fires that phase is
    completed with a placeholder output, unless the pipeline has left it in
    the meantime.
    """

    def __init__(
        self,
        manager: PipelineManager,
        *,
        enabled: bool = True,
        debounce_seconds: float = DEFAULT_AUTO_COMPLETE_SECONDS,
        ignore_dirs: Iterable[str] = DEFAULT_IGNORE_DIRS,
    ) -> None:
        self.manager = manager
        self.enabled = enabled
        self.debounce_seconds = debounce_seconds
        self.ignore_dirs = frozenset(ignore_dirs)
        self.debouncer = Debouncer(debounce_seconds, self._complete, name="auto-complete")
        self._lock = threading.Lock()
        self._save_count = 0
        self._armed_phase: Phase | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._observer: Observer | None = None

    @property
    def save_count(self) -> int:
        with self._lock:
            return self._save_count

    def is_ignored(self, path: Path) -> bool:
        store = self.manager.store
        if store.contains(path):
            return True
        try:
            relative = path.resolve().relative_to(store.workspace_root)
        except ValueError:
            relative = path
        parts = relative.parts
        return bool(parts) and parts[0] in self.ignore_dirs

    def notify_saved(self, path: Path) -> bool:
        if not self.enabled:
            return False
        phase = self.manager.current_phase
        if not is_work_phase(phase):
            return False
        if self.is_ignored(path):
            return False
        with self._lock:
            if self._armed_phase != phase:
                self._save_count = 0
                self._armed_phase = phase
            self._save_count += 1
        self.debouncer.trigger()
        return True

    def _disarm(self) -> tuple[int, Phase | None]:
        with self._lock:
            counted = (self._save_count, self._armed_phase)
            self._save_count = 0
            self._armed_phase = None
        return counted

    def _complete(self) -> None:
        save_count, armed_phase = self._disarm()
        current_phase = self.manager.current_phase
        # The worker or a reviewer may have moved the pipeline on already.
        if armed_phase is None or current_phase != armed_phase:
            logger.debug(
                f"Auto-complete skipped: saves were for {armed_phase}, now {current_phase}"
            )
            return
        agent = self.manager.active_agent()
        agent_name = agent.name if agent is not None else "agent"
        content = (
            f"[Auto-completed: {save_count} file(s) saved, "
            f"no further activity for {self.debounce_seconds:g}s]"
        )
        try:
            phase = self.manager.save_output(content, expected_phase=armed_phase)
        except InvalidTransitionError as exc:
            logger.debug(f"Auto-complete skipped: {exc}")
            return
        except PipelineError as exc:
            logger.error(f"Auto-complete of {agent_name} phase failed: {exc}")
            self.manager.report_error(f"Auto-complete failed: {exc}")
            return
        logger.info(
            f"Auto-completed {agent_name} phase after {save_count} file save(s); now in {phase}"
        )

    def _on_pipeline_event(self, event: PipelineEvent) -> None:
        if event.type == "pipeline_reset":
            self.debouncer.cancel()
            self._disarm()
        elif event.type == "phase_changed":
            with self._lock:
                stale = self._armed_phase is not None and event.phase != self._armed_phase
            if stale:
                self.debouncer.cancel()
                self._disarm()

    def attach(self) -> None:
        if not self.enabled or self._unsubscribe is not None:
            return
        self._unsubscribe = self.manager.subscribe(self._on_pipeline_event)

    def detach(self) -> None:
        self.debouncer.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def start(self) -> None:
        """Attach to the manager and feed saves from a workspace file watcher."""
        if not self.enabled or self._observer is not None:
            return
        self.attach()
        observer = Observer()
        observer.schedule(
            WorkspaceSaveHandler(self.notify_saved),
            str(self.manager.store.workspace_root),
            recursive=True,
        )
        observer.start()
        self._observer = observer
        logger.debug(f"Auto-complete armed with {self.debounce_seconds:g}s quiet period")

    def stop(self) -> None:
        self.detach()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None

    def __enter__(self) -> AutoCompleter:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


class WorkspaceSaveHandler(FileSystemEventHandler):
    """Turns file writes anywhere in the workspace into save signals."""

    def __init__(self, on_saved: Callable[[Path], object]) -> None:
        super().__init__()
        self.on_saved = on_saved

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if event.event_type in {"created", "modified"}:
            self.on_saved(Path(str(event.src_path)))
        elif event.event_type == "moved" and event.dest_path:
            self.on_saved(Path(str(event.dest_path)))
