from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path

from loguru import logger

from agent_pipeline.errors import StoreCorruptError, StoreUnwritableError
from agent_pipeline.state.models import PipelineState, utcnow_iso

DEFAULT_STATE_DIR = ".agent_pipeline"
STATE_FILE = "state.json"
OUTPUTS_DIR = "outputs"
OUTPUT_SUFFIX = ".md"
TEMP_SUFFIX = ".tmp"


class PipelineStore:
    """Whole-record JSON store for one workspace's pipeline.

    The store is shared with the worker process and has no lock or revision
    token: concurrent ``save`` calls are last-write-wins. Each file is
    replaced atomically, so readers see either the old or the new record.
    """

    def __init__(self, workspace_root: Path, *, state_dir: str = DEFAULT_STATE_DIR) -> None:
        self.workspace_root = workspace_root.resolve()
        self.root = self.workspace_root / state_dir
        self.state_file = self.root / STATE_FILE
        self.outputs_dir = self.root / OUTPUTS_DIR

    def contains(self, path: Path) -> bool:
        """True when ``path`` is the store directory or lies inside it."""
        resolved = path.resolve()
        return resolved == self.root or self.root in resolved.parents

    def ensure_dirs(self) -> None:
        try:
            self.outputs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnwritableError(
                f"Cannot create pipeline directory {self.root}: {exc}"
            ) from exc

    def _output_file(self, agent_name: str) -> Path:
        return self.outputs_dir / f"{agent_name}{OUTPUT_SUFFIX}"

    def _write_atomic(self, path: Path, content: str) -> None:
        self.ensure_dirs()
        tmp_path: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=TEMP_SUFFIX,
                delete=False,
            ) as handle:
                tmp_path = handle.name
                handle.write(content)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise StoreUnwritableError(f"Cannot write {path}: {exc}") from exc

    def _parse(self, raw: str) -> PipelineState:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreCorruptError(f"Invalid JSON in {self.state_file}: {exc}") from exc
        return PipelineState.from_dict(payload)

    def load(self) -> PipelineState:
        if not self.state_file.exists():
            return PipelineState.default()
        try:
            raw = self.state_file.read_text(encoding="utf-8")
            return self._parse(raw)
        except (OSError, UnicodeDecodeError, StoreCorruptError) as exc:
            # Corruption degrades to a fresh pipeline.
            logger.warning(f"Pipeline state unreadable, using default state: {exc}")
            return PipelineState.default()

    def save(self, state: PipelineState) -> None:
        updated_at = utcnow_iso()
        record = state.to_dict()
        record["updatedAt"] = updated_at
        self._write_atomic(self.state_file, json.dumps(record, ensure_ascii=False, indent=2))
        # Only stamp the caller's record once the write went through.
        state.updated_at = updated_at
        logger.debug(f"Saved pipeline state (phase={state.current_phase}) to {self.state_file}")

    def save_output(self, agent_name: str, content: str) -> Path:
        output_file = self._output_file(agent_name)
        self._write_atomic(output_file, content)
        logger.debug(f"Saved {agent_name} output to {output_file}")
        return output_file

    def read_output(self, agent_name: str) -> str | None:
        output_file = self._output_file(agent_name)
        if not output_file.exists():
            return None
        try:
            return output_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning(f"Cannot read {agent_name} output: {exc}")
            return None

    def read_all_outputs(self) -> dict[str, str]:
        if not self.outputs_dir.is_dir():
            return {}
        result: dict[str, str] = {}
        for output_file in sorted(self.outputs_dir.glob(f"*{OUTPUT_SUFFIX}")):
            try:
                result[output_file.stem] = output_file.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning(f"Skipping unreadable output {output_file.name}: {exc}")
        return result

    def clear(self) -> None:
        if self.root.exists():
            try:
                shutil.rmtree(self.root)
            except OSError as exc:
                raise StoreUnwritableError(f"Cannot clear {self.root}: {exc}") from exc
        self.ensure_dirs()
