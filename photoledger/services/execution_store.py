"""
Execution Store — one JSON file per WorkflowExecution.

Writes are atomic (tmp → fsync → rename) so a crash mid-save leaves the
previous state readable, which is what resume() relies on.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from photoledger.config import settings
from photoledger.core.errors import UnknownExecutionError
from photoledger.models.workflow import WorkflowExecution

logger = logging.getLogger(__name__)


class ExecutionStore:
    def __init__(self, directory: Optional[str] = None) -> None:
        self._dir = Path(directory or os.path.join(settings.data_directory, "executions"))
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, execution_id: str) -> Path:
        return self._dir / f"{execution_id}.json"

    def save(self, execution: WorkflowExecution) -> None:
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self._dir), suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(execution.model_dump_json(indent=2))
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, str(self._path(execution.execution_id)))
            except Exception:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

    def load(self, execution_id: str) -> WorkflowExecution:
        path = self._path(execution_id)
        if not path.exists():
            raise UnknownExecutionError(execution_id)
        return WorkflowExecution.model_validate_json(path.read_text())

    def delete(self, execution_id: str) -> bool:
        with self._lock:
            try:
                self._path(execution_id).unlink()
            except FileNotFoundError:
                return False
        return True

    def list_ids(self) -> List[str]:
        if not self._dir.exists():
            return []
        return sorted(p.stem for p in self._dir.glob("*.json"))

    def history(self, limit: Optional[int] = None) -> List[WorkflowExecution]:
        """Stored executions, newest first. Unreadable files are skipped."""
        executions: List[WorkflowExecution] = []
        for execution_id in self.list_ids():
            try:
                executions.append(self.load(execution_id))
            except (ValidationError, OSError) as e:
                logger.warning("Skipping unreadable execution %s: %s", execution_id, e)
        executions.sort(key=lambda e: e.started_at, reverse=True)
        return executions[:limit] if limit is not None else executions
