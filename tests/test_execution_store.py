"""
Tests for ExecutionStore — one atomic JSON file per execution.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

from photoledger.core.errors import UnknownExecutionError
from photoledger.models.workflow import ExecutionStatus, WorkflowExecution
from photoledger.services.execution_store import ExecutionStore
from photoledger.services.workflow_templates import get_workflow_template

T0 = datetime(2026, 2, 1, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return ExecutionStore(directory=str(tmp_path / "executions"))


def _execution(execution_id="e1", started_at=T0):
    return WorkflowExecution(
        execution_id=execution_id,
        workflow=get_workflow_template("funko-enhanced"),
        input_uri="file:///in.png",
        started_at=started_at,
        updated_at=started_at,
    )


class TestExecutionStore:
    def test_save_and_load(self, store):
        execution = _execution()
        store.save(execution)
        loaded = store.load("e1")
        assert loaded == execution

    def test_save_overwrites(self, store):
        execution = _execution()
        store.save(execution)
        execution.status = ExecutionStatus.RUNNING
        execution.current_step_index = 1
        store.save(execution)
        loaded = store.load("e1")
        assert loaded.status == ExecutionStatus.RUNNING
        assert loaded.current_step_index == 1

    def test_load_unknown(self, store):
        with pytest.raises(UnknownExecutionError):
            store.load("missing")

    def test_delete(self, store):
        store.save(_execution())
        assert store.delete("e1") is True
        assert store.delete("e1") is False
        assert store.list_ids() == []

    def test_list_ids_empty_before_first_save(self, store):
        assert store.list_ids() == []

    def test_history_newest_first(self, store):
        store.save(_execution("old", T0))
        store.save(_execution("new", T0 + timedelta(hours=1)))
        assert [e.execution_id for e in store.history()] == ["new", "old"]
        assert [e.execution_id for e in store.history(limit=1)] == ["new"]

    def test_history_skips_unreadable(self, store):
        store.save(_execution())
        (store.directory / "broken.json").write_text("{}")
        assert [e.execution_id for e in store.history()] == ["e1"]

    def test_file_permissions_and_no_temp_files(self, store):
        store.save(_execution())
        files = sorted(p.name for p in store.directory.iterdir())
        assert files == ["e1.json"]
        assert os.stat(store.directory / "e1.json").st_mode & 0o777 == 0o600
