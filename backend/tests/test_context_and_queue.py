"""Tests for the execution context and the priority job queue."""

from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import ContextWriteError
from workflow.context import ExecutionContext
from workflow.job_queue import JobQueue, JobQueueItem

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _item(execution_id, priority=5, enqueued_at=T0, scheduled_for=None):
    return JobQueueItem(
        execution_id=execution_id,
        workflow_id="wf",
        priority=priority,
        enqueued_at=enqueued_at,
        scheduled_for=scheduled_for,
    )


# ─── ExecutionContext ───

@pytest.mark.unit
class TestExecutionContext:
    def test_set_and_get(self):
        ctx = ExecutionContext(execution_id="ex-1", workflow_id="wf-1")
        ctx.set("A", {"n": 5})
        assert ctx.get("A") == {"n": 5}
        assert ctx.get("B") is None
        assert ctx.get("B", "fallback") == "fallback"
        assert "A" in ctx
        assert len(ctx) == 1

    def test_write_once(self):
        ctx = ExecutionContext(execution_id="ex-1", workflow_id="wf-1")
        ctx.set("A", 1)
        with pytest.raises(ContextWriteError) as exc:
            ctx.set("A", 2)
        assert exc.value.node_id == "A"
        assert ctx.get("A") == 1

    def test_none_output_is_recorded(self):
        ctx = ExecutionContext(execution_id="ex-1", workflow_id="wf-1")
        ctx.set("A", None)
        assert "A" in ctx

    def test_as_dict_is_a_snapshot(self):
        ctx = ExecutionContext(execution_id="ex-1", workflow_id="wf-1")
        ctx.set("A", 1)
        snapshot = ctx.as_dict()
        ctx.set("B", 2)
        assert snapshot == {"A": 1}
        assert list(ctx) == ["A", "B"]
        assert ctx.items() == [("A", 1), ("B", 2)]

    def test_to_dict_and_back(self):
        ctx = ExecutionContext(execution_id="ex-1", workflow_id="wf-1", trigger_data={"k": "v"})
        ctx.set("s1", {"output": 42})

        data = ctx.to_dict()
        restored = ExecutionContext.from_dict(data)

        assert data["outputs"] == {"s1": {"output": 42}}
        assert restored.execution_id == "ex-1"
        assert restored.trigger_data == {"k": "v"}
        assert restored.get("s1") == {"output": 42}


# ─── JobQueue ───

@pytest.mark.unit
class TestJobQueue:
    def test_higher_priority_first(self):
        q = JobQueue()
        q.push(_item("low", priority=1))
        q.push(_item("high", priority=9))
        q.push(_item("mid", priority=5))
        assert [q.pop_ready(T0).execution_id for _ in range(3)] == ["high", "mid", "low"]
        assert q.pop_ready(T0) is None

    def test_fifo_within_priority(self):
        q = JobQueue()
        q.push(_item("second", enqueued_at=T0 + timedelta(seconds=1)))
        q.push(_item("first", enqueued_at=T0))
        q.push(_item("third", enqueued_at=T0 + timedelta(seconds=1)))
        assert [q.pop_ready(T0).execution_id for _ in range(3)] == ["first", "second", "third"]

    def test_scheduled_items_wait(self):
        q = JobQueue()
        q.push(_item("later", priority=9, scheduled_for=T0 + timedelta(seconds=10)))
        q.push(_item("now", priority=1))

        assert q.pop_ready(T0).execution_id == "now"
        assert q.pop_ready(T0) is None
        assert len(q) == 1
        assert q.next_scheduled_at() == T0 + timedelta(seconds=10)
        assert q.pop_ready(T0 + timedelta(seconds=10)).execution_id == "later"

    def test_exclude(self):
        q = JobQueue()
        q.push(_item("busy", priority=9))
        q.push(_item("free", priority=1))
        assert q.pop_ready(T0, exclude={"busy"}).execution_id == "free"
        assert "busy" in q

    def test_remove(self):
        q = JobQueue()
        q.push(_item("a"))
        q.push(_item("b"))
        assert q.remove("a").execution_id == "a"
        assert q.remove("a") is None
        assert "a" not in q
        assert [i.execution_id for i in q.snapshot()] == ["b"]

    def test_next_scheduled_at_empty(self):
        q = JobQueue()
        q.push(_item("a"))
        assert q.next_scheduled_at() is None

    def test_item_to_dict(self):
        d = _item("a", scheduled_for=T0).to_dict()
        assert d["execution_id"] == "a"
        assert d["scheduled_for"] == T0.isoformat()
        assert d["enqueued_at"] == T0.isoformat()
