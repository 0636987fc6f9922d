# tests/test_auto_deleter.py — Retention-based purging of done tasks
from datetime import datetime, timedelta, timezone

import pytest

from lifecycle_engine import (
    CategorySnapshot, ColumnSnapshot, TaskSnapshot, SessionState, LifecycleEventKind,
    plan_auto_deletion, run_auto_deletion,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

SPRINT = CategorySnapshot(id="cat-sprint", name="Sprint", auto_delete_after_weeks=2)
KEEP = CategorySnapshot(id="cat-keep", name="Archive", auto_delete_after_weeks=None)

DONE = ColumnSnapshot(id="col-done", name="Done", category_id=SPRINT.id, order_index=0)
TODO = ColumnSnapshot(id="col-todo", name="To Do", category_id=SPRINT.id, order_index=1)
KEEP_DONE = ColumnSnapshot(id="keep-done", name="Done", category_id=KEEP.id, order_index=2)
LOOSE_DONE = ColumnSnapshot(id="loose-done", name="Done", category_id=None, order_index=3)
COLUMNS = [DONE, TODO, KEEP_DONE, LOOSE_DONE]


def done_task(task_id, column=DONE, age=timedelta(days=15), done_at="auto"):
    stamp = NOW - age if done_at == "auto" else done_at
    return TaskSnapshot(id=task_id, column_id=column.id, is_done=True, done_at=stamp)


def plan(tasks, categories=(SPRINT, KEEP), events=None):
    return plan_auto_deletion(tasks, COLUMNS, categories, now=NOW, events=events)


class TestRetentionWindow:
    def test_fifteen_days_old_is_deleted(self):
        assert [c.task_id for c in plan([done_task("t2")])] == ["t2"]

    def test_one_day_short_is_kept(self):
        assert plan([done_task("t", age=timedelta(weeks=2) - timedelta(days=1))]) == []

    def test_one_day_past_is_deleted(self):
        assert len(plan([done_task("t", age=timedelta(weeks=2) + timedelta(days=1))])) == 1

    def test_exact_threshold_is_deleted(self):
        assert len(plan([done_task("t", age=timedelta(weeks=2))])) == 1

    def test_naive_done_at_is_treated_as_utc(self):
        naive = (NOW - timedelta(days=20)).replace(tzinfo=None)
        assert len(plan([done_task("t", done_at=naive)])) == 1

    def test_elapsed_is_reported(self):
        command = plan([done_task("t", age=timedelta(days=15))])[0]
        assert command.elapsed == timedelta(days=15)
        assert command.category_id == SPRINT.id


class TestEligibility:
    def test_legacy_done_without_timestamp_is_exempt(self):
        assert plan([done_task("legacy", done_at=None)]) == []

    def test_not_done_is_exempt(self):
        task = TaskSnapshot(id="t", column_id=DONE.id, is_done=False, done_at=NOW - timedelta(days=60))
        assert plan([task]) == []

    def test_done_outside_done_column_is_exempt(self):
        assert plan([done_task("t", column=TODO)]) == []

    def test_category_without_threshold_is_exempt(self):
        assert plan([done_task("t", column=KEEP_DONE, age=timedelta(days=400))]) == []

    def test_uncategorized_done_column_is_exempt(self):
        assert plan([done_task("t", column=LOOSE_DONE, age=timedelta(days=400))]) == []

    @pytest.mark.parametrize("weeks", [0, -1, True])
    def test_non_positive_thresholds_are_ignored(self, weeks):
        category = CategorySnapshot(id=SPRINT.id, auto_delete_after_weeks=weeks)
        events = []
        assert plan([done_task("t", age=timedelta(days=400))], categories=[category], events=events.append) == []
        assert events[0].kind == LifecycleEventKind.DELETION_DISABLED

    def test_missing_column_is_skipped(self):
        events = []
        orphan = TaskSnapshot(id="orphan", column_id="gone", is_done=True, done_at=NOW - timedelta(days=99))
        commands = plan([orphan, done_task("t")], events=events.append)
        assert [c.task_id for c in commands] == ["t"]
        assert any(e.kind == LifecycleEventKind.TASK_SKIPPED_MISSING_COLUMN for e in events)


class TestRunner:
    def test_scenario_deletes_once_per_session(self):
        deleted = []
        session = SessionState(board_id="board")
        tasks = [done_task("t2")]

        run_auto_deletion(tasks, COLUMNS, [SPRINT], deleted.append, is_loading=False, session=session, now=NOW)
        run_auto_deletion(tasks, COLUMNS, [SPRINT], deleted.append, is_loading=False, session=session, now=NOW)

        assert deleted == ["t2"]
        assert session.has_purged_once is True

    def test_latch_is_independent_of_routing(self):
        session = SessionState(board_id="board", has_routed_once=True)
        deleted = []
        run_auto_deletion([done_task("t")], COLUMNS, [SPRINT], deleted.append, False, session, now=NOW)
        assert deleted == ["t"]

    def test_no_active_category_still_marks_session(self):
        session = SessionState(board_id="board")
        deleted = []
        run_auto_deletion([done_task("t")], COLUMNS, [KEEP], deleted.append, False, session, now=NOW)
        assert deleted == []
        assert session.has_purged_once is True

    def test_loading_skips_without_latching(self):
        session = SessionState(board_id="board")
        run_auto_deletion([done_task("t")], COLUMNS, [SPRINT], lambda _id: None, True, session, now=NOW)
        assert session.has_purged_once is False

    def test_one_failed_delete_does_not_stop_others(self):
        attempted = []

        def delete(task_id):
            attempted.append(task_id)
            if task_id == "a":
                raise RuntimeError("constraint violation")

        events = []
        run_auto_deletion(
            [done_task("a"), done_task("b")], COLUMNS, [SPRINT], delete,
            is_loading=False, session=SessionState(board_id="board"), now=NOW, events=events.append,
        )
        assert attempted == ["a", "b"]
        failed = [e for e in events if e.kind == LifecycleEventKind.COMMAND_FAILED]
        assert [e.task_id for e in failed] == ["a"]
