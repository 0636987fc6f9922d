# tests/test_board_graph.py — Persistence boundary: ordering, cascades, links
from datetime import date, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update

from board_graph import (
    BoardGraph, DuplicateEntity, EntityNotFound, InvalidOperation, PermissionDenied,
    DEFAULT_CATEGORY_COLUMNS, lifecycle_handlers,
)
from models import Task, TaskLinkType, ActivityAction, utcnow
from realtime import BoardChannelManager, TASKS_CHANGED


@pytest_asyncio.fixture
async def graph(db_session, test_user):
    return BoardGraph(db_session, BoardChannelManager(), user_id=test_user.id)


@pytest_asyncio.fixture
async def sprint(graph, test_user):
    """Board with a "Sprint" category carrying the default columns"""
    board = await graph.create_board(test_user.id, "Team Board")
    category = await graph.create_category(board.id, "Sprint", with_default_columns=True)
    columns = {c.name: c for c in await graph.list_columns(board.id)}
    return board, category, columns


async def order_of(graph, board_id, column_id):
    tasks = await graph.list_tasks(board_id, column_id)
    return [(t.title, t.order_index) for t in tasks]


@pytest.mark.asyncio
class TestStructure:
    async def test_default_columns_follow_existing(self, graph, test_user):
        board = await graph.create_board(test_user.id, "B")
        await graph.create_column(board.id, "Inbox")
        category = await graph.create_category(board.id, "Sprint", with_default_columns=True)

        columns = await graph.list_columns(board.id)
        assert [c.name for c in columns] == ["Inbox", *DEFAULT_CATEGORY_COLUMNS]
        assert [c.order_index for c in columns] == list(range(len(columns)))
        assert all(c.category_id == category.id for c in columns[1:])

    async def test_category_retention_must_be_positive(self, graph, sprint):
        board, category, _ = sprint
        with pytest.raises(InvalidOperation):
            await graph.update_category(board.id, category.id, {"auto_delete_after_weeks": 0})

    async def test_delete_category_uncategorizes_columns(self, graph, sprint):
        board, category, _ = sprint
        await graph.delete_category(board.id, category.id)

        assert await graph.list_categories(board.id) == []
        assert all(c.category_id is None for c in await graph.list_columns(board.id))

    async def test_reorder_columns(self, graph, sprint):
        board, _, columns = sprint
        reordered = await graph.reorder_columns(board.id, [columns["Done"].id, columns["To Do"].id])

        assert [c.name for c in reordered][:2] == ["Done", "To Do"]
        assert [c.order_index for c in reordered] == list(range(len(reordered)))

    async def test_reorder_rejects_foreign_column(self, graph, sprint):
        board, _, _ = sprint
        with pytest.raises(EntityNotFound):
            await graph.reorder_columns(board.id, ["not-a-column"])

    async def test_delete_column_removes_tasks_and_compacts(self, graph, sprint):
        board, _, columns = sprint
        await graph.insert_task(board.id, columns["Review"].id, "r1")
        await graph.delete_column(board.id, columns["Review"].id)

        remaining = await graph.list_columns(board.id)
        assert "Review" not in [c.name for c in remaining]
        assert [c.order_index for c in remaining] == list(range(len(remaining)))
        assert await graph.list_tasks(board.id) == []


@pytest.mark.asyncio
class TestTaskOrdering:
    async def test_insert_at_position(self, graph, sprint):
        board, _, columns = sprint
        todo = columns["To Do"].id
        await graph.insert_task(board.id, todo, "a")
        await graph.insert_task(board.id, todo, "b")
        await graph.insert_task(board.id, todo, "c", position=0)

        assert await order_of(graph, board.id, todo) == [("c", 0), ("a", 1), ("b", 2)]

    async def test_move_across_columns_keeps_both_dense(self, graph, sprint):
        board, _, columns = sprint
        todo, doing = columns["To Do"].id, columns["In Progress"].id
        a = await graph.insert_task(board.id, todo, "a")
        await graph.insert_task(board.id, todo, "b")
        await graph.insert_task(board.id, todo, "c")
        await graph.insert_task(board.id, doing, "x")

        await graph.move_task(board.id, a.id, doing, 0)

        assert await order_of(graph, board.id, todo) == [("b", 0), ("c", 1)]
        assert await order_of(graph, board.id, doing) == [("a", 0), ("x", 1)]

    async def test_move_position_is_clamped(self, graph, sprint):
        board, _, columns = sprint
        todo, doing = columns["To Do"].id, columns["In Progress"].id
        a = await graph.insert_task(board.id, todo, "a")
        await graph.insert_task(board.id, doing, "x")

        await graph.move_task(board.id, a.id, doing, 42)
        assert await order_of(graph, board.id, doing) == [("x", 0), ("a", 1)]

    async def test_move_within_column(self, graph, sprint):
        board, _, columns = sprint
        todo = columns["To Do"].id
        a = await graph.insert_task(board.id, todo, "a")
        await graph.insert_task(board.id, todo, "b")
        await graph.insert_task(board.id, todo, "c")

        await graph.move_task(board.id, a.id, todo, 2)
        assert await order_of(graph, board.id, todo) == [("b", 0), ("c", 1), ("a", 2)]

    async def test_move_up_within_column(self, graph, sprint):
        board, _, columns = sprint
        todo = columns["To Do"].id
        await graph.insert_task(board.id, todo, "a")
        await graph.insert_task(board.id, todo, "b")
        c = await graph.insert_task(board.id, todo, "c")

        task = await graph.move_task(board.id, c.id, todo, 0)
        assert task.column_id == todo
        assert await order_of(graph, board.id, todo) == [("c", 0), ("a", 1), ("b", 2)]

    async def test_move_to_other_board_column_rejected(self, graph, sprint, test_user):
        board, _, columns = sprint
        other = await graph.create_board(test_user.id, "Other")
        foreign = await graph.create_column(other.id, "To Do")
        task = await graph.insert_task(board.id, columns["To Do"].id, "a")

        with pytest.raises(EntityNotFound):
            await graph.move_task(board.id, task.id, foreign.id)

    async def test_delete_compacts_column(self, graph, sprint):
        board, _, columns = sprint
        todo = columns["To Do"].id
        await graph.insert_task(board.id, todo, "a")
        b = await graph.insert_task(board.id, todo, "b")
        await graph.insert_task(board.id, todo, "c")

        await graph.delete_task(board.id, b.id)
        assert await order_of(graph, board.id, todo) == [("a", 0), ("c", 1)]

    async def test_delete_repairs_drifted_indexes(self, graph, sprint, db_session):
        board, _, columns = sprint
        todo = columns["To Do"].id
        a = await graph.insert_task(board.id, todo, "a")
        b = await graph.insert_task(board.id, todo, "b")
        c = await graph.insert_task(board.id, todo, "c")
        await db_session.execute(update(Task).where(Task.id == c.id).values(order_index=9))
        await db_session.commit()

        await graph.delete_task(board.id, a.id)
        assert await order_of(graph, board.id, todo) == [("b", 0), ("c", 1)]
        assert b.order_index == 0

    async def test_mutations_publish_changes(self, graph, sprint):
        board, _, columns = sprint
        received = []

        async def listener(message):
            received.append(message)

        graph.notifier.subscribe(board.id, listener)
        task = await graph.insert_task(board.id, columns["To Do"].id, "a")

        assert received[-1]["type"] == TASKS_CHANGED
        assert received[-1]["entity_id"] == task.id
        assert received[-1]["action"] == "created"


@pytest.mark.asyncio
class TestDoneState:
    async def test_mark_done_moves_to_sibling_done(self, graph, sprint):
        board, _, columns = sprint
        task = await graph.insert_task(board.id, columns["In Progress"].id, "ship it")

        task = await graph.mark_task_done(board.id, task.id)

        assert task.is_done is True
        assert task.done_at is not None
        assert task.column_id == columns["Done"].id
        assert task.order_index == 0

    async def test_done_at_survives_undone_and_redone(self, graph, sprint):
        board, _, columns = sprint
        task = await graph.insert_task(board.id, columns["Done"].id, "t")
        task = await graph.mark_task_done(board.id, task.id)
        first = task.done_at.replace(tzinfo=None)

        task = await graph.mark_task_undone(board.id, task.id)
        assert task.is_done is False
        assert task.done_at.replace(tzinfo=None) == first

        task = await graph.mark_task_done(board.id, task.id)
        assert task.done_at.replace(tzinfo=None) == first

    async def test_update_is_done_sets_timestamp_once(self, graph, sprint):
        board, _, columns = sprint
        task = await graph.insert_task(board.id, columns["To Do"].id, "t")
        task = await graph.update_task(board.id, task.id, {"is_done": True})
        assert task.is_done is True
        assert task.done_at is not None
        # Column is left alone by plain updates
        assert task.column_id == columns["To Do"].id

    async def test_activity_is_recorded(self, graph, sprint):
        board, _, columns = sprint
        task = await graph.insert_task(board.id, columns["To Do"].id, "t")
        await graph.mark_task_done(board.id, task.id)

        actions = [a.action for a in await graph.list_activity(board.id)]
        assert ActivityAction.MARKED_DONE in actions
        assert ActivityAction.CREATED in actions


@pytest.mark.asyncio
class TestTaskExtras:
    async def test_label_attach_is_idempotent(self, graph, sprint):
        board, _, columns = sprint
        task = await graph.insert_task(board.id, columns["To Do"].id, "t")
        label = await graph.create_label(board.id, "Bug", "#ff0000")

        await graph.attach_label(board.id, task.id, label.id)
        await graph.attach_label(board.id, task.id, label.id)
        labels = await graph.labels_for_tasks([task.id])
        assert [l.name for l in labels[task.id]] == ["Bug"]

        await graph.detach_label(board.id, task.id, label.id)
        assert await graph.labels_for_tasks([task.id]) == {}

    async def test_checklist_stays_dense(self, graph, sprint):
        board, _, columns = sprint
        task = await graph.insert_task(board.id, columns["To Do"].id, "t")
        first = await graph.add_checklist_item(board.id, task.id, "one")
        await graph.add_checklist_item(board.id, task.id, "two")
        await graph.add_checklist_item(board.id, task.id, "three")

        await graph.delete_checklist_item(board.id, task.id, first.id)
        items = await graph.list_checklist(board.id, task.id)
        assert [(i.title, i.order_index) for i in items] == [("two", 0), ("three", 1)]

    async def test_only_author_edits_comment(self, graph, sprint, db_session, other_user):
        board, _, columns = sprint
        task = await graph.insert_task(board.id, columns["To Do"].id, "t")
        comment = await graph.add_comment(board.id, task.id, "first!")

        intruder = BoardGraph(db_session, user_id=other_user.id)
        with pytest.raises(PermissionDenied):
            await intruder.edit_comment(board.id, task.id, comment.id, "hijacked")

        edited = await graph.edit_comment(board.id, task.id, comment.id, "edited")
        assert edited.content == "edited"
        assert edited.edited_at is not None

    async def test_links_are_stored_with_inverse(self, graph, sprint):
        board, _, columns = sprint
        a = await graph.insert_task(board.id, columns["To Do"].id, "a")
        b = await graph.insert_task(board.id, columns["To Do"].id, "b")

        link = await graph.add_link(board.id, a.id, b.id, TaskLinkType.BLOCKS)
        inverse = await graph.list_links(board.id, b.id)
        assert [(l.link_type, target.id) for l, target, _ in inverse] == [(TaskLinkType.IS_BLOCKED_BY, a.id)]

        with pytest.raises(DuplicateEntity):
            await graph.add_link(board.id, a.id, b.id, TaskLinkType.BLOCKS)

        await graph.remove_link(board.id, a.id, link.id)
        assert await graph.list_links(board.id, a.id) == []
        assert await graph.list_links(board.id, b.id) == []

    async def test_self_link_rejected(self, graph, sprint):
        board, _, columns = sprint
        a = await graph.insert_task(board.id, columns["To Do"].id, "a")
        with pytest.raises(InvalidOperation):
            await graph.add_link(board.id, a.id, a.id, TaskLinkType.RELATES_TO)

    async def test_delete_task_removes_children(self, graph, sprint):
        board, _, columns = sprint
        a = await graph.insert_task(board.id, columns["To Do"].id, "a")
        b = await graph.insert_task(board.id, columns["To Do"].id, "b")
        await graph.add_checklist_item(board.id, a.id, "x")
        await graph.add_link(board.id, a.id, b.id, TaskLinkType.RELATES_TO)

        await graph.delete_task(board.id, a.id)
        assert await graph.list_links(board.id, b.id) == []


@pytest.mark.asyncio
class TestSnapshotAndHandlers:
    async def test_snapshot_is_frozen_copy(self, graph, sprint, db_session):
        board, category, columns = sprint
        task = await graph.insert_task(
            board.id, columns["To Do"].id, "late", due_date=date.today() - timedelta(days=1),
        )
        await db_session.commit()

        snapshot = await graph.load_snapshot(board.id)

        assert snapshot.board_id == board.id
        assert [c.id for c in snapshot.categories] == [category.id]
        assert len(snapshot.columns) == len(DEFAULT_CATEGORY_COLUMNS)
        assert [(t.id, t.column_id) for t in snapshot.tasks] == [(task.id, columns["To Do"].id)]
        with pytest.raises(AttributeError):
            snapshot.tasks[0].column_id = "elsewhere"

    async def test_lifecycle_handlers_use_their_own_session(self, graph, sprint, session_factory):
        board, _, columns = sprint
        task = await graph.insert_task(board.id, columns["To Do"].id, "late")
        move, delete = lifecycle_handlers(session_factory, board.id)

        await move(task.id, columns["On Hold"].id, 0)
        async with session_factory() as db:
            moved = await BoardGraph(db).get_task(board.id, task.id)
            assert moved.column_id == columns["On Hold"].id
            actions = [a.action for a in await BoardGraph(db).list_activity(board.id)]
            assert ActivityAction.AUTO_MOVED in actions

        await delete(task.id)
        async with session_factory() as db:
            with pytest.raises(EntityNotFound):
                await BoardGraph(db).get_task(board.id, task.id)
