# board_graph.py — Persistence boundary for the board graph
# Typed reads, the consistent snapshot the lifecycle engine evaluates, and
# typed mutation commands for every entity. Every mutation that touches an
# ordered sequence goes through ordering_reconciler so the sequence is dense
# once the transaction commits.
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, delete, update, func, insert as sql_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import ordering_reconciler as ordering
from lifecycle_engine import (
    BoardSnapshot, CategorySnapshot, ColumnSnapshot, TaskSnapshot,
    DONE_COLUMN_NAME, find_sibling_by_normalized_name, is_done_column,
)
from models import (
    User, Board, BoardShare, BoardInvite, Category, BoardColumn, Task, TaskLabel,
    ChecklistItem, TaskComment, TaskAttachment, TaskLink, ActivityLog, ActivityAction,
    TaskLinkType, CommentCategory, TaskPriority, SharePermission, task_label_links, utcnow, new_uuid,
)
from realtime import (
    BoardChannelManager, change_message,
    TASKS_CHANGED, COLUMNS_CHANGED, CATEGORIES_CHANGED, BOARD_CHANGED,
)

logger = logging.getLogger("taskboard.graph")

OWNER_ROLE = "owner"
WRITE_ROLES = (OWNER_ROLE, SharePermission.EDITOR.value)

DEFAULT_CATEGORY_COLUMNS = ("To Do", "In Progress", "Review", "Done", "On Hold", "Blocked")

TASK_UPDATE_FIELDS = (
    "title", "description", "priority", "due_date", "start_date",
    "assigned_to", "cover_image_url",
)


# ============================================================
# ERRORS
# ============================================================

class BoardGraphError(Exception):
    """Base class for rejected board graph operations"""


class EntityNotFound(BoardGraphError):
    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class InvalidOperation(BoardGraphError):
    pass


class DuplicateEntity(InvalidOperation):
    pass


class PermissionDenied(BoardGraphError):
    pass


# ============================================================
# SNAPSHOT CONVERSION
# ============================================================

def category_snapshot(category: Category) -> CategorySnapshot:
    return CategorySnapshot(
        id=category.id,
        name=category.name,
        auto_delete_after_weeks=category.auto_delete_after_weeks,
    )


def column_snapshot(column: BoardColumn) -> ColumnSnapshot:
    return ColumnSnapshot(
        id=column.id,
        name=column.name,
        category_id=column.category_id,
        order_index=column.order_index or 0,
    )


def task_snapshot(task: Task) -> TaskSnapshot:
    return TaskSnapshot(
        id=task.id,
        column_id=task.column_id,
        due_date=task.due_date,
        is_done=bool(task.is_done),
        done_at=task.done_at,
        order_index=task.order_index or 0,
    )


def _renumber(items: Iterable[Any], ordered_ids: Sequence[str]) -> None:
    by_id = {item.id: item for item in items}
    for item_id, index in ordering.dense_indexes(ordered_ids).items():
        item = by_id[item_id]
        if item.order_index != index:
            item.order_index = index


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _as_aware(value: datetime) -> datetime:
    # SQLite hands timestamps back without an offset
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _reject_nulls(fields: Dict[str, Any], *keys: str) -> None:
    """Explicit nulls are only accepted for nullable columns"""
    for key in keys:
        if key in fields and fields[key] is None:
            raise InvalidOperation(f"{key} cannot be null")


def _validate_retention(weeks: Optional[int]) -> None:
    if weeks is None:
        return
    if isinstance(weeks, bool) or not isinstance(weeks, int) or weeks <= 0:
        raise InvalidOperation("auto_delete_after_weeks must be a positive integer")


# ============================================================
# BOARD GRAPH
# ============================================================

class BoardGraph:
    """Board graph operations bound to one database session.

    ``user_id`` is recorded on activity entries; ``None`` marks automatic
    (lifecycle engine) mutations.
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[BoardChannelManager] = None,
        user_id: Optional[str] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.user_id = user_id

    # --------------------------------------------------------
    # Internals
    # --------------------------------------------------------

    def _log(
        self, board_id: Optional[str], action: ActivityAction, entity_type: str,
        entity_id: Optional[str] = None, metadata: Optional[dict] = None,
    ) -> None:
        self.db.add(ActivityLog(
            board_id=board_id,
            user_id=self.user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            extra_data=metadata or {},
        ))

    async def _notify(
        self, board_id: str, change_type: str, action: str, entity_id: Optional[str] = None,
    ) -> None:
        if self.notifier is None:
            return
        await self.notifier.publish(board_id, change_message(change_type, board_id, action, entity_id))

    async def _load_column_tasks(self, column_id: str) -> List[Task]:
        stmt = (
            select(Task)
            .where(Task.column_id == column_id)
            .order_by(Task.order_index.asc(), Task.created_at.asc(), Task.id.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _relocate(self, task: Task, target: BoardColumn, position: Optional[int]) -> None:
        """Move ``task`` into ``target`` at ``position``; both columns end dense."""
        same_column = task.column_id == target.id
        source_tasks = await self._load_column_tasks(task.column_id)
        dest_tasks = source_tasks if same_column else await self._load_column_tasks(target.id)
        new_source, new_dest = ordering.move(
            [t.id for t in source_tasks], [t.id for t in dest_tasks], task.id, position,
            same_sequence=same_column,
        )
        task.column_id = target.id
        if not same_column:
            _renumber(source_tasks, new_source)
        _renumber(dest_tasks + [task], new_dest)

    async def _compact_column(self, column_id: str) -> None:
        tasks = await self._load_column_tasks(column_id)
        _renumber(tasks, ordering.compact((t.id, t.order_index or 0) for t in tasks))

    @staticmethod
    def _set_done(task: Task, is_done: bool) -> bool:
        """Apply a done-state change. Returns True when the state changed."""
        if is_done and not task.is_done:
            task.is_done = True
            if task.done_at is None:
                task.done_at = utcnow()
            return True
        if not is_done and task.is_done:
            task.is_done = False
            return True
        return False

    # --------------------------------------------------------
    # Reads
    # --------------------------------------------------------

    async def get_board(self, board_id: str) -> Board:
        result = await self.db.execute(select(Board).where(Board.id == board_id))
        board = result.scalar_one_or_none()
        if not board:
            raise EntityNotFound("Board", board_id)
        return board

    async def list_boards(self, owner_id: str) -> List[Board]:
        stmt = select(Board).where(Board.owner_id == owner_id).order_by(Board.created_at.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_categories(self, board_id: str) -> List[Category]:
        stmt = (
            select(Category)
            .where(Category.board_id == board_id)
            .order_by(Category.order_index.asc(), Category.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_columns(self, board_id: str) -> List[BoardColumn]:
        stmt = (
            select(BoardColumn)
            .where(BoardColumn.board_id == board_id)
            .order_by(BoardColumn.order_index.asc(), BoardColumn.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_tasks(self, board_id: str, column_id: Optional[str] = None) -> List[Task]:
        stmt = (
            select(Task)
            .join(BoardColumn, Task.column_id == BoardColumn.id)
            .where(BoardColumn.board_id == board_id)
            .order_by(Task.order_index.asc(), Task.created_at.asc())
        )
        if column_id:
            stmt = stmt.where(Task.column_id == column_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _require_user(self, user_id: str) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise EntityNotFound("User", user_id)
        return user

    async def get_category(self, board_id: str, category_id: str) -> Category:
        stmt = select(Category).where(Category.id == category_id, Category.board_id == board_id)
        result = await self.db.execute(stmt)
        category = result.scalar_one_or_none()
        if not category:
            raise EntityNotFound("Category", category_id)
        return category

    async def get_column(self, board_id: str, column_id: str) -> BoardColumn:
        stmt = select(BoardColumn).where(BoardColumn.id == column_id, BoardColumn.board_id == board_id)
        result = await self.db.execute(stmt)
        column = result.scalar_one_or_none()
        if not column:
            raise EntityNotFound("Column", column_id)
        return column

    async def get_task(self, board_id: str, task_id: str) -> Task:
        stmt = (
            select(Task)
            .join(BoardColumn, Task.column_id == BoardColumn.id)
            .where(Task.id == task_id, BoardColumn.board_id == board_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        task = result.scalar_one_or_none()
        if not task:
            raise EntityNotFound("Task", task_id)
        return task

    async def load_snapshot(self, board_id: str) -> BoardSnapshot:
        """Categories, columns and tasks from one transaction, frozen."""
        if self.db.in_transaction():
            return await self._read_snapshot(board_id)
        async with self.db.begin():
            return await self._read_snapshot(board_id)

    async def _read_snapshot(self, board_id: str) -> BoardSnapshot:
        categories = await self.list_categories(board_id)
        columns = await self.list_columns(board_id)
        tasks = await self.list_tasks(board_id)
        return BoardSnapshot(
            board_id=board_id,
            categories=tuple(category_snapshot(c) for c in categories),
            columns=tuple(column_snapshot(c) for c in columns),
            tasks=tuple(task_snapshot(t) for t in tasks),
        )

    # --------------------------------------------------------
    # Boards
    # --------------------------------------------------------

    async def create_board(self, owner_id: str, name: str) -> Board:
        board = Board(id=new_uuid(), name=name, owner_id=owner_id)
        self.db.add(board)
        await self.db.flush()
        self._log(board.id, ActivityAction.CREATED, "board", board.id, {"name": name})
        await self.db.commit()
        return board

    async def update_board(self, board_id: str, fields: Dict[str, Any]) -> Board:
        _reject_nulls(fields, "name")
        board = await self.get_board(board_id)
        for key in ("name", "background_image_url"):
            if key in fields:
                setattr(board, key, fields[key])
        self._log(board_id, ActivityAction.UPDATED, "board", board_id, {"fields": sorted(fields)})
        await self.db.commit()
        await self._notify(board_id, BOARD_CHANGED, "updated", board_id)
        return board

    async def delete_board(self, board_id: str) -> None:
        board = await self.get_board(board_id)
        self.db.expunge(board)
        # Children go with the board (ON DELETE CASCADE)
        await self.db.execute(delete(Board).where(Board.id == board_id))
        self._log(None, ActivityAction.DELETED, "board", board_id, {"name": board.name})
        await self.db.commit()
        await self._notify(board_id, BOARD_CHANGED, "deleted", board_id)

    # --------------------------------------------------------
    # Sharing
    # --------------------------------------------------------

    async def get_access(self, board: Board, user_id: str) -> Optional[str]:
        """``"owner"``, the share permission, or None when the user has no access."""
        if board.owner_id == user_id:
            return OWNER_ROLE
        share = await self._get_share(board.id, user_id)
        return _enum_value(share.permission) if share else None

    async def list_shared_boards(self, user_id: str) -> List[Tuple[Board, str]]:
        stmt = (
            select(Board, BoardShare.permission)
            .join(BoardShare, BoardShare.board_id == Board.id)
            .where(BoardShare.shared_with_user_id == user_id)
            .order_by(Board.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return [(board, _enum_value(permission)) for board, permission in result.all()]

    async def _get_share(self, board_id: str, user_id: str) -> Optional[BoardShare]:
        stmt = select(BoardShare).where(
            BoardShare.board_id == board_id, BoardShare.shared_with_user_id == user_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_members(self, board_id: str) -> List[Tuple[BoardShare, User]]:
        stmt = (
            select(BoardShare, User)
            .join(User, BoardShare.shared_with_user_id == User.id)
            .where(BoardShare.board_id == board_id)
            .order_by(BoardShare.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return [(share, user) for share, user in result.all()]

    async def update_member_role(
        self, board_id: str, user_id: str, role: SharePermission,
    ) -> BoardShare:
        share = await self._get_share(board_id, user_id)
        if share is None:
            raise EntityNotFound("Member", user_id)
        share.permission = role
        self._log(board_id, ActivityAction.UPDATED, "member", user_id, {"role": _enum_value(role)})
        await self.db.commit()
        await self._notify(board_id, BOARD_CHANGED, "member.updated", user_id)
        return share

    async def remove_member(self, board_id: str, user_id: str) -> None:
        share = await self._get_share(board_id, user_id)
        if share is None:
            raise EntityNotFound("Member", user_id)
        self.db.expunge(share)
        await self.db.execute(delete(BoardShare).where(BoardShare.id == share.id))
        self._log(board_id, ActivityAction.DELETED, "member", user_id)
        await self.db.commit()
        await self._notify(board_id, BOARD_CHANGED, "member.removed", user_id)

    async def list_invites(self, board_id: str) -> List[BoardInvite]:
        stmt = (
            select(BoardInvite)
            .where(BoardInvite.board_id == board_id)
            .order_by(BoardInvite.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def create_invite(
        self, board_id: str, role: SharePermission = SharePermission.VIEWER,
        usage_limit: Optional[int] = None, expires_in_days: Optional[int] = None,
    ) -> BoardInvite:
        await self.get_board(board_id)
        if usage_limit is not None and usage_limit <= 0:
            raise InvalidOperation("usage_limit must be a positive integer")
        invite = BoardInvite(
            id=new_uuid(),
            board_id=board_id,
            token=secrets.token_urlsafe(24),
            role=role,
            usage_limit=usage_limit,
            usage_count=0,
            created_by=self.user_id,
        )
        if expires_in_days:
            invite.expires_at = utcnow() + timedelta(days=expires_in_days)
        self.db.add(invite)
        self._log(board_id, ActivityAction.CREATED, "invite", invite.id, {"role": _enum_value(role)})
        await self.db.commit()
        return invite

    async def revoke_invite(self, board_id: str, invite_id: str) -> None:
        stmt = select(BoardInvite).where(BoardInvite.id == invite_id, BoardInvite.board_id == board_id)
        invite = (await self.db.execute(stmt)).scalar_one_or_none()
        if invite is None:
            raise EntityNotFound("Invite", invite_id)
        self.db.expunge(invite)
        await self.db.execute(delete(BoardInvite).where(BoardInvite.id == invite_id))
        self._log(board_id, ActivityAction.DELETED, "invite", invite_id)
        await self.db.commit()

    async def join_via_token(self, token: str, user_id: str) -> Tuple[Board, str]:
        """Redeem an invite for ``user_id``. Returns the board and the caller's role.

        The owner and existing members keep their access and do not use up
        the invite.
        """
        stmt = select(BoardInvite).where(BoardInvite.token == token)
        invite = (await self.db.execute(stmt)).scalar_one_or_none()
        if invite is None:
            raise EntityNotFound("Invite")

        board = await self.get_board(invite.board_id)
        current = await self.get_access(board, user_id)
        if current is not None:
            return board, current

        if invite.expires_at is not None and _as_aware(invite.expires_at) <= utcnow():
            raise InvalidOperation("Invite has expired")
        if invite.usage_limit is not None and (invite.usage_count or 0) >= invite.usage_limit:
            raise InvalidOperation("Invite usage limit reached")

        self.db.add(BoardShare(
            id=new_uuid(),
            board_id=board.id,
            shared_with_user_id=user_id,
            permission=invite.role,
        ))
        invite.usage_count = (invite.usage_count or 0) + 1
        self._log(board.id, ActivityAction.CREATED, "member", user_id, {"role": _enum_value(invite.role)})
        await self.db.commit()
        await self._notify(board.id, BOARD_CHANGED, "member.joined", user_id)
        logger.info(f"User {user_id[:8]} joined board {board.id[:8]} as {_enum_value(invite.role)}")
        return board, _enum_value(invite.role)

    # --------------------------------------------------------
    # Categories
    # --------------------------------------------------------

    async def create_category(
        self, board_id: str, name: str, color: Optional[str] = None,
        auto_delete_after_weeks: Optional[int] = None, with_default_columns: bool = False,
    ) -> Category:
        await self.get_board(board_id)
        _validate_retention(auto_delete_after_weeks)

        existing = await self.list_categories(board_id)
        category = Category(
            id=new_uuid(),
            board_id=board_id,
            name=name,
            order_index=ordering.next_append_index(c.order_index for c in existing),
            auto_delete_after_weeks=auto_delete_after_weeks,
        )
        if color:
            category.color = color
        self.db.add(category)

        if with_default_columns:
            columns = await self.list_columns(board_id)
            start = ordering.next_append_index(c.order_index for c in columns)
            for offset, column_name in enumerate(DEFAULT_CATEGORY_COLUMNS):
                self.db.add(BoardColumn(
                    board_id=board_id,
                    category_id=category.id,
                    name=column_name,
                    order_index=start + offset,
                ))

        self._log(board_id, ActivityAction.CREATED, "category", category.id, {"name": name})
        await self.db.commit()
        await self._notify(board_id, CATEGORIES_CHANGED, "created", category.id)
        if with_default_columns:
            await self._notify(board_id, COLUMNS_CHANGED, "created", category.id)
        return category

    async def update_category(self, board_id: str, category_id: str, fields: Dict[str, Any]) -> Category:
        _reject_nulls(fields, "name", "color")
        category = await self.get_category(board_id, category_id)
        if "auto_delete_after_weeks" in fields:
            _validate_retention(fields["auto_delete_after_weeks"])
        for key in ("name", "color", "auto_delete_after_weeks"):
            if key in fields:
                setattr(category, key, fields[key])
        self._log(board_id, ActivityAction.UPDATED, "category", category_id, {"fields": sorted(fields)})
        await self.db.commit()
        await self._notify(board_id, CATEGORIES_CHANGED, "updated", category_id)
        return category

    async def delete_category(self, board_id: str, category_id: str) -> None:
        """Delete a category; its columns become uncategorized."""
        category = await self.get_category(board_id, category_id)
        self.db.expunge(category)
        await self.db.execute(
            update(BoardColumn)
            .where(BoardColumn.category_id == category_id)
            .values(category_id=None)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.execute(delete(Category).where(Category.id == category_id))

        remaining = await self.list_categories(board_id)
        _renumber(remaining, ordering.compact((c.id, c.order_index or 0) for c in remaining))

        self._log(board_id, ActivityAction.DELETED, "category", category_id, {"name": category.name})
        await self.db.commit()
        await self._notify(board_id, CATEGORIES_CHANGED, "deleted", category_id)
        await self._notify(board_id, COLUMNS_CHANGED, "updated")

    async def reorder_categories(self, board_id: str, ordered_ids: Sequence[str]) -> List[Category]:
        categories = await self.list_categories(board_id)
        _renumber(categories, self._reordered([c.id for c in categories], ordered_ids, "Category"))
        await self.db.commit()
        await self._notify(board_id, CATEGORIES_CHANGED, "reordered")
        return sorted(categories, key=lambda c: c.order_index)

    @staticmethod
    def _reordered(current: List[str], requested: Sequence[str], entity: str) -> List[str]:
        """Requested ids first, in that order; anything unlisted keeps its relative order."""
        known = set(current)
        seen = set()
        ordered = []
        for item_id in requested:
            if item_id not in known:
                raise EntityNotFound(entity, item_id)
            if item_id not in seen:
                ordered.append(item_id)
                seen.add(item_id)
        return ordered + [item_id for item_id in current if item_id not in seen]

    # --------------------------------------------------------
    # Columns
    # --------------------------------------------------------

    async def create_column(
        self, board_id: str, name: str, category_id: Optional[str] = None,
        position: Optional[int] = None,
    ) -> BoardColumn:
        await self.get_board(board_id)
        if category_id:
            await self.get_category(board_id, category_id)

        columns = await self.list_columns(board_id)
        column = BoardColumn(id=new_uuid(), board_id=board_id, category_id=category_id, name=name)
        self.db.add(column)
        _renumber(columns + [column], ordering.insert([c.id for c in columns], column.id, position))

        self._log(board_id, ActivityAction.CREATED, "column", column.id, {"name": name})
        await self.db.commit()
        await self._notify(board_id, COLUMNS_CHANGED, "created", column.id)
        return column

    async def update_column(self, board_id: str, column_id: str, fields: Dict[str, Any]) -> BoardColumn:
        _reject_nulls(fields, "name")
        column = await self.get_column(board_id, column_id)
        if fields.get("category_id"):
            await self.get_category(board_id, fields["category_id"])
        for key in ("name", "category_id", "cover_image_url"):
            if key in fields:
                setattr(column, key, fields[key])
        self._log(board_id, ActivityAction.UPDATED, "column", column_id, {"fields": sorted(fields)})
        await self.db.commit()
        await self._notify(board_id, COLUMNS_CHANGED, "updated", column_id)
        return column

    async def delete_column(self, board_id: str, column_id: str) -> None:
        """Delete a column together with its tasks."""
        column = await self.get_column(board_id, column_id)
        for task in await self._load_column_tasks(column_id):
            self.db.expunge(task)
        self.db.expunge(column)
        await self.db.execute(delete(Task).where(Task.column_id == column_id))
        await self.db.execute(delete(BoardColumn).where(BoardColumn.id == column_id))

        remaining = await self.list_columns(board_id)
        _renumber(remaining, ordering.compact((c.id, c.order_index or 0) for c in remaining))

        self._log(board_id, ActivityAction.DELETED, "column", column_id, {"name": column.name})
        await self.db.commit()
        await self._notify(board_id, COLUMNS_CHANGED, "deleted", column_id)
        await self._notify(board_id, TASKS_CHANGED, "deleted")

    async def reorder_columns(self, board_id: str, ordered_ids: Sequence[str]) -> List[BoardColumn]:
        columns = await self.list_columns(board_id)
        _renumber(columns, self._reordered([c.id for c in columns], ordered_ids, "Column"))
        await self.db.commit()
        await self._notify(board_id, COLUMNS_CHANGED, "reordered")
        return sorted(columns, key=lambda c: c.order_index)

    # --------------------------------------------------------
    # Tasks
    # --------------------------------------------------------

    async def insert_task(
        self, board_id: str, column_id: str, title: str,
        position: Optional[int] = None, **fields: Any,
    ) -> Task:
        await self.get_column(board_id, column_id)
        siblings = await self._load_column_tasks(column_id)
        if fields.get("assigned_to"):
            await self._require_user(fields["assigned_to"])

        task = Task(id=new_uuid(), column_id=column_id, title=title)
        for key in TASK_UPDATE_FIELDS:
            if key in fields and fields[key] is not None:
                setattr(task, key, fields[key])
        if task.priority is None:
            task.priority = TaskPriority.MEDIUM
        task.is_done = False
        self.db.add(task)
        _renumber(siblings + [task], ordering.insert([t.id for t in siblings], task.id, position))

        self._log(board_id, ActivityAction.CREATED, "task", task.id, {"title": title})
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "created", task.id)
        return task

    async def update_task(self, board_id: str, task_id: str, fields: Dict[str, Any]) -> Task:
        _reject_nulls(fields, "title", "priority")
        if fields.get("assigned_to"):
            await self._require_user(fields["assigned_to"])
        task = await self.get_task(board_id, task_id)
        changed = []
        for key in TASK_UPDATE_FIELDS:
            if key in fields and getattr(task, key) != fields[key]:
                setattr(task, key, fields[key])
                changed.append(key)
        if "is_done" in fields and fields["is_done"] is not None:
            if self._set_done(task, bool(fields["is_done"])):
                changed.append("is_done")

        if changed:
            self._log(board_id, ActivityAction.UPDATED, "task", task_id, {"fields": changed})
        await self.db.commit()
        if changed:
            await self._notify(board_id, TASKS_CHANGED, "updated", task_id)
        return task

    async def move_task(
        self, board_id: str, task_id: str, column_id: str,
        position: Optional[int] = None, automatic: bool = False,
    ) -> Task:
        """Move a task to ``column_id`` at ``position`` (clamped; None appends)."""
        task = await self.get_task(board_id, task_id)
        target = await self.get_column(board_id, column_id)
        from_column_id = task.column_id

        await self._relocate(task, target, position)

        self._log(
            board_id,
            ActivityAction.AUTO_MOVED if automatic else ActivityAction.MOVED,
            "task", task_id,
            {"from_column_id": from_column_id, "to_column_id": target.id, "order_index": task.order_index},
        )
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "moved", task_id)
        return task

    async def delete_task(self, board_id: str, task_id: str, automatic: bool = False) -> None:
        task = await self.get_task(board_id, task_id)
        column_id = task.column_id
        title = task.title
        self.db.expunge(task)
        await self.db.execute(delete(Task).where(Task.id == task_id))
        await self._compact_column(column_id)

        self._log(
            board_id,
            ActivityAction.AUTO_DELETED if automatic else ActivityAction.DELETED,
            "task", task_id, {"title": title, "column_id": column_id},
        )
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "deleted", task_id)

    async def mark_task_done(
        self, board_id: str, task_id: str,
        target_column_id: Optional[str] = None, position: Optional[int] = None,
    ) -> Task:
        """Mark done and file the card under "Done".

        Without an explicit target the task is appended to the "Done" column
        sharing its current column's category, when there is one.
        """
        task = await self.get_task(board_id, task_id)

        target = None
        if target_column_id:
            target = await self.get_column(board_id, target_column_id)
        else:
            columns = await self.list_columns(board_id)
            snapshots = [column_snapshot(c) for c in columns]
            current = next((s for s in snapshots if s.id == task.column_id), None)
            if current is not None and not is_done_column(current):
                sibling = find_sibling_by_normalized_name(snapshots, current, DONE_COLUMN_NAME)
                if sibling is not None:
                    target = next(c for c in columns if c.id == sibling.id)

        # Relocate first: column loads refresh rows from the database
        if target is not None:
            await self._relocate(task, target, position)
        self._set_done(task, True)

        self._log(board_id, ActivityAction.MARKED_DONE, "task", task_id, {"column_id": task.column_id})
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "updated", task_id)
        return task

    async def mark_task_undone(self, board_id: str, task_id: str) -> Task:
        """Clear is_done. done_at is kept as first-done history."""
        task = await self.get_task(board_id, task_id)
        self._set_done(task, False)
        self._log(board_id, ActivityAction.MARKED_UNDONE, "task", task_id)
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "updated", task_id)
        return task

    # --------------------------------------------------------
    # Labels
    # --------------------------------------------------------

    async def list_labels(self, board_id: str) -> List[TaskLabel]:
        stmt = select(TaskLabel).where(TaskLabel.board_id == board_id).order_by(TaskLabel.name.asc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_label(self, board_id: str, label_id: str) -> TaskLabel:
        stmt = select(TaskLabel).where(TaskLabel.id == label_id, TaskLabel.board_id == board_id)
        result = await self.db.execute(stmt)
        label = result.scalar_one_or_none()
        if not label:
            raise EntityNotFound("Label", label_id)
        return label

    async def create_label(self, board_id: str, name: str, color: str) -> TaskLabel:
        await self.get_board(board_id)
        label = TaskLabel(id=new_uuid(), board_id=board_id, name=name, color=color)
        self.db.add(label)
        await self.db.commit()
        await self._notify(board_id, BOARD_CHANGED, "label.created", label.id)
        return label

    async def update_label(self, board_id: str, label_id: str, fields: Dict[str, Any]) -> TaskLabel:
        _reject_nulls(fields, "name", "color")
        label = await self.get_label(board_id, label_id)
        for key in ("name", "color"):
            if key in fields:
                setattr(label, key, fields[key])
        await self.db.commit()
        await self._notify(board_id, BOARD_CHANGED, "label.updated", label_id)
        return label

    async def delete_label(self, board_id: str, label_id: str) -> None:
        label = await self.get_label(board_id, label_id)
        self.db.expunge(label)
        await self.db.execute(delete(task_label_links).where(task_label_links.c.label_id == label_id))
        await self.db.execute(delete(TaskLabel).where(TaskLabel.id == label_id))
        await self.db.commit()
        await self._notify(board_id, BOARD_CHANGED, "label.deleted", label_id)

    async def attach_label(self, board_id: str, task_id: str, label_id: str) -> None:
        await self.get_task(board_id, task_id)
        await self.get_label(board_id, label_id)
        existing = await self.db.execute(
            select(task_label_links.c.task_id).where(
                task_label_links.c.task_id == task_id,
                task_label_links.c.label_id == label_id,
            )
        )
        if existing.first() is not None:
            return
        await self.db.execute(sql_insert(task_label_links).values(task_id=task_id, label_id=label_id))
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "label.attached", task_id)

    async def detach_label(self, board_id: str, task_id: str, label_id: str) -> None:
        await self.get_task(board_id, task_id)
        await self.db.execute(
            delete(task_label_links).where(
                task_label_links.c.task_id == task_id,
                task_label_links.c.label_id == label_id,
            )
        )
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "label.detached", task_id)

    async def labels_for_tasks(self, task_ids: Sequence[str]) -> Dict[str, List[TaskLabel]]:
        if not task_ids:
            return {}
        stmt = (
            select(task_label_links.c.task_id, TaskLabel)
            .join(TaskLabel, TaskLabel.id == task_label_links.c.label_id)
            .where(task_label_links.c.task_id.in_(list(task_ids)))
            .order_by(TaskLabel.name.asc())
        )
        result = await self.db.execute(stmt)
        labels: Dict[str, List[TaskLabel]] = {}
        for task_id, label in result.all():
            labels.setdefault(task_id, []).append(label)
        return labels

    # --------------------------------------------------------
    # Checklist
    # --------------------------------------------------------

    async def _load_checklist(self, task_id: str) -> List[ChecklistItem]:
        stmt = (
            select(ChecklistItem)
            .where(ChecklistItem.task_id == task_id)
            .order_by(ChecklistItem.order_index.asc(), ChecklistItem.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _get_checklist_item(self, task_id: str, item_id: str) -> ChecklistItem:
        stmt = select(ChecklistItem).where(ChecklistItem.id == item_id, ChecklistItem.task_id == task_id)
        result = await self.db.execute(stmt)
        item = result.scalar_one_or_none()
        if not item:
            raise EntityNotFound("Checklist item", item_id)
        return item

    async def list_checklist(self, board_id: str, task_id: str) -> List[ChecklistItem]:
        await self.get_task(board_id, task_id)
        return await self._load_checklist(task_id)

    async def add_checklist_item(self, board_id: str, task_id: str, title: str) -> ChecklistItem:
        await self.get_task(board_id, task_id)
        items = await self._load_checklist(task_id)
        item = ChecklistItem(
            id=new_uuid(), task_id=task_id, title=title,
            order_index=ordering.next_append_index(i.order_index for i in items),
        )
        self.db.add(item)
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "checklist.created", task_id)
        return item

    async def update_checklist_item(
        self, board_id: str, task_id: str, item_id: str, fields: Dict[str, Any],
    ) -> ChecklistItem:
        _reject_nulls(fields, "title", "is_completed")
        await self.get_task(board_id, task_id)
        item = await self._get_checklist_item(task_id, item_id)
        for key in ("title", "is_completed"):
            if key in fields:
                setattr(item, key, fields[key])
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "checklist.updated", task_id)
        return item

    async def delete_checklist_item(self, board_id: str, task_id: str, item_id: str) -> None:
        await self.get_task(board_id, task_id)
        item = await self._get_checklist_item(task_id, item_id)
        self.db.expunge(item)
        await self.db.execute(delete(ChecklistItem).where(ChecklistItem.id == item_id))
        remaining = await self._load_checklist(task_id)
        _renumber(remaining, ordering.compact((i.id, i.order_index or 0) for i in remaining))
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "checklist.deleted", task_id)

    # --------------------------------------------------------
    # Comments
    # --------------------------------------------------------

    async def list_comments(self, board_id: str, task_id: str) -> List[TaskComment]:
        await self.get_task(board_id, task_id)
        stmt = (
            select(TaskComment)
            .where(TaskComment.task_id == task_id)
            .order_by(TaskComment.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _get_own_comment(self, task_id: str, comment_id: str) -> TaskComment:
        stmt = select(TaskComment).where(TaskComment.id == comment_id, TaskComment.task_id == task_id)
        result = await self.db.execute(stmt)
        comment = result.scalar_one_or_none()
        if not comment:
            raise EntityNotFound("Comment", comment_id)
        if comment.author_id != self.user_id:
            raise PermissionDenied("Only the author can change a comment")
        return comment

    async def add_comment(
        self, board_id: str, task_id: str, content: str,
        category: CommentCategory = CommentCategory.GENERAL_COMMENTS,
    ) -> TaskComment:
        await self.get_task(board_id, task_id)
        if not self.user_id:
            raise PermissionDenied("Comments need an author")
        comment = TaskComment(
            id=new_uuid(), task_id=task_id, author_id=self.user_id,
            content=content, category=category,
        )
        self.db.add(comment)
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "comment.created", task_id)
        return comment

    async def edit_comment(
        self, board_id: str, task_id: str, comment_id: str,
        content: str, category: Optional[CommentCategory] = None,
    ) -> TaskComment:
        await self.get_task(board_id, task_id)
        comment = await self._get_own_comment(task_id, comment_id)
        comment.content = content
        if category is not None:
            comment.category = category
        comment.edited_at = utcnow()
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "comment.updated", task_id)
        return comment

    async def delete_comment(self, board_id: str, task_id: str, comment_id: str) -> None:
        await self.get_task(board_id, task_id)
        comment = await self._get_own_comment(task_id, comment_id)
        self.db.expunge(comment)
        await self.db.execute(delete(TaskComment).where(TaskComment.id == comment_id))
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "comment.deleted", task_id)

    # --------------------------------------------------------
    # Attachments (metadata only)
    # --------------------------------------------------------

    async def list_attachments(self, board_id: str, task_id: str) -> List[TaskAttachment]:
        await self.get_task(board_id, task_id)
        stmt = (
            select(TaskAttachment)
            .where(TaskAttachment.task_id == task_id)
            .order_by(TaskAttachment.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def record_attachment(
        self, board_id: str, task_id: str, file_name: str, file_path: str,
        file_type: str, file_size: int,
    ) -> TaskAttachment:
        await self.get_task(board_id, task_id)
        attachment = TaskAttachment(
            id=new_uuid(), task_id=task_id, uploader_id=self.user_id,
            file_name=file_name, file_path=file_path,
            file_type=file_type, file_size=file_size,
        )
        self.db.add(attachment)
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "attachment.created", task_id)
        return attachment

    async def delete_attachment(self, board_id: str, task_id: str, attachment_id: str) -> TaskAttachment:
        """Remove the metadata row; returns it so the caller can drop the stored file."""
        await self.get_task(board_id, task_id)
        stmt = select(TaskAttachment).where(
            TaskAttachment.id == attachment_id, TaskAttachment.task_id == task_id,
        )
        result = await self.db.execute(stmt)
        attachment = result.scalar_one_or_none()
        if not attachment:
            raise EntityNotFound("Attachment", attachment_id)
        self.db.expunge(attachment)
        await self.db.execute(delete(TaskAttachment).where(TaskAttachment.id == attachment_id))
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "attachment.deleted", task_id)
        return attachment

    # --------------------------------------------------------
    # Task links
    # --------------------------------------------------------

    async def list_links(self, board_id: str, task_id: str) -> List[Tuple[TaskLink, Task, BoardColumn]]:
        """Outgoing links with their target task and its column"""
        await self.get_task(board_id, task_id)
        stmt = (
            select(TaskLink, Task, BoardColumn)
            .join(Task, Task.id == TaskLink.target_task_id)
            .join(BoardColumn, BoardColumn.id == Task.column_id)
            .where(TaskLink.source_task_id == task_id)
            .order_by(TaskLink.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return [tuple(row) for row in result.all()]

    async def _find_link(self, source_id: str, target_id: str, link_type: TaskLinkType) -> Optional[TaskLink]:
        stmt = select(TaskLink).where(
            TaskLink.source_task_id == source_id,
            TaskLink.target_task_id == target_id,
            TaskLink.link_type == link_type,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def add_link(
        self, board_id: str, source_task_id: str, target_task_id: str, link_type: TaskLinkType,
    ) -> TaskLink:
        """Link two tasks; the inverse link is stored alongside."""
        if source_task_id == target_task_id:
            raise InvalidOperation("A task cannot be linked to itself")
        await self.get_task(board_id, source_task_id)
        await self.get_task(board_id, target_task_id)

        if await self._find_link(source_task_id, target_task_id, link_type):
            raise DuplicateEntity("Link already exists")

        link = TaskLink(
            id=new_uuid(), source_task_id=source_task_id, target_task_id=target_task_id,
            link_type=link_type, created_by=self.user_id,
        )
        self.db.add(link)
        if not await self._find_link(target_task_id, source_task_id, link_type.inverse):
            self.db.add(TaskLink(
                id=new_uuid(), source_task_id=target_task_id, target_task_id=source_task_id,
                link_type=link_type.inverse, created_by=self.user_id,
            ))
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "link.created", source_task_id)
        return link

    async def remove_link(self, board_id: str, task_id: str, link_id: str) -> None:
        await self.get_task(board_id, task_id)
        stmt = select(TaskLink).where(TaskLink.id == link_id, TaskLink.source_task_id == task_id)
        result = await self.db.execute(stmt)
        link = result.scalar_one_or_none()
        if not link:
            raise EntityNotFound("Link", link_id)

        inverse_type = TaskLinkType(link.link_type).inverse
        self.db.expunge(link)
        await self.db.execute(delete(TaskLink).where(TaskLink.id == link_id))
        await self.db.execute(
            delete(TaskLink).where(
                TaskLink.source_task_id == link.target_task_id,
                TaskLink.target_task_id == link.source_task_id,
                TaskLink.link_type == inverse_type,
            )
        )
        await self.db.commit()
        await self._notify(board_id, TASKS_CHANGED, "link.deleted", task_id)

    # --------------------------------------------------------
    # Activity
    # --------------------------------------------------------

    async def list_activity(self, board_id: str, limit: int = 100) -> List[ActivityLog]:
        stmt = (
            select(ActivityLog)
            .where(ActivityLog.board_id == board_id)
            .order_by(ActivityLog.created_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_tasks(self, column_id: str) -> int:
        result = await self.db.execute(select(func.count(Task.id)).where(Task.column_id == column_id))
        return result.scalar() or 0


# ============================================================
# LIFECYCLE COMMAND HANDLERS
# ============================================================

def lifecycle_handlers(
    session_factory: async_sessionmaker,
    board_id: str,
    notifier: Optional[BoardChannelManager] = None,
):
    """``(move_task, delete_task)`` coroutine functions for the lifecycle engine.

    Each command runs in its own session so one failure never poisons
    another.
    """

    async def move_task(task_id: str, column_id: str, order_index: int) -> None:
        async with session_factory() as db:
            graph = BoardGraph(db, notifier)
            await graph.move_task(board_id, task_id, column_id, order_index, automatic=True)

    async def delete_task(task_id: str) -> None:
        async with session_factory() as db:
            graph = BoardGraph(db, notifier)
            await graph.delete_task(board_id, task_id, automatic=True)

    return move_task, delete_task
