# models.py — Board graph models for Taskboard
# boards -> categories -> columns -> tasks, plus:
# - board labels and task/label links
# - checklist items, comments, attachment metadata
# - bidirectional task-to-task links
# - board shares and invite links
# - activity log
#
# String UUID primary keys everywhere. Ordering columns are dense per parent
# (see ordering_reconciler.py).

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Date, JSON, Boolean, BigInteger, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, Table, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class TaskPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CommentCategory(str, PyEnum):
    TASK_UPDATES = "TASK_UPDATES"
    QUESTIONS = "QUESTIONS"
    GENERAL_COMMENTS = "GENERAL_COMMENTS"


class TaskLinkType(str, PyEnum):
    RELATES_TO = "relates_to"
    BLOCKS = "blocks"
    IS_BLOCKED_BY = "is_blocked_by"
    DUPLICATES = "duplicates"

    @property
    def inverse(self) -> "TaskLinkType":
        inverses = {
            "relates_to": TaskLinkType.RELATES_TO,
            "blocks": TaskLinkType.IS_BLOCKED_BY,
            "is_blocked_by": TaskLinkType.BLOCKS,
            "duplicates": TaskLinkType.DUPLICATES,
        }
        return inverses[self.value]


class SharePermission(str, PyEnum):
    VIEWER = "viewer"
    EDITOR = "editor"


class ActivityAction(str, PyEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    MOVED = "moved"
    MARKED_DONE = "marked_done"
    MARKED_UNDONE = "marked_undone"
    AUTO_MOVED = "auto_moved"
    AUTO_DELETED = "auto_deleted"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    boards = relationship("Board", back_populates="owner")


# ============================================================
# BOARD GRAPH
# ============================================================

class Board(Base):
    """Root of one board graph"""
    __tablename__ = "boards"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String(100), nullable=False)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    background_image_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    owner = relationship("User", back_populates="boards")
    categories = relationship(
        "Category", back_populates="board", cascade="all, delete-orphan",
        order_by="Category.order_index",
    )
    columns = relationship(
        "BoardColumn", back_populates="board", cascade="all, delete-orphan",
        order_by="BoardColumn.order_index",
    )
    labels = relationship("TaskLabel", back_populates="board", cascade="all, delete-orphan")
    shares = relationship("BoardShare", back_populates="board", cascade="all, delete-orphan")
    invites = relationship("BoardInvite", back_populates="board", cascade="all, delete-orphan")


class BoardShare(Base):
    """Membership of a non-owner on a board"""
    __tablename__ = "board_shares"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    shared_with_user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    permission = Column(SQLEnum(SharePermission), nullable=False, default=SharePermission.VIEWER)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="shares")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("board_id", "shared_with_user_id", name="uq_board_share"),
    )


class BoardInvite(Base):
    """Join link; grants ``role`` to whoever redeems ``token``"""
    __tablename__ = "board_invites"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String, unique=True, nullable=False, index=True)
    role = Column(SQLEnum(SharePermission), nullable=False, default=SharePermission.VIEWER)
    usage_limit = Column(Integer, nullable=True)  # None = unlimited
    usage_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)  # None = never
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="invites")


class Category(Base):
    """Named group of columns; optionally carries a retention policy"""
    __tablename__ = "categories"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    color = Column(String, nullable=False, default="#6366f1")
    order_index = Column(Integer, nullable=False, default=0)
    auto_delete_after_weeks = Column(Integer, nullable=True)  # None = never purge
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    board = relationship("Board", back_populates="categories")
    columns = relationship("BoardColumn", back_populates="category")

    __table_args__ = (
        Index("idx_category_board_order", "board_id", "order_index"),
    )


class BoardColumn(Base):
    """Ordered list of tasks; routing targets are identified by name"""
    __tablename__ = "board_columns"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    category_id = Column(String, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(100), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)
    cover_image_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    board = relationship("Board", back_populates="columns")
    category = relationship("Category", back_populates="columns")
    tasks = relationship(
        "Task", back_populates="column", cascade="all, delete-orphan",
        order_by="Task.order_index",
    )

    __table_args__ = (
        Index("idx_col_board_order", "board_id", "order_index"),
    )


task_label_links = Table(
    "task_label_links",
    Base.metadata,
    Column("task_id", String, ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
    Column("label_id", String, ForeignKey("task_labels.id", ondelete="CASCADE"), primary_key=True),
)


class TaskLabel(Base):
    """Board-scoped label"""
    __tablename__ = "task_labels"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(50), nullable=False)
    color = Column(String, default="#6366f1")  # Hex color
    created_at = Column(DateTime(timezone=True), default=utcnow)

    board = relationship("Board", back_populates="labels")
    tasks = relationship("Task", secondary=task_label_links, back_populates="labels")


class Task(Base):
    """Task card"""
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    column_id = Column(String, ForeignKey("board_columns.id", ondelete="CASCADE"), nullable=False, index=True)

    # Core fields
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(SQLEnum(TaskPriority), nullable=False, default=TaskPriority.MEDIUM)
    order_index = Column(Integer, nullable=False, default=0)  # Dense within column
    cover_image_url = Column(String, nullable=True)

    # Schedule
    due_date = Column(Date, nullable=True)
    start_date = Column(Date, nullable=True)

    # Completion. done_at is first-done history and survives un-marking.
    is_done = Column(Boolean, nullable=False, default=False)
    done_at = Column(DateTime(timezone=True), nullable=True)

    # Assignment
    assigned_to = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    column = relationship("BoardColumn", back_populates="tasks")
    assignee = relationship("User", foreign_keys=[assigned_to])
    labels = relationship("TaskLabel", secondary=task_label_links, back_populates="tasks")
    checklist_items = relationship(
        "ChecklistItem", back_populates="task", cascade="all, delete-orphan",
        order_by="ChecklistItem.order_index",
    )
    comments = relationship(
        "TaskComment", back_populates="task", cascade="all, delete-orphan",
        order_by="TaskComment.created_at",
    )
    attachments = relationship("TaskAttachment", back_populates="task", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_task_col_order", "column_id", "order_index"),
    )


class ChecklistItem(Base):
    __tablename__ = "checklist_items"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("Task", back_populates="checklist_items")


class TaskComment(Base):
    """Comments on a task card"""
    __tablename__ = "task_comments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(String, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    category = Column(SQLEnum(CommentCategory), nullable=False, default=CommentCategory.GENERAL_COMMENTS)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    task = relationship("Task", back_populates="comments")
    author = relationship("User")


class TaskAttachment(Base):
    """Attachment metadata; the file itself lives in external object storage"""
    __tablename__ = "task_attachments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    uploader_id = Column(String, ForeignKey("users.id"), nullable=True)
    file_name = Column(String, nullable=False)
    file_path = Column(String, nullable=False)
    file_type = Column(String, nullable=False, default="application/octet-stream")
    file_size = Column(BigInteger, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task = relationship("Task", back_populates="attachments")


class TaskLink(Base):
    """Directed task-to-task link; always stored together with its inverse"""
    __tablename__ = "task_links"

    id = Column(String, primary_key=True, default=new_uuid)
    source_task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    target_task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    link_type = Column(SQLEnum(TaskLinkType), nullable=False)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    source_task = relationship("Task", foreign_keys=[source_task_id])
    target_task = relationship("Task", foreign_keys=[target_task_id])

    __table_args__ = (
        UniqueConstraint("source_task_id", "target_task_id", "link_type", name="uq_task_link"),
    )


class ActivityLog(Base):
    """Audit trail of board graph mutations"""
    __tablename__ = "activity_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    board_id = Column(String, ForeignKey("boards.id", ondelete="CASCADE"), nullable=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)  # None for automatic actions
    action = Column(SQLEnum(ActivityAction), nullable=False)
    entity_type = Column(String, nullable=False)  # "task", "column", "category", ...
    entity_id = Column(String, nullable=True)
    extra_data = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")

    __table_args__ = (
        Index("idx_activity_board_time", "board_id", "created_at"),
    )
