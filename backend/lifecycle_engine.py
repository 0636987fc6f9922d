"""
Taskboard — Automatic Lifecycle Engine

Housekeeping that runs once per board-view activation:

- Auto-Router: overdue cards go to the sibling "On Hold" column, done cards
  go to the sibling "Done" column (siblings share the same category).
- Auto-Deleter: done cards that have sat in a "Done" column longer than the
  category's ``auto_delete_after_weeks`` are removed.

Both runners evaluate an immutable snapshot, never suspend mid-scan, and hand
their mutations to a :class:`CommandDispatcher` as fire-and-forget commands.
Target order indexes come from run-local counters, so the plan stays
collision-free whether or not earlier commands have completed.
"""

import asyncio
import inspect
import logging
import uuid
from collections import Counter
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from telemetry import get_tracer

logger = logging.getLogger("taskboard.lifecycle")

DONE_COLUMN_NAME = "done"
ON_HOLD_COLUMN_NAME = "on hold"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# SNAPSHOT
# ============================================================

@dataclass(frozen=True)
class CategorySnapshot:
    id: str
    name: str = ""
    auto_delete_after_weeks: Optional[int] = None


@dataclass(frozen=True)
class ColumnSnapshot:
    id: str
    name: str
    category_id: Optional[str] = None
    order_index: int = 0


@dataclass(frozen=True)
class TaskSnapshot:
    id: str
    column_id: str
    due_date: Optional[date] = None
    is_done: bool = False
    done_at: Optional[datetime] = None
    order_index: int = 0


@dataclass(frozen=True)
class BoardSnapshot:
    """One consistent read of a board's categories, columns and tasks"""
    board_id: str
    categories: Tuple[CategorySnapshot, ...] = ()
    columns: Tuple[ColumnSnapshot, ...] = ()
    tasks: Tuple[TaskSnapshot, ...] = ()
    taken_at: datetime = field(default_factory=_utcnow)


# ============================================================
# COLUMN NAME CONVENTIONS
# ============================================================

def normalize_column_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


def is_done_column(column: ColumnSnapshot) -> bool:
    return normalize_column_name(column.name) == DONE_COLUMN_NAME


def is_on_hold_column(column: ColumnSnapshot) -> bool:
    return normalize_column_name(column.name) == ON_HOLD_COLUMN_NAME


def find_sibling_by_normalized_name(
    columns: Sequence[ColumnSnapshot],
    column: ColumnSnapshot,
    target_name: str,
) -> Optional[ColumnSnapshot]:
    """First column in ``columns`` sharing ``column``'s category whose
    trimmed, lower-cased name equals ``target_name``.

    Uncategorized columns are siblings of each other (both-null matches).
    """
    category_id = column.category_id or None
    wanted = normalize_column_name(target_name)
    for candidate in columns:
        if (candidate.category_id or None) != category_id:
            continue
        if normalize_column_name(candidate.name) == wanted:
            return candidate
    return None


# ============================================================
# EVENTS
# ============================================================

class LifecycleEventKind(str, Enum):
    RUN_SKIPPED = "run_skipped"
    ROUTE_SCHEDULED = "route_scheduled"
    ROUTE_SKIPPED_NO_SIBLING = "route_skipped_no_sibling"
    TASK_SKIPPED_MISSING_COLUMN = "task_skipped_missing_column"
    DELETION_DISABLED = "deletion_disabled"
    DELETE_SCHEDULED = "delete_scheduled"
    COMMAND_SUCCEEDED = "command_succeeded"
    COMMAND_FAILED = "command_failed"

    @property
    def log_level(self) -> int:
        levels = {
            "run_skipped": logging.DEBUG,
            "route_scheduled": logging.INFO,
            "route_skipped_no_sibling": logging.DEBUG,
            "task_skipped_missing_column": logging.WARNING,
            "deletion_disabled": logging.DEBUG,
            "delete_scheduled": logging.INFO,
            "command_succeeded": logging.DEBUG,
            "command_failed": logging.WARNING,
        }
        return levels.get(self.value, logging.INFO)


@dataclass
class LifecycleEvent:
    kind: LifecycleEventKind
    message: str
    board_id: Optional[str] = None
    task_id: Optional[str] = None
    column_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: _utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "board_id": self.board_id,
            "task_id": self.task_id,
            "column_id": self.column_id,
            "details": self.details,
            "timestamp": self.timestamp,
        }


EventSink = Callable[[LifecycleEvent], None]


def log_event_sink(event: LifecycleEvent) -> None:
    """Default sink: one log line per event"""
    logger.log(
        event.kind.log_level,
        f"[{event.kind.value}] {event.message} "
        f"(board={event.board_id} task={event.task_id} column={event.column_id})",
    )


def emit_event(sink: Optional[EventSink], event: LifecycleEvent) -> None:
    """Deliver ``event``; a failing sink is logged and never interrupts a run."""
    try:
        (sink or log_event_sink)(event)
    except Exception:
        logger.exception(f"Lifecycle event sink failed for {event.kind.value}")


# ============================================================
# SESSION LATCHES
# ============================================================

@dataclass
class SessionState:
    """One activation of a board view. Each runner fires at most once per state."""
    board_id: str
    user_id: Optional[str] = None
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    activated_at: datetime = field(default_factory=_utcnow)
    has_routed_once: bool = False
    has_purged_once: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "board_id": self.board_id,
            "user_id": self.user_id,
            "activated_at": self.activated_at.isoformat(),
            "has_routed_once": self.has_routed_once,
            "has_purged_once": self.has_purged_once,
        }


class SessionRegistry:
    """Owns the live SessionState per (user, board). Re-activation replaces it."""

    def __init__(self):
        self._sessions: Dict[str, SessionState] = {}
        self._active: Dict[Tuple[str, Optional[str]], str] = {}

    def activate(self, board_id: str, user_id: Optional[str] = None) -> SessionState:
        previous = self._active.pop((board_id, user_id), None)
        if previous:
            self._sessions.pop(previous, None)
        state = SessionState(board_id=board_id, user_id=user_id)
        self._sessions[state.session_id] = state
        self._active[(board_id, user_id)] = state.session_id
        return state

    def get(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    def end(self, session_id: str) -> None:
        state = self._sessions.pop(session_id, None)
        if state and self._active.get((state.board_id, state.user_id)) == session_id:
            del self._active[(state.board_id, state.user_id)]

    def __len__(self) -> int:
        return len(self._sessions)


# ============================================================
# COMMANDS
# ============================================================

class RouteReason(str, Enum):
    OVERDUE = "overdue"
    DONE = "done"


@dataclass(frozen=True)
class MoveTaskCommand:
    task_id: str
    column_id: str
    order_index: int
    reason: RouteReason
    from_column_id: Optional[str] = None

    def invoke(self, handler: Callable[..., Any]) -> Any:
        return handler(self.task_id, self.column_id, self.order_index)

    def describe(self) -> str:
        return f"move {self.task_id} -> {self.column_id}@{self.order_index} ({self.reason.value})"


@dataclass(frozen=True)
class DeleteTaskCommand:
    task_id: str
    category_id: str
    elapsed: timedelta

    def invoke(self, handler: Callable[..., Any]) -> Any:
        return handler(self.task_id)

    def describe(self) -> str:
        return f"delete {self.task_id} (done {self.elapsed.days}d ago)"


LifecycleCommand = Union[MoveTaskCommand, DeleteTaskCommand]


@dataclass
class DispatchReport:
    scheduled: List[LifecycleCommand] = field(default_factory=list)
    succeeded: List[LifecycleCommand] = field(default_factory=list)
    failed: List[Tuple[LifecycleCommand, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheduled": len(self.scheduled),
            "succeeded": [c.task_id for c in self.succeeded],
            "failed": [{"task_id": c.task_id, "error": err} for c, err in self.failed],
        }


class CommandDispatcher:
    """Issues lifecycle commands without waiting for earlier ones to finish.

    Handlers may be plain callables or coroutine functions. Coroutines are
    wrapped in asyncio tasks immediately (a running loop is required);
    ``max_concurrency`` bounds how many execute at once. Failures are
    reported as ``command_failed`` events and never propagate.
    """

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        events: Optional[EventSink] = None,
        board_id: Optional[str] = None,
    ):
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None
        self._events = events
        self._board_id = board_id
        self._pending: Set[asyncio.Task] = set()
        self.report = DispatchReport()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, command: LifecycleCommand, handler: Callable[..., Any]) -> None:
        self.report.scheduled.append(command)
        try:
            result = command.invoke(handler)
        except Exception as e:
            self._record_failure(command, e)
            return

        if not inspect.isawaitable(result):
            self._record_success(command)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            if inspect.iscoroutine(result):
                result.close()
            self._record_failure(command, e)
            return

        task = loop.create_task(self._run(command, result))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run(self, command: LifecycleCommand, awaitable) -> None:
        try:
            if self._semaphore is not None:
                async with self._semaphore:
                    await awaitable
            else:
                await awaitable
        except Exception as e:
            self._record_failure(command, e)
        else:
            self._record_success(command)

    async def drain(self) -> DispatchReport:
        """Wait for every issued command; returns the accumulated report."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        return self.report

    def _record_success(self, command: LifecycleCommand) -> None:
        self.report.succeeded.append(command)
        emit_event(self._events, LifecycleEvent(
            kind=LifecycleEventKind.COMMAND_SUCCEEDED,
            message=command.describe(),
            board_id=self._board_id,
            task_id=command.task_id,
        ))

    def _record_failure(self, command: LifecycleCommand, error: Exception) -> None:
        self.report.failed.append((command, str(error) or type(error).__name__))
        emit_event(self._events, LifecycleEvent(
            kind=LifecycleEventKind.COMMAND_FAILED,
            message=f"{command.describe()} failed: {error!r}",
            board_id=self._board_id,
            task_id=command.task_id,
            details={"error": type(error).__name__},
        ))


# ============================================================
# AUTO-ROUTER
# ============================================================

def _as_date(value: Union[date, datetime, None]) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def plan_auto_routing(
    tasks: Iterable[TaskSnapshot],
    columns: Sequence[ColumnSnapshot],
    all_tasks: Iterable[TaskSnapshot],
    today: Optional[date] = None,
    events: Optional[EventSink] = None,
    board_id: Optional[str] = None,
) -> List[MoveTaskCommand]:
    """Decide which tasks move where. Pure: nothing is sent anywhere.

    Done tasks outside a "Done" column go to the sibling "Done" column.
    Open tasks whose due date is before ``today`` go to the sibling
    "On Hold" column. Each task yields at most one command. Target indexes
    start at the snapshot length of the target column and increase by one
    per command aimed at that column.
    """
    today = today or date.today()
    columns_by_id = {c.id: c for c in columns}
    target_lengths: Dict[str, int] = dict(Counter(t.column_id for t in all_tasks))
    commands: List[MoveTaskCommand] = []

    for task in tasks:
        column = columns_by_id.get(task.column_id)
        if column is None:
            emit_event(events, LifecycleEvent(
                kind=LifecycleEventKind.TASK_SKIPPED_MISSING_COLUMN,
                message="Task references a column that is not on the board",
                board_id=board_id, task_id=task.id, column_id=task.column_id,
            ))
            continue

        if task.is_done:
            if is_done_column(column):
                continue
            reason, target_name = RouteReason.DONE, DONE_COLUMN_NAME
        else:
            due = _as_date(task.due_date)
            if due is None or due >= today:
                continue
            if is_on_hold_column(column):
                continue
            reason, target_name = RouteReason.OVERDUE, ON_HOLD_COLUMN_NAME

        target = find_sibling_by_normalized_name(columns, column, target_name)
        if target is None:
            emit_event(events, LifecycleEvent(
                kind=LifecycleEventKind.ROUTE_SKIPPED_NO_SIBLING,
                message=f"No '{target_name}' column next to '{column.name}'",
                board_id=board_id, task_id=task.id, column_id=column.id,
                details={"reason": reason.value, "category_id": column.category_id},
            ))
            continue

        order_index = target_lengths.get(target.id, 0)
        target_lengths[target.id] = order_index + 1
        command = MoveTaskCommand(
            task_id=task.id,
            column_id=target.id,
            order_index=order_index,
            reason=reason,
            from_column_id=column.id,
        )
        commands.append(command)
        emit_event(events, LifecycleEvent(
            kind=LifecycleEventKind.ROUTE_SCHEDULED,
            message=command.describe(),
            board_id=board_id, task_id=task.id, column_id=target.id,
            details={"reason": reason.value, "order_index": order_index},
        ))

    return commands


def run_auto_routing(
    tasks: Sequence[TaskSnapshot],
    columns: Sequence[ColumnSnapshot],
    all_tasks: Sequence[TaskSnapshot],
    move_task: Callable[[str, str, int], Any],
    is_loading: bool,
    session: SessionState,
    today: Optional[date] = None,
    events: Optional[EventSink] = None,
    dispatcher: Optional[CommandDispatcher] = None,
) -> None:
    """Route once per session. Safe to call on every render.

    Does nothing while loading, when the board has no tasks or columns, or
    once ``session.has_routed_once`` is set.
    """
    if is_loading or session.has_routed_once or not tasks or not columns:
        emit_event(events, LifecycleEvent(
            kind=LifecycleEventKind.RUN_SKIPPED,
            message="auto-routing not due",
            board_id=session.board_id,
            details={"is_loading": is_loading, "latched": session.has_routed_once},
        ))
        return

    session.has_routed_once = True
    dispatcher = dispatcher or CommandDispatcher(events=events, board_id=session.board_id)

    tracer = get_tracer("taskboard.lifecycle")
    span_cm = tracer.start_as_current_span("lifecycle.auto_routing") if tracer else nullcontext()
    with span_cm as span:
        commands = plan_auto_routing(
            tasks, columns, all_tasks, today=today, events=events, board_id=session.board_id,
        )
        for command in commands:
            dispatcher.submit(command, move_task)
        if span is not None:
            span.set_attribute("taskboard.board_id", session.board_id)
            span.set_attribute("taskboard.moves", len(commands))


# ============================================================
# AUTO-DELETER
# ============================================================

def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def plan_auto_deletion(
    tasks: Iterable[TaskSnapshot],
    columns: Sequence[ColumnSnapshot],
    categories: Iterable[CategorySnapshot],
    now: Optional[datetime] = None,
    events: Optional[EventSink] = None,
    board_id: Optional[str] = None,
) -> List[DeleteTaskCommand]:
    """Done tasks past their category's retention window. Pure.

    Only tasks with ``is_done`` and a ``done_at`` timestamp, sitting in a
    "Done" column whose category has a positive ``auto_delete_after_weeks``,
    are eligible. Retention is measured from ``done_at``; reaching the
    threshold exactly counts as expired.
    """
    thresholds = {
        c.id: c.auto_delete_after_weeks
        for c in categories
        if _is_positive_int(c.auto_delete_after_weeks)
    }
    if not thresholds:
        emit_event(events, LifecycleEvent(
            kind=LifecycleEventKind.DELETION_DISABLED,
            message="No category has auto-delete configured",
            board_id=board_id,
        ))
        return []

    now = _as_utc(now or _utcnow())
    columns_by_id = {c.id: c for c in columns}
    commands: List[DeleteTaskCommand] = []

    for task in tasks:
        if not task.is_done or task.done_at is None:
            continue

        column = columns_by_id.get(task.column_id)
        if column is None:
            emit_event(events, LifecycleEvent(
                kind=LifecycleEventKind.TASK_SKIPPED_MISSING_COLUMN,
                message="Task references a column that is not on the board",
                board_id=board_id, task_id=task.id, column_id=task.column_id,
            ))
            continue
        if not is_done_column(column) or not column.category_id:
            continue

        weeks = thresholds.get(column.category_id)
        if weeks is None:
            continue

        elapsed = now - _as_utc(task.done_at)
        if elapsed < timedelta(weeks=weeks):
            continue

        command = DeleteTaskCommand(task_id=task.id, category_id=column.category_id, elapsed=elapsed)
        commands.append(command)
        emit_event(events, LifecycleEvent(
            kind=LifecycleEventKind.DELETE_SCHEDULED,
            message=command.describe(),
            board_id=board_id, task_id=task.id, column_id=column.id,
            details={"auto_delete_after_weeks": weeks, "elapsed_days": elapsed.days},
        ))

    return commands


def run_auto_deletion(
    tasks: Sequence[TaskSnapshot],
    columns: Sequence[ColumnSnapshot],
    categories: Sequence[CategorySnapshot],
    delete_task: Callable[[str], Any],
    is_loading: bool,
    session: SessionState,
    now: Optional[datetime] = None,
    events: Optional[EventSink] = None,
    dispatcher: Optional[CommandDispatcher] = None,
) -> None:
    """Purge once per session, latched independently of routing."""
    if is_loading or session.has_purged_once or not tasks or not columns:
        emit_event(events, LifecycleEvent(
            kind=LifecycleEventKind.RUN_SKIPPED,
            message="auto-deletion not due",
            board_id=session.board_id,
            details={"is_loading": is_loading, "latched": session.has_purged_once},
        ))
        return

    session.has_purged_once = True
    dispatcher = dispatcher or CommandDispatcher(events=events, board_id=session.board_id)

    tracer = get_tracer("taskboard.lifecycle")
    span_cm = tracer.start_as_current_span("lifecycle.auto_deletion") if tracer else nullcontext()
    with span_cm as span:
        commands = plan_auto_deletion(
            tasks, columns, categories, now=now, events=events, board_id=session.board_id,
        )
        for command in commands:
            dispatcher.submit(command, delete_task)
        if span is not None:
            span.set_attribute("taskboard.board_id", session.board_id)
            span.set_attribute("taskboard.deletions", len(commands))
