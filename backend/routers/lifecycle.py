# routers/lifecycle.py — Board view activation and automatic housekeeping
# Activating a board view runs the Auto-Router and the Auto-Deleter once
# against a fresh snapshot. Re-evaluating the same session is a no-op
# because both runners are latched on the session state.
import os
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker

from auth import get_current_user, CurrentUser
from board_graph import BoardGraph, lifecycle_handlers
from database import get_session_factory
from lifecycle_engine import (
    CommandDispatcher, DeleteTaskCommand, LifecycleEvent, MoveTaskCommand,
    SessionRegistry, SessionState, log_event_sink, run_auto_deletion, run_auto_routing,
)
from models import Board
from realtime import notifier
from routers.boards import get_graph, readable_board, writable_board

logger = logging.getLogger("taskboard.lifecycle")

router = APIRouter(prefix="/api/v1/boards/{board_id}/sessions", tags=["Lifecycle"])

LIFECYCLE_MAX_CONCURRENT_COMMANDS = int(os.getenv("LIFECYCLE_MAX_CONCURRENT_COMMANDS", "1"))

# Live board-view sessions for this process
sessions = SessionRegistry()


# ============================================================
# SCHEMAS
# ============================================================

class SessionOut(BaseModel):
    session_id: str
    board_id: str
    user_id: Optional[str] = None
    activated_at: str
    has_routed_once: bool
    has_purged_once: bool


class CommandOutcome(BaseModel):
    scheduled: int = 0
    succeeded: List[str] = []
    failed: List[Dict[str, str]] = []


class LifecycleRunOut(BaseModel):
    session: SessionOut
    moves: CommandOutcome
    deletions: CommandOutcome
    events: List[Dict[str, Any]] = []


# ============================================================
# HELPERS
# ============================================================

def _outcome(report, command_type) -> CommandOutcome:
    return CommandOutcome(
        scheduled=sum(1 for c in report.scheduled if isinstance(c, command_type)),
        succeeded=[c.task_id for c in report.succeeded if isinstance(c, command_type)],
        failed=[
            {"task_id": c.task_id, "error": err}
            for c, err in report.failed if isinstance(c, command_type)
        ],
    )


def _owned_session(board: Board, session_id: str, user: CurrentUser) -> SessionState:
    state = sessions.get(session_id)
    if state is None or state.board_id != board.id or state.user_id != user.id:
        raise HTTPException(status_code=404, detail="Session not found")
    return state


async def evaluate_board(
    board_id: str,
    state: SessionState,
    graph: BoardGraph,
    session_factory: async_sessionmaker,
) -> LifecycleRunOut:
    """Run both housekeeping passes for ``state`` and wait for their commands."""
    snapshot = await graph.load_snapshot(board_id)
    # Release the request transaction before commands open their own
    await graph.db.commit()

    events: List[LifecycleEvent] = []

    def sink(event: LifecycleEvent) -> None:
        log_event_sink(event)
        events.append(event)

    move_task, delete_task = lifecycle_handlers(session_factory, board_id, notifier)
    dispatcher = CommandDispatcher(
        max_concurrency=LIFECYCLE_MAX_CONCURRENT_COMMANDS, events=sink, board_id=board_id,
    )

    run_auto_routing(
        snapshot.tasks, snapshot.columns, snapshot.tasks, move_task,
        is_loading=False, session=state, events=sink, dispatcher=dispatcher,
    )
    run_auto_deletion(
        snapshot.tasks, snapshot.columns, snapshot.categories, delete_task,
        is_loading=False, session=state, events=sink, dispatcher=dispatcher,
    )
    report = await dispatcher.drain()

    if report.scheduled:
        logger.info(
            f"Board {board_id[:8]} housekeeping: {len(report.succeeded)} ok, "
            f"{len(report.failed)} failed of {len(report.scheduled)}"
        )

    return LifecycleRunOut(
        session=SessionOut(**state.to_dict()),
        moves=_outcome(report, MoveTaskCommand),
        deletions=_outcome(report, DeleteTaskCommand),
        events=[e.to_dict() for e in events],
    )


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("", response_model=LifecycleRunOut, status_code=status.HTTP_201_CREATED)
async def activate_session(
    board: Board = Depends(writable_board),
    user: CurrentUser = Depends(get_current_user),
    graph: BoardGraph = Depends(get_graph),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Open a board view: replaces any previous session for this user and board"""
    state = sessions.activate(board.id, user.id)
    return await evaluate_board(board.id, state, graph, session_factory)


@router.post("/{session_id}/evaluate", response_model=LifecycleRunOut)
async def evaluate_session(
    session_id: str,
    board: Board = Depends(writable_board),
    user: CurrentUser = Depends(get_current_user),
    graph: BoardGraph = Depends(get_graph),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    state = _owned_session(board, session_id, user)
    return await evaluate_board(board.id, state, graph, session_factory)


@router.get("/{session_id}", response_model=SessionOut)
async def get_session(
    session_id: str,
    board: Board = Depends(readable_board),
    user: CurrentUser = Depends(get_current_user),
):
    return SessionOut(**_owned_session(board, session_id, user).to_dict())


@router.delete("/{session_id}")
async def end_session(
    session_id: str,
    board: Board = Depends(readable_board),
    user: CurrentUser = Depends(get_current_user),
):
    state = _owned_session(board, session_id, user)
    sessions.end(state.session_id)
    return {"status": "ended", "session_id": session_id}
