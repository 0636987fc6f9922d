# routers/boards.py — Boards, categories, columns, labels and activity
from collections import Counter
from datetime import datetime
from typing import Optional, List, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from board_graph import BoardGraph, OWNER_ROLE, WRITE_ROLES
from database import get_db_session
from models import Board, Category, BoardColumn, TaskLabel, ActivityLog
from realtime import notifier

router = APIRouter(prefix="/api/v1/boards", tags=["Boards"])

HEX_COLOR = r"^#[0-9a-fA-F]{6}$"


# ============================================================
# SCHEMAS
# ============================================================

# --- Board ---
class BoardCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class BoardUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    background_image_url: Optional[str] = None


class CategoryOut(BaseModel):
    id: str
    board_id: str
    name: str
    color: str
    order_index: int
    auto_delete_after_weeks: Optional[int] = None
    created_at: Optional[str] = None


class ColumnOut(BaseModel):
    id: str
    board_id: str
    category_id: Optional[str] = None
    name: str
    order_index: int
    cover_image_url: Optional[str] = None
    task_count: int = 0


class LabelOut(BaseModel):
    id: str
    board_id: str
    name: str
    color: str


class BoardOut(BaseModel):
    id: str
    name: str
    owner_id: str
    role: str = OWNER_ROLE
    background_image_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class BoardDetailOut(BoardOut):
    categories: List[CategoryOut] = []
    columns: List[ColumnOut] = []
    labels: List[LabelOut] = []
    task_count: int = 0


# --- Category ---
class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)
    auto_delete_after_weeks: Optional[int] = Field(None, gt=0)
    create_default_columns: bool = False


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)
    auto_delete_after_weeks: Optional[int] = Field(None, gt=0)


# --- Column ---
class ColumnCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    category_id: Optional[str] = None
    position: Optional[int] = None


class ColumnUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    category_id: Optional[str] = None
    cover_image_url: Optional[str] = None


class ReorderRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


# --- Label ---
class LabelCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field("#6366f1", pattern=HEX_COLOR)


class LabelUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)


class ActivityOut(BaseModel):
    id: str
    user_id: Optional[str] = None
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    metadata: dict = {}
    created_at: Optional[str] = None


# ============================================================
# HELPERS & DEPENDENCIES
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, datetime) else str(dt)


def board_out(b: Board, role: str = OWNER_ROLE) -> BoardOut:
    return BoardOut(
        id=b.id, name=b.name, owner_id=b.owner_id, role=role,
        background_image_url=b.background_image_url,
        created_at=_ts(b.created_at), updated_at=_ts(b.updated_at),
    )


def category_out(c: Category) -> CategoryOut:
    return CategoryOut(
        id=c.id, board_id=c.board_id, name=c.name, color=c.color or "#6366f1",
        order_index=c.order_index or 0,
        auto_delete_after_weeks=c.auto_delete_after_weeks,
        created_at=_ts(c.created_at),
    )


def column_out(c: BoardColumn, task_count: int = 0) -> ColumnOut:
    return ColumnOut(
        id=c.id, board_id=c.board_id, category_id=c.category_id, name=c.name,
        order_index=c.order_index or 0, cover_image_url=c.cover_image_url,
        task_count=task_count,
    )


def label_out(l: TaskLabel) -> LabelOut:
    return LabelOut(id=l.id, board_id=l.board_id, name=l.name, color=l.color or "#6366f1")


def activity_out(a: ActivityLog) -> ActivityOut:
    action = a.action.value if hasattr(a.action, "value") else a.action
    return ActivityOut(
        id=a.id, user_id=a.user_id, action=action,
        entity_type=a.entity_type, entity_id=a.entity_id,
        metadata=a.extra_data or {}, created_at=_ts(a.created_at),
    )


async def get_graph(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> BoardGraph:
    return BoardGraph(db, notifier, user_id=user.id)


async def board_access(
    board_id: str,
    user: CurrentUser = Depends(get_current_user),
    graph: BoardGraph = Depends(get_graph),
) -> Tuple[Board, str]:
    """The board at ``board_id`` and the caller's role on it.

    404 when the board is missing, 403 when the caller is neither the owner
    nor a member.
    """
    board = await graph.get_board(board_id)
    role = await graph.get_access(board, user.id)
    if role is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No access to this board")
    return board, role


async def readable_board(access: Tuple[Board, str] = Depends(board_access)) -> Board:
    return access[0]


async def writable_board(access: Tuple[Board, str] = Depends(board_access)) -> Board:
    board, role = access
    if role not in WRITE_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Read-only access")
    return board


async def owned_board(access: Tuple[Board, str] = Depends(board_access)) -> Board:
    board, role = access
    if role != OWNER_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the board owner")
    return board


# ============================================================
# BOARD ENDPOINTS
# ============================================================

@router.get("", response_model=List[BoardOut])
async def list_boards(
    user: CurrentUser = Depends(get_current_user),
    graph: BoardGraph = Depends(get_graph),
):
    """Boards the caller owns, then boards shared with them"""
    owned = [board_out(b) for b in await graph.list_boards(user.id)]
    shared = [board_out(b, role) for b, role in await graph.list_shared_boards(user.id)]
    return owned + shared


@router.post("", response_model=BoardOut, status_code=status.HTTP_201_CREATED)
async def create_board(
    data: BoardCreate,
    user: CurrentUser = Depends(get_current_user),
    graph: BoardGraph = Depends(get_graph),
):
    board = await graph.create_board(user.id, data.name)
    return board_out(board)


@router.get("/{board_id}", response_model=BoardDetailOut)
async def get_board(
    access: Tuple[Board, str] = Depends(board_access),
    graph: BoardGraph = Depends(get_graph),
):
    """Board with its categories, columns (with task counts) and labels"""
    board, role = access
    categories = await graph.list_categories(board.id)
    columns = await graph.list_columns(board.id)
    tasks = await graph.list_tasks(board.id)
    labels = await graph.list_labels(board.id)
    counts = Counter(t.column_id for t in tasks)

    return BoardDetailOut(
        **board_out(board, role).model_dump(),
        categories=[category_out(c) for c in categories],
        columns=[column_out(c, counts.get(c.id, 0)) for c in columns],
        labels=[label_out(l) for l in labels],
        task_count=len(tasks),
    )


@router.patch("/{board_id}", response_model=BoardOut)
async def update_board(
    data: BoardUpdate,
    board: Board = Depends(owned_board),
    graph: BoardGraph = Depends(get_graph),
):
    board = await graph.update_board(board.id, data.model_dump(exclude_unset=True))
    return board_out(board)


@router.delete("/{board_id}")
async def delete_board(
    board: Board = Depends(owned_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.delete_board(board.id)
    return {"status": "deleted", "board_id": board.id}


# ============================================================
# CATEGORY ENDPOINTS
# ============================================================

@router.get("/{board_id}/categories", response_model=List[CategoryOut])
async def list_categories(
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [category_out(c) for c in await graph.list_categories(board.id)]


@router.post("/{board_id}/categories", response_model=CategoryOut, status_code=status.HTTP_201_CREATED)
async def create_category(
    data: CategoryCreate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    category = await graph.create_category(
        board.id, data.name, color=data.color,
        auto_delete_after_weeks=data.auto_delete_after_weeks,
        with_default_columns=data.create_default_columns,
    )
    return category_out(category)


@router.post("/{board_id}/categories/reorder", response_model=List[CategoryOut])
async def reorder_categories(
    data: ReorderRequest,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [category_out(c) for c in await graph.reorder_categories(board.id, data.ids)]


@router.patch("/{board_id}/categories/{category_id}", response_model=CategoryOut)
async def update_category(
    category_id: str,
    data: CategoryUpdate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    category = await graph.update_category(board.id, category_id, data.model_dump(exclude_unset=True))
    return category_out(category)


@router.delete("/{board_id}/categories/{category_id}")
async def delete_category(
    category_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.delete_category(board.id, category_id)
    return {"status": "deleted", "category_id": category_id}


# ============================================================
# COLUMN ENDPOINTS
# ============================================================

@router.get("/{board_id}/columns", response_model=List[ColumnOut])
async def list_columns(
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    columns = await graph.list_columns(board.id)
    counts = Counter(t.column_id for t in await graph.list_tasks(board.id))
    return [column_out(c, counts.get(c.id, 0)) for c in columns]


@router.post("/{board_id}/columns", response_model=ColumnOut, status_code=status.HTTP_201_CREATED)
async def create_column(
    data: ColumnCreate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    column = await graph.create_column(board.id, data.name, data.category_id, data.position)
    return column_out(column)


@router.post("/{board_id}/columns/reorder", response_model=List[ColumnOut])
async def reorder_columns(
    data: ReorderRequest,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [column_out(c) for c in await graph.reorder_columns(board.id, data.ids)]


@router.patch("/{board_id}/columns/{column_id}", response_model=ColumnOut)
async def update_column(
    column_id: str,
    data: ColumnUpdate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    column = await graph.update_column(board.id, column_id, data.model_dump(exclude_unset=True))
    return column_out(column, await graph.count_tasks(column.id))


@router.delete("/{board_id}/columns/{column_id}")
async def delete_column(
    column_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.delete_column(board.id, column_id)
    return {"status": "deleted", "column_id": column_id}


# ============================================================
# LABEL ENDPOINTS
# ============================================================

@router.get("/{board_id}/labels", response_model=List[LabelOut])
async def list_labels(
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [label_out(l) for l in await graph.list_labels(board.id)]


@router.post("/{board_id}/labels", response_model=LabelOut, status_code=status.HTTP_201_CREATED)
async def create_label(
    data: LabelCreate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return label_out(await graph.create_label(board.id, data.name, data.color))


@router.patch("/{board_id}/labels/{label_id}", response_model=LabelOut)
async def update_label(
    label_id: str,
    data: LabelUpdate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return label_out(await graph.update_label(board.id, label_id, data.model_dump(exclude_unset=True)))


@router.delete("/{board_id}/labels/{label_id}")
async def delete_label(
    label_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.delete_label(board.id, label_id)
    return {"status": "deleted", "label_id": label_id}


# ============================================================
# ACTIVITY
# ============================================================

@router.get("/{board_id}/activity", response_model=List[ActivityOut])
async def list_activity(
    limit: int = Query(100, ge=1, le=500),
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [activity_out(a) for a in await graph.list_activity(board.id, limit)]
