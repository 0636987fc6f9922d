# routers/tasks.py — Task cards and everything hanging off them
from datetime import date
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from board_graph import BoardGraph
from models import (
    Board, Task, ChecklistItem, TaskComment, TaskAttachment, TaskLink, BoardColumn,
    TaskPriority, CommentCategory, TaskLinkType,
)
from routers.boards import get_graph, readable_board, writable_board, label_out, LabelOut, _ts

router = APIRouter(prefix="/api/v1/boards/{board_id}/tasks", tags=["Tasks"])


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


# ============================================================
# SCHEMAS
# ============================================================

# --- Task ---
class TaskCreate(BaseModel):
    column_id: str
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[date] = None
    start_date: Optional[date] = None
    assigned_to: Optional[str] = None
    position: Optional[int] = None  # None appends


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    priority: Optional[TaskPriority] = None
    due_date: Optional[date] = None
    start_date: Optional[date] = None
    assigned_to: Optional[str] = None
    cover_image_url: Optional[str] = None
    is_done: Optional[bool] = None


class TaskMove(BaseModel):
    column_id: str
    position: Optional[int] = None


class TaskDone(BaseModel):
    column_id: Optional[str] = None
    position: Optional[int] = None


class TaskOut(BaseModel):
    id: str
    column_id: str
    title: str
    description: Optional[str] = None
    priority: str
    order_index: int
    cover_image_url: Optional[str] = None
    due_date: Optional[str] = None
    start_date: Optional[str] = None
    is_done: bool
    done_at: Optional[str] = None
    assigned_to: Optional[str] = None
    labels: List[LabelOut] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# --- Checklist ---
class ChecklistCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


class ChecklistUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    is_completed: Optional[bool] = None


class ChecklistOut(BaseModel):
    id: str
    task_id: str
    title: str
    is_completed: bool
    order_index: int


# --- Comments ---
class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)
    category: CommentCategory = CommentCategory.GENERAL_COMMENTS


class CommentUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)
    category: Optional[CommentCategory] = None


class CommentOut(BaseModel):
    id: str
    task_id: str
    author_id: str
    content: str
    category: str
    created_at: Optional[str] = None
    edited_at: Optional[str] = None


# --- Attachments ---
class AttachmentCreate(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_path: str = Field(..., min_length=1)
    file_type: str = "application/octet-stream"
    file_size: int = Field(0, ge=0)


class AttachmentOut(BaseModel):
    id: str
    task_id: str
    uploader_id: Optional[str] = None
    file_name: str
    file_path: str
    file_type: str
    file_size: int
    created_at: Optional[str] = None


# --- Links ---
class LinkCreate(BaseModel):
    target_task_id: str
    link_type: TaskLinkType = TaskLinkType.RELATES_TO


class LinkOut(BaseModel):
    id: str
    source_task_id: str
    target_task_id: str
    link_type: str
    target_title: Optional[str] = None
    target_column_name: Optional[str] = None
    created_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def task_out(t: Task, labels=None) -> TaskOut:
    return TaskOut(
        id=t.id,
        column_id=t.column_id,
        title=t.title,
        description=t.description,
        priority=_enum_value(t.priority) or TaskPriority.MEDIUM.value,
        order_index=t.order_index or 0,
        cover_image_url=t.cover_image_url,
        due_date=_ts(t.due_date),
        start_date=_ts(t.start_date),
        is_done=bool(t.is_done),
        done_at=_ts(t.done_at),
        assigned_to=t.assigned_to,
        labels=[label_out(l) for l in (labels or [])],
        created_at=_ts(t.created_at),
        updated_at=_ts(t.updated_at),
    )


async def _task_with_labels(graph: BoardGraph, task: Task) -> TaskOut:
    labels = await graph.labels_for_tasks([task.id])
    return task_out(task, labels.get(task.id))


def checklist_out(i: ChecklistItem) -> ChecklistOut:
    return ChecklistOut(
        id=i.id, task_id=i.task_id, title=i.title,
        is_completed=bool(i.is_completed), order_index=i.order_index or 0,
    )


def comment_out(c: TaskComment) -> CommentOut:
    return CommentOut(
        id=c.id, task_id=c.task_id, author_id=c.author_id, content=c.content,
        category=_enum_value(c.category), created_at=_ts(c.created_at), edited_at=_ts(c.edited_at),
    )


def attachment_out(a: TaskAttachment) -> AttachmentOut:
    return AttachmentOut(
        id=a.id, task_id=a.task_id, uploader_id=a.uploader_id,
        file_name=a.file_name, file_path=a.file_path, file_type=a.file_type,
        file_size=a.file_size or 0, created_at=_ts(a.created_at),
    )


def link_out(link: TaskLink, target: Optional[Task] = None, column: Optional[BoardColumn] = None) -> LinkOut:
    return LinkOut(
        id=link.id,
        source_task_id=link.source_task_id,
        target_task_id=link.target_task_id,
        link_type=_enum_value(link.link_type),
        target_title=target.title if target else None,
        target_column_name=column.name if column else None,
        created_at=_ts(link.created_at),
    )


# ============================================================
# TASK ENDPOINTS
# ============================================================

@router.get("", response_model=List[TaskOut])
async def list_tasks(
    column_id: Optional[str] = Query(None),
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    tasks = await graph.list_tasks(board.id, column_id)
    labels = await graph.labels_for_tasks([t.id for t in tasks])
    return [task_out(t, labels.get(t.id)) for t in tasks]


@router.post("", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def create_task(
    data: TaskCreate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    fields = data.model_dump(exclude={"column_id", "title", "position"})
    task = await graph.insert_task(board.id, data.column_id, data.title, data.position, **fields)
    return task_out(task)


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: str,
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return await _task_with_labels(graph, await graph.get_task(board.id, task_id))


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    data: TaskUpdate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    task = await graph.update_task(board.id, task_id, data.model_dump(exclude_unset=True))
    return await _task_with_labels(graph, task)


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.delete_task(board.id, task_id)
    return {"status": "deleted", "task_id": task_id}


@router.post("/{task_id}/move", response_model=TaskOut)
async def move_task(
    task_id: str,
    data: TaskMove,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    """Move a task within or across columns; both columns stay densely ordered"""
    task = await graph.move_task(board.id, task_id, data.column_id, data.position)
    return await _task_with_labels(graph, task)


@router.post("/{task_id}/done", response_model=TaskOut)
async def mark_done(
    task_id: str,
    data: Optional[TaskDone] = None,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    data = data or TaskDone()
    task = await graph.mark_task_done(board.id, task_id, data.column_id, data.position)
    return await _task_with_labels(graph, task)


@router.post("/{task_id}/undone", response_model=TaskOut)
async def mark_undone(
    task_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    task = await graph.mark_task_undone(board.id, task_id)
    return await _task_with_labels(graph, task)


# ============================================================
# LABELS ON TASKS
# ============================================================

@router.put("/{task_id}/labels/{label_id}", response_model=TaskOut)
async def attach_label(
    task_id: str,
    label_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.attach_label(board.id, task_id, label_id)
    return await _task_with_labels(graph, await graph.get_task(board.id, task_id))


@router.delete("/{task_id}/labels/{label_id}", response_model=TaskOut)
async def detach_label(
    task_id: str,
    label_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.detach_label(board.id, task_id, label_id)
    return await _task_with_labels(graph, await graph.get_task(board.id, task_id))


# ============================================================
# CHECKLIST
# ============================================================

@router.get("/{task_id}/checklist", response_model=List[ChecklistOut])
async def list_checklist(
    task_id: str,
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [checklist_out(i) for i in await graph.list_checklist(board.id, task_id)]


@router.post("/{task_id}/checklist", response_model=ChecklistOut, status_code=status.HTTP_201_CREATED)
async def add_checklist_item(
    task_id: str,
    data: ChecklistCreate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return checklist_out(await graph.add_checklist_item(board.id, task_id, data.title))


@router.patch("/{task_id}/checklist/{item_id}", response_model=ChecklistOut)
async def update_checklist_item(
    task_id: str,
    item_id: str,
    data: ChecklistUpdate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    item = await graph.update_checklist_item(board.id, task_id, item_id, data.model_dump(exclude_unset=True))
    return checklist_out(item)


@router.delete("/{task_id}/checklist/{item_id}")
async def delete_checklist_item(
    task_id: str,
    item_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.delete_checklist_item(board.id, task_id, item_id)
    return {"status": "deleted", "item_id": item_id}


# ============================================================
# COMMENTS
# ============================================================

@router.get("/{task_id}/comments", response_model=List[CommentOut])
async def list_comments(
    task_id: str,
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [comment_out(c) for c in await graph.list_comments(board.id, task_id)]


@router.post("/{task_id}/comments", response_model=CommentOut, status_code=status.HTTP_201_CREATED)
async def add_comment(
    task_id: str,
    data: CommentCreate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return comment_out(await graph.add_comment(board.id, task_id, data.content, data.category))


@router.patch("/{task_id}/comments/{comment_id}", response_model=CommentOut)
async def edit_comment(
    task_id: str,
    comment_id: str,
    data: CommentUpdate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    comment = await graph.edit_comment(board.id, task_id, comment_id, data.content, data.category)
    return comment_out(comment)


@router.delete("/{task_id}/comments/{comment_id}")
async def delete_comment(
    task_id: str,
    comment_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.delete_comment(board.id, task_id, comment_id)
    return {"status": "deleted", "comment_id": comment_id}


# ============================================================
# ATTACHMENTS (metadata)
# ============================================================

@router.get("/{task_id}/attachments", response_model=List[AttachmentOut])
async def list_attachments(
    task_id: str,
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [attachment_out(a) for a in await graph.list_attachments(board.id, task_id)]


@router.post("/{task_id}/attachments", response_model=AttachmentOut, status_code=status.HTTP_201_CREATED)
async def record_attachment(
    task_id: str,
    data: AttachmentCreate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    attachment = await graph.record_attachment(
        board.id, task_id, data.file_name, data.file_path, data.file_type, data.file_size,
    )
    return attachment_out(attachment)


@router.delete("/{task_id}/attachments/{attachment_id}")
async def delete_attachment(
    task_id: str,
    attachment_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    attachment = await graph.delete_attachment(board.id, task_id, attachment_id)
    return {"status": "deleted", "attachment_id": attachment_id, "file_path": attachment.file_path}


# ============================================================
# LINKS
# ============================================================

@router.get("/{task_id}/links", response_model=List[LinkOut])
async def list_links(
    task_id: str,
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [link_out(link, target, column) for link, target, column in await graph.list_links(board.id, task_id)]


@router.post("/{task_id}/links", response_model=LinkOut, status_code=status.HTTP_201_CREATED)
async def add_link(
    task_id: str,
    data: LinkCreate,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    link = await graph.add_link(board.id, task_id, data.target_task_id, data.link_type)
    return link_out(link)


@router.delete("/{task_id}/links/{link_id}")
async def remove_link(
    task_id: str,
    link_id: str,
    board: Board = Depends(writable_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.remove_link(board.id, task_id, link_id)
    return {"status": "deleted", "link_id": link_id}
