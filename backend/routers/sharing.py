# routers/sharing.py — Board members and invite links
from typing import Optional, List, Tuple

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from auth import get_current_user, CurrentUser
from board_graph import BoardGraph, OWNER_ROLE
from models import Board, BoardInvite, SharePermission
from routers.boards import get_graph, board_access, readable_board, owned_board, _ts

router = APIRouter(tags=["Sharing"])


# ============================================================
# SCHEMAS
# ============================================================

class MemberOut(BaseModel):
    user_id: str
    email: str
    display_name: Optional[str] = None
    role: str
    joined_at: Optional[str] = None


class RoleUpdate(BaseModel):
    role: SharePermission


class InviteCreate(BaseModel):
    role: SharePermission = SharePermission.VIEWER
    usage_limit: Optional[int] = Field(None, gt=0)
    expires_in_days: Optional[int] = Field(None, gt=0, le=365)


class InviteOut(BaseModel):
    id: str
    board_id: str
    token: str
    role: str
    usage_limit: Optional[int] = None
    usage_count: int = 0
    expires_at: Optional[str] = None
    created_at: Optional[str] = None


class JoinOut(BaseModel):
    board_id: str
    board_name: str
    role: str


def _role(value) -> str:
    return value.value if hasattr(value, "value") else value


def invite_out(i: BoardInvite) -> InviteOut:
    return InviteOut(
        id=i.id, board_id=i.board_id, token=i.token, role=_role(i.role),
        usage_limit=i.usage_limit, usage_count=i.usage_count or 0,
        expires_at=_ts(i.expires_at), created_at=_ts(i.created_at),
    )


# ============================================================
# MEMBERS
# ============================================================

@router.get("/api/v1/boards/{board_id}/members", response_model=List[MemberOut])
async def list_members(
    board: Board = Depends(readable_board),
    graph: BoardGraph = Depends(get_graph),
):
    """Everyone the board is shared with; the owner is not listed"""
    return [
        MemberOut(
            user_id=user.id, email=user.email, display_name=user.display_name,
            role=_role(share.permission), joined_at=_ts(share.created_at),
        )
        for share, user in await graph.list_members(board.id)
    ]


@router.patch("/api/v1/boards/{board_id}/members/{user_id}", response_model=MemberOut)
async def update_member_role(
    user_id: str,
    data: RoleUpdate,
    board: Board = Depends(owned_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.update_member_role(board.id, user_id, data.role)
    for share, user in await graph.list_members(board.id):
        if user.id == user_id:
            return MemberOut(
                user_id=user.id, email=user.email, display_name=user.display_name,
                role=_role(share.permission), joined_at=_ts(share.created_at),
            )
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")


@router.delete("/api/v1/boards/{board_id}/members/{user_id}")
async def remove_member(
    user_id: str,
    access: Tuple[Board, str] = Depends(board_access),
    user: CurrentUser = Depends(get_current_user),
    graph: BoardGraph = Depends(get_graph),
):
    """The owner removes anyone; members may remove themselves"""
    board, role = access
    if role != OWNER_ROLE and user_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not the board owner")
    await graph.remove_member(board.id, user_id)
    return {"status": "removed", "user_id": user_id}


# ============================================================
# INVITES
# ============================================================

@router.get("/api/v1/boards/{board_id}/invites", response_model=List[InviteOut])
async def list_invites(
    board: Board = Depends(owned_board),
    graph: BoardGraph = Depends(get_graph),
):
    return [invite_out(i) for i in await graph.list_invites(board.id)]


@router.post(
    "/api/v1/boards/{board_id}/invites",
    response_model=InviteOut, status_code=status.HTTP_201_CREATED,
)
async def create_invite(
    data: InviteCreate,
    board: Board = Depends(owned_board),
    graph: BoardGraph = Depends(get_graph),
):
    invite = await graph.create_invite(
        board.id, data.role, usage_limit=data.usage_limit, expires_in_days=data.expires_in_days,
    )
    return invite_out(invite)


@router.delete("/api/v1/boards/{board_id}/invites/{invite_id}")
async def revoke_invite(
    invite_id: str,
    board: Board = Depends(owned_board),
    graph: BoardGraph = Depends(get_graph),
):
    await graph.revoke_invite(board.id, invite_id)
    return {"status": "revoked", "invite_id": invite_id}


@router.post("/api/v1/invites/{token}/join", response_model=JoinOut)
async def join_board(
    token: str,
    user: CurrentUser = Depends(get_current_user),
    graph: BoardGraph = Depends(get_graph),
):
    """Redeem an invite link"""
    board, role = await graph.join_via_token(token, user.id)
    return JoinOut(board_id=board.id, board_name=board.name, role=role)
